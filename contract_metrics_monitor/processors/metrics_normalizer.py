"""
指标归一化

把回执中的原始 Gas 数值换算为 ETH / USD 十进制数值
"""

from decimal import Decimal, InvalidOperation
from typing import Any

from web3 import Web3

from contract_metrics_monitor.models.data_types import GasMetrics
from contract_metrics_monitor.models.errors import InvalidMetric


def _to_wei(value: Any, field_name: str) -> int:
    """把原始数值转换为非负整数 Wei"""
    if isinstance(value, bool) or value is None:
        raise InvalidMetric(f"{field_name} 不是数值: {value!r}")

    if isinstance(value, int):
        wei = value
    elif isinstance(value, (float, Decimal, str)):
        try:
            if isinstance(value, str) and value.lower().startswith("0x"):
                return _to_wei(int(value, 16), field_name)
            number = Decimal(str(value).strip()) if not isinstance(value, Decimal) else value
        except (InvalidOperation, ValueError):
            raise InvalidMetric(f"{field_name} 不是数值: {value!r}")
        if not number.is_finite() or number != number.to_integral_value():
            raise InvalidMetric(f"{field_name} 必须是有限整数: {value!r}")
        wei = int(number)
    else:
        raise InvalidMetric(f"{field_name} 类型不支持: {type(value).__name__}")

    if wei < 0:
        raise InvalidMetric(f"{field_name} 不能为负数: {value!r}")
    return wei


def parse_conversion_rate(value: Any) -> Decimal:
    """把汇率转换为正的 Decimal"""
    if isinstance(value, bool) or value is None:
        raise InvalidMetric(f"汇率不是数值: {value!r}")
    try:
        rate = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidMetric(f"汇率不是数值: {value!r}")
    if not rate.is_finite() or rate <= 0:
        raise InvalidMetric(f"汇率必须为正数: {value!r}")
    return rate


def _wei_to_eth(wei: int, field_name: str) -> Decimal:
    try:
        return Decimal(Web3.from_wei(wei, 'ether'))
    except ValueError as e:
        raise InvalidMetric(f"{field_name} 超出范围: {e}")


def normalize(gas_used_raw: Any, gas_price_raw: Any, conversion_rate: Any) -> GasMetrics:
    """换算 Gas 指标

    Args:
        gas_used_raw: 回执中的 gasUsed
        gas_price_raw: 交易的 gasPrice（Wei）
        conversion_rate: 原生代币的 USD 价格

    Returns:
        GasMetrics: ETH 与 USD 数值，USD = ETH × 汇率

    Raises:
        InvalidMetric: 任一输入不是数值，或汇率不为正
    """
    gas_used_wei = _to_wei(gas_used_raw, "gasUsed")
    gas_price_wei = _to_wei(gas_price_raw, "gasPrice")
    rate = parse_conversion_rate(conversion_rate)

    gas_used_eth = _wei_to_eth(gas_used_wei, "gasUsed")
    gas_price_eth = _wei_to_eth(gas_price_wei, "gasPrice")

    return GasMetrics(
        gas_used_wei=gas_used_wei,
        gas_used_eth=gas_used_eth,
        gas_used_usd=gas_used_eth * rate,
        gas_price_wei=gas_price_wei,
        gas_price_eth=gas_price_eth,
        gas_price_usd=gas_price_eth * rate,
    )
