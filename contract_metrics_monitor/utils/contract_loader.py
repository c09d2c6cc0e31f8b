"""
合约描述符加载与校验

从配置和 ABI 文件构建 ContractDescriptor 列表，启动前做格式校验
"""

import json
import os
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

from web3 import Web3

from contract_metrics_monitor.models.data_types import ContractDescriptor
from contract_metrics_monitor.models.errors import ConfigurationError
from contract_metrics_monitor.utils.log_utils import get_logger

logger = get_logger(__name__)


def load_abi(abi_path: str) -> List[Dict[str, Any]]:
    """读取 ABI 文件，支持纯 ABI 列表或带 abi 字段的编译产物"""
    if not os.path.exists(abi_path):
        raise ConfigurationError(f"ABI 文件不存在: {abi_path}")

    try:
        with open(abi_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"ABI 文件解析失败 {abi_path}: {e}")

    if isinstance(data, dict):
        data = data.get('abi')
    if not isinstance(data, list):
        raise ConfigurationError(f"ABI 文件缺少 abi 列表: {abi_path}")
    return data


def load_contract_descriptors(entries: Iterable[Dict[str, Any]],
                              abi_dir: Optional[str] = None) -> List[ContractDescriptor]:
    """根据配置项构建合约描述符

    Args:
        entries: 配置中的合约列表，每项包含 name、address，以及 abi 或 abi_path
        abi_dir: 未指定 abi_path 时，按 <abi_dir>/<name>.json 查找

    Returns:
        已校验的合约描述符列表
    """
    descriptors = []
    for entry in entries:
        name = entry.get('name', '')
        abi = entry.get('abi')
        if abi is None:
            abi_path = entry.get('abi_path')
            if not abi_path and abi_dir:
                abi_path = os.path.join(abi_dir, f"{name}.json")
            if not abi_path:
                raise ConfigurationError(f"合约 {name or '?'} 未配置 ABI")
            abi = load_abi(abi_path)

        descriptors.append(ContractDescriptor(
            name=name,
            address=entry.get('address', ''),
            abi=abi,
        ))

    return validate_descriptors(descriptors)


def _validate_abi(descriptor: ContractDescriptor) -> tuple:
    abi = descriptor.abi
    if not isinstance(abi, (list, tuple)):
        raise ConfigurationError(f"合约 {descriptor.name} 的 ABI 不是列表: {type(abi).__name__}")

    for item in abi:
        if not isinstance(item, dict) or 'type' not in item:
            raise ConfigurationError(f"合约 {descriptor.name} 的 ABI 条目格式错误: {item!r}")
        if item['type'] == 'event' and not item.get('name'):
            raise ConfigurationError(f"合约 {descriptor.name} 的事件缺少名称")
    return tuple(abi)


def validate_descriptors(descriptors: Iterable[Any]) -> List[ContractDescriptor]:
    """校验描述符并返回地址规范化后的副本

    Raises:
        ConfigurationError: 描述符为空、名称或地址无效、ABI 格式错误、地址重复
    """
    if descriptors is None:
        raise ConfigurationError("未提供合约描述符")

    normalized = []
    seen_addresses = set()
    for descriptor in descriptors:
        if not isinstance(descriptor, ContractDescriptor):
            raise ConfigurationError(f"无效的合约描述符: {descriptor!r}")
        if not isinstance(descriptor.name, str) or not descriptor.name.strip():
            raise ConfigurationError(f"合约描述符缺少名称: {descriptor!r}")
        # 按小写校验，不要求 EIP-55 校验和
        if not isinstance(descriptor.address, str) or not Web3.is_address(descriptor.address.lower()):
            raise ConfigurationError(f"合约 {descriptor.name} 地址无效: {descriptor.address!r}")

        address = descriptor.address.lower()
        if address in seen_addresses:
            raise ConfigurationError(f"合约地址重复: {address}")
        seen_addresses.add(address)

        abi = _validate_abi(descriptor)
        normalized.append(replace(descriptor, address=address, abi=abi))

    if not normalized:
        raise ConfigurationError("合约描述符列表为空")
    return normalized
