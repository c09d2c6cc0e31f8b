"""
交易处理器

负责从区块中筛选发往被监控合约的交易，并解析回执中的合约事件
"""

from collections import defaultdict
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Sequence

from web3 import Web3

from contract_metrics_monitor.models.data_types import (
    ContractDescriptor,
    DecodedEvent,
    ScanCandidate,
)
from contract_metrics_monitor.models.errors import ConfigurationError
from contract_metrics_monitor.utils.log_decoder import ContractLogDecoder
from contract_metrics_monitor.utils.log_utils import get_logger

logger = get_logger(__name__)


def normalize_hash(value: Any) -> str:
    """交易哈希统一为小写 0x 十六进制字符串"""
    if isinstance(value, str):
        return value.lower() if value.startswith(('0x', '0X')) else '0x' + value.lower()
    return Web3.to_hex(value).lower()


class TransactionProcessor:
    """交易处理器 - 负责匹配被监控合约并解析事件"""

    def __init__(self, descriptors: Sequence[ContractDescriptor]):
        self.descriptors = list(descriptors)
        self._by_address: Dict[str, ContractDescriptor] = {d.address.lower(): d for d in self.descriptors}

        self._decoders: Dict[str, ContractLogDecoder] = {}
        for descriptor in self.descriptors:
            try:
                self._decoders[descriptor.address] = ContractLogDecoder(descriptor)
            except Exception as e:
                raise ConfigurationError(f"合约 {descriptor.name} 的 ABI 无法构建解析器: {e}")

        # 统计信息
        self.transactions_matched: Dict[str, int] = defaultdict(int)
        self.events_decoded: int = 0

    def match(self, tx: Mapping) -> Optional[ContractDescriptor]:
        """交易接收地址是否为被监控合约（不区分大小写）"""
        to_address = tx.get('to')
        if not to_address:
            return None
        return self._by_address.get(str(to_address).lower())

    def select_transactions(self, block: Mapping) -> List[ScanCandidate]:
        """按区块内顺序筛选发往被监控合约的交易"""
        block_number = block['number']
        block_timestamp_ms = int(block['timestamp']) * 1000

        candidates = []
        for tx in block.get('transactions') or []:
            # 未请求完整交易时区块只包含哈希
            if not isinstance(tx, Mapping):
                continue

            descriptor = self.match(tx)
            if descriptor is None:
                continue

            candidate = ScanCandidate(
                hash=normalize_hash(tx['hash']),
                tx=tx,
                descriptor=descriptor,
                block_number=block_number,
                block_timestamp_ms=block_timestamp_ms,
            )
            self.transactions_matched[descriptor.name] += 1
            candidates.append(candidate)

        if candidates:
            logger.debug(f"区块 {block_number} 发现 {len(candidates)} 笔监控合约交易")
        return candidates

    def decode_events(self, candidate: ScanCandidate, receipt: Mapping) -> List[DecodedEvent]:
        """按交易目标合约的 ABI 解析回执日志"""
        decoder = self._decoders[candidate.descriptor.address]
        events = decoder.decode_receipt(receipt)
        self.events_decoded += len(events)
        for event in events:
            logger.info(f"🔔 检测到事件: {event.name} 来自 {candidate.descriptor.name}")
        return events

    def get_stats(self) -> Dict[str, Any]:
        """获取处理统计信息"""
        return {
            'transactions_matched': dict(self.transactions_matched),
            'transactions_total': sum(self.transactions_matched.values()),
            'events_decoded': self.events_decoded,
        }
