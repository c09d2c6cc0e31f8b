"""
序号账本

负责交易与事件的去重和排序：首次出现时分配单调递增的序号，
重复出现时原样返回已有序号。每次运行一个实例，不做全局共享。
"""

from typing import Dict, Optional, Tuple

from contract_metrics_monitor.models.data_types import (
    CounterSnapshot,
    WatchedEvent,
    WatchedTransaction,
)
from contract_metrics_monitor.utils.log_utils import get_logger

logger = get_logger(__name__)


class RunCounters:
    """运行计数器 - 显式自增，返回自增后的值"""

    def __init__(self):
        self.transactions: int = 0
        self.events: int = 0

    def increment_transactions(self) -> int:
        self.transactions += 1
        return self.transactions

    def increment_events(self) -> int:
        self.events += 1
        return self.events


class SequenceLedger:
    """序号账本 - 去重与排序的唯一权威"""

    def __init__(self):
        self.counters = RunCounters()
        self._transactions: Dict[str, WatchedTransaction] = {}
        self._events: Dict[Tuple[str, str], WatchedEvent] = {}

    @staticmethod
    def _key(tx_hash: str) -> str:
        return tx_hash.lower()

    def admit_transaction(self, tx_hash: str, block_number: Optional[int] = None) -> int:
        """登记交易，返回其序号（重复登记为空操作）"""
        key = self._key(tx_hash)
        existing = self._transactions.get(key)
        if existing is not None:
            logger.debug(f"交易已登记，忽略重复: {key[:10]}... (#{existing.sequence_number})")
            return existing.sequence_number

        sequence_number = self.counters.increment_transactions()
        self._transactions[key] = WatchedTransaction(
            hash=key,
            block_number=block_number,
            sequence_number=sequence_number,
        )
        logger.info(f"🆕 新交易 #{sequence_number}: {key} (区块 {block_number})")
        return sequence_number

    def admit_event(self, tx_hash: str, event_name: str) -> int:
        """登记事件，返回其序号（同一交易内同名事件只登记一次）"""
        key = (self._key(tx_hash), event_name)
        existing = self._events.get(key)
        if existing is not None:
            return existing.sequence_number

        sequence_number = self.counters.increment_events()
        self._events[key] = WatchedEvent(
            transaction_hash=key[0],
            event_name=event_name,
            sequence_number=sequence_number,
        )
        logger.info(f"📣 新事件 #{sequence_number}: {event_name} @ {key[0][:10]}...")
        return sequence_number

    def has_transaction(self, tx_hash: str) -> bool:
        return self._key(tx_hash) in self._transactions

    def has_event(self, tx_hash: str, event_name: str) -> bool:
        return (self._key(tx_hash), event_name) in self._events

    def get_transaction(self, tx_hash: str) -> Optional[WatchedTransaction]:
        return self._transactions.get(self._key(tx_hash))

    @property
    def transaction_count(self) -> int:
        return self.counters.transactions

    @property
    def event_count(self) -> int:
        return self.counters.events

    def snapshot(self) -> CounterSnapshot:
        """当前累计计数快照"""
        return CounterSnapshot(
            transactions=self.counters.transactions,
            events=self.counters.events,
        )
