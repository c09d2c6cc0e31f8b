"""
待确认交易跟踪器

记录交易哈希首次出现在内存池中的时间，供确认耗时计算使用
"""

import time
from collections import OrderedDict
from typing import Callable, Optional

from contract_metrics_monitor.utils.log_utils import get_logger

logger = get_logger(__name__)


def _now_ms() -> float:
    return time.time() * 1000


class PendingTracker:
    """待确认交易跟踪器 - 首次发现时间，读取即移除"""

    def __init__(self, max_entries: int = 100000, clock: Callable[[], float] = _now_ms):
        self.max_entries = max_entries
        self.clock = clock
        self._first_seen: "OrderedDict[str, float]" = OrderedDict()
        self.evicted: int = 0

    def record(self, tx_hash: str, seen_at_ms: Optional[float] = None) -> bool:
        """记录首次发现时间，已存在时忽略。返回是否为新记录"""
        key = tx_hash.lower()
        if key in self._first_seen:
            return False

        self._first_seen[key] = self.clock() if seen_at_ms is None else seen_at_ms
        logger.debug(f"发现待确认交易: {key[:10]}...")

        # 超出容量时淘汰最早的记录（大部分内存池交易与监控合约无关）
        while len(self._first_seen) > self.max_entries:
            self._first_seen.popitem(last=False)
            self.evicted += 1
        return True

    def consume(self, tx_hash: str) -> Optional[float]:
        """读取并移除首次发现时间，不存在时返回 None"""
        return self._first_seen.pop(tx_hash.lower(), None)

    def __contains__(self, tx_hash: str) -> bool:
        return tx_hash.lower() in self._first_seen

    def __len__(self) -> int:
        return len(self._first_seen)
