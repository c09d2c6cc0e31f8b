"""
确认耗时估算器

优先使用内存池首次发现时间；没有记录时退回到区块时间戳估算
"""

from typing import Callable

from contract_metrics_monitor.managers.pending_tracker import PendingTracker, _now_ms
from contract_metrics_monitor.utils.log_utils import get_logger

logger = get_logger(__name__)


class ConfirmationEstimator:
    """确认耗时估算器"""

    def __init__(self, pending_tracker: PendingTracker, clock: Callable[[], float] = _now_ms):
        self.pending_tracker = pending_tracker
        self.clock = clock

        # 统计信息
        self.from_pending: int = 0
        self.from_block_timestamp: int = 0
        self.clamped: int = 0

    def estimate(self, tx_hash: str, block_timestamp_ms: float) -> int:
        """计算确认耗时（毫秒），结果不小于 0"""
        now = self.clock()
        first_seen = self.pending_tracker.consume(tx_hash)

        if first_seen is not None:
            confirmation_time = now - first_seen
            self.from_pending += 1
            logger.debug(f"交易 {tx_hash[:10]}... 确认耗时 {confirmation_time:.0f} ms")
        else:
            confirmation_time = now - block_timestamp_ms
            self.from_block_timestamp += 1
            logger.debug(f"使用区块时间戳估算确认耗时: {confirmation_time:.0f} ms ({tx_hash[:10]}...)")

        if confirmation_time < 0:
            logger.warning(f"⚠️ 确认耗时为负 ({confirmation_time:.0f} ms)，交易 {tx_hash[:10]}...，按 0 处理")
            self.clamped += 1
            confirmation_time = 0

        return int(confirmation_time)
