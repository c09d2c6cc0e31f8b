"""
记录发送器

组装 MetricRecord 并推送到所有输出端。输出端失败只记录日志，
不重试、不阻塞区块处理；每次推送受超时限制。
"""

import asyncio
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from contract_metrics_monitor.models.data_types import (
    CounterSnapshot,
    GasMetrics,
    MetricRecord,
    ScanCandidate,
)
from contract_metrics_monitor.models.errors import SinkUnavailable
from contract_metrics_monitor.services.sinks.base import RecordSink
from contract_metrics_monitor.utils.log_utils import get_logger, epoch_ms_to_iso

logger = get_logger(__name__)


class RecordEmitter:
    """记录发送器 - 负责组装并分发指标记录"""

    def __init__(self, sinks: Sequence[RecordSink], push_timeout: float = 10.0):
        self.sinks: List[RecordSink] = list(sinks)
        self.push_timeout = push_timeout

        # 统计信息
        self.records_emitted: int = 0
        self.deliveries: int = 0
        self.sink_failures: Dict[str, int] = defaultdict(int)

    async def open(self) -> None:
        """打开所有输出端，打开失败的输出端在本次运行中跳过"""
        opened = []
        for sink in self.sinks:
            try:
                await sink.open()
                opened.append(sink)
            except Exception as e:
                logger.error(f"❌ 输出端 {sink.name} 打开失败，本次运行跳过: {e}")
        self.sinks = opened
        logger.info(f"📤 已启用输出端: {[sink.name for sink in self.sinks] or '无'}")

    async def close(self) -> None:
        """关闭所有输出端"""
        for sink in self.sinks:
            try:
                await sink.close()
            except Exception as e:
                logger.error(f"❌ 关闭输出端 {sink.name} 失败: {e}")

    @staticmethod
    def assemble(
        candidate: ScanCandidate,
        sequence_number: int,
        block_number: int,
        block_timestamp_ms: int,
        gas: GasMetrics,
        conversion_rate: Decimal,
        confirmation_time_ms: Optional[int],
        counters: CounterSnapshot,
        event_name: Optional[str] = None,
        event_args: Optional[Dict[str, Any]] = None,
    ) -> MetricRecord:
        """由账本、估算器和归一化结果组装记录"""
        return MetricRecord(
            sequence_number=sequence_number,
            block_number=block_number,
            block_timestamp=epoch_ms_to_iso(block_timestamp_ms),
            transaction_hash=candidate.hash,
            contract_address=candidate.descriptor.address,
            contract_name=candidate.descriptor.name,
            event_name=event_name,
            event_args=event_args,
            gas=gas,
            conversion_rate=conversion_rate,
            confirmation_time_ms=confirmation_time_ms,
            cumulative_transaction_count=counters.transactions,
            cumulative_event_count=counters.events,
        )

    async def _push_one(self, sink: RecordSink, record: MetricRecord) -> bool:
        try:
            await asyncio.wait_for(sink.push(record), timeout=self.push_timeout)
            return True
        except asyncio.TimeoutError:
            logger.error(f"❌ 输出端 {sink.name} 推送超时 ({self.push_timeout}s): #{record.sequence_number}")
        except SinkUnavailable as e:
            logger.error(f"❌ 输出端不可用: {e}")
        except Exception as e:
            logger.error(f"❌ 输出端 {sink.name} 推送异常: {e}", exc_info=True)

        self.sink_failures[sink.name] += 1
        return False

    async def emit(self, record: MetricRecord) -> int:
        """推送记录到全部输出端，返回成功的输出端数量"""
        results = await asyncio.gather(*(self._push_one(sink, record) for sink in self.sinks))
        delivered = sum(1 for ok in results if ok)

        self.records_emitted += 1
        self.deliveries += delivered
        logger.info(
            f"✅ 交易已处理 #{record.sequence_number}: {record.transaction_hash} | "
            f"累计交易: {record.cumulative_transaction_count}, 累计事件: {record.cumulative_event_count} | "
            f"确认耗时: {record.confirmation_time_ms} ms | 输出端 {delivered}/{len(self.sinks)}"
        )
        return delivered

    def get_stats(self) -> Dict[str, Any]:
        return {
            'records_emitted': self.records_emitted,
            'deliveries': self.deliveries,
            'sink_failures': dict(self.sink_failures),
            'sinks': [sink.name for sink in self.sinks],
        }
