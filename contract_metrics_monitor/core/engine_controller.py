"""
引擎控制器

协调各个组件，负责一次运行的启动、截止时间控制和停止：
IDLE → RUNNING → STOPPING → STOPPED
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from contract_metrics_monitor.config.monitor_config import MonitorConfig
from contract_metrics_monitor.core.block_scanner import BlockScanner, SubscriptionHandle
from contract_metrics_monitor.core.network_validator import NetworkValidator
from contract_metrics_monitor.core.sink_initializer import build_sinks
from contract_metrics_monitor.core.startup_logger import StartupLogger
from contract_metrics_monitor.managers.confirmation_estimator import ConfirmationEstimator
from contract_metrics_monitor.managers.pending_tracker import PendingTracker, _now_ms
from contract_metrics_monitor.managers.rpc_manager import RPCManager
from contract_metrics_monitor.managers.sequence_ledger import SequenceLedger
from contract_metrics_monitor.models.data_types import ContractDescriptor, EngineState
from contract_metrics_monitor.models.errors import ConfigurationError, InvalidMetric
from contract_metrics_monitor.processors.metrics_normalizer import parse_conversion_rate
from contract_metrics_monitor.processors.transaction_processor import TransactionProcessor
from contract_metrics_monitor.reports.statistics_reporter import StatisticsReporter
from contract_metrics_monitor.services.record_emitter import RecordEmitter
from contract_metrics_monitor.services.sinks.base import RecordSink
from contract_metrics_monitor.utils.contract_loader import validate_descriptors
from contract_metrics_monitor.utils.log_utils import get_logger, epoch_ms_to_iso

logger = get_logger(__name__)


def parse_stop_time(value: Union[str, datetime]) -> float:
    """把停止时间解析为毫秒时间戳，不带时区的时间按本地时间处理"""
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(('Z', 'z')):
            text = text[:-1] + '+00:00'
        try:
            moment = datetime.fromisoformat(text)
        except ValueError:
            raise ConfigurationError(f"停止时间格式无效: {value!r}")
    else:
        raise ConfigurationError(f"停止时间类型不支持: {type(value).__name__}")
    return moment.timestamp() * 1000


class EngineController:
    """引擎控制器 - 一个实例负责一条链上的一次运行"""

    def __init__(
        self,
        config: MonitorConfig,
        rpc_manager: Optional[Any] = None,
        sinks: Optional[Sequence[RecordSink]] = None,
        clock: Callable[[], float] = _now_ms,
    ):
        self.config = config
        self.rpc_manager = rpc_manager
        self.clock = clock
        self._sinks = sinks

        self.state = EngineState.IDLE
        self.stop_reason: Optional[str] = None
        self.stop_time_ms: Optional[float] = None

        self.ledger: Optional[SequenceLedger] = None
        self.pending_tracker: Optional[PendingTracker] = None
        self.estimator: Optional[ConfirmationEstimator] = None
        self.emitter: Optional[RecordEmitter] = None
        self.scanner: Optional[BlockScanner] = None
        self.handle: Optional[SubscriptionHandle] = None
        self.stats_reporter = StatisticsReporter(config)

        self._stopped_event = asyncio.Event()
        self._background_tasks: List[asyncio.Task] = []

    async def start(
        self,
        descriptors: Sequence[ContractDescriptor],
        conversion_rate: Any,
        stop_time: Union[str, datetime],
    ) -> None:
        """
        校验输入并启动一次运行

        Raises:
            RuntimeError: 引擎不是 IDLE 状态
            ConfigurationError: 合约描述符、汇率或停止时间无效，引擎保持 IDLE
        """
        if self.state != EngineState.IDLE:
            raise RuntimeError(f"引擎已启动过，当前状态: {self.state.value}")

        descriptors = validate_descriptors(descriptors)
        try:
            rate = parse_conversion_rate(conversion_rate)
        except InvalidMetric as e:
            raise ConfigurationError(str(e))
        stop_time_ms = parse_stop_time(stop_time)
        processor = TransactionProcessor(descriptors)

        self.stop_time_ms = stop_time_ms
        self.ledger = SequenceLedger()
        self.pending_tracker = PendingTracker(self.config.pending_max_entries, clock=self.clock)
        self.estimator = ConfirmationEstimator(self.pending_tracker, clock=self.clock)
        sinks = self._sinks if self._sinks is not None else build_sinks(chain_name=self.config.chain_name)
        self.emitter = RecordEmitter(sinks, push_timeout=self.config.sink_push_timeout)
        if self.rpc_manager is None:
            self.rpc_manager = RPCManager(self.config)

        self.scanner = BlockScanner(
            config=self.config,
            rpc_manager=self.rpc_manager,
            processor=processor,
            ledger=self.ledger,
            pending_tracker=self.pending_tracker,
            estimator=self.estimator,
            emitter=self.emitter,
            conversion_rate=rate,
            stop_time_ms=stop_time_ms,
            clock=self.clock,
            on_deadline=self._on_scanner_deadline,
        )

        try:
            await self.emitter.open()
            await NetworkValidator(self.rpc_manager, descriptors).check_network_connection()
            head = await self.rpc_manager.get_cached_block_number()
            self.handle = self.scanner.start(head + 1)
        except Exception as e:
            logger.error(f"❌ 引擎启动失败: {e}", exc_info=True)
            self.stop_reason = "startup_failed"
            await self._release()
            self.state = EngineState.STOPPED
            self._stopped_event.set()
            raise

        self.state = EngineState.RUNNING
        StartupLogger(self.config).log_startup_info(descriptors, rate, stop_time_ms)
        self._background_tasks = [
            asyncio.create_task(self._watch_deadline()),
            asyncio.create_task(self._report_stats()),
        ]

    async def cancel(self, reason: str = "cancelled") -> None:
        """停止运行（可重复调用）"""
        if self.state != EngineState.RUNNING:
            logger.debug(f"引擎当前状态 {self.state.value}，忽略停止请求")
            return

        self.state = EngineState.STOPPING
        self.stop_reason = reason
        logger.info(f"🛑 正在停止引擎: {reason}")

        self.scanner.stop()
        await self._release()

        current = asyncio.current_task()
        others = [task for task in self._background_tasks if task is not current]
        for task in others:
            task.cancel()
        await asyncio.gather(*others, return_exceptions=True)

        self.stats_reporter.log_final_stats(self)
        self.state = EngineState.STOPPED
        self._stopped_event.set()
        logger.info("✅ 引擎已停止")

    async def _release(self) -> None:
        """释放订阅、等待当前区块处理完成并关闭输出端"""
        if self.handle is not None:
            await self.handle.close()
        if self.scanner is not None:
            self.scanner.stop()
            await self.scanner.wait_idle()
        if self.emitter is not None:
            await self.emitter.close()

    def _on_scanner_deadline(self) -> None:
        task = asyncio.create_task(self.cancel("deadline"))
        self._background_tasks.append(task)

    async def _watch_deadline(self) -> None:
        """到达停止时间后停止运行，即使没有新区块"""
        delay = (self.stop_time_ms - self.clock()) / 1000
        if delay > 0:
            await asyncio.sleep(delay)
        logger.info(f"⏰ 已到达停止时间 {epoch_ms_to_iso(self.stop_time_ms)}")
        await self.cancel("deadline")

    async def _report_stats(self) -> None:
        """定期输出运行统计"""
        while self.state == EngineState.RUNNING:
            await asyncio.sleep(min(self.config.stats_log_interval, 60))
            if self.stats_reporter.should_log_stats():
                self.stats_reporter.log_performance_stats(self)

    async def wait_stopped(self) -> None:
        """等待引擎停止"""
        await self._stopped_event.wait()

    async def run(
        self,
        descriptors: Sequence[ContractDescriptor],
        conversion_rate: Any,
        stop_time: Union[str, datetime],
    ) -> None:
        """启动并等待运行结束"""
        await self.start(descriptors, conversion_rate, stop_time)
        await self.wait_stopped()

    @property
    def is_running(self) -> bool:
        return self.state == EngineState.RUNNING

    def status(self) -> Dict[str, Any]:
        """获取当前引擎状态"""
        status: Dict[str, Any] = {
            'state': self.state.value,
            'chain': self.config.chain_name,
            'stop_reason': self.stop_reason,
            'stop_time': epoch_ms_to_iso(self.stop_time_ms) if self.stop_time_ms is not None else None,
        }
        if self.state != EngineState.IDLE:
            report = self.stats_reporter.get_comprehensive_report(self)
            for key in ('transactions', 'events', 'blocks_processed', 'next_block',
                        'records_produced', 'awaiting_receipt'):
                if key in report:
                    status[key] = report[key]
        return status
