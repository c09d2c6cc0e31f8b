"""
区块扫描器

按区块号严格递增的顺序逐块处理，同一时刻只有一个处理流程：
处理中收到的新区块通知只记录最新区块号，由当前流程继续处理。

单个区块分两步处理：
1. 并发探测回执是否可用，再按区块内顺序依次登记序号；
2. 按登记顺序逐笔解析事件、估算确认耗时、换算 Gas 并发送记录。
回执尚不可用的交易不登记，留到下一个区块继续尝试。
"""

import asyncio
from decimal import Decimal
from typing import Any, Callable, List, Optional, Set

from contract_metrics_monitor.config.monitor_config import MonitorConfig
from contract_metrics_monitor.managers.confirmation_estimator import ConfirmationEstimator
from contract_metrics_monitor.managers.pending_tracker import PendingTracker, _now_ms
from contract_metrics_monitor.managers.sequence_ledger import SequenceLedger
from contract_metrics_monitor.models.data_types import ScanCandidate, ScanStats
from contract_metrics_monitor.models.errors import InvalidMetric, TransientFetchError
from contract_metrics_monitor.processors.metrics_normalizer import normalize
from contract_metrics_monitor.processors.transaction_processor import TransactionProcessor
from contract_metrics_monitor.services.record_emitter import RecordEmitter
from contract_metrics_monitor.utils.log_utils import get_logger

logger = get_logger(__name__)


class SubscriptionHandle:
    """区块与待确认交易订阅句柄，close() 可重复调用"""

    def __init__(self, tasks: List[asyncio.Task]):
        self._tasks = tasks
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("🔕 已释放区块与待确认交易订阅")


class BlockScanner:
    """区块扫描器 - 保证区块按序、单流程处理"""

    def __init__(
        self,
        config: MonitorConfig,
        rpc_manager: Any,
        processor: TransactionProcessor,
        ledger: SequenceLedger,
        pending_tracker: PendingTracker,
        estimator: ConfirmationEstimator,
        emitter: RecordEmitter,
        conversion_rate: Decimal,
        stop_time_ms: float,
        clock: Callable[[], float] = _now_ms,
        on_deadline: Optional[Callable[[], None]] = None,
    ):
        self.config = config
        self.rpc_manager = rpc_manager
        self.processor = processor
        self.ledger = ledger
        self.pending_tracker = pending_tracker
        self.estimator = estimator
        self.emitter = emitter
        self.conversion_rate = conversion_rate
        self.stop_time_ms = stop_time_ms
        self.clock = clock
        self.on_deadline = on_deadline

        self.next_block: Optional[int] = None
        self.latest_notified: Optional[int] = None
        self.deferred: List[ScanCandidate] = []
        self.stats = ScanStats()

        self._lock = asyncio.Lock()
        self._pass_tasks: Set[asyncio.Task] = set()
        self._stopped = False
        self.deadline_reached = False

    # ------------------------------------------------------------------
    # 订阅
    # ------------------------------------------------------------------

    def start(self, start_block: int) -> SubscriptionHandle:
        """从 start_block 开始处理，启动轮询并返回订阅句柄"""
        self.next_block = start_block
        self.latest_notified = start_block - 1

        tasks = [asyncio.create_task(self._poll_blocks())]
        if self.config.track_pending:
            tasks.append(asyncio.create_task(self._poll_pending()))

        logger.info(f"👂 开始监听新区块，起始区块: {start_block}")
        return SubscriptionHandle(tasks)

    async def _poll_blocks(self) -> None:
        """按固定间隔轮询最新区块号"""
        while not self._stopped:
            try:
                head = await self.rpc_manager.get_cached_block_number()
                await self.rpc_manager.check_rate_limit()
                self.notify(head)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"获取当前区块号失败: {e}")
            await asyncio.sleep(self.config.poll_interval)

    async def _poll_pending(self) -> None:
        """轮询待确认交易过滤器，记录首次发现时间"""
        try:
            pending_filter = await self.rpc_manager.create_pending_filter()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"⚠️ 节点不支持待确认交易过滤器，确认耗时将使用区块时间戳估算: {e}")
            return

        try:
            while not self._stopped:
                try:
                    for tx_hash in await self.rpc_manager.get_new_pending_hashes(pending_filter):
                        self.pending_tracker.record(tx_hash)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"拉取待确认交易失败: {e}")
                await asyncio.sleep(self.config.pending_poll_interval)
        finally:
            try:
                await self.rpc_manager.uninstall_filter(pending_filter)
            except Exception as e:
                logger.debug(f"卸载待确认交易过滤器失败: {e}")

    # ------------------------------------------------------------------
    # 区块通知
    # ------------------------------------------------------------------

    def notify(self, block_number: int) -> None:
        """收到区块通知，在后台任务中处理"""
        task = asyncio.create_task(self.on_block(block_number))
        self._pass_tasks.add(task)
        task.add_done_callback(self._pass_tasks.discard)

    async def on_block(self, block_number: int) -> None:
        """处理区块通知；已有处理流程时只记录区块号，由其继续处理"""
        if self._stopped:
            return

        if self.next_block is None:
            self.next_block = block_number
        if self.latest_notified is None or block_number > self.latest_notified:
            self.latest_notified = block_number

        if self._lock.locked():
            logger.debug(f"区块 {block_number} 已排队，等待当前处理完成")
            return

        async with self._lock:
            await self._drain()

    async def _drain(self) -> None:
        while not self._stopped and self.next_block <= self.latest_notified:
            # 截止时间按区块检查，处理中的区块总会完成
            if self.clock() >= self.stop_time_ms:
                self._handle_deadline()
                break

            block_number = self.next_block
            try:
                await self._process_block(block_number)
            except TransientFetchError as e:
                logger.debug(f"区块 {block_number} 暂不可用，等待下次通知: {e}")
                break
            except Exception as e:
                logger.error(f"处理区块 {block_number} 时出错，等待下次通知重试: {e}", exc_info=True)
                break

            self.next_block = block_number + 1
            self.stats.blocks_processed += 1

    def _handle_deadline(self) -> None:
        if self.deadline_reached:
            return
        self.deadline_reached = True
        logger.info("⏰ 已到达停止时间，停止扫描")
        self.stop()
        if self.on_deadline:
            self.on_deadline()

    def stop(self) -> None:
        """停止处理新区块（可重复调用）"""
        if self._stopped:
            return
        self._stopped = True
        logger.info("正在停止区块扫描...")

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    async def wait_idle(self) -> None:
        """等待正在处理的区块完成"""
        if self._pass_tasks:
            await asyncio.gather(*list(self._pass_tasks), return_exceptions=True)
        async with self._lock:
            pass

    # ------------------------------------------------------------------
    # 单个区块
    # ------------------------------------------------------------------

    async def _process_block(self, block_number: int) -> None:
        block = await self.rpc_manager.get_block(block_number)
        logger.info(f"🔍 扫描区块 {block_number} ({len(block.get('transactions') or [])} 笔交易)")

        candidates = self._collect_candidates(block)
        if not candidates:
            return

        receipts = await asyncio.gather(*(self._probe_receipt(c) for c in candidates))

        # 第一步：按顺序登记序号
        admitted = []
        deferred = []
        for candidate, receipt in zip(candidates, receipts):
            if receipt is None:
                candidate.deferred_passes += 1
                limit = self.config.max_deferred_blocks
                if limit and candidate.deferred_passes > limit:
                    logger.warning(
                        f"⚠️ 交易 {candidate.hash} 回执在 {limit} 个区块内仍不可用，放弃"
                    )
                    self.stats.transactions_dropped += 1
                else:
                    deferred.append(candidate)
                    self.stats.transactions_deferred += 1
                continue

            sequence_number = self.ledger.admit_transaction(candidate.hash, candidate.block_number)
            admitted.append((candidate, receipt, sequence_number))
        self.deferred = deferred

        # 第二步：按登记顺序处理并发送，单笔出错不影响同区块其余交易
        for candidate, receipt, sequence_number in admitted:
            try:
                await self._finalize(candidate, receipt, sequence_number)
            except Exception as e:
                logger.error(f"处理交易 #{sequence_number} {candidate.hash} 时出错，跳过该记录: {e}", exc_info=True)
                self.stats.finalize_errors += 1

    def _collect_candidates(self, block) -> List[ScanCandidate]:
        """上次延后的交易在前，本区块命中的交易按区块内顺序在后"""
        candidates = []
        seen = set()
        for candidate in self.deferred + self.processor.select_transactions(block):
            if candidate.hash in seen or self.ledger.has_transaction(candidate.hash):
                continue
            seen.add(candidate.hash)
            candidates.append(candidate)

        self.stats.transactions_matched = self.processor.get_stats()['transactions_total']
        return candidates

    async def _probe_receipt(self, candidate: ScanCandidate):
        try:
            return await self.rpc_manager.get_transaction_receipt(candidate.hash)
        except TransientFetchError:
            logger.info(f"⏳ 交易回执尚不可用，稍后重试: {candidate.hash}")
        except Exception as e:
            logger.warning(f"获取交易回执失败，稍后重试: {candidate.hash} - {e}")
        return None

    async def _resolve_block_timestamp_ms(self, candidate: ScanCandidate, block_number: int) -> int:
        if block_number == candidate.block_number:
            return candidate.block_timestamp_ms
        try:
            return int(await self.rpc_manager.get_block_timestamp(block_number)) * 1000
        except Exception as e:
            logger.warning(f"获取区块 {block_number} 时间戳失败，使用扫描区块时间: {e}")
            return candidate.block_timestamp_ms

    async def _finalize(self, candidate: ScanCandidate, receipt, sequence_number: int) -> None:
        tx_hash = candidate.hash
        logger.debug(f"处理交易 #{sequence_number}: {tx_hash}")

        block_number = receipt.get('blockNumber') or candidate.block_number
        block_timestamp_ms = await self._resolve_block_timestamp_ms(candidate, block_number)

        # 同一交易内同名事件只计一次，记录中保留最后一个新事件
        event_name = None
        event_args = None
        for event in self.processor.decode_events(candidate, receipt):
            if self.ledger.has_event(tx_hash, event.name):
                continue
            self.ledger.admit_event(tx_hash, event.name)
            event_name, event_args = event.name, event.args

        confirmation_time_ms = self.estimator.estimate(tx_hash, block_timestamp_ms)

        gas_price = candidate.tx.get('gasPrice')
        if gas_price is None:
            gas_price = receipt.get('effectiveGasPrice')
        try:
            gas = normalize(receipt.get('gasUsed'), gas_price, self.conversion_rate)
        except InvalidMetric as e:
            logger.warning(f"⚠️ 交易 {tx_hash} 指标无效，丢弃记录: {e}")
            self.stats.invalid_metrics += 1
            return

        record = self.emitter.assemble(
            candidate=candidate,
            sequence_number=sequence_number,
            block_number=block_number,
            block_timestamp_ms=block_timestamp_ms,
            gas=gas,
            conversion_rate=self.conversion_rate,
            confirmation_time_ms=confirmation_time_ms,
            counters=self.ledger.snapshot(),
            event_name=event_name,
            event_args=event_args,
        )
        self.stats.records_produced += 1
        await self.emitter.emit(record)
