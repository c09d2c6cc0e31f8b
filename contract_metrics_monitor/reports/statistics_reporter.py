"""
统计报告器

负责运行统计和日志输出，提供引擎运行状态的报告
"""

import time
from typing import Any, Dict

from contract_metrics_monitor.config.monitor_config import MonitorConfig
from contract_metrics_monitor.utils.log_utils import get_logger, extended_seconds_to_hms

logger = get_logger(__name__)


class StatisticsReporter:
    """统计报告器 - 负责运行统计和日志输出"""

    def __init__(self, config: MonitorConfig):
        self.config = config
        self.start_time: float = time.time()
        self.last_stats_log: float = time.time()

    def should_log_stats(self) -> bool:
        """检查是否应该输出统计日志"""
        return time.time() - self.last_stats_log >= self.config.stats_log_interval

    def get_comprehensive_report(self, engine) -> Dict[str, Any]:
        """汇总各组件的统计信息"""
        report: Dict[str, Any] = {
            'runtime_seconds': time.time() - self.start_time,
            'state': engine.state.value,
        }
        if engine.ledger is not None:
            report['transactions'] = engine.ledger.transaction_count
            report['events'] = engine.ledger.event_count
        if engine.scanner is not None:
            stats = engine.scanner.stats
            report.update({
                'blocks_processed': stats.blocks_processed,
                'next_block': engine.scanner.next_block,
                'transactions_deferred': stats.transactions_deferred,
                'transactions_dropped': stats.transactions_dropped,
                'invalid_metrics': stats.invalid_metrics,
                'finalize_errors': stats.finalize_errors,
                'records_produced': stats.records_produced,
                'awaiting_receipt': len(engine.scanner.deferred),
            })
            report['processor'] = engine.scanner.processor.get_stats()
        if engine.estimator is not None:
            report['confirmation'] = {
                'from_pending': engine.estimator.from_pending,
                'from_block_timestamp': engine.estimator.from_block_timestamp,
                'clamped': engine.estimator.clamped,
            }
        if engine.pending_tracker is not None:
            report['pending_tracked'] = len(engine.pending_tracker)
        if engine.emitter is not None:
            report['emitter'] = engine.emitter.get_stats()
        return report

    def log_performance_stats(self, engine) -> None:
        """输出运行统计"""
        report = self.get_comprehensive_report(engine)

        logger.info(
            f"📊 运行统计 | "
            f"运行: {extended_seconds_to_hms(report['runtime_seconds'])} | "
            f"区块: {report.get('blocks_processed', 0)} | "
            f"交易: {report.get('transactions', 0)} | "
            f"事件: {report.get('events', 0)} | "
            f"等待回执: {report.get('awaiting_receipt', 0)}"
        )

        emitter_stats = report.get('emitter')
        if emitter_stats:
            failures = " | ".join(f"{k}: {v}" for k, v in emitter_stats['sink_failures'].items() if v > 0)
            logger.info(
                f"📤 输出统计 | 记录: {emitter_stats['records_emitted']} | "
                f"投递: {emitter_stats['deliveries']} | 失败: {failures or '无'}"
            )

        if engine.rpc_manager is not None and hasattr(engine.rpc_manager, 'get_performance_stats'):
            rpc_stats = engine.rpc_manager.get_performance_stats()
            logger.info(
                f"🔗 RPC统计 | "
                f"总计: {rpc_stats.rpc_calls} | "
                f"速率: {rpc_stats.avg_rpc_per_second:.2f}/s | "
                f"缓存命中率: {rpc_stats.cache_hit_rate:.1f}%"
            )

        self.last_stats_log = time.time()

    def log_final_stats(self, engine) -> None:
        """输出最终统计报告"""
        logger.info("=" * 60)
        logger.info(f"🏁 运行结束 ({engine.stop_reason or 'unknown'})")
        self.log_performance_stats(engine)
        logger.info("=" * 60)
