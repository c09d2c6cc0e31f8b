"""
启动信息记录模块

负责记录引擎启动时的配置状态
"""

from decimal import Decimal
from typing import Sequence

from contract_metrics_monitor.config.monitor_config import MonitorConfig
from contract_metrics_monitor.models.data_types import ContractDescriptor
from contract_metrics_monitor.utils.log_utils import get_logger, epoch_ms_to_iso

logger = get_logger(__name__)


class StartupLogger:
    """启动信息记录器"""

    def __init__(self, config: MonitorConfig):
        self.config = config

    def log_startup_info(self, descriptors: Sequence[ContractDescriptor],
                         conversion_rate: Decimal, stop_time_ms: float) -> None:
        """记录启动信息"""
        logger.info("🚀 开始监控合约交易与事件")
        logger.info(f"🔗 RPC URL: {self.config.rpc_url}")
        logger.info(f"⏱️ 轮询间隔: {self.config.poll_interval} 秒 | 区块时间: {self.config.block_time} 秒")
        logger.info(f"💱 汇率: 1 {self.config.token_name} = {conversion_rate} USD")
        logger.info(f"⏰ 停止时间: {epoch_ms_to_iso(stop_time_ms)}")
        logger.info(f"👁️ 监控合约数量: {len(descriptors)}")
        for i, descriptor in enumerate(descriptors, 1):
            logger.info(f"   {i}. {descriptor.name} ({descriptor.address})")

        if self.config.track_pending:
            logger.info("📡 已启用待确认交易跟踪")
        else:
            logger.info("🔇 未启用待确认交易跟踪，确认耗时使用区块时间戳估算")
