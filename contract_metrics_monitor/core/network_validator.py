"""
网络连接验证模块

负责验证网络连接和显示连接信息
"""

from typing import Any, Dict, Sequence

from contract_metrics_monitor.models.data_types import ContractDescriptor
from contract_metrics_monitor.utils.log_utils import get_logger

logger = get_logger(__name__)


class NetworkValidator:
    """网络连接验证器"""

    def __init__(self, rpc_manager, descriptors: Sequence[ContractDescriptor]):
        """
        初始化网络验证器

        Args:
            rpc_manager: RPC管理器
            descriptors: 被监控的合约描述符
        """
        self.rpc_manager = rpc_manager
        self.descriptors = descriptors

    async def check_network_connection(self) -> Dict[str, Any]:
        """
        检查网络连接

        Returns:
            连接信息字典

        Raises:
            ConnectionError: 连接失败时抛出
        """
        logger.info("🌐 正在检查网络连接...")

        connection_info = await self.rpc_manager.test_connection()

        if connection_info['success']:
            logger.info(
                f"🌐 {connection_info['network']} 连接成功 - "
                f"区块: {connection_info['latest_block']}, "
                f"Gas: {connection_info['gas_price_gwei']:.2f} Gwei"
            )
            self._log_watched_contracts()
            return connection_info
        else:
            logger.error(f"网络连接失败: {connection_info['error']}")
            raise ConnectionError(f"无法连接到RPC: {connection_info['error']}")

    def _log_watched_contracts(self) -> None:
        """记录被监控的合约信息"""
        logger.info("📜 被监控的合约:")
        for descriptor in self.descriptors:
            logger.info(f"   {descriptor.name}: {descriptor.address}")
