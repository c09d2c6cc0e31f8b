"""
监控配置管理模块

统一管理所有监控相关的配置参数，便于维护和调整
"""

from dataclasses import dataclass, field
from typing import Dict, List, Any

from contract_metrics_monitor.config.base_config import (
    ActiveConfig,
    ConfigMap,
    ContractsConfig,
    MonitorSettings,
    ApiConfig,
    get_active_chain_name,
)


@dataclass
class MonitorConfig:
    """监控配置类 - 集中管理所有配置参数"""

    # 基础连接配置
    chain_name: str = ActiveConfig.get("chain_name", get_active_chain_name())
    rpc_url: str = ActiveConfig.get("rpc_url", "")
    scan_url: str = ActiveConfig.get("scan_url", "")
    token_name: str = ActiveConfig.get("token_name", "ETH")
    block_time: int = ActiveConfig.get("block_time", 12)  # 出块时间（秒）
    poa_chain: bool = ActiveConfig.get("poa_chain", False)

    # 监控参数配置
    conversion_rate: float = MonitorSettings.get("conversion_rate", 0.0)  # 原生代币 USD 价格
    poll_interval: float = MonitorSettings.get("poll_interval", 2.0)  # 新区块轮询间隔（秒）
    pending_poll_interval: float = MonitorSettings.get("pending_poll_interval", 1.0)
    track_pending: bool = MonitorSettings.get("track_pending", True)
    pending_max_entries: int = MonitorSettings.get("pending_max_entries", 100000)
    max_deferred_blocks: int = MonitorSettings.get("max_deferred_blocks", 0)  # 0 表示不限次数
    sink_push_timeout: float = MonitorSettings.get("sink_push_timeout", 10.0)  # 单条记录推送超时（秒）
    cache_ttl: float = 1.5  # 区块号缓存时间

    # 被监控合约 [{name, address, abi_path | abi}]
    contracts: List[Dict[str, Any]] = field(default_factory=lambda: list(ContractsConfig))
    abi_dir: str = MonitorSettings.get("abi_dir", "contracts/abis")

    # 调度时区（HTTP 接口 HH:mm 解析）
    timezone: str = ApiConfig.get("timezone", "Europe/Berlin")

    # API限制配置
    max_rpc_per_second: int = MonitorSettings.get("max_rpc_per_second", 20)
    max_rpc_per_day: int = MonitorSettings.get("max_rpc_per_day", 1000000)

    # 日志配置
    stats_log_interval: int = MonitorSettings.get("stats_log_interval", 300)  # 性能统计日志间隔（秒）

    def to_dict(self) -> Dict:
        """转换为字典格式，便于序列化"""
        return {
            'chain_name': self.chain_name,
            'rpc_url': self.rpc_url,
            'scan_url': self.scan_url,
            'token_name': self.token_name,
            'conversion_rate': self.conversion_rate,
            'poll_interval': self.poll_interval,
            'track_pending': self.track_pending,
            'max_deferred_blocks': self.max_deferred_blocks,
            'sink_push_timeout': self.sink_push_timeout,
            'contracts_count': len(self.contracts),
            'max_rpc_per_second': self.max_rpc_per_second,
            'max_rpc_per_day': self.max_rpc_per_day,
            'stats_log_interval': self.stats_log_interval,
        }

    @classmethod
    def from_chain_name(cls, chain_name: str) -> 'MonitorConfig':
        """通过链名称创建监控配置实例

        Args:
            chain_name: 链名称，如 'sepolia', 'mainnet' 等

        Returns:
            MonitorConfig: 配置实例

        Raises:
            ValueError: 当指定的链名称不存在时
        """
        if chain_name not in ConfigMap:
            available_chains = list(ConfigMap.keys())
            raise ValueError(f"链 '{chain_name}' 不存在。可用的链: {available_chains}")

        chain_config = ConfigMap[chain_name]

        return cls(
            chain_name=chain_name,
            rpc_url=chain_config.get("rpc_url", ""),
            scan_url=chain_config.get("scan_url", ""),
            token_name=chain_config.get("token_name", "ETH"),
            block_time=chain_config.get("block_time", 12),
            poa_chain=chain_config.get("poa_chain", False),
        )

    @staticmethod
    def get_available_chains() -> list:
        """获取所有可用的链名称"""
        return list(ConfigMap.keys())
