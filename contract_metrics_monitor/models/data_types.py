"""
监控数据类型定义

定义监控过程中使用的各种数据结构
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, Any, Optional, Tuple


class EngineState(Enum):
    """引擎运行状态"""
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ContractDescriptor:
    """被监控合约描述：名称、地址（小写）、ABI"""
    name: str
    address: str
    abi: Tuple[Dict[str, Any], ...]

    def __str__(self) -> str:
        return f"{self.name}({self.address})"


@dataclass
class WatchedTransaction:
    """已登记的交易，序号一经分配永不改变"""
    hash: str
    block_number: Optional[int]
    sequence_number: int


@dataclass
class WatchedEvent:
    """已登记的事件，身份键为 (交易哈希, 事件名)"""
    transaction_hash: str
    event_name: str
    sequence_number: int


@dataclass(frozen=True)
class CounterSnapshot:
    """某一时刻的累计计数"""
    transactions: int
    events: int


@dataclass(frozen=True)
class DecodedEvent:
    """解码后的合约事件"""
    name: str
    args: Dict[str, Any]
    log_index: Optional[int] = None


@dataclass
class ScanCandidate:
    """区块中命中监控合约、等待回执的交易"""
    hash: str
    tx: Dict[str, Any]
    descriptor: ContractDescriptor
    block_number: int
    block_timestamp_ms: int
    deferred_passes: int = 0

    def __str__(self) -> str:
        return (f"ScanCandidate(hash={self.hash[:10]}..., "
                f"contract={self.descriptor.name}, block={self.block_number})")


@dataclass(frozen=True)
class GasMetrics:
    """Gas 数值（Wei / ETH / USD）"""
    gas_used_wei: int
    gas_used_eth: Decimal
    gas_used_usd: Decimal
    gas_price_wei: int
    gas_price_eth: Decimal
    gas_price_usd: Decimal


@dataclass(frozen=True)
class MetricRecord:
    """单笔交易的最终指标记录，生成后不可变"""
    sequence_number: int
    block_number: int
    block_timestamp: str
    transaction_hash: str
    contract_address: str
    contract_name: str
    event_name: Optional[str]
    event_args: Optional[Dict[str, Any]]
    gas: GasMetrics
    conversion_rate: Decimal
    confirmation_time_ms: Optional[int]
    cumulative_transaction_count: int
    cumulative_event_count: int

    def to_dict(self) -> Dict[str, Any]:
        """转换为记录日志的 JSON 结构"""
        return {
            'sequenceNumber': self.sequence_number,
            'blockNumber': self.block_number,
            'blockTimestamp': self.block_timestamp,
            'transactionHash': self.transaction_hash,
            'contract': self.contract_address,
            'contractName': self.contract_name,
            'eventName': self.event_name,
            'eventArgs': self.event_args,
            'gasUsedWei': str(self.gas.gas_used_wei),
            'gasUsed': str(self.gas.gas_used_eth),
            'gasUsedInUSD': str(self.gas.gas_used_usd),
            'gasPriceWei': str(self.gas.gas_price_wei),
            'gasPrice': str(self.gas.gas_price_eth),
            'gasPriceInUSD': str(self.gas.gas_price_usd),
            'usedETHPriceUSD': str(self.conversion_rate),
            'confirmationTime': self.confirmation_time_ms,
            'totalTransactions': self.cumulative_transaction_count,
            'totalEvents': self.cumulative_event_count,
        }


@dataclass
class PerformanceMetrics:
    """RPC 性能指标数据类"""
    rpc_calls: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    avg_rpc_per_second: float = 0.0
    cache_hit_rate: float = 0.0
    estimated_daily_calls: float = 0.0
    within_rate_limit: bool = True
    api_usage_percent: float = 0.0
    rpc_calls_by_type: Dict[str, int] = field(default_factory=dict)


@dataclass
class ScanStats:
    """区块扫描统计数据类"""
    blocks_processed: int = 0
    transactions_matched: int = 0
    transactions_deferred: int = 0
    transactions_dropped: int = 0
    invalid_metrics: int = 0
    finalize_errors: int = 0
    records_produced: int = 0
