"""
测试公共工具：假 RPC、内存输出端、合约 ABI 与日志构造
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest
from eth_abi import encode
from eth_utils import event_abi_to_log_topic
from hexbytes import HexBytes

from contract_metrics_monitor.config.monitor_config import MonitorConfig
from contract_metrics_monitor.models.data_types import ContractDescriptor
from contract_metrics_monitor.models.errors import TransientFetchError
from contract_metrics_monitor.services.sinks.base import RecordSink

ORACLE_ADDRESS = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
OTHER_ADDRESS = "0xe7f1725e7734ce288f8367e1bb143e90bb3f0512"
REPORTER = "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"

PRICE_UPDATED_ABI = {
    "anonymous": False,
    "inputs": [
        {"indexed": True, "internalType": "address", "name": "reporter", "type": "address"},
        {"indexed": False, "internalType": "uint256", "name": "price", "type": "uint256"},
    ],
    "name": "PriceUpdated",
    "type": "event",
}

ROUND_CLOSED_ABI = {
    "anonymous": False,
    "inputs": [
        {"indexed": False, "internalType": "uint256", "name": "roundId", "type": "uint256"},
    ],
    "name": "RoundClosed",
    "type": "event",
}

ORACLE_ABI = (
    PRICE_UPDATED_ABI,
    ROUND_CLOSED_ABI,
    {
        "inputs": [{"internalType": "uint256", "name": "price", "type": "uint256"}],
        "name": "updatePrice",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
)

BLOCK_TIMESTAMP = 1_700_000_000


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def make_price_log(price: int, address: str = ORACLE_ADDRESS, log_index: int = 0,
                   transaction_hash: Optional[str] = None, block_number: int = 100) -> Dict[str, Any]:
    """构造 PriceUpdated 日志"""
    return {
        "address": address,
        "topics": [
            HexBytes(event_abi_to_log_topic(PRICE_UPDATED_ABI)),
            HexBytes(encode(["address"], [REPORTER])),
        ],
        "data": HexBytes(encode(["uint256"], [price])),
        "logIndex": log_index,
        "transactionIndex": 0,
        "transactionHash": HexBytes(transaction_hash or tx_hash(1)),
        "blockHash": HexBytes(b"\x01" * 32),
        "blockNumber": block_number,
    }


def make_round_log(round_id: int, **kwargs) -> Dict[str, Any]:
    log = make_price_log(0, **kwargs)
    log["topics"] = [HexBytes(event_abi_to_log_topic(ROUND_CLOSED_ABI))]
    log["data"] = HexBytes(encode(["uint256"], [round_id]))
    return log


def make_tx(hash_: str, to: str = ORACLE_ADDRESS, gas_price: Optional[int] = 20_000_000_000) -> Dict[str, Any]:
    tx = {"hash": hash_, "to": to, "from": REPORTER}
    if gas_price is not None:
        tx["gasPrice"] = gas_price
    return tx


def make_block(number: int, transactions: List[Dict[str, Any]], timestamp: Optional[int] = None) -> Dict[str, Any]:
    return {
        "number": number,
        "timestamp": timestamp if timestamp is not None else BLOCK_TIMESTAMP + (number - 100) * 12,
        "transactions": transactions,
    }


def make_receipt(block_number: int, gas_used: Any = 50_000, logs: Optional[list] = None,
                 effective_gas_price: int = 20_000_000_000) -> Dict[str, Any]:
    return {
        "blockNumber": block_number,
        "gasUsed": gas_used,
        "effectiveGasPrice": effective_gas_price,
        "status": 1,
        "logs": logs or [],
    }


class FakeRPC:
    """内存中的 RPC 管理器"""

    def __init__(self, head: int = 99):
        self.head = head
        self.blocks: Dict[int, Dict[str, Any]] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.receipt_delays: Dict[str, float] = {}
        self.block_calls: List[int] = []
        self.connection_ok = True
        self.filters_uninstalled = 0

    def add_block(self, block: Dict[str, Any]) -> None:
        self.blocks[block["number"]] = block
        self.head = max(self.head, block["number"])

    async def get_cached_block_number(self) -> int:
        return self.head

    async def check_rate_limit(self) -> None:
        return None

    async def get_block(self, block_number: int, full_transactions: bool = True):
        self.block_calls.append(block_number)
        if block_number not in self.blocks:
            raise TransientFetchError(f"区块 {block_number} 尚不可用")
        return self.blocks[block_number]

    async def get_block_timestamp(self, block_number: int) -> int:
        return (await self.get_block(block_number))["timestamp"]

    async def get_transaction_receipt(self, hash_: str):
        delay = self.receipt_delays.get(hash_)
        if delay:
            await asyncio.sleep(delay)
        if hash_ not in self.receipts:
            raise TransientFetchError(f"交易回执尚不可用: {hash_}")
        return self.receipts[hash_]

    async def get_gas_price(self) -> int:
        return 20_000_000_000

    async def create_pending_filter(self):
        return object()

    async def get_new_pending_hashes(self, pending_filter) -> List[str]:
        return []

    async def uninstall_filter(self, pending_filter) -> None:
        self.filters_uninstalled += 1

    async def test_connection(self) -> Dict[str, Any]:
        if not self.connection_ok:
            return {"success": False, "error": "connection refused", "rpc_url": "fake"}
        return {
            "success": True,
            "latest_block": self.head,
            "gas_price_gwei": 20.0,
            "network": "testnet",
            "rpc_url": "fake",
        }


class MemorySink(RecordSink):
    """把记录保存在内存中的输出端"""

    def __init__(self, name: str = "memory"):
        self.name = name
        self.records = []
        self.opened = False
        self.closed = False

    async def open(self) -> None:
        self.opened = True

    async def push(self, record) -> None:
        self.records.append(record)

    async def close(self) -> None:
        self.closed = True


class FixedClock:
    """可手动推进的毫秒时钟"""

    def __init__(self, now_ms: float):
        self.now_ms = now_ms

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float) -> None:
        self.now_ms += ms


@pytest.fixture
def descriptor() -> ContractDescriptor:
    return ContractDescriptor(name="PriceOracle", address=ORACLE_ADDRESS, abi=ORACLE_ABI)


@pytest.fixture
def config() -> MonitorConfig:
    return MonitorConfig(
        chain_name="testnet",
        rpc_url="http://localhost:8545",
        track_pending=False,
        poll_interval=0.01,
        pending_poll_interval=0.01,
        max_deferred_blocks=3,
        sink_push_timeout=0.2,
        stats_log_interval=300,
        timezone="UTC",
    )


@pytest.fixture
def fake_rpc() -> FakeRPC:
    return FakeRPC()


@pytest.fixture
def memory_sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock((BLOCK_TIMESTAMP + 100) * 1000)
