"""
InfluxDB 指标输出端

通过 influxdb-client 异步写入接口推送数据点：
- oracle_performance_metrics: 单笔交易的 Gas 与计数指标
- transaction_counter / event_counter: 以区块时间为时间戳的累计计数序列
"""

import asyncio
import time
from datetime import datetime
from typing import List, Optional

import aiohttp
from influxdb_client import Point, WritePrecision
from influxdb_client.client.influxdb_client_async import InfluxDBClientAsync
from influxdb_client.rest import ApiException

from contract_metrics_monitor.models.data_types import MetricRecord
from contract_metrics_monitor.models.errors import SinkUnavailable
from contract_metrics_monitor.services.sinks.base import RecordSink
from contract_metrics_monitor.utils.log_utils import get_logger

logger = get_logger(__name__)

METRICS_MEASUREMENT = "oracle_performance_metrics"
TRANSACTION_COUNTER = "transaction_counter"
EVENT_COUNTER = "event_counter"
TRANSACTION_ONLY = "TransactionOnly"


def _timestamp_ms(record: MetricRecord) -> int:
    parsed = datetime.fromisoformat(record.block_timestamp.replace('Z', '+00:00'))
    return int(parsed.timestamp() * 1000)


def _counter_point(measurement: str, value: int, timestamp_ms: int) -> Point:
    return (
        Point(measurement)
        .tag('type', 'cumulative')
        .field('value', int(value))
        .time(timestamp_ms, WritePrecision.MS)
    )


def build_record_points(record: MetricRecord) -> List[Point]:
    """把一条记录转换为指标点和两个累计计数点，三者共用区块时间戳"""
    timestamp_ms = _timestamp_ms(record)

    point = (
        Point(METRICS_MEASUREMENT)
        .tag('contract', record.contract_address)
        .tag('txHash', record.transaction_hash)
        .tag('eventName', record.event_name or TRANSACTION_ONLY)
        .field('gasUsed', float(record.gas.gas_used_eth))
        .field('gasUsedInUSD', float(record.gas.gas_used_usd))
        .field('avgGasPrice', float(record.gas.gas_price_eth))
        .field('avgGasPriceInUSD', float(record.gas.gas_price_usd))
        .field('usedETHPriceUSD', float(record.conversion_rate))
        .field('Block Number', int(record.block_number))
        .field('totalEvents', int(record.cumulative_event_count))
        .field('totalTransactions', int(record.cumulative_transaction_count))
        .time(timestamp_ms, WritePrecision.MS)
    )
    if record.confirmation_time_ms is not None:
        point.field('confirmationTime', int(record.confirmation_time_ms))

    return [
        point,
        _counter_point(TRANSACTION_COUNTER, record.cumulative_transaction_count, timestamp_ms),
        _counter_point(EVENT_COUNTER, record.cumulative_event_count, timestamp_ms),
    ]


def build_counter_init_points(timestamp_ms: int) -> List[Point]:
    """运行开始时写入的零值计数点"""
    return [
        _counter_point(TRANSACTION_COUNTER, 0, timestamp_ms).tag('status', 'initialized'),
        _counter_point(EVENT_COUNTER, 0, timestamp_ms).tag('status', 'initialized'),
    ]


class InfluxMetricsSink(RecordSink):
    """InfluxDB v2 输出端"""

    name = "influxdb"

    def __init__(self, url: str, token: str, org: str, bucket: str,
                 timeout: float = 10, initialize_counters: bool = True):
        self.url = url.rstrip('/')
        self.token = token
        self.org = org
        self.bucket = bucket
        self.timeout = timeout
        self.initialize_counters = initialize_counters
        self.client: Optional[InfluxDBClientAsync] = None
        self.write_api = None
        self.healthy: bool = False

        # 统计信息
        self.points_written: int = 0
        self.write_failures: int = 0

    async def open(self) -> None:
        self.client = InfluxDBClientAsync(
            url=self.url,
            token=self.token,
            org=self.org,
            timeout=int(self.timeout * 1000),
        )
        self.write_api = self.client.write_api()

        await self.check_connection()
        logger.info(f"📈 InfluxDB 输出端已就绪: {self.url} (bucket={self.bucket})")

        if self.initialize_counters:
            try:
                await self._write(build_counter_init_points(int(time.time() * 1000)))
                logger.info("✅ 已在 InfluxDB 中初始化零值计数")
            except SinkUnavailable as e:
                logger.error(f"❌ 初始化 InfluxDB 计数失败: {e}")

    async def check_connection(self) -> bool:
        """检查 InfluxDB 是否可达，不可达时只记录错误"""
        try:
            self.healthy = bool(await self.client.ping())
        except (ApiException, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"InfluxDB ping 失败: {e}")
            self.healthy = False

        if self.healthy:
            logger.info("✅ InfluxDB 连接成功")
        else:
            logger.error(f"❌ 无法连接 InfluxDB: {self.url}")
        return self.healthy

    async def _write(self, points: List[Point]) -> None:
        if self.write_api is None:
            raise SinkUnavailable(self.name, "客户端未建立")

        try:
            await self.write_api.write(
                bucket=self.bucket,
                org=self.org,
                record=points,
                write_precision=WritePrecision.MS,
            )
        except ApiException as e:
            self.write_failures += 1
            raise SinkUnavailable(self.name, f"HTTP {e.status}: {str(e.body)[:200]}")
        except asyncio.TimeoutError:
            self.write_failures += 1
            raise SinkUnavailable(self.name, f"请求超时 ({self.timeout}s)")
        except aiohttp.ClientError as e:
            self.write_failures += 1
            raise SinkUnavailable(self.name, f"网络错误: {e}")

        self.points_written += len(points)

    async def push(self, record: MetricRecord) -> None:
        await self._write(build_record_points(record))
        logger.debug(
            f"指标已上传 InfluxDB: 交易 {record.cumulative_transaction_count}, "
            f"事件 {record.cumulative_event_count}"
        )

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
        self.client = None
        self.write_api = None
