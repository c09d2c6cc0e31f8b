"""
输出端初始化模块

根据配置创建记录日志、InfluxDB 和 RabbitMQ 输出端
"""

from typing import Any, Dict, List, Optional

from contract_metrics_monitor.config.base_config import (
    get_influx_config,
    get_rabbitmq_config,
    get_record_log_config,
)
from contract_metrics_monitor.services.sinks.base import RecordSink
from contract_metrics_monitor.services.sinks.influx_sink import InfluxMetricsSink
from contract_metrics_monitor.services.sinks.rabbitmq_sink import RabbitMQRecordSink
from contract_metrics_monitor.services.sinks.record_log_sink import RecordLogSink
from contract_metrics_monitor.utils.log_utils import get_logger

logger = get_logger(__name__)


def build_sinks(
    record_log_config: Optional[Dict[str, Any]] = None,
    influx_config: Optional[Dict[str, Any]] = None,
    rabbitmq_config: Optional[Dict[str, Any]] = None,
    chain_name: Optional[str] = None,
) -> List[RecordSink]:
    """
    创建已启用的输出端

    Args:
        record_log_config: 记录日志配置，默认读取配置文件
        influx_config: InfluxDB 配置，默认读取配置文件
        rabbitmq_config: RabbitMQ 配置，默认读取配置文件
        chain_name: 链名称，用于区分不同实例的交换机

    Returns:
        输出端列表
    """
    record_log_config = record_log_config if record_log_config is not None else get_record_log_config()
    influx_config = influx_config if influx_config is not None else get_influx_config()
    rabbitmq_config = rabbitmq_config if rabbitmq_config is not None else get_rabbitmq_config()

    sinks: List[RecordSink] = []

    if record_log_config.get('enabled', True):
        sinks.append(RecordLogSink(record_log_config.get('path', 'data/metric_records.jsonl')))
        logger.debug("✅ 记录日志输出端已创建")

    if influx_config.get('enabled', False):
        sinks.append(InfluxMetricsSink(
            url=influx_config.get('url', 'http://localhost:8086'),
            token=influx_config.get('token', ''),
            org=influx_config.get('org', ''),
            bucket=influx_config.get('bucket', ''),
            timeout=influx_config.get('timeout', 10),
        ))
        logger.debug("✅ InfluxDB 输出端已创建")
    else:
        logger.info("🔇 InfluxDB 未启用")

    if rabbitmq_config.get('enabled', False):
        exchange_name = rabbitmq_config.get('exchange_name', 'contract_metrics')
        if chain_name:
            # 为每个链创建独特的交换机名称
            exchange_name = f"{exchange_name}_{chain_name}"
        sinks.append(RabbitMQRecordSink(
            host=rabbitmq_config.get('host', 'localhost'),
            port=rabbitmq_config.get('port', 5672),
            username=rabbitmq_config.get('username', 'guest'),
            password=rabbitmq_config.get('password', 'guest'),
            virtual_host=rabbitmq_config.get('virtual_host', '/'),
            exchange_name=exchange_name,
            exchange_type=rabbitmq_config.get('exchange_type', 'fanout'),
            heartbeat=rabbitmq_config.get('heartbeat', 600),
            connection_timeout=rabbitmq_config.get('connection_timeout', 30),
        ))
        logger.debug(f"✅ RabbitMQ 输出端已创建，交换机: {exchange_name}")
    else:
        logger.info("🔇 RabbitMQ 未启用")

    return sinks
