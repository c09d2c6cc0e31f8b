"""
RabbitMQ 输出端

把每条指标记录以 JSON 消息发布到交换机，供下游服务消费
"""

import json
from typing import Optional

import aio_pika
from aio_pika import ExchangeType

from contract_metrics_monitor.models.data_types import MetricRecord
from contract_metrics_monitor.models.errors import SinkUnavailable
from contract_metrics_monitor.services.sinks.base import RecordSink
from contract_metrics_monitor.utils.log_utils import get_logger

logger = get_logger(__name__)


class RabbitMQRecordSink(RecordSink):
    """异步 RabbitMQ 记录发布者"""

    name = "rabbitmq"

    def __init__(
        self,
        host: str = 'localhost',
        port: int = 5672,
        username: str = 'guest',
        password: str = 'guest',
        virtual_host: str = '/',
        exchange_name: str = 'contract_metrics',
        exchange_type: str = 'fanout',
        routing_key: str = '',
        heartbeat: int = 600,
        connection_timeout: int = 30
    ):
        """
        初始化发布者

        Args:
            host: RabbitMQ 服务器地址
            port: RabbitMQ 端口
            username: 用户名
            password: 密码
            virtual_host: 虚拟主机
            exchange_name: 交换机名称
            exchange_type: 交换机类型
            routing_key: 路由键（fanout 交换机可为空）
            heartbeat: 心跳间隔（秒）
            connection_timeout: 连接超时（秒）
        """
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.virtual_host = virtual_host
        self.exchange_name = exchange_name
        self.exchange_type = exchange_type
        self.routing_key = routing_key
        self.heartbeat = heartbeat
        self.connection_timeout = connection_timeout

        self.connection: Optional[aio_pika.RobustConnection] = None
        self.channel = None
        self.exchange = None
        self.messages_published: int = 0

    async def open(self) -> None:
        """连接到 RabbitMQ 并声明交换机"""
        connection_url = (
            f"amqp://{self.username}:{self.password}@"
            f"{self.host}:{self.port}{self.virtual_host}"
        )

        logger.info(f"🔌 正在连接到 RabbitMQ: {self.host}:{self.port}")
        try:
            self.connection = await aio_pika.connect_robust(
                connection_url,
                heartbeat=self.heartbeat,
                timeout=self.connection_timeout
            )
            self.channel = await self.connection.channel()
            self.exchange = await self.channel.declare_exchange(
                self.exchange_name,
                getattr(ExchangeType, self.exchange_type.upper()),
                durable=True
            )
        except Exception as e:
            raise SinkUnavailable(self.name, f"连接失败: {e}")

        logger.info(f"✅ 成功连接到 RabbitMQ，交换机: {self.exchange_name} ({self.exchange_type})")

    async def push(self, record: MetricRecord) -> None:
        if self.exchange is None:
            raise SinkUnavailable(self.name, "未连接")

        body = json.dumps(record.to_dict(), ensure_ascii=False, default=str)
        try:
            await self.exchange.publish(
                aio_pika.Message(
                    body.encode('utf-8'),
                    content_type='application/json',
                    message_id=f"{record.transaction_hash}:{record.sequence_number}",
                ),
                routing_key=self.routing_key
            )
        except Exception as e:
            raise SinkUnavailable(self.name, f"发布失败: {e}")

        self.messages_published += 1

    async def close(self) -> None:
        try:
            if self.connection and not self.connection.is_closed:
                await self.connection.close()
            logger.info("🔌 已断开 RabbitMQ 连接")
        except Exception as e:
            logger.error(f"❌ 断开 RabbitMQ 连接失败: {e}")
        finally:
            self.connection = None
            self.channel = None
            self.exchange = None
