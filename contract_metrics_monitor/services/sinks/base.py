"""
输出端接口

所有输出端只需实现 push(record)，open/close 可选
"""

from contract_metrics_monitor.models.data_types import MetricRecord


class RecordSink:
    """指标记录输出端基类"""

    name: str = "sink"

    async def open(self) -> None:
        """建立连接或准备资源"""

    async def push(self, record: MetricRecord) -> None:
        """推送一条记录，失败时抛出 SinkUnavailable"""
        raise NotImplementedError

    async def close(self) -> None:
        """释放资源"""
