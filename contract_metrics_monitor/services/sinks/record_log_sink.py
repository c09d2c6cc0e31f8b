"""
记录日志文件输出端

每条 MetricRecord 以一行 JSON 追加写入文件，只追加不改写
"""

import asyncio
import json
import os

from contract_metrics_monitor.models.data_types import MetricRecord
from contract_metrics_monitor.models.errors import SinkUnavailable
from contract_metrics_monitor.services.sinks.base import RecordSink
from contract_metrics_monitor.utils.log_utils import get_logger

logger = get_logger(__name__)


class RecordLogSink(RecordSink):
    """JSON Lines 追加日志"""

    name = "record_log"

    def __init__(self, file_path: str):
        self.file_path = file_path
        self.records_written: int = 0
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        """确保目录和文件存在"""
        dir_path = os.path.dirname(self.file_path)
        if dir_path and not os.path.exists(dir_path):
            logger.info(f"📁 创建目录: {dir_path}")
            os.makedirs(dir_path, exist_ok=True)

        if not os.path.exists(self.file_path):
            logger.info(f"📄 创建记录文件: {self.file_path}")
            open(self.file_path, 'a', encoding='utf-8').close()

    def _append(self, line: str) -> None:
        with open(self.file_path, 'a', encoding='utf-8') as f:
            f.write(line + '\n')

    async def push(self, record: MetricRecord) -> None:
        line = json.dumps(record.to_dict(), ensure_ascii=False, default=str)
        async with self._lock:
            try:
                await asyncio.to_thread(self._append, line)
            except OSError as e:
                raise SinkUnavailable(self.name, f"写入 {self.file_path} 失败: {e}")

        self.records_written += 1
        logger.debug(f"记录已写入 {self.file_path}: #{record.sequence_number}")
