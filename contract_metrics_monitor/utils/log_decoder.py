"""
合约事件日志解析器

按合约 ABI 解析回执中的日志，单条日志解析失败不影响其他日志
"""

from collections.abc import Mapping
from typing import Any, Dict, List, Optional

from eth_utils import event_abi_to_log_topic
from hexbytes import HexBytes
from web3 import Web3

from contract_metrics_monitor.models.data_types import ContractDescriptor, DecodedEvent
from contract_metrics_monitor.utils.log_utils import get_logger

logger = get_logger(__name__)


def to_jsonable(value: Any) -> Any:
    """把事件参数转换为可 JSON 序列化的结构"""
    if isinstance(value, Mapping):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (bytes, bytearray)):
        return '0x' + bytes(value).hex()
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


class ContractLogDecoder:
    """单个合约的日志解析器"""

    def __init__(self, descriptor: ContractDescriptor, w3: Optional[Web3] = None):
        self.descriptor = descriptor
        self.w3 = w3 or Web3()
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(descriptor.address),
            abi=list(descriptor.abi),
        )

        # topic0 -> 事件名，匿名事件无法按签名识别
        self._events_by_topic: Dict[bytes, str] = {}
        for item in descriptor.abi:
            if item.get('type') == 'event' and not item.get('anonymous', False):
                self._events_by_topic[bytes(event_abi_to_log_topic(item))] = item['name']

    @property
    def event_names(self) -> List[str]:
        return sorted(set(self._events_by_topic.values()))

    def decode_log(self, log: Mapping) -> Optional[DecodedEvent]:
        """解析单条日志；签名不属于本合约时返回 None，数据不匹配时抛出异常"""
        topics = log.get('topics') or []
        if not topics:
            return None

        event_name = self._events_by_topic.get(bytes(HexBytes(topics[0])))
        if event_name is None:
            return None

        normalized = dict(log)
        normalized['topics'] = [HexBytes(topic) for topic in topics]
        normalized['data'] = HexBytes(log.get('data') or b'')

        event = self.contract.events[event_name]().process_log(normalized)
        return DecodedEvent(
            name=event['event'],
            args=to_jsonable(event['args']),
            log_index=log.get('logIndex'),
        )

    def decode_receipt(self, receipt: Mapping) -> List[DecodedEvent]:
        """解析回执中的全部日志，跳过无法解析的日志"""
        decoded = []
        for log in receipt.get('logs') or []:
            try:
                event = self.decode_log(log)
            except Exception as e:
                logger.debug(f"无法解析日志 ({self.descriptor.name}): {e}")
                continue
            if event is not None:
                decoded.append(event)
        return decoded
