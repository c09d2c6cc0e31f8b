"""
监控异常定义

所有监控相关错误的统一层级，调用方按类型决定跳过、丢弃或中止
"""


class MonitorError(Exception):
    """监控错误基类"""


class ConfigurationError(MonitorError):
    """启动配置错误（合约描述符格式错误等），启动阶段致命"""


class TransientFetchError(MonitorError):
    """区块或回执暂时不可获取，稍后重试"""


class InvalidMetric(MonitorError):
    """Gas 数值或汇率无效，丢弃单条记录"""


class SinkUnavailable(MonitorError):
    """输出端不可用，记录日志后继续"""

    def __init__(self, sink_name: str, message: str):
        super().__init__(f"{sink_name}: {message}")
        self.sink_name = sink_name
