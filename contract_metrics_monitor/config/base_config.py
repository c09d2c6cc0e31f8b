import yaml
import os
from typing import Dict, Any, Optional

CONFIG_PATH = os.environ.get("CONTRACT_MONITOR_CONFIG", "config.yml")


def _load_config(config_path: str = CONFIG_PATH) -> Optional[Dict[str, Any]]:
    """
    内部函数：加载并解析 YAML 配置文件。

    Args:
        config_path: 配置文件路径，相对路径基于当前工作目录

    Returns:
        配置字典或 None（如果加载失败）
    """
    if not os.path.isabs(config_path):
        config_path = os.path.join(os.getcwd(), config_path)

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f)
        return config_data or {}
    except FileNotFoundError:
        print(f"Warning: Config file not found at {config_path}. Using default configuration.")
        return None
    except yaml.YAMLError as exc:
        print(f"Error parsing YAML file: {exc}. Using default configuration.")
        return None


# 在模块加载时执行配置加载和解析
_loaded_config = _load_config()
_active_chain = _loaded_config.get('active_chain', 'sepolia') if _loaded_config else 'sepolia'

# 所有链的配置
ConfigMap = _loaded_config.get('chains', {}) if _loaded_config else {}
ActiveConfig = ConfigMap.get(_active_chain, {}) if ConfigMap else {}

# 监控参数
MonitorSettings = _loaded_config.get('monitor', {}) if _loaded_config else {}

# 被监控的合约列表 [{name, address, abi_path}]
ContractsConfig = _loaded_config.get('contracts', []) if _loaded_config else []

# 输出端配置
RecordLogConfig = _loaded_config.get('record_log', {}) if _loaded_config else {}
InfluxConfig = _loaded_config.get('influxdb', {}) if _loaded_config else {}
_RabbitMQConfigData = _loaded_config.get('rabbitmq', {}) if _loaded_config else {}

# HTTP 控制接口配置
ApiConfig = _loaded_config.get('api', {}) if _loaded_config else {}


def get_active_chain_name() -> str:
    """获取当前活跃链名称"""
    return _active_chain


def get_rabbitmq_config() -> Dict[str, Any]:
    """
    获取 RabbitMQ 完整配置

    Returns:
        RabbitMQ 配置字典
    """
    return {
        'host': _RabbitMQConfigData.get('host', 'localhost'),
        'port': _RabbitMQConfigData.get('port', 5672),
        'username': _RabbitMQConfigData.get('username', 'guest'),
        'password': _RabbitMQConfigData.get('password', 'guest'),
        'virtual_host': _RabbitMQConfigData.get('virtual_host', '/'),
        'heartbeat': _RabbitMQConfigData.get('heartbeat', 600),
        'connection_timeout': _RabbitMQConfigData.get('connection_timeout', 30),
        'exchange_name': _RabbitMQConfigData.get('exchange_name', 'contract_metrics'),
        'exchange_type': _RabbitMQConfigData.get('exchange_type', 'fanout'),
        'enabled': _RabbitMQConfigData.get('enabled', False),
    }


def get_influx_config() -> Dict[str, Any]:
    """获取 InfluxDB 配置"""
    return {
        'enabled': InfluxConfig.get('enabled', False),
        'url': InfluxConfig.get('url', 'http://localhost:8086'),
        'token': InfluxConfig.get('token', ''),
        'org': InfluxConfig.get('org', ''),
        'bucket': InfluxConfig.get('bucket', ''),
        'timeout': InfluxConfig.get('timeout', 10),
    }


def get_record_log_config() -> Dict[str, Any]:
    """获取记录日志文件配置"""
    return {
        'enabled': RecordLogConfig.get('enabled', True),
        'path': RecordLogConfig.get('path', 'data/metric_records.jsonl'),
    }


def get_api_config() -> Dict[str, Any]:
    """获取 HTTP 控制接口配置"""
    return {
        'host': ApiConfig.get('host', '0.0.0.0'),
        'port': ApiConfig.get('port', 3000),
        'timezone': ApiConfig.get('timezone', 'Europe/Berlin'),
    }


if __name__ == "__main__":
    print("\n--- ConfigMap (所有链的配置) ---")
    for chain_name, config in ConfigMap.items():
        print(f"Chain: {chain_name}")
        for key, value in config.items():
            print(f"  {key}: {value}")

    print("--- Contracts ---")
    for entry in ContractsConfig:
        print(f"  {entry}")
