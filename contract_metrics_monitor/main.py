#!/usr/bin/env python3
"""
合约指标监控器

程序入口点：
    run   --until <ISO-8601>   运行到指定时间后停止
    serve                      启动 HTTP 控制接口
"""

import argparse
import asyncio
import signal
import sys
from typing import Callable, Optional

from contract_metrics_monitor.api.control_server import ControlServer, serve
from contract_metrics_monitor.config.base_config import get_active_chain_name, get_api_config
from contract_metrics_monitor.config.monitor_config import MonitorConfig
from contract_metrics_monitor.core.engine_controller import EngineController
from contract_metrics_monitor.models.errors import ConfigurationError
from contract_metrics_monitor.utils.contract_loader import load_contract_descriptors
from contract_metrics_monitor.utils.log_utils import get_logger

logger = get_logger(__name__)


def setup_signal_handlers(on_signal: Callable[[], None]) -> None:
    """设置信号处理器"""
    loop = asyncio.get_running_loop()

    def signal_handler(signum, frame):
        logger.info(f"接收到信号 {signum}，开始优雅退出...")
        loop.call_soon_threadsafe(on_signal)

    try:
        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)
        logger.info("信号处理器已注册")
    except Exception as e:
        logger.warning(f"注册信号处理器失败: {e}")


def _load_config(chain_name: Optional[str]) -> MonitorConfig:
    if chain_name and chain_name != get_active_chain_name():
        return MonitorConfig.from_chain_name(chain_name)
    return MonitorConfig()


async def run_until(chain_name: Optional[str], stop_time: str, conversion_rate: Optional[str]) -> int:
    """运行一次，直到停止时间或收到信号"""
    config = _load_config(chain_name)
    descriptors = load_contract_descriptors(config.contracts, config.abi_dir)
    rate = conversion_rate if conversion_rate is not None else config.conversion_rate

    engine = EngineController(config)
    tasks = []
    setup_signal_handlers(lambda: tasks.append(asyncio.create_task(engine.cancel("signal"))))

    await engine.run(descriptors, rate, stop_time)
    if tasks:
        await asyncio.gather(*tasks)
    return 0


async def run_server(chain_name: Optional[str], host: Optional[str], port: Optional[int],
                     conversion_rate: Optional[str]) -> int:
    """启动 HTTP 控制接口，直到收到信号"""
    config = _load_config(chain_name)
    descriptors = load_contract_descriptors(config.contracts, config.abi_dir)
    rate = conversion_rate if conversion_rate is not None else config.conversion_rate
    api_config = get_api_config()

    server = ControlServer(config, descriptors, rate)
    stop_event = asyncio.Event()
    setup_signal_handlers(stop_event.set)

    await serve(server, host or api_config['host'], port or api_config['port'], stop_event)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='合约交易与事件指标监控器')
    parser.add_argument(
        '--chain',
        default=None,
        help=f'要监控的链名称 (可用: {", ".join(MonitorConfig.get_available_chains()) or "无"})'
    )
    parser.add_argument(
        '--rate',
        default=None,
        help='原生代币的 USD 价格，默认读取配置文件'
    )

    subparsers = parser.add_subparsers(dest='command', required=True)

    run_parser = subparsers.add_parser('run', help='运行到指定时间后停止')
    run_parser.add_argument('--until', required=True, help='停止时间 (ISO-8601)，例如 2025-01-01T18:00:00+01:00')

    serve_parser = subparsers.add_parser('serve', help='启动 HTTP 控制接口')
    serve_parser.add_argument('--host', default=None, help='监听地址')
    serve_parser.add_argument('--port', type=int, default=None, help='监听端口')

    return parser


async def main(argv=None) -> int:
    """主函数"""
    args = build_parser().parse_args(argv)

    try:
        if args.command == 'run':
            return await run_until(args.chain, args.until, args.rate)
        return await run_server(args.chain, args.host, args.port, args.rate)
    except (ConfigurationError, ValueError) as e:
        logger.error(f"❌ 配置错误: {e}")
        return 2
    except Exception as e:
        logger.error(f"监控器运行失败: {e}", exc_info=True)
        return 1


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == '__main__':
    cli()
