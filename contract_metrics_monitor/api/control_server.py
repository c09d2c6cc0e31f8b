"""
HTTP 控制接口

通过 HTTP 启动一次运行并在指定时间停止，或手动停止当前运行
"""

import asyncio
import re
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from aiohttp import web
from apispec import APISpec
from apispec.yaml_utils import load_operations_from_docstring

from contract_metrics_monitor.config.monitor_config import MonitorConfig
from contract_metrics_monitor.core.engine_controller import EngineController
from contract_metrics_monitor.models.data_types import ContractDescriptor, EngineState
from contract_metrics_monitor.models.errors import ConfigurationError
from contract_metrics_monitor.utils.log_utils import get_logger

logger = get_logger(__name__)

END_TIME_PATTERN = re.compile(r"^\d{2}:\d{2}$")


def resolve_end_time(hh_mm: str, tz: ZoneInfo, now: datetime) -> datetime:
    """把 HH:mm 解析为今天在 tz 时区的时间点

    Raises:
        ValueError: 格式错误、时间越界或不在未来
    """
    if not hh_mm or not END_TIME_PATTERN.match(hh_mm):
        raise ValueError("Enter end time in HH:mm format.")

    hour, minute = (int(part) for part in hh_mm.split(':'))
    if hour > 23 or minute > 59:
        raise ValueError("Enter end time in HH:mm format.")

    local_now = now.astimezone(tz)
    end_time = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if end_time <= local_now:
        raise ValueError("Invalid. End time needs to be in the future")
    return end_time


def build_api_spec(handlers: Dict[str, Callable]) -> Dict[str, Any]:
    """从处理函数文档中 --- 之后的 YAML 生成 OpenAPI 文档"""
    spec = APISpec(
        title="Contract Metrics Monitor API",
        version="1.0.0",
        openapi_version="3.0.2",
        info={"description": "Start, stop and inspect contract metrics monitoring runs"},
    )
    for path, handler in handlers.items():
        spec.path(path=path, operations=load_operations_from_docstring(handler.__doc__ or ""))
    return spec.to_dict()


def _system_now(tz: ZoneInfo) -> datetime:
    return datetime.now(tz)


class ControlServer:
    """HTTP 控制服务 - 同一时刻最多一个运行中的引擎"""

    def __init__(
        self,
        config: MonitorConfig,
        descriptors: Sequence[ContractDescriptor],
        conversion_rate: Any,
        engine_factory: Optional[Callable[[], EngineController]] = None,
        now: Callable[[ZoneInfo], datetime] = _system_now,
    ):
        self.config = config
        self.descriptors = descriptors
        self.conversion_rate = conversion_rate
        self.engine_factory = engine_factory or (lambda: EngineController(self.config))
        self.now = now
        self.engine: Optional[EngineController] = None
        self.api_spec: Dict[str, Any] = {}
        self._lock = asyncio.Lock()

        try:
            self.tz = ZoneInfo(config.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigurationError(f"未知时区: {config.timezone}")

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self.index_handler)
        app.router.add_post("/run/until", self.run_until_handler)
        app.router.add_post("/stop/all", self.stop_all_handler)
        app.router.add_get("/status", self.status_handler)
        app.router.add_get("/api-docs", self.api_docs_handler)
        app.on_shutdown.append(self._on_shutdown)
        self.api_spec = build_api_spec({
            "/": self.index_handler,
            "/run/until": self.run_until_handler,
            "/stop/all": self.stop_all_handler,
            "/status": self.status_handler,
        })
        return app

    def _engine_active(self) -> bool:
        return self.engine is not None and self.engine.state in (EngineState.RUNNING, EngineState.STOPPING)

    async def index_handler(self, request: web.Request) -> web.Response:
        """服务信息
        ---
        get:
          summary: Service banner.
          responses:
            200:
              description: Plain-text service name.
        """
        return web.Response(text="Contract Metrics Monitor API")

    async def api_docs_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.api_spec)

    async def run_until_handler(self, request: web.Request) -> web.Response:
        """启动一次运行，到今天 HH:mm 停止
        ---
        post:
          summary: Start monitoring the configured contracts and stop at a specific time.
          parameters:
            - name: endTime
              in: query
              required: true
              description: Stop time in HH:mm format (24-hour clock, configured time zone).
              schema:
                type: string
          responses:
            200:
              description: Engine started and will stop at the given time.
            400:
              description: Invalid input.
            409:
              description: An engine is already running.
            500:
              description: The engine failed to start.
        """
        end_time_text = request.query.get("endTime", "")
        try:
            end_time = resolve_end_time(end_time_text, self.tz, self.now(self.tz))
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)

        async with self._lock:
            if self._engine_active():
                return web.json_response({"error": "Engine is already running."}, status=409)

            engine = self.engine_factory()
            try:
                await engine.start(self.descriptors, self.conversion_rate, end_time)
            except ConfigurationError as e:
                return web.json_response({"error": str(e)}, status=400)
            except Exception as e:
                logger.error(f"❌ 通过接口启动引擎失败: {e}")
                return web.json_response({"error": f"Failed to start engine: {e}"}, status=500)
            self.engine = engine

        logger.info(f"🌐 接口启动运行，将在 {end_time.isoformat()} 停止")
        return web.json_response({
            "message": f"Engine started successfully and will stop at {end_time_text}.",
            "stopTime": end_time.isoformat(),
            "contracts": [descriptor.name for descriptor in self.descriptors],
        })

    async def stop_all_handler(self, request: web.Request) -> web.Response:
        """手动停止当前运行
        ---
        post:
          summary: Stop the running engine.
          responses:
            200:
              description: Engine stopped; body carries the final status.
            404:
              description: No engine is running.
        """
        if self.engine is None or not self.engine.is_running:
            return web.json_response({"error": "No engine is running."}, status=404)

        await self.engine.cancel("stopped_by_api")
        return web.json_response({"message": "Engine stopped successfully.", "status": self.engine.status()})

    async def status_handler(self, request: web.Request) -> web.Response:
        """当前运行状态
        ---
        get:
          summary: Current engine state and counters.
          responses:
            200:
              description: Engine status.
        """
        if self.engine is None:
            return web.json_response({"state": EngineState.IDLE.value})
        return web.json_response(self.engine.status())

    async def _on_shutdown(self, app: web.Application) -> None:
        if self.engine is not None and self.engine.is_running:
            logger.info("接口服务关闭，停止当前运行...")
            await self.engine.cancel("server_shutdown")


async def serve(server: ControlServer, host: str, port: int, stop_event: asyncio.Event) -> None:
    """运行 HTTP 服务直到 stop_event 被设置"""
    runner = web.AppRunner(server.create_app())
    await runner.setup()
    site = web.TCPSite(runner, host=host, port=port)
    await site.start()
    logger.info(f"🌐 控制接口已启动: http://{host}:{port}")

    try:
        await stop_event.wait()
    finally:
        await runner.cleanup()
        logger.info("控制接口已关闭")
