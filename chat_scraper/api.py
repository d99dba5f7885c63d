"""
HTTP Monitoring API

aiohttp application exposing orchestrator status, agent control, and a
server-sent-events stream of chat messages. Handlers only go through the
orchestrator's public operations and accessors.

Routes:
- GET  /status                 orchestrator status
- GET  /agents                 all agents with assignment, status and metrics
- POST /agents                 spawn {streamer, priority?}
- GET  /agents/{id}/status
- GET  /agents/{id}/metrics
- POST /agents/{id}/stop
- POST /agents/{id}/restart
- GET  /stream                 SSE chat messages
- GET  /stream/status
- GET  /quality                chat data quality metrics and active alerts
"""

import asyncio
import json
from typing import Any, Dict, Optional

import structlog
from aiohttp import web

from .broadcast import ChannelClosed
from .errors import (
    AgentError,
    ConfigError,
    ResourceLimitError,
    ScrapingError,
)
from .orchestrator import AgentOrchestrator

ERROR_STATUS_CODES = {
    ResourceLimitError: 429,
    AgentError: 409,
    ConfigError: 400,
}


def api_success(data: Any, status: int = 200) -> web.Response:
    return web.json_response({"success": True, "data": data, "error": None}, status=status)


def api_error(message: str, status: int) -> web.Response:
    return web.json_response(
        {"success": False, "data": None, "error": message}, status=status
    )


class ApiServer:
    """Monitoring and control API bound to one orchestrator"""

    def __init__(
        self,
        orchestrator: AgentOrchestrator,
        host: str = "0.0.0.0",
        port: int = 8080,
        api_token: Optional[str] = None,
        keepalive_interval: float = 15.0,
    ):
        self.logger = structlog.get_logger(self.__class__.__name__)
        self.orchestrator = orchestrator
        self.host = host
        self.port = port
        self.api_token = api_token
        self.keepalive_interval = keepalive_interval
        self._runner: Optional[web.AppRunner] = None

    def create_app(self) -> web.Application:
        app = web.Application(
            middlewares=[self._error_middleware, self._auth_middleware]
        )
        app.add_routes(
            [
                web.get("/status", self.get_status),
                web.get("/agents", self.list_agents),
                web.post("/agents", self.create_agent),
                web.get("/agents/{agent_id}/status", self.get_agent_status),
                web.get("/agents/{agent_id}/metrics", self.get_agent_metrics),
                web.post("/agents/{agent_id}/stop", self.stop_agent),
                web.post("/agents/{agent_id}/restart", self.restart_agent),
                web.get("/stream", self.stream_messages),
                web.get("/stream/status", self.stream_status),
                web.get("/quality", self.get_quality),
            ]
        )
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        self.logger.info(
            f"API server listening on http://{self.host}:{self.port}",
            auth=bool(self.api_token),
        )

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            self.logger.info("API server stopped")

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler):
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except ScrapingError as error:
            status = 500
            for kind, code in ERROR_STATUS_CODES.items():
                if isinstance(error, kind):
                    status = code
                    break
            self.logger.warning(
                "Request failed", path=request.path, error=str(error), status=status
            )
            return api_error(str(error), status)

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        if self.api_token and request.method not in ("GET", "HEAD", "OPTIONS"):
            if request.headers.get("Authorization") != f"Bearer {self.api_token}":
                return api_error("Unauthorized", 401)
        return await handler(request)

    async def get_status(self, request: web.Request) -> web.Response:
        return api_success(self.orchestrator.get_status().to_dict())

    async def list_agents(self, request: web.Request) -> web.Response:
        agents = []
        for assignment in self.orchestrator.get_assignments():
            agents.append(self._describe_agent(assignment.agent_id, assignment.to_dict()))
        return api_success(agents)

    async def create_agent(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except json.JSONDecodeError:
            return api_error("Request body must be JSON", 400)

        streamer = payload.get("streamer") if isinstance(payload, dict) else None
        if not isinstance(streamer, str) or not streamer.strip():
            return api_error("Field 'streamer' is required", 400)

        priority = payload.get("priority", 0)
        if not isinstance(priority, int) or priority < 0:
            return api_error("Field 'priority' must be a non-negative integer", 400)

        agent_id = await self.orchestrator.spawn_agent(streamer.strip(), priority)
        return api_success({"agent_id": agent_id, "streamer": streamer}, status=201)

    async def get_agent_status(self, request: web.Request) -> web.Response:
        agent_id = request.match_info["agent_id"]
        status = self.orchestrator.get_agent_status(agent_id)
        if status is None:
            return api_error(f"Agent {agent_id} not found", 404)
        return api_success(status.to_dict())

    async def get_agent_metrics(self, request: web.Request) -> web.Response:
        agent_id = request.match_info["agent_id"]
        metrics = self.orchestrator.get_agent_metrics(agent_id)
        if metrics is None:
            return api_error(f"Agent {agent_id} not found", 404)
        return api_success(metrics.to_dict())

    async def stop_agent(self, request: web.Request) -> web.Response:
        agent_id = request.match_info["agent_id"]
        if not await self.orchestrator.stop_agent(agent_id):
            return api_error(f"Agent {agent_id} not found", 404)
        return api_success({"agent_id": agent_id, "stopped": True})

    async def restart_agent(self, request: web.Request) -> web.Response:
        agent_id = request.match_info["agent_id"]
        if self.orchestrator.get_agent_status(agent_id) is None:
            return api_error(f"Agent {agent_id} not found", 404)
        new_agent_id = await self.orchestrator.restart_agent(agent_id)
        return api_success({"agent_id": new_agent_id, "replaced": agent_id})

    async def stream_messages(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            }
        )
        subscription = self.orchestrator.subscribe_to_chat_messages()
        try:
            await response.prepare(request)
            self.logger.info("SSE client connected", remote=request.remote)

            while True:
                try:
                    message = await asyncio.wait_for(
                        subscription.recv(), timeout=self.keepalive_interval
                    )
                except asyncio.TimeoutError:
                    await response.write(b": keep-alive\n\n")
                    continue
                except ChannelClosed:
                    break

                data = json.dumps(message.to_dict(), ensure_ascii=False)
                await response.write(f"data: {data}\n\n".encode("utf-8"))
        except ConnectionResetError:
            self.logger.debug("SSE client went away")
        finally:
            subscription.close()
            self.logger.info(
                "SSE client disconnected", dropped=subscription.lagged
            )
        return response

    async def stream_status(self, request: web.Request) -> web.Response:
        status = self.orchestrator.get_status()
        return api_success(
            {
                "subscribers": self.orchestrator.chat_channel.subscriber_count,
                "messages_sent": self.orchestrator.chat_channel.sent,
                "active_agents": status.active_agents,
                "total_messages_scraped": status.system_metrics.total_messages_scraped,
            }
        )

    async def get_quality(self, request: web.Request) -> web.Response:
        tracker = self.orchestrator.quality_tracker
        if tracker is None:
            return api_error("Quality tracking is not enabled", 404)
        return api_success({**tracker.to_dict(), "report": tracker.generate_report()})

    def _describe_agent(self, agent_id: str, assignment: Dict[str, Any]) -> Dict[str, Any]:
        status = self.orchestrator.get_agent_status(agent_id)
        metrics = self.orchestrator.get_agent_metrics(agent_id)
        return {
            **assignment,
            "status": status.to_dict() if status else None,
            "metrics": metrics.to_dict() if metrics else None,
        }


__all__ = ["ApiServer", "api_success", "api_error"]
