"""
HTTP surface for the serverless handlers plus health and metrics.

Exposes:
- POST /functions/v1/generate-insights: section tips for the signed-in owner
- POST /functions/v1/ai-chatbot: conversational assistant (auth optional)
- GET /health: JSON health status
- GET /metrics: Prometheus-compatible metrics
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

import structlog
from aiohttp import web

from .backend import BackendError
from .chatbot import ConversationalQueryHandler
from .completion import CompletionError
from .insights import InsightRefreshOrchestrator
from .metrics import MetricsCollector
from .rest import RestClient

log = structlog.get_logger()

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _bearer(request: web.Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if not header.lower().startswith("bearer "):
        return None
    return header[7:].strip() or None


@web.middleware
async def cors_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    if request.method == "OPTIONS":
        return web.Response(headers=CORS_HEADERS)
    response = await handler(request)
    response.headers.update(CORS_HEADERS)
    return response


class SaathiServer:
    """Routes requests to the insight orchestrator and the chat handler."""

    def __init__(
        self,
        rest: RestClient,
        insights: InsightRefreshOrchestrator,
        chatbot: ConversationalQueryHandler,
        metrics: MetricsCollector | None = None,
        default_period: str = "month",
        host: str = "127.0.0.1",
        port: int = 8787,
        expose_metrics: bool = True,
    ):
        self._rest = rest
        self._insights = insights
        self._chatbot = chatbot
        self._metrics = metrics or MetricsCollector()
        self._default_period = default_period
        self._host = host
        self._port = port
        self._expose_metrics = expose_metrics
        self._runner: web.AppRunner | None = None
        self._backend_reachable = True

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[cors_middleware])
        app.router.add_post("/functions/v1/generate-insights", self._insights_handler)
        app.router.add_post("/functions/v1/ai-chatbot", self._chatbot_handler)
        # Preflight is answered by the middleware; the routes only need to exist
        app.router.add_route("OPTIONS", "/functions/v1/generate-insights", self._insights_handler)
        app.router.add_route("OPTIONS", "/functions/v1/ai-chatbot", self._chatbot_handler)
        app.router.add_get("/health", self._health_handler)
        if self._expose_metrics:
            app.router.add_get("/metrics", self._metrics_handler)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    def update_status(self, backend_reachable: bool) -> None:
        self._backend_reachable = backend_reachable

    # --- Handlers ---

    async def _owner_for(self, token: str | None) -> str | None:
        if not token:
            return None
        user = await self._rest.get_user(token)
        return user["id"] if user else None

    async def _read_json(self, request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        body = await request.json()
        if not isinstance(body, dict):
            raise ValueError("request body must be a JSON object")
        return body

    async def _insights_handler(self, request: web.Request) -> web.Response:
        token = _bearer(request)
        if token is None:
            return _error("Missing authorization header", 401)
        try:
            body = await self._read_json(request)
        except ValueError:
            return _error("Invalid JSON", 400)

        try:
            owner_id = await self._owner_for(token)
            if owner_id is None:
                return _error("Unauthorized", 401)
            result = await self._insights.refresh(
                owner_id,
                body.get("section", "dashboard"),
                business_type=body.get("businessType") or "general",
                period=body.get("period") or self._default_period,
                force=bool(body.get("force", False)),
                token=token,
            )
        except ValueError as exc:
            return _error(str(exc), 400)
        except CompletionError as exc:
            return _error(exc.user_message, exc.status)
        except BackendError as exc:
            log.error("server.backend_error", path=request.path, error=str(exc))
            return _error(str(exc), 500)

        return web.json_response({
            "success": True,
            "section": result.section,
            "insights": result.insights,
            "cards": result.cards,
            "refreshed": result.refreshed,
            "message": result.message,
            "generatedAt": result.generated_at.isoformat(),
        })

    async def _chatbot_handler(self, request: web.Request) -> web.Response:
        try:
            body = await self._read_json(request)
        except ValueError:
            return _error("Invalid JSON", 400)
        message = body.get("message")
        if not isinstance(message, str) or not message.strip():
            return _error("message is required", 400)

        try:
            owner_id = await self._owner_for(_bearer(request))
            reply = await self._chatbot.answer(
                message,
                owner_id=owner_id,
                business_type=body.get("businessType"),
            )
        except CompletionError as exc:
            return _error(exc.user_message, exc.status)
        except BackendError as exc:
            log.error("server.backend_error", path=request.path, error=str(exc))
            return _error(str(exc), 500)

        return web.json_response(reply.to_dict())

    async def _health_handler(self, request: web.Request) -> web.Response:
        body = {
            "status": "healthy" if self._backend_reachable else "degraded",
            "backend_reachable": self._backend_reachable,
        }
        return web.json_response(body)

    async def _metrics_handler(self, request: web.Request) -> web.Response:
        return web.Response(
            text=self._metrics.to_prometheus(),
            content_type="text/plain",
        )
