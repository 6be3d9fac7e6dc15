"""
Service orchestrator.

Wires state, backend and completion clients, the insight orchestrator and the
HTTP surface together. Handles lifecycle: startup, shutdown, signal handling.
"""

from __future__ import annotations

import asyncio
import signal
from datetime import timedelta

import structlog

from .chatbot import ConversationalQueryHandler
from .completion import CompletionClient
from .config import SaathiConfig
from .insights import InsightRefreshOrchestrator
from .metrics import MetricsCollector
from .rest import RestClient
from .server import SaathiServer
from .state import InsightState

log = structlog.get_logger()

SHUTDOWN_TIMEOUT = 15.0
HEALTH_INTERVAL = 30.0


class MissingCredentialError(RuntimeError):
    pass


class SaathiService:
    def __init__(self, config: SaathiConfig):
        self._config = config
        self.metrics = MetricsCollector()
        self.state = InsightState(config.state.db_path)

        backend_key = config.backend.anon_key or config.backend.service_key
        if not backend_key:
            raise MissingCredentialError(
                f"set {config.backend.anon_key_env} or {config.backend.service_key_env}"
            )
        completion_key = config.completion.api_key
        if not completion_key:
            raise MissingCredentialError(f"set {config.completion.api_key_env}")

        self.rest = RestClient(
            url=config.backend.url,
            api_key=backend_key,
            verify_tls=config.backend.verify_tls,
            request_timeout=config.backend.request_timeout_seconds,
        )
        self.completion = CompletionClient(
            url=config.completion.url,
            api_key=completion_key,
            model=config.completion.model,
            request_timeout=config.completion.request_timeout_seconds,
            metrics=self.metrics,
        )
        self.insights = InsightRefreshOrchestrator(
            self.rest,
            self.completion,
            self.state,
            min_refresh_interval=timedelta(hours=config.insights.min_refresh_hours),
            low_stock_threshold=config.insights.low_stock_threshold,
            metrics=self.metrics,
        )
        self.chatbot = ConversationalQueryHandler(
            self.rest,
            self.completion,
            low_stock_threshold=config.insights.low_stock_threshold,
        )
        self.server = SaathiServer(
            self.rest,
            self.insights,
            self.chatbot,
            metrics=self.metrics,
            default_period=config.insights.default_period,
            host=config.server.host,
            port=config.server.port,
            expose_metrics=config.metrics.enabled,
        )
        self._running = False
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        log.info("service.starting", backend=self._config.backend.url)
        await self.state.open()
        await self.rest.open()
        await self.completion.open()
        await self.server.start()
        self._running = True
        log.info("service.started", host=self._config.server.host, port=self._config.server.port)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        log.info("service.stopping")
        await self.server.stop()
        await self.completion.close()
        await self.rest.close()
        await self.state.close()
        log.info("service.stopped")

    def shutdown(self) -> None:
        self._shutdown_event.set()

    async def run_forever(self) -> None:
        """Run until shutdown signal."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.shutdown)

        await self.start()
        try:
            while not self._shutdown_event.is_set():
                self.server.update_status(await self.rest.check_health())
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=HEALTH_INTERVAL)
                except asyncio.TimeoutError:
                    pass
        finally:
            await asyncio.wait_for(self.stop(), timeout=SHUTDOWN_TIMEOUT)
