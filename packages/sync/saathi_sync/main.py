"""
CLI entry point.

    saathi-sync serve -c saathi-sync.yaml
    saathi-sync watch -c saathi-sync.yaml --owner <id>

`watch` runs a headless live dashboard for one owner; send SIGUSR1 to mark
the host hidden and SIGUSR2 to mark it visible again.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
from datetime import timedelta

import structlog

from .completion import CompletionClient
from .config import SaathiConfig, load_config
from .dashboard import DashboardSession
from .feed import SSEChangeFeed
from .insights import InsightRefreshOrchestrator
from .metrics import MetricsCollector
from .panels import Panel
from .rest import RestClient
from .service import MissingCredentialError, SaathiService
from .state import InsightState
from .visibility import VisibilitySignal

ACCESS_TOKEN_ENV = "SAATHI_ACCESS_TOKEN"


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.get_level_from_name(level)
        ),
    )


def _log_panel(panel: Panel) -> None:
    structlog.get_logger().info(
        "watch.panel_refreshed",
        section=panel.section,
        rows=len(panel.rows),
        summary=panel.summary,
        tips=panel.tips,
        notice=panel.notice,
        live=panel.live,
    )


async def watch(config: SaathiConfig, owner_id: str) -> None:
    log = structlog.get_logger()
    api_key = config.backend.anon_key
    if not api_key:
        raise MissingCredentialError(f"set {config.backend.anon_key_env}")
    token = os.environ.get(ACCESS_TOKEN_ENV)

    metrics = MetricsCollector()
    visibility = VisibilitySignal()
    rest = RestClient(
        config.backend.url,
        api_key,
        verify_tls=config.backend.verify_tls,
        request_timeout=config.backend.request_timeout_seconds,
    )
    feed = SSEChangeFeed(
        config.backend.url,
        api_key,
        access_token=token,
        verify_tls=config.backend.verify_tls,
    )

    state = None
    completion = None
    insights = None
    if config.completion.api_key:
        state = InsightState(config.state.db_path)
        completion = CompletionClient(
            config.completion.url,
            config.completion.api_key,
            config.completion.model,
            request_timeout=config.completion.request_timeout_seconds,
            metrics=metrics,
        )
        insights = InsightRefreshOrchestrator(
            rest,
            completion,
            state,
            min_refresh_interval=timedelta(hours=config.insights.min_refresh_hours),
            low_stock_threshold=config.insights.low_stock_threshold,
            metrics=metrics,
        )
    else:
        log.warning("watch.insights_disabled", env=config.completion.api_key_env)

    await rest.open()
    if state and completion:
        await state.open()
        await completion.open()

    session = DashboardSession(
        owner_id, config, rest, feed, visibility,
        insights=insights,
        metrics=metrics,
        initially_hidden=visibility.hidden,
    )
    for panel in session.panels:
        panel.on_refresh(_log_panel)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)
    loop.add_signal_handler(signal.SIGUSR1, visibility.set_hidden, True)
    loop.add_signal_handler(signal.SIGUSR2, visibility.set_hidden, False)

    try:
        await session.start()
        log.info("watch.started", owner=owner_id, live=session.live)
        await stop.wait()
    finally:
        session.stop()
        await feed.aclose()
        if state and completion:
            await completion.close()
            await state.close()
        await rest.close()
        log.info("watch.stopped", metrics=metrics.to_dict()["counters"])


def run() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Vyapaar Saathi realtime sync and insights service")
    parser.add_argument(
        "-c", "--config",
        default="saathi-sync.yaml",
        help="Path to configuration file (default: saathi-sync.yaml)",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("serve", help="Run the insights and chatbot HTTP service")
    watch_parser = commands.add_parser("watch", help="Run a headless live dashboard for one owner")
    watch_parser.add_argument("--owner", required=True, help="Owner (user) id to watch")
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging.level, config.logging.format)
    log = structlog.get_logger()
    log.info("saathi.config_loaded", config_path=args.config, command=args.command)

    try:
        if args.command == "serve":
            asyncio.run(SaathiService(config).run_forever())
        else:
            asyncio.run(watch(config, args.owner))
    except MissingCredentialError as exc:
        print(f"Missing credential: {exc}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
