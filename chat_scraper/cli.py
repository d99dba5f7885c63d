"""
Command line entry point.

Usage: python -m chat_scraper --config config.toml [--log-level DEBUG] [--json-logs]
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from .api import ApiServer
from .browser_pool import BrowserResourcePool
from .config import FileConfigSource
from .errors import ConfigError
from .logging_setup import configure_logging
from .orchestrator import AgentOrchestrator
from .processor import MessageProcessor
from .quality import QualityMetricsTracker
from .storage import MessageStorage
from .webhooks import WebhookManager


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chat_scraper",
        description="Scrape live stream chat with a supervised pool of browser agents",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("config.toml"),
        help="TOML configuration file (created with defaults if missing)",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument(
        "--json-logs", action="store_true", help="Emit logs as JSON lines"
    )
    return parser


async def run(config_path: Path) -> None:
    """Run the scraper until SIGINT or SIGTERM"""
    logger = structlog.get_logger("chat_scraper")

    config_source = FileConfigSource(config_path)
    config = await config_source.load()

    pool = BrowserResourcePool.from_config(config)
    quality_tracker = QualityMetricsTracker()
    orchestrator = AgentOrchestrator(config, pool, quality_tracker=quality_tracker)

    storage = MessageStorage.from_config(config.output)
    storage_task = asyncio.create_task(
        storage.consume(
            orchestrator.subscribe_to_chat_messages(),
            MessageProcessor(quality_tracker=quality_tracker),
        ),
        name="storage-consumer",
    )

    webhooks = WebhookManager.from_config(config.monitoring)
    webhook_task: Optional[asyncio.Task] = None
    if webhooks.enabled:
        webhook_task = asyncio.create_task(
            webhooks.run(
                orchestrator.subscribe_to_chat_messages(),
                orchestrator.subscribe_to_messages(),
            ),
            name="webhook-forwarder",
        )

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    api_server: Optional[ApiServer] = None
    try:
        if config.monitoring.api_enabled:
            api_server = ApiServer(
                orchestrator,
                host=config.monitoring.api_host,
                port=config.monitoring.api_port,
                api_token=config.monitoring.api_token,
            )
            await api_server.start()

        await orchestrator.start(config_source)
        logger.info("Chat scraper running", streamers=config.streamers)
        await shutdown.wait()
        logger.info("Shutdown requested")
    finally:
        if api_server is not None:
            await api_server.stop()
        await orchestrator.stop()
        # Chat channel is closed by now; the consumer flushes and returns
        await storage_task
        if webhook_task is not None:
            # Notifications still queued are dropped
            webhook_task.cancel()
            await asyncio.gather(webhook_task, return_exceptions=True)
        await webhooks.close()
        storage.close()
        await pool.close_all()
        logger.info(
            "Chat scraper stopped",
            messages_stored=storage.stats.total_messages,
        )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, json_logs=args.json_logs)

    try:
        asyncio.run(run(args.config))
    except ConfigError as error:
        print(str(error), file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130
    return 0


__all__ = ["main", "run", "build_parser"]
