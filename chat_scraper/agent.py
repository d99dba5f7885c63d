"""
Scraping Agent

One agent watches one stream's chat through one pooled browser instance.
The agent owns its status and metrics; everything else only reads them.

Key Features:
- Idle -> Starting -> Running -> Stopping -> Stopped lifecycle, Error from
  Starting or Running
- Monitoring loop with hash-based skip of unchanged pages
- Exponential backoff on transient errors, immediate escalation on browser
  failures
- Cooperative shutdown: every wait races the agent's shutdown event
"""

import asyncio
import hashlib
import random
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional, Tuple
from uuid import uuid4

import structlog

from .broadcast import BroadcastChannel, Subscription
from .browser_pool import BrowserResourcePool
from .errors import AgentError, BrowserError
from .models import ChatMessage
from .parser import ChatParser

MAX_CONSECUTIVE_ERRORS = 10
MAX_BACKOFF_EXPONENT = 5


class AgentState(Enum):
    """Agent lifecycle states"""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass(frozen=True)
class AgentStatus:
    """Lifecycle state plus the failure reason when in ERROR"""

    state: AgentState
    reason: Optional[str] = None

    @classmethod
    def error(cls, reason: str) -> "AgentStatus":
        return cls(AgentState.ERROR, reason)

    @property
    def is_error(self) -> bool:
        return self.state is AgentState.ERROR

    def __str__(self) -> str:
        if self.reason:
            return f"{self.state.value}: {self.reason}"
        return self.state.value

    def to_dict(self) -> Dict[str, Any]:
        return {"state": self.state.value, "reason": self.reason}


@dataclass
class AgentMetrics:
    """Per-agent counters; read through snapshots"""

    messages_scraped: int = 0
    uptime: float = 0.0  # seconds
    error_count: int = 0
    last_message_time: Optional[datetime] = None
    network_latency: float = 0.0  # seconds
    memory_usage: int = 0  # bytes
    status: AgentStatus = field(default_factory=lambda: AgentStatus(AgentState.IDLE))

    def error_rate(self) -> float:
        """Errors per whole second of uptime"""
        seconds = int(self.uptime)
        if seconds <= 0:
            return 0.0
        return self.error_count / seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messages_scraped": self.messages_scraped,
            "uptime_seconds": round(self.uptime, 3),
            "error_count": self.error_count,
            "last_message_time": (
                self.last_message_time.isoformat() if self.last_message_time else None
            ),
            "network_latency_ms": round(self.network_latency * 1000, 3),
            "memory_usage": self.memory_usage,
            "status": self.status.to_dict(),
        }


class ScrapingAgent:
    """
    Chat scraping worker bound to a single streamer.

    Agents are never restarted in place: once stopped, a fresh agent is
    created for the same streamer.
    """

    def __init__(
        self,
        pool: BrowserResourcePool,
        parser: ChatParser,
        chat_channel: BroadcastChannel,
        delay_range: Tuple[int, int] = (1000, 5000),
        poll_interval: float = 1.0,
        backoff_base: float = 1.0,
        settle_delay: float = 1.0,
        max_consecutive_errors: int = MAX_CONSECUTIVE_ERRORS,
        agent_id: Optional[str] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize scraping agent.

        Args:
            pool: Browser pool the agent draws its page from
            parser: Turns chat HTML into messages
            chat_channel: Channel parsed messages are published on
            delay_range: Min/max jitter in milliseconds before scraping starts
            poll_interval: Seconds between page polls
            backoff_base: Seconds multiplied by 2**n after the nth consecutive error
            settle_delay: Seconds to wait after acquiring a browser instance
            max_consecutive_errors: Errors in a row before giving up
            agent_id: Explicit ID, generated when omitted
        """
        self.id = agent_id or str(uuid4())
        self.logger = structlog.get_logger(self.__class__.__name__).bind(
            agent_id=self.id
        )
        self.pool = pool
        self.parser = parser
        self.chat_channel = chat_channel
        self.delay_range = delay_range
        self.poll_interval = poll_interval
        self.backoff_base = backoff_base
        self.settle_delay = settle_delay
        self.max_consecutive_errors = max_consecutive_errors
        self._rng = rng or random.Random()

        self.streamer: Optional[str] = None
        self.browser_instance_id: Optional[str] = None

        self._status = AgentStatus(AgentState.IDLE)
        self._metrics = AgentMetrics()
        self._started_at: Optional[float] = None
        self._stopped_at: Optional[float] = None
        self._last_hash: Optional[str] = None

        self._shutdown = asyncio.Event()
        self._monitor_task: Optional[asyncio.Task] = None

    @property
    def monitor_task(self) -> Optional[asyncio.Task]:
        return self._monitor_task

    async def start(self, streamer: str) -> None:
        """
        Bring the agent from Idle to Running on the given stream.

        Raises:
            AgentError: if the agent is not Idle, or its instance vanished
            ScrapingError: whatever browser acquisition or navigation raised;
                the status is Error(reason) in that case
        """
        if self._status.state is not AgentState.IDLE:
            raise AgentError(
                f"Agent {self.id} cannot start from state {self._status.state.value}"
            )

        self.streamer = streamer
        self._started_at = time.monotonic()
        self._set_status(AgentStatus(AgentState.STARTING))
        self.logger.info(f"Starting agent for streamer {streamer}", streamer=streamer)

        if self.browser_instance_id is None:
            try:
                self.browser_instance_id = await self.pool.create_instance()
            except Exception as error:
                self._set_status(AgentStatus.error(f"Browser init failed: {error}"))
                raise
            # Let the freshly launched browser settle
            await asyncio.sleep(self.settle_delay)

        instance = self.pool.get_instance(self.browser_instance_id)
        if instance is None:
            self._set_status(AgentStatus.error("Browser instance not found"))
            raise AgentError("Browser instance not found")

        try:
            await instance.navigate_to_stream(streamer)
        except Exception as error:
            self._set_status(AgentStatus.error(f"Navigation failed: {error}"))
            raise

        await asyncio.sleep(self._random_delay())
        if self._shutdown.is_set():
            raise AgentError(f"Agent {self.id} was stopped while starting")

        self._monitor_task = asyncio.create_task(
            self._monitor_loop(), name=f"agent-monitor-{self.id}"
        )
        self._set_status(AgentStatus(AgentState.RUNNING))
        self.logger.info(
            f"Agent running for streamer {streamer}",
            instance_id=self.browser_instance_id,
        )

    async def stop(self) -> None:
        """Signal the monitoring loop, wait for it, and release the browser"""
        if self._status.state is AgentState.STOPPED:
            return

        self.logger.info("Stopping agent", streamer=self.streamer)
        self._set_status(AgentStatus(AgentState.STOPPING))
        self._shutdown.set()

        if self._monitor_task is not None:
            try:
                await self._monitor_task
            except Exception as error:
                self.logger.error("Monitoring loop failed", error=str(error))

        if self.browser_instance_id is not None:
            await self.pool.remove_instance(self.browser_instance_id)
            self.browser_instance_id = None

        if self._started_at is not None and self._stopped_at is None:
            self._stopped_at = time.monotonic()
        self._set_status(AgentStatus(AgentState.STOPPED))
        self.logger.info("Agent stopped", streamer=self.streamer)

    def get_status(self) -> AgentStatus:
        return self._status

    def get_metrics(self) -> AgentMetrics:
        """Snapshot of the metrics with uptime recomputed"""
        self._metrics.uptime = self._uptime()
        return replace(self._metrics, status=self._status)

    def subscribe(self) -> Subscription:
        return self.chat_channel.subscribe()

    def process_html(
        self, html: str, fetch_started: Optional[float] = None
    ) -> List[ChatMessage]:
        """
        Parse and publish a page unless it is identical to the previous one.

        Returns:
            Messages that were published (empty for an unchanged page)
        """
        digest = hashlib.md5(html.encode("utf-8")).hexdigest()
        if digest == self._last_hash:
            return []
        self._last_hash = digest

        messages = self.parser.parse(html, self.streamer or "")
        for message in messages:
            self.chat_channel.send(message)

        if messages:
            self._metrics.messages_scraped += len(messages)
            self._metrics.last_message_time = datetime.now(timezone.utc)
            if fetch_started is not None:
                self._metrics.network_latency = time.monotonic() - fetch_started
            self.logger.debug(f"Published {len(messages)} messages")

        return messages

    async def _monitor_loop(self) -> None:
        consecutive_errors = 0

        if await self._wait_for_shutdown(self._random_delay()):
            return

        while not self._shutdown.is_set():
            instance = (
                self.pool.get_instance(self.browser_instance_id)
                if self.browser_instance_id
                else None
            )
            if instance is None:
                self.logger.error("Browser instance not found")
                self._set_status(AgentStatus.error("Browser instance not found"))
                return

            try:
                fetch_started = time.monotonic()
                shutdown, html = await self._race_shutdown(instance.get_chat_html())
                if shutdown:
                    return
                self.process_html(html, fetch_started)
                consecutive_errors = 0
            except Exception as error:
                consecutive_errors += 1
                self.logger.warning(
                    "Error extracting messages",
                    error=str(error),
                    consecutive_errors=consecutive_errors,
                )

                if isinstance(error, BrowserError):
                    if instance.proxy:
                        self.pool.report_bad_proxy(instance.proxy)
                    self._set_status(AgentStatus.error(str(error)))
                    return

                self._metrics.error_count += 1
                if consecutive_errors >= self.max_consecutive_errors:
                    self.logger.error("Too many consecutive errors, giving up")
                    self._set_status(
                        AgentStatus.error(f"Too many consecutive errors: {error}")
                    )
                    return

                backoff = self.backoff_base * (
                    2 ** min(consecutive_errors, MAX_BACKOFF_EXPONENT)
                )
                if await self._wait_for_shutdown(backoff):
                    return
                continue

            if await self._wait_for_shutdown(self.poll_interval):
                return

    async def _wait_for_shutdown(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if shutdown was requested meanwhile"""
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _race_shutdown(self, awaitable: Awaitable) -> Tuple[bool, Any]:
        """Await `awaitable` unless shutdown fires first"""
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._shutdown.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if work.done():
            return False, work.result()

        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        except Exception as error:
            self.logger.debug("Fetch abandoned during shutdown", error=str(error))
        return True, None

    def _random_delay(self) -> float:
        low, high = self.delay_range
        return self._rng.uniform(low, high) / 1000.0

    def _uptime(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._stopped_at if self._stopped_at is not None else time.monotonic()
        return end - self._started_at

    def _set_status(self, status: AgentStatus) -> None:
        previous = self._status
        self._status = status
        self._metrics.status = status
        if status.is_error:
            self.logger.error(
                "Agent entered error state",
                reason=status.reason,
                previous=previous.state.value,
            )
        else:
            self.logger.debug(
                "Agent status changed",
                previous=previous.state.value,
                current=status.state.value,
            )


__all__ = [
    "AgentState",
    "AgentStatus",
    "AgentMetrics",
    "ScrapingAgent",
    "MAX_CONSECUTIVE_ERRORS",
]
