"""Shared fixtures: in-memory browser driver, scripted parser, fast timings."""
import asyncio
import re
from datetime import datetime, timezone
from typing import Callable, List, Optional

import pytest

from chat_scraper.agent import ScrapingAgent
from chat_scraper.broadcast import BroadcastChannel
from chat_scraper.browser_pool import BrowserResourcePool, PageDriver
from chat_scraper.config import AgentConfig, Config
from chat_scraper.models import ChatMessage, ChatUser, MessageContent
from chat_scraper.orchestrator import AgentOrchestrator, ResourceSample

EMPTY_CHAT_HTML = '<div class="chat-scroller"></div>'
NO_CHAT_HTML = "<html><body>offline</body></html>"


def chat_html(*texts: str) -> str:
    lines = "".join(f'<div class="chat-line" data-text="{text}"></div>' for text in texts)
    return f'<div class="chat-scroller">{lines}</div>'


def make_message(
    streamer: str = "shroud",
    text: str = "hello there",
    username: str = "viewer",
    timestamp: Optional[datetime] = None,
) -> ChatMessage:
    return ChatMessage(
        streamer=streamer,
        user=ChatUser(username=username, display_name=username.title()),
        message=MessageContent(text=text),
        timestamp=timestamp or datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc),
    )


class FakePageDriver(PageDriver):
    """Scripted page: serves `pages` in order, repeating the last one"""

    def __init__(
        self,
        pages: Optional[List[str]] = None,
        open_error: Optional[Exception] = None,
        open_delay: float = 0.0,
        goto_error: Optional[Exception] = None,
        content_error: Optional[Exception] = None,
    ):
        self.pages = list(pages or [EMPTY_CHAT_HTML])
        self.open_error = open_error
        self.open_delay = open_delay
        self.goto_error = goto_error
        self.content_error = content_error
        self.open_args = None
        self.urls: List[str] = []
        self.scripts: List[str] = []
        self.content_calls = 0
        self.closed = False

    async def open(self, user_agent, viewport, proxy=None, fingerprint=None):
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.open_error is not None:
            raise self.open_error
        self.open_args = (user_agent, viewport, proxy)

    async def goto(self, url):
        if self.goto_error is not None:
            raise self.goto_error
        self.urls.append(url)

    async def content(self):
        self.content_calls += 1
        if self.content_error is not None:
            raise self.content_error
        if len(self.pages) > 1:
            return self.pages.pop(0)
        return self.pages[0]

    async def evaluate(self, script):
        self.scripts.append(script)

    async def close(self):
        self.closed = True


class DriverFactory:
    """Builds FakePageDrivers and remembers them"""

    def __init__(self, **driver_options):
        self.driver_options = driver_options
        self.drivers: List[FakePageDriver] = []

    def __call__(self) -> FakePageDriver:
        driver = FakePageDriver(**self.driver_options)
        self.drivers.append(driver)
        return driver


class FakeParser:
    """Turns every data-text attribute into a message, or raises `error`"""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls: List[str] = []

    def parse(self, html, streamer):
        self.calls.append(html)
        if self.error is not None:
            raise self.error
        return [
            make_message(streamer=streamer, text=text)
            for text in re.findall(r'data-text="([^"]*)"', html)
        ]


class FakeSampler:
    def __init__(self, cpu_usage=10.0, memory_used=10, memory_total=100):
        self.cpu_usage = cpu_usage
        self.memory_used = memory_used
        self.memory_total = memory_total

    def sample(self) -> ResourceSample:
        return ResourceSample(self.cpu_usage, self.memory_used, self.memory_total)


FAST_AGENT_OPTIONS = {
    "poll_interval": 0.01,
    "backoff_base": 0.001,
    "settle_delay": 0.0,
}


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def driver_factory() -> DriverFactory:
    return DriverFactory()


@pytest.fixture
def make_pool(driver_factory):
    def _make(max_instances: int = 5, factory=None, **kwargs) -> BrowserResourcePool:
        kwargs.setdefault("settle_delay", 0.0)
        return BrowserResourcePool(
            max_instances=max_instances,
            driver_factory=factory or driver_factory,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_agent(make_pool):
    def _make(pool=None, parser=None, channel=None, **kwargs) -> ScrapingAgent:
        options = dict(FAST_AGENT_OPTIONS, delay_range=(0, 1))
        options.update(kwargs)
        return ScrapingAgent(
            pool=pool or make_pool(),
            parser=parser or FakeParser(),
            chat_channel=channel or BroadcastChannel(),
            **options,
        )

    return _make


def make_config(streamers, max_concurrent=5, **agent_options) -> Config:
    agent_options.setdefault("delay_range", (0, 1))
    return Config(
        streamers=list(streamers),
        agents=AgentConfig(max_concurrent=max_concurrent, **agent_options),
    )


@pytest.fixture
def make_orchestrator(make_pool):
    def _make(
        config: Config,
        sampler=None,
        parser=None,
        factory=None,
        **kwargs,
    ) -> AgentOrchestrator:
        pool = make_pool(max_instances=config.agents.max_concurrent, factory=factory)
        options = {
            "startup_stagger_ms": (0, 1),
            "startup_timeout": 2.0,
            "monitor_interval": 0.05,
            "scaling_interval": 0.05,
            "recovery_interval": 0.05,
            "agent_options": dict(FAST_AGENT_OPTIONS),
        }
        options.update(kwargs)
        return AgentOrchestrator(
            config,
            pool,
            parser=parser or FakeParser(),
            sampler=sampler or FakeSampler(),
            **options,
        )

    return _make
