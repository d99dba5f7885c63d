"""
Browser Resource Pool

Bounded pool of headless browser pages used by scraping agents. Each
instance carries its own randomized fingerprint, user agent and (optionally)
proxy; failed proxies sit out a cooldown before being handed out again.

Key Features:
- Hard ceiling on live pages, reserved before a page is created
- Page creation bounded by a timeout
- Proxy rotation with cooldown for reported-bad proxies
- Age-based sweep of stale instances
- Pluggable PageDriver; the default drives browser-use sessions
"""

import abc
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

import structlog

from .config import Config, StealthConfig
from .errors import BrowserError, ResourceLimitError
from .stealth import (
    BROWSER_ARGS,
    DEFAULT_FINGERPRINT,
    DEFAULT_USER_AGENT,
    FINGERPRINT_ARGS,
    VIDEO_DISABLE_SCRIPT,
    BrowserFingerprint,
    FingerprintRandomizer,
    UserAgentGenerator,
    Viewport,
    generate_stealth_script,
)

STREAM_URL_TEMPLATE = "https://www.twitch.tv/{streamer}"
CHAT_MARKERS = ("chat-scroller", "chat-line")


class PageDriver(abc.ABC):
    """Minimal page automation capability the pool needs"""

    @abc.abstractmethod
    async def open(
        self,
        user_agent: str,
        viewport: Viewport,
        proxy: Optional[str] = None,
        fingerprint: Optional[BrowserFingerprint] = None,
    ) -> None:
        """Launch the browser and open a blank page"""

    @abc.abstractmethod
    async def goto(self, url: str) -> None:
        ...

    @abc.abstractmethod
    async def content(self) -> str:
        """Return the current page HTML"""

    @abc.abstractmethod
    async def evaluate(self, script: str) -> Any:
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        ...


class BrowserUseDriver(PageDriver):
    """PageDriver backed by a browser_use BrowserSession"""

    def __init__(
        self,
        headless: bool = True,
        executable_path: Optional[str] = None,
        extra_args: Optional[List[str]] = None,
    ):
        self.logger = structlog.get_logger(self.__class__.__name__)
        self.headless = headless
        self.executable_path = executable_path
        self.extra_args = list(extra_args or [])
        self._session = None

    async def open(
        self,
        user_agent: str,
        viewport: Viewport,
        proxy: Optional[str] = None,
        fingerprint: Optional[BrowserFingerprint] = None,
    ) -> None:
        from browser_use import BrowserProfile, BrowserSession
        from browser_use.browser.profile import ProxySettings

        profile_options: Dict[str, Any] = {
            "headless": self.headless,
            "user_agent": user_agent,
            "viewport": {"width": viewport.width, "height": viewport.height},
            "args": BROWSER_ARGS + self.extra_args,
        }
        if self.executable_path:
            profile_options["executable_path"] = self.executable_path
        if proxy:
            server = proxy if "://" in proxy else f"http://{proxy}"
            profile_options["proxy"] = ProxySettings(server=server)
        if fingerprint is not None:
            profile_options["args"] = profile_options["args"] + FINGERPRINT_ARGS
            profile_options["locale"] = fingerprint.language.split(",")[0]
            profile_options["timezone_id"] = fingerprint.timezone

        session = BrowserSession(browser_profile=BrowserProfile(**profile_options))
        await session.start()
        self._session = session

        self.logger.debug(
            "Browser session started", headless=self.headless, proxy=proxy
        )

    async def goto(self, url: str) -> None:
        await self._require_session().navigate_to(url)

    async def content(self) -> str:
        page = await self._require_session().get_current_page()
        return await page.content()

    async def evaluate(self, script: str) -> Any:
        page = await self._require_session().get_current_page()
        return await page.evaluate(script.strip().rstrip(";"))

    async def close(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.stop()

    def _require_session(self):
        if self._session is None:
            raise BrowserError("Browser session is not open")
        return self._session


@dataclass
class BrowserInstance:
    """One pooled page together with the identity it presents"""

    id: str
    driver: PageDriver
    fingerprint: BrowserFingerprint
    user_agent: str
    proxy: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    settle_delay: float = 3.0

    async def navigate_to_stream(self, streamer: str) -> None:
        """
        Open the streamer's channel page and prepare it for scraping.

        Raises:
            BrowserError: if navigation or script injection fails
        """
        url = STREAM_URL_TEMPLATE.format(streamer=streamer)
        logger = structlog.get_logger(self.__class__.__name__)
        logger.info(f"Navigating to {url}", instance_id=self.id)

        try:
            await self.driver.goto(url)
            await asyncio.sleep(self.settle_delay)
            await self.driver.evaluate(VIDEO_DISABLE_SCRIPT)
            await self.driver.evaluate(generate_stealth_script(self.fingerprint))
        except BrowserError:
            raise
        except Exception as error:
            raise BrowserError(f"Failed to navigate to {url}: {error}") from error

    async def get_chat_html(self) -> str:
        """
        Fetch the current page HTML.

        Raises:
            BrowserError: if the page cannot be read or has no chat pane
        """
        try:
            html = await self.driver.content()
        except BrowserError:
            raise
        except Exception as error:
            raise BrowserError(f"Failed to get page content: {error}") from error

        if not any(marker in html for marker in CHAT_MARKERS):
            raise BrowserError("Chat container not found on page")
        return html

    def age_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.created_at).total_seconds()


class BrowserResourcePool:
    """
    Bounded collection of BrowserInstances.

    Registry reads and writes never straddle an await, so a capacity check
    and its reservation cannot interleave with another caller's. Page
    launches and closes happen outside of them.
    """

    def __init__(
        self,
        max_instances: int,
        proxy_list: Optional[List[str]] = None,
        stealth: Optional[StealthConfig] = None,
        driver_factory: Optional[Callable[[], PageDriver]] = None,
        page_timeout: float = 10.0,
        proxy_cooldown: float = 300.0,
        settle_delay: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize browser resource pool.

        Args:
            max_instances: Maximum number of live pages
            proxy_list: 'host:port' proxies to rotate through
            stealth: Fingerprint and user agent randomization settings
            driver_factory: Builds a fresh PageDriver per instance
            page_timeout: Seconds allowed for a page to open
            proxy_cooldown: Seconds a reported proxy is skipped
            settle_delay: Seconds to wait after navigation before injecting scripts
            clock: Monotonic time source for proxy cooldowns
        """
        self.logger = structlog.get_logger(self.__class__.__name__)
        self.max_instances = max_instances
        self.proxy_list = list(proxy_list or [])
        self.stealth = stealth or StealthConfig()
        self.driver_factory = driver_factory or BrowserUseDriver
        self.page_timeout = page_timeout
        self.proxy_cooldown = proxy_cooldown
        self.settle_delay = settle_delay
        self._clock = clock

        self._instances: Dict[str, BrowserInstance] = {}
        self._pending = 0

        self._user_agents = UserAgentGenerator()
        self._fingerprints = FingerprintRandomizer()
        self._proxy_index = 0
        self._failed_proxies: Dict[str, float] = {}

        self.pool_stats = {
            "instances_created": 0,
            "instances_removed": 0,
            "creation_failures": 0,
            "proxies_reported": 0,
        }

        self.logger.info(
            "Browser resource pool initialized",
            max_instances=max_instances,
            proxies=len(self.proxy_list),
        )

    @classmethod
    def from_config(cls, config: Config, **kwargs) -> "BrowserResourcePool":
        return cls(
            max_instances=config.agents.max_concurrent,
            proxy_list=config.agents.proxy_list,
            stealth=config.stealth,
            **kwargs,
        )

    def apply_config(self, config: Config) -> None:
        """Adopt a reloaded configuration's ceiling, proxies and stealth settings"""
        proxy_list = list(config.agents.proxy_list)
        if proxy_list != self.proxy_list:
            self._proxy_index = 0
            self._failed_proxies = {
                proxy: failed_at
                for proxy, failed_at in self._failed_proxies.items()
                if proxy in proxy_list
            }
        self.max_instances = config.agents.max_concurrent
        self.proxy_list = proxy_list
        self.stealth = config.stealth
        self.logger.info(
            "Browser resource pool reconfigured",
            max_instances=self.max_instances,
            proxies=len(self.proxy_list),
        )

    async def create_instance(self) -> str:
        """
        Launch and register a new page.

        Returns:
            Instance ID

        Raises:
            ResourceLimitError: if the pool is full
            BrowserError: if the page could not be created in time
        """
        in_use = len(self._instances) + self._pending
        if in_use >= self.max_instances:
            self.logger.error(
                "Cannot create browser instance",
                instances=in_use,
                max_instances=self.max_instances,
            )
            raise ResourceLimitError(
                f"Maximum browser instances ({self.max_instances}) reached"
            )
        self._pending += 1

        try:
            instance = await self._open_instance()
            self._instances[instance.id] = instance
        finally:
            self._pending -= 1

        self.pool_stats["instances_created"] += 1
        self.logger.info(
            f"Created browser instance {instance.id}",
            proxy=instance.proxy,
            viewport=f"{instance.fingerprint.viewport.width}x{instance.fingerprint.viewport.height}",
            total_instances=len(self._instances),
        )
        return instance.id

    def get_instance(self, instance_id: str) -> Optional[BrowserInstance]:
        return self._instances.get(instance_id)

    def instance_count(self) -> int:
        return len(self._instances)

    async def remove_instance(self, instance_id: str) -> None:
        """Close and deregister an instance; unknown IDs are ignored"""
        instance = self._instances.pop(instance_id, None)
        if instance is None:
            return

        await self._close_driver(instance.driver, instance_id)
        self.pool_stats["instances_removed"] += 1
        self.logger.info(
            f"Removed browser instance {instance_id}",
            total_instances=len(self._instances),
        )

    async def cleanup_old_instances(self, max_age: float) -> int:
        """
        Remove instances older than max_age seconds.

        Returns:
            Number of instances removed
        """
        stale = [
            instance_id
            for instance_id, instance in list(self._instances.items())
            if instance.age_seconds() >= max_age
        ]
        for instance_id in stale:
            await self.remove_instance(instance_id)

        if stale:
            self.logger.info(f"Cleaned up {len(stale)} old browser instances")
        return len(stale)

    def report_bad_proxy(self, proxy: str) -> None:
        self._failed_proxies[proxy] = self._clock()
        self.pool_stats["proxies_reported"] += 1
        self.logger.warning(
            "Proxy reported as bad", proxy=proxy, cooldown=self.proxy_cooldown
        )

    async def close_all(self) -> None:
        for instance_id in list(self._instances):
            await self.remove_instance(instance_id)
        self.logger.info("Browser resource pool closed")

    async def _open_instance(self) -> BrowserInstance:
        randomized = self.stealth.fingerprint_randomization
        fingerprint = (
            self._fingerprints.generate_fingerprint()
            if randomized
            else DEFAULT_FINGERPRINT
        )
        user_agent = (
            self._user_agents.random_user_agent()
            if self.stealth.randomize_user_agents
            else DEFAULT_USER_AGENT
        )
        proxy = self._next_proxy()
        instance_id = str(uuid4())

        driver = self.driver_factory()
        try:
            await asyncio.wait_for(
                driver.open(
                    user_agent,
                    fingerprint.viewport,
                    proxy,
                    fingerprint if randomized else None,
                ),
                timeout=self.page_timeout,
            )
        except asyncio.TimeoutError:
            self.pool_stats["creation_failures"] += 1
            await self._close_driver(driver, instance_id)
            raise BrowserError(
                f"Timed out creating page after {self.page_timeout}s"
            ) from None
        except asyncio.CancelledError:
            await self._close_driver(driver, instance_id)
            raise
        except Exception as error:
            self.pool_stats["creation_failures"] += 1
            await self._close_driver(driver, instance_id)
            if isinstance(error, BrowserError):
                raise
            raise BrowserError(f"Failed to create page: {error}") from error

        return BrowserInstance(
            id=instance_id,
            driver=driver,
            fingerprint=fingerprint,
            user_agent=user_agent,
            proxy=proxy,
            settle_delay=self.settle_delay,
        )

    def _next_proxy(self) -> Optional[str]:
        """Next proxy not cooling down, cycling the list at most once"""
        if not self.proxy_list:
            return None

        now = self._clock()
        for _ in range(len(self.proxy_list)):
            proxy = self.proxy_list[self._proxy_index % len(self.proxy_list)]
            self._proxy_index = (self._proxy_index + 1) % len(self.proxy_list)

            failed_at = self._failed_proxies.get(proxy)
            if failed_at is None:
                return proxy
            if now - failed_at >= self.proxy_cooldown:
                del self._failed_proxies[proxy]
                return proxy

        self.logger.warning("All proxies are cooling down, continuing without proxy")
        return None

    async def _close_driver(self, driver: PageDriver, instance_id: str) -> None:
        try:
            await driver.close()
        except Exception as error:
            self.logger.warning(
                f"Failed to close browser instance {instance_id}", error=str(error)
            )


__all__ = [
    "PageDriver",
    "BrowserUseDriver",
    "BrowserInstance",
    "BrowserResourcePool",
    "STREAM_URL_TEMPLATE",
]
