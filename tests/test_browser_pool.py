import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from chat_scraper.browser_pool import STREAM_URL_TEMPLATE
from chat_scraper.config import StealthConfig
from chat_scraper.errors import BrowserError, ResourceLimitError
from chat_scraper.stealth import DEFAULT_FINGERPRINT, DEFAULT_USER_AGENT, USER_AGENTS, VIDEO_DISABLE_SCRIPT

from .conftest import NO_CHAT_HTML, DriverFactory, chat_html, make_config


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.mark.anyio
async def test_create_instance_registers_page(make_pool, driver_factory):
    pool = make_pool(max_instances=2)

    instance_id = await pool.create_instance()

    instance = pool.get_instance(instance_id)
    assert instance is not None
    assert pool.instance_count() == 1
    assert instance.user_agent in USER_AGENTS
    assert driver_factory.drivers[0].open_args[0] == instance.user_agent
    assert pool.pool_stats["instances_created"] == 1


@pytest.mark.anyio
async def test_pool_limit(make_pool):
    pool = make_pool(max_instances=1)
    await pool.create_instance()

    with pytest.raises(ResourceLimitError):
        await pool.create_instance()
    assert pool.instance_count() == 1


@pytest.mark.anyio
async def test_concurrent_creation_never_exceeds_limit(make_pool):
    pool = make_pool(max_instances=2, factory=DriverFactory(open_delay=0.02))

    results = await asyncio.gather(
        *(pool.create_instance() for _ in range(5)), return_exceptions=True
    )

    created = [r for r in results if isinstance(r, str)]
    rejected = [r for r in results if isinstance(r, ResourceLimitError)]
    assert len(created) == 2
    assert len(rejected) == 3
    assert pool.instance_count() == 2


@pytest.mark.anyio
async def test_creation_timeout_closes_driver(make_pool):
    factory = DriverFactory(open_delay=1.0)
    pool = make_pool(max_instances=1, factory=factory, page_timeout=0.05)

    with pytest.raises(BrowserError, match="Timed out"):
        await pool.create_instance()

    assert factory.drivers[0].closed
    assert pool.instance_count() == 0
    assert pool.pool_stats["creation_failures"] == 1
    # The reserved slot is released again
    factory.driver_options["open_delay"] = 0.0
    await pool.create_instance()


@pytest.mark.anyio
async def test_open_failure_becomes_browser_error(make_pool):
    factory = DriverFactory(open_error=RuntimeError("chrome missing"))
    pool = make_pool(factory=factory)

    with pytest.raises(BrowserError, match="chrome missing"):
        await pool.create_instance()
    assert factory.drivers[0].closed


@pytest.mark.anyio
async def test_proxy_rotation_skips_cooling_proxies(make_pool):
    clock = FakeClock()
    pool = make_pool(
        max_instances=10,
        proxy_list=["p1:8080", "p2:8080"],
        proxy_cooldown=300.0,
        clock=clock,
    )

    first = pool.get_instance(await pool.create_instance())
    second = pool.get_instance(await pool.create_instance())
    assert (first.proxy, second.proxy) == ("p1:8080", "p2:8080")

    pool.report_bad_proxy("p1:8080")
    third = pool.get_instance(await pool.create_instance())
    assert third.proxy == "p2:8080"

    clock.now += 301
    proxies = {
        pool.get_instance(await pool.create_instance()).proxy for _ in range(2)
    }
    assert proxies == {"p1:8080", "p2:8080"}


@pytest.mark.anyio
async def test_all_proxies_cooling_means_no_proxy(make_pool):
    pool = make_pool(proxy_list=["p1:8080"], clock=FakeClock())
    pool.report_bad_proxy("p1:8080")

    instance = pool.get_instance(await pool.create_instance())

    assert instance.proxy is None
    assert pool.pool_stats["proxies_reported"] == 1


@pytest.mark.anyio
async def test_remove_instance_is_idempotent(make_pool, driver_factory):
    pool = make_pool()
    instance_id = await pool.create_instance()

    await pool.remove_instance(instance_id)
    await pool.remove_instance(instance_id)
    await pool.remove_instance("unknown")

    assert driver_factory.drivers[0].closed
    assert pool.instance_count() == 0
    assert pool.pool_stats["instances_removed"] == 1


@pytest.mark.anyio
async def test_cleanup_old_instances(make_pool):
    pool = make_pool()
    old_id = await pool.create_instance()
    fresh_id = await pool.create_instance()
    pool.get_instance(old_id).created_at = datetime.now(timezone.utc) - timedelta(
        hours=2
    )

    removed = await pool.cleanup_old_instances(max_age=3600)

    assert removed == 1
    assert pool.get_instance(old_id) is None
    assert pool.get_instance(fresh_id) is not None


@pytest.mark.anyio
async def test_close_all(make_pool):
    pool = make_pool()
    for _ in range(3):
        await pool.create_instance()
    await pool.close_all()
    assert pool.instance_count() == 0


@pytest.mark.anyio
async def test_navigate_to_stream_injects_scripts(make_pool, driver_factory):
    pool = make_pool()
    instance = pool.get_instance(await pool.create_instance())

    await instance.navigate_to_stream("shroud")

    driver = driver_factory.drivers[0]
    assert driver.urls == [STREAM_URL_TEMPLATE.format(streamer="shroud")]
    assert driver.urls == ["https://www.twitch.tv/shroud"]
    assert driver.scripts[0] == VIDEO_DISABLE_SCRIPT
    assert "hardwareConcurrency" in driver.scripts[1]
    assert "webdriver" in driver.scripts[1]


@pytest.mark.anyio
async def test_navigation_failure_is_browser_error(make_pool):
    pool = make_pool(factory=DriverFactory(goto_error=RuntimeError("net::ERR")))
    instance = pool.get_instance(await pool.create_instance())

    with pytest.raises(BrowserError, match="Failed to navigate"):
        await instance.navigate_to_stream("shroud")


@pytest.mark.anyio
async def test_get_chat_html_requires_chat_pane(make_pool):
    pool = make_pool(factory=DriverFactory(pages=[chat_html("hi"), NO_CHAT_HTML]))
    instance = pool.get_instance(await pool.create_instance())

    assert "chat-line" in await instance.get_chat_html()
    with pytest.raises(BrowserError, match="Chat container not found"):
        await instance.get_chat_html()


@pytest.mark.anyio
async def test_disabled_stealth_uses_fixed_identity(make_pool, driver_factory):
    pool = make_pool(
        stealth=StealthConfig(randomize_user_agents=False, fingerprint_randomization=False)
    )
    instance = pool.get_instance(await pool.create_instance())

    assert instance.user_agent == DEFAULT_USER_AGENT
    assert instance.fingerprint == DEFAULT_FINGERPRINT
    assert driver_factory.drivers[0].open_args[1] == DEFAULT_FINGERPRINT.viewport


@pytest.mark.anyio
async def test_cancelled_creation_releases_capacity(make_pool):
    slow = DriverFactory(open_delay=5.0)
    pool = make_pool(max_instances=1, factory=slow)

    creation = asyncio.create_task(pool.create_instance())
    await asyncio.sleep(0.05)
    creation.cancel()
    with pytest.raises(asyncio.CancelledError):
        await creation

    assert slow.drivers[0].closed
    assert pool.instance_count() == 0

    pool.driver_factory = DriverFactory()
    instance_id = await asyncio.wait_for(pool.create_instance(), timeout=1)
    assert pool.get_instance(instance_id) is not None


@pytest.mark.anyio
async def test_apply_config_raises_ceiling_and_swaps_proxies(make_pool, driver_factory):
    pool = make_pool(max_instances=1, proxy_list=["old:1"])
    await pool.create_instance()
    with pytest.raises(ResourceLimitError):
        await pool.create_instance()

    config = make_config(["alpha"], max_concurrent=2, proxy_list=["new:2"])
    pool.apply_config(config)

    await pool.create_instance()
    assert pool.instance_count() == 2
    assert pool.proxy_list == ["new:2"]
    assert driver_factory.drivers[-1].open_args[2] == "new:2"
