import asyncio

import pytest

from chat_scraper.agent import AgentMetrics, AgentState, AgentStatus
from chat_scraper.broadcast import BroadcastChannel
from chat_scraper.errors import AgentError, BrowserError, NetworkError

from .conftest import NO_CHAT_HTML, DriverFactory, FakeParser, chat_html, wait_until


@pytest.mark.anyio
async def test_agent_reaches_running(make_agent, driver_factory):
    agent = make_agent()
    assert agent.get_status().state is AgentState.IDLE

    await agent.start("shroud")

    assert agent.get_status() == AgentStatus(AgentState.RUNNING)
    assert agent.streamer == "shroud"
    assert agent.pool.instance_count() == 1
    driver = driver_factory.drivers[0]
    assert driver.urls == ["https://www.twitch.tv/shroud"]
    assert len(driver.scripts) == 2

    await agent.stop()


@pytest.mark.anyio
async def test_start_twice_is_rejected(make_agent):
    agent = make_agent()
    await agent.start("shroud")

    with pytest.raises(AgentError, match="cannot start"):
        await agent.start("ninja")

    await agent.stop()
    with pytest.raises(AgentError):
        await agent.start("shroud")


@pytest.mark.anyio
async def test_messages_are_published(make_agent):
    channel = BroadcastChannel()
    factory = DriverFactory(pages=[chat_html("hello", "world")])
    agent = make_agent(pool=None, channel=channel)
    agent.pool.driver_factory = factory
    subscription = agent.subscribe()

    await agent.start("shroud")
    first = await asyncio.wait_for(subscription.recv(), timeout=2)
    second = await asyncio.wait_for(subscription.recv(), timeout=2)
    await agent.stop()

    assert [first.message.text, second.message.text] == ["hello", "world"]
    assert first.streamer == "shroud"
    metrics = agent.get_metrics()
    assert metrics.messages_scraped == 2
    assert metrics.last_message_time is not None


def test_unchanged_page_is_not_reparsed(make_agent):
    parser = FakeParser()
    channel = BroadcastChannel()
    agent = make_agent(parser=parser, channel=channel)
    agent.streamer = "shroud"
    subscription = channel.subscribe()
    html = chat_html("same")

    assert len(agent.process_html(html)) == 1
    assert agent.process_html(html) == []
    assert agent.process_html(html) == []

    assert len(parser.calls) == 1
    assert len(subscription.drain()) == 1
    assert agent.get_metrics().messages_scraped == 1


def test_empty_parse_does_not_touch_metrics(make_agent):
    agent = make_agent()
    agent.streamer = "shroud"
    agent.process_html(chat_html())

    metrics = agent.get_metrics()
    assert metrics.messages_scraped == 0
    assert metrics.last_message_time is None


@pytest.mark.anyio
async def test_parse_errors_back_off_and_give_up(make_agent):
    parser = FakeParser(error=NetworkError("flaky"))
    factory = DriverFactory(pages=[chat_html("a"), chat_html("b"), chat_html("c")])
    agent = make_agent(parser=parser, max_consecutive_errors=3)
    agent.pool.driver_factory = factory

    await agent.start("shroud")
    await wait_until(lambda: agent.get_status().is_error)

    status = agent.get_status()
    assert status.reason.startswith("Too many consecutive errors")
    assert agent.get_metrics().error_count == 3
    await agent.stop()


@pytest.mark.anyio
async def test_ten_consecutive_parse_errors_end_the_loop(make_agent):
    agent = make_agent(parser=FakeParser(error=NetworkError("garbled")))
    agent.pool.driver_factory = DriverFactory(
        pages=[chat_html(f"line {n}") for n in range(12)]
    )

    await agent.start("shroud")
    await wait_until(lambda: agent.get_status().is_error, timeout=5)

    assert agent.get_status().reason == (
        "Too many consecutive errors: Network error: garbled"
    )
    assert agent.get_metrics().error_count == 10
    await asyncio.wait_for(agent.monitor_task, timeout=1)
    assert agent.monitor_task.done()
    await agent.stop()


@pytest.mark.anyio
async def test_browser_error_fails_fast_and_reports_proxy(make_agent, make_pool):
    pool = make_pool(
        proxy_list=["p1:8080"],
        factory=DriverFactory(pages=[chat_html(), NO_CHAT_HTML]),
    )
    agent = make_agent(pool=pool)

    await agent.start("shroud")
    await wait_until(lambda: agent.get_status().is_error)

    assert agent.get_status().reason == "Browser error: Chat container not found on page"
    assert pool.pool_stats["proxies_reported"] == 1
    await agent.stop()
    assert pool.instance_count() == 0


@pytest.mark.anyio
async def test_stop_releases_browser_instance(make_agent, driver_factory):
    agent = make_agent()
    await agent.start("shroud")

    await agent.stop()

    assert agent.get_status().state is AgentState.STOPPED
    assert agent.browser_instance_id is None
    assert agent.pool.instance_count() == 0
    assert driver_factory.drivers[0].closed
    assert agent.monitor_task.done()


@pytest.mark.anyio
async def test_stop_interrupts_long_backoff(make_agent):
    agent = make_agent(
        parser=FakeParser(error=NetworkError("flaky")),
        backoff_base=60.0,
    )
    agent.pool.driver_factory = DriverFactory(pages=[chat_html("a"), chat_html("b")])

    await agent.start("shroud")
    await wait_until(lambda: agent.get_metrics().error_count >= 1)

    await asyncio.wait_for(agent.stop(), timeout=1)
    assert agent.get_status().state is AgentState.STOPPED


@pytest.mark.anyio
async def test_browser_init_failure(make_agent, make_pool):
    pool = make_pool(factory=DriverFactory(open_error=RuntimeError("no chrome")))
    agent = make_agent(pool=pool)

    with pytest.raises(BrowserError):
        await agent.start("shroud")

    status = agent.get_status()
    assert status.is_error
    assert status.reason.startswith("Browser init failed:")
    assert "no chrome" in status.reason


@pytest.mark.anyio
async def test_navigation_failure(make_agent, make_pool):
    pool = make_pool(factory=DriverFactory(goto_error=RuntimeError("dns")))
    agent = make_agent(pool=pool)

    with pytest.raises(BrowserError):
        await agent.start("shroud")

    assert agent.get_status().reason.startswith("Navigation failed:")
    await agent.stop()
    assert pool.instance_count() == 0


@pytest.mark.anyio
async def test_missing_instance_is_reported(make_agent):
    agent = make_agent()
    agent.browser_instance_id = "gone"

    with pytest.raises(AgentError):
        await agent.start("shroud")
    assert agent.get_status() == AgentStatus.error("Browser instance not found")


def test_error_rate_uses_whole_seconds():
    assert AgentMetrics(error_count=3, uptime=0.9).error_rate() == 0.0
    assert AgentMetrics(error_count=3, uptime=2.5).error_rate() == 1.5
    assert AgentMetrics(error_count=1, uptime=20).error_rate() == 0.05


def test_status_rendering():
    assert str(AgentStatus(AgentState.RUNNING)) == "running"
    assert str(AgentStatus.error("boom")) == "error: boom"
    assert AgentStatus.error("boom").to_dict() == {"state": "error", "reason": "boom"}
