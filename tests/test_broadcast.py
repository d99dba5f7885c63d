import asyncio

import pytest

from chat_scraper.broadcast import BroadcastChannel, ChannelClosed


def test_send_without_subscribers_is_not_an_error():
    channel = BroadcastChannel()
    assert channel.send("hello") == 0
    assert channel.sent == 1


def test_every_subscriber_receives_each_item():
    channel = BroadcastChannel()
    first = channel.subscribe()
    second = channel.subscribe()

    assert channel.send(1) == 2
    assert channel.send(2) == 2

    assert first.drain() == [1, 2]
    assert second.drain() == [1, 2]


def test_late_subscriber_sees_only_new_items():
    channel = BroadcastChannel()
    channel.send("old")
    subscription = channel.subscribe()
    channel.send("new")
    assert subscription.drain() == ["new"]


def test_slow_subscriber_loses_oldest_items():
    channel = BroadcastChannel(capacity=3)
    subscription = channel.subscribe()

    for item in range(5):
        channel.send(item)

    assert subscription.lagged == 2
    assert subscription.drain() == [2, 3, 4]


def test_try_recv_on_empty_buffer():
    channel = BroadcastChannel()
    subscription = channel.subscribe()
    assert subscription.try_recv() is None
    channel.send("x")
    assert subscription.try_recv() == "x"


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        BroadcastChannel(capacity=0)


@pytest.mark.anyio
async def test_recv_waits_for_next_item():
    channel = BroadcastChannel()
    subscription = channel.subscribe()

    receiver = asyncio.create_task(subscription.recv())
    await asyncio.sleep(0)
    assert not receiver.done()

    channel.send("chat")
    assert await asyncio.wait_for(receiver, timeout=1) == "chat"


@pytest.mark.anyio
async def test_close_drains_then_ends_iteration():
    channel = BroadcastChannel()
    subscription = channel.subscribe()
    channel.send("a")
    channel.send("b")
    channel.close()

    received = [item async for item in subscription]

    assert received == ["a", "b"]
    assert channel.send("c") == 0
    with pytest.raises(ChannelClosed):
        await subscription.recv()


@pytest.mark.anyio
async def test_close_wakes_waiting_receiver():
    channel = BroadcastChannel()
    subscription = channel.subscribe()
    receiver = asyncio.create_task(subscription.recv())
    await asyncio.sleep(0)

    channel.close()

    with pytest.raises(ChannelClosed):
        await asyncio.wait_for(receiver, timeout=1)


@pytest.mark.anyio
async def test_subscription_context_manager_unsubscribes():
    channel = BroadcastChannel()
    async with channel.subscribe():
        assert channel.subscriber_count == 1
    assert channel.subscriber_count == 0


def test_subscribe_after_close_is_already_closed():
    channel = BroadcastChannel()
    channel.close()
    subscription = channel.subscribe()
    assert subscription.closed
    assert channel.subscriber_count == 0
