"""Tests for the in-process progress channel."""

from __future__ import annotations

import asyncio

import pytest

from sourceflow.events import ProgressChannel, crawl_topic


def test_crawl_topic():
    assert crawl_topic("abc") == "crawl:abc"


def test_buffer_size_must_be_positive():
    with pytest.raises(ValueError):
        ProgressChannel(buffer_size=0)


def test_publish_without_subscribers():
    assert ProgressChannel().publish("crawl:x", {"phase": "processing"}) == 0


@pytest.mark.asyncio
async def test_subscriber_receives_in_order():
    channel = ProgressChannel()
    sub = channel.subscribe("crawl:s1")
    channel.publish("crawl:s1", {"n": 1})
    channel.publish("crawl:s1", {"n": 2})
    channel.publish("crawl:other", {"n": 99})
    assert await sub.get() == {"n": 1}
    assert await sub.get() == {"n": 2}


@pytest.mark.asyncio
async def test_fan_out_to_all_subscribers():
    channel = ProgressChannel()
    a = channel.subscribe("t")
    b = channel.subscribe("t")
    assert channel.publish("t", {"x": 1}) == 2
    assert await a.get() == {"x": 1}
    assert await b.get() == {"x": 1}


@pytest.mark.asyncio
async def test_slow_subscriber_drops_oldest():
    channel = ProgressChannel(buffer_size=2)
    sub = channel.subscribe("t")
    for n in range(5):
        channel.publish("t", {"n": n})
    assert sub.dropped == 3
    assert await sub.get() == {"n": 3}
    assert await sub.get() == {"n": 4}


@pytest.mark.asyncio
async def test_close_ends_iteration_and_unsubscribes():
    channel = ProgressChannel()
    received = []

    async def consume(sub):
        async for event in sub:
            received.append(event["n"])

    sub = channel.subscribe("t")
    task = asyncio.create_task(consume(sub))
    channel.publish("t", {"n": 1})
    channel.publish("t", {"n": 2})
    await asyncio.sleep(0)
    sub.close()
    await asyncio.wait_for(task, timeout=1)

    assert received == [1, 2]
    assert channel.subscriber_count("t") == 0
    assert channel.publish("t", {"n": 3}) == 0


@pytest.mark.asyncio
async def test_context_manager_closes():
    channel = ProgressChannel()
    async with channel.subscribe("t") as sub:
        assert channel.subscriber_count("t") == 1
    assert channel.subscriber_count("t") == 0
    with pytest.raises(StopAsyncIteration):
        await sub.get()
