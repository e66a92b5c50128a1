"""Test suite for the streaming broadcaster."""

import asyncio

import pytest

from skyhammer_chat.services.broadcaster import StreamBroadcaster


async def collect(subscription):
    return [event async for event in subscription]


@pytest.mark.asyncio
async def test_chunks_fan_out_to_every_listener(broadcaster):
    """Test each subscriber receives every chunk and the terminal event."""
    first = broadcaster.subscribe("ex1")
    second = broadcaster.subscribe("ex1")
    readers = [asyncio.create_task(collect(s)) for s in (first, second)]

    assert await broadcaster.publish("ex1", "Hel") == 2
    await broadcaster.publish("ex1", "lo")
    await broadcaster.publish("ex1", "", done=True)

    for events in await asyncio.gather(*readers):
        assert [e.chunk for e in events] == ["Hel", "lo", ""]
        assert [e.done for e in events] == [False, False, True]
    assert broadcaster.listener_count("ex1") == 0


@pytest.mark.asyncio
async def test_late_listener_misses_earlier_chunks(broadcaster):
    """Test there is no replay for listeners that join mid-stream."""
    await broadcaster.publish("ex1", "early")
    late = broadcaster.subscribe("ex1")
    await broadcaster.publish("ex1", "late")
    await broadcaster.publish("ex1", "", done=True)

    assert [e.chunk for e in await collect(late)] == ["late", ""]


@pytest.mark.asyncio
async def test_exchanges_are_isolated(broadcaster):
    """Test chunks only reach listeners of their own exchange."""
    other = broadcaster.subscribe("ex2")
    await broadcaster.publish("ex1", "not for you", done=True)

    assert other.queue.empty()
    assert await broadcaster.publish("nobody-listening", "x") == 0


@pytest.mark.asyncio
async def test_error_terminal_event(broadcaster):
    """Test the terminal event can carry an error message."""
    listener = broadcaster.subscribe("ex1")
    await broadcaster.publish("ex1", "Something went wrong.", done=True, error=True)

    (event,) = await collect(listener)
    assert event.done and event.error
    assert event.chunk == "Something went wrong."


@pytest.mark.asyncio
async def test_lagging_listener_is_dropped_with_terminal_event():
    """Test a listener whose buffer overflows is ended instead of blocking others."""
    broadcaster = StreamBroadcaster(buffer_size=2)
    slow = broadcaster.subscribe("ex1")
    for i in range(3):
        await broadcaster.publish("ex1", str(i))

    events = await collect(slow)
    assert len(events) == 1
    assert events[0].done and events[0].error
    assert broadcaster.listener_count("ex1") == 0


@pytest.mark.asyncio
async def test_closed_listener_stops_receiving(broadcaster):
    """Test unsubscribing removes the listener."""
    async with broadcaster.subscribe("ex1"):
        assert broadcaster.listener_count("ex1") == 1
    assert broadcaster.listener_count("ex1") == 0
