"""Streaming registry and SSE channels."""

import asyncio

import pytest

from orderpulse.realtime.channels import SSEChannel
from orderpulse.realtime.errors import TransportError
from orderpulse.realtime.events import HEARTBEAT, make_frame
from orderpulse.realtime.streaming import StreamingRegistry


@pytest.fixture()
def registry():
    return StreamingRegistry(heartbeat_interval=0.05)


@pytest.mark.asyncio
async def test_push_reaches_every_subscriber(registry, make_channel):
    a, b = make_channel("customer:1"), make_channel("customer:1")
    await registry.open("order:5", a)
    await registry.open("order:5", b)

    delivered = await registry.push("order:5", make_frame("location_update", {"lat": 1}))

    assert delivered == 2
    assert a.types() == ["location_update"]
    assert b.types() == ["location_update"]


@pytest.mark.asyncio
async def test_push_to_unwatched_resource_is_noop(registry):
    assert await registry.push("order:404", make_frame("x")) == 0


@pytest.mark.asyncio
async def test_failed_handle_is_dropped_and_closed(registry, make_channel):
    good, bad = make_channel(), make_channel(fail=True)
    await registry.open("order:5", good)
    await registry.open("order:5", bad)

    delivered = await registry.push("order:5", make_frame("x"))

    assert delivered == 1
    assert registry.count("order:5") == 1
    assert bad.closed
    assert good.frames


@pytest.mark.asyncio
async def test_one_dead_handle_among_three(registry, make_channel):
    a, b, dead = make_channel(), make_channel(), make_channel(fail=True)
    for channel in (a, b, dead):
        await registry.open("order:5", channel)
    assert registry.count("order:5") == 3

    assert await registry.push("order:5", make_frame("location_update")) == 2
    assert registry.count("order:5") == 2
    assert dead.closed
    assert a.types() == b.types() == ["location_update"]


@pytest.mark.asyncio
async def test_frames_keep_push_order(registry, make_channel):
    channel = make_channel()
    await registry.open("order:5", channel)
    for i in range(10):
        await registry.push("order:5", make_frame("x", {"seq": i}))
    assert [f["data"]["seq"] for f in channel.frames] == list(range(10))


@pytest.mark.asyncio
async def test_close_removes_empty_resource(registry, make_channel):
    channel = make_channel()
    await registry.open("order:5", channel)
    await registry.close("order:5", channel)
    await registry.close("order:5", channel)
    assert registry.count() == 0
    assert registry.resources() == []


@pytest.mark.asyncio
async def test_subscription_context_closes_channel(registry, make_channel):
    channel = make_channel()
    async with registry.subscription("order:5", channel):
        assert registry.count("order:5") == 1
    assert registry.count("order:5") == 0
    assert channel.closed


@pytest.mark.asyncio
async def test_heartbeat_sweep_drops_dead_handles(registry, make_channel):
    alive, dead = make_channel(), make_channel()
    await registry.open("order:5", alive)
    await registry.open("order:6", dead)
    dead.fail = True

    dropped = await registry.heartbeat()

    assert dropped == 1
    assert alive.types() == [HEARTBEAT]
    assert registry.resources() == ["order:5"]


@pytest.mark.asyncio
async def test_heartbeat_task_runs_on_interval(registry, make_channel, eventually):
    channel = make_channel()
    await registry.open("order:5", channel)
    registry.start()
    try:
        await eventually(lambda: len(channel.of_type(HEARTBEAT)) >= 2)
    finally:
        await registry.stop()


# ─── SSEChannel ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_sse_channel_drains_in_order_until_closed():
    channel = SSEChannel("customer:1", queue_size=10)
    await channel.send(make_frame("a"))
    await channel.send(make_frame("b"))
    await channel.close()

    seen = [frame["type"] async for frame in channel.frames()]
    assert seen == ["a", "b"]


@pytest.mark.asyncio
async def test_sse_channel_full_queue_is_transport_error():
    channel = SSEChannel("customer:1", queue_size=1)
    await channel.send(make_frame("a"))
    with pytest.raises(TransportError, match="not keeping up"):
        await channel.send(make_frame("b"))


@pytest.mark.asyncio
async def test_sse_channel_close_wakes_a_full_queue():
    channel = SSEChannel("customer:1", queue_size=1)
    await channel.send(make_frame("a"))
    await channel.close()
    with pytest.raises(TransportError):
        await channel.send(make_frame("b"))
    seen = [frame async for frame in channel.frames()]
    assert seen == []


@pytest.mark.asyncio
async def test_sse_drain_ends_when_registry_drops_channel(registry):
    channel = SSEChannel("customer:1", queue_size=1)
    await registry.open("order:5", channel)
    await registry.push("order:5", make_frame("a"))
    # Queue full: the second push fails and the registry closes the handle.
    await registry.push("order:5", make_frame("b"))

    assert registry.count("order:5") == 0
    drained = await asyncio.wait_for(_collect(channel), timeout=1)
    assert drained == []


async def _collect(channel):
    return [frame async for frame in channel.frames()]


def test_sse_encode():
    encoded = SSEChannel.encode(make_frame("x", {"n": 1}))
    assert encoded["data"].startswith('{"type": "x"')
