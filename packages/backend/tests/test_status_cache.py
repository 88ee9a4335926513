"""Status cache: TTL, last-write-wins, wake-ups."""

import asyncio
from datetime import timedelta

import pytest

from orderpulse.realtime.events import utc_now
from orderpulse.realtime.status_cache import StatusCache, StatusSnapshot


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def snap(state: str, progress=None) -> StatusSnapshot:
    return StatusSnapshot(resource_id="upload:1", state=state, progress=progress)


def test_put_then_get():
    cache = StatusCache()
    stored = cache.put("upload:1", snap("processing", 10))
    assert cache.get("upload:1") == stored
    assert stored.updated_at is not None
    assert len(cache) == 1


def test_last_write_wins():
    cache = StatusCache()
    cache.put("upload:1", snap("processing", 10))
    cache.put("upload:1", snap("processing", 30))
    assert cache.get("upload:1").progress == 30


def test_put_uses_key_as_resource_id():
    cache = StatusCache()
    stored = cache.put("order:9", StatusSnapshot(resource_id="ignored", state="confirmed"))
    assert stored.resource_id == "order:9"


def test_entries_expire():
    clock = FakeClock()
    cache = StatusCache(ttl_seconds=10, clock=clock)
    cache.put("upload:1", snap("processing"))
    clock.now += 9.9
    assert cache.get("upload:1") is not None
    clock.now += 0.2
    assert cache.get("upload:1") is None
    assert len(cache) == 0


def test_purge_expired():
    clock = FakeClock()
    cache = StatusCache(ttl_seconds=10, clock=clock)
    cache.put("a:1", snap("x"))
    clock.now += 5
    cache.put("a:2", snap("x"))
    clock.now += 6
    assert cache.purge_expired() == 1
    assert cache.get("a:2") is not None


def test_updated_at_never_moves_backwards():
    cache = StatusCache()
    future = utc_now() + timedelta(hours=1)
    cache.restore(StatusSnapshot(resource_id="upload:1", state="processing", updated_at=future))
    stored = cache.put("upload:1", snap("processing", 50))
    assert stored.updated_at == future


def test_snapshot_dict_round_trip_keeps_data():
    original = StatusSnapshot(
        resource_id="upload:1", state="processing", progress=42,
        updated_at=utc_now(), data={"uploadId": 1},
    )
    assert StatusSnapshot.from_dict(original.to_dict()) == original
    assert StatusSnapshot.from_dict(original.to_dict()).data == {"uploadId": 1}


@pytest.mark.asyncio
async def test_put_wakes_watchers():
    cache = StatusCache()
    future = cache.watch("upload:1")
    assert cache.watcher_count("upload:1") == 1
    cache.put("upload:1", snap("processing", 5))
    result = await asyncio.wait_for(future, 1)
    assert result.progress == 5
    assert cache.watcher_count() == 0


@pytest.mark.asyncio
async def test_restore_does_not_wake_watchers():
    cache = StatusCache()
    future = cache.watch("upload:1")
    cache.restore(snap("processing", 5))
    assert not future.done()
    cache.unwatch("upload:1", future)
    assert cache.watcher_count() == 0
