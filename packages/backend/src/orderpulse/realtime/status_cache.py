"""Status cache — last-known snapshot per resource, with TTL and wake-ups.

Learn: Polling clients never hit the database on the hot path. Every status
change lands here first; short polls read it, long polls SUSPEND on it.

Writes are synchronous (no await between read and write), so within one
event loop a put is atomic and needs no lock.

Each put also resolves the futures that long-poll waiters registered via
watch(). That turns "poll every second" into "wake up on write", while the
waiter keeps a periodic re-check as a safety net.

Entries expire after a TTL. An expired entry reads as absent, and callers
fall back to the record store (the source of truth).
"""

import asyncio
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Optional

from orderpulse.realtime.events import utc_now


@dataclass(frozen=True)
class StatusSnapshot:
    """Last-known state of one resource (an order or an upload)."""

    resource_id: str
    state: str
    progress: Optional[int] = None
    detail: Optional[str] = None
    updated_at: Optional[datetime] = None
    data: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "state": self.state,
            "progress": self.progress,
            "detail": self.detail,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "data": dict(self.data),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "StatusSnapshot":
        updated_at = raw.get("updated_at")
        return cls(
            resource_id=raw["resource_id"],
            state=raw["state"],
            progress=raw.get("progress"),
            detail=raw.get("detail"),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
            data=dict(raw.get("data") or {}),
        )


class StatusCache:
    """In-process TTL cache of StatusSnapshots keyed by resource id."""

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[StatusSnapshot, float]] = {}
        self._watchers: dict[str, set[asyncio.Future]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    # ─── Reads ───────────────────────────────────────────

    def get(self, resource_id: str) -> Optional[StatusSnapshot]:
        """Return the live snapshot, or None if absent or expired."""
        entry = self._entries.get(resource_id)
        if entry is None:
            return None
        snapshot, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[resource_id]
            return None
        return snapshot

    # ─── Writes ──────────────────────────────────────────

    def put(self, resource_id: str, snapshot: StatusSnapshot) -> StatusSnapshot:
        """Store unconditionally (last write wins) and stamp updated_at.

        updated_at never moves backwards for a resource, even if the wall
        clock does.
        """
        stamp = utc_now()
        previous = self.get(resource_id)
        if previous is not None and previous.updated_at and previous.updated_at > stamp:
            stamp = previous.updated_at

        stored = replace(snapshot, resource_id=resource_id, updated_at=stamp)
        self._entries[resource_id] = (stored, self._clock() + self.ttl_seconds)
        self._wake(resource_id, stored)
        return stored

    def restore(self, snapshot: StatusSnapshot) -> StatusSnapshot:
        """Repopulate from the record store after a miss.

        Keeps the store's timestamp and does not wake waiters; nothing
        changed, the cache just forgot.
        """
        self._entries[snapshot.resource_id] = (snapshot, self._clock() + self.ttl_seconds)
        return snapshot

    def evict(self, resource_id: str) -> None:
        self._entries.pop(resource_id, None)

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock()
        expired = [rid for rid, (_, exp) in self._entries.items() if exp <= now]
        for rid in expired:
            del self._entries[rid]
        return len(expired)

    # ─── Wake-ups ────────────────────────────────────────

    def watch(self, resource_id: str) -> asyncio.Future:
        """Future resolved with the next snapshot written for resource_id."""
        future = asyncio.get_running_loop().create_future()
        self._watchers.setdefault(resource_id, set()).add(future)
        return future

    def unwatch(self, resource_id: str, future: asyncio.Future) -> None:
        watchers = self._watchers.get(resource_id)
        if watchers is None:
            return
        watchers.discard(future)
        if not watchers:
            del self._watchers[resource_id]

    def watcher_count(self, resource_id: Optional[str] = None) -> int:
        if resource_id is not None:
            return len(self._watchers.get(resource_id, ()))
        return sum(len(w) for w in self._watchers.values())

    def _wake(self, resource_id: str, snapshot: StatusSnapshot) -> None:
        watchers = self._watchers.pop(resource_id, None)
        if not watchers:
            return
        for future in watchers:
            if not future.done():
                future.set_result(snapshot)
