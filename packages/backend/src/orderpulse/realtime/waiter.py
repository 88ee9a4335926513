"""Change waiter — the long-polling primitive.

Learn: A long-poll request hands us the snapshot it already knows and a
maximum wait. We return as soon as something worth reporting happens:

1. the resource reached a terminal state   → completed=True
2. the state changed, or progress moved enough → the new snapshot
3. the wait time ran out                   → latest snapshot, timed_out=True

Waiting is a suspend/resume on a cache write future, bounded by the poll
interval. A write wakes us instantly; the interval re-check covers
anything that slipped past (cache expiry, a repopulated entry). The
request's task is suspended the whole time while the event loop keeps serving
everyone else.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from orderpulse.realtime.lifecycle import is_terminal
from orderpulse.realtime.status_cache import StatusCache, StatusSnapshot

logger = structlog.get_logger()

SnapshotLoader = Callable[[str], Awaitable[Optional[StatusSnapshot]]]


@dataclass
class WaitResult:
    """Outcome of one long-poll wait."""

    snapshot: Optional[StatusSnapshot]
    completed: bool = False
    timed_out: bool = False

    @property
    def found(self) -> bool:
        return self.snapshot is not None


class ChangeWaiter:
    """Waits for material changes of a cached resource."""

    def __init__(
        self,
        cache: StatusCache,
        loader: Optional[SnapshotLoader] = None,
        poll_interval: float = 1.0,
        max_wait_ms: int = 60_000,
        progress_threshold: int = 5,
    ):
        self.cache = cache
        self.loader = loader
        self.poll_interval = poll_interval
        self.max_wait_ms = max_wait_ms
        self.progress_threshold = progress_threshold

    def is_material_change(self, known: StatusSnapshot, current: StatusSnapshot) -> bool:
        """State differs, progress rose by >= threshold, or progress went backwards."""
        if known.state != current.state:
            return True
        if known.progress is None or current.progress is None:
            return known.progress != current.progress
        delta = current.progress - known.progress
        if delta < 0:
            # A retried step reset progress; report it rather than hide it.
            return True
        return delta >= self.progress_threshold

    async def read_through(self, resource_id: str) -> Optional[StatusSnapshot]:
        """Cached snapshot, or one read from the record store on a miss."""
        snapshot = self.cache.get(resource_id)
        if snapshot is not None:
            return snapshot
        if self.loader is None:
            return None
        snapshot = await self.loader(resource_id)
        if snapshot is not None:
            self.cache.restore(snapshot)
        return snapshot

    async def wait_for_change(
        self,
        resource_id: str,
        known: Optional[StatusSnapshot],
        max_wait_ms: int,
    ) -> WaitResult:
        """Suspend until the resource changes, finishes, or the wait runs out.

        `max_wait_ms` is clamped to [0, self.max_wait_ms]. A missing
        resource gets one fallback read from the record store before we
        report it as not found.
        """
        wait_ms = min(max(max_wait_ms, 0), self.max_wait_ms)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_ms / 1000

        current = await self.read_through(resource_id)
        if current is None:
            return WaitResult(snapshot=None)

        result = self._evaluate(known, current)
        if result is not None:
            return result

        log = logger.bind(resource_id=resource_id, wait_ms=wait_ms)
        log.debug("waiter.suspended", state=current.state, progress=current.progress)

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break

            future = self.cache.watch(resource_id)
            try:
                await asyncio.wait({future}, timeout=min(self.poll_interval, remaining))
            finally:
                self.cache.unwatch(resource_id, future)
                future.cancel()

            latest = self.cache.get(resource_id)
            if latest is None:
                # Evicted mid-wait: one look at the source of truth.
                latest = await self.read_through(resource_id)
                if latest is None:
                    log.info("waiter.resource_vanished")
                    return WaitResult(snapshot=None)
            current = latest

            result = self._evaluate(known, current)
            if result is not None:
                log.debug("waiter.resumed", state=current.state, progress=current.progress)
                return result

        return WaitResult(
            snapshot=current,
            completed=is_terminal(current.state),
            timed_out=True,
        )

    def _evaluate(
        self,
        known: Optional[StatusSnapshot],
        current: StatusSnapshot,
    ) -> Optional[WaitResult]:
        if is_terminal(current.state):
            return WaitResult(snapshot=current, completed=True)
        if known is None or self.is_material_change(known, current):
            return WaitResult(snapshot=current)
        return None
