"""Shared route dependencies.

Learn: The hub and the record store are built in the lifespan and hung on
app.state. Routes reach them through these dependencies, never through
module globals, so tests swap both with app.dependency_overrides.

HTTPConnection covers both Request and WebSocket, so the same
dependencies work on the /ws endpoint.
"""

import asyncio
from typing import Any, Awaitable, TypeVar

from fastapi import Depends, HTTPException, Request
from starlette.requests import HTTPConnection

from orderpulse.db.store import RecordStore
from orderpulse.realtime.coordinator import DeliveryCoordinator
from orderpulse.realtime.hub import RealtimeHub

T = TypeVar("T")


def get_hub(conn: HTTPConnection) -> RealtimeHub:
    return conn.app.state.hub


def get_store(conn: HTTPConnection) -> RecordStore:
    return conn.app.state.store


def get_coordinator(hub: RealtimeHub = Depends(get_hub)) -> DeliveryCoordinator:
    return hub.coordinator


# ─── Long-poll helpers ───────────────────────────────────


class ClientDisconnected(Exception):
    """The HTTP client went away while its request was suspended."""


async def _until_disconnected(request: Request) -> None:
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


async def wait_or_disconnect(request: Request, awaitable: Awaitable[T]) -> T:
    """Await `awaitable` unless the client disconnects first.

    On disconnect the wait is cancelled, which releases its cache watcher
    immediately instead of holding it until the timeout.

    Raises:
        ClientDisconnected: the client went away first
    """
    wait_task = asyncio.ensure_future(awaitable)
    disconnect_task = asyncio.ensure_future(_until_disconnected(request))
    try:
        done, _ = await asyncio.wait(
            {wait_task, disconnect_task}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for task in (wait_task, disconnect_task):
            if not task.done():
                task.cancel()
    if wait_task in done:
        return wait_task.result()
    raise ClientDisconnected()


def clamp_timeout(timeout_ms: int, default_ms: int, max_ms: int) -> int:
    """Non-positive means "use the default"; anything above the cap is capped."""
    if timeout_ms <= 0:
        return default_ms
    return min(timeout_ms, max_ms)


def not_found(detail: str) -> HTTPException:
    return HTTPException(status_code=404, detail=detail)


def polling_hint(completed: bool, next_delay_ms: int) -> dict[str, Any]:
    return {"continue": not completed, "nextPollDelay": next_delay_ms}
