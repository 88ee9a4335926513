"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running and its
dependencies (Postgres, Redis) are reachable. It also reports the hub's
live counters so an operator can see streams, room members and waiters
at a glance.
"""

from fastapi import APIRouter, Depends

from orderpulse import __version__
from orderpulse.api.deps import get_hub, get_store
from orderpulse.db.store import RecordStore
from orderpulse.realtime.hub import RealtimeHub

router = APIRouter()


@router.get("/health")
async def health_check(
    hub: RealtimeHub = Depends(get_hub),
    store: RecordStore = Depends(get_store),
):
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    # Check Postgres
    checks["postgres"] = "ok" if await store.ping() else "error: unreachable"

    # Check Redis (or the in-process broker)
    checks["redis"] = "ok" if await hub.broker.ping() else "error: unreachable"

    status = "healthy" if all(
        v == "ok" for k, v in checks.items() if k != "version"
    ) else "degraded"

    return {"status": status, **checks, "realtime": hub.coordinator.stats()}
