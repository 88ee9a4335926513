"""Driver location: reporting and following. Also where drivers find and
claim ready orders.

Learn: Drivers PUT their position every few seconds. Each report is
upserted into driver_locations, written to the location cache, and
pushed to every SSE stream open on that order, on every process.

Customers follow along with either:
- GET /driver/location/:order_id         → latest position (cache, then DB)
- GET /driver/location/:order_id/stream  → SSE, one location_update per report

The stream opens with a connection_established frame and, when we know
it, the current position, so the map has something to draw at once.
Heartbeats come from the streaming registry; a stream that stops
draining is dropped there and its generator ends.
"""

from typing import Any, AsyncIterator, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from sse_starlette.sse import EventSourceResponse

from orderpulse.api.deps import get_coordinator, get_store, not_found
from orderpulse.auth.dependencies import Principal, require_roles
from orderpulse.config import settings
from orderpulse.db.store import OrderRecord, RecordStore
from orderpulse.realtime import events as ev
from orderpulse.realtime.authorization import DELIVERY_PHASE_STATES, authorize_location_stream
from orderpulse.realtime.channels import SSEChannel
from orderpulse.realtime.coordinator import (
    LOCATION_STATE,
    DeliveryCoordinator,
    snapshot_from_order,
)
from orderpulse.realtime.errors import UnauthorizedError
from orderpulse.realtime.status_cache import StatusSnapshot
from orderpulse.schemas.order import LocationUpdate

logger = structlog.get_logger()
router = APIRouter()


async def _current_location(
    coordinator: DeliveryCoordinator, store: RecordStore, order: OrderRecord
) -> Optional[StatusSnapshot]:
    cached = coordinator.latest_location(order.id)
    if cached is not None:
        return cached
    if order.driver_id is None:
        return None
    record = await store.get_driver_location(order.id, order.driver_id)
    if record is None:
        return None
    snapshot = StatusSnapshot(
        resource_id=ev.order_key(order.id),
        state=LOCATION_STATE,
        updated_at=ev.as_utc(record.timestamp),
        data={
            "orderId": order.id,
            "driverId": record.driver_id,
            "latitude": record.latitude,
            "longitude": record.longitude,
            "timestamp": ev.isoformat(record.timestamp),
        },
    )
    coordinator.remember_location(snapshot)
    return snapshot


def _location_data(snapshot: StatusSnapshot) -> dict[str, Any]:
    return {k: snapshot.data.get(k) for k in ("latitude", "longitude", "timestamp", "orderId")}


# ─── Driver side ────────────────────────────────────────


@router.put("/driver/location")
async def update_location(
    body: LocationUpdate,
    principal: Principal = Depends(require_roles("driver")),
    store: RecordStore = Depends(get_store),
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
):
    """Driver reports a position for an order they are delivering."""
    order = await store.get_order(body.order_id)
    if (
        order is None
        or order.driver_id != principal.user_id
        or order.status not in DELIVERY_PHASE_STATES
    ):
        raise HTTPException(status_code=403, detail="Not assigned to an order in delivery")

    record = await store.save_driver_location(
        principal.user_id, body.order_id, body.latitude, body.longitude
    )
    await coordinator.deliver(
        ev.DriverLocationUpdated(
            order_id=body.order_id,
            driver_id=principal.user_id,
            latitude=body.latitude,
            longitude=body.longitude,
        )
    )
    return {"message": "Location updated", "timestamp": ev.isoformat(record.timestamp)}


@router.get("/driver/active-deliveries")
async def active_deliveries(
    principal: Principal = Depends(require_roles("driver")),
    store: RecordStore = Depends(get_store),
):
    """Orders this driver is carrying or about to collect."""
    orders = await store.list_active_orders(driver_id=principal.user_id)
    return [
        {
            "orderId": o.id,
            "status": o.status,
            "restaurantName": o.restaurant_name,
            "deliveryAddress": o.delivery_address,
            "specialInstructions": o.special_instructions,
            "totalAmount": o.total_amount,
            "updatedAt": ev.isoformat(o.updated_at),
        }
        for o in orders
    ]


@router.get("/driver/available-orders")
async def available_orders(
    principal: Principal = Depends(require_roles("driver")),
    store: RecordStore = Depends(get_store),
):
    """Ready orders nobody has claimed, oldest first."""
    orders = await store.list_available_orders()
    available = [
        {
            "id": o.id,
            "status": o.status,
            "restaurantName": o.restaurant_name,
            "deliveryAddress": o.delivery_address,
            "totalAmount": o.total_amount,
            "createdAt": ev.isoformat(o.created_at),
            "assignEndpoint": f"/api/v1/driver/assign/{o.id}",
        }
        for o in orders
    ]
    return {"availableOrders": available, "count": len(available)}


@router.post("/driver/assign/{order_id}")
async def claim_order(
    order_id: int,
    principal: Principal = Depends(require_roles("driver")),
    store: RecordStore = Depends(get_store),
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
):
    """Claim a ready order. The kitchen hears who is coming for it."""
    async with coordinator.producer_locks.hold(ev.order_key(order_id)):
        order = await store.assign_driver(order_id, principal.user_id)
        if order is None:
            raise HTTPException(
                status_code=409,
                detail="Order not available for assignment (already assigned or not ready)",
            )
        # Same status, new driver: refresh the cached copy without waking pollers.
        coordinator.cache.restore(snapshot_from_order(order))

    await coordinator.send_to_room(
        ev.restaurant_room(order.restaurant_id),
        ev.make_frame(
            ev.DRIVER_ASSIGNED,
            {"orderId": order.id, "driverId": order.driver_id, "driverName": order.driver_name},
        ),
    )
    logger.info("order.driver_assigned", order_id=order.id, driver_id=principal.user_id)
    return {
        "message": "Successfully assigned to order",
        "orderId": order.id,
        "deliveryAddress": order.delivery_address,
    }


# ─── Customer side ──────────────────────────────────────


@router.get("/driver/location/{order_id}")
async def get_location(
    order_id: int,
    principal: Principal = Depends(require_roles("customer")),
    store: RecordStore = Depends(get_store),
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
):
    """Latest known driver position for the caller's order."""
    try:
        order = await authorize_location_stream(store, order_id, principal.user_id, principal.role)
    except UnauthorizedError as e:
        raise not_found(str(e))

    location = await _current_location(coordinator, store, order)
    if location is None:
        raise not_found("Driver location not available")

    age = (ev.utc_now() - location.updated_at).total_seconds() if location.updated_at else None
    return {
        **_location_data(location),
        "driverId": location.data.get("driverId"),
        "isStale": age is None or age > settings.location_cache_ttl_seconds,
    }


async def location_events(
    coordinator: DeliveryCoordinator,
    store: RecordStore,
    order: OrderRecord,
    channel: SSEChannel,
) -> AsyncIterator[dict[str, str]]:
    """SSE body for one follower. Registration lives exactly as long as this generator."""
    resource_id = ev.order_key(order.id)
    async with coordinator.open_stream(resource_id, channel):
        yield SSEChannel.encode(
            ev.make_frame(
                ev.CONNECTION_ESTABLISHED,
                {
                    "orderId": order.id,
                    "message": "Connected to location stream",
                    "heartbeatInterval": coordinator.streams.heartbeat_interval,
                },
            )
        )
        current = await _current_location(coordinator, store, order)
        if current is not None:
            yield SSEChannel.encode(ev.make_frame(ev.LOCATION_UPDATE, _location_data(current)))

        async for frame in channel.frames():
            yield SSEChannel.encode(frame)


@router.get("/driver/location/{order_id}/stream")
async def stream_location(
    order_id: int,
    principal: Principal = Depends(require_roles("customer")),
    store: RecordStore = Depends(get_store),
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
):
    """Server-Sent Events feed of the driver's position."""
    try:
        order = await authorize_location_stream(store, order_id, principal.user_id, principal.role)
    except UnauthorizedError as e:
        raise HTTPException(status_code=403, detail=str(e))

    channel = SSEChannel(
        principal.identity, principal.role, queue_size=settings.stream_queue_size
    )
    return EventSourceResponse(location_events(coordinator, store, order, channel))
