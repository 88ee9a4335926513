"""Order API: placing orders and following their status.

Learn: Three ways to follow an order, cheapest first:
- GET /orders/:id/status       → short poll, answered from the status cache
- GET /orders/:id/status/wait  → long poll, suspended until the order moves
- /ws (customer-{id} room)      → pushed order-status-update frames

Writers (PUT /orders/:id/status) go through OrderService, which validates
the move against the order lifecycle BEFORE touching the database, then
hands an OrderStatusChanged event to the coordinator. That one event
wakes every waiter and reaches every room at once.
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response

from orderpulse.api.deps import (
    ClientDisconnected,
    clamp_timeout,
    get_coordinator,
    get_store,
    not_found,
    polling_hint,
    wait_or_disconnect,
)
from orderpulse.auth.dependencies import Principal, get_current_principal, require_roles
from orderpulse.config import settings
from orderpulse.db.store import RecordNotFoundError, RecordStore
from orderpulse.realtime import events as ev
from orderpulse.realtime.authorization import authorize_order
from orderpulse.realtime.coordinator import DeliveryCoordinator
from orderpulse.realtime.errors import UnauthorizedError
from orderpulse.realtime.lifecycle import InvalidTransitionError
from orderpulse.realtime.status_cache import StatusSnapshot
from orderpulse.schemas.order import OrderCreate, OrderStatusChange
from orderpulse.services.order_service import (
    OrderAccessError,
    OrderNotFoundError,
    OrderService,
)

router = APIRouter()


def order_body(snapshot: StatusSnapshot) -> dict[str, Any]:
    """Polled status, shaped like the pushed status_update frame."""
    return {
        **snapshot.data,
        "status": snapshot.state,
        "lastUpdated": ev.isoformat(snapshot.updated_at),
    }


async def _authorize(
    store: RecordStore,
    principal: Principal,
    order_id: int,
    snapshot: Optional[StatusSnapshot] = None,
) -> None:
    """Customers are checked against the cached snapshot; everyone else hits the store."""
    if principal.role == "customer" and snapshot is not None and "customerId" in snapshot.data:
        if snapshot.data["customerId"] != principal.user_id:
            raise not_found("Order not found or access denied")
        return
    try:
        await authorize_order(store, order_id, principal.user_id, principal.role)
    except UnauthorizedError as e:
        raise not_found(str(e))


# ─── Place an order ─────────────────────────────────────


@router.post("/orders", status_code=201)
async def create_order(
    body: OrderCreate,
    principal: Principal = Depends(require_roles("customer")),
    store: RecordStore = Depends(get_store),
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
):
    """Customer places an order. The restaurant room hears about it at once."""
    if await store.get_restaurant(body.restaurant_id) is None:
        raise not_found("Restaurant not found")
    try:
        order, items = await store.create_order(
            customer_id=principal.user_id,
            restaurant_id=body.restaurant_id,
            items=[(item.menu_item_id, item.quantity) for item in body.items],
            delivery_address=body.delivery_address,
            special_instructions=body.special_instructions,
        )
    except RecordNotFoundError as e:
        raise HTTPException(status_code=400, detail=str(e))

    summary = {
        "customerId": order.customer_id,
        "totalAmount": order.total_amount,
        "deliveryAddress": order.delivery_address,
        "specialInstructions": order.special_instructions,
        "items": items,
        "createdAt": ev.isoformat(order.created_at),
    }
    await coordinator.deliver(
        ev.NewOrderPlaced(
            order_id=order.id,
            customer_id=order.customer_id,
            restaurant_id=order.restaurant_id,
            summary=summary,
        )
    )
    return {"orderId": order.id, "status": order.status, **summary}


@router.get("/orders/customer/active")
async def list_customer_orders(
    principal: Principal = Depends(require_roles("customer")),
    store: RecordStore = Depends(get_store),
):
    """The caller's orders that are still moving."""
    orders = await store.list_active_orders(customer_id=principal.user_id)
    return [
        {
            "orderId": o.id,
            "status": o.status,
            "restaurantName": o.restaurant_name,
            "driverName": o.driver_name,
            "totalAmount": o.total_amount,
            "createdAt": ev.isoformat(o.created_at),
            "updatedAt": ev.isoformat(o.updated_at),
        }
        for o in orders
    ]


# ─── Short poll ─────────────────────────────────────────


@router.get("/orders/{order_id}/status")
async def get_order_status(
    order_id: int,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
):
    """Current status plus a hint for when to poll again."""
    key = ev.order_key(order_id)
    from_cache = coordinator.cache.get(key) is not None
    snapshot = await coordinator.poll_status(key)
    if snapshot is None:
        raise not_found("Order not found")
    await _authorize(store, principal, order_id, snapshot)

    return {
        **order_body(snapshot),
        "orderId": order_id,
        "polling": {
            "nextPollIn": settings.short_poll_interval_seconds,
            "endpoint": f"/api/v1/orders/{order_id}/status",
            "fromCache": from_cache,
        },
    }


# ─── Long poll ──────────────────────────────────────────


@router.get("/orders/{order_id}/status/wait")
async def wait_for_order_status(
    request: Request,
    order_id: int,
    state: Optional[str] = Query(None, description="Status the client already has"),
    timeout: int = Query(0, description="Max wait in ms (0 = server default)"),
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
):
    """Hold the request until the order's status differs from `state`.

    Without `state`, the status at request time is the baseline.
    """
    key = ev.order_key(order_id)
    current = await coordinator.poll_status(key)
    if current is None:
        raise not_found("Order not found")
    await _authorize(store, principal, order_id, current)

    known = StatusSnapshot(resource_id=key, state=state) if state else current
    timeout_ms = clamp_timeout(
        timeout, settings.long_poll_default_timeout_ms, settings.long_poll_max_timeout_ms
    )
    try:
        result = await wait_or_disconnect(
            request, coordinator.wait_for_status_change(key, known, timeout_ms)
        )
    except ClientDisconnected:
        return Response(status_code=499)

    if not result.found:
        raise not_found("Order not found")
    return {
        **order_body(result.snapshot),
        "orderId": order_id,
        "completed": result.completed,
        "timeout": result.timed_out,
        "polling": polling_hint(result.completed, settings.long_poll_next_delay_ms),
    }


# ─── Status change (restaurant / driver) ────────────────


@router.put("/orders/{order_id}/status")
async def update_order_status(
    order_id: int,
    body: OrderStatusChange,
    principal: Principal = Depends(require_roles("restaurant", "driver")),
    store: RecordStore = Depends(get_store),
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
):
    """Move an order along its lifecycle and tell everyone watching."""
    service = OrderService(store, coordinator)
    try:
        order, updated = await service.change_status(
            order_id,
            body.status,
            actor_id=principal.user_id,
            actor_role=principal.role,
            estimated_time=body.estimated_time,
        )
    except OrderNotFoundError:
        raise not_found("Order not found")
    except OrderAccessError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {
        "message": "Order status updated",
        "orderId": order_id,
        "status": updated.status,
        "previousStatus": order.status,
        "updatedAt": ev.isoformat(updated.updated_at),
    }
