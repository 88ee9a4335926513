"""Order service: the one place an order's status is changed.

Learn: Both the REST route (PUT /orders/:id/status) and the restaurant
dashboard's WebSocket action (update-order-status) land here, so the
checks run identically whichever door the request came through:

1. the order exists
2. the actor is the order's restaurant, or its (claiming) driver
3. the lifecycle allows the move for that role
4. write the store, then deliver OrderStatusChanged

Steps 1-4 run under a per-order lock so two racing updates can't both
validate against the same old state.
"""

from typing import Optional

import structlog

from orderpulse.db.store import OrderRecord, RecordStore
from orderpulse.realtime import events as ev
from orderpulse.realtime.coordinator import DeliveryCoordinator
from orderpulse.realtime.lifecycle import is_order_actor_assigned, validate_order_transition

logger = structlog.get_logger()


class OrderNotFoundError(Exception):
    """Raised when the order does not exist."""


class OrderAccessError(Exception):
    """Raised when the actor is not assigned to the order."""


class OrderService:
    """Status changes for orders."""

    def __init__(self, store: RecordStore, coordinator: DeliveryCoordinator):
        self.store = store
        self.coordinator = coordinator

    async def change_status(
        self,
        order_id: int,
        status: str,
        actor_id: int,
        actor_role: str,
        estimated_time: Optional[str] = None,
    ) -> tuple[OrderRecord, OrderRecord]:
        """Move an order to `status`. Returns (before, after).

        Raises:
            OrderNotFoundError: no such order
            OrderAccessError: the actor isn't this order's restaurant or driver
            InvalidTransitionError: the lifecycle forbids the move
        """
        async with self.coordinator.producer_locks.hold(ev.order_key(order_id)):
            order = await self.store.get_order(order_id)
            if order is None:
                raise OrderNotFoundError(f"Order {order_id} not found")
            if not is_order_actor_assigned(
                actor_role, actor_id, status, order.restaurant_user_id, order.driver_id
            ):
                raise OrderAccessError(f"Not assigned to order {order_id}")
            validate_order_transition(order.status, status, actor_role)

            driver_id = actor_id if actor_role == "driver" else None
            updated = await self.store.update_order_status(order_id, status, driver_id=driver_id)
            await self.coordinator.deliver(
                ev.OrderStatusChanged(
                    order_id=order_id,
                    customer_id=updated.customer_id,
                    restaurant_id=updated.restaurant_id,
                    state=status,
                    previous_state=order.status,
                    actor_id=actor_id,
                    actor_role=actor_role,
                    estimated_time=estimated_time,
                    data={"driverId": updated.driver_id, "driverName": updated.driver_name},
                )
            )

        logger.info(
            "order.status_changed",
            order_id=order_id,
            previous_state=order.status,
            state=status,
            actor_role=actor_role,
            actor_id=actor_id,
        )
        return order, updated
