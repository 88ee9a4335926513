"""Delivery coordinator: the one door producers knock on.

Learn: A producer (order route, chat socket, driver location update,
announcement, upload pipeline) never touches a registry. It hands a
domain event to deliver(), and the coordinator turns it into a
DeliveryPlan:

    snapshots   → status cache puts (wakes long-pollers)
    locations   → driver-location cache puts
    pushes      → streaming registry (SSE / one-way subscribers)
    broadcasts  → room registry (WebSocket rooms)
    publishes   → announcement channels on the broker

The plan runs locally first, then goes out on the relay channel so every
other process runs the same cache puts, pushes and broadcasts against its
own registries. A broker failure is logged and absorbed: local delivery
has already happened, only cross-process delivery is lost for that event.

Dispatch is a single handler table keyed by event class. Construction
fails if any event type in EVENT_TYPES lacks a handler.
"""

import functools
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import structlog

from orderpulse.db.store import OrderRecord, RecordStore, UploadRecord
from orderpulse.realtime import events as ev
from orderpulse.realtime.bridge import BrokerBridge
from orderpulse.realtime.channels import ChannelHandle
from orderpulse.realtime.errors import BrokerUnavailableError, TransportError
from orderpulse.realtime.locks import KeyedLock
from orderpulse.realtime.lifecycle import (
    ORDER_STATUS_MESSAGES,
    estimated_delivery,
    validate_order_transition,
    validate_state,
    validate_upload_transition,
)
from orderpulse.realtime.rooms import RoomMembership, RoomRegistry
from orderpulse.realtime.status_cache import StatusCache, StatusSnapshot
from orderpulse.realtime.streaming import StreamingRegistry, StreamSubscription
from orderpulse.realtime.waiter import ChangeWaiter, WaitResult

logger = structlog.get_logger()

LOCATION_STATE = "en_route"


# ═══════════════════════════════════════════════════════════
# Delivery plans
# ═══════════════════════════════════════════════════════════


@dataclass
class DeliveryPlan:
    """Everything one event should cause, on every process."""

    snapshots: list[StatusSnapshot] = field(default_factory=list)
    locations: list[StatusSnapshot] = field(default_factory=list)
    pushes: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    broadcasts: list[tuple[str, dict[str, Any], Optional[str]]] = field(default_factory=list)
    publishes: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    relay: bool = True

    def to_relay(self) -> dict[str, Any]:
        return {
            "snapshots": [s.to_dict() for s in self.snapshots],
            "locations": [s.to_dict() for s in self.locations],
            "pushes": [[rid, frame] for rid, frame in self.pushes],
            "broadcasts": [[room, frame, exclude] for room, frame, exclude in self.broadcasts],
        }

    @classmethod
    def from_relay(cls, raw: dict[str, Any]) -> "DeliveryPlan":
        return cls(
            snapshots=[StatusSnapshot.from_dict(s) for s in raw.get("snapshots", [])],
            locations=[StatusSnapshot.from_dict(s) for s in raw.get("locations", [])],
            pushes=[(rid, frame) for rid, frame in raw.get("pushes", [])],
            broadcasts=[(room, frame, exclude) for room, frame, exclude in raw.get("broadcasts", [])],
            relay=False,
        )


# ─── Announcement presentation hints ─────────────────────

_ANNOUNCEMENT_PRIORITY = {
    "urgent": "high",
    "maintenance": "medium",
    "promotion": "low",
    "general": "low",
}
_ANNOUNCEMENT_DISPLAY_MS = {
    "urgent": 30_000,
    "maintenance": 20_000,
    "promotion": 15_000,
    "general": 10_000,
}


def announcement_priority(announcement_type: str) -> str:
    return _ANNOUNCEMENT_PRIORITY.get(announcement_type, "low")


def announcement_tier_channels(target_audience: str) -> list[str]:
    """Channels an announcement is published on.

    "all" goes out once on announcements-all, which every subscriber has
    joined alongside its own tier. Publishing it on each tier as well
    would deliver it twice.
    """
    return [ev.announcement_room(target_audience)]


def announcement_frame_data(payload: dict[str, Any]) -> dict[str, Any]:
    kind = payload.get("type", "general")
    return {
        "id": payload.get("id"),
        "title": payload.get("title"),
        "message": payload.get("message"),
        "type": kind,
        "priority": payload.get("priority") or announcement_priority(kind),
        "timestamp": payload.get("timestamp"),
        "expiresAt": payload.get("expiresAt"),
        "displayDuration": _ANNOUNCEMENT_DISPLAY_MS.get(kind, 10_000),
        "showNotification": kind in ("urgent", "maintenance"),
        "playSound": kind == "urgent",
    }


# ─── Snapshots from records ──────────────────────────────


def snapshot_from_order(order: OrderRecord) -> StatusSnapshot:
    eta = estimated_delivery(order.status, ev.as_utc(order.created_at), ev.as_utc(order.updated_at))
    return StatusSnapshot(
        resource_id=ev.order_key(order.id),
        state=order.status,
        updated_at=ev.as_utc(order.updated_at),
        data={
            "orderId": order.id,
            "customerId": order.customer_id,
            "restaurantId": order.restaurant_id,
            "driverId": order.driver_id,
            "restaurantName": order.restaurant_name,
            "driverName": order.driver_name,
            "totalAmount": order.total_amount,
            "deliveryAddress": order.delivery_address,
            "estimatedDelivery": ev.isoformat(eta),
            "createdAt": ev.isoformat(order.created_at),
        },
    )


def snapshot_from_upload(upload: UploadRecord) -> StatusSnapshot:
    return StatusSnapshot(
        resource_id=ev.upload_key(upload.id),
        state=upload.status,
        progress=upload.progress,
        detail=upload.error_message,
        updated_at=ev.as_utc(upload.updated_at),
        data={
            "uploadId": upload.id,
            "restaurantId": upload.restaurant_id,
            "restaurantUserId": upload.restaurant_user_id,
        },
    )


def status_frame(snapshot: StatusSnapshot) -> dict[str, Any]:
    data = {
        "resourceId": snapshot.resource_id,
        "status": snapshot.state,
        "progress": snapshot.progress,
        "detail": snapshot.detail,
    }
    data.update(snapshot.data)
    return ev.make_frame(ev.STATUS_UPDATE, data)


# ═══════════════════════════════════════════════════════════
# Coordinator
# ═══════════════════════════════════════════════════════════


class DeliveryCoordinator:
    def __init__(
        self,
        cache: StatusCache,
        waiter: ChangeWaiter,
        streams: StreamingRegistry,
        rooms: RoomRegistry,
        bridge: BrokerBridge,
        store: Optional[RecordStore] = None,
        location_cache: Optional[StatusCache] = None,
    ):
        self.cache = cache
        self.waiter = waiter
        self.streams = streams
        self.rooms = rooms
        self.bridge = bridge
        self.store = store
        self.location_cache = location_cache or StatusCache(ttl_seconds=300)
        # Serializes read-validate-write sequences of producers per resource.
        self.producer_locks = KeyedLock()

        if self.waiter.loader is None and store is not None:
            self.waiter.loader = self.load_snapshot

        self._handlers: dict[type, Callable[[Any], Awaitable[Any]]] = {
            ev.OrderStatusChanged: self._on_order_status_changed,
            ev.NewOrderPlaced: self._on_new_order,
            ev.DriverLocationUpdated: self._on_driver_location,
            ev.ChatMessagePosted: self._on_chat_message,
            ev.ChatClosed: self._on_chat_closed,
            ev.AnnouncementPublished: self._on_announcement,
            ev.UploadProgressed: self._on_upload_progressed,
        }
        missing = [t.__name__ for t in ev.EVENT_TYPES if t not in self._handlers]
        if missing:
            raise TypeError(f"No delivery handler for: {', '.join(missing)}")

    # ─── Broker wiring ───────────────────────────────────

    async def attach(self) -> None:
        """Register the relay and announcement channels on the bridge."""
        await self.bridge.subscribe(ev.RELAY_CHANNEL, self._on_relay)
        for channel in ev.ANNOUNCEMENT_CHANNELS:
            await self.bridge.subscribe(
                channel, functools.partial(self._on_remote_announcement, channel)
            )

    async def _on_relay(self, payload: dict[str, Any]) -> None:
        await self.execute(DeliveryPlan.from_relay(payload))

    async def _on_remote_announcement(self, room: str, payload: dict[str, Any]) -> None:
        frame = ev.make_frame(ev.NEW_ANNOUNCEMENT, announcement_frame_data(payload))
        delivered = await self.rooms.broadcast(room, frame)
        logger.info("announcement.relayed", room=room, delivered=delivered)

    # ─── Plan execution ──────────────────────────────────

    async def execute(self, plan: DeliveryPlan) -> None:
        """Run a plan against this process, then hand it to the broker."""
        for snapshot in plan.snapshots:
            self.cache.put(snapshot.resource_id, snapshot)
        for snapshot in plan.locations:
            self.location_cache.put(snapshot.resource_id, snapshot)
        for resource_id, frame in plan.pushes:
            await self.streams.push(resource_id, frame)
        for room, frame, exclude in plan.broadcasts:
            if exclude is None:
                await self.rooms.broadcast(room, frame)
            else:
                await self.rooms.broadcast_except(room, frame, exclude)

        if plan.relay and (plan.snapshots or plan.locations or plan.pushes or plan.broadcasts):
            await self._publish(ev.RELAY_CHANNEL, plan.to_relay())
        for channel, payload in plan.publishes:
            await self._publish(channel, payload)

    async def _publish(self, channel: str, payload: dict[str, Any]) -> None:
        try:
            await self.bridge.publish(channel, payload)
        except BrokerUnavailableError as e:
            logger.warning("coordinator.publish_skipped", channel=channel, error=str(e))

    # ─── Producer API: status ────────────────────────────

    async def report_status_change(
        self,
        resource_id: str,
        snapshot: StatusSnapshot,
        *,
        previous_state: Optional[str] = None,
        previous_progress: Optional[int] = None,
        actor_role: Optional[str] = None,
        actor_assigned: bool = True,
    ) -> StatusSnapshot:
        """Validate, cache, push to streams, relay.

        Producers that write the record store first pass `previous_state`
        (and `previous_progress`), since a read-through would already see
        the new state.

        Raises:
            InvalidTransitionError: the change breaks the resource's lifecycle;
                nothing is cached or delivered
        """
        await self._validate(
            resource_id,
            snapshot,
            previous_state,
            actor_role,
            actor_assigned,
            previous_progress,
        )
        await self.execute(self._status_plan(resource_id, snapshot))
        return self.cache.get(resource_id) or snapshot

    def _status_plan(self, resource_id: str, snapshot: StatusSnapshot) -> DeliveryPlan:
        snapshot = replace(snapshot, resource_id=resource_id)
        return DeliveryPlan(
            snapshots=[snapshot],
            pushes=[(resource_id, status_frame(snapshot))],
        )

    async def _validate(
        self,
        resource_id: str,
        snapshot: StatusSnapshot,
        previous_state: Optional[str],
        actor_role: Optional[str],
        actor_assigned: bool,
        previous_progress: Optional[int] = None,
    ) -> None:
        validate_state(resource_id, snapshot.state, snapshot.progress)
        known = self.cache.get(resource_id)
        current = previous_state or (known.state if known else None)
        if current is None:
            known = await self.waiter.read_through(resource_id)
            current = known.state if known else None
        if current is None:
            # First report for this resource: nothing to transition from.
            return
        if previous_progress is None and known is not None and known.state == current:
            previous_progress = known.progress

        kind = resource_id.split(":", 1)[0]
        if kind == "order":
            validate_order_transition(current, snapshot.state, actor_role, actor_assigned)
        elif kind == "upload":
            validate_upload_transition(
                current, snapshot.state, previous_progress, snapshot.progress
            )

    async def poll_status(self, resource_id: str) -> Optional[StatusSnapshot]:
        """Short poll: cached snapshot, falling back to the record store."""
        return await self.waiter.read_through(resource_id)

    async def wait_for_status_change(
        self,
        resource_id: str,
        known: Optional[StatusSnapshot],
        max_wait_ms: int,
    ) -> WaitResult:
        """Long poll: suspend until the resource changes or the wait runs out."""
        return await self.waiter.wait_for_change(resource_id, known, max_wait_ms)

    async def load_snapshot(self, resource_id: str) -> Optional[StatusSnapshot]:
        """Read a resource's current status from the record store."""
        if self.store is None:
            return None
        kind, _, raw_id = resource_id.partition(":")
        try:
            record_id = int(raw_id)
        except ValueError:
            return None
        if kind == "order":
            order = await self.store.get_order(record_id)
            return snapshot_from_order(order) if order else None
        if kind == "upload":
            upload = await self.store.get_upload(record_id)
            return snapshot_from_upload(upload) if upload else None
        return None

    def latest_location(self, order_id: int) -> Optional[StatusSnapshot]:
        return self.location_cache.get(ev.order_key(order_id))

    def remember_location(self, snapshot: StatusSnapshot) -> None:
        """Repopulate the location cache from the record store."""
        self.location_cache.restore(snapshot)

    # ─── Producer API: streams ───────────────────────────

    @asynccontextmanager
    async def open_stream(
        self, resource_id: str, channel: ChannelHandle
    ) -> AsyncIterator[StreamSubscription]:
        """Scoped stream registration. Authorize before calling."""
        async with self.streams.subscription(resource_id, channel) as sub:
            yield sub

    # ─── Producer API: rooms ─────────────────────────────

    async def join_room(
        self,
        room: str,
        channel: ChannelHandle,
        metadata: Optional[dict[str, Any]] = None,
    ) -> RoomMembership:
        return await self.rooms.join(room, channel, metadata)

    async def leave_room(self, room: str, channel: ChannelHandle) -> bool:
        return await self.rooms.leave(room, channel)

    async def disconnect(self, channel: ChannelHandle) -> list[str]:
        return await self.rooms.disconnect(channel)

    async def send_to_room(self, room: str, frame: dict[str, Any]) -> None:
        await self.execute(DeliveryPlan(broadcasts=[(room, frame, None)]))

    async def send_to_room_except(
        self, room: str, frame: dict[str, Any], exclude: ChannelHandle
    ) -> None:
        await self.execute(DeliveryPlan(broadcasts=[(room, frame, exclude.id)]))

    async def send_direct(self, channel: ChannelHandle, frame: dict[str, Any]) -> bool:
        """Send to one handle. A dead handle is closed, never raised."""
        try:
            await channel.send(frame)
            return True
        except TransportError as e:
            logger.info("coordinator.direct_send_failed", channel_id=channel.id, error=str(e))
            await channel.close()
            return False

    # ─── Tagged-event dispatch ───────────────────────────

    async def deliver(self, event: Any) -> Any:
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"Unknown event type: {type(event).__name__}")
        return await handler(event)

    async def _on_order_status_changed(self, event: ev.OrderStatusChanged) -> StatusSnapshot:
        resource_id = ev.order_key(event.order_id)
        cached = self.cache.get(resource_id)
        data = dict(cached.data) if cached else {}
        data.update(event.data)
        data.update(
            {
                "orderId": event.order_id,
                "customerId": event.customer_id,
                "restaurantId": event.restaurant_id,
                "message": ORDER_STATUS_MESSAGES.get(event.state, "Order status updated."),
                "estimatedTime": event.estimated_time,
            }
        )
        snapshot = StatusSnapshot(resource_id=resource_id, state=event.state, data=data)
        await self._validate(
            resource_id,
            snapshot,
            event.previous_state,
            event.actor_role,
            actor_assigned=True,
        )

        plan = self._status_plan(resource_id, snapshot)
        now = ev.utc_now()
        plan.broadcasts.append(
            (
                ev.restaurant_room(event.restaurant_id),
                ev.make_frame(
                    ev.ORDER_STATUS_UPDATED,
                    {
                        "orderId": event.order_id,
                        "status": event.state,
                        "updatedBy": event.actor_id,
                        "estimatedTime": event.estimated_time,
                    },
                    now,
                ),
                None,
            )
        )
        plan.broadcasts.append(
            (
                ev.customer_room(event.customer_id),
                ev.make_frame(
                    ev.ORDER_STATUS_UPDATE,
                    {
                        "orderId": event.order_id,
                        "status": event.state,
                        "message": data["message"],
                        "estimatedTime": event.estimated_time,
                    },
                    now,
                ),
                None,
            )
        )
        await self.execute(plan)
        logger.info(
            "order.status_delivered",
            order_id=event.order_id,
            state=event.state,
            previous_state=event.previous_state,
        )
        return self.cache.get(resource_id) or snapshot

    async def _on_new_order(self, event: ev.NewOrderPlaced) -> None:
        resource_id = ev.order_key(event.order_id)
        snapshot = StatusSnapshot(
            resource_id=resource_id,
            state="confirmed",
            data={
                "orderId": event.order_id,
                "customerId": event.customer_id,
                "restaurantId": event.restaurant_id,
                "totalAmount": event.summary.get("totalAmount"),
                "estimatedDelivery": ev.isoformat(
                    estimated_delivery("confirmed", ev.utc_now())
                ),
            },
        )
        frame = ev.make_frame(
            ev.NEW_ORDER,
            {
                **event.summary,
                "orderId": event.order_id,
                "status": "confirmed",
                "urgency": "high",
                "sound": True,
                "message": f"New order #{event.order_id}",
            },
        )
        await self.execute(
            DeliveryPlan(
                snapshots=[snapshot],
                broadcasts=[(ev.restaurant_room(event.restaurant_id), frame, None)],
            )
        )
        logger.info("order.new_delivered", order_id=event.order_id, restaurant_id=event.restaurant_id)

    async def _on_driver_location(self, event: ev.DriverLocationUpdated) -> StatusSnapshot:
        resource_id = ev.order_key(event.order_id)
        now = ev.utc_now()
        location = {
            "orderId": event.order_id,
            "driverId": event.driver_id,
            "latitude": event.latitude,
            "longitude": event.longitude,
            "timestamp": now.isoformat(),
        }
        snapshot = StatusSnapshot(resource_id=resource_id, state=LOCATION_STATE, data=location)
        frame = ev.make_frame(
            ev.LOCATION_UPDATE,
            {k: location[k] for k in ("latitude", "longitude", "timestamp", "orderId")},
            now,
        )
        await self.execute(DeliveryPlan(locations=[snapshot], pushes=[(resource_id, frame)]))
        return self.location_cache.get(resource_id) or snapshot

    async def _on_chat_message(self, event: ev.ChatMessagePosted) -> None:
        room = ev.chat_room(event.chat_id)
        frame = ev.make_frame(ev.NEW_MESSAGE, event.message)
        await self.execute(DeliveryPlan(broadcasts=[(room, frame, event.sender_channel_id)]))

        if event.sender_channel_id is None:
            return
        # The sender gets a receipt instead of an echo.
        for membership in self.rooms.members(room):
            if membership.channel.id == event.sender_channel_id:
                await self.send_direct(
                    membership.channel,
                    ev.make_frame(
                        ev.MESSAGE_SENT,
                        {
                            "tempId": event.temp_id,
                            "messageId": event.message.get("id"),
                            "timestamp": frame["timestamp"],
                        },
                    ),
                )
                break

    async def _on_chat_closed(self, event: ev.ChatClosed) -> None:
        frame = ev.make_frame(
            ev.CHAT_CLOSED,
            {
                "chatId": event.chat_id,
                "status": event.status,
                "closedBy": event.closed_by,
                "resolution": event.resolution,
            },
        )
        await self.execute(DeliveryPlan(broadcasts=[(ev.chat_room(event.chat_id), frame, None)]))

    async def _on_announcement(self, event: ev.AnnouncementPublished) -> None:
        payload = {
            "id": event.announcement_id,
            "title": event.title,
            "message": event.message,
            "type": event.announcement_type,
            "targetAudience": event.target_audience,
            "priority": announcement_priority(event.announcement_type),
            "timestamp": ev.utc_now().isoformat(),
            "expiresAt": ev.isoformat(event.expires_at),
        }
        frame = ev.make_frame(ev.NEW_ANNOUNCEMENT, announcement_frame_data(payload))
        channels = announcement_tier_channels(event.target_audience)
        await self.execute(
            DeliveryPlan(
                broadcasts=[(channel, frame, None) for channel in channels],
                publishes=[(channel, payload) for channel in channels],
                relay=False,
            )
        )
        logger.info(
            "announcement.published",
            announcement_id=event.announcement_id,
            channels=channels,
        )

    async def _on_upload_progressed(self, event: ev.UploadProgressed) -> StatusSnapshot:
        resource_id = ev.upload_key(event.upload_id)
        cached = self.cache.get(resource_id)
        data = dict(cached.data) if cached else {}
        data["uploadId"] = event.upload_id
        snapshot = StatusSnapshot(
            resource_id=resource_id,
            state=event.state,
            progress=event.progress,
            detail=event.detail,
            data=data,
        )
        return await self.report_status_change(
            resource_id,
            snapshot,
            previous_state=event.previous_state,
            previous_progress=event.previous_progress,
        )

    # ─── Introspection ───────────────────────────────────

    def stats(self) -> dict[str, Any]:
        return {
            "cached_statuses": len(self.cache),
            "cached_locations": len(self.location_cache),
            "waiters": self.cache.watcher_count(),
            "streams": self.streams.count(),
            "room_members": self.rooms.count(),
            "bridge_running": self.bridge.running,
        }
