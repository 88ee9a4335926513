"""Event types, wire frames, and room/channel names.

Learn: Two layers live here.

1. Wire frames — what clients receive. Every push, broadcast and heartbeat
   has the same shape: {"type": ..., "data": {...}, "timestamp": ISO-8601}.
   Clients must ignore types they don't know.
2. Domain events — what producers hand to the DeliveryCoordinator. This is
   a CLOSED set of dataclasses; the coordinator maps each one to its
   delivery routes through a single handler table.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

# ─── Frame types (server → client) ───────────────────────

HEARTBEAT = "heartbeat"
CONNECTION_ESTABLISHED = "connection_established"
ERROR = "error"
PONG = "pong"

STATUS_UPDATE = "status_update"
LOCATION_UPDATE = "location_update"
NEW_ORDER = "new-order"
ORDER_STATUS_UPDATED = "order-status-updated"  # restaurant staff
ORDER_STATUS_UPDATE = "order-status-update"  # customer

JOINED_CHAT = "joined-chat"
LEFT_CHAT = "left-chat"
USER_JOINED_CHAT = "user-joined-chat"
USER_LEFT_CHAT = "user-left-chat"
NEW_MESSAGE = "new-message"
MESSAGE_SENT = "message-sent"
USER_TYPING = "user-typing"
MESSAGES_READ = "messages-read"
CHAT_CLOSED = "chat-closed"

JOINED_RESTAURANT = "joined-restaurant"
LEFT_RESTAURANT = "left-restaurant"

CHAT_TRANSFERRED = "chat-transferred"
TRANSFER_SUCCESSFUL = "transfer-successful"

DRIVER_ASSIGNED = "driver-assigned"
AGENT_ASSIGNED = "agent-assigned"

STATUS_UPDATE_CONFIRMED = "status-update-confirmed"
RESTAURANT_STATS = "restaurant-stats"

NEW_ANNOUNCEMENT = "new-announcement"
SUBSCRIBED_ANNOUNCEMENTS = "subscribed-announcements"
UNSUBSCRIBED_ANNOUNCEMENTS = "unsubscribed-announcements"

# ─── Broker channels ─────────────────────────────────────

ANNOUNCEMENT_AUDIENCES = ("all", "customers", "restaurants", "drivers")
ANNOUNCEMENT_CHANNELS = tuple(f"announcements-{a}" for a in ANNOUNCEMENT_AUDIENCES)
RELAY_CHANNEL = "realtime-relay"

# user role → announcement tier (support agents only get "all")
ROLE_AUDIENCES = {
    "customer": "customers",
    "restaurant": "restaurants",
    "driver": "drivers",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive database timestamps as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def isoformat(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value is not None else None


def make_frame(
    event_type: str,
    data: Optional[dict[str, Any]] = None,
    timestamp: Optional[datetime] = None,
) -> dict[str, Any]:
    """Build a wire frame."""
    return {
        "type": event_type,
        "data": data or {},
        "timestamp": (timestamp or utc_now()).isoformat(),
    }


def heartbeat_frame() -> dict[str, Any]:
    return make_frame(HEARTBEAT)


# ─── Resource ids and room names ─────────────────────────


def order_key(order_id: int) -> str:
    return f"order:{order_id}"


def upload_key(upload_id: int) -> str:
    return f"upload:{upload_id}"


def chat_room(chat_id: int) -> str:
    return f"chat-{chat_id}"


def restaurant_room(restaurant_id: int) -> str:
    return f"restaurant-{restaurant_id}"


def customer_room(customer_id: int) -> str:
    return f"customer-{customer_id}"


def announcement_room(audience: str) -> str:
    """Announcement rooms share their name with the broker channel."""
    return f"announcements-{audience}"


# ═══════════════════════════════════════════════════════════
# Domain events (producer → DeliveryCoordinator)
# ═══════════════════════════════════════════════════════════


@dataclass
class OrderStatusChanged:
    order_id: int
    customer_id: int
    restaurant_id: int
    state: str
    previous_state: Optional[str] = None
    actor_id: Optional[int] = None
    actor_role: Optional[str] = None
    estimated_time: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class NewOrderPlaced:
    order_id: int
    customer_id: int
    restaurant_id: int
    summary: dict[str, Any] = field(default_factory=dict)


@dataclass
class DriverLocationUpdated:
    order_id: int
    driver_id: int
    latitude: float
    longitude: float


@dataclass
class ChatMessagePosted:
    chat_id: int
    message: dict[str, Any]
    sender_channel_id: Optional[str] = None
    temp_id: Optional[str] = None


@dataclass
class ChatClosed:
    chat_id: int
    status: str
    closed_by: int
    resolution: Optional[str] = None


@dataclass
class AnnouncementPublished:
    announcement_id: int
    title: str
    message: str
    announcement_type: str = "general"
    target_audience: str = "all"
    expires_at: Optional[datetime] = None


@dataclass
class UploadProgressed:
    upload_id: int
    state: str
    progress: int
    detail: Optional[str] = None
    previous_state: Optional[str] = None
    previous_progress: Optional[int] = None


EVENT_TYPES = (
    OrderStatusChanged,
    NewOrderPlaced,
    DriverLocationUpdated,
    ChatMessagePosted,
    ChatClosed,
    AnnouncementPublished,
    UploadProgressed,
)
