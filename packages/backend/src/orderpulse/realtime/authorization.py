"""Access rules checked before a stream is opened or a room is joined.

Learn: Registries trust their callers completely. Every rule about who may
watch what lives here and runs BEFORE any registry mutation, so a rejected
request leaves no trace in the streaming or room tables.

Each check returns the record it looked up (callers need it anyway) or
raises UnauthorizedError. "Not found" and "not yours" read the same to the
client.
"""

from typing import Optional

from orderpulse.db.store import (
    ChatRecord,
    OrderRecord,
    RecordStore,
    RestaurantRecord,
    UploadRecord,
)
from orderpulse.realtime.errors import UnauthorizedError

CHAT_TERMINAL_STATES = frozenset({"resolved", "closed"})
DELIVERY_PHASE_STATES = frozenset({"ready", "picked_up"})


# ─── Support chat rooms ──────────────────────────────────


def is_chat_participant(chat: ChatRecord, user_id: int) -> bool:
    return chat.customer_id == user_id or chat.agent_id == user_id


def check_chat_access(chat: Optional[ChatRecord], user_id: int, role: str) -> ChatRecord:
    """Customers join their own chats; agents join assigned or unassigned ones.

    Once a chat is resolved or closed, only its participants may (re)join.
    """
    if chat is None:
        raise UnauthorizedError("Chat not found or access denied")

    if role == "customer":
        allowed = chat.customer_id == user_id
    elif role == "support":
        allowed = chat.agent_id in (None, user_id)
    else:
        raise UnauthorizedError("Access denied")

    if not allowed:
        raise UnauthorizedError("Chat not found or access denied")
    if chat.status in CHAT_TERMINAL_STATES and not is_chat_participant(chat, user_id):
        raise UnauthorizedError(f"Chat is {chat.status}; only participants may rejoin")
    return chat


async def authorize_chat(store: RecordStore, chat_id: int, user_id: int, role: str) -> ChatRecord:
    return check_chat_access(await store.get_chat(chat_id), user_id, role)


# ─── Restaurant rooms ────────────────────────────────────


async def authorize_restaurant(
    store: RecordStore, restaurant_id: int, user_id: int, role: str
) -> RestaurantRecord:
    """Only the restaurant's own staff account may join its order feed."""
    if role != "restaurant":
        raise UnauthorizedError("Only restaurant staff can join restaurant rooms")
    restaurant = await store.get_restaurant(restaurant_id)
    if restaurant is None or restaurant.user_id != user_id:
        raise UnauthorizedError("Access denied to restaurant")
    return restaurant


# ─── Order and upload streams ────────────────────────────


def can_view_order(order: OrderRecord, user_id: int, role: str) -> bool:
    if role == "customer":
        return order.customer_id == user_id
    if role == "restaurant":
        return order.restaurant_user_id == user_id
    if role == "driver":
        # Unassigned orders are visible so drivers can claim them.
        return order.driver_id in (None, user_id)
    return role == "support"


async def authorize_order(
    store: RecordStore, order_id: int, user_id: int, role: str
) -> OrderRecord:
    order = await store.get_order(order_id)
    if order is None or not can_view_order(order, user_id, role):
        raise UnauthorizedError("Order not found or access denied")
    return order


async def authorize_location_stream(
    store: RecordStore, order_id: int, user_id: int, role: str
) -> OrderRecord:
    """Customers may follow the driver only while their order is out for delivery."""
    if role != "customer":
        raise UnauthorizedError("Only customers can follow a delivery")
    order = await store.get_order(order_id)
    if (
        order is None
        or order.customer_id != user_id
        or order.status not in DELIVERY_PHASE_STATES
        or order.driver_id is None
    ):
        raise UnauthorizedError("Order not found, not yours, or not in delivery phase")
    return order


def can_view_upload(upload: UploadRecord, user_id: int, role: str) -> bool:
    return role == "restaurant" and upload.restaurant_user_id == user_id


async def authorize_upload(
    store: RecordStore, upload_id: int, user_id: int, role: str
) -> UploadRecord:
    upload = await store.get_upload(upload_id)
    if upload is None or not can_view_upload(upload, user_id, role):
        raise UnauthorizedError("Upload not found or access denied")
    return upload
