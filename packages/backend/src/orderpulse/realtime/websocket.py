"""WebSocket endpoint: interactive sessions for chat, dashboards and announcements.

Learn: Each client connects to /ws?token=JWT. The handler:
1. Authenticates via the JWT query param (close code 4001 if missing/invalid)
2. Wraps the socket in a WebSocketChannel and, for customers, joins
   customer-{id} so order-status-update frames reach them
3. Reads {"action": ..., "data": {...}} messages and dispatches them
   through one action table
4. On disconnect, tells chat peers the user left and removes the handle
   from every room in one call

Errors from an action come back as an "error" frame on the same socket;
they never end the session. Delivery to OTHER members goes through the
DeliveryCoordinator, so a chat message or typing notice reaches peers
connected to any process.

This is a long-lived connection, one per browser tab.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

import structlog
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from orderpulse.api.deps import get_hub, get_store
from orderpulse.auth.dependencies import Principal, principal_from_token
from orderpulse.auth.jwt import TokenError
from orderpulse.config import settings
from orderpulse.db.store import RecordNotFoundError, RecordStore, UserRecord
from orderpulse.realtime import events as ev
from orderpulse.realtime.authorization import (
    CHAT_TERMINAL_STATES,
    authorize_chat,
    authorize_restaurant,
)
from orderpulse.realtime.channels import WebSocketChannel
from orderpulse.realtime.coordinator import DeliveryCoordinator
from orderpulse.realtime.errors import UnauthorizedError
from orderpulse.realtime.hub import RealtimeHub
from orderpulse.realtime.lifecycle import InvalidTransitionError
from orderpulse.services.order_service import (
    OrderAccessError,
    OrderNotFoundError,
    OrderService,
)

logger = structlog.get_logger()
router = APIRouter()

# Statuses restaurant staff may set from the dashboard socket.
DASHBOARD_ORDER_STATUSES = frozenset({"preparing", "ready", "cancelled"})


class SessionError(Exception):
    """A client request we refuse. Sent back as an error frame."""


def _int_field(data: dict[str, Any], key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool):
        raise SessionError(f"'{key}' must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise SessionError(f"'{key}' must be an integer")


def _message_payload(message, user: UserRecord) -> dict[str, Any]:
    return {
        "id": message.id,
        "chatId": message.chat_id,
        "senderId": message.sender_id,
        "senderName": user.full_name,
        "senderType": user.user_type,
        "message": message.message,
        "messageType": message.message_type,
        "createdAt": ev.isoformat(message.created_at) or ev.utc_now().isoformat(),
    }


class SocketSession:
    """One authenticated WebSocket connection and the actions it may take."""

    def __init__(
        self,
        channel: WebSocketChannel,
        principal: Principal,
        user: UserRecord,
        coordinator: DeliveryCoordinator,
        store: RecordStore,
    ):
        self.channel = channel
        self.principal = principal
        self.user = user
        self.coordinator = coordinator
        self.store = store
        self.log = logger.bind(
            channel_id=channel.id, user_id=principal.user_id, role=principal.role
        )
        self._actions: dict[str, Callable[[dict[str, Any]], Awaitable[None]]] = {
            "ping": self.ping,
            "join-support-chat": self.join_support_chat,
            "send-message": self.send_message,
            "typing-start": self.typing_start,
            "typing-stop": self.typing_stop,
            "mark-messages-read": self.mark_messages_read,
            "leave-chat": self.leave_chat,
            "transfer-chat": self.transfer_chat,
            "join-restaurant": self.join_restaurant,
            "leave-restaurant": self.leave_restaurant,
            "update-order-status": self.update_order_status,
            "get-restaurant-stats": self.get_restaurant_stats,
            "subscribe-announcements": self.subscribe_announcements,
            "unsubscribe-announcements": self.unsubscribe_announcements,
        }

    @property
    def user_id(self) -> int:
        return self.principal.user_id

    @property
    def role(self) -> str:
        return self.principal.role

    # ─── Plumbing ────────────────────────────────────────

    async def reply(self, frame_type: str, data: Optional[dict[str, Any]] = None) -> None:
        await self.coordinator.send_direct(self.channel, ev.make_frame(frame_type, data))

    async def start(self) -> None:
        rooms = []
        if self.role == "customer":
            room = ev.customer_room(self.user_id)
            await self.coordinator.join_room(room, self.channel, {"userId": self.user_id})
            rooms.append(room)
        await self.reply(
            ev.CONNECTION_ESTABLISHED,
            {
                "userId": self.user_id,
                "role": self.role,
                "userName": self.user.full_name,
                "rooms": rooms,
            },
        )
        self.log.info("ws.connected", rooms=rooms)

    async def handle(self, raw: str) -> None:
        """Parse and dispatch one client message."""
        action = None
        try:
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                raise SessionError("Malformed message: expected JSON")
            if not isinstance(message, dict):
                raise SessionError("Malformed message: expected an object")
            action = message.get("action")
            data = message.get("data") or {}
            if not isinstance(data, dict):
                raise SessionError("'data' must be an object")
            handler = self._actions.get(action)
            if handler is None:
                raise SessionError(f"Unknown action: {action}")
            await handler(data)
        except (
            SessionError,
            UnauthorizedError,
            InvalidTransitionError,
            RecordNotFoundError,
        ) as e:
            await self.reply(ev.ERROR, {"action": action, "message": str(e)})
        except Exception:
            self.log.exception("ws.action_failed", action=action)
            await self.reply(ev.ERROR, {"action": action, "message": "Internal error"})

    async def close(self) -> None:
        """Drop the handle from every room, then tell chat peers we left.

        Registry cleanup comes first and never waits on a peer: a slow or
        dead peer can hold up the notices, not the removal.
        """
        rooms = await self.coordinator.disconnect(self.channel)
        for room in rooms:
            if room.startswith("chat-"):
                await self.coordinator.send_to_room(
                    room, ev.make_frame(ev.USER_LEFT_CHAT, self._presence(room))
                )
        await self.channel.close()
        self.log.info("ws.disconnected", rooms=rooms)

    def _presence(self, room: str) -> dict[str, Any]:
        return {
            "chatId": int(room.split("-", 1)[1]),
            "userId": self.user_id,
            "userName": self.user.full_name,
            "userType": self.role,
        }

    def _require_chat_member(self, chat_id: int) -> str:
        room = ev.chat_room(chat_id)
        if room not in self.coordinator.rooms.rooms_for(self.channel):
            raise SessionError(f"Join chat {chat_id} first")
        return room

    # ─── Keepalive ───────────────────────────────────────

    async def ping(self, data: dict[str, Any]) -> None:
        await self.reply(ev.PONG)

    # ─── Support chat ────────────────────────────────────

    async def join_support_chat(self, data: dict[str, Any]) -> None:
        chat_id = _int_field(data, "chatId")
        chat = await authorize_chat(self.store, chat_id, self.user_id, self.role)
        if self.role == "support" and chat.agent_id is None:
            chat = await self.store.assign_chat_agent(chat_id, self.user_id)

        room = ev.chat_room(chat_id)
        await self.coordinator.join_room(
            room,
            self.channel,
            {"userId": self.user_id, "userName": self.user.full_name, "userType": self.role},
        )
        await self.reply(
            ev.JOINED_CHAT,
            {"chatId": chat_id, "status": chat.status, "agentId": chat.agent_id},
        )
        await self.coordinator.send_to_room_except(
            room, ev.make_frame(ev.USER_JOINED_CHAT, self._presence(room)), self.channel
        )

    async def send_message(self, data: dict[str, Any]) -> None:
        chat_id = _int_field(data, "chatId")
        self._require_chat_member(chat_id)
        text = data.get("message")
        if not isinstance(text, str) or not text.strip():
            raise SessionError("Message must be a non-empty string")
        if len(text) > settings.chat_message_max_length:
            raise SessionError(
                f"Message too long (max {settings.chat_message_max_length} characters)"
            )
        chat = await self.store.get_chat(chat_id)
        if chat is None or chat.status in CHAT_TERMINAL_STATES:
            raise SessionError(f"Chat {chat_id} is closed")

        saved = await self.store.save_chat_message(chat_id, self.user_id, text.strip())
        await self.coordinator.deliver(
            ev.ChatMessagePosted(
                chat_id=chat_id,
                message=_message_payload(saved, self.user),
                sender_channel_id=self.channel.id,
                temp_id=data.get("tempId"),
            )
        )

    async def _typing(self, data: dict[str, Any], is_typing: bool) -> None:
        chat_id = _int_field(data, "chatId")
        room = self._require_chat_member(chat_id)
        await self.coordinator.send_to_room_except(
            room,
            ev.make_frame(
                ev.USER_TYPING,
                {
                    "chatId": chat_id,
                    "userId": self.user_id,
                    "userName": self.user.full_name,
                    "isTyping": is_typing,
                },
            ),
            self.channel,
        )

    async def typing_start(self, data: dict[str, Any]) -> None:
        await self._typing(data, True)

    async def typing_stop(self, data: dict[str, Any]) -> None:
        await self._typing(data, False)

    async def mark_messages_read(self, data: dict[str, Any]) -> None:
        chat_id = _int_field(data, "chatId")
        room = self._require_chat_member(chat_id)
        up_to = _int_field(data, "messageId") if data.get("messageId") is not None else None
        count = await self.store.mark_messages_read(chat_id, self.user_id, up_to)
        await self.coordinator.send_to_room_except(
            room,
            ev.make_frame(
                ev.MESSAGES_READ,
                {"chatId": chat_id, "readBy": self.user_id, "upTo": up_to, "count": count},
            ),
            self.channel,
        )

    async def leave_chat(self, data: dict[str, Any]) -> None:
        chat_id = _int_field(data, "chatId")
        room = ev.chat_room(chat_id)
        if await self.coordinator.leave_room(room, self.channel):
            await self.coordinator.send_to_room(
                room, ev.make_frame(ev.USER_LEFT_CHAT, self._presence(room))
            )
        await self.reply(ev.LEFT_CHAT, {"chatId": chat_id})

    async def transfer_chat(self, data: dict[str, Any]) -> None:
        """Hand an active chat to another support agent with spare capacity."""
        if self.role != "support":
            raise UnauthorizedError("Only support agents can transfer chats")
        chat_id = _int_field(data, "chatId")
        target_id = _int_field(data, "targetAgentId")
        reason = data.get("reason")

        chat = await self.store.get_chat(chat_id)
        if chat is None or chat.agent_id != self.user_id:
            raise UnauthorizedError("Chat not found or not assigned to you")
        if chat.status in CHAT_TERMINAL_STATES:
            raise SessionError(f"Chat {chat_id} is {chat.status}")
        if target_id == self.user_id:
            raise SessionError("Cannot transfer a chat to yourself")

        target = await self.store.get_user(target_id)
        if target is None or target.user_type != "support" or not target.is_active:
            raise SessionError("Target agent not found or inactive")
        if await self.store.count_active_chats(target_id) >= settings.max_agent_chats:
            raise SessionError("Target agent is at capacity")

        await self.store.assign_chat_agent(chat_id, target_id)
        note = f"Chat transferred from {self.user.full_name} to {target.full_name}"
        if reason:
            note += f". Reason: {reason}"
        await self.store.save_chat_message(chat_id, self.user_id, note, "system")

        await self.coordinator.send_to_room(
            ev.chat_room(chat_id),
            ev.make_frame(
                ev.CHAT_TRANSFERRED,
                {
                    "chatId": chat_id,
                    "fromAgentId": self.user_id,
                    "toAgentId": target_id,
                    "toAgentName": target.full_name,
                    "reason": reason,
                },
            ),
        )
        await self.reply(ev.TRANSFER_SUCCESSFUL, {"chatId": chat_id, "toAgentId": target_id})
        self.log.info("chat.transferred", chat_id=chat_id, to_agent_id=target_id)

    # ─── Restaurant dashboard ────────────────────────────

    async def join_restaurant(self, data: dict[str, Any]) -> None:
        restaurant_id = _int_field(data, "restaurantId")
        restaurant = await authorize_restaurant(
            self.store, restaurant_id, self.user_id, self.role
        )
        await self.coordinator.join_room(
            ev.restaurant_room(restaurant_id), self.channel, {"userId": self.user_id}
        )
        await self.reply(
            ev.JOINED_RESTAURANT,
            {"restaurantId": restaurant_id, "restaurantName": restaurant.name},
        )

    async def leave_restaurant(self, data: dict[str, Any]) -> None:
        restaurant_id = _int_field(data, "restaurantId")
        await self.coordinator.leave_room(ev.restaurant_room(restaurant_id), self.channel)
        await self.reply(ev.LEFT_RESTAURANT, {"restaurantId": restaurant_id})

    async def update_order_status(self, data: dict[str, Any]) -> None:
        if self.role != "restaurant":
            raise UnauthorizedError("Only restaurant staff can update orders here")
        order_id = _int_field(data, "orderId")
        status = data.get("status")
        if status not in DASHBOARD_ORDER_STATUSES:
            raise SessionError(
                f"Status must be one of: {', '.join(sorted(DASHBOARD_ORDER_STATUSES))}"
            )
        try:
            _, updated = await OrderService(self.store, self.coordinator).change_status(
                order_id,
                status,
                actor_id=self.user_id,
                actor_role=self.role,
                estimated_time=data.get("estimatedTime"),
            )
        except (OrderNotFoundError, OrderAccessError):
            raise UnauthorizedError("Order not found or access denied")
        await self.reply(
            ev.STATUS_UPDATE_CONFIRMED,
            {"orderId": order_id, "status": updated.status},
        )

    async def get_restaurant_stats(self, data: dict[str, Any]) -> None:
        restaurant_id = _int_field(data, "restaurantId")
        await authorize_restaurant(self.store, restaurant_id, self.user_id, self.role)
        stats = await self.store.restaurant_stats(restaurant_id)
        await self.reply(ev.RESTAURANT_STATS, {"restaurantId": restaurant_id, **stats})

    # ─── Announcements ───────────────────────────────────

    def _announcement_rooms(self) -> list[str]:
        rooms = [ev.announcement_room("all")]
        tier = ev.ROLE_AUDIENCES.get(self.role)
        if tier is not None:
            rooms.append(ev.announcement_room(tier))
        return rooms

    async def subscribe_announcements(self, data: dict[str, Any]) -> None:
        rooms = self._announcement_rooms()
        for room in rooms:
            await self.coordinator.join_room(room, self.channel, {"userId": self.user_id})
        await self.reply(ev.SUBSCRIBED_ANNOUNCEMENTS, {"rooms": rooms})

    async def unsubscribe_announcements(self, data: dict[str, Any]) -> None:
        rooms = self._announcement_rooms()
        for room in rooms:
            await self.coordinator.leave_room(room, self.channel)
        await self.reply(ev.UNSUBSCRIBED_ANNOUNCEMENTS, {"rooms": rooms})


# ═══════════════════════════════════════════════════════════
# Endpoint
# ═══════════════════════════════════════════════════════════


@router.websocket("/ws")
async def realtime_websocket(
    websocket: WebSocket,
    hub: RealtimeHub = Depends(get_hub),
    store: RecordStore = Depends(get_store),
):
    """WebSocket endpoint for chat, restaurant dashboards and announcements.

    Authentication: JWT token required as ?token= query param.
    """
    # ── Authentication ──────────────────────────────────────
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4001, reason="Authentication required")
        return
    try:
        principal = principal_from_token(token)
    except TokenError:
        await websocket.close(code=4001, reason="Invalid or expired token")
        return

    user = await store.get_user(principal.user_id)
    if user is None or not user.is_active:
        await websocket.close(code=4001, reason="User not found or inactive")
        return

    # ── Connection accepted ─────────────────────────────────
    await websocket.accept()
    channel = WebSocketChannel(
        websocket,
        principal.identity,
        principal.role,
        send_timeout=settings.websocket_send_timeout_seconds,
    )
    session = SocketSession(channel, principal, user, hub.coordinator, store)

    try:
        await session.start()
        while not channel.closed:
            raw = await websocket.receive_text()
            await session.handle(raw)
    except WebSocketDisconnect:
        pass
    finally:
        # The handler may be cancelled mid-receive; cleanup still has to finish.
        await asyncio.shield(session.close())
