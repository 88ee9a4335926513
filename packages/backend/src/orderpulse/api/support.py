"""Support chat over HTTP.

Learn: Live chat happens on the WebSocket (join-support-chat,
send-message, ...). These routes cover what doesn't need a socket:
starting a chat, loading its history, closing it, and the agents' queue. Closing still
reaches the live room: the coordinator broadcasts chat-closed to every
member, on every process.
"""

from fastapi import APIRouter, Depends, HTTPException

from orderpulse.api.deps import get_coordinator, get_store, not_found
from orderpulse.auth.dependencies import Principal, require_roles
from orderpulse.config import settings
from orderpulse.db.store import MessageRecord, RecordStore
from orderpulse.realtime import events as ev
from orderpulse.realtime.authorization import CHAT_TERMINAL_STATES, authorize_chat
from orderpulse.realtime.coordinator import DeliveryCoordinator
from orderpulse.realtime.errors import UnauthorizedError
from orderpulse.schemas.support import ChatClose, ChatStart

router = APIRouter()


def message_body(m: MessageRecord) -> dict:
    return {
        "id": m.id,
        "chatId": m.chat_id,
        "senderId": m.sender_id,
        "senderName": m.sender_name,
        "senderType": m.sender_type,
        "message": m.message,
        "messageType": m.message_type,
        "isRead": m.is_read,
        "createdAt": ev.isoformat(m.created_at),
    }


@router.post("/support/chats", status_code=201)
async def start_chat(
    body: ChatStart,
    principal: Principal = Depends(require_roles("customer")),
    store: RecordStore = Depends(get_store),
):
    """Open a chat. The first message carries the subject line."""
    chat = await store.create_chat(
        principal.user_id, f"Subject: {body.subject}\n\n{body.initial_message}"
    )
    return {
        "chatId": chat.id,
        "status": chat.status,
        "createdAt": ev.isoformat(chat.created_at),
        "room": ev.chat_room(chat.id),
    }


@router.get("/support/chats/{chat_id}/messages")
async def list_messages(
    chat_id: int,
    principal: Principal = Depends(require_roles("customer", "support")),
    store: RecordStore = Depends(get_store),
):
    """Full history. Loading it marks the other side's messages read."""
    try:
        await authorize_chat(store, chat_id, principal.user_id, principal.role)
    except UnauthorizedError as e:
        raise not_found(str(e))
    messages = await store.list_chat_messages(chat_id)
    await store.mark_messages_read(chat_id, principal.user_id)
    return [message_body(m) for m in messages]


@router.put("/support/chats/{chat_id}/close")
async def close_chat(
    chat_id: int,
    body: ChatClose,
    principal: Principal = Depends(require_roles("customer", "support")),
    store: RecordStore = Depends(get_store),
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
):
    """Agents resolve chats; customers close them. Either way the room is told."""
    chat = await store.get_chat(chat_id)
    if chat is None:
        raise not_found("Chat not found")
    if principal.role == "support":
        allowed, status = chat.agent_id == principal.user_id, "resolved"
    else:
        allowed, status = chat.customer_id == principal.user_id, "closed"
    if not allowed:
        raise not_found("Chat not found or access denied")
    if chat.status in CHAT_TERMINAL_STATES:
        raise HTTPException(status_code=409, detail=f"Chat is already {chat.status}")

    await store.update_chat_status(chat_id, status)
    if body.resolution:
        await store.save_chat_message(
            chat_id, principal.user_id, f"Resolution: {body.resolution}", "system"
        )
    await coordinator.deliver(
        ev.ChatClosed(
            chat_id=chat_id,
            status=status,
            closed_by=principal.user_id,
            resolution=body.resolution,
        )
    )
    return {"message": f"Chat {status}", "chatId": chat_id, "status": status}


# ─── Agent queue ────────────────────────────────────────


@router.get("/support/agent/queue")
async def agent_queue(
    principal: Principal = Depends(require_roles("support")),
    store: RecordStore = Depends(get_store),
):
    """Chats waiting for an agent, and whether this agent can take one."""
    queued = await store.list_chat_queue()
    assigned = await store.count_active_chats(principal.user_id)
    return {
        "queuedChats": [
            {
                "id": c.id,
                "customerId": c.customer_id,
                "createdAt": ev.isoformat(c.created_at),
            }
            for c in queued
        ],
        "queueCount": len(queued),
        "assignedCount": assigned,
        "canTakeMore": assigned < settings.max_agent_chats,
    }


@router.post("/support/agent/take/{chat_id}")
async def take_chat(
    chat_id: int,
    principal: Principal = Depends(require_roles("support")),
    store: RecordStore = Depends(get_store),
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
):
    """Take a queued chat. The customer's room hears an agent is on it."""
    # Capacity check and assignment must not interleave for one agent.
    async with coordinator.producer_locks.hold(f"agent:{principal.user_id}"):
        if await store.count_active_chats(principal.user_id) >= settings.max_agent_chats:
            raise HTTPException(
                status_code=409,
                detail=f"Maximum concurrent chats reached ({settings.max_agent_chats})",
            )
        chat = await store.take_chat(chat_id, principal.user_id)
    if chat is None:
        raise not_found("Chat not available or already assigned")

    agent = await store.get_user(principal.user_id)
    await coordinator.send_to_room(
        ev.chat_room(chat_id),
        ev.make_frame(
            ev.AGENT_ASSIGNED,
            {
                "chatId": chat_id,
                "agentId": principal.user_id,
                "agentName": agent.full_name if agent else None,
            },
        ),
    )
    return {
        "message": "Chat assigned successfully",
        "chatId": chat.id,
        "customerId": chat.customer_id,
        "agentId": principal.user_id,
        "room": ev.chat_room(chat.id),
    }
