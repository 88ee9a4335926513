"""WebSocket sessions: auth, chat, restaurant dashboard, announcements.

Learn: These run on Starlette's TestClient, which drives the app (and the
hub its lifespan starts) on its own event loop. Several websocket_connect
contexts open at once act as several browser tabs on one server.
"""

import asyncio
import time

import pytest
from starlette.websockets import WebSocketDisconnect, WebSocketState

from conftest import (
    AGENT_ID,
    CHAT_ID,
    CUSTOMER_ID,
    DRIVER_ID,
    ORDER_ID,
    OTHER_AGENT_ID,
    RESTAURANT_ID,
    RESTAURANT_USER_ID,
    RecordingChannel,
    auth_header,
    token_for,
)
from orderpulse.auth.dependencies import Principal
from orderpulse.realtime import events as ev
from orderpulse.realtime.channels import WebSocketChannel
from orderpulse.realtime.websocket import SocketSession


def connect(ws_client, user_id: int, role: str):
    return ws_client.websocket_connect(f"/ws?token={token_for(user_id, role)}")


def send(ws, action: str, **data):
    ws.send_json({"action": action, "data": data})


def expect(ws, frame_type: str) -> dict:
    frame = ws.receive_json()
    assert frame["type"] == frame_type, frame
    return frame["data"]


def wait_until(predicate, timeout: float = 2.0) -> None:
    """Sessions run on the TestClient's loop; give its cleanup a moment to land."""
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "condition not met in time"
        time.sleep(0.01)


# ─── Authentication ──────────────────────────────────────


def test_missing_token_closes_with_4001(ws_client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with ws_client.websocket_connect("/ws"):
            pass
    assert exc.value.code == 4001


def test_invalid_token_closes_with_4001(ws_client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with ws_client.websocket_connect("/ws?token=garbage"):
            pass
    assert exc.value.code == 4001


def test_inactive_user_closes_with_4001(ws_client, store):
    store.add_user(3, "customer", "Ina", is_active=False)
    with pytest.raises(WebSocketDisconnect) as exc:
        with connect(ws_client, 3, "customer"):
            pass
    assert exc.value.code == 4001


# ─── Session basics ──────────────────────────────────────


def test_connection_established_and_ping(ws_client):
    with connect(ws_client, CUSTOMER_ID, "customer") as ws:
        hello = expect(ws, ev.CONNECTION_ESTABLISHED)
        assert hello["userId"] == CUSTOMER_ID
        assert hello["rooms"] == [f"customer-{CUSTOMER_ID}"]
        assert hello["userName"] == "Cara Customer"

        send(ws, "ping")
        expect(ws, ev.PONG)


def test_bad_messages_get_error_frames(ws_client):
    with connect(ws_client, CUSTOMER_ID, "customer") as ws:
        expect(ws, ev.CONNECTION_ESTABLISHED)

        ws.send_text("not json")
        assert "Malformed" in expect(ws, ev.ERROR)["message"]

        send(ws, "fly-to-the-moon")
        error = expect(ws, ev.ERROR)
        assert error["action"] == "fly-to-the-moon"

        send(ws, "join-support-chat", chatId="abc")
        assert "integer" in expect(ws, ev.ERROR)["message"]

        # The session survives all of the above.
        send(ws, "ping")
        expect(ws, ev.PONG)


# ─── Support chat ────────────────────────────────────────


def test_chat_round_trip(ws_client, store):
    with connect(ws_client, CUSTOMER_ID, "customer") as customer, \
            connect(ws_client, AGENT_ID, "support") as agent:
        expect(customer, ev.CONNECTION_ESTABLISHED)
        expect(agent, ev.CONNECTION_ESTABLISHED)

        send(customer, "join-support-chat", chatId=CHAT_ID)
        assert expect(customer, ev.JOINED_CHAT)["chatId"] == CHAT_ID

        send(agent, "join-support-chat", chatId=CHAT_ID)
        joined = expect(agent, ev.JOINED_CHAT)
        assert joined["agentId"] == AGENT_ID
        assert store.chats[CHAT_ID].agent_id == AGENT_ID
        assert expect(customer, ev.USER_JOINED_CHAT)["userId"] == AGENT_ID

        send(customer, "typing-start", chatId=CHAT_ID)
        assert expect(agent, ev.USER_TYPING)["isTyping"] is True

        send(customer, "send-message", chatId=CHAT_ID, message="  hi there  ", tempId="t-1")
        message = expect(agent, ev.NEW_MESSAGE)
        assert message["message"] == "hi there"
        assert message["senderName"] == "Cara Customer"
        receipt = expect(customer, ev.MESSAGE_SENT)
        assert receipt["tempId"] == "t-1"
        assert receipt["messageId"] == message["id"]

        send(agent, "mark-messages-read", chatId=CHAT_ID)
        read = expect(customer, ev.MESSAGES_READ)
        assert read["readBy"] == AGENT_ID
        assert read["count"] == 1


def test_message_requires_membership(ws_client):
    with connect(ws_client, CUSTOMER_ID, "customer") as ws:
        expect(ws, ev.CONNECTION_ESTABLISHED)
        send(ws, "send-message", chatId=CHAT_ID, message="hello")
        assert "Join chat" in expect(ws, ev.ERROR)["message"]


def test_message_length_is_checked(ws_client):
    with connect(ws_client, CUSTOMER_ID, "customer") as ws:
        expect(ws, ev.CONNECTION_ESTABLISHED)
        send(ws, "join-support-chat", chatId=CHAT_ID)
        expect(ws, ev.JOINED_CHAT)
        send(ws, "send-message", chatId=CHAT_ID, message="x" * 1001)
        assert "too long" in expect(ws, ev.ERROR)["message"]
        send(ws, "send-message", chatId=CHAT_ID, message="   ")
        assert "non-empty" in expect(ws, ev.ERROR)["message"]


def test_strangers_cannot_join_a_chat(ws_client, store):
    store.add_chat(901, CUSTOMER_ID, agent_id=OTHER_AGENT_ID)
    with connect(ws_client, AGENT_ID, "support") as ws:
        expect(ws, ev.CONNECTION_ESTABLISHED)
        send(ws, "join-support-chat", chatId=901)
        expect(ws, ev.ERROR)


def test_leaving_tells_the_room(ws_app, ws_client, make_channel):
    hub = ws_app.state.hub
    room = ev.chat_room(CHAT_ID)
    customer = make_channel(f"customer:{CUSTOMER_ID}")
    ws_client.portal.call(hub.rooms.join, room, customer)

    with connect(ws_client, AGENT_ID, "support") as agent:
        expect(agent, ev.CONNECTION_ESTABLISHED)
        send(agent, "join-support-chat", chatId=CHAT_ID)
        expect(agent, ev.JOINED_CHAT)
        send(agent, "subscribe-announcements")
        expect(agent, ev.SUBSCRIBED_ANNOUNCEMENTS)
        assert hub.rooms.count(room) == 2
        assert hub.rooms.count("announcements-all") == 1

    # Closing the agent's socket counts as leaving.
    wait_until(lambda: customer.of_type(ev.USER_LEFT_CHAT))
    left = customer.of_type(ev.USER_LEFT_CHAT)[0]["data"]
    assert left["userId"] == AGENT_ID
    assert left["chatId"] == CHAT_ID
    assert [m.channel for m in hub.rooms.members(room)] == [customer]
    assert hub.rooms.count() == 1


class StuckChannel(RecordingChannel):
    """Accepts a frame only once released."""

    def __init__(self, identity: str):
        super().__init__(identity)
        self.release = asyncio.Event()

    async def send(self, frame):
        await self.release.wait()
        await super().send(frame)


@pytest.mark.asyncio
async def test_cancelled_close_still_leaves_every_room(hub, store, make_channel, eventually):
    room = ev.chat_room(CHAT_ID)
    agent = make_channel(f"support:{AGENT_ID}", "support")
    customer = StuckChannel(f"customer:{CUSTOMER_ID}")
    await hub.rooms.join(room, customer)
    await hub.rooms.join(room, agent)
    await hub.rooms.join("announcements-all", agent)

    session = SocketSession(
        agent, Principal(AGENT_ID, "support"), store.users[AGENT_ID], hub.coordinator, store
    )
    closing = asyncio.create_task(session.close())
    await eventually(lambda: not hub.rooms.rooms_for(agent))
    closing.cancel()
    with pytest.raises(asyncio.CancelledError):
        await closing

    assert [m.channel for m in hub.rooms.members(room)] == [customer]
    assert hub.rooms.count("announcements-all") == 0
    customer.release.set()


class FailingWebSocket:
    """A socket the client still holds open but that no longer accepts frames."""

    client_state = WebSocketState.CONNECTED

    def __init__(self):
        self.close_calls = 0

    async def send_text(self, text):
        raise RuntimeError("connection reset")

    async def close(self, code: int = 1000):
        self.close_calls += 1


@pytest.mark.asyncio
async def test_dead_socket_is_dropped_from_every_room(hub, make_channel):
    room = ev.chat_room(CHAT_ID)
    broken = FailingWebSocket()
    dead = WebSocketChannel(broken, f"support:{AGENT_ID}", "support")
    alive = make_channel(f"customer:{CUSTOMER_ID}")
    await hub.rooms.join(room, dead)
    await hub.rooms.join("announcements-all", dead)
    await hub.rooms.join(room, alive)

    delivered = await hub.rooms.broadcast(
        room, ev.make_frame(ev.USER_TYPING, {"chatId": CHAT_ID})
    )

    assert delivered == 1
    assert broken.close_calls == 1
    assert hub.rooms.rooms_for(dead) == set()
    assert hub.rooms.count("announcements-all") == 0
    assert len(alive.of_type(ev.USER_TYPING)) == 1


def test_transfer_chat(ws_client, store):
    store.add_chat(901, CUSTOMER_ID, agent_id=AGENT_ID)
    with connect(ws_client, AGENT_ID, "support") as ws:
        expect(ws, ev.CONNECTION_ESTABLISHED)

        send(ws, "transfer-chat", chatId=901, targetAgentId=AGENT_ID)
        assert "yourself" in expect(ws, ev.ERROR)["message"]

        send(ws, "transfer-chat", chatId=901, targetAgentId=OTHER_AGENT_ID, reason="shift end")
        done = expect(ws, ev.TRANSFER_SUCCESSFUL)
        assert done["toAgentId"] == OTHER_AGENT_ID

    assert store.chats[901].agent_id == OTHER_AGENT_ID
    note = [m for m in store.messages if m.chat_id == 901][-1]
    assert note.message_type == "system"
    assert note.message.endswith("Reason: shift end")


def test_customers_cannot_transfer(ws_client):
    with connect(ws_client, CUSTOMER_ID, "customer") as ws:
        expect(ws, ev.CONNECTION_ESTABLISHED)
        send(ws, "transfer-chat", chatId=CHAT_ID, targetAgentId=AGENT_ID)
        assert "support agents" in expect(ws, ev.ERROR)["message"]


# ─── Restaurant dashboard ────────────────────────────────


def test_restaurant_hears_new_orders(ws_client):
    with connect(ws_client, RESTAURANT_USER_ID, "restaurant") as ws:
        expect(ws, ev.CONNECTION_ESTABLISHED)
        send(ws, "join-restaurant", restaurantId=RESTAURANT_ID)
        assert expect(ws, ev.JOINED_RESTAURANT)["restaurantName"] == "Pizza Place"

        r = ws_client.post(
            "/api/v1/orders",
            headers=auth_header(CUSTOMER_ID, "customer"),
            json={"restaurant_id": RESTAURANT_ID,
                  "items": [{"menu_item_id": 1, "quantity": 1}],
                  "delivery_address": "1 Main St"},
        )
        assert r.status_code == 201

        frame = expect(ws, ev.NEW_ORDER)
        assert frame["orderId"] == r.json()["orderId"]
        assert frame["totalAmount"] == 12.0


def test_only_own_restaurant_room(ws_client, store):
    store.add_user(11, "restaurant", "Other")
    with connect(ws_client, 11, "restaurant") as ws:
        expect(ws, ev.CONNECTION_ESTABLISHED)
        send(ws, "join-restaurant", restaurantId=RESTAURANT_ID)
        expect(ws, ev.ERROR)


def test_dashboard_updates_order_and_customer_hears(ws_client, store):
    with connect(ws_client, RESTAURANT_USER_ID, "restaurant") as kitchen, \
            connect(ws_client, CUSTOMER_ID, "customer") as customer:
        expect(kitchen, ev.CONNECTION_ESTABLISHED)
        expect(customer, ev.CONNECTION_ESTABLISHED)

        send(kitchen, "update-order-status", orderId=ORDER_ID, status="preparing",
             estimatedTime="15 min")
        confirmed = expect(kitchen, ev.STATUS_UPDATE_CONFIRMED)
        assert confirmed == {"orderId": ORDER_ID, "status": "preparing"}

        update = expect(customer, ev.ORDER_STATUS_UPDATE)
        assert update["status"] == "preparing"
        assert update["estimatedTime"] == "15 min"
        assert store.orders[ORDER_ID].status == "preparing"

        send(kitchen, "update-order-status", orderId=ORDER_ID, status="delivered")
        expect(kitchen, ev.ERROR)

        send(kitchen, "update-order-status", orderId=ORDER_ID, status="cancelled")
        expect(kitchen, ev.STATUS_UPDATE_CONFIRMED)


def test_dashboard_stats(ws_client):
    with connect(ws_client, RESTAURANT_USER_ID, "restaurant") as ws:
        expect(ws, ev.CONNECTION_ESTABLISHED)
        send(ws, "get-restaurant-stats", restaurantId=RESTAURANT_ID)
        stats = expect(ws, ev.RESTAURANT_STATS)
        assert stats["restaurantId"] == RESTAURANT_ID
        assert stats["newOrders"] == 1


# ─── Announcements ───────────────────────────────────────


def test_subscribed_driver_receives_tier_announcement(ws_client):
    with connect(ws_client, DRIVER_ID, "driver") as ws:
        expect(ws, ev.CONNECTION_ESTABLISHED)
        send(ws, "subscribe-announcements")
        rooms = expect(ws, ev.SUBSCRIBED_ANNOUNCEMENTS)["rooms"]
        assert rooms == ["announcements-all", "announcements-drivers"]

        r = ws_client.post(
            "/api/v1/announcements",
            headers=auth_header(AGENT_ID, "support"),
            json={"title": "Surge", "message": "Extra pay tonight",
                  "announcement_type": "urgent", "target_audience": "drivers"},
        )
        assert r.status_code == 201

        announcement = expect(ws, ev.NEW_ANNOUNCEMENT)
        assert announcement["title"] == "Surge"
        assert announcement["priority"] == "high"

        send(ws, "unsubscribe-announcements")
        expect(ws, ev.UNSUBSCRIBED_ANNOUNCEMENTS)
