"""Test fixtures: an in-memory record store and a real hub per test.

Learn: Testing pattern for the real-time layer:

1. Settings come from ORDERPULSE_* env vars, set here BEFORE the app is
   imported, so the broker is the in-process one and the secret is a test
   secret.
2. The record store is FakeRecordStore, a dict-backed RecordStore. The
   SQL store is exercised by the same interface in production; everything
   above it (cache, waiter, registries, coordinator, routes) is real.
3. Each test gets its own RealtimeHub, started and stopped around the
   test. The app's get_hub/get_store dependencies are overridden, the
   same way the routes are wired in production.
4. WebSocket tests use Starlette's TestClient with a test lifespan, so
   the hub lives on the TestClient's event loop.
"""

import asyncio
import itertools
import os
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Optional

os.environ.setdefault("ORDERPULSE_ENVIRONMENT", "test")
os.environ.setdefault("ORDERPULSE_BROKER_BACKEND", "memory")
os.environ.setdefault("ORDERPULSE_JWT_SECRET", "test-secret-key-with-enough-length-32b")

import pytest
import pytest_asyncio
from fastapi import FastAPI
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from orderpulse.api.deps import get_hub, get_store
from orderpulse.auth.jwt import create_access_token
from orderpulse.config import settings
from orderpulse.db.store import (
    AnnouncementRecord,
    ChatRecord,
    LocationRecord,
    MessageRecord,
    OrderRecord,
    RecordNotFoundError,
    RecordStore,
    RestaurantRecord,
    UploadRecord,
    UserRecord,
)
from orderpulse.main import create_app
from orderpulse.realtime.channels import ChannelHandle
from orderpulse.realtime.errors import TransportError
from orderpulse.realtime.hub import RealtimeHub
from orderpulse.realtime.pubsub import InMemoryBroker, InMemoryHub


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════
# In-memory record store
# ═══════════════════════════════════════════════════════════


class FakeRecordStore(RecordStore):
    """Dict-backed RecordStore with seed helpers."""

    def __init__(self):
        self.users: dict[int, UserRecord] = {}
        self.restaurants: dict[int, RestaurantRecord] = {}
        self.menu: dict[int, dict[str, Any]] = {}
        self.orders: dict[int, OrderRecord] = {}
        self.uploads: dict[int, UploadRecord] = {}
        self.chats: dict[int, ChatRecord] = {}
        self.messages: list[MessageRecord] = []
        self.locations: dict[tuple[int, int], LocationRecord] = {}
        self.announcements: dict[int, AnnouncementRecord] = {}
        self.healthy = True
        self.reads = 0
        self._ids = itertools.count(1000)

    # ─── Seeding ─────────────────────────────────────────

    def add_user(self, user_id: int, user_type: str, first_name: str = "Test",
                 last_name: Optional[str] = None, is_active: bool = True) -> UserRecord:
        user = UserRecord(user_id, user_type, first_name, last_name, is_active=is_active)
        self.users[user_id] = user
        return user

    def add_restaurant(self, restaurant_id: int, user_id: int, name: str = "Pizza Place"):
        self.restaurants[restaurant_id] = RestaurantRecord(restaurant_id, user_id, name)
        return self.restaurants[restaurant_id]

    def add_menu_item(self, item_id: int, restaurant_id: int, name: str, price: float,
                      available: bool = True):
        self.menu[item_id] = {
            "restaurant_id": restaurant_id, "name": name, "price": price, "available": available,
        }

    def add_order(self, order_id: int, customer_id: int, restaurant_id: int,
                  status: str = "confirmed", driver_id: Optional[int] = None) -> OrderRecord:
        restaurant = self.restaurants.get(restaurant_id)
        now = _now()
        order = OrderRecord(
            id=order_id,
            customer_id=customer_id,
            restaurant_id=restaurant_id,
            status=status,
            driver_id=driver_id,
            restaurant_user_id=restaurant.user_id if restaurant else None,
            restaurant_name=restaurant.name if restaurant else None,
            driver_name=self._name(driver_id),
            total_amount=25.5,
            delivery_address="1 Main St",
            created_at=now,
            updated_at=now,
        )
        self.orders[order_id] = order
        return order

    def add_upload(self, upload_id: int, restaurant_id: int, status: str = "uploading",
                   progress: int = 0) -> UploadRecord:
        restaurant = self.restaurants.get(restaurant_id)
        upload = UploadRecord(
            id=upload_id,
            restaurant_id=restaurant_id,
            status=status,
            progress=progress,
            restaurant_user_id=restaurant.user_id if restaurant else None,
            original_filename="menu.jpg",
            updated_at=_now(),
        )
        self.uploads[upload_id] = upload
        return upload

    def add_chat(self, chat_id: int, customer_id: int, status: str = "active",
                 agent_id: Optional[int] = None) -> ChatRecord:
        chat = ChatRecord(chat_id, customer_id, status, agent_id, _now(), _now())
        self.chats[chat_id] = chat
        return chat

    def _name(self, user_id: Optional[int]) -> Optional[str]:
        user = self.users.get(user_id) if user_id is not None else None
        return user.full_name if user else None

    # ─── RecordStore ─────────────────────────────────────

    async def ping(self) -> bool:
        return self.healthy

    async def get_user(self, user_id):
        return self.users.get(user_id)

    async def get_restaurant(self, restaurant_id):
        return self.restaurants.get(restaurant_id)

    async def restaurant_stats(self, restaurant_id):
        orders = [o for o in self.orders.values() if o.restaurant_id == restaurant_id]
        delivered = [o for o in orders if o.status == "delivered"]
        return {
            "newOrders": sum(o.status == "confirmed" for o in orders),
            "preparingOrders": sum(o.status == "preparing" for o in orders),
            "readyOrders": sum(o.status == "ready" for o in orders),
            "completedToday": len(delivered),
            "revenueToday": float(sum(o.total_amount or 0 for o in delivered)),
            "avgPrepTime": 0.0,
        }

    async def get_order(self, order_id):
        self.reads += 1
        return self.orders.get(order_id)

    async def create_order(self, customer_id, restaurant_id, items, delivery_address,
                           special_instructions=None):
        total = 0.0
        summary = []
        for menu_item_id, quantity in items:
            item = self.menu.get(menu_item_id)
            if item is None or item["restaurant_id"] != restaurant_id or not item["available"]:
                raise RecordNotFoundError(f"Menu item {menu_item_id} not found or unavailable")
            total += item["price"] * quantity
            summary.append({
                "menuItemId": menu_item_id,
                "name": item["name"],
                "quantity": quantity,
                "pricePerItem": item["price"],
                "itemTotal": item["price"] * quantity,
            })
        order = self.add_order(next(self._ids), customer_id, restaurant_id)
        order = replace(
            order,
            total_amount=total,
            delivery_address=delivery_address,
            special_instructions=special_instructions,
        )
        self.orders[order.id] = order
        return order, summary

    async def update_order_status(self, order_id, status, driver_id=None):
        order = self.orders.get(order_id)
        if order is None:
            raise RecordNotFoundError(f"Order {order_id} not found")
        driver_id = driver_id if driver_id is not None else order.driver_id
        order = replace(
            order,
            status=status,
            driver_id=driver_id,
            driver_name=self._name(driver_id),
            updated_at=_now(),
        )
        self.orders[order_id] = order
        return order

    async def list_active_orders(self, customer_id=None, driver_id=None):
        orders = list(self.orders.values())
        if customer_id is not None:
            orders = [o for o in orders if o.customer_id == customer_id
                      and o.status in ("confirmed", "preparing", "ready", "picked_up")]
        if driver_id is not None:
            orders = [o for o in orders if o.driver_id == driver_id
                      and o.status in ("ready", "picked_up")]
        return orders

    async def list_available_orders(self):
        return [o for o in self.orders.values() if o.driver_id is None and o.status == "ready"]

    async def assign_driver(self, order_id, driver_id):
        order = self.orders.get(order_id)
        if order is None or order.driver_id is not None or order.status != "ready":
            return None
        self.orders[order_id] = replace(
            order, driver_id=driver_id, driver_name=self._name(driver_id), updated_at=_now()
        )
        return self.orders[order_id]

    async def get_upload(self, upload_id):
        self.reads += 1
        return self.uploads.get(upload_id)

    async def update_upload_status(self, upload_id, status, progress, error_message=None):
        upload = self.uploads.get(upload_id)
        if upload is None:
            raise RecordNotFoundError(f"Upload {upload_id} not found")
        upload = replace(upload, status=status, progress=progress,
                         error_message=error_message, updated_at=_now())
        self.uploads[upload_id] = upload
        return upload

    async def create_upload(self, restaurant_user_id, menu_item_id, original_filename,
                            file_size=None):
        item = self.menu.get(menu_item_id)
        restaurant = self.restaurants.get(item["restaurant_id"]) if item else None
        if restaurant is None or restaurant.user_id != restaurant_user_id:
            raise RecordNotFoundError(f"Menu item {menu_item_id} not found or access denied")
        upload = self.add_upload(next(self._ids), restaurant.id)
        upload = replace(upload, original_filename=original_filename, menu_item_id=menu_item_id)
        self.uploads[upload.id] = upload
        return upload

    async def get_chat(self, chat_id):
        return self.chats.get(chat_id)

    async def create_chat(self, customer_id, initial_message):
        chat = self.add_chat(next(self._ids), customer_id)
        await self.save_chat_message(chat.id, customer_id, initial_message)
        return chat

    async def _update_chat(self, chat_id, **values):
        chat = self.chats.get(chat_id)
        if chat is None:
            raise RecordNotFoundError(f"Chat {chat_id} not found")
        self.chats[chat_id] = replace(chat, updated_at=_now(), **values)
        return self.chats[chat_id]

    async def update_chat_status(self, chat_id, status):
        return await self._update_chat(chat_id, status=status)

    async def assign_chat_agent(self, chat_id, agent_id):
        return await self._update_chat(chat_id, agent_id=agent_id)

    async def count_active_chats(self, agent_id):
        return sum(c.agent_id == agent_id and c.status == "active" for c in self.chats.values())

    async def list_chat_queue(self):
        return [c for c in self.chats.values() if c.agent_id is None and c.status == "active"]

    async def take_chat(self, chat_id, agent_id):
        chat = self.chats.get(chat_id)
        if chat is None or chat.agent_id is not None or chat.status != "active":
            return None
        return await self._update_chat(chat_id, agent_id=agent_id)

    async def save_chat_message(self, chat_id, sender_id, message, message_type="text"):
        record = MessageRecord(
            id=next(self._ids),
            chat_id=chat_id,
            sender_id=sender_id,
            message=message,
            message_type=message_type,
            created_at=_now(),
        )
        self.messages.append(record)
        return record

    async def list_chat_messages(self, chat_id):
        out = []
        for m in self.messages:
            if m.chat_id != chat_id:
                continue
            user = self.users.get(m.sender_id)
            out.append(replace(
                m,
                sender_name=user.full_name if user else None,
                sender_type=user.user_type if user else None,
            ))
        return out

    async def mark_messages_read(self, chat_id, reader_id, up_to_message_id=None):
        count = 0
        for i, m in enumerate(self.messages):
            if (
                m.chat_id == chat_id
                and m.sender_id != reader_id
                and not m.is_read
                and (up_to_message_id is None or m.id <= up_to_message_id)
            ):
                self.messages[i] = replace(m, is_read=True)
                count += 1
        return count

    async def save_driver_location(self, driver_id, order_id, latitude, longitude):
        record = LocationRecord(driver_id, order_id, latitude, longitude, _now())
        self.locations[(driver_id, order_id)] = record
        return record

    async def get_driver_location(self, order_id, driver_id):
        return self.locations.get((driver_id, order_id))

    async def create_announcement(self, title, message, announcement_type="general",
                                  target_audience="all", scheduled_at=None, expires_at=None):
        record = AnnouncementRecord(
            id=next(self._ids),
            title=title,
            message=message,
            announcement_type=announcement_type,
            target_audience=target_audience,
            scheduled_at=scheduled_at,
            expires_at=expires_at,
            created_at=_now(),
        )
        self.announcements[record.id] = record
        return record

    async def list_active_announcements(self, audience):
        now = _now()
        return [
            a for a in self.announcements.values()
            if a.is_active
            and a.target_audience in ("all", audience)
            and (a.scheduled_at is None or a.scheduled_at <= now)
            and (a.expires_at is None or a.expires_at > now)
        ]

    async def deactivate_announcement(self, announcement_id):
        record = self.announcements.get(announcement_id)
        if record is None:
            return None
        self.announcements[announcement_id] = replace(record, is_active=False)
        return self.announcements[announcement_id]


# ═══════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════

# Seeded ids
CUSTOMER_ID = 1
OTHER_CUSTOMER_ID = 2
RESTAURANT_USER_ID = 10
DRIVER_ID = 20
OTHER_DRIVER_ID = 21
AGENT_ID = 30
OTHER_AGENT_ID = 31
RESTAURANT_ID = 100
ORDER_ID = 500
UPLOAD_ID = 700
CHAT_ID = 900


def token_for(user_id: int, role: str) -> str:
    return create_access_token(user_id, role)


def auth_header(user_id: int, role: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token_for(user_id, role)}"}


@pytest.fixture()
def store() -> FakeRecordStore:
    """A store seeded with one of everything."""
    s = FakeRecordStore()
    s.add_user(CUSTOMER_ID, "customer", "Cara", "Customer")
    s.add_user(OTHER_CUSTOMER_ID, "customer", "Otto", "Other")
    s.add_user(RESTAURANT_USER_ID, "restaurant", "Rita", "Owner")
    s.add_user(DRIVER_ID, "driver", "Dev", "Driver")
    s.add_user(OTHER_DRIVER_ID, "driver", "Dana", "Driver")
    s.add_user(AGENT_ID, "support", "Sam", "Support")
    s.add_user(OTHER_AGENT_ID, "support", "Sue", "Support")
    s.add_restaurant(RESTAURANT_ID, RESTAURANT_USER_ID)
    s.add_menu_item(1, RESTAURANT_ID, "Margherita", 12.0)
    s.add_menu_item(2, RESTAURANT_ID, "Calzone", 14.5)
    s.add_order(ORDER_ID, CUSTOMER_ID, RESTAURANT_ID)
    s.add_upload(UPLOAD_ID, RESTAURANT_ID)
    s.add_chat(CHAT_ID, CUSTOMER_ID)
    return s


@pytest.fixture()
def broker_hub() -> InMemoryHub:
    """Shared in-process broker. Two RealtimeHubs on it act like two servers on one Redis."""
    return InMemoryHub()


def build_hub(store: RecordStore, broker_hub: InMemoryHub, process_id: str) -> RealtimeHub:
    return RealtimeHub.from_settings(
        settings,
        store=store,
        broker=InMemoryBroker(broker_hub),
        process_id=process_id,
    )


@pytest_asyncio.fixture()
async def hub(store, broker_hub):
    """A started hub for process "a"."""
    h = build_hub(store, broker_hub, "process-a")
    await h.start()
    try:
        yield h
    finally:
        await h.stop()


@pytest_asyncio.fixture()
async def peer_hub(store, broker_hub):
    """A second started hub ("process-b") on the same broker and store."""
    h = build_hub(store, broker_hub, "process-b")
    await h.start()
    try:
        yield h
    finally:
        await h.stop()


@pytest_asyncio.fixture()
async def client(hub, store):
    """HTTP client with get_hub and get_store overridden for testing."""
    app = create_app()
    app.dependency_overrides[get_hub] = lambda: hub
    app.dependency_overrides[get_store] = lambda: store

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture()
def ws_app(store, broker_hub):
    """App whose lifespan starts a hub on the TestClient's own event loop."""
    app = create_app()

    @asynccontextmanager
    async def test_lifespan(app: FastAPI):
        h = build_hub(store, broker_hub, "process-ws")
        app.state.hub = h
        app.state.store = store
        await h.start()
        yield
        await h.stop()

    app.router.lifespan_context = test_lifespan
    return app


@pytest.fixture()
def ws_client(ws_app):
    """Sync TestClient for WebSocket sessions (HTTP calls work on it too)."""
    with TestClient(ws_app) as tc:
        yield tc


# ─── Channels and timing ─────────────────────────────────


class RecordingChannel(ChannelHandle):
    """In-memory handle that keeps every frame it was sent."""

    def __init__(self, identity: str = "customer:1", role: Optional[str] = "customer",
                 fail: bool = False):
        super().__init__(identity, role)
        self.frames: list[dict] = []
        self.fail = fail
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, frame):
        if self.fail or self._closed:
            raise TransportError(f"channel {self.id} is gone")
        self.frames.append(frame)

    async def close(self):
        self._closed = True

    def types(self) -> list[str]:
        return [f["type"] for f in self.frames]

    def of_type(self, frame_type: str) -> list[dict]:
        return [f for f in self.frames if f["type"] == frame_type]


@pytest.fixture()
def make_channel():
    def factory(identity: str = "customer:1", role: Optional[str] = "customer",
                fail: bool = False) -> RecordingChannel:
        return RecordingChannel(identity, role, fail)
    return factory


@pytest.fixture()
def eventually():
    """Await until `predicate()` holds; cross-process delivery hops through the broker task."""

    async def wait(predicate, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)

    return wait
