"""Record store — the source of truth behind every cache and registry.

Learn: The real-time layer never holds an ORM session. It talks to a
RecordStore, which hands back plain frozen dataclasses. Two reasons:
1. Nothing detached or lazy-loaded leaks into long-lived WebSocket tasks.
2. Tests swap in an in-memory store without a database.

SqlRecordStore is the production implementation. It opens one short
session per operation (the session factory from db.engine) and commits
writes immediately. No transaction ever spans a cache update.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from sqlalchemy import and_, func, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from orderpulse.db.models import (
    Announcement,
    ChatMessage,
    DriverLocation,
    ImageUpload,
    MenuItem,
    Order,
    OrderItem,
    Restaurant,
    SupportChat,
    User,
)

logger = structlog.get_logger()


class RecordNotFoundError(Exception):
    """Raised when a referenced row does not exist."""


# ═══════════════════════════════════════════════════════════
# Records
# ═══════════════════════════════════════════════════════════


@dataclass(frozen=True)
class UserRecord:
    id: int
    user_type: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p) or f"user {self.id}"


@dataclass(frozen=True)
class RestaurantRecord:
    id: int
    user_id: Optional[int]
    name: str


@dataclass(frozen=True)
class OrderRecord:
    id: int
    customer_id: int
    restaurant_id: int
    status: str
    driver_id: Optional[int] = None
    restaurant_user_id: Optional[int] = None
    restaurant_name: Optional[str] = None
    driver_name: Optional[str] = None
    total_amount: Optional[float] = None
    delivery_address: Optional[str] = None
    special_instructions: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class UploadRecord:
    id: int
    restaurant_id: int
    status: str
    progress: int = 0
    restaurant_user_id: Optional[int] = None
    error_message: Optional[str] = None
    original_filename: Optional[str] = None
    updated_at: Optional[datetime] = None
    menu_item_id: Optional[int] = None


@dataclass(frozen=True)
class ChatRecord:
    id: int
    customer_id: int
    status: str
    agent_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class MessageRecord:
    id: int
    chat_id: int
    sender_id: int
    message: str
    message_type: str = "text"
    is_read: bool = False
    created_at: Optional[datetime] = None
    sender_name: Optional[str] = None
    sender_type: Optional[str] = None


@dataclass(frozen=True)
class LocationRecord:
    driver_id: int
    order_id: int
    latitude: float
    longitude: float
    timestamp: datetime


@dataclass(frozen=True)
class AnnouncementRecord:
    id: int
    title: str
    message: str
    announcement_type: str = "general"
    target_audience: str = "all"
    is_active: bool = True
    scheduled_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# ═══════════════════════════════════════════════════════════
# Interface
# ═══════════════════════════════════════════════════════════


class RecordStore(ABC):
    """Reads and writes the rows the real-time layer depends on."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass

    # ─── Users / restaurants ─────────────────────────────

    @abstractmethod
    async def get_user(self, user_id: int) -> Optional[UserRecord]:
        ...

    @abstractmethod
    async def get_restaurant(self, restaurant_id: int) -> Optional[RestaurantRecord]:
        ...

    @abstractmethod
    async def restaurant_stats(self, restaurant_id: int) -> dict[str, Any]:
        ...

    # ─── Orders ──────────────────────────────────────────

    @abstractmethod
    async def get_order(self, order_id: int) -> Optional[OrderRecord]:
        ...

    @abstractmethod
    async def create_order(
        self,
        customer_id: int,
        restaurant_id: int,
        items: list[tuple[int, int]],
        delivery_address: str,
        special_instructions: Optional[str] = None,
    ) -> tuple[OrderRecord, list[dict[str, Any]]]:
        """Create a confirmed order from (menu_item_id, quantity) pairs.

        Raises:
            RecordNotFoundError: if a menu item is missing or unavailable
        """

    @abstractmethod
    async def update_order_status(
        self, order_id: int, status: str, driver_id: Optional[int] = None
    ) -> OrderRecord:
        ...

    @abstractmethod
    async def list_active_orders(
        self,
        customer_id: Optional[int] = None,
        driver_id: Optional[int] = None,
    ) -> list[OrderRecord]:
        ...

    @abstractmethod
    async def list_available_orders(self) -> list[OrderRecord]:
        """Ready orders no driver has claimed yet, oldest first."""

    @abstractmethod
    async def assign_driver(self, order_id: int, driver_id: int) -> Optional[OrderRecord]:
        """Claim a ready, unassigned order. None if it isn't up for grabs."""

    # ─── Uploads ─────────────────────────────────────────

    @abstractmethod
    async def get_upload(self, upload_id: int) -> Optional[UploadRecord]:
        ...

    @abstractmethod
    async def create_upload(
        self,
        restaurant_user_id: int,
        menu_item_id: int,
        original_filename: str,
        file_size: Optional[int] = None,
    ) -> UploadRecord:
        """Start an upload for one of the caller's menu items (uploading, 0%).

        Raises:
            RecordNotFoundError: the menu item is missing or not the caller's
        """

    @abstractmethod
    async def update_upload_status(
        self,
        upload_id: int,
        status: str,
        progress: int,
        error_message: Optional[str] = None,
    ) -> UploadRecord:
        ...

    # ─── Support chat ────────────────────────────────────

    @abstractmethod
    async def get_chat(self, chat_id: int) -> Optional[ChatRecord]:
        ...

    @abstractmethod
    async def create_chat(self, customer_id: int, initial_message: str) -> ChatRecord:
        ...

    @abstractmethod
    async def update_chat_status(self, chat_id: int, status: str) -> ChatRecord:
        ...

    @abstractmethod
    async def assign_chat_agent(self, chat_id: int, agent_id: int) -> ChatRecord:
        ...

    @abstractmethod
    async def count_active_chats(self, agent_id: int) -> int:
        ...

    @abstractmethod
    async def list_chat_queue(self) -> list[ChatRecord]:
        """Active chats without an agent, longest waiting first."""

    @abstractmethod
    async def take_chat(self, chat_id: int, agent_id: int) -> Optional[ChatRecord]:
        """Assign a queued chat. None if it's gone or someone got there first."""

    @abstractmethod
    async def save_chat_message(
        self,
        chat_id: int,
        sender_id: int,
        message: str,
        message_type: str = "text",
    ) -> MessageRecord:
        ...

    @abstractmethod
    async def list_chat_messages(self, chat_id: int) -> list[MessageRecord]:
        ...

    @abstractmethod
    async def mark_messages_read(
        self, chat_id: int, reader_id: int, up_to_message_id: Optional[int] = None
    ) -> int:
        ...

    # ─── Driver locations ────────────────────────────────

    @abstractmethod
    async def save_driver_location(
        self, driver_id: int, order_id: int, latitude: float, longitude: float
    ) -> LocationRecord:
        ...

    @abstractmethod
    async def get_driver_location(
        self, order_id: int, driver_id: int
    ) -> Optional[LocationRecord]:
        ...

    # ─── Announcements ───────────────────────────────────

    @abstractmethod
    async def create_announcement(
        self,
        title: str,
        message: str,
        announcement_type: str = "general",
        target_audience: str = "all",
        scheduled_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
    ) -> AnnouncementRecord:
        ...

    @abstractmethod
    async def list_active_announcements(self, audience: str) -> list[AnnouncementRecord]:
        ...

    @abstractmethod
    async def deactivate_announcement(
        self, announcement_id: int
    ) -> Optional[AnnouncementRecord]:
        ...


# ═══════════════════════════════════════════════════════════
# SQLAlchemy implementation
# ═══════════════════════════════════════════════════════════

_ACTIVE_ORDER_STATES = ("confirmed", "preparing", "ready", "picked_up")
_DELIVERY_PHASE_STATES = ("ready", "picked_up")


def _float(value) -> Optional[float]:
    return float(value) if value is not None else None


def _name(first: Optional[str], last: Optional[str]) -> Optional[str]:
    parts = [p for p in (first, last) if p]
    return " ".join(parts) if parts else None


def _user(row: User) -> UserRecord:
    return UserRecord(
        id=row.id,
        user_type=row.user_type,
        first_name=row.first_name,
        last_name=row.last_name,
        email=row.email,
        phone=row.phone,
        is_active=row.is_active,
    )


def _upload(row: ImageUpload, restaurant_user_id: Optional[int]) -> UploadRecord:
    return UploadRecord(
        id=row.id,
        restaurant_id=row.restaurant_id,
        status=row.status,
        progress=row.progress or 0,
        restaurant_user_id=restaurant_user_id,
        error_message=row.error_message,
        original_filename=row.original_filename,
        updated_at=row.updated_at,
        menu_item_id=row.menu_item_id,
    )


def _chat(row: SupportChat) -> ChatRecord:
    return ChatRecord(
        id=row.id,
        customer_id=row.customer_id,
        status=row.status,
        agent_id=row.agent_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _announcement(row: Announcement) -> AnnouncementRecord:
    return AnnouncementRecord(
        id=row.id,
        title=row.title,
        message=row.message,
        announcement_type=row.announcement_type,
        target_audience=row.target_audience,
        is_active=row.is_active,
        scheduled_at=row.scheduled_at,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


class SqlRecordStore(RecordStore):
    """RecordStore over SQLAlchemy async sessions (asyncpg driver)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], engine=None):
        self._session_factory = session_factory
        self._engine = engine

    async def ping(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning("store.ping_failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    # ─── Users / restaurants ─────────────────────────────

    async def get_user(self, user_id: int) -> Optional[UserRecord]:
        async with self._session_factory() as session:
            row = await session.get(User, user_id)
            return _user(row) if row else None

    async def get_restaurant(self, restaurant_id: int) -> Optional[RestaurantRecord]:
        async with self._session_factory() as session:
            row = await session.get(Restaurant, restaurant_id)
            if row is None:
                return None
            return RestaurantRecord(id=row.id, user_id=row.user_id, name=row.name)

    async def restaurant_stats(self, restaurant_id: int) -> dict[str, Any]:
        today = func.current_date()
        delivered_today = and_(
            Order.status == "delivered", func.date(Order.created_at) == today
        )
        q = select(
            func.count().filter(Order.status == "confirmed"),
            func.count().filter(Order.status == "preparing"),
            func.count().filter(Order.status == "ready"),
            func.count().filter(delivered_today),
            func.coalesce(func.sum(Order.total_amount).filter(delivered_today), 0),
            func.avg(
                func.extract("epoch", Order.updated_at - Order.created_at) / 60
            ).filter(Order.status == "ready"),
        ).where(Order.restaurant_id == restaurant_id)
        async with self._session_factory() as session:
            row = (await session.execute(q)).one()
        return {
            "newOrders": int(row[0]),
            "preparingOrders": int(row[1]),
            "readyOrders": int(row[2]),
            "completedToday": int(row[3]),
            "revenueToday": float(row[4]),
            "avgPrepTime": float(row[5] or 0),
        }

    # ─── Orders ──────────────────────────────────────────

    def _order_query(self):
        driver = aliased(User)
        return (
            select(
                Order,
                Restaurant.user_id,
                Restaurant.name,
                driver.first_name,
                driver.last_name,
            )
            .join(Restaurant, Order.restaurant_id == Restaurant.id, isouter=True)
            .join(driver, Order.driver_id == driver.id, isouter=True)
        )

    @staticmethod
    def _order(row) -> OrderRecord:
        order, restaurant_user_id, restaurant_name, driver_first, driver_last = row
        return OrderRecord(
            id=order.id,
            customer_id=order.customer_id,
            restaurant_id=order.restaurant_id,
            status=order.status,
            driver_id=order.driver_id,
            restaurant_user_id=restaurant_user_id,
            restaurant_name=restaurant_name,
            driver_name=_name(driver_first, driver_last),
            total_amount=_float(order.total_amount),
            delivery_address=order.delivery_address,
            special_instructions=order.special_instructions,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )

    async def get_order(self, order_id: int) -> Optional[OrderRecord]:
        async with self._session_factory() as session:
            row = (await session.execute(self._order_query().where(Order.id == order_id))).first()
        return self._order(row) if row else None

    async def create_order(
        self,
        customer_id: int,
        restaurant_id: int,
        items: list[tuple[int, int]],
        delivery_address: str,
        special_instructions: Optional[str] = None,
    ) -> tuple[OrderRecord, list[dict[str, Any]]]:
        async with self._session_factory() as session:
            total = 0
            validated = []
            for menu_item_id, quantity in items:
                item = (
                    await session.execute(
                        select(MenuItem).where(
                            MenuItem.id == menu_item_id,
                            MenuItem.restaurant_id == restaurant_id,
                            MenuItem.is_available.is_(True),
                        )
                    )
                ).scalar_one_or_none()
                if item is None:
                    raise RecordNotFoundError(
                        f"Menu item {menu_item_id} not found or unavailable"
                    )
                total += item.price * quantity
                validated.append((item, quantity))

            order = Order(
                customer_id=customer_id,
                restaurant_id=restaurant_id,
                status="confirmed",
                total_amount=total,
                delivery_address=delivery_address,
                special_instructions=special_instructions,
            )
            session.add(order)
            await session.flush()  # get auto-generated ID
            for item, quantity in validated:
                session.add(
                    OrderItem(
                        order_id=order.id,
                        menu_item_id=item.id,
                        quantity=quantity,
                        price_per_item=item.price,
                    )
                )
            await session.commit()
            order_id = order.id

        record = await self.get_order(order_id)
        summary = [
            {
                "menuItemId": item.id,
                "name": item.name,
                "quantity": quantity,
                "pricePerItem": float(item.price),
                "itemTotal": float(item.price * quantity),
            }
            for item, quantity in validated
        ]
        return record, summary

    async def update_order_status(
        self, order_id: int, status: str, driver_id: Optional[int] = None
    ) -> OrderRecord:
        values: dict[str, Any] = {"status": status, "updated_at": datetime.now(timezone.utc)}
        if driver_id is not None:
            values["driver_id"] = driver_id
        async with self._session_factory() as session:
            result = await session.execute(
                update(Order).where(Order.id == order_id).values(**values)
            )
            if result.rowcount == 0:
                raise RecordNotFoundError(f"Order {order_id} not found")
            await session.commit()
        return await self.get_order(order_id)

    async def list_active_orders(
        self,
        customer_id: Optional[int] = None,
        driver_id: Optional[int] = None,
    ) -> list[OrderRecord]:
        q = self._order_query()
        if customer_id is not None:
            q = q.where(Order.customer_id == customer_id, Order.status.in_(_ACTIVE_ORDER_STATES))
        if driver_id is not None:
            q = q.where(Order.driver_id == driver_id, Order.status.in_(_DELIVERY_PHASE_STATES))
        q = q.order_by(Order.created_at.desc())
        async with self._session_factory() as session:
            rows = (await session.execute(q)).all()
        return [self._order(r) for r in rows]

    async def list_available_orders(self) -> list[OrderRecord]:
        q = (
            self._order_query()
            .where(Order.driver_id.is_(None), Order.status == "ready")
            .order_by(Order.created_at.asc())
        )
        async with self._session_factory() as session:
            rows = (await session.execute(q)).all()
        return [self._order(r) for r in rows]

    async def assign_driver(self, order_id: int, driver_id: int) -> Optional[OrderRecord]:
        # Conditional update: two drivers racing for one order, one wins.
        async with self._session_factory() as session:
            result = await session.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.driver_id.is_(None),
                    Order.status == "ready",
                )
                .values(driver_id=driver_id, updated_at=datetime.now(timezone.utc))
            )
            await session.commit()
        if result.rowcount == 0:
            return None
        return await self.get_order(order_id)

    # ─── Uploads ─────────────────────────────────────────

    async def get_upload(self, upload_id: int) -> Optional[UploadRecord]:
        q = (
            select(ImageUpload, Restaurant.user_id)
            .join(Restaurant, ImageUpload.restaurant_id == Restaurant.id, isouter=True)
            .where(ImageUpload.id == upload_id)
        )
        async with self._session_factory() as session:
            row = (await session.execute(q)).first()
        return _upload(row[0], row[1]) if row else None

    async def create_upload(
        self,
        restaurant_user_id: int,
        menu_item_id: int,
        original_filename: str,
        file_size: Optional[int] = None,
    ) -> UploadRecord:
        async with self._session_factory() as session:
            restaurant_id = (
                await session.execute(
                    select(MenuItem.restaurant_id)
                    .join(Restaurant, MenuItem.restaurant_id == Restaurant.id)
                    .where(MenuItem.id == menu_item_id, Restaurant.user_id == restaurant_user_id)
                )
            ).scalar_one_or_none()
            if restaurant_id is None:
                raise RecordNotFoundError(
                    f"Menu item {menu_item_id} not found or access denied"
                )
            row = ImageUpload(
                restaurant_id=restaurant_id,
                menu_item_id=menu_item_id,
                original_filename=original_filename,
                file_size=file_size,
                status="uploading",
                progress=0,
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return _upload(row, restaurant_user_id)

    async def update_upload_status(
        self,
        upload_id: int,
        status: str,
        progress: int,
        error_message: Optional[str] = None,
    ) -> UploadRecord:
        async with self._session_factory() as session:
            result = await session.execute(
                update(ImageUpload)
                .where(ImageUpload.id == upload_id)
                .values(
                    status=status,
                    progress=progress,
                    error_message=error_message,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            if result.rowcount == 0:
                raise RecordNotFoundError(f"Upload {upload_id} not found")
            await session.commit()
        return await self.get_upload(upload_id)

    # ─── Support chat ────────────────────────────────────

    async def get_chat(self, chat_id: int) -> Optional[ChatRecord]:
        async with self._session_factory() as session:
            row = await session.get(SupportChat, chat_id)
            return _chat(row) if row else None

    async def create_chat(self, customer_id: int, initial_message: str) -> ChatRecord:
        async with self._session_factory() as session:
            chat = SupportChat(customer_id=customer_id, status="active")
            session.add(chat)
            await session.flush()
            session.add(ChatMessage(chat_id=chat.id, sender_id=customer_id, message=initial_message))
            await session.commit()
            await session.refresh(chat)
            return _chat(chat)

    async def _update_chat(self, chat_id: int, **values) -> ChatRecord:
        async with self._session_factory() as session:
            result = await session.execute(
                update(SupportChat)
                .where(SupportChat.id == chat_id)
                .values(updated_at=datetime.now(timezone.utc), **values)
            )
            if result.rowcount == 0:
                raise RecordNotFoundError(f"Chat {chat_id} not found")
            await session.commit()
        return await self.get_chat(chat_id)

    async def update_chat_status(self, chat_id: int, status: str) -> ChatRecord:
        return await self._update_chat(chat_id, status=status)

    async def assign_chat_agent(self, chat_id: int, agent_id: int) -> ChatRecord:
        return await self._update_chat(chat_id, agent_id=agent_id)

    async def count_active_chats(self, agent_id: int) -> int:
        q = select(func.count()).where(
            SupportChat.agent_id == agent_id, SupportChat.status == "active"
        )
        async with self._session_factory() as session:
            return (await session.execute(q)).scalar_one()

    async def list_chat_queue(self) -> list[ChatRecord]:
        q = (
            select(SupportChat)
            .where(SupportChat.agent_id.is_(None), SupportChat.status == "active")
            .order_by(SupportChat.created_at.asc())
        )
        async with self._session_factory() as session:
            rows = (await session.execute(q)).scalars().all()
        return [_chat(r) for r in rows]

    async def take_chat(self, chat_id: int, agent_id: int) -> Optional[ChatRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                update(SupportChat)
                .where(
                    SupportChat.id == chat_id,
                    SupportChat.agent_id.is_(None),
                    SupportChat.status == "active",
                )
                .values(agent_id=agent_id, updated_at=datetime.now(timezone.utc))
            )
            await session.commit()
        if result.rowcount == 0:
            return None
        return await self.get_chat(chat_id)

    async def save_chat_message(
        self,
        chat_id: int,
        sender_id: int,
        message: str,
        message_type: str = "text",
    ) -> MessageRecord:
        async with self._session_factory() as session:
            row = ChatMessage(
                chat_id=chat_id,
                sender_id=sender_id,
                message=message,
                message_type=message_type,
            )
            session.add(row)
            await session.execute(
                update(SupportChat)
                .where(SupportChat.id == chat_id)
                .values(updated_at=datetime.now(timezone.utc))
            )
            await session.commit()
            await session.refresh(row)
            return MessageRecord(
                id=row.id,
                chat_id=row.chat_id,
                sender_id=row.sender_id,
                message=row.message,
                message_type=row.message_type,
                is_read=row.is_read,
                created_at=row.created_at,
            )

    async def list_chat_messages(self, chat_id: int) -> list[MessageRecord]:
        q = (
            select(ChatMessage, User.first_name, User.last_name, User.user_type)
            .join(User, ChatMessage.sender_id == User.id, isouter=True)
            .where(ChatMessage.chat_id == chat_id)
            .order_by(ChatMessage.created_at, ChatMessage.id)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(q)).all()
        return [
            MessageRecord(
                id=m.id,
                chat_id=m.chat_id,
                sender_id=m.sender_id,
                message=m.message,
                message_type=m.message_type,
                is_read=m.is_read,
                created_at=m.created_at,
                sender_name=_name(first, last),
                sender_type=user_type,
            )
            for m, first, last, user_type in rows
        ]

    async def mark_messages_read(
        self, chat_id: int, reader_id: int, up_to_message_id: Optional[int] = None
    ) -> int:
        conditions = [ChatMessage.chat_id == chat_id, ChatMessage.sender_id != reader_id]
        if up_to_message_id is not None:
            conditions.append(ChatMessage.id <= up_to_message_id)
        async with self._session_factory() as session:
            result = await session.execute(
                update(ChatMessage).where(*conditions).values(is_read=True)
            )
            await session.commit()
            return result.rowcount

    # ─── Driver locations ────────────────────────────────

    async def save_driver_location(
        self, driver_id: int, order_id: int, latitude: float, longitude: float
    ) -> LocationRecord:
        now = datetime.now(timezone.utc)
        stmt = pg_insert(DriverLocation).values(
            driver_id=driver_id,
            order_id=order_id,
            latitude=latitude,
            longitude=longitude,
            timestamp=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["driver_id", "order_id"],
            set_={
                "latitude": stmt.excluded.latitude,
                "longitude": stmt.excluded.longitude,
                "timestamp": stmt.excluded.timestamp,
            },
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()
        return LocationRecord(driver_id, order_id, latitude, longitude, now)

    async def get_driver_location(
        self, order_id: int, driver_id: int
    ) -> Optional[LocationRecord]:
        q = (
            select(DriverLocation)
            .where(DriverLocation.order_id == order_id, DriverLocation.driver_id == driver_id)
            .order_by(DriverLocation.timestamp.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            row = (await session.execute(q)).scalar_one_or_none()
        if row is None:
            return None
        return LocationRecord(
            driver_id=row.driver_id,
            order_id=row.order_id,
            latitude=float(row.latitude),
            longitude=float(row.longitude),
            timestamp=row.timestamp,
        )

    # ─── Announcements ───────────────────────────────────

    async def create_announcement(
        self,
        title: str,
        message: str,
        announcement_type: str = "general",
        target_audience: str = "all",
        scheduled_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
    ) -> AnnouncementRecord:
        async with self._session_factory() as session:
            row = Announcement(
                title=title,
                message=message,
                announcement_type=announcement_type,
                target_audience=target_audience,
                scheduled_at=scheduled_at,
                expires_at=expires_at,
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return _announcement(row)

    async def list_active_announcements(self, audience: str) -> list[AnnouncementRecord]:
        now = func.now()
        priority = func.array_position(
            text("ARRAY['urgent', 'maintenance', 'promotion']::varchar[]"),
            Announcement.announcement_type,
        )
        q = (
            select(Announcement)
            .where(
                Announcement.is_active.is_(True),
                or_(Announcement.target_audience == "all", Announcement.target_audience == audience),
                or_(Announcement.scheduled_at.is_(None), Announcement.scheduled_at <= now),
                or_(Announcement.expires_at.is_(None), Announcement.expires_at > now),
            )
            .order_by(priority.asc().nulls_last(), Announcement.created_at.desc())
        )
        async with self._session_factory() as session:
            rows = (await session.execute(q)).scalars().all()
        return [_announcement(r) for r in rows]

    async def deactivate_announcement(
        self, announcement_id: int
    ) -> Optional[AnnouncementRecord]:
        async with self._session_factory() as session:
            row = await session.get(Announcement, announcement_id)
            if row is None:
                return None
            row.is_active = False
            await session.commit()
            return _announcement(row)
