"""Room registry: named groups of bidirectional sessions.

Learn: A WebSocket can sit in several rooms at once: a support chat, its
restaurant's order feed, an announcement tier. The registry keeps two maps:

    room   → {channel id → RoomMembership}
    handle → {room names}      (reverse index)

The reverse index makes disconnect() cost O(rooms for that handle)
instead of a scan over every room on the process.

Membership changes for a room go through that room's lock, so two
concurrent joins can't lose each other. Broadcasting takes the same lock,
which also keeps frames to one room in call order.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

import structlog

from orderpulse.realtime.channels import ChannelHandle
from orderpulse.realtime.events import utc_now
from orderpulse.realtime.locks import KeyedLock

logger = structlog.get_logger()


@dataclass
class RoomMembership:
    room: str
    channel: ChannelHandle
    subscriber: str
    role: Optional[str] = None
    joined_at: datetime = field(default_factory=utc_now)
    metadata: dict[str, Any] = field(default_factory=dict)


class RoomRegistry:
    def __init__(self):
        self._rooms: dict[str, dict[str, RoomMembership]] = {}
        self._handle_rooms: dict[str, set[str]] = {}
        self._locks = KeyedLock()

    # ─── Membership ──────────────────────────────────────

    async def join(
        self,
        room: str,
        channel: ChannelHandle,
        metadata: Optional[dict[str, Any]] = None,
    ) -> RoomMembership:
        """Add a handle to a room. Joining again refreshes its metadata."""
        async with self._locks.hold(room):
            membership = RoomMembership(
                room=room,
                channel=channel,
                subscriber=channel.identity,
                role=channel.role,
                metadata=dict(metadata or {}),
            )
            self._rooms.setdefault(room, {})[channel.id] = membership
            self._handle_rooms.setdefault(channel.id, set()).add(room)
        logger.debug("room.joined", room=room, channel_id=channel.id)
        return membership

    async def leave(self, room: str, channel: ChannelHandle) -> bool:
        """Remove a handle from a room. Leaving twice is a no-op."""
        async with self._locks.hold(room):
            removed = self._discard(room, channel.id)
        if removed:
            logger.debug("room.left", room=room, channel_id=channel.id)
        return removed

    async def disconnect(self, channel: ChannelHandle) -> list[str]:
        """Drop a handle from every room it belongs to."""
        rooms = sorted(self._handle_rooms.get(channel.id, ()))
        for room in rooms:
            async with self._locks.hold(room):
                self._discard(room, channel.id)
        self._handle_rooms.pop(channel.id, None)
        if rooms:
            logger.debug("room.disconnected", channel_id=channel.id, rooms=rooms)
        return rooms

    def _discard(self, room: str, channel_id: str) -> bool:
        members = self._rooms.get(room)
        if not members or channel_id not in members:
            return False
        del members[channel_id]
        if not members:
            del self._rooms[room]
        handle_rooms = self._handle_rooms.get(channel_id)
        if handle_rooms is not None:
            handle_rooms.discard(room)
            if not handle_rooms:
                del self._handle_rooms[channel_id]
        return True

    # ─── Delivery ────────────────────────────────────────

    async def broadcast(self, room: str, frame: dict[str, Any]) -> int:
        """Send a frame to every member. Returns how many accepted it."""
        return await self._send(room, frame, exclude_id=None)

    async def broadcast_except(
        self,
        room: str,
        frame: dict[str, Any],
        exclude: Union[ChannelHandle, str, None],
    ) -> int:
        """Send a frame to every member but one (usually the sender)."""
        exclude_id = exclude.id if isinstance(exclude, ChannelHandle) else exclude
        return await self._send(room, frame, exclude_id=exclude_id)

    async def _send(
        self, room: str, frame: dict[str, Any], exclude_id: Optional[str]
    ) -> int:
        async with self._locks.hold(room):
            targets = [
                m for cid, m in self._rooms.get(room, {}).items() if cid != exclude_id
            ]
            if not targets:
                return 0
            results = await asyncio.gather(
                *(m.channel.send(frame) for m in targets),
                return_exceptions=True,
            )
            failed = []
            for membership, result in zip(targets, results):
                if isinstance(result, Exception):
                    self._discard(room, membership.channel.id)
                    failed.append(membership.channel)
                    logger.info(
                        "room.dropped",
                        room=room,
                        channel_id=membership.channel.id,
                        error=str(result),
                    )

        # A dead handle is dead in every room, not just this one.
        for channel in failed:
            await channel.close()
            await self.disconnect(channel)
        return len(targets) - len(failed)

    # ─── Introspection ───────────────────────────────────

    def members(self, room: str) -> list[RoomMembership]:
        return list(self._rooms.get(room, {}).values())

    def rooms_for(self, channel: ChannelHandle) -> set[str]:
        return set(self._handle_rooms.get(channel.id, ()))

    def count(self, room: Optional[str] = None) -> int:
        if room is not None:
            return len(self._rooms.get(room, {}))
        return sum(len(m) for m in self._rooms.values())

    def rooms(self) -> list[str]:
        return list(self._rooms)
