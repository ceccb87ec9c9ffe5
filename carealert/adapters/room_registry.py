"""Realtime push adapter — in-process room registry, implements PushPort.

A room is a logical channel keyed by a typed user identity. Connections
join rooms when they connect and lose every membership when they go away;
nothing is queued for rooms without a live connection (SMS covers that).
Each connection gets a bounded time to accept an event, so one stalled
socket never holds up the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from carealert.data.models import Role

logger = logging.getLogger(__name__)

# A connection's outbound callable: (event, payload) -> None
Sink = Callable[[str, dict], Awaitable[None]]


@dataclass(frozen=True)
class RoomKey:
    """Room address. The role keeps elderly and caregiver id spaces apart."""

    id: int
    role: Role

    @classmethod
    def elderly(cls, user_id: int) -> RoomKey:
        return cls(id=user_id, role=Role.ELDERLY)

    @classmethod
    def caregiver(cls, user_id: int) -> RoomKey:
        return cls(id=user_id, role=Role.CAREGIVER)

    def __str__(self) -> str:
        return f"{self.role.value}:{self.id}"


@dataclass
class _Connection:
    sink: Sink
    rooms: set[RoomKey] = field(default_factory=set)


class RoomRegistry:
    """Maps live connections to room keys and publishes into rooms."""

    def __init__(self, sink_timeout: float | None = None) -> None:
        from carealert.config import settings

        self._sink_timeout = sink_timeout or settings.PUSH_TIMEOUT_SECONDS
        self._connections: dict[str, _Connection] = {}
        self._rooms: dict[RoomKey, set[str]] = {}

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def connect(self, connection_id: str, sink: Sink) -> None:
        """Register a connection. Reconnecting with the same id starts clean."""
        if connection_id in self._connections:
            self.disconnect(connection_id)
        self._connections[connection_id] = _Connection(sink=sink)
        logger.debug("Connection %s registered", connection_id)

    def join(self, connection_id: str, room: RoomKey) -> None:
        conn = self._connections.get(connection_id)
        if conn is None:
            raise KeyError(f"Unknown connection {connection_id}")
        conn.rooms.add(room)
        self._rooms.setdefault(room, set()).add(connection_id)
        logger.debug("Connection %s joined room %s", connection_id, room)

    def join_user_rooms(self, connection_id: str, user_id: int, role: Role) -> list[RoomKey]:
        """Join the personal room keyed by the user's id and role."""
        room = RoomKey(id=user_id, role=Role(role))
        self.join(connection_id, room)
        return [room]

    def leave(self, connection_id: str, room: RoomKey) -> None:
        conn = self._connections.get(connection_id)
        if conn is not None:
            conn.rooms.discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._rooms[room]

    def disconnect(self, connection_id: str) -> None:
        """Drop a connection and every room membership it held."""
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return
        for room in list(conn.rooms):
            members = self._rooms.get(room)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self._rooms[room]
        logger.debug("Connection %s disconnected", connection_id)

    def members(self, room: RoomKey) -> set[str]:
        return set(self._rooms.get(room, ()))

    def rooms_of(self, connection_id: str) -> set[RoomKey]:
        conn = self._connections.get(connection_id)
        return set(conn.rooms) if conn else set()

    # ------------------------------------------------------------------
    # PushPort
    # ------------------------------------------------------------------

    async def publish(self, room: RoomKey, event: str, payload: dict) -> int:
        """Deliver once to each connection currently in the room.

        A failing or stalled sink is logged and skipped; it never affects the
        others. A sink that does not finish within the timeout is cancelled.
        """
        targets = [
            (cid, self._connections[cid].sink)
            for cid in sorted(self._rooms.get(room, ()))
            if cid in self._connections
        ]
        if not targets:
            logger.debug("No subscribers in room %s for '%s'", room, event)
            return 0

        results = await asyncio.gather(
            *(asyncio.wait_for(sink(event, payload), self._sink_timeout) for _, sink in targets),
            return_exceptions=True,
        )
        delivered = 0
        for (cid, _), result in zip(targets, results):
            if isinstance(result, asyncio.TimeoutError):
                logger.warning(
                    "Push of '%s' to connection %s in room %s timed out after %.1fs",
                    event, cid, room, self._sink_timeout,
                )
            elif isinstance(result, Exception):
                logger.warning(
                    "Push of '%s' to connection %s in room %s failed: %s",
                    event, cid, room, result,
                )
            else:
                delivered += 1
        logger.debug("Published '%s' to room %s (%d/%d)", event, room, delivered, len(targets))
        return delivered
