"""Push port — abstract interface for realtime, room-keyed delivery.

Core modules depend on this protocol, never on a specific transport.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from carealert.adapters.room_registry import RoomKey


class PushPort(Protocol):
    """Fire-and-forget publish to every connection currently in a room.

    Returns how many connections received the event; zero is not an error.
    """

    async def publish(self, room: RoomKey, event: str, payload: dict) -> int: ...
