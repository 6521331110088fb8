from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Room:
    meeting_id: str
    # user_id -> ids of that user's connections currently joined to the room
    presence: Dict[str, Set[str]] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=_now)

    def touch(self) -> None:
        self.last_updated = _now()

    def members(self) -> List[str]:
        return sorted(self.presence)


class RoomRegistry:
    """In-process record of which users are live in which meeting room.

    Presence is keyed by user id but counted per connection: a user with two
    open tabs stays in the room until both have left or disconnected. The
    registry is local to one process, so behind a multi-process deployment
    each process only knows about the sockets it holds itself.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, Room] = {}
        self._connection_rooms: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()

    async def join(
        self,
        meeting_id: str,
        user_id: str,
        connection_id: str,
    ) -> Tuple[bool, List[str]]:
        """Record the connection in the room.

        Returns whether the user was not present before, and the member snapshot.
        """
        async with self._lock:
            room = self._rooms.get(meeting_id)
            if room is None:
                room = Room(meeting_id=meeting_id)
                self._rooms[meeting_id] = room
            connections = room.presence.setdefault(user_id, set())
            first_presence = not connections
            connections.add(connection_id)
            self._connection_rooms.setdefault(connection_id, set()).add(meeting_id)
            room.touch()
            return first_presence, room.members()

    async def leave(self, meeting_id: str, user_id: str, connection_id: str) -> bool:
        """Drop the connection from the room; True when the user is no longer present."""
        async with self._lock:
            return self._discard(meeting_id, user_id, connection_id)

    async def remove_everywhere(
        self,
        user_id: str,
        connection_id: Optional[str] = None,
    ) -> List[str]:
        """Remove a connection (or, without one, every connection of the user) from all rooms.

        Returns the meeting ids the user has vacated, in sorted order.
        """
        async with self._lock:
            vacated: List[str] = []
            if connection_id is not None:
                meeting_ids = sorted(self._connection_rooms.get(connection_id, set()))
                for meeting_id in meeting_ids:
                    if self._discard(meeting_id, user_id, connection_id):
                        vacated.append(meeting_id)
                self._connection_rooms.pop(connection_id, None)
                return vacated

            for meeting_id in sorted(self._rooms):
                room = self._rooms[meeting_id]
                connections = room.presence.get(user_id)
                if connections is None:
                    continue
                for stale_connection in list(connections):
                    self._discard(meeting_id, user_id, stale_connection)
                vacated.append(meeting_id)
            return vacated

    async def members_of(self, meeting_id: str) -> List[str]:
        async with self._lock:
            room = self._rooms.get(meeting_id)
            return room.members() if room else []

    async def clear(self) -> None:
        async with self._lock:
            self._rooms.clear()
            self._connection_rooms.clear()

    def _discard(self, meeting_id: str, user_id: str, connection_id: str) -> bool:
        # Caller holds the lock.
        joined = self._connection_rooms.get(connection_id)
        if joined is not None:
            joined.discard(meeting_id)
            if not joined:
                self._connection_rooms.pop(connection_id, None)

        room = self._rooms.get(meeting_id)
        if room is None:
            return False
        connections = room.presence.get(user_id)
        if connections is None:
            return False
        connections.discard(connection_id)
        room.touch()
        if connections:
            return False
        room.presence.pop(user_id, None)
        if not room.presence:
            self._rooms.pop(meeting_id, None)
            logger.debug("Room %s is now empty", meeting_id)
        return True


room_registry = RoomRegistry()
