from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Set
from uuid import uuid4

from fastapi import WebSocket

logger = logging.getLogger(__name__)


@dataclass
class ConnectionInfo:
    """Metadata describing a single WebSocket connection."""

    id: str
    websocket: WebSocket
    user_id: Optional[str] = None
    session_id: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)

    async def send_json(self, message: Dict[str, Any]) -> None:
        """Proxy to the underlying WebSocket send_json method."""
        await self.websocket.send_json(message)


class WebSocketManager:
    def __init__(self):
        # Key: connection_id, Value: ConnectionInfo
        self.active_connections: Dict[str, ConnectionInfo] = {}
        # Key: meeting_id, Value: connection ids subscribed to the meeting's broadcasts
        self.groups: Dict[str, Set[str]] = {}

    async def connect(self, websocket: WebSocket) -> ConnectionInfo:
        """Accept a new WebSocket connection and register it."""
        await websocket.accept()
        connection = ConnectionInfo(id=str(uuid4()), websocket=websocket)
        self.active_connections[connection.id] = connection
        logger.debug("WebSocket connected: connection_id=%s", connection.id)
        return connection

    def authenticate(
        self,
        connection_id: str,
        *,
        user_id: str,
        session_id: Optional[str],
    ) -> None:
        """Attach verified identity to a connection."""
        connection = self.active_connections.get(connection_id)
        if connection:
            connection.user_id = user_id
            connection.session_id = session_id
            logger.debug(
                "Authenticated WebSocket: connection_id=%s user_id=%s",
                connection_id,
                user_id,
            )

    def get(self, connection_id: str) -> Optional[ConnectionInfo]:
        return self.active_connections.get(connection_id)

    def disconnect(self, connection_id: str) -> List[str]:
        """Remove a connection from every group; returns the groups it belonged to."""
        connection = self.active_connections.pop(connection_id, None)
        rooms: List[str] = []
        for meeting_id in list(self.groups.keys()):
            if connection_id in self.groups[meeting_id]:
                rooms.append(meeting_id)
                self._remove_from_group(meeting_id, connection_id)
        if connection:
            logger.debug("WebSocket disconnected: connection_id=%s", connection_id)
        return sorted(rooms)

    def join_group(self, meeting_id: str, connection_id: str) -> None:
        connection = self.active_connections.get(connection_id)
        if not connection:
            return
        self.groups.setdefault(meeting_id, set()).add(connection_id)

    def leave_group(self, meeting_id: str, connection_id: str) -> None:
        self._remove_from_group(meeting_id, connection_id)

    def group_members(self, meeting_id: str) -> List[ConnectionInfo]:
        """Return the connections currently subscribed to a meeting."""
        return [
            self.active_connections[connection_id]
            for connection_id in sorted(self.groups.get(meeting_id, set()))
            if connection_id in self.active_connections
        ]

    async def broadcast(
        self,
        meeting_id: str,
        message: Dict[str, Any],
        *,
        skip_connection: Optional[str] = None,
    ) -> None:
        """Broadcast a message to all connections subscribed to a meeting."""
        disconnected: list[str] = []

        # Iterate over a snapshot to avoid mutation-during-iteration when
        # handlers for other sockets join or leave while we are sending.
        for connection in self.group_members(meeting_id):
            if skip_connection and connection.id == skip_connection:
                continue

            try:
                await connection.send_json(message)
            except Exception:  # pragma: no cover - depends on network
                disconnected.append(connection.id)

        for connection_id in disconnected:
            self.leave_group(meeting_id, connection_id)

    async def send_personal_message(
        self,
        connection_id: str,
        message: Dict[str, Any],
    ) -> bool:
        """Send a message to a specific connection; False when it could not be delivered."""
        connection = self.active_connections.get(connection_id)
        if not connection:
            return False
        try:
            await connection.send_json(message)
        except Exception:  # pragma: no cover - depends on network
            logger.debug(
                "Dropping reply for unreachable connection_id=%s", connection_id
            )
            return False
        return True

    def _remove_from_group(self, meeting_id: str, connection_id: str) -> None:
        members = self.groups.get(meeting_id)
        if not members:
            return
        members.discard(connection_id)
        if not members:
            self.groups.pop(meeting_id, None)


# Create a singleton instance
websocket_manager = WebSocketManager()
