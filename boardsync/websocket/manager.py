"""WebSocket connection manager with per-workspace rooms.

This module provides the room/broadcast router:
- One workspace room per connection at a time (joining another room leaves
  the previous one first)
- Typed event fan-out to every connection in a room, optionally excluding
  the originator
- Fire-and-forget unicast to a user's current connection
- Lazy pruning of connections whose socket has gone away

Delivery is in-process only. Within one room, events reach each connection
in the order ``broadcast`` was called.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from fastapi import WebSocket

from ..schemas.presence import UserIdentity

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    """WebSocket message types."""

    # Connection events
    CONNECTED = "connected"
    ERROR = "error"

    # Client -> server control frames
    JOIN_WORKSPACE = "join-workspace"
    LEAVE_WORKSPACE = "leave-workspace"
    USER_ACTIVITY = "user-activity"

    # Presence events
    USER_JOINED = "user-joined"
    USER_LEFT = "user-left"
    PRESENCE_UPDATE = "presence-update"

    # Todo events
    TODO_CREATED = "todo:created"
    TODO_UPDATED = "todo:updated"
    TODO_DELETED = "todo:deleted"
    TODO_MOVED = "todo:moved"

    # List events
    LIST_CREATED = "list:created"
    LIST_UPDATED = "list:updated"
    LIST_DELETED = "list:deleted"
    LIST_POSITIONS_UPDATED = "list:positions-updated"

    # Label events
    LABEL_CREATED = "label:created"
    LABEL_UPDATED = "label:updated"
    LABEL_DELETED = "label:deleted"
    TODO_LABEL_ADDED = "todo:label-added"
    TODO_LABEL_REMOVED = "todo:label-removed"

    # Assignment events
    TODO_MEMBER_ASSIGNED = "todo:member-assigned"
    TODO_MEMBER_UNASSIGNED = "todo:member-unassigned"

    # Checklist events
    CHECKLIST_ITEM_CREATED = "todo:checklist-item-created"
    CHECKLIST_ITEM_UPDATED = "todo:checklist-item-updated"
    CHECKLIST_ITEM_DELETED = "todo:checklist-item-deleted"

    # Ping/pong for keepalive
    PING = "ping"
    PONG = "pong"


EventName = Union[MessageType, str]


def _event_name(event_type: EventName) -> str:
    return event_type.value if isinstance(event_type, MessageType) else str(event_type)


@dataclass
class WebSocketConnection:
    """Represents a WebSocket connection with user context."""

    websocket: WebSocket
    user_id: int
    username: str
    email: Optional[str] = None
    token: Optional[str] = None
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    workspace_id: Optional[int] = None
    stale: bool = False

    @property
    def connection_id(self) -> str:
        return str(id(self.websocket))

    def identity(self) -> UserIdentity:
        return UserIdentity(user_id=self.user_id, username=self.username, email=self.email)

    def __hash__(self) -> int:
        """Hash by websocket id for set operations."""
        return id(self.websocket)

    def __eq__(self, other: object) -> bool:
        """Equality check by websocket id."""
        if not isinstance(other, WebSocketConnection):
            return False
        return id(self.websocket) == id(other.websocket)


class ConnectionManager:
    """
    Room/broadcast router.

    Features:
    - Room membership keyed by workspace ID
    - Single room per connection
    - User tracking for unicast (latest connection per user)
    - Per-workspace revision counter stamped on board events
    - Stale handles pruned on next access to their room
    """

    def __init__(self) -> None:
        """Initialize the connection manager."""
        # Map of workspace_id -> set of connections
        self._rooms: dict[int, set[WebSocketConnection]] = {}
        # Map of websocket -> connection object
        self._connections: dict[WebSocket, WebSocketConnection] = {}
        # Map of user_id -> current connection (reconnect replaces it)
        self._user_connections: dict[int, WebSocketConnection] = {}
        # Map of workspace_id -> last revision issued
        self._revisions: dict[int, int] = {}
        # Serializes membership changes
        self._lock = asyncio.Lock()
        # Serializes fan-out per room so delivery order matches call order
        self._room_send_locks: dict[int, asyncio.Lock] = {}

    @property
    def total_connections(self) -> int:
        """Get total number of active connections."""
        return len(self._connections)

    @property
    def total_rooms(self) -> int:
        """Get number of rooms with at least one connection."""
        return sum(1 for members in self._rooms.values() if members)

    def get_room_count(self, workspace_id: int) -> int:
        """Get number of live connections in a room."""
        return sum(1 for conn in self._rooms.get(workspace_id, set()) if not conn.stale)

    def get_room_users(self, workspace_id: int) -> list[int]:
        """
        Get list of user IDs in a room.

        Args:
            workspace_id: The workspace room

        Returns:
            list[int]: Sorted unique user IDs with a live connection in the room
        """
        connections = self._rooms.get(workspace_id, set())
        return sorted({conn.user_id for conn in connections if not conn.stale})

    def get_connection(self, websocket: WebSocket) -> Optional[WebSocketConnection]:
        """Get the connection wrapper for a WebSocket."""
        return self._connections.get(websocket)

    def get_user_connection(self, user_id: int) -> Optional[WebSocketConnection]:
        """Get a user's current connection, if any."""
        return self._user_connections.get(user_id)

    def next_revision(self, workspace_id: int) -> int:
        """Issue the next revision number for a workspace."""
        revision = self._revisions.get(workspace_id, 0) + 1
        self._revisions[workspace_id] = revision
        return revision

    async def connect(
        self,
        websocket: WebSocket,
        identity: UserIdentity,
        token: Optional[str] = None,
    ) -> WebSocketConnection:
        """
        Accept a WebSocket connection and register it.

        A later connection of the same user becomes the unicast target; the
        earlier one stays open until its socket closes.

        Args:
            websocket: The WebSocket instance
            identity: The verified identity of the connecting user
            token: The bearer credential, kept for re-validation and access checks

        Returns:
            WebSocketConnection: The connection wrapper object
        """
        await websocket.accept()

        connection = WebSocketConnection(
            websocket=websocket,
            user_id=identity.user_id,
            username=identity.username,
            email=identity.email,
            token=token,
        )

        async with self._lock:
            self._connections[websocket] = connection
            self._user_connections[identity.user_id] = connection

        logger.info(
            f"WebSocket connected: user={identity.user_id}, "
            f"total_connections={self.total_connections}"
        )

        await self.send_personal(
            connection,
            {
                "type": MessageType.CONNECTED.value,
                "data": {
                    "user_id": identity.user_id,
                    "username": identity.username,
                    "connected_at": connection.connected_at.isoformat(),
                },
            },
        )

        return connection

    async def disconnect(self, websocket: WebSocket) -> Optional[WebSocketConnection]:
        """
        Disconnect a WebSocket and clean up all associated resources.

        Args:
            websocket: The WebSocket instance to disconnect

        Returns:
            The removed connection, or None if it was not registered
        """
        async with self._lock:
            connection = self._connections.pop(websocket, None)

            if connection is None:
                return None

            if self._user_connections.get(connection.user_id) is connection:
                del self._user_connections[connection.user_id]

            if connection.workspace_id is not None:
                self._rooms.get(connection.workspace_id, set()).discard(connection)

        logger.info(
            f"WebSocket disconnected: user={connection.user_id}, "
            f"total_connections={self.total_connections}"
        )
        return connection

    async def join(
        self,
        connection: WebSocketConnection,
        workspace_id: int,
        notify_others: bool = True,
    ) -> Optional[int]:
        """
        Add a connection to a workspace room, leaving its previous room first.

        Joining the room the connection is already in changes nothing.

        Args:
            connection: The connection to add
            workspace_id: The workspace room to join
            notify_others: Whether to send user-left / user-joined to the rooms

        Returns:
            The workspace ID that was implicitly left, or None
        """
        if connection.workspace_id == workspace_id:
            return None

        previous = connection.workspace_id
        if previous is not None:
            await self.leave(connection, previous, notify_others=notify_others)

        async with self._lock:
            self._rooms.setdefault(workspace_id, set()).add(connection)
            connection.workspace_id = workspace_id

        logger.info(
            f"User {connection.user_id} joined workspace {workspace_id} "
            f"(room_size={self.get_room_count(workspace_id)})"
        )

        if notify_others:
            await self.broadcast(
                workspace_id,
                MessageType.USER_JOINED,
                {
                    "user_id": connection.user_id,
                    "username": connection.username,
                    "email": connection.email,
                },
                exclude=connection,
            )

        return previous

    async def leave(
        self,
        connection: WebSocketConnection,
        workspace_id: int,
        notify_others: bool = True,
    ) -> bool:
        """
        Remove a connection from a workspace room.

        Args:
            connection: The connection to remove
            workspace_id: The workspace room
            notify_others: Whether to send user-left to the room

        Returns:
            True if the connection was in the room
        """
        async with self._lock:
            members = self._rooms.get(workspace_id)
            was_member = members is not None and connection in members
            if was_member:
                members.discard(connection)
            if connection.workspace_id == workspace_id:
                connection.workspace_id = None

        if not was_member:
            return False

        logger.info(
            f"User {connection.user_id} left workspace {workspace_id} "
            f"(room_size={self.get_room_count(workspace_id)})"
        )

        if notify_others:
            await self.broadcast(
                workspace_id,
                MessageType.USER_LEFT,
                {
                    "user_id": connection.user_id,
                    "username": connection.username,
                },
                exclude=connection,
            )

        return True

    async def send_personal(
        self,
        connection: WebSocketConnection,
        message: dict[str, Any],
    ) -> bool:
        """
        Send a message to a specific connection.

        A failed send marks the connection stale; it is pruned from its room
        on the next access and never raises to the caller.

        Args:
            connection: The target connection
            message: The message to send

        Returns:
            bool: True if sent successfully, False otherwise
        """
        if connection.stale:
            return False
        try:
            await connection.websocket.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Send to user {connection.user_id} failed, marking stale: {e}")
            connection.stale = True
            return False

    async def send_event(
        self,
        connection: WebSocketConnection,
        event_type: EventName,
        payload: Any,
    ) -> bool:
        """Send a typed event to one connection."""
        return await self.send_personal(
            connection,
            {"type": _event_name(event_type), "data": payload},
        )

    async def broadcast(
        self,
        workspace_id: int,
        event_type: EventName,
        payload: Any,
        exclude: Optional[WebSocketConnection] = None,
    ) -> int:
        """
        Broadcast an event to every connection in a workspace room.

        Args:
            workspace_id: The room to broadcast to
            event_type: The event name
            payload: The event payload (JSON-serializable)
            exclude: Optional connection to exclude, typically the originator

        Returns:
            int: Number of successful sends
        """
        message = {"type": _event_name(event_type), "data": payload}

        lock = self._room_send_locks.setdefault(workspace_id, asyncio.Lock())
        async with lock:
            await self._prune_stale(workspace_id)
            connections = self._rooms.get(workspace_id, set()).copy()

            if exclude is not None:
                connections.discard(exclude)

            if not connections:
                return 0

            tasks = [self.send_personal(conn, message) for conn in connections]
            results = await asyncio.gather(*tasks, return_exceptions=True)

        success_count = sum(1 for r in results if r is True)
        logger.debug(
            f"Broadcast {message['type']} to workspace {workspace_id}: "
            f"{success_count}/{len(connections)} successful"
        )
        return success_count

    async def unicast(
        self,
        user_id: int,
        event_type: EventName,
        payload: Any,
    ) -> bool:
        """
        Deliver an event to a user's current connection.

        Offline users are skipped silently; nothing is queued.

        Args:
            user_id: The target user
            event_type: The event name
            payload: The event payload

        Returns:
            bool: True if delivered
        """
        connection = self._user_connections.get(user_id)
        if connection is None or connection.stale:
            return False
        return await self.send_event(connection, event_type, payload)

    async def handle_message(
        self,
        connection: WebSocketConnection,
        data: dict[str, Any],
    ) -> bool:
        """
        Handle transport-level messages.

        Args:
            connection: The connection that sent the message
            data: The message data

        Returns:
            bool: True if the message was consumed here
        """
        message_type = data.get("type")

        if message_type == MessageType.PING.value:
            await self.send_event(connection, MessageType.PONG, {})
            return True

        if message_type == MessageType.PONG.value:
            return True

        return False

    async def _prune_stale(self, workspace_id: int) -> None:
        members = self._rooms.get(workspace_id)
        if not members:
            return
        stale = [conn for conn in members if conn.stale]
        if not stale:
            return
        async with self._lock:
            for conn in stale:
                members.discard(conn)
                if conn.workspace_id == workspace_id:
                    conn.workspace_id = None
        logger.info(f"Pruned {len(stale)} stale connection(s) from workspace {workspace_id}")


__all__ = [
    "ConnectionManager",
    "MessageType",
    "WebSocketConnection",
]
