"""Presence registry for real-time collaboration.

In-process record of who is connected and who is viewing which workspace.
The registry is pure in-memory state: it makes no persistence calls and
sends nothing itself. Callers (see ``handlers``) turn the values it returns
into ``user-joined`` / ``user-left`` broadcasts.

One registry instance is constructed per process at application startup and
injected into the connection-handling layer. State is not shared across
processes; multi-process fan-out is out of scope.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from ..schemas.presence import PresenceSnapshot

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PresenceEntry:
    """One live connection of a user."""

    user_id: int
    username: str
    connection: Any
    email: Optional[str] = None
    joined_workspaces: set[int] = field(default_factory=set)
    connected_at: datetime = field(default_factory=_utcnow)


@dataclass
class WorkspaceRoom:
    """Users present in one workspace.

    Rooms are created lazily on first join and never destroyed; an empty
    member map is equivalent to an absent room.
    """

    workspace_id: int
    members: dict[int, PresenceSnapshot] = field(default_factory=dict)


class PresenceRegistry:
    """
    In-memory presence registry.

    Keeps one PresenceEntry per user. A second connection from the same user
    replaces the first entry instead of being rejected; the replaced entry is
    handed back to the caller so its room memberships can be announced as
    left.

    All mutations happen under a single asyncio lock so the registry stays
    consistent even if a caller awaits between operations.
    """

    def __init__(self) -> None:
        """Initialize the registry."""
        self._entries: dict[int, PresenceEntry] = {}
        self._rooms: dict[int, WorkspaceRoom] = {}
        # Created lazily to avoid binding to an event loop at import time
        self._lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        """Get or create the asyncio lock (lazy initialization)."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def register_connection(
        self,
        user_id: int,
        username: str,
        handle: Any,
        email: Optional[str] = None,
    ) -> tuple[PresenceEntry, Optional[PresenceEntry]]:
        """
        Register a freshly authenticated connection.

        Args:
            user_id: The user's ID
            username: The user's display name
            handle: The connection handle used for delivery
            email: Optional user email

        Returns:
            Tuple of (new entry, replaced entry or None). The replaced entry
            has already been removed from every room it had joined; its
            ``joined_workspaces`` lists those rooms.
        """
        async with self._get_lock():
            replaced = self._entries.get(user_id)
            if replaced is not None:
                for workspace_id in replaced.joined_workspaces:
                    self._remove_member(workspace_id, user_id)
                logger.info(
                    f"Replacing presence entry for user {user_id} "
                    f"(was in workspaces {sorted(replaced.joined_workspaces)})"
                )

            entry = PresenceEntry(
                user_id=user_id,
                username=username,
                connection=handle,
                email=email,
            )
            self._entries[user_id] = entry

        return entry, replaced

    async def record_join(self, user_id: int, workspace_id: int) -> bool:
        """
        Record that a user is viewing a workspace.

        Joining a workspace already joined only refreshes ``last_seen``.

        Args:
            user_id: The user's ID
            workspace_id: The workspace joined

        Returns:
            True if the user was not present in the workspace before
        """
        async with self._get_lock():
            entry = self._entries.get(user_id)
            if entry is None:
                logger.warning(f"record_join for unregistered user {user_id}")
                return False

            room = self._rooms.setdefault(workspace_id, WorkspaceRoom(workspace_id))
            newly_joined = user_id not in room.members
            room.members[user_id] = PresenceSnapshot(
                user_id=user_id,
                username=entry.username,
                last_seen=_utcnow(),
            )
            entry.joined_workspaces.add(workspace_id)

        return newly_joined

    async def record_leave(self, user_id: int, workspace_id: int) -> bool:
        """
        Record that a user stopped viewing a workspace.

        Args:
            user_id: The user's ID
            workspace_id: The workspace left

        Returns:
            True if the user was present in the workspace
        """
        async with self._get_lock():
            entry = self._entries.get(user_id)
            if entry is not None:
                entry.joined_workspaces.discard(workspace_id)
            return self._remove_member(workspace_id, user_id)

    async def drop_connection(
        self,
        user_id: int,
        handle: Any = None,
    ) -> list[int]:
        """
        Remove a user's entry and leave every workspace it had joined.

        Args:
            user_id: The user's ID
            handle: When given, only drop the entry if it still belongs to
                this handle (a replaced connection closing later must not
                drop its successor)

        Returns:
            Sorted workspace IDs the user was removed from
        """
        async with self._get_lock():
            entry = self._entries.get(user_id)
            if entry is None:
                return []
            if handle is not None and entry.connection is not handle:
                logger.debug(f"Ignoring drop of superseded connection for user {user_id}")
                return []

            del self._entries[user_id]
            left = [
                workspace_id
                for workspace_id in sorted(entry.joined_workspaces)
                if self._remove_member(workspace_id, user_id)
            ]

        return left

    async def touch(self, user_id: int, workspace_id: int) -> None:
        """Refresh ``last_seen`` for a user already present in a workspace."""
        async with self._get_lock():
            room = self._rooms.get(workspace_id)
            if room is None or user_id not in room.members:
                return
            room.members[user_id] = room.members[user_id].model_copy(
                update={"last_seen": _utcnow()}
            )

    async def snapshot(self, workspace_id: int) -> list[PresenceSnapshot]:
        """
        Get all users present in a workspace.

        Args:
            workspace_id: The workspace to query

        Returns:
            Presence snapshots ordered by user ID
        """
        async with self._get_lock():
            room = self._rooms.get(workspace_id)
            if room is None:
                return []
            return [room.members[uid] for uid in sorted(room.members)]

    def get_entry(self, user_id: int) -> Optional[PresenceEntry]:
        """Get the current entry for a user, if connected."""
        return self._entries.get(user_id)

    def is_present(self, user_id: int, workspace_id: int) -> bool:
        """Check whether a user is present in a workspace."""
        room = self._rooms.get(workspace_id)
        return room is not None and user_id in room.members

    def get_stats(self) -> dict[str, Any]:
        """
        Get registry statistics.

        Returns:
            Dictionary with stats
        """
        return {
            "backend": "memory",
            "total_users": len(self._entries),
            "total_rooms": len(self._rooms),
            "total_presence_entries": sum(
                len(room.members) for room in self._rooms.values()
            ),
        }

    def _remove_member(self, workspace_id: int, user_id: int) -> bool:
        room = self._rooms.get(workspace_id)
        if room is None or user_id not in room.members:
            return False
        del room.members[user_id]
        return True


__all__ = [
    "PresenceEntry",
    "PresenceRegistry",
    "WorkspaceRoom",
]
