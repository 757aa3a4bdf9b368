"""Workspace authorization for WebSocket joins and publish calls.

Validates that users have access to workspaces they attempt to join.

Features:
- Membership is decided by the persistence service (the REST backend owns it)
- TTL-based caching to keep reconnection storms off the backend
- Explicit invalidation on membership changes
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

import httpx

from ..exceptions import PermissionDenied

logger = logging.getLogger(__name__)

# (user_id, workspace_id, token) -> granted
MembershipLookup = Callable[[int, int, Optional[str]], Awaitable[bool]]


class HttpMembershipLookup:
    """
    Ask the REST backend whether a user may see a workspace.

    The user's own bearer token is forwarded, so the backend applies its own
    membership rules: a 2xx answer to ``GET /api/workspaces/{id}`` grants
    access, 401/403/404 deny it.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def __call__(self, user_id: int, workspace_id: int, token: Optional[str]) -> bool:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            response = await client.get(f"/api/workspaces/{workspace_id}", headers=headers)

        if response.is_success:
            return True
        if response.status_code in (401, 403, 404):
            return False
        # Anything else is a backend fault, not an answer
        response.raise_for_status()
        return False


class WorkspaceAccessChecker:
    """
    Cached workspace membership checks.

    When no lookup is configured every authenticated user is allowed in,
    which is how the server runs without a persistence backend.
    """

    def __init__(
        self,
        lookup: Optional[MembershipLookup] = None,
        ttl: float = 300.0,
        max_size: int = 50000,
    ) -> None:
        self._lookup = lookup
        self._ttl = ttl
        self._max_size = max_size
        # (user_id, workspace_id) -> (result, expires_at)
        self._cache: dict[tuple[int, int], tuple[bool, float]] = {}
        self._lock: Optional[asyncio.Lock] = None

    @property
    def enabled(self) -> bool:
        return self._lookup is not None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def _get_cached(self, user_id: int, workspace_id: int) -> Optional[bool]:
        """Get cached result if valid, None if not cached or expired."""
        key = (user_id, workspace_id)
        cached = self._cache.get(key)
        if cached is None:
            return None
        result, expires_at = cached
        if time.monotonic() > expires_at:
            self._cache.pop(key, None)
            return None
        return result

    async def _set_cached(self, user_id: int, workspace_id: int, result: bool) -> None:
        """Cache a result with TTL."""
        # Simple eviction: drop the older half when full
        if len(self._cache) >= self._max_size:
            async with self._get_lock():
                ordered = sorted(self._cache.items(), key=lambda item: item[1][1])
                for key, _ in ordered[: len(ordered) // 2]:
                    self._cache.pop(key, None)

        self._cache[(user_id, workspace_id)] = (result, time.monotonic() + self._ttl)

    def invalidate_user(self, user_id: int) -> None:
        """Invalidate all cached results for a user (call on membership changes)."""
        for key in [k for k in self._cache if k[0] == user_id]:
            self._cache.pop(key, None)

    def invalidate_workspace(self, workspace_id: int) -> None:
        """Invalidate all cached results for a workspace."""
        for key in [k for k in self._cache if k[1] == workspace_id]:
            self._cache.pop(key, None)

    async def check_access(
        self,
        user_id: int,
        workspace_id: int,
        token: Optional[str] = None,
    ) -> bool:
        """
        Check if a user has access to a workspace.

        Lookup errors deny access and are not cached.

        Args:
            user_id: The user's ID
            workspace_id: The workspace to check
            token: The user's bearer token, forwarded to the lookup

        Returns:
            bool: True if the user has access, False otherwise
        """
        if self._lookup is None:
            return True

        cached = self._get_cached(user_id, workspace_id)
        if cached is not None:
            return cached

        try:
            result = await self._lookup(user_id, workspace_id, token)
        except Exception as e:
            logger.error(f"[Workspace Auth] ERROR checking access to {workspace_id}: {e}")
            return False

        await self._set_cached(user_id, workspace_id, result)
        if not result:
            logger.info(f"[Workspace Auth] DENIED user={user_id} workspace={workspace_id}")
        return result

    async def require_access(
        self,
        user_id: int,
        workspace_id: int,
        token: Optional[str] = None,
    ) -> None:
        """
        Raise PermissionDenied unless the user has access to the workspace.

        Args:
            user_id: The user's ID
            workspace_id: The workspace to check
            token: The user's bearer token

        Raises:
            PermissionDenied: If access is not granted
        """
        if not await self.check_access(user_id, workspace_id, token):
            raise PermissionDenied(
                f"Access denied to workspace {workspace_id}",
                status_code=403,
            )


__all__ = [
    "HttpMembershipLookup",
    "MembershipLookup",
    "WorkspaceAccessChecker",
]
