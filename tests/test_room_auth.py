"""Tests for workspace membership checks."""

import httpx
import pytest

from boardsync.exceptions import PermissionDenied
from boardsync.websocket.room_auth import HttpMembershipLookup, WorkspaceAccessChecker


class CountingLookup:
    def __init__(self, result=True, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def __call__(self, user_id, workspace_id, token):
        self.calls.append((user_id, workspace_id, token))
        if self.error is not None:
            raise self.error
        return self.result


class TestWorkspaceAccessChecker:
    """Tests for WorkspaceAccessChecker."""

    @pytest.mark.asyncio
    async def test_disabled_checker_allows(self):
        checker = WorkspaceAccessChecker()

        assert not checker.enabled
        assert await checker.check_access(1, 42) is True

    @pytest.mark.asyncio
    async def test_results_are_cached(self):
        lookup = CountingLookup(result=True)
        checker = WorkspaceAccessChecker(lookup=lookup)

        assert await checker.check_access(1, 42, "tok")
        assert await checker.check_access(1, 42, "tok")

        assert lookup.calls == [(1, 42, "tok")]

    @pytest.mark.asyncio
    async def test_expired_entries_are_refetched(self):
        lookup = CountingLookup(result=False)
        checker = WorkspaceAccessChecker(lookup=lookup, ttl=-1)

        await checker.check_access(1, 42)
        await checker.check_access(1, 42)

        assert len(lookup.calls) == 2

    @pytest.mark.asyncio
    async def test_invalidation(self):
        lookup = CountingLookup(result=True)
        checker = WorkspaceAccessChecker(lookup=lookup)
        await checker.check_access(1, 42)
        await checker.check_access(2, 43)

        checker.invalidate_user(1)
        checker.invalidate_workspace(43)
        await checker.check_access(1, 42)
        await checker.check_access(2, 43)

        assert len(lookup.calls) == 4

    @pytest.mark.asyncio
    async def test_lookup_error_denies_without_caching(self):
        lookup = CountingLookup(error=httpx.ConnectError("backend down"))
        checker = WorkspaceAccessChecker(lookup=lookup)

        assert await checker.check_access(1, 42) is False

        lookup.error = None
        assert await checker.check_access(1, 42) is True

    @pytest.mark.asyncio
    async def test_cache_eviction_when_full(self):
        checker = WorkspaceAccessChecker(lookup=CountingLookup(result=True), max_size=4)

        for workspace_id in range(10):
            await checker.check_access(1, workspace_id)

        assert len(checker._cache) <= 4

    @pytest.mark.asyncio
    async def test_require_access_raises(self):
        checker = WorkspaceAccessChecker(lookup=CountingLookup(result=False))

        with pytest.raises(PermissionDenied) as exc_info:
            await checker.require_access(1, 42)

        assert exc_info.value.status_code == 403


class TestHttpMembershipLookup:
    """Tests for HttpMembershipLookup against a mock transport."""

    @staticmethod
    def lookup_returning(status_code, seen=None):
        def handler(request: httpx.Request) -> httpx.Response:
            if seen is not None:
                seen.append(request)
            return httpx.Response(status_code, json={"workspace": {"id": 42}})

        return HttpMembershipLookup("http://backend", transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_success_grants_and_forwards_token(self):
        seen = []
        lookup = self.lookup_returning(200, seen)

        assert await lookup(1, 42, "tok") is True

        assert seen[0].url.path == "/api/workspaces/42"
        assert seen[0].headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [401, 403, 404])
    async def test_refusals_deny(self, status_code):
        assert await self.lookup_returning(status_code)(1, 42, "tok") is False

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        with pytest.raises(httpx.HTTPStatusError):
            await self.lookup_returning(500)(1, 42, "tok")

    @pytest.mark.asyncio
    async def test_server_error_denied_by_checker(self):
        checker = WorkspaceAccessChecker(lookup=self.lookup_returning(502))

        assert await checker.check_access(1, 42, "tok") is False
