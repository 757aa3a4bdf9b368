"""Tests for the reconnecting real-time channel."""

import asyncio
import json
from contextlib import asynccontextmanager

import pytest
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosedError, InvalidStatus
from websockets.frames import Close
from websockets.http11 import Response

from boardsync.client.channel import RealtimeChannel
from boardsync.exceptions import AuthFailure, TransientNetworkFailure


class FakeConnection:
    """Server side of one connection: replays frames, then ends or raises."""

    def __init__(self, frames=(), error=None, hold=False):
        self.frames = list(frames)
        self.error = error
        self.hold = hold
        self.sent: list[dict] = []
        self.closed = asyncio.Event()

    async def send(self, raw):
        self.sent.append(json.loads(raw))

    async def close(self):
        self.closed.set()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame if isinstance(frame, str) else json.dumps(frame)
        if self.error is not None:
            raise self.error
        if self.hold:
            await self.closed.wait()


class FakeConnector:
    """Hands out one outcome (connection or exception) per connect call."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.urls: list[str] = []

    def __call__(self, url):
        self.urls.append(url)
        return self._session(self.outcomes.pop(0))

    @asynccontextmanager
    async def _session(self, outcome):
        if isinstance(outcome, BaseException):
            raise outcome
        yield outcome


def rejected(status_code: int) -> InvalidStatus:
    return InvalidStatus(Response(status_code, "Rejected", Headers(), b""))


def channel_for(connector, store=None, **kwargs) -> RealtimeChannel:
    options = {"max_attempts": 1, "interval": 0, "max_delay": 0}
    options.update(kwargs)
    return RealtimeChannel("ws://server/ws", "tok", store=store, connector=connector, **options)


class TestBackoff:
    """Tests for the reconnect schedule."""

    def test_exponential_and_capped(self):
        channel = RealtimeChannel("ws://server/ws", "tok", interval=1, max_delay=5, max_attempts=5)

        assert [channel.backoff_delay(n) for n in range(1, 6)] == [1, 2, 4, 5, 5]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        connector = FakeConnector(*[OSError("refused") for _ in range(4)])

        with pytest.raises(TransientNetworkFailure):
            await channel_for(connector, max_attempts=3).run()

        assert len(connector.urls) == 4

    @pytest.mark.asyncio
    async def test_token_in_query_string(self):
        connector = FakeConnector(OSError("refused"))
        channel = RealtimeChannel(
            "ws://server/ws?v=1", "tok", connector=connector, max_attempts=0, interval=0
        )

        with pytest.raises(TransientNetworkFailure):
            await channel.run()

        assert connector.urls == ["ws://server/ws?v=1&token=tok"]


class TestAuthFailures:
    """Credential rejections end the channel without retrying."""

    @pytest.mark.asyncio
    async def test_auth_close_code(self):
        connection = FakeConnection(error=ConnectionClosedError(Close(4001, "Token expired"), None))
        connector = FakeConnector(connection, OSError("never reached"))

        with pytest.raises(AuthFailure):
            await channel_for(connector, max_attempts=5).run()

        assert len(connector.urls) == 1

    @pytest.mark.asyncio
    async def test_handshake_rejected(self):
        connector = FakeConnector(rejected(401), OSError("never reached"))

        with pytest.raises(AuthFailure) as exc_info:
            await channel_for(connector, max_attempts=5).run()

        assert exc_info.value.status_code == 401
        assert len(connector.urls) == 1

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self):
        connector = FakeConnector(rejected(503), OSError("refused"))

        with pytest.raises(TransientNetworkFailure):
            await channel_for(connector).run()

        assert len(connector.urls) == 2

    @pytest.mark.asyncio
    async def test_other_close_codes_are_retried(self):
        dropped = FakeConnection(error=ConnectionClosedError(Close(1011, "internal error"), None))
        connector = FakeConnector(dropped, OSError("refused"))

        with pytest.raises(TransientNetworkFailure):
            await channel_for(connector).run()

        assert len(connector.urls) == 2


class TestSession:
    """Tests for joining, presence and board event delivery."""

    @pytest.mark.asyncio
    async def test_joins_workspace_and_tracks_presence(self, store):
        connection = FakeConnection(
            frames=[
                {"type": "connected", "data": {"user_id": 1}},
                {
                    "type": "presence-update",
                    "data": {
                        "workspace_id": 42,
                        "users": [{"user_id": 1, "username": "alice"}, {"user_id": 2, "username": "bob"}],
                    },
                },
                {"type": "user-joined", "data": {"user_id": 3, "username": "carol"}},
                {"type": "user-joined", "data": {"user_id": 3, "username": "carol"}},
                {"type": "user-left", "data": {"user_id": 2, "username": "bob"}},
            ]
        )
        channel = channel_for(FakeConnector(connection, OSError("refused")), store=store)

        with pytest.raises(TransientNetworkFailure):
            await channel.run()

        assert connection.sent[0] == {"type": "join-workspace", "data": {"workspace_id": 42}}
        assert [user["user_id"] for user in channel.online_users] == [1, 3]

    @pytest.mark.asyncio
    async def test_reconnect_rejoins_and_reloads(self, store, persistence):
        first = FakeConnection()
        second = FakeConnection(
            frames=[
                {"type": "todo:updated", "data": {"todo_id": 7, "changes": {"title": "Remote"}, "revision": 1}},
            ]
        )
        channel = channel_for(FakeConnector(first, second, OSError("refused")), store=store)

        with pytest.raises(TransientNetworkFailure):
            await channel.run()

        assert first.sent == [{"type": "join-workspace", "data": {"workspace_id": 42}}]
        assert second.sent == [{"type": "join-workspace", "data": {"workspace_id": 42}}]
        assert persistence.calls == [("fetch", 42)]
        assert store.snapshot.find_todo(7).title == "Remote"

    @pytest.mark.asyncio
    async def test_close_stops_run(self):
        connection = FakeConnection(hold=True)
        channel = channel_for(FakeConnector(connection))
        task = asyncio.create_task(channel.run())
        await asyncio.wait_for(channel.connected.wait(), timeout=1)

        assert await channel.join_workspace(42)
        assert await channel.send_activity("typing")
        assert await channel.leave_workspace()
        await channel.close()
        await asyncio.wait_for(task, timeout=1)

        assert [message["type"] for message in connection.sent] == [
            "join-workspace",
            "user-activity",
            "leave-workspace",
        ]
        assert connection.sent[1]["data"] == {"workspace_id": 42, "activity": "typing"}
        assert not channel.connected.is_set()


class TestHandleMessage:
    """Tests for dispatching individual server frames."""

    @pytest.mark.asyncio
    async def test_presence_for_other_workspace_ignored(self, store):
        channel = RealtimeChannel("ws://server/ws", "tok", store=store)

        await channel.handle_message(
            {"type": "presence-update", "data": {"workspace_id": 99, "users": [{"user_id": 5}]}}
        )

        assert channel.online_users == []

    @pytest.mark.asyncio
    async def test_board_event_reaches_store(self, store):
        channel = RealtimeChannel("ws://server/ws", "tok", store=store)

        await channel.handle_message({"type": "todo:deleted", "data": {"todo_id": 7}})

        assert store.snapshot.find_todo(7) is None

    @pytest.mark.asyncio
    async def test_unreadable_frames_do_not_raise(self, store, board):
        channel = RealtimeChannel("ws://server/ws", "tok", store=store)

        await channel.handle_message(
            {"type": "list:created", "data": {"list": {"id": 9, "name": "New", "todos": "bad"}}}
        )
        await channel.handle_message({"type": "presence-update", "data": ["not", "an", "object"]})

        assert store.snapshot is board
        assert channel.online_users == []

    @pytest.mark.asyncio
    async def test_activity_callback_and_errors(self):
        activities = []
        channel = RealtimeChannel("ws://server/ws", "tok", on_activity=activities.append)

        await channel.handle_message(
            {"type": "user-activity", "data": {"user_id": 2, "activity": "typing"}}
        )
        await channel.handle_message(
            {"type": "error", "data": {"error": "RATE_LIMIT", "message": "Slow down"}}
        )

        assert activities == [{"user_id": 2, "activity": "typing"}]
        assert channel.last_error["error"] == "RATE_LIMIT"

    @pytest.mark.asyncio
    async def test_send_without_connection(self):
        channel = RealtimeChannel("ws://server/ws", "tok")

        assert await channel.join_workspace(42) is False
        assert channel.workspace_id == 42
