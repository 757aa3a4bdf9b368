"""Client side of the real-time channel.

Connects to ``/ws`` with the bearer token in the query string, keeps the
online-users list for the current workspace, and hands board events to a
``BoardStore``. Unexpected disconnects are retried with exponential backoff;
after every reconnect the workspace is joined again and the board reloaded.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Optional
from urllib.parse import urlencode

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidStatus

from ..config import settings
from ..exceptions import AuthFailure, TransientNetworkFailure
from ..schemas.events import is_board_event
from .store import BoardStore

logger = logging.getLogger(__name__)

# Close code the server uses for rejected or expired credentials
AUTH_CLOSE_CODE = 4001

ActivityCallback = Callable[[dict[str, Any]], None]


class RealtimeChannel:
    """
    Reconnecting real-time channel for one user.

    Args:
        url: WebSocket URL of the server, e.g. ``ws://localhost:8000/ws``
        token: Bearer credential
        store: Optional store receiving board events
        connector: Callable returning an async context manager that yields a
            connection (defaults to ``websockets.asyncio.client.connect``)
        max_attempts: Reconnect attempts per outage
        interval: Base backoff delay in seconds
        max_delay: Upper bound of the backoff delay
        on_activity: Optional callback for ``user-activity`` events
    """

    def __init__(
        self,
        url: str,
        token: str,
        store: Optional[BoardStore] = None,
        connector: Optional[Callable[[str], Any]] = None,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
        max_delay: Optional[float] = None,
        on_activity: Optional[ActivityCallback] = None,
    ) -> None:
        self.url = url
        self.token = token
        self.store = store
        self._connector = connector or connect
        self.max_attempts = (
            max_attempts if max_attempts is not None else settings.client_reconnect_attempts
        )
        self.interval = interval if interval is not None else settings.client_reconnect_interval
        self.max_delay = (
            max_delay if max_delay is not None else settings.client_reconnect_max_delay
        )
        self.on_activity = on_activity

        self.workspace_id: Optional[int] = store.workspace_id if store else None
        self.online_users: list[dict[str, Any]] = []
        self.last_error: Optional[dict[str, Any]] = None
        self.connected = asyncio.Event()
        self._ws: Any = None
        self._closing = False

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt`` (1-based)."""
        return min(self.interval * (2 ** max(attempt - 1, 0)), self.max_delay)

    def _connect_url(self) -> str:
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode({'token': self.token})}"

    async def run(self) -> None:
        """
        Connect and process messages until ``close`` is called.

        Raises:
            AuthFailure: If the server rejects the credential (no retry)
            TransientNetworkFailure: If every reconnect attempt failed
        """
        attempt = 0
        opened_before = False

        while not self._closing:
            try:
                async with self._connector(self._connect_url()) as ws:
                    self._ws = ws
                    attempt = 0
                    self.connected.set()
                    logger.info(f"Real-time channel connected to {self.url}")
                    await self._on_open(reconnected=opened_before)
                    opened_before = True

                    async for raw in ws:
                        await self._handle_raw(raw)

                logger.info("Real-time channel closed by server")

            except InvalidStatus as e:
                status_code = e.response.status_code
                if status_code in (401, 403):
                    raise AuthFailure(
                        f"Handshake rejected with HTTP {status_code}", status_code=status_code
                    ) from e
                logger.warning(f"Handshake failed with HTTP {status_code}")

            except ConnectionClosed as e:
                if e.rcvd is not None and e.rcvd.code == AUTH_CLOSE_CODE:
                    raise AuthFailure(
                        f"Connection closed: {e.rcvd.reason or 'authentication required'}",
                        status_code=401,
                    ) from e
                logger.warning(f"Real-time channel dropped: {e}")

            except (OSError, asyncio.TimeoutError) as e:
                logger.warning(f"Real-time channel connect failed: {e!r}")

            finally:
                self._ws = None
                self.connected.clear()

            if self._closing:
                break

            attempt += 1
            if attempt > self.max_attempts:
                raise TransientNetworkFailure(
                    f"Gave up reconnecting after {self.max_attempts} attempts"
                )
            delay = self.backoff_delay(attempt)
            logger.info(f"Reconnecting in {delay:.1f}s (attempt {attempt}/{self.max_attempts})")
            await asyncio.sleep(delay)

    async def close(self) -> None:
        """Stop reconnecting and close the current connection."""
        self._closing = True
        if self._ws is not None:
            await self._ws.close()

    async def _on_open(self, reconnected: bool) -> None:
        if self.workspace_id is not None:
            await self._send("join-workspace", {"workspace_id": self.workspace_id})
        if reconnected and self.store is not None:
            await self.store.load()

    async def _send(self, event_type: str, data: dict[str, Any]) -> bool:
        if self._ws is None:
            return False
        try:
            await self._ws.send(json.dumps({"type": event_type, "data": data}))
            return True
        except ConnectionClosed:
            logger.debug(f"Dropped {event_type}: connection closed")
            return False

    async def join_workspace(self, workspace_id: int) -> bool:
        """Switch to a workspace room (the previous one is left by the server)."""
        if workspace_id != self.workspace_id:
            self.online_users = []
        self.workspace_id = workspace_id
        return await self._send("join-workspace", {"workspace_id": workspace_id})

    async def leave_workspace(self) -> bool:
        """Leave the current workspace room."""
        if self.workspace_id is None:
            return False
        workspace_id, self.workspace_id = self.workspace_id, None
        self.online_users = []
        return await self._send("leave-workspace", {"workspace_id": workspace_id})

    async def send_activity(self, activity: str) -> bool:
        """Tell the room what this user is doing (e.g. ``typing``)."""
        if self.workspace_id is None:
            return False
        return await self._send(
            "user-activity",
            {"workspace_id": self.workspace_id, "activity": activity},
        )

    async def _handle_raw(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring non-JSON frame from server")
            return
        if not isinstance(message, dict):
            logger.warning("Ignoring non-object frame from server")
            return
        await self.handle_message(message)

    async def handle_message(self, message: dict[str, Any]) -> None:
        """Dispatch one decoded server frame."""
        message_type = message.get("type")
        data = message.get("data")
        if not isinstance(data, dict):
            data = {}

        if is_board_event(message_type):
            if self.store is not None:
                self.store.apply_message(message)
            return

        if message_type == "presence-update":
            if data.get("workspace_id") == self.workspace_id:
                self.online_users = list(data.get("users") or [])

        elif message_type == "user-joined":
            user_id = data.get("user_id")
            if not any(user.get("user_id") == user_id for user in self.online_users):
                self.online_users = [
                    *self.online_users,
                    {"user_id": user_id, "username": data.get("username")},
                ]

        elif message_type == "user-left":
            user_id = data.get("user_id")
            self.online_users = [
                user for user in self.online_users if user.get("user_id") != user_id
            ]

        elif message_type == "user-activity":
            if self.on_activity is not None:
                self.on_activity(data)

        elif message_type == "ping":
            await self._send("pong", {})

        elif message_type == "error":
            self.last_error = data
            logger.warning(f"Server error: {data.get('error')}: {data.get('message')}")

        elif message_type in ("connected", "pong"):
            logger.debug(f"Received {message_type}")

        else:
            logger.debug(f"Ignoring unknown event type: {message_type}")


__all__ = [
    "AUTH_CLOSE_CODE",
    "RealtimeChannel",
]
