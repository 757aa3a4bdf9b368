"""WebSocket event handlers for presence and board events.

Handlers coordinate the presence registry (who is viewing what) with the
connection manager (who receives what). Neither service is touched directly
by the endpoint; every state change goes through the functions below.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import WebSocket
from pydantic import ValidationError

from ..exceptions import MalformedEvent
from ..schemas.events import BoardEventBase, encode_board_event
from ..schemas.presence import PresenceSnapshot, UserActivityPayload, UserIdentity, WorkspaceRef
from .manager import ConnectionManager, MessageType, WebSocketConnection
from .presence import PresenceRegistry
from .room_auth import WorkspaceAccessChecker

logger = logging.getLogger(__name__)


@dataclass
class BroadcastResult:
    """Result of a broadcast operation."""

    workspace_id: int
    recipients: int
    message_type: str
    success: bool
    revision: Optional[int] = None


def presence_payload(workspace_id: int, snapshots: list[PresenceSnapshot]) -> dict[str, Any]:
    """Build the ``presence-update`` payload for a workspace."""
    return {
        "workspace_id": workspace_id,
        "users": [snapshot.model_dump(mode="json") for snapshot in snapshots],
    }


async def send_error(
    connection_manager: ConnectionManager,
    connection: WebSocketConnection,
    code: str,
    message: str,
) -> bool:
    """
    Send an ``error`` event to one connection.

    Args:
        connection_manager: The connection manager
        connection: The target connection
        code: Machine-readable error code
        message: Human-readable message

    Returns:
        bool: True if the error was delivered
    """
    return await connection_manager.send_event(
        connection,
        MessageType.ERROR,
        {"error": code, "message": message},
    )


async def handle_connect(
    websocket: WebSocket,
    identity: UserIdentity,
    connection_manager: ConnectionManager,
    registry: PresenceRegistry,
    token: Optional[str] = None,
) -> WebSocketConnection:
    """
    Accept an authenticated socket and register its presence entry.

    A user's earlier connection is replaced: it is taken out of its room and
    the room is told the user left. The earlier socket itself stays open
    until the client closes it.

    Args:
        websocket: The accepted-to-be WebSocket
        identity: Verified identity from the handshake
        connection_manager: The connection manager
        registry: The presence registry
        token: The bearer credential used for the handshake

    Returns:
        WebSocketConnection: The new connection
    """
    connection = await connection_manager.connect(websocket, identity, token=token)

    _, replaced = await registry.register_connection(
        identity.user_id,
        identity.username,
        connection,
        email=identity.email,
    )

    if replaced is not None:
        for workspace_id in sorted(replaced.joined_workspaces):
            await connection_manager.leave(replaced.connection, workspace_id)

    return connection


async def handle_disconnect(
    websocket: WebSocket,
    connection_manager: ConnectionManager,
    registry: PresenceRegistry,
) -> list[int]:
    """
    Clean up after a closed socket.

    Emits one ``user-left`` per workspace the user was present in. A socket
    that was already replaced by a newer connection leaves no trace.

    Args:
        websocket: The closed WebSocket
        connection_manager: The connection manager
        registry: The presence registry

    Returns:
        list[int]: Workspaces the user was removed from
    """
    connection = await connection_manager.disconnect(websocket)
    if connection is None:
        return []

    left = await registry.drop_connection(connection.user_id, handle=connection)
    for workspace_id in left:
        await connection_manager.broadcast(
            workspace_id,
            MessageType.USER_LEFT,
            {"user_id": connection.user_id, "username": connection.username},
        )

    return left


async def handle_join_workspace(
    connection: WebSocketConnection,
    workspace_id: int,
    connection_manager: ConnectionManager,
    registry: PresenceRegistry,
    access_checker: Optional[WorkspaceAccessChecker] = None,
) -> bool:
    """
    Join a workspace room, leaving the previous one.

    Presence is updated before any notification goes out, so the
    ``presence-update`` the joiner receives already lists them.

    Args:
        connection: The joining connection
        workspace_id: The workspace to join
        connection_manager: The connection manager
        registry: The presence registry
        access_checker: Optional membership check

    Returns:
        bool: True if the connection is in the room afterwards
    """
    if access_checker is not None:
        allowed = await access_checker.check_access(
            connection.user_id, workspace_id, connection.token
        )
        if not allowed:
            logger.warning(
                f"Workspace access denied: user={connection.user_id}, workspace={workspace_id}"
            )
            await send_error(
                connection_manager,
                connection,
                "UNAUTHORIZED",
                f"Access denied to workspace: {workspace_id}",
            )
            return False

    previous = connection.workspace_id
    if previous is not None and previous != workspace_id:
        await registry.record_leave(connection.user_id, previous)

    await registry.record_join(connection.user_id, workspace_id)
    await connection_manager.join(connection, workspace_id)

    snapshots = await registry.snapshot(workspace_id)
    await connection_manager.send_event(
        connection,
        MessageType.PRESENCE_UPDATE,
        presence_payload(workspace_id, snapshots),
    )
    return True


async def handle_leave_workspace(
    connection: WebSocketConnection,
    workspace_id: int,
    connection_manager: ConnectionManager,
    registry: PresenceRegistry,
) -> bool:
    """
    Leave a workspace room. Leaving a room not joined is a no-op.

    Returns:
        bool: True if the connection was in the room
    """
    await registry.record_leave(connection.user_id, workspace_id)
    return await connection_manager.leave(connection, workspace_id)


async def handle_user_activity(
    connection: WebSocketConnection,
    payload: UserActivityPayload,
    connection_manager: ConnectionManager,
    registry: PresenceRegistry,
) -> Optional[BroadcastResult]:
    """
    Relay a user's activity to the rest of the room.

    Activity is only relayed for the room the connection is in.

    Args:
        connection: The sending connection
        payload: Validated activity payload
        connection_manager: The connection manager
        registry: The presence registry

    Returns:
        BroadcastResult, or None if the connection is not in that room
    """
    if connection.workspace_id != payload.workspace_id:
        await send_error(
            connection_manager,
            connection,
            "NOT_IN_WORKSPACE",
            f"Join workspace {payload.workspace_id} before sending activity",
        )
        return None

    await registry.touch(connection.user_id, payload.workspace_id)
    recipients = await connection_manager.broadcast(
        payload.workspace_id,
        MessageType.USER_ACTIVITY,
        {
            "user_id": connection.user_id,
            "username": connection.username,
            "activity": payload.activity,
        },
        exclude=connection,
    )

    return BroadcastResult(
        workspace_id=payload.workspace_id,
        recipients=recipients,
        message_type=MessageType.USER_ACTIVITY.value,
        success=True,
    )


async def route_incoming_message(
    connection: WebSocketConnection,
    data: dict[str, Any],
    connection_manager: ConnectionManager,
    registry: PresenceRegistry,
    access_checker: Optional[WorkspaceAccessChecker] = None,
) -> None:
    """
    Route incoming WebSocket messages to appropriate handlers.

    Malformed frames are answered with an ``error`` event; the connection
    stays open.

    Args:
        connection: The connection that sent the message
        data: The message data
        connection_manager: The connection manager
        registry: The presence registry
        access_checker: Optional membership check for joins
    """
    message_type = data.get("type")

    logger.debug(f"Routing message: user={connection.user_id}, type={message_type}")

    # Let the manager handle transport-level message types
    if await connection_manager.handle_message(connection, data):
        return

    payload = data.get("data") or {}

    try:
        if message_type == MessageType.JOIN_WORKSPACE.value:
            ref = WorkspaceRef.model_validate(payload)
            await handle_join_workspace(
                connection, ref.workspace_id, connection_manager, registry, access_checker
            )

        elif message_type == MessageType.LEAVE_WORKSPACE.value:
            ref = WorkspaceRef.model_validate(payload)
            await handle_leave_workspace(
                connection, ref.workspace_id, connection_manager, registry
            )

        elif message_type == MessageType.USER_ACTIVITY.value:
            activity = UserActivityPayload.model_validate(payload)
            await handle_user_activity(connection, activity, connection_manager, registry)

        else:
            logger.warning(f"Unknown message type from user {connection.user_id}: {message_type}")
            await send_error(
                connection_manager,
                connection,
                "UNKNOWN_MESSAGE_TYPE",
                f"Unsupported message type: {message_type}",
            )

    except ValidationError as e:
        logger.info(f"Malformed {message_type} from user {connection.user_id}: {e.error_count()} error(s)")
        await send_error(
            connection_manager,
            connection,
            MalformedEvent.code,
            f"Invalid payload for {message_type}",
        )


async def publish_board_event(
    workspace_id: int,
    event: BoardEventBase,
    connection_manager: ConnectionManager,
    exclude: Optional[WebSocketConnection] = None,
) -> BroadcastResult:
    """
    Publish a confirmed board mutation to a workspace room.

    The event is stamped with the workspace's next revision unless it
    already carries one. The originator is not excluded by default; clients
    apply their own echo idempotently.

    Args:
        workspace_id: The workspace room
        event: The typed board event
        connection_manager: The connection manager
        exclude: Optional connection to skip

    Returns:
        BroadcastResult: Result of the broadcast operation
    """
    if event.revision is None:
        event = event.model_copy(
            update={"revision": connection_manager.next_revision(workspace_id)}
        )

    frame = encode_board_event(event)
    recipients = await connection_manager.broadcast(
        workspace_id,
        frame["type"],
        frame["data"],
        exclude=exclude,
    )

    logger.debug(
        f"Board event {frame['type']} rev={event.revision} "
        f"workspace={workspace_id} recipients={recipients}"
    )

    return BroadcastResult(
        workspace_id=workspace_id,
        recipients=recipients,
        message_type=frame["type"],
        success=True,
        revision=event.revision,
    )


async def notify_user(
    user_id: int,
    event_type: str,
    payload: dict[str, Any],
    connection_manager: ConnectionManager,
) -> bool:
    """
    Send an event to one user's current connection (e.g. an invitation).

    Args:
        user_id: The user to notify
        event_type: The event name
        payload: The event payload
        connection_manager: The connection manager

    Returns:
        bool: True if the user was connected and the send succeeded
    """
    delivered = await connection_manager.unicast(user_id, event_type, payload)
    logger.info(f"Unicast {event_type}: user_id={user_id}, delivered={delivered}")
    return delivered


__all__ = [
    "BroadcastResult",
    "handle_connect",
    "handle_disconnect",
    "handle_join_workspace",
    "handle_leave_workspace",
    "handle_user_activity",
    "notify_user",
    "presence_payload",
    "publish_board_event",
    "route_incoming_message",
    "send_error",
]
