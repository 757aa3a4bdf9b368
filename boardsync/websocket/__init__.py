"""WebSocket module for real-time presence and board event fan-out."""

from .manager import (
    ConnectionManager,
    MessageType,
    WebSocketConnection,
)
from .handlers import (
    BroadcastResult,
    handle_connect,
    handle_disconnect,
    handle_join_workspace,
    handle_leave_workspace,
    handle_user_activity,
    notify_user,
    presence_payload,
    publish_board_event,
    route_incoming_message,
    send_error,
)
from .presence import (
    PresenceEntry,
    PresenceRegistry,
    WorkspaceRoom,
)
from .room_auth import (
    HttpMembershipLookup,
    WorkspaceAccessChecker,
)

__all__ = [
    # Manager
    "ConnectionManager",
    "MessageType",
    "WebSocketConnection",
    # Handlers
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
    # Presence
    "PresenceEntry",
    "PresenceRegistry",
    "WorkspaceRoom",
    # Workspace authorization
    "HttpMembershipLookup",
    "WorkspaceAccessChecker",
]
