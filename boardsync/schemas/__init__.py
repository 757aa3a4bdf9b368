"""Pydantic schemas shared by the server and the board client."""

from .board import (
    BoardList,
    BoardSnapshot,
    ChecklistItem,
    ChecklistItemChanges,
    Label,
    LabelChanges,
    ListChanges,
    Member,
    PositionUpdate,
    Todo,
    TodoChanges,
)
from .events import (
    BOARD_EVENT_TYPES,
    BoardEvent,
    BoardEventBase,
    encode_board_event,
    is_board_event,
    parse_board_event,
)
from .presence import (
    PresenceSnapshot,
    PublishResult,
    UnicastRequest,
    UnicastResult,
    UserActivityPayload,
    UserIdentity,
    WorkspaceRef,
)

__all__ = [
    # Board
    "BoardList",
    "BoardSnapshot",
    "ChecklistItem",
    "ChecklistItemChanges",
    "Label",
    "LabelChanges",
    "ListChanges",
    "Member",
    "PositionUpdate",
    "Todo",
    "TodoChanges",
    # Events
    "BOARD_EVENT_TYPES",
    "BoardEvent",
    "BoardEventBase",
    "encode_board_event",
    "is_board_event",
    "parse_board_event",
    # Presence
    "PresenceSnapshot",
    "PublishResult",
    "UnicastRequest",
    "UnicastResult",
    "UserActivityPayload",
    "UserIdentity",
    "WorkspaceRef",
]
