"""Board mutation events broadcast to workspace rooms.

Events form a closed tagged union keyed by ``type``. Frames on the wire are
``{"type": <name>, "data": <payload>}``; ``parse_board_event`` decodes a frame
into one of the variants below and ``encode_board_event`` does the reverse.
"""

from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..exceptions import MalformedEvent
from .board import (
    BoardList,
    ChecklistItem,
    Label,
    LabelChanges,
    ListChanges,
    Member,
    Todo,
    TodoChanges,
)

# Entity kinds used for revision tracking and pending-edit bookkeeping
TODO = "todo"
LIST = "list"
LABEL = "label"
CHECKLIST_ITEM = "checklist_item"

EntityKey = tuple[str, int]


class BoardEventBase(BaseModel):
    """Fields shared by every board event."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    revision: Optional[int] = Field(
        None,
        ge=0,
        description="Server-assigned revision, monotonically increasing per workspace",
    )

    def entity_keys(self) -> List[EntityKey]:
        """Entities whose state this event changes."""
        raise NotImplementedError


class TodoCreated(BoardEventBase):
    type: Literal["todo:created"] = "todo:created"
    todo: Todo

    def entity_keys(self) -> List[EntityKey]:
        return [(TODO, self.todo.id)]


class TodoUpdated(BoardEventBase):
    type: Literal["todo:updated"] = "todo:updated"
    todo_id: int
    changes: TodoChanges

    def entity_keys(self) -> List[EntityKey]:
        return [(TODO, self.todo_id)]


class TodoDeleted(BoardEventBase):
    type: Literal["todo:deleted"] = "todo:deleted"
    todo_id: int
    list_id: Optional[int] = None

    def entity_keys(self) -> List[EntityKey]:
        return [(TODO, self.todo_id)]


class TodoMoved(BoardEventBase):
    type: Literal["todo:moved"] = "todo:moved"
    todo_id: int
    from_list_id: Optional[int] = None
    to_list_id: int
    position: int

    def entity_keys(self) -> List[EntityKey]:
        return [(TODO, self.todo_id)]


class ListCreated(BoardEventBase):
    type: Literal["list:created"] = "list:created"
    list: BoardList

    def entity_keys(self) -> List[EntityKey]:
        return [(LIST, self.list.id)]


class ListUpdated(BoardEventBase):
    type: Literal["list:updated"] = "list:updated"
    list_id: int
    changes: ListChanges

    def entity_keys(self) -> List[EntityKey]:
        return [(LIST, self.list_id)]


class ListDeleted(BoardEventBase):
    type: Literal["list:deleted"] = "list:deleted"
    list_id: int

    def entity_keys(self) -> List[EntityKey]:
        return [(LIST, self.list_id)]


class ListPosition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: int
    position: int


class ListPositionsUpdated(BoardEventBase):
    type: Literal["list:positions-updated"] = "list:positions-updated"
    positions: List[ListPosition]

    def entity_keys(self) -> List[EntityKey]:
        return [(LIST, entry.id) for entry in self.positions]


class LabelCreated(BoardEventBase):
    type: Literal["label:created"] = "label:created"
    label: Label

    def entity_keys(self) -> List[EntityKey]:
        return [(LABEL, self.label.id)]


class LabelUpdated(BoardEventBase):
    type: Literal["label:updated"] = "label:updated"
    label_id: int
    changes: LabelChanges

    def entity_keys(self) -> List[EntityKey]:
        return [(LABEL, self.label_id)]


class LabelDeleted(BoardEventBase):
    type: Literal["label:deleted"] = "label:deleted"
    label_id: int

    def entity_keys(self) -> List[EntityKey]:
        return [(LABEL, self.label_id)]


class TodoLabelAdded(BoardEventBase):
    type: Literal["todo:label-added"] = "todo:label-added"
    todo_id: int
    label_id: int
    label: Optional[Label] = None

    def entity_keys(self) -> List[EntityKey]:
        return [(TODO, self.todo_id)]


class TodoLabelRemoved(BoardEventBase):
    type: Literal["todo:label-removed"] = "todo:label-removed"
    todo_id: int
    label_id: int

    def entity_keys(self) -> List[EntityKey]:
        return [(TODO, self.todo_id)]


class TodoMemberAssigned(BoardEventBase):
    type: Literal["todo:member-assigned"] = "todo:member-assigned"
    todo_id: int
    member: Member

    def entity_keys(self) -> List[EntityKey]:
        return [(TODO, self.todo_id)]


class TodoMemberUnassigned(BoardEventBase):
    type: Literal["todo:member-unassigned"] = "todo:member-unassigned"
    todo_id: int
    member_id: int

    def entity_keys(self) -> List[EntityKey]:
        return [(TODO, self.todo_id)]


class ChecklistItemCreated(BoardEventBase):
    type: Literal["todo:checklist-item-created"] = "todo:checklist-item-created"
    todo_id: int
    item: ChecklistItem
    checklist_count: int = Field(..., ge=0)
    completed_checklist_count: int = Field(..., ge=0)

    def entity_keys(self) -> List[EntityKey]:
        return [(CHECKLIST_ITEM, self.item.id)]


class ChecklistItemUpdated(BoardEventBase):
    type: Literal["todo:checklist-item-updated"] = "todo:checklist-item-updated"
    todo_id: int
    item: ChecklistItem
    checklist_count: int = Field(..., ge=0)
    completed_checklist_count: int = Field(..., ge=0)

    def entity_keys(self) -> List[EntityKey]:
        return [(CHECKLIST_ITEM, self.item.id)]


class ChecklistItemDeleted(BoardEventBase):
    type: Literal["todo:checklist-item-deleted"] = "todo:checklist-item-deleted"
    todo_id: int
    item_id: int
    checklist_count: int = Field(..., ge=0)
    completed_checklist_count: int = Field(..., ge=0)

    def entity_keys(self) -> List[EntityKey]:
        return [(CHECKLIST_ITEM, self.item_id)]


BoardEvent = Annotated[
    Union[
        TodoCreated,
        TodoUpdated,
        TodoDeleted,
        TodoMoved,
        ListCreated,
        ListUpdated,
        ListDeleted,
        ListPositionsUpdated,
        LabelCreated,
        LabelUpdated,
        LabelDeleted,
        TodoLabelAdded,
        TodoLabelRemoved,
        TodoMemberAssigned,
        TodoMemberUnassigned,
        ChecklistItemCreated,
        ChecklistItemUpdated,
        ChecklistItemDeleted,
    ],
    Field(discriminator="type"),
]

_board_event_adapter: TypeAdapter = TypeAdapter(BoardEvent)

BOARD_EVENT_TYPES = frozenset(
    model.model_fields["type"].default
    for model in BoardEventBase.__subclasses__()
)


def is_board_event(event_type: Any) -> bool:
    """Check whether a frame type names a board event."""
    return isinstance(event_type, str) and event_type in BOARD_EVENT_TYPES


def parse_board_event(message: dict[str, Any]) -> BoardEventBase:
    """
    Decode a ``{"type", "data"}`` frame into a board event.

    Args:
        message: Raw frame as received from the channel

    Returns:
        The typed event variant

    Raises:
        MalformedEvent: If the type is unknown or the payload is invalid
    """
    if not isinstance(message, dict):
        raise MalformedEvent("Event frame must be an object")

    event_type = message.get("type")
    if not is_board_event(event_type):
        raise MalformedEvent(f"Unknown board event type: {event_type!r}")

    data = message.get("data")
    if not isinstance(data, dict):
        raise MalformedEvent(f"Event {event_type} has no payload object")

    try:
        return _board_event_adapter.validate_python({**data, "type": event_type})
    except ValidationError as e:
        raise MalformedEvent(f"Invalid payload for {event_type}: {e.error_count()} error(s)") from e
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedEvent(f"Unreadable payload for {event_type}: {e}") from e


def encode_board_event(event: BoardEventBase) -> dict[str, Any]:
    """Encode a board event as a ``{"type", "data"}`` frame."""
    data = event.model_dump(mode="json", exclude={"type"})
    # Partial updates must only carry the fields that were actually set
    changes = getattr(event, "changes", None)
    if changes is not None:
        data["changes"] = changes.model_dump(mode="json", exclude_unset=True)
    return {"type": event.type, "data": data}


__all__ = [
    "BOARD_EVENT_TYPES",
    "BoardEvent",
    "BoardEventBase",
    "CHECKLIST_ITEM",
    "ChecklistItemCreated",
    "ChecklistItemDeleted",
    "ChecklistItemUpdated",
    "EntityKey",
    "LABEL",
    "LIST",
    "LabelCreated",
    "LabelDeleted",
    "LabelUpdated",
    "ListCreated",
    "ListDeleted",
    "ListPosition",
    "ListPositionsUpdated",
    "ListUpdated",
    "TODO",
    "TodoCreated",
    "TodoDeleted",
    "TodoLabelAdded",
    "TodoLabelRemoved",
    "TodoMemberAssigned",
    "TodoMemberUnassigned",
    "TodoMoved",
    "TodoUpdated",
    "encode_board_event",
    "is_board_event",
    "parse_board_event",
]
