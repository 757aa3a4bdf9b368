"""Pydantic schemas for the normalized board snapshot.

Every model is frozen: state transitions build new objects with
``model_copy(update=...)`` instead of mutating nested containers.
"""

from datetime import date, datetime
from typing import Any, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)


class Label(BaseModel):
    """Workspace label that can be attached to todos."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int = Field(..., description="Label identifier")
    name: Optional[str] = Field(None, max_length=100, description="Optional label name")
    color: str = Field(..., description="Label color, e.g. '#ff0000'")
    workspace_id: Optional[int] = Field(None, description="Owning workspace")
    created_at: Optional[datetime] = Field(None, description="When the label was created")


class ChecklistItem(BaseModel):
    """Single checklist entry of a todo."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int = Field(..., description="Checklist item identifier")
    title: str = Field(..., description="Item text")
    is_completed: bool = Field(False, description="Completion status")
    todo_id: int = Field(..., description="Parent todo")
    position: int = Field(0, description="Ordering within the checklist")
    created_at: Optional[datetime] = Field(None, description="When the item was created")


class Member(BaseModel):
    """Workspace member as seen on the board."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int = Field(..., description="User identifier")
    username: str = Field(..., description="Display name")
    email: Optional[str] = Field(None, description="User email")
    role: Optional[str] = Field(None, description="Workspace role")


def _raw_field(item: Any, name: str, default: Any = None) -> Any:
    """Read a field from a raw dict or an already built model."""
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)


def _position_key(item: Any) -> int:
    # Missing or unparsable positions sort as 0; field validation reports them
    try:
        return int(_raw_field(item, "position", 0))
    except (TypeError, ValueError):
        return 0


def _sorted_by_position(items: Any) -> Any:
    if not isinstance(items, (list, tuple)):
        return items
    return sorted(items, key=_position_key)


def _dedupe_by_id(items: List[Any]) -> List[Any]:
    """Keep the last occurrence of each id, preserving first-seen order."""
    latest: dict = {}
    order: list = []
    for index, item in enumerate(items):
        item_id = _raw_field(item, "id")
        # Items without an id are kept apart so validation can reject them
        key = ("missing", index) if item_id is None else item_id
        if key not in latest:
            order.append(key)
        latest[key] = item
    return [latest[key] for key in order]


def _reject_null(value: Any, info: ValidationInfo) -> Any:
    """Reject an explicit null for a field that is only optional in partial updates."""
    if value is None:
        raise ValueError(f"{info.field_name} cannot be null")
    return value


def checklist_counts(items: List[ChecklistItem]) -> tuple[int, int]:
    """Return (total, completed) for a list of checklist items."""
    return len(items), sum(1 for item in items if item.is_completed)


class Todo(BaseModel):
    """A card on the board."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int = Field(..., description="Todo identifier")
    title: str = Field(..., description="Card title")
    description: Optional[str] = Field(None, description="Card description")
    list_id: int = Field(..., description="List currently holding the todo")
    workspace_id: Optional[int] = Field(None, description="Owning workspace")
    assigned_to: Optional[int] = Field(None, description="Assigned member id")
    assigned_username: Optional[str] = Field(None, description="Assigned member name")
    due_date: Optional[date] = Field(None, description="Due date")
    due_time: Optional[str] = Field(None, description="Due time, HH:MM")
    position: int = Field(0, description="Ordering within the list")
    created_at: Optional[datetime] = Field(None, description="When the todo was created")
    labels: List[Label] = Field(default_factory=list, description="Attached labels (set semantics)")
    checklist_items: Optional[List[ChecklistItem]] = Field(
        None,
        description="Checklist detail, None when it has not been fetched",
    )
    checklist_count: int = Field(0, ge=0, description="Number of checklist items")
    completed_checklist_count: int = Field(0, ge=0, description="Number of completed items")

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if isinstance(data.get("labels"), (list, tuple)):
            data["labels"] = _dedupe_by_id(list(data["labels"]))
        items = data.get("checklist_items")
        if isinstance(items, (list, tuple)):
            items = _sorted_by_position(_dedupe_by_id(list(items)))
            data["checklist_items"] = items
            data["checklist_count"] = len(items)
            data["completed_checklist_count"] = sum(
                1 for i in items if _raw_field(i, "is_completed")
            )
        return data

    @model_validator(mode="after")
    def _check_counts(self) -> "Todo":
        if self.completed_checklist_count > self.checklist_count:
            raise ValueError("completed_checklist_count exceeds checklist_count")
        return self

    def has_label(self, label_id: int) -> bool:
        return any(label.id == label_id for label in self.labels)


class BoardList(BaseModel):
    """A list (column) of todos."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int = Field(..., description="List identifier")
    name: str = Field(..., description="List name")
    position: int = Field(0, description="Ordering on the board")
    workspace_id: Optional[int] = Field(None, description="Owning workspace")
    created_at: Optional[datetime] = Field(None, description="When the list was created")
    todos: List[Todo] = Field(default_factory=list, description="Todos sorted by position")

    @model_validator(mode="before")
    @classmethod
    def _sort_todos(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("todos"):
            data = dict(data)
            data["todos"] = _sorted_by_position(data["todos"])
        return data


class BoardSnapshot(BaseModel):
    """Client-held normalized view of one workspace board."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    workspace_id: int = Field(..., description="Workspace identifier")
    name: str = Field("", description="Workspace name")
    description: Optional[str] = Field(None, description="Workspace description")
    lists: List[BoardList] = Field(default_factory=list, description="Lists sorted by position")
    labels: List[Label] = Field(default_factory=list, description="Workspace labels")
    members: List[Member] = Field(default_factory=list, description="Workspace members")

    @model_validator(mode="before")
    @classmethod
    def _sort_lists(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("lists"):
            data = dict(data)
            data["lists"] = _sorted_by_position(data["lists"])
        return data

    def find_todo(self, todo_id: int) -> Optional[Todo]:
        for board_list in self.lists:
            for todo in board_list.todos:
                if todo.id == todo_id:
                    return todo
        return None

    def find_list(self, list_id: int) -> Optional[BoardList]:
        for board_list in self.lists:
            if board_list.id == list_id:
                return board_list
        return None

    def find_label(self, label_id: int) -> Optional[Label]:
        for label in self.labels:
            if label.id == label_id:
                return label
        return None

    def find_member(self, member_id: int) -> Optional[Member]:
        for member in self.members:
            if member.id == member_id:
                return member
        return None


class TodoChanges(BaseModel):
    """Partial update of a todo's mutable fields."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    due_date: Optional[date] = None
    due_time: Optional[str] = None
    assigned_to: Optional[int] = None
    assigned_username: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _not_null(cls, value: Any, info: ValidationInfo) -> Any:
        return _reject_null(value, info)

    def as_update(self) -> dict[str, Any]:
        """Fields explicitly present in the payload, typed."""
        return self.model_dump(exclude_unset=True)


class ListChanges(BaseModel):
    """Partial update of a list."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    position: Optional[int] = None

    @field_validator("name", "position")
    @classmethod
    def _not_null(cls, value: Any, info: ValidationInfo) -> Any:
        return _reject_null(value, info)

    def as_update(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class LabelChanges(BaseModel):
    """Partial update of a label."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: Optional[str] = Field(None, max_length=100)
    color: Optional[str] = None

    @field_validator("color")
    @classmethod
    def _not_null(cls, value: Any, info: ValidationInfo) -> Any:
        return _reject_null(value, info)

    def as_update(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class ChecklistItemChanges(BaseModel):
    """Partial update of a checklist item."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    is_completed: Optional[bool] = None
    position: Optional[int] = None

    @field_validator("title", "is_completed", "position")
    @classmethod
    def _not_null(cls, value: Any, info: ValidationInfo) -> Any:
        return _reject_null(value, info)

    def as_update(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class PositionUpdate(BaseModel):
    """New position for one entity in a reorder operation."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="Entity identifier")
    position: int = Field(..., description="New position")
    parent_id: Optional[int] = Field(None, description="New parent, if it changes")
