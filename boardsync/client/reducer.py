"""Pure state transitions over a ``BoardSnapshot``.

Every function takes a snapshot and returns a new one; nested containers
are never mutated in place, so a transition is either fully visible or not
at all. Functions return the input snapshot unchanged when the target does
not exist, which keeps replayed and out-of-order events harmless.

``apply_event`` folds an inbound board event into a snapshot. It receives
the set of locally pending fields per entity and leaves those fields alone:
an inbound value never overwrites an edit that is still in flight.
"""

from typing import AbstractSet, Any, Callable, Mapping, Optional

from ..schemas.board import (
    BoardList,
    BoardSnapshot,
    ChecklistItem,
    Label,
    Todo,
    checklist_counts,
)
from ..schemas.events import (
    CHECKLIST_ITEM,
    LABEL,
    LIST,
    TODO,
    BoardEventBase,
    ChecklistItemCreated,
    ChecklistItemDeleted,
    ChecklistItemUpdated,
    EntityKey,
    LabelCreated,
    LabelDeleted,
    LabelUpdated,
    ListCreated,
    ListDeleted,
    ListPositionsUpdated,
    ListUpdated,
    TodoCreated,
    TodoDeleted,
    TodoLabelAdded,
    TodoLabelRemoved,
    TodoMemberAssigned,
    TodoMemberUnassigned,
    TodoMoved,
    TodoUpdated,
)

PendingFields = Mapping[EntityKey, AbstractSet[str]]

# Pending-field names that are not plain attributes
MOVE_FIELD = "list_id"
ASSIGNMENT_FIELD = "assigned_to"
DELETED_FIELD = "deleted"


def label_field(label_id: int) -> str:
    """Pending-field name for one label attachment on a todo."""
    return f"label:{label_id}"


def _by_position(items: list) -> list:
    return sorted(items, key=lambda item: item.position)


def _unmasked(update: dict[str, Any], pending: AbstractSet[str]) -> dict[str, Any]:
    return {key: value for key, value in update.items() if key not in pending}


# ---------------------------------------------------------------------------
# Lists
# ---------------------------------------------------------------------------


def add_list(board: BoardSnapshot, board_list: BoardList) -> BoardSnapshot:
    """Insert a list, keeping lists ordered. Known ids are left as they are."""
    if board.find_list(board_list.id) is not None:
        return board
    board_list = board_list.model_copy(update={"todos": _by_position(board_list.todos)})
    return board.model_copy(update={"lists": _by_position([*board.lists, board_list])})


def update_list(board: BoardSnapshot, list_id: int, update: dict[str, Any]) -> BoardSnapshot:
    """Shallow-merge fields into a list."""
    if not update or board.find_list(list_id) is None:
        return board
    lists = [
        board_list.model_copy(update=update) if board_list.id == list_id else board_list
        for board_list in board.lists
    ]
    return board.model_copy(update={"lists": _by_position(lists)})


def remove_list(board: BoardSnapshot, list_id: int) -> BoardSnapshot:
    """Remove a list together with its todos."""
    if board.find_list(list_id) is None:
        return board
    return board.model_copy(
        update={"lists": [entry for entry in board.lists if entry.id != list_id]}
    )


def replace_list_id(board: BoardSnapshot, old_id: int, new_list: BoardList) -> BoardSnapshot:
    """Swap a placeholder list for its confirmed row, keeping local todos."""
    current = board.find_list(old_id)
    if current is None:
        return board
    if board.find_list(new_list.id) is not None:
        # The broadcast echo already delivered the real list
        return remove_list(board, old_id)
    confirmed = new_list.model_copy(
        update={"todos": [t.model_copy(update={"list_id": new_list.id}) for t in current.todos]}
    )
    lists = [confirmed if entry.id == old_id else entry for entry in board.lists]
    return board.model_copy(update={"lists": _by_position(lists)})


def reorder_lists(board: BoardSnapshot, positions: Mapping[int, int]) -> BoardSnapshot:
    """Apply new positions to several lists at once."""
    if not positions:
        return board
    lists = [
        entry.model_copy(update={"position": positions[entry.id]}) if entry.id in positions else entry
        for entry in board.lists
    ]
    return board.model_copy(update={"lists": _by_position(lists)})


# ---------------------------------------------------------------------------
# Todos
# ---------------------------------------------------------------------------


def _map_todo(
    board: BoardSnapshot,
    todo_id: int,
    fn: Callable[[Todo], Todo],
) -> BoardSnapshot:
    """Rebuild the one list that holds ``todo_id`` with ``fn`` applied."""
    for index, board_list in enumerate(board.lists):
        for todo in board_list.todos:
            if todo.id != todo_id:
                continue
            updated = fn(todo)
            if updated is todo:
                return board
            todos = [updated if t.id == todo_id else t for t in board_list.todos]
            lists = list(board.lists)
            lists[index] = board_list.model_copy(update={"todos": _by_position(todos)})
            return board.model_copy(update={"lists": lists})
    return board


def add_todo(board: BoardSnapshot, todo: Todo) -> BoardSnapshot:
    """Insert a todo into its list. Known ids and unknown lists are ignored."""
    if board.find_todo(todo.id) is not None or board.find_list(todo.list_id) is None:
        return board
    lists = [
        entry.model_copy(update={"todos": _by_position([*entry.todos, todo])})
        if entry.id == todo.list_id
        else entry
        for entry in board.lists
    ]
    return board.model_copy(update={"lists": lists})


def update_todo(board: BoardSnapshot, todo_id: int, update: dict[str, Any]) -> BoardSnapshot:
    """Shallow-merge fields into a todo. Only the given keys change."""
    if not update:
        return board
    return _map_todo(board, todo_id, lambda todo: todo.model_copy(update=update))


def remove_todo(board: BoardSnapshot, todo_id: int) -> BoardSnapshot:
    """Remove a todo wherever it is."""
    if board.find_todo(todo_id) is None:
        return board
    lists = [
        entry.model_copy(update={"todos": [t for t in entry.todos if t.id != todo_id]})
        if any(t.id == todo_id for t in entry.todos)
        else entry
        for entry in board.lists
    ]
    return board.model_copy(update={"lists": lists})


def move_todo(
    board: BoardSnapshot,
    todo_id: int,
    to_list_id: int,
    position: int,
) -> BoardSnapshot:
    """
    Move a todo to a list and position in one transition.

    The todo leaves exactly one list and enters exactly one list (possibly
    the same one); the destination is re-sorted by position. Unknown todos
    or destination lists leave the snapshot unchanged.
    """
    todo = board.find_todo(todo_id)
    if todo is None or board.find_list(to_list_id) is None:
        return board
    if todo.list_id == to_list_id and todo.position == position:
        return board

    moved = todo.model_copy(update={"list_id": to_list_id, "position": position})
    lists = []
    for board_list in board.lists:
        todos = [t for t in board_list.todos if t.id != todo_id]
        if board_list.id == to_list_id:
            todos.append(moved)
        if len(todos) != len(board_list.todos) or board_list.id == to_list_id:
            board_list = board_list.model_copy(update={"todos": _by_position(todos)})
        lists.append(board_list)
    return board.model_copy(update={"lists": lists})


def add_label_to_todo(board: BoardSnapshot, todo_id: int, label: Label) -> BoardSnapshot:
    """Attach a label. Attaching a label already present changes nothing."""

    def attach(todo: Todo) -> Todo:
        if todo.has_label(label.id):
            return todo
        return todo.model_copy(update={"labels": [*todo.labels, label]})

    return _map_todo(board, todo_id, attach)


def remove_label_from_todo(board: BoardSnapshot, todo_id: int, label_id: int) -> BoardSnapshot:
    """Detach a label. Detaching a label not present changes nothing."""

    def detach(todo: Todo) -> Todo:
        if not todo.has_label(label_id):
            return todo
        return todo.model_copy(
            update={"labels": [entry for entry in todo.labels if entry.id != label_id]}
        )

    return _map_todo(board, todo_id, detach)


def merge_todo_label(board: BoardSnapshot, todo_id: int, label: Label) -> BoardSnapshot:
    """Replace an attached label with the server's resolved copy."""

    def merge(todo: Todo) -> Todo:
        if not todo.has_label(label.id):
            return todo.model_copy(update={"labels": [*todo.labels, label]})
        return todo.model_copy(
            update={"labels": [label if entry.id == label.id else entry for entry in todo.labels]}
        )

    return _map_todo(board, todo_id, merge)


def assign_member(
    board: BoardSnapshot,
    todo_id: int,
    member_id: int,
    username: Optional[str],
) -> BoardSnapshot:
    """Assign a member to a todo."""

    def assign(todo: Todo) -> Todo:
        if todo.assigned_to == member_id and todo.assigned_username == username:
            return todo
        return todo.model_copy(update={"assigned_to": member_id, "assigned_username": username})

    return _map_todo(board, todo_id, assign)


def unassign_member(board: BoardSnapshot, todo_id: int, member_id: int) -> BoardSnapshot:
    """Clear a todo's assignment if it is held by ``member_id``."""

    def unassign(todo: Todo) -> Todo:
        if todo.assigned_to != member_id:
            return todo
        return todo.model_copy(update={"assigned_to": None, "assigned_username": None})

    return _map_todo(board, todo_id, unassign)


# ---------------------------------------------------------------------------
# Checklist items
# ---------------------------------------------------------------------------


def _with_items(
    todo: Todo,
    items: Optional[list[ChecklistItem]],
    counts: tuple[int, int],
) -> Todo:
    if items is not None:
        items = sorted(items, key=lambda item: (item.position, item.id))
        counts = checklist_counts(items)
    total, completed = counts
    return todo.model_copy(
        update={
            "checklist_items": items,
            "checklist_count": total,
            "completed_checklist_count": min(completed, total),
        }
    )


def upsert_checklist_item(
    board: BoardSnapshot,
    todo_id: int,
    item: ChecklistItem,
    counts: Optional[tuple[int, int]] = None,
    pending: AbstractSet[str] = frozenset(),
) -> BoardSnapshot:
    """
    Insert or update a checklist item.

    When the todo's checklist is loaded the counts are derived from it;
    otherwise ``counts`` (total, completed) from the server are taken, or the
    counts are bumped for a new item when none are given.
    """

    def upsert(todo: Todo) -> Todo:
        items = todo.checklist_items
        new_counts = counts
        if items is not None:
            current = next((i for i in items if i.id == item.id), None)
            if current is None:
                items = [*items, item]
            else:
                merged = _unmasked(item.model_dump(), pending | {"id", "todo_id"})
                items = [current.model_copy(update=merged) if i.id == item.id else i for i in items]
        elif new_counts is None:
            new_counts = (
                todo.checklist_count + 1,
                todo.completed_checklist_count + (1 if item.is_completed else 0),
            )
        return _with_items(todo, items, new_counts or (todo.checklist_count, todo.completed_checklist_count))

    return _map_todo(board, todo_id, upsert)


def update_checklist_item(
    board: BoardSnapshot,
    todo_id: int,
    item_id: int,
    update: dict[str, Any],
) -> BoardSnapshot:
    """Shallow-merge fields into a loaded checklist item."""
    if not update:
        return board

    def patch(todo: Todo) -> Todo:
        items = todo.checklist_items
        if items is None or not any(i.id == item_id for i in items):
            return todo
        items = [i.model_copy(update=update) if i.id == item_id else i for i in items]
        return _with_items(todo, items, (todo.checklist_count, todo.completed_checklist_count))

    return _map_todo(board, todo_id, patch)


def remove_checklist_item(
    board: BoardSnapshot,
    todo_id: int,
    item_id: int,
    counts: Optional[tuple[int, int]] = None,
) -> BoardSnapshot:
    """Remove a checklist item. Removing an unknown item changes nothing."""

    def remove(todo: Todo) -> Todo:
        items = todo.checklist_items
        if items is not None:
            if not any(i.id == item_id for i in items):
                return todo
            return _with_items(todo, [i for i in items if i.id != item_id], (0, 0))
        if counts is None:
            return todo
        return _with_items(todo, None, counts)

    return _map_todo(board, todo_id, remove)


def replace_checklist_item_id(
    board: BoardSnapshot,
    todo_id: int,
    old_id: int,
    item: ChecklistItem,
) -> BoardSnapshot:
    """Swap a placeholder checklist item for its confirmed row."""

    def swap(todo: Todo) -> Todo:
        items = todo.checklist_items
        if items is None:
            return todo
        if any(i.id == item.id for i in items):
            # The broadcast echo already delivered the real item
            return _with_items(todo, [i for i in items if i.id != old_id], (0, 0))
        return _with_items(todo, [item if i.id == old_id else i for i in items], (0, 0))

    return _map_todo(board, todo_id, swap)


# ---------------------------------------------------------------------------
# Workspace labels
# ---------------------------------------------------------------------------


def add_workspace_label(board: BoardSnapshot, label: Label) -> BoardSnapshot:
    if board.find_label(label.id) is not None:
        return board
    return board.model_copy(update={"labels": [*board.labels, label]})


def update_workspace_label(
    board: BoardSnapshot,
    label_id: int,
    update: dict[str, Any],
) -> BoardSnapshot:
    """Update a label and every copy of it attached to todos."""
    if not update or board.find_label(label_id) is None:
        return board
    labels = [entry.model_copy(update=update) if entry.id == label_id else entry for entry in board.labels]
    lists = [
        board_list.model_copy(
            update={
                "todos": [
                    todo.model_copy(
                        update={
                            "labels": [
                                entry.model_copy(update=update) if entry.id == label_id else entry
                                for entry in todo.labels
                            ]
                        }
                    )
                    if todo.has_label(label_id)
                    else todo
                    for todo in board_list.todos
                ]
            }
        )
        for board_list in board.lists
    ]
    return board.model_copy(update={"labels": labels, "lists": lists})


def remove_workspace_label(board: BoardSnapshot, label_id: int) -> BoardSnapshot:
    """Delete a label from the workspace and detach it from every todo."""
    labels = [entry for entry in board.labels if entry.id != label_id]
    lists = [
        board_list.model_copy(
            update={
                "todos": [
                    todo.model_copy(update={"labels": [entry for entry in todo.labels if entry.id != label_id]})
                    if todo.has_label(label_id)
                    else todo
                    for todo in board_list.todos
                ]
            }
        )
        for board_list in board.lists
    ]
    return board.model_copy(update={"labels": labels, "lists": lists})


# ---------------------------------------------------------------------------
# Inbound events
# ---------------------------------------------------------------------------


def _todo_created(board: BoardSnapshot, event: TodoCreated, pending: PendingFields) -> BoardSnapshot:
    return add_todo(board, event.todo)


def _todo_updated(board: BoardSnapshot, event: TodoUpdated, pending: PendingFields) -> BoardSnapshot:
    masked = pending.get((TODO, event.todo_id), frozenset())
    return update_todo(board, event.todo_id, _unmasked(event.changes.as_update(), masked))


def _todo_deleted(board: BoardSnapshot, event: TodoDeleted, pending: PendingFields) -> BoardSnapshot:
    return remove_todo(board, event.todo_id)


def _todo_moved(board: BoardSnapshot, event: TodoMoved, pending: PendingFields) -> BoardSnapshot:
    if MOVE_FIELD in pending.get((TODO, event.todo_id), frozenset()):
        return board
    return move_todo(board, event.todo_id, event.to_list_id, event.position)


def _list_created(board: BoardSnapshot, event: ListCreated, pending: PendingFields) -> BoardSnapshot:
    return add_list(board, event.list)


def _list_updated(board: BoardSnapshot, event: ListUpdated, pending: PendingFields) -> BoardSnapshot:
    masked = pending.get((LIST, event.list_id), frozenset())
    return update_list(board, event.list_id, _unmasked(event.changes.as_update(), masked))


def _list_deleted(board: BoardSnapshot, event: ListDeleted, pending: PendingFields) -> BoardSnapshot:
    return remove_list(board, event.list_id)


def _list_positions(
    board: BoardSnapshot,
    event: ListPositionsUpdated,
    pending: PendingFields,
) -> BoardSnapshot:
    positions = {
        entry.id: entry.position
        for entry in event.positions
        if "position" not in pending.get((LIST, entry.id), frozenset())
    }
    return reorder_lists(board, positions)


def _label_created(board: BoardSnapshot, event: LabelCreated, pending: PendingFields) -> BoardSnapshot:
    return add_workspace_label(board, event.label)


def _label_updated(board: BoardSnapshot, event: LabelUpdated, pending: PendingFields) -> BoardSnapshot:
    masked = pending.get((LABEL, event.label_id), frozenset())
    return update_workspace_label(board, event.label_id, _unmasked(event.changes.as_update(), masked))


def _label_deleted(board: BoardSnapshot, event: LabelDeleted, pending: PendingFields) -> BoardSnapshot:
    return remove_workspace_label(board, event.label_id)


def _todo_label_added(
    board: BoardSnapshot,
    event: TodoLabelAdded,
    pending: PendingFields,
) -> BoardSnapshot:
    if label_field(event.label_id) in pending.get((TODO, event.todo_id), frozenset()):
        return board
    label = event.label or board.find_label(event.label_id)
    if label is None:
        # Unknown label and no copy in the payload: nothing to attach
        return board
    return add_label_to_todo(board, event.todo_id, label)


def _todo_label_removed(
    board: BoardSnapshot,
    event: TodoLabelRemoved,
    pending: PendingFields,
) -> BoardSnapshot:
    if label_field(event.label_id) in pending.get((TODO, event.todo_id), frozenset()):
        return board
    return remove_label_from_todo(board, event.todo_id, event.label_id)


def _member_assigned(
    board: BoardSnapshot,
    event: TodoMemberAssigned,
    pending: PendingFields,
) -> BoardSnapshot:
    if ASSIGNMENT_FIELD in pending.get((TODO, event.todo_id), frozenset()):
        return board
    return assign_member(board, event.todo_id, event.member.id, event.member.username)


def _member_unassigned(
    board: BoardSnapshot,
    event: TodoMemberUnassigned,
    pending: PendingFields,
) -> BoardSnapshot:
    if ASSIGNMENT_FIELD in pending.get((TODO, event.todo_id), frozenset()):
        return board
    return unassign_member(board, event.todo_id, event.member_id)


def _checklist_item_upserted(
    board: BoardSnapshot,
    event: ChecklistItemCreated,
    pending: PendingFields,
) -> BoardSnapshot:
    masked = pending.get((CHECKLIST_ITEM, event.item.id), frozenset())
    if DELETED_FIELD in masked:
        return board
    return upsert_checklist_item(
        board,
        event.todo_id,
        event.item,
        counts=(event.checklist_count, event.completed_checklist_count),
        pending=masked,
    )


def _checklist_item_deleted(
    board: BoardSnapshot,
    event: ChecklistItemDeleted,
    pending: PendingFields,
) -> BoardSnapshot:
    return remove_checklist_item(
        board,
        event.todo_id,
        event.item_id,
        counts=(event.checklist_count, event.completed_checklist_count),
    )


_EVENT_HANDLERS: dict[type, Callable[[BoardSnapshot, Any, PendingFields], BoardSnapshot]] = {
    TodoCreated: _todo_created,
    TodoUpdated: _todo_updated,
    TodoDeleted: _todo_deleted,
    TodoMoved: _todo_moved,
    ListCreated: _list_created,
    ListUpdated: _list_updated,
    ListDeleted: _list_deleted,
    ListPositionsUpdated: _list_positions,
    LabelCreated: _label_created,
    LabelUpdated: _label_updated,
    LabelDeleted: _label_deleted,
    TodoLabelAdded: _todo_label_added,
    TodoLabelRemoved: _todo_label_removed,
    TodoMemberAssigned: _member_assigned,
    TodoMemberUnassigned: _member_unassigned,
    ChecklistItemCreated: _checklist_item_upserted,
    ChecklistItemUpdated: _checklist_item_upserted,
    ChecklistItemDeleted: _checklist_item_deleted,
}


def apply_event(
    board: BoardSnapshot,
    event: BoardEventBase,
    pending: Optional[PendingFields] = None,
) -> BoardSnapshot:
    """
    Fold one inbound board event into a snapshot.

    Args:
        board: Current snapshot
        event: Decoded board event
        pending: Locally pending field names per entity key; inbound values
            for those fields are skipped

    Returns:
        The new snapshot (the same object when nothing changed)
    """
    handler = _EVENT_HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"No reducer for event type {type(event).__name__}")
    return handler(board, event, pending or {})


__all__ = [
    "ASSIGNMENT_FIELD",
    "DELETED_FIELD",
    "MOVE_FIELD",
    "PendingFields",
    "add_label_to_todo",
    "add_list",
    "add_todo",
    "add_workspace_label",
    "apply_event",
    "assign_member",
    "label_field",
    "merge_todo_label",
    "move_todo",
    "remove_checklist_item",
    "remove_label_from_todo",
    "remove_list",
    "remove_todo",
    "remove_workspace_label",
    "reorder_lists",
    "replace_checklist_item_id",
    "replace_list_id",
    "unassign_member",
    "update_checklist_item",
    "update_list",
    "update_todo",
    "update_workspace_label",
    "upsert_checklist_item",
]
