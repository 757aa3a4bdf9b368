"""Tests for board event decoding and encoding."""

import pytest
from pydantic import ValidationError

from boardsync.exceptions import MalformedEvent
from boardsync.schemas.board import (
    BoardSnapshot,
    ChecklistItemChanges,
    ListChanges,
    Todo,
    TodoChanges,
)
from boardsync.schemas.events import (
    BOARD_EVENT_TYPES,
    LIST,
    TODO,
    ListPositionsUpdated,
    TodoMoved,
    TodoUpdated,
    encode_board_event,
    is_board_event,
    parse_board_event,
)


class TestParseBoardEvent:
    """Tests for parse_board_event."""

    def test_parses_todo_updated(self):
        event = parse_board_event(
            {"type": "todo:updated", "data": {"todo_id": 7, "changes": {"title": "Ship it"}, "revision": 3}}
        )

        assert isinstance(event, TodoUpdated)
        assert event.todo_id == 7
        assert event.revision == 3
        assert event.changes.as_update() == {"title": "Ship it"}
        assert event.entity_keys() == [(TODO, 7)]

    def test_parses_todo_moved(self):
        event = parse_board_event(
            {"type": "todo:moved", "data": {"todo_id": 7, "from_list_id": 1, "to_list_id": 2, "position": 0}}
        )

        assert isinstance(event, TodoMoved)
        assert event.revision is None

    def test_positions_event_keys_every_list(self):
        event = parse_board_event(
            {
                "type": "list:positions-updated",
                "data": {"positions": [{"id": 1, "position": 1}, {"id": 2, "position": 0}]},
            }
        )

        assert isinstance(event, ListPositionsUpdated)
        assert event.entity_keys() == [(LIST, 1), (LIST, 2)]

    def test_unknown_type_is_malformed(self):
        with pytest.raises(MalformedEvent) as exc_info:
            parse_board_event({"type": "todo:exploded", "data": {}})

        assert exc_info.value.code == "MALFORMED_EVENT"

    def test_missing_payload_is_malformed(self):
        with pytest.raises(MalformedEvent):
            parse_board_event({"type": "todo:deleted"})

    def test_non_object_frame_is_malformed(self):
        with pytest.raises(MalformedEvent):
            parse_board_event(["todo:deleted", {"todo_id": 1}])

    def test_unknown_change_field_is_malformed(self):
        with pytest.raises(MalformedEvent):
            parse_board_event(
                {"type": "todo:updated", "data": {"todo_id": 7, "changes": {"colour": "red"}}}
            )

    def test_negative_checklist_count_is_malformed(self):
        with pytest.raises(MalformedEvent):
            parse_board_event(
                {
                    "type": "todo:checklist-item-deleted",
                    "data": {
                        "todo_id": 8,
                        "item_id": 70,
                        "checklist_count": -1,
                        "completed_checklist_count": 0,
                    },
                }
            )


class TestEncodeBoardEvent:
    """Tests for encode_board_event."""

    def test_partial_changes_only_carry_set_fields(self):
        event = parse_board_event(
            {"type": "todo:updated", "data": {"todo_id": 7, "changes": {"description": None}}}
        )

        frame = encode_board_event(event)

        assert frame["type"] == "todo:updated"
        assert frame["data"]["changes"] == {"description": None}
        assert "type" not in frame["data"]

    def test_encoded_frame_parses_back(self):
        event = parse_board_event(
            {
                "type": "todo:label-added",
                "data": {"todo_id": 7, "label_id": 5, "label": {"id": 5, "color": "#ff0000"}},
            }
        )

        frame = encode_board_event(event)

        assert encode_board_event(parse_board_event(frame)) == frame
        assert frame["data"]["label"]["color"] == "#ff0000"


class TestBoardEventTypes:
    """Tests for the closed set of board event names."""

    def test_all_event_names_known(self):
        assert len(BOARD_EVENT_TYPES) == 18
        assert "list:positions-updated" in BOARD_EVENT_TYPES
        assert "todo:checklist-item-created" in BOARD_EVENT_TYPES

    def test_is_board_event(self):
        assert is_board_event("todo:created")
        assert not is_board_event("presence-update")
        assert not is_board_event(None)


class TestTodoValidation:
    """Tests for Todo normalization."""

    def test_duplicate_labels_collapse(self):
        todo = Todo.model_validate(
            {
                "id": 1,
                "title": "t",
                "list_id": 1,
                "labels": [{"id": 5, "color": "#f00"}, {"id": 5, "color": "#0f0"}],
            }
        )

        assert [label.color for label in todo.labels] == ["#0f0"]

    def test_counts_derived_from_loaded_items(self):
        todo = Todo.model_validate(
            {
                "id": 1,
                "title": "t",
                "list_id": 1,
                "checklist_count": 9,
                "checklist_items": [
                    {"id": 2, "title": "b", "todo_id": 1, "position": 1, "is_completed": True},
                    {"id": 1, "title": "a", "todo_id": 1, "position": 0},
                ],
            }
        )

        assert todo.checklist_count == 2
        assert todo.completed_checklist_count == 1
        assert [item.id for item in todo.checklist_items] == [1, 2]

    def test_completed_cannot_exceed_total(self):
        with pytest.raises(ValidationError):
            Todo.model_validate(
                {
                    "id": 1,
                    "title": "t",
                    "list_id": 1,
                    "checklist_count": 1,
                    "completed_checklist_count": 2,
                }
            )

    def test_items_without_position_sort_first(self):
        todo = Todo.model_validate(
            {
                "id": 1,
                "title": "t",
                "list_id": 1,
                "checklist_items": [
                    {"id": 2, "title": "b", "todo_id": 1, "position": 1},
                    {"id": 1, "title": "a", "todo_id": 1},
                ],
            }
        )

        assert [item.id for item in todo.checklist_items] == [1, 2]
        assert todo.checklist_items[0].position == 0

    def test_item_without_id_is_invalid(self):
        with pytest.raises(ValidationError):
            Todo.model_validate(
                {
                    "id": 1,
                    "title": "t",
                    "list_id": 1,
                    "checklist_items": [{"title": "a", "todo_id": 1}, {"title": "b", "todo_id": 1}],
                }
            )


class TestSnapshotDefaults:
    """Snapshots built from payloads that lean on schema defaults."""

    def test_lists_and_todos_without_position(self):
        board = BoardSnapshot.model_validate(
            {
                "workspace_id": 42,
                "lists": [
                    {"id": 2, "name": "Done", "position": 1},
                    {"id": 1, "name": "Todo", "todos": [{"id": 7, "title": "a", "list_id": 1}]},
                ],
            }
        )

        assert [entry.id for entry in board.lists] == [1, 2]
        assert board.find_todo(7).position == 0

    def test_non_numeric_position_is_invalid(self):
        with pytest.raises(ValidationError):
            BoardSnapshot.model_validate(
                {"workspace_id": 42, "lists": [{"id": 1, "name": "Todo", "position": "first"}]}
            )

    def test_created_list_event_without_todo_positions(self):
        event = parse_board_event(
            {
                "type": "list:created",
                "data": {
                    "revision": 3,
                    "list": {
                        "id": 9,
                        "name": "New",
                        "position": 5,
                        "todos": [{"id": 1, "title": "a", "list_id": 9}],
                    },
                },
            }
        )

        assert event.list.todos[0].position == 0


class TestNullChanges:
    """Explicit nulls are refused for fields that cannot be empty."""

    @pytest.mark.parametrize(
        "model, changes",
        [
            (TodoChanges, {"title": None}),
            (ListChanges, {"name": None}),
            (ListChanges, {"position": None}),
            (ChecklistItemChanges, {"is_completed": None}),
        ],
    )
    def test_null_rejected(self, model, changes):
        with pytest.raises(ValidationError):
            model.model_validate(changes)

    def test_nullable_fields_accept_null(self):
        changes = TodoChanges.model_validate({"description": None, "assigned_to": None})

        assert changes.as_update() == {"description": None, "assigned_to": None}

    def test_null_title_event_is_malformed(self):
        with pytest.raises(MalformedEvent):
            parse_board_event({"type": "todo:updated", "data": {"todo_id": 7, "changes": {"title": None}}})
