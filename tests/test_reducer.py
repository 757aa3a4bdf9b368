"""Tests for the pure board transitions."""

import pytest

from boardsync.client import reducer
from boardsync.schemas.board import ChecklistItem, Label
from boardsync.schemas.events import CHECKLIST_ITEM, LIST, TODO, parse_board_event


def event(event_type, **data):
    return parse_board_event({"type": event_type, "data": data})


def todo_ids(board, list_id):
    return [todo.id for todo in board.find_list(list_id).todos]


class TestLabelSetSemantics:
    """Label attachment is idempotent in both directions."""

    def test_add_label_twice_keeps_one_copy(self, board):
        label = board.find_label(5)

        once = reducer.add_label_to_todo(board, 7, label)
        twice = reducer.add_label_to_todo(once, 7, label)

        assert [entry.id for entry in twice.find_todo(7).labels] == [5]
        assert twice is once

    def test_remove_absent_label_is_noop(self, board):
        assert reducer.remove_label_from_todo(board, 7, 5) is board

    def test_replayed_label_event_is_idempotent(self, board):
        added = event("todo:label-added", todo_id=7, label_id=5)

        result = reducer.apply_event(reducer.apply_event(board, added), added)

        assert [entry.id for entry in result.find_todo(7).labels] == [5]

    def test_label_event_without_copy_uses_workspace_label(self, board):
        result = reducer.apply_event(board, event("todo:label-added", todo_id=7, label_id=6))

        assert result.find_todo(7).labels[0].color == "#00ff00"

    def test_unknown_label_without_copy_is_ignored(self, board):
        assert reducer.apply_event(board, event("todo:label-added", todo_id=7, label_id=99)) is board


class TestFieldWiseMerge:
    """Inbound updates never overwrite locally pending fields."""

    def test_pending_field_is_masked(self, board):
        local = reducer.update_todo(board, 7, {"title": "Local title"})
        inbound = event(
            "todo:updated",
            todo_id=7,
            changes={"title": "Remote title", "description": "Remote body"},
        )

        result = reducer.apply_event(local, inbound, {(TODO, 7): frozenset({"title"})})

        todo = result.find_todo(7)
        assert todo.title == "Local title"
        assert todo.description == "Remote body"

    def test_fields_absent_from_update_are_kept(self, board):
        edited = reducer.update_todo(board, 7, {"description": "Body"})

        result = reducer.apply_event(edited, event("todo:updated", todo_id=7, changes={"title": "New"}))

        assert result.find_todo(7).description == "Body"
        assert result.find_todo(7).title == "New"

    def test_pending_move_ignores_inbound_move(self, board):
        inbound = event("todo:moved", todo_id=7, to_list_id=2, position=0)

        result = reducer.apply_event(board, inbound, {(TODO, 7): frozenset({reducer.MOVE_FIELD})})

        assert result is board

    def test_pending_assignment_ignores_inbound_unassign(self, board):
        assigned = reducer.assign_member(board, 7, 10, "alice")
        inbound = event("todo:member-unassigned", todo_id=7, member_id=10)

        result = reducer.apply_event(
            assigned, inbound, {(TODO, 7): frozenset({reducer.ASSIGNMENT_FIELD})}
        )

        assert result.find_todo(7).assigned_to == 10


class TestAtomicMove:
    """A moved todo is in exactly one list."""

    def test_move_between_lists(self, board):
        result = reducer.move_todo(board, 7, 2, 0)

        assert todo_ids(result, 1) == [8]
        assert todo_ids(result, 2) == [7]
        assert result.find_todo(7).list_id == 2

    def test_move_within_list_resorts(self, board):
        result = reducer.move_todo(board, 7, 1, 5)

        assert todo_ids(result, 1) == [8, 7]

    def test_move_to_unknown_list_is_noop(self, board):
        assert reducer.move_todo(board, 7, 99, 0) is board

    def test_input_snapshot_untouched(self, board):
        reducer.move_todo(board, 7, 2, 0)

        assert todo_ids(board, 1) == [7, 8]


class TestOrdering:
    """Collections stay sorted by position."""

    def test_add_list_is_sorted(self, board):
        from boardsync.schemas.board import BoardList

        result = reducer.add_list(board, BoardList(id=3, name="Doing", position=0))

        assert [entry.position for entry in result.lists] == [0, 0, 1]
        assert result.lists[-1].id == 2

    def test_positions_event_reorders_lists(self, board):
        inbound = event(
            "list:positions-updated",
            positions=[{"id": 1, "position": 1}, {"id": 2, "position": 0}],
        )

        result = reducer.apply_event(board, inbound)

        assert [entry.id for entry in result.lists] == [2, 1]

    def test_positions_event_skips_pending_list(self, board):
        inbound = event(
            "list:positions-updated",
            positions=[{"id": 1, "position": 5}, {"id": 2, "position": 3}],
        )

        result = reducer.apply_event(board, inbound, {(LIST, 1): frozenset({"position"})})

        assert result.find_list(1).position == 0
        assert result.find_list(2).position == 3


class TestWorkspaceLabels:
    """Workspace label changes reach every attached copy."""

    def test_label_update_propagates_to_todos(self, board):
        attached = reducer.add_label_to_todo(board, 7, board.find_label(5))

        result = reducer.apply_event(
            attached, event("label:updated", label_id=5, changes={"color": "#123456"})
        )

        assert result.find_label(5).color == "#123456"
        assert result.find_todo(7).labels[0].color == "#123456"

    def test_label_delete_detaches_from_todos(self, board):
        attached = reducer.add_label_to_todo(board, 7, board.find_label(5))

        result = reducer.apply_event(attached, event("label:deleted", label_id=5))

        assert result.find_label(5) is None
        assert result.find_todo(7).labels == []


class TestChecklist:
    """Checklist items and aggregate counts."""

    def test_counts_from_loaded_items(self, board):
        item = ChecklistItem(id=72, title="Merge", todo_id=8, position=2, is_completed=True)

        result = reducer.upsert_checklist_item(board, 8, item)

        todo = result.find_todo(8)
        assert todo.checklist_count == 3
        assert todo.completed_checklist_count == 2

    def test_unloaded_checklist_takes_server_counts(self, board):
        inbound = event(
            "todo:checklist-item-created",
            todo_id=7,
            item={"id": 90, "title": "x", "todo_id": 7},
            checklist_count=4,
            completed_checklist_count=1,
        )

        result = reducer.apply_event(board, inbound)

        todo = result.find_todo(7)
        assert todo.checklist_items is None
        assert (todo.checklist_count, todo.completed_checklist_count) == (4, 1)

    def test_pending_delete_ignores_inbound_update(self, board):
        removed = reducer.remove_checklist_item(board, 8, 71)
        inbound = event(
            "todo:checklist-item-updated",
            todo_id=8,
            item={"id": 71, "title": "Comment", "todo_id": 8, "position": 1, "is_completed": True},
            checklist_count=2,
            completed_checklist_count=2,
        )

        result = reducer.apply_event(
            removed, inbound, {(CHECKLIST_ITEM, 71): frozenset({reducer.DELETED_FIELD})}
        )

        assert [item.id for item in result.find_todo(8).checklist_items] == [70]

    def test_replace_placeholder_after_echo(self, board):
        placeholder = ChecklistItem(id=-1, title="New", todo_id=8, position=2)
        confirmed = ChecklistItem(id=72, title="New", todo_id=8, position=2)
        with_placeholder = reducer.upsert_checklist_item(board, 8, placeholder)
        echoed = reducer.upsert_checklist_item(with_placeholder, 8, confirmed)

        result = reducer.replace_checklist_item_id(echoed, 8, -1, confirmed)

        assert [item.id for item in result.find_todo(8).checklist_items] == [70, 71, 72]
        assert result.find_todo(8).checklist_count == 3


class TestApplyEvent:
    """Dispatch edge cases."""

    def test_event_for_unknown_todo_is_noop(self, board):
        assert reducer.apply_event(board, event("todo:deleted", todo_id=999)) is board

    def test_created_todo_lands_in_its_list(self, board):
        inbound = event("todo:created", todo={"id": 9, "title": "New", "list_id": 2, "position": 0})

        result = reducer.apply_event(board, inbound)

        assert todo_ids(result, 2) == [9]

    def test_unknown_event_class_raises(self, board):
        with pytest.raises(TypeError):
            reducer.apply_event(board, Label(id=1, color="#fff"))
