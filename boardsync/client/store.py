"""Client-side reconciliation store for one workspace board.

The store owns a ``BoardSnapshot`` and three input streams:

- local intents (``update_todo``, ``move_todo``, ...) applied optimistically
  before the persistence call is awaited,
- persistence confirmations and rejections,
- inbound board events from the real-time channel.

Each local intent marks the fields it touches as pending on the entity.
Inbound events never overwrite a pending field; a confirmation clears only
the pending marks it issued, so a field edited again meanwhile stays
pending. Any rejection rolls back by reloading the whole board.
"""

import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import ValidationError

from ..exceptions import MalformedEvent, NotFound, StaleEventError, SyncError
from ..schemas.board import (
    BoardList,
    BoardSnapshot,
    ChecklistItem,
    ChecklistItemChanges,
    Label,
    TodoChanges,
)
from ..schemas.events import (
    CHECKLIST_ITEM,
    LABEL,
    LIST,
    TODO,
    BoardEventBase,
    ChecklistItemCreated,
    EntityKey,
    ListCreated,
    ListPositionsUpdated,
    parse_board_event,
)
from . import reducer
from .persistence import EntityKind, PersistenceService

logger = logging.getLogger(__name__)

Listener = Callable[[BoardSnapshot], None]

_ENTITY_KINDS = (TODO, LIST, LABEL, CHECKLIST_ITEM)


class EntityState(str, Enum):
    """Reconciliation state of one board entity."""

    CONFIRMED = "confirmed"
    PENDING_LOCAL = "pending_local"
    RECONCILING = "reconciling"


@dataclass
class MutationResult:
    """Outcome of a local intent, returned instead of raising."""

    ok: bool
    error: Optional[SyncError] = None
    entity_id: Optional[int] = None

    @property
    def message(self) -> Optional[str]:
        return self.error.message if self.error else None


@dataclass
class PendingCreate:
    """An optimistic create still shown under its placeholder id."""

    kind: str
    placeholder_id: int
    name: str
    parent_id: Optional[int] = None


class BoardStore:
    """
    Reconciliation store for one workspace.

    Args:
        workspace_id: The workspace this store mirrors
        persistence: Persistence Service used for fetches and mutations
        snapshot: Optional initial snapshot (otherwise empty until ``load``)
    """

    def __init__(
        self,
        workspace_id: int,
        persistence: PersistenceService,
        snapshot: Optional[BoardSnapshot] = None,
    ) -> None:
        self.workspace_id = workspace_id
        self._persistence = persistence
        self._snapshot = snapshot or BoardSnapshot(workspace_id=workspace_id)
        self.loaded = snapshot is not None
        self.last_error: Optional[SyncError] = None

        # entity key -> {field: sequence number of the intent that set it}
        self._pending: dict[EntityKey, dict[str, int]] = {}
        self._reconciling: set[EntityKey] = set()
        # entity key -> highest revision applied
        self._revisions: dict[EntityKey, int] = {}
        self._sequence = itertools.count(1)
        self._placeholder_ids = itertools.count(-1, -1)
        # placeholder id -> create awaiting confirmation, oldest first
        self._pending_creates: dict[int, PendingCreate] = {}
        self._listeners: list[Listener] = []
        # Events arriving while a fetch is in flight are replayed afterwards
        self._loading = 0
        self._buffered: list[BoardEventBase] = []

    # ------------------------------------------------------------------
    # Snapshot access
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> BoardSnapshot:
        return self._snapshot

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a callback invoked with every new snapshot.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def entity_state(self, kind: str, entity_id: int) -> EntityState:
        """Get the reconciliation state of an entity."""
        if kind not in _ENTITY_KINDS:
            raise ValueError(f"Unknown entity kind: {kind}")
        key = (kind, entity_id)
        if key not in self._pending:
            return EntityState.CONFIRMED
        if key in self._reconciling:
            return EntityState.RECONCILING
        return EntityState.PENDING_LOCAL

    def pending_fields(self, kind: str, entity_id: int) -> frozenset[str]:
        """Fields of an entity with a local edit in flight."""
        return frozenset(self._pending.get((kind, entity_id), {}))

    def _commit(self, board: BoardSnapshot) -> None:
        if board is self._snapshot:
            return
        self._snapshot = board
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._snapshot)
            except Exception:
                logger.exception("Board listener failed")

    # ------------------------------------------------------------------
    # Pending bookkeeping
    # ------------------------------------------------------------------

    def _mark_pending(self, key: EntityKey, fields: set[str]) -> dict[str, int]:
        sequence = next(self._sequence)
        marks = self._pending.setdefault(key, {})
        tokens = {}
        for field_name in fields:
            marks[field_name] = sequence
            tokens[field_name] = sequence
        return tokens

    def _clear_pending(self, key: EntityKey, tokens: dict[str, int]) -> bool:
        """
        Clear the marks an intent issued.

        Returns:
            True if none of the fields was edited again since
        """
        marks = self._pending.get(key)
        if marks is None:
            return False
        current = True
        for field_name, sequence in tokens.items():
            if marks.get(field_name) == sequence:
                del marks[field_name]
            else:
                current = False
        if not marks:
            del self._pending[key]
            self._reconciling.discard(key)
        return current

    def _reset_pending(self) -> None:
        self._pending.clear()
        self._reconciling.clear()
        self._pending_creates.clear()

    def _pending_view(self) -> dict[EntityKey, frozenset[str]]:
        return {key: frozenset(marks) for key, marks in self._pending.items()}

    # ------------------------------------------------------------------
    # Loading and rollback
    # ------------------------------------------------------------------

    async def load(self) -> bool:
        """
        Fetch the board from the Persistence Service and replace the snapshot.

        Used for the initial fetch and for every resync. All pending state
        is cleared either way; on failure the last snapshot is kept and the
        error is recorded in ``last_error``.

        Returns:
            bool: True if a fresh snapshot was installed
        """
        self._loading += 1
        try:
            board = await self._persistence.fetch_workspace_board(self.workspace_id)
        except SyncError as e:
            logger.warning(f"Loading workspace {self.workspace_id} failed: {e.message}")
            self.last_error = e
            self._reset_pending()
            ok = False
        except Exception as e:
            logger.exception(f"Unexpected failure loading workspace {self.workspace_id}")
            self.last_error = SyncError(f"Loading the board failed: {e}")
            self._reset_pending()
            ok = False
        else:
            self._reset_pending()
            self._snapshot = board
            self.loaded = True
            self.last_error = None
            ok = True
        finally:
            self._loading -= 1

        if self._loading == 0 and self._buffered:
            buffered, self._buffered = self._buffered, []
            for event in buffered:
                self._apply(event, notify=False)

        self._notify()
        return ok

    async def _rollback(self, error: SyncError) -> None:
        logger.info(
            f"Mutation rejected in workspace {self.workspace_id} ({error.code}), resyncing"
        )
        if await self.load():
            self.last_error = error

    async def _persist(
        self,
        key: EntityKey,
        tokens: dict[str, int],
        call: Callable[[], Awaitable[Any]],
        on_confirm: Optional[Callable[[Any, bool], Optional[int]]] = None,
        entity_id: Optional[int] = None,
    ) -> MutationResult:
        """Await a persistence call and settle the intent's pending marks."""
        try:
            row = await call()
        except SyncError as e:
            await self._rollback(e)
            return MutationResult(ok=False, error=e)
        except Exception as e:
            logger.exception(f"Unexpected persistence failure for {key}")
            error = SyncError(f"Unexpected failure: {e}")
            await self._rollback(error)
            return MutationResult(ok=False, error=error)

        current = self._clear_pending(key, tokens)
        if on_confirm is not None:
            try:
                confirmed_id = on_confirm(row, current)
            except (ValidationError, KeyError, TypeError) as e:
                logger.warning(f"Unreadable confirmation for {key}: {e}")
                error = SyncError("The server returned an unreadable row")
                await self._rollback(error)
                return MutationResult(ok=False, error=error)
            if confirmed_id is not None:
                entity_id = confirmed_id
        else:
            # Pending marks changed even if the snapshot did not
            self._notify()
        return MutationResult(ok=True, entity_id=entity_id)

    # ------------------------------------------------------------------
    # Local intents
    # ------------------------------------------------------------------

    async def create_list(self, name: str) -> MutationResult:
        """Create a list at the end of the board."""
        name = (name or "").strip()
        if not name:
            return MutationResult(ok=False, error=SyncError("List name is required"))

        board = self._snapshot
        position = max((entry.position for entry in board.lists), default=-1) + 1
        placeholder_id = next(self._placeholder_ids)
        key = (LIST, placeholder_id)
        tokens = self._mark_pending(key, {"name", "position"})
        self._commit(
            reducer.add_list(
                board,
                BoardList(
                    id=placeholder_id,
                    name=name,
                    position=position,
                    workspace_id=self.workspace_id,
                ),
            )
        )
        self._pending_creates[placeholder_id] = PendingCreate(LIST, placeholder_id, name)

        def confirm(row: Any, current: bool) -> int:
            self._pending_creates.pop(placeholder_id, None)
            confirmed = BoardList.model_validate({"todos": [], **row})
            self._commit(reducer.replace_list_id(self._snapshot, placeholder_id, confirmed))
            return confirmed.id

        return await self._persist(
            key,
            tokens,
            lambda: self._persistence.create_entity(
                EntityKind.LIST,
                {"name": name, "workspace_id": self.workspace_id, "position": position},
            ),
            on_confirm=confirm,
            entity_id=placeholder_id,
        )

    async def update_todo(
        self,
        todo_id: int,
        fields: Union[TodoChanges, dict[str, Any]],
    ) -> MutationResult:
        """Update some fields of a todo."""
        if self._snapshot.find_todo(todo_id) is None:
            return self._not_found(f"Todo {todo_id} not found")
        try:
            changes = fields if isinstance(fields, TodoChanges) else TodoChanges.model_validate(fields)
        except ValidationError as e:
            return MutationResult(ok=False, error=SyncError(f"Invalid todo fields: {e.error_count()} error(s)"))

        update = changes.as_update()
        if not update:
            return MutationResult(ok=True, entity_id=todo_id)

        key = (TODO, todo_id)
        tokens = self._mark_pending(key, set(update))
        self._commit(reducer.update_todo(self._snapshot, todo_id, update))

        return await self._persist(
            key,
            tokens,
            lambda: self._persistence.update_entity(EntityKind.TODO, todo_id, update),
            entity_id=todo_id,
        )

    async def move_todo(self, todo_id: int, target_list_id: int, position: int) -> MutationResult:
        """Move a todo to another list (or another position in its list)."""
        if self._snapshot.find_todo(todo_id) is None:
            return self._not_found(f"Todo {todo_id} not found")
        if self._snapshot.find_list(target_list_id) is None:
            return self._not_found(f"List {target_list_id} not found")

        key = (TODO, todo_id)
        tokens = self._mark_pending(key, {reducer.MOVE_FIELD, "position"})
        self._commit(reducer.move_todo(self._snapshot, todo_id, target_list_id, position))

        return await self._persist(
            key,
            tokens,
            lambda: self._persistence.update_entity(
                EntityKind.TODO,
                todo_id,
                {"list_id": target_list_id, "position": position},
            ),
            entity_id=todo_id,
        )

    async def add_label_to_todo(self, todo_id: int, label_id: int) -> MutationResult:
        """Attach a workspace label to a todo. Attaching twice is a no-op."""
        todo = self._snapshot.find_todo(todo_id)
        if todo is None:
            return self._not_found(f"Todo {todo_id} not found")
        label = self._snapshot.find_label(label_id)
        if label is None:
            return self._not_found(f"Label {label_id} not found")
        if todo.has_label(label_id):
            return MutationResult(ok=True, entity_id=todo_id)

        key = (TODO, todo_id)
        tokens = self._mark_pending(key, {reducer.label_field(label_id)})
        self._commit(reducer.add_label_to_todo(self._snapshot, todo_id, label))

        def confirm(row: Any, current: bool) -> None:
            resolved = _resolved_label(row, label_id)
            if current and resolved is not None:
                self._commit(reducer.merge_todo_label(self._snapshot, todo_id, resolved))
            else:
                self._notify()

        return await self._persist(
            key,
            tokens,
            lambda: self._persistence.create_entity(
                EntityKind.TODO_LABEL, {"label_id": label_id}, parent_id=todo_id
            ),
            on_confirm=confirm,
            entity_id=todo_id,
        )

    async def remove_label_from_todo(self, todo_id: int, label_id: int) -> MutationResult:
        """Detach a label from a todo. Detaching a missing label is a no-op."""
        todo = self._snapshot.find_todo(todo_id)
        if todo is None:
            return self._not_found(f"Todo {todo_id} not found")
        if not todo.has_label(label_id):
            return MutationResult(ok=True, entity_id=todo_id)

        key = (TODO, todo_id)
        tokens = self._mark_pending(key, {reducer.label_field(label_id)})
        self._commit(reducer.remove_label_from_todo(self._snapshot, todo_id, label_id))

        return await self._persist(
            key,
            tokens,
            lambda: self._persistence.delete_entity(
                EntityKind.TODO_LABEL, label_id, parent_id=todo_id
            ),
            entity_id=todo_id,
        )

    async def assign_member_to_todo(self, todo_id: int, member_id: int) -> MutationResult:
        """Assign a workspace member to a todo."""
        if self._snapshot.find_todo(todo_id) is None:
            return self._not_found(f"Todo {todo_id} not found")
        member = self._snapshot.find_member(member_id)
        if member is None:
            return self._not_found(f"Member {member_id} not found")

        key = (TODO, todo_id)
        tokens = self._mark_pending(key, {reducer.ASSIGNMENT_FIELD, "assigned_username"})
        self._commit(reducer.assign_member(self._snapshot, todo_id, member.id, member.username))

        return await self._persist(
            key,
            tokens,
            lambda: self._persistence.update_entity(
                EntityKind.TODO, todo_id, {"assigned_to": member_id}
            ),
            entity_id=todo_id,
        )

    async def remove_member_from_todo(self, todo_id: int, member_id: int) -> MutationResult:
        """Remove a member's assignment from a todo."""
        todo = self._snapshot.find_todo(todo_id)
        if todo is None:
            return self._not_found(f"Todo {todo_id} not found")
        if todo.assigned_to != member_id:
            return MutationResult(ok=True, entity_id=todo_id)

        key = (TODO, todo_id)
        tokens = self._mark_pending(key, {reducer.ASSIGNMENT_FIELD, "assigned_username"})
        self._commit(reducer.unassign_member(self._snapshot, todo_id, member_id))

        return await self._persist(
            key,
            tokens,
            lambda: self._persistence.update_entity(
                EntityKind.TODO, todo_id, {"assigned_to": None}
            ),
            entity_id=todo_id,
        )

    async def add_checklist_item(self, todo_id: int, title: str) -> MutationResult:
        """Append a checklist item to a todo."""
        todo = self._snapshot.find_todo(todo_id)
        if todo is None:
            return self._not_found(f"Todo {todo_id} not found")
        title = (title or "").strip()
        if not title:
            return MutationResult(ok=False, error=SyncError("Checklist item title is required"))

        if todo.checklist_items:
            position = max(item.position for item in todo.checklist_items) + 1
        else:
            position = todo.checklist_count
        placeholder_id = next(self._placeholder_ids)
        key = (CHECKLIST_ITEM, placeholder_id)
        tokens = self._mark_pending(key, {"title", "is_completed", "position"})
        self._commit(
            reducer.upsert_checklist_item(
                self._snapshot,
                todo_id,
                ChecklistItem(id=placeholder_id, title=title, todo_id=todo_id, position=position),
            )
        )
        self._pending_creates[placeholder_id] = PendingCreate(
            CHECKLIST_ITEM, placeholder_id, title, parent_id=todo_id
        )

        def confirm(row: Any, current: bool) -> int:
            self._pending_creates.pop(placeholder_id, None)
            confirmed = ChecklistItem.model_validate({"todo_id": todo_id, **row})
            self._commit(
                reducer.replace_checklist_item_id(self._snapshot, todo_id, placeholder_id, confirmed)
            )
            return confirmed.id

        return await self._persist(
            key,
            tokens,
            lambda: self._persistence.create_entity(
                EntityKind.CHECKLIST_ITEM,
                {"title": title, "position": position},
                parent_id=todo_id,
            ),
            on_confirm=confirm,
            entity_id=placeholder_id,
        )

    async def update_checklist_item(
        self,
        todo_id: int,
        item_id: int,
        fields: Union[ChecklistItemChanges, dict[str, Any]],
    ) -> MutationResult:
        """Update a checklist item (title, completion, position)."""
        if self._find_item(todo_id, item_id) is None:
            return self._not_found(f"Checklist item {item_id} not found on todo {todo_id}")
        try:
            changes = (
                fields
                if isinstance(fields, ChecklistItemChanges)
                else ChecklistItemChanges.model_validate(fields)
            )
        except ValidationError as e:
            return MutationResult(ok=False, error=SyncError(f"Invalid checklist fields: {e.error_count()} error(s)"))

        update = changes.as_update()
        if not update:
            return MutationResult(ok=True, entity_id=item_id)

        key = (CHECKLIST_ITEM, item_id)
        tokens = self._mark_pending(key, set(update))
        self._commit(reducer.update_checklist_item(self._snapshot, todo_id, item_id, update))

        return await self._persist(
            key,
            tokens,
            lambda: self._persistence.update_entity(
                EntityKind.CHECKLIST_ITEM, item_id, update, parent_id=todo_id
            ),
            entity_id=item_id,
        )

    async def remove_checklist_item(self, todo_id: int, item_id: int) -> MutationResult:
        """Delete a checklist item."""
        if self._find_item(todo_id, item_id) is None:
            return self._not_found(f"Checklist item {item_id} not found on todo {todo_id}")

        key = (CHECKLIST_ITEM, item_id)
        tokens = self._mark_pending(key, {reducer.DELETED_FIELD})
        self._commit(reducer.remove_checklist_item(self._snapshot, todo_id, item_id))

        return await self._persist(
            key,
            tokens,
            lambda: self._persistence.delete_entity(
                EntityKind.CHECKLIST_ITEM, item_id, parent_id=todo_id
            ),
            entity_id=item_id,
        )

    def _find_item(self, todo_id: int, item_id: int) -> Optional[ChecklistItem]:
        todo = self._snapshot.find_todo(todo_id)
        if todo is None or not todo.checklist_items:
            return None
        return next((item for item in todo.checklist_items if item.id == item_id), None)

    @staticmethod
    def _not_found(message: str) -> MutationResult:
        return MutationResult(ok=False, error=NotFound(message))

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    def apply_message(self, message: dict[str, Any]) -> bool:
        """
        Decode and apply one ``{"type", "data"}`` board event frame.

        Malformed frames are logged and dropped.

        Returns:
            bool: True if the event changed or was folded into the state
        """
        try:
            event = parse_board_event(message)
        except MalformedEvent as e:
            logger.warning(f"Dropping malformed board event: {e.message}")
            return False
        except Exception:
            logger.exception("Dropping board event that could not be decoded")
            return False
        return self.apply_event(event)

    def apply_event(self, event: BoardEventBase) -> bool:
        """
        Apply one decoded board event.

        Stale events are dropped silently. Events arriving while the board
        is being fetched are held and replayed on top of the fetched board.

        Returns:
            bool: True if the event was applied now
        """
        if self._loading:
            self._buffered.append(event)
            return False
        return self._apply(event, notify=True)

    def _apply(self, event: BoardEventBase, notify: bool) -> bool:
        try:
            event = self._check_revision(event)
        except StaleEventError as e:
            logger.debug(e.message)
            return False

        keys = event.entity_keys()
        try:
            board, adopted = self._adopt_echo(self._snapshot, event)
            board = reducer.apply_event(board, event, self._pending_view())
        except Exception:
            logger.exception(f"Dropping board event {event.type} that failed to apply")
            return False

        if adopted is not None:
            del self._pending_creates[adopted]
        for key in keys:
            if key in self._pending:
                self._reconciling.add(key)
        if event.revision is not None:
            for key in keys:
                if self._revisions.get(key, -1) < event.revision:
                    self._revisions[key] = event.revision

        if notify:
            self._commit(board)
        else:
            self._snapshot = board
        return True

    def _adopt_echo(
        self,
        board: BoardSnapshot,
        event: BoardEventBase,
    ) -> tuple[BoardSnapshot, Optional[int]]:
        """
        Swap a placeholder for the real row when a create echo arrives first.

        The server broadcasts a create to the whole room, the originator
        included, and the echo can overtake the HTTP response. The oldest
        pending create of the same kind, parent and name takes the real id.

        Returns:
            The snapshot with the placeholder replaced, and the placeholder
            id that was adopted (None if nothing matched)
        """
        if isinstance(event, ListCreated):
            if board.find_list(event.list.id) is not None:
                return board, None
            for create in self._pending_creates.values():
                if (
                    create.kind == LIST
                    and create.name == event.list.name
                    and board.find_list(create.placeholder_id) is not None
                ):
                    return (
                        reducer.replace_list_id(board, create.placeholder_id, event.list),
                        create.placeholder_id,
                    )

        elif isinstance(event, ChecklistItemCreated):
            todo = board.find_todo(event.todo_id)
            items = todo.checklist_items if todo is not None else None
            if items is None or any(item.id == event.item.id for item in items):
                return board, None
            held = {item.id for item in items}
            for create in self._pending_creates.values():
                if (
                    create.kind == CHECKLIST_ITEM
                    and create.parent_id == event.todo_id
                    and create.name == event.item.title
                    and create.placeholder_id in held
                ):
                    return (
                        reducer.replace_checklist_item_id(
                            board, event.todo_id, create.placeholder_id, event.item
                        ),
                        create.placeholder_id,
                    )

        return board, None

    def _check_revision(self, event: BoardEventBase) -> BoardEventBase:
        """
        Drop events not newer than the state already held.

        Raises:
            StaleEventError: If every part of the event is stale
        """
        revision = event.revision
        if revision is None:
            return event

        if isinstance(event, ListPositionsUpdated):
            fresh = [
                entry for entry in event.positions
                if self._revisions.get((LIST, entry.id), -1) < revision
            ]
            if not fresh:
                raise StaleEventError(f"Stale {event.type} at revision {revision}")
            if len(fresh) != len(event.positions):
                event = event.model_copy(update={"positions": fresh})
            return event

        for key in event.entity_keys():
            if self._revisions.get(key, -1) >= revision:
                raise StaleEventError(
                    f"Stale {event.type} for {key} at revision {revision} "
                    f"(holding {self._revisions[key]})"
                )
        return event


def _resolved_label(row: Any, label_id: int) -> Optional[Label]:
    """Pick the attached label out of an add-label confirmation."""
    if not isinstance(row, dict):
        return None
    if row.get("id") == label_id and "color" in row:
        return Label.model_validate(row)
    nested = row.get("label")
    if isinstance(nested, dict) and nested.get("id") == label_id:
        return Label.model_validate(nested)
    for candidate in row.get("labels") or []:
        if isinstance(candidate, dict) and candidate.get("id") == label_id:
            return Label.model_validate(candidate)
    return None


__all__ = [
    "BoardStore",
    "EntityState",
    "Listener",
    "MutationResult",
    "PendingCreate",
]
