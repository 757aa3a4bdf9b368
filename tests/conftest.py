"""Shared pytest fixtures for board sync tests."""

import asyncio
import os
from typing import Any, Generator, Optional

# Settings are read at import time
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-unit-tests")
os.environ["PERSISTENCE_API_URL"] = ""

import pytest
from fastapi.testclient import TestClient

from boardsync.client.persistence import EntityKind
from boardsync.client.store import BoardStore
from boardsync.main import app
from boardsync.schemas.board import BoardSnapshot, PositionUpdate
from boardsync.services.auth_service import create_access_token

WORKSPACE_ID = 42


def make_board(**overrides: Any) -> BoardSnapshot:
    """
    Build the reference board used across tests.

    Workspace 42 has a "Todo" list holding card 7 ("Draft outline") and card 8,
    an empty "Done" list, labels 5 (red) and 6 (green), and two members.
    """
    data = {
        "workspace_id": WORKSPACE_ID,
        "name": "Team board",
        "lists": [
            {
                "id": 1,
                "name": "Todo",
                "position": 0,
                "workspace_id": WORKSPACE_ID,
                "todos": [
                    {"id": 7, "title": "Draft outline", "list_id": 1, "position": 0},
                    {
                        "id": 8,
                        "title": "Review",
                        "list_id": 1,
                        "position": 1,
                        "checklist_items": [
                            {"id": 70, "title": "Read", "todo_id": 8, "position": 0, "is_completed": True},
                            {"id": 71, "title": "Comment", "todo_id": 8, "position": 1},
                        ],
                    },
                ],
            },
            {"id": 2, "name": "Done", "position": 1, "workspace_id": WORKSPACE_ID, "todos": []},
        ],
        "labels": [
            {"id": 5, "name": "urgent", "color": "#ff0000", "workspace_id": WORKSPACE_ID},
            {"id": 6, "name": "easy", "color": "#00ff00", "workspace_id": WORKSPACE_ID},
        ],
        "members": [
            {"id": 10, "username": "alice", "email": "alice@example.com", "role": "admin"},
            {"id": 11, "username": "bob", "email": "bob@example.com", "role": "member"},
        ],
    }
    data.update(overrides)
    return BoardSnapshot.model_validate(data)


class FakePersistence:
    """
    In-memory Persistence Service.

    ``board`` is what a fetch returns (server truth). Set ``gate`` to an
    ``asyncio.Event`` to hold mutation calls until it is set (``fetch_gate``
    does the same for fetches), and ``fail_with`` to make mutation calls raise.
    """

    def __init__(self, board: BoardSnapshot) -> None:
        self.board = board
        self.calls: list[tuple] = []
        self.gate: Optional[asyncio.Event] = None
        self.fail_with: Optional[Exception] = None
        self.fetch_error: Optional[Exception] = None
        self.fetch_gate: Optional[asyncio.Event] = None
        self.next_id = 100

    async def _mutation(self, *call: Any) -> None:
        self.calls.append(call)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with

    async def fetch_workspace_board(self, workspace_id: int) -> BoardSnapshot:
        self.calls.append(("fetch", workspace_id))
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.board

    async def create_entity(
        self,
        kind: EntityKind,
        fields: dict[str, Any],
        parent_id: Optional[int] = None,
    ) -> dict[str, Any]:
        await self._mutation("create", kind, fields, parent_id)
        if kind == EntityKind.TODO_LABEL:
            label = self.board.find_label(fields["label_id"])
            return label.model_dump(mode="json")
        self.next_id += 1
        return {"id": self.next_id, **fields}

    async def update_entity(
        self,
        kind: EntityKind,
        entity_id: int,
        fields: dict[str, Any],
        parent_id: Optional[int] = None,
    ) -> dict[str, Any]:
        await self._mutation("update", kind, entity_id, fields, parent_id)
        return {"id": entity_id, **fields}

    async def delete_entity(
        self,
        kind: EntityKind,
        entity_id: int,
        parent_id: Optional[int] = None,
    ) -> None:
        await self._mutation("delete", kind, entity_id, parent_id)

    async def reorder_entities(self, kind: EntityKind, positions: list[PositionUpdate]) -> None:
        await self._mutation("reorder", kind, positions)

    def mutation_calls(self) -> list[tuple]:
        return [call for call in self.calls if call[0] != "fetch"]


@pytest.fixture
def board() -> BoardSnapshot:
    """The reference board."""
    return make_board()


@pytest.fixture
def persistence(board: BoardSnapshot) -> FakePersistence:
    """Fake persistence whose server truth is the reference board."""
    return FakePersistence(board)


@pytest.fixture
def store(board: BoardSnapshot, persistence: FakePersistence) -> BoardStore:
    """Store already holding the reference board."""
    return BoardStore(WORKSPACE_ID, persistence, snapshot=board)


def make_token(user_id: int, username: str, email: Optional[str] = None) -> str:
    """Mint a bearer token the identity gate accepts."""
    claims: dict[str, Any] = {"sub": str(user_id), "username": username}
    if email:
        claims["email"] = email
    return create_access_token(claims)


@pytest.fixture
def auth_token() -> str:
    return make_token(1, "alice", "alice@example.com")


@pytest.fixture
def auth_token_2() -> str:
    return make_token(2, "bob", "bob@example.com")


@pytest.fixture
def auth_headers(auth_token: str) -> dict:
    """Create authorization headers."""
    return {"Authorization": f"Bearer {auth_token}"}


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    """Test client with the application lifespan running."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def board_factory():
    """Build variants of the reference board."""
    return make_board


@pytest.fixture
def token_factory():
    """Mint tokens for arbitrary users."""
    return make_token
