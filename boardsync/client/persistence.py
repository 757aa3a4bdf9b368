"""Persistence Service contract and its HTTP adapter.

The board store never talks to the REST backend directly; it goes through
the ``PersistenceService`` protocol so tests can swap in an in-memory fake.
``HttpPersistenceService`` maps the five abstract operations onto the REST
routes and translates failures into the sync error taxonomy.
"""

import logging
from enum import Enum
from typing import Any, Optional, Protocol

import httpx

from ..config import settings
from ..exceptions import (
    AuthFailure,
    Conflict,
    NotFound,
    PermissionDenied,
    SyncError,
    TransientNetworkFailure,
)
from ..schemas.board import BoardSnapshot, PositionUpdate

logger = logging.getLogger(__name__)


class EntityKind(str, Enum):
    """Kinds of entities the persistence service manages."""

    LIST = "list"
    TODO = "todo"
    LABEL = "label"
    CHECKLIST_ITEM = "checklist_item"
    # Label attachment on a todo (parent is the todo)
    TODO_LABEL = "todo_label"


class PersistenceService(Protocol):
    """CRUD operations over board entities, keyed by opaque integer ids."""

    async def fetch_workspace_board(self, workspace_id: int) -> BoardSnapshot:
        ...

    async def create_entity(
        self,
        kind: EntityKind,
        fields: dict[str, Any],
        parent_id: Optional[int] = None,
    ) -> dict[str, Any]:
        ...

    async def update_entity(
        self,
        kind: EntityKind,
        entity_id: int,
        fields: dict[str, Any],
        parent_id: Optional[int] = None,
    ) -> dict[str, Any]:
        ...

    async def delete_entity(
        self,
        kind: EntityKind,
        entity_id: int,
        parent_id: Optional[int] = None,
    ) -> None:
        ...

    async def reorder_entities(
        self,
        kind: EntityKind,
        positions: list[PositionUpdate],
    ) -> None:
        ...


# Request bodies use the REST backend's camelCase keys
_REQUEST_KEYS = {
    "workspace_id": "workspaceId",
    "list_id": "listId",
    "label_id": "labelId",
    "assigned_to": "assignedTo",
    "due_date": "dueDate",
    "due_time": "dueTime",
    "is_completed": "isCompleted",
}

# Response envelopes wrap the row under one of these keys
_ENVELOPE_KEYS = ("todo", "list", "label", "checklistItem", "checklist_item", "item")

_STATUS_ERRORS: dict[int, type[SyncError]] = {
    401: AuthFailure,
    403: PermissionDenied,
    404: NotFound,
    409: Conflict,
}


def _request_body(fields: dict[str, Any]) -> dict[str, Any]:
    body = {}
    for key, value in fields.items():
        if hasattr(value, "isoformat"):
            value = value.isoformat()
        body[_REQUEST_KEYS.get(key, key)] = value
    return body


def _unwrap(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        return {}
    for key in _ENVELOPE_KEYS:
        if isinstance(payload.get(key), dict):
            return payload[key]
    return payload


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        message = body.get("error") or body.get("detail")
        if message:
            return str(message)
    return response.reason_phrase


class HttpPersistenceService:
    """
    Persistence Service adapter over the REST backend.

    Args:
        base_url: Backend base URL, e.g. ``http://localhost:3000``
        token: The user's bearer credential
        client: Optional preconfigured ``httpx.AsyncClient`` (tests pass one
            built on ``httpx.MockTransport``)
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.client = client or httpx.AsyncClient(
            timeout=timeout if timeout is not None else settings.persistence_timeout
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict[str, Any]] = None,
    ) -> Any:
        """
        Send one request and map failures onto the error taxonomy.

        Raises:
            TransientNetworkFailure: If the request never completed
            AuthFailure, PermissionDenied, NotFound, Conflict: By status code
            SyncError: For any other non-2xx response
        """
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.token}"}
        try:
            response = await self.client.request(method, url, json=json, headers=headers)
        except httpx.TransportError as e:
            logger.warning(f"{method} {path} failed: {e!r}")
            raise TransientNetworkFailure(f"Request to {path} failed: {e}") from e

        if response.is_success:
            if not response.content:
                return None
            try:
                return response.json()
            except ValueError:
                return None

        message = _error_message(response)
        error_cls = _STATUS_ERRORS.get(response.status_code, SyncError)
        logger.info(f"{method} {path} -> {response.status_code}: {message}")
        raise error_cls(message, status_code=response.status_code)

    async def fetch_workspace_board(self, workspace_id: int) -> BoardSnapshot:
        """Fetch the full board of a workspace."""
        body = await self._request("GET", f"/api/workspaces/{workspace_id}") or {}
        workspace = body.get("workspace") or {}
        return BoardSnapshot.model_validate(
            {
                "workspace_id": workspace.get("id", workspace_id),
                "name": workspace.get("name", ""),
                "description": workspace.get("description"),
                "lists": body.get("lists") or workspace.get("lists") or [],
                "labels": body.get("labels") or workspace.get("labels") or [],
                "members": body.get("members") or workspace.get("members") or [],
            }
        )

    async def create_entity(
        self,
        kind: EntityKind,
        fields: dict[str, Any],
        parent_id: Optional[int] = None,
    ) -> dict[str, Any]:
        """
        Create an entity and return the stored row.

        Args:
            kind: Entity kind
            fields: Column values
            parent_id: Owning todo for checklist items and label attachments

        Returns:
            dict: The row as returned by the backend
        """
        if kind == EntityKind.LIST:
            path = "/api/lists"
        elif kind == EntityKind.TODO:
            path = "/api/todos"
        elif kind == EntityKind.LABEL:
            path = "/api/labels"
        elif kind == EntityKind.CHECKLIST_ITEM:
            path = f"/api/todos/{self._require_parent(kind, parent_id)}/checklist"
        elif kind == EntityKind.TODO_LABEL:
            path = f"/api/todos/{self._require_parent(kind, parent_id)}/labels"
        else:
            raise ValueError(f"Unsupported entity kind: {kind}")

        return _unwrap(await self._request("POST", path, json=_request_body(fields)))

    async def update_entity(
        self,
        kind: EntityKind,
        entity_id: int,
        fields: dict[str, Any],
        parent_id: Optional[int] = None,
    ) -> dict[str, Any]:
        """
        Update an entity and return the stored row.

        A todo update carrying ``list_id`` is a move and goes to the move
        route, which reassigns list and position atomically.
        """
        method = "PUT"
        if kind == EntityKind.LIST:
            path = f"/api/lists/{entity_id}"
        elif kind == EntityKind.TODO:
            path = f"/api/todos/{entity_id}"
            if "list_id" in fields:
                path = f"{path}/move"
        elif kind == EntityKind.LABEL:
            path = f"/api/labels/{entity_id}"
        elif kind == EntityKind.CHECKLIST_ITEM:
            method = "PATCH"
            path = f"/api/todos/{self._require_parent(kind, parent_id)}/checklist/{entity_id}"
        else:
            raise ValueError(f"Unsupported entity kind for update: {kind}")

        return _unwrap(await self._request(method, path, json=_request_body(fields)))

    async def delete_entity(
        self,
        kind: EntityKind,
        entity_id: int,
        parent_id: Optional[int] = None,
    ) -> None:
        """Delete an entity (or detach a label from a todo)."""
        if kind == EntityKind.LIST:
            path = f"/api/lists/{entity_id}"
        elif kind == EntityKind.TODO:
            path = f"/api/todos/{entity_id}"
        elif kind == EntityKind.LABEL:
            path = f"/api/labels/{entity_id}"
        elif kind == EntityKind.CHECKLIST_ITEM:
            path = f"/api/todos/{self._require_parent(kind, parent_id)}/checklist/{entity_id}"
        elif kind == EntityKind.TODO_LABEL:
            path = f"/api/todos/{self._require_parent(kind, parent_id)}/labels/{entity_id}"
        else:
            raise ValueError(f"Unsupported entity kind: {kind}")

        await self._request("DELETE", path)

    async def reorder_entities(
        self,
        kind: EntityKind,
        positions: list[PositionUpdate],
    ) -> None:
        """Persist new positions for several lists or todos at once."""
        if kind == EntityKind.LIST:
            method, path, parent_key = "PUT", "/api/lists/positions", None
        elif kind == EntityKind.TODO:
            method, path, parent_key = "PATCH", "/api/todos/positions", "listId"
        else:
            raise ValueError(f"Unsupported entity kind for reorder: {kind}")

        entries = []
        for update in positions:
            entry: dict[str, Any] = {"id": update.id, "position": update.position}
            if parent_key and update.parent_id is not None:
                entry[parent_key] = update.parent_id
            entries.append(entry)

        body_key = "lists" if kind == EntityKind.LIST else "todos"
        await self._request(method, path, json={body_key: entries})

    @staticmethod
    def _require_parent(kind: EntityKind, parent_id: Optional[int]) -> int:
        if parent_id is None:
            raise ValueError(f"{kind.value} operations need the parent todo id")
        return parent_id


__all__ = [
    "EntityKind",
    "HttpPersistenceService",
    "PersistenceService",
]
