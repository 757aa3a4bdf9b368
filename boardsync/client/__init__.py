"""Client half: reconciliation store, persistence adapter and real-time channel."""

from .channel import RealtimeChannel
from .persistence import EntityKind, HttpPersistenceService, PersistenceService
from .store import BoardStore, EntityState, MutationResult

__all__ = [
    "BoardStore",
    "EntityKind",
    "EntityState",
    "HttpPersistenceService",
    "MutationResult",
    "PersistenceService",
    "RealtimeChannel",
]
