"""Error taxonomy shared by the real-time server and the board client."""

from typing import Optional


class SyncError(Exception):
    """Base class for synchronization errors."""

    code = "SYNC_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def to_payload(self) -> dict:
        """Render the error as an ``error`` event payload."""
        return {"error": self.code, "message": self.message}


class AuthFailure(SyncError):
    """Credential missing, invalid or expired."""

    code = "AUTH_FAILURE"


class PermissionDenied(SyncError):
    """Authenticated, but not allowed to touch the workspace or entity."""

    code = "PERMISSION_DENIED"


class NotFound(SyncError):
    """The referenced entity does not exist."""

    code = "NOT_FOUND"


class Conflict(SyncError):
    """Unique constraint violation, e.g. duplicate label name."""

    code = "CONFLICT"


class TransientNetworkFailure(SyncError):
    """The request never reached the server or timed out."""

    code = "NETWORK_FAILURE"


class MalformedEvent(SyncError):
    """A frame or event payload failed validation at the channel boundary."""

    code = "MALFORMED_EVENT"


class StaleEventError(SyncError):
    """An inbound event older than the state already held."""

    code = "STALE_EVENT"


__all__ = [
    "SyncError",
    "AuthFailure",
    "PermissionDenied",
    "NotFound",
    "Conflict",
    "TransientNetworkFailure",
    "MalformedEvent",
    "StaleEventError",
]
