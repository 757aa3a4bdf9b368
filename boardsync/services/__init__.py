"""Services used by the real-time server."""

from .auth_service import (
    TokenData,
    create_access_token,
    decode_access_token,
    get_current_identity,
    resolve_identity,
)

__all__ = [
    "TokenData",
    "create_access_token",
    "decode_access_token",
    "get_current_identity",
    "resolve_identity",
]
