"""Identity gate: JWT verification yielding a user identity.

Password hashing and token issuance for end users belong to the REST
service; this module only verifies bearer credentials for the real-time
channel and the publish endpoints. ``create_access_token`` is kept for tools
and tests that need to mint a credential the gate accepts.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from ..config import settings
from ..exceptions import AuthFailure
from ..schemas.presence import UserIdentity

# OAuth2 scheme for token-based authentication (login lives in the REST service)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


class TokenData(BaseModel):
    """Token payload data schema."""

    user_id: Optional[int] = None
    username: Optional[str] = None
    email: Optional[str] = None


def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        data: Dictionary of claims to encode in the token
        expires_delta: Optional custom expiration time delta

    Returns:
        Encoded JWT token string
    """
    to_encode = data.copy()

    # Set expiration time
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(
            minutes=settings.jwt_expiration_minutes
        )

    to_encode.update({"exp": expire})

    return jwt.encode(
        to_encode,
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )


def decode_access_token(token: str) -> Optional[TokenData]:
    """
    Decode and validate a JWT access token.

    The user id is read from ``sub``, falling back to the ``userId`` and
    ``id`` claims issued by older tokens.

    Args:
        token: The JWT token string to decode

    Returns:
        TokenData with user information, or None if invalid
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return None

    raw_user_id = payload.get("sub") or payload.get("userId") or payload.get("id")
    if raw_user_id is None:
        return None

    try:
        user_id = int(raw_user_id)
    except (TypeError, ValueError):
        return None

    return TokenData(
        user_id=user_id,
        username=payload.get("username"),
        email=payload.get("email"),
    )


def resolve_identity(token: Optional[str]) -> UserIdentity:
    """
    Resolve a bearer credential to a verified identity.

    Args:
        token: The raw bearer token, possibly missing

    Returns:
        UserIdentity of the token's subject

    Raises:
        AuthFailure: If the token is missing, invalid, expired or incomplete
    """
    if not token:
        raise AuthFailure("Authentication required", status_code=401)

    token_data = decode_access_token(token)
    if token_data is None or token_data.user_id is None:
        raise AuthFailure("Invalid token", status_code=401)

    username = token_data.username or (
        token_data.email.split("@", 1)[0] if token_data.email else None
    )
    if not username:
        raise AuthFailure("Token carries no username", status_code=401)

    return UserIdentity(
        user_id=token_data.user_id,
        username=username,
        email=token_data.email,
    )


async def get_current_identity(
    token: str = Depends(oauth2_scheme),
) -> UserIdentity:
    """
    FastAPI dependency returning the caller's verified identity.

    Args:
        token: JWT token from Authorization header

    Returns:
        Verified UserIdentity

    Raises:
        HTTPException: If the token cannot be resolved
    """
    try:
        return resolve_identity(token)
    except AuthFailure as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )
