"""Pydantic schemas for identities, presence and client control frames."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class UserIdentity(BaseModel):
    """Verified user identity handed over by the identity gate."""

    model_config = ConfigDict(frozen=True)

    user_id: int = Field(..., description="User identifier")
    username: str = Field(..., description="Display name")
    email: Optional[str] = Field(None, description="User email")


class PresenceSnapshot(BaseModel):
    """A user currently present in a workspace room."""

    model_config = ConfigDict(frozen=True)

    user_id: int = Field(..., description="User identifier")
    username: str = Field(..., description="Display name")
    last_seen: datetime = Field(..., description="Last join or activity time (UTC)")


class WorkspaceRef(BaseModel):
    """Payload of ``join-workspace`` and ``leave-workspace``."""

    workspace_id: int = Field(..., gt=0, description="Target workspace")


class UserActivityPayload(BaseModel):
    """Payload of a client ``user-activity`` frame."""

    workspace_id: int = Field(..., gt=0, description="Workspace the activity happens in")
    activity: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Free-form activity, e.g. 'typing' or 'editing card 7'",
        examples=["typing"],
    )


class PublishResult(BaseModel):
    """Response of the board event publish endpoint."""

    recipients: int = Field(..., description="Connections the event was delivered to")
    revision: int = Field(..., description="Revision stamped on the event")


class UnicastRequest(BaseModel):
    """Body of the unicast endpoint."""

    type: str = Field(..., min_length=1, max_length=100, description="Event name")
    data: dict = Field(default_factory=dict, description="Event payload")


class UnicastResult(BaseModel):
    """Response of the unicast endpoint."""

    delivered: bool = Field(..., description="Whether the user had a live connection")
