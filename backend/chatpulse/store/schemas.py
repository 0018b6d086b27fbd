"""Pydantic schemas for the durable records.

These are the shapes the stores return and the relay pushes to clients:
    - User / UserCredentials: directory records
    - Message: direct or group message with its read/seen flags
    - Group: a named set of members
    - RosterEntry: a user with registry-derived online status
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class MessageType(str, Enum):
    """Kind of message payload.

    Attributes:
        TEXT: Plain text; ``content`` must be non-empty.
        IMAGE, VIDEO, VOICE, FILE: Media; ``media_url`` must be present.
    """
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    VOICE = "voice"
    FILE = "file"


class User(BaseModel):
    """A directory user as exposed to other users.

    Attributes:
        id: Store-assigned identity.
        username: Unique handle.
        email: Contact address given at registration.
        online: Persisted online flag (a lagging cache of the registry).
        last_active: Last time the user connected, disconnected or logged in.
    """
    id: int = Field(..., description="User ID")
    username: str = Field(..., description="Unique handle")
    email: str = Field(default="", description="Email address")
    online: bool = Field(default=False, description="Persisted online flag")
    last_active: Optional[datetime] = Field(None, description="Last activity (UTC)")


class UserCredentials(User):
    """A user together with the stored password hash (never sent to clients)."""
    password_hash: str


class RosterEntry(BaseModel):
    """One row of a roster snapshot; ``online`` is derived from the registry."""
    id: int
    username: str
    online: bool
    last_active: Optional[datetime] = None


class Message(BaseModel):
    """A persisted message.

    Exactly one of ``recipient_id`` / ``group_id`` is set. ``id`` is assigned
    by the store and increases monotonically, so it breaks ties between
    messages sharing a ``created_at``.
    """
    id: int
    sender_id: int
    recipient_id: Optional[int] = None
    group_id: Optional[int] = None
    content: str = ""
    message_type: MessageType = MessageType.TEXT
    media_url: Optional[str] = None
    read: bool = False
    seen: bool = False
    created_at: datetime

    @model_validator(mode="after")
    def _single_destination(self) -> "Message":
        if (self.recipient_id is None) == (self.group_id is None):
            raise ValueError("exactly one of recipient_id or group_id must be set")
        return self


class Group(BaseModel):
    """A named group of users; the admin is always a member."""
    id: int
    name: str
    admin_id: int
    created_at: datetime
    member_ids: List[int] = Field(default_factory=list)
