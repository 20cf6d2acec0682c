"""Pydantic models for chat messages and the HTTP / WebSocket payloads."""
from typing import List, Optional

from pydantic import BaseModel, Field


class MessageSubmission(BaseModel):
    """A message as submitted by a client, before validation.

    All fields are optional here so that the ingest pipeline, not the
    request parser, decides what a malformed submission is.
    """
    group_id: Optional[str] = Field(default=None, description="Target group / room")
    sender: Optional[str] = Field(default=None, description="Display identity of the author")
    body: Optional[str] = Field(default=None, description="Text content")
    attachment: Optional[str] = Field(
        default=None,
        description="Inline encoded attachment, e.g. a base64 data URL"
    )


class NewMessage(BaseModel):
    """A validated message on its way to the store."""
    group_id: str
    sender: str
    body: str = ""
    attachment: Optional[str] = None


class StoredMessage(BaseModel):
    """Canonical, immutable form of a persisted message.

    Attributes:
        id: Store-assigned stable identifier.
        group_id: Group the message belongs to.
        sender: Author display identity.
        body: Text content (may be empty when an attachment is present).
        attachment: Optional inline attachment.
        sequence: Store-assigned position within the group, starting at 1.
        ts: Server timestamp in seconds since epoch. Not used for ordering.
    """
    model_config = {"frozen": True}

    id: str = Field(..., description="Store-assigned message ID")
    group_id: str = Field(..., description="Group this message belongs to")
    sender: str = Field(..., description="Sender display identity")
    body: str = Field(default="", description="Message text")
    attachment: Optional[str] = Field(default=None, description="Inline attachment")
    sequence: int = Field(..., ge=1, description="Insertion order within the group")
    ts: float = Field(..., description="Timestamp in seconds since epoch")


class HistoryResponse(BaseModel):
    success: bool = True
    groupId: str
    messages: List[StoredMessage] = Field(default_factory=list)
    hasMore: bool = False


class PresenceResponse(BaseModel):
    groupId: str
    connections: int
