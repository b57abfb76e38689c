"""
Pydantic schemas for provider records, cache records and host-facing views.

This module contains:
- The raw provider record and the normalized cache record
- Views served to the host (users, messages, threads, pages, events)
- Request/response models for the HTTP surface
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


def _validate_e164(value: str, field_name: str) -> str:
    """Validate E.164-like phone number format: starts with +, then digits only."""
    if not value.startswith("+"):
        raise ValueError(f"{field_name} must start with '+'")
    if len(value) < 2:
        raise ValueError(f"{field_name} must have at least one digit after '+'")
    if not value[1:].isdigit():
        raise ValueError(f"{field_name} must contain only digits after '+'")
    return value


# =============================================================================
# Provider and Cache Records
# =============================================================================

class RawMessage(BaseModel):
    """
    One message as reported by the remote provider's flat log.

    Direction is not part of the record; it is derived by comparing
    `from_number` with the account's own number.
    """
    id: str = Field(..., min_length=1, description="Provider-assigned message id")
    body: str = Field(default="", description="Message text")
    # Note: 'from' is a reserved word in Python, so we use alias
    from_number: str = Field(..., alias="from", description="Sender phone number")
    to: str = Field(..., description="Recipient phone number")
    date_created: int = Field(..., ge=0, description="Creation time, epoch milliseconds")

    model_config = {"populate_by_name": True}


class MessageRecord(BaseModel):
    """
    Normalized message as persisted in the local cache.
    """
    id: str
    body: str = ""
    other_participant: str = Field(..., description="Counterpart number, also the thread key")
    is_sender: bool
    is_read: bool = False
    timestamp: int = Field(..., ge=0, description="Epoch milliseconds")

    model_config = {
        "from_attributes": True,  # Allow creating from ORM objects
        "frozen": True,
    }


# =============================================================================
# Host-facing Views
# =============================================================================

class User(BaseModel):
    """A conversation participant, identified by the hash of its number."""
    id: str
    phone_number: str
    display_name: str
    is_self: bool = False


class CurrentUser(User):
    """The local account."""
    is_self: bool = True


class Message(BaseModel):
    """A message as seen from inside a thread."""
    id: str
    thread_id: str
    sender_id: str
    text: str
    timestamp: datetime
    is_sender: bool
    is_read: bool
    cursor: str = Field(..., description="Pagination cursor resolving to this message's timestamp")


class MessagePage(BaseModel):
    """
    One page of a thread's messages, oldest first.

    has_more is "page is full": it over-reports when the remaining tail is
    exactly one page long.
    """
    items: list[Message] = Field(default_factory=list)
    has_more: bool = False
    oldest_cursor: Optional[str] = None


class Thread(BaseModel):
    """A pairwise conversation derived from every message sharing a counterpart."""
    id: str = Field(..., description="Thread key (counterpart phone number)")
    title: str
    type: Literal["single"] = "single"
    is_unread: bool
    is_read_only: bool = False
    last_read_message_id: Optional[str] = None
    timestamp: datetime = Field(..., description="Time of the most recent message")
    participants: list[User] = Field(default_factory=list)
    messages: MessagePage = Field(default_factory=MessagePage)


class ThreadPage(BaseModel):
    """Threads, most recently active first."""
    items: list[Thread] = Field(default_factory=list)
    has_more: bool = False
    oldest_cursor: Optional[str] = None


class ServerEvent(BaseModel):
    """Change notification for one thread with newly stored messages."""
    type: Literal["upsert"] = "upsert"
    object_name: Literal["message"] = "message"
    thread_id: str
    entries: list[Message]


# =============================================================================
# Session Credentials
# =============================================================================

class SessionCredentials(BaseModel):
    """
    Serialized account session: Twilio account SID, auth token and number.
    """
    sid: str = Field(..., min_length=1, description="Twilio account SID")
    token: str = Field(..., min_length=1, description="Twilio auth token")
    number: str = Field(..., description="Account phone number in E.164 format")

    @field_validator("number")
    @classmethod
    def validate_number(cls, v: str) -> str:
        return _validate_e164(v, "number")


# =============================================================================
# HTTP Request/Response Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """Body of POST /threads/{thread_key}/messages."""
    text: str = Field(..., min_length=1, max_length=1600, description="Message text")


class MarkReadRequest(BaseModel):
    """Body of POST /threads/{thread_key}/read."""
    message_id: str = Field(..., min_length=1, description="Newest message the user has seen")


class MarkReadResponse(BaseModel):
    status: str = Field(default="ok")
    marked: int = Field(..., ge=0, description="Messages newly flagged as read")


class SyncStatus(BaseModel):
    """Snapshot of the polling loop."""
    running: bool
    last_success_at: Optional[datetime] = None
    consecutive_failures: int = 0
    watermark: Optional[int] = None
    error: Optional[str] = None


class StatusResponse(BaseModel):
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
