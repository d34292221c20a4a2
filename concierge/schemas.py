"""
Pydantic schemas for request/response validation and typed records.

This module contains:
- Webhook payload models for incoming Whapi deliveries
- Typed records (ChatMessage, SessionRecord, ClientIdentity) used by the
  session pipeline; storage.py is the only place that builds them from rows
- Response models for API responses
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Typed Records
# =============================================================================

class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    """One entry of a session's bounded history. Immutable once created."""
    role: MessageRole
    content: str
    timestamp: datetime

    model_config = ConfigDict(frozen=True, use_enum_values=False)


class SessionRecord(BaseModel):
    """Per-phone conversation state as read from the store."""
    phone_number: str
    client_id: Optional[str] = None
    last_messages: list[ChatMessage] = Field(default_factory=list)
    message_count: int = 0
    last_interaction: Optional[datetime] = None
    booking_context: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_new(self) -> bool:
        return self.message_count == 0


class ClientIdentity(BaseModel):
    """Minimal client projection used to personalize replies."""
    id: str
    name: str
    tier: str = "bronze"
    total_spent: float = 0.0
    last_visit: Optional[str] = None
    visit_count: int = 0


class ReplyContext(BaseModel):
    """Everything the reply generator gets to see for one turn."""
    inbound_text: str
    history: list[ChatMessage] = Field(default_factory=list)
    identity: Optional[ClientIdentity] = None
    is_first_contact: bool = False


# =============================================================================
# Webhook Request Models
# =============================================================================

class WebhookText(BaseModel):
    body: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class WebhookMessage(BaseModel):
    """
    One item of a Whapi delivery.

    Only text messages are processed; other fields sent by the gateway
    (id, type, timestamp, ...) are ignored.
    """
    from_me: bool = False
    chat_id: Optional[str] = None
    sender: Optional[str] = Field(None, alias="from")
    text: Optional[WebhookText] = None

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @property
    def body(self) -> Optional[str]:
        if self.text is None or self.text.body is None:
            return None
        return self.text.body.strip() or None


class WebhookPayload(BaseModel):
    """
    Top-level delivery body.

    Items are kept loosely typed here and validated one by one, so a single
    malformed item is filtered instead of rejecting the whole delivery.
    """
    messages: Optional[list[Any]] = None

    model_config = ConfigDict(extra="ignore")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for webhook deliveries."""
    status: str = Field(..., description="success or ignored")
    processed: Optional[int] = Field(None, ge=0, description="Items that got a reply")
    filtered: Optional[int] = Field(None, ge=0, description="Items skipped before dispatch")
    failed: Optional[int] = Field(None, ge=0, description="Items whose processing failed")


class WebhookStatusResponse(BaseModel):
    """Response model for GET on the webhook route."""
    status: str = "active"
    service: str


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    status: str = "error"
    message: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class SessionResponse(BaseModel):
    phone_number: str
    client_id: Optional[str] = None
    last_messages: list[ChatMessage] = Field(default_factory=list)
    message_count: int = Field(..., ge=0)
    last_interaction: Optional[datetime] = None
    created_at: Optional[datetime] = None


class SessionsListResponse(BaseModel):
    """
    Response model for GET /sessions with pagination.

    Contains:
    - data: sessions ordered by most recent interaction
    - total: total sessions matching filters (ignoring pagination)
    """
    data: list[SessionResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class StatsResponse(BaseModel):
    """
    Response model for GET /stats.

    - total_sessions: number of known phone numbers
    - linked_sessions: sessions linked to a client record
    - total_messages: sum of inbound messages over all sessions
    """
    total_sessions: int = Field(..., ge=0)
    linked_sessions: int = Field(..., ge=0)
    total_messages: int = Field(..., ge=0)
    first_interaction: Optional[datetime] = None
    last_interaction: Optional[datetime] = None
