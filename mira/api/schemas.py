from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from mira.storage.models import ConversationSummary, Message

# Upper bound on any free-text field; the orchestrator applies the tighter
# configured message limit.
MAX_STRING_LENGTH = 65536

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "missing_credential",
    "admission_unavailable",
    "provider_error",
    "provider_auth_error",
    "provider_quota_exceeded",
    "provider_unavailable",
    "provider_timeout",
    "provider_invalid_response",
    "persistence_error",
    "server_error",
})


def _strip_invisible(value: str) -> str:
    """Drop zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class ChatRequest(BaseModel):
    conversation_id: Optional[str] = Field(None, max_length=128)
    message: str = Field(..., max_length=MAX_STRING_LENGTH)
    provider: Optional[str] = Field(None, max_length=32)

    @field_validator("message")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        value = _strip_invisible(value)
        if not value.strip():
            raise ValueError("message must not be empty")
        return value


class ChatResponse(BaseModel):
    message_id: str
    user_message_id: str
    conversation_id: str
    content: str
    provider: str
    cached: bool = False


class MessageResponse(BaseModel):
    id: str
    conversation_id: str
    role: str
    content: str
    created_at: datetime
    feedback: Optional[str] = None

    @classmethod
    def from_message(cls, message: Message) -> "MessageResponse":
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            role=message.role,
            content=message.content,
            created_at=message.created_at,
            feedback=message.feedback,
        )


class MessageListResponse(BaseModel):
    conversation_id: str
    messages: List[MessageResponse]


class ConversationSummaryResponse(BaseModel):
    conversation_id: str
    label: str
    first_timestamp: datetime
    last_activity: datetime
    message_count: int

    @classmethod
    def from_summary(cls, summary: ConversationSummary) -> "ConversationSummaryResponse":
        return cls(
            conversation_id=summary.conversation_id,
            label=summary.label,
            first_timestamp=summary.first_timestamp,
            last_activity=summary.last_activity,
            message_count=summary.message_count,
        )


class ConversationListResponse(BaseModel):
    items: List[ConversationSummaryResponse]


class DeleteConversationResponse(BaseModel):
    conversation_id: str
    deleted: int


class FeedbackRequest(BaseModel):
    rating: Literal["good", "bad"]


class FeedbackResponse(BaseModel):
    message_id: str
    rating: str


class CredentialRequest(BaseModel):
    api_key: str = Field(..., min_length=1, max_length=512)

    @field_validator("api_key")
    @classmethod
    def _trim(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("api key must not be empty")
        return value


class CredentialStatusResponse(BaseModel):
    providers: Dict[str, bool]


class CredentialDeleteResponse(BaseModel):
    provider: str
    deleted: bool
