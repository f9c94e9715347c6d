from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"
MESSAGE_ROLES = frozenset({USER_ROLE, ASSISTANT_ROLE})
FEEDBACK_RATINGS = frozenset({"good", "bad"})

# Older records used the persona name or the Gemini role for replies.
_LEGACY_ROLES = {"mira": ASSISTANT_ROLE, "model": ASSISTANT_ROLE}

CONVERSATION_LABEL_LENGTH = 60


def normalize_role(role: str) -> str:
    role = (role or "").lower()
    return _LEGACY_ROLES.get(role, role)


@dataclass
class Message:
    id: str
    conversation_id: str
    user_id: str
    role: str
    content: str
    created_at: datetime
    seq: int
    feedback: Optional[str] = None

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.created_at, self.seq)


@dataclass
class ConversationSummary:
    """Derived view of all messages sharing (user_id, conversation_id)."""

    conversation_id: str
    label: str
    first_timestamp: datetime
    last_activity: datetime
    message_count: int


@dataclass
class CredentialRecord:
    user_id: str
    provider: str
    ciphertext: str
    nonce: str
    updated_at: datetime = field(default_factory=datetime.utcnow)


def conversation_label(text: str) -> str:
    label = " ".join((text or "").split())
    if len(label) > CONVERSATION_LABEL_LENGTH:
        return label[: CONVERSATION_LABEL_LENGTH - 3].rstrip() + "..."
    return label


def summarize_conversation(conversation_id: str, messages: list[Message]) -> ConversationSummary:
    """Build the summary row for one conversation from its messages."""
    ordered = sorted(messages, key=lambda m: m.sort_key)
    first, last = ordered[0], ordered[-1]
    return ConversationSummary(
        conversation_id=conversation_id,
        label=conversation_label(first.content),
        first_timestamp=first.created_at,
        last_activity=last.created_at,
        message_count=len(ordered),
    )
