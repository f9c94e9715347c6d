from __future__ import annotations

from typing import List, Optional, TypedDict

from mira.config import MAX_HISTORY_CEILING
from mira.service.errors import ValidationError
from mira.storage.models import MESSAGE_ROLES, USER_ROLE

SYSTEM_ROLE = "system"


class ChatTurn(TypedDict):
    role: str
    content: str


class ContextAssembler:
    """Builds the provider-neutral context for one chat turn."""

    def __init__(self, store, *, system_instruction: Optional[str] = None) -> None:
        self.store = store
        self.system_instruction = (system_instruction or "").strip() or None

    @staticmethod
    def validate_max_history(max_history: int) -> int:
        if not isinstance(max_history, int) or isinstance(max_history, bool):
            raise ValidationError("max_history must be an integer")
        if max_history < 1 or max_history > MAX_HISTORY_CEILING:
            raise ValidationError(
                f"max_history must be between 1 and {MAX_HISTORY_CEILING}",
                detail={"max_history": max_history},
            )
        return max_history

    def build_context(
        self,
        user_id: str,
        conversation_id: str,
        new_user_text: str,
        max_history: int,
    ) -> List[ChatTurn]:
        """Return system instruction, the recent history and the new user turn.

        History is read before the new turn is stored, so the new text appears
        exactly once at the end.
        """
        self.validate_max_history(max_history)
        history = self.store.list_messages(user_id, conversation_id, limit=max_history)
        turns: List[ChatTurn] = []
        if self.system_instruction:
            turns.append({"role": SYSTEM_ROLE, "content": self.system_instruction})
        for msg in history:
            if msg.role not in MESSAGE_ROLES:
                continue
            turns.append({"role": msg.role, "content": msg.content})
        turns.append({"role": USER_ROLE, "content": new_user_text})
        return turns
