from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from mira.logging import get_logger
from mira.storage.errors import PersistenceError
from mira.storage.models import (
    ConversationSummary,
    CredentialRecord,
    Message,
    normalize_role,
    summarize_conversation,
)

ConversationKey = Tuple[str, str]


class MemoryStore:
    """In-process conversation store persisted to a JSON file.

    Suitable for a single instance and for tests. Every read is scoped by
    owner; a conversation exists only while it has messages.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/mira",
        *,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.logger = get_logger(__name__)
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self.messages: Dict[str, Message] = {}
        self.conversations: Dict[ConversationKey, List[Message]] = {}
        self.credentials: Dict[Tuple[str, str], CredentialRecord] = {}
        self._seq = 0
        # RLock so helpers can re-acquire inside a locked section
        self._data_lock = threading.RLock()
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # messages
    def append_message(
        self, user_id: str, conversation_id: str, role: str, content: str
    ) -> Message:
        with self._data_lock:
            self._seq += 1
            msg = Message(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                user_id=user_id,
                role=normalize_role(role),
                content=content,
                created_at=self._clock(),
                seq=self._seq,
            )
            key = (user_id, conversation_id)
            self.conversations.setdefault(key, []).append(msg)
            self.messages[msg.id] = msg
            try:
                self._persist_state()
            except PersistenceError:
                # never leave a half-written message behind
                self.messages.pop(msg.id, None)
                bucket = self.conversations.get(key, [])
                if bucket and bucket[-1].id == msg.id:
                    bucket.pop()
                if not bucket:
                    self.conversations.pop(key, None)
                raise
            return msg

    def list_messages(
        self, user_id: str, conversation_id: str, limit: Optional[int] = None
    ) -> List[Message]:
        with self._data_lock:
            msgs = sorted(
                self.conversations.get((user_id, conversation_id), []),
                key=lambda m: m.sort_key,
            )
        if limit is None:
            return msgs
        if limit <= 0:
            return []
        return msgs[-limit:]

    def list_conversations(self, user_id: str) -> List[ConversationSummary]:
        with self._data_lock:
            summaries = [
                summarize_conversation(conv_id, list(msgs))
                for (owner, conv_id), msgs in self.conversations.items()
                if owner == user_id and msgs
            ]
        summaries.sort(key=lambda s: s.last_activity, reverse=True)
        return summaries

    def delete_conversation(self, user_id: str, conversation_id: str) -> int:
        with self._data_lock:
            key = (user_id, conversation_id)
            msgs = self.conversations.pop(key, None)
            if not msgs:
                return 0
            for msg in msgs:
                self.messages.pop(msg.id, None)
            try:
                self._persist_state()
            except PersistenceError:
                self.conversations[key] = msgs
                for msg in msgs:
                    self.messages[msg.id] = msg
                raise
            return len(msgs)

    def set_feedback(self, user_id: str, message_id: str, rating: str) -> bool:
        with self._data_lock:
            msg = self.messages.get(message_id)
            if not msg or msg.user_id != user_id:
                return False
            if msg.feedback == rating:
                return True
            previous = msg.feedback
            msg.feedback = rating
            try:
                self._persist_state()
            except PersistenceError:
                msg.feedback = previous
                raise
            return True

    # credentials
    def save_credential(self, record: CredentialRecord) -> CredentialRecord:
        with self._data_lock:
            key = (record.user_id, record.provider)
            previous = self.credentials.get(key)
            self.credentials[key] = record
            try:
                self._persist_state()
            except PersistenceError:
                if previous is None:
                    self.credentials.pop(key, None)
                else:
                    self.credentials[key] = previous
                raise
            return record

    def get_credential(self, user_id: str, provider: str) -> Optional[CredentialRecord]:
        with self._data_lock:
            return self.credentials.get((user_id, provider))

    def list_credentials(self, user_id: str) -> List[CredentialRecord]:
        with self._data_lock:
            return [rec for (owner, _), rec in self.credentials.items() if owner == user_id]

    def delete_credential(self, user_id: str, provider: str) -> bool:
        with self._data_lock:
            key = (user_id, provider)
            removed = self.credentials.pop(key, None)
            if removed is None:
                return False
            try:
                self._persist_state()
            except PersistenceError:
                self.credentials[key] = removed
                raise
            return True

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # persistence
    def _persist_state(self) -> None:
        state = {
            "seq": self._seq,
            "messages": [
                self._serialize_message(m)
                for msgs in self.conversations.values()
                for m in msgs
            ],
            "credentials": [
                self._serialize_credential(c) for c in self.credentials.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc))
            raise PersistenceError("failed to persist conversation state") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.warning("memory_store_load_failed", error=str(exc))
            return False
        for raw in data.get("messages", []):
            msg = self._deserialize_message(raw)
            self.messages[msg.id] = msg
            self.conversations.setdefault((msg.user_id, msg.conversation_id), []).append(msg)
        for raw in data.get("credentials", []):
            rec = self._deserialize_credential(raw)
            self.credentials[(rec.user_id, rec.provider)] = rec
        max_seq = max((m.seq for m in self.messages.values()), default=0)
        self._seq = max(int(data.get("seq", 0)), max_seq)
        return True

    @staticmethod
    def _serialize_message(message: Message) -> dict:
        return {
            "id": message.id,
            "conversation_id": message.conversation_id,
            "user_id": message.user_id,
            "role": message.role,
            "content": message.content,
            "created_at": message.created_at.isoformat(),
            "seq": message.seq,
            "feedback": message.feedback,
        }

    @staticmethod
    def _deserialize_message(data: dict) -> Message:
        return Message(
            id=data["id"],
            conversation_id=data["conversation_id"],
            user_id=data["user_id"],
            role=normalize_role(data["role"]),
            content=data["content"],
            created_at=datetime.fromisoformat(data["created_at"]),
            seq=int(data.get("seq", 0)),
            feedback=data.get("feedback"),
        )

    @staticmethod
    def _serialize_credential(record: CredentialRecord) -> dict:
        return {
            "user_id": record.user_id,
            "provider": record.provider,
            "ciphertext": record.ciphertext,
            "nonce": record.nonce,
            "updated_at": record.updated_at.isoformat(),
        }

    @staticmethod
    def _deserialize_credential(data: dict) -> CredentialRecord:
        return CredentialRecord(
            user_id=data["user_id"],
            provider=data["provider"],
            ciphertext=data["ciphertext"],
            nonce=data["nonce"],
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )
