"""Per-turn chat pipeline and the other conversation boundary operations.

A chat turn walks a fixed sequence of states::

    RECEIVED -> ADMITTED -> CACHE_CHECKED -> CACHE_HIT ----------------------> PERSISTED -> RESPONDED
                                          -> CONTEXT_BUILT -> DISPATCHED -> PERSISTED -> CACHE_STORED -> RESPONDED

with ``REJECTED`` (admission denied) and ``FAILED`` (any typed error) as the
other terminal states. Each transition is logged under one ``turn_id``.

The user turn is written before the provider is called, so history keeps the
question even when the provider fails; only a successfully obtained reply is
ever written as an assistant turn. The dispatch, persist and cache tail (and,
on a cache hit, the pair of appends) runs in its own task shielded from
request cancellation, so a client that hangs up does not lose a reply that
was already paid for.
"""

from __future__ import annotations

import asyncio
import dataclasses
import re
import uuid
from enum import Enum
from typing import Any, Callable, List, Optional, Set, Tuple

from mira.logging import get_logger
from mira.service.admission import AdmissionDecision, AdmissionGate
from mira.service.context import ChatTurn, ContextAssembler
from mira.service.credentials import CredentialService
from mira.service.dispatcher import ProviderDispatcher
from mira.service.errors import (
    AdmissionDeniedError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from mira.service.response_cache import ResponseCache
from mira.storage.errors import PersistenceError, StoreTimeoutError
from mira.storage.models import (
    ASSISTANT_ROLE,
    FEEDBACK_RATINGS,
    USER_ROLE,
    ConversationSummary,
    Message,
)

logger = get_logger(__name__)

_CONVERSATION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")


class TurnState(str, Enum):
    RECEIVED = "received"
    ADMITTED = "admitted"
    CACHE_CHECKED = "cache_checked"
    CACHE_HIT = "cache_hit"
    CONTEXT_BUILT = "context_built"
    DISPATCHED = "dispatched"
    PERSISTED = "persisted"
    CACHE_STORED = "cache_stored"
    RESPONDED = "responded"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclasses.dataclass(frozen=True)
class ChatTurnResult:
    reply: str
    conversation_id: str
    message_id: str
    user_message_id: str
    provider: str
    cached: bool = False
    admission: Optional[AdmissionDecision] = None


class ChatOrchestrator:
    def __init__(
        self,
        store,
        *,
        admission: AdmissionGate,
        cache: ResponseCache,
        context: ContextAssembler,
        dispatcher: ProviderDispatcher,
        credentials: CredentialService,
        default_provider: str,
        max_history: int = 8,
        max_message_chars: int = 8000,
        store_timeout_seconds: float = 10.0,
    ) -> None:
        self.store = store
        self.admission = admission
        self.cache = cache
        self.context = context
        self.dispatcher = dispatcher
        self.credentials = credentials
        self.default_provider = default_provider
        self.max_history = ContextAssembler.validate_max_history(max_history)
        self.max_message_chars = max_message_chars
        self.store_timeout_seconds = store_timeout_seconds
        self._inflight: Set[asyncio.Task] = set()

    # helpers
    async def _store_call(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking store call off the event loop within the store deadline."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args), timeout=self.store_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            logger.error(
                "store_call_timeout",
                operation=operation,
                timeout_seconds=self.store_timeout_seconds,
            )
            raise StoreTimeoutError(
                f"timed out while trying to {operation}", {"operation": operation}
            ) from exc

    @staticmethod
    def _require_user(user_id: str) -> None:
        if not user_id or not str(user_id).strip():
            raise ValidationError("user identity is required")

    @staticmethod
    def _check_conversation_id(conversation_id: str) -> str:
        if not isinstance(conversation_id, str) or not _CONVERSATION_ID_RE.match(conversation_id):
            raise ValidationError(
                "invalid conversation id",
                detail={"conversation_id": conversation_id},
            )
        return conversation_id

    def _check_text(self, text: Any) -> str:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("message must not be empty")
        text = text.strip()
        if len(text) > self.max_message_chars:
            raise ValidationError(
                "message is too long",
                detail={"max_chars": self.max_message_chars, "chars": len(text)},
            )
        return text

    def _check_provider(self, provider_name: Optional[str]) -> str:
        name = provider_name or self.default_provider
        # raises ValidationError for unknown names
        self.dispatcher.registry.get(name)
        return name

    # chat turn
    async def send_chat_turn(
        self,
        user_id: str,
        conversation_id: Optional[str],
        text: str,
        provider_name: Optional[str] = None,
        *,
        client_key: Optional[str] = None,
    ) -> ChatTurnResult:
        turn_log = logger.bind(turn_id=str(uuid.uuid4()), user_id=user_id)
        turn_log.info("chat_turn_state", state=TurnState.RECEIVED.value)
        try:
            self._require_user(user_id)
            if conversation_id is None:
                conversation_id = str(uuid.uuid4())
            conversation_id = self._check_conversation_id(conversation_id)
            text = self._check_text(text)
            provider = self._check_provider(provider_name)
        except ValidationError as exc:
            turn_log.info("chat_turn_state", state=TurnState.FAILED.value, error_code=exc.error_code)
            raise
        turn_log = turn_log.bind(conversation_id=conversation_id, provider=provider)

        try:
            decision = await self.admission.enforce(client_key or user_id)
        except AdmissionDeniedError as exc:
            turn_log.info(
                "chat_turn_state",
                state=TurnState.REJECTED.value,
                retry_after=exc.retry_after,
            )
            raise
        except ServiceError as exc:
            turn_log.info("chat_turn_state", state=TurnState.FAILED.value, error_code=exc.error_code)
            raise
        turn_log.info("chat_turn_state", state=TurnState.ADMITTED.value)

        try:
            result = await self._run_turn(turn_log, user_id, conversation_id, text, provider)
        except (ServiceError, PersistenceError) as exc:
            turn_log.info(
                "chat_turn_state",
                state=TurnState.FAILED.value,
                error_code=getattr(exc, "error_code", "persistence_error"),
            )
            raise
        return dataclasses.replace(result, admission=decision)

    async def _run_turn(
        self, turn_log, user_id: str, conversation_id: str, text: str, provider: str
    ) -> ChatTurnResult:
        fingerprint = self.cache.fingerprint(
            text, conversation_id=conversation_id, provider=provider
        )
        cached_reply = await self.cache.lookup(fingerprint)
        turn_log.info(
            "chat_turn_state", state=TurnState.CACHE_CHECKED.value, hit=cached_reply is not None
        )

        if cached_reply is not None:
            turn_log.info("chat_turn_state", state=TurnState.CACHE_HIT.value)
            user_msg, reply_msg = await self._shielded(
                self._record_cached_turn(turn_log, user_id, conversation_id, text, cached_reply)
            )
            turn_log.info("chat_turn_state", state=TurnState.RESPONDED.value, cached=True)
            return ChatTurnResult(
                reply=cached_reply,
                conversation_id=conversation_id,
                message_id=reply_msg.id,
                user_message_id=user_msg.id,
                provider=provider,
                cached=True,
            )

        api_key = await self._resolve_key(user_id, provider)
        # history is read before the new user turn is written
        context = await self._store_call(
            "read messages",
            self.context.build_context,
            user_id,
            conversation_id,
            text,
            self.max_history,
        )
        turn_log.info("chat_turn_state", state=TurnState.CONTEXT_BUILT.value, turns=len(context))
        user_msg = await self._store_call(
            "append message", self.store.append_message, user_id, conversation_id, USER_ROLE, text
        )

        reply_msg = await self._shielded(
            self._complete_turn(
                turn_log, user_id, conversation_id, provider, context, api_key, fingerprint
            )
        )
        turn_log.info("chat_turn_state", state=TurnState.RESPONDED.value, cached=False)
        return ChatTurnResult(
            reply=reply_msg.content,
            conversation_id=conversation_id,
            message_id=reply_msg.id,
            user_message_id=user_msg.id,
            provider=provider,
            cached=False,
        )

    async def _resolve_key(self, user_id: str, provider: str) -> str:
        adapter = self.dispatcher.registry.get(provider)
        if not getattr(adapter, "requires_key", True):
            return ""
        resolved = await self._store_call(
            "read credential", self.credentials.resolve, user_id, provider
        )
        return resolved.api_key

    async def _shielded(self, coro):
        """Run ``coro`` as a tracked task that outlives cancellation of the caller."""
        task = asyncio.ensure_future(coro)
        self._track(task)
        return await asyncio.shield(task)

    async def _record_cached_turn(
        self, turn_log, user_id: str, conversation_id: str, text: str, reply: str
    ) -> Tuple[Message, Message]:
        user_msg = await self._store_call(
            "append message", self.store.append_message, user_id, conversation_id, USER_ROLE, text
        )
        reply_msg = await self._store_call(
            "append message",
            self.store.append_message,
            user_id,
            conversation_id,
            ASSISTANT_ROLE,
            reply,
        )
        turn_log.info("chat_turn_state", state=TurnState.PERSISTED.value)
        return user_msg, reply_msg

    async def _complete_turn(
        self,
        turn_log,
        user_id: str,
        conversation_id: str,
        provider: str,
        context: List[ChatTurn],
        api_key: str,
        fingerprint: str,
    ) -> Message:
        reply = await self.dispatcher.dispatch(provider, context, api_key)
        turn_log.info("chat_turn_state", state=TurnState.DISPATCHED.value, reply_chars=len(reply))
        reply_msg = await self._store_call(
            "append message",
            self.store.append_message,
            user_id,
            conversation_id,
            ASSISTANT_ROLE,
            reply,
        )
        turn_log.info("chat_turn_state", state=TurnState.PERSISTED.value)
        await self.cache.store(fingerprint, reply)
        turn_log.info("chat_turn_state", state=TurnState.CACHE_STORED.value)
        return reply_msg

    def _track(self, task: asyncio.Task) -> None:
        self._inflight.add(task)
        task.add_done_callback(self._untrack)

    def _untrack(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        # the tail logs its own failures; retrieve them so an abandoned task stays quiet
        if not task.cancelled():
            task.exception()

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for shielded turn tails to finish, typically during shutdown."""
        if not self._inflight:
            return
        pending = list(self._inflight)
        logger.info("chat_turns_draining", pending=len(pending))
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            logger.warning("chat_turns_drain_incomplete", pending=len(still_pending))

    # conversations
    async def list_conversations(self, user_id: str) -> List[ConversationSummary]:
        self._require_user(user_id)
        return await self._store_call("list conversations", self.store.list_conversations, user_id)

    async def get_history(self, user_id: str, conversation_id: str) -> List[Message]:
        self._require_user(user_id)
        self._check_conversation_id(conversation_id)
        return await self._store_call(
            "read messages", self.store.list_messages, user_id, conversation_id
        )

    async def delete_conversation(self, user_id: str, conversation_id: str) -> int:
        self._require_user(user_id)
        self._check_conversation_id(conversation_id)
        deleted = await self._store_call(
            "delete conversation", self.store.delete_conversation, user_id, conversation_id
        )
        logger.info(
            "conversation_deleted",
            user_id=user_id,
            conversation_id=conversation_id,
            deleted=deleted,
        )
        return deleted

    async def set_feedback(self, user_id: str, message_id: str, rating: str) -> None:
        self._require_user(user_id)
        if rating not in FEEDBACK_RATINGS:
            raise ValidationError(
                "rating must be 'good' or 'bad'",
                detail={"rating": rating, "allowed": sorted(FEEDBACK_RATINGS)},
            )
        updated = await self._store_call(
            "save feedback", self.store.set_feedback, user_id, message_id, rating
        )
        if not updated:
            raise NotFoundError("message not found", detail={"message_id": message_id})
        logger.info("feedback_saved", user_id=user_id, message_id=message_id, rating=rating)

    # credentials
    async def save_credential(self, user_id: str, provider: str, api_key: str) -> None:
        self._require_user(user_id)
        await self._store_call(
            "save credential", self.credentials.save, user_id, provider, api_key
        )

    async def get_credential_status(self, user_id: str) -> dict:
        self._require_user(user_id)
        return await self._store_call("list credentials", self.credentials.status, user_id)

    async def delete_credential(self, user_id: str, provider: str) -> bool:
        self._require_user(user_id)
        return await self._store_call(
            "delete credential", self.credentials.delete, user_id, provider
        )
