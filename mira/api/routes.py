from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Response

from mira.api.schemas import (
    ChatRequest,
    ChatResponse,
    ConversationListResponse,
    ConversationSummaryResponse,
    CredentialDeleteResponse,
    CredentialRequest,
    CredentialStatusResponse,
    DeleteConversationResponse,
    Envelope,
    FeedbackRequest,
    FeedbackResponse,
    MessageListResponse,
    MessageResponse,
)
from mira.logging import get_correlation_id, get_logger
from mira.service.errors import AuthenticationError
from mira.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_MAX_USER_ID_LENGTH = 128


def _ok(data: Any) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return envelope


async def get_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> str:
    """Caller identity as forwarded by the upstream identity provider."""
    user_id = (x_user_id or "").strip()
    if not user_id or len(user_id) > _MAX_USER_ID_LENGTH:
        raise AuthenticationError("missing or invalid user identity")
    return user_id


def _client_key(user_id: str) -> str:
    return f"user:{user_id}"


@router.post("/chat", response_model=Envelope, tags=["chat"])
async def chat(
    body: ChatRequest,
    response: Response,
    user_id: str = Depends(get_user_id),
):
    runtime = get_runtime()
    result = await runtime.orchestrator.send_chat_turn(
        user_id,
        body.conversation_id,
        body.message,
        body.provider,
        client_key=_client_key(user_id),
    )
    if result.admission is not None:
        for name, value in result.admission.headers().items():
            response.headers[name] = value
    return _ok(
        ChatResponse(
            message_id=result.message_id,
            user_message_id=result.user_message_id,
            conversation_id=result.conversation_id,
            content=result.reply,
            provider=result.provider,
            cached=result.cached,
        )
    )


@router.get("/conversations", response_model=Envelope, tags=["conversations"])
async def list_conversations(user_id: str = Depends(get_user_id)):
    runtime = get_runtime()
    summaries = await runtime.orchestrator.list_conversations(user_id)
    return _ok(
        ConversationListResponse(
            items=[ConversationSummaryResponse.from_summary(s) for s in summaries]
        )
    )


@router.get(
    "/conversations/{conversation_id}/messages", response_model=Envelope, tags=["conversations"]
)
async def get_history(conversation_id: str, user_id: str = Depends(get_user_id)):
    runtime = get_runtime()
    messages = await runtime.orchestrator.get_history(user_id, conversation_id)
    return _ok(
        MessageListResponse(
            conversation_id=conversation_id,
            messages=[MessageResponse.from_message(m) for m in messages],
        )
    )


@router.delete("/conversations/{conversation_id}", response_model=Envelope, tags=["conversations"])
async def delete_conversation(conversation_id: str, user_id: str = Depends(get_user_id)):
    runtime = get_runtime()
    deleted = await runtime.orchestrator.delete_conversation(user_id, conversation_id)
    return _ok(DeleteConversationResponse(conversation_id=conversation_id, deleted=deleted))


@router.post("/messages/{message_id}/feedback", response_model=Envelope, tags=["messages"])
async def set_feedback(
    message_id: str, body: FeedbackRequest, user_id: str = Depends(get_user_id)
):
    runtime = get_runtime()
    await runtime.orchestrator.set_feedback(user_id, message_id, body.rating)
    return _ok(FeedbackResponse(message_id=message_id, rating=body.rating))


@router.get("/credentials", response_model=Envelope, tags=["credentials"])
async def get_credential_status(user_id: str = Depends(get_user_id)):
    runtime = get_runtime()
    status = await runtime.orchestrator.get_credential_status(user_id)
    return _ok(CredentialStatusResponse(providers=status))


@router.put("/credentials/{provider}", response_model=Envelope, tags=["credentials"])
async def save_credential(
    provider: str, body: CredentialRequest, user_id: str = Depends(get_user_id)
):
    runtime = get_runtime()
    await runtime.orchestrator.save_credential(user_id, provider, body.api_key)
    status = await runtime.orchestrator.get_credential_status(user_id)
    return _ok(CredentialStatusResponse(providers=status))


@router.delete("/credentials/{provider}", response_model=Envelope, tags=["credentials"])
async def delete_credential(provider: str, user_id: str = Depends(get_user_id)):
    runtime = get_runtime()
    deleted = await runtime.orchestrator.delete_credential(user_id, provider)
    return _ok(CredentialDeleteResponse(provider=provider, deleted=deleted))
