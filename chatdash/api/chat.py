"""
Chat API.

- /api/conversations: conversation history CRUD (owner-scoped)
- POST /api/chat: quota-gated chat completion, streamed as SSE by default
"""

import json
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from chatdash.api.deps import get_catalog, get_conversations, get_flowise, get_usage_gate
from chatdash.api.usage import quota_exceeded_response
from chatdash.core.auth import CurrentUser, get_current_user
from chatdash.core.errors import UpstreamProviderError
from chatdash.features.chat.flowise import FlowiseClient, validate_messages
from chatdash.features.chat.store import ConversationStore
from chatdash.features.entitlements.service import format_remaining
from chatdash.features.plans.catalog import PlanCatalog
from chatdash.features.usage.service import UsageGate
from chatdash.models.chat import ChatMessage, Conversation


logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class ConversationCreate(BaseModel):
    title: Optional[str] = None


class ConversationRename(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)


class ConversationResponse(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime


class MessageIn(BaseModel):
    role: str
    content: str


class MessageResponse(BaseModel):
    role: str
    content: str
    used_tools: Optional[List[Dict[str, Any]]] = None
    timestamp: Optional[datetime] = None


class ChatRequest(BaseModel):
    messages: List[MessageIn]
    conversation_id: Optional[str] = None
    stream: bool = True


def _conversation_response(c: Conversation) -> ConversationResponse:
    return ConversationResponse(id=c.id, title=c.title, created_at=c.created_at, updated_at=c.updated_at)


def _sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


@router.get("/conversations", response_model=List[ConversationResponse])
def list_conversations(
    user: CurrentUser = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversations),
):
    return [_conversation_response(c) for c in store.list(user.user_id)]


@router.post("/conversations", response_model=ConversationResponse, status_code=201)
def create_conversation(
    body: ConversationCreate,
    user: CurrentUser = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversations),
):
    return _conversation_response(store.create(user.user_id, body.title))


@router.patch("/conversations/{conversation_id}", response_model=ConversationResponse)
def rename_conversation(
    conversation_id: str,
    body: ConversationRename,
    user: CurrentUser = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversations),
):
    return _conversation_response(store.rename(user.user_id, conversation_id, body.title))


@router.delete("/conversations/{conversation_id}", status_code=204)
def delete_conversation(
    conversation_id: str,
    user: CurrentUser = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversations),
):
    store.delete(user.user_id, conversation_id)


@router.get("/conversations/{conversation_id}/messages", response_model=List[MessageResponse])
def list_messages(
    conversation_id: str,
    user: CurrentUser = Depends(get_current_user),
    store: ConversationStore = Depends(get_conversations),
):
    return [MessageResponse(**m.model_dump()) for m in store.messages(user.user_id, conversation_id)]


@router.post("/chat")
async def chat(
    body: ChatRequest,
    user: CurrentUser = Depends(get_current_user),
    gate: UsageGate = Depends(get_usage_gate),
    catalog: PlanCatalog = Depends(get_catalog),
    store: ConversationStore = Depends(get_conversations),
    flowise: FlowiseClient = Depends(get_flowise),
):
    """
    Gate first, then forward to Flowise.

    Rejected sends get a 402 notice with upgrade options and never reach
    the chat-completion service.
    """
    messages = validate_messages([m.model_dump() for m in body.messages])
    # Storage calls are blocking; keep them off the event loop
    if body.conversation_id:
        await run_in_threadpool(store.get, user.user_id, body.conversation_id)

    decision = await run_in_threadpool(gate.try_consume_one_message, user.user_id)
    if not decision.allowed:
        tier = await run_in_threadpool(gate.current_tier, user.user_id)
        return quota_exceeded_response(tier, catalog)

    remaining_header = "unlimited" if math.isinf(decision.remaining) else str(int(decision.remaining))

    if body.conversation_id:
        await run_in_threadpool(store.save_message, user.user_id, body.conversation_id, messages[-1])

    async def _persist_reply(text: str, used_tools: Optional[List[Dict[str, Any]]]) -> None:
        if body.conversation_id and text:
            await run_in_threadpool(
                store.save_message,
                user.user_id,
                body.conversation_id,
                ChatMessage(role="assistant", content=text, used_tools=used_tools),
            )

    if not body.stream:
        result = await flowise.predict(messages)
        text = result.get("text") or ""
        used_tools = result.get("usedTools")
        await _persist_reply(text, used_tools)
        return {
            "text": text,
            "used_tools": used_tools,
            "remaining": format_remaining(decision.remaining),
        }

    async def _events():
        parts: List[str] = []
        used_tools: Optional[List[Dict[str, Any]]] = None
        try:
            async for chunk in flowise.stream(messages):
                if chunk.event == "token" and chunk.data:
                    parts.append(str(chunk.data))
                    yield _sse({"type": "token", "data": chunk.data})
                elif chunk.event == "usedTools":
                    used_tools = chunk.data
                    yield _sse({"type": "usedTools", "data": used_tools})
                elif chunk.event == "error":
                    yield _sse({"type": "error", "data": chunk.data or "Unknown streaming error"})
        except UpstreamProviderError as e:
            # Headers are already sent; the failure is reported in-band
            logger.warning("[chat] upstream stream failed", extra={"user_id": user.user_id, "error_message": e.message})
            yield _sse({"type": "error", "data": "Chat service unavailable"})
            return

        text = "".join(parts)
        await _persist_reply(text, used_tools)
        yield _sse({"type": "end", "text": text, "usedTools": used_tools})

    headers = dict(SSE_HEADERS)
    headers["x-messages-remaining"] = remaining_header
    return StreamingResponse(_events(), media_type="text/event-stream", headers=headers)
