"""
chatdash/features/chat/flowise.py

Flowise chat-completion client (httpx).

Conversation history is sent as Flowise userMessage/apiMessage turns; the
last message is the question. Streaming responses are server-sent events
whose data lines carry {"event": ..., "data": ...} objects:

    token      -> text delta
    usedTools  -> tool invocations (JSON list, possibly string-encoded)
    error      -> upstream error text
    end        -> stream finished
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from chatdash.core.config import Settings
from chatdash.core.errors import UpstreamProviderError, ValidationError
from chatdash.models.chat import ChatMessage


logger = logging.getLogger(__name__)

CHATFLOW_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
MIN_API_KEY_LENGTH = 32

HISTORY_ROLES = {"user": "userMessage", "assistant": "apiMessage"}


@dataclass(frozen=True)
class FlowiseChunk:
    event: str
    data: Any = None


def validate_messages(messages: Sequence[Any]) -> List[ChatMessage]:
    """Non-empty list of user/assistant messages with non-empty content."""
    if not messages:
        raise ValidationError("Messages must be a non-empty list")
    validated = []
    for msg in messages:
        if isinstance(msg, ChatMessage):
            role, content = msg.role, msg.content
        elif isinstance(msg, dict):
            role, content = msg.get("role"), msg.get("content")
        else:
            raise ValidationError("Invalid message")
        if role not in HISTORY_ROLES:
            raise ValidationError("Invalid message role")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Invalid message content")
        validated.append(msg if isinstance(msg, ChatMessage) else ChatMessage(role=role, content=content))
    return validated


def build_prediction_body(messages: Sequence[ChatMessage], streaming: bool = True) -> Dict[str, Any]:
    history = [
        {"role": HISTORY_ROLES[m.role], "content": m.content}
        for m in messages[:-1]
    ]
    return {
        "question": messages[-1].content,
        "history": history,
        "streaming": streaming,
    }


def parse_sse_line(line: str) -> Optional[FlowiseChunk]:
    """One `data:` line to a chunk; other lines (comments, event names) are skipped."""
    if not line.startswith("data:"):
        return None
    raw = line[len("data:"):].strip()
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        # Older Flowise builds stream bare text tokens
        return FlowiseChunk(event="token", data=raw)
    if not isinstance(payload, dict) or "event" not in payload:
        return FlowiseChunk(event="token", data=raw)

    event = payload["event"]
    data = payload.get("data")
    if event == "usedTools" and isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            logger.warning("[flowise] unparseable usedTools payload")
            data = None
    return FlowiseChunk(event=event, data=data)


class FlowiseClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        chatflow_id: str,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("Invalid or missing FLOWISE_API_URL")
        if not api_key or len(api_key) < MIN_API_KEY_LENGTH:
            raise ValueError("Invalid or missing FLOWISE_API_KEY")
        if not CHATFLOW_ID_RE.match(chatflow_id or ""):
            raise ValueError("Invalid FLOWISE_CHATFLOW_ID format")
        # Accept both https://host and https://host/api/v1
        self.base_url = re.sub(r"/api/v1/?$", "", base_url.rstrip("/"))
        self.api_key = api_key
        self.chatflow_id = chatflow_id
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, cfg: Settings) -> Optional["FlowiseClient"]:
        """Client if Flowise is configured, else None."""
        if not cfg.FLOWISE_API_URL or not cfg.FLOWISE_API_KEY or not cfg.FLOWISE_CHATFLOW_ID:
            return None
        return cls(
            cfg.FLOWISE_API_URL,
            cfg.FLOWISE_API_KEY,
            cfg.FLOWISE_CHATFLOW_ID,
            timeout=cfg.FLOWISE_TIMEOUT_SECONDS,
        )

    def _prediction_url(self) -> str:
        return f"{self.base_url}/api/v1/prediction/{self.chatflow_id}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self.transport,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

    async def stream(self, messages: Sequence[ChatMessage]) -> AsyncIterator[FlowiseChunk]:
        """Yield chunks until the upstream ends the stream."""
        url = self._prediction_url()
        body = build_prediction_body(messages, streaming=True)

        try:
            async with self._client() as client:
                async with client.stream("POST", url, json=body) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        raise UpstreamProviderError(
                            f"Flowise API Error: HTTP {response.status_code}"
                        )
                    async for line in response.aiter_lines():
                        chunk = parse_sse_line(line)
                        if chunk is None:
                            continue
                        yield chunk
                        if chunk.event == "end":
                            return
        except httpx.HTTPError as e:
            raise UpstreamProviderError(f"Flowise API Error: {e}") from e

    async def predict(self, messages: Sequence[ChatMessage]) -> Dict[str, Any]:
        """Non-streaming prediction; returns the Flowise JSON response."""
        url = self._prediction_url()
        body = build_prediction_body(messages, streaming=False)
        try:
            async with self._client() as client:
                response = await client.post(url, json=body)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as e:
            raise UpstreamProviderError(f"Flowise API Error: {e}") from e
