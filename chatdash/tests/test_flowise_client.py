"""Tests for the Flowise client using httpx.MockTransport."""

import json

import httpx
import pytest

from chatdash.core.errors import UpstreamProviderError, ValidationError
from chatdash.features.chat.flowise import (
    FlowiseClient,
    build_prediction_body,
    parse_sse_line,
    validate_messages,
)


CHATFLOW_ID = "3f2b6c1e-8a4d-4c2b-9e7f-1a2b3c4d5e6f"
API_KEY = "k" * 40


def _client(handler, chatflow_id=CHATFLOW_ID, base_url="https://flowise.test/api/v1"):
    return FlowiseClient(base_url, API_KEY, chatflow_id, transport=httpx.MockTransport(handler))


def _sse_body(*events):
    return "".join(f"message:\ndata: {json.dumps(e)}\n\n" for e in events).encode()


def test_validate_messages_rejects_bad_input():
    with pytest.raises(ValidationError):
        validate_messages([])
    with pytest.raises(ValidationError):
        validate_messages([{"role": "system", "content": "x"}])
    with pytest.raises(ValidationError):
        validate_messages([{"role": "user", "content": "   "}])


def test_history_maps_roles_and_last_message_is_question():
    messages = validate_messages([
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello"},
        {"role": "user", "content": "Weather?"},
    ])
    body = build_prediction_body(messages)
    assert body["question"] == "Weather?"
    assert body["history"] == [
        {"role": "userMessage", "content": "Hi"},
        {"role": "apiMessage", "content": "Hello"},
    ]
    assert body["streaming"] is True


def test_parse_sse_line_variants():
    assert parse_sse_line("message:") is None
    assert parse_sse_line('data: {"event": "token", "data": "Hi"}').data == "Hi"
    tools = parse_sse_line('data: {"event": "usedTools", "data": "[{\\"tool\\": \\"calc\\"}]"}')
    assert tools.data == [{"tool": "calc"}]
    assert parse_sse_line("data: plain text").event == "token"


def test_api_key_must_be_long_enough():
    with pytest.raises(ValueError):
        FlowiseClient("https://flowise.test", "short", CHATFLOW_ID)


@pytest.mark.asyncio
async def test_stream_posts_to_prediction_endpoint():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=_sse_body(
                {"event": "start", "data": ""},
                {"event": "token", "data": "Hel"},
                {"event": "token", "data": "lo"},
                {"event": "end", "data": "[DONE]"},
                {"event": "token", "data": "ignored after end"},
            ),
        )

    client = _client(handler)
    messages = validate_messages([{"role": "user", "content": "Hi"}])
    chunks = [c async for c in client.stream(messages)]

    assert seen["url"] == f"https://flowise.test/api/v1/prediction/{CHATFLOW_ID}"
    assert seen["auth"] == f"Bearer {API_KEY}"
    assert seen["body"]["question"] == "Hi"
    assert [c.event for c in chunks] == ["start", "token", "token", "end"]
    assert "".join(c.data for c in chunks if c.event == "token") == "Hello"


@pytest.mark.asyncio
async def test_stream_http_error_is_upstream_error():
    client = _client(lambda request: httpx.Response(502, content=b"bad gateway"))
    messages = validate_messages([{"role": "user", "content": "Hi"}])
    with pytest.raises(UpstreamProviderError):
        [c async for c in client.stream(messages)]


@pytest.mark.asyncio
async def test_stream_transport_error_is_upstream_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = _client(handler)
    messages = validate_messages([{"role": "user", "content": "Hi"}])
    with pytest.raises(UpstreamProviderError):
        [c async for c in client.stream(messages)]


def test_invalid_chatflow_id_is_rejected_at_construction():
    with pytest.raises(ValueError):
        _client(lambda request: httpx.Response(200), chatflow_id="not-a-uuid")


@pytest.mark.asyncio
async def test_predict_returns_json():
    client = _client(lambda request: httpx.Response(200, json={"text": "42", "usedTools": []}))
    messages = validate_messages([{"role": "user", "content": "Answer?"}])
    result = await client.predict(messages)
    assert result["text"] == "42"
