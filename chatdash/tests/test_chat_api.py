"""Tests for conversation CRUD and the quota-gated chat endpoint."""

import json

import pytest

from chatdash.conftest import make_subscription
from chatdash.core.errors import UpstreamProviderError
from chatdash.features.chat.flowise import FlowiseChunk
from chatdash.features.subscriptions.store import SubscriptionStore
from chatdash.features.usage.service import current_period
from chatdash.features.usage.store import UsageStore
from chatdash.core.timeutil import utc_now


class FakeFlowise:
    def __init__(self, chunks=None, fail=False):
        self.chunks = chunks if chunks is not None else [
            FlowiseChunk("token", "Hello"),
            FlowiseChunk("token", " there"),
            FlowiseChunk("usedTools", [{"tool": "search", "toolInput": {}, "toolOutput": "ok"}]),
            FlowiseChunk("end"),
        ]
        self.fail = fail
        self.calls = []

    async def stream(self, messages):
        self.calls.append(list(messages))
        for chunk in self.chunks:
            yield chunk
        if self.fail:
            raise UpstreamProviderError("connection reset")

    async def predict(self, messages):
        self.calls.append(list(messages))
        return {"text": "Hello there", "usedTools": None}


@pytest.fixture
def flowise():
    return FakeFlowise()


@pytest.fixture
def chat_client(make_client, flowise):
    return make_client(flowise=flowise)


def _events(resp):
    return [json.loads(line[len("data: "):]) for line in resp.text.splitlines() if line.startswith("data: ")]


def _exhaust_quota(user_id="user_alice", count=100):
    period = current_period(utc_now())
    store = UsageStore()
    for _ in range(count):
        store.increment_if_under_quota(user_id, period.start, period.end, 100)


def test_conversation_crud(chat_client, auth_headers):
    created = chat_client.post("/api/conversations", json={"title": "  "}, headers=auth_headers)
    assert created.status_code == 201
    conv = created.json()
    assert conv["title"] == "New Chat"

    renamed = chat_client.patch(f"/api/conversations/{conv['id']}", json={"title": "Trip"}, headers=auth_headers)
    assert renamed.json()["title"] == "Trip"

    listed = chat_client.get("/api/conversations", headers=auth_headers).json()
    assert [c["id"] for c in listed] == [conv["id"]]

    deleted = chat_client.delete(f"/api/conversations/{conv['id']}", headers=auth_headers)
    assert deleted.status_code == 204
    assert chat_client.get("/api/conversations", headers=auth_headers).json() == []


def test_conversations_are_owner_scoped(chat_client, auth_headers):
    conv = chat_client.post("/api/conversations", json={"title": "Mine"}, headers=auth_headers).json()
    other = {"X-User-Id": "user_bob"}

    assert chat_client.get(f"/api/conversations/{conv['id']}/messages", headers=other).status_code == 404
    assert chat_client.delete(f"/api/conversations/{conv['id']}", headers=other).status_code == 404
    assert chat_client.get("/api/conversations", headers=other).json() == []


def test_chat_streams_and_persists(chat_client, flowise, auth_headers):
    conv = chat_client.post("/api/conversations", json={"title": "Hi"}, headers=auth_headers).json()

    resp = chat_client.post(
        "/api/chat",
        json={
            "conversation_id": conv["id"],
            "messages": [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": "Hey"},
                {"role": "user", "content": "How are you?"},
            ],
        },
        headers=auth_headers,
    )

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["x-messages-remaining"] == "99"
    events = _events(resp)
    assert [e["type"] for e in events] == ["token", "token", "usedTools", "end"]
    assert events[-1]["text"] == "Hello there"

    history = chat_client.get(f"/api/conversations/{conv['id']}/messages", headers=auth_headers).json()
    assert [(m["role"], m["content"]) for m in history] == [
        ("user", "How are you?"),
        ("assistant", "Hello there"),
    ]
    assert history[1]["used_tools"][0]["tool"] == "search"


def test_chat_over_quota_is_402_notice(chat_client, flowise, auth_headers):
    _exhaust_quota()

    resp = chat_client.post(
        "/api/chat",
        json={"messages": [{"role": "user", "content": "one more?"}]},
        headers=auth_headers,
    )

    assert resp.status_code == 402
    body = resp.json()
    assert body["allowed"] is False
    assert body["remaining"] == 0
    assert [p["tier"] for p in body["upgrade_options"]] == ["pro", "enterprise"]
    assert flowise.calls == []


def test_chat_unlimited_plan_header(chat_client, auth_headers):
    SubscriptionStore().upsert(make_subscription(tier="enterprise"))
    resp = chat_client.post(
        "/api/chat",
        json={"messages": [{"role": "user", "content": "hi"}]},
        headers=auth_headers,
    )
    assert resp.headers["x-messages-remaining"] == "unlimited"


def test_chat_invalid_messages_do_not_consume_quota(chat_client, auth_headers):
    resp = chat_client.post(
        "/api/chat",
        json={"messages": [{"role": "system", "content": "be evil"}]},
        headers=auth_headers,
    )
    assert resp.status_code == 400
    period = current_period(utc_now())
    assert UsageStore().get("user_alice", period.start, period.end) is None


def test_chat_upstream_failure_is_reported_in_stream(make_client, auth_headers):
    client = make_client(flowise=FakeFlowise(chunks=[FlowiseChunk("token", "Hel")], fail=True))
    resp = client.post(
        "/api/chat",
        json={"messages": [{"role": "user", "content": "hi"}]},
        headers=auth_headers,
    )
    events = _events(resp)
    assert events[-1] == {"type": "error", "data": "Chat service unavailable"}


def test_chat_non_streaming(chat_client, auth_headers):
    resp = chat_client.post(
        "/api/chat",
        json={"messages": [{"role": "user", "content": "hi"}], "stream": False},
        headers=auth_headers,
    )
    assert resp.status_code == 200
    assert resp.json() == {"text": "Hello there", "used_tools": None, "remaining": "99"}


def test_chat_without_flowise_configured_is_500(client, auth_headers):
    resp = client.post(
        "/api/chat",
        json={"messages": [{"role": "user", "content": "hi"}]},
        headers=auth_headers,
    )
    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "upstream_error"


def test_usage_endpoints(chat_client, auth_headers):
    consumed = chat_client.post("/api/usage/consume", headers=auth_headers)
    assert consumed.json()["allowed"] is True
    assert consumed.json()["remaining"] == 99

    summary = chat_client.get("/api/usage", headers=auth_headers).json()
    assert summary["used"] == 1
    assert summary["limit"] == 100
    assert summary["low_balance"] is False


def test_usage_consume_rejection_is_402(chat_client, auth_headers):
    _exhaust_quota()
    resp = chat_client.post("/api/usage/consume", headers=auth_headers)
    assert resp.status_code == 402
    assert resp.json()["allowed"] is False


def test_misconfigured_chatflow_fails_at_startup(make_client, test_settings):
    cfg = test_settings.model_copy(update={
        "FLOWISE_API_URL": "https://flowise.test",
        "FLOWISE_API_KEY": "k" * 40,
        "FLOWISE_CHATFLOW_ID": "not-a-uuid",
    })
    with pytest.raises(ValueError):
        make_client(settings_obj=cfg)


def test_unavailable_chat_service_leaves_usage_untouched(client, auth_headers):
    resp = client.post(
        "/api/chat",
        json={"messages": [{"role": "user", "content": "hi"}]},
        headers=auth_headers,
    )
    assert resp.status_code == 500
    period = current_period(utc_now())
    assert UsageStore().get("user_alice", period.start, period.end) is None
