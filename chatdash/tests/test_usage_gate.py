"""Tests for the monthly usage counter and gate."""

import math
import threading
from datetime import datetime, timezone

import pytest

from chatdash.conftest import FIXED_NOW, make_subscription
from chatdash.features.usage.service import UsageGate, current_period
from chatdash.features.usage.store import UsageStore


@pytest.fixture
def usage_store():
    return UsageStore()


@pytest.fixture
def gate(catalog, subscription_store, usage_store):
    return UsageGate(catalog, subscription_store, usage_store)


def test_current_period_is_the_utc_calendar_month():
    period = current_period(datetime(2024, 2, 10, 8, 30, tzinfo=timezone.utc))
    assert period.start == datetime(2024, 2, 1, tzinfo=timezone.utc)
    assert period.end == datetime(2024, 2, 29, 23, 59, 59, 999999, tzinfo=timezone.utc)


def test_current_period_handles_december_and_naive_input():
    period = current_period(datetime(2024, 12, 31, 23, 0))
    assert period.start == datetime(2024, 12, 1, tzinfo=timezone.utc)
    assert period.end.month == 12 and period.end.day == 31


def test_free_user_gets_100_messages_then_rejection(gate):
    for i in range(100):
        decision = gate.try_consume_one_message("user_free", now=FIXED_NOW)
        assert decision.allowed is True
        assert decision.remaining == 99 - i

    decision = gate.try_consume_one_message("user_free", now=FIXED_NOW)
    assert decision.allowed is False
    assert decision.remaining == 0


def test_free_user_at_99_gets_one_more(gate, usage_store):
    period = current_period(FIXED_NOW)
    for _ in range(99):
        usage_store.increment_if_under_quota("user_99", period.start, period.end, 100)

    first = gate.try_consume_one_message("user_99", now=FIXED_NOW)
    assert (first.allowed, first.remaining) == (True, 0)

    second = gate.try_consume_one_message("user_99", now=FIXED_NOW)
    assert (second.allowed, second.remaining) == (False, 0)
    assert usage_store.get("user_99", period.start, period.end).count == 100


def test_rejection_does_not_mutate_count(gate, usage_store):
    period = current_period(FIXED_NOW)
    for _ in range(100):
        gate.try_consume_one_message("user_full", now=FIXED_NOW)
    before = usage_store.get("user_full", period.start, period.end)

    gate.try_consume_one_message("user_full", now=FIXED_NOW)
    after = usage_store.get("user_full", period.start, period.end)
    assert after.count == before.count == 100


def test_new_month_starts_a_new_counter(gate):
    for _ in range(100):
        gate.try_consume_one_message("user_m", now=FIXED_NOW)
    assert gate.try_consume_one_message("user_m", now=FIXED_NOW).allowed is False

    next_month = datetime(2025, 4, 1, 0, 0, tzinfo=timezone.utc)
    decision = gate.try_consume_one_message("user_m", now=next_month)
    assert (decision.allowed, decision.remaining) == (True, 99)


def test_unbounded_plan_never_writes(gate, subscription_store, usage_store):
    subscription_store.upsert(make_subscription("user_pro", tier="pro"))

    decision = gate.try_consume_one_message("user_pro", now=FIXED_NOW)
    assert decision.allowed is True
    assert math.isinf(decision.remaining)

    period = current_period(FIXED_NOW)
    assert usage_store.get("user_pro", period.start, period.end) is None


def test_canceled_subscription_is_gated_like_free(gate, subscription_store):
    subscription_store.upsert(make_subscription("user_c", tier="enterprise", status="canceled"))
    decision = gate.try_consume_one_message("user_c", now=FIXED_NOW)
    assert (decision.allowed, decision.remaining) == (True, 99)


def test_zero_quota_rejects_without_writing(usage_store):
    period = current_period(FIXED_NOW)
    accepted, count = usage_store.increment_if_under_quota("user_z", period.start, period.end, 0)
    assert (accepted, count) == (False, 0)
    assert usage_store.get("user_z", period.start, period.end) is None


def test_create_for_period_is_idempotent(usage_store):
    period = current_period(FIXED_NOW)
    first = usage_store.create_for_period("user_new", period.start, period.end)
    usage_store.increment_if_under_quota("user_new", period.start, period.end, 100)
    second = usage_store.create_for_period("user_new", period.start, period.end)
    assert first.count == 0
    assert second.count == 1
    assert second.period_start == period.start


def test_concurrent_consumes_at_quota_minus_one_accept_exactly_one(gate, usage_store):
    period = current_period(FIXED_NOW)
    for _ in range(99):
        usage_store.increment_if_under_quota("user_race", period.start, period.end, 100)

    results = []
    lock = threading.Lock()
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        decision = gate.try_consume_one_message("user_race", now=FIXED_NOW)
        with lock:
            results.append(decision)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for d in results if d.allowed) == 1
    assert all(d.remaining == 0 for d in results)
    assert usage_store.get("user_race", period.start, period.end).count == 100


def test_usage_summary_reports_low_balance(gate):
    for _ in range(96):
        gate.try_consume_one_message("user_low", now=FIXED_NOW)
    summary = gate.usage_summary("user_low", now=FIXED_NOW)
    assert summary["tier"] == "free"
    assert summary["used"] == 96
    assert summary["limit"] == 100
    assert summary["remaining"] == 4
    assert summary["percentage"] == 96
    assert summary["low_balance"] is True


def test_usage_summary_for_unbounded_plan(gate, subscription_store):
    subscription_store.upsert(make_subscription("user_ent", tier="enterprise"))
    summary = gate.usage_summary("user_ent", now=FIXED_NOW)
    assert summary["limit"] is None
    assert summary["remaining"] is None
    assert summary["remaining_display"] == "Unlimited"
    assert summary["low_balance"] is False
