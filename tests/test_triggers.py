"""Tests for trigger predicates and the trigger evaluator."""

from datetime import datetime, timezone

import pytest

from mailflow.core.errors import ConfigurationError
from mailflow.engine.triggers import (
    TriggerEvaluator,
    build_trigger_table,
    evaluate_expression,
)
from mailflow.models.automation import TriggerKind
from mailflow.models.event import TriggerContext


def ctx(data: dict | None = None, subscriber_id: str | None = "sub_1", timestamp: datetime | None = None) -> TriggerContext:
    return TriggerContext(
        tenant_id="tenant_1",
        subscriber_id=subscriber_id,
        data=data or {},
        timestamp=timestamp or datetime(2024, 6, 3, 9, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def evaluator() -> TriggerEvaluator:
    return TriggerEvaluator()


def test_signup_requires_subscriber(evaluator) -> None:
    assert evaluator.evaluate(TriggerKind.SIGNUP, ctx(), {}) is True
    assert evaluator.evaluate(TriggerKind.SIGNUP, ctx(subscriber_id=None), {}) is False


def test_signup_source_filter(evaluator) -> None:
    conditions = {"source": "landing_page"}
    assert evaluator.evaluate(TriggerKind.SIGNUP, ctx({"source": "landing_page"}), conditions) is True
    assert evaluator.evaluate(TriggerKind.SIGNUP, ctx({"source": "import"}), conditions) is False
    assert evaluator.evaluate(TriggerKind.SIGNUP, ctx({"source": "import"}), {"source": "any"}) is True


def test_purchase_filters(evaluator) -> None:
    purchase = {
        "purchase": {
            "total": 120,
            "items": [
                {"product_id": "p1", "category": "shoes"},
                {"product_id": "p2", "category": "socks"},
            ],
        }
    }
    assert evaluator.evaluate(TriggerKind.PURCHASE, ctx(purchase), {}) is True
    assert evaluator.evaluate(TriggerKind.PURCHASE, ctx(purchase), {"product_ids": ["p9", "p2"]}) is True
    assert evaluator.evaluate(TriggerKind.PURCHASE, ctx(purchase), {"product_ids": ["p9"]}) is False
    assert evaluator.evaluate(TriggerKind.PURCHASE, ctx(purchase), {"categories": ["hats"]}) is False
    assert evaluator.evaluate(TriggerKind.PURCHASE, ctx(purchase), {"min_amount": 100}) is True
    assert evaluator.evaluate(TriggerKind.PURCHASE, ctx(purchase), {"min_amount": 150}) is False
    assert evaluator.evaluate(TriggerKind.PURCHASE, ctx({}), {}) is False


def test_cart_abandonment_waits_minimum_minutes(evaluator) -> None:
    recent = ctx({"cart": {"abandoned_at": "2024-06-03T08:30:00Z", "total": 80}})
    old = ctx({"cart": {"abandoned_at": "2024-06-03T07:30:00Z", "total": 80}})

    assert evaluator.evaluate(TriggerKind.CART_ABANDONMENT, recent, {}) is False
    assert evaluator.evaluate(TriggerKind.CART_ABANDONMENT, old, {}) is True
    assert evaluator.evaluate(TriggerKind.CART_ABANDONMENT, recent, {"min_abandon_minutes": 15}) is True
    assert evaluator.evaluate(TriggerKind.CART_ABANDONMENT, old, {"min_cart_value": 100}) is False


def test_inactivity_counts_whole_days(evaluator) -> None:
    data = {"last_active_at": "2024-05-04T10:00:00Z"}  # 29.96 days before
    assert evaluator.evaluate(TriggerKind.INACTIVITY, ctx(data), {}) is False
    assert evaluator.evaluate(TriggerKind.INACTIVITY, ctx(data), {"inactive_days": 29}) is True
    assert evaluator.evaluate(TriggerKind.INACTIVITY, ctx({}), {}) is False


def test_birthday_matches_month_and_day(evaluator) -> None:
    assert evaluator.evaluate(TriggerKind.BIRTHDAY, ctx({"birthday": "1990-06-03"}), {}) is True
    assert evaluator.evaluate(TriggerKind.BIRTHDAY, ctx({"birthday": "1990-06-04"}), {}) is False
    assert evaluator.evaluate(TriggerKind.BIRTHDAY, ctx({"birthday": "1990-07-03"}), {}) is False
    assert evaluator.evaluate(TriggerKind.BIRTHDAY, ctx({}), {}) is False


def test_product_view_filters(evaluator) -> None:
    data = {"product_id": "p1", "category": "shoes", "view_count": 2}
    assert evaluator.evaluate(TriggerKind.PRODUCT_VIEW, ctx(data), {"product_ids": ["p1"]}) is True
    assert evaluator.evaluate(TriggerKind.PRODUCT_VIEW, ctx(data), {"categories": ["hats"]}) is False
    assert evaluator.evaluate(TriggerKind.PRODUCT_VIEW, ctx(data), {"min_view_count": 3}) is False
    assert evaluator.evaluate(TriggerKind.PRODUCT_VIEW, ctx({"category": "shoes"}), {}) is False


def test_time_based_day_of_week_zero_is_sunday(evaluator) -> None:
    sunday = ctx(timestamp=datetime(2024, 6, 2, 9, 0, tzinfo=timezone.utc))
    monday = ctx(timestamp=datetime(2024, 6, 3, 9, 0, tzinfo=timezone.utc))

    assert evaluator.evaluate(TriggerKind.TIME_BASED, sunday, {"day_of_week": 0}) is True
    assert evaluator.evaluate(TriggerKind.TIME_BASED, monday, {"day_of_week": 0}) is False
    assert evaluator.evaluate(TriggerKind.TIME_BASED, monday, {"day_of_week": 1, "hour": 9}) is True
    assert evaluator.evaluate(TriggerKind.TIME_BASED, monday, {"hour": 9, "timezone": "Europe/Berlin"}) is False


def test_generic_event_required_fields_and_expression(evaluator) -> None:
    data = {"plan": "pro", "cart": {"total": 42}}
    assert evaluator.evaluate(TriggerKind.GENERIC_EVENT, ctx(data), {"required_fields": ["plan"]}) is True
    assert evaluator.evaluate(TriggerKind.GENERIC_EVENT, ctx(data), {"required_fields": ["coupon"]}) is False
    assert evaluator.evaluate(TriggerKind.GENERIC_EVENT, ctx(data), {"expression": "cart_total > 40"}) is True
    assert evaluator.evaluate(TriggerKind.GENERIC_EVENT, ctx(data), {"expression": "cart_total > 50"}) is False


def test_malformed_input_is_no_match(evaluator) -> None:
    bad_date = ctx({"cart": {"abandoned_at": "yesterday"}})
    assert evaluator.evaluate(TriggerKind.CART_ABANDONMENT, bad_date, {}) is False
    assert evaluator.evaluate(TriggerKind.PURCHASE, ctx({"purchase": {"total": 5}}), {"min_amount": "lots"}) is False
    assert evaluator.evaluate(TriggerKind.GENERIC_EVENT, ctx({}), {"expression": "unknown_name > 1"}) is False


def test_out_of_range_numbers_are_no_match(evaluator) -> None:
    huge = ctx({"purchase": {"total": 10**400}})

    assert evaluator.evaluate(TriggerKind.PURCHASE, huge, {"min_amount": 5}) is False
    assert evaluator.evaluate(TriggerKind.PURCHASE, ctx({"purchase": {"total": 5}}), {"min_amount": 10**400}) is False


def test_unknown_kind_raises(evaluator) -> None:
    with pytest.raises(ConfigurationError):
        evaluator.evaluate("page_scroll", ctx(), {})


def test_incomplete_table_rejected() -> None:
    table = build_trigger_table()
    del table[TriggerKind.BIRTHDAY]
    with pytest.raises(ConfigurationError):
        TriggerEvaluator(table)


def test_expression_invalid_raises_value_error() -> None:
    with pytest.raises(ValueError):
        evaluate_expression("import os", {})
