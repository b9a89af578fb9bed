from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from pulsecrm.models.customer import Customer
from pulsecrm.services.segment_rules import (
    REASON_INVALID_VALUE,
    REASON_MALFORMED,
    REASON_UNKNOWN_FIELD,
    REASON_UNSUPPORTED_OPERATOR,
    REASON_UNWIRED_FIELD,
    compile_rules,
    evaluate_segment,
    parse_rules,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _customer(name: str, *, spent: str = "0", visits: int = 0, days_ago: int | None = None) -> Customer:
    return Customer(
        id=f"id-{name}",
        name=name,
        email=f"{name}@example.com",
        total_spent=Decimal(spent),
        visit_count=visits,
        last_purchase_date=None if days_ago is None else NOW - timedelta(days=days_ago),
        customer_since=NOW - timedelta(days=365),
        is_active=True,
    )


def _names(evaluation) -> list[str]:
    return [customer.name for customer in evaluation.customers]


def _rules(*conditions, operator="AND") -> dict:
    return {
        "conditions": [{"field": f, "operator": o, "value": v} for f, o, v in conditions],
        "operator": operator,
    }


@pytest.fixture()
def customers() -> list[Customer]:
    return [
        _customer("ada", spent="15000.00", visits=8, days_ago=10),
        _customer("bola", spent="9999.99", visits=2, days_ago=120),
        _customer("chi", spent="10000.00", visits=6, days_ago=None),
        _customer("dayo", spent="250.50", visits=1, days_ago=45),
    ]


def test_empty_rules_return_whole_collection_in_input_order(customers):
    evaluation = evaluate_segment({"conditions": [], "operator": "AND"}, customers, now=NOW)
    assert _names(evaluation) == ["ada", "bola", "chi", "dayo"]
    assert evaluation.size == 4
    assert evaluation.unsupported == []


@pytest.mark.parametrize("raw", [None, "garbage", 42, {"operator": "AND"}, {"conditions": "nope"}])
def test_malformed_rules_mean_no_filter(customers, raw):
    evaluation = evaluate_segment(raw, customers, now=NOW)
    assert evaluation.size == len(customers)


def test_total_spent_compares_as_decimal_not_string(customers):
    # "9999.99" > "10000" as strings; numerically it is not.
    evaluation = evaluate_segment(_rules(("totalSpent", ">", "9999.99")), customers, now=NOW)
    assert _names(evaluation) == ["ada", "chi"]

    evaluation = evaluate_segment(_rules(("totalSpent", ">=", "10000")), customers, now=NOW)
    assert _names(evaluation) == ["ada", "chi"]

    evaluation = evaluate_segment(_rules(("totalSpent", "=", "250.5")), customers, now=NOW)
    assert _names(evaluation) == ["dayo"]


def test_visit_count_operators(customers):
    assert _names(evaluate_segment(_rules(("visitCount", ">", "5")), customers, now=NOW)) == ["ada", "chi"]
    assert _names(evaluate_segment(_rules(("visitCount", "<=", "2")), customers, now=NOW)) == ["bola", "dayo"]
    assert _names(evaluate_segment(_rules(("visitCount", "=", "6")), customers, now=NOW)) == ["chi"]


def test_and_requires_every_condition(customers):
    rules = _rules(("totalSpent", ">", "5000"), ("visitCount", ">", "6"))
    assert _names(evaluate_segment(rules, customers, now=NOW)) == ["ada"]


def test_or_requires_any_condition(customers):
    rules = _rules(("totalSpent", "<", "1000"), ("visitCount", ">", "6"), operator="OR")
    assert _names(evaluate_segment(rules, customers, now=NOW)) == ["ada", "dayo"]


def test_combinator_is_case_insensitive(customers):
    rules = _rules(("totalSpent", "<", "1000"), ("visitCount", ">", "6"), operator="or")
    assert _names(evaluate_segment(rules, customers, now=NOW)) == ["ada", "dayo"]


def test_last_purchase_older_than_days(customers):
    evaluation = evaluate_segment(_rules(("lastPurchaseDate", "<", "90")), customers, now=NOW)
    # 120 days ago matches, 10 days ago does not, no purchase never matches.
    assert _names(evaluation) == ["bola"]


def test_last_purchase_more_recent_than_days(customers):
    evaluation = evaluate_segment(_rules(("lastPurchaseDate", ">", "60")), customers, now=NOW)
    assert _names(evaluation) == ["ada", "dayo"]


def test_naive_purchase_dates_are_treated_as_utc():
    customer = _customer("naive", days_ago=5)
    customer.last_purchase_date = customer.last_purchase_date.replace(tzinfo=None)
    evaluation = evaluate_segment(_rules(("lastPurchaseDate", ">", "30")), [customer], now=NOW)
    assert evaluation.size == 1


@pytest.mark.parametrize(
    ("condition", "reason"),
    [
        (("lastPurchaseDate", ">=", "30"), REASON_UNSUPPORTED_OPERATOR),
        (("lastPurchaseDate", "=", "30"), REASON_UNSUPPORTED_OPERATOR),
        (("totalSpent", "!=", "10"), REASON_UNSUPPORTED_OPERATOR),
        (("customerSince", ">", "30"), REASON_UNWIRED_FIELD),
        (("favouriteColour", "=", "blue"), REASON_UNKNOWN_FIELD),
        (("totalSpent", ">", "lots"), REASON_INVALID_VALUE),
        (("visitCount", ">", "NaN"), REASON_INVALID_VALUE),
        (("lastPurchaseDate", "<", "1000000"), REASON_INVALID_VALUE),
        (("lastPurchaseDate", ">", "99999999999"), REASON_INVALID_VALUE),
    ],
)
def test_unsupported_conditions_are_reported_and_ignored(customers, condition, reason):
    rules = _rules(("visitCount", ">", "5"), condition)
    evaluation = evaluate_segment(rules, customers, now=NOW)

    assert _names(evaluation) == ["ada", "chi"]
    assert len(evaluation.unsupported) == 1
    marker = evaluation.unsupported[0]
    assert marker.index == 1
    assert marker.reason == reason
    assert (marker.field, marker.operator, marker.value) == condition


def test_only_unsupported_conditions_mean_no_filter(customers):
    rules = _rules(("customerSince", ">", "30"), operator="AND")
    evaluation = evaluate_segment(rules, customers, now=NOW)
    assert evaluation.size == len(customers)
    assert [item.reason for item in evaluation.unsupported] == [REASON_UNWIRED_FIELD]


def test_malformed_condition_is_reported_not_raised(customers):
    raw = {
        "conditions": [
            {"field": "visitCount", "operator": ">", "value": "5"},
            {"field": "totalSpent"},
            "not-a-condition",
        ],
        "operator": "AND",
    }
    rules, malformed = parse_rules(raw)
    assert len(rules.conditions) == 1
    assert [item.index for item in malformed] == [1, 2]
    assert all(item.reason == REASON_MALFORMED for item in malformed)

    evaluation = evaluate_segment(raw, customers, now=NOW)
    assert _names(evaluation) == ["ada", "chi"]


def test_numeric_values_from_generated_rules_are_accepted(customers):
    raw = {"conditions": [{"field": "totalSpent", "operator": ">", "value": 9999.99}], "operator": "AND"}
    assert _names(evaluate_segment(raw, customers, now=NOW)) == ["ada", "chi"]


def test_evaluation_is_idempotent_and_does_not_mutate_customers(customers):
    rules = _rules(("totalSpent", ">", "1000"), ("lastPurchaseDate", "<", "30"), operator="OR")
    snapshot = [(c.total_spent, c.visit_count, c.last_purchase_date) for c in customers]

    first = evaluate_segment(rules, customers, now=NOW)
    second = evaluate_segment(rules, customers, now=NOW)

    assert _names(first) == _names(second)
    assert [(c.total_spent, c.visit_count, c.last_purchase_date) for c in customers] == snapshot


def test_compile_rules_exposes_predicates_by_index():
    compiled = compile_rules(_rules(("visitCount", ">", "1"), ("customerSince", "<", "5")), now=NOW)
    assert [p.index for p in compiled.predicates] == [0]
    assert [u.index for u in compiled.unsupported] == [1]
    assert compiled.combinator == "AND"
