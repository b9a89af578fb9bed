"""Segment rule evaluation.

A segment's rules are a flat list of ``{field, operator, value}`` conditions joined by a
single ``AND``/``OR`` combinator. Every condition is compiled through a closed table of
(field, operator) pairs into a predicate over a ``Customer``; anything outside that
table compiles to an ``UnsupportedCondition`` carrying the reason, so callers can surface
it instead of losing it.

Evaluation is pure: it never touches the database and returns customers in the order
they were given.
"""

import logging
import operator as op
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from pydantic import ValidationError

from pulsecrm.core.money import parse_decimal, to_money
from pulsecrm.core.observability import log_event, pipeline_logger
from pulsecrm.models.customer import Customer
from pulsecrm.schemas.segment import RuleConditionIn, SegmentRulesIn

FIELD_TOTAL_SPENT = "totalSpent"
FIELD_VISIT_COUNT = "visitCount"
FIELD_LAST_PURCHASE_DATE = "lastPurchaseDate"
FIELD_CUSTOMER_SINCE = "customerSince"
KNOWN_FIELDS = (FIELD_TOTAL_SPENT, FIELD_VISIT_COUNT, FIELD_LAST_PURCHASE_DATE, FIELD_CUSTOMER_SINCE)

COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    ">": op.gt,
    ">=": op.ge,
    "<": op.lt,
    "<=": op.le,
    "=": op.eq,
}
DATE_OPERATORS = (">", "<")

REASON_UNKNOWN_FIELD = "unknown_field"
REASON_UNWIRED_FIELD = "field_not_evaluated"
REASON_UNSUPPORTED_OPERATOR = "unsupported_operator"
REASON_INVALID_VALUE = "invalid_value"
REASON_MALFORMED = "malformed_condition"

CustomerPredicate = Callable[[Customer], bool]
PredicateBuilder = Callable[[str, datetime], CustomerPredicate | None]


@dataclass(frozen=True)
class ConditionPredicate:
    index: int
    field: str
    operator: str
    value: str
    test: CustomerPredicate

    def __call__(self, customer: Customer) -> bool:
        return self.test(customer)


@dataclass(frozen=True)
class UnsupportedCondition:
    index: int
    field: str
    operator: str
    value: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "field": self.field,
            "operator": self.operator,
            "value": self.value,
            "reason": self.reason,
        }


CompiledCondition = ConditionPredicate | UnsupportedCondition


@dataclass
class CompiledRules:
    combinator: str
    predicates: list[ConditionPredicate] = field(default_factory=list)
    unsupported: list[UnsupportedCondition] = field(default_factory=list)

    def matches(self, customer: Customer) -> bool:
        if not self.predicates:
            return True
        if self.combinator == "OR":
            return any(predicate(customer) for predicate in self.predicates)
        return all(predicate(customer) for predicate in self.predicates)


@dataclass
class SegmentEvaluation:
    customers: list[Customer]
    rules: CompiledRules

    @property
    def size(self) -> int:
        return len(self.customers)

    @property
    def unsupported(self) -> list[UnsupportedCondition]:
        return self.rules.unsupported


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_int(value: str) -> int | None:
    parsed = parse_decimal(value)
    if parsed is None:
        return None
    return int(parsed)


def _total_spent(customer: Customer) -> Decimal:
    return to_money(customer.total_spent)


def _visit_count(customer: Customer) -> int:
    return customer.visit_count or 0


def _numeric_rule(
    read: Callable[[Customer], Any],
    parse: Callable[[str], Any],
    compare: Callable[[Any, Any], bool],
) -> PredicateBuilder:
    def build(value: str, now: datetime) -> CustomerPredicate | None:
        threshold = parse(value)
        if threshold is None:
            return None
        return lambda customer: compare(read(customer), threshold)

    return build


def _days_ago_rule(read: Callable[[Customer], datetime | None], compare: Callable[[Any, Any], bool]) -> PredicateBuilder:
    def build(value: str, now: datetime) -> CustomerPredicate | None:
        days = _parse_int(value)
        if days is None:
            return None
        try:
            cutoff = now - timedelta(days=days)
        except OverflowError:
            return None

        def test(customer: Customer) -> bool:
            moment = read(customer)
            # No purchase on record never satisfies a date comparison.
            return moment is not None and compare(_as_utc(moment), cutoff)

        return test

    return build


def _build_rule_table() -> dict[tuple[str, str], PredicateBuilder]:
    table: dict[tuple[str, str], PredicateBuilder] = {}
    for symbol, compare in COMPARATORS.items():
        table[(FIELD_TOTAL_SPENT, symbol)] = _numeric_rule(_total_spent, parse_decimal, compare)
        table[(FIELD_VISIT_COUNT, symbol)] = _numeric_rule(_visit_count, _parse_int, compare)
    for symbol in DATE_OPERATORS:
        table[(FIELD_LAST_PURCHASE_DATE, symbol)] = _days_ago_rule(
            lambda customer: customer.last_purchase_date,
            COMPARATORS[symbol],
        )
    return table


RULE_TABLE = _build_rule_table()


def parse_rules(raw: Any) -> tuple[SegmentRulesIn, list[UnsupportedCondition]]:
    """Parse stored or generated rules without ever raising.

    Anything that is not a mapping, or lacks a ``conditions`` list, becomes an empty
    rule set (no filter). Individual conditions that fail validation are reported as
    malformed and left out.
    """
    if isinstance(raw, SegmentRulesIn):
        return raw, []
    if not isinstance(raw, dict):
        return SegmentRulesIn(), []

    combinator = raw.get("operator", "AND")
    if not isinstance(combinator, str) or combinator.strip().upper() not in ("AND", "OR"):
        combinator = "AND"

    raw_conditions = raw.get("conditions")
    if not isinstance(raw_conditions, list):
        return SegmentRulesIn(operator=combinator.strip().upper()), []

    conditions: list[RuleConditionIn] = []
    malformed: list[UnsupportedCondition] = []
    for index, item in enumerate(raw_conditions):
        try:
            conditions.append(RuleConditionIn.model_validate(item))
        except ValidationError:
            item_map = item if isinstance(item, dict) else {}
            malformed.append(
                UnsupportedCondition(
                    index=index,
                    field=str(item_map.get("field", "")),
                    operator=str(item_map.get("operator", "")),
                    value=str(item_map.get("value", "")),
                    reason=REASON_MALFORMED,
                )
            )
    return SegmentRulesIn(conditions=conditions, operator=combinator.strip().upper()), malformed


def compile_condition(condition: RuleConditionIn, *, index: int, now: datetime) -> CompiledCondition:
    def unsupported(reason: str) -> UnsupportedCondition:
        return UnsupportedCondition(
            index=index,
            field=condition.field,
            operator=condition.operator,
            value=condition.value,
            reason=reason,
        )

    if condition.field not in KNOWN_FIELDS:
        return unsupported(REASON_UNKNOWN_FIELD)
    if condition.field == FIELD_CUSTOMER_SINCE:
        return unsupported(REASON_UNWIRED_FIELD)

    builder = RULE_TABLE.get((condition.field, condition.operator))
    if builder is None:
        return unsupported(REASON_UNSUPPORTED_OPERATOR)

    test = builder(condition.value, now)
    if test is None:
        return unsupported(REASON_INVALID_VALUE)
    return ConditionPredicate(
        index=index,
        field=condition.field,
        operator=condition.operator,
        value=condition.value,
        test=test,
    )


def compile_rules(raw: Any, *, now: datetime | None = None, log_unsupported: bool = True) -> CompiledRules:
    rules, malformed = parse_rules(raw)
    moment = _as_utc(now) if now else datetime.now(timezone.utc)
    compiled = CompiledRules(combinator=rules.operator, unsupported=list(malformed))
    for index, condition in enumerate(rules.conditions):
        result = compile_condition(condition, index=index, now=moment)
        if isinstance(result, UnsupportedCondition):
            compiled.unsupported.append(result)
        else:
            compiled.predicates.append(result)

    if compiled.unsupported and log_unsupported:
        log_event(
            pipeline_logger,
            "segment_rules_unsupported",
            level=logging.WARNING,
            conditions=[item.to_dict() for item in compiled.unsupported],
        )
    return compiled


def evaluate_segment(
    raw_rules: Any,
    customers: Iterable[Customer],
    *,
    now: datetime | None = None,
) -> SegmentEvaluation:
    compiled = compile_rules(raw_rules, now=now)
    matched = [customer for customer in customers if compiled.matches(customer)]
    return SegmentEvaluation(customers=matched, rules=compiled)
