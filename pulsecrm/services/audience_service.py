from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from pulsecrm.core.config import settings
from pulsecrm.core.money import ZERO_MONEY, percentage, to_money
from pulsecrm.db.base import utcnow
from pulsecrm.models.customer import Customer
from pulsecrm.models.segment import Segment
from pulsecrm.services.segment_rules import SegmentEvaluation, UnsupportedCondition, evaluate_segment


@dataclass
class AudiencePreview:
    audience_size: int
    total_customers: int
    percentage: float
    avg_spend: float
    engagement_rate: float
    unsupported: list[UnsupportedCondition]


def load_customers(db: Session) -> list[Customer]:
    # Insertion order; the evaluator never re-sorts.
    return db.execute(
        select(Customer).order_by(Customer.created_at.asc(), Customer.id.asc())
    ).scalars().all()


def count_customers(db: Session) -> int:
    return int(db.execute(select(func.count(Customer.id))).scalar_one() or 0)


def resolve_audience(db: Session, rules: Any, *, now: datetime | None = None) -> SegmentEvaluation:
    return evaluate_segment(rules, load_customers(db), now=now)


def preview_audience(db: Session, rules: Any, *, now: datetime | None = None) -> AudiencePreview:
    customers = load_customers(db)
    evaluation = evaluate_segment(rules, customers, now=now)
    audience = evaluation.customers

    spend_total = sum((to_money(customer.total_spent) for customer in audience), ZERO_MONEY)
    avg_spend = float(to_money(spend_total / len(audience))) if audience else 0.0
    engaged = sum(1 for customer in audience if (customer.visit_count or 0) > settings.engaged_visit_threshold)

    return AudiencePreview(
        audience_size=evaluation.size,
        total_customers=len(customers),
        percentage=percentage(evaluation.size, len(customers)),
        avg_spend=avg_spend,
        engagement_rate=percentage(engaged, len(audience)),
        unsupported=evaluation.unsupported,
    )


def refresh_segment_audience(db: Session, segment: Segment) -> SegmentEvaluation:
    """Recompute and store a segment's audience snapshot. Caller commits."""
    evaluation = resolve_audience(db, segment.rules_json)
    segment.audience_size = evaluation.size
    segment.audience_refreshed_at = utcnow()
    db.add(segment)
    return evaluation


def audience_profile(customers: list[Customer], *, now: datetime | None = None) -> list[dict[str, Any]]:
    moment = now or utcnow()
    profile = []
    for customer in customers:
        days_since = None
        if customer.last_purchase_date is not None:
            last = customer.last_purchase_date
            if last.tzinfo is None:
                last = last.replace(tzinfo=moment.tzinfo)
            days_since = max(0, (moment - last).days)
        profile.append(
            {
                "total_spent": float(to_money(customer.total_spent)),
                "visit_count": customer.visit_count or 0,
                "days_since_last_purchase": days_since,
            }
        )
    return profile
