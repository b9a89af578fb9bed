from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from pulsecrm.core.money import ZERO_MONEY, to_money
from pulsecrm.models.campaign import CAMPAIGN_ACTIVE, Campaign
from pulsecrm.models.customer import Customer
from pulsecrm.models.order import Order


@dataclass
class DashboardStats:
    total_customers: int
    active_campaigns: int
    avg_success_rate: float
    total_revenue: Decimal


def get_dashboard_stats(db: Session, user_id: str) -> DashboardStats:
    total_customers = db.execute(select(func.count(Customer.id))).scalar_one()
    active_campaigns = db.execute(
        select(func.count(Campaign.id)).where(
            Campaign.created_by_user_id == user_id,
            Campaign.status == CAMPAIGN_ACTIVE,
        )
    ).scalar_one()
    avg_success_rate = db.execute(
        select(func.avg(Campaign.success_rate)).where(Campaign.created_by_user_id == user_id)
    ).scalar_one()
    total_revenue = db.execute(select(func.coalesce(func.sum(Order.amount), 0))).scalar_one()

    return DashboardStats(
        total_customers=int(total_customers or 0),
        active_campaigns=int(active_campaigns or 0),
        avg_success_rate=round(float(avg_success_rate or 0), 2),
        total_revenue=to_money(total_revenue) if total_revenue is not None else ZERO_MONEY,
    )
