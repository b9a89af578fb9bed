from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from pulsecrm.core.api_docs import error_responses
from pulsecrm.core.deps import get_db
from pulsecrm.core.security_current import get_current_user
from pulsecrm.models.user import User
from pulsecrm.schemas.dashboard import DashboardStatsOut
from pulsecrm.services.dashboard_service import get_dashboard_stats

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get(
    "/stats",
    response_model=DashboardStatsOut,
    summary="Dashboard stats",
    description="Customer count, your active campaigns, your average campaign success rate and total order revenue.",
    responses=error_responses(401, 403, 500, path="/dashboard/stats"),
)
def dashboard_stats(
    db: Session = Depends(get_db),
    actor: User = Depends(get_current_user),
):
    stats = get_dashboard_stats(db, actor.id)
    return DashboardStatsOut(
        total_customers=stats.total_customers,
        active_campaigns=stats.active_campaigns,
        avg_success_rate=stats.avg_success_rate,
        total_revenue=stats.total_revenue,
    )
