from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class DashboardStatsOut(BaseModel):
    total_customers: int
    active_campaigns: int
    avg_success_rate: float
    total_revenue: Decimal

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "total_customers": 1250,
                "active_campaigns": 2,
                "avg_success_rate": 89.4,
                "total_revenue": "4825000.00",
            }
        }
    )
