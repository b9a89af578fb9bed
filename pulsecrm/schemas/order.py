from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pulsecrm.schemas.common import PaginationMeta


class OrderCreateIn(BaseModel):
    customer_id: str = Field(min_length=1, max_length=36)
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    order_date: datetime | None = None
    status: str = Field(default="completed", min_length=1, max_length=20)

    @field_validator("customer_id", "status")
    @classmethod
    def strip_text(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("value cannot be empty")
        return cleaned

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "customer_id": "5f0c6f7e-3c3b-4f0e-9b1e-2f7a1c9d8e11",
                "amount": "2500.00",
                "status": "completed",
            }
        }
    )


class OrderOut(BaseModel):
    id: str
    customer_id: str
    amount: Decimal
    order_date: datetime
    status: str
    created_at: datetime


class OrderListOut(BaseModel):
    items: list[OrderOut]
    pagination: PaginationMeta
