from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pulsecrm.schemas.common import PaginationMeta

CampaignStatus = Literal["draft", "active", "completed", "failed"]
CommunicationStatus = Literal["pending", "sent", "failed"]


class CampaignCreateIn(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    segment_id: str = Field(min_length=1, max_length=36)
    message: str = Field(min_length=1, max_length=2000)

    @field_validator("name", "segment_id")
    @classmethod
    def strip_text(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("value cannot be empty")
        return cleaned

    @field_validator("message")
    @classmethod
    def validate_message(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message is required")
        return value

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Win back lapsed buyers",
                "segment_id": "9a3e0a52-7f4c-4d8e-8a51-0c36d7f2b1aa",
                "message": "Hi {name}, we saved 10% off your next order for you.",
            }
        }
    )


class CampaignOut(BaseModel):
    id: str
    name: str
    segment_id: str
    message: str
    status: CampaignStatus
    audience_size: int
    delivered_count: int
    failed_count: int
    success_rate: Decimal
    created_by_user_id: str
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class CampaignListOut(BaseModel):
    items: list[CampaignOut]
    pagination: PaginationMeta


class CommunicationLogOut(BaseModel):
    id: str
    campaign_id: str
    customer_id: str
    message: str
    status: CommunicationStatus
    status_source: str | None = None
    sent_at: datetime | None = None
    failure_reason: str | None = None
    vendor_id: str | None = None
    created_at: datetime


class CommunicationLogListOut(BaseModel):
    items: list[CommunicationLogOut]
    pagination: PaginationMeta
    status: CommunicationStatus | None = None
