from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pulsecrm.schemas.common import PaginationMeta

RuleCombinator = Literal["AND", "OR"]


class RuleConditionIn(BaseModel):
    field: str = Field(min_length=1, max_length=60)
    operator: str = Field(min_length=1, max_length=4)
    value: str = Field(max_length=60)

    @field_validator("field", "operator")
    @classmethod
    def strip_text(cls, value: str) -> str:
        return value.strip()

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, value: object) -> object:
        # Rule values are strings on the wire; generated rules sometimes carry bare numbers.
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float, Decimal)):
            return str(value)
        if isinstance(value, str):
            return value.strip()
        return value


class SegmentRulesIn(BaseModel):
    conditions: list[RuleConditionIn] = Field(default_factory=list, max_length=50)
    operator: RuleCombinator = "AND"

    @field_validator("operator", mode="before")
    @classmethod
    def normalize_operator(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "conditions": [
                    {"field": "totalSpent", "operator": ">", "value": "10000"},
                    {"field": "lastPurchaseDate", "operator": "<", "value": "90"},
                ],
                "operator": "AND",
            }
        }
    )


class RuleWarningOut(BaseModel):
    index: int
    field: str
    operator: str
    value: str
    reason: str


class SegmentCreateIn(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    rules: SegmentRulesIn

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("name is required")
        return cleaned

    @field_validator("description")
    @classmethod
    def normalize_description(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None


class SegmentOut(BaseModel):
    id: str
    name: str
    description: str | None = None
    rules: SegmentRulesIn
    audience_size: int
    audience_refreshed_at: datetime | None = None
    warnings: list[RuleWarningOut] = Field(default_factory=list)
    created_by_user_id: str
    created_at: datetime
    updated_at: datetime


class SegmentListOut(BaseModel):
    items: list[SegmentOut]
    pagination: PaginationMeta


class SegmentPreviewIn(BaseModel):
    rules: SegmentRulesIn = Field(default_factory=SegmentRulesIn)


class SegmentPreviewOut(BaseModel):
    audience_size: int
    total_customers: int
    percentage: float
    avg_spend: float
    engagement_rate: float
    warnings: list[RuleWarningOut]

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "audience_size": 42,
                "total_customers": 300,
                "percentage": 14.0,
                "avg_spend": 12850.5,
                "engagement_rate": 38.1,
                "warnings": [],
            }
        }
    )
