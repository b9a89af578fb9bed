from pydantic import BaseModel, ConfigDict, Field, field_validator

from pulsecrm.schemas.segment import SegmentRulesIn


class AISegmentRulesIn(BaseModel):
    description: str = Field(max_length=500)

    @field_validator("description")
    @classmethod
    def validate_description(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("description cannot be empty")
        return cleaned

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"description": "Customers who spent over 10000 and have not bought in 3 months"}
        }
    )


class AIMessagesIn(BaseModel):
    objective: str = Field(max_length=500)
    audience: str = Field(max_length=500)

    @field_validator("objective", "audience")
    @classmethod
    def validate_text(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("value cannot be empty")
        return cleaned


class MessageVariantOut(BaseModel):
    variant: str = Field(min_length=1, max_length=60)
    tone: str = Field(min_length=1, max_length=120)
    content: str = Field(min_length=1, max_length=2000)


class AIMessagesOut(BaseModel):
    messages: list[MessageVariantOut] = Field(min_length=1, max_length=5)


class AICampaignInsightsOut(BaseModel):
    summary: str = Field(min_length=1)
    insights: list[str] = Field(default_factory=list, max_length=10)
    recommendations: list[str] = Field(default_factory=list, max_length=10)


class AILookalikeIn(BaseModel):
    source_segment_id: str = Field(min_length=1, max_length=36)


class NumericRangeOut(BaseModel):
    min: float
    max: float


class LookalikeCharacteristicsOut(BaseModel):
    avg_spent: float = Field(alias="avgSpent")
    avg_visits: float = Field(alias="avgVisits")
    spend_range: NumericRangeOut = Field(alias="spendRange")
    visit_range: NumericRangeOut = Field(alias="visitRange")

    model_config = ConfigDict(populate_by_name=True)


class AILookalikeOut(BaseModel):
    source_segment_id: str
    source_size: int
    characteristics: LookalikeCharacteristicsOut
    rules: SegmentRulesIn


class AIResultMetaOut(BaseModel):
    provider: str
    model: str
