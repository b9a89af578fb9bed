from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pulsecrm.schemas.campaign import CommunicationStatus

ReceiptStatus = Literal["SENT", "FAILED"]


class DeliveryReceiptIn(BaseModel):
    log_id: str = Field(alias="logId", min_length=1, max_length=36)
    vendor_id: str = Field(alias="vendorId", min_length=1, max_length=64)
    status: ReceiptStatus
    delivered_at: datetime = Field(alias="deliveredAt")
    failure_reason: str | None = Field(default=None, alias="failureReason", max_length=255)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "logId": "0b8f8d57-2a53-4d4e-9d3e-4bb1fa3c2f10",
                "vendorId": "vendor_1760000000000_k3j9x8q2m",
                "status": "FAILED",
                "deliveredAt": "2026-02-01T12:00:03Z",
                "failureReason": "Email bounced",
            }
        },
    )


class DeliveryReceiptOut(BaseModel):
    log_id: str
    status: CommunicationStatus
    applied: bool
