from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from pulsecrm.schemas.common import PaginationMeta


class CustomerCreateIn(BaseModel):
    name: str = Field(max_length=120)
    email: EmailStr
    phone: str | None = Field(default=None, max_length=40)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("name is required")
        return cleaned

    @field_validator("phone")
    @classmethod
    def normalize_phone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: EmailStr) -> EmailStr:
        return str(value).strip().lower()

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Aisha Bello",
                "email": "aisha@example.com",
                "phone": "+2348011112222",
            }
        }
    )


class CustomerUpdateIn(BaseModel):
    name: str | None = Field(default=None, max_length=120)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=40)
    is_active: bool | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("name cannot be empty")
        return cleaned

    @field_validator("phone")
    @classmethod
    def normalize_phone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: EmailStr | None) -> EmailStr | None:
        if value is None:
            return None
        return str(value).strip().lower()

    @model_validator(mode="after")
    def validate_any_field_present(self) -> "CustomerUpdateIn":
        if self.name is None and self.email is None and self.phone is None and self.is_active is None:
            raise ValueError("At least one field must be provided")
        return self


class CustomerOut(BaseModel):
    id: str
    name: str
    email: EmailStr
    phone: str | None = None
    total_spent: Decimal
    visit_count: int
    last_purchase_date: datetime | None = None
    customer_since: datetime
    is_active: bool
    created_at: datetime
    updated_at: datetime


class CustomerListOut(BaseModel):
    items: list[CustomerOut]
    pagination: PaginationMeta
