"""Schemas for contractor rail accounts."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.payment import Rail


class ContractorAccountCreate(BaseModel):
    rail: Rail = Rail.STRIPE
    email: str | None = None
    country: str = Field(default="GB", min_length=2, max_length=2)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    first_name: str | None = None
    last_name: str | None = None

    @field_validator("country")
    @classmethod
    def _upper_country(cls, value: str) -> str:
        return value.upper()


class ContractorAccountRead(BaseModel):
    id: int
    contractor_id: int
    rail: str
    external_account_id: str
    country: str | None
    currency: str | None
    created_at: datetime
    created: bool = False

    model_config = ConfigDict(from_attributes=True)


class ConnectionCheckRead(BaseModel):
    rail: str
    success: bool
    error: str | None = None
