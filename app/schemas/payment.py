"""Schemas for milestone payments."""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.payment import Rail


class PaymentCreate(BaseModel):
    contract_id: int
    milestone_id: int
    business_id: int
    contractor_id: int
    amount: int = Field(gt=0, description="Amount in minor currency units.")
    currency: str = Field(default="GBP", min_length=3, max_length=3)
    rail: Rail = Rail.STRIPE
    description: str | None = Field(default=None, max_length=255)
    idempotency_key: str | None = Field(default=None, max_length=128)

    @field_validator("currency")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()


class PaymentRead(BaseModel):
    id: int
    contract_id: int
    milestone_id: int
    business_id: int | None
    contractor_id: int | None
    amount: int
    amount_major: Decimal
    currency: str
    rail: str
    status: str
    intent_status: str | None
    transfer_status: str | None
    state: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentCreated(BaseModel):
    payment: PaymentRead
    client_secret: str | None = None
