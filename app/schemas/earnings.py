"""Schemas for contractor earnings views (major units)."""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class EarningsRead(BaseModel):
    available_balance: Decimal
    pending_balance: Decimal
    pending_earnings: Decimal
    total_earnings: Decimal
    currency: str
    as_of: datetime


class EarningsTransactionRead(BaseModel):
    id: str
    amount: Decimal
    currency: str
    type: str
    status: str
    created: datetime | None
    description: str
    payout_id: str | None = None


class PayoutRead(BaseModel):
    id: str
    amount: Decimal
    currency: str
    status: str
    created: datetime | None
    arrival_date: datetime | None = None
    description: str | None = None
    method: str | None = None
