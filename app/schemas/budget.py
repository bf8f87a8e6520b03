"""Schemas for business budget control."""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from app.models.budget import BudgetPeriodKind


class BudgetSet(BaseModel):
    cap: int | None = Field(default=None, ge=0, description="Cap in minor units; null means unlimited.")
    period: BudgetPeriodKind | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    reset_enabled: bool | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class BudgetRead(BaseModel):
    business_id: int
    cap: int | None
    used: int
    remaining_budget: int | None
    currency: str
    period: str
    start_date: datetime
    end_date: datetime
    reset_enabled: bool
    cap_major: Decimal | None = None
    used_major: Decimal | None = None

    model_config = ConfigDict(from_attributes=True)
