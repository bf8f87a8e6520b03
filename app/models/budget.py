"""Business budget ledger model."""
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, CheckConstraint, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class BudgetPeriodKind(str, enum.Enum):
    """Accounting windows a spend cap can roll over on."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class BudgetPeriod(Base):
    """Spend cap and usage counter for one business (amounts in minor units)."""

    __tablename__ = "budget_periods"
    __table_args__ = (
        CheckConstraint("used >= 0", name="ck_budget_used_non_negative"),
        CheckConstraint("cap IS NULL OR cap >= 0", name="ck_budget_cap_non_negative"),
    )

    business_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True, index=True)
    cap: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GBP")
    period: Mapped[str] = mapped_column(String(16), nullable=False, default=BudgetPeriodKind.YEARLY.value)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reset_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    @property
    def remaining_budget(self) -> int | None:
        if self.cap is None:
            return None
        return self.cap - (self.used or 0)
