"""Business spend caps over rolling accounting periods."""
from __future__ import annotations

import calendar
import logging
from datetime import datetime
from typing import Callable

from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.budget import BudgetPeriod, BudgetPeriodKind
from app.services.invalidation import invalidate_on_commit
from app.utils.audit import log_audit
from app.utils.errors import BudgetExceeded, BudgetNotConfigured, InvalidBudgetRequest
from app.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

PERIOD_MONTHS = {
    BudgetPeriodKind.MONTHLY: 1,
    BudgetPeriodKind.QUARTERLY: 3,
    BudgetPeriodKind.YEARLY: 12,
}


def add_months(value: datetime, months: int) -> datetime:
    """Shift ``value`` by whole months, clamping to the target month's last day."""

    index = value.month - 1 + months
    year = value.year + index // 12
    month = index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_end(start: datetime, period: BudgetPeriodKind | str) -> datetime:
    return add_months(start, PERIOD_MONTHS[BudgetPeriodKind(period)])


def _parse_period(period: str | BudgetPeriodKind | None) -> BudgetPeriodKind:
    raw = period or get_settings().DEFAULT_BUDGET_PERIOD
    try:
        return BudgetPeriodKind(raw)
    except ValueError:
        raise InvalidBudgetRequest(
            f"Unknown budget period {raw!r}.",
            details={"allowed": [kind.value for kind in BudgetPeriodKind]},
        ) from None


class BudgetLedger:
    """Spend cap and usage per business; every amount is in minor units.

    ``record_spend`` is a single conditional UPDATE so concurrent spends can
    never push ``used`` past ``cap``. Reads and writes both roll an expired
    window over first when ``reset_enabled`` is set.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    # ------------------------------------------------------------------ reads

    def _load(self, db: Session, business_id: int) -> BudgetPeriod | None:
        return db.execute(
            select(BudgetPeriod).where(BudgetPeriod.business_id == business_id)
        ).scalar_one_or_none()

    def _require(self, db: Session, business_id: int) -> BudgetPeriod:
        budget = self._load(db, business_id)
        if budget is None:
            raise BudgetNotConfigured(
                "No budget configured for this business.", details={"business_id": business_id}
            )
        return budget

    def get_budget(self, db: Session, business_id: int) -> BudgetPeriod | None:
        budget = self._load(db, business_id)
        if budget is None:
            return None
        return self._roll_over_if_expired(db, budget)

    def check_budget_available(self, db: Session, business_id: int, amount: int) -> bool:
        """Advisory check; does not reserve anything."""

        budget = self.get_budget(db, business_id)
        if budget is None or budget.cap is None:
            return True
        return budget.used + amount <= budget.cap

    # -------------------------------------------------------------- rollover

    def rollover_due(self, budget) -> bool:
        """True when ``budget`` (a row or its read model) has an expired, auto-resetting window."""

        return bool(budget.reset_enabled) and self._clock() > ensure_utc(budget.end_date)

    def _roll_over_if_expired(self, db: Session, budget: BudgetPeriod) -> BudgetPeriod:
        if not self.rollover_due(budget):
            return budget
        now = self._clock()

        start = ensure_utc(budget.end_date)
        end = period_end(start, budget.period)
        while end < now:
            start, end = end, period_end(end, budget.period)

        # Compare-and-swap on the old window: only one caller performs the reset.
        result = db.execute(
            update(BudgetPeriod)
            .where(
                and_(
                    BudgetPeriod.id == budget.id,
                    BudgetPeriod.end_date == budget.end_date,
                )
            )
            .values(used=0, start_date=start, end_date=end, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            log_audit(
                db,
                actor="system",
                action="BUDGET_PERIOD_ROLLED_OVER",
                entity="BudgetPeriod",
                entity_id=budget.id,
                data={
                    "business_id": budget.business_id,
                    "used_before": budget.used,
                    "start_date": start.isoformat(),
                    "end_date": end.isoformat(),
                },
            )
            invalidate_on_commit(db, "budget.change", {"businessId": budget.business_id})
            logger.info(
                "Budget period rolled over",
                extra={"business_id": budget.business_id, "period": budget.period, "end_date": end.isoformat()},
            )
        db.commit()
        db.refresh(budget)
        return budget

    # ----------------------------------------------------------------- writes

    def set_budget(
        self,
        db: Session,
        business_id: int,
        cap: int | None,
        *,
        period: str | BudgetPeriodKind | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        reset_enabled: bool | None = None,
        currency: str | None = None,
        actor: str = "system",
    ) -> BudgetPeriod:
        """Replace the active configuration; ``used`` is carried over untouched."""

        if cap is not None and cap < 0:
            raise InvalidBudgetRequest("Budget cap cannot be negative.", details={"cap": cap})
        kind = _parse_period(period)
        start = ensure_utc(start_date) if start_date else self._clock()
        end = ensure_utc(end_date) if end_date else period_end(start, kind)
        if end <= start:
            raise InvalidBudgetRequest(
                "Budget end date must be after its start date.",
                details={"start_date": start.isoformat(), "end_date": end.isoformat()},
            )

        budget = self._load(db, business_id)
        created = budget is None
        if budget is None:
            budget = BudgetPeriod(business_id=business_id, used=0)
            db.add(budget)
        budget.cap = cap
        budget.period = kind.value
        budget.start_date = start
        budget.end_date = end
        if reset_enabled is not None:
            budget.reset_enabled = reset_enabled
        elif created:
            budget.reset_enabled = False
        budget.currency = (currency or budget.currency or get_settings().DEFAULT_CURRENCY).upper()

        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            # A concurrent first write created the row; apply on top of it.
            return self.set_budget(
                db,
                business_id,
                cap,
                period=kind,
                start_date=start,
                end_date=end,
                reset_enabled=reset_enabled,
                currency=currency,
                actor=actor,
            )

        log_audit(
            db,
            actor=actor,
            action="BUDGET_SET",
            entity="BudgetPeriod",
            entity_id=budget.id,
            data={
                "business_id": business_id,
                "cap": cap,
                "period": kind.value,
                "start_date": start.isoformat(),
                "end_date": end.isoformat(),
                "reset_enabled": budget.reset_enabled,
            },
        )
        invalidate_on_commit(db, "budget.change", {"businessId": business_id})
        db.commit()
        db.refresh(budget)
        logger.info(
            "Budget configured",
            extra={"business_id": business_id, "cap": cap, "period": kind.value, "created": created},
        )
        return budget

    def reset_budget(self, db: Session, business_id: int, *, actor: str = "system") -> BudgetPeriod:
        budget = self._require(db, business_id)
        previous = budget.used
        db.execute(
            update(BudgetPeriod)
            .where(BudgetPeriod.id == budget.id)
            .values(used=0, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        log_audit(
            db,
            actor=actor,
            action="BUDGET_RESET",
            entity="BudgetPeriod",
            entity_id=budget.id,
            data={"business_id": business_id, "used_before": previous},
        )
        invalidate_on_commit(db, "budget.change", {"businessId": business_id})
        db.commit()
        db.refresh(budget)
        logger.info("Budget reset", extra={"business_id": business_id, "used_before": previous})
        return budget

    def record_spend(
        self,
        db: Session,
        business_id: int,
        amount: int,
        *,
        enforce: bool = True,
        actor: str = "system",
    ) -> BudgetPeriod:
        """Add ``amount`` to ``used`` atomically, or raise :class:`BudgetExceeded`.

        With ``enforce=False`` the spend is always recorded and an overshoot is
        only logged.
        """

        if amount <= 0:
            raise InvalidBudgetRequest("Spend amount must be positive.", details={"amount": amount})

        budget = self.get_budget(db, business_id)
        if budget is None:
            raise BudgetNotConfigured(
                "No budget configured for this business.", details={"business_id": business_id}
            )

        new_used = BudgetPeriod.used + amount
        conditions = [BudgetPeriod.id == budget.id]
        if enforce:
            conditions.append(or_(BudgetPeriod.cap.is_(None), new_used <= BudgetPeriod.cap))
        result = db.execute(
            update(BudgetPeriod)
            .where(and_(*conditions))
            .values(used=new_used, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            db.refresh(budget)
            logger.info(
                "Budget spend rejected",
                extra={"business_id": business_id, "amount": amount, "cap": budget.cap, "used": budget.used},
            )
            raise BudgetExceeded(
                business_id=business_id, amount=amount, cap=budget.cap or 0, used=budget.used
            )

        log_audit(
            db,
            actor=actor,
            action="BUDGET_SPEND_RECORDED",
            entity="BudgetPeriod",
            entity_id=budget.id,
            data={"business_id": business_id, "amount": amount, "enforced": enforce},
        )
        invalidate_on_commit(db, "budget.change", {"businessId": business_id})
        db.commit()
        db.refresh(budget)
        if budget.cap is not None and budget.used > budget.cap:
            logger.warning(
                "Budget cap overshoot recorded in advisory mode",
                extra={"business_id": business_id, "cap": budget.cap, "used": budget.used},
            )
        return budget

    def release_spend(
        self,
        db: Session,
        business_id: int,
        amount: int,
        *,
        actor: str = "system",
    ) -> BudgetPeriod:
        """Give back a previously recorded spend; ``used`` never drops below zero."""

        if amount <= 0:
            raise InvalidBudgetRequest("Release amount must be positive.", details={"amount": amount})
        budget = self._require(db, business_id)
        db.execute(
            update(BudgetPeriod)
            .where(BudgetPeriod.id == budget.id)
            .values(
                used=case((BudgetPeriod.used > amount, BudgetPeriod.used - amount), else_=0),
                updated_at=self._clock(),
            )
            .execution_options(synchronize_session=False)
        )
        log_audit(
            db,
            actor=actor,
            action="BUDGET_SPEND_RELEASED",
            entity="BudgetPeriod",
            entity_id=budget.id,
            data={"business_id": business_id, "amount": amount},
        )
        invalidate_on_commit(db, "budget.change", {"businessId": business_id})
        db.commit()
        db.refresh(budget)
        return budget


def get_ledger() -> BudgetLedger:
    return BudgetLedger()


__all__ = ["BudgetLedger", "PERIOD_MONTHS", "add_months", "get_ledger", "period_end"]
