"""Business budget endpoints."""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.budget import BudgetPeriod
from app.schemas.budget import BudgetRead, BudgetSet
from app.services.budget import BudgetLedger, get_ledger
from app.services.invalidation import get_invalidator
from app.services.view_keys import Keys
from app.utils.errors import BudgetNotConfigured
from app.utils.money import to_major

router = APIRouter(prefix="/budget", tags=["budget"])


def budget_view(budget: BudgetPeriod) -> BudgetRead:
    return BudgetRead(
        business_id=budget.business_id,
        cap=budget.cap,
        used=budget.used,
        remaining_budget=budget.remaining_budget,
        currency=budget.currency,
        period=budget.period,
        start_date=budget.start_date,
        end_date=budget.end_date,
        reset_enabled=budget.reset_enabled,
        cap_major=to_major(budget.cap, budget.currency) if budget.cap is not None else None,
        used_major=to_major(budget.used, budget.currency),
    )


@router.get("/{business_id}", response_model=BudgetRead)
def read_budget(
    business_id: int,
    db: Session = Depends(get_db),
    ledger: BudgetLedger = Depends(get_ledger),
):
    """Return the budget read model, served from the view cache when fresh."""

    cache = get_invalidator().cache
    key = Keys.budget(business_id)
    cached = cache.get(key)
    if cached is not None and not ledger.rollover_due(cached):
        return cached

    generation = cache.generation
    budget = ledger.get_budget(db, business_id)
    if budget is None:
        raise BudgetNotConfigured(
            "No budget configured for this business.", details={"business_id": business_id}
        )
    view = budget_view(budget)
    cache.set_if_current(key, view, generation)
    return view


@router.post("/{business_id}", response_model=BudgetRead, status_code=status.HTTP_200_OK)
def set_budget(
    business_id: int,
    payload: BudgetSet,
    db: Session = Depends(get_db),
    ledger: BudgetLedger = Depends(get_ledger),
):
    budget = ledger.set_budget(
        db,
        business_id,
        payload.cap,
        period=payload.period,
        start_date=payload.start_date,
        end_date=payload.end_date,
        reset_enabled=payload.reset_enabled,
        currency=payload.currency,
        actor="api",
    )
    return budget_view(budget)


@router.post("/{business_id}/reset", response_model=BudgetRead, status_code=status.HTTP_200_OK)
def reset_budget(
    business_id: int,
    db: Session = Depends(get_db),
    ledger: BudgetLedger = Depends(get_ledger),
):
    return budget_view(ledger.reset_budget(db, business_id, actor="api"))
