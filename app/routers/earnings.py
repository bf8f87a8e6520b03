"""Contractor earnings endpoints; every response is re-derived from the rail."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.payment import Rail
from app.schemas.earnings import EarningsRead, EarningsTransactionRead, PayoutRead
from app.services.contractor_accounts import require_account
from app.services.earnings import EarningsAggregator, get_earnings_aggregator
from app.utils.money import to_major

router = APIRouter(prefix="/earnings", tags=["earnings"])


@router.get("/{contractor_id}", response_model=EarningsRead)
async def read_earnings(
    contractor_id: int,
    rail: Rail = Rail.STRIPE,
    db: Session = Depends(get_db),
    aggregator: EarningsAggregator = Depends(get_earnings_aggregator),
):
    account = require_account(db, contractor_id, rail)
    snapshot = await aggregator.get_earnings(account.external_account_id, rail)
    return EarningsRead(**snapshot.to_major())


@router.post("/{contractor_id}/reconcile", response_model=EarningsRead)
async def reconcile_earnings(
    contractor_id: int,
    rail: Rail = Rail.STRIPE,
    db: Session = Depends(get_db),
    aggregator: EarningsAggregator = Depends(get_earnings_aggregator),
):
    account = require_account(db, contractor_id, rail)
    snapshot = await aggregator.reconcile(account.external_account_id, rail)
    return EarningsRead(**snapshot.to_major())


@router.get("/{contractor_id}/transactions", response_model=list[EarningsTransactionRead])
async def list_transactions(
    contractor_id: int,
    rail: Rail = Rail.STRIPE,
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
    aggregator: EarningsAggregator = Depends(get_earnings_aggregator),
):
    account = require_account(db, contractor_id, rail)
    transactions = await aggregator.get_transactions(account.external_account_id, limit, rail)
    return [
        EarningsTransactionRead(
            id=txn.id,
            amount=to_major(txn.net, txn.currency),
            currency=txn.currency,
            type=txn.type,
            status=txn.status,
            created=txn.created,
            description=txn.description or f"{txn.type} transaction",
            payout_id=txn.payout_id,
        )
        for txn in transactions
    ]


@router.get("/{contractor_id}/payouts", response_model=list[PayoutRead])
async def list_payouts(
    contractor_id: int,
    rail: Rail = Rail.STRIPE,
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
    aggregator: EarningsAggregator = Depends(get_earnings_aggregator),
):
    account = require_account(db, contractor_id, rail)
    payouts = await aggregator.get_payouts(account.external_account_id, limit, rail)
    return [
        PayoutRead(
            id=payout.id,
            amount=to_major(payout.amount, payout.currency),
            currency=payout.currency,
            status=payout.status,
            created=payout.created,
            arrival_date=payout.arrival_date,
            description=payout.description,
            method=payout.method,
        )
        for payout in payouts
    ]
