"""Milestone payment endpoints."""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.schemas.payment import PaymentCreate, PaymentCreated, PaymentRead
from app.services import payments as payments_service
from app.services.budget import BudgetLedger, get_ledger
from app.services.provider_gateway import ProviderGateway, get_gateway

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("", response_model=PaymentCreated, status_code=status.HTTP_201_CREATED)
async def create_payment(
    payload: PaymentCreate,
    db: Session = Depends(get_db),
    gateway: ProviderGateway = Depends(get_gateway),
    ledger: BudgetLedger = Depends(get_ledger),
):
    payment, result = await payments_service.create_milestone_payment(
        db, payload, gateway=gateway, ledger=ledger, actor="api"
    )
    return PaymentCreated(
        payment=payments_service.payment_view(payment),
        client_secret=result.client_secret if result else None,
    )


@router.get("/{payment_id}", response_model=PaymentRead)
def read_payment(payment_id: int, db: Session = Depends(get_db)):
    """Return the payment with its canonical state derived on read."""

    return payments_service.payment_view(payments_service.get_payment(db, payment_id))


@router.post("/{payment_id}/reconcile", response_model=PaymentRead)
async def reconcile_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    gateway: ProviderGateway = Depends(get_gateway),
):
    payment = await payments_service.reconcile_payment(db, payment_id, gateway=gateway, actor="api")
    return payments_service.payment_view(payment)
