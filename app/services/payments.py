"""Milestone payment execution and rail status application."""
import logging
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models import Payment, Rail
from app.schemas.payment import PaymentCreate, PaymentRead
from app.services.budget import BudgetLedger
from app.services.contractor_accounts import get_account
from app.services.invalidation import get_invalidator, invalidate_on_commit
from app.services.provider_gateway import ProviderGateway
from app.services.rail_types import PaymentResult
from app.services.status_reconciler import PAID, reconcile, reconcile_signals
from app.services.view_keys import Keys
from app.utils.audit import log_audit
from app.utils.errors import InvalidStateTransition, NotFoundError, ProviderError
from app.utils.money import to_major

logger = logging.getLogger(__name__)

# Payout-rail batch and payment statuses that mean the contractor has the money.
_PAYOUT_SETTLED = {"complete", "completed", "processed"}
_PAYOUT_FAILED = {"failed", "cancelled", "canceled", "returned"}


def _payment_context(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "contractorId": payment.contractor_id,
        "businessId": payment.business_id,
    }


def _with_spend(view, amount: int):
    if view is None:
        return None
    remaining = view.remaining_budget - amount if view.remaining_budget is not None else None
    return view.model_copy(update={"used": view.used + amount, "remaining_budget": remaining})


def payment_view(payment: Payment) -> PaymentRead:
    """Read model with the canonical state derived from the stored signals."""

    return PaymentRead(
        id=payment.id,
        contract_id=payment.contract_id,
        milestone_id=payment.milestone_id,
        business_id=payment.business_id,
        contractor_id=payment.contractor_id,
        amount=payment.amount,
        amount_major=to_major(payment.amount, payment.currency),
        currency=payment.currency,
        rail=payment.rail,
        status=payment.status,
        intent_status=payment.intent_status,
        transfer_status=payment.transfer_status,
        state=reconcile(payment),
        created_at=payment.created_at,
    )


def get_payment(db: Session, payment_id: int) -> Payment:
    payment = db.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found.", details={"payment_id": payment_id})
    return payment


def find_payment_by_rail_ref(db: Session, rail_ref: str) -> Payment | None:
    stmt = select(Payment).where(
        (Payment.payment_intent_id == rail_ref) | (Payment.transfer_id == rail_ref)
    )
    return db.execute(stmt).scalars().first()


def apply_rail_status(
    db: Session,
    payment: Payment,
    *,
    status: str | None = None,
    intent_status: str | None = None,
    transfer_status: str | None = None,
    source: str,
) -> Payment:
    """Overwrite the rail-reported signals of ``payment`` and commit.

    Re-applying the same signals is a no-op, so redelivered webhooks are safe.
    A payment whose canonical state is ``paid`` may not be moved elsewhere.
    """

    new_status = status if status is not None else payment.status
    new_intent = intent_status if intent_status is not None else payment.intent_status
    new_transfer = transfer_status if transfer_status is not None else payment.transfer_status

    if (new_status, new_intent, new_transfer) == (
        payment.status,
        payment.intent_status,
        payment.transfer_status,
    ):
        logger.info("Payment signals unchanged", extra={"payment_id": payment.id, "source": source})
        if db.is_modified(payment):
            db.commit()
        return payment

    before = reconcile(payment)
    after = reconcile_signals(new_status, new_intent, new_transfer)
    if before == PAID and after != PAID:
        logger.error(
            "Refusing to move a paid payment",
            extra={"payment_id": payment.id, "source": source, "from": before, "to": after},
        )
        raise InvalidStateTransition(
            "Paid payments cannot change state.",
            details={"payment_id": payment.id, "from": before, "to": after},
        )

    payment.status = new_status
    payment.intent_status = new_intent
    payment.transfer_status = new_transfer
    log_audit(
        db,
        actor=source,
        action="PAYMENT_STATUS_UPDATED",
        entity="Payment",
        entity_id=payment.id,
        data={
            "status": new_status,
            "intent_status": new_intent,
            "transfer_status": new_transfer,
            "state_before": before,
            "state_after": after,
        },
    )
    invalidate_on_commit(db, "payment.change", _payment_context(payment))
    db.commit()
    db.refresh(payment)
    logger.info(
        "Payment signals updated",
        extra={"payment_id": payment.id, "source": source, "state": after},
    )
    return payment


def _signals_from_result(rail: Rail, result: PaymentResult) -> dict[str, str | None]:
    if rail is Rail.STRIPE:
        transfer = None
        if result.status == "succeeded" and (result.raw.get("transfer_data") or {}).get("destination"):
            transfer = "succeeded"
        return {"intent_status": result.status or None, "transfer_status": transfer}

    status = (result.status or "").lower()
    if status in _PAYOUT_SETTLED:
        return {"status": "completed", "transfer_status": "succeeded"}
    if status in _PAYOUT_FAILED:
        return {"status": "failed", "transfer_status": "failed"}
    return {"transfer_status": status or None}


def _abandon_payment(
    db: Session,
    payment: Payment,
    exc: BaseException,
    *,
    ledger: BudgetLedger,
    reserved: bool,
    actor: str,
) -> None:
    """Release the reserved spend and mark ``payment`` failed after a rail call did not complete."""

    if isinstance(exc, ProviderError):
        rail_code, message = exc.rail_code, exc.message
    else:
        rail_code, message = None, repr(exc)
    logger.warning(
        "Rail payment creation failed",
        extra={"payment_id": payment.id, "rail": payment.rail, "rail_code": rail_code, "error": message},
    )
    if reserved:
        ledger.release_spend(db, payment.business_id, payment.amount, actor=actor)
    payment.status = "failed"
    log_audit(
        db,
        actor=actor,
        action="PAYMENT_RAIL_FAILED",
        entity="Payment",
        entity_id=payment.id,
        data={"rail": payment.rail, "rail_code": rail_code, "message": message},
    )
    invalidate_on_commit(db, "payment.change", _payment_context(payment))
    db.commit()


async def create_milestone_payment(
    db: Session,
    payload: PaymentCreate,
    *,
    gateway: ProviderGateway,
    ledger: BudgetLedger,
    actor: str = "system",
) -> tuple[Payment, PaymentResult | None]:
    """Reserve budget, create the payment on its rail and persist the reference.

    The spend is recorded before any money moves; a rail call that fails or is
    cancelled releases it again and leaves the payment in ``failed``.
    """

    settings = get_settings()
    rail = Rail(payload.rail)
    idempotency_key = payload.idempotency_key or uuid4().hex

    existing = db.execute(
        select(Payment).where(Payment.idempotency_key == idempotency_key)
    ).scalar_one_or_none()
    if existing is not None:
        logger.info("Payment creation replayed", extra={"payment_id": existing.id})
        return existing, None

    account = get_account(db, payload.contractor_id, rail)
    if account is None:
        raise NotFoundError(
            "Contractor has no account on this rail.",
            details={"contractor_id": payload.contractor_id, "rail": rail.value},
        )

    reserved = False
    invalidator = get_invalidator()
    budget_key = Keys.budget(payload.business_id)
    previous_view = invalidator.apply_optimistic(budget_key, lambda view: _with_spend(view, payload.amount))
    try:
        if ledger.get_budget(db, payload.business_id) is not None:
            ledger.record_spend(
                db,
                payload.business_id,
                payload.amount,
                enforce=settings.BUDGET_ENFORCEMENT == "blocking",
                actor=actor,
            )
            reserved = True
    except Exception:
        invalidator.rollback(budget_key, previous_view)
        raise

    payment = Payment(
        contract_id=payload.contract_id,
        milestone_id=payload.milestone_id,
        business_id=payload.business_id,
        contractor_id=payload.contractor_id,
        amount=payload.amount,
        currency=payload.currency,
        rail=rail.value,
        status="scheduled",
        idempotency_key=idempotency_key,
    )
    db.add(payment)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        if reserved:
            ledger.release_spend(db, payload.business_id, payload.amount, actor=actor)
        existing = db.execute(
            select(Payment).where(Payment.idempotency_key == idempotency_key)
        ).scalar_one()
        return existing, None
    log_audit(
        db,
        actor=actor,
        action="PAYMENT_CREATED",
        entity="Payment",
        entity_id=payment.id,
        data={"amount": payment.amount, "currency": payment.currency, "rail": rail.value},
    )
    invalidate_on_commit(db, "payment.change", _payment_context(payment))
    db.commit()
    db.refresh(payment)

    try:
        result = await gateway.create_payment(
            rail,
            amount=payment.amount,
            currency=payment.currency,
            destination=account.external_account_id,
            metadata={
                "paymentId": payment.id,
                "contractId": payment.contract_id,
                "milestoneId": payment.milestone_id,
                "contractorId": payment.contractor_id,
            },
            idempotency_key=idempotency_key,
            description=payload.description,
        )
    except BaseException as exc:
        # Includes cancellation; the reservation must not outlive the request.
        _abandon_payment(db, payment, exc, ledger=ledger, reserved=reserved, actor=actor)
        raise

    payment.payment_intent_id = result.id
    payment.status = "processing" if rail is Rail.TROLLEY else payment.status
    signals = _signals_from_result(rail, result)
    payment.intent_status = signals.get("intent_status", payment.intent_status)
    payment.transfer_status = signals.get("transfer_status", payment.transfer_status)
    if signals.get("status"):
        payment.status = signals["status"]
    log_audit(
        db,
        actor=actor,
        action="PAYMENT_SUBMITTED",
        entity="Payment",
        entity_id=payment.id,
        data={"payment_intent_id": result.id, "rail_status": result.status},
    )
    invalidate_on_commit(db, "payment.change", _payment_context(payment))
    db.commit()
    db.refresh(payment)
    logger.info(
        "Milestone payment submitted",
        extra={"payment_id": payment.id, "rail": rail.value, "state": reconcile(payment)},
    )
    return payment, result


async def reconcile_payment(
    db: Session,
    payment_id: int,
    *,
    gateway: ProviderGateway,
    actor: str = "reconciler",
) -> Payment:
    """Re-read the payment from its rail and store whatever it now reports."""

    payment = get_payment(db, payment_id)
    if not payment.payment_intent_id:
        logger.info("Payment has no rail reference yet", extra={"payment_id": payment.id})
        return payment
    rail = Rail(payment.rail)
    result = await gateway.retrieve_payment(rail, payment.payment_intent_id)
    return apply_rail_status(db, payment, source=actor, **_signals_from_result(rail, result))


__all__ = [
    "apply_rail_status",
    "create_milestone_payment",
    "find_payment_by_rail_ref",
    "get_payment",
    "payment_view",
    "reconcile_payment",
]
