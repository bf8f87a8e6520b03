"""Contractor onboarding onto payment rails."""
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import ContractorAccount, Rail
from app.schemas.account import ContractorAccountCreate
from app.services.invalidation import invalidate_on_commit
from app.services.provider_gateway import ProviderGateway
from app.utils.audit import log_audit
from app.utils.errors import NotFoundError

logger = logging.getLogger(__name__)


def get_account(db: Session, contractor_id: int, rail: Rail | str) -> ContractorAccount | None:
    stmt = select(ContractorAccount).where(
        ContractorAccount.contractor_id == contractor_id,
        ContractorAccount.rail == Rail(rail).value,
    )
    return db.execute(stmt).scalar_one_or_none()


def require_account(db: Session, contractor_id: int, rail: Rail | str) -> ContractorAccount:
    account = get_account(db, contractor_id, rail)
    if account is None:
        raise NotFoundError(
            "Contractor has no account on this rail.",
            details={"contractor_id": contractor_id, "rail": Rail(rail).value},
        )
    return account


async def onboard_contractor(
    db: Session,
    contractor_id: int,
    payload: ContractorAccountCreate,
    *,
    gateway: ProviderGateway,
    actor: str = "system",
) -> tuple[ContractorAccount, bool]:
    """Return the contractor's rail account, creating it on first call only.

    The boolean is ``True`` when a new rail account was created.
    """

    rail = Rail(payload.rail)
    existing = get_account(db, contractor_id, rail)
    if existing is not None:
        logger.info(
            "Contractor already onboarded",
            extra={"contractor_id": contractor_id, "rail": rail.value, "account_id": existing.id},
        )
        return existing, False

    recipient = await gateway.create_recipient(
        rail,
        contractor_id=contractor_id,
        email=payload.email,
        country=payload.country,
        currency=payload.currency,
        first_name=payload.first_name,
        last_name=payload.last_name,
    )

    account = ContractorAccount(
        contractor_id=contractor_id,
        rail=rail.value,
        external_account_id=recipient.external_account_id,
        country=recipient.country or payload.country,
        currency=(recipient.currency or payload.currency or "").upper() or None,
    )
    db.add(account)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.warning(
            "Concurrent onboarding detected; reusing stored account",
            extra={"contractor_id": contractor_id, "rail": rail.value},
        )
        return require_account(db, contractor_id, rail), False

    log_audit(
        db,
        actor=actor,
        action="CONTRACTOR_ACCOUNT_CREATED",
        entity="ContractorAccount",
        entity_id=account.id,
        data={
            "contractor_id": contractor_id,
            "rail": rail.value,
            "external_account_id": account.external_account_id,
            "email": payload.email,
        },
    )
    invalidate_on_commit(db, "user.change", {"id": contractor_id})
    db.commit()
    db.refresh(account)
    logger.info(
        "Contractor onboarded",
        extra={"contractor_id": contractor_id, "rail": rail.value, "account_id": account.id},
    )
    return account, True


__all__ = ["get_account", "require_account", "onboard_contractor"]
