"""Payment model definitions."""
import enum

from sqlalchemy import BigInteger, CheckConstraint, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class Rail(str, enum.Enum):
    """External payment rails the platform moves money through."""

    STRIPE = "stripe"
    TROLLEY = "trolley"


class Payment(Base):
    """A single money movement tied to one contract and one milestone.

    ``status`` is the lifecycle string owned by the contract layer; the two
    rail-reported columns are overwritten by webhooks or a manual reconciliation
    pass. The canonical state is never stored, it is derived on read.
    """

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        Index("ix_payments_created_at", "created_at"),
        Index("ix_payments_contract", "contract_id"),
        Index("ix_payments_business", "business_id"),
    )

    contract_id: Mapped[int] = mapped_column(Integer, nullable=False)
    milestone_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    business_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    contractor_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GBP")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="scheduled")
    intent_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    transfer_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rail: Mapped[str] = mapped_column(String(16), nullable=False, default=Rail.STRIPE.value)
    payment_intent_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    transfer_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
