"""Contractor payment-rail accounts."""
from sqlalchemy import Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ContractorAccount(Base):
    """A contractor's external identity on one payment rail."""

    __tablename__ = "contractor_accounts"
    __table_args__ = (
        UniqueConstraint("contractor_id", "rail", name="uq_contractor_accounts_contractor_rail"),
    )

    contractor_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    rail: Mapped[str] = mapped_column(String(16), nullable=False)
    external_account_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
