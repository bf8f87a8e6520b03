"""ORM models package."""
from .audit import AuditLog
from .base import Base
from .budget import BudgetPeriod, BudgetPeriodKind
from .contractor_account import ContractorAccount
from .payment import Payment, Rail

__all__ = [
    "AuditLog",
    "Base",
    "BudgetPeriod",
    "BudgetPeriodKind",
    "ContractorAccount",
    "Payment",
    "Rail",
]
