"""Schema package exports."""
from .account import ConnectionCheckRead, ContractorAccountCreate, ContractorAccountRead
from .budget import BudgetRead, BudgetSet
from .earnings import EarningsRead, EarningsTransactionRead, PayoutRead
from .payment import PaymentCreate, PaymentCreated, PaymentRead

__all__ = [
    "BudgetRead",
    "BudgetSet",
    "ConnectionCheckRead",
    "ContractorAccountCreate",
    "ContractorAccountRead",
    "EarningsRead",
    "EarningsTransactionRead",
    "PaymentCreate",
    "PaymentCreated",
    "PaymentRead",
    "PayoutRead",
]
