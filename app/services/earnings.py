"""Contractor earnings derived from the rail's balance and payout history."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable

from app.config import get_settings
from app.models.payment import Rail
from app.services.provider_gateway import ProviderGateway, get_gateway
from app.services.rail_types import EARNED_PAYOUT_STATUSES, BalanceTransaction, Payout
from app.utils.errors import EarningsFetchError, ProviderError
from app.utils.money import to_major
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

PAYOUT_HISTORY_LIMIT = 100
DEFAULT_TRANSACTION_LIMIT = 50


@dataclass(frozen=True)
class EarningsSnapshot:
    """Point-in-time earnings; amounts in minor units, never persisted."""

    available_balance: int
    pending_balance: int
    total_earnings: int
    currency: str
    as_of: datetime

    @property
    def pending_earnings(self) -> int:
        """Everything earned but not yet paid out (available plus pending)."""

        return self.available_balance + self.pending_balance

    def to_major(self) -> dict[str, Decimal | str | datetime]:
        return {
            "available_balance": to_major(self.available_balance, self.currency),
            "pending_balance": to_major(self.pending_balance, self.currency),
            "pending_earnings": to_major(self.pending_earnings, self.currency),
            "total_earnings": to_major(self.total_earnings, self.currency),
            "currency": self.currency,
            "as_of": self.as_of,
        }


class EarningsAggregator:
    def __init__(
        self,
        gateway: ProviderGateway,
        *,
        default_currency: str = "GBP",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._gateway = gateway
        self._default_currency = default_currency.upper()
        self._clock = clock

    async def get_earnings(self, account_id: str, rail: Rail | str = Rail.STRIPE) -> EarningsSnapshot:
        """Fetch balance and payouts concurrently and fold them into a snapshot.

        Any rail failure aborts the aggregation with :class:`EarningsFetchError`;
        a partial snapshot is never returned.
        """

        try:
            balance, payouts = await asyncio.gather(
                self._gateway.get_balance(rail, account_id),
                self._gateway.list_payouts(rail, account_id, PAYOUT_HISTORY_LIMIT),
            )
        except ProviderError as exc:
            raise self._fetch_error(account_id, exc) from exc

        available = sum(bucket.amount for bucket in balance.available)
        pending = sum(bucket.amount for bucket in balance.pending)
        total = sum(p.amount for p in payouts if p.status in EARNED_PAYOUT_STATUSES)
        currency = (
            balance.available[0].currency.upper()
            if balance.available and balance.available[0].currency
            else self._default_currency
        )

        snapshot = EarningsSnapshot(
            available_balance=available,
            pending_balance=pending,
            total_earnings=total,
            currency=currency,
            as_of=self._clock(),
        )
        logger.info(
            "Earnings aggregated",
            extra={
                "rail": Rail(rail).value,
                "available": available,
                "pending": pending,
                "total": total,
                "currency": currency,
                "payouts_seen": len(payouts),
            },
        )
        return snapshot

    async def reconcile(self, account_id: str, rail: Rail | str = Rail.STRIPE) -> EarningsSnapshot:
        """Recover from missed webhooks by re-deriving from the rail."""

        return await self.get_earnings(account_id, rail)

    async def get_transactions(
        self,
        account_id: str,
        limit: int = DEFAULT_TRANSACTION_LIMIT,
        rail: Rail | str = Rail.STRIPE,
    ) -> list[BalanceTransaction]:
        try:
            transactions = await self._gateway.list_balance_transactions(rail, account_id, limit)
        except ProviderError as exc:
            raise self._fetch_error(account_id, exc) from exc
        return _newest_first(transactions)[:limit]

    async def get_payouts(
        self,
        account_id: str,
        limit: int = DEFAULT_TRANSACTION_LIMIT,
        rail: Rail | str = Rail.STRIPE,
    ) -> list[Payout]:
        try:
            payouts = await self._gateway.list_payouts(rail, account_id, limit)
        except ProviderError as exc:
            raise self._fetch_error(account_id, exc) from exc
        return _newest_first(payouts)[:limit]

    @staticmethod
    def _fetch_error(account_id: str, exc: ProviderError) -> EarningsFetchError:
        logger.warning(
            "Earnings fetch failed",
            extra={"rail": exc.rail, "rail_code": exc.rail_code, "http_status": exc.http_status},
        )
        return EarningsFetchError(
            f"Failed to fetch contractor earnings: {exc.message}",
            account_id=account_id,
            cause=exc,
        )


def _newest_first(items):
    # Stable sort keeps rail order for entries without a timestamp.
    return sorted(items, key=lambda item: item.created.timestamp() if item.created else 0, reverse=True)


def get_earnings_aggregator() -> EarningsAggregator:
    return EarningsAggregator(get_gateway(), default_currency=get_settings().DEFAULT_CURRENCY)


__all__ = ["EarningsAggregator", "EarningsSnapshot", "PAYOUT_HISTORY_LIMIT", "get_earnings_aggregator"]
