"""Uniform, retry-aware access to both payment rails."""
from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, TypeVar

import httpx

from app.config import Settings, get_settings
from app.models.payment import Rail
from app.services.psp_payout import PayoutRail
from app.services.psp_stripe import StripeRail
from app.services.rail_types import (
    Balance,
    BalanceTransaction,
    ConnectionCheck,
    CredentialProvider,
    EnvironmentCredentialProvider,
    PaymentResult,
    Payout,
    RailHttpClient,
    RecipientResult,
    RetryPolicy,
    call_with_retry,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProviderGateway:
    """Dispatches rail operations and decides which of them may be retried.

    Reads are retried on transport failures with bounded exponential backoff.
    Writes are retried only when the rail honours idempotency keys; payout-rail
    writes are sent exactly once.
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        *,
        timeout: float = 10.0,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        payout_kwargs: Dict[str, Any] = {"clock": clock} if clock is not None else {}
        self._rails = {
            Rail.STRIPE: StripeRail(
                credentials, http=RailHttpClient(Rail.STRIPE, timeout=timeout, transport=transport)
            ),
            Rail.TROLLEY: PayoutRail(
                credentials,
                http=RailHttpClient(Rail.TROLLEY, timeout=timeout, transport=transport),
                **payout_kwargs,
            ),
        }

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> "ProviderGateway":
        settings = settings or get_settings()
        kwargs.setdefault("credentials", EnvironmentCredentialProvider())
        kwargs.setdefault("timeout", settings.RAIL_TIMEOUT_SECONDS)
        kwargs.setdefault(
            "retry_policy",
            RetryPolicy(
                max_retries=settings.RAIL_MAX_RETRIES,
                base_delay=settings.RAIL_BACKOFF_BASE_SECONDS,
                max_delay=settings.RAIL_BACKOFF_MAX_SECONDS,
            ),
        )
        return cls(**kwargs)

    def adapter(self, rail: Rail | str):
        return self._rails[Rail(rail)]

    async def _run(self, rail: Rail | str, op_name: str, retryable: bool, operation: Callable[[Any], Awaitable[T]]) -> T:
        adapter = self.adapter(rail)
        return await call_with_retry(
            lambda: operation(adapter),
            rail=adapter.rail,
            op_name=op_name,
            retryable=retryable,
            policy=self._policy,
            sleep=self._sleep,
        )

    async def request(
        self,
        rail: Rail | str,
        method: str,
        path: str,
        body: Dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> Dict[str, Any]:
        """Send a raw authenticated request to ``rail``."""

        adapter = self.adapter(rail)
        retryable = method.upper() == "GET" or bool(idempotency_key and adapter.supports_idempotency)
        return await self._run(
            rail,
            f"{method.upper()} {path}",
            retryable,
            lambda a: a.request(method, path, body, idempotency_key=idempotency_key),
        )

    async def create_recipient(self, rail: Rail | str, **fields: Any) -> RecipientResult:
        adapter = self.adapter(rail)
        return await self._run(
            rail, "create_recipient", adapter.supports_idempotency, lambda a: a.create_recipient(**fields)
        )

    async def create_payment(
        self,
        rail: Rail | str,
        *,
        amount: int,
        currency: str,
        destination: str | None,
        metadata: Dict[str, Any],
        idempotency_key: str,
        description: str | None = None,
    ) -> PaymentResult:
        adapter = self.adapter(rail)
        return await self._run(
            rail,
            "create_payment",
            adapter.supports_idempotency,
            lambda a: a.create_payment(
                amount=amount,
                currency=currency,
                destination=destination,
                metadata=metadata,
                idempotency_key=idempotency_key,
                description=description,
            ),
        )

    async def retrieve_payment(self, rail: Rail | str, payment_ref: str) -> PaymentResult:
        return await self._run(rail, "retrieve_payment", True, lambda a: a.retrieve_payment(payment_ref))

    async def get_balance(self, rail: Rail | str, account_id: str) -> Balance:
        return await self._run(rail, "get_balance", True, lambda a: a.get_balance(account_id))

    async def list_payouts(self, rail: Rail | str, account_id: str, limit: int = 100) -> list[Payout]:
        return await self._run(rail, "list_payouts", True, lambda a: a.list_payouts(account_id, limit))

    async def list_balance_transactions(
        self, rail: Rail | str, account_id: str, limit: int = 50
    ) -> list[BalanceTransaction]:
        return await self._run(
            rail, "list_balance_transactions", True, lambda a: a.list_balance_transactions(account_id, limit)
        )

    async def test_connection(self, rail: Rail | str) -> ConnectionCheck:
        return await self.adapter(rail).test_connection()


@lru_cache
def get_gateway() -> ProviderGateway:
    """Process-wide gateway; credentials are still resolved per call."""

    return ProviderGateway.from_settings()


__all__ = ["ProviderGateway", "get_gateway"]
