"""Shared types and transport plumbing for the payment-rail adapters."""
from __future__ import annotations

import asyncio
import json
import logging
import random
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterator, Mapping, Protocol, TypeVar

import httpx

from app.config import load_fresh_settings
from app.models.payment import Rail
from app.utils.errors import ProviderError, ProviderTransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Balance and payout statuses that count as money earned by the contractor.
EARNED_PAYOUT_STATUSES = ("paid", "in_transit")


# =============================================================================
# Data Types
# =============================================================================


@dataclass(frozen=True)
class BalanceBucket:
    amount: int
    currency: str


@dataclass(frozen=True)
class Balance:
    """Rail balance split into funds that can be paid out and funds still held."""

    available: tuple[BalanceBucket, ...] = ()
    pending: tuple[BalanceBucket, ...] = ()


@dataclass(frozen=True)
class Payout:
    id: str
    amount: int
    currency: str
    status: str
    created: datetime | None = None
    arrival_date: datetime | None = None
    description: str | None = None
    method: str | None = None


@dataclass(frozen=True)
class BalanceTransaction:
    id: str
    amount: int
    net: int
    currency: str
    type: str
    status: str
    created: datetime | None = None
    description: str | None = None
    payout_id: str | None = None


@dataclass(frozen=True)
class RecipientResult:
    external_account_id: str
    country: str | None = None
    currency: str | None = None


@dataclass(frozen=True)
class PaymentResult:
    """Rail reference and status of a created (or re-read) payment."""

    id: str
    status: str
    amount: int | None = None
    currency: str | None = None
    client_secret: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class ConnectionCheck:
    rail: str
    success: bool
    error: str | None = None


# =============================================================================
# Credentials
# =============================================================================


@dataclass(frozen=True)
class RailCredentials:
    api_key: str
    api_secret: str | None = None
    base_url: str | None = None


class CredentialProvider(Protocol):
    """Resolves rail credentials at call time."""

    def credentials(self, rail: Rail) -> RailCredentials: ...


class EnvironmentCredentialProvider:
    """Re-reads the environment on every call so rotated keys apply without a restart."""

    def credentials(self, rail: Rail) -> RailCredentials:
        settings = load_fresh_settings()
        if rail is Rail.STRIPE:
            if not settings.STRIPE_SECRET_KEY:
                raise _not_configured(rail, "STRIPE_SECRET_KEY")
            return RailCredentials(api_key=settings.STRIPE_SECRET_KEY, base_url="https://api.stripe.com")
        if not (settings.TROLLEY_API_KEY and settings.TROLLEY_API_SECRET):
            raise _not_configured(rail, "TROLLEY_API_KEY/TROLLEY_API_SECRET")
        return RailCredentials(
            api_key=settings.TROLLEY_API_KEY,
            api_secret=settings.TROLLEY_API_SECRET,
            base_url=settings.TROLLEY_API_URL,
        )


class StaticCredentialProvider:
    """Fixed credentials, for explicit wiring and tests."""

    def __init__(self, mapping: Mapping[Rail, RailCredentials]) -> None:
        self._mapping = dict(mapping)

    def credentials(self, rail: Rail) -> RailCredentials:
        try:
            return self._mapping[rail]
        except KeyError:
            raise _not_configured(rail, "credentials") from None


def _not_configured(rail: Rail, what: str) -> ProviderError:
    return ProviderError(
        f"{rail.value} rail is not configured; set {what}.",
        rail=rail.value,
        rail_code="not_configured",
        error_code="PROVIDER_NOT_CONFIGURED",
    )


# =============================================================================
# Retry policy
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient rail failures."""

    max_retries: int = 2
    base_delay: float = 0.5
    max_delay: float = 8.0

    def delay(self, attempt: int) -> float:
        exp = min(self.max_delay, self.base_delay * (2**attempt))
        return exp + random.uniform(0, self.base_delay / 2)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    rail: Rail,
    op_name: str,
    retryable: bool,
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation``; retry transport failures only when ``retryable``.

    ``operation`` is re-invoked from scratch on each attempt so request
    signatures and timestamps are never reused.
    """

    attempt = 0
    while True:
        try:
            return await operation()
        except ProviderTransportError as exc:
            if not retryable or attempt >= policy.max_retries:
                logger.error(
                    "Rail call failed",
                    extra={"rail": rail.value, "op": op_name, "attempts": attempt + 1, "retryable": retryable},
                )
                raise
            delay = policy.delay(attempt)
            logger.warning(
                "Rail call retry",
                extra={
                    "rail": rail.value,
                    "op": op_name,
                    "attempt": attempt + 1,
                    "max_retries": policy.max_retries,
                    "delay": round(delay, 3),
                    "error": exc.message,
                },
            )
            attempt += 1
            await sleep(delay)


# =============================================================================
# HTTP core
# =============================================================================


def _extract_error(payload: Any) -> tuple[str | None, str | None]:
    """Pull a (code, message) pair out of Stripe- or Trolley-shaped error bodies."""

    if not isinstance(payload, Mapping):
        return None, None
    error = payload.get("error")
    if isinstance(error, Mapping):
        return error.get("code") or error.get("type"), error.get("message")
    errors = payload.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], Mapping):
        return errors[0].get("code"), errors[0].get("message")
    if isinstance(error, str):
        return None, error
    return payload.get("code"), payload.get("message")


def parse_response(rail: Rail, response: httpx.Response) -> dict[str, Any]:
    """Return the JSON body of a 2xx response or raise the typed rail error."""

    try:
        payload = response.json() if response.content else {}
    except ValueError:
        payload = {"raw": response.text}

    if 200 <= response.status_code < 300:
        return payload if isinstance(payload, dict) else {"data": payload}

    code, message = _extract_error(payload)
    message = message or f"{rail.value} responded with HTTP {response.status_code}"
    error_cls = (
        ProviderTransportError
        if response.status_code >= 500 or response.status_code == 429
        else ProviderError
    )
    raise error_cls(
        message,
        rail=rail.value,
        rail_code=code,
        http_status=response.status_code,
        payload=payload,
    )


class RailHttpClient:
    """Thin httpx wrapper translating transport failures into typed errors."""

    def __init__(
        self,
        rail: Rail,
        *,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._rail = rail
        self._timeout = timeout
        self._transport = transport

    async def send(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str],
        content: bytes | None = None,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(method, url, headers=dict(headers), content=content)
        except httpx.HTTPError as exc:
            raise ProviderTransportError(
                f"{self._rail.value} request failed: {exc}",
                rail=self._rail.value,
                rail_code="transport",
            ) from exc
        return parse_response(self._rail, response)


# Raised while reading a 2xx body whose shape is not what the adapter expects.
MALFORMED_RESPONSE_ERRORS: tuple[type[Exception], ...] = (
    KeyError,
    AttributeError,
    TypeError,
    ValueError,
    ArithmeticError,
)


@contextmanager
def malformed_response_guard(rail: Rail, payload: Any) -> Iterator[None]:
    """Turn a parse failure on a successful response into a typed rail error."""

    try:
        yield
    except MALFORMED_RESPONSE_ERRORS as exc:
        logger.warning("Malformed rail response", extra={"rail": rail.value, "error": repr(exc)})
        raise ProviderError(
            f"{rail.value} returned a response that could not be read.",
            rail=rail.value,
            rail_code="malformed_response",
            payload=payload if isinstance(payload, dict) else {"data": payload},
        ) from exc


def compact_json(body: Any) -> str:
    """Serialise a request body exactly as it is signed and sent."""

    if body is None:
        return ""
    return json.dumps(body, separators=(",", ":"), sort_keys=True)


__all__ = [
    "EARNED_PAYOUT_STATUSES",
    "Balance",
    "BalanceBucket",
    "BalanceTransaction",
    "ConnectionCheck",
    "CredentialProvider",
    "EnvironmentCredentialProvider",
    "Payout",
    "PaymentResult",
    "RailCredentials",
    "RailHttpClient",
    "RecipientResult",
    "RetryPolicy",
    "StaticCredentialProvider",
    "call_with_retry",
    "compact_json",
    "malformed_response_guard",
    "parse_response",
]
