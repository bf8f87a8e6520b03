"""Stripe SDK wrapper for the direct-charge rail."""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from typing import Any, Callable, Dict, Iterable
from urllib.parse import urlencode

import httpx
import stripe

from app.models.payment import Rail
from app.services.rail_types import (
    Balance,
    BalanceBucket,
    BalanceTransaction,
    ConnectionCheck,
    CredentialProvider,
    PaymentResult,
    Payout,
    RailHttpClient,
    RecipientResult,
    malformed_response_guard,
)
from app.utils.errors import ProviderError, ProviderTransportError
from app.utils.time import from_unix

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com"

# SDK failures that are transient and may be retried for reads and keyed writes.
_TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


def _plain(obj: Any) -> Dict[str, Any]:
    """Return a plain dict for a Stripe object (or a dict already)."""

    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _items(listing: Any) -> list[Dict[str, Any]]:
    data = _plain(listing).get("data") or []
    return [_plain(item) for item in data]


def _buckets(entries: Iterable[Any]) -> tuple[BalanceBucket, ...]:
    buckets = []
    for entry in entries or ():
        entry = _plain(entry)
        buckets.append(
            BalanceBucket(amount=int(entry.get("amount") or 0), currency=str(entry.get("currency") or "").upper())
        )
    return tuple(buckets)


def _form_pairs(body: Dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Flatten nested params into Stripe's ``a[b][c]=v`` form encoding."""

    pairs: list[tuple[str, str]] = []
    for key, value in body.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(_form_pairs(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                if isinstance(item, dict):
                    pairs.extend(_form_pairs(item, f"{name}[{index}]"))
                else:
                    pairs.append((f"{name}[{index}]", str(item)))
        elif isinstance(value, bool):
            pairs.append((name, "true" if value else "false"))
        else:
            pairs.append((name, str(value)))
    return pairs


def translate_stripe_error(exc: stripe.StripeError) -> ProviderError:
    """Map an SDK exception onto the rail error taxonomy."""

    error_cls = ProviderTransportError if isinstance(exc, _TRANSIENT_ERRORS) else ProviderError
    return error_cls(
        getattr(exc, "user_message", None) or str(exc) or exc.__class__.__name__,
        rail=Rail.STRIPE.value,
        rail_code=getattr(exc, "code", None),
        http_status=getattr(exc, "http_status", None),
        payload=getattr(exc, "json_body", None),
    )


def recipient_idempotency_key(contractor_id: int, params: Dict[str, Any]) -> str:
    """Key account creation on the contractor and the exact request parameters.

    A retry with identical parameters replays the same Stripe request; corrected
    details (another country or email) get a fresh key.
    """

    digest = hashlib.sha256(json.dumps(params, sort_keys=True, default=str).encode("utf-8")).hexdigest()
    return f"contractor-account-{contractor_id}-{digest[:16]}"


class StripeRail:
    """Direct-charge rail backed by the Stripe Python SDK.

    The API key is resolved through the credential provider on every call and
    passed per request; the SDK's module-level ``stripe.api_key`` is never set.
    SDK calls are blocking and run in a worker thread.
    """

    rail = Rail.STRIPE
    supports_idempotency = True

    def __init__(
        self,
        credentials: CredentialProvider,
        *,
        http: RailHttpClient,
    ) -> None:
        self._credentials = credentials
        self._http = http

    def _api_key(self) -> str:
        return self._credentials.credentials(self.rail).api_key

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Dict[str, Any]:
        kwargs["api_key"] = self._api_key()
        try:
            result = await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.StripeError as exc:
            raise translate_stripe_error(exc) from exc
        return _plain(result)

    async def request(
        self,
        method: str,
        path: str,
        body: Dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> Dict[str, Any]:
        creds = self._credentials.credentials(self.rail)
        headers = {"Authorization": f"Bearer {creds.api_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        url = f"{(creds.base_url or STRIPE_API_BASE).rstrip('/')}{path}"
        content = None
        if body:
            encoded = urlencode(_form_pairs(body))
            if method.upper() == "GET":
                url = f"{url}?{encoded}"
            else:
                headers["Content-Type"] = "application/x-www-form-urlencoded"
                content = encoded.encode("utf-8")
        return await self._http.send(method.upper(), url, headers=headers, content=content)

    async def create_recipient(
        self,
        *,
        contractor_id: int,
        email: str | None,
        country: str,
        currency: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> RecipientResult:
        """Create a Connect Express account with the transfers capability."""

        params: Dict[str, Any] = {
            "type": "express",
            "country": country,
            "email": email,
            "capabilities": {"transfers": {"requested": True}},
            "metadata": {"contractor_id": str(contractor_id)},
        }
        account = await self._call(
            stripe.Account.create,
            idempotency_key=recipient_idempotency_key(contractor_id, params),
            **params,
        )
        with malformed_response_guard(self.rail, account):
            return RecipientResult(
                external_account_id=account["id"],
                country=account.get("country") or country,
                currency=(account.get("default_currency") or currency or "").upper() or None,
            )

    async def create_payment(
        self,
        *,
        amount: int,
        currency: str,
        destination: str | None,
        metadata: Dict[str, Any],
        idempotency_key: str,
        description: str | None = None,
    ) -> PaymentResult:
        """Create a PaymentIntent that transfers to the contractor's account on success."""

        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "metadata": {key: str(value) for key, value in metadata.items()},
            "automatic_payment_methods": {"enabled": True},
            "idempotency_key": idempotency_key,
        }
        if description:
            params["description"] = description
        if destination:
            params["transfer_data"] = {"destination": destination}
        intent = await self._call(stripe.PaymentIntent.create, **params)
        return self._payment_result(intent)

    async def retrieve_payment(self, payment_ref: str) -> PaymentResult:
        intent = await self._call(stripe.PaymentIntent.retrieve, payment_ref)
        return self._payment_result(intent)

    def _payment_result(self, intent: Dict[str, Any]) -> PaymentResult:
        with malformed_response_guard(self.rail, intent):
            return PaymentResult(
                id=intent["id"],
                status=intent.get("status") or "",
                amount=intent.get("amount"),
                currency=(intent.get("currency") or "").upper() or None,
                client_secret=intent.get("client_secret"),
                raw=intent,
            )

    async def get_balance(self, account_id: str) -> Balance:
        balance = await self._call(stripe.Balance.retrieve, stripe_account=account_id)
        with malformed_response_guard(self.rail, balance):
            return Balance(
                available=_buckets(balance.get("available")),
                pending=_buckets(balance.get("pending")),
            )

    async def list_payouts(self, account_id: str, limit: int) -> list[Payout]:
        listing = await self._call(stripe.Payout.list, limit=limit, stripe_account=account_id)
        with malformed_response_guard(self.rail, listing):
            return [
                Payout(
                    id=item["id"],
                    amount=int(item.get("amount") or 0),
                    currency=str(item.get("currency") or "").upper(),
                    status=item.get("status") or "",
                    created=from_unix(item.get("created")),
                    arrival_date=from_unix(item.get("arrival_date")),
                    description=item.get("description"),
                    method=item.get("method"),
                )
                for item in _items(listing)
            ]

    async def list_balance_transactions(self, account_id: str, limit: int) -> list[BalanceTransaction]:
        listing = await self._call(stripe.BalanceTransaction.list, limit=limit, stripe_account=account_id)
        transactions = []
        with malformed_response_guard(self.rail, listing):
            for item in _items(listing):
                payout_id = item.get("payout")
                if item.get("status") == "available":
                    status = "paid" if payout_id else "available"
                else:
                    status = "pending"
                transactions.append(
                    BalanceTransaction(
                        id=item["id"],
                        amount=int(item.get("amount") or 0),
                        net=int(item.get("net") or 0),
                        currency=str(item.get("currency") or "").upper(),
                        type=item.get("type") or "",
                        status=status,
                        created=from_unix(item.get("created")),
                        description=item.get("description"),
                        payout_id=payout_id,
                    )
                )
        return transactions

    async def test_connection(self) -> ConnectionCheck:
        try:
            await self._call(stripe.Balance.retrieve)
        except ProviderError as exc:
            logger.warning("Stripe connectivity check failed", extra={"rail_code": exc.rail_code})
            return ConnectionCheck(rail=self.rail.value, success=False, error=exc.message)
        return ConnectionCheck(rail=self.rail.value, success=True)


def construct_webhook_event(payload: bytes, sig_header: str, secret: str) -> Dict[str, Any]:
    """Verify and construct a Stripe webhook event as a plain dict."""

    event = stripe.Webhook.construct_event(payload, sig_header, secret)
    return _plain(event)


__all__ = ["StripeRail", "construct_webhook_event", "recipient_idempotency_key", "translate_stripe_error"]
