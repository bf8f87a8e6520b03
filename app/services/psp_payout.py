"""HTTP client for the payout rail (Trolley).

Every request is signed with HMAC-SHA256 over ``timestamp + METHOD + path +
body`` and sent with ``Authorization: prsign <key>:<hex digest>`` plus an
``X-PR-Timestamp`` header. Amounts travel as decimal strings and are converted
to minor units at this boundary.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Any, Callable, Dict
from urllib.parse import urlencode

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
    compact_json,
    malformed_response_guard,
)
from app.utils.errors import ProviderError
from app.utils.money import to_major, to_minor
from app.utils.time import parse_iso_utc

logger = logging.getLogger(__name__)

SIGNATURE_SCHEME = "prsign"
TIMESTAMP_HEADER = "X-PR-Timestamp"

# Rail payment statuses folded onto the payout vocabulary used by earnings.
PAYOUT_STATUS_MAP = {
    "processed": "paid",
    "processing": "in_transit",
    "pending": "pending",
    "failed": "failed",
    "returned": "failed",
    "cancelled": "canceled",
}


def sign_request(secret: str, timestamp: int, method: str, path: str, body: str = "") -> str:
    """Return the hex HMAC-SHA256 signature for one request."""

    message = f"{timestamp}{method.upper()}{path}{body}"
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def _parse_time(value: Any):
    if not value:
        return None
    try:
        return parse_iso_utc(str(value))
    except ValueError:
        return None


class PayoutRail:
    """Payout rail adapter speaking the rail's signed JSON API."""

    rail = Rail.TROLLEY
    supports_idempotency = False

    def __init__(
        self,
        credentials: CredentialProvider,
        *,
        http: RailHttpClient,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._credentials = credentials
        self._http = http
        self._clock = clock

    async def request(
        self,
        method: str,
        path: str,
        body: Dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> Dict[str, Any]:
        """Send one signed request; a fresh timestamp and signature per call."""

        creds = self._credentials.credentials(self.rail)
        method = method.upper()
        payload = compact_json(body) if body is not None and method != "GET" else ""
        if body and method == "GET":
            path = f"{path}?{urlencode(body)}"
        timestamp = int(self._clock())
        signature = sign_request(creds.api_secret or "", timestamp, method, path, payload)
        headers = {
            "Authorization": f"{SIGNATURE_SCHEME} {creds.api_key}:{signature}",
            TIMESTAMP_HEADER: str(timestamp),
            "X-API-Version": "1",
        }
        if payload:
            headers["Content-Type"] = "application/json"
        url = f"{(creds.base_url or '').rstrip('/')}{path}"
        return await self._http.send(
            method, url, headers=headers, content=payload.encode("utf-8") if payload else None
        )

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
        body: Dict[str, Any] = {
            "type": "individual",
            "email": email,
            "firstName": first_name or "",
            "lastName": last_name or "",
            "referenceId": str(contractor_id),
            "address": {"country": country},
        }
        if currency:
            body["currency"] = currency
        data = await self.request("POST", "/v1/recipients", body)
        with malformed_response_guard(self.rail, data):
            recipient = data.get("recipient") or {}
            if not recipient.get("id"):
                raise ProviderError(
                    "Payout rail did not return a recipient id.",
                    rail=self.rail.value,
                    rail_code="malformed_response",
                    payload=data,
                )
            return RecipientResult(
                external_account_id=recipient["id"],
                country=(recipient.get("address") or {}).get("country") or country,
                currency=recipient.get("currency") or currency,
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
        """Create a single-payment batch for the contractor's recipient."""

        if not destination:
            raise ProviderError(
                "Payout rail payments need a recipient account.",
                rail=self.rail.value,
                rail_code="missing_recipient",
            )
        body = {
            "sourceCurrency": currency,
            "description": description or "Milestone payment",
            "payments": [
                {
                    "recipient": {"id": destination},
                    "sourceAmount": str(to_major(amount, currency)),
                    "sourceCurrency": currency,
                    "memo": description or "Milestone payment",
                    "externalId": idempotency_key,
                    "tags": [f"{key}:{value}" for key, value in sorted(metadata.items())],
                }
            ],
        }
        data = await self.request("POST", "/v1/batches", body)
        return self._batch_result(data, amount, currency)

    async def retrieve_payment(self, payment_ref: str) -> PaymentResult:
        data = await self.request("GET", f"/v1/batches/{payment_ref}")
        return self._batch_result(data, None, None)

    def _batch_result(self, data: Dict[str, Any], amount: int | None, currency: str | None) -> PaymentResult:
        with malformed_response_guard(self.rail, data):
            batch = data.get("batch") or {}
            if not batch.get("id"):
                raise ProviderError(
                    "Payout rail did not return a batch id.",
                    rail=self.rail.value,
                    rail_code="malformed_response",
                    payload=data,
                )
            return PaymentResult(
                id=batch["id"],
                status=batch.get("status") or "",
                amount=amount,
                currency=currency or batch.get("currency"),
                raw=batch,
            )

    async def get_balance(self, account_id: str) -> Balance:
        data = await self.request("GET", f"/v1/recipients/{account_id}/balance")
        with malformed_response_guard(self.rail, data):
            currency = str(data.get("currency") or "").upper()
            available = (BalanceBucket(amount=to_minor(data.get("balance") or 0, currency), currency=currency),)
            pending: tuple[BalanceBucket, ...] = ()
            if data.get("pendingBalance") is not None:
                pending = (BalanceBucket(amount=to_minor(data["pendingBalance"], currency), currency=currency),)
        return Balance(available=available, pending=pending)

    async def list_payouts(self, account_id: str, limit: int) -> list[Payout]:
        data = await self.request("GET", f"/v1/recipients/{account_id}/payments", {"pageSize": limit})
        payouts = []
        with malformed_response_guard(self.rail, data):
            for item in data.get("payments") or []:
                currency = str(item.get("targetCurrency") or item.get("sourceCurrency") or "").upper()
                raw_amount = item.get("targetAmount") or item.get("sourceAmount") or 0
                status = str(item.get("status") or "")
                payouts.append(
                    Payout(
                        id=item.get("id") or "",
                        amount=to_minor(raw_amount, currency),
                        currency=currency,
                        status=PAYOUT_STATUS_MAP.get(status, status),
                        created=_parse_time(item.get("createdAt")),
                        arrival_date=_parse_time(item.get("processedAt")),
                        description=item.get("memo"),
                        method=item.get("payoutMethod"),
                    )
                )
        payouts.sort(key=lambda p: p.created.timestamp() if p.created else 0, reverse=True)
        return payouts[:limit]

    async def list_balance_transactions(self, account_id: str, limit: int) -> list[BalanceTransaction]:
        """The rail has no ledger endpoint; payments are the transaction history."""

        transactions = []
        for payout in await self.list_payouts(account_id, limit):
            if payout.status == "paid":
                status = "paid"
            elif payout.status == "in_transit":
                status = "available"
            else:
                status = "pending"
            transactions.append(
                BalanceTransaction(
                    id=payout.id,
                    amount=payout.amount,
                    net=payout.amount,
                    currency=payout.currency,
                    type="payout",
                    status=status,
                    created=payout.created,
                    description=payout.description,
                    payout_id=payout.id,
                )
            )
        return transactions

    async def test_connection(self) -> ConnectionCheck:
        try:
            await self.request("GET", "/v1/recipients")
        except ProviderError as exc:
            logger.warning("Payout rail connectivity check failed", extra={"rail_code": exc.rail_code})
            return ConnectionCheck(rail=self.rail.value, success=False, error=exc.message)
        return ConnectionCheck(rail=self.rail.value, success=True)


__all__ = ["PayoutRail", "sign_request", "PAYOUT_STATUS_MAP"]
