"""Rail adapters, request signing and retry behaviour."""
import itertools
import json

import httpx
import pytest
import stripe

from app.models.payment import Rail
from app.services.provider_gateway import ProviderGateway
from app.services.psp_payout import sign_request
from app.services.rail_types import (
    EnvironmentCredentialProvider,
    RailCredentials,
    RetryPolicy,
    StaticCredentialProvider,
)
from app.utils.errors import ProviderError, ProviderTransportError

PAYOUT_CREDS = RailCredentials(api_key="pk_live", api_secret="ps_secret", base_url="https://payouts.test")
STRIPE_CREDS = RailCredentials(api_key="sk_test_123", base_url="https://stripe.test")


def _gateway(handler, *, clock=None, sleeps=None):
    async def _sleep(delay: float) -> None:
        if sleeps is not None:
            sleeps.append(delay)

    return ProviderGateway(
        StaticCredentialProvider({Rail.TROLLEY: PAYOUT_CREDS, Rail.STRIPE: STRIPE_CREDS}),
        retry_policy=RetryPolicy(max_retries=2, base_delay=0.01, max_delay=0.05),
        transport=httpx.MockTransport(handler),
        sleep=_sleep,
        clock=clock or (lambda: 1_700_000_000),
    )


def test_sign_request_is_hmac_over_timestamp_method_path_body():
    first = sign_request("secret", 1700000000, "post", "/v1/batches", '{"a":1}')
    assert first == sign_request("secret", 1700000000, "POST", "/v1/batches", '{"a":1}')
    assert len(first) == 64
    assert first != sign_request("secret", 1700000001, "POST", "/v1/batches", '{"a":1}')
    assert first != sign_request("other", 1700000000, "POST", "/v1/batches", '{"a":1}')


@pytest.mark.anyio
async def test_payout_request_carries_signature_headers():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"recipient": {"id": "R-1", "address": {"country": "GB"}}})

    gateway = _gateway(handler)
    result = await gateway.create_recipient(Rail.TROLLEY, contractor_id=7, email="c@example.com", country="GB")

    assert result.external_account_id == "R-1"
    request = seen[0]
    assert request.url.path == "/v1/recipients"
    body = request.content.decode()
    expected = sign_request("ps_secret", 1_700_000_000, "POST", "/v1/recipients", body)
    assert request.headers["Authorization"] == f"prsign pk_live:{expected}"
    assert request.headers["X-PR-Timestamp"] == "1700000000"
    assert json.loads(body)["referenceId"] == "7"


@pytest.mark.anyio
async def test_payout_reads_retry_with_fresh_signature_each_attempt():
    seen = []
    clock = itertools.count(1_700_000_000)
    sleeps: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if len(seen) == 1:
            return httpx.Response(503, json={"errors": [{"code": "unavailable", "message": "try later"}]})
        return httpx.Response(200, json={"balance": "12.34", "pendingBalance": "1.00", "currency": "GBP"})

    gateway = _gateway(handler, clock=lambda: next(clock), sleeps=sleeps)
    balance = await gateway.get_balance(Rail.TROLLEY, "R-1")

    assert len(seen) == 2
    assert len(sleeps) == 1
    assert seen[0].headers["X-PR-Timestamp"] != seen[1].headers["X-PR-Timestamp"]
    assert seen[0].headers["Authorization"] != seen[1].headers["Authorization"]
    assert balance.available[0].amount == 1234
    assert balance.pending[0].amount == 100


@pytest.mark.anyio
async def test_payout_writes_are_never_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(502, text="bad gateway")

    gateway = _gateway(handler)
    with pytest.raises(ProviderTransportError):
        await gateway.create_payment(
            Rail.TROLLEY,
            amount=2500,
            currency="GBP",
            destination="R-1",
            metadata={"paymentId": 1},
            idempotency_key="pay-1",
        )
    assert len(attempts) == 1


@pytest.mark.anyio
async def test_reads_give_up_after_max_retries():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        raise httpx.ConnectError("boom", request=request)

    gateway = _gateway(handler)
    with pytest.raises(ProviderTransportError) as excinfo:
        await gateway.list_payouts(Rail.TROLLEY, "R-1")
    assert len(attempts) == 3
    assert excinfo.value.rail_code == "transport"


@pytest.mark.anyio
async def test_client_errors_are_not_retried_and_keep_rail_details():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(404, json={"errors": [{"code": "not_found", "message": "Recipient missing"}]})

    gateway = _gateway(handler)
    with pytest.raises(ProviderError) as excinfo:
        await gateway.get_balance(Rail.TROLLEY, "R-404")

    assert not isinstance(excinfo.value, ProviderTransportError)
    assert len(attempts) == 1
    assert excinfo.value.rail_code == "not_found"
    assert excinfo.value.http_status == 404
    assert excinfo.value.message == "Recipient missing"


@pytest.mark.anyio
async def test_rate_limit_is_transient():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(429, json={"error": {"code": "rate_limit", "message": "slow down"}})
        return httpx.Response(200, json={"payments": []})

    gateway = _gateway(handler)
    assert await gateway.list_payouts(Rail.TROLLEY, "R-1") == []
    assert len(attempts) == 3


@pytest.mark.anyio
async def test_payout_history_maps_statuses_and_sorts_newest_first():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["pageSize"] == "10"
        return httpx.Response(
            200,
            json={
                "payments": [
                    {"id": "P-1", "status": "processed", "targetAmount": "10.00", "targetCurrency": "GBP",
                     "createdAt": "2026-01-01T00:00:00Z"},
                    {"id": "P-2", "status": "processing", "targetAmount": "5.50", "targetCurrency": "GBP",
                     "createdAt": "2026-02-01T00:00:00Z"},
                    {"id": "P-3", "status": "failed", "sourceAmount": "1.00", "sourceCurrency": "GBP"},
                ]
            },
        )

    gateway = _gateway(handler)
    payouts = await gateway.list_payouts(Rail.TROLLEY, "R-1", 10)
    assert [p.id for p in payouts] == ["P-2", "P-1", "P-3"]
    assert [p.status for p in payouts] == ["in_transit", "paid", "failed"]
    assert payouts[0].amount == 550

    transactions = await gateway.list_balance_transactions(Rail.TROLLEY, "R-1", 10)
    assert {t.id: t.status for t in transactions} == {"P-1": "paid", "P-2": "available", "P-3": "pending"}


@pytest.mark.anyio
async def test_stripe_raw_request_uses_bearer_and_form_encoding():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "acct_1"})

    gateway = _gateway(handler)
    data = await gateway.request(
        Rail.STRIPE, "POST", "/v1/accounts", {"type": "express", "capabilities": {"transfers": {"requested": True}}},
        idempotency_key="contractor-account-1",
    )
    assert data == {"id": "acct_1"}
    request = seen[0]
    assert request.headers["Authorization"] == "Bearer sk_test_123"
    assert request.headers["Idempotency-Key"] == "contractor-account-1"
    assert b"capabilities%5Btransfers%5D%5Brequested%5D=true" in request.content


@pytest.mark.anyio
async def test_stripe_payment_retries_with_same_idempotency_key(monkeypatch):
    calls = []

    def fake_create(**kwargs):
        calls.append(kwargs)
        if len(calls) == 1:
            raise stripe.APIConnectionError("network down")
        return {
            "id": "pi_123",
            "status": "requires_payment_method",
            "amount": kwargs["amount"],
            "currency": kwargs["currency"],
            "client_secret": "pi_123_secret",
            "transfer_data": kwargs.get("transfer_data"),
        }

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    gateway = _gateway(lambda request: httpx.Response(500))

    result = await gateway.create_payment(
        Rail.STRIPE,
        amount=2500,
        currency="GBP",
        destination="acct_9",
        metadata={"paymentId": 11, "milestoneId": 4},
        idempotency_key="pay-11",
    )

    assert result.id == "pi_123"
    assert result.client_secret == "pi_123_secret"
    assert len(calls) == 2
    assert {c["idempotency_key"] for c in calls} == {"pay-11"}
    assert calls[0]["api_key"] == "sk_test_123"
    assert calls[0]["currency"] == "gbp"
    assert calls[0]["transfer_data"] == {"destination": "acct_9"}
    assert calls[0]["metadata"] == {"paymentId": "11", "milestoneId": "4"}


@pytest.mark.anyio
async def test_stripe_invalid_request_is_a_client_error(monkeypatch):
    calls = []

    def fake_create(**kwargs):
        calls.append(kwargs)
        raise stripe.InvalidRequestError("No such destination", "transfer_data", code="resource_missing")

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    gateway = _gateway(lambda request: httpx.Response(500))

    with pytest.raises(ProviderError) as excinfo:
        await gateway.create_payment(
            Rail.STRIPE, amount=100, currency="GBP", destination="acct_x", metadata={}, idempotency_key="k"
        )
    assert not isinstance(excinfo.value, ProviderTransportError)
    assert excinfo.value.rail_code == "resource_missing"
    assert len(calls) == 1


@pytest.mark.anyio
async def test_stripe_balance_and_transactions(monkeypatch):
    def fake_balance(**kwargs):
        assert kwargs["stripe_account"] == "acct_9"
        return {
            "available": [{"amount": 3000, "currency": "gbp"}],
            "pending": [{"amount": 1500, "currency": "gbp"}],
        }

    def fake_transactions(**kwargs):
        return {
            "data": [
                {"id": "txn_1", "amount": 1000, "net": 970, "currency": "gbp", "type": "payment",
                 "status": "available", "payout": "po_1", "created": 1700000000},
                {"id": "txn_2", "amount": 500, "net": 485, "currency": "gbp", "type": "payment",
                 "status": "available", "created": 1700000100},
                {"id": "txn_3", "amount": 200, "net": 194, "currency": "gbp", "type": "payment",
                 "status": "pending", "created": 1700000200},
            ]
        }

    monkeypatch.setattr(stripe.Balance, "retrieve", fake_balance)
    monkeypatch.setattr(stripe.BalanceTransaction, "list", fake_transactions)
    gateway = _gateway(lambda request: httpx.Response(500))

    balance = await gateway.get_balance(Rail.STRIPE, "acct_9")
    assert balance.available[0].amount == 3000
    assert balance.available[0].currency == "GBP"

    transactions = await gateway.list_balance_transactions(Rail.STRIPE, "acct_9", 3)
    assert [t.status for t in transactions] == ["paid", "available", "pending"]
    assert transactions[0].net == 970


@pytest.mark.anyio
async def test_missing_credentials_fail_without_calling_the_rail(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    monkeypatch.delenv("TROLLEY_API_KEY", raising=False)
    monkeypatch.delenv("TROLLEY_API_SECRET", raising=False)
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(200, json={})

    gateway = ProviderGateway(EnvironmentCredentialProvider(), transport=httpx.MockTransport(handler))
    with pytest.raises(ProviderError) as excinfo:
        await gateway.get_balance(Rail.TROLLEY, "R-1")
    assert excinfo.value.error_code == "PROVIDER_NOT_CONFIGURED"
    assert attempts == []

    check = await gateway.test_connection(Rail.STRIPE)
    assert check.success is False
    assert "STRIPE_SECRET_KEY" in check.error


@pytest.mark.anyio
async def test_credentials_are_read_on_every_call(monkeypatch):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["Authorization"])
        return httpx.Response(200, json={"recipients": []})

    monkeypatch.setenv("TROLLEY_API_KEY", "key-one")
    monkeypatch.setenv("TROLLEY_API_SECRET", "secret-one")
    gateway = ProviderGateway(EnvironmentCredentialProvider(), transport=httpx.MockTransport(handler))
    assert (await gateway.test_connection(Rail.TROLLEY)).success

    monkeypatch.setenv("TROLLEY_API_KEY", "key-two")
    assert (await gateway.test_connection(Rail.TROLLEY)).success

    assert seen[0].startswith("prsign key-one:")
    assert seen[1].startswith("prsign key-two:")


@pytest.mark.anyio
async def test_malformed_payout_amount_is_a_rail_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"payments": [{"id": "P-1", "status": "processed", "targetAmount": "N/A"}]})

    gateway = _gateway(handler)

    with pytest.raises(ProviderError) as excinfo:
        await gateway.list_payouts(Rail.TROLLEY, "R-1")
    assert not isinstance(excinfo.value, ProviderTransportError)
    assert excinfo.value.rail_code == "malformed_response"
    assert excinfo.value.payload["payments"][0]["targetAmount"] == "N/A"


@pytest.mark.anyio
async def test_stripe_payout_without_id_is_a_rail_error(monkeypatch):
    monkeypatch.setattr(stripe.Payout, "list", lambda **kwargs: {"data": [{"amount": 100, "status": "paid"}]})
    gateway = _gateway(lambda request: httpx.Response(500))

    with pytest.raises(ProviderError) as excinfo:
        await gateway.list_payouts(Rail.STRIPE, "acct_9")
    assert excinfo.value.rail_code == "malformed_response"


@pytest.mark.anyio
async def test_stripe_account_idempotency_key_follows_request_details(monkeypatch):
    calls = []

    def fake_create(**kwargs):
        calls.append(kwargs)
        return {"id": f"acct_{len(calls)}", "country": kwargs["country"], "default_currency": "gbp"}

    monkeypatch.setattr(stripe.Account, "create", fake_create)
    gateway = _gateway(lambda request: httpx.Response(500))

    first = await gateway.create_recipient(Rail.STRIPE, contractor_id=7, email="c@example.com", country="GB")
    await gateway.create_recipient(Rail.STRIPE, contractor_id=7, email="c@example.com", country="GB")
    await gateway.create_recipient(Rail.STRIPE, contractor_id=7, email="c@example.com", country="IE")

    assert first.external_account_id == "acct_1"
    assert first.currency == "GBP"
    keys = [call["idempotency_key"] for call in calls]
    assert keys[0] == keys[1]
    assert keys[0] != keys[2]
    assert all(key.startswith("contractor-account-7-") for key in keys)
