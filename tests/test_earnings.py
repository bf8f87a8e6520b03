"""Contractor earnings aggregation."""
from datetime import UTC, datetime
from decimal import Decimal

import httpx
import pytest

from app.models.payment import Rail
from app.services.earnings import PAYOUT_HISTORY_LIMIT, EarningsAggregator
from app.services.provider_gateway import ProviderGateway
from app.services.rail_types import (
    Balance,
    BalanceBucket,
    BalanceTransaction,
    Payout,
    RailCredentials,
    StaticCredentialProvider,
)
from app.utils.errors import EarningsFetchError, ProviderTransportError

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _payout(pid: str, amount: int, status: str, day: int = 1) -> Payout:
    return Payout(id=pid, amount=amount, currency="GBP", status=status, created=datetime(2026, 2, day, tzinfo=UTC))


@pytest.fixture
def aggregator(fake_gateway):
    return EarningsAggregator(fake_gateway, default_currency="gbp", clock=lambda: FIXED_NOW)


@pytest.mark.anyio
async def test_earnings_sums_balance_and_earned_payouts(aggregator, fake_gateway):
    fake_gateway.balance = Balance(
        available=(BalanceBucket(3000, "GBP"),),
        pending=(BalanceBucket(1000, "GBP"), BalanceBucket(500, "GBP")),
    )
    fake_gateway.payouts = [
        _payout("po_1", 10_000, "paid"),
        _payout("po_2", 2_000, "in_transit"),
        _payout("po_3", 700, "pending"),
        _payout("po_4", 500, "failed"),
        _payout("po_5", 300, "canceled"),
    ]

    snapshot = await aggregator.get_earnings("acct_1")

    assert snapshot.available_balance == 3000
    assert snapshot.pending_balance == 1500
    assert snapshot.pending_earnings == 4500
    assert snapshot.total_earnings == 12_000
    assert snapshot.currency == "GBP"
    assert snapshot.as_of == FIXED_NOW
    assert fake_gateway.calls_to("list_payouts")[0]["limit"] == PAYOUT_HISTORY_LIMIT

    major = snapshot.to_major()
    assert major["available_balance"] == Decimal("30.00")
    assert major["total_earnings"] == Decimal("120.00")


@pytest.mark.anyio
async def test_earnings_are_idempotent_between_rail_changes(aggregator, fake_gateway):
    fake_gateway.balance = Balance(available=(BalanceBucket(100, "GBP"),))
    fake_gateway.payouts = [_payout("po_1", 400, "paid")]

    first = await aggregator.get_earnings("acct_1")
    second = await aggregator.reconcile("acct_1")

    assert first == second


@pytest.mark.anyio
async def test_empty_balance_uses_default_currency(aggregator, fake_gateway):
    snapshot = await aggregator.get_earnings("acct_new", Rail.TROLLEY)

    assert snapshot.currency == "GBP"
    assert snapshot.available_balance == 0
    assert snapshot.pending_balance == 0
    assert snapshot.total_earnings == 0
    assert fake_gateway.calls_to("get_balance")[0]["rail"] is Rail.TROLLEY


@pytest.mark.anyio
async def test_currency_comes_from_first_available_bucket(aggregator, fake_gateway):
    fake_gateway.balance = Balance(available=(BalanceBucket(10, "eur"), BalanceBucket(20, "GBP")))

    snapshot = await aggregator.get_earnings("acct_1")

    assert snapshot.currency == "EUR"
    assert snapshot.available_balance == 30


@pytest.mark.anyio
async def test_rail_failure_aborts_without_partial_snapshot(aggregator, fake_gateway):
    fake_gateway.error = ProviderTransportError("rail down", rail="stripe", rail_code="transport")

    with pytest.raises(EarningsFetchError) as excinfo:
        await aggregator.get_earnings("acct_1")

    assert excinfo.value.account_id == "acct_1"
    assert excinfo.value.details["rail_error"] == "rail down"
    assert excinfo.value.status_code == 503


@pytest.mark.anyio
async def test_payouts_and_transactions_are_newest_first_and_limited(aggregator, fake_gateway):
    fake_gateway.payouts = [_payout("old", 1, "paid", 1), _payout("new", 2, "paid", 20), _payout("mid", 3, "paid", 10)]
    fake_gateway.transactions = [
        BalanceTransaction(id=f"txn_{day}", amount=day, net=day, currency="GBP", type="payment", status="pending",
                           created=datetime(2026, 2, day, tzinfo=UTC))
        for day in (3, 9, 5)
    ]

    payouts = await aggregator.get_payouts("acct_1", limit=2)
    transactions = await aggregator.get_transactions("acct_1", limit=2)

    assert [p.id for p in payouts] == ["new", "mid"]
    assert [t.id for t in transactions] == ["txn_9", "txn_5"]


@pytest.mark.anyio
async def test_malformed_rail_history_aborts_with_fetch_error():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/balance"):
            return httpx.Response(200, json={"balance": "10.00", "currency": "GBP"})
        return httpx.Response(200, json={"payments": [{"id": "P-1", "status": "processed", "targetAmount": "N/A"}]})

    gateway = ProviderGateway(
        StaticCredentialProvider({Rail.TROLLEY: RailCredentials(api_key="k", api_secret="s", base_url="https://p.test")}),
        transport=httpx.MockTransport(handler),
    )
    aggregator = EarningsAggregator(gateway, clock=lambda: FIXED_NOW)

    with pytest.raises(EarningsFetchError) as excinfo:
        await aggregator.get_earnings("R-1", Rail.TROLLEY)

    assert excinfo.value.details["rail_code"] == "malformed_response"
    assert excinfo.value.rail_payload["payments"][0]["targetAmount"] == "N/A"

    with pytest.raises(EarningsFetchError):
        await aggregator.get_payouts("R-1", rail=Rail.TROLLEY)


@pytest.mark.anyio
async def test_earnings_endpoint_returns_major_units(client, make_account, fake_gateway):
    account = make_account(contractor_id=77)
    fake_gateway.balance = Balance(available=(BalanceBucket(1234, "GBP"),), pending=(BalanceBucket(66, "GBP"),))
    fake_gateway.payouts = [_payout("po_1", 5000, "paid")]

    response = await client.get("/earnings/77")

    assert response.status_code == 200, response.text
    payload = response.json()
    assert Decimal(payload["available_balance"]) == Decimal("12.34")
    assert Decimal(payload["pending_earnings"]) == Decimal("13.00")
    assert Decimal(payload["total_earnings"]) == Decimal("50.00")
    assert fake_gateway.calls_to("get_balance")[0]["account_id"] == account.external_account_id


@pytest.mark.anyio
async def test_earnings_endpoint_maps_rail_failure(client, make_account, fake_gateway):
    make_account(contractor_id=78)
    fake_gateway.error = ProviderTransportError("rail down", rail="stripe")

    response = await client.get("/earnings/78")

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "EARNINGS_FETCH_FAILED"


@pytest.mark.anyio
async def test_earnings_endpoint_requires_rail_account(client):
    response = await client.get("/earnings/999")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.anyio
async def test_transactions_endpoint_caps_limit(client, make_account):
    make_account(contractor_id=79)

    response = await client.get("/earnings/79/transactions", params={"limit": 500})

    assert response.status_code == 422
