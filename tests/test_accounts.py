"""Contractor onboarding and rail connectivity endpoints."""
import pytest

from app.models import AuditLog, ContractorAccount, Rail
from app.services.rail_types import RecipientResult
from app.utils.errors import ProviderError


@pytest.mark.anyio
async def test_onboarding_creates_account_once(client, db_session, fake_gateway):
    payload = {"rail": "stripe", "email": "dev@example.com", "country": "gb"}

    first = await client.post("/contractors/501/accounts", json=payload)
    assert first.status_code == 201, first.text
    assert first.json()["external_account_id"] == "acct_test_1"
    assert first.json()["created"] is True
    assert first.json()["country"] == "GB"

    second = await client.post("/contractors/501/accounts", json=payload)
    assert second.status_code == 200
    assert second.json()["id"] == first.json()["id"]
    assert second.json()["created"] is False

    assert len(fake_gateway.calls_to("create_recipient")) == 1
    assert db_session.query(ContractorAccount).count() == 1
    audit = db_session.query(AuditLog).filter_by(action="CONTRACTOR_ACCOUNT_CREATED").one()
    assert audit.data_json["email"] == "***@example.com"
    assert audit.data_json["external_account_id"].startswith("***")


@pytest.mark.anyio
async def test_payout_rail_onboarding_passes_recipient_details(client, fake_gateway):
    fake_gateway.recipient = RecipientResult(external_account_id="R-55", country="GB", currency="GBP")

    response = await client.post(
        "/contractors/55/accounts",
        json={"rail": "trolley", "email": "a@b.co", "first_name": "Ada", "last_name": "Lovelace", "currency": "GBP"},
    )

    assert response.status_code == 201
    call = fake_gateway.calls_to("create_recipient")[0]
    assert call["rail"] is Rail.TROLLEY
    assert call["contractor_id"] == 55
    assert call["first_name"] == "Ada"

    fetched = await client.get("/contractors/55/accounts/trolley")
    assert fetched.json()["external_account_id"] == "R-55"


@pytest.mark.anyio
async def test_onboarding_rail_error_is_reported(client, fake_gateway, db_session):
    fake_gateway.error = ProviderError("country not supported", rail="stripe", rail_code="invalid_country",
                                       http_status=400)

    response = await client.post("/contractors/9/accounts", json={"country": "ZZ"})

    assert response.status_code == 502
    error = response.json()["error"]
    assert error["code"] == "PROVIDER_ERROR"
    assert error["details"]["rail_code"] == "invalid_country"
    assert db_session.query(ContractorAccount).count() == 0


@pytest.mark.anyio
async def test_missing_account_is_404(client):
    response = await client.get("/contractors/1/accounts/stripe")
    assert response.status_code == 404


@pytest.mark.anyio
async def test_rail_status_reports_connectivity(client, fake_gateway):
    ok = await client.get("/rails/stripe/status")
    assert ok.json() == {"rail": "stripe", "success": True, "error": None}

    fake_gateway.error = RuntimeError("unreachable")
    down = await client.get("/rails/trolley/status")
    assert down.json()["success"] is False
    assert down.json()["rail"] == "trolley"
