"""Test configuration."""
import itertools
import os
from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# --- Default environment for the test run
os.environ.setdefault("DATABASE_URL", "sqlite:///./paycore_test.db")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("PSP_WEBHOOK_SECRET", "test-psp-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")

from app.config import get_settings  # noqa: E402
from app.db import get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.models import Base, BudgetPeriod, ContractorAccount, Rail  # noqa: E402
from app.services.budget import BudgetLedger  # noqa: E402
from app.services.earnings import EarningsAggregator, get_earnings_aggregator  # noqa: E402
from app.services.invalidation import get_invalidator  # noqa: E402
from app.services.provider_gateway import get_gateway  # noqa: E402
from app.services.rail_types import (  # noqa: E402
    Balance,
    ConnectionCheck,
    PaymentResult,
    RecipientResult,
)
from app.utils.time import utcnow  # noqa: E402

DB_PATH = Path("./paycore_test.db")


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.set_main_option("script_location", str(Path(__file__).resolve().parents[1] / "alembic"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    command.upgrade(cfg, "head")


# --- (1) Fresh database file per session
if DB_PATH.exists():
    DB_PATH.unlink()

engine = create_engine(
    os.environ["DATABASE_URL"],
    connect_args={"check_same_thread": False},
    future=True,
)
TestingSessionLocal = sessionmaker(
    bind=engine, autoflush=False, autocommit=False, future=True, expire_on_commit=False
)

# --- (2) Schema comes from the Alembic migrations only
_run_migrations()


def _newest_first(items: list) -> list:
    # Rails page their history newest first.
    return sorted(items, key=lambda item: item.created.timestamp() if item.created else 0, reverse=True)


class FakeGateway:
    """In-memory stand-in for :class:`ProviderGateway` recording every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.error: BaseException | None = None
        self.payment_status = "requires_payment_method"
        self.retrieve_result: PaymentResult | None = None
        self.recipient = RecipientResult(external_account_id="acct_test_1", country="GB", currency="GBP")
        self.balance = Balance()
        self.payouts: list = []
        self.transactions: list = []
        self._ids = itertools.count(1)

    def _record(self, name: str, **kwargs) -> None:
        self.calls.append((name, kwargs))
        if self.error is not None:
            raise self.error

    def calls_to(self, name: str) -> list[dict]:
        return [kwargs for call, kwargs in self.calls if call == name]

    async def create_recipient(self, rail, **fields) -> RecipientResult:
        self._record("create_recipient", rail=Rail(rail), **fields)
        return self.recipient

    async def create_payment(self, rail, **kwargs) -> PaymentResult:
        self._record("create_payment", rail=Rail(rail), **kwargs)
        ref = f"pi_test_{next(self._ids)}"
        return PaymentResult(
            id=ref,
            status=self.payment_status,
            amount=kwargs["amount"],
            currency=kwargs["currency"],
            client_secret=f"{ref}_secret",
            raw={"transfer_data": {"destination": kwargs.get("destination")}},
        )

    async def retrieve_payment(self, rail, payment_ref: str) -> PaymentResult:
        self._record("retrieve_payment", rail=Rail(rail), payment_ref=payment_ref)
        assert self.retrieve_result is not None
        return self.retrieve_result

    async def get_balance(self, rail, account_id: str) -> Balance:
        self._record("get_balance", rail=Rail(rail), account_id=account_id)
        return self.balance

    async def list_payouts(self, rail, account_id: str, limit: int = 100) -> list:
        self._record("list_payouts", rail=Rail(rail), account_id=account_id, limit=limit)
        return _newest_first(self.payouts)[:limit]

    async def list_balance_transactions(self, rail, account_id: str, limit: int = 50) -> list:
        self._record("list_balance_transactions", rail=Rail(rail), account_id=account_id, limit=limit)
        return _newest_first(self.transactions)[:limit]

    async def test_connection(self, rail) -> ConnectionCheck:
        self.calls.append(("test_connection", {"rail": Rail(rail)}))
        if self.error is not None:
            return ConnectionCheck(rail=Rail(rail).value, success=False, error=str(self.error))
        return ConnectionCheck(rail=Rail(rail).value, success=True)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def fresh_caches() -> Iterator[None]:
    get_invalidator.cache_clear()
    yield
    get_invalidator.cache_clear()


@pytest.fixture
def db_session() -> Iterator[Session]:
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        with engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                conn.execute(table.delete())


@pytest.fixture
def session_factory() -> sessionmaker[Session]:
    return TestingSessionLocal


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture(autouse=True)
def override_dependencies(db_session: Session, fake_gateway: FakeGateway) -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_earnings_aggregator] = lambda: EarningsAggregator(
        fake_gateway, default_currency=get_settings().DEFAULT_CURRENCY
    )
    yield
    app.dependency_overrides.clear()


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def make_account(db_session: Session) -> Callable[..., ContractorAccount]:
    def _factory(
        contractor_id: int = 501,
        rail: Rail = Rail.STRIPE,
        external_account_id: str | None = None,
    ) -> ContractorAccount:
        account = ContractorAccount(
            contractor_id=contractor_id,
            rail=rail.value,
            external_account_id=external_account_id or f"acct_{rail.value}_{contractor_id}",
            country="GB",
            currency="GBP",
        )
        db_session.add(account)
        db_session.commit()
        db_session.refresh(account)
        return account

    return _factory


@pytest.fixture
def make_budget(db_session: Session) -> Callable[..., BudgetPeriod]:
    def _factory(business_id: int = 301, cap: int | None = 100_000, used: int = 0) -> BudgetPeriod:
        budget = BudgetLedger().set_budget(db_session, business_id, cap, period="yearly", start_date=utcnow())
        if used:
            budget.used = used
            db_session.commit()
            db_session.refresh(budget)
        return budget

    return _factory
