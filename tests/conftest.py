"""
Pytest configuration and fixtures.

Every test gets its own SQLite database file, a manual clock and a freshly
wired service graph with a funded settlement bank.
"""
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from paycode.config import Settings
from paycode.core.accounts import AccountKind
from paycode.core.locking import LocalKeyedLock
from paycode.core.services import Services, build_services
from paycode.database.connection import (
    build_session_factory,
    create_engine_from_settings,
    init_db,
    unit_of_work,
)
from paycode.database.models import Account

BANK_FUNDING_CENTS = 1_000_000


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime = datetime(2026, 1, 15, 12, 0, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now += timedelta(**kwargs)


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast tests of a single component")
    config.addinivalue_line("markers", "integration: tests through the HTTP API")
    config.addinivalue_line("markers", "race: concurrent access tests")


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'paycode_test.db'}",
        database_busy_timeout=15.0,
        lock_backend="local",
        lock_timeout_seconds=10.0,
        conflict_retry_attempts=5,
        conflict_retry_base_delay=0.01,
        bank_initial_balance_cents=BANK_FUNDING_CENTS,
        app_name="paycode-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create test database with all tables."""
    engine = create_engine_from_settings(test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def services(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
    clock: ManualClock,
) -> Services:
    """Service graph with a funded bank."""
    services = build_services(
        session_factory,
        test_settings,
        locks=LocalKeyedLock(timeout_seconds=test_settings.lock_timeout_seconds),
        clock=clock,
    )
    await services.bootstrap()
    return services


async def open_account(
    services: Services, kind: AccountKind, name: str, account_id: str | None = None
) -> Account:
    """Register an account outside of any test transaction."""
    async with unit_of_work(services.session_factory) as db:
        return await services.accounts.open_account(db, kind, name, account_id=account_id)


async def balance_of(services: Services, account_id: str) -> int:
    async with unit_of_work(services.session_factory) as db:
        return await services.accounts.get_balance(db, account_id)


@pytest_asyncio.fixture
async def merchant(services: Services) -> Account:
    return await open_account(services, AccountKind.MERCHANT, "Corner Coffee", "m_coffee")


@pytest_asyncio.fixture
async def payer(services: Services) -> Account:
    """Payer wallet recharged with 100.00 from the bank."""
    account = await open_account(services, AccountKind.PAYER, "Alice", "p_alice")
    await services.recharge.recharge(account.id, 10_000)
    return account


@pytest_asyncio.fixture
async def client(test_settings: Settings) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client with the application lifespan running."""
    from paycode.api.main import create_app

    app = create_app(test_settings)
    async with app.router.lifespan_context(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
