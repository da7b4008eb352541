"""
Test fixtures for the backend test suite.

Each test gets its own SQLite database file (aiosqlite) with the schema
created from the ORM metadata. Service functions commit their own work, so
tests that exercise concurrency open independent sessions from
``session_factory``.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tokenledger.core.config import settings
from tokenledger.core.database import build_engine, get_db
from tokenledger.main import create_app
from tokenledger.models import Base
from tokenledger.models.base import utcnow
from tokenledger.models.promo_code import PromoCode
from tokenledger.services import ledger_service, quota_service

TEST_ADMIN_KEY = "test-admin-key"

# ---------------------------------------------------------------------------
# Per-test database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def admin_key(monkeypatch) -> dict[str, str]:
    monkeypatch.setattr(settings, "ADMIN_API_KEY", TEST_ADMIN_KEY)
    return {"X-Admin-Key": TEST_ADMIN_KEY}


@pytest_asyncio.fixture
async def app(session_factory):
    """FastAPI app with every request on a fresh session of the test database."""
    application = create_app()

    async def override_get_db():
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_db] = override_get_db
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncClient:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


async def fund_account(db: AsyncSession, shop: str, tokens: int, usd: str = "10") -> None:
    """Give ``shop`` a balance through the normal purchase path."""
    await ledger_service.add_purchase(db, shop, Decimal(usd), tokens)


async def create_subscription(
    db: AsyncSession,
    shop: str,
    plan: str = "starter",
    query_count: int = 0,
    in_trial: bool = False,
):
    subscription = await quota_service.get_or_create_subscription(
        db, shop, plan=plan, trial_days=5 if in_trial else 0
    )
    if not in_trial:
        subscription.trial_ends_at = utcnow() - timedelta(days=1)
    subscription.query_count = query_count
    await db.commit()
    return subscription


async def create_promo_code(
    db: AsyncSession,
    code: str = "WELCOME30",
    type: str = "free_period",
    trial_days: int = 30,
    max_uses: int = 1,
    current_uses: int = 0,
    expires_in: timedelta = timedelta(days=30),
    **fields,
) -> PromoCode:
    promo = PromoCode(
        code=code,
        type=type,
        trial_days=trial_days,
        max_uses=max_uses,
        current_uses=current_uses,
        expires_at=utcnow() + expires_in,
        **fields,
    )
    db.add(promo)
    await db.commit()
    return promo
