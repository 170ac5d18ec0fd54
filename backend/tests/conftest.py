"""Shared test infrastructure for the Referral Desk test suite.

Provides:
- db_session: async SQLite in-memory session with all tables created
- api_client: httpx AsyncClient wired to the deal, referral and dashboard routers
- make_referral: factory for Referral rows
- make_deal: factory for Deal rows
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from referral_desk.infra.database import Base, get_db

import referral_desk.domain.models  # noqa: F401

from referral_desk.domain.models import Deal, Referral


# ---------------------------------------------------------------------------
# Database session fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_session():
    """Async SQLite in-memory session with all tables created.

    Creates a fresh engine + tables for each test, yields a session,
    then rolls back and tears down.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

@pytest.fixture
async def api_client(db_session):
    """HTTPX AsyncClient over a test app sharing ``db_session``.

    Builds a fresh FastAPI app with only the referral desk routers so the
    lifespan (which creates the on-disk database) never runs.
    """
    from referral_desk.app.routes.dashboard import router as dashboard_router
    from referral_desk.app.routes.deals import router as deals_router
    from referral_desk.app.routes.referrals import router as referrals_router

    test_app = FastAPI()
    test_app.include_router(deals_router)
    test_app.include_router(referrals_router)
    test_app.include_router(dashboard_router)

    async def _override_get_db():
        yield db_session

    test_app.dependency_overrides[get_db] = _override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=test_app),
        base_url="http://testserver",
    ) as client:
        yield client


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_referral(db_session):
    """Factory that creates a Referral row.

    Usage:
        referral = await make_referral(pre_approval_amount_cents=40_000_000)
    """
    async def _factory(
        borrower_name: str = "Test Borrower",
        status: str = "New Lead",
        aha_bucket: str | None = None,
        looking_in_zip: str | None = "85001",
        property_address: str = "",
        pre_approval_amount_cents: int = 0,
        referral_fee_due_cents: int = 0,
        **fields,
    ) -> Referral:
        referral = Referral(
            id=str(uuid.uuid4()),
            borrower_name=borrower_name,
            status=status,
            aha_bucket=aha_bucket,
            looking_in_zip=looking_in_zip,
            property_address=property_address,
            pre_approval_amount_cents=pre_approval_amount_cents,
            referral_fee_due_cents=referral_fee_due_cents,
            audit=[],
            **fields,
        )
        db_session.add(referral)
        await db_session.flush()
        return referral

    return _factory


@pytest.fixture
def make_deal(db_session):
    """Factory that creates a Deal row.

    ``age_days`` backdates ``created_at`` so recency ordering is deterministic.

    Usage:
        deal = await make_deal(referral.id, status="closed", age_days=3)
    """
    async def _factory(
        referral_id: str,
        status: str = "under_contract",
        expected_amount_cents: int = 0,
        received_amount_cents: int = 0,
        age_days: int = 0,
        **fields,
    ) -> Deal:
        created = datetime.now(timezone.utc) - timedelta(days=age_days)
        deal = Deal(
            id=str(uuid.uuid4()),
            referral_id=referral_id,
            status=status,
            expected_amount_cents=expected_amount_cents,
            received_amount_cents=received_amount_cents,
            agent_attribution=fields.pop("agent_attribution", ""),
            used_afc=fields.pop("used_afc", False),
            created_at=created,
            updated_at=created,
            **fields,
        )
        db_session.add(deal)
        await db_session.flush()
        return deal

    return _factory
