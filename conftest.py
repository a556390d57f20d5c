import os
from datetime import datetime, timedelta, timezone
from uuid import uuid4

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SUBSCRIPTION_SWEEP_MODE", "disabled")
os.environ.setdefault("BILLING_TIMEZONE", "UTC")

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.database.database import Base, get_async_db
from app.modules.labs import crud as lab_crud
from app.modules.labs.models import Lab, LabStatus
from app.modules.subscriptions.dependencies import get_clock
from app.modules.subscriptions.locks import TenantLocks
from app.modules.subscriptions.models import Subscription, SubscriptionStatus, PaymentProvider
from app.modules.subscriptions.seed_plans import seed_plans


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ===== DATABASE =====

@pytest.fixture
async def engine(tmp_path):
    # File database: every session gets its own connection
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'labsaas.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fetch(session_factory):
    """Read a row through a fresh session, bypassing any identity map."""
    async def _fetch(model, ident):
        async with session_factory() as session:
            return await session.get(model, ident)
    return _fetch


@pytest.fixture
def lab_subscriptions(session_factory):
    async def _list(lab_id):
        async with session_factory() as session:
            result = await session.execute(
                select(Subscription).where(Subscription.tenant_id == lab_id).order_by(Subscription.start_date)
            )
            return result.scalars().all()
    return _list


# ===== DOMAIN FIXTURES =====

@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def locks():
    return TenantLocks()


@pytest.fixture
async def plans(db_session):
    """Trial, Basic and Premium, keyed by name."""
    return {plan.name: plan for plan in await seed_plans(db_session)}


@pytest.fixture
def make_lab(db_session):
    async def _make(name=None, status=LabStatus.PENDING_APPROVAL) -> Lab:
        return await lab_crud.create_lab(db_session, name or f"Lab {uuid4().hex[:8]}", status)
    return _make


@pytest.fixture
def make_subscription(db_session):
    """
    Insert a subscription with explicit dates, optionally making it the
    lab's current one.
    """
    async def _make(
        lab,
        plan,
        status=SubscriptionStatus.TRIAL,
        start_date=None,
        end_date=None,
        current=True,
        payment_provider=PaymentProvider.NONE
    ) -> Subscription:
        start_date = start_date or datetime(2024, 2, 1, 12, 0, tzinfo=timezone.utc)
        subscription = Subscription(
            tenant_id=lab.id,
            plan_id=plan.id,
            status=SubscriptionStatus(status).value,
            start_date=start_date,
            end_date=end_date or start_date + timedelta(days=plan.duration_in_days),
            payment_provider=PaymentProvider(payment_provider).value,
        )
        db_session.add(subscription)
        await db_session.flush()
        if current:
            lab.current_subscription_id = subscription.id
            lab.status = LabStatus.ACTIVE.value
            db_session.add(lab)
        await db_session.commit()
        return subscription
    return _make


# ===== HTTP =====

@pytest.fixture
async def client(session_factory, clock):
    from app.main import app

    async def override_get_async_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_db] = override_get_async_db
    app.dependency_overrides[get_clock] = lambda: clock

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
