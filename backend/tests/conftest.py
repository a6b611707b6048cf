"""Shared test configuration and fixtures.

Each test gets a fresh database: an in-memory SQLite engine by default, or
whatever ``TEST_DATABASE_URL`` points at. Tables are created before the test
and dropped after it. Services commit on their own, so a per-test engine is
simpler than wrapping every test in a rollback.
"""

import os
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.auth.jwt import create_access_token
from app.billing.dependencies import get_billing_provider
from app.billing.stripe_client import BillingProvider
from app.database import Base, get_db, get_session_factory
from app.main import app
from app.models.plan import SubscriptionPlan
from app.models.subscription import Subscription
from app.models.user import User

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

WEBHOOK_SECRET = "whsec_test_secret"

PRICE_ESSENTIAL_MONTHLY = "price_essential_monthly"
PRICE_ESSENTIAL_YEARLY = "price_essential_yearly"
PRICE_PREMIUM_MONTHLY = "price_premium_monthly"
PRICE_PREMIUM_YEARLY = "price_premium_yearly"


def _make_engine():
    if TEST_DATABASE_URL.startswith("sqlite"):
        # One shared connection so every session sees the same in-memory database
        return create_async_engine(
            TEST_DATABASE_URL,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(TEST_DATABASE_URL, pool_pre_ping=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_ts(dt: datetime) -> int:
    """Naive UTC datetime -> Stripe Unix timestamp."""
    return int(dt.replace(tzinfo=timezone.utc).timestamp())


class StripeObj(SimpleNamespace):
    """SimpleNamespace with bracket notation support (like Stripe API objects).

    Stripe API 2025-08-27 (basil) changed subscription.items to require
    bracket notation to avoid collision with Python dict .items().
    """

    def __getitem__(self, key: str):
        return getattr(self, key)


def make_stripe_sub(
    price_id: str = PRICE_ESSENTIAL_MONTHLY,
    status: str = "active",
    sub_id: str = "sub_test_123",
    customer: str = "cus_test_123",
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    cancel_at: datetime | None = None,
    cancel_at_period_end: bool = False,
    metadata: dict | None = None,
) -> StripeObj:
    """Fake Stripe Subscription; period dates live on the item (basil)."""
    start = period_start or utcnow() - timedelta(days=1)
    end = period_end or start + timedelta(days=30)
    return StripeObj(
        id=sub_id,
        customer=customer,
        status=status,
        start_date=to_ts(start),
        cancel_at=to_ts(cancel_at) if cancel_at else None,
        cancel_at_period_end=cancel_at_period_end,
        canceled_at=None,
        metadata=StripeObj(**(metadata or {})),
        items=StripeObj(
            data=[
                StripeObj(
                    id="si_test_123",
                    price=StripeObj(id=price_id),
                    current_period_start=to_ts(start),
                    current_period_end=to_ts(end),
                )
            ]
        ),
    )


def make_checkout_session(
    user_id: uuid.UUID | str,
    sub_id: str | None = "sub_test_123",
    payment_status: str = "paid",
    session_id: str = "cs_test_123",
    customer: str = "cus_test_123",
) -> StripeObj:
    return StripeObj(
        id=session_id,
        object="checkout.session",
        mode="subscription",
        customer=customer,
        subscription=sub_id,
        payment_status=payment_status,
        metadata=StripeObj(user_id=str(user_id)),
    )


def make_event(event_type: str, data_object, created: datetime | None = None) -> StripeObj:
    """Fake Stripe Event wrapping ``data_object``."""
    return StripeObj(
        type=event_type,
        id=f"evt_test_{uuid.uuid4().hex[:8]}",
        created=to_ts(created or utcnow()),
        data=StripeObj(object=data_object),
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine():
    """Create the schema on a fresh engine and drop it afterwards."""
    engine = _make_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_provider() -> MagicMock:
    """BillingProvider double; tests set return values / side effects per call."""
    provider = MagicMock(spec=BillingProvider)
    provider.create_customer = AsyncMock(return_value=StripeObj(id="cus_test_123"))
    provider.create_checkout_session = AsyncMock(
        return_value=StripeObj(id="cs_test_new", url="https://checkout.stripe.test/cs_test_new")
    )
    provider.retrieve_checkout_session = AsyncMock()
    provider.retrieve_subscription = AsyncMock(return_value=make_stripe_sub())
    provider.update_subscription = AsyncMock()
    return provider


@pytest.fixture
def real_provider() -> BillingProvider:
    """Real provider used for signature verification only (no network calls)."""
    return BillingProvider(secret_key="sk_test_dummy", webhook_secret=WEBHOOK_SECRET)


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(db_session: AsyncSession, session_factory, fake_provider) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test DB and the fake provider."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_billing_provider] = lambda: fake_provider

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Catalog and users
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def plans(db_session: AsyncSession) -> dict[str, SubscriptionPlan]:
    """Essential and Premium plans, each with a monthly and a yearly price."""
    essential = SubscriptionPlan(
        name="essential",
        display_name="Essential",
        description="Perfect for individual students or parents",
        billing_cycle="monthly",
        price_monthly_cents=1299,
        price_yearly_cents=11988,
        stripe_price_monthly_id=PRICE_ESSENTIAL_MONTHLY,
        stripe_price_yearly_id=PRICE_ESSENTIAL_YEARLY,
        features=["Download up to 10 worksheets per month"],
        download_limit=10,
    )
    premium = SubscriptionPlan(
        name="premium",
        display_name="Premium",
        description="Great for families and homeschooling",
        billing_cycle="monthly",
        price_monthly_cents=2499,
        price_yearly_cents=23988,
        stripe_price_monthly_id=PRICE_PREMIUM_MONTHLY,
        stripe_price_yearly_id=PRICE_PREMIUM_YEARLY,
        features=["Unlimited downloads"],
        download_limit=0,
    )
    db_session.add_all([essential, premium])
    await db_session.commit()
    return {"essential": essential, "premium": premium}


async def _create_user(db_session: AsyncSession, role: str = "user", **kwargs) -> User:
    unique = uuid.uuid4().hex[:8]
    user = User(
        email=f"{role}-{unique}@test.com",
        name=f"Test {role.title()}",
        is_active=True,
        role=role,
        **kwargs,
    )
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    return await _create_user(db_session, stripe_customer_id="cus_test_123")


@pytest_asyncio.fixture
async def other_user(db_session: AsyncSession) -> User:
    return await _create_user(db_session)


@pytest_asyncio.fixture
async def admin_user(db_session: AsyncSession) -> User:
    return await _create_user(db_session, role="admin")


def headers_for(user: User) -> dict[str, str]:
    token = create_access_token(user.id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers(test_user: User) -> dict[str, str]:
    """Return Authorization headers for the test user."""
    return headers_for(test_user)


@pytest.fixture
def admin_headers(admin_user: User) -> dict[str, str]:
    return headers_for(admin_user)


@pytest.fixture
def make_subscription(db_session: AsyncSession):
    """Insert a subscription row directly, optionally pointing the user at it."""

    async def _make(
        user: User,
        plan: SubscriptionPlan,
        *,
        status: str = "active",
        stripe_subscription_id: str | None = None,
        stripe_price_id: str | None = None,
        start_date: datetime | None = None,
        current_period_end: datetime | None = None,
        renewal_enabled: bool = True,
        point: bool = True,
        **kwargs,
    ) -> Subscription:
        start = start_date or utcnow() - timedelta(days=5)
        if stripe_subscription_id:
            kwargs.setdefault("provider_synced_at", utcnow())
        subscription = Subscription(
            user_id=user.id,
            plan_id=plan.id,
            status=status,
            billing_cycle="monthly",
            stripe_subscription_id=stripe_subscription_id,
            stripe_price_id=stripe_price_id,
            start_date=start,
            current_period_end=current_period_end or start + timedelta(days=30),
            renewal_enabled=renewal_enabled,
            auto_renew=renewal_enabled,
            payment_method="stripe" if stripe_subscription_id else "invoice",
            **kwargs,
        )
        db_session.add(subscription)
        await db_session.flush()
        if point:
            user.active_subscription_id = subscription.id
        await db_session.commit()
        return subscription

    return _make
