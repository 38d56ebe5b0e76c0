import asyncio
import base64
import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import jwt
import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.domain.businesses import db_models as business_db_models
from app.domain.customers import db_models as customer_db_models
from app.domain.invoices import db_models as invoice_db_models  # noqa: F401
from app.domain.jobs import db_models as job_db_models  # noqa: F401
from app.domain.numbering import db_models as numbering_db_models  # noqa: F401
from app.domain.ops import db_models as ops_db_models  # noqa: F401
from app.domain.subscriptions import db_models as subscription_db_models  # noqa: F401
from app.domain.subscriptions import schemas as subscription_schemas
from app.domain.subscriptions import service as subscription_service
from app.domain.subscriptions.events_service import Actor
from app.domain.subscriptions.statuses import ActorType
from app.infra.auth import PORTAL_AUDIENCE
from app.infra.db import Base, get_db_session
from app.main import app
from app.settings import settings

BUSINESS_ID = "00000000-0000-0000-0000-00000000b001"
CUSTOMER_ID = "00000000-0000-0000-0000-00000000c001"
OTHER_CUSTOMER_ID = "00000000-0000-0000-0000-00000000c002"
PLAN_ID = "00000000-0000-0000-0000-00000000d001"
STAFF = Actor(ActorType.STAFF, "dispatch@test")


async def seed_reference_data(conn) -> None:
    await conn.execute(
        sa.insert(business_db_models.Business).values(
            business_id=BUSINESS_ID, name="Sparkle Pools", timezone="UTC"
        )
    )
    await conn.execute(
        sa.insert(business_db_models.ServicePlan).values(
            service_plan_id=PLAN_ID,
            business_id=BUSINESS_ID,
            name="Pool Care",
            description="Weekly chemical balance and skim",
            base_price_cents=6000,
            billing_model="per_visit",
            default_frequency="weekly",
            is_active=True,
        )
    )
    await conn.execute(
        sa.insert(customer_db_models.Customer),
        [
            {
                "customer_id": CUSTOMER_ID,
                "business_id": BUSINESS_ID,
                "name": "Dana Reyes",
                "email": "dana@example.com",
                "address_line1": "12 Birch Lane",
                "city": "Springfield",
                "state": "IL",
                "zip": "62701",
            },
            {
                "customer_id": OTHER_CUSTOMER_ID,
                "business_id": BUSINESS_ID,
                "name": "Sam Ortiz",
                "email": "sam@example.com",
                "address_line1": None,
                "city": None,
                "state": None,
                "zip": None,
            },
        ],
    )


def subscription_payload(**overrides) -> subscription_schemas.SubscriptionCreateRequest:
    data = {
        "business_id": BUSINESS_ID,
        "customer_id": CUSTOMER_ID,
        "name": "Weekly pool care",
        "frequency": "weekly",
        "billing_model": "per_visit",
        "price_per_visit_cents": 6000,
        "start_date": date(2024, 1, 15),
        "timezone": "UTC",
    }
    data.update(overrides)
    return subscription_schemas.SubscriptionCreateRequest(**data)


async def create_subscription(session_maker, *, today: date, **overrides) -> str:
    async with session_maker() as session:
        subscription = await subscription_service.create_subscription(
            session, subscription_payload(**overrides), STAFF, today=today
        )
        await session.commit()
        return subscription.subscription_id


def basic_auth(username: str, password: str) -> dict[str, str]:
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


def portal_token(customer_id: str, secret: str, ttl_minutes: int = 60) -> str:
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": customer_id,
        "aud": PORTAL_AUDIENCE,
        "iat": now,
        "exp": now + timedelta(minutes=ttl_minutes),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    names = [
        "admin_basic_username",
        "admin_basic_password",
        "dispatcher_basic_username",
        "dispatcher_basic_password",
        "viewer_basic_username",
        "viewer_basic_password",
        "testing",
        "metrics_enabled",
        "metrics_token",
        "schedule_window_months",
        "job_lookahead_days",
        "customer_skip_lead_hours",
        "auto_complete_expired_subscriptions",
        "default_timezone",
    ]
    original = {name: getattr(settings, name) for name in names}
    yield
    for name, value in original.items():
        setattr(settings, name, value)


@pytest.fixture(autouse=True)
def enable_test_mode():
    settings.testing = True
    settings.app_env = "dev"
    yield


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())
            await seed_reference_data(conn)

    asyncio.run(truncate_tables())
    yield


@pytest.fixture()
def client(async_session_maker):
    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


@pytest.fixture()
def client_no_raise(async_session_maker):
    """Test client that returns HTTP responses instead of raising server exceptions."""

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
