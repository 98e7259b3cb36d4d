"""
tests/conftest.py
Shared fixtures: a fresh SQLite database per test, an httpx client bound to
the app with the database, Redis and clock dependencies overridden, and
factories for users, mentors, sessions and subscriptions.
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["EMAIL_NOTIFICATIONS_ENABLED"] = "false"

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config.database import Base, get_db
from config.redis_client import get_redis
from main import app
from shared.middleware.auth import Actor
from shared.models.models import (
    FeatureValueType,
    LimitInterval,
    MentoringSession,
    MentorProfile,
    PlanAudience,
    SessionStatus,
    SessionType,
    Subscription,
    SubscriptionFeature,
    SubscriptionPlan,
    SubscriptionPlanFeature,
    SubscriptionStatus,
    User,
    UserRole,
    VerificationStatus,
)
from shared.utils.clock import get_clock, utc_now
from shared.utils.security import create_access_token


# ── Database ──────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
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
def now() -> datetime:
    return utc_now().replace(microsecond=0)


@pytest.fixture
def redis_mock():
    redis = AsyncMock()
    redis.exists.return_value = 0
    return redis


@pytest_asyncio.fixture
async def client(session_factory, redis_mock, now):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: redis_mock
    app.dependency_overrides[get_clock] = lambda: (lambda: now)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ── Auth ──────────────────────────────────────────────────────

def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.roles, user.email)
    return {"Authorization": f"Bearer {token}"}


def actor_for(user: User) -> Actor:
    return Actor.from_user(user)


# ── Factories ─────────────────────────────────────────────────

async def make_user(db: AsyncSession, name: str, *roles: UserRole) -> User:
    user = User(
        id=uuid.uuid4(),
        email=f"{name.lower().replace(' ', '.')}.{uuid.uuid4().hex[:6]}@example.com",
        name=name,
        roles=[r.value for r in roles],
        is_active=True,
    )
    db.add(user)
    await db.commit()
    return user


async def make_mentor(
    db: AsyncSession,
    name: str,
    hourly_rate: Decimal = Decimal("100.00"),
    verification_status: VerificationStatus = VerificationStatus.VERIFIED,
    is_available: bool = True,
) -> User:
    user = await make_user(db, name, UserRole.MENTOR)
    db.add(MentorProfile(
        user_id=user.id,
        headline=f"{name} mentoring",
        hourly_rate=hourly_rate,
        verification_status=verification_status,
        is_available=is_available,
    ))
    await db.commit()
    return user


async def make_session(
    db: AsyncSession,
    mentor: User,
    mentee: User,
    scheduled_at: datetime,
    rate: Decimal = Decimal("100.00"),
    status: SessionStatus = SessionStatus.SCHEDULED,
    duration_minutes: int = 60,
    **fields,
) -> MentoringSession:
    session = MentoringSession(
        id=uuid.uuid4(),
        mentor_id=mentor.id,
        mentee_id=mentee.id,
        title="Career planning",
        scheduled_at=scheduled_at,
        duration_minutes=duration_minutes,
        session_type=SessionType.PAID,
        status=status,
        rate=rate,
        cancelled_mentor_ids=[],
        **fields,
    )
    db.add(session)
    await db.commit()
    return session


async def make_feature(
    db: AsyncSession,
    feature_key: str,
    value_type: FeatureValueType = FeatureValueType.COUNT,
    is_metered: bool = True,
) -> SubscriptionFeature:
    feature = SubscriptionFeature(
        feature_key=feature_key,
        name=feature_key.replace("_", " ").title(),
        value_type=value_type,
        is_metered=is_metered,
    )
    db.add(feature)
    await db.commit()
    return feature


async def make_subscription(
    db: AsyncSession,
    user: User,
    audience: PlanAudience,
    features: list[tuple[SubscriptionFeature, Optional[int]]],
    now: datetime,
    interval: Optional[LimitInterval] = LimitInterval.MONTH,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
) -> Subscription:
    """Plan with one row per (feature, limit_count) and a live subscription to it."""
    plan = SubscriptionPlan(
        id=uuid.uuid4(),
        plan_key=f"{audience.value}-{uuid.uuid4().hex[:8]}",
        name=f"{audience.value.title()} plan",
        audience=audience,
        plan_features=[
            SubscriptionPlanFeature(
                feature=feature,
                is_included=True,
                limit_count=limit,
                limit_interval=interval,
                limit_interval_count=1,
            )
            for feature, limit in features
        ],
    )
    subscription = Subscription(
        user_id=user.id,
        plan=plan,
        status=status,
        current_period_start=now - timedelta(days=1),
        current_period_end=now + timedelta(days=29),
    )
    db.add_all([plan, subscription])
    await db.commit()
    return subscription


# ── Fixtures ──────────────────────────────────────────────────

@pytest_asyncio.fixture
async def mentee(db: AsyncSession) -> User:
    return await make_user(db, "Maya Mentee", UserRole.MENTEE)


@pytest_asyncio.fixture
async def mentor(db: AsyncSession) -> User:
    return await make_mentor(db, "Omar Mentor")


@pytest_asyncio.fixture
async def other_mentor(db: AsyncSession) -> User:
    return await make_mentor(db, "Priya Mentor")


@pytest_asyncio.fixture
async def admin_user(db: AsyncSession) -> User:
    return await make_user(db, "Ada Admin", UserRole.ADMIN)


@pytest_asyncio.fixture
async def outsider(db: AsyncSession) -> User:
    return await make_user(db, "Olu Outsider", UserRole.MENTEE)
