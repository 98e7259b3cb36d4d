"""
tests/test_subscriptions.py
Feature access checks, usage metering and period windows.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.subscription.enforcement import (
    MeterDelta,
    SubscriptionContextConflict,
    check_feature_access,
    track_feature_usage,
    usage_period,
)
from services.subscription.policies import FeatureKeys, consume_action, enforce_action
from shared.exceptions import SubscriptionPolicyError
from shared.models.models import (
    FeatureValueType,
    LimitInterval,
    PlanAudience,
    Subscription,
    SubscriptionPlanFeature,
    SubscriptionStatus,
    SubscriptionUsageEvent,
    User,
    UserRole,
)
from tests.conftest import auth_headers, make_feature, make_subscription, make_user

PAID = FeatureKeys.PAID_VIDEO_SESSIONS_MONTHLY
MENTOR_SESSIONS = "mentor_sessions_monthly"


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


# ── Access Checks ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_no_subscription(db: AsyncSession, mentee: User):
    access = await check_feature_access(db, mentee.id, PAID)
    assert access.has_access is False
    assert access.reason == "No active subscription"
    assert access.plan_key is None


@pytest.mark.asyncio
async def test_inactive_subscription_is_ignored(db: AsyncSession, mentee: User, now):
    feature = await make_feature(db, PAID)
    await make_subscription(
        db, mentee, PlanAudience.MENTEE, [(feature, 5)], now, status=SubscriptionStatus.CANCELED
    )
    access = await check_feature_access(db, mentee.id, PAID)
    assert access.reason == "No active subscription"


@pytest.mark.asyncio
async def test_feature_not_in_plan(db: AsyncSession, mentee: User, now):
    feature = await make_feature(db, FeatureKeys.FREE_VIDEO_SESSIONS_MONTHLY)
    sub = await make_subscription(db, mentee, PlanAudience.MENTEE, [(feature, 1)], now)

    access = await check_feature_access(db, mentee.id, PAID)
    assert access.has_access is False
    assert access.reason == f"Feature '{PAID}' not included in your plan"
    assert access.plan_key == sub.plan.plan_key


@pytest.mark.asyncio
async def test_usage_counts_against_limit(db: AsyncSession, mentee: User, now):
    feature = await make_feature(db, PAID)
    await make_subscription(db, mentee, PlanAudience.MENTEE, [(feature, 3)], now)

    await track_feature_usage(db, mentee.id, PAID, idempotency_key="booking:a")
    await track_feature_usage(db, mentee.id, PAID, idempotency_key="booking:b")
    await db.commit()

    access = await check_feature_access(db, mentee.id, PAID)
    assert access.has_access is True
    assert access.usage == Decimal(2)
    assert access.remaining == Decimal(1)

    await track_feature_usage(db, mentee.id, PAID, idempotency_key="booking:c")
    await db.commit()
    blocked = await check_feature_access(db, mentee.id, PAID)
    assert blocked.has_access is False
    assert blocked.reason == "Usage limit reached"
    assert blocked.remaining == Decimal(0)


@pytest.mark.asyncio
async def test_unlimited_feature(db: AsyncSession, mentee: User, now):
    feature = await make_feature(db, PAID)
    await make_subscription(db, mentee, PlanAudience.MENTEE, [(feature, None)], now)

    access = await check_feature_access(db, mentee.id, PAID)
    assert access.has_access is True
    assert access.limit is None
    assert access.usage == Decimal(0)


@pytest.mark.asyncio
async def test_minutes_limit(db: AsyncSession, mentor: User, now):
    feature = await make_feature(db, "mentor_video_minutes", value_type=FeatureValueType.MINUTES)
    sub = await make_subscription(db, mentor, PlanAudience.MENTOR, [(feature, None)], now)
    sub.plan.plan_features[0].limit_minutes = 90
    await db.commit()

    await track_feature_usage(db, mentor.id, "mentor_video_minutes", delta=MeterDelta(minutes=90))
    await db.commit()

    access = await check_feature_access(db, mentor.id, "mentor_video_minutes")
    assert access.has_access is False
    assert access.reason == "Time limit reached"


@pytest.mark.asyncio
async def test_flag_feature_grants_access_without_metering(db: AsyncSession, mentor: User, now):
    feature = await make_feature(
        db, "content_posting_access", value_type=FeatureValueType.BOOLEAN, is_metered=False
    )
    await make_subscription(db, mentor, PlanAudience.MENTOR, [(feature, 0)], now)

    access = await check_feature_access(db, mentor.id, "content_posting_access")
    assert access.has_access is True
    assert access.limit is None


# ── Metering ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_repeated_idempotency_key_counts_once(db: AsyncSession, mentee: User, now):
    feature = await make_feature(db, PAID)
    await make_subscription(db, mentee, PlanAudience.MENTEE, [(feature, 5)], now)

    first = await track_feature_usage(db, mentee.id, PAID, idempotency_key="booking:42")
    await db.commit()
    second = await track_feature_usage(db, mentee.id, PAID, idempotency_key="booking:42")
    await db.commit()

    assert first.id == second.id
    events = (await db.execute(select(SubscriptionUsageEvent))).scalars().all()
    assert len(events) == 1
    access = await check_feature_access(db, mentee.id, PAID)
    assert access.usage == Decimal(1)


@pytest.mark.asyncio
async def test_tracking_without_subscription_raises(db: AsyncSession, mentee: User):
    with pytest.raises(SubscriptionPolicyError):
        await track_feature_usage(db, mentee.id, PAID)


@pytest.mark.asyncio
async def test_consume_action_records_session_usage(db: AsyncSession, mentee: User, now):
    feature = await make_feature(db, PAID)
    await make_subscription(db, mentee, PlanAudience.MENTEE, [(feature, 2)], now)

    event = await consume_action(
        db, "booking.mentee.paid_session", mentee.id, resource_id="s-1", idempotency_key="booking:s-1"
    )
    await db.commit()

    assert event.resource_type == "session"
    assert event.resource_id == "s-1"
    access = await enforce_action(db, "booking.mentee.paid_session", mentee.id)
    assert access.remaining == Decimal(1)


@pytest.mark.asyncio
async def test_enforce_action_denial_payload(db: AsyncSession, mentee: User, now):
    feature = await make_feature(db, PAID)
    await make_subscription(db, mentee, PlanAudience.MENTEE, [(feature, 0)], now)

    with pytest.raises(SubscriptionPolicyError) as exc:
        await enforce_action(db, "booking.mentee.paid_session", mentee.id)
    assert exc.value.message == "You have reached your paid session limit"
    assert exc.value.code == "SUBSCRIPTION_LIMIT"
    assert exc.value.details["upgrade_required"] is True
    assert exc.value.details["action"] == "booking.mentee.paid_session"


# ── Audience Context ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_dual_audience_requires_context(db: AsyncSession, now):
    user = await make_user(db, "Dana Dual", UserRole.MENTOR, UserRole.MENTEE)
    mentee_feature = await make_feature(db, PAID)
    mentor_feature = await make_feature(db, MENTOR_SESSIONS)
    await make_subscription(db, user, PlanAudience.MENTEE, [(mentee_feature, 2)], now)
    await make_subscription(db, user, PlanAudience.MENTOR, [(mentor_feature, 10)], now)

    with pytest.raises(SubscriptionContextConflict):
        await check_feature_access(db, user.id, PAID)

    access = await check_feature_access(db, user.id, PAID, audience=PlanAudience.MENTEE)
    assert access.has_access is True
    assert access.limit == Decimal(2)


@pytest.mark.asyncio
async def test_dual_audience_check_endpoint_conflicts(client: AsyncClient, db: AsyncSession, now):
    user = await make_user(db, "Dana Dual", UserRole.MENTOR, UserRole.MENTEE)
    mentee_feature = await make_feature(db, PAID)
    mentor_feature = await make_feature(db, MENTOR_SESSIONS)
    await make_subscription(db, user, PlanAudience.MENTEE, [(mentee_feature, 2)], now)
    await make_subscription(db, user, PlanAudience.MENTOR, [(mentor_feature, 10)], now)

    response = await client.get(f"/subscriptions/features/{PAID}/check", headers=auth_headers(user))
    assert response.status_code == 409
    assert response.json()["details"]["audiences"] == ["mentee", "mentor"]

    scoped = await client.get(
        f"/subscriptions/features/{PAID}/check?audience=mentee", headers=auth_headers(user)
    )
    assert scoped.status_code == 200
    assert scoped.json()["data"]["has_access"] is True


# ── Endpoints ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_my_subscription_and_usage(client: AsyncClient, db: AsyncSession, mentee: User, now):
    feature = await make_feature(db, PAID)
    await make_subscription(db, mentee, PlanAudience.MENTEE, [(feature, 4)], now)
    await track_feature_usage(db, mentee.id, PAID, idempotency_key="booking:x")
    await db.commit()

    me = await client.get("/subscriptions/me", headers=auth_headers(mentee))
    assert me.status_code == 200
    plan = me.json()["data"]["plan"]
    assert plan["audience"] == "mentee"
    assert plan["features"][0]["feature_key"] == PAID
    assert plan["features"][0]["limit_count"] == 4

    usage = await client.get("/subscriptions/me/usage", headers=auth_headers(mentee))
    assert usage.status_code == 200
    assert usage.json()["data"][0]["usage_count"] == 1


@pytest.mark.asyncio
async def test_my_subscription_when_none(client: AsyncClient, mentee: User):
    response = await client.get("/subscriptions/me", headers=auth_headers(mentee))
    assert response.status_code == 200
    assert response.json()["data"] is None
    assert response.json()["message"] == "No active subscription"


@pytest.mark.asyncio
async def test_list_plans_is_public(client: AsyncClient, db: AsyncSession, mentee: User, mentor: User, now):
    feature = await make_feature(db, PAID)
    await make_subscription(db, mentee, PlanAudience.MENTEE, [(feature, 4)], now)
    await make_subscription(db, mentor, PlanAudience.MENTOR, [], now)

    response = await client.get("/subscriptions/plans?audience=mentor")
    assert response.status_code == 200
    plans = response.json()["data"]
    assert len(plans) == 1
    assert plans[0]["audience"] == "mentor"


# ── Usage Periods ──────────────────────────────────────────────────────────────

def _subscription() -> Subscription:
    return Subscription(
        current_period_start=_utc(2026, 1, 15, 12),
        current_period_end=_utc(2026, 2, 15, 12),
    )


def test_period_without_interval_is_billing_period():
    start, end = usage_period(_subscription(), SubscriptionPlanFeature(limit_interval=None), _utc(2026, 2, 1))
    assert (start, end) == (_utc(2026, 1, 15, 12), _utc(2026, 2, 15, 12))


@pytest.mark.parametrize(
    "interval, now, expected",
    [
        (LimitInterval.DAY, _utc(2026, 3, 4, 18), (_utc(2026, 3, 4), _utc(2026, 3, 5))),
        (LimitInterval.WEEK, _utc(2026, 3, 4, 18), (_utc(2026, 3, 2), _utc(2026, 3, 9))),
        (LimitInterval.MONTH, _utc(2026, 2, 20), (_utc(2026, 2, 1), _utc(2026, 3, 1))),
        (LimitInterval.YEAR, _utc(2026, 7, 1), (_utc(2026, 1, 1), _utc(2027, 1, 1))),
    ],
)
def test_single_interval_uses_calendar_bucket(interval, now, expected):
    feature = SubscriptionPlanFeature(limit_interval=interval, limit_interval_count=1)
    assert usage_period(_subscription(), feature, now) == expected


def test_multi_month_interval_is_anchored_to_billing_start():
    feature = SubscriptionPlanFeature(limit_interval=LimitInterval.MONTH, limit_interval_count=2)
    start, end = usage_period(_subscription(), feature, _utc(2026, 4, 1))
    assert (start, end) == (_utc(2026, 3, 15, 12), _utc(2026, 5, 15, 12))


def test_multi_day_interval_is_anchored_to_billing_start():
    feature = SubscriptionPlanFeature(limit_interval=LimitInterval.DAY, limit_interval_count=3)
    start, end = usage_period(_subscription(), feature, _utc(2026, 1, 20))
    assert (start, end) == (_utc(2026, 1, 18, 12), _utc(2026, 1, 21, 12))
