"""
services/subscription/enforcement.py
Plan-based feature access checks and usage metering.

A user may hold one live (active or trialing) subscription per audience.
When a user holds both a mentor and a mentee subscription the caller must say
which one applies; guessing would meter the wrong plan.
"""

import calendar
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import ConflictException, SubscriptionPolicyError
from shared.models.models import (
    LIVE_SUBSCRIPTION_STATUSES,
    FeatureValueType,
    LimitInterval,
    PlanAudience,
    Subscription,
    SubscriptionFeature,
    SubscriptionPlan,
    SubscriptionPlanFeature,
    SubscriptionUsageEvent,
    SubscriptionUsageTracking,
)
from shared.utils.clock import utc_now

logger = logging.getLogger(__name__)


class SubscriptionContextConflict(ConflictException):
    """User holds live subscriptions for more than one audience and none was given."""


@dataclass(frozen=True)
class FeatureAccessResult:
    feature_key: str
    has_access: bool
    reason: Optional[str] = None
    limit: Optional[Decimal] = None
    usage: Optional[Decimal] = None
    remaining: Optional[Decimal] = None
    plan_key: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "feature_key": self.feature_key,
            "limit": str(self.limit) if self.limit is not None else None,
            "usage": str(self.usage) if self.usage is not None else None,
            "remaining": str(self.remaining) if self.remaining is not None else None,
            "plan_key": self.plan_key,
        }


@dataclass(frozen=True)
class MeterDelta:
    count: int = 0
    minutes: int = 0
    amount: Decimal = Decimal("0")


# ── Subscription lookup ───────────────────────────────────────

async def get_live_subscription(
    db: AsyncSession,
    user_id: uuid.UUID,
    audience: Optional[PlanAudience] = None,
) -> Optional[Subscription]:
    """Newest active/trialing subscription, per audience. Raises on ambiguous context."""
    query = (
        select(Subscription)
        .join(SubscriptionPlan, Subscription.plan_id == SubscriptionPlan.id)
        .where(
            Subscription.user_id == user_id,
            Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
        )
        .order_by(Subscription.created_at.desc())
    )
    if audience is not None:
        query = query.where(SubscriptionPlan.audience == PlanAudience(audience))

    subscriptions = list((await db.execute(query)).unique().scalars())
    if not subscriptions:
        return None

    audiences = {s.plan.audience for s in subscriptions}
    if audience is None and len(audiences) > 1:
        raise SubscriptionContextConflict(
            "Multiple active subscriptions found; specify the audience (mentor or mentee)",
            details={"audiences": sorted(a.value for a in audiences)},
        )
    return subscriptions[0]


def _plan_feature(subscription: Subscription, feature_key: str) -> Optional[SubscriptionPlanFeature]:
    for plan_feature in subscription.plan.plan_features:
        if plan_feature.feature.feature_key == feature_key:
            return plan_feature
    return None


# ── Usage periods ─────────────────────────────────────────────

def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _calendar_bucket(interval: LimitInterval, now: datetime) -> tuple[datetime, datetime]:
    midnight = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    if interval == LimitInterval.DAY:
        return midnight, midnight + timedelta(days=1)
    if interval == LimitInterval.WEEK:
        start = midnight - timedelta(days=midnight.weekday())
        return start, start + timedelta(days=7)
    if interval == LimitInterval.MONTH:
        start = midnight.replace(day=1)
        return start, _add_months(start, 1)
    start = midnight.replace(month=1, day=1)
    return start, start.replace(year=start.year + 1)


def _anchored_period(
    anchor: datetime, interval: LimitInterval, count: int, now: datetime
) -> tuple[datetime, datetime]:
    if interval in (LimitInterval.DAY, LimitInterval.WEEK):
        step = timedelta(days=count * (7 if interval == LimitInterval.WEEK else 1))
        steps = max(0, int((now - anchor) / step))
        start = anchor + step * steps
        return start, start + step

    months = count * (12 if interval == LimitInterval.YEAR else 1)
    elapsed = (now.year - anchor.year) * 12 + (now.month - anchor.month)
    steps = max(0, elapsed // months)
    start = _add_months(anchor, steps * months)
    if start > now and steps > 0:
        steps -= 1
        start = _add_months(anchor, steps * months)
    return start, _add_months(anchor, (steps + 1) * months)


def usage_period(
    subscription: Subscription,
    plan_feature: SubscriptionPlanFeature,
    now: datetime,
) -> tuple[datetime, datetime]:
    """
    Window that usage is counted in:
      - no interval: the subscription's current billing period
      - interval with count 1: the calendar day/week/month/year containing `now`
      - interval with count > 1: consecutive windows from the billing period start
    """
    interval = plan_feature.limit_interval
    if interval is None:
        return subscription.current_period_start, subscription.current_period_end
    count = plan_feature.limit_interval_count or 1
    if count == 1:
        return _calendar_bucket(interval, now)
    return _anchored_period(subscription.current_period_start, interval, count, now)


# ── Access check ──────────────────────────────────────────────

def _usage_and_limit(
    plan_feature: SubscriptionPlanFeature, tracking: Optional[SubscriptionUsageTracking]
) -> tuple[Decimal, Optional[Decimal], str]:
    value_type = plan_feature.feature.value_type
    if value_type == FeatureValueType.MINUTES:
        usage = Decimal(tracking.usage_minutes if tracking else 0)
        limit = plan_feature.limit_minutes
        reason = "Time limit reached"
    elif value_type == FeatureValueType.AMOUNT:
        usage = Decimal(tracking.usage_amount if tracking else 0)
        limit = plan_feature.limit_amount
        reason = "Amount limit reached"
    else:
        usage = Decimal(tracking.usage_count if tracking else 0)
        limit = plan_feature.limit_count
        reason = "Usage limit reached"
    return usage, (Decimal(limit) if limit is not None else None), reason


async def _tracking_row(
    db: AsyncSession,
    subscription: Subscription,
    plan_feature: SubscriptionPlanFeature,
    period_start: datetime,
) -> Optional[SubscriptionUsageTracking]:
    result = await db.execute(
        select(SubscriptionUsageTracking).where(
            SubscriptionUsageTracking.subscription_id == subscription.id,
            SubscriptionUsageTracking.feature_id == plan_feature.feature_id,
            SubscriptionUsageTracking.period_start == period_start,
        )
    )
    return result.scalar_one_or_none()


async def check_feature_access(
    db: AsyncSession,
    user_id: uuid.UUID,
    feature_key: str,
    audience: Optional[PlanAudience] = None,
    now: Optional[datetime] = None,
) -> FeatureAccessResult:
    now = now or utc_now()
    subscription = await get_live_subscription(db, user_id, audience)
    if subscription is None:
        return FeatureAccessResult(feature_key, False, reason="No active subscription")

    plan_key = subscription.plan.plan_key
    plan_feature = _plan_feature(subscription, feature_key)
    if plan_feature is None or not plan_feature.is_included:
        return FeatureAccessResult(
            feature_key,
            False,
            reason=f"Feature '{feature_key}' not included in your plan",
            plan_key=plan_key,
        )

    feature = plan_feature.feature
    if not feature.is_metered:
        limit = None
        if feature.value_type == FeatureValueType.COUNT and plan_feature.limit_count is not None:
            limit = Decimal(plan_feature.limit_count)
        elif feature.value_type == FeatureValueType.MINUTES and plan_feature.limit_minutes is not None:
            limit = Decimal(plan_feature.limit_minutes)
        return FeatureAccessResult(feature_key, True, limit=limit, plan_key=plan_key)

    period_start, _ = usage_period(subscription, plan_feature, now)
    tracking = await _tracking_row(db, subscription, plan_feature, period_start)
    usage, limit, limit_reason = _usage_and_limit(plan_feature, tracking)
    if limit is None:
        return FeatureAccessResult(feature_key, True, usage=usage, plan_key=plan_key)

    remaining = limit - usage
    if remaining <= 0:
        return FeatureAccessResult(
            feature_key,
            False,
            reason=limit_reason,
            limit=limit,
            usage=usage,
            remaining=max(remaining, Decimal(0)),
            plan_key=plan_key,
        )
    return FeatureAccessResult(
        feature_key, True, limit=limit, usage=usage, remaining=remaining, plan_key=plan_key
    )


# ── Usage tracking ────────────────────────────────────────────

async def track_feature_usage(
    db: AsyncSession,
    user_id: uuid.UUID,
    feature_key: str,
    delta: MeterDelta = MeterDelta(count=1),
    resource_type: str = "session",
    resource_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    audience: Optional[PlanAudience] = None,
    now: Optional[datetime] = None,
) -> SubscriptionUsageEvent:
    """
    Add `delta` to the current period's counters and append a usage event.
    A repeated `idempotency_key` returns the original event without counting again.
    """
    now = now or utc_now()
    subscription = await get_live_subscription(db, user_id, audience)
    if subscription is None:
        raise SubscriptionPolicyError(
            "No active subscription", details={"feature_key": feature_key}
        )
    plan_feature = _plan_feature(subscription, feature_key)
    if plan_feature is None or not plan_feature.is_included:
        raise SubscriptionPolicyError(
            f"Feature '{feature_key}' not included in your plan",
            details={"feature_key": feature_key},
        )

    if idempotency_key:
        existing = await db.execute(
            select(SubscriptionUsageEvent).where(
                SubscriptionUsageEvent.subscription_id == subscription.id,
                SubscriptionUsageEvent.idempotency_key == idempotency_key,
            )
        )
        event = existing.scalar_one_or_none()
        if event is not None:
            logger.info(f"Usage event {idempotency_key} already recorded; skipping")
            return event

    period_start, period_end = usage_period(subscription, plan_feature, now)
    tracking = await _tracking_row(db, subscription, plan_feature, period_start)
    if tracking is None:
        tracking = SubscriptionUsageTracking(
            subscription_id=subscription.id,
            feature_id=plan_feature.feature_id,
            usage_count=0,
            usage_minutes=0,
            usage_amount=Decimal("0.00"),
            period_start=period_start,
            period_end=period_end,
        )
        db.add(tracking)
    tracking.usage_count += delta.count
    tracking.usage_minutes += delta.minutes
    tracking.usage_amount = Decimal(tracking.usage_amount) + Decimal(delta.amount)

    event = SubscriptionUsageEvent(
        subscription_id=subscription.id,
        feature_id=plan_feature.feature_id,
        user_id=user_id,
        count_delta=delta.count,
        minutes_delta=delta.minutes,
        amount_delta=Decimal(delta.amount),
        resource_type=resource_type,
        resource_id=resource_id,
        idempotency_key=idempotency_key,
        created_at=now,
    )
    db.add(event)
    await db.flush()
    return event


async def usage_summary(
    db: AsyncSession, subscription: Subscription
) -> list[tuple[SubscriptionUsageTracking, str]]:
    """Tracking rows for a subscription, newest period first, with their feature keys."""
    result = await db.execute(
        select(SubscriptionUsageTracking, SubscriptionFeature.feature_key)
        .join(SubscriptionFeature, SubscriptionUsageTracking.feature_id == SubscriptionFeature.id)
        .where(SubscriptionUsageTracking.subscription_id == subscription.id)
        .order_by(SubscriptionUsageTracking.period_start.desc())
    )
    return [(row, key) for row, key in result.all()]
