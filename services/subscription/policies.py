"""
services/subscription/policies.py
Named actions that are gated by a subscription feature.

Routes call `enforce_action` before doing the protected work and
`consume_action` after it succeeds, in the same transaction.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import SubscriptionPolicyError
from shared.models.models import PlanAudience, SessionType, SubscriptionUsageEvent
from services.subscription.enforcement import (
    FeatureAccessResult,
    MeterDelta,
    check_feature_access,
    track_feature_usage,
)


class FeatureKeys:
    FREE_VIDEO_SESSIONS_MONTHLY = "free_video_sessions_monthly"
    PAID_VIDEO_SESSIONS_MONTHLY = "paid_video_sessions_monthly"
    COUNSELING_SESSIONS_MONTHLY = "counseling_sessions_monthly"


@dataclass(frozen=True)
class ActionPolicy:
    action: str
    feature_key: str
    audience: PlanAudience
    failure_message: str
    default_delta: Optional[MeterDelta] = None
    resource_type: str = "session"


def _metered(action: str, feature_key: str, audience: PlanAudience, message: str):
    return ActionPolicy(action, feature_key, audience, message, MeterDelta(count=1))


_POLICIES = [
    _metered(
        "booking.mentee.free_session", FeatureKeys.FREE_VIDEO_SESSIONS_MONTHLY,
        PlanAudience.MENTEE, "You have reached your free session limit",
    ),
    _metered(
        "booking.mentee.paid_session", FeatureKeys.PAID_VIDEO_SESSIONS_MONTHLY,
        PlanAudience.MENTEE, "You have reached your paid session limit",
    ),
    _metered(
        "booking.mentee.counseling_session", FeatureKeys.COUNSELING_SESSIONS_MONTHLY,
        PlanAudience.MENTEE, "You have reached your counseling session limit",
    ),
]

ACTION_POLICIES: dict[str, ActionPolicy] = {p.action: p for p in _POLICIES}


def resolve_mentee_booking_action(session_type: str) -> str:
    kind = SessionType(session_type)
    if kind == SessionType.FREE:
        return "booking.mentee.free_session"
    if kind == SessionType.COUNSELING:
        return "booking.mentee.counseling_session"
    return "booking.mentee.paid_session"


async def enforce_action(
    db: AsyncSession,
    action: str,
    user_id: uuid.UUID,
    audience: Optional[PlanAudience] = None,
) -> FeatureAccessResult:
    """Raise SubscriptionPolicyError unless the user's plan allows `action`."""
    policy = ACTION_POLICIES[action]
    access = await check_feature_access(
        db, user_id, policy.feature_key, audience=audience or policy.audience
    )
    if not access.has_access:
        details = access.to_payload()
        details.update({"reason": access.reason, "upgrade_required": True, "action": action})
        message = policy.failure_message if access.plan_key else access.reason
        raise SubscriptionPolicyError(message, details=details)
    return access


async def consume_action(
    db: AsyncSession,
    action: str,
    user_id: uuid.UUID,
    resource_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    delta: Optional[MeterDelta] = None,
    audience: Optional[PlanAudience] = None,
) -> SubscriptionUsageEvent:
    """Record usage for `action` once the protected work has succeeded."""
    policy = ACTION_POLICIES[action]
    return await track_feature_usage(
        db,
        user_id,
        policy.feature_key,
        delta=delta or policy.default_delta,
        resource_type=policy.resource_type,
        resource_id=resource_id,
        idempotency_key=idempotency_key,
        audience=audience or policy.audience,
    )
