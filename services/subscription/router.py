"""
services/subscription/router.py
Plan catalogue, the caller's subscription and feature access checks.
"""

from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.subscription.enforcement import (
    check_feature_access,
    get_live_subscription,
    usage_summary,
)
from shared.middleware.auth import Actor, get_current_actor
from shared.models.models import PlanAudience, PlanStatus, SubscriptionPlan
from shared.schemas.schemas import (
    ApiResponse,
    FeatureAccessResponse,
    PlanFeatureResponse,
    PlanResponse,
    SubscriptionResponse,
    UsageSummaryItem,
)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])

AudienceParam = Optional[Literal["mentor", "mentee"]]


def _plan_response(plan: SubscriptionPlan) -> PlanResponse:
    features = [
        PlanFeatureResponse(
            feature_key=pf.feature.feature_key,
            name=pf.feature.name,
            value_type=pf.feature.value_type,
            unit=pf.feature.unit,
            is_metered=pf.feature.is_metered,
            is_included=pf.is_included,
            limit_count=pf.limit_count,
            limit_minutes=pf.limit_minutes,
            limit_amount=pf.limit_amount,
            limit_interval=pf.limit_interval,
            limit_interval_count=pf.limit_interval_count,
        )
        for pf in plan.plan_features
    ]
    return PlanResponse(
        id=plan.id,
        plan_key=plan.plan_key,
        name=plan.name,
        audience=plan.audience,
        description=plan.description,
        features=features,
    )


@router.get("/plans", response_model=ApiResponse[List[PlanResponse]])
async def list_plans(
    audience: AudienceParam = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Active plans, optionally for one audience. Public."""
    query = select(SubscriptionPlan).where(SubscriptionPlan.status == PlanStatus.ACTIVE)
    if audience:
        query = query.where(SubscriptionPlan.audience == PlanAudience(audience))
    result = await db.execute(query.order_by(SubscriptionPlan.sort_order.asc()))
    return ApiResponse(data=[_plan_response(p) for p in result.scalars()])


@router.get("/me", response_model=ApiResponse[Optional[SubscriptionResponse]])
async def get_my_subscription(
    audience: AudienceParam = Query(None),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    subscription = await get_live_subscription(
        db, actor.user_id, PlanAudience(audience) if audience else None
    )
    if subscription is None:
        return ApiResponse(data=None, message="No active subscription")
    return ApiResponse(
        data=SubscriptionResponse(
            id=subscription.id,
            status=subscription.status,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            plan=_plan_response(subscription.plan),
        )
    )


@router.get("/me/usage", response_model=ApiResponse[List[UsageSummaryItem]])
async def get_my_usage(
    audience: AudienceParam = Query(None),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    subscription = await get_live_subscription(
        db, actor.user_id, PlanAudience(audience) if audience else None
    )
    if subscription is None:
        return ApiResponse(data=[], message="No active subscription")
    rows = await usage_summary(db, subscription)
    return ApiResponse(
        data=[
            UsageSummaryItem(
                feature_key=key,
                usage_count=row.usage_count,
                usage_minutes=row.usage_minutes,
                usage_amount=row.usage_amount,
                period_start=row.period_start,
                period_end=row.period_end,
            )
            for row, key in rows
        ]
    )


@router.get("/features/{feature_key}/check", response_model=ApiResponse[FeatureAccessResponse])
async def check_feature(
    feature_key: str,
    audience: AudienceParam = Query(None),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """
    Whether the caller's plan allows a feature right now.
    Returns 409 when the caller holds both a mentor and a mentee
    subscription and no `audience` is given.
    """
    access = await check_feature_access(
        db, actor.user_id, feature_key, audience=PlanAudience(audience) if audience else None
    )
    return ApiResponse(
        data=FeatureAccessResponse(
            feature_key=access.feature_key,
            has_access=access.has_access,
            reason=access.reason,
            limit=access.limit,
            usage=access.usage,
            remaining=access.remaining,
            plan_key=access.plan_key,
        )
    )
