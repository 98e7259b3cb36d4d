"""
services/notification/router.py
In-app notifications: listing, read markers and a live
Server-Sent Events stream fed by the event broker.
"""

import json
from typing import AsyncIterator
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.notification.events import EventBroker, get_event_broker
from shared.exceptions import NotFoundException
from shared.middleware.auth import Actor, get_current_actor
from shared.models.models import Notification
from shared.schemas.schemas import ApiResponse, MessageResponse, NotificationResponse, PaginatedResponse
from shared.utils.clock import Clock, get_clock

router = APIRouter(prefix="/notifications", tags=["Notifications"])


# ── REST Endpoints ────────────────────────────────────────────

@router.get("", response_model=PaginatedResponse)
async def get_my_notifications(
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Get the authenticated user's in-app notifications, newest first."""
    query = select(Notification).where(Notification.user_id == actor.user_id)
    if unread_only:
        query = query.where(Notification.is_read.is_(False))

    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    result = await db.execute(
        query.order_by(Notification.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return PaginatedResponse(
        items=[NotificationResponse.model_validate(n) for n in result.scalars()],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=-(-total // page_size),
    )


@router.get("/unread-count", response_model=ApiResponse[dict])
async def unread_count(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    count = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == actor.user_id,
            Notification.is_read.is_(False),
        )
    )
    return ApiResponse(data={"unread_count": count or 0})


@router.patch("/read-all", response_model=MessageResponse)
async def mark_all_read(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    await db.execute(
        update(Notification)
        .where(Notification.user_id == actor.user_id, Notification.is_read.is_(False))
        .values(is_read=True, read_at=clock())
    )
    await db.commit()
    return MessageResponse(message="All notifications marked as read")


@router.patch("/{notification_id}/read", response_model=ApiResponse[NotificationResponse])
async def mark_read(
    notification_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await db.execute(
        select(Notification).where(
            Notification.id == notification_id, Notification.user_id == actor.user_id
        )
    )
    notification = result.scalar_one_or_none()
    if notification is None:
        raise NotFoundException("Notification not found")
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = clock()
        await db.commit()
    return ApiResponse(data=NotificationResponse.model_validate(notification), message="Marked as read")


# ── Live Stream ───────────────────────────────────────────────

async def _sse(events: AsyncIterator[dict]) -> AsyncIterator[str]:
    yield ": connected\n\n"
    async for event in events:
        yield f"event: notification\ndata: {json.dumps(event, default=str)}\n\n"


@router.get("/stream")
async def stream_notifications(
    actor: Actor = Depends(get_current_actor),
    broker: EventBroker = Depends(get_event_broker),
):
    """
    Server-Sent Events. One `notification` event per in-app notification
    saved for the caller while the connection is open.
    """
    return StreamingResponse(
        _sse(broker.subscribe(str(actor.user_id))),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
