"""
tests/test_notifications.py
In-app notifications (list, read markers, unread count), message templates,
the dispatcher and the live event broker.
"""

import asyncio
import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.notification.dispatcher import NotificationDispatcher, build_notification
from services.notification.events import LocalEventBroker
from shared.models.models import Notification, NotificationType, User
from tests.conftest import auth_headers, make_session


async def _add_notifications(db: AsyncSession, user: User, count: int, now, **fields) -> list[Notification]:
    rows = [
        Notification(
            id=uuid.uuid4(),
            user_id=user.id,
            type=NotificationType.BOOKING_CREATED,
            title=f"Notification {i}",
            message=f"Body {i}",
            created_at=now - timedelta(minutes=i),
            **fields,
        )
        for i in range(count)
    ]
    db.add_all(rows)
    await db.commit()
    return rows


# ── REST Endpoints ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_get_notifications_empty(client: AsyncClient, mentee: User):
    response = await client.get("/notifications", headers=auth_headers(mentee))
    assert response.status_code == 200
    data = response.json()
    assert data["items"] == []
    assert data["total"] == 0


@pytest.mark.asyncio
async def test_get_notifications_returns_own_newest_first(
    client: AsyncClient, db: AsyncSession, mentee: User, outsider: User, now
):
    rows = await _add_notifications(db, mentee, 2, now)
    await _add_notifications(db, outsider, 1, now)

    response = await client.get("/notifications", headers=auth_headers(mentee))
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert [n["id"] for n in data["items"]] == [str(rows[0].id), str(rows[1].id)]


@pytest.mark.asyncio
async def test_unread_only_filter_and_count(
    client: AsyncClient, db: AsyncSession, mentee: User, now
):
    await _add_notifications(db, mentee, 3, now)
    await _add_notifications(db, mentee, 2, now - timedelta(hours=1), is_read=True)

    unread = await client.get("/notifications?unread_only=true", headers=auth_headers(mentee))
    assert unread.json()["total"] == 3

    count = await client.get("/notifications/unread-count", headers=auth_headers(mentee))
    assert count.status_code == 200
    assert count.json()["data"]["unread_count"] == 3


@pytest.mark.asyncio
async def test_mark_single_notification_read(
    client: AsyncClient, db: AsyncSession, mentee: User, now
):
    rows = await _add_notifications(db, mentee, 1, now)

    response = await client.patch(
        f"/notifications/{rows[0].id}/read", headers=auth_headers(mentee)
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["is_read"] is True
    assert data["read_at"] is not None


@pytest.mark.asyncio
async def test_cannot_mark_another_users_notification(
    client: AsyncClient, db: AsyncSession, mentee: User, outsider: User, now
):
    rows = await _add_notifications(db, outsider, 1, now)

    response = await client.patch(
        f"/notifications/{rows[0].id}/read", headers=auth_headers(mentee)
    )
    assert response.status_code == 404
    assert response.json()["error"] == "Notification not found"


@pytest.mark.asyncio
async def test_mark_all_read(client: AsyncClient, db: AsyncSession, mentee: User, now):
    await _add_notifications(db, mentee, 4, now)

    response = await client.patch("/notifications/read-all", headers=auth_headers(mentee))
    assert response.status_code == 200
    assert response.json()["message"] == "All notifications marked as read"

    count = await client.get("/notifications/unread-count", headers=auth_headers(mentee))
    assert count.json()["data"]["unread_count"] == 0


@pytest.mark.asyncio
async def test_notifications_require_auth(client: AsyncClient):
    response = await client.get("/notifications")
    assert response.status_code == 401


# ── Templates ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancellation_template_includes_reason(
    db: AsyncSession, mentee: User, mentor: User, now
):
    session = await make_session(db, mentor, mentee, now + timedelta(days=1))
    pending = build_notification(
        NotificationType.BOOKING_CANCELLED, mentor.id, session, cancelled_by="mentee", reason="Sick"
    )
    assert pending.title == "Session Cancelled"
    assert pending.message == (
        'Your session "Career planning" has been cancelled by the mentee. Reason: Sick'
    )
    assert pending.related_id == str(session.id)
    assert pending.action_url == f"/dashboard/sessions/{session.id}"


@pytest.mark.asyncio
async def test_refund_template_formats_amount(db: AsyncSession, mentee: User, mentor: User, now):
    session = await make_session(db, mentor, mentee, now + timedelta(days=1))
    pending = build_notification(
        NotificationType.REFUND_ISSUED, mentee.id, session, refund_amount=Decimal("50.00")
    )
    assert "A refund of 50.00" in pending.message


@pytest.mark.asyncio
async def test_template_tolerates_missing_values(db: AsyncSession, mentee: User, mentor: User, now):
    session = await make_session(db, mentor, mentee, now + timedelta(days=1))
    pending = build_notification(NotificationType.SESSION_REASSIGNED, mentee.id, session)
    assert pending.message == 'Your session "Career planning" is now with .'


# ── Dispatcher ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_dispatcher_saves_and_publishes(db: AsyncSession, mentee: User, mentor: User, now):
    session = await make_session(db, mentor, mentee, now + timedelta(days=1))
    broker = LocalEventBroker()
    stream = broker.subscribe(str(mentee.id))
    next_event = asyncio.ensure_future(stream.__anext__())
    await asyncio.sleep(0)

    dispatcher = NotificationDispatcher(db, broker=broker, send_email=False)
    saved = await dispatcher.deliver(
        [build_notification(NotificationType.SESSION_STARTED, mentee.id, session)]
    )
    assert saved == 1

    event = await asyncio.wait_for(next_event, timeout=1)
    assert event["type"] == "SESSION_STARTED"
    assert event["related_id"] == str(session.id)
    await stream.aclose()

    rows = (
        await db.execute(select(Notification).where(Notification.user_id == mentee.id))
    ).scalars().all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_dispatcher_queues_email_copies(db: AsyncSession, mentee: User, mentor: User, now):
    session = await make_session(db, mentor, mentee, now + timedelta(days=1))
    dispatcher = NotificationDispatcher(db, broker=LocalEventBroker(), send_email=True)

    with patch("tasks.notification_tasks.send_notification_email.delay") as delay:
        await dispatcher.deliver(
            [build_notification(NotificationType.SESSION_COMPLETED, mentee.id, session)]
        )

    delay.assert_called_once()
    kwargs = delay.call_args.kwargs
    assert kwargs["to_email"] == mentee.email
    assert kwargs["subject"] == "Session Completed"


@pytest.mark.asyncio
async def test_dispatcher_notify_single_user(db: AsyncSession, mentee: User):
    dispatcher = NotificationDispatcher(db, broker=LocalEventBroker(), send_email=False)
    saved = await dispatcher.notify(
        mentee.id,
        NotificationType.REFUND_ISSUED,
        "Refund Issued",
        "A refund of 20.00 has been issued.",
        related_type="session",
    )
    assert saved == 1

    row = (
        await db.execute(select(Notification).where(Notification.user_id == mentee.id))
    ).scalar_one()
    assert row.title == "Refund Issued"
    assert row.related_type == "session"
    assert row.related_id is None
    assert row.is_read is False


@pytest.mark.asyncio
async def test_dispatcher_with_nothing_to_send(db: AsyncSession):
    assert await NotificationDispatcher(db, broker=LocalEventBroker(), send_email=False).deliver([]) == 0


# ── Live Broker ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_local_broker_fan_out_and_cleanup():
    broker = LocalEventBroker()
    assert await broker.publish("user-1", {"n": 0}) == 0

    first = broker.subscribe("user-1")
    second = broker.subscribe("user-1")
    pending = [asyncio.ensure_future(first.__anext__()), asyncio.ensure_future(second.__anext__())]
    await asyncio.sleep(0)
    assert broker.subscriber_count("user-1") == 2

    assert await broker.publish("user-1", {"n": 1}) == 2
    assert await asyncio.wait_for(asyncio.gather(*pending), timeout=1) == [{"n": 1}, {"n": 1}]

    await first.aclose()
    await second.aclose()
    assert broker.subscriber_count("user-1") == 0
