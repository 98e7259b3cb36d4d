"""
services/notification/dispatcher.py
Best-effort notification delivery after a session transition commits.

1. Save in-app notifications (own commit)
2. Publish a live event per recipient
3. Queue an email copy via Celery

A failure at any step is logged and never propagates to the caller: the
transition that triggered the notification is already durable.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.notification.events import EventBroker, get_event_broker
from shared.models.models import MentoringSession, Notification, NotificationType, User

logger = logging.getLogger(__name__)


# ── Templates ─────────────────────────────────────────────────

TEMPLATES: dict[NotificationType, tuple[str, str]] = {
    NotificationType.BOOKING_CREATED: (
        "New Session Booked",
        'A new session "{session_title}" has been booked for {scheduled_at}.',
    ),
    NotificationType.BOOKING_CANCELLED: (
        "Session Cancelled",
        'Your session "{session_title}" has been cancelled by the {cancelled_by}.{reason_suffix}',
    ),
    NotificationType.SESSION_STARTED: (
        "Session Started",
        'Your session "{session_title}" has started.',
    ),
    NotificationType.SESSION_COMPLETED: (
        "Session Completed",
        'Your session "{session_title}" has been marked as completed.',
    ),
    NotificationType.SESSION_NO_SHOW: (
        "Marked as No-Show",
        'You were marked as a no-show for "{session_title}" scheduled at {scheduled_at}.',
    ),
    NotificationType.NO_SHOW_CLEARED: (
        "No-Show Cleared",
        'The no-show on "{session_title}" was cleared. The session is now {status}.',
    ),
    NotificationType.REFUND_ISSUED: (
        "Refund Issued",
        'A refund of {refund_amount} {currency} is being processed for "{session_title}".',
    ),
    NotificationType.SESSION_REASSIGNED: (
        "Session Reassigned",
        'Your session "{session_title}" is now with {mentor_name}.',
    ),
    NotificationType.REASSIGNMENT_PROPOSED: (
        "New Mentor Proposed",
        'Your mentor cancelled "{session_title}". {mentor_name} can take the session. '
        "Please accept or decline.",
    ),
    NotificationType.MENTOR_CANCELLED_CHOOSE_ALTERNATIVE: (
        "Choose a New Mentor",
        'Your mentor cancelled "{session_title}". Pick an alternative mentor or cancel '
        "for a full refund.",
    ),
    NotificationType.REASSIGNMENT_ACCEPTED: (
        "Reassignment Accepted",
        'The mentee confirmed you as the mentor for "{session_title}".',
    ),
    NotificationType.REASSIGNMENT_REJECTED: (
        "Reassignment Declined",
        'The mentee declined the reassignment for "{session_title}". The session was cancelled.',
    ),
    NotificationType.RESCHEDULE_REQUEST: (
        "Reschedule Requested",
        'The {initiated_by} proposed moving "{session_title}" to {proposed_time}.',
    ),
    NotificationType.RESCHEDULE_ACCEPTED: (
        "Reschedule Accepted",
        '"{session_title}" has been moved to {scheduled_at}.',
    ),
    NotificationType.RESCHEDULE_REJECTED: (
        "Reschedule Declined",
        'Your request to move "{session_title}" was declined.{reason_suffix}',
    ),
    NotificationType.RESCHEDULE_COUNTER: (
        "New Time Proposed",
        'A different time, {proposed_time}, was proposed for "{session_title}".',
    ),
    NotificationType.RESCHEDULE_WITHDRAWN: (
        "Reschedule Withdrawn",
        'The request to move "{session_title}" was withdrawn. The original time stands.',
    ),
    NotificationType.RESCHEDULE_EXPIRED: (
        "Reschedule Expired",
        'The request to move "{session_title}" expired without a response.',
    ),
}


class _TemplateVars(dict):
    def __missing__(self, key: str) -> str:
        return ""


def _fmt_time(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC") if value else ""


@dataclass(frozen=True)
class PendingNotification:
    user_id: uuid.UUID
    type: NotificationType
    title: str
    message: str
    related_id: Optional[str] = None
    related_type: Optional[str] = None
    action_url: Optional[str] = None


def build_notification(
    notification_type: NotificationType,
    user_id: uuid.UUID,
    session: MentoringSession,
    **template_vars: Any,
) -> PendingNotification:
    """Render a session notification from TEMPLATES."""
    title, body = TEMPLATES[notification_type]
    reason = template_vars.pop("reason", None)
    values = _TemplateVars(
        session_title=session.title,
        scheduled_at=_fmt_time(session.scheduled_at),
        status=getattr(session.status, "value", session.status),
        currency=session.currency,
        reason_suffix=f" Reason: {reason}" if reason else "",
    )
    for key, value in template_vars.items():
        values[key] = _fmt_time(value) if isinstance(value, datetime) else value
    return PendingNotification(
        user_id=user_id,
        type=notification_type,
        title=title,
        message=body.format_map(values),
        related_id=str(session.id),
        related_type="session",
        action_url=f"/dashboard/sessions/{session.id}",
    )


# ── Dispatcher ────────────────────────────────────────────────

@dataclass
class NotificationDispatcher:
    db: AsyncSession
    broker: EventBroker = field(default_factory=get_event_broker)
    send_email: bool = field(default_factory=lambda: settings.EMAIL_NOTIFICATIONS_ENABLED)

    async def notify(
        self,
        user_id: uuid.UUID,
        type: NotificationType,
        title: str,
        message: str,
        related_id: Optional[str] = None,
        related_type: Optional[str] = None,
        action_url: Optional[str] = None,
    ) -> int:
        return await self.deliver([
            PendingNotification(user_id, type, title, message, related_id, related_type, action_url)
        ])

    async def deliver(self, pending: Iterable[PendingNotification]) -> int:
        """Persist, publish and email. Returns how many in-app notifications were saved."""
        items = list(pending)
        if not items:
            return 0

        rows = [
            Notification(
                user_id=p.user_id,
                type=p.type,
                title=p.title,
                message=p.message,
                related_id=p.related_id,
                related_type=p.related_type,
                action_url=p.action_url,
            )
            for p in items
        ]
        try:
            self.db.add_all(rows)
            await self.db.commit()
        except Exception:
            logger.exception(f"Failed to save {len(rows)} notifications")
            await self.db.rollback()
            return 0

        for row in rows:
            await self._publish(row)

        if self.send_email:
            await self._queue_emails(rows)
        return len(rows)

    async def _publish(self, row: Notification) -> None:
        event = {
            "id": str(row.id),
            "type": row.type.value,
            "title": row.title,
            "message": row.message,
            "related_id": row.related_id,
            "related_type": row.related_type,
            "action_url": row.action_url,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        try:
            await self.broker.publish(str(row.user_id), event)
        except Exception as e:
            logger.warning(f"Live notification publish failed: {e}")

    async def _queue_emails(self, rows: list[Notification]) -> None:
        from tasks.notification_tasks import send_notification_email

        try:
            result = await self.db.execute(
                select(User.id, User.email, User.name).where(User.id.in_({r.user_id for r in rows}))
            )
            recipients = {r.id: (r.email, r.name) for r in result}
        except Exception:
            logger.exception("Could not load email recipients")
            return

        for row in rows:
            recipient = recipients.get(row.user_id)
            if not recipient:
                continue
            email, name = recipient
            try:
                send_notification_email.delay(
                    to_email=email,
                    to_name=name,
                    subject=row.title,
                    message=row.message,
                    action_url=row.action_url,
                )
            except Exception as e:
                logger.warning(f"Email enqueue failed for {row.user_id}: {e}")
