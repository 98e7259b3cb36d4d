"""
services/booking/engine.py
Session Transition Engine.

Every action follows the same shape:
  1. Load the session FOR UPDATE (404 if missing)
  2. Check the actor's capability (403) and the status preconditions (400)
  3. Compute derived values (refunds, new mentor, new time)
  4. Mutate the row and append exactly one audit entry, then flush
  5. Return a TransitionOutcome; the route commits and hands
     `outcome.notifications` to the NotificationDispatcher

A rejected precondition raises before anything is mutated. The version
column on the session turns a lost concurrent update into a 409.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from config.database import get_db
from config.settings import settings
from services.audit.log import AuditTrail, RequestMeta, get_request_meta
from services.booking import refunds
from services.booking.refunds import RefundDecision
from services.booking.repository import SessionRepository
from services.notification.dispatcher import (
    NotificationDispatcher,
    PendingNotification,
    build_notification,
)
from services.policy.store import PolicyStore
from shared.exceptions import (
    ConflictException,
    ForbiddenException,
    NotFoundException,
    PreconditionFailed,
    ValidationException,
)
from shared.middleware.auth import Actor
from shared.models.models import (
    AuditAction,
    MeetingType,
    MentoringSession,
    NotificationType,
    PartyRole,
    ReassignmentStatus,
    RefundStatus,
    RescheduleRequest,
    RescheduleStatus,
    SessionAuditLog,
    SessionStatus,
    SessionType,
    User,
)
from shared.utils.clock import Clock, get_clock, hours_between, utc_now

logger = logging.getLogger(__name__)

REASSIGNABLE_STATUSES = (
    ReassignmentStatus.PENDING_ACCEPTANCE,
    ReassignmentStatus.AWAITING_MENTEE_CHOICE,
)

DEFAULT_REJECT_REASON = "Mentee rejected auto-reassigned mentor"
WITHDRAWN_NOTE = "Withdrawn by initiator"
EXPIRED_NOTE = "Expired without a response"


@dataclass
class TransitionOutcome:
    session: MentoringSession
    audit_entry: SessionAuditLog
    notifications: list[PendingNotification] = field(default_factory=list)
    refund: Optional[RefundDecision] = None
    reschedule_request: Optional[RescheduleRequest] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SessionTransitionEngine:
    def __init__(
        self,
        db: AsyncSession,
        clock: Clock = utc_now,
        request_meta: Optional[RequestMeta] = None,
    ):
        self.db = db
        self.clock = clock
        self.request_meta = request_meta or RequestMeta()
        self.sessions = SessionRepository(db)
        self.policies = PolicyStore(db)
        self.audit = AuditTrail(db, clock)

    # ── Shared checks ─────────────────────────────────────────

    @staticmethod
    def _participant(actor: Actor, session: MentoringSession) -> PartyRole:
        party = actor.party_in(session)
        if party is None:
            raise ForbiddenException("You are not a participant in this session")
        return party

    @staticmethod
    def _ensure_not_terminal(session: MentoringSession, verb: str) -> None:
        if session.status == SessionStatus.CANCELLED:
            if verb == "cancel":
                raise PreconditionFailed("Session is already cancelled")
            raise PreconditionFailed(f"Cannot {verb} a cancelled session")
        if session.status == SessionStatus.COMPLETED:
            if verb == "complete":
                raise PreconditionFailed("Session is already completed")
            raise PreconditionFailed(f"Cannot {verb} a completed session")

    @staticmethod
    def _ensure_not_reassigning(session: MentoringSession) -> None:
        if session.reassignment_status in REASSIGNABLE_STATUSES:
            raise PreconditionFailed("Session is waiting for the mentee to confirm a new mentor")

    async def _verified_mentor(self, mentor_id: uuid.UUID, session: MentoringSession) -> User:
        mentor = await self.sessions.get_user(mentor_id)
        if mentor is None:
            raise NotFoundException("Mentor not found")
        profile = await self.sessions.get_mentor_profile(mentor_id)
        if profile is None or not profile.is_verified:
            raise PreconditionFailed("Mentor is not verified")
        if mentor_id == session.mentee_id:
            raise ValidationException("A mentee cannot be assigned as their own mentor")
        return mentor

    async def _ensure_mentor_free(
        self, mentor_id: uuid.UUID, session: MentoringSession, starts_at: datetime
    ) -> None:
        ends_at = starts_at + timedelta(minutes=session.duration_minutes)
        busy = await self.sessions.busy_mentor_ids(
            [mentor_id], starts_at, ends_at, exclude_session_id=session.id
        )
        if busy:
            raise ConflictException("Mentor already has a session at this time")

    def _record(
        self,
        action: AuditAction,
        session: Optional[MentoringSession],
        actor_id: Optional[uuid.UUID],
        previous_status: Any = None,
        reason: Optional[str] = None,
        snapshot: Optional[dict] = None,
        reason_category: Optional[str] = None,
    ) -> SessionAuditLog:
        return self.audit.record(
            action=action,
            session_id=session.id if session else None,
            actor_id=actor_id,
            previous_status=previous_status,
            new_status=session.status if session else None,
            reason_details=reason,
            policy_snapshot=snapshot,
            request_meta=self.request_meta,
            reason_category=reason_category,
        )

    async def _finish(
        self,
        session: MentoringSession,
        entry: SessionAuditLog,
        notifications: list[PendingNotification],
        refund: Optional[RefundDecision] = None,
        request: Optional[RescheduleRequest] = None,
    ) -> TransitionOutcome:
        session_id, action = session.id, entry.action
        try:
            await self.db.flush()
        except StaleDataError:
            await self.db.rollback()
            logger.warning(f"Concurrent update lost on session {session_id} ({action})")
            raise ConflictException(
                "Session was modified by another request; reload and try again"
            )
        logger.info(f"session={session_id} action={action} actor={entry.user_id or 'system'}")
        return TransitionOutcome(session, entry, notifications, refund, request)

    # ── Cancellation helpers ──────────────────────────────────

    @staticmethod
    def _apply_cancel(
        session: MentoringSession,
        by: PartyRole,
        reason: Optional[str],
        refund: RefundDecision,
        now: datetime,
    ) -> None:
        session.status = SessionStatus.CANCELLED
        session.cancelled_by = by
        session.cancellation_reason = reason
        session.cancelled_at = now
        session.refund_percentage = refund.percentage
        session.refund_amount = refund.amount
        session.refund_status = refund.status

    @staticmethod
    def _clear_reschedule_pointer(session: MentoringSession) -> None:
        session.pending_reschedule_request_id = None
        session.pending_reschedule_time = None
        session.pending_reschedule_by = None

    @staticmethod
    def _resolve_request(
        request: RescheduleRequest,
        status: RescheduleStatus,
        by: Optional[PartyRole],
        resolver_id: Optional[uuid.UUID],
        now: datetime,
        note: Optional[str],
    ) -> None:
        request.status = status
        request.resolved_by = by
        request.resolver_id = resolver_id
        request.resolved_at = now
        request.resolution_note = note

    async def _close_open_reschedule(
        self,
        session: MentoringSession,
        by: PartyRole,
        resolver_id: uuid.UUID,
        now: datetime,
        note: str,
    ) -> Optional[RescheduleRequest]:
        """Close any open negotiation when the session leaves `scheduled`."""
        if session.pending_reschedule_request_id is None:
            return None
        request = await self.sessions.get_reschedule_request(
            session.pending_reschedule_request_id, lock=True
        )
        if request is not None and request.is_open:
            self._resolve_request(request, RescheduleStatus.CANCELLED, by, resolver_id, now, note)
        self._clear_reschedule_pointer(session)
        return request

    def _refund_notice(
        self, session: MentoringSession, refund: RefundDecision
    ) -> list[PendingNotification]:
        if refund.amount <= 0:
            return []
        return [
            build_notification(
                NotificationType.REFUND_ISSUED,
                session.mentee_id,
                session,
                refund_amount=refund.amount,
            )
        ]

    # ── Booking ───────────────────────────────────────────────

    async def book(
        self,
        actor: Actor,
        mentor_id: uuid.UUID,
        title: str,
        scheduled_at: datetime,
        duration_minutes: int = 60,
        meeting_type: str = MeetingType.VIDEO.value,
        session_type: str = SessionType.PAID.value,
        description: Optional[str] = None,
    ) -> TransitionOutcome:
        now = self.clock()
        if scheduled_at <= now:
            raise ValidationException("Session must be scheduled in the future")
        if mentor_id == actor.user_id:
            raise ValidationException("You cannot book a session with yourself")

        mentor = await self.sessions.get_user(mentor_id)
        if mentor is None:
            raise NotFoundException("Mentor not found")
        profile = await self.sessions.get_mentor_profile(mentor_id)
        if profile is None or not profile.is_verified:
            raise PreconditionFailed("Mentor is not verified")
        if not profile.is_available:
            raise PreconditionFailed("Mentor is not accepting bookings")

        kind = SessionType(session_type)
        if kind == SessionType.FREE:
            rate = Decimal("0.00")
        else:
            rate = (Decimal(profile.hourly_rate) * Decimal(duration_minutes) / Decimal(60)).quantize(
                refunds.CENTS
            )

        session = MentoringSession(
            id=uuid.uuid4(),
            mentor_id=mentor_id,
            mentee_id=actor.user_id,
            title=title,
            description=description,
            scheduled_at=scheduled_at,
            duration_minutes=duration_minutes,
            meeting_type=MeetingType(meeting_type),
            session_type=kind,
            status=SessionStatus.SCHEDULED,
            rate=rate,
            refund_amount=Decimal("0.00"),
            refund_percentage=0,
            refund_status=RefundStatus.NONE,
            reassignment_status=ReassignmentStatus.NONE,
            cancelled_mentor_ids=[],
        )
        await self._ensure_mentor_free(mentor_id, session, scheduled_at)
        self.db.add(session)

        entry = self._record(
            AuditAction.SESSION_BOOKED,
            session,
            actor.user_id,
            snapshot={"rate": str(rate), "session_type": kind.value},
        )
        notifications = [
            build_notification(NotificationType.BOOKING_CREATED, mentor_id, session)
        ]
        return await self._finish(session, entry, notifications)

    # ── Participant actions ───────────────────────────────────

    async def cancel(
        self,
        actor: Actor,
        session_id: uuid.UUID,
        reason: Optional[str] = None,
        offer_reassignment: bool = False,
    ) -> TransitionOutcome:
        session = await self.sessions.get(session_id, lock=True)
        party = self._participant(actor, session)
        self._ensure_not_terminal(session, "cancel")
        if session.status == SessionStatus.NO_SHOW:
            raise PreconditionFailed("No-show sessions can only be resolved by an admin")

        now = self.clock()
        if session.status == SessionStatus.IN_PROGRESS or now >= session.scheduled_at:
            raise PreconditionFailed("Cannot cancel a session that has already started")

        policy = await self.policies.snapshot()
        reason = reason.strip() if reason else None
        if policy["require_cancellation_reason"] and not reason:
            raise ValidationException("A cancellation reason is required")

        if party == PartyRole.MENTOR and str(actor.user_id) in (session.cancelled_mentor_ids or []):
            raise PreconditionFailed("You have already withdrawn from this session")

        hours_before = hours_between(session.scheduled_at, now)
        if party == PartyRole.MENTOR and offer_reassignment:
            return await self._offer_reassignment(actor, session, reason, policy, now)

        previous_status = session.status
        if party == PartyRole.MENTEE and session.reassignment_status in REASSIGNABLE_STATUSES:
            refund = refunds.full_refund(
                session.rate,
                "Mentor withdrew from the session; mentee cancelled instead of choosing a new mentor",
                hours_before,
            )
            session.reassignment_status = ReassignmentStatus.REJECTED
        else:
            cutoff_key = (
                "mentor_cancellation_cutoff_hours"
                if party == PartyRole.MENTOR
                else "cancellation_cutoff_hours"
            )
            refund = refunds.tiered_refund(
                session.rate,
                hours_before,
                free_cancellation_hours=policy["free_cancellation_hours"],
                cutoff_hours=policy[cutoff_key],
                partial_percentage=policy["partial_refund_percentage"],
                late_percentage=policy["late_cancellation_refund_percentage"],
            )

        self._apply_cancel(session, party, reason, refund, now)
        await self._close_open_reschedule(session, party, actor.user_id, now, "Session cancelled")

        entry = self._record(
            AuditAction.SESSION_CANCELLED,
            session,
            actor.user_id,
            previous_status=previous_status,
            reason=reason,
            snapshot={"policies": policy, "refund": refund.to_payload(), "cancelled_by": party.value},
            reason_category=f"{party.value}_cancellation",
        )
        notifications = [
            build_notification(
                NotificationType.BOOKING_CANCELLED,
                session.counterpart_of(actor.user_id),
                session,
                cancelled_by=party.value,
                reason=reason,
            )
        ]
        notifications += self._refund_notice(session, refund)
        return await self._finish(session, entry, notifications, refund)

    async def _offer_reassignment(
        self,
        actor: Actor,
        session: MentoringSession,
        reason: Optional[str],
        policy: dict,
        now: datetime,
    ) -> TransitionOutcome:
        """Mentor drops out; look for a replacement instead of cancelling outright."""
        previous_status = session.status
        leaving_mentor_id = session.mentor_id
        dropped = list(session.cancelled_mentor_ids or [])
        if str(leaving_mentor_id) not in dropped:
            dropped.append(str(leaving_mentor_id))
        session.cancelled_mentor_ids = dropped
        await self._close_open_reschedule(
            session, PartyRole.MENTOR, actor.user_id, now, "Mentor withdrew from the session"
        )

        candidates = await self.sessions.find_alternative_mentors(session, limit=1)
        if candidates:
            replacement = await self.sessions.get_user(candidates[0].user_id)
            if session.reassigned_from_mentor_id is None:
                session.reassigned_from_mentor_id = leaving_mentor_id
            session.mentor_id = replacement.id
            session.was_reassigned = True
            session.reassigned_at = now
            session.reassignment_status = ReassignmentStatus.PENDING_ACCEPTANCE
            notification = build_notification(
                NotificationType.REASSIGNMENT_PROPOSED,
                session.mentee_id,
                session,
                mentor_name=replacement.name,
            )
        else:
            session.reassignment_status = ReassignmentStatus.AWAITING_MENTEE_CHOICE
            notification = build_notification(
                NotificationType.MENTOR_CANCELLED_CHOOSE_ALTERNATIVE, session.mentee_id, session
            )

        entry = self._record(
            AuditAction.MENTOR_CANCELLED_REASSIGNMENT_OFFERED,
            session,
            actor.user_id,
            previous_status=previous_status,
            reason=reason,
            snapshot={
                "policies": policy,
                "cancelled_mentor_id": str(leaving_mentor_id),
                "proposed_mentor_id": str(session.mentor_id) if candidates else None,
                "reassignment_status": session.reassignment_status.value,
            },
            reason_category="mentor_cancellation",
        )
        return await self._finish(session, entry, [notification])

    async def complete(
        self, actor: Actor, session_id: uuid.UUID, actual_duration: Optional[int] = None
    ) -> TransitionOutcome:
        session = await self.sessions.get(session_id, lock=True)
        if not actor.is_mentor_of(session):
            raise ForbiddenException("Only the session mentor can complete this session")
        self._ensure_not_terminal(session, "complete")
        if session.status == SessionStatus.NO_SHOW:
            raise PreconditionFailed("No-show sessions can only be resolved by an admin")
        self._ensure_not_reassigning(session)

        now = self.clock()
        previous_status = session.status
        original_duration = session.duration_minutes
        session.status = SessionStatus.COMPLETED
        session.ended_at = now
        if actual_duration:
            session.duration_minutes = actual_duration
        await self._close_open_reschedule(
            session, PartyRole.MENTOR, actor.user_id, now, "Session completed"
        )

        entry = self._record(
            AuditAction.SESSION_COMPLETED,
            session,
            actor.user_id,
            previous_status=previous_status,
            snapshot={"original_duration": original_duration, "actual_duration": session.duration_minutes},
        )
        notifications = [
            build_notification(NotificationType.SESSION_COMPLETED, session.mentee_id, session)
        ]
        return await self._finish(session, entry, notifications)

    async def start(self, actor: Actor, session_id: uuid.UUID) -> TransitionOutcome:
        session = await self.sessions.get(session_id, lock=True)
        if not actor.is_mentor_of(session):
            raise ForbiddenException("Only the session mentor can start this session")
        if session.status != SessionStatus.SCHEDULED:
            raise PreconditionFailed(f"Cannot start a session that is {session.status.value}")
        self._ensure_not_reassigning(session)

        now = self.clock()
        early = timedelta(minutes=settings.SESSION_START_EARLY_MINUTES)
        if now < session.scheduled_at - early:
            raise PreconditionFailed(
                f"Session cannot be started more than {settings.SESSION_START_EARLY_MINUTES} "
                "minutes before its scheduled time"
            )

        previous_status = session.status
        session.status = SessionStatus.IN_PROGRESS
        session.started_at = now
        await self._close_open_reschedule(
            session, PartyRole.MENTOR, actor.user_id, now, "Session started"
        )

        entry = self._record(AuditAction.SESSION_STARTED, session, actor.user_id, previous_status)
        notifications = [
            build_notification(NotificationType.SESSION_STARTED, session.mentee_id, session)
        ]
        return await self._finish(session, entry, notifications)

    async def mark_no_show(self, actor: Actor, session_id: uuid.UUID) -> TransitionOutcome:
        session = await self.sessions.get(session_id, lock=True)
        if not actor.is_mentor_of(session):
            raise ForbiddenException("Only the session mentor can report a no-show")
        if session.status != SessionStatus.SCHEDULED:
            raise PreconditionFailed(
                f"Cannot mark a session that is {session.status.value} as no-show"
            )
        self._ensure_not_reassigning(session)

        now = self.clock()
        if now < session.scheduled_at:
            raise PreconditionFailed("Cannot mark future sessions as no-show")
        window = settings.NO_SHOW_REPORT_WINDOW_HOURS
        if hours_between(now, session.scheduled_at) > window:
            raise PreconditionFailed(f"Cannot mark sessions as no-show after {window} hours")

        previous_status = session.status
        session.status = SessionStatus.NO_SHOW
        session.no_show_marked_by = PartyRole.MENTOR
        session.no_show_marked_at = now
        await self._close_open_reschedule(
            session, PartyRole.MENTOR, actor.user_id, now, "Session marked as no-show"
        )

        entry = self._record(
            AuditAction.NO_SHOW_MARKED,
            session,
            actor.user_id,
            previous_status,
            snapshot={"hours_after_start": round(hours_between(now, session.scheduled_at), 2)},
        )
        notifications = [
            build_notification(NotificationType.SESSION_NO_SHOW, session.mentee_id, session)
        ]
        return await self._finish(session, entry, notifications)

    # ── Reassignment (mentee side) ────────────────────────────

    async def alternative_mentors(self, actor: Actor, session_id: uuid.UUID):
        session = await self.sessions.get(session_id)
        if not actor.is_mentee_of(session):
            raise ForbiddenException("Only the mentee can browse alternative mentors")
        return session, await self.sessions.find_alternative_mentors(session)

    async def _pending_reassignment(self, actor: Actor, session_id: uuid.UUID, verb: str):
        session = await self.sessions.get(session_id, lock=True)
        if not actor.is_mentee_of(session):
            raise ForbiddenException(f"Only the mentee can {verb} a reassignment")
        self._ensure_not_terminal(session, verb)
        if (
            not session.was_reassigned
            or session.reassignment_status != ReassignmentStatus.PENDING_ACCEPTANCE
        ):
            raise PreconditionFailed(f"No pending reassignment to {verb}")
        return session

    async def accept_reassignment(self, actor: Actor, session_id: uuid.UUID) -> TransitionOutcome:
        session = await self._pending_reassignment(actor, session_id, "accept")
        session.reassignment_status = ReassignmentStatus.ACCEPTED

        entry = self._record(
            AuditAction.REASSIGNMENT_ACCEPTED,
            session,
            actor.user_id,
            session.status,
            snapshot={
                "mentor_id": str(session.mentor_id),
                "reassigned_from_mentor_id": str(session.reassigned_from_mentor_id)
                if session.reassigned_from_mentor_id else None,
            },
        )
        notifications = [
            build_notification(NotificationType.REASSIGNMENT_ACCEPTED, session.mentor_id, session)
        ]
        return await self._finish(session, entry, notifications)

    async def reject_reassignment(
        self, actor: Actor, session_id: uuid.UUID, reason: Optional[str] = None
    ) -> TransitionOutcome:
        session = await self._pending_reassignment(actor, session_id, "reject")
        now = self.clock()
        reason = (reason or "").strip() or DEFAULT_REJECT_REASON
        previous_status = session.status

        # Fixed business rule: rejecting a mentor the mentee never chose is always fully refunded.
        refund = refunds.full_refund(
            session.rate,
            "Mentee rejected a reassigned mentor; full refund regardless of cancellation tiering",
            hours_between(session.scheduled_at, now),
        )
        self._apply_cancel(session, PartyRole.MENTEE, reason, refund, now)
        session.reassignment_status = ReassignmentStatus.REJECTED
        await self._close_open_reschedule(session, PartyRole.MENTEE, actor.user_id, now, reason)

        entry = self._record(
            AuditAction.REASSIGNMENT_REJECTED,
            session,
            actor.user_id,
            previous_status,
            reason=reason,
            snapshot={
                "refund": refund.to_payload(),
                "rationale": "full_refund_on_rejected_reassignment",
                "rejected_mentor_id": str(session.mentor_id),
                "original_mentor_id": str(session.reassigned_from_mentor_id)
                if session.reassigned_from_mentor_id else None,
            },
            reason_category="reassignment_rejected",
        )
        notifications = [
            build_notification(NotificationType.REASSIGNMENT_REJECTED, session.mentor_id, session)
        ]
        original = session.reassigned_from_mentor_id
        if original and original != session.mentor_id:
            notifications.append(
                build_notification(
                    NotificationType.BOOKING_CANCELLED,
                    original,
                    session,
                    cancelled_by="mentee",
                    reason=reason,
                )
            )
        notifications.append(
            build_notification(
                NotificationType.BOOKING_CANCELLED,
                session.mentee_id,
                session,
                cancelled_by="mentee",
                reason=reason,
            )
        )
        notifications += self._refund_notice(session, refund)
        return await self._finish(session, entry, notifications, refund)

    async def select_alternative_mentor(
        self,
        actor: Actor,
        session_id: uuid.UUID,
        new_mentor_id: uuid.UUID,
        scheduled_at: Optional[datetime] = None,
    ) -> TransitionOutcome:
        session = await self.sessions.get(session_id, lock=True)
        if not actor.is_mentee_of(session):
            raise ForbiddenException("Only the mentee can choose a new mentor")
        self._ensure_not_terminal(session, "reassign")
        if session.reassignment_status not in REASSIGNABLE_STATUSES:
            raise PreconditionFailed("Session is not in a reassignable state")
        if str(new_mentor_id) in (session.cancelled_mentor_ids or []):
            raise ValidationException("This mentor has already withdrawn from the session")

        new_mentor = await self._verified_mentor(new_mentor_id, session)
        now = self.clock()
        if scheduled_at is not None and scheduled_at <= now:
            raise ValidationException("New session time must be in the future")
        starts_at = scheduled_at or session.scheduled_at
        await self._ensure_mentor_free(new_mentor_id, session, starts_at)

        previous_mentor_id = session.mentor_id
        previous_time = session.scheduled_at
        if session.reassigned_from_mentor_id is None:
            session.reassigned_from_mentor_id = previous_mentor_id
        session.mentor_id = new_mentor_id
        session.was_reassigned = True
        session.reassigned_at = now
        session.reassignment_status = ReassignmentStatus.ACCEPTED
        if scheduled_at is not None and scheduled_at != previous_time:
            session.rescheduled_from = previous_time
            session.scheduled_at = scheduled_at

        entry = self._record(
            AuditAction.ALTERNATIVE_MENTOR_SELECTED,
            session,
            actor.user_id,
            session.status,
            snapshot={
                "previous_mentor_id": str(previous_mentor_id),
                "new_mentor_id": str(new_mentor_id),
                "new_mentor_name": new_mentor.name,
                "previous_scheduled_at": _iso(previous_time),
                "scheduled_at": _iso(session.scheduled_at),
            },
        )
        notifications = [
            build_notification(NotificationType.BOOKING_CREATED, new_mentor_id, session)
        ]
        return await self._finish(session, entry, notifications)

    # ── Admin actions ─────────────────────────────────────────

    async def admin_cancel(
        self,
        actor: Actor,
        session_id: uuid.UUID,
        reason: str,
        refund_percentage: int = 100,
        notify_parties: bool = True,
    ) -> TransitionOutcome:
        session = await self.sessions.get(session_id, lock=True)
        self._ensure_not_terminal(session, "cancel")
        if session.status == SessionStatus.NO_SHOW:
            raise PreconditionFailed("Clear the no-show before cancelling this session")

        now = self.clock()
        previous_status = session.status
        refund = refunds.admin_refund(session.rate, refund_percentage)
        self._apply_cancel(session, PartyRole.ADMIN, reason, refund, now)
        if session.reassignment_status in REASSIGNABLE_STATUSES:
            session.reassignment_status = ReassignmentStatus.REJECTED
        await self._close_open_reschedule(session, PartyRole.ADMIN, actor.user_id, now, reason)

        entry = self._record(
            AuditAction.ADMIN_FORCE_CANCEL,
            session,
            actor.user_id,
            previous_status,
            reason=reason,
            snapshot={"refund": refund.to_payload(), "notify_parties": notify_parties},
            reason_category="admin_action",
        )
        notifications: list[PendingNotification] = []
        if notify_parties:
            for user_id in (session.mentee_id, session.mentor_id):
                notifications.append(
                    build_notification(
                        NotificationType.BOOKING_CANCELLED,
                        user_id,
                        session,
                        cancelled_by="admin",
                        reason=reason,
                    )
                )
            notifications += self._refund_notice(session, refund)
        return await self._finish(session, entry, notifications, refund)

    async def admin_complete(
        self,
        actor: Actor,
        session_id: uuid.UUID,
        reason: str,
        actual_duration: Optional[int] = None,
    ) -> TransitionOutcome:
        session = await self.sessions.get(session_id, lock=True)
        self._ensure_not_terminal(session, "complete")
        if session.status == SessionStatus.NO_SHOW:
            raise PreconditionFailed("Clear the no-show before completing this session")

        now = self.clock()
        previous_status = session.status
        original_duration = session.duration_minutes
        session.status = SessionStatus.COMPLETED
        session.ended_at = now
        if actual_duration:
            session.duration_minutes = actual_duration
        if session.reassignment_status in REASSIGNABLE_STATUSES:
            session.reassignment_status = ReassignmentStatus.ACCEPTED
        await self._close_open_reschedule(session, PartyRole.ADMIN, actor.user_id, now, reason)

        entry = self._record(
            AuditAction.ADMIN_FORCE_COMPLETE,
            session,
            actor.user_id,
            previous_status,
            reason=reason,
            snapshot={"original_duration": original_duration, "actual_duration": session.duration_minutes},
            reason_category="admin_action",
        )
        notifications = [
            build_notification(NotificationType.SESSION_COMPLETED, user_id, session)
            for user_id in (session.mentee_id, session.mentor_id)
        ]
        return await self._finish(session, entry, notifications)

    async def admin_reassign(
        self,
        actor: Actor,
        session_id: uuid.UUID,
        new_mentor_id: uuid.UUID,
        reason: str,
        notify_parties: bool = True,
    ) -> TransitionOutcome:
        session = await self.sessions.get(session_id, lock=True)
        self._ensure_not_terminal(session, "reassign")
        if new_mentor_id == session.mentor_id:
            raise ValidationException("Session is already assigned to this mentor")
        new_mentor = await self._verified_mentor(new_mentor_id, session)
        await self._ensure_mentor_free(new_mentor_id, session, session.scheduled_at)

        previous_mentor_id = session.mentor_id
        previous_mentor = await self.sessions.get_user(previous_mentor_id)
        now = self.clock()
        session.mentor_id = new_mentor_id
        session.was_reassigned = True
        session.reassigned_from_mentor_id = previous_mentor_id
        session.reassigned_at = now
        session.reassignment_status = ReassignmentStatus.ACCEPTED

        entry = self._record(
            AuditAction.ADMIN_REASSIGN_SESSION,
            session,
            actor.user_id,
            session.status,
            reason=reason,
            snapshot={
                "previous_mentor_id": str(previous_mentor_id),
                "previous_mentor_name": previous_mentor.name if previous_mentor else None,
                "new_mentor_id": str(new_mentor_id),
                "new_mentor_name": new_mentor.name,
            },
            reason_category="admin_action",
        )
        notifications: list[PendingNotification] = []
        if notify_parties:
            notifications = [
                build_notification(
                    NotificationType.SESSION_REASSIGNED,
                    session.mentee_id,
                    session,
                    mentor_name=new_mentor.name,
                ),
                build_notification(NotificationType.BOOKING_CREATED, new_mentor_id, session),
                build_notification(
                    NotificationType.BOOKING_CANCELLED,
                    previous_mentor_id,
                    session,
                    cancelled_by="admin",
                    reason=reason,
                ),
            ]
        return await self._finish(session, entry, notifications)

    async def manual_refund(
        self,
        actor: Actor,
        session_id: uuid.UUID,
        amount: Decimal,
        reason: str,
        refund_type: str = "partial",
    ) -> TransitionOutcome:
        session = await self.sessions.get(session_id, lock=True)
        before = {
            "refund_amount": str(session.refund_amount),
            "refund_percentage": session.refund_percentage,
            "refund_status": session.refund_status.value,
        }
        refund = refunds.manual_refund(session.rate, session.refund_amount, amount, refund_type)
        session.refund_amount = refund.amount
        session.refund_percentage = refund.percentage
        session.refund_status = RefundStatus.PENDING

        entry = self._record(
            AuditAction.ADMIN_MANUAL_REFUND,
            session,
            actor.user_id,
            session.status,
            reason=reason,
            snapshot={
                "refund_type": refund_type,
                "amount": str(amount),
                "before": before,
                "after": refund.to_payload(),
            },
            reason_category="admin_action",
        )
        return await self._finish(
            session, entry, self._refund_notice(session, refund), refund
        )

    async def clear_no_show(
        self,
        actor: Actor,
        session_id: uuid.UUID,
        reason: str,
        restore_status: str = SessionStatus.COMPLETED.value,
        notify_parties: bool = False,
    ) -> TransitionOutcome:
        session = await self.sessions.get(session_id, lock=True)
        if session.status != SessionStatus.NO_SHOW:
            raise PreconditionFailed("Session is not marked as no-show")
        target = SessionStatus(restore_status)
        if target not in (SessionStatus.COMPLETED, SessionStatus.CANCELLED):
            raise ValidationException("restore_status must be completed or cancelled")

        now = self.clock()
        marker = {
            "no_show_marked_by": session.no_show_marked_by.value if session.no_show_marked_by else None,
            "no_show_marked_at": _iso(session.no_show_marked_at),
        }
        previous_status = session.status
        session.status = target
        session.no_show_marked_by = None
        session.no_show_marked_at = None
        if target == SessionStatus.COMPLETED:
            session.ended_at = session.ended_at or now
        else:
            session.cancelled_by = PartyRole.ADMIN
            session.cancellation_reason = reason
            session.cancelled_at = now

        entry = self._record(
            AuditAction.ADMIN_CLEAR_NO_SHOW,
            session,
            actor.user_id,
            previous_status,
            reason=reason,
            snapshot={"original_marker": marker, "restored_status": target.value},
            reason_category="admin_action",
        )
        notifications: list[PendingNotification] = []
        if notify_parties:
            notifications = [
                build_notification(NotificationType.NO_SHOW_CLEARED, user_id, session)
                for user_id in (session.mentee_id, session.mentor_id)
            ]
        return await self._finish(session, entry, notifications)

    # ── Reschedule negotiation ────────────────────────────────

    async def propose_reschedule(
        self,
        actor: Actor,
        session_id: uuid.UUID,
        proposed_time: datetime,
        proposed_duration: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> TransitionOutcome:
        session = await self.sessions.get(session_id, lock=True)
        party = self._participant(actor, session)
        if session.status != SessionStatus.SCHEDULED:
            raise PreconditionFailed("Only scheduled sessions can be rescheduled")
        self._ensure_not_reassigning(session)
        if session.pending_reschedule_request_id is not None:
            raise PreconditionFailed("A reschedule request is already pending for this session")

        now = self.clock()
        if proposed_time <= now:
            raise ValidationException("Proposed time must be in the future")
        if proposed_time == session.scheduled_at:
            raise ValidationException("Proposed time must differ from the current time")

        if party == PartyRole.MENTOR:
            policy = await self.policies.get_values(
                "mentor_reschedule_cutoff_hours",
                "mentor_max_reschedules_per_session",
                "reschedule_request_expiry_hours",
            )
            cutoff = policy["mentor_reschedule_cutoff_hours"]
            limit = policy["mentor_max_reschedules_per_session"]
            used = session.mentor_reschedule_count
        else:
            policy = await self.policies.get_values(
                "reschedule_cutoff_hours",
                "max_reschedules_per_session",
                "reschedule_request_expiry_hours",
            )
            cutoff = policy["reschedule_cutoff_hours"]
            limit = policy["max_reschedules_per_session"]
            used = session.reschedule_count

        if hours_between(session.scheduled_at, now) < cutoff:
            raise PreconditionFailed(
                f"Reschedule requests must be made at least {cutoff} hours before the session"
            )
        if used >= limit:
            raise PreconditionFailed(f"Maximum of {limit} reschedules reached for this session")

        request = RescheduleRequest(
            id=uuid.uuid4(),
            session_id=session.id,
            initiated_by=party,
            initiator_id=actor.user_id,
            status=RescheduleStatus.PENDING,
            proposed_time=proposed_time,
            proposed_duration=proposed_duration,
            original_time=session.scheduled_at,
            reason=reason,
            counter_proposal_count=0,
            expires_at=now + timedelta(hours=policy["reschedule_request_expiry_hours"]),
        )
        self.db.add(request)
        session.pending_reschedule_request_id = request.id
        session.pending_reschedule_time = proposed_time
        session.pending_reschedule_by = party

        entry = self._record(
            AuditAction.RESCHEDULE_REQUESTED,
            session,
            actor.user_id,
            session.status,
            reason=reason,
            snapshot={
                "policies": policy,
                "request_id": str(request.id),
                "proposed_time": _iso(proposed_time),
                "original_time": _iso(session.scheduled_at),
                "expires_at": _iso(request.expires_at),
            },
        )
        notifications = [
            build_notification(
                NotificationType.RESCHEDULE_REQUEST,
                session.counterpart_of(actor.user_id),
                session,
                initiated_by=party.value,
                proposed_time=proposed_time,
            )
        ]
        return await self._finish(session, entry, notifications, request=request)

    async def _open_request(self, session: MentoringSession, missing_message: str) -> RescheduleRequest:
        if session.pending_reschedule_request_id is None:
            raise PreconditionFailed(missing_message)
        request = await self.sessions.get_reschedule_request(
            session.pending_reschedule_request_id, lock=True
        )
        if request is None:
            raise NotFoundException("Reschedule request not found")
        if not request.is_open:
            raise PreconditionFailed("Reschedule request has already been resolved")
        return request

    async def respond_reschedule(
        self,
        actor: Actor,
        session_id: uuid.UUID,
        action: str,
        counter_proposed_time: Optional[datetime] = None,
        note: Optional[str] = None,
    ) -> TransitionOutcome:
        session = await self.sessions.get(session_id, lock=True)
        party = self._participant(actor, session)
        request = await self._open_request(session, "No pending reschedule request for this session")

        proposer = (
            request.counter_proposed_by
            if request.status == RescheduleStatus.COUNTER_PROPOSED
            else request.initiated_by
        )
        if party == proposer:
            raise ForbiddenException("Waiting for the other party to respond")

        now = self.clock()
        if request.expires_at is not None and now >= request.expires_at:
            raise PreconditionFailed("Reschedule request has expired")

        if action == "accept":
            return await self._accept_reschedule(actor, party, session, request, now, note)
        if action == "reject":
            return await self._reject_reschedule(actor, party, session, request, now, note)
        if action == "counter_propose":
            return await self._counter_reschedule(
                actor, party, session, request, now, counter_proposed_time, note
            )
        if action == "cancel_session":
            return await self._cancel_from_reschedule(actor, party, session, request, now, note)
        raise ValidationException(f"Unknown reschedule action '{action}'")

    async def _accept_reschedule(self, actor, party, session, request, now, note):
        new_time = request.effective_time
        if new_time <= now:
            raise PreconditionFailed("Proposed time is in the past")
        previous_time = session.scheduled_at
        await self._ensure_mentor_free(session.mentor_id, session, new_time)

        session.rescheduled_from = previous_time
        session.scheduled_at = new_time
        if request.proposed_duration and request.status == RescheduleStatus.PENDING:
            session.duration_minutes = request.proposed_duration
        if request.initiated_by == PartyRole.MENTOR:
            session.mentor_reschedule_count += 1
        else:
            session.reschedule_count += 1
        self._resolve_request(request, RescheduleStatus.ACCEPTED, party, actor.user_id, now, note)
        self._clear_reschedule_pointer(session)

        entry = self._record(
            AuditAction.RESCHEDULE_ACCEPTED,
            session,
            actor.user_id,
            session.status,
            reason=note,
            snapshot={
                "request_id": str(request.id),
                "previous_time": _iso(previous_time),
                "new_time": _iso(new_time),
                "initiated_by": request.initiated_by.value,
            },
        )
        notifications = [
            build_notification(
                NotificationType.RESCHEDULE_ACCEPTED, session.counterpart_of(actor.user_id), session
            )
        ]
        return await self._finish(session, entry, notifications, request=request)

    async def _reject_reschedule(self, actor, party, session, request, now, note):
        self._resolve_request(request, RescheduleStatus.REJECTED, party, actor.user_id, now, note)
        self._clear_reschedule_pointer(session)

        entry = self._record(
            AuditAction.RESCHEDULE_REJECTED,
            session,
            actor.user_id,
            session.status,
            reason=note,
            snapshot={"request_id": str(request.id), "proposed_time": _iso(request.effective_time)},
        )
        notifications = [
            build_notification(
                NotificationType.RESCHEDULE_REJECTED,
                session.counterpart_of(actor.user_id),
                session,
                reason=note,
            )
        ]
        return await self._finish(session, entry, notifications, request=request)

    async def _counter_reschedule(self, actor, party, session, request, now, counter_time, note):
        if counter_time is None:
            raise ValidationException("counter_proposed_time is required for a counter-proposal")
        if counter_time <= now:
            raise ValidationException("Proposed time must be in the future")
        policy = await self.policies.get_values(
            "max_counter_proposals", "reschedule_request_expiry_hours"
        )
        if request.counter_proposal_count >= policy["max_counter_proposals"]:
            raise PreconditionFailed(
                f"Maximum of {policy['max_counter_proposals']} counter-proposals reached"
            )

        request.status = RescheduleStatus.COUNTER_PROPOSED
        request.counter_proposed_time = counter_time
        request.counter_proposed_by = party
        request.counter_proposal_count += 1
        request.expires_at = now + timedelta(hours=policy["reschedule_request_expiry_hours"])
        session.pending_reschedule_time = counter_time
        session.pending_reschedule_by = party

        entry = self._record(
            AuditAction.RESCHEDULE_COUNTER_PROPOSED,
            session,
            actor.user_id,
            session.status,
            reason=note,
            snapshot={
                "policies": policy,
                "request_id": str(request.id),
                "counter_proposed_time": _iso(counter_time),
                "counter_proposal_count": request.counter_proposal_count,
            },
        )
        notifications = [
            build_notification(
                NotificationType.RESCHEDULE_COUNTER,
                session.counterpart_of(actor.user_id),
                session,
                proposed_time=counter_time,
            )
        ]
        return await self._finish(session, entry, notifications, request=request)

    async def _cancel_from_reschedule(self, actor, party, session, request, now, note):
        reason = (note or "").strip() or "Cancelled instead of rescheduling"
        previous_status = session.status
        refund = refunds.full_refund(
            session.rate,
            "Cancelled in response to a reschedule request",
            hours_between(session.scheduled_at, now),
        )
        self._apply_cancel(session, party, reason, refund, now)
        self._resolve_request(request, RescheduleStatus.CANCELLED, party, actor.user_id, now, reason)
        self._clear_reschedule_pointer(session)

        entry = self._record(
            AuditAction.SESSION_CANCELLED,
            session,
            actor.user_id,
            previous_status,
            reason=reason,
            snapshot={
                "refund": refund.to_payload(),
                "cancelled_by": party.value,
                "reschedule_request_id": str(request.id),
            },
            reason_category="reschedule_declined",
        )
        notifications = [
            build_notification(
                NotificationType.BOOKING_CANCELLED,
                session.counterpart_of(actor.user_id),
                session,
                cancelled_by=party.value,
                reason=reason,
            )
        ]
        notifications += self._refund_notice(session, refund)
        return await self._finish(session, entry, notifications, refund, request)

    async def withdraw_reschedule(self, actor: Actor, session_id: uuid.UUID) -> TransitionOutcome:
        session = await self.sessions.get(session_id, lock=True)
        party = self._participant(actor, session)
        request = await self._open_request(session, "No pending reschedule request to withdraw")
        if request.initiator_id != actor.user_id:
            raise ForbiddenException("Only the initiator can withdraw a reschedule request")

        now = self.clock()
        self._resolve_request(request, RescheduleStatus.CANCELLED, party, actor.user_id, now, WITHDRAWN_NOTE)
        self._clear_reschedule_pointer(session)

        entry = self._record(
            AuditAction.RESCHEDULE_WITHDRAWN,
            session,
            actor.user_id,
            session.status,
            reason=WITHDRAWN_NOTE,
            snapshot={"request_id": str(request.id), "proposed_time": _iso(request.proposed_time)},
        )
        notifications = [
            build_notification(
                NotificationType.RESCHEDULE_WITHDRAWN, session.counterpart_of(actor.user_id), session
            )
        ]
        return await self._finish(session, entry, notifications, request=request)

    async def expire_stale_requests(self) -> list[TransitionOutcome]:
        """Mark open requests past `expires_at` as expired. Run by the beat scheduler."""
        now = self.clock()
        outcomes = []
        for request in await self.sessions.expired_open_requests(now):
            session = await self.sessions.get(request.session_id, lock=True)
            self._resolve_request(request, RescheduleStatus.EXPIRED, None, None, now, EXPIRED_NOTE)
            if session.pending_reschedule_request_id == request.id:
                self._clear_reschedule_pointer(session)

            entry = self._record(
                AuditAction.RESCHEDULE_EXPIRED,
                session,
                None,
                session.status,
                reason=EXPIRED_NOTE,
                snapshot={
                    "request_id": str(request.id),
                    "initiator_id": str(request.initiator_id),
                    "expires_at": _iso(request.expires_at),
                },
                reason_category="system_expiry",
            )
            notifications = [
                build_notification(NotificationType.RESCHEDULE_EXPIRED, user_id, session)
                for user_id in (session.mentee_id, session.mentor_id)
            ]
            outcomes.append(await self._finish(session, entry, notifications, request=request))
        return outcomes


# ── FastAPI wiring ────────────────────────────────────────────

def get_transition_engine(
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    request_meta: RequestMeta = Depends(get_request_meta),
) -> SessionTransitionEngine:
    return SessionTransitionEngine(db, clock, request_meta)


async def commit_and_notify(db: AsyncSession, outcome: TransitionOutcome) -> None:
    """Make the transition durable, then deliver its notifications best-effort."""
    await db.commit()
    await NotificationDispatcher(db).deliver(outcome.notifications)
