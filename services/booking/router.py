"""
services/booking/router.py
Participant-facing session lifecycle.

Mentees book sessions; mentor and mentee then cancel, complete, start,
report no-shows, negotiate new times and handle mentor reassignment.
Every mutation goes through the SessionTransitionEngine and is committed
before its notifications are dispatched.
"""

from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.audit.log import AuditTrail
from services.booking.engine import (
    SessionTransitionEngine,
    commit_and_notify,
    get_transition_engine,
)
from services.booking.repository import SessionRepository
from services.subscription.policies import (
    consume_action,
    enforce_action,
    resolve_mentee_booking_action,
)
from shared.exceptions import ForbiddenException
from shared.middleware.auth import Actor, get_current_actor, require_mentee
from shared.schemas.schemas import (
    AlternativeMentorsResponse,
    ApiResponse,
    AuditLogResponse,
    CancelSessionRequest,
    CompleteSessionRequest,
    MentorSummary,
    PaginatedResponse,
    RejectReassignmentRequest,
    RescheduleOutcome,
    RescheduleProposeRequest,
    RescheduleRequestResponse,
    RescheduleRespondRequest,
    SelectAlternativeMentorRequest,
    SessionCreateRequest,
    SessionResponse,
)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


# ── Helpers ───────────────────────────────────────────────────

async def _visible_session(session_id: UUID, actor: Actor, db: AsyncSession):
    session = await SessionRepository(db).get(session_id)
    if not (actor.is_participant_of(session) or actor.is_admin):
        raise ForbiddenException("You are not a participant in this session")
    return session


def _reschedule_outcome(outcome) -> RescheduleOutcome:
    return RescheduleOutcome(
        session=SessionResponse.model_validate(outcome.session),
        request=RescheduleRequestResponse.model_validate(outcome.reschedule_request),
    )


# ── Booking Creation ──────────────────────────────────────────

@router.post("", response_model=ApiResponse[SessionResponse], status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: SessionCreateRequest,
    actor: Actor = Depends(require_mentee),
    engine: SessionTransitionEngine = Depends(get_transition_engine),
    db: AsyncSession = Depends(get_db),
):
    """
    Book a session with a verified mentor.
    1. Check the mentee's plan allows another session of this type
    2. Create the session (scheduled)
    3. Meter the plan usage, keyed by session id
    """
    action = resolve_mentee_booking_action(data.session_type)
    await enforce_action(db, action, actor.user_id)

    outcome = await engine.book(
        actor,
        mentor_id=data.mentor_id,
        title=data.title,
        scheduled_at=data.scheduled_at,
        duration_minutes=data.duration_minutes,
        meeting_type=data.meeting_type,
        session_type=data.session_type,
        description=data.description,
    )
    await consume_action(
        db,
        action,
        actor.user_id,
        resource_id=str(outcome.session.id),
        idempotency_key=f"booking:{outcome.session.id}",
    )
    response = SessionResponse.model_validate(outcome.session)
    await commit_and_notify(db, outcome)
    return ApiResponse(data=response, message="Session booked successfully")


# ── Reads ─────────────────────────────────────────────────────

@router.get("", response_model=PaginatedResponse)
async def list_my_sessions(
    role: Optional[Literal["mentor", "mentee"]] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    sessions, total = await SessionRepository(db).list_for_user(
        actor.user_id, role=role, status=status_filter, page=page, page_size=page_size
    )
    return PaginatedResponse(
        items=[SessionResponse.model_validate(s) for s in sessions],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=(total + page_size - 1) // page_size,
    )


@router.get("/{session_id}", response_model=ApiResponse[SessionResponse])
async def get_session(
    session_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    session = await _visible_session(session_id, actor, db)
    return ApiResponse(data=SessionResponse.model_validate(session))


@router.get("/{session_id}/history", response_model=ApiResponse[List[AuditLogResponse]])
async def get_session_history(
    session_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Audit trail of a session, oldest first. Visible to its participants."""
    await _visible_session(session_id, actor, db)
    entries = await AuditTrail(db).for_session(session_id)
    return ApiResponse(data=[AuditLogResponse.model_validate(e) for e in entries])


@router.get(
    "/{session_id}/alternative-mentors", response_model=ApiResponse[AlternativeMentorsResponse]
)
async def get_alternative_mentors(
    session_id: UUID,
    actor: Actor = Depends(get_current_actor),
    engine: SessionTransitionEngine = Depends(get_transition_engine),
):
    """Verified, available mentors free at the session time, excluding mentors who withdrew."""
    session, profiles = await engine.alternative_mentors(actor, session_id)
    users = await engine.sessions.users_by_id([p.user_id for p in profiles])
    mentors = [
        MentorSummary(
            user_id=p.user_id,
            name=users[p.user_id].name,
            headline=p.headline,
            hourly_rate=p.hourly_rate,
            verification_status=p.verification_status,
        )
        for p in profiles
        if p.user_id in users
    ]
    return ApiResponse(
        data=AlternativeMentorsResponse(
            mentors=mentors,
            original_scheduled_at=session.scheduled_at,
            original_duration=session.duration_minutes,
            session_title=session.title,
        )
    )


# ── Lifecycle ─────────────────────────────────────────────────

@router.post("/{session_id}/cancel", response_model=ApiResponse[SessionResponse])
async def cancel_session(
    session_id: UUID,
    data: CancelSessionRequest,
    actor: Actor = Depends(get_current_actor),
    engine: SessionTransitionEngine = Depends(get_transition_engine),
    db: AsyncSession = Depends(get_db),
):
    """
    Cancel as mentor or mentee. The refund follows the tiered policy.
    A mentor may set `offer_reassignment` to hand the session to another mentor
    instead; the mentee then accepts the proposal or picks someone else.
    """
    outcome = await engine.cancel(
        actor, session_id, reason=data.reason, offer_reassignment=data.offer_reassignment
    )
    response = SessionResponse.model_validate(outcome.session)
    await commit_and_notify(db, outcome)
    if outcome.refund is None:
        message = "Mentor withdrew; the mentee has been asked to confirm a new mentor"
    else:
        message = "Session cancelled successfully"
    return ApiResponse(data=response, message=message)


@router.post("/{session_id}/complete", response_model=ApiResponse[SessionResponse])
async def complete_session(
    session_id: UUID,
    data: Optional[CompleteSessionRequest] = None,
    actor: Actor = Depends(get_current_actor),
    engine: SessionTransitionEngine = Depends(get_transition_engine),
    db: AsyncSession = Depends(get_db),
):
    outcome = await engine.complete(
        actor, session_id, actual_duration=data.actual_duration if data else None
    )
    response = SessionResponse.model_validate(outcome.session)
    await commit_and_notify(db, outcome)
    return ApiResponse(data=response, message="Session marked as completed")


@router.post("/{session_id}/start", response_model=ApiResponse[SessionResponse])
async def start_session(
    session_id: UUID,
    actor: Actor = Depends(get_current_actor),
    engine: SessionTransitionEngine = Depends(get_transition_engine),
    db: AsyncSession = Depends(get_db),
):
    outcome = await engine.start(actor, session_id)
    response = SessionResponse.model_validate(outcome.session)
    await commit_and_notify(db, outcome)
    return ApiResponse(data=response, message="Session started")


@router.post("/{session_id}/no-show", response_model=ApiResponse[SessionResponse])
async def mark_no_show(
    session_id: UUID,
    actor: Actor = Depends(get_current_actor),
    engine: SessionTransitionEngine = Depends(get_transition_engine),
    db: AsyncSession = Depends(get_db),
):
    """Mentor reports that the mentee did not attend. Allowed up to 24 hours after the start time."""
    outcome = await engine.mark_no_show(actor, session_id)
    response = SessionResponse.model_validate(outcome.session)
    await commit_and_notify(db, outcome)
    return ApiResponse(data=response, message="Session marked as no-show")


# ── Reassignment ──────────────────────────────────────────────

@router.post("/{session_id}/accept-reassignment", response_model=ApiResponse[SessionResponse])
async def accept_reassignment(
    session_id: UUID,
    actor: Actor = Depends(get_current_actor),
    engine: SessionTransitionEngine = Depends(get_transition_engine),
    db: AsyncSession = Depends(get_db),
):
    outcome = await engine.accept_reassignment(actor, session_id)
    response = SessionResponse.model_validate(outcome.session)
    await commit_and_notify(db, outcome)
    return ApiResponse(data=response, message="Reassignment accepted")


@router.post("/{session_id}/reject-reassignment", response_model=ApiResponse[SessionResponse])
async def reject_reassignment(
    session_id: UUID,
    data: Optional[RejectReassignmentRequest] = None,
    actor: Actor = Depends(get_current_actor),
    engine: SessionTransitionEngine = Depends(get_transition_engine),
    db: AsyncSession = Depends(get_db),
):
    """Decline the proposed mentor. The session is cancelled with a full refund."""
    outcome = await engine.reject_reassignment(
        actor, session_id, reason=data.reason if data else None
    )
    response = SessionResponse.model_validate(outcome.session)
    await commit_and_notify(db, outcome)
    return ApiResponse(data=response, message="Reassignment rejected; full refund issued")


@router.post("/{session_id}/select-alternative-mentor", response_model=ApiResponse[SessionResponse])
async def select_alternative_mentor(
    session_id: UUID,
    data: SelectAlternativeMentorRequest,
    actor: Actor = Depends(get_current_actor),
    engine: SessionTransitionEngine = Depends(get_transition_engine),
    db: AsyncSession = Depends(get_db),
):
    outcome = await engine.select_alternative_mentor(
        actor, session_id, new_mentor_id=data.new_mentor_id, scheduled_at=data.scheduled_at
    )
    response = SessionResponse.model_validate(outcome.session)
    await commit_and_notify(db, outcome)
    return ApiResponse(data=response, message="New mentor assigned")


# ── Reschedule ────────────────────────────────────────────────

@router.post("/{session_id}/reschedule", response_model=ApiResponse[RescheduleOutcome])
async def propose_reschedule(
    session_id: UUID,
    data: RescheduleProposeRequest,
    actor: Actor = Depends(get_current_actor),
    engine: SessionTransitionEngine = Depends(get_transition_engine),
    db: AsyncSession = Depends(get_db),
):
    outcome = await engine.propose_reschedule(
        actor,
        session_id,
        proposed_time=data.proposed_time,
        proposed_duration=data.proposed_duration,
        reason=data.reason,
    )
    response = _reschedule_outcome(outcome)
    await commit_and_notify(db, outcome)
    return ApiResponse(data=response, message="Reschedule request sent")


@router.post("/{session_id}/reschedule/respond", response_model=ApiResponse[RescheduleOutcome])
async def respond_to_reschedule(
    session_id: UUID,
    data: RescheduleRespondRequest,
    actor: Actor = Depends(get_current_actor),
    engine: SessionTransitionEngine = Depends(get_transition_engine),
    db: AsyncSession = Depends(get_db),
):
    """Accept, reject, counter-propose, or cancel the session instead."""
    outcome = await engine.respond_reschedule(
        actor,
        session_id,
        action=data.action,
        counter_proposed_time=data.counter_proposed_time,
        note=data.note,
    )
    response = _reschedule_outcome(outcome)
    await commit_and_notify(db, outcome)
    return ApiResponse(data=response, message=f"Reschedule request updated ({data.action})")


@router.post("/{session_id}/reschedule/withdraw", response_model=ApiResponse[RescheduleOutcome])
async def withdraw_reschedule(
    session_id: UUID,
    actor: Actor = Depends(get_current_actor),
    engine: SessionTransitionEngine = Depends(get_transition_engine),
    db: AsyncSession = Depends(get_db),
):
    outcome = await engine.withdraw_reschedule(actor, session_id)
    response = _reschedule_outcome(outcome)
    await commit_and_notify(db, outcome)
    return ApiResponse(data=response, message="Reschedule request withdrawn")
