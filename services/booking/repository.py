"""
services/booking/repository.py
Data access for sessions, reschedule requests and mentor lookups.
"""

import uuid
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import NotFoundException
from shared.models.models import (
    OPEN_RESCHEDULE_STATUSES,
    MentoringSession,
    MentorProfile,
    RescheduleRequest,
    SessionStatus,
    User,
    VerificationStatus,
)

# Longest bookable session; bounds the overlap search window.
MAX_SESSION_MINUTES = 240

ACTIVE_SESSION_STATUSES = (SessionStatus.SCHEDULED, SessionStatus.IN_PROGRESS)


class SessionRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Sessions ──────────────────────────────────────────────

    async def get(self, session_id: uuid.UUID, lock: bool = False) -> MentoringSession:
        """
        Load a session. With `lock=True` the row is selected FOR UPDATE and the
        identity map is refreshed, so the caller checks preconditions against
        the committed state.
        """
        query = select(MentoringSession).where(MentoringSession.id == session_id)
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        session = (await self.db.execute(query)).scalar_one_or_none()
        if session is None:
            raise NotFoundException("Session not found")
        return session

    async def list_for_user(
        self,
        user_id: uuid.UUID,
        role: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[MentoringSession], int]:
        if role == "mentor":
            query = select(MentoringSession).where(MentoringSession.mentor_id == user_id)
        elif role == "mentee":
            query = select(MentoringSession).where(MentoringSession.mentee_id == user_id)
        else:
            query = select(MentoringSession).where(
                or_(MentoringSession.mentor_id == user_id, MentoringSession.mentee_id == user_id)
            )
        if status:
            query = query.where(MentoringSession.status == SessionStatus(status))
        return await self._paginate(query, page, page_size)

    async def search(
        self,
        status: Optional[str] = None,
        mentor_id: Optional[uuid.UUID] = None,
        mentee_id: Optional[uuid.UUID] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[MentoringSession], int]:
        query = select(MentoringSession)
        if status:
            query = query.where(MentoringSession.status == SessionStatus(status))
        if mentor_id:
            query = query.where(MentoringSession.mentor_id == mentor_id)
        if mentee_id:
            query = query.where(MentoringSession.mentee_id == mentee_id)
        return await self._paginate(query, page, page_size)

    async def _paginate(self, query, page: int, page_size: int) -> tuple[list[MentoringSession], int]:
        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        result = await self.db.execute(
            query.order_by(MentoringSession.scheduled_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars()), total or 0

    # ── Users / mentors ───────────────────────────────────────

    async def get_user(self, user_id: uuid.UUID) -> Optional[User]:
        return await self.db.get(User, user_id)

    async def users_by_id(self, user_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, User]:
        if not user_ids:
            return {}
        result = await self.db.execute(select(User).where(User.id.in_(list(user_ids))))
        return {u.id: u for u in result.scalars()}

    async def get_mentor_profile(self, user_id: uuid.UUID) -> Optional[MentorProfile]:
        result = await self.db.execute(
            select(MentorProfile).where(MentorProfile.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def busy_mentor_ids(
        self,
        mentor_ids: Sequence[uuid.UUID],
        starts_at: datetime,
        ends_at: datetime,
        exclude_session_id: Optional[uuid.UUID] = None,
    ) -> set[uuid.UUID]:
        """Mentors with an active session overlapping [starts_at, ends_at)."""
        if not mentor_ids:
            return set()
        query = select(MentoringSession).where(
            MentoringSession.mentor_id.in_(list(mentor_ids)),
            MentoringSession.status.in_(ACTIVE_SESSION_STATUSES),
            MentoringSession.scheduled_at < ends_at,
            MentoringSession.scheduled_at > starts_at - timedelta(minutes=MAX_SESSION_MINUTES),
        )
        if exclude_session_id:
            query = query.where(MentoringSession.id != exclude_session_id)
        result = await self.db.execute(query)
        return {s.mentor_id for s in result.scalars() if s.ends_at > starts_at}

    async def find_alternative_mentors(
        self, session: MentoringSession, limit: int = 20
    ) -> list[MentorProfile]:
        """
        Verified, available mentors who could take `session`: not the current
        mentor, not the mentee, not a mentor who already dropped it, and free
        for the session's time slot.
        """
        excluded = {session.mentor_id, session.mentee_id}
        excluded.update(uuid.UUID(str(m)) for m in (session.cancelled_mentor_ids or []))

        result = await self.db.execute(
            select(MentorProfile)
            .where(
                MentorProfile.verification_status == VerificationStatus.VERIFIED,
                MentorProfile.is_available.is_(True),
                MentorProfile.user_id.not_in(list(excluded)),
            )
            .order_by(MentorProfile.created_at.asc())
        )
        candidates = list(result.scalars())
        busy = await self.busy_mentor_ids(
            [p.user_id for p in candidates],
            session.scheduled_at,
            session.ends_at,
            exclude_session_id=session.id,
        )
        return [p for p in candidates if p.user_id not in busy][:limit]

    # ── Reschedule requests ───────────────────────────────────

    async def get_reschedule_request(
        self, request_id: uuid.UUID, lock: bool = False
    ) -> Optional[RescheduleRequest]:
        query = select(RescheduleRequest).where(RescheduleRequest.id == request_id)
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        return (await self.db.execute(query)).scalar_one_or_none()

    async def expired_open_requests(self, now: datetime, limit: int = 200) -> list[RescheduleRequest]:
        result = await self.db.execute(
            select(RescheduleRequest)
            .where(
                RescheduleRequest.status.in_(list(OPEN_RESCHEDULE_STATUSES)),
                RescheduleRequest.expires_at.is_not(None),
                RescheduleRequest.expires_at <= now,
            )
            .order_by(RescheduleRequest.expires_at.asc())
            .limit(limit)
        )
        return list(result.scalars())
