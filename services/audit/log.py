"""
services/audit/log.py
Append-only audit trail for session and policy actions.

Entries are added to the caller's transaction so the audit row and the
state change it describes commit together. There is no update or delete path.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from fastapi import Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import AuditAction, SessionAuditLog
from shared.utils.clock import Clock, utc_now


@dataclass(frozen=True)
class RequestMeta:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_request(cls, request: Request) -> "RequestMeta":
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            ip = forwarded.split(",")[0].strip()
        else:
            ip = request.headers.get("x-real-ip") or (request.client.host if request.client else None)
        user_agent = request.headers.get("user-agent")
        return cls(ip_address=ip or None, user_agent=user_agent[:500] if user_agent else None)


def get_request_meta(request: Request) -> RequestMeta:
    """FastAPI dependency."""
    return RequestMeta.from_request(request)


def _plain(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value.value if isinstance(value, Enum) else str(value)


class AuditTrail:
    def __init__(self, db: AsyncSession, clock: Clock = utc_now):
        self.db = db
        self.clock = clock

    def record(
        self,
        action: AuditAction,
        session_id: Optional[uuid.UUID],
        actor_id: Optional[uuid.UUID],
        previous_status: Any = None,
        new_status: Any = None,
        reason_details: Optional[str] = None,
        policy_snapshot: Optional[dict] = None,
        request_meta: Optional[RequestMeta] = None,
        reason_category: Optional[str] = None,
    ) -> SessionAuditLog:
        meta = request_meta or RequestMeta()
        entry = SessionAuditLog(
            session_id=session_id,
            user_id=actor_id,
            action=_plain(action),
            previous_status=_plain(previous_status),
            new_status=_plain(new_status),
            reason_category=reason_category,
            reason_details=reason_details,
            policy_snapshot=policy_snapshot,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            created_at=self.clock(),
        )
        self.db.add(entry)
        return entry

    async def for_session(self, session_id: uuid.UUID) -> list[SessionAuditLog]:
        result = await self.db.execute(
            select(SessionAuditLog)
            .where(SessionAuditLog.session_id == session_id)
            .order_by(SessionAuditLog.created_at.asc())
        )
        return list(result.scalars())

    async def search(
        self,
        action: Optional[str] = None,
        user_id: Optional[uuid.UUID] = None,
        session_id: Optional[uuid.UUID] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[SessionAuditLog], int]:
        query = select(SessionAuditLog)
        if action:
            query = query.where(SessionAuditLog.action == action)
        if user_id:
            query = query.where(SessionAuditLog.user_id == user_id)
        if session_id:
            query = query.where(SessionAuditLog.session_id == session_id)

        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        result = await self.db.execute(
            query.order_by(SessionAuditLog.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars()), total or 0
