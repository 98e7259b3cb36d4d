"""
services/admin/router.py
Admin-only endpoints: session overrides, policy administration
and the immutable audit trail.

Every mutation appends an audit entry in the same transaction.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.audit.log import AuditTrail, RequestMeta, get_request_meta
from services.booking.engine import (
    SessionTransitionEngine,
    commit_and_notify,
    get_transition_engine,
)
from services.booking.repository import SessionRepository
from services.policy.store import PolicyChange, PolicyStore
from shared.middleware.auth import Actor, require_admin
from shared.models.models import AuditAction
from shared.schemas.schemas import (
    AdminCancelRequest,
    AdminClearNoShowRequest,
    AdminCompleteRequest,
    AdminReassignRequest,
    AdminRefundRequest,
    ApiResponse,
    AuditLogResponse,
    PaginatedResponse,
    PolicyEntry,
    PolicyUpdateRequest,
    SessionResponse,
)
from shared.utils.clock import Clock, get_clock

router = APIRouter(prefix="/admin", tags=["Admin"])


# ── Helpers ────────────────────────────────────────────────────

def _change_payload(changes: list[PolicyChange]) -> list[dict]:
    return [{"key": c.key, "previous": c.previous, "new": c.new} for c in changes]


def _page(items: list, total: int, page: int, page_size: int) -> PaginatedResponse:
    return PaginatedResponse(
        items=items,
        total=total,
        page=page,
        page_size=page_size,
        total_pages=-(-total // page_size),  # ceiling division
    )


# ── Sessions ───────────────────────────────────────────────────

@router.get("/sessions", response_model=PaginatedResponse)
async def list_sessions(
    status_filter: Optional[str] = Query(None, alias="status"),
    mentor_id: Optional[UUID] = Query(None),
    mentee_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    admin: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    sessions, total = await SessionRepository(db).search(
        status=status_filter, mentor_id=mentor_id, mentee_id=mentee_id, page=page, page_size=page_size
    )
    return _page([SessionResponse.model_validate(s) for s in sessions], total, page, page_size)


@router.get("/sessions/{session_id}", response_model=ApiResponse[SessionResponse])
async def get_session(
    session_id: UUID,
    admin: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    session = await SessionRepository(db).get(session_id)
    return ApiResponse(data=SessionResponse.model_validate(session))


@router.post("/sessions/{session_id}/cancel", response_model=ApiResponse[SessionResponse])
async def force_cancel(
    session_id: UUID,
    data: AdminCancelRequest,
    admin: Actor = Depends(require_admin),
    engine: SessionTransitionEngine = Depends(get_transition_engine),
    db: AsyncSession = Depends(get_db),
):
    """
    Cancel any non-terminal session with an explicit refund percentage.
    No-show sessions must be cleared first (restore as cancelled).
    """
    outcome = await engine.admin_cancel(
        admin,
        session_id,
        reason=data.reason,
        refund_percentage=data.refund_percentage,
        notify_parties=data.notify_parties,
    )
    response = SessionResponse.model_validate(outcome.session)
    await commit_and_notify(db, outcome)
    return ApiResponse(data=response, message="Session cancelled by admin")


@router.post("/sessions/{session_id}/complete", response_model=ApiResponse[SessionResponse])
async def force_complete(
    session_id: UUID,
    data: AdminCompleteRequest,
    admin: Actor = Depends(require_admin),
    engine: SessionTransitionEngine = Depends(get_transition_engine),
    db: AsyncSession = Depends(get_db),
):
    outcome = await engine.admin_complete(
        admin, session_id, reason=data.reason, actual_duration=data.actual_duration
    )
    response = SessionResponse.model_validate(outcome.session)
    await commit_and_notify(db, outcome)
    return ApiResponse(data=response, message="Session completed by admin")


@router.post("/sessions/{session_id}/reassign", response_model=ApiResponse[SessionResponse])
async def reassign_session(
    session_id: UUID,
    data: AdminReassignRequest,
    admin: Actor = Depends(require_admin),
    engine: SessionTransitionEngine = Depends(get_transition_engine),
    db: AsyncSession = Depends(get_db),
):
    outcome = await engine.admin_reassign(
        admin,
        session_id,
        new_mentor_id=data.new_mentor_id,
        reason=data.reason,
        notify_parties=data.notify_parties,
    )
    response = SessionResponse.model_validate(outcome.session)
    await commit_and_notify(db, outcome)
    return ApiResponse(data=response, message="Session reassigned")


@router.post("/sessions/{session_id}/refund", response_model=ApiResponse[SessionResponse])
async def issue_refund(
    session_id: UUID,
    data: AdminRefundRequest,
    admin: Actor = Depends(require_admin),
    engine: SessionTransitionEngine = Depends(get_transition_engine),
    db: AsyncSession = Depends(get_db),
):
    """`bonus` adds to the current refund; `full` and `partial` replace it."""
    outcome = await engine.manual_refund(
        admin, session_id, amount=data.amount, reason=data.reason, refund_type=data.refund_type
    )
    response = SessionResponse.model_validate(outcome.session)
    await commit_and_notify(db, outcome)
    return ApiResponse(data=response, message="Refund recorded")


@router.post("/sessions/{session_id}/clear-no-show", response_model=ApiResponse[SessionResponse])
async def clear_no_show(
    session_id: UUID,
    data: AdminClearNoShowRequest,
    admin: Actor = Depends(require_admin),
    engine: SessionTransitionEngine = Depends(get_transition_engine),
    db: AsyncSession = Depends(get_db),
):
    outcome = await engine.clear_no_show(
        admin,
        session_id,
        reason=data.reason,
        restore_status=data.restore_status,
        notify_parties=data.notify_parties,
    )
    response = SessionResponse.model_validate(outcome.session)
    await commit_and_notify(db, outcome)
    return ApiResponse(data=response, message=f"No-show cleared; session restored as {data.restore_status}")


@router.get("/sessions/{session_id}/audit-log", response_model=ApiResponse[list[AuditLogResponse]])
async def get_session_audit_log(
    session_id: UUID,
    admin: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await SessionRepository(db).get(session_id)
    entries = await AuditTrail(db).for_session(session_id)
    return ApiResponse(data=[AuditLogResponse.model_validate(e) for e in entries])


# ── Policies ───────────────────────────────────────────────────

@router.get("/policies", response_model=ApiResponse[dict])
async def get_policies(
    admin: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Every policy with its effective value and default, plus the grouped view."""
    store = PolicyStore(db)
    entries = [PolicyEntry(**e) for e in await store.list_policies()]
    return ApiResponse(data={"policies": entries, "grouped": await store.grouped()})


@router.patch("/policies", response_model=ApiResponse[dict])
async def update_policies(
    data: PolicyUpdateRequest,
    admin: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    request_meta: RequestMeta = Depends(get_request_meta),
):
    """
    Update one or more policies. The batch is validated as a whole:
    an unknown key or a bad value rejects every item.
    """
    store = PolicyStore(db)
    changes = await store.update([(item.key, item.value) for item in data.updates])
    AuditTrail(db, clock).record(
        AuditAction.ADMIN_POLICY_UPDATED,
        session_id=None,
        actor_id=admin.user_id,
        reason_details=f"Updated {len(changes)} policies",
        policy_snapshot={"changes": _change_payload(changes)},
        request_meta=request_meta,
        reason_category="admin_action",
    )
    await db.commit()
    return ApiResponse(
        data={"updated": _change_payload(changes), "grouped": await store.grouped()},
        message="Policies updated",
    )


@router.post("/policies/reset", response_model=ApiResponse[dict])
async def reset_policies(
    admin: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    request_meta: RequestMeta = Depends(get_request_meta),
):
    store = PolicyStore(db)
    changes = await store.reset()
    AuditTrail(db, clock).record(
        AuditAction.ADMIN_POLICY_RESET,
        session_id=None,
        actor_id=admin.user_id,
        reason_details="Reset all policies to defaults",
        policy_snapshot={"changes": _change_payload(changes)},
        request_meta=request_meta,
        reason_category="admin_action",
    )
    await db.commit()
    return ApiResponse(data={"grouped": await store.grouped()}, message="Policies reset to defaults")


# ── Audit Log ──────────────────────────────────────────────────

@router.get("/audit-log", response_model=PaginatedResponse)
async def get_audit_log(
    action: Optional[str] = Query(None),
    user_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    admin: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Read-only. Audit entries cannot be modified or deleted."""
    entries, total = await AuditTrail(db).search(
        action=action, user_id=user_id, page=page, page_size=page_size
    )
    return _page([AuditLogResponse.model_validate(e) for e in entries], total, page, page_size)
