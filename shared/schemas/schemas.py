"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the service.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from shared.models.models import (
    FeatureValueType,
    LimitInterval,
    MeetingType,
    NotificationType,
    PartyRole,
    PlanAudience,
    ReassignmentStatus,
    RefundStatus,
    RescheduleStatus,
    SessionStatus,
    SessionType,
    SubscriptionStatus,
    VerificationStatus,
)

T = TypeVar("T")


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class ApiResponse(BaseModel, Generic[T]):
    """Envelope returned by every action endpoint."""
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    total_pages: int


# ── User ──────────────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: uuid.UUID
    email: EmailStr
    name: str
    avatar_url: Optional[str]
    roles: List[str]
    created_at: datetime


class MentorSummary(BaseSchema):
    user_id: uuid.UUID
    name: str
    headline: Optional[str] = None
    hourly_rate: Decimal
    verification_status: VerificationStatus


# ── Session ───────────────────────────────────────────────────

class SessionResponse(BaseSchema):
    id: uuid.UUID
    mentor_id: uuid.UUID
    mentee_id: uuid.UUID
    title: str
    description: Optional[str]
    scheduled_at: datetime
    duration_minutes: int
    meeting_type: MeetingType
    session_type: SessionType
    status: SessionStatus
    started_at: Optional[datetime]
    ended_at: Optional[datetime]

    rate: Decimal
    currency: str
    refund_amount: Decimal
    refund_percentage: int
    refund_status: RefundStatus

    cancelled_by: Optional[PartyRole]
    cancellation_reason: Optional[str]
    cancelled_at: Optional[datetime]
    no_show_marked_by: Optional[PartyRole]
    no_show_marked_at: Optional[datetime]

    was_reassigned: bool
    reassigned_from_mentor_id: Optional[uuid.UUID]
    reassigned_at: Optional[datetime]
    reassignment_status: ReassignmentStatus

    pending_reschedule_request_id: Optional[uuid.UUID]
    pending_reschedule_time: Optional[datetime]
    pending_reschedule_by: Optional[PartyRole]
    reschedule_count: int
    mentor_reschedule_count: int

    created_at: datetime
    updated_at: datetime


class SessionCreateRequest(BaseSchema):
    mentor_id: uuid.UUID
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    scheduled_at: datetime
    duration_minutes: int = Field(60, ge=15, le=240)
    meeting_type: Literal["video", "audio", "chat"] = "video"
    session_type: Literal["FREE", "PAID", "COUNSELING"] = "PAID"

    @field_validator("scheduled_at")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("scheduled_at must include a timezone offset")
        return v


class CancelSessionRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)
    offer_reassignment: bool = False


class CompleteSessionRequest(BaseSchema):
    actual_duration: Optional[int] = Field(None, ge=1, le=600)


class RejectReassignmentRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class SelectAlternativeMentorRequest(BaseSchema):
    new_mentor_id: uuid.UUID
    scheduled_at: Optional[datetime] = None


class RescheduleProposeRequest(BaseSchema):
    proposed_time: datetime
    proposed_duration: Optional[int] = Field(None, ge=15, le=240)
    reason: Optional[str] = Field(None, max_length=500)


class RescheduleRespondRequest(BaseSchema):
    action: Literal["accept", "reject", "counter_propose", "cancel_session"]
    counter_proposed_time: Optional[datetime] = None
    note: Optional[str] = Field(None, max_length=500)


class RescheduleRequestResponse(BaseSchema):
    id: uuid.UUID
    session_id: uuid.UUID
    initiated_by: PartyRole
    initiator_id: uuid.UUID
    status: RescheduleStatus
    proposed_time: datetime
    proposed_duration: Optional[int]
    original_time: datetime
    counter_proposed_time: Optional[datetime]
    counter_proposed_by: Optional[PartyRole]
    counter_proposal_count: int
    resolved_by: Optional[PartyRole]
    resolver_id: Optional[uuid.UUID]
    resolved_at: Optional[datetime]
    resolution_note: Optional[str]
    expires_at: Optional[datetime]


class RescheduleOutcome(BaseSchema):
    session: SessionResponse
    request: RescheduleRequestResponse


class AlternativeMentorsResponse(BaseSchema):
    mentors: List[MentorSummary]
    original_scheduled_at: datetime
    original_duration: int
    session_title: str


# ── Admin Session Actions ─────────────────────────────────────

class AdminCancelRequest(BaseSchema):
    reason: str = Field(..., min_length=1, max_length=1000)
    refund_percentage: int = Field(100, ge=0, le=100)
    notify_parties: bool = True


class AdminCompleteRequest(BaseSchema):
    reason: str = Field(..., min_length=1, max_length=1000)
    actual_duration: Optional[int] = Field(None, ge=1, le=600)


class AdminReassignRequest(BaseSchema):
    new_mentor_id: uuid.UUID
    reason: str = Field(..., min_length=1, max_length=1000)
    notify_parties: bool = True


class AdminRefundRequest(BaseSchema):
    amount: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    reason: str = Field(..., min_length=1, max_length=1000)
    refund_type: Literal["full", "partial", "bonus"] = "partial"


class AdminClearNoShowRequest(BaseSchema):
    reason: str = Field(..., min_length=1, max_length=1000)
    restore_status: Literal["completed", "cancelled"] = "completed"
    notify_parties: bool = False


# ── Audit ─────────────────────────────────────────────────────

class AuditLogResponse(BaseSchema):
    id: uuid.UUID
    session_id: Optional[uuid.UUID]
    user_id: Optional[uuid.UUID]
    action: str
    previous_status: Optional[str]
    new_status: Optional[str]
    reason_category: Optional[str]
    reason_details: Optional[str]
    policy_snapshot: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime


# ── Policies ──────────────────────────────────────────────────

class PolicyEntry(BaseSchema):
    key: str
    value: Any
    type: str
    description: Optional[str]
    default_value: Any
    is_default: bool


class PolicyUpdateItem(BaseSchema):
    key: str = Field(..., min_length=1, max_length=100)
    value: Any


class PolicyUpdateRequest(BaseSchema):
    updates: List[PolicyUpdateItem] = Field(..., min_length=1)


class RolePolicyView(BaseSchema):
    cancellation_cutoff_hours: int
    reschedule_cutoff_hours: int
    max_reschedules: int
    free_cancellation_hours: int


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: NotificationType
    title: str
    message: str
    related_id: Optional[str]
    related_type: Optional[str]
    action_url: Optional[str]
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime


# ── Subscription ──────────────────────────────────────────────

class PlanFeatureResponse(BaseSchema):
    feature_key: str
    name: str
    value_type: FeatureValueType
    unit: Optional[str]
    is_metered: bool
    is_included: bool
    limit_count: Optional[int]
    limit_minutes: Optional[int]
    limit_amount: Optional[Decimal]
    limit_interval: Optional[LimitInterval]
    limit_interval_count: int


class PlanResponse(BaseSchema):
    id: uuid.UUID
    plan_key: str
    name: str
    audience: PlanAudience
    description: Optional[str]
    features: List[PlanFeatureResponse] = []


class SubscriptionResponse(BaseSchema):
    id: uuid.UUID
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    plan: PlanResponse


class FeatureAccessResponse(BaseSchema):
    feature_key: str
    has_access: bool
    reason: Optional[str] = None
    limit: Optional[Decimal] = None
    usage: Optional[Decimal] = None
    remaining: Optional[Decimal] = None
    plan_key: Optional[str] = None


class UsageSummaryItem(BaseSchema):
    feature_key: str
    usage_count: int
    usage_minutes: int
    usage_amount: Decimal
    period_start: datetime
    period_end: datetime


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    success: bool = False
    error: str
    code: Optional[str] = None
    details: Optional[Any] = None
