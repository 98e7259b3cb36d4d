"""
shared/models/models.py
All SQLAlchemy ORM models for the mentoring session service.
UUID primary keys throughout; JSON columns map to JSONB on PostgreSQL.
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Any, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base
from shared.utils.clock import utc_now


# ── Column Types ──────────────────────────────────────────────

JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def _enum(enum_cls: type[PyEnum]) -> Enum:
    """Store enum values (not member names) in a plain VARCHAR column."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=40,
    )


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    MENTEE = "MENTEE"
    MENTOR = "MENTOR"
    ADMIN = "ADMIN"


class VerificationStatus(str, PyEnum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    SUSPENDED = "SUSPENDED"


class SessionStatus(str, PyEnum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.CANCELLED})


class SessionType(str, PyEnum):
    FREE = "FREE"
    PAID = "PAID"
    COUNSELING = "COUNSELING"


class MeetingType(str, PyEnum):
    VIDEO = "video"
    AUDIO = "audio"
    CHAT = "chat"


class RefundStatus(str, PyEnum):
    NONE = "none"
    PENDING = "pending"
    PROCESSED = "processed"


class PartyRole(str, PyEnum):
    """Which side of a session performed an action."""
    MENTOR = "mentor"
    MENTEE = "mentee"
    ADMIN = "admin"


class ReassignmentStatus(str, PyEnum):
    NONE = "none"
    PENDING_ACCEPTANCE = "pending_acceptance"
    AWAITING_MENTEE_CHOICE = "awaiting_mentee_choice"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class RescheduleStatus(str, PyEnum):
    PENDING = "pending"
    COUNTER_PROPOSED = "counter_proposed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


OPEN_RESCHEDULE_STATUSES = frozenset({RescheduleStatus.PENDING, RescheduleStatus.COUNTER_PROPOSED})


class PolicyType(str, PyEnum):
    INTEGER = "integer"
    BOOLEAN = "boolean"
    STRING = "string"
    JSON = "json"


class AuditAction(str, PyEnum):
    # Participant actions
    SESSION_BOOKED = "SESSION_BOOKED"
    SESSION_CANCELLED = "SESSION_CANCELLED"
    SESSION_STARTED = "SESSION_STARTED"
    SESSION_COMPLETED = "SESSION_COMPLETED"
    NO_SHOW_MARKED = "NO_SHOW_MARKED"
    MENTOR_CANCELLED_REASSIGNMENT_OFFERED = "MENTOR_CANCELLED_REASSIGNMENT_OFFERED"
    REASSIGNMENT_ACCEPTED = "REASSIGNMENT_ACCEPTED"
    REASSIGNMENT_REJECTED = "REASSIGNMENT_REJECTED"
    ALTERNATIVE_MENTOR_SELECTED = "ALTERNATIVE_MENTOR_SELECTED"
    RESCHEDULE_REQUESTED = "RESCHEDULE_REQUESTED"
    RESCHEDULE_ACCEPTED = "RESCHEDULE_ACCEPTED"
    RESCHEDULE_REJECTED = "RESCHEDULE_REJECTED"
    RESCHEDULE_COUNTER_PROPOSED = "RESCHEDULE_COUNTER_PROPOSED"
    RESCHEDULE_WITHDRAWN = "RESCHEDULE_WITHDRAWN"
    RESCHEDULE_EXPIRED = "RESCHEDULE_EXPIRED"
    # Admin actions
    ADMIN_FORCE_CANCEL = "ADMIN_FORCE_CANCEL"
    ADMIN_FORCE_COMPLETE = "ADMIN_FORCE_COMPLETE"
    ADMIN_MANUAL_REFUND = "ADMIN_MANUAL_REFUND"
    ADMIN_REASSIGN_SESSION = "ADMIN_REASSIGN_SESSION"
    ADMIN_CLEAR_NO_SHOW = "ADMIN_CLEAR_NO_SHOW"
    ADMIN_POLICY_UPDATED = "ADMIN_POLICY_UPDATED"
    ADMIN_POLICY_RESET = "ADMIN_POLICY_RESET"


class NotificationType(str, PyEnum):
    BOOKING_CREATED = "BOOKING_CREATED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    SESSION_STARTED = "SESSION_STARTED"
    SESSION_COMPLETED = "SESSION_COMPLETED"
    SESSION_NO_SHOW = "SESSION_NO_SHOW"
    NO_SHOW_CLEARED = "NO_SHOW_CLEARED"
    REFUND_ISSUED = "REFUND_ISSUED"
    SESSION_REASSIGNED = "SESSION_REASSIGNED"
    REASSIGNMENT_PROPOSED = "REASSIGNMENT_PROPOSED"
    MENTOR_CANCELLED_CHOOSE_ALTERNATIVE = "MENTOR_CANCELLED_CHOOSE_ALTERNATIVE"
    REASSIGNMENT_ACCEPTED = "REASSIGNMENT_ACCEPTED"
    REASSIGNMENT_REJECTED = "REASSIGNMENT_REJECTED"
    RESCHEDULE_REQUEST = "RESCHEDULE_REQUEST"
    RESCHEDULE_ACCEPTED = "RESCHEDULE_ACCEPTED"
    RESCHEDULE_REJECTED = "RESCHEDULE_REJECTED"
    RESCHEDULE_COUNTER = "RESCHEDULE_COUNTER"
    RESCHEDULE_WITHDRAWN = "RESCHEDULE_WITHDRAWN"
    RESCHEDULE_EXPIRED = "RESCHEDULE_EXPIRED"


class PlanAudience(str, PyEnum):
    MENTOR = "mentor"
    MENTEE = "mentee"


class PlanStatus(str, PyEnum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class FeatureValueType(str, PyEnum):
    BOOLEAN = "boolean"
    COUNT = "count"
    MINUTES = "minutes"
    TEXT = "text"
    AMOUNT = "amount"
    PERCENT = "percent"
    JSON = "json"


class LimitInterval(str, PyEnum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class SubscriptionStatus(str, PyEnum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    EXPIRED = "expired"


LIVE_SUBSCRIPTION_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        server_default=func.now(),
        onupdate=utc_now,
        nullable=False,
    )


# ── Identity ──────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Account known to the identity provider. May hold several roles."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    roles: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    mentor_profile: Mapped[Optional["MentorProfile"]] = relationship(
        back_populates="user", uselist=False, lazy="selectin"
    )

    @property
    def role_set(self) -> frozenset[UserRole]:
        return frozenset(UserRole(r) for r in (self.roles or []))

    def __repr__(self) -> str:
        return f"<User {self.email} {sorted(self.roles or [])}>"


class MentorProfile(TimestampMixin, Base):
    """Mentor's professional profile; verification gates reassignment."""
    __tablename__ = "mentor_profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    headline: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    hourly_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    verification_status: Mapped[VerificationStatus] = mapped_column(
        _enum(VerificationStatus), default=VerificationStatus.PENDING, nullable=False
    )
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    user: Mapped["User"] = relationship(back_populates="mentor_profile")

    @property
    def is_verified(self) -> bool:
        return self.verification_status == VerificationStatus.VERIFIED


# ── Sessions ──────────────────────────────────────────────────

class MentoringSession(TimestampMixin, Base):
    """
    A booked meeting between one mentor and one mentee.
    Status transitions: scheduled → in_progress | completed | cancelled | no_show;
    no_show → completed | cancelled (admin clear). Rows are never deleted.
    """
    __tablename__ = "mentoring_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    mentor_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    mentee_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Schedule
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    meeting_type: Mapped[MeetingType] = mapped_column(
        _enum(MeetingType), default=MeetingType.VIDEO, nullable=False
    )
    session_type: Mapped[SessionType] = mapped_column(
        _enum(SessionType), default=SessionType.PAID, nullable=False
    )

    # Lifecycle
    status: Mapped[SessionStatus] = mapped_column(
        _enum(SessionStatus), default=SessionStatus.SCHEDULED, nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Pricing / refunds
    rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    refund_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0.00"), nullable=False
    )
    refund_percentage: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    refund_status: Mapped[RefundStatus] = mapped_column(
        _enum(RefundStatus), default=RefundStatus.NONE, nullable=False
    )

    # Cancellation
    cancelled_by: Mapped[Optional[PartyRole]] = mapped_column(_enum(PartyRole), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # No-show
    no_show_marked_by: Mapped[Optional[PartyRole]] = mapped_column(_enum(PartyRole), nullable=True)
    no_show_marked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Reassignment
    was_reassigned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reassigned_from_mentor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    reassigned_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    reassignment_status: Mapped[ReassignmentStatus] = mapped_column(
        _enum(ReassignmentStatus), default=ReassignmentStatus.NONE, nullable=False
    )
    cancelled_mentor_ids: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)

    # Reschedule linkage (weak pointer, not ownership)
    pending_reschedule_request_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    pending_reschedule_time: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    pending_reschedule_by: Mapped[Optional[PartyRole]] = mapped_column(
        _enum(PartyRole), nullable=True
    )
    rescheduled_from: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    reschedule_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    mentor_reschedule_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Optimistic concurrency: UPDATE ... WHERE version = :expected
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "refund_percentage >= 0 AND refund_percentage <= 100",
            name="ck_session_refund_percentage_range",
        ),
        Index("ix_sessions_mentor_id", "mentor_id"),
        Index("ix_sessions_mentee_id", "mentee_id"),
        Index("ix_sessions_status", "status"),
        Index("ix_sessions_scheduled_at", "scheduled_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def ends_at(self) -> datetime:
        return self.scheduled_at + timedelta(minutes=self.duration_minutes)

    def party_of(self, user_id: uuid.UUID) -> Optional[PartyRole]:
        if user_id == self.mentor_id:
            return PartyRole.MENTOR
        if user_id == self.mentee_id:
            return PartyRole.MENTEE
        return None

    def counterpart_of(self, user_id: uuid.UUID) -> uuid.UUID:
        return self.mentee_id if user_id == self.mentor_id else self.mentor_id


class RescheduleRequest(TimestampMixin, Base):
    """Negotiation to move a session's scheduled time. Resolved exactly once."""
    __tablename__ = "reschedule_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("mentoring_sessions.id"), nullable=False
    )
    initiated_by: Mapped[PartyRole] = mapped_column(_enum(PartyRole), nullable=False)
    initiator_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    status: Mapped[RescheduleStatus] = mapped_column(
        _enum(RescheduleStatus), default=RescheduleStatus.PENDING, nullable=False
    )
    proposed_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    proposed_duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    original_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    counter_proposed_time: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    counter_proposed_by: Mapped[Optional[PartyRole]] = mapped_column(
        _enum(PartyRole), nullable=True
    )
    counter_proposal_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    resolved_by: Mapped[Optional[PartyRole]] = mapped_column(_enum(PartyRole), nullable=True)
    resolver_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    resolution_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_reschedule_requests_session_id", "session_id"),
        Index("ix_reschedule_requests_status_expires", "status", "expires_at"),
    )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_RESCHEDULE_STATUSES

    @property
    def effective_time(self) -> datetime:
        """Time currently on the table: the latest counter-proposal, else the original proposal."""
        if self.status == RescheduleStatus.COUNTER_PROPOSED and self.counter_proposed_time:
            return self.counter_proposed_time
        return self.proposed_time


class SessionAuditLog(Base):
    """Append-only history of every state-changing action. Never updated."""
    __tablename__ = "session_audit_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("mentoring_sessions.id"), nullable=True
    )
    # NULL for system actions such as the reschedule expiry sweep
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("users.id"), nullable=True)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    previous_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    reason_category: Mapped[Optional[str]] = mapped_column(String(60), nullable=True)
    reason_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    policy_snapshot: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_session_audit_session_id", "session_id"),
        Index("ix_session_audit_user_id", "user_id"),
        Index("ix_session_audit_created_at", "created_at"),
    )


class SessionPolicy(TimestampMixin, Base):
    """Admin-configurable policy parameter stored as text and typed by policy_type."""
    __tablename__ = "session_policies"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    policy_key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    policy_value: Mapped[str] = mapped_column(Text, nullable=False)
    policy_type: Mapped[PolicyType] = mapped_column(_enum(PolicyType), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class Notification(Base):
    """In-app notification. Email copies are delivered by Celery."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    type: Mapped[NotificationType] = mapped_column(_enum(NotificationType), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    related_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    related_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    action_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, server_default=func.now(), nullable=False
    )

    __table_args__ = (Index("ix_notifications_user_id_read", "user_id", "is_read"),)


# ── Subscriptions ─────────────────────────────────────────────

class SubscriptionPlan(TimestampMixin, Base):
    __tablename__ = "subscription_plans"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    plan_key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    audience: Mapped[PlanAudience] = mapped_column(_enum(PlanAudience), nullable=False)
    status: Mapped[PlanStatus] = mapped_column(
        _enum(PlanStatus), default=PlanStatus.ACTIVE, nullable=False
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    plan_features: Mapped[List["SubscriptionPlanFeature"]] = relationship(
        back_populates="plan", lazy="selectin"
    )


class SubscriptionFeature(TimestampMixin, Base):
    __tablename__ = "subscription_features"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    feature_key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    value_type: Mapped[FeatureValueType] = mapped_column(_enum(FeatureValueType), nullable=False)
    unit: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    is_metered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class SubscriptionPlanFeature(TimestampMixin, Base):
    """Per-plan inclusion and limits for a feature."""
    __tablename__ = "subscription_plan_features"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    plan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscription_plans.id", ondelete="CASCADE"), nullable=False
    )
    feature_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscription_features.id", ondelete="CASCADE"), nullable=False
    )
    is_included: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    limit_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    limit_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    limit_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    limit_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    limit_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    limit_json: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    limit_interval: Mapped[Optional[LimitInterval]] = mapped_column(
        _enum(LimitInterval), nullable=True
    )
    limit_interval_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    plan: Mapped["SubscriptionPlan"] = relationship(back_populates="plan_features")
    feature: Mapped["SubscriptionFeature"] = relationship(lazy="joined")

    __table_args__ = (UniqueConstraint("plan_id", "feature_id", name="uq_plan_feature"),)


class Subscription(TimestampMixin, Base):
    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    plan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscription_plans.id"), nullable=False
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum(SubscriptionStatus), default=SubscriptionStatus.ACTIVE, nullable=False
    )
    current_period_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    plan: Mapped["SubscriptionPlan"] = relationship(lazy="joined")

    __table_args__ = (Index("ix_subscriptions_user_status", "user_id", "status"),)


class SubscriptionUsageTracking(TimestampMixin, Base):
    """Running counters for one (subscription, feature, period)."""
    __tablename__ = "subscription_usage_tracking"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False
    )
    feature_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscription_features.id"), nullable=False
    )
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    usage_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    usage_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0.00"), nullable=False
    )
    period_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "feature_id", "period_start", name="uq_usage_tracking_period"
        ),
    )


class SubscriptionUsageEvent(Base):
    """Append-only usage deltas; idempotency_key deduplicates retries."""
    __tablename__ = "subscription_usage_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False
    )
    feature_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscription_features.id"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    count_delta: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    minutes_delta: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    amount_delta: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0.00"), nullable=False
    )
    resource_type: Mapped[str] = mapped_column(String(60), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("subscription_id", "idempotency_key", name="uq_usage_event_idempotency"),
    )
