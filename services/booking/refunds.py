"""
services/booking/refunds.py
Refund rules for session cancellation and admin adjustments.

Pure functions: no database access. The engine passes in the policy values it
read for the current request and stores the resulting decision on the session
and in the audit snapshot.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from shared.models.models import RefundStatus

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class RefundDecision:
    percentage: int
    amount: Decimal
    tier: str
    policy_basis: str
    hours_before_session: Optional[float] = None

    @property
    def status(self) -> RefundStatus:
        return RefundStatus.PENDING if self.amount > 0 else RefundStatus.NONE

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "refund_percentage": self.percentage,
            "refund_amount": str(self.amount),
            "tier": self.tier,
            "policy_basis": self.policy_basis,
        }
        if self.hours_before_session is not None:
            payload["hours_before_session"] = round(self.hours_before_session, 2)
        return payload


def clamp_percentage(value: int) -> int:
    return max(0, min(100, int(value)))


def amount_for(rate: Decimal, percentage: int) -> Decimal:
    """rate * percentage / 100, rounded to cents."""
    return (Decimal(rate) * Decimal(clamp_percentage(percentage)) / Decimal(100)).quantize(
        CENTS, rounding=ROUND_HALF_UP
    )


def tiered_refund(
    rate: Decimal,
    hours_before: float,
    free_cancellation_hours: int,
    cutoff_hours: int,
    partial_percentage: int,
    late_percentage: int,
) -> RefundDecision:
    """
    Step function of the time left before the session:

        hours_before > free_cancellation_hours        -> 100%
        cutoff_hours <= hours_before <= free window   -> partial_percentage
        hours_before < cutoff_hours                   -> late_percentage
    """
    if hours_before > free_cancellation_hours:
        pct, tier = 100, "full"
        basis = f"Cancelled more than {free_cancellation_hours}h before the session"
    elif hours_before >= cutoff_hours:
        pct, tier = clamp_percentage(partial_percentage), "partial"
        basis = f"Cancelled between {cutoff_hours}h and {free_cancellation_hours}h before the session"
    else:
        pct, tier = clamp_percentage(late_percentage), "late"
        basis = f"Cancelled less than {cutoff_hours}h before the session"
    return RefundDecision(pct, amount_for(rate, pct), tier, basis, hours_before)


def full_refund(rate: Decimal, basis: str, hours_before: Optional[float] = None) -> RefundDecision:
    return RefundDecision(100, amount_for(rate, 100), "full", basis, hours_before)


def admin_refund(rate: Decimal, percentage: int) -> RefundDecision:
    pct = clamp_percentage(percentage)
    return RefundDecision(pct, amount_for(rate, pct), "admin", f"Admin set refund to {pct}%")


def manual_refund(
    rate: Decimal,
    current_amount: Decimal,
    amount: Decimal,
    refund_type: str,
) -> RefundDecision:
    """
    Admin override of the refund amount. `bonus` adds to what was already
    granted; `full` and `partial` replace it. The percentage is derived from
    the new total and clamped to 0..100 (0 for free sessions).
    """
    amount = Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)
    if refund_type == "bonus":
        total = Decimal(current_amount or 0) + amount
    else:
        total = amount

    rate = Decimal(rate or 0)
    if rate > 0:
        pct = int((total / rate * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    else:
        pct = 0
    return RefundDecision(
        clamp_percentage(pct), total, refund_type, f"Manual {refund_type} refund by admin"
    )
