"""
tests/test_refunds.py
Refund calculation rules: cancellation tiers, admin percentages, manual overrides.
"""

from decimal import Decimal

import pytest

from services.booking import refunds
from shared.models.models import RefundStatus

RATE = Decimal("100.00")


def _tiered(hours_before: float, rate: Decimal = RATE) -> refunds.RefundDecision:
    return refunds.tiered_refund(
        rate,
        hours_before,
        free_cancellation_hours=24,
        cutoff_hours=2,
        partial_percentage=50,
        late_percentage=0,
    )


# ── Cancellation Tiers ─────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "hours_before, percentage, amount, tier",
    [
        (48, 100, Decimal("100.00"), "full"),
        (24.01, 100, Decimal("100.00"), "full"),
        (24, 50, Decimal("50.00"), "partial"),
        (12, 50, Decimal("50.00"), "partial"),
        (2, 50, Decimal("50.00"), "partial"),
        (1.99, 0, Decimal("0.00"), "late"),
        (0.5, 0, Decimal("0.00"), "late"),
    ],
)
def test_tiered_refund_boundaries(hours_before, percentage, amount, tier):
    decision = _tiered(hours_before)
    assert decision.percentage == percentage
    assert decision.amount == amount
    assert decision.tier == tier


def test_refund_status_follows_amount():
    assert _tiered(48).status == RefundStatus.PENDING
    assert _tiered(1).status == RefundStatus.NONE


def test_free_session_never_refunds_money():
    decision = _tiered(48, rate=Decimal("0.00"))
    assert decision.percentage == 100
    assert decision.amount == Decimal("0.00")
    assert decision.status == RefundStatus.NONE


def test_partial_percentage_is_clamped():
    decision = refunds.tiered_refund(
        RATE, 5, free_cancellation_hours=24, cutoff_hours=2,
        partial_percentage=150, late_percentage=-10,
    )
    assert decision.percentage == 100


def test_amount_rounds_half_up_to_cents():
    assert refunds.amount_for(Decimal("33.33"), 50) == Decimal("16.67")


def test_payload_records_basis_and_hours():
    payload = _tiered(12.3456).to_payload()
    assert payload["refund_percentage"] == 50
    assert payload["refund_amount"] == "50.00"
    assert payload["hours_before_session"] == 12.35
    assert "between 2h and 24h" in payload["policy_basis"]


# ── Admin Refunds ──────────────────────────────────────────────────────────────

def test_admin_refund_uses_explicit_percentage():
    decision = refunds.admin_refund(Decimal("80.00"), 25)
    assert decision.amount == Decimal("20.00")
    assert decision.tier == "admin"


def test_manual_partial_replaces_current_amount():
    decision = refunds.manual_refund(RATE, Decimal("50.00"), Decimal("30.00"), "partial")
    assert decision.amount == Decimal("30.00")
    assert decision.percentage == 30


def test_manual_bonus_adds_to_current_amount():
    decision = refunds.manual_refund(RATE, Decimal("50.00"), Decimal("25.00"), "bonus")
    assert decision.amount == Decimal("75.00")
    assert decision.percentage == 75


def test_manual_refund_percentage_clamped_above_rate():
    decision = refunds.manual_refund(RATE, Decimal("90.00"), Decimal("40.00"), "bonus")
    assert decision.amount == Decimal("130.00")
    assert decision.percentage == 100


def test_manual_refund_on_free_session_has_zero_percentage():
    decision = refunds.manual_refund(Decimal("0.00"), Decimal("0.00"), Decimal("10.00"), "full")
    assert decision.amount == Decimal("10.00")
    assert decision.percentage == 0
