"""
Refund calculator tests.

Verifies:
- The cutoff is inclusive (exactly refund_cutoff_minutes before is a full refund)
- Deductions are floored to whole minor units and never exceed the amount
- Doctor-side cancellations honour allow_full_refund_on_doctor_cancellation
- Invalid policies and inputs are refused
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from healthpay.services.refund_policy import (
    CANCELLED_BY_DOCTOR,
    CANCELLED_BY_PATIENT,
    DEFAULT_POLICY,
    RefundPolicy,
    RefundPolicyError,
    compute_refund,
    quote_refund,
)


APPOINTMENT_AT = datetime(2026, 10, 20, 9, 0, 0)


def cancelled(minutes_before):
    return APPOINTMENT_AT - timedelta(minutes=minutes_before)


@pytest.fixture
def strict_policy():
    return RefundPolicy(
        refund_cutoff_minutes=1440,
        refund_deduction_percent=Decimal("20"),
        allow_full_refund_on_doctor_cancellation=False,
    )


# =============================================================================
# CUTOFF
# =============================================================================


class TestCutoff:
    def test_patient_cancelling_inside_cutoff_pays_deduction(self, strict_policy):
        refund = compute_refund(1000, strict_policy, CANCELLED_BY_PATIENT, cancelled(700), APPOINTMENT_AT)
        assert refund == 800

    def test_exactly_at_cutoff_is_full_refund(self, strict_policy):
        refund = compute_refund(1000, strict_policy, CANCELLED_BY_PATIENT, cancelled(1440), APPOINTMENT_AT)
        assert refund == 1000

    def test_one_minute_inside_cutoff_is_deducted(self, strict_policy):
        refund = compute_refund(1000, strict_policy, CANCELLED_BY_PATIENT, cancelled(1439), APPOINTMENT_AT)
        assert refund == 800

    def test_well_before_cutoff_is_full_refund(self, strict_policy):
        refund = compute_refund(1000, strict_policy, CANCELLED_BY_PATIENT, cancelled(5000), APPOINTMENT_AT)
        assert refund == 1000

    def test_cancelling_after_start_is_deducted(self, strict_policy):
        refund = compute_refund(1000, strict_policy, CANCELLED_BY_PATIENT, cancelled(-30), APPOINTMENT_AT)
        assert refund == 800

    def test_zero_cutoff_refunds_any_advance_cancellation(self):
        policy = RefundPolicy(refund_cutoff_minutes=0, refund_deduction_percent=Decimal("50"))
        assert compute_refund(1000, policy, CANCELLED_BY_PATIENT, cancelled(0), APPOINTMENT_AT) == 1000
        assert compute_refund(1000, policy, CANCELLED_BY_PATIENT, cancelled(-1), APPOINTMENT_AT) == 500


# =============================================================================
# DOCTOR CANCELLATION
# =============================================================================


class TestDoctorCancellation:
    def test_full_refund_when_policy_allows(self):
        policy = RefundPolicy(refund_deduction_percent=Decimal("20"), allow_full_refund_on_doctor_cancellation=True)
        refund = compute_refund(1000, policy, CANCELLED_BY_DOCTOR, cancelled(10), APPOINTMENT_AT)
        assert refund == 1000

    def test_cutoff_applies_when_policy_disallows(self, strict_policy):
        refund = compute_refund(1000, strict_policy, CANCELLED_BY_DOCTOR, cancelled(10), APPOINTMENT_AT)
        assert refund == 800

    def test_default_policy_refunds_doctor_cancellation_in_full(self):
        refund = compute_refund(1234, DEFAULT_POLICY, CANCELLED_BY_DOCTOR, cancelled(1), APPOINTMENT_AT)
        assert refund == 1234


# =============================================================================
# ROUNDING AND BOUNDS
# =============================================================================


class TestRounding:
    def test_fractional_refund_is_floored(self):
        policy = RefundPolicy(refund_deduction_percent=Decimal("33"))
        # 999 * 0.67 = 669.33
        assert compute_refund(999, policy, CANCELLED_BY_PATIENT, cancelled(10), APPOINTMENT_AT) == 669

    def test_fractional_percent(self):
        policy = RefundPolicy(refund_deduction_percent=Decimal("12.5"))
        assert compute_refund(1000, policy, CANCELLED_BY_PATIENT, cancelled(10), APPOINTMENT_AT) == 875

    def test_full_deduction_refunds_nothing(self):
        policy = RefundPolicy(refund_deduction_percent=Decimal("100"))
        assert compute_refund(1000, policy, CANCELLED_BY_PATIENT, cancelled(10), APPOINTMENT_AT) == 0

    def test_zero_amount(self, strict_policy):
        assert compute_refund(0, strict_policy, CANCELLED_BY_PATIENT, cancelled(10), APPOINTMENT_AT) == 0

    def test_same_inputs_same_refund(self, strict_policy):
        results = {
            compute_refund(1001, strict_policy, CANCELLED_BY_PATIENT, cancelled(600), APPOINTMENT_AT)
            for _ in range(5)
        }
        assert results == {800}


# =============================================================================
# QUOTES AND VALIDATION
# =============================================================================


class TestQuote:
    def test_quote_explains_deduction(self, strict_policy):
        quote = quote_refund(1000, strict_policy, CANCELLED_BY_PATIENT, cancelled(700), APPOINTMENT_AT)
        assert quote.refund_cents == 800
        assert quote.full_refund is False
        assert quote.minutes_before == 700
        assert quote.to_dict()["deduction_percent"] == "20"

    def test_quote_for_full_refund(self, strict_policy):
        quote = quote_refund(1000, strict_policy, CANCELLED_BY_PATIENT, cancelled(2000), APPOINTMENT_AT)
        assert quote.full_refund is True
        assert quote.deduction_percent == Decimal("0")


class TestValidation:
    @pytest.mark.parametrize("percent", [Decimal("-1"), Decimal("100.01")])
    def test_percent_out_of_range(self, percent):
        with pytest.raises(RefundPolicyError):
            RefundPolicy(refund_deduction_percent=percent)

    def test_negative_cutoff(self):
        with pytest.raises(RefundPolicyError):
            RefundPolicy(refund_cutoff_minutes=-1)

    def test_unknown_cancelled_by(self, strict_policy):
        with pytest.raises(RefundPolicyError):
            compute_refund(1000, strict_policy, "CLINIC", cancelled(10), APPOINTMENT_AT)

    def test_negative_amount(self, strict_policy):
        with pytest.raises(RefundPolicyError):
            compute_refund(-1, strict_policy, CANCELLED_BY_PATIENT, cancelled(10), APPOINTMENT_AT)

    def test_from_bps(self):
        policy = RefundPolicy.from_bps(
            refund_cutoff_minutes=720,
            refund_deduction_bps=2500,
            allow_full_refund_on_doctor_cancellation=False,
        )
        assert policy.refund_deduction_percent == Decimal("25")
        assert compute_refund(1000, policy, CANCELLED_BY_PATIENT, cancelled(60), APPOINTMENT_AT) == 750
