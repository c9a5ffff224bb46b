# Overview: Pure refund computation for cancelled appointments.

"""
Refund Policy Calculator

WHY: Refund amounts must be reproducible. Given the same payment amount,
policy and timestamps the calculator always returns the same number of
minor units, so a refund recorded today can be re-derived during a
reconciliation months later.

RULES (first match wins):
1. Doctor-side cancellation with allow_full_refund_on_doctor_cancellation -> full refund
2. Cancelled at least refund_cutoff_minutes before the appointment -> full refund
   (the cutoff is inclusive: exactly 1440 minutes before a 1440 cutoff is full)
3. Otherwise amount * (100 - deduction_percent) / 100, floored to a whole
   minor unit and clamped to [0, amount]

No database access, no clock reads. Callers pass every input.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR

from healthpay.time_utils import minutes_between


CANCELLED_BY_PATIENT = "PATIENT"
CANCELLED_BY_DOCTOR = "DOCTOR"

VALID_CANCELLED_BY = (CANCELLED_BY_PATIENT, CANCELLED_BY_DOCTOR)

DEFAULT_REFUND_CUTOFF_MINUTES = 1440
DEFAULT_REFUND_DEDUCTION_PERCENT = Decimal("0")


class RefundPolicyError(ValueError):
    """Raised for policy values or inputs the calculator cannot use."""
    pass


@dataclass(frozen=True)
class RefundPolicy:
    refund_cutoff_minutes: int = DEFAULT_REFUND_CUTOFF_MINUTES
    refund_deduction_percent: Decimal = DEFAULT_REFUND_DEDUCTION_PERCENT
    allow_full_refund_on_doctor_cancellation: bool = True

    def __post_init__(self):
        if self.refund_cutoff_minutes < 0:
            raise RefundPolicyError("refund_cutoff_minutes must be >= 0")
        pct = Decimal(self.refund_deduction_percent)
        if pct < 0 or pct > 100:
            raise RefundPolicyError("refund_deduction_percent must be between 0 and 100")
        object.__setattr__(self, "refund_deduction_percent", pct)

    @classmethod
    def from_bps(
        cls,
        *,
        refund_cutoff_minutes: int,
        refund_deduction_bps: int,
        allow_full_refund_on_doctor_cancellation: bool,
    ) -> "RefundPolicy":
        """Build a policy from the stored basis-point form (2000 bps = 20%)."""
        return cls(
            refund_cutoff_minutes=refund_cutoff_minutes,
            refund_deduction_percent=Decimal(refund_deduction_bps) / Decimal(100),
            allow_full_refund_on_doctor_cancellation=allow_full_refund_on_doctor_cancellation,
        )


DEFAULT_POLICY = RefundPolicy()


@dataclass(frozen=True)
class RefundQuote:
    amount_cents: int
    refund_cents: int
    full_refund: bool
    minutes_before: float
    deduction_percent: Decimal

    def to_dict(self) -> dict:
        return {
            "amount_cents": self.amount_cents,
            "refund_cents": self.refund_cents,
            "full_refund": self.full_refund,
            "minutes_before": self.minutes_before,
            "deduction_percent": str(self.deduction_percent),
        }


def quote_refund(
    amount_cents: int,
    policy: RefundPolicy,
    cancelled_by: str,
    cancel_time: datetime,
    appointment_time: datetime,
) -> RefundQuote:
    """Compute a refund and explain which rule produced it."""
    if amount_cents < 0:
        raise RefundPolicyError("amount_cents must be >= 0")
    if cancelled_by not in VALID_CANCELLED_BY:
        raise RefundPolicyError(f"Invalid cancelled_by: {cancelled_by}. Must be one of {list(VALID_CANCELLED_BY)}")

    minutes_before = minutes_between(cancel_time, appointment_time)

    if cancelled_by == CANCELLED_BY_DOCTOR and policy.allow_full_refund_on_doctor_cancellation:
        return RefundQuote(amount_cents, amount_cents, True, minutes_before, Decimal("0"))

    if minutes_before >= policy.refund_cutoff_minutes:
        return RefundQuote(amount_cents, amount_cents, True, minutes_before, Decimal("0"))

    pct = policy.refund_deduction_percent
    raw = (Decimal(amount_cents) * (Decimal(100) - pct) / Decimal(100)).to_integral_value(rounding=ROUND_FLOOR)
    refund = max(0, min(amount_cents, int(raw)))
    return RefundQuote(amount_cents, refund, refund == amount_cents, minutes_before, pct)


def compute_refund(
    amount_cents: int,
    policy: RefundPolicy,
    cancelled_by: str,
    cancel_time: datetime,
    appointment_time: datetime,
) -> int:
    """Refund in minor units for a cancellation at cancel_time."""
    return quote_refund(amount_cents, policy, cancelled_by, cancel_time, appointment_time).refund_cents
