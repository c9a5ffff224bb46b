# Overview: Payment ledger; the payment status graph, refunds and the events every transition emits.

"""
Payment Ledger Service

WHY: Payments are made outside any gateway (cash at the desk, bank
transfer, mobile wallet), so the platform itself is the record of where
the money stands. Every status change goes through one function,
_transition_locked(), which enforces the graph below, appends a
PaymentStatusEvent and records the outbox side effect, all in the caller's
transaction.

STATUS GRAPH (the only legal edges):
    PENDING_VERIFICATION -> VERIFIED | REJECTED | FAILED
    VERIFIED             -> AUTHORIZED | CAPTURED | REFUND_REQUESTED | FAILED
    AUTHORIZED           -> CAPTURED | REFUND_REQUESTED | FAILED
    CAPTURED             -> REFUND_REQUESTED
    REJECTED             -> REFUND_REQUESTED   (only when a dispute favours the patient)
    REFUND_REQUESTED     -> REFUNDED
    REFUNDED, FAILED     -> terminal

DESIGN PRINCIPLES:
- Amounts are integer minor units; refunds come from refund_policy only
- One active payment per appointment (query check + partial unique index)
- Public functions own the transaction (run_with_retry + commit);
  _xxx_locked helpers never commit and are shared with the queue and
  dispute services so a decision and its payment change are atomic
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import (
    ValidationError,
    ActorNotPermittedError,
    NotFoundError,
    InvalidStateError,
    IllegalTransitionError,
)
from ..models import (
    Appointment,
    DoctorRefundPolicy,
    Payment,
    PaymentStatusEvent,
    PaymentVerification,
)
from ..models.appointments import APPOINTMENT_STATUS_CANCELLED
from ..models.payments import (
    PAYMENT_STATUS_PENDING_VERIFICATION,
    PAYMENT_STATUS_VERIFIED,
    PAYMENT_STATUS_REJECTED,
    PAYMENT_STATUS_AUTHORIZED,
    PAYMENT_STATUS_CAPTURED,
    PAYMENT_STATUS_REFUND_REQUESTED,
    PAYMENT_STATUS_REFUNDED,
    PAYMENT_STATUS_FAILED,
    PAYMENT_ACTIVE_STATUSES,
    VALID_PAYMENT_METHODS,
    VERIFICATION_STATUS_VERIFIED,
    VERIFICATION_STATUS_REJECTED,
)
from .concurrency import lock_for_update, run_with_retry
from .outbox_service import enqueue_event
from .payment_account_service import resolve_payment_account
from .refund_policy import (
    DEFAULT_POLICY,
    VALID_CANCELLED_BY,
    compute_refund,
)
from healthpay.time_utils import utcnow


# =============================================================================
# STATUS GRAPH
# =============================================================================

ALLOWED_TRANSITIONS = {
    PAYMENT_STATUS_PENDING_VERIFICATION: {
        PAYMENT_STATUS_VERIFIED,
        PAYMENT_STATUS_REJECTED,
        PAYMENT_STATUS_FAILED,
    },
    PAYMENT_STATUS_VERIFIED: {
        PAYMENT_STATUS_AUTHORIZED,
        PAYMENT_STATUS_CAPTURED,
        PAYMENT_STATUS_REFUND_REQUESTED,
        PAYMENT_STATUS_FAILED,
    },
    PAYMENT_STATUS_AUTHORIZED: {
        PAYMENT_STATUS_CAPTURED,
        PAYMENT_STATUS_REFUND_REQUESTED,
        PAYMENT_STATUS_FAILED,
    },
    PAYMENT_STATUS_CAPTURED: {PAYMENT_STATUS_REFUND_REQUESTED},
    PAYMENT_STATUS_REJECTED: {PAYMENT_STATUS_REFUND_REQUESTED},
    PAYMENT_STATUS_REFUND_REQUESTED: {PAYMENT_STATUS_REFUNDED},
    PAYMENT_STATUS_REFUNDED: set(),
    PAYMENT_STATUS_FAILED: set(),
}

# Edges only a resolved dispute may take
DISPUTE_ONLY_TRANSITIONS = {(PAYMENT_STATUS_REJECTED, PAYMENT_STATUS_REFUND_REQUESTED)}

# Outbox event name per target status
STATUS_EVENT_TYPES = {
    PAYMENT_STATUS_PENDING_VERIFICATION: "payment.submitted",
    PAYMENT_STATUS_VERIFIED: "payment.verified",
    PAYMENT_STATUS_REJECTED: "payment.rejected",
    PAYMENT_STATUS_AUTHORIZED: "payment.authorized",
    PAYMENT_STATUS_CAPTURED: "payment.captured",
    PAYMENT_STATUS_REFUND_REQUESTED: "payment.refund_requested",
    PAYMENT_STATUS_REFUNDED: "payment.refunded",
    PAYMENT_STATUS_FAILED: "payment.failed",
}

# The doctor hears about new submissions and refunds; the patient hears about everything
DOCTOR_NOTIFIED_STATUSES = {PAYMENT_STATUS_PENDING_VERIFICATION, PAYMENT_STATUS_REFUND_REQUESTED}

CURRENCY_RE = re.compile(r"^[A-Z]{3}$")

# Decimal places of the minor unit; everything else uses 2 (PKR paisa, USD cents)
MINOR_UNIT_EXPONENTS = {"JPY": 0, "KRW": 0, "BHD": 3, "KWD": 3, "OMR": 3}


def can_transition(from_status: str | None, to_status: str, *, via_dispute: bool = False) -> bool:
    if from_status not in ALLOWED_TRANSITIONS:
        return False
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        return False
    if (from_status, to_status) in DISPUTE_ONLY_TRANSITIONS and not via_dispute:
        return False
    return True


# =============================================================================
# INTERNAL HELPERS (no commit)
# =============================================================================

def _get_payment_locked(payment_id: int) -> Payment:
    payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
    if not payment:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def _record_attempt(payment: Payment, now) -> None:
    payment.attempt_count = (payment.attempt_count or 0) + 1
    payment.last_attempt_at = now


def _event_payload(payment: Payment, appointment: Appointment, to_status: str) -> dict:
    notify = [appointment.patient_user_id]
    if to_status in DOCTOR_NOTIFIED_STATUSES:
        notify.append(appointment.doctor_user_id)
    return {
        "payment_id": payment.id,
        "appointment_id": payment.appointment_id,
        "status": to_status,
        "amount_cents": payment.amount_cents,
        "currency": payment.currency,
        "refund_amount_cents": payment.refund_amount_cents,
        "account_holder_type": payment.account_holder_type,
        "account_holder_id": payment.account_holder_id,
        "notify_user_ids": notify,
    }


def _append_status_event(
    payment: Payment,
    from_status: str | None,
    to_status: str,
    actor_user_id: int | None,
    note: str | None,
    now,
) -> PaymentStatusEvent:
    if to_status in (PAYMENT_STATUS_REFUND_REQUESTED, PAYMENT_STATUS_REFUNDED):
        amount = payment.refund_amount_cents or 0
    else:
        amount = payment.amount_cents

    event = PaymentStatusEvent(
        payment_id=payment.id,
        from_status=from_status,
        to_status=to_status,
        amount_cents=amount,
        actor_user_id=actor_user_id,
        note=note,
        occurred_at=now,
    )
    db.session.add(event)

    appointment = db.session.get(Appointment, payment.appointment_id)
    enqueue_event("payment", payment.id, STATUS_EVENT_TYPES[to_status], _event_payload(payment, appointment, to_status))
    return event


def _require_transition(payment: Payment, to_status: str, *, via_dispute: bool = False) -> None:
    if not can_transition(payment.status, to_status, via_dispute=via_dispute):
        raise IllegalTransitionError(
            f"Payment {payment.id} cannot move from {payment.status} to {to_status}"
        )


def _transition_locked(
    payment: Payment,
    to_status: str,
    *,
    actor_user_id: int | None,
    note: str | None = None,
    via_dispute: bool = False,
    now=None,
) -> PaymentStatusEvent:
    """
    Move a payment one edge along the graph.

    Raises IllegalTransitionError for any edge not in ALLOWED_TRANSITIONS.
    Does NOT commit.
    """
    from_status = payment.status
    _require_transition(payment, to_status, via_dispute=via_dispute)
    now = now or utcnow()
    payment.status = to_status
    db.session.flush()
    return _append_status_event(payment, from_status, to_status, actor_user_id, note, now)


def _mark_verified_locked(payment: Payment, verifier_id: int, notes: str | None = None, now=None):
    _require_transition(payment, PAYMENT_STATUS_VERIFIED)
    now = now or utcnow()
    payment.verified_by_user_id = verifier_id
    payment.verified_at = now
    payment.verification_notes = notes
    _record_attempt(payment, now)
    return _transition_locked(payment, PAYMENT_STATUS_VERIFIED, actor_user_id=verifier_id, note=notes, now=now)


def _mark_rejected_locked(payment: Payment, verifier_id: int, notes: str | None = None, now=None):
    _require_transition(payment, PAYMENT_STATUS_REJECTED)
    now = now or utcnow()
    payment.verified_by_user_id = verifier_id
    payment.verified_at = now
    payment.verification_notes = notes
    _record_attempt(payment, now)
    return _transition_locked(payment, PAYMENT_STATUS_REJECTED, actor_user_id=verifier_id, note=notes, now=now)


def _mark_authorized_locked(payment: Payment, actor_user_id: int, notes: str | None = None, now=None):
    return _transition_locked(payment, PAYMENT_STATUS_AUTHORIZED, actor_user_id=actor_user_id, note=notes, now=now)


def _mark_captured_locked(payment: Payment, actor_user_id: int, notes: str | None = None, now=None):
    _require_transition(payment, PAYMENT_STATUS_CAPTURED)
    now = now or utcnow()
    payment.captured_at = now
    _record_attempt(payment, now)
    return _transition_locked(payment, PAYMENT_STATUS_CAPTURED, actor_user_id=actor_user_id, note=notes, now=now)


def _mark_failed_locked(payment: Payment, actor_user_id: int | None, notes: str | None = None, now=None):
    now = now or utcnow()
    if payment.status == PAYMENT_STATUS_PENDING_VERIFICATION:
        from .verification_service import _close_open_verification_locked
        _close_open_verification_locked(payment, VERIFICATION_STATUS_REJECTED, actor_user_id, notes, now=now)
    return _transition_locked(payment, PAYMENT_STATUS_FAILED, actor_user_id=actor_user_id, note=notes, now=now)


def policy_for_doctor(doctor_user_id: int):
    """The doctor's refund policy, or the platform default when none is stored."""
    row = db.session.query(DoctorRefundPolicy).filter_by(doctor_user_id=doctor_user_id).first()
    return row.to_policy() if row else DEFAULT_POLICY


def _request_refund_locked(
    payment: Payment,
    actor_user_id: int,
    cancelled_by: str,
    cancel_time=None,
    *,
    via_dispute: bool = False,
    notes: str | None = None,
    now=None,
):
    if cancelled_by not in VALID_CANCELLED_BY:
        raise ValidationError(f"Invalid cancelled_by: {cancelled_by}. Must be one of {list(VALID_CANCELLED_BY)}")
    _require_transition(payment, PAYMENT_STATUS_REFUND_REQUESTED, via_dispute=via_dispute)

    now = now or utcnow()
    cancel_time = cancel_time or now
    appointment = db.session.get(Appointment, payment.appointment_id)

    payment.refund_amount_cents = compute_refund(
        payment.amount_cents,
        policy_for_doctor(appointment.doctor_user_id),
        cancelled_by,
        cancel_time,
        appointment.scheduled_at,
    )
    payment.refund_requested_at = now
    payment.refund_requested_by_user_id = actor_user_id

    return _transition_locked(
        payment,
        PAYMENT_STATUS_REFUND_REQUESTED,
        actor_user_id=actor_user_id,
        note=notes,
        via_dispute=via_dispute,
        now=now,
    )


def _find_active_payment(appointment_id: int) -> Payment | None:
    active = db.session.query(Payment).filter(
        Payment.appointment_id == appointment_id,
        Payment.status.in_(PAYMENT_ACTIVE_STATUSES),
    ).first()
    if active:
        return active

    # A rejected payment under dispute still holds the slot
    return db.session.query(Payment).join(
        PaymentVerification, PaymentVerification.payment_id == Payment.id
    ).filter(
        Payment.appointment_id == appointment_id,
        Payment.status == PAYMENT_STATUS_REJECTED,
        PaymentVerification.disputed.is_(True),
    ).first()


def _validate_submission(amount_cents, method: str, currency: str) -> None:
    if method not in VALID_PAYMENT_METHODS:
        raise ValidationError(f"Invalid payment method: {method}. Must be one of {VALID_PAYMENT_METHODS}")
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise ValidationError("amount_cents must be an integer number of minor units")
    if amount_cents <= 0:
        raise ValidationError("Payment amount must be positive")
    if not currency or not CURRENCY_RE.match(currency):
        raise ValidationError(f"Invalid currency code: {currency!r}")


def amount_to_minor_units(amount, currency: str) -> int:
    """
    Convert a major-unit amount (1500, "1500.50", 1500.5) into integer minor units.

    Floats go through str() so 0.1 stays 0.1. Fractions of a minor unit are
    refused, never rounded.
    """
    if amount is None or isinstance(amount, bool):
        raise ValidationError("amount is required")
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}")

    exponent = MINOR_UNIT_EXPONENTS.get((currency or "").upper(), 2)
    minor = value.scaleb(exponent)
    if minor != minor.to_integral_value():
        raise ValidationError(f"amount {amount} has more than {exponent} decimal places for {currency}")
    return int(minor)


# =============================================================================
# SUBMISSION
# =============================================================================

def submit_payment(
    appointment_id: int,
    submitted_by_user_id: int,
    amount_cents: int,
    method: str,
    currency: str | None = None,
    transaction_reference: str | None = None,
    receipt_url: str | None = None,
) -> Payment:
    """
    Record a patient's payment and put it in the verification queue.

    WHY: A payment made outside a gateway is only a claim until someone
    checks it. The payment and its queue entry are created together so a
    submitted payment can never be missing from the queue.

    Raises:
        ValidationError: bad method, amount or currency
        ActorNotPermittedError: submitter is not the appointment's patient
        NotFoundError: unknown appointment
        InvalidStateError: appointment cancelled, or an active payment exists
    """
    currency = (currency or current_app.config["PAYMENT_DEFAULT_CURRENCY"]).upper()

    def _op():
        _validate_submission(amount_cents, method, currency)

        appointment = lock_for_update(
            db.session.query(Appointment).filter_by(id=appointment_id)
        ).first()
        if not appointment:
            raise NotFoundError(f"Appointment {appointment_id} not found")
        if appointment.patient_user_id != submitted_by_user_id:
            raise ActorNotPermittedError("Only the appointment's patient may submit its payment")
        if appointment.status == APPOINTMENT_STATUS_CANCELLED:
            raise InvalidStateError(f"Appointment {appointment_id} is cancelled")

        existing = _find_active_payment(appointment_id)
        if existing:
            raise InvalidStateError(
                f"Appointment {appointment_id} already has active payment {existing.id} ({existing.status})"
            )

        account = resolve_payment_account(appointment)
        now = utcnow()
        payment = Payment(
            appointment_id=appointment_id,
            amount_cents=amount_cents,
            currency=currency,
            method=method,
            status=PAYMENT_STATUS_PENDING_VERIFICATION,
            transaction_reference=transaction_reference,
            receipt_url=receipt_url,
            account_holder_type=account.account_holder_type,
            account_holder_id=account.account_holder_id,
            attempt_count=0,
            submitted_by_user_id=submitted_by_user_id,
            created_at=now,
            updated_at=now,
        )
        db.session.add(payment)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise InvalidStateError(f"Appointment {appointment_id} already has an active payment") from exc

        _append_status_event(payment, None, PAYMENT_STATUS_PENDING_VERIFICATION, submitted_by_user_id, None, now)

        from .verification_service import _enqueue_locked
        _enqueue_locked(payment, now=now)

        db.session.commit()
        return payment

    return run_with_retry(_op)


def attach_receipt(payment_id: int, receipt_url: str) -> Payment:
    """Attach or replace the proof-of-payment pointer while the payment awaits verification."""
    if not receipt_url:
        raise ValidationError("receipt_url is required")

    def _op():
        payment = _get_payment_locked(payment_id)
        if payment.status != PAYMENT_STATUS_PENDING_VERIFICATION:
            raise InvalidStateError(f"Cannot attach a receipt to a {payment.status} payment")
        payment.receipt_url = receipt_url
        db.session.commit()
        return payment

    return run_with_retry(_op)


# =============================================================================
# LEDGER TRANSITIONS
# =============================================================================

def _close_open_for_direct_decision(payment: Payment, verification_status: str, verifier_id: int, notes, now):
    from .verification_service import _close_open_verification_locked
    _close_open_verification_locked(payment, verification_status, verifier_id, notes, now=now)


def mark_verified(payment_id: int, verifier_id: int, notes: str | None = None) -> Payment:
    """
    Verify a payment directly, closing its open queue entry.

    The API path goes through apply_verification_status() so queue claims
    are honoured; this is the ledger-level operation for operator tooling.
    """
    def _op():
        payment = _get_payment_locked(payment_id)
        now = utcnow()
        if payment.status == PAYMENT_STATUS_PENDING_VERIFICATION:
            _close_open_for_direct_decision(payment, VERIFICATION_STATUS_VERIFIED, verifier_id, notes, now)
        _mark_verified_locked(payment, verifier_id, notes, now=now)
        db.session.commit()
        return payment

    return run_with_retry(_op)


def mark_rejected(payment_id: int, verifier_id: int, notes: str | None = None) -> Payment:
    def _op():
        payment = _get_payment_locked(payment_id)
        now = utcnow()
        if payment.status == PAYMENT_STATUS_PENDING_VERIFICATION:
            _close_open_for_direct_decision(payment, VERIFICATION_STATUS_REJECTED, verifier_id, notes, now)
        _mark_rejected_locked(payment, verifier_id, notes, now=now)
        db.session.commit()
        return payment

    return run_with_retry(_op)


def mark_authorized(payment_id: int, actor_user_id: int, notes: str | None = None) -> Payment:
    def _op():
        payment = _get_payment_locked(payment_id)
        _mark_authorized_locked(payment, actor_user_id, notes)
        db.session.commit()
        return payment

    return run_with_retry(_op)


def mark_captured(payment_id: int, actor_user_id: int, notes: str | None = None) -> Payment:
    def _op():
        payment = _get_payment_locked(payment_id)
        _mark_captured_locked(payment, actor_user_id, notes)
        db.session.commit()
        return payment

    return run_with_retry(_op)


def mark_failed(payment_id: int, actor_user_id: int | None, notes: str | None = None) -> Payment:
    def _op():
        payment = _get_payment_locked(payment_id)
        _mark_failed_locked(payment, actor_user_id, notes)
        db.session.commit()
        return payment

    return run_with_retry(_op)


def apply_verification_status(payment_id: int, actor, status: str, notes: str | None = None) -> Payment:
    """
    Handle POST /payments/{id}/verify.

    VERIFIED/REJECTED are queue decisions: the actor claims the payment's
    open verification (or already holds it) and decides it, in one
    transaction, so the queue entry and the payment cannot disagree.
    AUTHORIZED/CAPTURED/FAILED are direct ledger transitions.

    Raises:
        AlreadyClaimedError: another verifier holds the queue entry
        IllegalTransitionError: edge not allowed from the current status
        InvalidStateError: the payment's verification is under dispute
    """
    from .permission_service import authorize
    from .verification_service import _claim_locked, _decide_locked, _open_verification_for
    from ..models.auth import USER_KIND_STAFF

    authorize(actor, USER_KIND_STAFF)

    if status in (PAYMENT_STATUS_VERIFIED, PAYMENT_STATUS_REJECTED):
        def _op():
            payment = _get_payment_locked(payment_id)
            if payment.status != PAYMENT_STATUS_PENDING_VERIFICATION:
                raise IllegalTransitionError(
                    f"Payment {payment.id} cannot move from {payment.status} to {status}"
                )
            verification = _open_verification_for(payment.id)
            if verification is None:
                raise InvalidStateError(f"Payment {payment.id} has no open verification")
            if verification.disputed:
                raise InvalidStateError(f"Payment {payment.id} is under dispute; resolve the dispute instead")
            verification = _claim_locked(verification, actor.id)
            _decide_locked(verification, actor.id, status, notes)
            db.session.commit()
            return db.session.get(Payment, payment_id)
        return run_with_retry(_op)

    if status == PAYMENT_STATUS_AUTHORIZED:
        return mark_authorized(payment_id, actor.id, notes)
    if status == PAYMENT_STATUS_CAPTURED:
        return mark_captured(payment_id, actor.id, notes)
    if status == PAYMENT_STATUS_FAILED:
        return mark_failed(payment_id, actor.id, notes)

    raise ValidationError(
        f"Invalid verification status: {status}. Must be one of "
        f"{[PAYMENT_STATUS_VERIFIED, PAYMENT_STATUS_REJECTED, PAYMENT_STATUS_AUTHORIZED, PAYMENT_STATUS_CAPTURED, PAYMENT_STATUS_FAILED]}"
    )


# =============================================================================
# REFUNDS
# =============================================================================

def request_refund(
    payment_id: int,
    actor_user_id: int,
    cancelled_by: str,
    cancel_time=None,
    notes: str | None = None,
) -> Payment:
    """
    Start a refund for a cancelled appointment.

    The amount comes from the appointment doctor's refund policy (or the
    platform default) and is persisted on the payment; it is never
    recomputed afterwards.

    Legal from VERIFIED, AUTHORIZED or CAPTURED. The REJECTED edge is only
    taken by dispute resolution.
    """
    def _op():
        payment = _get_payment_locked(payment_id)
        _request_refund_locked(payment, actor_user_id, cancelled_by, cancel_time, notes=notes)
        db.session.commit()
        return payment

    return run_with_retry(_op)


def complete_refund(payment_id: int, actor_user_id: int, notes: str | None = None) -> Payment:
    """REFUND_REQUESTED -> REFUNDED once the money has actually gone back."""
    def _op():
        payment = _get_payment_locked(payment_id)
        now = utcnow()
        _transition_locked(payment, PAYMENT_STATUS_REFUNDED, actor_user_id=actor_user_id, note=notes, now=now)
        payment.refunded_at = now
        db.session.commit()
        return payment

    return run_with_retry(_op)


# =============================================================================
# QUERIES / TELEMETRY
# =============================================================================

def increment_attempt(payment_id: int) -> Payment:
    """Bump attempt_count/last_attempt_at without changing status."""
    def _op():
        payment = _get_payment_locked(payment_id)
        _record_attempt(payment, utcnow())
        db.session.commit()
        return payment

    return run_with_retry(_op)


def get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if not payment:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def get_status_events(payment_id: int) -> list[PaymentStatusEvent]:
    """The payment's path through the graph, oldest first."""
    return (
        db.session.query(PaymentStatusEvent)
        .filter_by(payment_id=payment_id)
        .order_by(PaymentStatusEvent.occurred_at.asc(), PaymentStatusEvent.id.asc())
        .all()
    )


def list_payments(
    *,
    patient_user_id: int | None = None,
    doctor_user_id: int | None = None,
    appointment_id: int | None = None,
    status: str | None = None,
    limit: int = 100,
) -> list[Payment]:
    """
    Payment history filtered by the appointment's patient or doctor, newest first.

    Routes pin patient_user_id/doctor_user_id to the caller for patients and
    doctors; staff and admins may filter freely.
    """
    if status is not None and status not in ALLOWED_TRANSITIONS:
        raise ValidationError(f"Invalid payment status: {status}. Must be one of {list(ALLOWED_TRANSITIONS)}")

    query = db.session.query(Payment).join(Appointment, Appointment.id == Payment.appointment_id)
    if patient_user_id is not None:
        query = query.filter(Appointment.patient_user_id == patient_user_id)
    if doctor_user_id is not None:
        query = query.filter(Appointment.doctor_user_id == doctor_user_id)
    if appointment_id is not None:
        query = query.filter(Payment.appointment_id == appointment_id)
    if status is not None:
        query = query.filter(Payment.status == status)

    return query.order_by(Payment.created_at.desc(), Payment.id.desc()).limit(limit).all()
