# Overview: Dispute escalation state machine; raise, escalate and resolve with an append-only timeline.

"""
Dispute Escalation Service

WHY: A patient who paid but was rejected, or a doctor who thinks a payment
was wrongly accepted, needs a way to contest the decision that is visible,
attributable and cannot be silently overwritten.

STATE MACHINE:
    STAFF_REVIEW -> DOCTOR_REVIEW -> ADMIN_REVIEW -> RESOLVED

- escalate() moves exactly one tier; the actor must rank at or above the
  current tier (STAFF < DOCTOR < ADMIN). Entering ADMIN_REVIEW marks the
  resolution ADMIN_PENDING.
- resolve() is legal from any open stage for an actor at or above that
  stage's tier, so an ADMIN can close a dispute without walking the tiers.
- RESOLVED is terminal: every mutation raises DisputeClosedError.

DESIGN:
- Stage changes are compare-and-swap updates on (stage, version_id); the
  matching history row is appended in the same transaction. No history row
  means no transition, and the reverse.
- verification.disputed flips False -> True by compare-and-swap when a
  dispute opens (together with a partial unique index on open disputes),
  and is cleared only once the dispute is RESOLVED.
"""

from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import (
    ValidationError,
    NotFoundError,
    ActorNotPermittedError,
    IllegalTransitionError,
    DuplicateDisputeError,
    DisputeClosedError,
    InvalidStateError,
)
from ..models import Appointment, Payment, PaymentDispute, PaymentVerification
from ..models.auth import USER_KIND_PATIENT, USER_KIND_STAFF, USER_KIND_DOCTOR, USER_KIND_ADMIN
from ..models.disputes import (
    STAGE_STAFF_REVIEW,
    STAGE_DOCTOR_REVIEW,
    STAGE_ADMIN_REVIEW,
    STAGE_RESOLVED,
    DISPUTE_STAGES,
    RESOLUTION_OPEN,
    RESOLUTION_ADMIN_PENDING,
    RESOLUTION_PATIENT_FAVORED,
    RESOLUTION_PRACTICE_FAVORED,
    TERMINAL_RESOLUTIONS,
)
from ..models.payments import (
    PAYMENT_STATUS_REFUND_REQUESTED,
    PAYMENT_STATUS_REFUNDED,
    PAYMENT_STATUS_REJECTED,
    PAYMENT_STATUS_FAILED,
    PAYMENT_ACTIVE_STATUSES,
    VERIFICATION_STATUS_PENDING_QUEUE,
    VERIFICATION_STATUS_VERIFIED,
    VERIFICATION_STATUS_REJECTED,
    VERIFICATION_STATUS_ESCALATED,
)
from .concurrency import compare_and_swap, lock_for_update, reload, run_with_retry
from .history_service import append_history, replay
from .outbox_service import enqueue_event
from .permission_service import Actor, TIER_RANK
from .refund_policy import CANCELLED_BY_DOCTOR
from healthpay.time_utils import utcnow


NEXT_STAGE = {
    STAGE_STAFF_REVIEW: STAGE_DOCTOR_REVIEW,
    STAGE_DOCTOR_REVIEW: STAGE_ADMIN_REVIEW,
}

# Minimum actor kind that may act on a dispute at each stage
STAGE_TIER = {
    STAGE_STAFF_REVIEW: USER_KIND_STAFF,
    STAGE_DOCTOR_REVIEW: USER_KIND_DOCTOR,
    STAGE_ADMIN_REVIEW: USER_KIND_ADMIN,
}

DISPUTABLE_VERIFICATION_STATUSES = (VERIFICATION_STATUS_VERIFIED, VERIFICATION_STATUS_REJECTED)

# Payments whose money is settled one way or the other
CLOSED_PAYMENT_STATUSES = (PAYMENT_STATUS_FAILED, PAYMENT_STATUS_REFUNDED)


# =============================================================================
# INTERNAL HELPERS (no commit)
# =============================================================================

def _get_dispute_locked(dispute_id: int) -> PaymentDispute:
    dispute = lock_for_update(db.session.query(PaymentDispute).filter_by(id=dispute_id)).first()
    if not dispute:
        raise NotFoundError(f"Dispute {dispute_id} not found")
    return dispute


def _require_tier(actor: Actor, stage: str, action: str) -> None:
    required = STAGE_TIER[stage]
    if actor.rank < TIER_RANK[required]:
        raise ActorNotPermittedError(f"{actor.kind} cannot {action} a dispute at {stage} (requires {required} or above)")


def _appointment_for(verification: PaymentVerification) -> Appointment:
    payment = db.session.get(Payment, verification.payment_id)
    return db.session.get(Appointment, payment.appointment_id)


def _notify_payload(dispute: PaymentDispute, appointment: Appointment) -> dict:
    return {
        "dispute_id": dispute.id,
        "verification_id": dispute.verification_id,
        "appointment_id": appointment.id,
        "stage": dispute.stage,
        "resolution_status": dispute.resolution_status,
        "notify_user_ids": [appointment.patient_user_id, appointment.doctor_user_id],
    }


def _create_dispute_locked(
    verification: PaymentVerification,
    raised_by_user_id: int,
    notes: str | None,
    now,
) -> PaymentDispute:
    dispute = PaymentDispute(
        verification_id=verification.id,
        stage=STAGE_STAFF_REVIEW,
        resolution_status=RESOLUTION_OPEN,
        raised_by_user_id=raised_by_user_id,
        notes=notes,
        created_at=now,
        updated_at=now,
    )
    db.session.add(dispute)
    try:
        db.session.flush()
    except IntegrityError as exc:
        raise DuplicateDisputeError(f"Verification {verification.id} already has an open dispute") from exc

    append_history(dispute, None, STAGE_STAFF_REVIEW, RESOLUTION_OPEN, raised_by_user_id, notes)
    enqueue_event("dispute", dispute.id, "dispute.raised", _notify_payload(dispute, _appointment_for(verification)))
    return dispute


def _swap_stage_locked(dispute: PaymentDispute, values: dict) -> PaymentDispute:
    """CAS the dispute off its current stage; map a lost race to the right error."""
    from_stage = dispute.stage
    swapped = compare_and_swap(
        PaymentDispute,
        dispute.id,
        expected={"stage": from_stage, "version_id": dispute.version_id},
        values=values,
    )
    current = reload(PaymentDispute, dispute.id)
    if swapped:
        return current
    if current.stage == STAGE_RESOLVED:
        raise DisputeClosedError(f"Dispute {dispute.id} is already resolved")
    if current.stage != from_stage:
        raise IllegalTransitionError(f"Dispute {dispute.id} moved to {current.stage} concurrently")
    raise StaleDataError(f"Dispute {dispute.id} changed during update")


def _escalate_locked(dispute: PaymentDispute, actor_user_id: int, note: str | None, now) -> PaymentDispute:
    if dispute.stage == STAGE_RESOLVED:
        raise DisputeClosedError(f"Dispute {dispute.id} is already resolved")
    if dispute.stage not in NEXT_STAGE:
        raise IllegalTransitionError(f"Dispute {dispute.id} is already at {dispute.stage}")

    from_stage = dispute.stage
    to_stage = NEXT_STAGE[from_stage]
    resolution = RESOLUTION_ADMIN_PENDING if to_stage == STAGE_ADMIN_REVIEW else dispute.resolution_status

    dispute = _swap_stage_locked(dispute, {"stage": to_stage, "resolution_status": resolution, "updated_at": now})
    append_history(dispute, from_stage, to_stage, resolution, actor_user_id, note)
    verification = db.session.get(PaymentVerification, dispute.verification_id)
    enqueue_event("dispute", dispute.id, "dispute.escalated", _notify_payload(dispute, _appointment_for(verification)))
    return dispute


def _open_for_escalation_locked(
    verification: PaymentVerification,
    verifier_id: int,
    notes: str | None,
    now=None,
) -> PaymentDispute:
    """
    Back an ESCALATED queue decision with a dispute.

    Opens a dispute at STAFF_REVIEW, or promotes the open one a tier when
    the verification already has one. The caller has already set
    verification.disputed. Does NOT commit.
    """
    now = now or utcnow()
    existing = db.session.query(PaymentDispute).filter(
        PaymentDispute.verification_id == verification.id,
        PaymentDispute.stage != STAGE_RESOLVED,
    ).first()
    if existing is None:
        return _create_dispute_locked(verification, verifier_id, notes, now)
    if existing.stage in NEXT_STAGE:
        return _escalate_locked(existing, verifier_id, notes, now)
    return existing


def _apply_resolution_locked(
    dispute: PaymentDispute,
    actor: Actor,
    resolution_status: str,
    note: str | None,
    now,
) -> None:
    from . import payment_service

    verification = reload(PaymentVerification, dispute.verification_id)
    payment = payment_service._get_payment_locked(verification.payment_id)

    if verification.status == VERIFICATION_STATUS_ESCALATED:
        # The queue never decided; the dispute outcome is the decision
        if resolution_status == RESOLUTION_PATIENT_FAVORED:
            verification.status = VERIFICATION_STATUS_VERIFIED
            verification.verified_at = now
            payment_service._mark_verified_locked(payment, actor.id, note, now=now)
        elif resolution_status == RESOLUTION_PRACTICE_FAVORED:
            verification.status = VERIFICATION_STATUS_REJECTED
            verification.verified_at = now
            payment_service._mark_rejected_locked(payment, actor.id, note, now=now)
        else:
            verification.status = VERIFICATION_STATUS_PENDING_QUEUE
            verification.verifier_user_id = None
            verification.claimed_at = None
    elif resolution_status == RESOLUTION_PATIENT_FAVORED:
        # Already refunding, refunded or failed after the dispute opened: nothing left to refund
        if payment_service.can_transition(payment.status, PAYMENT_STATUS_REFUND_REQUESTED, via_dispute=True):
            payment_service._request_refund_locked(
                payment, actor.id, CANCELLED_BY_DOCTOR, now, via_dispute=True, notes=note, now=now,
            )

    verification.disputed = False
    db.session.flush()


# =============================================================================
# PUBLIC OPERATIONS
# =============================================================================

def raise_dispute(verification_id: int, actor: Actor, notes: str | None = None) -> PaymentDispute:
    """
    Contest a verification decision.

    WHO: the appointment's patient, the appointment's doctor, or any
    staff/admin user.

    Raises:
        NotFoundError: unknown verification
        IllegalTransitionError: verification is not VERIFIED or REJECTED, or the
            payment is already FAILED or REFUNDED
        ActorNotPermittedError: patient/doctor not on this appointment
        DuplicateDisputeError: an open dispute already exists
    """
    def _op():
        verification = lock_for_update(
            db.session.query(PaymentVerification).filter_by(id=verification_id)
        ).first()
        if not verification:
            raise NotFoundError(f"Verification {verification_id} not found")
        if verification.status not in DISPUTABLE_VERIFICATION_STATUSES:
            raise IllegalTransitionError(
                f"Verification {verification_id} is {verification.status}; only VERIFIED or REJECTED can be disputed"
            )

        appointment = _appointment_for(verification)
        if actor.kind == USER_KIND_PATIENT and appointment.patient_user_id != actor.id:
            raise ActorNotPermittedError("Patients may only dispute payments for their own appointments")
        if actor.kind == USER_KIND_DOCTOR and appointment.doctor_user_id != actor.id:
            raise ActorNotPermittedError("Doctors may only dispute payments for their own appointments")

        if verification.disputed:
            raise DuplicateDisputeError(f"Verification {verification_id} already has an open dispute")

        payment = db.session.get(Payment, verification.payment_id)
        if payment.status in CLOSED_PAYMENT_STATUSES:
            raise IllegalTransitionError(
                f"Payment {payment.id} is {payment.status}; there is nothing left to dispute"
            )
        if payment.status == PAYMENT_STATUS_REJECTED:
            # Disputing a rejection reactivates the payment; it must not collide with a newer one
            newer = db.session.query(Payment).filter(
                Payment.appointment_id == payment.appointment_id,
                Payment.id != payment.id,
                Payment.status.in_(PAYMENT_ACTIVE_STATUSES),
            ).first()
            if newer:
                raise InvalidStateError(
                    f"Appointment {payment.appointment_id} already has active payment {newer.id}"
                )

        swapped = compare_and_swap(
            PaymentVerification,
            verification.id,
            expected={"disputed": False, "status": verification.status, "version_id": verification.version_id},
            values={"disputed": True},
        )
        verification = reload(PaymentVerification, verification_id)
        if not swapped:
            if verification.disputed:
                raise DuplicateDisputeError(f"Verification {verification_id} already has an open dispute")
            raise StaleDataError(f"Verification {verification_id} changed while opening a dispute")

        dispute = _create_dispute_locked(verification, actor.id, notes, utcnow())
        db.session.commit()
        return dispute

    return run_with_retry(_op)


def escalate(dispute_id: int, actor: Actor, note: str | None = None) -> PaymentDispute:
    """
    Move a dispute up one review tier.

    Raises:
        DisputeClosedError: dispute is RESOLVED
        IllegalTransitionError: dispute is already at ADMIN_REVIEW
        ActorNotPermittedError: actor ranks below the current tier
    """
    def _op():
        dispute = _get_dispute_locked(dispute_id)
        if dispute.is_resolved:
            raise DisputeClosedError(f"Dispute {dispute_id} is already resolved")
        if dispute.stage not in NEXT_STAGE:
            raise IllegalTransitionError(f"Dispute {dispute_id} is already at {dispute.stage}")
        _require_tier(actor, dispute.stage, "escalate")

        dispute = _escalate_locked(dispute, actor.id, note, utcnow())
        db.session.commit()
        return dispute

    return run_with_retry(_op)


def resolve(dispute_id: int, actor: Actor, resolution_status: str, note: str | None = None) -> PaymentDispute:
    """
    Close a dispute with a terminal resolution and apply it to the payment.

    Effects:
    - decided verification, PATIENT_FAVORED: payment goes to REFUND_REQUESTED
      (practice-side cancellation, so the doctor's full-refund rule applies)
      unless it is already refunding, refunded or FAILED
    - decided verification, anything else: the earlier decision stands
    - ESCALATED verification: PATIENT_FAVORED verifies, PRACTICE_FAVORED
      rejects, CLOSED/UPHELD return the item to the queue
    verification.disputed is cleared last.

    Raises:
        ValidationError: resolution_status is not terminal
        DisputeClosedError: dispute already RESOLVED
        ActorNotPermittedError: actor ranks below the current tier
    """
    if resolution_status not in TERMINAL_RESOLUTIONS:
        raise ValidationError(
            f"Invalid resolution: {resolution_status}. Must be one of {list(TERMINAL_RESOLUTIONS)}"
        )

    def _op():
        dispute = _get_dispute_locked(dispute_id)
        if dispute.is_resolved:
            raise DisputeClosedError(f"Dispute {dispute_id} is already resolved")
        _require_tier(actor, dispute.stage, "resolve")

        now = utcnow()
        from_stage = dispute.stage
        dispute = _swap_stage_locked(dispute, {
            "stage": STAGE_RESOLVED,
            "resolution_status": resolution_status,
            "resolved_at": now,
            "resolved_by_user_id": actor.id,
            "updated_at": now,
        })
        append_history(dispute, from_stage, STAGE_RESOLVED, resolution_status, actor.id, note)
        _apply_resolution_locked(dispute, actor, resolution_status, note, now)

        verification = db.session.get(PaymentVerification, dispute.verification_id)
        enqueue_event("dispute", dispute.id, "dispute.resolved", _notify_payload(dispute, _appointment_for(verification)))
        db.session.commit()
        return dispute

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_dispute(dispute_id: int) -> PaymentDispute:
    dispute = db.session.get(PaymentDispute, dispute_id)
    if not dispute:
        raise NotFoundError(f"Dispute {dispute_id} not found")
    return dispute


def list_by_stage(stage: str | None = None) -> list[PaymentDispute]:
    """Disputes at one stage (or all), oldest first."""
    query = db.session.query(PaymentDispute)
    if stage:
        if stage not in DISPUTE_STAGES:
            raise ValidationError(f"Invalid stage: {stage}. Must be one of {list(DISPUTE_STAGES)}")
        query = query.filter(PaymentDispute.stage == stage)
    return query.order_by(PaymentDispute.created_at.asc(), PaymentDispute.id.asc()).all()


def appointment_for_dispute(dispute: PaymentDispute) -> Appointment:
    return _appointment_for(db.session.get(PaymentVerification, dispute.verification_id))


def get_history(dispute_id: int):
    get_dispute(dispute_id)
    return replay(dispute_id)
