# Overview: Verification queue; FIFO claims, decisions and the stale-claim sweep.

"""
Verification Queue Service

WHY: Several staff members, doctors and admins work the same queue at the
same time. Exactly one of them may decide a given payment, and a verifier
who walks away must not hold an item forever.

QUEUE SEMANTICS:
- FIFO over PENDING_QUEUE rows ordered by (created_at, id)
- claim: compare-and-swap verifier_user_id NULL -> verifier on
  (status, verifier_user_id, version_id); the loser of a race gets
  AlreadyClaimedError (or, for claim_next, moves on to the next row)
- decide: only the claim holder, only while PENDING_QUEUE; the payment
  ledger transition happens in the same transaction
- sweep_stale_claims: claims older than VERIFICATION_CLAIM_TIMEOUT_MINUTES
  go back to the queue

DECISIONS:
- VERIFIED          -> payment VERIFIED
- REJECTED          -> payment REJECTED
- REFUND_REQUESTED  -> payment VERIFIED then REFUND_REQUESTED (practice cancelled)
- ESCALATED         -> dispute opened at STAFF_REVIEW, payment stays
                       PENDING_VERIFICATION until the dispute resolves
"""

from __future__ import annotations

from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import (
    ValidationError,
    NotFoundError,
    InvalidStateError,
    NotClaimedError,
    AlreadyClaimedError,
    AlreadyDecidedError,
)
from ..models import Payment, PaymentVerification
from ..models.payments import (
    VERIFICATION_STATUS_PENDING_QUEUE,
    VERIFICATION_STATUS_VERIFIED,
    VERIFICATION_STATUS_REJECTED,
    VERIFICATION_STATUS_ESCALATED,
    VERIFICATION_STATUS_REFUND_REQUESTED,
    VERIFICATION_OPEN_STATUSES,
)
from .concurrency import compare_and_swap, reload, run_with_retry
from .refund_policy import CANCELLED_BY_DOCTOR
from healthpay.time_utils import utcnow


VALID_DECISIONS = (
    VERIFICATION_STATUS_VERIFIED,
    VERIFICATION_STATUS_REJECTED,
    VERIFICATION_STATUS_ESCALATED,
    VERIFICATION_STATUS_REFUND_REQUESTED,
)

# Rows fetched per claim_next round
CLAIM_CANDIDATE_BATCH = 10


# =============================================================================
# INTERNAL HELPERS (no commit)
# =============================================================================

def _get_verification(verification_id: int) -> PaymentVerification:
    verification = db.session.get(PaymentVerification, verification_id)
    if not verification:
        raise NotFoundError(f"Verification {verification_id} not found")
    return verification


def _open_verification_for(payment_id: int) -> PaymentVerification | None:
    return db.session.query(PaymentVerification).filter(
        PaymentVerification.payment_id == payment_id,
        PaymentVerification.status.in_(VERIFICATION_OPEN_STATUSES),
    ).first()


def _enqueue_locked(payment: Payment, notes: str | None = None, now=None) -> PaymentVerification:
    existing = _open_verification_for(payment.id)
    if existing:
        raise InvalidStateError(
            f"Payment {payment.id} already has open verification {existing.id} ({existing.status})"
        )

    verification = PaymentVerification(
        payment_id=payment.id,
        status=VERIFICATION_STATUS_PENDING_QUEUE,
        notes=notes,
        disputed=False,
        created_at=now or utcnow(),
    )
    db.session.add(verification)
    try:
        db.session.flush()
    except IntegrityError as exc:
        raise InvalidStateError(f"Payment {payment.id} already has an open verification") from exc
    return verification


def _claim_locked(verification: PaymentVerification, verifier_id: int, now=None) -> PaymentVerification:
    """
    Take the claim on one row for verifier_id.

    No-op when verifier_id already holds it. Does NOT commit.
    """
    if verification.status != VERIFICATION_STATUS_PENDING_QUEUE:
        raise AlreadyDecidedError(f"Verification {verification.id} is already {verification.status}")
    if verification.verifier_user_id == verifier_id:
        return verification
    if verification.verifier_user_id is not None:
        raise AlreadyClaimedError(f"Verification {verification.id} is claimed by another verifier")

    swapped = compare_and_swap(
        PaymentVerification,
        verification.id,
        expected={
            "status": VERIFICATION_STATUS_PENDING_QUEUE,
            "verifier_user_id": None,
            "version_id": verification.version_id,
        },
        values={"verifier_user_id": verifier_id, "claimed_at": now or utcnow()},
    )
    verification = reload(PaymentVerification, verification.id)
    if swapped:
        return verification

    # Lost the race: report what actually happened
    if verification.status != VERIFICATION_STATUS_PENDING_QUEUE:
        raise AlreadyDecidedError(f"Verification {verification.id} is already {verification.status}")
    if verification.verifier_user_id == verifier_id:
        return verification
    if verification.verifier_user_id is not None:
        raise AlreadyClaimedError(f"Verification {verification.id} is claimed by another verifier")
    raise StaleDataError(f"Verification {verification.id} changed during claim")


def _close_open_verification_locked(
    payment: Payment,
    status: str,
    verifier_id: int | None,
    notes: str | None = None,
    now=None,
) -> PaymentVerification | None:
    """
    Close the payment's PENDING_QUEUE row with a direct ledger decision.

    Used when an operator verifies, rejects or fails a payment outside the
    claim/decide flow. An ESCALATED row belongs to an open dispute and
    cannot be closed this way.
    """
    verification = _open_verification_for(payment.id)
    if verification is None:
        return None
    if verification.status == VERIFICATION_STATUS_ESCALATED:
        raise InvalidStateError(f"Payment {payment.id} is under dispute; resolve the dispute instead")

    swapped = compare_and_swap(
        PaymentVerification,
        verification.id,
        expected={"status": VERIFICATION_STATUS_PENDING_QUEUE, "version_id": verification.version_id},
        values={
            "status": status,
            "verifier_user_id": verifier_id,
            "verified_at": now or utcnow(),
            "notes": notes,
        },
    )
    if not swapped:
        raise StaleDataError(f"Verification {verification.id} changed while closing")
    return reload(PaymentVerification, verification.id)


def _apply_decision_to_payment(
    verification: PaymentVerification,
    verifier_id: int,
    decision: str,
    notes: str | None,
    now,
) -> None:
    from . import payment_service

    payment = payment_service._get_payment_locked(verification.payment_id)

    if decision == VERIFICATION_STATUS_VERIFIED:
        payment_service._mark_verified_locked(payment, verifier_id, notes, now=now)
    elif decision == VERIFICATION_STATUS_REJECTED:
        payment_service._mark_rejected_locked(payment, verifier_id, notes, now=now)
    elif decision == VERIFICATION_STATUS_REFUND_REQUESTED:
        payment_service._mark_verified_locked(payment, verifier_id, notes, now=now)
        payment_service._request_refund_locked(
            payment, verifier_id, CANCELLED_BY_DOCTOR, now, notes=notes, now=now,
        )
    elif decision == VERIFICATION_STATUS_ESCALATED:
        from .dispute_service import _open_for_escalation_locked
        _open_for_escalation_locked(verification, verifier_id, notes, now=now)


def _decide_locked(
    verification: PaymentVerification,
    verifier_id: int,
    decision: str,
    notes: str | None = None,
    now=None,
) -> PaymentVerification:
    """
    Record the claim holder's decision and propagate it to the payment.

    Does NOT commit.
    """
    if decision not in VALID_DECISIONS:
        raise ValidationError(f"Invalid decision: {decision}. Must be one of {list(VALID_DECISIONS)}")
    if verification.verifier_user_id != verifier_id:
        raise NotClaimedError(f"Verification {verification.id} is not claimed by user {verifier_id}")
    if verification.status != VERIFICATION_STATUS_PENDING_QUEUE:
        raise AlreadyDecidedError(f"Verification {verification.id} is already {verification.status}")

    now = now or utcnow()
    values = {"status": decision, "notes": notes}
    if decision == VERIFICATION_STATUS_ESCALATED:
        values["disputed"] = True
    else:
        values["verified_at"] = now

    swapped = compare_and_swap(
        PaymentVerification,
        verification.id,
        expected={
            "status": VERIFICATION_STATUS_PENDING_QUEUE,
            "verifier_user_id": verifier_id,
            "version_id": verification.version_id,
        },
        values=values,
    )
    verification = reload(PaymentVerification, verification.id)
    if not swapped:
        if verification.verifier_user_id != verifier_id:
            raise NotClaimedError(f"Verification {verification.id} is not claimed by user {verifier_id}")
        if verification.status != VERIFICATION_STATUS_PENDING_QUEUE:
            raise AlreadyDecidedError(f"Verification {verification.id} is already {verification.status}")
        raise StaleDataError(f"Verification {verification.id} changed during decision")

    _apply_decision_to_payment(verification, verifier_id, decision, notes, now)
    return verification


# =============================================================================
# QUEUE OPERATIONS
# =============================================================================

def enqueue(payment_id: int, notes: str | None = None) -> PaymentVerification:
    """
    Put a payment (back) in the queue.

    Raises InvalidStateError if the payment already has a PENDING_QUEUE or
    ESCALATED verification.
    """
    def _op():
        payment = db.session.get(Payment, payment_id)
        if not payment:
            raise NotFoundError(f"Payment {payment_id} not found")
        verification = _enqueue_locked(payment, notes)
        db.session.commit()
        return verification

    return run_with_retry(_op)


def list_queue(include_claimed: bool = True, limit: int | None = None) -> list[PaymentVerification]:
    """PENDING_QUEUE rows, oldest first."""
    query = db.session.query(PaymentVerification).filter(
        PaymentVerification.status == VERIFICATION_STATUS_PENDING_QUEUE
    )
    if not include_claimed:
        query = query.filter(PaymentVerification.verifier_user_id.is_(None))
    query = query.order_by(PaymentVerification.created_at.asc(), PaymentVerification.id.asc())
    if limit:
        query = query.limit(limit)
    return query.all()


def list_for_verifier(verifier_id: int) -> list[PaymentVerification]:
    """Everything a verifier has claimed or decided, oldest first."""
    return (
        db.session.query(PaymentVerification)
        .filter(PaymentVerification.verifier_user_id == verifier_id)
        .order_by(PaymentVerification.created_at.asc(), PaymentVerification.id.asc())
        .all()
    )


def get_verification(verification_id: int) -> PaymentVerification:
    return _get_verification(verification_id)


def claim_next(verifier_id: int) -> PaymentVerification | None:
    """
    Claim the oldest unclaimed queue item.

    Returns None when nothing is waiting. Rows lost to a concurrent
    claimer are skipped; the next oldest candidate is tried.
    """
    def _op():
        lost_ids: set[int] = set()
        while True:
            query = db.session.query(PaymentVerification).filter(
                PaymentVerification.status == VERIFICATION_STATUS_PENDING_QUEUE,
                PaymentVerification.verifier_user_id.is_(None),
            )
            if lost_ids:
                query = query.filter(PaymentVerification.id.notin_(lost_ids))
            candidates = (
                query.order_by(PaymentVerification.created_at.asc(), PaymentVerification.id.asc())
                .limit(CLAIM_CANDIDATE_BATCH)
                .all()
            )
            if not candidates:
                db.session.commit()
                return None

            now = utcnow()
            for candidate in candidates:
                swapped = compare_and_swap(
                    PaymentVerification,
                    candidate.id,
                    expected={
                        "status": VERIFICATION_STATUS_PENDING_QUEUE,
                        "verifier_user_id": None,
                        "version_id": candidate.version_id,
                    },
                    values={"verifier_user_id": verifier_id, "claimed_at": now},
                )
                if swapped:
                    db.session.commit()
                    return reload(PaymentVerification, candidate.id)
                lost_ids.add(candidate.id)

    return run_with_retry(_op)


def claim(verification_id: int, verifier_id: int) -> PaymentVerification:
    """
    Claim a specific queue item.

    Raises AlreadyClaimedError if another verifier holds it and
    AlreadyDecidedError if it is no longer PENDING_QUEUE.
    """
    def _op():
        verification = _claim_locked(_get_verification(verification_id), verifier_id)
        db.session.commit()
        return verification

    return run_with_retry(_op)


def release(verification_id: int, verifier_id: int) -> PaymentVerification:
    """Hand a claim back to the queue."""
    def _op():
        verification = _get_verification(verification_id)
        if verification.verifier_user_id != verifier_id:
            raise NotClaimedError(f"Verification {verification_id} is not claimed by user {verifier_id}")
        if verification.status != VERIFICATION_STATUS_PENDING_QUEUE:
            raise AlreadyDecidedError(f"Verification {verification_id} is already {verification.status}")

        swapped = compare_and_swap(
            PaymentVerification,
            verification.id,
            expected={
                "status": VERIFICATION_STATUS_PENDING_QUEUE,
                "verifier_user_id": verifier_id,
                "version_id": verification.version_id,
            },
            values={"verifier_user_id": None, "claimed_at": None},
        )
        if not swapped:
            raise StaleDataError(f"Verification {verification_id} changed during release")
        db.session.commit()
        return reload(PaymentVerification, verification_id)

    return run_with_retry(_op)


def decide(verification_id: int, verifier_id: int, decision: str, notes: str | None = None) -> PaymentVerification:
    """
    Decide a claimed queue item.

    Raises:
        NotClaimedError: verifier_id does not hold the claim
        AlreadyDecidedError: the item is no longer PENDING_QUEUE
        IllegalTransitionError: the payment cannot take the resulting edge
    """
    def _op():
        verification = _decide_locked(_get_verification(verification_id), verifier_id, decision, notes)
        db.session.commit()
        return verification

    return run_with_retry(_op)


# =============================================================================
# BACKGROUND: STALE CLAIM SWEEP
# =============================================================================

def sweep_stale_claims(timeout=None, now=None) -> int:
    """
    Return claims older than `timeout` to the queue.

    WHY: A verifier who claims an item and closes the browser would block
    it forever. Safe to run alongside live verifiers: each release is a
    compare-and-swap on the row's version, so a claim that was decided or
    refreshed after the sweep read it is left alone. Running it twice
    releases nothing the second time.

    Args:
        timeout: timedelta or minutes; defaults to VERIFICATION_CLAIM_TIMEOUT_MINUTES
        now: override for the current time

    Returns:
        Number of claims released
    """
    if timeout is None:
        timeout = timedelta(minutes=current_app.config["VERIFICATION_CLAIM_TIMEOUT_MINUTES"])
    elif not isinstance(timeout, timedelta):
        timeout = timedelta(minutes=timeout)
    now = now or utcnow()
    cutoff = now - timeout

    def _op():
        stale = db.session.query(PaymentVerification).filter(
            PaymentVerification.status == VERIFICATION_STATUS_PENDING_QUEUE,
            PaymentVerification.verifier_user_id.isnot(None),
            PaymentVerification.claimed_at < cutoff,
        ).all()

        released = 0
        for verification in stale:
            swapped = compare_and_swap(
                PaymentVerification,
                verification.id,
                expected={
                    "status": VERIFICATION_STATUS_PENDING_QUEUE,
                    "verifier_user_id": verification.verifier_user_id,
                    "version_id": verification.version_id,
                },
                values={"verifier_user_id": None, "claimed_at": None},
            )
            if swapped:
                released += 1
        db.session.commit()
        return released, len(stale)

    released, seen = run_with_retry(_op)
    current_app.logger.info(
        "Stale claim sweep: released %s of %s claims older than %s", released, seen, cutoff,
    )
    return released
