# Overview: Append-only dispute timeline; append inside the caller's transaction, replay and fold for audits.

"""
Dispute History Service

WHY: A dispute's current row only says where it is now. The history rows
say how it got there, and must be able to prove it: folding the ordered
rows reproduces the dispute's stage and resolution exactly.

DESIGN:
- append_history() only adds and flushes. The caller owns the transaction,
  so the history row commits or rolls back with the stage change it records.
- Rows are immutable (before_update/before_delete listeners in the model).
- Ordering is (created_at, id). created_at is set explicitly from utcnow()
  so rows written in one transaction keep their insertion order via id.
"""

from __future__ import annotations

from ..extensions import db
from ..models import PaymentDispute, PaymentDisputeHistory
from healthpay.time_utils import utcnow


class HistoryGapError(Exception):
    """Raised when history rows do not form a continuous chain."""
    pass


def append_history(
    dispute: PaymentDispute,
    from_stage: str | None,
    to_stage: str,
    resolution_status: str,
    actor_user_id: int,
    note: str | None = None,
) -> PaymentDisputeHistory:
    """
    Append one transition row for a dispute.

    The dispute must already have an id (flush it first when it was just created).
    Does NOT commit.
    """
    entry = PaymentDisputeHistory(
        dispute_id=dispute.id,
        from_stage=from_stage,
        to_stage=to_stage,
        resolution_status=resolution_status,
        changed_by_user_id=actor_user_id,
        note=note,
        created_at=utcnow(),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def replay(dispute_id: int) -> list[PaymentDisputeHistory]:
    """Ordered timeline for one dispute."""
    return (
        db.session.query(PaymentDisputeHistory)
        .filter_by(dispute_id=dispute_id)
        .order_by(PaymentDisputeHistory.created_at.asc(), PaymentDisputeHistory.id.asc())
        .all()
    )


def fold_history(entries) -> tuple[str | None, str | None]:
    """
    Reduce an ordered timeline to (stage, resolution_status).

    Raises HistoryGapError if any row's from_stage does not continue the
    previous row's to_stage (the first row must start from None).
    """
    stage = None
    resolution = None
    for entry in entries:
        if entry.from_stage != stage:
            raise HistoryGapError(
                f"History row {entry.id} starts at {entry.from_stage!r} but previous stage was {stage!r}"
            )
        stage = entry.to_stage
        resolution = entry.resolution_status
    return stage, resolution


def verify_dispute_history(dispute: PaymentDispute) -> bool:
    """True when replaying the dispute's history reproduces its current state."""
    return fold_history(replay(dispute.id)) == (dispute.stage, dispute.resolution_status)
