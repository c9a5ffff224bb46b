from __future__ import annotations

from ..extensions import db
from healthpay.time_utils import to_utc_z, utcnow


OUTBOX_STATUS_PENDING = "PENDING"
OUTBOX_STATUS_SENT = "SENT"
OUTBOX_STATUS_FAILED = "FAILED"  # will be retried after next_attempt_at
OUTBOX_STATUS_DEAD = "DEAD"      # gave up after OUTBOX_MAX_ATTEMPTS


class OutboxEvent(db.Model):
    """
    Side effect recorded in the same transaction as the mutation that caused it.

    WHY: Appointment confirmation and notifications must not happen for a
    transaction that later rolls back, and must not be lost for one that
    commits. The dispatcher (outbox_service.dispatch_pending) delivers rows
    after commit and records the outcome here.
    """
    __tablename__ = "outbox_events"
    __table_args__ = (
        db.Index("ix_outbox_events_status_next_attempt", "status", "next_attempt_at"),
        db.Index("ix_outbox_events_aggregate", "aggregate_type", "aggregate_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    aggregate_type = db.Column(db.String(40), nullable=False)  # "payment", "dispute"
    aggregate_id = db.Column(db.Integer, nullable=False)
    event_type = db.Column(db.String(64), nullable=False, index=True)  # e.g. "payment.verified"
    payload = db.Column(db.JSON, nullable=False, default=dict)

    status = db.Column(db.String(16), nullable=False, default=OUTBOX_STATUS_PENDING, index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    next_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_error = db.Column(db.String(1000), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def mark_sent(self) -> None:
        self.status = OUTBOX_STATUS_SENT
        self.dispatched_at = utcnow()
        self.last_error = None

    def mark_failed(self, error: str, *, retry_at, max_attempts: int) -> None:
        self.attempts = (self.attempts or 0) + 1
        self.last_error = (error or "")[:1000]
        if self.attempts >= max_attempts:
            self.status = OUTBOX_STATUS_DEAD
            self.next_attempt_at = None
        else:
            self.status = OUTBOX_STATUS_FAILED
            self.next_attempt_at = retry_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "aggregate_type": self.aggregate_type,
            "aggregate_id": self.aggregate_id,
            "event_type": self.event_type,
            "payload": self.payload,
            "status": self.status,
            "attempts": self.attempts,
            "next_attempt_at": to_utc_z(self.next_attempt_at) if self.next_attempt_at else None,
            "last_error": self.last_error,
            "created_at": to_utc_z(self.created_at),
            "dispatched_at": to_utc_z(self.dispatched_at) if self.dispatched_at else None,
        }
