from __future__ import annotations

from ..extensions import db
from .append_only import register_append_only
from healthpay.time_utils import to_utc_z


# =============================================================================
# DISPUTE STAGES / RESOLUTIONS (CONSTANTS)
# =============================================================================

STAGE_STAFF_REVIEW = "STAFF_REVIEW"
STAGE_DOCTOR_REVIEW = "DOCTOR_REVIEW"
STAGE_ADMIN_REVIEW = "ADMIN_REVIEW"
STAGE_RESOLVED = "RESOLVED"

DISPUTE_STAGES = (STAGE_STAFF_REVIEW, STAGE_DOCTOR_REVIEW, STAGE_ADMIN_REVIEW, STAGE_RESOLVED)

RESOLUTION_OPEN = "OPEN"
RESOLUTION_ADMIN_PENDING = "ADMIN_PENDING"
RESOLUTION_PATIENT_FAVORED = "PATIENT_FAVORED"
RESOLUTION_PRACTICE_FAVORED = "PRACTICE_FAVORED"
RESOLUTION_CLOSED = "CLOSED"
RESOLUTION_UPHELD = "UPHELD"

TERMINAL_RESOLUTIONS = (
    RESOLUTION_PATIENT_FAVORED,
    RESOLUTION_PRACTICE_FAVORED,
    RESOLUTION_CLOSED,
    RESOLUTION_UPHELD,
)


class PaymentDispute(db.Model):
    """
    A contested verification outcome working its way up the review tiers.

    STAGES: STAFF_REVIEW -> DOCTOR_REVIEW -> ADMIN_REVIEW -> RESOLVED.
    RESOLVED is terminal; dispute_service refuses any further mutation.

    INVARIANTS:
    - resolution_status is terminal iff stage == RESOLVED
    - resolved_at is set iff resolution_status is terminal
    - at most one non-RESOLVED dispute per verification (partial unique index)
    """
    __tablename__ = "payment_disputes"
    __table_args__ = (
        db.Index(
            "uq_payment_disputes_open_verification",
            "verification_id",
            unique=True,
            sqlite_where=db.text("stage != 'RESOLVED'"),
            postgresql_where=db.text("stage != 'RESOLVED'"),
        ),
        db.Index("ix_payment_disputes_stage_created", "stage", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    verification_id = db.Column(db.Integer, db.ForeignKey("payment_verifications.id"), nullable=False, index=True)

    stage = db.Column(db.String(24), nullable=False, default=STAGE_STAFF_REVIEW)
    resolution_status = db.Column(db.String(24), nullable=False, default=RESOLUTION_OPEN)

    raised_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    notes = db.Column(db.String(1000), nullable=True)

    resolved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    verification = db.relationship("PaymentVerification", backref=db.backref("disputes", lazy=True))
    raised_by = db.relationship("User", foreign_keys=[raised_by_user_id])
    resolved_by = db.relationship("User", foreign_keys=[resolved_by_user_id])
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_resolved(self) -> bool:
        return self.stage == STAGE_RESOLVED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "verification_id": self.verification_id,
            "stage": self.stage,
            "resolution_status": self.resolution_status,
            "raised_by_user_id": self.raised_by_user_id,
            "notes": self.notes,
            "resolved_by_user_id": self.resolved_by_user_id,
            "resolved_at": to_utc_z(self.resolved_at) if self.resolved_at else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class PaymentDisputeHistory(db.Model):
    """
    Append-only timeline of dispute transitions.

    WHY: Reconciliation and complaint handling need to know who moved a
    dispute, when, and what the resolution looked like at that moment.
    Replaying the rows in (created_at, id) order reproduces the dispute's
    current stage and resolution (see history_service.fold_history).

    IMMUTABLE: before_update / before_delete listeners reject changes.
    """
    __tablename__ = "payment_dispute_history"
    __table_args__ = (
        db.Index("ix_payment_dispute_history_dispute_created", "dispute_id", "created_at", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    dispute_id = db.Column(db.Integer, db.ForeignKey("payment_disputes.id"), nullable=False, index=True)

    from_stage = db.Column(db.String(24), nullable=True)  # None for the opening row
    to_stage = db.Column(db.String(24), nullable=False)
    resolution_status = db.Column(db.String(24), nullable=False)  # snapshot after the transition

    changed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    note = db.Column(db.String(1000), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    dispute = db.relationship("PaymentDispute", backref=db.backref("history", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "dispute_id": self.dispute_id,
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "resolution_status": self.resolution_status,
            "changed_by_user_id": self.changed_by_user_id,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }


register_append_only(PaymentDisputeHistory)
