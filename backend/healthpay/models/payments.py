from __future__ import annotations

from ..extensions import db
from .append_only import register_append_only
from healthpay.time_utils import to_utc_z


# =============================================================================
# PAYMENT STATUS / METHOD (CONSTANTS)
# =============================================================================

PAYMENT_STATUS_PENDING_VERIFICATION = "PENDING_VERIFICATION"
PAYMENT_STATUS_VERIFIED = "VERIFIED"
PAYMENT_STATUS_REJECTED = "REJECTED"
PAYMENT_STATUS_AUTHORIZED = "AUTHORIZED"
PAYMENT_STATUS_CAPTURED = "CAPTURED"
PAYMENT_STATUS_REFUND_REQUESTED = "REFUND_REQUESTED"
PAYMENT_STATUS_REFUNDED = "REFUNDED"
PAYMENT_STATUS_FAILED = "FAILED"

# Statuses that hold the appointment's single payment slot; the slot frees once
# the money is back (REFUNDED) or never arrived (FAILED, REJECTED)
PAYMENT_ACTIVE_STATUSES = (
    PAYMENT_STATUS_PENDING_VERIFICATION,
    PAYMENT_STATUS_VERIFIED,
    PAYMENT_STATUS_AUTHORIZED,
    PAYMENT_STATUS_CAPTURED,
    PAYMENT_STATUS_REFUND_REQUESTED,
)

ACCOUNT_HOLDER_DOCTOR = "DOCTOR"
ACCOUNT_HOLDER_ORGANIZATION = "ORGANIZATION"

METHOD_CASH = "CASH"
METHOD_BANK_TRANSFER = "BANK_TRANSFER"
METHOD_WALLET = "WALLET"
METHOD_CARD = "CARD"

VALID_PAYMENT_METHODS = [METHOD_CASH, METHOD_BANK_TRANSFER, METHOD_WALLET, METHOD_CARD]


VERIFICATION_STATUS_PENDING_QUEUE = "PENDING_QUEUE"
VERIFICATION_STATUS_VERIFIED = "VERIFIED"
VERIFICATION_STATUS_REJECTED = "REJECTED"
VERIFICATION_STATUS_ESCALATED = "ESCALATED"
VERIFICATION_STATUS_REFUND_REQUESTED = "REFUND_REQUESTED"

# A payment has at most one verification in one of these at a time
VERIFICATION_OPEN_STATUSES = (VERIFICATION_STATUS_PENDING_QUEUE, VERIFICATION_STATUS_ESCALATED)


def _in_list_sql(column: str, values) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Payment(db.Model):
    """
    One financial obligation for one appointment.

    WHY: Payments arrive outside any gateway (cash at the desk, bank transfer,
    mobile wallet), so nothing guarantees settlement. The payment row is the
    single source of truth for where the money stands; verifiers move it
    through the status graph in payment_service.ALLOWED_TRANSITIONS.

    AMOUNTS: integer minor units of `currency` (paisa for PKR, cents for USD).

    SINGLE ACTIVE PAYMENT: the partial unique index keeps at most one
    PENDING_VERIFICATION/VERIFIED/AUTHORIZED/CAPTURED/REFUND_REQUESTED payment
    per appointment.

    PAYEE: account_holder_type/account_holder_id record whose account the
    patient was told to pay, resolved once at submission.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.Index(
            "uq_payments_active_appointment",
            "appointment_id",
            unique=True,
            sqlite_where=db.text(_in_list_sql("status", PAYMENT_ACTIVE_STATUSES)),
            postgresql_where=db.text(_in_list_sql("status", PAYMENT_ACTIVE_STATUSES)),
        ),
        db.CheckConstraint("amount_cents > 0", name="ck_payments_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    appointment_id = db.Column(db.Integer, db.ForeignKey("appointments.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="PKR")

    method = db.Column(db.String(32), nullable=False, index=True)  # CASH, BANK_TRANSFER, WALLET, CARD
    status = db.Column(db.String(24), nullable=False, default=PAYMENT_STATUS_PENDING_VERIFICATION, index=True)

    # Proof of payment
    transaction_reference = db.Column(db.String(128), nullable=True)  # bank ref, wallet txn id, cash receipt no.
    receipt_url = db.Column(db.String(512), nullable=True)  # storage object id / pointer

    # Optional gateway reconciliation
    external_provider = db.Column(db.String(40), nullable=True)
    external_status = db.Column(db.String(60), nullable=True)

    # Payee, resolved from the organization's payment account mode at submission
    account_holder_type = db.Column(db.String(16), nullable=False, default=ACCOUNT_HOLDER_DOCTOR)
    account_holder_id = db.Column(db.Integer, nullable=False)

    # Retry telemetry (observational only)
    attempt_count = db.Column(db.Integer, nullable=False, default=0)
    last_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Verification decision
    verified_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    verification_notes = db.Column(db.Text, nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    captured_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Refund
    refund_amount_cents = db.Column(db.Integer, nullable=True)
    refund_requested_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    refund_requested_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    submitted_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    appointment = db.relationship("Appointment", backref=db.backref("payments", lazy=True))
    verified_by = db.relationship("User", foreign_keys=[verified_by_user_id])
    submitted_by = db.relationship("User", foreign_keys=[submitted_by_user_id])
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "appointment_id": self.appointment_id,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "method": self.method,
            "status": self.status,
            "transaction_reference": self.transaction_reference,
            "receipt_url": self.receipt_url,
            "external_provider": self.external_provider,
            "external_status": self.external_status,
            "account_holder_type": self.account_holder_type,
            "account_holder_id": self.account_holder_id,
            "attempt_count": self.attempt_count,
            "last_attempt_at": to_utc_z(self.last_attempt_at) if self.last_attempt_at else None,
            "verified_by_user_id": self.verified_by_user_id,
            "verification_notes": self.verification_notes,
            "verified_at": to_utc_z(self.verified_at) if self.verified_at else None,
            "captured_at": to_utc_z(self.captured_at) if self.captured_at else None,
            "refund_amount_cents": self.refund_amount_cents,
            "refund_requested_by_user_id": self.refund_requested_by_user_id,
            "refund_requested_at": to_utc_z(self.refund_requested_at) if self.refund_requested_at else None,
            "refunded_at": to_utc_z(self.refunded_at) if self.refunded_at else None,
            "submitted_by_user_id": self.submitted_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class PaymentStatusEvent(db.Model):
    """
    Append-only ledger of payment status changes.

    WHY: Financial reconciliation needs the full path a payment took, not
    just where it ended. Every transition made by payment_service writes one
    row in the same transaction as the status change.

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "payment_status_events"
    __table_args__ = (
        db.Index("ix_payment_status_events_payment_occurred", "payment_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)

    from_status = db.Column(db.String(24), nullable=True)  # None for creation
    to_status = db.Column(db.String(24), nullable=False, index=True)

    # Amount relevant to the event (payment amount, or refund amount for refunds)
    amount_cents = db.Column(db.Integer, nullable=False)

    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    note = db.Column(db.String(1000), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    payment = db.relationship("Payment", backref=db.backref("status_events", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "amount_cents": self.amount_cents,
            "actor_user_id": self.actor_user_id,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
        }


register_append_only(PaymentStatusEvent)


class PaymentVerification(db.Model):
    """
    Verification queue entry for a payment.

    QUEUE: rows in PENDING_QUEUE ordered by (created_at, id) form the FIFO.
    A row is claimed when verifier_user_id is set; only the claim holder may
    decide it. Claims and decisions are compare-and-swap updates on
    (status, verifier_user_id, version_id), see verification_service.

    HISTORY: a payment may accumulate several verification rows over time
    (e.g. re-queued after an escalation closes) but the partial unique index
    allows only one PENDING_QUEUE/ESCALATED row per payment.
    """
    __tablename__ = "payment_verifications"
    __table_args__ = (
        db.Index("ix_payment_verifications_status_created", "status", "created_at"),
        db.Index(
            "uq_payment_verifications_open_payment",
            "payment_id",
            unique=True,
            sqlite_where=db.text(_in_list_sql("status", VERIFICATION_OPEN_STATUSES)),
            postgresql_where=db.text(_in_list_sql("status", VERIFICATION_OPEN_STATUSES)),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)

    # Claim holder (null while unclaimed)
    verifier_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    claimed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    status = db.Column(db.String(24), nullable=False, default=VERIFICATION_STATUS_PENDING_QUEUE, index=True)
    notes = db.Column(db.String(512), nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Set while an open dispute references this verification
    disputed = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    payment = db.relationship("Payment", backref=db.backref("verifications", lazy=True))
    verifier = db.relationship("User", foreign_keys=[verifier_user_id])
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_claimed(self) -> bool:
        return self.verifier_user_id is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "verifier_user_id": self.verifier_user_id,
            "claimed_at": to_utc_z(self.claimed_at) if self.claimed_at else None,
            "status": self.status,
            "notes": self.notes,
            "verified_at": to_utc_z(self.verified_at) if self.verified_at else None,
            "disputed": self.disputed,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
