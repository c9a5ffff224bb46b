from __future__ import annotations

from ..extensions import db
from healthpay.time_utils import to_utc_z


APPOINTMENT_STATUS_PENDING_PAYMENT = "PENDING_PAYMENT"
APPOINTMENT_STATUS_CONFIRMED = "CONFIRMED"
APPOINTMENT_STATUS_CANCELLED = "CANCELLED"
APPOINTMENT_STATUS_COMPLETED = "COMPLETED"

# Whose account an appointment's payments go to
PAYMENT_ACCOUNT_MODE_DOCTOR_LEVEL = "DOCTOR_LEVEL"
PAYMENT_ACCOUNT_MODE_CENTRALIZED_ORG = "CENTRALIZED_ORG"

VALID_PAYMENT_ACCOUNT_MODES = [PAYMENT_ACCOUNT_MODE_DOCTOR_LEVEL, PAYMENT_ACCOUNT_MODE_CENTRALIZED_ORG]

# Older rows spell the centralized mode these ways
LEGACY_CENTRALIZED_MODES = ("CENTRALIZED", "ORGANIZATION_LEVEL")


class Organization(db.Model):
    """
    Clinic or hospital that doctors practise under.

    payment_account_mode decides whose account receives an appointment's
    payment: DOCTOR_LEVEL pays the treating doctor, CENTRALIZED_ORG pays the
    organization's central account.
    """
    __tablename__ = "organizations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    payment_account_mode = db.Column(db.String(24), nullable=False, default=PAYMENT_ACCOUNT_MODE_DOCTOR_LEVEL)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def canonical_payment_account_mode(self) -> str:
        if self.payment_account_mode in LEGACY_CENTRALIZED_MODES:
            return PAYMENT_ACCOUNT_MODE_CENTRALIZED_ORG
        return self.payment_account_mode or PAYMENT_ACCOUNT_MODE_DOCTOR_LEVEL

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "payment_account_mode": self.canonical_payment_account_mode,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }


class Appointment(db.Model):
    """
    Minimal appointment record owned by the scheduling service.

    The payment engine only reads who the patient/doctor are and when the
    visit is scheduled, and flips PENDING_PAYMENT -> CONFIRMED through the
    appointment-confirmation collaborator. Scheduling and conflict
    detection live elsewhere.
    """
    __tablename__ = "appointments"
    __table_args__ = (
        db.Index("ix_appointments_doctor_scheduled", "doctor_user_id", "scheduled_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    patient_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    doctor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    organization_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=True, index=True)

    scheduled_at = db.Column(db.DateTime(timezone=True), nullable=False)
    status = db.Column(db.String(24), nullable=False, default=APPOINTMENT_STATUS_PENDING_PAYMENT, index=True)

    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    patient = db.relationship("User", foreign_keys=[patient_user_id])
    doctor = db.relationship("User", foreign_keys=[doctor_user_id])
    organization = db.relationship("Organization")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "patient_user_id": self.patient_user_id,
            "doctor_user_id": self.doctor_user_id,
            "organization_id": self.organization_id,
            "scheduled_at": to_utc_z(self.scheduled_at),
            "status": self.status,
            "confirmed_at": to_utc_z(self.confirmed_at) if self.confirmed_at else None,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }


class DoctorRefundPolicy(db.Model):
    """
    Per-doctor cancellation refund policy.

    - refund_cutoff_minutes: cancellations at least this far ahead get a full refund
    - refund_deduction_bps: deduction applied inside the cutoff, in basis points
      (2000 = 20%)
    - allow_full_refund_on_doctor_cancellation: doctor-side cancellations ignore the cutoff
    """
    __tablename__ = "doctor_refund_policies"
    __table_args__ = (
        db.CheckConstraint("refund_deduction_bps >= 0 AND refund_deduction_bps <= 10000",
                           name="ck_refund_policy_bps_range"),
        db.CheckConstraint("refund_cutoff_minutes >= 0", name="ck_refund_policy_cutoff_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    doctor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)

    refund_cutoff_minutes = db.Column(db.Integer, nullable=False, default=1440)  # 24 hours
    refund_deduction_bps = db.Column(db.Integer, nullable=False, default=0)
    allow_full_refund_on_doctor_cancellation = db.Column(db.Boolean, nullable=False, default=True)

    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    doctor = db.relationship("User", backref=db.backref("refund_policy", uselist=False, lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_policy(self):
        from ..services.refund_policy import RefundPolicy
        return RefundPolicy.from_bps(
            refund_cutoff_minutes=self.refund_cutoff_minutes,
            refund_deduction_bps=self.refund_deduction_bps,
            allow_full_refund_on_doctor_cancellation=self.allow_full_refund_on_doctor_cancellation,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "doctor_user_id": self.doctor_user_id,
            "refund_cutoff_minutes": self.refund_cutoff_minutes,
            "refund_deduction_bps": self.refund_deduction_bps,
            "allow_full_refund_on_doctor_cancellation": self.allow_full_refund_on_doctor_cancellation,
            "version_id": self.version_id,
        }
