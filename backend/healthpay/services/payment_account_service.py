# Overview: Resolves whose account an appointment's payment is made to.

"""
Payment Account Routing

WHY: A patient paying by bank transfer or wallet has to be told whose
account to pay. Independent doctors collect their own fees; clinics that
run a central account collect for every doctor practising under them.

RULES:
- Appointment without an organization (or whose organization row is gone):
  DOCTOR_LEVEL, the treating doctor is the payee
- Organization in DOCTOR_LEVEL mode: the treating doctor
- Organization in CENTRALIZED_ORG mode (legacy CENTRALIZED /
  ORGANIZATION_LEVEL rows included): the organization
- Any other stored mode: InvalidStateError, the organization is misconfigured

The result is copied onto the Payment at submission so a later change of
mode never rewrites where an old payment was supposed to go.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..extensions import db
from ..errors import InvalidStateError, NotFoundError
from ..models import Appointment, Organization
from ..models.appointments import (
    PAYMENT_ACCOUNT_MODE_DOCTOR_LEVEL,
    PAYMENT_ACCOUNT_MODE_CENTRALIZED_ORG,
)
from ..models.payments import ACCOUNT_HOLDER_DOCTOR, ACCOUNT_HOLDER_ORGANIZATION


@dataclass(frozen=True)
class PaymentAccount:
    mode: str
    account_holder_type: str
    account_holder_id: int
    doctor_user_id: int
    organization_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "mode": self.mode,
            "account_holder_type": self.account_holder_type,
            "account_holder_id": self.account_holder_id,
            "doctor_user_id": self.doctor_user_id,
            "organization_id": self.organization_id,
        }


def resolve_payment_account(appointment: Appointment) -> PaymentAccount:
    """Payee for the appointment's payment, per its organization's account mode."""
    organization = None
    if appointment.organization_id is not None:
        organization = db.session.get(Organization, appointment.organization_id)

    if organization is None:
        return PaymentAccount(
            mode=PAYMENT_ACCOUNT_MODE_DOCTOR_LEVEL,
            account_holder_type=ACCOUNT_HOLDER_DOCTOR,
            account_holder_id=appointment.doctor_user_id,
            doctor_user_id=appointment.doctor_user_id,
        )

    mode = organization.canonical_payment_account_mode
    if mode == PAYMENT_ACCOUNT_MODE_DOCTOR_LEVEL:
        holder_type, holder_id = ACCOUNT_HOLDER_DOCTOR, appointment.doctor_user_id
    elif mode == PAYMENT_ACCOUNT_MODE_CENTRALIZED_ORG:
        holder_type, holder_id = ACCOUNT_HOLDER_ORGANIZATION, organization.id
    else:
        raise InvalidStateError(f"Organization {organization.id} has unsupported payment account mode {mode!r}")

    return PaymentAccount(
        mode=mode,
        account_holder_type=holder_type,
        account_holder_id=holder_id,
        doctor_user_id=appointment.doctor_user_id,
        organization_id=organization.id,
    )


def resolve_for_appointment_id(appointment_id: int) -> PaymentAccount:
    appointment = db.session.get(Appointment, appointment_id)
    if not appointment:
        raise NotFoundError(f"Appointment {appointment_id} not found")
    return resolve_payment_account(appointment)
