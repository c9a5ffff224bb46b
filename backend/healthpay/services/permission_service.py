# Overview: Actor model, role tiers and security-event logging for authorization checks.

"""
Actor & Role Checks

WHY: Verification and dispute operations are gated on WHO is acting, not
on fine-grained permission codes. Every user carries one `kind` tag
(PATIENT, STAFF, DOCTOR, ADMIN); services receive an Actor built from it
and compare tiers.

TIERS (review authority): STAFF < DOCTOR < ADMIN. Patients have no tier;
they may only act on their own appointments.

Every denial at the HTTP boundary is written to security_events.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..extensions import db
from ..errors import ActorNotPermittedError
from ..models import SecurityEvent, User
from ..models.auth import (
    USER_KIND_PATIENT,
    USER_KIND_STAFF,
    USER_KIND_DOCTOR,
    USER_KIND_ADMIN,
    USER_KINDS,
)
from healthpay.time_utils import utcnow


TIER_RANK = {
    USER_KIND_PATIENT: 0,
    USER_KIND_STAFF: 1,
    USER_KIND_DOCTOR: 2,
    USER_KIND_ADMIN: 3,
}


@dataclass(frozen=True)
class Actor:
    """The user performing an operation, tagged by kind."""
    kind: str
    id: int

    def __post_init__(self):
        if self.kind not in USER_KINDS:
            raise ValueError(f"Unknown actor kind: {self.kind}")

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(kind=user.kind, id=user.id)

    @property
    def rank(self) -> int:
        return TIER_RANK[self.kind]

    @property
    def is_patient(self) -> bool:
        return self.kind == USER_KIND_PATIENT


def outranks_or_equals(actor: Actor, required_kind: str) -> bool:
    return actor.rank >= TIER_RANK[required_kind]


def authorize(actor: Actor, required_role: str) -> None:
    """
    Raise ActorNotPermittedError unless the actor holds `required_role`.

    PATIENT must match exactly; staff tiers pass when the actor ranks at or
    above the required tier (an ADMIN can do anything a STAFF member can).
    """
    if required_role not in TIER_RANK:
        raise ValueError(f"Unknown role: {required_role}")
    if required_role == USER_KIND_PATIENT:
        if actor.kind != USER_KIND_PATIENT:
            raise ActorNotPermittedError(f"{actor.kind} cannot act as PATIENT")
        return
    if not outranks_or_equals(actor, required_role):
        raise ActorNotPermittedError(f"{actor.kind} is below required role {required_role}")


def authorize_any(actor: Actor, roles) -> None:
    """Pass if the actor satisfies any one of `roles`."""
    for role in roles:
        try:
            authorize(actor, role)
            return
        except ActorNotPermittedError:
            continue
    raise ActorNotPermittedError(f"{actor.kind} is not one of {list(roles)}")


def require_appointment_party(actor: Actor, appointment, what: str = "payments") -> None:
    """
    Patients and doctors only reach their own appointments; every staff tier
    reaches all of them.
    """
    if actor.kind == USER_KIND_PATIENT and appointment.patient_user_id != actor.id:
        raise ActorNotPermittedError(f"Patients may only view their own {what}")
    if actor.kind == USER_KIND_DOCTOR and appointment.doctor_user_id != actor.id:
        raise ActorNotPermittedError(f"Doctors may only view {what} for their own appointments")


def log_security_event(
    user_id: int | None,
    event_type: str,
    success: bool,
    resource: str | None = None,
    action: str | None = None,
    reason: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> SecurityEvent:
    """
    Log security event to audit trail.

    WHY: Immutable audit log for security monitoring. Role denials on the
    queue and dispute endpoints are the interesting ones: a patient poking
    at /verifications or a staff member trying to resolve an ADMIN_REVIEW
    dispute.

    event_type examples:
    - PERMISSION_DENIED
    - LOGIN_FAILED
    - LOGIN_SUCCESS
    - LOGOUT

    Commits on its own; call it outside any open business transaction.
    """
    event = SecurityEvent(
        user_id=user_id,
        event_type=event_type,
        resource=resource,
        action=action,
        success=success,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
        occurred_at=utcnow(),
    )

    db.session.add(event)
    db.session.commit()

    return event
