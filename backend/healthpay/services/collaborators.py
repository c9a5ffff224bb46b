# Overview: Interfaces to the systems the payment engine calls but does not own.

"""
External Collaborators

The engine depends on three outside concerns and reaches them only
through the objects installed here:

- AppointmentConfirmation.on_payment_verified(appointment_id)
- Notifier.notify(user_id, event_type, payload)
- ReceiptStorage.resolve_receipt_url(object_id)

Defaults are production-safe and local: appointment confirmation writes the
shared appointments table, notifications go to the application log, and
receipt URLs are HMAC-signed links to the configured object store.
Tests and deployments swap any of them with install_collaborators().

Authorization (permission_service.authorize) is the fourth collaborator
and is a plain function, not installed here.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass
from urllib.parse import quote, urlencode

from flask import current_app

from ..extensions import db, COLLABORATORS_KEY
from ..models import Appointment
from ..models.appointments import (
    APPOINTMENT_STATUS_PENDING_PAYMENT,
    APPOINTMENT_STATUS_CONFIRMED,
)
from healthpay.time_utils import utcnow


class AppointmentConfirmation:
    def on_payment_verified(self, appointment_id: int) -> None:
        raise NotImplementedError


class Notifier:
    def notify(self, user_id: int, event_type: str, payload: dict) -> None:
        raise NotImplementedError


class ReceiptStorage:
    def resolve_receipt_url(self, object_id: str) -> str:
        raise NotImplementedError


class SqlAppointmentConfirmation(AppointmentConfirmation):
    """
    Flip PENDING_PAYMENT -> CONFIRMED on the shared appointments table.

    Idempotent: an already CONFIRMED appointment is left alone. A cancelled
    or completed appointment is logged and not touched. Does NOT commit;
    the outbox dispatcher commits together with the delivery record.
    """

    def on_payment_verified(self, appointment_id: int) -> None:
        appointment = db.session.get(Appointment, appointment_id)
        if appointment is None:
            raise LookupError(f"Appointment {appointment_id} not found")
        if appointment.status == APPOINTMENT_STATUS_PENDING_PAYMENT:
            appointment.status = APPOINTMENT_STATUS_CONFIRMED
            appointment.confirmed_at = utcnow()
            db.session.flush()
        elif appointment.status != APPOINTMENT_STATUS_CONFIRMED:
            current_app.logger.warning(
                "Payment verified for appointment %s in status %s; not confirming",
                appointment_id, appointment.status,
            )


class LogNotifier(Notifier):
    def notify(self, user_id: int, event_type: str, payload: dict) -> None:
        current_app.logger.info("notify user=%s event=%s payload=%s", user_id, event_type, payload)


class SignedUrlReceiptStorage(ReceiptStorage):
    """
    Time-limited receipt links: {base_url}/{object_id}?expires=...&signature=...

    The signature is HMAC-SHA256 over "object_id:expires" keyed with the
    app SECRET_KEY, so the object store (or a proxy in front of it) can
    check a link without calling back into this service.
    """

    def __init__(self, base_url: str, secret_key: str, ttl_seconds: int = 900, clock=time.time):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def _signature(self, object_id: str, expires: int) -> str:
        message = f"{object_id}:{expires}".encode("utf-8")
        return hmac.new(self.secret_key.encode("utf-8"), message, hashlib.sha256).hexdigest()

    def resolve_receipt_url(self, object_id: str) -> str:
        if not object_id:
            raise ValueError("object_id is required")
        expires = int(self.clock()) + self.ttl_seconds
        query = urlencode({"expires": expires, "signature": self._signature(object_id, expires)})
        return f"{self.base_url}/{quote(object_id, safe='/')}?{query}"

    def verify(self, object_id: str, expires: int, signature: str) -> bool:
        if int(self.clock()) > int(expires):
            return False
        return hmac.compare_digest(self._signature(object_id, int(expires)), signature)


@dataclass
class Collaborators:
    appointments: AppointmentConfirmation
    notifier: Notifier
    receipts: ReceiptStorage


def default_collaborators(app) -> Collaborators:
    return Collaborators(
        appointments=SqlAppointmentConfirmation(),
        notifier=LogNotifier(),
        receipts=SignedUrlReceiptStorage(
            base_url=app.config["RECEIPT_BASE_URL"],
            secret_key=app.config["SECRET_KEY"],
            ttl_seconds=app.config["RECEIPT_URL_TTL_SECONDS"],
        ),
    )


def install_collaborators(app, collaborators: Collaborators | None = None) -> Collaborators:
    collaborators = collaborators or default_collaborators(app)
    app.extensions[COLLABORATORS_KEY] = collaborators
    return collaborators


def get_collaborators() -> Collaborators:
    return current_app.extensions[COLLABORATORS_KEY]
