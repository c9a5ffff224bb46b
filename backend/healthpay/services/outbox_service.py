# Overview: Transactional outbox; record side effects with the mutation, deliver them after commit.

"""
Outbox Service

WHY: "Payment verified" has to confirm the appointment and tell the
patient, but only if the verification actually committed. Writing the
side effect as an OutboxEvent row inside the same transaction makes the two
atomic; dispatch_pending() delivers committed rows afterwards.

DELIVERY:
- payment.verified / payment.captured -> appointments.on_payment_verified
- every event -> notifier.notify for each id in payload["notify_user_ids"]

Failures are retried with exponential backoff until OUTBOX_MAX_ATTEMPTS,
then the row is parked as DEAD for an operator to look at.
"""

from __future__ import annotations

from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import OutboxEvent
from ..models.outbox import (
    OUTBOX_STATUS_PENDING,
    OUTBOX_STATUS_FAILED,
    OUTBOX_STATUS_DEAD,
)
from .collaborators import get_collaborators
from .concurrency import lock_for_update, reload
from healthpay.time_utils import utcnow


CONFIRMING_EVENTS = ("payment.verified", "payment.captured")


def enqueue_event(aggregate_type: str, aggregate_id: int, event_type: str, payload: dict) -> OutboxEvent:
    """
    Record a side effect in the caller's transaction.

    Does NOT commit.
    """
    event = OutboxEvent(
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        event_type=event_type,
        payload=payload,
        status=OUTBOX_STATUS_PENDING,
        attempts=0,
        created_at=utcnow(),
    )
    db.session.add(event)
    db.session.flush()
    return event


def _deliver(event: OutboxEvent, collaborators) -> None:
    payload = event.payload or {}
    if event.event_type in CONFIRMING_EVENTS and payload.get("appointment_id") is not None:
        collaborators.appointments.on_payment_verified(payload["appointment_id"])
    for user_id in payload.get("notify_user_ids") or []:
        collaborators.notifier.notify(user_id, event.event_type, payload)


def _due_events(limit: int, now):
    query = db.session.query(OutboxEvent).filter(
        OutboxEvent.status.in_([OUTBOX_STATUS_PENDING, OUTBOX_STATUS_FAILED]),
        db.or_(OutboxEvent.next_attempt_at.is_(None), OutboxEvent.next_attempt_at <= now),
    ).order_by(OutboxEvent.id.asc()).limit(limit)
    return lock_for_update(query).all()


def dispatch_pending(limit: int | None = None, now=None) -> dict:
    """
    Deliver due outbox events, one commit per event.

    Returns counts: {"sent": n, "failed": n, "dead": n}.
    """
    config = current_app.config
    limit = limit or config["OUTBOX_BATCH_SIZE"]
    max_attempts = config["OUTBOX_MAX_ATTEMPTS"]
    retry_seconds = config["OUTBOX_RETRY_SECONDS"]
    now = now or utcnow()

    collaborators = get_collaborators()
    counts = {"sent": 0, "failed": 0, "dead": 0}

    event_ids = [event.id for event in _due_events(limit, now)]
    db.session.commit()

    for event_id in event_ids:
        event = reload(OutboxEvent, event_id)
        if event is None or event.status not in (OUTBOX_STATUS_PENDING, OUTBOX_STATUS_FAILED):
            continue
        try:
            _deliver(event, collaborators)
            event.mark_sent()
            db.session.commit()
            counts["sent"] += 1
        except Exception as exc:
            db.session.rollback()
            event = reload(OutboxEvent, event_id)
            backoff = timedelta(seconds=retry_seconds * (2 ** (event.attempts or 0)))
            event.mark_failed(str(exc), retry_at=now + backoff, max_attempts=max_attempts)
            db.session.commit()
            if event.status == OUTBOX_STATUS_DEAD:
                counts["dead"] += 1
                current_app.logger.error(
                    "Outbox event %s (%s) dead after %s attempts: %s",
                    event_id, event.event_type, event.attempts, exc,
                )
            else:
                counts["failed"] += 1
                current_app.logger.warning(
                    "Outbox event %s (%s) failed, attempt %s: %s",
                    event_id, event.event_type, event.attempts, exc,
                )

    current_app.logger.info(
        "Outbox dispatch: sent=%s failed=%s dead=%s", counts["sent"], counts["failed"], counts["dead"],
    )
    return counts


def list_events(status: str | None = None, limit: int = 100) -> list[OutboxEvent]:
    query = db.session.query(OutboxEvent)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(OutboxEvent.id.desc()).limit(limit).all()


def requeue_dead(event_id: int) -> OutboxEvent:
    """Give a DEAD event a fresh set of attempts."""
    event = db.session.get(OutboxEvent, event_id)
    if event is None:
        raise LookupError(f"Outbox event {event_id} not found")
    if event.status != OUTBOX_STATUS_DEAD:
        raise ValueError(f"Outbox event {event_id} is {event.status}, not {OUTBOX_STATUS_DEAD}")
    event.status = OUTBOX_STATUS_PENDING
    event.attempts = 0
    event.next_attempt_at = None
    db.session.commit()
    return event
