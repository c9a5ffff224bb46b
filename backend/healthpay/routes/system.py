# backend/healthpay/routes/system.py
"""
System health endpoint.

Reports database reachability plus the two backlogs an operator cares
about: the verification queue and undelivered outbox events.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import OutboxEvent, PaymentVerification, SessionToken
from ..models.outbox import OUTBOX_STATUS_PENDING, OUTBOX_STATUS_FAILED, OUTBOX_STATUS_DEAD
from ..models.payments import VERIFICATION_STATUS_PENDING_QUEUE
from healthpay.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """Check database connectivity and report queue depth."""
    start_time = time.time()
    try:
        queued = db.session.query(PaymentVerification).filter_by(
            status=VERIFICATION_STATUS_PENDING_QUEUE
        ).count()
        unclaimed = db.session.query(PaymentVerification).filter(
            PaymentVerification.status == VERIFICATION_STATUS_PENDING_QUEUE,
            PaymentVerification.verifier_user_id.is_(None),
        ).count()
        active_sessions = db.session.query(SessionToken).filter_by(is_revoked=False).count()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "verification_queue": queued,
                "unclaimed": unclaimed,
                "active_sessions": active_sessions,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_outbox_health() -> dict:
    """Degraded when events have died; an operator needs to requeue them."""
    start_time = time.time()
    try:
        pending = db.session.query(OutboxEvent).filter(
            OutboxEvent.status.in_([OUTBOX_STATUS_PENDING, OUTBOX_STATUS_FAILED])
        ).count()
        dead = db.session.query(OutboxEvent).filter_by(status=OUTBOX_STATUS_DEAD).count()

        elapsed_ms = (time.time() - start_time) * 1000
        result = {
            "status": "degraded" if dead else "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"pending": pending, "dead": dead},
        }
        if dead:
            result["warning"] = f"{dead} outbox events need attention"
        return result
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Outbox health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Outbox error"
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    outbox_health = check_outbox_health()

    all_checks = [database_health, outbox_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "outbox": outbox_health,
        }
    }, http_status
