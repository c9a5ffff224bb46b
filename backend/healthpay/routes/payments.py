# Overview: Flask API routes for payment operations; parses input and returns JSON responses.

"""
Payment API Routes

WHY: Patients submit proof of an offline payment; verifiers move it
through the ledger; refunds follow appointment cancellations.

SECURITY:
- Submitting, attaching receipts: the appointment's patient
- Verifying, capturing, completing refunds: STAFF tier or above
- Reading: the appointment's patient or doctor, or any staff/admin
- Listing: patients and doctors are pinned to their own appointments
- Every status change is recorded in payment_status_events
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import PaymentWorkflowError
from ..extensions import db
from ..models import Appointment
from ..models.auth import USER_KIND_PATIENT, USER_KIND_DOCTOR, USER_KIND_STAFF
from ..services import payment_service
from ..services.payment_account_service import resolve_for_appointment_id
from ..services.permission_service import require_appointment_party
from ..services.collaborators import get_collaborators
from ..services.refund_policy import CANCELLED_BY_PATIENT, CANCELLED_BY_DOCTOR
from ..decorators import require_auth, require_role, workflow_error, body_value
from healthpay.time_utils import parse_iso_datetime


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _check_can_view(payment) -> None:
    require_appointment_party(g.actor, db.session.get(Appointment, payment.appointment_id))


# =============================================================================
# SUBMISSION
# =============================================================================

@payments_bp.post("/<int:appointment_id>")
@require_auth
@require_role(USER_KIND_PATIENT)
def submit_payment_route(appointment_id: int):
    """
    Submit a payment for an appointment.

    Available to: the appointment's patient

    Request body:
    {
        "amount": "1500.00",                  (major units; or "amount_cents": 150000)
        "method": "BANK_TRANSFER",           (CASH, BANK_TRANSFER, WALLET, CARD)
        "currency": "PKR",                    (optional, defaults to PAYMENT_DEFAULT_CURRENCY)
        "transactionReference": "TRX-991",    (optional; "transaction_reference" also accepted)
        "receiptUrl": "receipts/abc.jpg"      (optional storage object id; "receipt_url" also accepted)
    }

    Returns:
        201: Payment created (PENDING_VERIFICATION) and queued
        400: Invalid input
        404: Appointment not found
        409: Active payment already exists, or appointment cancelled
    """
    try:
        data = request.get_json(silent=True) or {}
        currency = data.get("currency")

        if "amount_cents" in data:
            amount_cents = data["amount_cents"]
        else:
            amount_cents = payment_service.amount_to_minor_units(
                data.get("amount"), currency or current_app.config["PAYMENT_DEFAULT_CURRENCY"],
            )

        payment = payment_service.submit_payment(
            appointment_id=appointment_id,
            submitted_by_user_id=g.current_user.id,
            amount_cents=amount_cents,
            method=data.get("method"),
            currency=currency,
            transaction_reference=body_value(data, "transactionReference", "transaction_reference"),
            receipt_url=body_value(data, "receiptUrl", "receipt_url"),
        )

        return jsonify({"payment": payment.to_dict()}), 201

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to submit payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# QUERIES
# =============================================================================

@payments_bp.get("")
@require_auth
def list_payments_route():
    """
    Payment history, newest first.

    Patients see payments for their own appointments and doctors see
    payments for the appointments they treat. Staff tiers may filter by
    patient_id and doctor_id.

    Query params:
        appointment_id, status, patient_id, doctor_id, limit (default 100, max 200)
    """
    try:
        actor = g.actor
        filters = {
            "appointment_id": request.args.get("appointment_id", type=int),
            "status": request.args.get("status"),
            "limit": min(request.args.get("limit", 100, type=int), 200),
        }
        if actor.kind == USER_KIND_PATIENT:
            filters["patient_user_id"] = actor.id
        elif actor.kind == USER_KIND_DOCTOR:
            filters["doctor_user_id"] = actor.id
        else:
            filters["patient_user_id"] = request.args.get("patient_id", type=int)
            filters["doctor_user_id"] = request.args.get("doctor_id", type=int)

        payments = payment_service.list_payments(**filters)
        return jsonify({"payments": [p.to_dict() for p in payments]}), 200

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to list payments")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/appointments/<int:appointment_id>/account")
@require_auth
def payment_account_route(appointment_id: int):
    """
    Whose account the appointment's payment should go to.

    Returns:
        200: {account: {mode, account_holder_type, account_holder_id, doctor_user_id, organization_id}}
        404: Appointment not found
        409: Organization has an unsupported payment account mode
    """
    try:
        appointment = db.session.get(Appointment, appointment_id)
        if appointment:
            require_appointment_party(g.actor, appointment, "appointments")
        account = resolve_for_appointment_id(appointment_id)
        return jsonify({"account": account.to_dict()}), 200

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to resolve payment account")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/<int:payment_id>")
@require_auth
def get_payment_route(payment_id: int):
    """Get one payment."""
    try:
        payment = payment_service.get_payment(payment_id)
        _check_can_view(payment)
        return jsonify({"payment": payment.to_dict()}), 200

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to get payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/<int:payment_id>/events")
@require_auth
def get_payment_events_route(payment_id: int):
    """
    Get the payment's status ledger, oldest first.

    Returns:
        200: {payment_id, events: [...]}
    """
    try:
        payment = payment_service.get_payment(payment_id)
        _check_can_view(payment)
        events = payment_service.get_status_events(payment_id)
        return jsonify({
            "payment_id": payment_id,
            "events": [e.to_dict() for e in events],
        }), 200

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to get payment events")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# RECEIPTS
# =============================================================================

@payments_bp.get("/<int:payment_id>/receipt")
@require_auth
def get_receipt_route(payment_id: int):
    """
    Get a time-limited URL for the payment's receipt.

    Returns:
        200: {receipt_url, expires_in_seconds}
        404: No receipt attached
    """
    try:
        payment = payment_service.get_payment(payment_id)
        _check_can_view(payment)
        if not payment.receipt_url:
            return jsonify({"error": "No receipt attached", "code": "NOT_FOUND"}), 404

        url = get_collaborators().receipts.resolve_receipt_url(payment.receipt_url)
        return jsonify({
            "receipt_url": url,
            "expires_in_seconds": current_app.config["RECEIPT_URL_TTL_SECONDS"],
        }), 200

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to resolve receipt")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/<int:payment_id>/receipt")
@require_auth
@require_role(USER_KIND_PATIENT)
def attach_receipt_route(payment_id: int):
    """
    Attach proof of payment while it awaits verification.

    Request body:
    {
        "receiptUrl": "receipts/abc.jpg"   ("receipt_url" also accepted)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        payment = payment_service.get_payment(payment_id)
        _check_can_view(payment)

        payment = payment_service.attach_receipt(payment_id, body_value(data, "receiptUrl", "receipt_url"))
        return jsonify({"payment": payment.to_dict()}), 200

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to attach receipt")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# VERIFICATION / LEDGER TRANSITIONS
# =============================================================================

@payments_bp.post("/<int:payment_id>/verify")
@require_auth
@require_role(USER_KIND_STAFF)
def verify_payment_route(payment_id: int):
    """
    Apply a verification status to a payment.

    Available to: STAFF, DOCTOR, ADMIN

    Request body:
    {
        "status": "VERIFIED",          (VERIFIED, REJECTED, AUTHORIZED, CAPTURED, FAILED)
        "verificationNotes": "..."     (optional; "notes" also accepted)
    }

    VERIFIED/REJECTED claim and decide the payment's queue entry in one step.

    Returns:
        200: Updated payment
        400: Unknown status
        409: Illegal transition, or another verifier holds the queue entry
    """
    try:
        data = request.get_json(silent=True) or {}
        notes = body_value(data, "verificationNotes", "notes")

        payment = payment_service.apply_verification_status(
            payment_id, g.actor, data.get("status"), notes,
        )
        return jsonify({"payment": payment.to_dict()}), 200

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to verify payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# REFUNDS
# =============================================================================

@payments_bp.post("/<int:payment_id>/refund")
@require_auth
def request_refund_route(payment_id: int):
    """
    Request a refund after the appointment is cancelled.

    Available to: the appointment's patient (patient cancellation) or any
    staff/doctor/admin (practice cancellation).

    Request body:
    {
        "cancelTime": "2026-10-19T09:00:00Z",    (optional, defaults to now; "cancel_time" also accepted)
        "notes": "..."                            (optional)
    }

    Returns:
        200: Payment in REFUND_REQUESTED with refund_amount_cents
        409: Payment cannot be refunded from its current status
    """
    try:
        data = request.get_json(silent=True) or {}
        payment = payment_service.get_payment(payment_id)
        _check_can_view(payment)

        cancelled_by = CANCELLED_BY_PATIENT if g.actor.is_patient else CANCELLED_BY_DOCTOR
        try:
            cancel_time = parse_iso_datetime(body_value(data, "cancelTime", "cancel_time"))
        except ValueError:
            return jsonify({"error": "cancel_time must be an ISO-8601 datetime", "code": "VALIDATION_ERROR"}), 400

        payment = payment_service.request_refund(
            payment_id,
            actor_user_id=g.current_user.id,
            cancelled_by=cancelled_by,
            cancel_time=cancel_time,
            notes=data.get("notes"),
        )
        return jsonify({"payment": payment.to_dict()}), 200

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to request refund")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/<int:payment_id>/refund/complete")
@require_auth
@require_role(USER_KIND_STAFF)
def complete_refund_route(payment_id: int):
    """
    Record that the refund has been paid out.

    Available to: STAFF, DOCTOR, ADMIN
    """
    try:
        data = request.get_json(silent=True) or {}
        payment = payment_service.complete_refund(payment_id, g.current_user.id, data.get("notes"))
        return jsonify({"payment": payment.to_dict()}), 200

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to complete refund")
        return jsonify({"error": "Internal server error"}), 500
