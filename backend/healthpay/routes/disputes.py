# Overview: Flask API routes for payment disputes; parses input and returns JSON responses.

"""
Dispute API Routes

WHY: Patients and doctors contest verification decisions; staff, doctors
and admins work the dispute up the review tiers and resolve it.

SECURITY:
- Raising: the appointment's patient or doctor, or any staff/admin
- Escalating/resolving: actor must rank at or above the dispute's tier
  (checked in dispute_service; denials logged to security_events)
- Listing: STAFF tier or above
- Reading one dispute or its history: the appointment's patient or doctor,
  or any staff/admin
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import PaymentWorkflowError, ValidationError
from ..models.auth import USER_KIND_STAFF
from ..services import dispute_service
from ..services.permission_service import require_appointment_party
from ..decorators import require_auth, require_role, workflow_error, body_value


disputes_bp = Blueprint("disputes", __name__, url_prefix="/api/disputes")


def _check_can_view(dispute) -> None:
    require_appointment_party(g.actor, dispute_service.appointment_for_dispute(dispute), "disputes")


@disputes_bp.post("")
@require_auth
def raise_dispute_route():
    """
    Open a dispute against a decided verification.

    Request body:
    {
        "verificationId": 12,        ("verification_id" also accepted)
        "notes": "I paid, the transfer reference is TRX-991"
    }

    Returns:
        201: {dispute}
        403: Not the appointment's patient/doctor
        409: DUPLICATE_DISPUTE / ILLEGAL_TRANSITION
    """
    try:
        data = request.get_json(silent=True) or {}
        verification_id = body_value(data, "verificationId", "verification_id")
        if not isinstance(verification_id, int) or isinstance(verification_id, bool):
            raise ValidationError("verificationId is required")

        dispute = dispute_service.raise_dispute(verification_id, g.actor, data.get("notes"))
        return jsonify({"dispute": dispute.to_dict()}), 201

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to raise dispute")
        return jsonify({"error": "Internal server error"}), 500


@disputes_bp.get("")
@require_auth
@require_role(USER_KIND_STAFF)
def list_disputes_route():
    """
    List disputes, optionally filtered by stage.

    Query params:
        stage=STAFF_REVIEW | DOCTOR_REVIEW | ADMIN_REVIEW | RESOLVED
    """
    try:
        disputes = dispute_service.list_by_stage(request.args.get("stage"))
        return jsonify({"disputes": [d.to_dict() for d in disputes]}), 200

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to list disputes")
        return jsonify({"error": "Internal server error"}), 500


@disputes_bp.get("/<int:dispute_id>")
@require_auth
def get_dispute_route(dispute_id: int):
    try:
        dispute = dispute_service.get_dispute(dispute_id)
        _check_can_view(dispute)
        return jsonify({"dispute": dispute.to_dict()}), 200

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to get dispute")
        return jsonify({"error": "Internal server error"}), 500


@disputes_bp.post("/<int:dispute_id>/escalate")
@require_auth
def escalate_dispute_route(dispute_id: int):
    """
    Move a dispute up one review tier.

    Request body:
    {
        "note": "..."   (optional)
    }

    Returns:
        200: {dispute}
        403: Actor below the dispute's current tier
        409: Already at ADMIN_REVIEW, or resolved
    """
    try:
        data = request.get_json(silent=True) or {}
        dispute = dispute_service.escalate(dispute_id, g.actor, data.get("note"))
        return jsonify({"dispute": dispute.to_dict()}), 200

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to escalate dispute")
        return jsonify({"error": "Internal server error"}), 500


@disputes_bp.post("/<int:dispute_id>/resolve")
@require_auth
def resolve_dispute_route(dispute_id: int):
    """
    Resolve a dispute.

    Request body:
    {
        "resolutionStatus": "PATIENT_FAVORED",   (PATIENT_FAVORED, PRACTICE_FAVORED, CLOSED, UPHELD;
                                                 "resolution_status" also accepted)
        "note": "..."                             (optional)
    }

    Returns:
        200: {dispute}
        400: Non-terminal resolution
        403: Actor below the dispute's current tier
        409: Already resolved
    """
    try:
        data = request.get_json(silent=True) or {}
        resolution = body_value(data, "resolutionStatus", "resolution_status")
        dispute = dispute_service.resolve(dispute_id, g.actor, resolution, data.get("note"))
        return jsonify({"dispute": dispute.to_dict()}), 200

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to resolve dispute")
        return jsonify({"error": "Internal server error"}), 500


@disputes_bp.get("/<int:dispute_id>/history")
@require_auth
def dispute_history_route(dispute_id: int):
    """Ordered transition history for a dispute."""
    try:
        _check_can_view(dispute_service.get_dispute(dispute_id))
        entries = dispute_service.get_history(dispute_id)
        return jsonify({
            "dispute_id": dispute_id,
            "history": [e.to_dict() for e in entries],
        }), 200

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to get dispute history")
        return jsonify({"error": "Internal server error"}), 500
