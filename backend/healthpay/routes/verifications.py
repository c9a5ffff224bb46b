# Overview: Flask API routes for the verification queue; parses input and returns JSON responses.

"""
Verification Queue API Routes

Available to: STAFF, DOCTOR, ADMIN.

Queue contention is reported as 409:
- ALREADY_CLAIMED: someone else holds the item
- NOT_CLAIMED: deciding or releasing an item you do not hold
- ALREADY_DECIDED: the item has left PENDING_QUEUE
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import PaymentWorkflowError
from ..models.auth import USER_KIND_STAFF
from ..services import verification_service
from ..decorators import require_auth, require_role, workflow_error


verifications_bp = Blueprint("verifications", __name__, url_prefix="/api/verifications")


@verifications_bp.get("/queue")
@require_auth
@require_role(USER_KIND_STAFF)
def list_queue_route():
    """
    List PENDING_QUEUE items, oldest first.

    Query params:
        unclaimed=true   only items nobody holds
        limit=50
    """
    try:
        include_claimed = request.args.get("unclaimed", "false").lower() != "true"
        limit = request.args.get("limit", type=int)
        items = verification_service.list_queue(include_claimed=include_claimed, limit=limit)
        return jsonify({"verifications": [v.to_dict() for v in items]}), 200

    except Exception:
        current_app.logger.exception("Failed to list verification queue")
        return jsonify({"error": "Internal server error"}), 500


@verifications_bp.get("/mine")
@require_auth
@require_role(USER_KIND_STAFF)
def list_mine_route():
    """Items the caller has claimed or decided."""
    try:
        items = verification_service.list_for_verifier(g.current_user.id)
        return jsonify({"verifications": [v.to_dict() for v in items]}), 200

    except Exception:
        current_app.logger.exception("Failed to list verifier items")
        return jsonify({"error": "Internal server error"}), 500


@verifications_bp.post("/claim")
@require_auth
@require_role(USER_KIND_STAFF)
def claim_next_route():
    """
    Claim the oldest unclaimed item.

    Returns:
        200: {verification}
        204: Queue empty
    """
    try:
        verification = verification_service.claim_next(g.current_user.id)
        if verification is None:
            return "", 204
        return jsonify({"verification": verification.to_dict()}), 200

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to claim next verification")
        return jsonify({"error": "Internal server error"}), 500


@verifications_bp.post("/<int:verification_id>/claim")
@require_auth
@require_role(USER_KIND_STAFF)
def claim_route(verification_id: int):
    """
    Claim a specific item.

    Returns:
        200: {verification}
        409: ALREADY_CLAIMED / ALREADY_DECIDED
    """
    try:
        verification = verification_service.claim(verification_id, g.current_user.id)
        return jsonify({"verification": verification.to_dict()}), 200

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to claim verification")
        return jsonify({"error": "Internal server error"}), 500


@verifications_bp.post("/<int:verification_id>/release")
@require_auth
@require_role(USER_KIND_STAFF)
def release_route(verification_id: int):
    """Hand a claimed item back to the queue."""
    try:
        verification = verification_service.release(verification_id, g.current_user.id)
        return jsonify({"verification": verification.to_dict()}), 200

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to release verification")
        return jsonify({"error": "Internal server error"}), 500


@verifications_bp.post("/<int:verification_id>/decide")
@require_auth
@require_role(USER_KIND_STAFF)
def decide_route(verification_id: int):
    """
    Decide a claimed item.

    Request body:
    {
        "decision": "VERIFIED",   (VERIFIED, REJECTED, ESCALATED, REFUND_REQUESTED)
        "notes": "..."            (optional)
    }

    Returns:
        200: {verification}
        400: Unknown decision
        409: NOT_CLAIMED / ALREADY_DECIDED / ILLEGAL_TRANSITION
    """
    try:
        data = request.get_json(silent=True) or {}
        verification = verification_service.decide(
            verification_id,
            g.current_user.id,
            data.get("decision"),
            data.get("notes"),
        )
        return jsonify({"verification": verification.to_dict()}), 200

    except PaymentWorkflowError as e:
        return workflow_error(e)
    except Exception:
        current_app.logger.exception("Failed to decide verification")
        return jsonify({"error": "Internal server error"}), 500
