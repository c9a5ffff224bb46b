# Overview: Domain error taxonomy shared by services and routes.

"""
Payment workflow errors.

Every error carries a stable machine-readable code and the HTTP status the
API boundary maps it to. Services raise these; routes catch them and call
error_response(). None of them is retried inside the engine.
"""

from flask import jsonify


class PaymentWorkflowError(Exception):
    """Base class for recoverable payment workflow errors (4xx)."""
    code = "PAYMENT_WORKFLOW_ERROR"
    http_status = 400


class ValidationError(PaymentWorkflowError):
    """400-level input problem."""
    code = "VALIDATION_ERROR"
    http_status = 400


class ActorNotPermittedError(PaymentWorkflowError):
    """Actor's role or tier does not allow the operation."""
    code = "ACTOR_NOT_PERMITTED"
    http_status = 403


class NotFoundError(PaymentWorkflowError):
    code = "NOT_FOUND"
    http_status = 404


class InvalidStateError(PaymentWorkflowError):
    """An active payment already exists, or the target is not in a usable state."""
    code = "INVALID_STATE"
    http_status = 409


class IllegalTransitionError(PaymentWorkflowError):
    """Status/stage transition not permitted from the current state."""
    code = "ILLEGAL_TRANSITION"
    http_status = 409


class NotClaimedError(PaymentWorkflowError):
    """Caller does not hold the claim on the queue item."""
    code = "NOT_CLAIMED"
    http_status = 409


class AlreadyClaimedError(PaymentWorkflowError):
    """Another verifier holds the claim on the queue item."""
    code = "ALREADY_CLAIMED"
    http_status = 409


class AlreadyDecidedError(PaymentWorkflowError):
    code = "ALREADY_DECIDED"
    http_status = 409


class DuplicateDisputeError(PaymentWorkflowError):
    code = "DUPLICATE_DISPUTE"
    http_status = 409


class DisputeClosedError(IllegalTransitionError):
    """Dispute is RESOLVED; no stage or resolution change is legal any more."""
    code = "DISPUTE_CLOSED"
    http_status = 409


def error_response(exc: PaymentWorkflowError):
    """Render a workflow error as (json, status) for a Flask route."""
    return jsonify({"error": str(exc), "code": exc.code}), exc.http_status
