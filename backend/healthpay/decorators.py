# Overview: Request and role decorators for API routes, plus shared body parsing and workflow-error response.

from functools import wraps
from flask import request, jsonify, g

from .errors import ActorNotPermittedError, error_response
from .services import session_service, permission_service


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user') and hasattr(g, 'actor')


def _log_denial(reason: str) -> None:
    permission_service.log_security_event(
        user_id=g.current_user.id if _is_authenticated() else None,
        event_type="PERMISSION_DENIED",
        success=False,
        resource=request.path,
        action=request.method,
        reason=reason,
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
    )


def require_auth(f):
    """
    Require a valid bearer session.

    Sets the following Flask g attributes:
    - g.current_user: The authenticated User object
    - g.actor: Actor(kind, id) handed to the services
    - g.session_context: The full SessionContext object

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid or expired token
    - User account deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]
        context = session_service.validate_session(token)

        if not context:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.current_user = context.user
        g.actor = context.actor
        g.session_context = context

        return f(*args, **kwargs)

    return decorated_function


def require_role(*kinds: str):
    """
    Require the actor to satisfy one of `kinds`.

    Staff tiers are ranked (STAFF < DOCTOR < ADMIN), so require_role("STAFF")
    admits doctors and admins too. PATIENT only admits patients.
    Denials are written to security_events.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            try:
                permission_service.authorize_any(g.actor, kinds)
            except ActorNotPermittedError as e:
                _log_denial(str(e))
                return jsonify({
                    "error": "Permission denied",
                    "required_role": list(kinds),
                    "code": e.code,
                    "message": str(e),
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator


def body_value(data: dict, *names):
    """First key present in the body; routes accept snake_case and camelCase spellings."""
    for name in names:
        if name in data:
            return data[name]
    return None


def workflow_error(exc):
    """
    Render a PaymentWorkflowError for a route.

    Tier and ownership denials raised inside the services are logged the
    same way as decorator denials.
    """
    if isinstance(exc, ActorNotPermittedError):
        _log_denial(str(exc))
    return error_response(exc)
