# Overview: Request and role decorators for API routes.

from functools import wraps

from flask import g, jsonify, request

from .extensions import get_store
from .models.auth import ROLE_CLIENT
from .services import project_service, session_service


def _is_authenticated() -> bool:
    return hasattr(g, "current_user")


def require_auth(f):
    """
    Require a valid bearer token.

    Sets:
    - g.current_user: The authenticated User object
    - g.session_context: The full SessionContext object

    Returns 401 if the header is missing, or the token is unknown, expired,
    revoked or belongs to a deactivated user.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1].strip()
        context = session_service.validate_session(get_store(), token)
        if not context:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.current_user = context.user
        g.session_context = context
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """Require the authenticated user to hold one of `roles`. Use after @require_auth."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401
            if g.current_user.role not in roles:
                return jsonify({
                    "error": "Permission denied",
                    "required_roles": list(roles),
                }), 403
            return f(*args, **kwargs)

        return decorated_function
    return decorator


def require_project_access(f):
    """
    Limit client users to the projects they were granted.

    Reads the `project_id` view argument; admins and scanners pass through.
    Use after @require_auth.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _is_authenticated():
            return jsonify({"error": "Authentication required"}), 401
        denied = project_access_denied(kwargs.get("project_id"))
        if denied is not None:
            return denied
        return f(*args, **kwargs)

    return decorated_function


def project_access_denied(project_id):
    """403 response when a client user has no grant for `project_id`, else None."""
    user = g.current_user
    if user.role != ROLE_CLIENT:
        return None
    if project_service.client_can_access(get_store(), user.id, project_id or 0):
        return None
    return jsonify({"error": "Project access denied"}), 403
