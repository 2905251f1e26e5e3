# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

# backend/receipter/routes/auth.py
"""
Authentication API routes

- POST /api/auth/login  - exchange username/password for a bearer token
- POST /api/auth/logout - revoke the presented token
- GET  /api/auth/me     - the authenticated user

Self-registration does not exist; users are created by admins
(POST /api/admin/users or `flask users create`).
"""

from datetime import timedelta

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth
from ..extensions import get_store
from ..services import auth_service, session_service
from ..time_utils import to_utc_z

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _bearer_token() -> str:
    auth_header = request.headers.get("Authorization") or ""
    return auth_header.split(" ", 1)[1].strip() if " " in auth_header else ""


@auth_bp.post("/login")
def login_route():
    """
    Authenticate user and create session token.

    Body: {"username": "...", "password": "..."}

    The token must be sent as "Authorization: Bearer <token>" on every
    protected route. Unknown users, wrong passwords and deactivated accounts
    all get the same 401.
    """
    try:
        data = request.get_json(silent=True) or {}
        username = data.get("username")
        password = data.get("password")

        if not all([username, password]):
            return jsonify({"error": "username and password required"}), 400

        store = get_store()
        user = auth_service.authenticate(store, username, password)
        if not user:
            current_app.logger.info("Failed login for %s from %s", username, request.remote_addr)
            return jsonify({"error": "Invalid credentials"}), 401

        ttl = timedelta(hours=current_app.config["SESSION_TTL_HOURS"])
        session, token = session_service.create_session(store, user_id=user.id, ttl=ttl)

        return jsonify({
            "user": user.to_dict(),
            "token": token,
            "expires_at": to_utc_z(session.expires_at),
            "message": "Login successful",
        }), 200

    except Exception:
        current_app.logger.exception("Failed to login user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
@require_auth
def logout_route():
    """Revoke the current session token."""
    try:
        session_service.revoke_session(get_store(), _bearer_token())
        return jsonify({"message": "Logged out"}), 200
    except Exception:
        current_app.logger.exception("Failed to logout user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.get("/me")
@require_auth
def me_route():
    return jsonify({
        "user": g.current_user.to_dict(),
        "expires_at": to_utc_z(g.session_context.session.expires_at),
    }), 200
