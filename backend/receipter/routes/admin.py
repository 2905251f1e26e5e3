# Overview: Flask API routes for admin operations; parses input and returns JSON responses.

# backend/receipter/routes/admin.py
"""
Admin API routes: user management and client project grants.

- GET  /api/admin/users                    - list users
- POST /api/admin/users                    - create a user
- PUT  /api/admin/users/<id>/projects      - replace a client user's project grants

All routes require the admin role.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_role
from ..extensions import get_store
from ..models.auth import ROLE_ADMIN
from ..services import auth_service, project_service
from ..validation import DOMAIN_ERRORS, coerce_int, http_status_for

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


@admin_bp.get("/users")
@require_auth
@require_role(ROLE_ADMIN)
def list_users_route():
    try:
        users = auth_service.list_users(get_store())
        return jsonify({"users": [u.to_dict() for u in users]}), 200
    except Exception:
        current_app.logger.exception("Failed to list users")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/users")
@require_auth
@require_role(ROLE_ADMIN)
def create_user_route():
    """
    Create a user.

    Body: {"username", "password", "role": admin|scanner|client,
           "project_ids": [..] (client role only, optional)}
    """
    try:
        data = request.get_json(silent=True) or {}
        store = get_store()
        user = auth_service.create_user(
            store,
            username=data.get("username"),
            password=data.get("password") or "",
            role=data.get("role"),
        )

        project_ids = data.get("project_ids") or []
        granted = []
        if project_ids:
            granted = project_service.set_client_project_access(
                store,
                user_id=user.id,
                project_ids=[coerce_int(pid, "project_id") for pid in project_ids],
            )

        current_app.logger.info("User %d created by admin %d", user.id, g.current_user.id)
        return jsonify({"user": user.to_dict(), "project_ids": granted}), 201

    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to create user")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.put("/users/<int:user_id>/projects")
@require_auth
@require_role(ROLE_ADMIN)
def set_client_projects_route(user_id: int):
    """Body: {"project_ids": [..]}; replaces every existing grant."""
    try:
        data = request.get_json(silent=True) or {}
        project_ids = [coerce_int(pid, "project_id") for pid in (data.get("project_ids") or [])]
        granted = project_service.set_client_project_access(get_store(), user_id=user_id, project_ids=project_ids)
        return jsonify({"user_id": user_id, "project_ids": granted}), 200

    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to set client project access")
        return jsonify({"error": "Internal server error"}), 500
