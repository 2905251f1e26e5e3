# Overview: Flask API routes for project operations; parses input and returns JSON responses.

# backend/receipter/routes/projects.py
"""
Project API routes

PROJECTS:
- GET  /api/projects                          - list (clients: granted projects only)
- POST /api/projects                          - create (admin)
- GET  /api/projects/<id>                     - one project
- POST /api/projects/<id>/status              - set active/inactive (admin)
- POST /api/projects/<id>/activate            - re-activate (admin, scanner)
- GET  /api/projects/<id>/log                 - audit log (admin, scanner)

PALLETS:
- GET  /api/projects/<id>/pallets             - pallet board with counts
- POST /api/projects/<id>/pallets             - allocate N pallets (admin)

SKU VIEW (all roles; clients need a project grant):
- GET  /api/projects/<id>/skus                - per SKU-instance totals
- GET  /api/projects/<id>/skus/detail         - one instance drill-down
- POST /api/projects/<id>/comments            - client comment on an instance (client)

STOCK:
- POST /api/projects/<id>/stock/import        - CSV upload (admin)
- GET  /api/projects/<id>/stock/search?q=     - catalogue lookup (admin, scanner)

EXPORTS (admin, CSV):
- GET  /api/projects/<id>/exports/receipts.csv
- GET  /api/projects/<id>/exports/pallet-status.csv
- GET  /api/projects/<id>/exports/pallets/<pallet_id>.csv
- GET  /api/projects/<id>/exports/sku-detailed.csv  - admin and granted clients
"""

import io

from flask import Blueprint, Response, current_app, g, jsonify, request

from ..decorators import require_auth, require_project_access, require_role
from ..extensions import get_store
from ..models.auth import ROLE_ADMIN, ROLE_CLIENT, ROLE_SCANNER
from ..services import (
    client_comment_service,
    event_log_service,
    export_service,
    pallet_service,
    project_service,
    sku_view_service,
    stock_service,
)
from ..time_utils import parse_iso_date
from ..validation import DOMAIN_ERRORS, ValidationError, coerce_int, http_status_for

projects_bp = Blueprint("projects", __name__, url_prefix="/api/projects")


def _csv_response(content: str, filename: str) -> Response:
    return Response(
        content,
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@projects_bp.get("")
@require_auth
def list_projects_route():
    """
    Query parameters:
        filter: active (default) | inactive | all  (ignored for clients)
    """
    try:
        store = get_store()
        if g.current_user.role == ROLE_CLIENT:
            projects = project_service.list_client_projects(store, g.current_user.id)
            filter_name = "all"
        else:
            filter_name = project_service.normalize_list_filter(request.args.get("filter"))
            projects = project_service.list_projects(store, filter_name)

        counts = project_service.pallet_counts_by_project(store, [p.id for p in projects])
        rows = [{**p.to_dict(), **counts.get(p.id, {})} for p in projects]
        return jsonify({"filter": filter_name, "projects": rows}), 200

    except Exception:
        current_app.logger.exception("Failed to list projects")
        return jsonify({"error": "Internal server error"}), 500


@projects_bp.post("")
@require_auth
@require_role(ROLE_ADMIN)
def create_project_route():
    """
    Body: {"name", "description", "client_name",
           "project_date": "YYYY-MM-DD" (default today), "code", "status"}
    """
    try:
        data = request.get_json(silent=True) or {}
        try:
            project_date = parse_iso_date(data.get("project_date"))
        except ValueError:
            raise ValidationError("invalid project date")

        project = project_service.create_project(
            get_store(),
            user_id=g.current_user.id,
            name=data.get("name"),
            description=data.get("description"),
            client_name=data.get("client_name"),
            project_date=project_date,
            code=data.get("code"),
            status=data.get("status"),
        )
        return jsonify({"project": project.to_dict()}), 201

    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to create project")
        return jsonify({"error": "Internal server error"}), 500


@projects_bp.get("/<int:project_id>")
@require_auth
@require_project_access
def get_project_route(project_id: int):
    try:
        project = project_service.get_project(get_store(), project_id)
        return jsonify({"project": project.to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to load project")
        return jsonify({"error": "Internal server error"}), 500


@projects_bp.post("/<int:project_id>/status")
@require_auth
@require_role(ROLE_ADMIN)
def set_project_status_route(project_id: int):
    """Body: {"status": "active" | "inactive"}"""
    try:
        data = request.get_json(silent=True) or {}
        project = project_service.set_project_status(
            get_store(),
            user_id=g.current_user.id,
            project_id=project_id,
            status=data.get("status"),
        )
        return jsonify({"project": project.to_dict()}), 200

    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to set project status")
        return jsonify({"error": "Internal server error"}), 500


@projects_bp.post("/<int:project_id>/activate")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SCANNER)
def activate_project_route(project_id: int):
    try:
        project = project_service.activate_project(get_store(), user_id=g.current_user.id, project_id=project_id)
        return jsonify({"project": project.to_dict()}), 200

    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to activate project")
        return jsonify({"error": "Internal server error"}), 500


@projects_bp.get("/<int:project_id>/log")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SCANNER)
def project_log_route(project_id: int):
    try:
        return jsonify(event_log_service.load_project_log(get_store(), project_id)), 200
    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to load project log")
        return jsonify({"error": "Internal server error"}), 500


# ---------------------------------------------------------------------------
# Pallets
# ---------------------------------------------------------------------------

@projects_bp.get("/<int:project_id>/pallets")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SCANNER)
def pallet_summary_route(project_id: int):
    """
    Query parameters:
        status: all (default) | created | open | closed
    """
    try:
        summary = pallet_service.load_pallet_summary(
            get_store(),
            project_id=project_id,
            status_filter=request.args.get("status"),
        )
        return jsonify(summary), 200
    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to load pallet summary")
        return jsonify({"error": "Internal server error"}), 500


@projects_bp.post("/<int:project_id>/pallets")
@require_auth
@require_role(ROLE_ADMIN)
def allocate_pallets_route(project_id: int):
    """Body: {"count": N} (default 1)."""
    try:
        data = request.get_json(silent=True) or {}
        count = coerce_int(data.get("count"), "count", default=1)
        pallets = pallet_service.allocate_bulk(
            get_store(),
            user_id=g.current_user.id,
            project_id=project_id,
            count=count,
        )
        return jsonify({"pallets": [p.to_dict() for p in pallets]}), 201

    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to allocate pallets")
        return jsonify({"error": "Internal server error"}), 500


# ---------------------------------------------------------------------------
# SKU view and client comments
# ---------------------------------------------------------------------------

@projects_bp.get("/<int:project_id>/skus")
@require_auth
@require_project_access
def sku_summary_route(project_id: int):
    """
    Query parameters:
        filter: all | success | unknown | damaged | expired |
                client_comment  (client_comment is admin-only)
    """
    try:
        filter_name = sku_view_service.sanitize_sku_filter(request.args.get("filter"), g.current_user.is_admin)
        summary = sku_view_service.load_sku_summary(get_store(), project_id, filter=filter_name)
        return jsonify(summary), 200
    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to load sku summary")
        return jsonify({"error": "Internal server error"}), 500


@projects_bp.get("/<int:project_id>/skus/detail")
@require_auth
@require_project_access
def sku_detail_route(project_id: int):
    """Query parameters: sku (required), uom, batch, expiry (YYYY-MM-DD), filter."""
    try:
        filter_name = sku_view_service.sanitize_sku_filter(request.args.get("filter"), g.current_user.is_admin)
        detail = sku_view_service.load_sku_detail(
            get_store(),
            project_id,
            sku=request.args.get("sku", ""),
            uom=request.args.get("uom"),
            batch=request.args.get("batch"),
            expiry_iso=request.args.get("expiry"),
            filter=filter_name,
        )
        return jsonify(detail), 200
    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to load sku detail")
        return jsonify({"error": "Internal server error"}), 500


@projects_bp.post("/<int:project_id>/comments")
@require_auth
@require_role(ROLE_CLIENT)
@require_project_access
def add_client_comment_route(project_id: int):
    """Body: {"pallet_id", "sku", "uom", "batch", "expiry": "YYYY-MM-DD", "comment"}"""
    try:
        data = request.get_json(silent=True) or {}
        comment = client_comment_service.add_client_comment(
            get_store(),
            user_id=g.current_user.id,
            project_id=project_id,
            pallet_id=coerce_int(data.get("pallet_id"), "pallet", default=0),
            sku=data.get("sku", ""),
            uom=data.get("uom"),
            batch=data.get("batch"),
            expiry_iso=data.get("expiry"),
            comment=data.get("comment", ""),
        )
        return jsonify({"comment": comment.to_dict()}), 201

    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to add client comment")
        return jsonify({"error": "Internal server error"}), 500


# ---------------------------------------------------------------------------
# Stock catalogue
# ---------------------------------------------------------------------------

@projects_bp.post("/<int:project_id>/stock/import")
@require_auth
@require_role(ROLE_ADMIN)
def import_stock_route(project_id: int):
    """Multipart upload, field "file": CSV with header sku,description[,uom]."""
    if "file" not in request.files:
        return jsonify({"error": "file is required"}), 400

    file = request.files["file"]
    try:
        stream = io.StringIO(file.stream.read().decode("utf-8-sig"))
        result = stock_service.import_stock_csv(
            get_store(),
            user_id=g.current_user.id,
            project_id=project_id,
            stream=stream,
        )
        return jsonify(result), 201

    except UnicodeDecodeError:
        return jsonify({"error": "file must be UTF-8 encoded"}), 400
    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to import stock")
        return jsonify({"error": "Internal server error"}), 500


@projects_bp.get("/<int:project_id>/stock/search")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SCANNER)
def search_stock_route(project_id: int):
    try:
        items = stock_service.search_stock(get_store(), project_id, request.args.get("q", ""))
        return jsonify({"items": [item.to_dict() for item in items]}), 200
    except Exception:
        current_app.logger.exception("Failed to search stock")
        return jsonify({"error": "Internal server error"}), 500


# ---------------------------------------------------------------------------
# Exports
# ---------------------------------------------------------------------------

@projects_bp.get("/<int:project_id>/exports/receipts.csv")
@require_auth
@require_role(ROLE_ADMIN)
def export_receipts_route(project_id: int):
    try:
        content = export_service.export_project_receipts_csv(
            get_store(), user_id=g.current_user.id, project_id=project_id
        )
        return _csv_response(content, f"project-{project_id}-receipts.csv")
    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to export receipts")
        return jsonify({"error": "Internal server error"}), 500


@projects_bp.get("/<int:project_id>/exports/pallet-status.csv")
@require_auth
@require_role(ROLE_ADMIN)
def export_pallet_status_route(project_id: int):
    try:
        content = export_service.export_pallet_status_csv(
            get_store(), user_id=g.current_user.id, project_id=project_id
        )
        return _csv_response(content, f"project-{project_id}-pallet-status.csv")
    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to export pallet status")
        return jsonify({"error": "Internal server error"}), 500


@projects_bp.get("/<int:project_id>/exports/pallets/<int:pallet_id>.csv")
@require_auth
@require_role(ROLE_ADMIN)
def export_pallet_route(project_id: int, pallet_id: int):
    try:
        content = export_service.export_pallet_receipts_csv(
            get_store(), user_id=g.current_user.id, project_id=project_id, pallet_id=pallet_id
        )
        return _csv_response(content, f"pallet-{pallet_id}.csv")
    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to export pallet")
        return jsonify({"error": "Internal server error"}), 500


@projects_bp.get("/<int:project_id>/exports/sku-detailed.csv")
@require_auth
@require_role(ROLE_ADMIN, ROLE_CLIENT)
@require_project_access
def export_sku_detailed_route(project_id: int):
    """Query parameters: filter (as for the SKU summary; client_comment is admin-only)."""
    try:
        filter_name = sku_view_service.sanitize_sku_filter(request.args.get("filter"), g.current_user.is_admin)
        content = export_service.export_sku_detailed_csv(
            get_store(), user_id=g.current_user.id, project_id=project_id, filter=filter_name
        )
        return _csv_response(content, f"sku-detailed-project-{project_id}.csv")
    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to export sku detail")
        return jsonify({"error": "Internal server error"}), 500
