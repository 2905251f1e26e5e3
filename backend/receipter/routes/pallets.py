# Overview: Flask API routes for pallet operations; parses input and returns JSON responses.

# backend/receipter/routes/pallets.py
"""
Pallet API routes

LIFECYCLE (admin):
- GET  /api/pallets/<id>                         - one pallet
- POST /api/pallets/<id>/close                   - open -> closed
- POST /api/pallets/<id>/reopen                  - closed -> open
- POST /api/pallets/<id>/cancel                  - any non-cancelled -> cancelled
- POST /api/pallets/<id>/labelled                - closed -> labelled

RECEIPTS (admin, scanner):
- POST   /api/pallets/<id>/receipts              - save one scan (multipart form)
- PUT    /api/pallets/<id>/receipts/<rid>        - edit a line in place
- DELETE /api/pallets/<id>/receipts/<rid>        - delete a line
- GET    /api/pallets/<id>/content               - lines with filter flags
- GET    /api/pallets/<id>/receipts/<rid>        - one line with photos and client comments
- GET    /api/pallets/<id>/receipts/<rid>/photo  - primary photo bytes (all roles)
- GET    /api/pallets/<id>/receipts/<rid>/photos/<photo_id> - extra photo bytes (all roles)

LABELS AND LOG (admin, scanner):
- GET  /api/pallets/<id>/labels                  - pallet label header + content labels
- GET  /api/pallets/<id>/events                  - pallet event log

SECURITY:
Closed and labelled pallets only accept new scans from admins; scanners get
403 "closed pallets can only be edited by admins". The acting user is always
the authenticated session user, never a form field.
"""

from io import BytesIO

from flask import Blueprint, current_app, g, jsonify, request, send_file

from ..decorators import project_access_denied, require_auth, require_role
from ..extensions import get_store
from ..models.auth import ROLE_ADMIN, ROLE_SCANNER
from ..models.pallets import PALLET_STATUS_CLOSED, PALLET_STATUS_LABELLED
from ..models.projects import PROJECT_STATUS_ACTIVE
from ..services import (
    event_log_service,
    label_service,
    pallet_content_service,
    pallet_service,
    project_service,
    receipt_service,
)
from ..services.receipt_service import (
    PHOTOS_NOT_IMAGES,
    PHOTOS_TOO_LARGE,
    ReceiptInput,
    ReceiptLineUpdate,
    build_photo_input,
)
from ..time_utils import parse_iso_date
from ..validation import (
    DOMAIN_ERRORS,
    ReadOnlyPalletError,
    ReadOnlyProjectError,
    ValidationError,
    coerce_bool,
    coerce_int,
    http_status_for,
)

pallets_bp = Blueprint("pallets", __name__, url_prefix="/api/pallets")

ADMIN_ONLY_STATUSES = {PALLET_STATUS_CLOSED, PALLET_STATUS_LABELLED}


# ---------------------------------------------------------------------------
# Form parsing
# ---------------------------------------------------------------------------

def _form_str(name: str) -> str:
    return (request.form.get(name) or "").strip()


def _form_expiry():
    try:
        return parse_iso_date(request.form.get("expiry_date"))
    except ValueError:
        raise ValidationError("invalid expiry date")


def _upload_mime(upload) -> str:
    # Browsers send octet-stream when they cannot tell; let the bytes decide.
    mime = (upload.mimetype or "").strip()
    return "" if mime == "application/octet-stream" else mime


def _primary_photo():
    upload = request.files.get("stock_photo")
    if upload is None or not upload.filename:
        return None
    max_bytes = current_app.config["MAX_PHOTO_BYTES"]
    return build_photo_input(upload.read(), _upload_mime(upload), upload.filename, max_bytes=max_bytes)


def _extra_photos() -> list:
    max_bytes = current_app.config["MAX_PHOTO_BYTES"]
    photos = []
    for upload in request.files.getlist("stock_photos"):
        if not upload.filename:
            continue
        photo = build_photo_input(
            upload.read(),
            _upload_mime(upload),
            upload.filename,
            max_bytes=max_bytes,
            too_large_message=PHOTOS_TOO_LARGE,
            not_image_message=PHOTOS_NOT_IMAGES,
        )
        if photo is not None:
            photos.append(photo)
    return photos


def receipt_input_from_form(pallet_id: int) -> ReceiptInput:
    """
    Build a ReceiptInput from the scan form.

    Fields: sku, description, uom, comment, qty, case_size (default 1),
    damaged_qty (default 0), batch_number, expiry_date (YYYY-MM-DD),
    carton_barcode, item_barcode; checkboxes damaged, unknown_sku,
    no_outer_barcode, no_inner_barcode; files stock_photo, stock_photos[].
    """
    case_size = coerce_int(request.form.get("case_size"), "case size", default=1)
    if case_size <= 0:
        raise ValidationError("case size must be greater than 0")

    return ReceiptInput(
        pallet_id=pallet_id,
        qty=coerce_int(request.form.get("qty"), "qty", default=0),
        sku=_form_str("sku"),
        description=_form_str("description"),
        uom=_form_str("uom"),
        comment=_form_str("comment"),
        case_size=case_size,
        unknown_sku=coerce_bool(request.form.get("unknown_sku")),
        damaged=coerce_bool(request.form.get("damaged")),
        damaged_qty=coerce_int(request.form.get("damaged_qty"), "damaged qty", default=0),
        batch_number=_form_str("batch_number"),
        expiry_date=_form_expiry(),
        carton_barcode=_form_str("carton_barcode"),
        item_barcode=_form_str("item_barcode"),
        no_outer_barcode=coerce_bool(request.form.get("no_outer_barcode")),
        no_inner_barcode=coerce_bool(request.form.get("no_inner_barcode")),
        primary_photo=_primary_photo(),
        extra_photos=_extra_photos(),
    )


def line_update_from_form(pallet_id: int, receipt_id: int) -> ReceiptLineUpdate:
    """Edit form: a ticked damaged box marks the whole line damaged."""
    qty = coerce_int(request.form.get("qty"), "qty", default=0)
    damaged = coerce_bool(request.form.get("damaged"))
    if not _form_str("sku"):
        raise ValidationError("sku is required")

    return ReceiptLineUpdate(
        pallet_id=pallet_id,
        receipt_id=receipt_id,
        qty=qty,
        sku=_form_str("sku"),
        description=_form_str("description"),
        uom=_form_str("uom"),
        comment=_form_str("comment"),
        case_size=coerce_int(request.form.get("case_size"), "case size", default=1),
        damaged=damaged,
        damaged_qty=qty if damaged else 0,
        batch_number=_form_str("batch_number"),
        expiry_date=_form_expiry(),
    )


def _check_can_receive(pallet) -> None:
    """Project must be active; closed/labelled pallets take admin corrections only."""
    project = project_service.get_project(get_store(), pallet.project_id)
    if project.status != PROJECT_STATUS_ACTIVE:
        raise ReadOnlyProjectError("inactive projects are read-only")
    if pallet.status in ADMIN_ONLY_STATUSES and not g.current_user.is_admin:
        raise ReadOnlyPalletError("closed pallets can only be edited by admins")


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

@pallets_bp.get("/<int:pallet_id>")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SCANNER)
def get_pallet_route(pallet_id: int):
    try:
        pallet = pallet_service.load_pallet(get_store(), pallet_id)
        return jsonify({"pallet": pallet.to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to load pallet")
        return jsonify({"error": "Internal server error"}), 500


def _transition_route(pallet_id: int, action, failure_message: str):
    try:
        store = get_store()
        pallet = pallet_service.load_pallet(store, pallet_id)
        pallet = action(
            store,
            user_id=g.current_user.id,
            project_id=pallet.project_id,
            pallet_id=pallet_id,
        )
        return jsonify({"pallet": pallet.to_dict()}), 200

    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception(failure_message)
        return jsonify({"error": "Internal server error"}), 500


@pallets_bp.post("/<int:pallet_id>/close")
@require_auth
@require_role(ROLE_ADMIN)
def close_pallet_route(pallet_id: int):
    return _transition_route(pallet_id, pallet_service.close_pallet, "Failed to close pallet")


@pallets_bp.post("/<int:pallet_id>/reopen")
@require_auth
@require_role(ROLE_ADMIN)
def reopen_pallet_route(pallet_id: int):
    return _transition_route(pallet_id, pallet_service.reopen_pallet, "Failed to reopen pallet")


@pallets_bp.post("/<int:pallet_id>/cancel")
@require_auth
@require_role(ROLE_ADMIN)
def cancel_pallet_route(pallet_id: int):
    return _transition_route(pallet_id, pallet_service.cancel_pallet, "Failed to cancel pallet")


@pallets_bp.post("/<int:pallet_id>/labelled")
@require_auth
@require_role(ROLE_ADMIN)
def mark_labelled_route(pallet_id: int):
    return _transition_route(pallet_id, pallet_service.mark_labelled, "Failed to mark pallet labelled")


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------

@pallets_bp.post("/<int:pallet_id>/receipts")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SCANNER)
def save_receipt_route(pallet_id: int):
    """
    Save one scan. Identical instances merge into the existing line; a
    damaged quantity is split onto its own line.

    Response 201: {"lines": [...], "pallet": {...}}
    """
    try:
        store = get_store()
        pallet = pallet_service.load_pallet(store, pallet_id)
        _check_can_receive(pallet)

        receipt = receipt_input_from_form(pallet_id)
        lines = receipt_service.save_receipt(store, user_id=g.current_user.id, receipt=receipt)
        pallet = pallet_service.load_pallet(store, pallet_id)
        return jsonify({
            "lines": [line.to_dict() for line in lines],
            "pallet": pallet.to_dict(),
        }), 201

    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to save receipt")
        return jsonify({"error": "Internal server error"}), 500


@pallets_bp.put("/<int:pallet_id>/receipts/<int:receipt_id>")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SCANNER)
def update_receipt_route(pallet_id: int, receipt_id: int):
    try:
        update = line_update_from_form(pallet_id, receipt_id)
        line = receipt_service.update_line(get_store(), user_id=g.current_user.id, line=update)
        return jsonify({"line": line.to_dict()}), 200

    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to update receipt line")
        return jsonify({"error": "Internal server error"}), 500


@pallets_bp.delete("/<int:pallet_id>/receipts/<int:receipt_id>")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SCANNER)
def delete_receipt_route(pallet_id: int, receipt_id: int):
    try:
        receipt_service.delete_line(
            get_store(), user_id=g.current_user.id, pallet_id=pallet_id, receipt_id=receipt_id
        )
        return jsonify({"message": f"Receipt line {receipt_id} deleted"}), 200

    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to delete receipt line")
        return jsonify({"error": "Internal server error"}), 500


@pallets_bp.get("/<int:pallet_id>/content")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SCANNER)
def pallet_content_route(pallet_id: int):
    """Query parameters: filter = all | success | unknown | damaged | expired"""
    try:
        content = pallet_content_service.load_pallet_content(
            get_store(), pallet_id, filter=request.args.get("filter")
        )
        return jsonify(content), 200
    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to load pallet content")
        return jsonify({"error": "Internal server error"}), 500


@pallets_bp.get("/<int:pallet_id>/receipts/<int:receipt_id>")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SCANNER)
def receipt_line_detail_route(pallet_id: int, receipt_id: int):
    try:
        detail = pallet_content_service.load_pallet_content_line_detail(get_store(), pallet_id, receipt_id)
        return jsonify(detail), 200
    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to load receipt line")
        return jsonify({"error": "Internal server error"}), 500


def _send_photo(photo):
    return send_file(BytesIO(photo.blob), mimetype=photo.mime_type, download_name=photo.file_name)


@pallets_bp.get("/<int:pallet_id>/receipts/<int:receipt_id>/photo")
@require_auth
def primary_photo_route(pallet_id: int, receipt_id: int):
    try:
        store = get_store()
        pallet = pallet_service.load_pallet(store, pallet_id)
        denied = project_access_denied(pallet.project_id)
        if denied is not None:
            return denied
        return _send_photo(receipt_service.load_primary_photo(store, pallet_id, receipt_id))

    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to load photo")
        return jsonify({"error": "Internal server error"}), 500


@pallets_bp.get("/<int:pallet_id>/receipts/<int:receipt_id>/photos/<int:photo_id>")
@require_auth
def photo_route(pallet_id: int, receipt_id: int, photo_id: int):
    try:
        store = get_store()
        pallet = pallet_service.load_pallet(store, pallet_id)
        denied = project_access_denied(pallet.project_id)
        if denied is not None:
            return denied
        return _send_photo(receipt_service.load_photo(store, pallet_id, receipt_id, photo_id))

    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to load photo")
        return jsonify({"error": "Internal server error"}), 500


# ---------------------------------------------------------------------------
# Labels and event log
# ---------------------------------------------------------------------------

@pallets_bp.get("/<int:pallet_id>/labels")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SCANNER)
def pallet_labels_route(pallet_id: int):
    try:
        store = get_store()
        header = label_service.load_closed_pallet_label_data(store, pallet_id)
        content = label_service.load_closed_pallet_labels_data(store, pallet_id)
        return jsonify({"pallet_label": header, "content_labels": content["labels"]}), 200
    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to load pallet labels")
        return jsonify({"error": "Internal server error"}), 500


@pallets_bp.get("/<int:pallet_id>/events")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SCANNER)
def pallet_events_route(pallet_id: int):
    try:
        events = event_log_service.load_pallet_event_log(get_store(), pallet_id)
        return jsonify({"pallet_id": pallet_id, "events": events}), 200
    except DOMAIN_ERRORS as e:
        return jsonify({"error": str(e)}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to load pallet events")
        return jsonify({"error": "Internal server error"}), 500
