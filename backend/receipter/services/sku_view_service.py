# Overview: Service-layer operations for SKU views; per-instance aggregates across a project's pallets.

"""
SKU-instance projections

An SKU-instance is (sku, uom, batch, expiry date) within one project, across
all of its pallets. Case size and the damaged/unknown flags are NOT part of
the instance; they only feed the qty breakdown columns:

    total_qty    all lines
    success_qty  known, undamaged, not expired as of "today"
    unknown_qty  unknown-SKU lines
    damaged_qty  damaged lines

"today" is the UTC date of the caller-supplied `now`.
"""

from __future__ import annotations

from collections import OrderedDict
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from ..models import Project, ReceiptLine, ReceiptPhoto, SkuClientComment, User
from ..store import CancelToken, Store
from ..time_utils import format_uk_date, format_uk_datetime, parse_iso_date, to_iso_date, utc_today, utcnow
from ..validation import NotFoundError, ValidationError
from .instance_key import batch_column_key, expiry_column_key, sku_instance_filters, uom_column_key
from .receipt_filters import (
    FILTER_ALL,
    FILTER_CLIENT_COMMENT,
    expired_clause,
    filter_clause,
    has_client_comments_clause,
    has_photos_clause,
    has_primary_photo_clause,
    normalize_sku_filter,
    success_clause,
    without_photo_blob,
)


def sanitize_sku_filter(value: Optional[str], is_admin: bool) -> str:
    """Normalise a filter name; client_comment falls back to all for non-admins."""
    name = normalize_sku_filter(value)
    if name == FILTER_CLIENT_COMMENT and not is_admin:
        return FILTER_ALL
    return name


def _qty_where(condition):
    return func.coalesce(func.sum(case((condition, ReceiptLine.qty), else_=0)), 0)


def _any(condition):
    return func.max(case((condition, 1), else_=0))


def _aggregate_columns(today) -> list:
    return [
        func.max(func.coalesce(ReceiptLine.description, "")).label("description"),
        _any(expired_clause(ReceiptLine, today)).label("is_expired"),
        func.coalesce(func.sum(ReceiptLine.qty), 0).label("total_qty"),
        _qty_where(success_clause(ReceiptLine, today)).label("success_qty"),
        _qty_where(ReceiptLine.unknown_sku.is_(True)).label("unknown_qty"),
        _qty_where(ReceiptLine.damaged.is_(True)).label("damaged_qty"),
        _any(func.coalesce(func.trim(ReceiptLine.comment), "") != "").label("has_comments"),
        _any(has_client_comments_clause(ReceiptLine)).label("has_client_comments"),
        _any(has_photos_clause(ReceiptLine)).label("has_photos"),
    ]


def _aggregate_dict(row) -> dict:
    return {
        "description": row.description or "",
        "is_expired": bool(row.is_expired),
        "total_qty": int(row.total_qty or 0),
        "success_qty": int(row.success_qty or 0),
        "unknown_qty": int(row.unknown_qty or 0),
        "damaged_qty": int(row.damaged_qty or 0),
        "has_comments": bool(row.has_comments),
        "has_client_comments": bool(row.has_client_comments),
        "has_photos": bool(row.has_photos),
    }


def _project_header(session: Session, project_id: int) -> dict:
    project = session.get(Project, project_id)
    if project is None:
        raise NotFoundError("project not found")
    return {
        "project_id": project.id,
        "project_name": project.name,
        "project_client_name": project.client_name,
        "project_status": project.status,
    }


def load_sku_summary(
    store: Store,
    project_id: int,
    *,
    filter: Optional[str] = None,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> dict:
    """
    One row per SKU-instance in the project.

    The filter is applied to lines before grouping, so e.g. the damaged view
    only counts damaged lines. Rows are ordered sku (case-insensitive), then
    expiry date, then batch.
    """
    filter_name = normalize_sku_filter(filter)
    today = utc_today(now or utcnow())

    uom_key = uom_column_key(ReceiptLine.uom)
    batch_key = batch_column_key(ReceiptLine.batch_number)
    expiry_key = func.coalesce(expiry_column_key(ReceiptLine.expiry_date), "")

    with store.read_tx(token) as session:
        header = _project_header(session, project_id)
        rows = (
            session.query(
                ReceiptLine.sku.label("sku"),
                uom_key.label("uom"),
                batch_key.label("batch_number"),
                expiry_key.label("expiry_iso"),
                *_aggregate_columns(today),
            )
            .filter(ReceiptLine.project_id == project_id, filter_clause(ReceiptLine, filter_name, today))
            .group_by(ReceiptLine.sku, uom_key, batch_key, expiry_key)
            .order_by(ReceiptLine.sku.collate("NOCASE").asc(), expiry_key.asc(), batch_key.asc())
            .all()
        )

    summary_rows = []
    for row in rows:
        expiry = parse_iso_date(row.expiry_iso) if row.expiry_iso else None
        summary_rows.append({
            "sku": row.sku,
            "uom": row.uom,
            "batch_number": row.batch_number,
            "expiry_date": row.expiry_iso,
            "expiry_date_uk": format_uk_date(expiry),
            **_aggregate_dict(row),
        })

    return {**header, "filter": filter_name, "rows": summary_rows}


def _parse_expiry(expiry_iso: Optional[str]):
    try:
        return parse_iso_date(expiry_iso)
    except ValueError:
        raise ValidationError("invalid expiry date")


def load_sku_detail(
    store: Store,
    project_id: int,
    *,
    sku: str,
    uom: Optional[str] = None,
    batch: Optional[str] = None,
    expiry_iso: Optional[str] = None,
    filter: Optional[str] = None,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> dict:
    """
    Drill-down for one SKU-instance.

    Returns:
        {
          "summary": instance aggregate (same fields as a summary row),
          "pallets": per-pallet qty breakdown with " | "-joined line comments,
          "photos": refs {pallet_id, receipt_id, photo_id, is_primary, line_comment};
                    per line in (pallet_id, id) order, the primary photo
                    (photo_id 0) followed by that line's extra photos,
          "client_comments": newest first,
        }

    Raises:
        ValidationError: blank sku or malformed expiry_iso
        NotFoundError: the instance has no quantity in this project
    """
    sku = (sku or "").strip()
    if not sku:
        raise ValidationError("sku is required")
    uom = (uom or "").strip()
    batch = (batch or "").strip()
    expiry = _parse_expiry(expiry_iso)
    filter_name = normalize_sku_filter(filter)
    today = utc_today(now or utcnow())

    instance = [
        ReceiptLine.project_id == project_id,
        *sku_instance_filters(ReceiptLine, sku=sku, uom=uom, batch=batch, expiry=expiry),
    ]

    with store.read_tx(token) as session:
        header = _project_header(session, project_id)

        agg = session.query(*_aggregate_columns(today)).filter(*instance).one()
        if not agg.total_qty:
            raise NotFoundError("sku instance not found")

        lines = (
            session.query(ReceiptLine, has_primary_photo_clause(ReceiptLine).label("has_stock_photo"))
            .options(without_photo_blob(ReceiptLine))
            .filter(*instance)
            .order_by(ReceiptLine.pallet_id.asc(), ReceiptLine.id.asc())
            .all()
        )
        extras = (
            session.query(ReceiptPhoto.id, ReceiptPhoto.pallet_receipt_id)
            .filter(ReceiptPhoto.pallet_receipt_id.in_([line.id for line, _ in lines]))
            .order_by(ReceiptPhoto.pallet_receipt_id.asc(), ReceiptPhoto.id.asc())
            .all()
        )
        comment_rows = (
            session.query(SkuClientComment, User.username)
            .outerjoin(User, User.id == SkuClientComment.created_by_user_id)
            .filter(
                SkuClientComment.project_id == project_id,
                *sku_instance_filters(SkuClientComment, sku=sku, uom=uom, batch=batch, expiry=expiry),
            )
            .order_by(SkuClientComment.created_at.desc(), SkuClientComment.id.desc())
            .all()
        )

    summary = {
        "sku": sku,
        "uom": uom,
        "batch_number": batch,
        "expiry_date": expiry.isoformat() if expiry else "",
        "expiry_date_uk": format_uk_date(expiry),
        **_aggregate_dict(agg),
    }

    pallets: "OrderedDict[int, dict]" = OrderedDict()
    for line, _ in lines:
        entry = pallets.setdefault(line.pallet_id, {
            "pallet_id": line.pallet_id,
            "total_qty": 0,
            "success_qty": 0,
            "unknown_qty": 0,
            "damaged_qty": 0,
            "_comments": [],
        })
        entry["total_qty"] += line.qty
        if line.unknown_sku:
            entry["unknown_qty"] += line.qty
        if line.damaged:
            entry["damaged_qty"] += line.qty
        expired = line.expiry_date is not None and line.expiry_date < today
        if not line.unknown_sku and not line.damaged and not expired:
            entry["success_qty"] += line.qty
        comment = (line.comment or "").strip()
        if comment and comment not in entry["_comments"]:
            entry["_comments"].append(comment)
    for entry in pallets.values():
        entry["comments"] = " | ".join(entry.pop("_comments"))

    extras_by_receipt: dict[int, list[int]] = {}
    for photo_id, receipt_id in extras:
        extras_by_receipt.setdefault(receipt_id, []).append(photo_id)

    photos = []
    for line, has_stock_photo in lines:
        ref = {
            "pallet_id": line.pallet_id,
            "receipt_id": line.id,
            "line_comment": (line.comment or "").strip(),
        }
        if has_stock_photo:
            photos.append({**ref, "photo_id": 0, "is_primary": True})
        for photo_id in extras_by_receipt.get(line.id, []):
            photos.append({**ref, "photo_id": photo_id, "is_primary": False})

    client_comments = [
        {
            "id": comment.id,
            "pallet_id": comment.pallet_id,
            "comment": (comment.comment or "").strip(),
            "actor": username or "",
            "created_at_uk": format_uk_datetime(comment.created_at),
        }
        for comment, username in comment_rows
    ]
    if client_comments:
        summary["has_client_comments"] = True

    return {
        **header,
        "filter": filter_name,
        "summary": summary,
        "pallets": list(pallets.values()),
        "photos": photos,
        "client_comments": client_comments,
    }


def load_sku_detailed_export_rows(
    store: Store,
    project_id: int,
    *,
    filter: Optional[str] = None,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> list[dict]:
    """
    One row per receipt line of the project, in SKU-instance order.

    The filter is normalised but not role-checked; callers pass the result of
    sanitize_sku_filter. Rows are ordered sku (case-insensitive), expiry date,
    batch, pallet id, line id.
    """
    filter_name = normalize_sku_filter(filter)
    today = utc_today(now or utcnow())
    expiry_key = func.coalesce(expiry_column_key(ReceiptLine.expiry_date), "")

    with store.read_tx(token) as session:
        _project_header(session, project_id)
        rows = (
            session.query(
                ReceiptLine,
                case((expired_clause(ReceiptLine, today), True), else_=False).label("expired"),
                case((has_client_comments_clause(ReceiptLine), True), else_=False).label("has_client_comments"),
                case((has_photos_clause(ReceiptLine), True), else_=False).label("has_photos"),
                User.username.label("scanned_by"),
            )
            .outerjoin(User, User.id == ReceiptLine.scanned_by_user_id)
            .options(without_photo_blob(ReceiptLine))
            .filter(ReceiptLine.project_id == project_id, filter_clause(ReceiptLine, filter_name, today))
            .order_by(
                ReceiptLine.sku.collate("NOCASE").asc(),
                expiry_key.asc(),
                func.coalesce(ReceiptLine.batch_number, "").asc(),
                ReceiptLine.pallet_id.asc(),
                ReceiptLine.id.asc(),
            )
            .all()
        )

    export_rows = []
    for line, expired, has_client_comments, has_photos, scanned_by in rows:
        comment = (line.comment or "").strip()
        export_rows.append({
            "pallet_id": line.pallet_id,
            "receipt_id": line.id,
            "sku": line.sku,
            "description": line.description or "",
            "uom": line.uom or "",
            "qty": line.qty,
            "case_size": line.case_size,
            "unknown_sku": bool(line.unknown_sku),
            "damaged": bool(line.damaged),
            "batch_number": line.batch_number or "",
            "expiry_date_uk": format_uk_date(line.expiry_date),
            "expiry_date": to_iso_date(line.expiry_date) or "",
            "expired": bool(expired),
            "line_comment": comment,
            "has_line_comment": bool(comment),
            "has_client_comments": bool(has_client_comments),
            "has_photos": bool(has_photos),
            "scanned_by": scanned_by or "",
        })
    return export_rows
