# Overview: Service-layer operations for pallet content; read-only line listings and line detail.

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import case
from sqlalchemy.orm import Session

from ..models import Pallet, ReceiptLine, SkuClientComment, User
from ..store import CancelToken, Store
from ..time_utils import format_uk_date, format_uk_datetime, to_iso_date, utc_today, utcnow
from ..validation import NotFoundError
from .instance_key import sku_instance_filters
from .pallet_service import get_pallet
from .receipt_filters import (
    expired_clause,
    filter_clause,
    has_client_comments_clause,
    has_photos_clause,
    has_primary_photo_clause,
    normalize_content_filter,
    without_photo_blob,
)
from .receipt_service import photo_ids_for


def _content_query(session: Session, today):
    return (
        session.query(
            ReceiptLine,
            case((has_photos_clause(ReceiptLine), True), else_=False).label("has_photos"),
            case((has_client_comments_clause(ReceiptLine), True), else_=False).label("has_client_comments"),
            case((expired_clause(ReceiptLine, today), True), else_=False).label("expired"),
            case((has_primary_photo_clause(ReceiptLine), True), else_=False).label("has_stock_photo"),
            User.username.label("scanned_by"),
        )
        .outerjoin(User, User.id == ReceiptLine.scanned_by_user_id)
        .options(without_photo_blob(ReceiptLine))
    )


def _line_dict(line: ReceiptLine, *, has_photos, has_client_comments, expired, scanned_by) -> dict:
    return {
        "id": line.id,
        "sku": line.sku,
        "description": line.description or "",
        "uom": line.uom or "",
        "comment": line.comment or "",
        "has_photos": bool(has_photos),
        "has_client_comments": bool(has_client_comments),
        "qty": line.qty,
        "case_size": line.case_size,
        "unknown_sku": bool(line.unknown_sku),
        "damaged": bool(line.damaged),
        "batch_number": line.batch_number or "",
        "expiry_date": to_iso_date(line.expiry_date) or "",
        "expiry_date_uk": format_uk_date(line.expiry_date),
        "expired": bool(expired),
        "scanned_by": scanned_by or "",
    }


def load_pallet_content(
    store: Store,
    pallet_id: int,
    *,
    filter: Optional[str] = None,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> dict:
    """
    Receipt lines of one pallet, sku then id order.

    filter: all | success | unknown | damaged | expired (anything else is all).
    "Expired" is judged against the UTC date of `now`.
    """
    filter_name = normalize_content_filter(filter)
    today = utc_today(now or utcnow())

    with store.read_tx(token) as session:
        pallet = get_pallet(session, pallet_id)
        rows = (
            _content_query(session, today)
            .filter(ReceiptLine.pallet_id == pallet_id, filter_clause(ReceiptLine, filter_name, today))
            .order_by(ReceiptLine.sku.asc(), ReceiptLine.id.asc())
            .all()
        )

    lines = [
        _line_dict(
            row.ReceiptLine,
            has_photos=row.has_photos,
            has_client_comments=row.has_client_comments,
            expired=row.expired,
            scanned_by=row.scanned_by,
        )
        for row in rows
    ]
    return {"pallet": pallet.to_dict(), "filter": filter_name, "lines": lines}


def _client_comments_for_line(session: Session, line: ReceiptLine) -> list[dict]:
    rows = (
        session.query(SkuClientComment, User.username)
        .outerjoin(User, User.id == SkuClientComment.created_by_user_id)
        .filter(
            SkuClientComment.project_id == line.project_id,
            SkuClientComment.pallet_id == line.pallet_id,
            *sku_instance_filters(
                SkuClientComment,
                sku=line.sku,
                uom=line.uom,
                batch=line.batch_number,
                expiry=line.expiry_date,
            ),
        )
        .order_by(SkuClientComment.created_at.desc(), SkuClientComment.id.desc())
        .all()
    )
    return [
        {
            "id": comment.id,
            "pallet_id": comment.pallet_id,
            "comment": (comment.comment or "").strip(),
            "actor": username or "",
            "created_at_uk": format_uk_datetime(comment.created_at),
        }
        for comment, username in rows
    ]


def load_pallet_content_line_detail(
    store: Store,
    pallet_id: int,
    receipt_id: int,
    *,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> dict:
    """One line of a pallet with its extra photo ids and matching client comments."""
    today = utc_today(now or utcnow())

    with store.read_tx(token) as session:
        pallet: Pallet = get_pallet(session, pallet_id)
        row = (
            _content_query(session, today)
            .filter(ReceiptLine.pallet_id == pallet_id, ReceiptLine.id == receipt_id)
            .first()
        )
        if row is None:
            raise NotFoundError("receipt line not found")

        line = row.ReceiptLine
        photo_ids = photo_ids_for(session, line.id)
        client_comments = _client_comments_for_line(session, line)

    detail = _line_dict(
        line,
        has_photos=row.has_photos,
        has_client_comments=row.has_client_comments,
        expired=row.expired,
        scanned_by=row.scanned_by,
    )
    detail.update({
        "has_stock_photo": bool(row.has_stock_photo),
        "carton_barcode": line.carton_barcode or "",
        "item_barcode": line.item_barcode or "",
        "no_outer_barcode": bool(line.no_outer_barcode),
        "no_inner_barcode": bool(line.no_inner_barcode),
        "damaged_qty": line.damaged_qty,
    })
    return {
        "pallet": pallet.to_dict(),
        "line": detail,
        "photo_ids": photo_ids,
        "client_comments": client_comments,
    }
