# Overview: Service-layer operations for CSV exports; receipt and pallet-status reports plus export-run telemetry.

"""
CSV exports

RECEIPTS CSV (per pallet or per project):
    pallet_id,sku,description,qty,case_size,item_barcode,carton_barcode,expiry,batch_number
    - expiry as DD/MM/YYYY, missing values as ""
    - rows ordered by pallet_id then sku

PALLET STATUS CSV (per project):
    pallet_id,status,line_count,created_at,closed_at,reopened_at
    - timestamps as DD/MM/YYYY HH:MM

SKU DETAILED CSV (per project, one row per receipt line):
    pallet_id,receipt_id,sku,description,uom,qty,case_size,unknown_sku,damaged,
    batch_number,expiry,expiry_iso,expired,line_comment,has_line_comment,
    has_client_comment,has_photo,scanned_by
    - flags as yes/no, rows in SKU-instance order, SKU view filters apply

Every export appends one export_runs row after the report was produced:
    pallet_csv:<pallet id> | project_receipts_csv:<project id> | pallet_status_csv
    | sku_detailed_csv
"""

from __future__ import annotations

import csv
import logging
from datetime import datetime
from io import StringIO
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import ExportRun, Pallet, ReceiptLine
from ..store import CancelToken, Store
from ..time_utils import format_uk_date, format_uk_datetime, utcnow
from ..validation import NotFoundError
from .receipt_filters import without_photo_blob
from .sku_view_service import load_sku_detailed_export_rows

logger = logging.getLogger(__name__)

RECEIPTS_CSV_HEADER = (
    "pallet_id", "sku", "description", "qty", "case_size",
    "item_barcode", "carton_barcode", "expiry", "batch_number",
)
PALLET_STATUS_CSV_HEADER = ("pallet_id", "status", "line_count", "created_at", "closed_at", "reopened_at")
SKU_DETAILED_CSV_HEADER = (
    "pallet_id", "receipt_id", "sku", "description", "uom",
    "qty", "case_size", "unknown_sku", "damaged",
    "batch_number", "expiry", "expiry_iso", "expired",
    "line_comment", "has_line_comment", "has_client_comment", "has_photo", "scanned_by",
)

EXPORT_TYPE_PALLET_STATUS = "pallet_status_csv"
EXPORT_TYPE_SKU_DETAILED = "sku_detailed_csv"


def export_type_pallet(pallet_id: int) -> str:
    return f"pallet_csv:{pallet_id}"


def export_type_project_receipts(project_id: int) -> str:
    return f"project_receipts_csv:{project_id}"


def _to_csv(header: Iterable[str], rows: Iterable[Iterable]) -> str:
    output = StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(header)
    for row in rows:
        writer.writerow(row)
    return output.getvalue()


def record_export_run(
    store: Store,
    *,
    user_id: Optional[int],
    project_id: Optional[int],
    export_type: str,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> None:
    def _op(session: Session) -> None:
        session.add(ExportRun(
            user_id=user_id,
            project_id=project_id,
            export_type=export_type,
            created_at=now or utcnow(),
        ))

    store.with_write_tx(_op, token=token)
    logger.info("Export %s by user %s", export_type, user_id)


def _receipt_rows(session: Session, project_id: int, pallet_id: Optional[int]) -> list[tuple]:
    query = (
        session.query(ReceiptLine)
        .options(without_photo_blob(ReceiptLine))
        .filter(ReceiptLine.project_id == project_id)
    )
    if pallet_id is not None:
        query = query.filter(ReceiptLine.pallet_id == pallet_id)
    lines = query.order_by(ReceiptLine.pallet_id.asc(), ReceiptLine.sku.asc(), ReceiptLine.id.asc()).all()
    return [
        (
            line.pallet_id,
            line.sku,
            line.description or "",
            line.qty,
            line.case_size,
            line.item_barcode or "",
            line.carton_barcode or "",
            format_uk_date(line.expiry_date),
            line.batch_number or "",
        )
        for line in lines
    ]


def export_pallet_receipts_csv(
    store: Store,
    *,
    user_id: Optional[int],
    project_id: int,
    pallet_id: int,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> str:
    """Receipts CSV for one pallet of the project."""
    with store.read_tx(token) as session:
        belongs = (
            session.query(Pallet.id)
            .filter(Pallet.id == pallet_id, Pallet.project_id == project_id)
            .first()
        )
        if belongs is None:
            raise NotFoundError("pallet not found")
        rows = _receipt_rows(session, project_id, pallet_id)

    content = _to_csv(RECEIPTS_CSV_HEADER, rows)
    record_export_run(
        store, user_id=user_id, project_id=project_id, export_type=export_type_pallet(pallet_id), now=now, token=token
    )
    return content


def export_project_receipts_csv(
    store: Store,
    *,
    user_id: Optional[int],
    project_id: int,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> str:
    """Receipts CSV across every pallet of the project."""
    with store.read_tx(token) as session:
        rows = _receipt_rows(session, project_id, None)

    content = _to_csv(RECEIPTS_CSV_HEADER, rows)
    record_export_run(
        store,
        user_id=user_id,
        project_id=project_id,
        export_type=export_type_project_receipts(project_id),
        now=now,
        token=token,
    )
    return content


def export_pallet_status_csv(
    store: Store,
    *,
    user_id: Optional[int],
    project_id: int,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> str:
    """One row per pallet of the project with its line count, id order."""
    with store.read_tx(token) as session:
        line_count = (
            session.query(func.count(ReceiptLine.id))
            .filter(ReceiptLine.pallet_id == Pallet.id)
            .correlate(Pallet)
            .scalar_subquery()
        )
        pallets = (
            session.query(Pallet, line_count.label("line_count"))
            .filter(Pallet.project_id == project_id)
            .order_by(Pallet.id.asc())
            .all()
        )

    rows = [
        (
            pallet.id,
            pallet.status,
            int(count or 0),
            format_uk_datetime(pallet.created_at),
            format_uk_datetime(pallet.closed_at),
            format_uk_datetime(pallet.reopened_at),
        )
        for pallet, count in pallets
    ]
    content = _to_csv(PALLET_STATUS_CSV_HEADER, rows)
    record_export_run(
        store, user_id=user_id, project_id=project_id, export_type=EXPORT_TYPE_PALLET_STATUS, now=now, token=token
    )
    return content


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


def export_sku_detailed_csv(
    store: Store,
    *,
    user_id: Optional[int],
    project_id: int,
    filter: Optional[str] = None,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> str:
    """Every receipt line of the project under an SKU view filter (already role-sanitised)."""
    rows = [
        (
            row["pallet_id"],
            row["receipt_id"],
            row["sku"],
            row["description"],
            row["uom"],
            row["qty"],
            row["case_size"],
            _yes_no(row["unknown_sku"]),
            _yes_no(row["damaged"]),
            row["batch_number"],
            row["expiry_date_uk"],
            row["expiry_date"],
            _yes_no(row["expired"]),
            row["line_comment"],
            _yes_no(row["has_line_comment"]),
            _yes_no(row["has_client_comments"]),
            _yes_no(row["has_photos"]),
            row["scanned_by"],
        )
        for row in load_sku_detailed_export_rows(store, project_id, filter=filter, now=now, token=token)
    ]
    content = _to_csv(SKU_DETAILED_CSV_HEADER, rows)
    record_export_run(
        store, user_id=user_id, project_id=project_id, export_type=EXPORT_TYPE_SKU_DETAILED, now=now, token=token
    )
    return content
