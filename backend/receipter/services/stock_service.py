# Overview: Service-layer operations for the stock catalogue; receipt-driven upserts, CSV import and search.

from __future__ import annotations

import csv
import logging
from datetime import datetime
from typing import IO, Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..models import StockImportRun, StockItem
from ..models.receipts import UNKNOWN_SKU
from ..store import CancelToken, Store
from ..time_utils import utcnow
from ..validation import ValidationError
from .audit_service import ACTION_STOCK_IMPORT, ENTITY_STOCK_IMPORT_RUNS, write_audit
from .pallet_service import require_active_project

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 20

# Upsert outcomes
UPSERT_INSERTED = "inserted"
UPSERT_UPDATED = "updated"
UPSERT_UNCHANGED = "unchanged"
UPSERT_SKIPPED = "skipped"


def upsert_stock_item(
    session: Session,
    *,
    project_id: int,
    sku: str,
    description: str = "",
    uom: str = "",
    now: Optional[datetime] = None,
) -> str:
    """
    Record the latest description/uom for a SKU in the caller's transaction.

    A blank incoming description or uom never erases a stored one, and an
    upsert that changes nothing leaves the row (including updated_at) alone.
    "UNKNOWN" is never catalogued.

    Returns one of "inserted", "updated", "unchanged", "skipped".
    """
    sku = (sku or "").strip()
    if not sku or sku.upper() == UNKNOWN_SKU:
        return UPSERT_SKIPPED
    description = (description or "").strip()
    uom = (uom or "").strip()
    now = now or utcnow()

    item = (
        session.query(StockItem)
        .filter(StockItem.project_id == project_id, StockItem.sku == sku)
        .first()
    )
    if item is None:
        session.add(StockItem(
            project_id=project_id,
            sku=sku,
            description=description,
            uom=uom,
            created_at=now,
            updated_at=now,
        ))
        session.flush()
        return UPSERT_INSERTED

    changed = False
    if description and item.description != description:
        item.description = description
        changed = True
    if uom and item.uom != uom:
        item.uom = uom
        changed = True
    if not changed:
        return UPSERT_UNCHANGED

    item.updated_at = now
    session.flush()
    return UPSERT_UPDATED


def _normalize_header(header: Iterable[str]) -> list[str]:
    return [(h or "").strip().lower() for h in header]


def import_stock_csv(
    store: Store,
    *,
    user_id: int,
    project_id: int,
    stream: IO[str],
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> dict:
    """
    Import catalogue rows from CSV text.

    Expected header: sku,description (optionally uom). Rows with a blank sku or
    description, or that name "UNKNOWN", are counted as errors and skipped; the
    remaining rows are upserted in one write transaction together with a
    stock_import_runs row and a stock.import audit record.

    Returns:
        {"inserted": int, "updated": int, "errors": int, "run_id": int}

    Raises:
        ValidationError: missing or wrong header
        NotFoundError / ReadOnlyProjectError: project missing or inactive
    """
    reader = csv.reader(stream, skipinitialspace=True)
    try:
        header = _normalize_header(next(reader))
    except StopIteration:
        raise ValidationError("invalid CSV header; expected sku,description")
    if len(header) < 2 or header[0] != "sku" or header[1] != "description":
        raise ValidationError("invalid CSV header; expected sku,description")
    uom_index = header.index("uom") if "uom" in header else None

    # Parse before taking the write lock.
    rows = []
    errors = 0
    for record in reader:
        if not record or all(not (cell or "").strip() for cell in record):
            continue
        if len(record) < 2:
            errors += 1
            continue
        sku = record[0].strip()
        description = record[1].strip()
        if not sku or not description or sku.upper() == UNKNOWN_SKU:
            errors += 1
            continue
        uom = record[uom_index].strip() if uom_index is not None and uom_index < len(record) else ""
        rows.append((sku, description, uom))

    now = now or utcnow()

    def _op(session: Session) -> dict:
        require_active_project(session, project_id)

        summary = {"inserted": 0, "updated": 0, "errors": errors}
        for sku, description, uom in rows:
            outcome = upsert_stock_item(
                session, project_id=project_id, sku=sku, description=description, uom=uom, now=now
            )
            if outcome == UPSERT_INSERTED:
                summary["inserted"] += 1
            else:
                # Existing SKUs count as updated even when nothing changed.
                summary["updated"] += 1

        run = StockImportRun(
            user_id=user_id,
            project_id=project_id,
            inserted_count=summary["inserted"],
            updated_count=summary["updated"],
            error_count=summary["errors"],
            created_at=now,
        )
        session.add(run)
        session.flush()

        write_audit(
            session,
            user_id=user_id,
            action=ACTION_STOCK_IMPORT,
            entity_type=ENTITY_STOCK_IMPORT_RUNS,
            entity_id=run.id,
            before=None,
            after={"project_id": project_id, **summary},
            now=now,
        )
        return {**summary, "run_id": run.id}

    result = store.with_write_tx(_op, token=token)
    logger.info(
        "Stock import for project %d: inserted=%d updated=%d errors=%d",
        project_id, result["inserted"], result["updated"], result["errors"],
    )
    return result


def search_stock(
    store: Store,
    project_id: int,
    query: str,
    limit: int = SEARCH_LIMIT,
    *,
    token: Optional[CancelToken] = None,
) -> list[StockItem]:
    """Substring match on sku or description within one project, sku order."""
    query = (query or "").strip()
    if not query:
        return []
    pattern = f"%{query}%"

    with store.read_tx(token) as session:
        return (
            session.query(StockItem)
            .filter(
                StockItem.project_id == project_id,
                or_(StockItem.sku.ilike(pattern), StockItem.description.ilike(pattern)),
            )
            .order_by(StockItem.sku.asc())
            .limit(limit)
            .all()
        )


def list_stock_items(store: Store, project_id: int, *, token: Optional[CancelToken] = None) -> list[StockItem]:
    with store.read_tx(token) as session:
        return (
            session.query(StockItem)
            .filter(StockItem.project_id == project_id)
            .order_by(StockItem.sku.collate("NOCASE").asc())
            .all()
        )
