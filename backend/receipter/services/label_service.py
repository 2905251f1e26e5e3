# Overview: Service-layer operations for closed-pallet labels; label header data and content label groups.

"""
Closed-pallet label data

Labels are only printed for pallets that are closed or labelled. The content
labels group the pallet's good stock (not damaged, not unknown) by

    (description, batch, expiry date)

Each group reports the first line's sku and case size, the summed qty and
box_count = ceil(total_qty / case_size).

BARCODE PRIORITY (first non-empty wins, lines scanned in insertion order):
1. item barcode of a line in the group
2. first item barcode of the same sku anywhere on the pallet
3. carton barcode of a line in the group
4. first carton barcode of the same sku anywhere on the pallet
"""

from __future__ import annotations

import math
from collections import OrderedDict
from typing import Optional

from sqlalchemy.orm import Session

from ..models import Pallet, Project, ReceiptLine
from ..models.pallets import PALLET_STATUS_CLOSED, PALLET_STATUS_LABELLED, pallet_barcode
from ..store import CancelToken, Store
from ..time_utils import format_uk_date, utcnow
from ..validation import PalletNotClosedError
from .instance_key import expiry_iso, normalize_batch
from .pallet_service import get_pallet
from .receipt_filters import without_photo_blob

LABEL_STATUSES = {PALLET_STATUS_CLOSED, PALLET_STATUS_LABELLED}

EMPTY_LABEL_CONTENT = {
    "sku": "",
    "description": "",
    "batch_number": "",
    "expiry_date_uk": "",
    "total_qty": 0,
    "qty_per_carton": 0,
    "box_count": 0,
    "barcode_value": "",
}


def _closed_pallet(session: Session, pallet_id: int) -> tuple[Pallet, Project]:
    pallet = get_pallet(session, pallet_id)
    if pallet.status not in LABEL_STATUSES:
        raise PalletNotClosedError("pallet must be closed to print labels")
    return pallet, session.get(Project, pallet.project_id)


def _label_date(pallet: Pallet) -> str:
    return format_uk_date((pallet.closed_at or utcnow()).date())


def _label_lines(session: Session, pallet_id: int) -> list[ReceiptLine]:
    return (
        session.query(ReceiptLine)
        .options(without_photo_blob(ReceiptLine))
        .filter(ReceiptLine.pallet_id == pallet_id)
        .order_by(ReceiptLine.id.asc())
        .all()
    )


def load_closed_pallet_label_data(store: Store, pallet_id: int, *, token: Optional[CancelToken] = None) -> dict:
    """
    Data for the pallet's own barcode label.

    Carries the pallet header plus the content of the first good-stock group
    (see group_label_lines); a pallet with no good stock gets blank content.
    """
    with store.read_tx(token) as session:
        pallet, project = _closed_pallet(session, pallet_id)
        lines = _label_lines(session, pallet_id)

    client_name = project.client_name if project else ""
    label_date = _label_date(pallet)
    groups = group_label_lines(lines, client_name=client_name, label_date=label_date)

    data = dict(groups[0]) if groups else dict(EMPTY_LABEL_CONTENT)
    data.update({
        "pallet_id": pallet.id,
        "barcode": pallet_barcode(pallet.id),
        "project_name": project.name if project else "",
        "client_name": client_name,
        "label_date": label_date,
    })
    return data


def _first_barcode(lines, attr: str) -> str:
    for line in lines:
        value = (getattr(line, attr) or "").strip()
        if value:
            return value
    return ""


def pick_barcode(group_lines, sku_lines) -> str:
    return (
        _first_barcode(group_lines, "item_barcode")
        or _first_barcode(sku_lines, "item_barcode")
        or _first_barcode(group_lines, "carton_barcode")
        or _first_barcode(sku_lines, "carton_barcode")
    )


def group_label_lines(lines, *, client_name: str, label_date: str) -> list[dict]:
    """
    Group good-stock lines (already in insertion order) into content labels.

    Kept separate from the query so label printing can be driven from any
    line source.
    """
    good = [line for line in lines if not line.damaged and not line.unknown_sku]

    groups: "OrderedDict[tuple, list]" = OrderedDict()
    by_sku: dict[str, list] = {}
    for line in good:
        key = ((line.description or "").strip(), normalize_batch(line.batch_number), expiry_iso(line.expiry_date))
        groups.setdefault(key, []).append(line)
        by_sku.setdefault(line.sku, []).append(line)

    labels = []
    for (description, batch, _), group_lines in groups.items():
        first = group_lines[0]
        total_qty = sum(line.qty for line in group_lines)
        case_size = first.case_size if first.case_size and first.case_size > 0 else 1
        labels.append({
            "sku": first.sku,
            "description": description,
            "client_name": client_name,
            "batch_number": batch,
            "expiry_date_uk": format_uk_date(first.expiry_date),
            "total_qty": total_qty,
            "qty_per_carton": case_size,
            "box_count": math.ceil(total_qty / case_size),
            "label_date": label_date,
            "barcode_value": pick_barcode(group_lines, by_sku[first.sku]),
        })
    return labels


def load_closed_pallet_labels_data(store: Store, pallet_id: int, *, token: Optional[CancelToken] = None) -> dict:
    """Content label groups for a closed (or labelled) pallet."""
    with store.read_tx(token) as session:
        pallet, project = _closed_pallet(session, pallet_id)
        lines = _label_lines(session, pallet_id)

    labels = group_label_lines(
        lines,
        client_name=project.client_name if project else "",
        label_date=_label_date(pallet),
    )
    return {
        "pallet_id": pallet.id,
        "barcode": pallet_barcode(pallet.id),
        "project_name": project.name if project else "",
        "labels": labels,
    }
