# Overview: Single source of truth for receipt instance identity (merge, client-comment match, SKU projections).

"""
Instance identity rules

RECEIPT INSTANCE KEY (merge identity):
    (project_id, pallet_id, sku, uom, case_size, unknown_sku, damaged,
     batch, expiry)

SKU-INSTANCE (summaries, client comments):
    (project_id, [pallet_id,] sku, uom, batch, expiry)

Shared comparison semantics:
- batch: trimmed string, NULL treated as "". Blank never equals non-blank.
- expiry: compared at date granularity (time-of-day ignored); two NULLs are
  equal, NULL never equals a date.
- uom: NULL treated as "".

Every query that asks "is this the same instance?" builds its predicate from
this module so merge lookup, comment matching and projections cannot drift.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import and_, func, or_


def normalize_batch(value: Optional[str]) -> str:
    return (value or "").strip()


def normalize_uom(value: Optional[str]) -> str:
    return (value or "").strip()


def expiry_iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def batch_column_key(column):
    """SQL expression: COALESCE(TRIM(column), '')."""
    return func.coalesce(func.trim(column), "")


def uom_column_key(column):
    return func.coalesce(column, "")


def expiry_column_key(column):
    """SQL expression: date(column); NULL stays NULL."""
    return func.date(column)


def batch_matches(column, batch: Optional[str]):
    return batch_column_key(column) == normalize_batch(batch)


def uom_matches(column, uom: Optional[str]):
    return uom_column_key(column) == normalize_uom(uom)


def expiry_matches(column, expiry: Optional[date]):
    """NULL expiry matches only NULL; a date matches the same calendar day."""
    if expiry is None:
        return column.is_(None)
    return expiry_column_key(column) == expiry.isoformat()


def same_batch(left, right):
    """Column-to-column batch equality."""
    return batch_column_key(left) == batch_column_key(right)


def same_uom(left, right):
    return uom_column_key(left) == uom_column_key(right)


def same_expiry(left, right):
    """Column-to-column expiry equality with NULL == NULL."""
    return or_(
        and_(left.is_(None), right.is_(None)),
        and_(left.isnot(None), right.isnot(None), expiry_column_key(left) == expiry_column_key(right)),
    )


@dataclass(frozen=True)
class InstanceKey:
    """Normalised merge identity of one receipt segment."""
    project_id: int
    pallet_id: int
    sku: str
    uom: str
    case_size: int
    unknown_sku: bool
    damaged: bool
    batch: str
    expiry: Optional[date]

    @classmethod
    def build(
        cls,
        *,
        project_id: int,
        pallet_id: int,
        sku: str,
        uom: Optional[str],
        case_size: int,
        unknown_sku: bool,
        damaged: bool,
        batch: Optional[str],
        expiry: Optional[date],
    ) -> "InstanceKey":
        return cls(
            project_id=project_id,
            pallet_id=pallet_id,
            sku=sku.strip(),
            uom=normalize_uom(uom),
            case_size=case_size,
            unknown_sku=bool(unknown_sku),
            damaged=bool(damaged),
            batch=normalize_batch(batch),
            expiry=expiry,
        )

    @classmethod
    def of_line(cls, line) -> "InstanceKey":
        return cls.build(
            project_id=line.project_id,
            pallet_id=line.pallet_id,
            sku=line.sku,
            uom=line.uom,
            case_size=line.case_size,
            unknown_sku=line.unknown_sku,
            damaged=line.damaged,
            batch=line.batch_number,
            expiry=line.expiry_date,
        )

    def receipt_filters(self, model) -> list:
        """WHERE clauses selecting receipt lines with exactly this key."""
        return [
            model.project_id == self.project_id,
            model.pallet_id == self.pallet_id,
            model.sku == self.sku,
            uom_matches(model.uom, self.uom),
            model.case_size == self.case_size,
            model.unknown_sku == self.unknown_sku,
            model.damaged == self.damaged,
            batch_matches(model.batch_number, self.batch),
            expiry_matches(model.expiry_date, self.expiry),
        ]


def sku_instance_filters(model, *, sku: str, uom: Optional[str], batch: Optional[str], expiry: Optional[date]) -> list:
    """WHERE clauses selecting rows (receipt lines or client comments) of one SKU-instance."""
    return [
        model.sku == sku.strip(),
        uom_matches(model.uom, uom),
        batch_matches(model.batch_number, batch),
        expiry_matches(model.expiry_date, expiry),
    ]


def comment_matches_line(comment_model, line_model) -> list:
    """Correlation clauses: client comment belongs to the receipt line's SKU-instance on the same pallet."""
    return [
        comment_model.project_id == line_model.project_id,
        comment_model.pallet_id == line_model.pallet_id,
        comment_model.sku == line_model.sku,
        same_uom(comment_model.uom, line_model.uom),
        same_batch(comment_model.batch_number, line_model.batch_number),
        same_expiry(comment_model.expiry_date, line_model.expiry_date),
    ]
