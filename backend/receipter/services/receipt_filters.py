# Overview: Shared SQL predicates for receipt-line projections (filters, expiry, photo and comment flags).

from __future__ import annotations

from datetime import date
from typing import Optional

from sqlalchemy import and_, exists, func, or_, true
from sqlalchemy.orm import defer

from ..models import ReceiptPhoto, SkuClientComment
from .instance_key import comment_matches_line, expiry_column_key

# Pallet content filters
FILTER_ALL = "all"
FILTER_SUCCESS = "success"
FILTER_UNKNOWN = "unknown"
FILTER_DAMAGED = "damaged"
FILTER_EXPIRED = "expired"
# SKU views only, admin-only
FILTER_CLIENT_COMMENT = "client_comment"

CONTENT_FILTERS = (FILTER_ALL, FILTER_SUCCESS, FILTER_UNKNOWN, FILTER_DAMAGED, FILTER_EXPIRED)
SKU_FILTERS = CONTENT_FILTERS + (FILTER_CLIENT_COMMENT,)


def normalize_content_filter(value: Optional[str]) -> str:
    v = (value or "").strip().lower()
    return v if v in CONTENT_FILTERS else FILTER_ALL


def normalize_sku_filter(value: Optional[str]) -> str:
    v = (value or "").strip().lower()
    return v if v in SKU_FILTERS else FILTER_ALL


def expired_clause(model, today: date):
    return and_(model.expiry_date.isnot(None), expiry_column_key(model.expiry_date) < today.isoformat())


def success_clause(model, today: date):
    """Known, undamaged, and not expired as of `today`."""
    return and_(
        model.unknown_sku.is_(False),
        model.damaged.is_(False),
        or_(model.expiry_date.is_(None), expiry_column_key(model.expiry_date) >= today.isoformat()),
    )


def has_primary_photo_clause(model):
    return and_(model.stock_photo_blob.isnot(None), func.length(model.stock_photo_blob) > 0)


def without_photo_blob(model):
    """Query option for list reads: the primary photo blob stays in the database."""
    return defer(model.stock_photo_blob, raiseload=True)


def has_photos_clause(model):
    return or_(
        has_primary_photo_clause(model),
        exists().where(ReceiptPhoto.pallet_receipt_id == model.id),
    )


def has_client_comments_clause(model):
    return exists().where(*comment_matches_line(SkuClientComment, model))


def filter_clause(model, name: str, today: date):
    """WHERE clause for a normalised filter name; `all` matches everything."""
    if name == FILTER_SUCCESS:
        return success_clause(model, today)
    if name == FILTER_UNKNOWN:
        return model.unknown_sku.is_(True)
    if name == FILTER_DAMAGED:
        return model.damaged.is_(True)
    if name == FILTER_EXPIRED:
        return expired_clause(model, today)
    if name == FILTER_CLIENT_COMMENT:
        return has_client_comments_clause(model)
    return true()
