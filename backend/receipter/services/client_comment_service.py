# Overview: Service-layer operations for client comments on SKU-instances of a pallet.

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..models import Pallet, ReceiptLine, SkuClientComment
from ..store import CancelToken, Store
from ..time_utils import parse_iso_date, utcnow
from ..validation import NotFoundError, ValidationError
from .instance_key import sku_instance_filters

logger = logging.getLogger(__name__)


def add_client_comment(
    store: Store,
    *,
    user_id: int,
    project_id: int,
    pallet_id: int,
    sku: str,
    uom: Optional[str] = None,
    batch: Optional[str] = None,
    expiry_iso: Optional[str] = None,
    comment: str,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> SkuClientComment:
    """
    Attach a client reviewer comment to one SKU-instance on one pallet.

    The instance must currently have at least one receipt line on the pallet.
    Comments are not audited.

    Raises:
        ValidationError: missing user, pallet, sku or comment; bad expiry
        NotFoundError: pallet not in project, or no matching receipt line
    """
    if not user_id or user_id <= 0:
        raise ValidationError("invalid user")
    if not pallet_id or pallet_id <= 0:
        raise ValidationError("pallet is required")
    sku = (sku or "").strip()
    uom = (uom or "").strip()
    batch = (batch or "").strip()
    comment = (comment or "").strip()
    if not sku:
        raise ValidationError("sku is required")
    if not comment:
        raise ValidationError("comment is required")
    try:
        expiry = parse_iso_date(expiry_iso)
    except ValueError:
        raise ValidationError("invalid expiry date")
    now = now or utcnow()

    def _op(session: Session) -> SkuClientComment:
        pallet = (
            session.query(Pallet.id)
            .filter(Pallet.id == pallet_id, Pallet.project_id == project_id)
            .first()
        )
        if pallet is None:
            raise NotFoundError("pallet not found")

        matches = (
            session.query(ReceiptLine.id)
            .filter(
                ReceiptLine.project_id == project_id,
                ReceiptLine.pallet_id == pallet_id,
                *sku_instance_filters(ReceiptLine, sku=sku, uom=uom, batch=batch, expiry=expiry),
            )
            .count()
        )
        if matches <= 0:
            raise NotFoundError("sku instance not found for pallet")

        entry = SkuClientComment(
            project_id=project_id,
            pallet_id=pallet_id,
            sku=sku,
            uom=uom,
            batch_number=batch,
            expiry_date=expiry,
            comment=comment,
            created_by_user_id=user_id,
            created_at=now,
        )
        session.add(entry)
        session.flush()
        return entry

    entry = store.with_write_tx(_op, token=token)
    logger.info("Client comment %d on pallet %d sku=%s by user %d", entry.id, pallet_id, sku, user_id)
    return entry
