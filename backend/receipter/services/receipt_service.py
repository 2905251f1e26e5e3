# Overview: Service-layer operations for receipts; the merge/split engine, line edits and photo loading.

"""
Receipt Engine

================================================================================
PURPOSE: Turn one scanner submission into stored receipt lines
================================================================================

FLOW (save_receipt, one write transaction):
    validate -> guard pallet/project -> split -> merge-or-insert per segment
    -> stock catalogue upsert -> pallet promotion -> commit

VALIDATION (fail fast, first violated rule wins):
1. user id positive
2. unknown SKU: sku defaults to "UNKNOWN", description to "Unidentifiable
   item"; at least one photo required
3. known SKU: sku required
4. qty > 0; case size <= 0 becomes 1; damaged qty >= 0; a positive damaged
   qty implies damaged; damaged needs a damaged qty; damaged qty <= qty
5. project active, pallet not cancelled

SPLIT:
    qty=Q, damaged_qty=D  ->  {Q-D, not damaged} (if > 0) + {D, damaged} (if > 0)
Media (primary photo and extra photos) goes to the damaged segment when there
is one, otherwise to the first segment. Other segments get no media.

MERGE:
Each segment is matched on the instance key (services/instance_key.py). A
match adds qty to the existing line (receipt.merge audit); otherwise a new
line is inserted (receipt.create audit). Damaged lines always carry
damaged_qty == qty; undamaged lines carry 0.

PROMOTION:
A pallet still in "created" becomes "open" after the segments are written.
================================================================================
"""

from __future__ import annotations

import logging
import mimetypes
import os
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from io import BytesIO
from typing import Optional

from PIL import Image
from sqlalchemy.orm import Session

from ..models import ReceiptLine, ReceiptPhoto
from ..models.pallets import (
    PALLET_STATUS_CANCELLED,
    PALLET_STATUS_CLOSED,
    PALLET_STATUS_CREATED,
    PALLET_STATUS_LABELLED,
    PALLET_STATUS_OPEN,
)
from ..models.receipts import (
    DEFAULT_PHOTO_MIME,
    DEFAULT_PHOTO_NAME,
    UNKNOWN_SKU,
    UNKNOWN_SKU_DESCRIPTION,
)
from ..store import CancelToken, Store
from ..time_utils import utcnow
from ..validation import NotFoundError, ReadOnlyPalletError, ValidationError
from .audit_service import (
    ACTION_RECEIPT_CREATE,
    ACTION_RECEIPT_DELETE,
    ACTION_RECEIPT_MERGE,
    ACTION_RECEIPT_UPDATE,
    ENTITY_RECEIPTS,
    write_audit,
)
from .instance_key import InstanceKey
from .pallet_service import get_pallet, promote_to_open_if_created, require_active_project
from .stock_service import upsert_stock_item

logger = logging.getLogger(__name__)

MAX_PHOTO_BYTES = 5 << 20

PHOTO_TOO_LARGE = "photo must be 5MB or less"
PHOTO_NOT_IMAGE = "photo must be an image file"
PHOTOS_TOO_LARGE = "each photo must be 5MB or less"
PHOTOS_NOT_IMAGES = "photos must be image files"

CANCELLED_READ_ONLY = "cancelled pallets are read-only"
LINES_READ_ONLY = "receipt lines are read-only unless project is active and pallet is open"

# Statuses that accept new receipt lines (closed/labelled: admin corrections).
RECEIVABLE_STATUSES = {PALLET_STATUS_CREATED, PALLET_STATUS_OPEN, PALLET_STATUS_CLOSED, PALLET_STATUS_LABELLED}
# Statuses whose existing lines may be edited or deleted.
EDITABLE_STATUSES = {PALLET_STATUS_CREATED, PALLET_STATUS_OPEN}


@dataclass
class PhotoInput:
    blob: bytes
    mime_type: str = DEFAULT_PHOTO_MIME
    file_name: str = DEFAULT_PHOTO_NAME


@dataclass
class StoredPhoto:
    blob: bytes
    mime_type: str
    file_name: str


@dataclass
class ReceiptInput:
    """One scanner submission. Strings are trimmed during validation."""
    pallet_id: int
    qty: int
    sku: str = ""
    description: str = ""
    uom: str = ""
    comment: str = ""
    case_size: int = 1
    unknown_sku: bool = False
    damaged: bool = False
    damaged_qty: int = 0
    batch_number: str = ""
    expiry_date: Optional[date] = None
    carton_barcode: str = ""
    item_barcode: str = ""
    no_outer_barcode: bool = False
    no_inner_barcode: bool = False
    primary_photo: Optional[PhotoInput] = None
    extra_photos: list[PhotoInput] = field(default_factory=list)

    @property
    def has_photos(self) -> bool:
        return self.primary_photo is not None or bool(self.extra_photos)


@dataclass
class ReceiptLineUpdate:
    pallet_id: int
    receipt_id: int
    qty: int
    sku: str = ""
    description: str = ""
    uom: str = ""
    comment: str = ""
    case_size: int = 1
    damaged: bool = False
    damaged_qty: int = 0
    batch_number: str = ""
    expiry_date: Optional[date] = None


@dataclass(frozen=True)
class Segment:
    qty: int
    damaged: bool
    carries_media: bool = False


def sniff_image_mime(blob: bytes) -> str:
    """Best-effort content type from the bytes themselves."""
    try:
        with Image.open(BytesIO(blob)) as img:
            return Image.MIME.get(img.format or "", "application/octet-stream")
    except OSError:
        return "application/octet-stream"


def build_photo_input(
    blob: Optional[bytes],
    mime_type: Optional[str] = None,
    file_name: Optional[str] = None,
    *,
    max_bytes: int = MAX_PHOTO_BYTES,
    too_large_message: str = PHOTO_TOO_LARGE,
    not_image_message: str = PHOTO_NOT_IMAGE,
) -> Optional[PhotoInput]:
    """
    Validate an uploaded photo.

    Returns None for an empty upload. The content type comes from the upload
    header, falling back to sniffing the bytes; it must be image/*. A missing
    file name becomes "stock-photo" plus the type's usual extension.

    Raises:
        ValidationError: larger than max_bytes, or not an image
    """
    if not blob:
        return None
    if len(blob) > max_bytes:
        raise ValidationError(too_large_message)

    mime_type = (mime_type or "").strip() or sniff_image_mime(blob)
    if not mime_type.startswith("image/"):
        raise ValidationError(not_image_message)

    file_name = os.path.basename((file_name or "").strip())
    if not file_name:
        file_name = "stock-photo" + (mimetypes.guess_extension(mime_type) or "")
    return PhotoInput(blob=blob, mime_type=mime_type, file_name=file_name)


def normalize_receipt_input(user_id: int, receipt: ReceiptInput) -> ReceiptInput:
    """Apply validation steps 1-4; returns a trimmed, defaulted copy."""
    if user_id is None or user_id <= 0:
        raise ValidationError("invalid user id")

    sku = (receipt.sku or "").strip()
    description = (receipt.description or "").strip()
    if receipt.unknown_sku:
        sku = sku or UNKNOWN_SKU
        description = description or UNKNOWN_SKU_DESCRIPTION
        if not receipt.has_photos:
            raise ValidationError("unknown sku requires at least one photo")
    elif not sku:
        raise ValidationError("sku is required")

    if receipt.qty is None or receipt.qty <= 0:
        raise ValidationError("qty must be greater than 0")
    case_size = receipt.case_size if receipt.case_size and receipt.case_size > 0 else 1
    damaged_qty = receipt.damaged_qty or 0
    if damaged_qty < 0:
        raise ValidationError("damaged qty must be 0 or greater")
    damaged = bool(receipt.damaged) or damaged_qty > 0
    if damaged and damaged_qty == 0:
        raise ValidationError("damaged qty is required when damaged is selected")
    if damaged_qty > receipt.qty:
        raise ValidationError("damaged qty cannot exceed qty")

    return replace(
        receipt,
        sku=sku,
        description=description,
        uom=(receipt.uom or "").strip(),
        comment=(receipt.comment or "").strip(),
        case_size=case_size,
        damaged=damaged,
        damaged_qty=damaged_qty,
        batch_number=(receipt.batch_number or "").strip(),
        carton_barcode=(receipt.carton_barcode or "").strip(),
        item_barcode=(receipt.item_barcode or "").strip(),
    )


def split_segments(qty: int, damaged_qty: int) -> list[Segment]:
    """
    Decompose a submission into undamaged and damaged segments.

    Media rides on the damaged segment if there is one, else on the first.
    """
    parts = []
    if qty - damaged_qty > 0:
        parts.append((qty - damaged_qty, False))
    if damaged_qty > 0:
        parts.append((damaged_qty, True))
    if not parts:
        raise ValidationError("qty must be greater than 0")

    media_index = next((i for i, (_, damaged) in enumerate(parts) if damaged), 0)
    return [
        Segment(qty=seg_qty, damaged=damaged, carries_media=(i == media_index))
        for i, (seg_qty, damaged) in enumerate(parts)
    ]


def _insert_photos(session: Session, receipt_id: int, photos: list[PhotoInput], now: datetime) -> None:
    for photo in photos:
        session.add(ReceiptPhoto(
            pallet_receipt_id=receipt_id,
            photo_blob=photo.blob,
            photo_mime=photo.mime_type or DEFAULT_PHOTO_MIME,
            photo_name=photo.file_name or DEFAULT_PHOTO_NAME,
            created_at=now,
        ))
    session.flush()


def _or_none(value: str) -> Optional[str]:
    return value if value else None


def _save_segment(
    session: Session,
    *,
    user_id: int,
    project_id: int,
    receipt: ReceiptInput,
    segment: Segment,
    now: datetime,
) -> ReceiptLine:
    key = InstanceKey.build(
        project_id=project_id,
        pallet_id=receipt.pallet_id,
        sku=receipt.sku,
        uom=receipt.uom,
        case_size=receipt.case_size,
        unknown_sku=receipt.unknown_sku,
        damaged=segment.damaged,
        batch=receipt.batch_number,
        expiry=receipt.expiry_date,
    )
    primary = receipt.primary_photo if segment.carries_media else None
    extras = receipt.extra_photos if segment.carries_media else []

    existing = (
        session.query(ReceiptLine)
        .filter(*key.receipt_filters(ReceiptLine))
        .order_by(ReceiptLine.id.asc())
        .first()
    )

    if existing is not None:
        before = existing.to_dict()
        existing.qty += segment.qty
        existing.updated_at = now
        existing.scanned_by_user_id = user_id
        if receipt.description or not existing.description:
            existing.description = receipt.description
        if receipt.comment:
            existing.comment = receipt.comment
        existing.damaged_qty = existing.qty if segment.damaged else 0
        if primary is not None:
            existing.stock_photo_blob = primary.blob
            existing.stock_photo_mime = primary.mime_type
            existing.stock_photo_name = primary.file_name
        session.flush()
        _insert_photos(session, existing.id, extras, now)

        write_audit(
            session,
            user_id=user_id,
            action=ACTION_RECEIPT_MERGE,
            entity_type=ENTITY_RECEIPTS,
            entity_id=existing.id,
            before=before,
            after=existing.to_dict(),
            now=now,
        )
        return existing

    line = ReceiptLine(
        project_id=project_id,
        pallet_id=receipt.pallet_id,
        sku=key.sku,
        description=receipt.description,
        uom=key.uom,
        comment=receipt.comment,
        scanned_by_user_id=user_id,
        qty=segment.qty,
        case_size=receipt.case_size,
        unknown_sku=receipt.unknown_sku,
        damaged=segment.damaged,
        damaged_qty=segment.qty if segment.damaged else 0,
        batch_number=_or_none(receipt.batch_number),
        expiry_date=receipt.expiry_date,
        carton_barcode=_or_none(receipt.carton_barcode),
        item_barcode=_or_none(receipt.item_barcode),
        no_outer_barcode=receipt.no_outer_barcode,
        no_inner_barcode=receipt.no_inner_barcode,
        stock_photo_blob=primary.blob if primary else None,
        stock_photo_mime=primary.mime_type if primary else None,
        stock_photo_name=primary.file_name if primary else None,
        created_at=now,
        updated_at=now,
    )
    session.add(line)
    session.flush()
    _insert_photos(session, line.id, extras, now)

    write_audit(
        session,
        user_id=user_id,
        action=ACTION_RECEIPT_CREATE,
        entity_type=ENTITY_RECEIPTS,
        entity_id=line.id,
        before=None,
        after=line.to_dict(),
        now=now,
    )
    return line


def save_receipt(
    store: Store,
    *,
    user_id: int,
    receipt: ReceiptInput,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> list[ReceiptLine]:
    """
    Save one scanner submission (split, merge, media, catalogue, promotion).

    Args:
        user_id: Acting user; recorded as scanned_by and audit actor
        receipt: The submission
        now: Clock for created_at/updated_at/audit rows (defaults to utcnow())

    Returns:
        The affected lines, one per segment (undamaged first).

    Raises:
        ValidationError: input rule violated (nothing written)
        NotFoundError: pallet does not exist
        ReadOnlyProjectError: project inactive
        ReadOnlyPalletError: pallet cancelled
    """
    receipt = normalize_receipt_input(user_id, receipt)
    now = now or utcnow()

    def _op(session: Session) -> list[ReceiptLine]:
        pallet = get_pallet(session, receipt.pallet_id)
        require_active_project(session, pallet.project_id)
        if pallet.status == PALLET_STATUS_CANCELLED:
            raise ReadOnlyPalletError(CANCELLED_READ_ONLY)
        if pallet.status not in RECEIVABLE_STATUSES:
            raise ReadOnlyPalletError(f"invalid pallet status: {pallet.status}")

        lines = [
            _save_segment(
                session,
                user_id=user_id,
                project_id=pallet.project_id,
                receipt=receipt,
                segment=segment,
                now=now,
            )
            for segment in split_segments(receipt.qty, receipt.damaged_qty)
        ]

        if not receipt.unknown_sku:
            upsert_stock_item(
                session,
                project_id=pallet.project_id,
                sku=receipt.sku,
                description=receipt.description,
                uom=receipt.uom,
                now=now,
            )

        promote_to_open_if_created(session, pallet)
        return lines

    lines = store.with_write_tx(_op, token=token)
    logger.info(
        "Saved receipt on pallet %d: sku=%s qty=%d damaged_qty=%d lines=%s",
        receipt.pallet_id, receipt.sku, receipt.qty, receipt.damaged_qty, [line.id for line in lines],
    )
    return lines


def _load_editable_line(session: Session, pallet_id: int, receipt_id: int) -> ReceiptLine:
    pallet = get_pallet(session, pallet_id)
    require_active_project(session, pallet.project_id)
    if pallet.status not in EDITABLE_STATUSES:
        raise ReadOnlyPalletError(LINES_READ_ONLY)

    line = (
        session.query(ReceiptLine)
        .filter(ReceiptLine.id == receipt_id, ReceiptLine.pallet_id == pallet_id)
        .first()
    )
    if line is None:
        raise NotFoundError("receipt line not found")
    return line


def update_line(
    store: Store,
    *,
    user_id: int,
    line: ReceiptLineUpdate,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> ReceiptLine:
    """
    Edit one receipt line in place (no merge).

    Requires an active project and a created/open pallet. Damaged lines are
    normalised to damaged_qty == qty.
    """
    if user_id is None or user_id <= 0:
        raise ValidationError("invalid user id")
    if line.qty is None or line.qty <= 0:
        raise ValidationError("qty must be greater than 0")
    if line.damaged_qty is not None and line.damaged_qty < 0:
        raise ValidationError("damaged qty must be 0 or greater")
    case_size = line.case_size if line.case_size and line.case_size > 0 else 1
    damaged = bool(line.damaged) or (line.damaged_qty or 0) > 0
    now = now or utcnow()

    def _op(session: Session) -> ReceiptLine:
        existing = _load_editable_line(session, line.pallet_id, line.receipt_id)

        sku = (line.sku or "").strip()
        if existing.unknown_sku:
            sku = sku or UNKNOWN_SKU
        elif not sku:
            raise ValidationError("sku is required")

        before = existing.to_dict()
        existing.sku = sku
        existing.description = (line.description or "").strip()
        existing.uom = (line.uom or "").strip()
        existing.comment = (line.comment or "").strip()
        existing.qty = line.qty
        existing.case_size = case_size
        existing.damaged = damaged
        existing.damaged_qty = line.qty if damaged else 0
        existing.batch_number = _or_none((line.batch_number or "").strip())
        existing.expiry_date = line.expiry_date
        existing.scanned_by_user_id = user_id
        existing.updated_at = now
        session.flush()

        if not existing.unknown_sku:
            upsert_stock_item(
                session,
                project_id=existing.project_id,
                sku=existing.sku,
                description=existing.description,
                uom=existing.uom,
                now=now,
            )

        write_audit(
            session,
            user_id=user_id,
            action=ACTION_RECEIPT_UPDATE,
            entity_type=ENTITY_RECEIPTS,
            entity_id=existing.id,
            before=before,
            after=existing.to_dict(),
            now=now,
        )
        return existing

    return store.with_write_tx(_op, token=token)


def delete_line(
    store: Store,
    *,
    user_id: int,
    pallet_id: int,
    receipt_id: int,
    now: Optional[datetime] = None,
    token: Optional[CancelToken] = None,
) -> None:
    """Remove a receipt line and its photos (created/open pallet, active project)."""
    if user_id is None or user_id <= 0:
        raise ValidationError("invalid user id")
    now = now or utcnow()

    def _op(session: Session) -> None:
        existing = _load_editable_line(session, pallet_id, receipt_id)
        before = existing.to_dict()

        session.query(ReceiptPhoto).filter(ReceiptPhoto.pallet_receipt_id == existing.id).delete(
            synchronize_session=False
        )
        session.delete(existing)
        session.flush()

        write_audit(
            session,
            user_id=user_id,
            action=ACTION_RECEIPT_DELETE,
            entity_type=ENTITY_RECEIPTS,
            entity_id=receipt_id,
            before=before,
            after=None,
            now=now,
        )

    store.with_write_tx(_op, token=token)
    logger.info("Deleted receipt line %d from pallet %d", receipt_id, pallet_id)


def load_primary_photo(store: Store, pallet_id: int, receipt_id: int, *, token: Optional[CancelToken] = None) -> StoredPhoto:
    with store.read_tx(token) as session:
        row = (
            session.query(ReceiptLine.stock_photo_blob, ReceiptLine.stock_photo_mime, ReceiptLine.stock_photo_name)
            .filter(ReceiptLine.id == receipt_id, ReceiptLine.pallet_id == pallet_id)
            .first()
        )
    if row is None or not row.stock_photo_blob:
        raise NotFoundError("photo not found")
    return StoredPhoto(
        blob=row.stock_photo_blob,
        mime_type=row.stock_photo_mime or DEFAULT_PHOTO_MIME,
        file_name=row.stock_photo_name or DEFAULT_PHOTO_NAME,
    )


def load_photo(
    store: Store,
    pallet_id: int,
    receipt_id: int,
    photo_id: int,
    *,
    token: Optional[CancelToken] = None,
) -> StoredPhoto:
    """Load one extra photo, checking it belongs to the receipt line on this pallet."""
    with store.read_tx(token) as session:
        row = (
            session.query(ReceiptPhoto.photo_blob, ReceiptPhoto.photo_mime, ReceiptPhoto.photo_name)
            .join(ReceiptLine, ReceiptLine.id == ReceiptPhoto.pallet_receipt_id)
            .filter(
                ReceiptPhoto.id == photo_id,
                ReceiptPhoto.pallet_receipt_id == receipt_id,
                ReceiptLine.pallet_id == pallet_id,
            )
            .first()
        )
    if row is None:
        raise NotFoundError("photo not found")
    return StoredPhoto(blob=row.photo_blob, mime_type=row.photo_mime, file_name=row.photo_name)


def photo_ids_for(session: Session, receipt_id: int) -> list[int]:
    rows = (
        session.query(ReceiptPhoto.id)
        .filter(ReceiptPhoto.pallet_receipt_id == receipt_id)
        .order_by(ReceiptPhoto.id.asc())
        .all()
    )
    return [row.id for row in rows]


def load_photo_ids(store: Store, receipt_id: int, *, token: Optional[CancelToken] = None) -> list[int]:
    with store.read_tx(token) as session:
        return photo_ids_for(session, receipt_id)
