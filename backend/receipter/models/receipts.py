from __future__ import annotations

from ..extensions import db
from ..time_utils import to_iso_date, to_utc_z

UNKNOWN_SKU = "UNKNOWN"
UNKNOWN_SKU_DESCRIPTION = "Unidentifiable item"

DEFAULT_PHOTO_MIME = "image/jpeg"
DEFAULT_PHOTO_NAME = "photo.jpg"


class ReceiptLine(db.Model):
    """
    One stored aggregate of identical stock on a pallet.

    INSTANCE KEY (merge identity):
        (project_id, pallet_id, sku, uom, case_size, unknown_sku, damaged,
         trimmed batch_number with NULL == "", date(expiry_date) with NULL == NULL)

    Saving input whose key matches an existing line adds to its qty instead of
    inserting a new row; see services/instance_key.py.

    INVARIANTS:
    - qty > 0, case_size >= 1
    - 0 <= damaged_qty <= qty; damaged lines carry damaged_qty == qty
    - unknown_sku lines use sku "UNKNOWN" and never reach the stock catalogue

    The primary photo lives on the line itself (stock_photo_*); further photos
    are ReceiptPhoto rows.
    """
    __tablename__ = "pallet_receipts"
    __table_args__ = (
        db.Index("idx_pallet_receipts_pallet_id", "pallet_id"),
        db.Index("idx_pallet_receipts_instance", "project_id", "pallet_id", "sku", "uom", "case_size"),
        db.Index("idx_pallet_receipts_project_sku", "project_id", "sku"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False)
    pallet_id = db.Column(db.Integer, db.ForeignKey("pallets.id"), nullable=False)

    sku = db.Column(db.String(128), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    uom = db.Column(db.String(32), nullable=False, default="")
    comment = db.Column(db.Text, nullable=False, default="")
    scanned_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    qty = db.Column(db.Integer, nullable=False)
    case_size = db.Column(db.Integer, nullable=False, default=1)
    unknown_sku = db.Column(db.Boolean, nullable=False, default=False)
    damaged = db.Column(db.Boolean, nullable=False, default=False)
    damaged_qty = db.Column(db.Integer, nullable=False, default=0)

    batch_number = db.Column(db.String(128), nullable=True)
    expiry_date = db.Column(db.Date, nullable=True)
    carton_barcode = db.Column(db.String(128), nullable=True)
    item_barcode = db.Column(db.String(128), nullable=True)
    no_outer_barcode = db.Column(db.Boolean, nullable=False, default=False)
    no_inner_barcode = db.Column(db.Boolean, nullable=False, default=False)

    stock_photo_blob = db.Column(db.LargeBinary, nullable=True)
    stock_photo_mime = db.Column(db.String(64), nullable=True)
    stock_photo_name = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    @property
    def has_stock_photo(self) -> bool:
        return bool(self.stock_photo_blob)

    def to_dict(self) -> dict:
        """Snapshot used for API responses and audit before/after JSON (no blob bytes)."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "pallet_id": self.pallet_id,
            "sku": self.sku,
            "description": self.description,
            "uom": self.uom,
            "comment": self.comment,
            "scanned_by_user_id": self.scanned_by_user_id,
            "qty": self.qty,
            "case_size": self.case_size,
            "unknown_sku": bool(self.unknown_sku),
            "damaged": bool(self.damaged),
            "damaged_qty": self.damaged_qty,
            "batch_number": self.batch_number,
            "expiry_date": to_iso_date(self.expiry_date),
            "carton_barcode": self.carton_barcode,
            "item_barcode": self.item_barcode,
            "no_outer_barcode": bool(self.no_outer_barcode),
            "no_inner_barcode": bool(self.no_inner_barcode),
            "has_stock_photo": self.has_stock_photo,
            "stock_photo_mime": self.stock_photo_mime,
            "stock_photo_name": self.stock_photo_name,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<ReceiptLine {self.id} pallet={self.pallet_id} sku={self.sku} qty={self.qty}>"


class ReceiptPhoto(db.Model):
    """Additional photo attached to a receipt line."""
    __tablename__ = "receipt_photos"
    __table_args__ = (
        db.Index("idx_receipt_photos_receipt", "pallet_receipt_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    pallet_receipt_id = db.Column(
        db.Integer,
        db.ForeignKey("pallet_receipts.id", ondelete="CASCADE"),
        nullable=False,
    )
    photo_blob = db.Column(db.LargeBinary, nullable=False)
    photo_mime = db.Column(db.String(64), nullable=False, default=DEFAULT_PHOTO_MIME)
    photo_name = db.Column(db.String(255), nullable=False, default=DEFAULT_PHOTO_NAME)
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())


class SkuClientComment(db.Model):
    """
    Free-text client reviewer comment on an SKU-instance of one pallet.

    Keyed by (project_id, pallet_id, sku, uom, batch_number, expiry_date); case
    size and the damaged flag are deliberately not part of the key.
    """
    __tablename__ = "sku_client_comments"
    __table_args__ = (
        db.Index("idx_sku_client_comments_instance", "project_id", "pallet_id", "sku"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False)
    pallet_id = db.Column(db.Integer, db.ForeignKey("pallets.id"), nullable=False)
    sku = db.Column(db.String(128), nullable=False)
    uom = db.Column(db.String(32), nullable=False, default="")
    batch_number = db.Column(db.String(128), nullable=False, default="")
    expiry_date = db.Column(db.Date, nullable=True)
    comment = db.Column(db.Text, nullable=False)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "pallet_id": self.pallet_id,
            "sku": self.sku,
            "uom": self.uom,
            "batch_number": self.batch_number,
            "expiry_date": to_iso_date(self.expiry_date),
            "comment": self.comment,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
