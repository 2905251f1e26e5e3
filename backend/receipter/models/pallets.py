from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

# Pallet lifecycle: created -> open -> closed <-> open, closed -> labelled,
# and anything except cancelled -> cancelled.
PALLET_STATUS_CREATED = "created"
PALLET_STATUS_OPEN = "open"
PALLET_STATUS_CLOSED = "closed"
PALLET_STATUS_LABELLED = "labelled"
PALLET_STATUS_CANCELLED = "cancelled"

PALLET_STATUSES = (
    PALLET_STATUS_CREATED,
    PALLET_STATUS_OPEN,
    PALLET_STATUS_CLOSED,
    PALLET_STATUS_LABELLED,
    PALLET_STATUS_CANCELLED,
)


def pallet_barcode(pallet_id: int) -> str:
    """Printed pallet identifier: P followed by the id zero-padded to 8 digits."""
    return f"P{pallet_id:08d}"


class Pallet(db.Model):
    """
    A physical pallet receiving stock lines during a project.

    Ids are allocated as max(id)+1 under the single writer, never by
    AUTOINCREMENT, so the printed barcode sequence has no gaps.
    """
    __tablename__ = "pallets"
    __table_args__ = (
        db.Index("idx_pallets_project_id", "project_id"),
        db.Index("idx_pallets_status", "status"),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=False)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=PALLET_STATUS_CREATED)

    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    closed_at = db.Column(db.DateTime, nullable=True)
    reopened_at = db.Column(db.DateTime, nullable=True)

    @property
    def barcode(self) -> str:
        return pallet_barcode(self.id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "status": self.status,
            "barcode": self.barcode,
            "created_at": to_utc_z(self.created_at),
            "closed_at": to_utc_z(self.closed_at),
            "reopened_at": to_utc_z(self.reopened_at),
        }

    def __repr__(self) -> str:
        return f"<Pallet {self.id} {self.status}>"
