from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class StockItem(db.Model):
    """
    Per-project catalogue hint: the description and unit of measure last seen
    for a SKU. Fed by receipt writes and the CSV importer.
    """
    __tablename__ = "stock_items"
    __table_args__ = (
        db.UniqueConstraint("project_id", "sku"),
        db.Index("idx_stock_items_description", "project_id", "description"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False)
    sku = db.Column(db.String(128), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    uom = db.Column(db.String(32), nullable=False, default="")
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "sku": self.sku,
            "description": self.description,
            "uom": self.uom,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockImportRun(db.Model):
    __tablename__ = "stock_import_runs"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False)
    inserted_count = db.Column(db.Integer, nullable=False, default=0)
    updated_count = db.Column(db.Integer, nullable=False, default=0)
    error_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "inserted_count": self.inserted_count,
            "updated_count": self.updated_count,
            "error_count": self.error_count,
            "created_at": to_utc_z(self.created_at),
        }
