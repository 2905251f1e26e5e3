from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class AuditLog(db.Model):
    """
    Append-only change record.

    Written inside the same transaction as the mutation it describes; never
    updated or deleted. before_json/after_json hold the entity snapshot, or ""
    when there is no snapshot on that side (create/delete).
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_logs_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_logs_created_at", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    action = db.Column(db.String(64), nullable=False)
    entity_type = db.Column(db.String(64), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)
    before_json = db.Column(db.Text, nullable=True)
    after_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "before_json": self.before_json,
            "after_json": self.after_json,
            "created_at": to_utc_z(self.created_at),
        }


class ExportRun(db.Model):
    """Append-only telemetry row per CSV export."""
    __tablename__ = "export_runs"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=True)
    export_type = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
