from __future__ import annotations

from ..extensions import db
from ..time_utils import to_iso_date, to_utc_z

PROJECT_STATUS_ACTIVE = "active"
PROJECT_STATUS_INACTIVE = "inactive"
PROJECT_STATUSES = (PROJECT_STATUS_ACTIVE, PROJECT_STATUS_INACTIVE)


class Project(db.Model):
    """
    A receipting project for one client.

    Inactive projects are read-only: receipts, the pallet lifecycle and the
    stock catalogue all refuse writes unless status == "active".
    """
    __tablename__ = "projects"
    __table_args__ = (
        db.Index("idx_projects_status", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    client_name = db.Column(db.String(255), nullable=False, default="")
    project_date = db.Column(db.Date, nullable=True)

    # URL-safe slug, unique across projects
    code = db.Column(db.String(64), nullable=False, unique=True)
    status = db.Column(db.String(16), nullable=False, default=PROJECT_STATUS_ACTIVE)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    @property
    def is_active(self) -> bool:
        return self.status == PROJECT_STATUS_ACTIVE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "client_name": self.client_name,
            "project_date": to_iso_date(self.project_date),
            "code": self.code,
            "status": self.status,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<Project {self.id} {self.code} {self.status}>"


class ClientProjectAccess(db.Model):
    """Grants a client-role user read access to one project."""
    __tablename__ = "client_project_access"

    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True)
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
