# backend/receipter/routes/system.py
"""
System health endpoint.

Checks that the data file answers on both the reader and the writer handle.
"""

import time

from flask import Blueprint, current_app
from sqlalchemy import text

from ..extensions import get_store
from ..models import Pallet, Project, User
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity through a read transaction.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        with get_store().read_tx() as session:
            session.execute(text("SELECT 1"))
            details = {
                "users": session.query(User).count(),
                "projects": session.query(Project).count(),
                "pallets": session.query(Pallet).count(),
            }

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": details,
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: database reachable
    - 503: database unreachable
    """
    start_time = time.time()
    database_health = check_database_health()
    healthy = database_health["status"] == "healthy"
    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
        },
    }
    return response, 200 if healthy else 503
