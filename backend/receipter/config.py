# receipter/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # Single SQLite data file shared by the writer and reader handles
    RECEIPTER_DB_PATH = os.environ.get("RECEIPTER_DB_PATH", "receipter.sqlite3")

    # Seconds a writer waits for the single write connection before failing
    RECEIPTER_WRITE_POOL_TIMEOUT = float(os.environ.get("RECEIPTER_WRITE_POOL_TIMEOUT", "30"))
    RECEIPTER_READ_POOL_SIZE = int(os.environ.get("RECEIPTER_READ_POOL_SIZE", "8"))

    # Apply bundled SQL migrations when the app starts
    RECEIPTER_AUTO_MIGRATE = os.environ.get("RECEIPTER_AUTO_MIGRATE", "1") != "0"

    SESSION_TTL_HOURS = int(os.environ.get("SESSION_TTL_HOURS", "12"))

    # 5 MiB per photo; multipart bodies may carry several photos
    MAX_PHOTO_BYTES = 5 << 20
    MAX_CONTENT_LENGTH = 50 << 20

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

    # Browser front-ends allowed to call the API
    CORS_ALLOWED_ORIGINS = {
        origin.strip()
        for origin in os.environ.get(
            "CORS_ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
        ).split(",")
        if origin.strip()
    }
