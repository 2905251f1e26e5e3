# Overview: Flask extension instances and the per-app Store accessor.

from flask import current_app
from flask_sqlalchemy import SQLAlchemy

# Declarative base for the ORM models. Sessions are issued by the Store, which
# owns the split writer/reader engines; see receipter/store.py.
db = SQLAlchemy()

STORE_EXTENSION_KEY = "receipter_store"


def get_store():
    """Return the Store configured for the current Flask app."""
    return current_app.extensions[STORE_EXTENSION_KEY]
