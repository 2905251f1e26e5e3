"""
Pytest fixtures for Receipter backend tests.

Provides a migrated temp-file Store, seeded users/projects/pallets, receipt
builders and a Flask test client wired to its own Store.
"""

from datetime import date, datetime, timedelta
from io import BytesIO

import pytest
from PIL import Image

from receipter import create_app
from receipter.extensions import get_store
from receipter.models import Pallet, User
from receipter.models.auth import ROLE_ADMIN, ROLE_CLIENT, ROLE_SCANNER
from receipter.services import pallet_service, project_service, session_service
from receipter.services.receipt_service import PhotoInput, ReceiptInput
from receipter.store import Store
from receipter.time_utils import utcnow

# Fixed clock for deterministic timestamps and expiry checks.
NOW = datetime(2026, 1, 30, 9, 0, 0)
TODAY = NOW.date()
FUTURE_EXPIRY = date(2026, 6, 1)
PAST_EXPIRY = date(2025, 12, 31)

# Services never check this hash; API tests that log in create real users.
UNUSABLE_PASSWORD_HASH = "!"


def seed_user(store: Store, username: str, role: str) -> User:
    with store.write_tx() as session:
        user = User(
            username=username,
            password_hash=UNUSABLE_PASSWORD_HASH,
            role=role,
            is_active=True,
            created_at=NOW,
            updated_at=NOW,
        )
        session.add(user)
        session.flush()
        return user


def set_pallet_status(store: Store, pallet_id: int, status: str) -> None:
    """Force a pallet status without going through the lifecycle (fixture setup only)."""
    with store.write_tx() as session:
        pallet = session.get(Pallet, pallet_id)
        pallet.status = status
        if status in ("closed", "labelled"):
            pallet.closed_at = NOW


def png_bytes(size=(2, 2), color=(200, 30, 30)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, "PNG")
    return buf.getvalue()


def photo(name: str = "photo.png") -> PhotoInput:
    return PhotoInput(blob=png_bytes(), mime_type="image/png", file_name=name)


def make_receipt(pallet_id: int, **overrides) -> ReceiptInput:
    fields = {
        "pallet_id": pallet_id,
        "sku": "SKU-1",
        "description": "Widget",
        "qty": 5,
        "case_size": 1,
        "batch_number": "B1",
        "expiry_date": FUTURE_EXPIRY,
    }
    fields.update(overrides)
    return ReceiptInput(**fields)


@pytest.fixture
def store(tmp_path):
    """Fresh data file with bundled migrations applied."""
    s = Store.open(str(tmp_path / "receipter-test.sqlite3"))
    s.apply_migrations()
    yield s
    s.close()


@pytest.fixture
def admin(store):
    return seed_user(store, "admin", ROLE_ADMIN)


@pytest.fixture
def scanner(store):
    return seed_user(store, "scanner", ROLE_SCANNER)


@pytest.fixture
def client_user(store):
    return seed_user(store, "client", ROLE_CLIENT)


@pytest.fixture
def project(store, admin):
    return project_service.create_project(
        store,
        user_id=admin.id,
        name="Intake",
        description="Spring intake",
        client_name="Test Client",
        project_date=TODAY,
        now=NOW,
    )


@pytest.fixture
def pallet(store, admin, project):
    """A freshly allocated pallet (status "created")."""
    return pallet_service.allocate_one(store, user_id=admin.id, project_id=project.id, now=NOW)


@pytest.fixture
def make_pallet(store, admin, project):
    """Factory: allocate a pallet and force it into `status`."""
    def _make(status: str = "created") -> Pallet:
        p = pallet_service.allocate_one(store, user_id=admin.id, project_id=project.id, now=NOW)
        if status != "created":
            set_pallet_status(store, p.id, status)
        return pallet_service.load_pallet(store, p.id)
    return _make


# ---------------------------------------------------------------------------
# Flask app
# ---------------------------------------------------------------------------

@pytest.fixture
def app(tmp_path):
    """Create application for testing, with its own data file."""
    app = create_app({
        "TESTING": True,
        "RECEIPTER_DB_PATH": str(tmp_path / "receipter-api.sqlite3"),
        "RECEIPTER_AUTO_MIGRATE": True,
    })
    yield app
    app.extensions["receipter_store"].close()


@pytest.fixture
def app_store(app):
    with app.app_context():
        return get_store()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


def auth_headers(store: Store, user: User) -> dict:
    _, token = session_service.create_session(store, user_id=user.id, now=utcnow(), ttl=timedelta(hours=1))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def api_users(app_store):
    """Seeded admin/scanner/client on the app's store, keyed by role."""
    return {
        ROLE_ADMIN: seed_user(app_store, "api-admin", ROLE_ADMIN),
        ROLE_SCANNER: seed_user(app_store, "api-scanner", ROLE_SCANNER),
        ROLE_CLIENT: seed_user(app_store, "api-client", ROLE_CLIENT),
    }


@pytest.fixture
def headers(app_store, api_users):
    """Bearer headers keyed by role."""
    return {role: auth_headers(app_store, user) for role, user in api_users.items()}


@pytest.fixture
def api_project(app_store, api_users):
    return project_service.create_project(
        app_store,
        user_id=api_users[ROLE_ADMIN].id,
        name="API Project",
        description="Receipts over HTTP",
        client_name="Test Client",
    )
