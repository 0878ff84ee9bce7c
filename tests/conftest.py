"""Pytest configuration and fixtures."""

import pytest
from pathlib import Path
from fastapi.testclient import TestClient
import tempfile

from metahub_service.main import app
from metahub_service.config import settings

# Test admin API key for authentication
TEST_ADMIN_API_KEY = "test_admin_key_for_testing"


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def temp_data_dir(monkeypatch):
    """Create a temporary data directory holding the shared store."""
    with tempfile.TemporaryDirectory() as tmpdir:
        data_dir = Path(tmpdir) / "data"
        data_dir.mkdir(parents=True, exist_ok=True)
        store_path = data_dir / "metahubs.duckdb"

        # Patch settings
        monkeypatch.setattr(settings, "data_dir", data_dir)
        monkeypatch.setattr(settings, "store_path", store_path)
        monkeypatch.setattr(settings, "admin_api_key", TEST_ADMIN_API_KEY)

        yield {
            "data_dir": data_dir,
            "store_path": store_path,
        }


@pytest.fixture
def missing_data_dir(monkeypatch):
    """Configure settings with non-existent paths for testing errors."""
    nonexistent = Path("/nonexistent/path/that/does/not/exist")

    monkeypatch.setattr(settings, "data_dir", nonexistent)
    monkeypatch.setattr(settings, "store_path", nonexistent / "metahubs.duckdb")

    yield nonexistent


@pytest.fixture
def admin_headers():
    """Return headers with admin API key for authentication."""
    return {"Authorization": f"Bearer {TEST_ADMIN_API_KEY}"}


@pytest.fixture
def metadata_db(temp_data_dir):
    """Create MetadataDB instance with temporary storage."""
    from metahub_service.database import MetadataDB

    # Reset singleton for testing
    MetadataDB._instance = None

    db = MetadataDB()
    db.initialize()

    yield db

    # Cleanup singleton after test
    MetadataDB._instance = None


@pytest.fixture
def resolution_cache():
    """Fresh process cache per test (the app-wide one is cleared too)."""
    from metahub_service.dependencies import resolution_cache as app_cache
    from metahub_service.resolution_cache import BranchResolutionCache

    app_cache.clear()
    yield BranchResolutionCache(ttl_seconds=60)
    app_cache.clear()


@pytest.fixture
def branch_service(metadata_db, resolution_cache):
    """BranchService wired to the temporary store."""
    from metahub_service.branch_service import BranchService
    from metahub_service.cloner import DataCloner
    from metahub_service.locks import AdvisoryLockManager
    from metahub_service.namespaces import SchemaProvisioner

    return BranchService(
        db=metadata_db,
        provisioner=SchemaProvisioner(metadata_db),
        cloner=DataCloner(),
        locks=AdvisoryLockManager(metadata_db),
        cache=resolution_cache,
    )


def localized(text: str, locale: str = "en") -> dict:
    """Localized content with a single locale."""
    from metahub_service.localized import build_localized_content

    return build_localized_content({locale: text}, locale)


@pytest.fixture
def make_user(metadata_db):
    """Factory: store a user directly, returns (user_dict, api_key)."""
    import uuid

    from metahub_service.auth import generate_user_key, get_key_prefix, hash_key

    def _make(email: str | None = None, nickname: str | None = None):
        user_id = str(uuid.uuid4())
        api_key = generate_user_key(user_id)
        user = metadata_db.create_user(
            user_id=user_id,
            key_hash=hash_key(api_key),
            key_prefix=get_key_prefix(api_key),
            email=email,
            nickname=nickname,
        )
        return user, api_key

    return _make


@pytest.fixture
def metahub(metadata_db, branch_service, make_user):
    """A metahub with an owner and its initial branch ("main", number 1)."""
    owner, owner_key = make_user(email="owner@example.com", nickname="owner")
    hub = metadata_db.create_metahub(
        name=localized("Catalog"), description=None, created_by=owner["id"]
    )
    metadata_db.add_member(hub["id"], owner["id"], role="owner")
    main = branch_service.create_initial_branch(
        hub["id"], name=localized("Main"), created_by=owner["id"]
    )
    return {
        "id": hub["id"],
        "owner": owner,
        "owner_key": owner_key,
        "main": main,
    }


# ============================================
# HTTP helpers
# ============================================


@pytest.fixture
def initialized_store(temp_data_dir):
    """Initialize the shared store before API tests."""
    from metahub_service import database

    database.metadata_db.initialize()
    yield temp_data_dir


@pytest.fixture
def register_user(client, initialized_store, admin_headers):
    """Factory: register a user via the API, returns (user_id, headers)."""

    def _register(email: str | None = None, nickname: str | None = None):
        response = client.post(
            "/users",
            json={"email": email, "nickname": nickname},
            headers=admin_headers,
        )
        assert response.status_code == 201
        data = response.json()
        return data["id"], {"Authorization": f"Bearer {data['api_key']}"}

    return _register


@pytest.fixture
def api_metahub(client, register_user):
    """A metahub created through the API together with its owner."""
    owner_id, owner_headers = register_user(email="owner@example.com", nickname="owner")
    response = client.post(
        "/metahubs",
        json={"name": "Catalog"},
        headers=owner_headers,
    )
    assert response.status_code == 201
    data = response.json()
    return {
        "id": data["id"],
        "default_branch_id": data["defaultBranchId"],
        "owner_id": owner_id,
        "owner_headers": owner_headers,
    }
