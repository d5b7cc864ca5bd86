# entitlement_engine/conftest.py
import os

# Must be set before entitlement_engine.core.config builds its Settings
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

import pytest
from datetime import datetime, timezone


@pytest.fixture(scope="session")
def db_url():
    """
    TEST_DATABASE_URL when set (e.g. a PostgreSQL instance), otherwise None
    and each test gets its own SQLite file.
    """
    return os.getenv("TEST_DATABASE_URL")


@pytest.fixture(scope="function", autouse=True)
def database(db_url, tmp_path):
    """
    Fresh schema + default catalog for every test.

    PostgreSQL databases are reset in place; SQLite files are simply discarded.
    """
    from entitlement_engine.core.database import (
        init_engine,
        create_all_tables,
        reset_database,
        drop_all_tables,
        dispose_engine,
    )
    from entitlement_engine.features.catalog.service import seed_catalog

    url = db_url or f"sqlite:///{tmp_path / 'entitlements.db'}"
    init_engine(url)
    if db_url:
        reset_database()
    else:
        create_all_tables()
    seed_catalog()

    yield url

    if db_url:
        drop_all_tables()
    dispose_engine()


@pytest.fixture
def now():
    """Fixed clock: Saturday 2026-03-14 12:00 UTC."""
    return datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def workspace_id(request):
    """Workspace id unique to the test."""
    return f"ws-{request.node.name}"[:100]


@pytest.fixture
def no_retry_wait(monkeypatch):
    """Keep storage retries instant."""
    from entitlement_engine.core.config import settings
    monkeypatch.setattr(settings, "STORAGE_RETRY_MIN_WAIT_SECONDS", 0.0)
    monkeypatch.setattr(settings, "STORAGE_RETRY_MAX_WAIT_SECONDS", 0.0)
    monkeypatch.setattr(settings, "STORAGE_RETRY_ATTEMPTS", 3)
    return settings


@pytest.fixture
def admin_headers(monkeypatch):
    monkeypatch.setenv("ADMIN_KEY", "test-admin-key")
    return {"X-Admin-Key": "test-admin-key"}
