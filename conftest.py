import importlib
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from library_app import database
from library_app.config import settings


class FakeClock:
    """Callable clock frozen at ``now`` until advanced."""

    def __init__(self, now=None):
        self.now = now or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def fast_hashing(monkeypatch):
    # bcrypt's minimum cost keeps the suite fast
    monkeypatch.setattr(settings, "bcrypt_rounds", 4)


@pytest.fixture
def db_file(tmp_path, request, monkeypatch):
    # Unique database per test
    path = str(tmp_path / f"test_{request.node.name}.db")
    monkeypatch.setattr(database, "DATABASE_FILE", path)
    database.initialize_database(path)
    yield path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client(db_file, monkeypatch):
    monkeypatch.setenv("LIBRARY_DB_FILE", db_file)
    monkeypatch.setattr(settings, "admin_email", None)
    monkeypatch.setattr(settings, "admin_password", None)

    import library_app.api as api_module
    # Reload so the module-level services start from a clean job queue
    importlib.reload(api_module)

    with TestClient(api_module.app) as test_client:
        yield test_client
