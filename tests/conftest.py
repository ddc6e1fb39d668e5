import os

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("LOG_LEVEL", "WARNING")

from config import Settings  # noqa: E402
from contact_store import SqliteContactStore  # noqa: E402
from db_setup import init_db  # noqa: E402
from identity_service import IdentityResolver  # noqa: E402
from main import create_app  # noqa: E402
from tests.fakes import InMemoryContactStore  # noqa: E402


@pytest.fixture
def memory_store() -> InMemoryContactStore:
    return InMemoryContactStore()


@pytest.fixture
def resolver(memory_store) -> IdentityResolver:
    return IdentityResolver(memory_store)


@pytest.fixture
def db_path(tmp_path) -> str:
    path = str(tmp_path / "contacts.db")
    init_db(path)
    return path


@pytest.fixture
def sqlite_store(db_path) -> SqliteContactStore:
    return SqliteContactStore(db_path)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_path=str(tmp_path / "api.db"),
        log_level="WARNING",
        log_format="text",
    )


@pytest.fixture
def client(settings):
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client
