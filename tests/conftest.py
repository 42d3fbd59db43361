"""Pytest configuration and shared fixtures."""

import base64
import os
import tempfile

import pytest

# main builds a module-level app on import; keep its files out of the repo
os.environ.setdefault("CHECKIN_DATA_DIR", tempfile.mkdtemp(prefix="checkin-test-"))

from fastapi.testclient import TestClient

from checkin.config import BACKEND_LOCAL, BACKEND_SQLITE, AppConfig
from checkin.feed import ChangeFeed
from checkin.models import Ticket, TicketIn
from checkin.store import (
    LocalSettingsStore,
    LocalTicketStore,
    SqliteSettingsStore,
    SqliteTicketStore,
)

ADMIN_HEADERS = {
    "Authorization": "Basic " + base64.b64encode(b"admin:secret").decode("ascii")
}


def make_ticket_in(**overrides) -> TicketIn:
    data = {
        "full_name": "Asha Rao",
        "gender": "Female",
        "age": 29,
        "phone_number": "+91 98450 12345",
    }
    data.update(overrides)
    return TicketIn(**data)


def make_ticket(ticket_id: str = "T-AAAAAAAAA", **overrides) -> Ticket:
    return Ticket.book(ticket_id, make_ticket_in(**overrides))


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture(params=[BACKEND_LOCAL, BACKEND_SQLITE])
def store(request, tmp_path):
    """Both ticket store backends, sharing one contract."""
    if request.param == BACKEND_LOCAL:
        return LocalTicketStore(tmp_path)
    return SqliteTicketStore(tmp_path / "checkin.db")


@pytest.fixture(params=[BACKEND_LOCAL, BACKEND_SQLITE])
def settings_store(request, tmp_path):
    if request.param == BACKEND_LOCAL:
        return LocalSettingsStore(tmp_path)
    return SqliteSettingsStore(tmp_path / "checkin.db")


@pytest.fixture
def sqlite_store(tmp_path, feed) -> SqliteTicketStore:
    return SqliteTicketStore(tmp_path / "checkin.db", feed=feed)


def build_client(tmp_path, backend: str) -> TestClient:
    from main import create_app

    config = AppConfig(
        data_dir=tmp_path / backend,
        backend=backend,
        admin_username="admin",
        admin_password="secret",
    )
    return TestClient(create_app(config))


@pytest.fixture
def client(tmp_path):
    with build_client(tmp_path, BACKEND_SQLITE) as test_client:
        yield test_client


@pytest.fixture
def local_client(tmp_path):
    with build_client(tmp_path, BACKEND_LOCAL) as test_client:
        yield test_client
