from typing import Any

import pytest
import pytest_asyncio

from donorlink.config import Settings
from donorlink.database import Database, load_sample_data
from donorlink.errors import TransportError
from donorlink.models import User
from donorlink.realtime import ClientConnection
from donorlink.services import Services


class FakeConnection(ClientConnection):
    """Records everything sent to it. Set fail=True to simulate a dead socket."""

    def __init__(self, user: User, session_id: str | None = None) -> None:
        super().__init__(user, session_id)
        self.received: list[tuple[str, Any]] = []
        self.fail = False

    async def send(self, event: str, data: Any) -> None:
        if self.fail:
            raise TransportError("socket closed")
        self.received.append((event, data))

    def events(self, name: str) -> list[Any]:
        return [data for event, data in self.received if event == name]


@pytest_asyncio.fixture(autouse=True)
def reset_services():
    """Give every test a fresh global service container with sample data."""
    import donorlink.services

    services = Services(Settings(typing_timeout_seconds=0.05), Database())
    load_sample_data(services.db)
    donorlink.services._services = services
    yield services
    donorlink.services._services = None


@pytest.fixture
def services(reset_services: Services) -> Services:
    return reset_services


@pytest.fixture
def connect():
    """Factory for FakeConnection objects."""

    def _connect(user: User, session_id: str | None = None) -> FakeConnection:
        return FakeConnection(user, session_id)

    return _connect


@pytest.fixture
def users(services: Services) -> dict[str, User]:
    return {u.id: u for u in services.db.users.table.all()}
