"""
Pytest configuration and shared fixtures.

Every test gets its own SQLite file and an app built with explicit settings,
so nothing depends on the process environment or a .env file.
"""

import itertools

import pytest
from fastapi.testclient import TestClient

from wa_ingest.config import Settings
from wa_ingest.errors import GatewayError
from wa_ingest.main import create_app
from wa_ingest.storage import Database

from .payloads import TEST_APP_SECRET, TEST_SEND_TOKEN, TEST_VERIFY_TOKEN


class FakeGateway:
    """Records outbound calls instead of talking to the provider."""

    def __init__(self):
        self.sent = []
        self.read = []
        self.templates = []
        self.fail_reads = False
        self.fail_sends = False
        self._ids = itertools.count(1)

    async def send_text(self, to: str, body: str) -> str:
        if self.fail_sends:
            raise GatewayError("send API error 500: boom", 500)
        self.sent.append((to, body))
        return f"wamid.out.{next(self._ids)}"

    async def send_template(self, to: str, template_name: str, language_code: str, components=None) -> str:
        if self.fail_sends:
            raise GatewayError("send API error 500: boom", 500)
        self.templates.append((to, template_name, language_code, components or []))
        return f"wamid.out.{next(self._ids)}"

    async def mark_read(self, provider_message_id: str) -> None:
        if self.fail_reads:
            raise GatewayError("send API error 500: boom", 500)
        self.read.append(provider_message_id)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'ingest.db'}",
        LOG_LEVEL="WARNING",
        ENVIRONMENT="test",
        WHATSAPP_APP_SECRET=TEST_APP_SECRET,
        WHATSAPP_VERIFY_TOKEN=TEST_VERIFY_TOKEN,
        SEND_API_TOKEN=TEST_SEND_TOKEN,
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def app(settings, gateway):
    return create_app(settings=settings, gateway=gateway)


@pytest.fixture
def client(app):
    """Test client with the app lifespan running (tables created, dispatcher bound)."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def database(settings):
    """Standalone storage for directory/ledger/status tests."""
    db = Database(settings.DATABASE_URL, timeout_seconds=settings.DB_TIMEOUT_SECONDS)
    db.init_db()
    yield db
    db.drop_all()
    db.dispose()


@pytest.fixture
def session(database):
    with database.session() as db:
        yield db
