"""
Pytest configuration and shared fixtures.

Every test gets its own SQLite database under tmp_path. The reply generator
and the Whapi transport are replaced by in-memory doubles so no test touches
the network.
"""

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports so env changes are honoured
from concierge.config import Settings, get_settings
get_settings.cache_clear()

from concierge.generator import ReplyGenerator
from concierge.main import create_app
from concierge.models import Client
from concierge.result import Result
from concierge.storage import SessionStore, create_db_engine, create_session_factory, init_db

GREETING = "السلام عليكم لالة"


class FakeReplyGenerator(ReplyGenerator):
    """Greets on first contact like the prompt asks, echoes otherwise."""

    def __init__(self):
        self.contexts = []
        self.fail_with = None
        self.reply_text = None

    def generate(self, context):
        self.contexts.append(context)
        if self.fail_with:
            return Result.failure(self.fail_with, "ai_error")
        if self.reply_text is not None:
            return Result.success(self.reply_text)
        if context.is_first_contact:
            return Result.success(f"{GREETING}، كيفاش نعاونك؟")
        return Result.success(f"reply to: {context.inbound_text}")


class FakeTransport:
    def __init__(self):
        self.sent = []

    def send_text(self, phone, text):
        self.sent.append((phone, text))
        return {"sent": True, "message": {"id": f"out-{len(self.sent)}"}}


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'concierge-test.db'}",
        LOG_LEVEL="WARNING",
        COUNTRY_CODE="213",
        ASSISTANT_PHONE="213550000000",
        GREETING_PHRASE=GREETING,
        LLM_API_KEY=None,
        WHAPI_TOKEN=None,
    )


@pytest.fixture
def session_factory(settings):
    engine = create_db_engine(settings.DATABASE_URL)
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory) -> SessionStore:
    return SessionStore(session_factory)


@pytest.fixture
def add_client(session_factory):
    """Insert a client record the way the back office stores it."""

    def _add(client_id, phone, first_name="Amina", last_name="Benali", **fields):
        with session_factory() as db:
            db.add(Client(id=client_id, phone=phone, first_name=first_name, last_name=last_name, **fields))
            db.commit()

    return _add


@pytest.fixture
def fake_generator() -> FakeReplyGenerator:
    return FakeReplyGenerator()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def app(settings, fake_generator, fake_transport):
    return create_app(settings, generator=fake_generator, transport=fake_transport)


@pytest.fixture
def client(app):
    """Test client with a fresh database for each test."""
    with TestClient(app) as test_client:
        yield test_client
