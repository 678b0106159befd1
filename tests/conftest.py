import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import json  # noqa: E402
from datetime import datetime, timezone  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

import techrehub.models  # noqa: E402,F401
from techrehub.config import Settings  # noqa: E402
from techrehub.database import Base, build_engine, get_db  # noqa: E402
from techrehub.main import app  # noqa: E402
from techrehub.runtime import build_runtime, get_runtime  # noqa: E402
from techrehub.services.catalog import load_catalog, load_intents_file  # noqa: E402
from techrehub.services.intent_classifier import IntentClassifier, build_corpus  # noqa: E402


@pytest.fixture
def db_engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    """Real SQLAlchemy session on in-memory SQLite."""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="session")
def catalog():
    return load_catalog()


@pytest.fixture(scope="session")
def classifier(catalog):
    return IntentClassifier.train(build_corpus(catalog, load_intents_file()))


class FakeClock:
    def __init__(self, now=None):
        self.now = now or datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


@pytest.fixture
def clock():
    return FakeClock()


class SentMessages:
    """httpx transport that records outbound channel API calls."""

    def __init__(self):
        self.requests = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request):
        self.requests.append(request)
        return httpx.Response(200, json={"messages": [{"id": "wamid.out"}], "message_id": "m_out"})

    @property
    def bodies(self):
        return [json.loads(request.content) for request in self.requests]


@pytest.fixture
def sent_messages():
    return SentMessages()


@pytest.fixture
def api_settings():
    return Settings(
        database_url="sqlite://",
        whatsapp_access_token="wa-token",
        whatsapp_phone_number_id="123456",
        whatsapp_app_secret="app-secret",
        messenger_page_access_token="page-token",
        messenger_app_secret="app-secret",
        admin_phone_numbers="",
        webhook_signature_required=True,
    )


@pytest.fixture
def runtime(api_settings, session_factory, sent_messages):
    return build_runtime(config=api_settings, session_factory=session_factory, transport=sent_messages.transport)


@pytest.fixture
def client(runtime, session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_runtime] = lambda: runtime
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
