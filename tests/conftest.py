"""Pytest fixtures and configuration for apptsync tests."""

import itertools
import pytest
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
from cryptography.fernet import Fernet
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from apptsync.config import OAuthClientConfig, SyncSettings
from apptsync.database.appointment_repository import AppointmentRepository
from apptsync.database.database import Base
from apptsync.errors import AuthExchangeFailed, ProviderError, RefreshFailed
from apptsync.integrations.base import Capability, ProviderAdapter
from apptsync.integrations.registry import AdapterRegistry
from apptsync.models.integration import Provider, TokenSet
from apptsync.models.sync import EventSpec, ExternalEvent
from apptsync.sync.credential_store import CredentialStore
from apptsync.sync.locks import KeyedLocks
from apptsync.sync.reconciliation import ReconciliationEngine
from apptsync.timeutil import utcnow


# Use in-memory SQLite database for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

# "Driving Lesson" on a fixed day, 09:00-10:00 UTC.
LESSON_START = datetime(2030, 1, 15, 9, 0)
LESSON_END = datetime(2030, 1, 15, 10, 0)


class FakeAdapter(ProviderAdapter):
    """In-memory provider that records every call."""

    def __init__(
        self,
        provider: Provider,
        *,
        integration_provider: Optional[Provider] = None,
        capabilities=None,
        join_url_base: Optional[str] = None,
    ):
        super().__init__(OAuthClientConfig(), timeout=1.0)
        self.provider = Provider(provider)
        self.integration_provider = Provider(integration_provider or provider)
        self.capabilities = frozenset(capabilities if capabilities is not None else Capability)
        self.join_url_base = join_url_base

        self.events: Dict[str, EventSpec] = {}
        self.created: List[EventSpec] = []
        self.updated: List[str] = []
        self.deleted: List[str] = []
        self.tokens_used: List[str] = []
        self.listing: List[ExternalEvent] = []
        self.list_windows: List[tuple] = []
        self.refresh_calls: List[str] = []

        self.create_error: Optional[Exception] = None
        self.update_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self.refresh_error: Optional[Exception] = None
        self.refresh_response: Optional[TokenSet] = None
        self.delete_result = True
        self.on_create: Optional[Callable[[EventSpec], None]] = None
        self._ids = itertools.count(1)

    def auth_url(self, state: str) -> str:
        self.require(Capability.AUTH_URL)
        return f"https://auth.example.test/{self.provider.value}?state={state}"

    def exchange_code(self, code: str) -> TokenSet:
        self.require(Capability.TOKEN_EXCHANGE)
        if code == "bad-code":
            raise AuthExchangeFailed("rejected")
        return TokenSet(
            access_token=f"access-{code}",
            refresh_token="refresh-1",
            expires_at=utcnow() + timedelta(hours=1),
        )

    def refresh(self, refresh_token: str) -> TokenSet:
        self.require(Capability.TOKEN_EXCHANGE)
        self.refresh_calls.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        if self.refresh_response is not None:
            return self.refresh_response.copy()
        return TokenSet(
            access_token=f"refreshed-{len(self.refresh_calls)}",
            expires_at=utcnow() + timedelta(hours=1),
        )

    def create_event(self, access_token: str, spec: EventSpec) -> ExternalEvent:
        self.require(Capability.EVENT_CRUD)
        self.tokens_used.append(access_token)
        self.created.append(spec)
        if self.on_create is not None:
            self.on_create(spec)
        if self.create_error is not None:
            raise self.create_error
        event_id = f"{self.provider.value}-evt-{next(self._ids)}"
        self.events[event_id] = spec
        join_url = None
        if spec.create_conference and self.join_url_base:
            join_url = f"{self.join_url_base}/{event_id}"
        return ExternalEvent(id=event_id, title=spec.title, start=spec.start, end=spec.end, join_url=join_url)

    def update_event(self, access_token: str, external_id: str, spec: EventSpec) -> ExternalEvent:
        self.require(Capability.EVENT_CRUD)
        self.tokens_used.append(access_token)
        self.updated.append(external_id)
        if self.update_error is not None:
            raise self.update_error
        self.events[external_id] = spec
        return ExternalEvent(id=external_id, title=spec.title, start=spec.start, end=spec.end)

    def delete_event(self, access_token: str, external_id: str) -> bool:
        self.require(Capability.EVENT_CRUD)
        self.deleted.append(external_id)
        self.events.pop(external_id, None)
        return self.delete_result

    def list_events(self, access_token, window_start, window_end) -> List[ExternalEvent]:
        self.require(Capability.EVENT_LIST)
        self.list_windows.append((window_start, window_end))
        if self.list_error is not None:
            raise self.list_error
        return list(self.listing)


@pytest.fixture(autouse=True)
def token_encryption_key(monkeypatch):
    """Every test gets its own Fernet key for credential blobs."""
    monkeypatch.setenv("TOKEN_ENCRYPTION_KEY", Fernet.generate_key().decode("utf-8"))


@pytest.fixture
def test_user_id():
    """Test user ID for multi-user testing."""
    return "test-user-123"


@pytest.fixture
def other_user_id():
    return "other-user-456"


@pytest.fixture(scope="function")
def db_session(test_user_id, other_user_id):
    """Create a database session for testing.

    Uses an in-memory SQLite database that is created fresh for each test, with
    two users seeded (foreign keys are enforced).
    """
    from apptsync.database.user_repository import UserRepository
    from apptsync.models.user import User

    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )
    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()

    now = datetime.utcnow()
    users = UserRepository(session)
    for user_id, email in ((test_user_id, "test@example.com"), (other_user_id, "other@example.com")):
        users.create_or_update(User(id=user_id, email=email, name="Test User", created_at=now, updated_at=now))

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def settings():
    return SyncSettings(
        google=OAuthClientConfig(client_id="google-id", client_secret="google-secret", redirect_uri="http://localhost/cb/google"),
        microsoft=OAuthClientConfig(client_id="ms-id", client_secret="ms-secret", redirect_uri="http://localhost/cb/ms"),
        zoom=OAuthClientConfig(client_id="zoom-id", client_secret="zoom-secret", redirect_uri="http://localhost/cb/zoom"),
        app_url="http://app.test",
        sync_lock_timeout_sec=0.5,
    )


@pytest.fixture
def fake_google():
    return FakeAdapter(
        Provider.GOOGLE_CALENDAR,
        capabilities={Capability.AUTH_URL, Capability.TOKEN_EXCHANGE, Capability.EVENT_CRUD, Capability.EVENT_LIST},
    )


@pytest.fixture
def fake_microsoft():
    return FakeAdapter(
        Provider.MICROSOFT_CALENDAR,
        capabilities={Capability.AUTH_URL, Capability.TOKEN_EXCHANGE, Capability.EVENT_CRUD, Capability.EVENT_LIST},
    )


@pytest.fixture
def fake_zoom():
    return FakeAdapter(
        Provider.ZOOM,
        capabilities={Capability.AUTH_URL, Capability.TOKEN_EXCHANGE, Capability.EVENT_CRUD, Capability.CONFERENCING},
        join_url_base="https://zoom.example.test/j",
    )


@pytest.fixture
def fake_meet():
    return FakeAdapter(
        Provider.GOOGLE_MEET,
        integration_provider=Provider.GOOGLE_CALENDAR,
        capabilities={Capability.EVENT_CRUD, Capability.CONFERENCING},
        join_url_base="https://meet.example.test",
    )


@pytest.fixture
def registry(fake_google, fake_microsoft, fake_zoom, fake_meet):
    return AdapterRegistry([fake_google, fake_microsoft, fake_zoom, fake_meet])


@pytest.fixture
def credential_store(db_session: Session, registry, settings):
    return CredentialStore(db_session, registry, settings, locks=KeyedLocks())


@pytest.fixture
def engine(db_session: Session, registry, settings, credential_store):
    return ReconciliationEngine(db_session, registry, settings, credentials=credential_store, locks=KeyedLocks())


@pytest.fixture
def appointment_repository(db_session: Session):
    return AppointmentRepository(db_session)


@pytest.fixture
def connect(credential_store, test_user_id):
    """Store a token set for a provider, fresh for an hour unless overridden."""
    def _connect(provider, *, user_id=None, access_token="access-1", refresh_token="refresh-1", expires_in=3600):
        expires_at = utcnow() + timedelta(seconds=expires_in) if expires_in is not None else None
        token_set = TokenSet(access_token=access_token, refresh_token=refresh_token, expires_at=expires_at)
        return credential_store.save(user_id or test_user_id, provider, token_set)
    return _connect


@pytest.fixture
def make_appointment(appointment_repository, test_user_id, db_session):
    def _make(title="Driving Lesson", start=LESSON_START, end=LESSON_END, *, user_id=None, client=None, **kwargs):
        client_id = None
        if client is not None:
            from apptsync.database.models import ClientDB
            client_row = ClientDB(user_id=user_id or test_user_id, name=client[0], email=client[1])
            db_session.add(client_row)
            db_session.commit()
            client_id = client_row.id
        row = appointment_repository.create(user_id or test_user_id, title, start, end, client_id=client_id, **kwargs)
        return row.id
    return _make


@pytest.fixture
def driving_lesson(make_appointment):
    """Appointment "Driving Lesson", 09:00-10:00 UTC, with a client attendee."""
    return make_appointment(
        "Driving Lesson",
        LESSON_START,
        LESSON_END,
        location="Test Centre",
        notes="Bring provisional licence",
        client=("Sam Learner", "sam@example.com"),
    )


@pytest.fixture
def test_user(test_user_id):
    """Create a test user object."""
    from apptsync.models.user import User
    now = datetime.utcnow()
    return User(
        id=test_user_id,
        email="test@example.com",
        name="Test User",
        created_at=now,
        updated_at=now,
    )


@pytest.fixture
def test_client(db_session: Session, test_user, registry, settings):
    """Create a FastAPI test client with overridden database, registry and authentication."""
    from fastapi.testclient import TestClient
    from apptsync.api.app import app, get_app_settings, get_registry
    from apptsync.database.database import get_db
    from apptsync.auth.dependencies import get_current_user

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close the session here, let the fixture handle it

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: test_user
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_app_settings] = lambda: settings

    # No context manager: the app lifespan (init_db, background pull) stays off in tests.
    client = TestClient(app)
    yield client

    app.dependency_overrides.clear()


def provider_error(status_code: int) -> ProviderError:
    return ProviderError(f"provider returned {status_code}", status_code=status_code)


def refresh_failure(permanent: bool = False) -> RefreshFailed:
    return RefreshFailed("invalid_grant" if permanent else "server error", permanent=permanent)
