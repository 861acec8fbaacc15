"""Pytest configuration and shared fixtures.

Tests run against a throwaway SQLite database (aiosqlite driver) created in
the pytest tmp_path, so no external services are needed.

Environment variables:
    TEST_DATABASE_URL: Database URL to use instead of the SQLite file. Point
        it at an empty database; tests create the schema themselves.
"""

import os
from collections.abc import AsyncGenerator

import pytest
from pydantic import SecretStr

from recordgate.core.config import CipherSettings, DatabaseSettings, DisclosureSettings
from recordgate.db import Database
from recordgate.services.cipher import Cipher
from recordgate.services.context import ActorContext, ActorRole
from recordgate.services.disclosure import DisclosureService
from tests.factories import InMemoryRecordsStore, RecordingNotificationSender

TEST_CIPHER_KEY = "0123456789abcdef0123456789abcdef"
TEST_LEGACY_IV = "fedcba9876543210"


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def database_url(tmp_path) -> str:
    """Get the test database URL.

    Defaults to a fresh SQLite file per test.
    """
    return os.environ.get(
        "TEST_DATABASE_URL",
        f"sqlite+aiosqlite:///{tmp_path / 'recordgate_test.db'}",
    )


@pytest.fixture
async def database(database_url: str) -> AsyncGenerator[Database, None]:
    """Create a Database handle with the schema in place."""
    if database_url.startswith("sqlite"):
        pytest.importorskip("aiosqlite")
    db = Database(DatabaseSettings(url=database_url))
    await db.create_schema()
    yield db
    await db.dispose()


@pytest.fixture
async def session(database: Database):
    """Provide a session; uncommitted work is discarded on teardown."""
    async with database.session() as s:
        yield s


# ---------------------------------------------------------------------------
# Cipher fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def cipher_settings() -> CipherSettings:
    """Cipher settings with a v2 write format and a legacy IV for reads."""
    return CipherSettings(
        key=SecretStr(TEST_CIPHER_KEY),
        legacy_iv=SecretStr(TEST_LEGACY_IV),
    )


@pytest.fixture
def cipher(cipher_settings: CipherSettings) -> Cipher:
    """Process-wide cipher instance for tests."""
    return Cipher(cipher_settings)


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------
@pytest.fixture
def admin() -> ActorContext:
    """Records-office administrator."""
    return ActorContext(actor_id="ADM001", actor_role=ActorRole.ADMIN)


@pytest.fixture
def doctor() -> ActorContext:
    """Clinician approving individual records."""
    return ActorContext(actor_id="DOC001", actor_role=ActorRole.DOCTOR)


@pytest.fixture
def insurer() -> ActorContext:
    """User of the requesting company INS001."""
    return ActorContext(actor_id="INSUSER01", actor_role=ActorRole.INSURANCE)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------
@pytest.fixture
def notifier() -> RecordingNotificationSender:
    """Notification sender that keeps every notification in memory."""
    return RecordingNotificationSender()


@pytest.fixture
def records_store() -> InMemoryRecordsStore:
    """Empty in-memory records store."""
    return InMemoryRecordsStore()


@pytest.fixture
def disclosure_settings() -> DisclosureSettings:
    """Workflow defaults used by the service tests."""
    return DisclosureSettings(default_max_access_count=1)


@pytest.fixture
def service(
    session,
    cipher: Cipher,
    records_store: InMemoryRecordsStore,
    notifier: RecordingNotificationSender,
    disclosure_settings: DisclosureSettings,
) -> DisclosureService:
    """DisclosureService bound to the test session."""
    return DisclosureService(
        session,
        cipher=cipher,
        records=records_store,
        notifier=notifier,
        settings=disclosure_settings,
    )
