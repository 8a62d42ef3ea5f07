"""Root test configuration with shared fixtures for all test modules.

IMPORTANT: Environment variables are set BEFORE any stockstream imports
so that config.py can load Settings without a .env file.
"""

from __future__ import annotations

import os

# Set required env vars before importing anything from stockstream
from cryptography.fernet import Fernet

_TEST_FERNET_KEY = Fernet.generate_key().decode()
os.environ.setdefault("ENCRYPTION_KEY", _TEST_FERNET_KEY)
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("API_BASE_URL", "http://dashboard.test")
os.environ.setdefault("WS_URL", "ws://dashboard.test/ws")

# Now safe to import stockstream modules
import pytest
import pytest_asyncio

from stockstream.auth.credentials import CredentialStore
from stockstream.auth.storage import MemoryStorage
from stockstream.common.config import Settings, get_settings
from stockstream.notifications.gateway import NotificationGateway
from stockstream.realtime.bus import UpdateBus
from tests.factories import FakePlatform, make_token

# ─── Clear cached settings so test env vars are used ───
get_settings.cache_clear()


@pytest.fixture
def test_settings() -> Settings:
    """Return the test Settings instance."""
    return get_settings()


# ─── Credentials ───


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def credentials(storage: MemoryStorage) -> CredentialStore:
    """An empty credential store over in-memory storage."""
    return CredentialStore(storage)


@pytest.fixture
def signed_in(credentials: CredentialStore) -> CredentialStore:
    """A credential store holding a valid, unexpired token."""
    credentials.set_credential(make_token(), {"_id": "u1", "username": "asha"})
    return credentials


# ─── Notifications and Bus ───


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest_asyncio.fixture
async def gateway(platform: FakePlatform):
    """Gateway over the fake platform; pending auto-dismiss timers are cancelled after the test."""
    gw = NotificationGateway(platform, dedup_window=10.0, dismiss_after=60.0)
    yield gw
    await gw.aclose()


@pytest.fixture
def bus(gateway: NotificationGateway) -> UpdateBus:
    return UpdateBus(gateway=gateway)
