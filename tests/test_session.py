"""Tests for DashboardSession login, logout ordering and 401 sign-out."""

from __future__ import annotations

import httpx
import pytest
import pytest_asyncio

from stockstream.auth.storage import MemoryStorage
from stockstream.common.config import Settings
from stockstream.common.exceptions import ApiAuthError
from stockstream.realtime.bus import CONNECTION_STATE
from stockstream.realtime.states import ConnectionState
from stockstream.session import DashboardSession
from tests.factories import FakePlatform, FakeTransport, TransportFactory, make_token

S = ConnectionState

ALERTS = [{"_id": "a1", "symbol": "TCS.NS", "alertType": "buy", "targetPrice": 3900}]


def backend(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/api/auth/login":
        return httpx.Response(200, json={"token": make_token(), "user": {"_id": "u1", "username": "asha"}})
    if path == "/api/alerts":
        return httpx.Response(200, json={"data": ALERTS})
    if path == "/api/favorites":
        return httpx.Response(401, json={"error": "Token expired"})
    return httpx.Response(404, json={"error": "Not found"})


@pytest.fixture
def session_settings(test_settings: Settings) -> Settings:
    return test_settings.model_copy(
        update={"handshake_timeout_seconds": 1.0, "reconnect_delay_seconds": 0.01}
    )


@pytest_asyncio.fixture
async def session(session_settings: Settings):
    signed_out = []
    factory = TransportFactory(
        lambda index: FakeTransport(script=[("auth_success", {"user": {"username": "asha"}})])
    )
    s = DashboardSession(
        settings=session_settings,
        storage=MemoryStorage(),
        platform=FakePlatform(),
        transport_factory=factory,
        api_transport=httpx.MockTransport(backend),
        on_signed_out=lambda: signed_out.append(True),
    )
    s.factory = factory
    s.signed_out = signed_out
    yield s
    await s.close()


class TestStart:
    @pytest.mark.asyncio
    async def test_start_without_credential(self, session: DashboardSession):
        """Nothing connects until the user signs in."""
        assert await session.start() is False
        assert session.manager.state == S.DISCONNECTED
        assert session.factory.calls == 0

    @pytest.mark.asyncio
    async def test_login_connects_and_tracks_defaults(self, session: DashboardSession):
        """login() stores the credential, connects, and loads alert definitions."""
        credential = await session.login("asha@example.com", "hunter2")
        await session.manager.wait_for_state(S.CONNECTED, timeout=1)

        assert session.signed_in
        assert credential.user.username == "asha"
        assert session.manager.tracked_symbols == session.settings.default_symbols
        assert session.alert_definitions == ALERTS
        assert session.factory.last.sent[0] == ("auth", {"token": credential.token})


class TestSignOut:
    @pytest.mark.asyncio
    async def test_logout_disconnects_before_clearing(self, session: DashboardSession):
        """The push channel is down before the credential disappears."""
        await session.login("asha@example.com", "hunter2")
        await session.manager.wait_for_state(S.CONNECTED, timeout=1)

        seen = []
        session.bus.subscribe(
            CONNECTION_STATE,
            lambda change: seen.append((change.state, session.credentials.has_credential())),
        )
        await session.logout()

        assert seen == [(S.DISCONNECTED, True)]
        assert session.credentials.get_credential() is None
        assert session.bus.get_snapshot() == {}
        assert session.factory.last.closed is True

    @pytest.mark.asyncio
    async def test_401_signs_out(self, session: DashboardSession):
        """A 401 from any call drops the connection, clears the credential, and signals sign-out."""
        await session.login("asha@example.com", "hunter2")
        await session.manager.wait_for_state(S.CONNECTED, timeout=1)

        with pytest.raises(ApiAuthError):
            await session.api.get_favorites()

        assert session.manager.state == S.DISCONNECTED
        assert session.credentials.get_credential() is None
        assert session.signed_out == [True]
        assert session.signed_in is False
