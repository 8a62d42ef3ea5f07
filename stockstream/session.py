"""Dashboard session: the composition root.

Builds every long-lived object exactly once and hands out references:
credential store, notification gateway, update bus, connection manager,
and REST client. Nothing in the package is a module-level singleton, so
tests construct a session with fakes injected.

Ordering rules owned here:
    - logout disconnects the push channel before the credential is
      cleared, so no handshake can start with a token that is going away
    - a 401 from any REST call drops the push channel, clears the
      credential, and fires `on_signed_out` (the "go to login" signal)

Usage:
    session = DashboardSession(on_signed_out=show_login_screen)
    await session.login("asha@example.com", "hunter2")
    session.bus.subscribe(ALL, render_cards)
    ...
    await session.logout()
    await session.close()
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable

import httpx

from stockstream.api.client import DashboardApiClient
from stockstream.auth.credentials import CredentialStore
from stockstream.auth.storage import FileStorage, KeyValueStorage
from stockstream.common.config import Settings, get_settings
from stockstream.common.exceptions import ApiError
from stockstream.common.logging import get_logger, set_log_level
from stockstream.models import Credential
from stockstream.notifications.gateway import NotificationGateway
from stockstream.notifications.platform import NotificationPlatform, WebPushPlatform
from stockstream.realtime.bus import UpdateBus
from stockstream.realtime.manager import ConnectionManager
from stockstream.realtime.transport import TransportFactory, WebSocketTransport

logger = get_logger("SYSTEM")

SignedOutHook = Callable[[], Awaitable[None] | None]


class DashboardSession:
    """Owns the real-time client objects for one signed-in dashboard.

    Args:
        settings: Optional Settings override.
        storage: Credential storage (defaults to FileStorage at credential_path).
        platform: Notification platform (defaults to WebPushPlatform).
        transport_factory: Push transport factory (defaults to WebSocketTransport).
        api_transport: Optional httpx transport for the REST client.
        on_signed_out: Called after a 401 forced the session to end.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        storage: KeyValueStorage | None = None,
        platform: NotificationPlatform | None = None,
        transport_factory: TransportFactory | None = None,
        api_transport: httpx.AsyncBaseTransport | None = None,
        on_signed_out: SignedOutHook | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings
        set_log_level(s.log_level)

        self.credentials = CredentialStore(
            storage or FileStorage(s.credential_path),
            encryption_key=s.encryption_key,
            validity_seconds=s.token_validity_hours * 3600,
        )
        self.gateway = NotificationGateway(
            platform or WebPushPlatform(settings=s),
            dedup_window=s.notification_dedup_seconds,
            dismiss_after=s.notification_timeout_seconds,
            currency_symbol=s.currency_symbol,
        )
        self.bus = UpdateBus(gateway=self.gateway)
        self.manager = ConnectionManager(
            credentials=self.credentials,
            bus=self.bus,
            transport_factory=transport_factory or self._websocket_transport,
            gateway=self.gateway,
            handshake_timeout=s.handshake_timeout_seconds,
            max_retries=s.reconnect_attempts,
            retry_delay=s.reconnect_delay_seconds,
        )
        self.api = DashboardApiClient(
            credentials=self.credentials,
            base_url=s.api_base_url,
            on_unauthorized=self._on_unauthorized,
            timeout=s.request_timeout_seconds,
            transport=api_transport,
        )
        self.on_signed_out = on_signed_out
        self.alert_definitions: list[dict] = []

    def _websocket_transport(self) -> WebSocketTransport:
        return WebSocketTransport(
            self.settings.ws_url,
            open_timeout=self.settings.handshake_timeout_seconds,
        )

    @property
    def signed_in(self) -> bool:
        return self.credentials.has_credential() and not self.credentials.is_expired()

    async def login(self, email: str, password: str) -> Credential:
        """Sign in through the REST backend, then start streaming."""
        credential = await self.api.login(email, password)
        await self.start()
        return credential

    async def start(self) -> bool:
        """Start streaming with the stored credential.

        Tracks the default symbols, starts connecting, and fetches the
        user's alert definitions once.

        Returns:
            False if there is no usable credential.
        """
        if not self.signed_in:
            logger.info("No valid stored credential, sign-in required")
            return False

        self.manager.track(self.settings.default_symbols)
        self.manager.connect()

        try:
            self.alert_definitions = await self.api.get_alerts()
        except ApiError as exc:
            logger.warning(
                "Could not load alert definitions",
                extra={"data": {"error": exc.message}},
            )
        return True

    async def logout(self) -> None:
        """Disconnect, then forget the credential and the tick snapshot."""
        await self.manager.disconnect()
        self.credentials.clear()
        self.bus.clear_snapshot()
        self.alert_definitions = []
        logger.info("Signed out")

    async def _on_unauthorized(self) -> None:
        await self.manager.disconnect()
        self.bus.clear_snapshot()
        if self.on_signed_out is None:
            return
        result = self.on_signed_out()
        if inspect.isawaitable(result):
            await result

    async def close(self) -> None:
        """Release sockets, timers, and HTTP connections."""
        await self.manager.aclose()
        await self.bus.drain()
        await self.gateway.aclose()
        await self.api.aclose()
