"""REST client for the dashboard backend.

Thin async wrapper over the auth, favorites, positions, and alerts
endpoints. Every request carries the current bearer credential, and
any 401 from any endpoint is treated as "credential invalid": the
`on_unauthorized` hook runs (the session uses it to drop the push
connection and return to the sign-in screen), the credential store is
cleared, and ApiAuthError is raised.

Usage:
    from stockstream.api.client import DashboardApiClient

    api = DashboardApiClient(credentials=store, on_unauthorized=show_login)
    await api.login("asha@example.com", "hunter2")
    favorites = await api.get_favorites()
    await api.aclose()
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable

import httpx

from stockstream.auth.credentials import CredentialStore
from stockstream.common.config import get_settings
from stockstream.common.exceptions import ApiAuthError, ApiConnectionError, ApiError
from stockstream.common.logging import get_logger
from stockstream.common.metrics import API_REQUESTS_TOTAL
from stockstream.models import Credential, Position, UserRef

logger = get_logger("API")

UnauthorizedHook = Callable[[], Awaitable[None] | None]

# ─── Endpoint Paths ───

LOGIN_PATH = "/api/auth/login"
REGISTER_PATH = "/api/auth/register"
CHECK_PATH = "/api/auth/check"
FAVORITES_PATH = "/api/favorites"
FAVORITES_ADD_PATH = "/api/favorites/add"
POSITIONS_PATH = "/api/positions"
POSITIONS_SUMMARY_PATH = "/api/positions/summary"
ALERTS_PATH = "/api/alerts"


class DashboardApiClient:
    """Async REST client with bearer auth and 401 handling.

    Args:
        credentials: Store that supplies (and on 401 loses) the bearer token.
        base_url: Backend base URL; defaults to Settings.api_base_url.
        on_unauthorized: Sync or async callable invoked after a 401.
        timeout: Request timeout in seconds; defaults to Settings.request_timeout_seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        credentials: CredentialStore,
        base_url: str | None = None,
        on_unauthorized: UnauthorizedHook | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self.credentials = credentials
        self.base_url = base_url or settings.api_base_url
        self.on_unauthorized = on_unauthorized
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.request_timeout_seconds,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    # ─── Core Request Method ───

    async def _request(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        json_data: dict | None = None,
    ) -> dict:
        """Make an authenticated request to the dashboard backend.

        Returns:
            Parsed JSON response body ({} for empty bodies).

        Raises:
            ApiAuthError: 401 response (credential cleared, hook invoked).
            ApiError: Any other non-2xx response.
            ApiConnectionError: Network failure or timeout.
        """
        headers = {}
        token = self.credentials.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self.client.request(
                method,
                path,
                headers=headers,
                params=params,
                json=json_data,
            )
        except httpx.RequestError as exc:
            raise ApiConnectionError(
                f"Network error: {exc}",
                context={"path": path, "method": method},
            ) from exc

        API_REQUESTS_TOTAL.labels(method=method, status_code=str(response.status_code)).inc()

        if response.status_code == 401:
            logger.warning(
                "Credential rejected by backend, clearing session",
                extra={"data": {"path": path}},
            )
            await self._fire_unauthorized()
            self.credentials.clear()
            raise ApiAuthError(
                "Authentication failed",
                context={"path": path, "status": 401},
            )

        if response.status_code >= 400:
            try:
                body = response.json()
                error_msg = body.get("error") or body.get("message") or f"API error {response.status_code}"
            except Exception:
                error_msg = f"API error {response.status_code}"
            raise ApiError(
                error_msg,
                context={"path": path, "status": response.status_code},
            )

        if not response.content:
            return {}
        return response.json()

    async def _fire_unauthorized(self) -> None:
        if self.on_unauthorized is None:
            return
        try:
            result = self.on_unauthorized()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error(
                "on_unauthorized hook failed",
                extra={"data": {"error": str(exc)}},
            )

    # ─── Auth ───

    async def login(self, email: str, password: str) -> Credential:
        """Sign in and persist the issued credential.

        Returns:
            The stored Credential.
        """
        data = await self._request(
            "POST", LOGIN_PATH, json_data={"email": email, "password": password}
        )
        token = data.get("token")
        if not isinstance(token, str) or not token:
            raise ApiError("Login response did not include a token", context={"path": LOGIN_PATH})
        user = UserRef.model_validate(data.get("user") or {})
        self.credentials.set_credential(token, user)
        logger.info("Signed in", extra={"data": {"username": user.username}})
        return Credential(token=token, user=user)

    async def register(self, name: str, email: str, password: str) -> dict:
        """Create an account. The caller signs in separately afterwards."""
        return await self._request(
            "POST",
            REGISTER_PATH,
            json_data={"name": name, "email": email, "password": password},
        )

    async def check_auth(self) -> dict:
        return await self._request("GET", CHECK_PATH)

    # ─── Favorites ───

    async def get_favorites(self) -> list[str]:
        data = await self._request("GET", FAVORITES_PATH)
        return list(data.get("favorites") or [])

    async def add_favorite(self, symbol: str) -> dict:
        return await self._request("POST", FAVORITES_ADD_PATH, json_data={"symbol": symbol})

    async def remove_favorite(self, symbol: str) -> dict:
        return await self._request("DELETE", f"{FAVORITES_PATH}/remove/{symbol}")

    # ─── Positions ───

    async def get_positions(self) -> list[Position]:
        data = await self._request("GET", POSITIONS_PATH)
        return [Position.model_validate(p) for p in data.get("data") or []]

    async def get_position(self, symbol: str) -> Position | None:
        data = await self._request("GET", f"{POSITIONS_PATH}/{symbol}")
        raw = data.get("data")
        return Position.model_validate(raw) if raw else None

    async def save_position(self, symbol: str, quantity: float, purchase_price: float) -> Position:
        data = await self._request(
            "POST",
            POSITIONS_PATH,
            json_data={
                "symbol": symbol,
                "quantity": quantity,
                "purchasePrice": purchase_price,
            },
        )
        return Position.model_validate(data.get("data") or {})

    async def delete_position(self, symbol: str) -> dict:
        return await self._request("DELETE", f"{POSITIONS_PATH}/{symbol}")

    async def get_positions_summary(self) -> dict:
        return await self._request("GET", POSITIONS_SUMMARY_PATH)

    # ─── Alerts ───

    async def get_alerts(self, symbol: str | None = None) -> list[dict]:
        """Fetch alert definitions, optionally only those for one symbol."""
        path = f"{ALERTS_PATH}/stock/{symbol}" if symbol else ALERTS_PATH
        data = await self._request("GET", path)
        return list(data.get("data") or [])

    async def create_alert(
        self,
        symbol: str,
        alert_type: str,
        target_price: float,
        percentage_change: float | None = None,
    ) -> dict:
        data = await self._request(
            "POST",
            ALERTS_PATH,
            json_data={
                "symbol": symbol,
                "alertType": alert_type,
                "targetPrice": target_price,
                "percentageChange": percentage_change,
            },
        )
        return data.get("data") or {}

    async def update_alert(self, alert_id: str, changes: dict) -> dict:
        data = await self._request("PUT", f"{ALERTS_PATH}/{alert_id}", json_data=changes)
        return data.get("data") or {}

    async def delete_alert(self, alert_id: str) -> dict:
        return await self._request("DELETE", f"{ALERTS_PATH}/{alert_id}")

    async def aclose(self) -> None:
        await self.client.aclose()
