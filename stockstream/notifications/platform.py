"""Notification delivery platforms.

A platform is the thing that actually puts a banner in front of the
user and owns the permission prompt. The gateway talks only to the
NotificationPlatform interface; WebPushPlatform delivers through the
browser's push service using VAPID (pywebpush).

Permission model (mirrors the browser Notification API):
    default  -> never asked
    granted  -> a push subscription exists
    denied   -> the user refused (or no prompt is available)

Usage:
    from stockstream.notifications.platform import WebPushPlatform

    platform = WebPushPlatform(subscription=stored_subscription)
    await platform.show("Connected", "Stock data connection restored", tag="connection-status")
"""

from __future__ import annotations

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, Literal

from pywebpush import WebPushException, webpush

from stockstream.common.config import Settings, get_settings
from stockstream.common.exceptions import PermissionDenied
from stockstream.common.logging import get_logger

logger = get_logger("NOTIFY")

Permission = Literal["default", "granted", "denied"]

# Returns the browser push subscription once the user accepts, None if refused.
PermissionPrompt = Callable[[], Awaitable[dict | None]]


class NotificationPlatform(ABC):
    """Host for user-visible notifications."""

    @property
    @abstractmethod
    def supported(self) -> bool:
        """Whether this platform can display notifications at all."""

    @property
    @abstractmethod
    def permission(self) -> Permission:
        """Current permission state."""

    @abstractmethod
    async def request_permission(self) -> Permission:
        """Prompt the user and return the resulting permission."""

    @abstractmethod
    async def show(
        self,
        title: str,
        body: str,
        tag: str,
        data: dict | None = None,
        require_interaction: bool = True,
    ) -> Any:
        """Display a notification. Returns a handle accepted by close()."""

    @abstractmethod
    async def close(self, handle: Any) -> None:
        """Dismiss a notification previously returned by show()."""


class WebPushPlatform(NotificationPlatform):
    """Delivers notifications to the dashboard's service worker via web push.

    The service worker displays each payload with `registration.showNotification`
    using the payload `tag`, so a newer notification with the same tag replaces
    the older one. Each payload carries a fresh `id`, and a
    `{"action": "close", "id": ...}` payload dismisses only that notification,
    so a stale timer cannot close the banner that replaced it.

    Args:
        subscription: Stored push subscription ("endpoint", "keys"), or None
            if the user has not been asked yet.
        prompt: Coroutine factory that asks the user and yields a subscription
            or None. Without a prompt, permission requests are refused.
        settings: Optional Settings override (VAPID keys).
    """

    def __init__(
        self,
        subscription: dict | None = None,
        prompt: PermissionPrompt | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.subscription = subscription
        self._prompt = prompt
        self._settings = settings or get_settings()
        self._denied = False

    @property
    def supported(self) -> bool:
        return bool(self._settings.vapid_private_key and self._settings.vapid_email)

    @property
    def permission(self) -> Permission:
        if self.subscription:
            return "granted"
        if self._denied:
            return "denied"
        return "default"

    async def request_permission(self) -> Permission:
        if self.subscription:
            return "granted"
        if self._prompt is None:
            self._denied = True
            return "denied"
        try:
            subscription = await self._prompt()
        except Exception as exc:
            logger.error(
                "Notification permission prompt failed",
                extra={"data": {"error": str(exc)}},
            )
            subscription = None
        if subscription:
            self.subscription = subscription
        else:
            self._denied = True
        return self.permission

    async def show(
        self,
        title: str,
        body: str,
        tag: str,
        data: dict | None = None,
        require_interaction: bool = True,
    ) -> str:
        notification_id = uuid.uuid4().hex
        await self._push(
            {
                "action": "show",
                "id": notification_id,
                "title": title,
                "body": body,
                "tag": tag,
                "icon": "/favicon.ico",
                "badge": "/favicon.ico",
                "requireInteraction": require_interaction,
                "data": data or {},
            }
        )
        return notification_id

    async def close(self, handle: str) -> None:
        await self._push({"action": "close", "id": handle})

    async def _push(self, payload: dict) -> None:
        """Send one web push message.

        Raises:
            WebPushException: If the push service rejects the message.
            PermissionDenied: If there is no subscription to push to.
        """
        if not self.subscription:
            raise PermissionDenied("No push subscription available")
        try:
            await asyncio.to_thread(
                webpush,
                subscription_info=self.subscription,
                data=json.dumps(payload),
                vapid_private_key=self._settings.vapid_private_key,
                vapid_claims={"sub": f"mailto:{self._settings.vapid_email}"},
            )
        except WebPushException as exc:
            logger.error(
                "Push notification failed",
                extra={"data": {"error": str(exc), "tag": payload.get("tag")}},
            )
            raise
