"""User-visible notification gateway.

Bridges alert events and connection-status changes to the notification
platform while respecting the user's permission and suppressing
duplicates.

Permission:
    Starts from the platform's state. The first user interaction triggers
    a single permission request if the state is still "default". Every
    gateway requests permission at most once; "denied" is final.

Dedup:
    Each call has a dedup key (the tag unless the call site picks one).
    A key shown less than `window` seconds ago is suppressed. Alerts key
    on tag + exact content so a repeated alert with new content still
    shows, while a replay of the same alert inside the window does not.
    Connection status uses one platform tag ("connection-status") with a
    per-status key, so flapping collapses into one banner that always
    shows the latest status.

Usage:
    gateway = NotificationGateway(WebPushPlatform(subscription))
    await gateway.notify("price-alert-TCS.NS", "Price Alert: TCS.NS", "Target reached")
    await gateway.notify_connection_status(connected=False)
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from stockstream.common.logging import get_logger
from stockstream.common.metrics import NOTIFICATIONS_TOTAL
from stockstream.models import AlertEvent
from stockstream.notifications.platform import NotificationPlatform, Permission
from stockstream.pricing import format_price

logger = get_logger("NOTIFY")

CONNECTION_STATUS_TAG = "connection-status"
DEFAULT_DEDUP_WINDOW = 10.0
DEFAULT_DISMISS_AFTER = 10.0


@dataclass
class NotificationRecord:
    """Last time a dedup key produced a visible notification."""

    key: str
    tag: str
    shown_at: float
    window: float

    def is_fresh(self, now: float) -> bool:
        return now - self.shown_at < self.window


def connection_status_key(connected: bool) -> str:
    return f"{CONNECTION_STATUS_TAG}:{'connected' if connected else 'disconnected'}"


class NotificationGateway:
    """Permission-aware, de-duplicating front door to a NotificationPlatform.

    Args:
        platform: Delivery platform.
        dedup_window: Default seconds during which a repeated key is dropped.
        dismiss_after: Seconds before a shown notification is closed.
        currency_symbol: Prefix for prices in alert bodies.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        platform: NotificationPlatform,
        dedup_window: float = DEFAULT_DEDUP_WINDOW,
        dismiss_after: float = DEFAULT_DISMISS_AFTER,
        currency_symbol: str = "₹",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.platform = platform
        self.dedup_window = dedup_window
        self.dismiss_after = dismiss_after
        self.currency_symbol = currency_symbol
        self._clock = clock
        self._permission: Permission = platform.permission if platform.supported else "default"
        self._permission_requested = False
        self._permission_lock = asyncio.Lock()
        self._interaction_seen = False
        self._records: dict[str, NotificationRecord] = {}
        self._dismiss_tasks: set[asyncio.Task] = set()
        self._dismiss_by_tag: dict[str, asyncio.Task] = {}

    # ─── Permission ───

    @property
    def permission(self) -> Permission:
        return self._permission

    @property
    def supported(self) -> bool:
        return self.platform.supported

    @property
    def enabled(self) -> bool:
        return self.supported and self._permission == "granted"

    async def on_user_interaction(self) -> None:
        """Hook for the first click anywhere in the UI.

        Requests permission once if it has never been decided. Later
        interactions are ignored.
        """
        if self._interaction_seen:
            return
        self._interaction_seen = True
        if self.supported and self._permission == "default":
            await self.request_permission()

    async def request_permission(self) -> bool:
        """Ask the platform for permission, at most once per gateway.

        Returns:
            True if permission is granted.
        """
        if not self.supported:
            return False
        async with self._permission_lock:
            if self._permission == "granted":
                return True
            if self._permission_requested or self._permission == "denied":
                return False
            self._permission_requested = True
            try:
                self._permission = await self.platform.request_permission()
            except Exception as exc:
                logger.error(
                    "Error requesting notification permission",
                    extra={"data": {"error": str(exc)}},
                )
                self._permission = "denied"

        logger.info(
            "Notification permission decided",
            extra={"data": {"permission": self._permission}},
        )
        return self._permission == "granted"

    # ─── Dedup ───

    def _evict(self, now: float) -> None:
        stale = [key for key, record in self._records.items() if not record.is_fresh(now)]
        for key in stale:
            del self._records[key]

    def forget(self, key: str) -> None:
        """Drop the dedup record for `key` so the next call shows immediately."""
        self._records.pop(key, None)

    def is_suppressed(self, key: str) -> bool:
        record = self._records.get(key)
        return record is not None and record.is_fresh(self._clock())

    # ─── Notify ───

    async def notify(
        self,
        tag: str,
        title: str,
        body: str,
        *,
        dedup_key: str | None = None,
        window: float | None = None,
        data: dict | None = None,
        require_interaction: bool = True,
    ) -> bool:
        """Show a notification unless unsupported, refused, or a duplicate.

        Args:
            tag: Platform tag; a newer notification with the same tag
                replaces the older one.
            title: Notification title.
            body: Notification body.
            dedup_key: Key for duplicate suppression (defaults to tag).
            window: Dedup window in seconds (defaults to dedup_window).
            data: Optional payload passed through to the platform.
            require_interaction: Keep the banner until the user acts on it.

        Returns:
            True if a platform notification was created.
        """
        if not self.supported:
            NOTIFICATIONS_TOTAL.labels(outcome="unsupported").inc()
            return False

        if self._permission != "granted":
            granted = await self.request_permission()
            if not granted:
                logger.debug(
                    "Notification skipped: permission not granted",
                    extra={"data": {"tag": tag, "permission": self._permission}},
                )
                NOTIFICATIONS_TOTAL.labels(outcome="denied").inc()
                return False

        key = dedup_key or tag
        now = self._clock()
        self._evict(now)
        if key in self._records:
            logger.debug(
                "Duplicate notification suppressed",
                extra={"data": {"tag": tag, "dedup_key": key}},
            )
            NOTIFICATIONS_TOTAL.labels(outcome="duplicate").inc()
            return False

        # Record before awaiting the platform so a concurrent duplicate is dropped
        self._records[key] = NotificationRecord(
            key=key,
            tag=tag,
            shown_at=now,
            window=self.dedup_window if window is None else window,
        )

        try:
            handle = await self.platform.show(
                title,
                body,
                tag=tag,
                data=data,
                require_interaction=require_interaction,
            )
        except Exception as exc:
            self._records.pop(key, None)
            logger.error(
                "Error showing notification",
                extra={"data": {"error": str(exc), "tag": tag}},
            )
            NOTIFICATIONS_TOTAL.labels(outcome="failed").inc()
            return False

        self._schedule_dismiss(tag, handle)
        NOTIFICATIONS_TOTAL.labels(outcome="shown").inc()
        logger.info(
            "Notification shown",
            extra={"data": {"tag": tag, "title": title}},
        )
        return True

    async def notify_alert(self, event: AlertEvent) -> bool:
        """Show a server-pushed alert."""
        if event.type == "stock_alert":
            symbol = event.symbol or "UNKNOWN"
            tag = f"stock-alert-{symbol}-{event.kind}"
            title = event.title or f"{event.kind.upper()} Alert: {symbol}"
            body = event.message
            target = _target_price(event.data)
            if target is not None:
                body = f"{body}\nTarget Price: {format_price(target, self.currency_symbol)}".lstrip()
        elif event.type == "connection_status":
            tag = CONNECTION_STATUS_TAG
            title = event.title
            body = event.message
        else:
            tag = f"generic-{event.title}"
            title = event.title
            body = event.message

        return await self.notify(
            tag,
            title,
            body,
            dedup_key=f"{tag}|{title}|{body}",
            data={"alert": event.model_dump()},
        )

    async def notify_connection_status(self, connected: bool) -> bool:
        """Show the connected/disconnected banner under the reserved tag."""
        if connected:
            title, body = "Connected", "Stock data connection restored"
        else:
            title, body = "Disconnected", "Lost connection to stock server"
        return await self.notify(
            CONNECTION_STATUS_TAG,
            title,
            body,
            dedup_key=connection_status_key(connected),
            require_interaction=False,
        )

    # ─── Dismissal ───

    def _schedule_dismiss(self, tag: str, handle: Any) -> None:
        # The new notification replaced the old one under this tag
        previous = self._dismiss_by_tag.pop(tag, None)
        if previous is not None and not previous.done():
            previous.cancel()

        task = asyncio.create_task(self._dismiss_later(handle))
        self._dismiss_tasks.add(task)
        self._dismiss_by_tag[tag] = task

        def _done(finished: asyncio.Task) -> None:
            self._dismiss_tasks.discard(finished)
            if self._dismiss_by_tag.get(tag) is finished:
                del self._dismiss_by_tag[tag]

        task.add_done_callback(_done)

    async def _dismiss_later(self, handle: Any) -> None:
        await asyncio.sleep(self.dismiss_after)
        try:
            await self.platform.close(handle)
        except Exception as exc:
            logger.warning(
                "Failed to dismiss notification",
                extra={"data": {"error": str(exc)}},
            )

    async def aclose(self) -> None:
        """Cancel pending auto-dismiss timers."""
        tasks = list(self._dismiss_tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._dismiss_tasks.clear()
        self._dismiss_by_tag.clear()


def _target_price(data: dict) -> float | None:
    alert = data.get("alert") if isinstance(data.get("alert"), dict) else data
    value = alert.get("targetPrice")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)
