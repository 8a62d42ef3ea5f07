"""Tests for the NotificationGateway permission, dedup window and dismissal."""

from __future__ import annotations

import asyncio

import pytest

from stockstream.models import AlertEvent
from stockstream.notifications.gateway import (
    CONNECTION_STATUS_TAG,
    NotificationGateway,
    connection_status_key,
)
from tests.factories import FakePlatform


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_gateway(platform: FakePlatform, clock: FakeClock, **kwargs) -> NotificationGateway:
    kwargs.setdefault("dismiss_after", 60.0)
    return NotificationGateway(platform, dedup_window=10.0, clock=clock, **kwargs)


def stock_alert(symbol: str = "TCS.NS", kind: str = "buy", target: float | None = 3900.0) -> AlertEvent:
    data = {"symbol": symbol, "alertType": kind}
    if target is not None:
        data["targetPrice"] = target
    return AlertEvent.from_payload(
        {
            "type": "stock_alert",
            "title": "",
            "message": f"{symbol} crossed your {kind} level",
            "data": {"alert": data},
        }
    )


class TestPermission:
    @pytest.mark.asyncio
    async def test_unsupported_platform_never_shows(self, clock):
        """An unsupported platform yields False with no platform calls."""
        platform = FakePlatform(supported=False)
        gw = make_gateway(platform, clock)
        assert await gw.notify("t", "Title", "Body") is False
        assert platform.shown == []
        assert platform.permission_requests == 0
        assert gw.enabled is False

    @pytest.mark.asyncio
    async def test_granted_shows(self, clock):
        """With permission granted, a notification is shown."""
        platform = FakePlatform(permission="granted")
        gw = make_gateway(platform, clock)
        assert await gw.notify("t", "Title", "Body") is True
        assert platform.shown[0]["title"] == "Title"
        assert platform.permission_requests == 0
        await gw.aclose()

    @pytest.mark.asyncio
    async def test_default_requests_once(self, clock):
        """From 'default', the first notify requests permission exactly once."""
        platform = FakePlatform(permission="default", grant_on_request=True)
        gw = make_gateway(platform, clock)
        assert await gw.notify("a", "A", "a") is True
        assert await gw.notify("b", "B", "b") is True
        assert platform.permission_requests == 1
        assert gw.permission == "granted"
        await gw.aclose()

    @pytest.mark.asyncio
    async def test_refused_permission_is_final(self, clock):
        """A refused request is never repeated and notify stays a no-op."""
        platform = FakePlatform(permission="default", grant_on_request=False)
        gw = make_gateway(platform, clock)
        assert await gw.notify("a", "A", "a") is False
        assert await gw.notify("b", "B", "b") is False
        assert await gw.request_permission() is False
        assert platform.permission_requests == 1
        assert platform.shown == []

    @pytest.mark.asyncio
    async def test_denied_never_requests(self, clock):
        """An already-denied platform is not prompted."""
        platform = FakePlatform(permission="denied")
        gw = make_gateway(platform, clock)
        assert await gw.notify("a", "A", "a") is False
        assert platform.permission_requests == 0

    @pytest.mark.asyncio
    async def test_first_interaction_requests_permission(self, clock):
        """Only the first user interaction triggers the prompt."""
        platform = FakePlatform(permission="default")
        gw = make_gateway(platform, clock)
        await gw.on_user_interaction()
        await gw.on_user_interaction()
        assert platform.permission_requests == 1
        assert gw.enabled is True

    @pytest.mark.asyncio
    async def test_concurrent_requests_prompt_once(self, clock):
        """Parallel permission requests share one prompt."""
        platform = FakePlatform(permission="default")
        gw = make_gateway(platform, clock)
        results = await asyncio.gather(gw.request_permission(), gw.request_permission())
        assert results == [True, True]
        assert platform.permission_requests == 1


class TestDedup:
    @pytest.mark.asyncio
    async def test_same_key_within_window_suppressed(self, clock):
        """A repeated key inside the window is dropped."""
        platform = FakePlatform()
        gw = make_gateway(platform, clock)
        assert await gw.notify("t", "A", "a") is True
        clock.advance(9.9)
        assert await gw.notify("t", "A", "a") is False
        assert len(platform.shown) == 1
        assert gw.is_suppressed("t") is True
        await gw.aclose()

    @pytest.mark.asyncio
    async def test_same_key_after_window_shows(self, clock):
        """Once the window has elapsed, the key shows again."""
        platform = FakePlatform()
        gw = make_gateway(platform, clock)
        await gw.notify("t", "A", "a")
        clock.advance(10.0)
        assert gw.is_suppressed("t") is False
        assert await gw.notify("t", "A", "a") is True
        assert len(platform.shown) == 2
        await gw.aclose()

    @pytest.mark.asyncio
    async def test_custom_window(self, clock):
        """A per-call window overrides the default."""
        platform = FakePlatform()
        gw = make_gateway(platform, clock)
        await gw.notify("t", "A", "a", window=2.0)
        clock.advance(2.5)
        assert await gw.notify("t", "A", "a") is True
        await gw.aclose()

    @pytest.mark.asyncio
    async def test_forget_releases_key(self, clock):
        """forget() lets the next call through immediately."""
        platform = FakePlatform()
        gw = make_gateway(platform, clock)
        await gw.notify("t", "A", "a")
        gw.forget("t")
        assert await gw.notify("t", "A", "a") is True
        await gw.aclose()

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_show_once(self, clock):
        """Two simultaneous notifies for one key produce one banner."""
        platform = FakePlatform()
        gw = make_gateway(platform, clock)
        results = await asyncio.gather(gw.notify("t", "A", "a"), gw.notify("t", "A", "a"))
        assert sorted(results) == [False, True]
        assert len(platform.shown) == 1
        await gw.aclose()

    @pytest.mark.asyncio
    async def test_platform_failure_not_recorded(self, clock):
        """A failed show neither raises nor suppresses the retry."""
        platform = FakePlatform(fail_show=True)
        gw = make_gateway(platform, clock)
        assert await gw.notify("t", "A", "a") is False
        platform.fail_show = False
        assert await gw.notify("t", "A", "a") is True
        await gw.aclose()


class TestAlerts:
    @pytest.mark.asyncio
    async def test_stock_alert_format(self, clock):
        """Stock alerts get a per-symbol tag, a fallback title, and the target price."""
        platform = FakePlatform()
        gw = make_gateway(platform, clock)
        assert await gw.notify_alert(stock_alert()) is True
        shown = platform.shown[0]
        assert shown["tag"] == "stock-alert-TCS.NS-buy"
        assert shown["title"] == "BUY Alert: TCS.NS"
        assert "Target Price: ₹3,900.00" in shown["body"]
        assert shown["require_interaction"] is True
        await gw.aclose()

    @pytest.mark.asyncio
    async def test_target_price_uses_currency_symbol(self, clock):
        """The target price is rendered with the configured currency and grouping."""
        platform = FakePlatform()
        gw = make_gateway(platform, clock, currency_symbol="$")
        await gw.notify_alert(stock_alert(target=123456.789))
        assert platform.shown[0]["body"].endswith("Target Price: $123,456.79")
        await gw.aclose()

    @pytest.mark.asyncio
    async def test_replayed_alert_suppressed(self, clock):
        """The same alert delivered twice in the window shows once."""
        platform = FakePlatform()
        gw = make_gateway(platform, clock)
        await gw.notify_alert(stock_alert())
        assert await gw.notify_alert(stock_alert()) is False
        assert len(platform.shown) == 1
        await gw.aclose()

    @pytest.mark.asyncio
    async def test_different_symbols_both_show(self, clock):
        """Alerts for different symbols are independent."""
        platform = FakePlatform()
        gw = make_gateway(platform, clock)
        await gw.notify_alert(stock_alert("TCS.NS"))
        await gw.notify_alert(stock_alert("INFY.NS"))
        assert len(platform.shown) == 2
        await gw.aclose()

    @pytest.mark.asyncio
    async def test_generic_alert(self, clock):
        """Generic alerts use the server title."""
        platform = FakePlatform()
        gw = make_gateway(platform, clock)
        event = AlertEvent.from_payload({"type": "generic", "title": "Market closed", "message": "See you tomorrow"})
        await gw.notify_alert(event)
        assert platform.shown[0]["tag"] == "generic-Market closed"
        assert platform.shown[0]["body"] == "See you tomorrow"
        await gw.aclose()


class TestConnectionStatus:
    @pytest.mark.asyncio
    async def test_status_uses_reserved_tag(self, clock):
        """Connection banners share one tag and do not require interaction."""
        platform = FakePlatform()
        gw = make_gateway(platform, clock)
        await gw.notify_connection_status(False)
        await gw.notify_connection_status(True)
        assert [n["tag"] for n in platform.shown] == [CONNECTION_STATUS_TAG] * 2
        assert [n["title"] for n in platform.shown] == ["Disconnected", "Connected"]
        assert platform.shown[0]["require_interaction"] is False
        await gw.aclose()

    @pytest.mark.asyncio
    async def test_flapping_collapses(self, clock):
        """Repeated drops inside the window produce one disconnected banner."""
        platform = FakePlatform()
        gw = make_gateway(platform, clock)
        for _ in range(3):
            await gw.notify_connection_status(False)
        assert len(platform.shown) == 1
        assert gw.is_suppressed(connection_status_key(False))
        await gw.aclose()


class TestDismissal:
    @pytest.mark.asyncio
    async def test_auto_dismiss(self, clock):
        """Shown notifications are closed after dismiss_after seconds."""
        platform = FakePlatform()
        gw = make_gateway(platform, clock, dismiss_after=0.01)
        await gw.notify("t", "A", "a")
        await asyncio.sleep(0.05)
        assert platform.closed == [1]

    @pytest.mark.asyncio
    async def test_aclose_cancels_dismissal(self, clock):
        """aclose() cancels pending dismiss timers."""
        platform = FakePlatform()
        gw = make_gateway(platform, clock, dismiss_after=60.0)
        await gw.notify("t", "A", "a")
        await gw.aclose()
        assert platform.closed == []

    @pytest.mark.asyncio
    async def test_replaced_banner_keeps_its_own_timer(self, clock):
        """A newer banner under the same tag is not closed by the older banner's timer."""
        platform = FakePlatform()
        gw = make_gateway(platform, clock, dismiss_after=0.2)
        await gw.notify_connection_status(False)
        await asyncio.sleep(0.15)
        await gw.notify_connection_status(True)

        await asyncio.sleep(0.1)
        assert platform.closed == []

        await asyncio.sleep(0.2)
        assert platform.closed == [2]
        await gw.aclose()

    @pytest.mark.asyncio
    async def test_other_tags_dismiss_independently(self, clock):
        """Replacing one tag leaves other tags' timers alone."""
        platform = FakePlatform()
        gw = make_gateway(platform, clock, dismiss_after=0.05)
        await gw.notify("a", "A", "a")
        await gw.notify("b", "B", "b")
        await asyncio.sleep(0.15)
        assert sorted(platform.closed) == [1, 2]
