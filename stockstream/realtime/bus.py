"""In-memory fan-out hub between the connection and its consumers.

One producer (the ConnectionManager) publishes tick batches, alert
events, and connection-state changes; any number of UI consumers
subscribe by symbol, to everything, to alerts, or to state changes.

Delivery is synchronous: `publish_*` returns after every matching
callback has run once. A publish issued from inside a callback is
queued and delivered after the current dispatch completes, so callbacks
never re-enter one another. A callback that raises is logged and does
not affect the others.

Usage:
    bus = UpdateBus(gateway=gateway)
    sub = bus.subscribe("TCS.NS", render_tcs_card)
    bus.publish_ticks([Tick(symbol="TCS.NS", price=3875.5)])
    snapshot = bus.get_snapshot()
    sub.unsubscribe()
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from typing import Any

from stockstream.common.logging import get_logger
from stockstream.common.metrics import SNAPSHOT_SYMBOLS, TICK_BATCHES_TOTAL
from stockstream.models import AlertEvent, Tick
from stockstream.notifications.gateway import NotificationGateway
from stockstream.realtime.states import StateChange

logger = get_logger("BUS")

ALL = "*"
ALERT_EVENTS = "alertEvents"
CONNECTION_STATE = "connectionState"

Callback = Callable[[Any], None]


class Subscription:
    """Handle returned by UpdateBus.subscribe()."""

    def __init__(self, bus: UpdateBus, topic: str, callback: Callback) -> None:
        self.topic = topic
        self.callback = callback
        self._bus = bus
        self.active = True

    def unsubscribe(self) -> None:
        """Stop delivery to this callback. Safe to call more than once."""
        if self.active:
            self.active = False
            self._bus._remove(self)

    def __call__(self) -> None:
        self.unsubscribe()


class UpdateBus:
    """Single-producer, many-consumer hub with a per-symbol snapshot.

    Args:
        gateway: Optional notification gateway that receives every
            published alert event.
    """

    def __init__(self, gateway: NotificationGateway | None = None) -> None:
        self.gateway = gateway
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._snapshot: dict[str, Tick] = {}
        self._pending: deque[Callable[[], None]] = deque()
        self._dispatching = False
        self._tasks: set[asyncio.Task] = set()

    # ─── Subscriptions ───

    def subscribe(self, topic: str, callback: Callback) -> Subscription:
        """Register `callback` for a symbol, ALL, ALERT_EVENTS, or CONNECTION_STATE.

        Returns:
            A Subscription whose unsubscribe() releases the callback.
        """
        sub = Subscription(self, topic, callback)
        self._subscriptions.setdefault(topic, []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscriptions.get(sub.topic)
        if not subs:
            return
        if sub in subs:
            subs.remove(sub)
        if not subs:
            del self._subscriptions[sub.topic]

    def subscriber_count(self, topic: str | None = None) -> int:
        if topic is not None:
            return len(self._subscriptions.get(topic, []))
        return sum(len(subs) for subs in self._subscriptions.values())

    # ─── Publishing ───

    def publish_ticks(self, batch: list[Tick]) -> None:
        """Update the snapshot from `batch`, then deliver the batch.

        Each subscriber to ALL, or to a symbol present in the batch, is
        called once with the full batch. Symbols absent from the batch keep
        their previous snapshot value.
        """
        self._enqueue(lambda: self._deliver_ticks(list(batch)))

    def publish_alert(self, event: AlertEvent) -> None:
        """Forward an alert to the notification gateway and ALERT_EVENTS subscribers."""
        self._enqueue(lambda: self._deliver_alert(event))

    def publish_state(self, change: StateChange) -> None:
        """Deliver a connection-state change to CONNECTION_STATE subscribers."""
        self._enqueue(lambda: self._deliver(self._matching([CONNECTION_STATE]), change))

    def get_snapshot(self) -> dict[str, Tick]:
        """Latest known tick per symbol (a copy)."""
        return dict(self._snapshot)

    def clear_snapshot(self) -> None:
        self._snapshot.clear()
        SNAPSHOT_SYMBOLS.set(0)

    async def drain(self) -> None:
        """Wait for alert forwards to the gateway that are still in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ─── Internal ───

    def _enqueue(self, job: Callable[[], None]) -> None:
        self._pending.append(job)
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._pending:
                self._pending.popleft()()
        finally:
            self._dispatching = False

    def _matching(self, topics: list[str]) -> list[Subscription]:
        seen: set[int] = set()
        matched: list[Subscription] = []
        for topic in topics:
            for sub in self._subscriptions.get(topic, []):
                if id(sub) not in seen:
                    seen.add(id(sub))
                    matched.append(sub)
        return matched

    def _deliver(self, subs: list[Subscription], payload: Any) -> None:
        for sub in subs:
            if not sub.active:
                continue
            try:
                sub.callback(payload)
            except Exception as exc:
                logger.error(
                    "Subscriber callback failed",
                    extra={"data": {"topic": sub.topic, "error": str(exc)}},
                )

    def _deliver_ticks(self, batch: list[Tick]) -> None:
        symbols: list[str] = []
        for tick in batch:
            self._snapshot[tick.symbol] = tick
            if tick.symbol not in symbols:
                symbols.append(tick.symbol)
        TICK_BATCHES_TOTAL.inc()
        SNAPSHOT_SYMBOLS.set(len(self._snapshot))
        self._deliver(self._matching([ALL, *symbols]), batch)

    def _deliver_alert(self, event: AlertEvent) -> None:
        if self.gateway is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning(
                    "No running event loop, alert not forwarded to notifications",
                    extra={"data": {"symbol": event.symbol, "kind": event.kind}},
                )
            else:
                task = loop.create_task(self.gateway.notify_alert(event))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        self._deliver(self._matching([ALERT_EVENTS]), event)
