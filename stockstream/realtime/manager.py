"""Authenticated real-time connection manager.

Owns the push-channel transport, the application-level auth handshake,
the reconnect policy, and the relay of inbound data into the UpdateBus.

Lifecycle (see states.py for the full table):
    1. connect() with a valid, unexpired credential -> CONNECTING
    2. Transport opens -> AUTHENTICATING, client sends auth {token}
    3. auth_success -> CONNECTED: re-send tracked symbols, replay data
       that arrived during the handshake, notify "connected"
    4. Unexpected close -> RECONNECTING: fixed delay, up to N attempts,
       then ERRORED (RetryBudgetExhausted) until connect() is called again
    5. disconnect() from any state -> DISCONNECTED

Each connect attempt gets a generation number. Reader tasks and timers
carry the generation they were started with, and anything arriving for
an older generation is dropped, so a late auth_success from a discarded
transport cannot resurrect a closed connection.

Failures never escape as exceptions: they become a transition plus a
`last_error` and a message on the published StateChange.

Usage:
    manager = ConnectionManager(
        credentials=store,
        bus=bus,
        transport_factory=lambda: WebSocketTransport(settings.ws_url),
        gateway=gateway,
    )
    manager.connect()
    await manager.wait_for_state(ConnectionState.CONNECTED, timeout=15)
    manager.track(["TCS.NS", "INFY.NS"])
    ...
    await manager.disconnect()
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Iterable
from typing import Any

from stockstream.auth.credentials import CredentialStore
from stockstream.common.exceptions import (
    AuthRejected,
    CredentialError,
    HandshakeTimeout,
    RetryBudgetExhausted,
    StockStreamError,
    TransportError,
)
from stockstream.common.logging import get_logger
from stockstream.common.metrics import (
    WS_MESSAGES_RECEIVED_TOTAL,
    WS_RECONNECT_ATTEMPTS_TOTAL,
    WS_STATE,
    WS_TRANSITIONS_TOTAL,
)
from stockstream.models import AlertEvent, parse_tick_batch
from stockstream.notifications.gateway import NotificationGateway, connection_status_key
from stockstream.realtime.bus import CONNECTION_STATE, UpdateBus
from stockstream.realtime.states import (
    ConnectionEvent,
    ConnectionState,
    StateChange,
    next_state,
)
from stockstream.realtime.transport import Transport, TransportFactory, TransportMessage

logger = get_logger("REALTIME")

S = ConnectionState
E = ConnectionEvent

DATA_EVENTS = {"stockUpdate", "notification"}
MAX_BUFFERED_MESSAGES = 100


class ConnectionManager:
    """Supervises one authenticated push connection.

    Args:
        credentials: Source of the bearer token (read-only here, except that
            a rejected handshake clears it).
        bus: UpdateBus that receives state changes, ticks, and alerts.
        transport_factory: Returns a fresh, unopened Transport per attempt.
        gateway: Optional NotificationGateway for connected/disconnected banners.
        handshake_timeout: Seconds allowed for open + handshake per attempt.
        max_retries: Automatic reconnect attempts after a drop.
        retry_delay: Fixed delay in seconds before each reconnect attempt.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        bus: UpdateBus,
        transport_factory: TransportFactory,
        gateway: NotificationGateway | None = None,
        handshake_timeout: float = 10.0,
        max_retries: int = 5,
        retry_delay: float = 1.0,
    ) -> None:
        self.credentials = credentials
        self.bus = bus
        self.gateway = gateway
        self.handshake_timeout = handshake_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._transport_factory = transport_factory

        self._state = S.DISCONNECTED
        self._last_stable = S.DISCONNECTED
        self._generation = 0
        self._transition_count = 0
        self._retrying = False
        self._retry_attempts = 0
        self.last_error: StockStreamError | None = None

        self._transport: Transport | None = None
        self._reader_task: asyncio.Task | None = None
        self._attempt_timer: asyncio.TimerHandle | None = None
        self._retry_timer: asyncio.TimerHandle | None = None
        self._buffer: deque[TransportMessage] = deque(maxlen=MAX_BUFFERED_MESSAGES)
        self._tracked: list[str] = []
        self._close_tasks: set[asyncio.Task] = set()
        self._tasks: set[asyncio.Task] = set()

        self._set_state_gauge(self._state)

    # ─── Public API ───

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == S.CONNECTED

    @property
    def retry_attempts(self) -> int:
        return self._retry_attempts

    @property
    def error_message(self) -> str | None:
        if self.last_error is None:
            return None
        return self.last_error.message

    @property
    def tracked_symbols(self) -> list[str]:
        return list(self._tracked)

    def connect(self) -> None:
        """Start connecting. Returns immediately; progress arrives as state changes.

        Only acts from DISCONNECTED or ERRORED. Without a usable credential
        the state does not change and `last_error` holds a CredentialError.
        Must be called from inside the running event loop.
        """
        if self._state not in (S.DISCONNECTED, S.ERRORED):
            logger.info(
                "connect() ignored, connection already active",
                extra={"data": {"state": self._state.value}},
            )
            return

        if self.credentials.get_credential() is None or self.credentials.is_expired():
            self.last_error = CredentialError("No valid credential, sign in again")
            logger.warning(
                "Cannot connect without a valid credential",
                extra={"data": {"state": self._state.value}},
            )
            return

        self.last_error = None
        self._retrying = False
        self._retry_attempts = 0
        self._transition(E.CONNECT)

    async def disconnect(self) -> None:
        """Cancel everything in flight and force DISCONNECTED.

        Idempotent and never raises. Pending backoff and handshake timers
        are cancelled and an open transport is closed.
        """
        reader = self._reader_task
        if not self._transition(E.DISCONNECT):
            self._teardown()

        if reader is not None and reader is not asyncio.current_task():
            await asyncio.gather(reader, return_exceptions=True)
        if self._close_tasks:
            await asyncio.gather(*list(self._close_tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Disconnect and wait for outstanding notification and send tasks."""
        await self.disconnect()
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def track(self, symbols: Iterable[str]) -> None:
        """Ask the server to stream `symbols`; re-sent after every (re)connect."""
        new = [s for s in symbols if s not in self._tracked]
        if not new:
            return
        self._tracked.extend(new)
        if self._state == S.CONNECTED:
            self._spawn(self._send(self._generation, "subscribe", {"symbols": new}))

    def untrack(self, symbols: Iterable[str]) -> None:
        removed = [s for s in symbols if s in self._tracked]
        if not removed:
            return
        self._tracked = [s for s in self._tracked if s not in removed]
        if self._state == S.CONNECTED:
            self._spawn(self._send(self._generation, "unsubscribe", {"symbols": removed}))

    async def wait_for_state(
        self,
        *states: ConnectionState,
        timeout: float | None = None,
    ) -> ConnectionState:
        """Wait until the manager enters one of `states`.

        Raises:
            TimeoutError: If none of the states is reached within `timeout`.
        """
        if self._state in states:
            return self._state

        future: asyncio.Future[ConnectionState] = asyncio.get_running_loop().create_future()

        def _on_change(change: StateChange) -> None:
            if change.state in states and not future.done():
                future.set_result(change.state)

        sub = self.bus.subscribe(CONNECTION_STATE, _on_change)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            sub.unsubscribe()

    # ─── State Machine ───

    def _transition(
        self,
        event: ConnectionEvent,
        generation: int | None = None,
        error: StockStreamError | None = None,
    ) -> bool:
        """Apply `event` if it is valid for the current state and generation.

        Returns:
            True if the state changed.
        """
        if generation is not None and generation != self._generation:
            logger.debug(
                "Ignoring event from a discarded attempt",
                extra={"data": {"event": event.value, "generation": generation}},
            )
            return False

        target = next_state(self._state, event, retrying=self._retrying)
        if target is None:
            logger.debug(
                "Ignoring event not valid in current state",
                extra={"data": {"event": event.value, "state": self._state.value}},
            )
            return False

        previous = self._state
        self._state = target
        self._transition_count += 1
        serial = self._transition_count
        if error is not None:
            self.last_error = error
        elif target == S.CONNECTED:
            self.last_error = None

        WS_TRANSITIONS_TOTAL.labels(from_state=previous.value, to_state=target.value).inc()
        self._set_state_gauge(target)
        logger.info(
            "Connection state changed",
            extra={
                "data": {
                    "from": previous.value,
                    "to": target.value,
                    "event": event.value,
                    "error": error.message if error is not None else None,
                }
            },
        )

        self._leave(target, previous, event)
        self.bus.publish_state(
            StateChange(
                state=target,
                previous=previous,
                event=event,
                error=type(error).__name__ if error is not None else None,
                message=error.message if error is not None else None,
            )
        )
        # A subscriber may have moved the machine on (e.g. connect() on ERRORED)
        if serial == self._transition_count:
            self._enter(target)
        return True

    def _leave(
        self,
        state: ConnectionState,
        previous: ConnectionState,
        event: ConnectionEvent,
    ) -> None:
        """Release the previous attempt before subscribers hear about `state`."""
        if state == S.RECONNECTING:
            self._teardown()
            self._retrying = True
            if previous == S.CONNECTED:
                self._on_connection_lost(S.RECONNECTING)
        elif state == S.ERRORED:
            self._teardown()
            self._retrying = False
            if event == E.AUTH_ERROR:
                self.credentials.clear()
            self._last_stable = S.ERRORED
        elif state == S.DISCONNECTED:
            self._teardown()
            self._retrying = False
            if previous == S.CONNECTED:
                self._on_connection_lost(S.DISCONNECTED)
            else:
                self._last_stable = S.DISCONNECTED

    def _enter(self, state: ConnectionState) -> None:
        """Start the work `state` owns once subscribers have seen it."""
        if state == S.CONNECTING:
            self._start_attempt()
        elif state == S.CONNECTED:
            self._on_connected()
        elif state == S.RECONNECTING:
            self._schedule_retry()

    def _on_connected(self) -> None:
        self._cancel_timer("_attempt_timer")
        self._retry_attempts = 0
        self._retrying = False
        generation = self._generation

        if self._tracked:
            self._spawn(self._send(generation, "subscribe", {"symbols": list(self._tracked)}))

        buffered = list(self._buffer)
        self._buffer.clear()
        for message in buffered:
            self._relay(message)

        if self.gateway is not None:
            self.gateway.forget(connection_status_key(False))
            if self._last_stable != S.CONNECTED:
                self._spawn(self.gateway.notify_connection_status(True))
        self._last_stable = S.CONNECTED

    def _on_connection_lost(self, state: ConnectionState) -> None:
        if self.gateway is not None and self._last_stable == S.CONNECTED:
            self.gateway.forget(connection_status_key(True))
            self._spawn(self.gateway.notify_connection_status(False))
        self._last_stable = state

    # ─── Attempts and Timers ───

    def _start_attempt(self) -> None:
        self._generation += 1
        generation = self._generation
        self._buffer.clear()
        loop = asyncio.get_running_loop()

        try:
            transport = self._transport_factory()
        except Exception as exc:
            self._transition(
                E.TRANSPORT_ERROR,
                generation,
                error=TransportError(f"Could not create transport: {exc}"),
            )
            return

        self._transport = transport
        self._attempt_timer = loop.call_later(
            self.handshake_timeout, self._on_attempt_timeout, generation
        )
        self._reader_task = loop.create_task(self._run_attempt(generation, transport))

    def _on_attempt_timeout(self, generation: int) -> None:
        self._attempt_timer = None
        self._transition(
            E.HANDSHAKE_TIMEOUT,
            generation,
            error=HandshakeTimeout(
                f"No handshake response within {self.handshake_timeout:g}s",
                context={"timeout_seconds": self.handshake_timeout},
            ),
        )

    def _schedule_retry(self) -> None:
        if self._retry_attempts >= self.max_retries:
            self._transition(
                E.RETRY_EXHAUSTED,
                error=RetryBudgetExhausted(
                    f"Reconnection failed after {self.max_retries} attempts",
                    context={"attempts": self._retry_attempts},
                ),
            )
            return

        generation = self._generation
        logger.info(
            "Reconnect scheduled",
            extra={
                "data": {
                    "attempt": self._retry_attempts + 1,
                    "max_retries": self.max_retries,
                    "wait_seconds": self.retry_delay,
                }
            },
        )
        self._retry_timer = asyncio.get_running_loop().call_later(
            self.retry_delay, self._on_retry_timer, generation
        )

    def _on_retry_timer(self, generation: int) -> None:
        self._retry_timer = None
        if generation != self._generation or self._state != S.RECONNECTING:
            return
        self._retry_attempts += 1
        WS_RECONNECT_ATTEMPTS_TOTAL.inc()
        self._transition(E.RETRY, generation)

    def _cancel_timer(self, name: str) -> None:
        handle = getattr(self, name)
        if handle is not None:
            handle.cancel()
            setattr(self, name, None)

    def _teardown(self) -> None:
        """Invalidate the current attempt and release its resources."""
        self._generation += 1
        self._cancel_timer("_attempt_timer")
        self._cancel_timer("_retry_timer")
        self._buffer.clear()

        task, self._reader_task = self._reader_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        transport, self._transport = self._transport, None
        if transport is not None:
            close_task = asyncio.get_running_loop().create_task(self._close_transport(transport))
            self._close_tasks.add(close_task)
            close_task.add_done_callback(self._close_tasks.discard)

    # ─── Transport I/O ───

    async def _run_attempt(self, generation: int, transport: Transport) -> None:
        """Open, authenticate, then pump inbound messages until the link drops."""
        try:
            await transport.open()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not isinstance(exc, TransportError):
                exc = TransportError(f"Transport failed to open: {exc}")
            self._transition(E.TRANSPORT_ERROR, generation, error=exc)
            return

        if not self._transition(E.TRANSPORT_OPEN, generation):
            return

        token = self.credentials.get_token()
        if token is None or self.credentials.is_expired():
            self._transition(
                E.AUTH_ERROR,
                generation,
                error=CredentialError("Credential expired or cleared, sign in again"),
            )
            return

        try:
            await transport.send("auth", {"token": token})
            while generation == self._generation:
                message = await transport.receive()
                self._on_message(generation, message)
        except asyncio.CancelledError:
            raise
        except TransportError as exc:
            self._transition(E.TRANSPORT_CLOSED, generation, error=exc)
        except Exception as exc:
            self._transition(
                E.TRANSPORT_ERROR,
                generation,
                error=TransportError(f"Transport failure: {exc}"),
            )

    def _on_message(self, generation: int, message: TransportMessage) -> None:
        if generation != self._generation:
            logger.debug(
                "Dropping message from a discarded attempt",
                extra={"data": {"event": message.event}},
            )
            return

        WS_MESSAGES_RECEIVED_TOTAL.labels(event=message.event).inc()
        data = message.data if isinstance(message.data, dict) else {}

        if message.event == "auth_success":
            user = data.get("user")
            if isinstance(user, dict) and self._state == S.AUTHENTICATING:
                self.credentials.set_user(user)
            self._transition(E.AUTH_SUCCESS, generation)
        elif message.event == "auth_error":
            reason = data.get("message") or "Authentication failed"
            self._transition(E.AUTH_ERROR, generation, error=AuthRejected(str(reason)))
        elif message.event in DATA_EVENTS:
            if self._state == S.AUTHENTICATING:
                self._buffer.append(message)
            elif self._state == S.CONNECTED:
                self._relay(message)
        else:
            logger.debug("Unhandled push event", extra={"data": {"event": message.event}})

    def _relay(self, message: TransportMessage) -> None:
        if message.event == "stockUpdate":
            batch = parse_tick_batch(message.data)
            if batch:
                self.bus.publish_ticks(batch)
        elif message.event == "notification":
            if isinstance(message.data, dict):
                self.bus.publish_alert(AlertEvent.from_payload(message.data))
            else:
                logger.warning("Dropping malformed notification payload")

    async def _send(self, generation: int, event: str, data: Any) -> None:
        transport = self._transport
        if transport is None or generation != self._generation:
            return
        try:
            await transport.send(event, data)
        except TransportError as exc:
            logger.warning(
                "Failed to send push message",
                extra={"data": {"event": event, "error": exc.message}},
            )

    async def _close_transport(self, transport: Transport) -> None:
        try:
            await transport.close()
        except Exception as exc:
            logger.debug(
                "Error while closing transport",
                extra={"data": {"error": str(exc)}},
            )

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    def _set_state_gauge(current: ConnectionState) -> None:
        for state in ConnectionState:
            WS_STATE.labels(state=state.value).set(1 if state == current else 0)
