"""Connection states, events, and the transition table.

The whole connection lifecycle is one finite-state machine. `next_state`
is a pure function over (state, event) so every reachable transition can
be enumerated and tested without a network.

    DISCONNECTED --connect--> CONNECTING --open--> AUTHENTICATING --auth_success--> CONNECTED
         ^                        |                     |                              |
         |                        +------ failure ------+----> ERRORED            close/error
         |                                                        ^                    v
         +-------------------- disconnect (from anywhere) ---  exhausted <------ RECONNECTING

While a reconnect cycle is running, a failed attempt returns to
RECONNECTING instead of ERRORED so the retry budget can be spent.
A rejected token always ends in ERRORED.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERRORED = "errored"


class ConnectionEvent(StrEnum):
    CONNECT = "connect"
    TRANSPORT_OPEN = "transport_open"
    TRANSPORT_ERROR = "transport_error"
    TRANSPORT_CLOSED = "transport_closed"
    AUTH_SUCCESS = "auth_success"
    AUTH_ERROR = "auth_error"
    HANDSHAKE_TIMEOUT = "handshake_timeout"
    RETRY = "retry"
    RETRY_EXHAUSTED = "retry_exhausted"
    DISCONNECT = "disconnect"


S = ConnectionState
E = ConnectionEvent

TRANSITIONS: dict[tuple[ConnectionState, ConnectionEvent], ConnectionState] = {
    (S.DISCONNECTED, E.CONNECT): S.CONNECTING,
    (S.CONNECTING, E.TRANSPORT_OPEN): S.AUTHENTICATING,
    (S.CONNECTING, E.TRANSPORT_ERROR): S.ERRORED,
    (S.CONNECTING, E.TRANSPORT_CLOSED): S.ERRORED,
    (S.CONNECTING, E.HANDSHAKE_TIMEOUT): S.ERRORED,
    (S.CONNECTING, E.DISCONNECT): S.DISCONNECTED,
    (S.AUTHENTICATING, E.AUTH_SUCCESS): S.CONNECTED,
    (S.AUTHENTICATING, E.AUTH_ERROR): S.ERRORED,
    (S.AUTHENTICATING, E.HANDSHAKE_TIMEOUT): S.ERRORED,
    (S.AUTHENTICATING, E.TRANSPORT_ERROR): S.ERRORED,
    (S.AUTHENTICATING, E.TRANSPORT_CLOSED): S.ERRORED,
    (S.AUTHENTICATING, E.DISCONNECT): S.DISCONNECTED,
    (S.CONNECTED, E.TRANSPORT_CLOSED): S.RECONNECTING,
    (S.CONNECTED, E.TRANSPORT_ERROR): S.RECONNECTING,
    (S.CONNECTED, E.DISCONNECT): S.DISCONNECTED,
    (S.RECONNECTING, E.RETRY): S.CONNECTING,
    (S.RECONNECTING, E.RETRY_EXHAUSTED): S.ERRORED,
    (S.RECONNECTING, E.DISCONNECT): S.DISCONNECTED,
    (S.ERRORED, E.CONNECT): S.CONNECTING,
    (S.ERRORED, E.DISCONNECT): S.DISCONNECTED,
}

# Failed attempts inside a reconnect cycle go back to RECONNECTING
RETRYING_TRANSITIONS: dict[tuple[ConnectionState, ConnectionEvent], ConnectionState] = {
    (S.CONNECTING, E.TRANSPORT_ERROR): S.RECONNECTING,
    (S.CONNECTING, E.TRANSPORT_CLOSED): S.RECONNECTING,
    (S.CONNECTING, E.HANDSHAKE_TIMEOUT): S.RECONNECTING,
    (S.AUTHENTICATING, E.TRANSPORT_ERROR): S.RECONNECTING,
    (S.AUTHENTICATING, E.TRANSPORT_CLOSED): S.RECONNECTING,
    (S.AUTHENTICATING, E.HANDSHAKE_TIMEOUT): S.RECONNECTING,
}


def next_state(
    state: ConnectionState,
    event: ConnectionEvent,
    *,
    retrying: bool = False,
) -> ConnectionState | None:
    """Return the state `event` leads to from `state`, or None if it is ignored."""
    if retrying and (state, event) in RETRYING_TRANSITIONS:
        return RETRYING_TRANSITIONS[(state, event)]
    return TRANSITIONS.get((state, event))


class StateChange(BaseModel):
    """One connection-state transition, as published on the update bus.

    Attributes:
        state: The state just entered.
        previous: The state that was left.
        event: The event that caused the transition.
        error: Error class name when the new state reflects a failure.
        message: Human-readable detail for the status indicator.
        at: UTC time the transition was applied.
    """

    state: ConnectionState
    previous: ConnectionState
    event: ConnectionEvent
    error: str | None = None
    message: str | None = None
    at: datetime = Field(default_factory=lambda: datetime.now(UTC))
