"""Tests for the connection transition table."""

from __future__ import annotations

import pytest

from stockstream.realtime.states import (
    RETRYING_TRANSITIONS,
    TRANSITIONS,
    ConnectionEvent,
    ConnectionState,
    StateChange,
    next_state,
)

S = ConnectionState
E = ConnectionEvent

FAILURES = [E.TRANSPORT_ERROR, E.TRANSPORT_CLOSED, E.HANDSHAKE_TIMEOUT]


class TestTransitionTable:
    def test_targets_are_states(self):
        """Every table entry points at a ConnectionState."""
        for target in [*TRANSITIONS.values(), *RETRYING_TRANSITIONS.values()]:
            assert isinstance(target, ConnectionState)

    def test_happy_path(self):
        """connect -> open -> auth_success reaches CONNECTED."""
        state = S.DISCONNECTED
        for event in (E.CONNECT, E.TRANSPORT_OPEN, E.AUTH_SUCCESS):
            state = next_state(state, event)
        assert state == S.CONNECTED

    @pytest.mark.parametrize("state", [s for s in ConnectionState if s != S.DISCONNECTED])
    def test_disconnect_from_anywhere(self, state):
        """DISCONNECT leads to DISCONNECTED from every other state."""
        assert next_state(state, E.DISCONNECT) == S.DISCONNECTED
        assert next_state(state, E.DISCONNECT, retrying=True) == S.DISCONNECTED

    def test_disconnect_when_disconnected_ignored(self):
        assert next_state(S.DISCONNECTED, E.DISCONNECT) is None

    @pytest.mark.parametrize("state", [S.CONNECTING, S.AUTHENTICATING])
    @pytest.mark.parametrize("event", FAILURES)
    def test_initial_failures_error(self, state, event):
        """Outside a retry cycle, a failed attempt ends in ERRORED."""
        assert next_state(state, event) == S.ERRORED

    @pytest.mark.parametrize("state", [S.CONNECTING, S.AUTHENTICATING])
    @pytest.mark.parametrize("event", FAILURES)
    def test_retry_cycle_failures_reconnect(self, state, event):
        """Inside a retry cycle, a failed attempt goes back to RECONNECTING."""
        assert next_state(state, event, retrying=True) == S.RECONNECTING

    def test_auth_error_always_errors(self):
        """A rejected token is terminal even while retrying."""
        assert next_state(S.AUTHENTICATING, E.AUTH_ERROR) == S.ERRORED
        assert next_state(S.AUTHENTICATING, E.AUTH_ERROR, retrying=True) == S.ERRORED

    @pytest.mark.parametrize("event", [E.TRANSPORT_CLOSED, E.TRANSPORT_ERROR])
    def test_drop_while_connected_reconnects(self, event):
        assert next_state(S.CONNECTED, event) == S.RECONNECTING

    def test_retry_and_exhaustion(self):
        assert next_state(S.RECONNECTING, E.RETRY) == S.CONNECTING
        assert next_state(S.RECONNECTING, E.RETRY_EXHAUSTED) == S.ERRORED

    def test_errored_can_connect_again(self):
        assert next_state(S.ERRORED, E.CONNECT) == S.CONNECTING

    @pytest.mark.parametrize(
        "state,event",
        [
            (S.CONNECTED, E.AUTH_SUCCESS),
            (S.CONNECTED, E.CONNECT),
            (S.CONNECTING, E.AUTH_SUCCESS),
            (S.DISCONNECTED, E.AUTH_SUCCESS),
            (S.RECONNECTING, E.AUTH_SUCCESS),
            (S.ERRORED, E.TRANSPORT_OPEN),
        ],
    )
    def test_invalid_events_ignored(self, state, event):
        """Events with no table entry return None."""
        assert next_state(state, event) is None

    def test_every_state_reachable(self):
        """Every state is the target of some transition."""
        targets = set(TRANSITIONS.values()) | set(RETRYING_TRANSITIONS.values())
        assert targets == set(ConnectionState)


class TestStateChange:
    def test_defaults(self):
        change = StateChange(state=S.CONNECTED, previous=S.AUTHENTICATING, event=E.AUTH_SUCCESS)
        assert change.error is None
        assert change.message is None
        assert change.at.tzinfo is not None
