"""Push-channel transports.

A transport moves named events over one persistent connection. The
ConnectionManager creates a fresh transport per connect attempt through
a factory, which is how tests substitute scripted fakes.

Wire format (WebSocketTransport): every frame is a JSON object
    {"event": "<name>", "data": <payload>}

Usage:
    transport = WebSocketTransport("wss://stocks.example.com/ws")
    await transport.open()
    await transport.send("auth", {"token": token})
    message = await transport.receive()
    await transport.close()
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import websockets

from stockstream.common.exceptions import TransportError
from stockstream.common.logging import get_logger

logger = get_logger("REALTIME")


@dataclass(frozen=True)
class TransportMessage:
    """One inbound event."""

    event: str
    data: Any = None


class Transport(ABC):
    """A single persistent push connection.

    `open`, `send`, and `receive` raise TransportError on socket-level
    failure; `receive` also raises it when the peer closes the connection.
    """

    @abstractmethod
    async def open(self) -> None: ...

    @abstractmethod
    async def send(self, event: str, data: Any = None) -> None: ...

    @abstractmethod
    async def receive(self) -> TransportMessage: ...

    @abstractmethod
    async def close(self) -> None: ...


TransportFactory = Callable[[], Transport]


class WebSocketTransport(Transport):
    """JSON-framed transport over a websockets client connection.

    Args:
        url: WebSocket endpoint (ws:// or wss://).
        open_timeout: Seconds allowed for the opening handshake.
    """

    def __init__(self, url: str, open_timeout: float = 10.0) -> None:
        self.url = url
        self.open_timeout = open_timeout
        self.ws: Any | None = None

    async def open(self) -> None:
        """Open the WebSocket connection.

        Raises:
            TransportError: If the connection cannot be established.
        """
        try:
            self.ws = await websockets.connect(self.url, open_timeout=self.open_timeout)
        except Exception as exc:
            raise TransportError(
                f"WebSocket connection failed: {exc}",
                context={"url": self.url},
            ) from exc
        logger.info("WebSocket opened", extra={"data": {"url": self.url}})

    async def send(self, event: str, data: Any = None) -> None:
        if self.ws is None:
            raise TransportError("Cannot send message: WebSocket is not connected")
        try:
            await self.ws.send(json.dumps({"event": event, "data": data}))
        except websockets.ConnectionClosed as exc:
            raise TransportError(f"WebSocket closed while sending: {exc}") from exc

    async def receive(self) -> TransportMessage:
        """Wait for the next well-formed frame.

        Frames that are not JSON objects with a string `event` are logged
        and skipped.

        Raises:
            TransportError: If the connection closes or is not open.
        """
        if self.ws is None:
            raise TransportError("Cannot receive: WebSocket is not connected")
        while True:
            try:
                raw = await self.ws.recv()
            except websockets.ConnectionClosed as exc:
                raise TransportError(
                    f"WebSocket closed: {exc}",
                    context={"url": self.url},
                ) from exc
            try:
                frame = json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                logger.warning("Dropping non-JSON frame")
                continue
            if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
                logger.warning("Dropping frame without event name")
                continue
            return TransportMessage(event=frame["event"], data=frame.get("data"))

    async def close(self) -> None:
        if self.ws is not None:
            ws, self.ws = self.ws, None
            await ws.close()
            logger.info("WebSocket closed", extra={"data": {"url": self.url}})
