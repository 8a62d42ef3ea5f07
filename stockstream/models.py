"""Pydantic models shared across the stockstream client.

Ticks and user profiles accept extra fields: the market-data service
sends a full quote object per symbol (change, changePercent, volume,
previousClose, ...) and the client passes it through untouched.

Usage:
    from stockstream.models import AlertEvent, Tick

    tick = Tick(symbol="TCS.NS", price=3875.5, changePercent=0.42)
    batch = parse_tick_batch(payload)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from stockstream.common.logging import get_logger

logger = get_logger("REALTIME")

AlertType = Literal["stock_alert", "connection_status", "generic"]


# ─── Credential ───


class UserRef(BaseModel):
    """Cached profile of the signed-in user as issued by the auth backend."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str | None = Field(default=None, alias="_id")
    username: str | None = None
    email: str | None = None


class Credential(BaseModel):
    """Opaque bearer token plus the user it was issued to."""

    token: str
    user: UserRef | None = None


# ─── Market Data ───


class Tick(BaseModel):
    """Latest quote for one symbol inside a stockUpdate batch."""

    model_config = ConfigDict(extra="allow")

    symbol: str
    price: float
    timestamp: datetime | str | int | None = None


class AlertEvent(BaseModel):
    """A server-evaluated alert pushed over the notification channel.

    Attributes:
        type: stock_alert, connection_status, or generic.
        symbol: Subject symbol for stock alerts.
        kind: Alert flavour (e.g. "buy", "sell", "price").
        title: Notification title.
        message: Notification body.
        data: Raw payload for consumers that need more detail.
    """

    type: AlertType = "generic"
    symbol: str | None = None
    kind: str = "generic"
    title: str = ""
    message: str = ""
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> AlertEvent:
        """Build an AlertEvent from a `notification` message body.

        Stock alerts carry the alert definition under `data.alert` or
        directly in `data`; `alertType` maps to `kind`.
        """
        data = payload.get("data") or {}
        alert = data.get("alert") if isinstance(data.get("alert"), dict) else data
        alert_type = payload.get("type", "generic")
        if alert_type not in ("stock_alert", "connection_status", "generic"):
            alert_type = "generic"
        return cls(
            type=alert_type,
            symbol=alert.get("symbol"),
            kind=str(alert.get("alertType") or alert.get("kind") or alert_type),
            title=payload.get("title") or "",
            message=payload.get("message") or "",
            data=data,
        )


class Position(BaseModel):
    """A simulated holding for one symbol, as stored by the REST backend."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    symbol: str
    quantity: float
    purchase_price: float = Field(alias="purchasePrice")
    total_investment: float | None = Field(default=None, alias="totalInvestment")

    @property
    def cost_basis(self) -> float:
        if self.total_investment is not None:
            return self.total_investment
        return self.quantity * self.purchase_price


def parse_tick_batch(payload: Any) -> list[Tick]:
    """Parse a stockUpdate payload into ticks, skipping malformed entries.

    Args:
        payload: The raw `stockUpdate` data (expected to be a list of dicts).

    Returns:
        Valid ticks in payload order. Non-list payloads yield an empty list.
    """
    if not isinstance(payload, list):
        logger.warning(
            "Ignoring non-list stockUpdate payload",
            extra={"data": {"payload_type": type(payload).__name__}},
        )
        return []

    ticks: list[Tick] = []
    for item in payload:
        try:
            ticks.append(Tick.model_validate(item))
        except ValidationError as exc:
            logger.warning(
                "Skipping malformed tick",
                extra={"data": {"error": str(exc).splitlines()[0]}},
            )
    return ticks
