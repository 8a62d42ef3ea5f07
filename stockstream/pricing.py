"""Price helpers used by dashboard cards and the position panel.

All functions are pure and work on the tick snapshot from the UpdateBus.
"""

from __future__ import annotations

from dataclasses import dataclass

from stockstream.models import Position, Tick

BROKER_COMMISSION = 0.0097  # 0.97%
PROFIT_MARGIN = 0.0101  # 1.01%


@dataclass(frozen=True)
class ProfitLoss:
    """Unrealized profit/loss of a position at the current price."""

    current_value: float
    profit_loss: float
    percentage: float


def calculate_target_price(buy_price: float) -> float:
    """Sell price that clears the profit margin after broker commission."""
    return (buy_price * (1 + PROFIT_MARGIN)) / (1 - BROKER_COMMISSION)


def is_price_above_previous_close(current_price: float, previous_close: float) -> bool:
    return current_price > previous_close


def previous_close(tick: Tick) -> float | None:
    """The previous close carried in a tick's extra fields, if any."""
    extra = tick.model_extra or {}
    value = extra.get("previousClose", extra.get("previous_close"))
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def position_profit_loss(position: Position, price: float | None) -> ProfitLoss:
    """Unrealized P&L for `position` at `price`.

    A missing price or zero cost basis yields zeros rather than an error,
    matching how the position panel renders an unpriced holding.
    """
    cost = position.cost_basis
    if not price or not cost:
        return ProfitLoss(current_value=0.0, profit_loss=0.0, percentage=0.0)
    current_value = position.quantity * price
    profit_loss = current_value - cost
    return ProfitLoss(
        current_value=current_value,
        profit_loss=profit_loss,
        percentage=profit_loss / cost * 100,
    )


def portfolio_profit_loss(
    positions: list[Position],
    snapshot: dict[str, Tick],
) -> dict[str, ProfitLoss]:
    """P&L per symbol for every position, priced from the tick snapshot."""
    result: dict[str, ProfitLoss] = {}
    for position in positions:
        tick = snapshot.get(position.symbol)
        result[position.symbol] = position_profit_loss(position, tick.price if tick else None)
    return result


def format_price(price: float | None, currency_symbol: str = "₹") -> str:
    if not price:
        return "N/A"
    return f"{currency_symbol}{price:,.2f}"
