"""Human-readable strings used to annotate transactions and portfolio events.

Callers that localize pass an ``EngineLabels`` with overridden fields;
templates hold ``{placeholder}`` (or ``${placeholder}`` for money) fields
filled by ``fill``.
"""

from dataclasses import dataclass

from stratlab.strategy.models import Operation


@dataclass(frozen=True)
class EngineLabels:
    # Strategy names
    price_change: str = "Price Change"
    timing: str = "Timing"
    price_above: str = "Price Above"
    price_below: str = "Price Below"
    rsi_strategy: str = "RSI Strategy"
    moving_average: str = "Moving Average"
    volume_strategy: str = "Volume Strategy"
    profit_loss: str = "Profit/Loss"
    stop_loss: str = "Stop Loss"
    take_profit: str = "Take Profit"
    trailing_stop: str = "Trailing Stop"
    buy_and_hold: str = "Buy & Hold"
    # Indicator labels
    profit: str = "Profit"
    loss: str = "Loss"
    peak: str = "Peak"
    # Event messages
    insufficient_balance: str = "Insufficient balance: ${cash} available, ${required} needed"
    insufficient_cash: str = "Insufficient balance: ${cash} in cash"
    cannot_sell: str = "Cannot sell: no {symbol} position"
    loss_limit_exceeded: str = "Loss limit {percent}% exceeded, position closed"


@dataclass(frozen=True)
class StrategyInfo:
    """Display attribution for one operation."""

    name: str
    icon: str
    color: str


FALLBACK_ICON = "📊"
FALLBACK_COLOR = "#6366F1"

BUY_AND_HOLD_ICON = "📈"
BUY_AND_HOLD_COLOR = "#3B82F6"

# operation -> (EngineLabels field, icon, color)
_INFO_TABLE: dict[Operation, tuple[str, str, str]] = {
    Operation.WHEN_CHANGE_PERCENT: ("price_change", "📊", "#F59E0B"),
    Operation.WHEN_DATE: ("timing", "📅", "#3B82F6"),
    Operation.WHEN_PRICE_ABOVE: ("price_above", "📈", "#10B981"),
    Operation.WHEN_PRICE_BELOW: ("price_below", "📉", "#EF4444"),
    Operation.IF_RSI: ("rsi_strategy", "📉", "#8B5CF6"),
    Operation.IF_MOVING_AVG: ("moving_average", "📈", "#10B981"),
    Operation.IF_VOLUME: ("volume_strategy", "📶", "#14B8A6"),
    Operation.IF_PROFIT: ("profit_loss", "💰", "#22C55E"),
    Operation.STOP_LOSS: ("stop_loss", "🛡️", "#EF4444"),
    Operation.TAKE_PROFIT: ("take_profit", "🎉", "#22C55E"),
    Operation.TRAILING_STOP: ("trailing_stop", "📍", "#F97316"),
}


def build_strategy_info(labels: EngineLabels) -> dict[Operation, StrategyInfo]:
    """Attribution for every operation, named through *labels*.

    Actions have no entry of their own; ``strategy_info`` falls back to
    the operation name.
    """
    return {
        op: StrategyInfo(name=getattr(labels, field), icon=icon, color=color)
        for op, (field, icon, color) in _INFO_TABLE.items()
    }


def strategy_info(table: dict[Operation, StrategyInfo], operation: Operation) -> StrategyInfo:
    info = table.get(operation)
    if info is None:
        return StrategyInfo(name=operation.value, icon=FALLBACK_ICON, color=FALLBACK_COLOR)
    return info


def fill(template: str, **values) -> str:
    """Substitute ``{name}`` and ``${name}`` placeholders in *template*.

    Unknown placeholders are left in place so a partially-translated
    label never raises.
    """
    out = template
    for key, value in values.items():
        out = out.replace("${" + key + "}", f"${value}").replace("{" + key + "}", str(value))
    return out
