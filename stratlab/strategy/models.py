"""Strategy data models — bars, typed strategy nodes, preset catalog entries."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Optional, Union


@dataclass(frozen=True)
class Bar:
    """A single OHLCV price observation.

    ``date`` is an ISO ``YYYY-MM-DD`` string; series are ordered ascending
    and may skip non-trading days.
    """

    date: str
    open: float
    high: float
    low: float
    close: float
    volume: float


# ── Node kinds and operations ────────────────────────────────────────────


class NodeKind(str, Enum):
    TRIGGER = "trigger"
    CONDITION = "condition"
    ACTION = "action"
    MODIFIER = "modifier"

    @property
    def accepts_children(self) -> bool:
        """Only triggers and conditions gate child nodes."""
        return self in (NodeKind.TRIGGER, NodeKind.CONDITION)


class Operation(str, Enum):
    WHEN_PRICE_ABOVE = "WHEN_PRICE_ABOVE"
    WHEN_PRICE_BELOW = "WHEN_PRICE_BELOW"
    WHEN_CHANGE_PERCENT = "WHEN_CHANGE_PERCENT"
    WHEN_DATE = "WHEN_DATE"
    IF_RSI = "IF_RSI"
    IF_MOVING_AVG = "IF_MOVING_AVG"
    IF_VOLUME = "IF_VOLUME"
    IF_PROFIT = "IF_PROFIT"
    BUY = "BUY"
    SELL = "SELL"
    BUY_PERCENT = "BUY_PERCENT"
    SELL_PERCENT = "SELL_PERCENT"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    TRAILING_STOP = "TRAILING_STOP"


# ── Typed parameters ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class PriceThresholdParams:
    threshold: float


@dataclass(frozen=True)
class ChangePercentParams:
    percent: float
    direction: Literal["up", "down", "both"] = "up"


@dataclass(frozen=True)
class DateParams:
    """Exact-date or scheduled trigger.

    With ``date`` set the trigger fires only on that bar.  Otherwise
    ``interval`` selects a schedule: ``weekly`` / ``biweekly`` on
    ``day_of_week``, ``monthly`` on ``day_of_month``.
    """

    date: Optional[str] = None
    interval: Optional[Literal["weekly", "biweekly", "monthly"]] = None
    day_of_week: str = "monday"
    day_of_month: int = 1


@dataclass(frozen=True)
class RsiParams:
    operator: Literal["above", "below"]
    value: float
    period: int = 14


@dataclass(frozen=True)
class MovingAverageParams:
    cross_direction: Literal["above", "below"]
    period: int = 20
    ma_type: Literal["sma", "ema"] = "sma"

    @property
    def series_key(self) -> str:
        """Key of this average in the lazily-populated indicator map."""
        return f"{self.ma_type}_{self.period}"


@dataclass(frozen=True)
class VolumeParams:
    multiplier: float = 1.5
    period: int = 20


@dataclass(frozen=True)
class ProfitParams:
    target: Literal["profit", "loss"]
    percent: float


@dataclass(frozen=True)
class AmountParams:
    amount: float


@dataclass(frozen=True)
class PercentParams:
    percent: float


NodeParams = Union[
    PriceThresholdParams,
    ChangePercentParams,
    DateParams,
    RsiParams,
    MovingAverageParams,
    VolumeParams,
    ProfitParams,
    AmountParams,
    PercentParams,
]


# Every operation, its node kind and the parameter type it carries.
OPERATION_SPECS: dict[Operation, tuple[NodeKind, type]] = {
    Operation.WHEN_PRICE_ABOVE: (NodeKind.TRIGGER, PriceThresholdParams),
    Operation.WHEN_PRICE_BELOW: (NodeKind.TRIGGER, PriceThresholdParams),
    Operation.WHEN_CHANGE_PERCENT: (NodeKind.TRIGGER, ChangePercentParams),
    Operation.WHEN_DATE: (NodeKind.TRIGGER, DateParams),
    Operation.IF_RSI: (NodeKind.CONDITION, RsiParams),
    Operation.IF_MOVING_AVG: (NodeKind.CONDITION, MovingAverageParams),
    Operation.IF_VOLUME: (NodeKind.CONDITION, VolumeParams),
    Operation.IF_PROFIT: (NodeKind.CONDITION, ProfitParams),
    Operation.BUY: (NodeKind.ACTION, AmountParams),
    Operation.SELL: (NodeKind.ACTION, AmountParams),
    Operation.BUY_PERCENT: (NodeKind.ACTION, PercentParams),
    Operation.SELL_PERCENT: (NodeKind.ACTION, PercentParams),
    Operation.STOP_LOSS: (NodeKind.MODIFIER, PercentParams),
    Operation.TAKE_PROFIT: (NodeKind.MODIFIER, PercentParams),
    Operation.TRAILING_STOP: (NodeKind.MODIFIER, PercentParams),
}


@dataclass(frozen=True)
class StrategyNode:
    """One node of a strategy tree.

    A node's children are evaluated only on bars where the node's own
    predicate held (logical AND through nesting).  Actions and modifiers
    are always leaves.
    """

    id: str
    kind: NodeKind
    operation: Operation
    params: NodeParams
    children: tuple["StrategyNode", ...] = ()

    def walk(self):
        """Yield this node and all descendants, depth-first."""
        yield self
        for child in self.children:
            yield from child.walk()


# ── Preset catalog entries ───────────────────────────────────────────────

STRATEGY_CATEGORIES = (
    "trend", "momentum", "value", "dca",
    "protection", "volatility", "reversal", "scalper",
)


@dataclass(frozen=True)
class PresetStrategy:
    """A named, pre-authored rule combination from the preset catalog."""

    id: str
    name: str
    category: str
    risk_level: Literal["low", "medium", "high"]
    nodes: tuple[StrategyNode, ...]
    description: str = ""
    icon: str = ""
    color: str = ""

    @property
    def protection_type(self) -> Optional[Operation]:
        """The exit modifier a protection preset applies, if any."""
        if self.category != "protection":
            return None
        for node in self.nodes:
            for inner in node.walk():
                if inner.kind is NodeKind.MODIFIER:
                    return inner.operation
        return None

    @property
    def is_stop_type(self) -> bool:
        return self.protection_type in (Operation.STOP_LOSS, Operation.TRAILING_STOP)

    @property
    def is_take_profit_type(self) -> bool:
        return self.protection_type is Operation.TAKE_PROFIT


@dataclass(frozen=True)
class AssetSeries:
    """One asset's price history for a unified portfolio run."""

    symbol: str
    bars: list[Bar] = field(default_factory=list)
    name: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.symbol
