"""Backtest result types — transactions, portfolio events and run summaries."""

import datetime
from dataclasses import dataclass, field
from typing import Literal, Optional

from stratlab.strategy.models import Bar

TransactionType = Literal["buy", "sell", "skip_buy", "skip_sell"]
TriggerType = Literal["trigger", "condition", "modifier"]


def _now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


@dataclass(frozen=True)
class Transaction:
    """One fired action or modifier in a single-asset run.

    Skipped actions (``skip_buy`` / ``skip_sell``) leave cash and
    position unchanged; ``amount`` is 0 for them.
    """

    date: str
    type: TransactionType
    price: float
    amount: float  # units
    value: float  # cash
    reason: str
    strategy_name: Optional[str] = None
    strategy_icon: Optional[str] = None
    strategy_color: Optional[str] = None
    trigger_type: Optional[TriggerType] = None
    trigger_details: Optional[str] = None
    indicator_value: Optional[str] = None


@dataclass(frozen=True)
class RunStats:
    """Summary statistics for one run's transactions and equity curve."""

    buy_count: int = 0
    sell_count: int = 0
    skip_count: int = 0
    total_bought: float = 0.0
    total_sold: float = 0.0
    max_drawdown_pct: float = 0.0
    sharpe_ratio: float = 0.0


@dataclass(frozen=True)
class SimulationResult:
    initial_value: float
    final_value: float
    profit_loss: float
    profit_percentage: float
    transactions: list[Transaction] = field(default_factory=list)
    equity_curve: list[float] = field(default_factory=list)
    stats: RunStats = field(default_factory=RunStats)
    price_history: list[Bar] = field(default_factory=list)
    calculated_at: str = field(default_factory=_now_iso)


# ── Unified portfolio ────────────────────────────────────────────────────


@dataclass(frozen=True)
class PortfolioEvent:
    """Self-describing record of one action attempt in a unified run.

    ``cash_after``, ``positions_after`` and ``portfolio_value_after``
    snapshot the whole portfolio right after this event, so the log can
    be audited without replaying earlier events.
    """

    date: str
    symbol: str
    symbol_name: str
    event_type: TransactionType
    price: float
    reason: str
    cash_after: float
    positions_after: dict[str, float]
    portfolio_value_after: float
    amount: Optional[float] = None
    value: Optional[float] = None
    strategy_name: Optional[str] = None
    strategy_icon: Optional[str] = None
    strategy_color: Optional[str] = None
    trigger_type: Optional[TriggerType] = None
    trigger_details: Optional[str] = None
    indicator_value: Optional[str] = None


@dataclass(frozen=True)
class PositionValue:
    amount: float
    value: float


@dataclass(frozen=True)
class AssetSummary:
    """Per-asset totals at the end of a unified run.

    ``total_profit_loss`` is sold − bought + current value;
    ``unrealized_profit_loss`` marks the open position against its last
    entry price.
    """

    symbol: str
    name: str
    total_bought: float
    total_sold: float
    current_position: float
    current_value: float
    total_profit_loss: float
    unrealized_profit_loss: float
    buy_count: int
    sell_count: int
    skip_count: int


@dataclass(frozen=True)
class UnifiedPortfolioResult:
    initial_cash: float
    final_cash: float
    final_positions: dict[str, PositionValue]
    final_portfolio_value: float
    profit_loss: float
    profit_percentage: float
    events: list[PortfolioEvent] = field(default_factory=list)
    asset_summaries: list[AssetSummary] = field(default_factory=list)
    equity_curve: list[float] = field(default_factory=list)
    stats: RunStats = field(default_factory=RunStats)
    calculated_at: str = field(default_factory=_now_iso)
