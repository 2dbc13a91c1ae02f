"""Strategy tree evaluator — walks typed nodes once per bar and drives a ledger.

Both simulation engines share this walker.  A node's children run only
on bars where the node's own predicate held; actions execute whenever
they are reached.  Modifiers are exit rules checked on every bar: one
nested under a predicate that did not fire is still evaluated.

Ledgers own all cash/position state of one run.  ``SingleAssetLedger``
records ``Transaction``s; ``UnifiedLedger`` shares one cash pool across
assets and records ``PortfolioEvent``s with a full state snapshot.
"""

import calendar
import datetime
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, runtime_checkable

from stratlab.backtest.indicator_set import IndicatorSet
from stratlab.backtest.models import PortfolioEvent, Transaction, TransactionType, TriggerType
from stratlab.risk.modifiers import (
    drop_from_peak_pct,
    stop_loss_hit,
    take_profit_hit,
    trailing_stop_hit,
    unrealized_pct,
)
from stratlab.strategy.indicators import is_defined
from stratlab.strategy.labels import EngineLabels, build_strategy_info, fill, strategy_info
from stratlab.strategy.loader import WEEKDAYS
from stratlab.strategy.models import Bar, NodeKind, Operation, StrategyNode

MAX_TREE_DEPTH = 10


@dataclass(frozen=True)
class Attribution:
    """Why an action fired: the satisfied ancestor's name and details."""

    strategy_name: str
    strategy_icon: str
    strategy_color: str
    trigger_type: TriggerType
    trigger_details: str
    indicator_value: str


@dataclass(frozen=True)
class BarContext:
    """The bar being evaluated for one asset."""

    symbol: str
    symbol_name: str
    index: int
    indicators: IndicatorSet

    @property
    def bar(self) -> Bar:
        return self.indicators.bars[self.index]

    @property
    def price(self) -> float:
        return self.bar.close

    @property
    def date(self) -> str:
        return self.bar.date


# ── Ledgers ──────────────────────────────────────────────────────────────


@runtime_checkable
class Ledger(Protocol):
    """Cash and position state mutated by actions and modifiers."""

    cash: float

    def position(self, symbol: str) -> float: ...

    def entry_price(self, symbol: str) -> float: ...

    def highest_price(self, symbol: str) -> float: ...

    def buy(self, ctx: BarContext, value: float, reason: str,
            attribution: Optional[Attribution]) -> None: ...

    def sell(self, ctx: BarContext, units: float, reason: str,
             attribution: Optional[Attribution]) -> None: ...

    def skip(self, ctx: BarContext, event_type: TransactionType, reason: str,
             attribution: Optional[Attribution], value: Optional[float] = None) -> None: ...


class PositionBook:
    """Shared cash, per-symbol positions, entry and peak prices.

    Subclasses decide how each state change is recorded.
    """

    def __init__(self, cash: float, symbols: tuple[str, ...] = ()) -> None:
        self.cash = cash
        self._positions: dict[str, float] = {s: 0.0 for s in symbols}
        self._entry_prices: dict[str, float] = {s: 0.0 for s in symbols}
        self._highest_prices: dict[str, float] = {s: 0.0 for s in symbols}

    def position(self, symbol: str) -> float:
        return self._positions.get(symbol, 0.0)

    def entry_price(self, symbol: str) -> float:
        return self._entry_prices.get(symbol, 0.0)

    def highest_price(self, symbol: str) -> float:
        return self._highest_prices.get(symbol, 0.0)

    def update_peak(self, symbol: str, price: float) -> None:
        """Raise the running peak of an open position."""
        if self.position(symbol) > 0 and price > self.highest_price(symbol):
            self._highest_prices[symbol] = price

    def _apply_buy(self, symbol: str, price: float, value: float) -> float:
        units = value / price
        self._positions[symbol] = self.position(symbol) + units
        self.cash -= value
        self._entry_prices[symbol] = price
        self._highest_prices[symbol] = price
        return units

    def _apply_sell(self, symbol: str, price: float, units: float) -> float:
        remaining = self.position(symbol) - units
        if units >= self.position(symbol) or remaining <= 0:
            remaining = 0.0
        self._positions[symbol] = remaining
        value = units * price
        self.cash += value
        if remaining == 0:
            self._entry_prices[symbol] = 0.0
            self._highest_prices[symbol] = 0.0
        return value


class SingleAssetLedger(PositionBook):
    """State of a single-asset run; records ``Transaction``s."""

    def __init__(self, cash: float, symbol: str = "") -> None:
        super().__init__(cash, (symbol,))
        self.symbol = symbol
        self.transactions: list[Transaction] = []

    def buy(self, ctx: BarContext, value: float, reason: str,
            attribution: Optional[Attribution]) -> None:
        units = self._apply_buy(ctx.symbol, ctx.price, value)
        self._record(ctx, "buy", units, value, reason, attribution)

    def sell(self, ctx: BarContext, units: float, reason: str,
             attribution: Optional[Attribution]) -> None:
        value = self._apply_sell(ctx.symbol, ctx.price, units)
        self._record(ctx, "sell", units, value, reason, attribution)

    def skip(self, ctx: BarContext, event_type: TransactionType, reason: str,
             attribution: Optional[Attribution], value: Optional[float] = None) -> None:
        self._record(ctx, event_type, 0.0, value or 0.0, reason, attribution)

    def _record(self, ctx: BarContext, kind: TransactionType, units: Optional[float],
                value: Optional[float], reason: str, attribution: Optional[Attribution]) -> None:
        a = attribution
        self.transactions.append(Transaction(
            date=ctx.date,
            type=kind,
            price=ctx.price,
            amount=units,
            value=value,
            reason=reason,
            strategy_name=a.strategy_name if a else None,
            strategy_icon=a.strategy_icon if a else None,
            strategy_color=a.strategy_color if a else None,
            trigger_type=a.trigger_type if a else None,
            trigger_details=a.trigger_details if a else None,
            indicator_value=a.indicator_value if a else None,
        ))


class UnifiedLedger(PositionBook):
    """One cash pool shared by every asset; records ``PortfolioEvent``s.

    Valuation uses each asset's latest known close (set through
    ``mark``), so an asset without a bar on a date keeps its last value.
    """

    def __init__(self, cash: float, symbols: tuple[str, ...]) -> None:
        super().__init__(cash, symbols)
        self._last_prices: dict[str, float] = {}
        self.events: list[PortfolioEvent] = []

    def mark(self, symbol: str, price: float) -> None:
        self._last_prices[symbol] = price

    def portfolio_value(self) -> float:
        return self.cash + sum(
            units * self._last_prices.get(symbol, 0.0)
            for symbol, units in self._positions.items()
        )

    def buy(self, ctx: BarContext, value: float, reason: str,
            attribution: Optional[Attribution]) -> None:
        units = self._apply_buy(ctx.symbol, ctx.price, value)
        self._record(ctx, "buy", units, value, reason, attribution)

    def sell(self, ctx: BarContext, units: float, reason: str,
             attribution: Optional[Attribution]) -> None:
        value = self._apply_sell(ctx.symbol, ctx.price, units)
        self._record(ctx, "sell", units, value, reason, attribution)

    def skip(self, ctx: BarContext, event_type: TransactionType, reason: str,
             attribution: Optional[Attribution], value: Optional[float] = None) -> None:
        self._record(ctx, event_type, None, value, reason, attribution)

    def _record(self, ctx: BarContext, kind: TransactionType, units: Optional[float],
                value: Optional[float], reason: str, attribution: Optional[Attribution]) -> None:
        a = attribution
        self.events.append(PortfolioEvent(
            date=ctx.date,
            symbol=ctx.symbol,
            symbol_name=ctx.symbol_name,
            event_type=kind,
            price=ctx.price,
            amount=units,
            value=value,
            reason=reason,
            strategy_name=a.strategy_name if a else None,
            strategy_icon=a.strategy_icon if a else None,
            strategy_color=a.strategy_color if a else None,
            trigger_type=a.trigger_type if a else None,
            trigger_details=a.trigger_details if a else None,
            indicator_value=a.indicator_value if a else None,
            cash_after=self.cash,
            positions_after=dict(self._positions),
            portfolio_value_after=self.portfolio_value(),
        ))


# ── Formatting ───────────────────────────────────────────────────────────


def _num(value: float) -> str:
    """Render a parameter the way a user typed it (``5`` not ``5.0``)."""
    if float(value).is_integer():
        return str(int(value))
    return str(value)


# ── Date schedules ───────────────────────────────────────────────────────


def _week_start(day: datetime.date) -> datetime.date:
    return day - datetime.timedelta(days=day.weekday())


def _weekly_fires(dates: list[datetime.date], i: int, weekday: int, every: int) -> bool:
    day = dates[i]
    if day.weekday() < weekday:
        return False
    if every > 1:
        weeks = (_week_start(day) - _week_start(dates[0])).days // 7
        if weeks % every != 0:
            return False
    if i == 0:
        return True
    prev = dates[i - 1]
    return _week_start(prev) != _week_start(day) or prev.weekday() < weekday


def _monthly_fires(dates: list[datetime.date], i: int, day_of_month: int) -> bool:
    day = dates[i]
    target = min(day_of_month, calendar.monthrange(day.year, day.month)[1])
    if day.day < target:
        return False
    if i == 0:
        return True
    prev = dates[i - 1]
    return (prev.year, prev.month) != (day.year, day.month) or prev.day < target


# ── Evaluator ────────────────────────────────────────────────────────────

Handler = Callable[[StrategyNode, BarContext, Ledger, Optional[Attribution]], Optional[Attribution]]


class TreeEvaluator:
    """Evaluates strategy trees against one bar at a time.

    Args:
        labels: Annotation strings (defaults to English).
        max_depth: Nesting depth beyond which evaluation silently stops.
    """

    def __init__(self, labels: Optional[EngineLabels] = None,
                 max_depth: int = MAX_TREE_DEPTH) -> None:
        self.labels = labels or EngineLabels()
        self.max_depth = max_depth
        self._info = build_strategy_info(self.labels)
        self._dispatch: dict[Operation, Handler] = {
            Operation.WHEN_PRICE_ABOVE: self._when_price_above,
            Operation.WHEN_PRICE_BELOW: self._when_price_below,
            Operation.WHEN_CHANGE_PERCENT: self._when_change_percent,
            Operation.WHEN_DATE: self._when_date,
            Operation.IF_RSI: self._if_rsi,
            Operation.IF_MOVING_AVG: self._if_moving_avg,
            Operation.IF_VOLUME: self._if_volume,
            Operation.IF_PROFIT: self._if_profit,
            Operation.BUY: self._buy,
            Operation.SELL: self._sell,
            Operation.BUY_PERCENT: self._buy_percent,
            Operation.SELL_PERCENT: self._sell_percent,
            Operation.STOP_LOSS: self._stop_loss,
            Operation.TAKE_PROFIT: self._take_profit,
            Operation.TRAILING_STOP: self._trailing_stop,
        }

    @property
    def dispatch_table(self) -> dict[Operation, Handler]:
        return dict(self._dispatch)

    # ── Public API ───────────────────────────────────────────────────────

    def evaluate(
        self,
        nodes: tuple[StrategyNode, ...] | list[StrategyNode],
        ctx: BarContext,
        ledger: Ledger,
        attribution: Optional[Attribution] = None,
        depth: int = 0,
    ) -> None:
        """Evaluate *nodes* in order for the bar in *ctx*."""
        if depth > self.max_depth:
            return
        for node in nodes:
            fired = self._dispatch[node.operation](node, ctx, ledger, attribution)
            if not node.children:
                continue
            if fired is not None:
                self.evaluate(node.children, ctx, ledger, fired, depth + 1)
            else:
                self._apply_gated_modifiers(node.children, ctx, ledger, depth + 1)

    def _apply_gated_modifiers(self, nodes: tuple[StrategyNode, ...], ctx: BarContext,
                               ledger: Ledger, depth: int) -> None:
        """Run modifiers sitting below a predicate that did not fire."""
        if depth > self.max_depth:
            return
        for node in nodes:
            if node.kind is NodeKind.MODIFIER:
                self._dispatch[node.operation](node, ctx, ledger, None)
            elif node.children:
                self._apply_gated_modifiers(node.children, ctx, ledger, depth + 1)

    # ── Helpers ──────────────────────────────────────────────────────────

    def _fired(self, node: StrategyNode, details: str, value: str) -> Attribution:
        info = strategy_info(self._info, node.operation)
        kind: TriggerType = "trigger" if node.kind is NodeKind.TRIGGER else "condition"
        return Attribution(
            strategy_name=info.name,
            strategy_icon=info.icon,
            strategy_color=info.color,
            trigger_type=kind,
            trigger_details=details,
            indicator_value=value,
        )

    def _modifier_attribution(self, node: StrategyNode, details: str, value: str) -> Attribution:
        info = strategy_info(self._info, node.operation)
        return Attribution(
            strategy_name=info.name,
            strategy_icon=info.icon,
            strategy_color=info.color,
            trigger_type="modifier",
            trigger_details=details,
            indicator_value=value,
        )

    # ── Triggers ─────────────────────────────────────────────────────────

    def _when_price_above(self, node: StrategyNode, ctx: BarContext, ledger: Ledger,
            attribution: Optional[Attribution]) -> Optional[Attribution]:
        threshold = node.params.threshold
        if ctx.price > threshold:
            return self._fired(node, f"Price rose above ${_num(threshold)}", f"${ctx.price:.2f}")
        return None

    def _when_price_below(self, node: StrategyNode, ctx: BarContext, ledger: Ledger,
            attribution: Optional[Attribution]) -> Optional[Attribution]:
        threshold = node.params.threshold
        if ctx.price < threshold:
            return self._fired(node, f"Price dropped below ${_num(threshold)}", f"${ctx.price:.2f}")
        return None

    def _when_change_percent(self, node: StrategyNode, ctx: BarContext, ledger: Ledger,
            attribution: Optional[Attribution]) -> Optional[Attribution]:
        change = ctx.indicators.price_change[ctx.index]
        if not is_defined(change):
            change = 0.0
        percent = node.params.percent
        direction = node.params.direction
        if direction == "up":
            triggered = change >= percent
            details = f"Price moved up {_num(percent)}%"
        elif direction == "down":
            triggered = change <= -percent
            details = f"Price dropped {_num(percent)}% (dip opportunity)"
        else:
            triggered = abs(change) >= percent
            details = f"Price moved {_num(percent)}%"
        if triggered:
            return self._fired(node, details, f"%{change:.2f}")
        return None

    def _when_date(self, node: StrategyNode, ctx: BarContext, ledger: Ledger,
            attribution: Optional[Attribution]) -> Optional[Attribution]:
        params = node.params
        dates = ctx.indicators.dates
        if params.date is not None:
            triggered = ctx.date[:10] == params.date
        elif params.interval == "monthly":
            triggered = _monthly_fires(dates, ctx.index, params.day_of_month)
        else:
            every = 2 if params.interval == "biweekly" else 1
            triggered = _weekly_fires(dates, ctx.index, WEEKDAYS.index(params.day_of_week), every)
        if triggered:
            return self._fired(node, f"Timing: {params.interval or 'periodic'} buy", ctx.date)
        return None

    # ── Conditions ───────────────────────────────────────────────────────

    def _if_rsi(self, node: StrategyNode, ctx: BarContext, ledger: Ledger,
            attribution: Optional[Attribution]) -> Optional[Attribution]:
        series = ctx.indicators.rsi(node.params.period)
        if series is None or not is_defined(series[ctx.index]):
            return None
        rsi = series[ctx.index]
        value = node.params.value
        if node.params.operator == "above":
            if rsi > value:
                return self._fired(
                    node,
                    f"RSI rose above {_num(value)} - Overbought zone (sell opportunity)",
                    f"RSI: {rsi:.1f}",
                )
        elif rsi < value:
            return self._fired(
                node,
                f"RSI dropped below {_num(value)} - Oversold zone (buy opportunity)",
                f"RSI: {rsi:.1f}",
            )
        return None

    def _if_moving_avg(self, node: StrategyNode, ctx: BarContext, ledger: Ledger,
            attribution: Optional[Attribution]) -> Optional[Attribution]:
        """Crossover: fires only on the bar where price changes sides."""
        params = node.params
        series = ctx.indicators.moving_average(params)
        if series is None:
            return None
        i = ctx.index
        current_ma = series[i]
        prev_ma = series[i - 1] if i > 0 else current_ma
        if not (is_defined(current_ma) and is_defined(prev_ma)):
            return None
        price = ctx.price
        prev_price = ctx.indicators.bars[i - 1].close if i > 0 else price
        label = f"{params.ma_type.upper()}{params.period}"
        if params.cross_direction == "above":
            if prev_price <= prev_ma and price > current_ma:
                return self._fired(node, f"Price crossed above {label} - Uptrend start",
                                   f"MA: ${current_ma:.2f}")
        elif prev_price >= prev_ma and price < current_ma:
            return self._fired(node, f"Price crossed below {label} - Downtrend start",
                               f"MA: ${current_ma:.2f}")
        return None

    def _if_volume(self, node: StrategyNode, ctx: BarContext, ledger: Ledger,
            attribution: Optional[Attribution]) -> Optional[Attribution]:
        series = ctx.indicators.average_volume(node.params.period)
        if series is None:
            return None
        avg = series[ctx.index]
        if not is_defined(avg) or avg <= 0:
            return None
        volume = ctx.bar.volume
        if volume > avg * node.params.multiplier:
            return self._fired(
                node,
                f"Volume {volume / avg:.1f}x above average - Strong interest",
                f"Vol: {volume / 1_000_000:.1f}M",
            )
        return None

    def _if_profit(self, node: StrategyNode, ctx: BarContext, ledger: Ledger,
            attribution: Optional[Attribution]) -> Optional[Attribution]:
        entry = ledger.entry_price(ctx.symbol)
        if ledger.position(ctx.symbol) <= 0 or entry <= 0:
            return None
        pct = unrealized_pct(ctx.price, entry)
        percent = node.params.percent
        if node.params.target == "profit":
            if pct >= percent:
                return self._fired(node, f"Profit target {_num(percent)}% reached",
                                   f"{self.labels.profit}: %{pct:.1f}")
        elif pct <= -percent:
            return self._fired(node, f"Loss limit {_num(percent)}% reached",
                               f"{self.labels.loss}: %{pct:.1f}")
        return None

    # ── Actions ──────────────────────────────────────────────────────────

    def _buy(self, node: StrategyNode, ctx: BarContext, ledger: Ledger,
            attribution: Optional[Attribution]) -> Optional[Attribution]:
        amount = node.params.amount
        reason = attribution.trigger_details if attribution else "Manual buy"
        if ledger.cash >= amount:
            ledger.buy(ctx, amount, reason, attribution)
        else:
            ledger.skip(ctx, "skip_buy", fill(
                self.labels.insufficient_balance,
                cash=f"{ledger.cash:.2f}", required=_num(amount),
            ), attribution, value=amount)
        return None

    def _sell(self, node: StrategyNode, ctx: BarContext, ledger: Ledger,
            attribution: Optional[Attribution]) -> Optional[Attribution]:
        units = min(ledger.position(ctx.symbol), node.params.amount / ctx.price)
        reason = attribution.trigger_details if attribution else "Manual sell"
        if units > 0:
            ledger.sell(ctx, units, reason, attribution)
        else:
            ledger.skip(ctx, "skip_sell",
                        fill(self.labels.cannot_sell, symbol=ctx.symbol_name),
                        attribution)
        return None

    def _buy_percent(self, node: StrategyNode, ctx: BarContext, ledger: Ledger,
            attribution: Optional[Attribution]) -> Optional[Attribution]:
        percent = node.params.percent
        amount = ledger.cash * percent / 100.0
        reason = attribution.trigger_details if attribution else f"Buy with {_num(percent)}% of cash"
        if amount > 0 and ledger.cash >= amount:
            ledger.buy(ctx, amount, reason, attribution)
        else:
            ledger.skip(ctx, "skip_buy",
                        fill(self.labels.insufficient_cash, cash=f"{ledger.cash:.2f}"),
                        attribution, value=amount)
        return None

    def _sell_percent(self, node: StrategyNode, ctx: BarContext, ledger: Ledger,
            attribution: Optional[Attribution]) -> Optional[Attribution]:
        percent = node.params.percent
        units = ledger.position(ctx.symbol) * percent / 100.0
        reason = attribution.trigger_details if attribution else f"Sell {_num(percent)}% of position"
        if units > 0:
            ledger.sell(ctx, units, reason, attribution)
        else:
            ledger.skip(ctx, "skip_sell",
                        fill(self.labels.cannot_sell, symbol=ctx.symbol_name),
                        attribution)
        return None

    # ── Modifiers ────────────────────────────────────────────────────────

    def _stop_loss(self, node: StrategyNode, ctx: BarContext, ledger: Ledger,
            attribution: Optional[Attribution]) -> Optional[Attribution]:
        position = ledger.position(ctx.symbol)
        if position <= 0:
            return None
        percent = node.params.percent
        pct = unrealized_pct(ctx.price, ledger.entry_price(ctx.symbol))
        if stop_loss_hit(ctx.price, ledger.entry_price(ctx.symbol), percent):
            ledger.sell(
                ctx, position,
                f"Stop Loss triggered - Loss reached {abs(pct):.1f}%",
                self._modifier_attribution(
                    node,
                    fill(self.labels.loss_limit_exceeded, percent=_num(percent)),
                    f"{self.labels.loss}: %{pct:.1f}",
                ),
            )
        return None

    def _take_profit(self, node: StrategyNode, ctx: BarContext, ledger: Ledger,
            attribution: Optional[Attribution]) -> Optional[Attribution]:
        position = ledger.position(ctx.symbol)
        if position <= 0:
            return None
        percent = node.params.percent
        pct = unrealized_pct(ctx.price, ledger.entry_price(ctx.symbol))
        if take_profit_hit(ctx.price, ledger.entry_price(ctx.symbol), percent):
            ledger.sell(
                ctx, position,
                f"Take Profit triggered - Profit reached {pct:.1f}%",
                self._modifier_attribution(
                    node,
                    f"Profit target {_num(percent)}% reached, profit realized",
                    f"{self.labels.profit}: %{pct:.1f}",
                ),
            )
        return None

    def _trailing_stop(self, node: StrategyNode, ctx: BarContext, ledger: Ledger,
            attribution: Optional[Attribution]) -> Optional[Attribution]:
        position = ledger.position(ctx.symbol)
        if position <= 0:
            return None
        percent = node.params.percent
        peak = ledger.highest_price(ctx.symbol)
        if trailing_stop_hit(ctx.price, peak, percent):
            ledger.sell(
                ctx, position,
                f"Trailing Stop triggered - {drop_from_peak_pct(ctx.price, peak):.1f}% drop from peak",
                self._modifier_attribution(
                    node,
                    f"Price dropped {_num(percent)}% from peak (${peak:.2f} -> ${ctx.price:.2f})",
                    f"{self.labels.peak}: ${peak:.2f}",
                ),
            )
        return None
