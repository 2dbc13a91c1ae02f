"""Simulation engine — replays one asset's bars through a strategy tree.

Iterates bars chronologically, evaluating the strategy against a
cash/position ledger owned by the run.  No real orders are placed.
"""

import logging
from typing import Optional, Sequence

from stratlab.backtest.evaluator import BarContext, SingleAssetLedger, TreeEvaluator
from stratlab.backtest.indicator_set import IndicatorSet, build_indicator_set
from stratlab.backtest.models import SimulationResult, Transaction, UnifiedPortfolioResult
from stratlab.backtest.stats import calculate_stats
from stratlab.backtest.unified import UnifiedPortfolioEngine
from stratlab.config import Config
from stratlab.errors import SimulationPreconditionError
from stratlab.strategy.labels import BUY_AND_HOLD_COLOR, BUY_AND_HOLD_ICON, EngineLabels
from stratlab.strategy.models import AssetSeries, Bar, StrategyNode

logger = logging.getLogger("stratlab.engine")


def _require_positive(name: str, value: float) -> None:
    if not value > 0:
        raise SimulationPreconditionError(f"{name} must be positive, got {value}")


class SimulationEngine:
    """Runs single-asset and unified simulations.

    Args:
        config: Application configuration (tree depth cap).
        labels: Annotation strings for transactions and events.
    """

    def __init__(self, config: Optional[Config] = None,
                 labels: Optional[EngineLabels] = None) -> None:
        self._config = config or Config()
        self._labels = labels or EngineLabels()
        self._evaluator = TreeEvaluator(self._labels, self._config.max_tree_depth)
        self._bars: list[Bar] = []
        self._symbol = ""
        self._name = ""
        self._indicators: Optional[IndicatorSet] = None

    # ── Data ─────────────────────────────────────────────────────────────

    def set_price_data(self, bars: Sequence[Bar], symbol: str = "", name: str = "") -> None:
        """Load the price series later runs operate on."""
        self._bars = list(bars)
        self._symbol = symbol
        self._name = name or symbol
        self._indicators = build_indicator_set(self._bars) if self._bars else None

    @property
    def price_data(self) -> list[Bar]:
        return self._bars

    @property
    def indicators(self) -> Optional[IndicatorSet]:
        """Indicators of the most recent run (or of the loaded series)."""
        return self._indicators

    def _require_data(self) -> None:
        if not self._bars:
            raise SimulationPreconditionError(
                "No price data loaded. Call set_price_data first."
            )

    # ── Public API ───────────────────────────────────────────────────────

    def run_simulation(self, investment: float,
                       nodes: Sequence[StrategyNode]) -> SimulationResult:
        """Execute *nodes* over the loaded series starting with *investment* cash.

        Raises ``SimulationPreconditionError`` when no data is loaded or
        *investment* is not positive.
        """
        self._require_data()
        _require_positive("investment", investment)

        nodes = tuple(nodes)
        indicators = build_indicator_set(self._bars, nodes)
        self._indicators = indicators
        ledger = SingleAssetLedger(investment, self._symbol)
        equity_curve: list[float] = []

        for i, bar in enumerate(self._bars):
            # 1 — Peak tracking precedes any exit checks on this bar
            ledger.update_peak(self._symbol, bar.close)

            # 2 — Walk the tree
            ctx = BarContext(self._symbol, self._name, i, indicators)
            self._evaluator.evaluate(nodes, ctx, ledger)

            equity_curve.append(ledger.cash + ledger.position(self._symbol) * bar.close)

        final_value = equity_curve[-1]
        profit_loss = final_value - investment
        logger.debug(
            "Simulation over %d bars: %d transactions, final value %.2f",
            len(self._bars), len(ledger.transactions), final_value,
        )
        return SimulationResult(
            initial_value=investment,
            final_value=final_value,
            profit_loss=profit_loss,
            profit_percentage=profit_loss / investment * 100.0,
            transactions=ledger.transactions,
            equity_curve=equity_curve,
            stats=calculate_stats(
                ((t.type, t.value) for t in ledger.transactions),
                equity_curve, investment,
            ),
            price_history=self._bars,
        )

    def run_buy_and_hold(self, investment: float) -> SimulationResult:
        """Buy with all cash on the first bar and hold to the last."""
        self._require_data()
        _require_positive("investment", investment)

        first = self._bars[0]
        units = investment / first.close
        equity_curve = [units * bar.close for bar in self._bars]
        final_value = equity_curve[-1]
        profit_loss = final_value - investment

        purchase = Transaction(
            date=first.date,
            type="buy",
            price=first.close,
            amount=units,
            value=investment,
            reason="Initial purchase - Buy & Hold strategy",
            strategy_name=self._labels.buy_and_hold,
            strategy_icon=BUY_AND_HOLD_ICON,
            strategy_color=BUY_AND_HOLD_COLOR,
            trigger_type="trigger",
            trigger_details="Full investment purchased at once",
            indicator_value=f"${first.close:.2f}",
        )
        return SimulationResult(
            initial_value=investment,
            final_value=final_value,
            profit_loss=profit_loss,
            profit_percentage=profit_loss / investment * 100.0,
            transactions=[purchase],
            equity_curve=equity_curve,
            stats=calculate_stats([("buy", investment)], equity_curve, investment),
            price_history=self._bars,
        )

    def run_unified_portfolio_simulation(
        self,
        assets: Sequence[AssetSeries],
        nodes: Sequence[StrategyNode],
        initial_cash: float,
    ) -> UnifiedPortfolioResult:
        """Trade every asset in *assets* against one shared cash pool.

        See ``UnifiedPortfolioEngine.run``.
        """
        engine = UnifiedPortfolioEngine(self._evaluator, self._labels)
        return engine.run(assets, nodes, initial_cash)
