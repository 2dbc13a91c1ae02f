"""Unified portfolio engine — many assets, one shared cash pool.

Dates from every asset are merged and replayed chronologically.  On each
date, assets that have a bar are evaluated in the order the caller listed
them, so an earlier asset can spend cash a later asset would have used
that same day.  Unfundable buys and empty sells are recorded as
``skip_buy`` / ``skip_sell`` events; they never abort the run.
"""

import logging
from typing import Optional, Sequence

from stratlab.backtest.evaluator import Attribution, BarContext, TreeEvaluator, UnifiedLedger
from stratlab.backtest.indicator_set import IndicatorSet, build_indicator_set
from stratlab.backtest.models import (
    AssetSummary,
    PortfolioEvent,
    PositionValue,
    UnifiedPortfolioResult,
)
from stratlab.backtest.stats import calculate_stats
from stratlab.errors import SimulationPreconditionError
from stratlab.strategy.labels import BUY_AND_HOLD_COLOR, BUY_AND_HOLD_ICON, EngineLabels
from stratlab.strategy.models import AssetSeries, StrategyNode

logger = logging.getLogger("stratlab.unified")


class UnifiedPortfolioEngine:
    """Runs one strategy across several assets sharing a cash balance.

    Args:
        evaluator: Tree evaluator (defaults to a fresh one).
        labels: Annotation strings.
    """

    def __init__(self, evaluator: Optional[TreeEvaluator] = None,
                 labels: Optional[EngineLabels] = None) -> None:
        self._labels = labels or EngineLabels()
        self._evaluator = evaluator or TreeEvaluator(self._labels)

    # ── Public API ───────────────────────────────────────────────────────

    def run(
        self,
        assets: Sequence[AssetSeries],
        nodes: Sequence[StrategyNode],
        initial_cash: float,
    ) -> UnifiedPortfolioResult:
        """Simulate *nodes* on every asset with *initial_cash* shared.

        An empty strategy short-circuits to buy & hold with the cash split
        evenly across assets.

        Raises ``SimulationPreconditionError`` on an empty asset list,
        duplicate symbols or non-positive cash.
        """
        if not assets:
            raise SimulationPreconditionError("No assets provided")
        if not initial_cash > 0:
            raise SimulationPreconditionError(
                f"initial_cash must be positive, got {initial_cash}"
            )
        symbols = tuple(a.symbol for a in assets)
        if len(set(symbols)) != len(symbols):
            raise SimulationPreconditionError(f"Duplicate asset symbols in {symbols}")

        nodes = tuple(nodes)
        if not nodes:
            return self._buy_and_hold(assets, initial_cash)

        # Per-asset date → bar index for O(1) lookup
        date_index = _date_index(assets)
        all_dates = sorted({bar.date for a in assets for bar in a.bars})
        indicators: dict[str, IndicatorSet] = {
            a.symbol: build_indicator_set(a.bars, nodes) for a in assets
        }
        ledger = UnifiedLedger(initial_cash, symbols)
        equity_curve: list[float] = []

        for date in all_dates:
            present = [a for a in assets if date in date_index[a.symbol]]

            # 1 — Mark every asset trading today before anyone acts
            for asset in present:
                price = asset.bars[date_index[asset.symbol][date]].close
                ledger.mark(asset.symbol, price)
                ledger.update_peak(asset.symbol, price)

            # 2 — Evaluate in caller order against the shared ledger
            for asset in present:
                ctx = BarContext(
                    symbol=asset.symbol,
                    symbol_name=asset.display_name,
                    index=date_index[asset.symbol][date],
                    indicators=indicators[asset.symbol],
                )
                self._evaluator.evaluate(nodes, ctx, ledger)

            equity_curve.append(ledger.portfolio_value())

        logger.debug(
            "Unified run over %d assets and %d dates: %d events",
            len(assets), len(all_dates), len(ledger.events),
        )
        return _build_result(assets, ledger, equity_curve, initial_cash)

    # ── Helpers ──────────────────────────────────────────────────────────

    def _buy_and_hold(self, assets: Sequence[AssetSeries],
                      initial_cash: float) -> UnifiedPortfolioResult:
        """Split cash evenly and hold every asset from its first bar.

        Purchases are replayed in date order (caller order on the same
        date), so each event snapshots the portfolio as of its own date.
        Until an asset's first bar its share is unspent cash; an asset
        with no bars keeps its share as cash.
        """
        share = initial_cash / len(assets)
        date_index = _date_index(assets)
        starts = {a.symbol: a.bars[0].date for a in assets if a.bars}
        all_dates = sorted({bar.date for a in assets for bar in a.bars})
        ledger = UnifiedLedger(initial_cash, tuple(a.symbol for a in assets))
        equity_curve: list[float] = []

        for date in all_dates:
            present = [a for a in assets if date in date_index[a.symbol]]
            for asset in present:
                ledger.mark(asset.symbol, asset.bars[date_index[asset.symbol][date]].close)

            for asset in present:
                if starts[asset.symbol] != date:
                    continue
                ctx = BarContext(
                    symbol=asset.symbol,
                    symbol_name=asset.display_name,
                    index=0,
                    indicators=build_indicator_set(asset.bars),
                )
                ledger.buy(ctx, share, "Buy & Hold initial purchase", Attribution(
                    strategy_name=self._labels.buy_and_hold,
                    strategy_icon=BUY_AND_HOLD_ICON,
                    strategy_color=BUY_AND_HOLD_COLOR,
                    trigger_type="trigger",
                    trigger_details="Equal share of cash purchased at once",
                    indicator_value=f"${ctx.price:.2f}",
                ))

            equity_curve.append(ledger.portfolio_value())

        return _build_result(assets, ledger, equity_curve, initial_cash)


def _date_index(assets: Sequence[AssetSeries]) -> dict[str, dict[str, int]]:
    return {a.symbol: {bar.date: i for i, bar in enumerate(a.bars)} for a in assets}


def _last_close(asset: AssetSeries) -> float:
    return asset.bars[-1].close if asset.bars else 0.0


def _build_result(assets: Sequence[AssetSeries], ledger: UnifiedLedger,
                  equity_curve: list[float], initial_cash: float) -> UnifiedPortfolioResult:
    """Value final positions at each asset's last close and summarize."""
    final_positions: dict[str, PositionValue] = {}
    for asset in assets:
        units = ledger.position(asset.symbol)
        final_positions[asset.symbol] = PositionValue(
            amount=units, value=units * _last_close(asset),
        )
    final_value = ledger.cash + sum(p.value for p in final_positions.values())
    profit_loss = final_value - initial_cash

    return UnifiedPortfolioResult(
        initial_cash=initial_cash,
        final_cash=ledger.cash,
        final_positions=final_positions,
        final_portfolio_value=final_value,
        profit_loss=profit_loss,
        profit_percentage=profit_loss / initial_cash * 100.0,
        events=ledger.events,
        asset_summaries=[
            _summarize(asset, ledger.events, ledger.position(asset.symbol),
                       ledger.entry_price(asset.symbol))
            for asset in assets
        ],
        equity_curve=equity_curve,
        stats=calculate_stats(
            ((e.event_type, e.value) for e in ledger.events),
            equity_curve, initial_cash,
        ),
    )


def _summarize(asset: AssetSeries, events: Sequence[PortfolioEvent],
               position: float, entry_price: float) -> AssetSummary:
    own = [e for e in events if e.symbol == asset.symbol]
    buys = [e for e in own if e.event_type == "buy"]
    sells = [e for e in own if e.event_type == "sell"]
    skips = [e for e in own if e.event_type in ("skip_buy", "skip_sell")]

    total_bought = sum(e.value or 0.0 for e in buys)
    total_sold = sum(e.value or 0.0 for e in sells)
    current_value = position * _last_close(asset)
    return AssetSummary(
        symbol=asset.symbol,
        name=asset.display_name,
        total_bought=total_bought,
        total_sold=total_sold,
        current_position=position,
        current_value=current_value,
        total_profit_loss=total_sold - total_bought + current_value,
        unrealized_profit_loss=current_value - position * entry_price,
        buy_count=len(buys),
        sell_count=len(sells),
        skip_count=len(skips),
    )
