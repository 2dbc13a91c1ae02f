"""StrategyOptimizer — market-aware, phased search over preset combinations.

Phases run in a fixed order::

    analyzing → single → pairs → triples → complete

The market classifier narrows the preset catalog to entry strategies that
suit the series plus a protection set.  Every candidate is a complete
simulation run, single-asset or unified depending on the entry point.
Control returns to the event loop after each batch of simulations so a
long search never starves other tasks.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Literal, Optional, Sequence

from stratlab.backtest.engine import SimulationEngine
from stratlab.backtest.models import SimulationResult, Transaction, UnifiedPortfolioResult
from stratlab.config import Config
from stratlab.errors import SimulationPreconditionError
from stratlab.strategy.market import MarketAnalysis, analyze_market
from stratlab.strategy.models import AssetSeries, Bar, Operation, PresetStrategy, StrategyNode
from stratlab.strategy.presets import BASE_STRATEGY_IDS, FALLBACK_PROTECTION_IDS, load_presets

logger = logging.getLogger("stratlab.optimizer")

Phase = Literal["analyzing", "single", "pairs", "triples", "complete"]

BUY_AND_HOLD_NAME = "Buy & Hold"
TOP_CANDIDATES = 5
MAX_PROTECTIONS_PER_SIDE = 3

# Protection sub-types that may be stacked on one strategy.
_COMPLEMENTARY_PROTECTIONS = (
    frozenset({Operation.STOP_LOSS, Operation.TAKE_PROFIT}),
    frozenset({Operation.TRAILING_STOP, Operation.TAKE_PROFIT}),
)


@dataclass(frozen=True)
class AssetResult:
    symbol: str
    name: str
    profit_percentage: float


@dataclass(frozen=True)
class OptimizationResult:
    """One evaluated strategy combination.

    ``asset_results`` and ``win_rate`` are only set by the multi-asset
    search; ``win_rate`` is the percentage of assets that ended in profit.
    """

    strategy_ids: list[str]
    strategy_names: list[str]
    result: SimulationResult
    profit_percentage: float
    is_profitable: bool
    asset_results: Optional[list[AssetResult]] = None
    win_rate: Optional[float] = None

    @property
    def component_count(self) -> int:
        return len(self.strategy_ids)


@dataclass(frozen=True)
class OptimizationProgress:
    current: int
    total: int
    current_strategy: str
    best_so_far: Optional[OptimizationResult]
    profitable_count: int
    phase: Phase
    market_condition: Optional[str] = None


ProgressCallback = Callable[[OptimizationProgress], None]


# ── Candidate selection ──────────────────────────────────────────────────


def strategies_for_market(
    analysis: MarketAnalysis, presets: dict[str, PresetStrategy],
) -> list[PresetStrategy]:
    """Presets in a recommended category, plus the base strategies.

    Catalog order is kept; base strategies missing from the filter are
    appended in their listed order.
    """
    chosen = [p for p in presets.values() if p.category in analysis.recommended_categories]
    seen = {p.id for p in chosen}
    for preset_id in BASE_STRATEGY_IDS:
        if preset_id in presets and preset_id not in seen:
            chosen.append(presets[preset_id])
            seen.add(preset_id)
    return chosen


def are_compatible(first: PresetStrategy, second: PresetStrategy) -> bool:
    """Whether two presets may be combined into one strategy.

    Two DCA presets never combine.  Two protection presets combine only
    as stop-loss + take-profit or trailing-stop + take-profit.
    """
    if first.category == "dca" and second.category == "dca":
        return False
    if first.category == "protection" and second.category == "protection":
        pair = frozenset({first.protection_type, second.protection_type})
        return pair in _COMPLEMENTARY_PROTECTIONS
    return True


def rank_results(results: Sequence[OptimizationResult]) -> list[OptimizationResult]:
    """Best first: higher profit, then fewer components, then test order."""
    order = {id(r): i for i, r in enumerate(results)}
    return sorted(
        results,
        key=lambda r: (-r.profit_percentage, r.component_count, order[id(r)]),
    )


def estimate_total(entry_count: int, protection_count: int) -> int:
    """Expected number of simulations for a search, Buy & Hold included."""
    side = min(MAX_PROTECTIONS_PER_SIDE, protection_count)
    return (
        1
        + entry_count
        + entry_count * (entry_count - 1) // 2
        + entry_count * protection_count
        + TOP_CANDIDATES * side * side
    )


def _collect_nodes(strategies: Sequence[PresetStrategy]) -> tuple[StrategyNode, ...]:
    return tuple(node for s in strategies for node in s.nodes)


def unified_to_simulation_result(unified: UnifiedPortfolioResult) -> SimulationResult:
    """Flatten a unified run into a ``SimulationResult`` of buys and sells."""
    transactions = [
        Transaction(
            date=e.date,
            type=e.event_type,
            price=e.price,
            amount=e.amount or 0.0,
            value=e.value or 0.0,
            reason=e.reason,
            strategy_name=e.strategy_name,
            strategy_icon=e.strategy_icon,
            strategy_color=e.strategy_color,
            trigger_type=e.trigger_type,
            trigger_details=e.trigger_details,
            indicator_value=e.indicator_value,
        )
        for e in unified.events
        if e.event_type in ("buy", "sell")
    ]
    return SimulationResult(
        initial_value=unified.initial_cash,
        final_value=unified.final_portfolio_value,
        profit_loss=unified.profit_loss,
        profit_percentage=unified.profit_percentage,
        transactions=transactions,
        equity_curve=unified.equity_curve,
        stats=unified.stats,
        calculated_at=unified.calculated_at,
    )


# ── Search state ─────────────────────────────────────────────────────────


class _Search:
    """Mutable bookkeeping for one optimization call."""

    def __init__(
        self,
        run: Callable[[Sequence[StrategyNode]], OptimizationResult],
        total: int,
        batch_size: int,
        market_condition: str,
        on_progress: Optional[ProgressCallback],
        label_suffix: str = "",
    ) -> None:
        self._run = run
        self.total = total
        self._batch_size = batch_size
        self._batch_count = 0
        self._market_condition = market_condition
        self._on_progress = on_progress
        self._label_suffix = label_suffix
        self.results: list[OptimizationResult] = []
        self.best: Optional[OptimizationResult] = None
        self.profitable_count = 0
        self.test_count = 0

    def report(self, phase: Phase, label: str, current: int, total: int) -> None:
        if self._on_progress is None:
            return
        self._on_progress(OptimizationProgress(
            current=current,
            total=total,
            current_strategy=label,
            best_so_far=self.best,
            profitable_count=self.profitable_count,
            phase=phase,
            market_condition=self._market_condition,
        ))

    def record(self, result: OptimizationResult) -> None:
        self.results.append(result)
        if result.is_profitable:
            self.profitable_count += 1
        if self.best is None or result.profit_percentage > self.best.profit_percentage:
            self.best = result

    async def test(
        self,
        strategies: Sequence[PresetStrategy],
        phase: Phase,
        names: Optional[list[str]] = None,
    ) -> None:
        self.test_count += 1
        self._batch_count += 1
        if self.test_count > self.total:
            self.total = self.test_count + 20
        if self._batch_count >= self._batch_size:
            self._batch_count = 0
            await asyncio.sleep(0)

        names = names if names is not None else [s.name for s in strategies]
        label = " + ".join(names)
        self.report(phase, label + self._label_suffix, self.test_count, self.total)

        try:
            outcome = self._run(_collect_nodes(strategies))
        except Exception as exc:
            logger.error("Error testing %s: %s", label, exc)
            return
        self.record(OptimizationResult(
            strategy_ids=[s.id for s in strategies],
            strategy_names=names,
            result=outcome.result,
            profit_percentage=outcome.profit_percentage,
            is_profitable=outcome.is_profitable,
            asset_results=outcome.asset_results,
            win_rate=outcome.win_rate,
        ))

    def top_entries(self) -> list[OptimizationResult]:
        """Best results so far with one or two components."""
        ranked = [r for r in rank_results(self.results) if r.strategy_ids]
        return [r for r in ranked[:TOP_CANDIDATES] if r.component_count <= 2]


# ── Optimizer ────────────────────────────────────────────────────────────


class StrategyOptimizer:
    """Searches the preset catalog for the most profitable combinations.

    Args:
        config:  Application configuration (batch sizes, result count,
                 profit target, presets path).
        presets: Catalog override; loaded from ``config.presets_path``
                 when omitted.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        presets: Optional[dict[str, PresetStrategy]] = None,
    ) -> None:
        self._config = config or Config()
        self._presets = presets if presets is not None else load_presets(self._config.presets_path)
        self._engine = SimulationEngine(self._config)

    @property
    def presets(self) -> dict[str, PresetStrategy]:
        return self._presets

    def load_data(self, bars: Sequence[Bar], symbol: str = "", name: str = "") -> None:
        """Set the series single-asset searches run against."""
        self._engine.set_price_data(bars, symbol, name)

    # ── Public API ───────────────────────────────────────────────────────

    async def smart_optimize(
        self,
        investment: float,
        on_progress: Optional[ProgressCallback] = None,
        target_profit: Optional[float] = None,
    ) -> list[OptimizationResult]:
        """Search on the loaded series; returns the best combinations.

        Raises ``SimulationPreconditionError`` when no data is loaded or
        *investment* is not positive.
        """
        if not self._engine.price_data:
            raise SimulationPreconditionError("Price data not loaded. Call load_data first.")
        if not investment > 0:
            raise SimulationPreconditionError(f"investment must be positive, got {investment}")
        target = self._config.target_profit_pct if target_profit is None else target_profit

        def run(nodes: Sequence[StrategyNode]) -> OptimizationResult:
            result = self._engine.run_simulation(investment, nodes)
            return OptimizationResult(
                strategy_ids=[],
                strategy_names=[],
                result=result,
                profit_percentage=result.profit_percentage,
                is_profitable=result.profit_percentage > target,
            )

        analysis = analyze_market(self._engine.price_data)
        search = self._start(analysis, run, self._config.single_batch_size, on_progress)
        await self._announce(search, analysis)

        baseline = self._engine.run_buy_and_hold(investment)
        search.test_count += 1
        search.record(OptimizationResult(
            strategy_ids=[],
            strategy_names=[BUY_AND_HOLD_NAME],
            result=baseline,
            profit_percentage=baseline.profit_percentage,
            is_profitable=baseline.profit_percentage > target,
        ))

        return await self._search(search, analysis)

    async def quick_optimize(
        self,
        investment: float,
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[OptimizationResult]:
        """``smart_optimize`` with a break-even profit target."""
        return await self.smart_optimize(investment, on_progress, 0.0)

    async def multi_asset_optimize(
        self,
        assets: Sequence[AssetSeries],
        investment: float,
        on_progress: Optional[ProgressCallback] = None,
        target_profit: Optional[float] = None,
    ) -> list[OptimizationResult]:
        """Search using unified runs over *assets* with one shared budget.

        The first asset's series drives the market analysis.  Raises
        ``SimulationPreconditionError`` on an empty asset list.
        """
        if not assets:
            raise SimulationPreconditionError("No assets provided")
        if not investment > 0:
            raise SimulationPreconditionError(f"investment must be positive, got {investment}")
        target = self._config.target_profit_pct if target_profit is None else target_profit
        engine = SimulationEngine(self._config)
        share = investment / len(assets)

        def run(nodes: Sequence[StrategyNode]) -> OptimizationResult:
            unified = engine.run_unified_portfolio_simulation(assets, nodes, investment)
            asset_results = [
                AssetResult(
                    symbol=s.symbol,
                    name=s.name,
                    profit_percentage=s.total_profit_loss / share * 100.0,
                )
                for s in unified.asset_summaries
            ]
            winners = sum(1 for a in asset_results if a.profit_percentage > 0)
            return OptimizationResult(
                strategy_ids=[],
                strategy_names=[],
                result=unified_to_simulation_result(unified),
                profit_percentage=unified.profit_percentage,
                is_profitable=unified.profit_percentage > target,
                asset_results=asset_results,
                win_rate=winners / len(assets) * 100.0,
            )

        analysis = analyze_market(assets[0].bars)
        search = self._start(
            analysis, run, self._config.multi_batch_size, on_progress,
            label_suffix=f" ({len(assets)} assets)",
        )
        await self._announce(search, analysis)
        await search.test([], "single", names=[BUY_AND_HOLD_NAME])

        return await self._search(search, analysis)

    # ── Phases ───────────────────────────────────────────────────────────

    def _split(self, analysis: MarketAnalysis) -> tuple[list[PresetStrategy], list[PresetStrategy]]:
        suitable = strategies_for_market(analysis, self._presets)
        entries = [s for s in suitable if s.category != "protection"]
        protections = [s for s in suitable if s.category == "protection"]
        if not protections:
            protections = [
                self._presets[i] for i in FALLBACK_PROTECTION_IDS if i in self._presets
            ]
        return entries, protections

    def _start(self, analysis, run, batch_size, on_progress, label_suffix="") -> _Search:
        entries, protections = self._split(analysis)
        return _Search(
            run=run,
            total=estimate_total(len(entries), len(protections)),
            batch_size=batch_size,
            market_condition=analysis.summary,
            on_progress=on_progress,
            label_suffix=label_suffix,
        )

    async def _announce(self, search: _Search, analysis: MarketAnalysis) -> None:
        logger.info("Market analysis: %s", analysis.summary)
        search.report("analyzing", f"Market analysis: {analysis.summary}", 0, 100)
        await asyncio.sleep(0)

    async def _search(self, search: _Search,
                      analysis: MarketAnalysis) -> list[OptimizationResult]:
        entries, protections = self._split(analysis)
        stops = [p for p in protections if p.is_stop_type][:MAX_PROTECTIONS_PER_SIDE]
        takes = [p for p in protections if p.is_take_profit_type][:MAX_PROTECTIONS_PER_SIDE]

        logger.info(
            "Phase single: %d entry strategies, %d protections",
            len(entries), len(protections),
        )
        for entry in entries:
            await search.test([entry], "single")

        logger.info("Phase pairs")
        for i, first in enumerate(entries):
            for second in entries[i + 1:]:
                if are_compatible(first, second):
                    await search.test([first, second], "pairs")
        for entry in entries:
            for protection in protections:
                await search.test([entry, protection], "pairs")

        top = search.top_entries()
        logger.info(
            "Phase triples: %d leaders × %d stops × %d take-profits",
            len(top), len(stops), len(takes),
        )
        for leader in top:
            base = [self._presets[i] for i in leader.strategy_ids]
            for stop in stops:
                for take in takes:
                    await search.test([*base, stop, take], "triples")

        search.report("complete", "Complete!", search.test_count, search.test_count)
        logger.info(
            "Optimization complete: %d tests, %d profitable",
            search.test_count, search.profitable_count,
        )
        return rank_results(search.results)[: self._config.max_results]
