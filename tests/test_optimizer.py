"""Tests for stratlab.optimizer — phased preset search, progress and ranking.

A six-preset catalog keeps the search small enough to count exactly.
On a series shorter than 14 bars the classifier recommends dca and
protection, so the search sees:

    entries:     dca_weekly, dca_monthly, buy_dip_5 (base strategy)
    protections: stop_loss_10, take_profit_15, trailing_stop_5

    Buy & Hold                          1
    singles                             3
    entry pairs (two DCA never pair)    2
    entry × protection                  9
    5 leaders × 2 stops × 1 take       10
                                       --
                                       25
"""

import asyncio
import datetime
import logging

import pytest

from stratlab.backtest.models import SimulationResult
from stratlab.config import Config
from stratlab.errors import SimulationPreconditionError
from stratlab.optimizer.optimizer import (
    OptimizationResult,
    StrategyOptimizer,
    _Search,
    are_compatible,
    estimate_total,
    rank_results,
)
from stratlab.strategy.loader import parse_preset
from stratlab.strategy.models import AssetSeries, Bar
from stratlab.strategy.presets import get_presets

EXPECTED_TESTS = 25


# ── Helpers ──────────────────────────────────────────────────────────────


def _make_bar(date, close):
    return Bar(date=date, open=close, high=close, low=close, close=close, volume=1000.0)


def _bars(closes, start=datetime.date(2024, 1, 1)):
    return [
        _make_bar((start + datetime.timedelta(days=i)).isoformat(), c)
        for i, c in enumerate(closes)
    ]


CLOSES = [100.0, 94.0, 96.0, 101.0, 108.0, 99.0, 93.0, 97.0, 104.0, 112.0]


def _preset(preset_id, category, nodes):
    return parse_preset({"id": preset_id, "name": preset_id.replace("_", " ").title(),
                         "category": category, "nodes": nodes})


def _catalog():
    def wrap(trigger, params, action, percent):
        return [{"id": f"{trigger}_{action}", "name": trigger, "params": params,
                 "children": [{"name": action, "params": {"percent": percent}}]}]

    presets = [
        _preset("dca_weekly", "dca", wrap("WHEN_DATE", {"interval": "weekly"}, "BUY_PERCENT", 10)),
        _preset("dca_monthly", "dca", wrap("WHEN_DATE", {"interval": "monthly"}, "BUY_PERCENT", 20)),
        _preset("buy_dip_5", "value",
                wrap("WHEN_CHANGE_PERCENT", {"percent": 5, "direction": "down"}, "BUY_PERCENT", 50)),
        _preset("stop_loss_10", "protection", [{"name": "STOP_LOSS", "params": {"percent": 10}}]),
        _preset("take_profit_15", "protection", [{"name": "TAKE_PROFIT", "params": {"percent": 15}}]),
        _preset("trailing_stop_5", "protection", [{"name": "TRAILING_STOP", "params": {"percent": 5}}]),
    ]
    return {p.id: p for p in presets}


def _optimizer(**config):
    return StrategyOptimizer(Config(max_results=50, **config), presets=_catalog())


def _result(profit, ids):
    sim = SimulationResult(initial_value=100.0, final_value=100.0 + profit,
                           profit_loss=profit, profit_percentage=profit)
    return OptimizationResult(strategy_ids=ids, strategy_names=ids, result=sim,
                              profit_percentage=profit, is_profitable=profit > 0)


# ── Pure helpers ─────────────────────────────────────────────────────────


class TestCompatibility:
    def test_two_dca_never_pair(self):
        presets = get_presets()
        assert not are_compatible(presets["dca_weekly"], presets["dca_monthly"])

    def test_complementary_protections(self):
        presets = get_presets()
        assert are_compatible(presets["stop_loss_10"], presets["take_profit_15"])
        assert are_compatible(presets["take_profit_15"], presets["trailing_stop_5"])

    def test_same_side_protections(self):
        presets = get_presets()
        assert not are_compatible(presets["stop_loss_5"], presets["stop_loss_10"])
        assert not are_compatible(presets["stop_loss_10"], presets["trailing_stop_5"])
        assert not are_compatible(presets["take_profit_10"], presets["take_profit_20"])

    def test_mixed_categories(self):
        presets = get_presets()
        assert are_compatible(presets["dca_weekly"], presets["stop_loss_10"])
        assert are_compatible(presets["rsi_oversold_30"], presets["buy_dip_5"])


class TestRanking:
    def test_higher_profit_first(self):
        ranked = rank_results([_result(1.0, ["a"]), _result(5.0, ["b"])])
        assert [r.strategy_ids for r in ranked] == [["b"], ["a"]]

    def test_fewer_components_break_ties(self):
        ranked = rank_results([_result(3.0, ["a", "b"]), _result(3.0, ["c"])])
        assert [r.strategy_ids for r in ranked] == [["c"], ["a", "b"]]

    def test_test_order_breaks_remaining_ties(self):
        ranked = rank_results([_result(3.0, ["x"]), _result(3.0, ["y"])])
        assert [r.strategy_ids for r in ranked] == [["x"], ["y"]]

    def test_estimate_total(self):
        # 1 + 3 + 3 + 9 + 5 * 3 * 3
        assert estimate_total(3, 3) == 61
        assert estimate_total(0, 1) == 6


class TestProgressTotal:
    @pytest.mark.asyncio
    async def test_total_revised_when_exceeded(self):
        reports = []
        search = _Search(run=lambda nodes: _result(0.0, []), total=1, batch_size=5,
                         market_condition="x", on_progress=reports.append)
        await search.test([], "single", names=["first"])
        await search.test([], "single", names=["second"])
        assert [r.total for r in reports] == [1, 22]


# ── Single-asset search ──────────────────────────────────────────────────


class TestSmartOptimize:
    @pytest.mark.asyncio
    async def test_requires_data(self):
        with pytest.raises(SimulationPreconditionError, match="Price data not loaded"):
            await _optimizer().smart_optimize(1000.0)

    @pytest.mark.asyncio
    async def test_phases_and_counts(self):
        optimizer = _optimizer()
        optimizer.load_data(_bars(CLOSES))
        reports = []
        results = await optimizer.smart_optimize(1000.0, reports.append)

        assert len(results) == EXPECTED_TESTS
        first, last = reports[0], reports[-1]
        assert first.phase == "analyzing"
        assert (first.current, first.total) == (0, 100)
        assert first.current_strategy == "Market analysis: Insufficient data - DCA recommended"
        assert (last.phase, last.current, last.total) == ("complete", EXPECTED_TESTS, EXPECTED_TESTS)
        assert last.current_strategy == "Complete!"

        phases = [r.phase for r in reports[1:-1]]
        assert phases == ["single"] * 3 + ["pairs"] * 11 + ["triples"] * 10
        # Buy & Hold counts as test 1 without its own report
        assert [r.current for r in reports[1:-1]] == list(range(2, EXPECTED_TESTS + 1))
        assert all(r.total == 61 for r in reports[1:-1])
        assert all(r.market_condition == "Insufficient data - DCA recommended" for r in reports)

    @pytest.mark.asyncio
    async def test_pair_and_triple_labels(self):
        optimizer = _optimizer()
        optimizer.load_data(_bars(CLOSES))
        reports = []
        await optimizer.smart_optimize(1000.0, reports.append)

        labels = [r.current_strategy for r in reports]
        assert "Dca Weekly + Buy Dip 5" in labels
        assert "Dca Weekly + Dca Monthly" not in labels
        triples = [r.current_strategy for r in reports if r.phase == "triples"]
        assert all(label.endswith(" + Take Profit 15") for label in triples)

    @pytest.mark.asyncio
    async def test_results_ranked_and_include_baseline(self):
        optimizer = _optimizer()
        optimizer.load_data(_bars(CLOSES))
        results = await optimizer.smart_optimize(1000.0)

        profits = [r.profit_percentage for r in results]
        assert profits == sorted(profits, reverse=True)
        baseline = [r for r in results if r.strategy_names == ["Buy & Hold"]]
        assert len(baseline) == 1
        assert baseline[0].strategy_ids == []
        assert baseline[0].profit_percentage == pytest.approx(12.0)
        assert all(r.is_profitable == (r.profit_percentage > 0) for r in results)

    @pytest.mark.asyncio
    async def test_max_results(self):
        optimizer = StrategyOptimizer(Config(max_results=4), presets=_catalog())
        optimizer.load_data(_bars(CLOSES))
        assert len(await optimizer.quick_optimize(1000.0)) == 4

    @pytest.mark.asyncio
    async def test_target_profit(self):
        optimizer = _optimizer()
        optimizer.load_data(_bars(CLOSES))
        results = await optimizer.smart_optimize(1000.0, target_profit=1_000.0)
        assert not any(r.is_profitable for r in results)

    @pytest.mark.asyncio
    async def test_failed_candidates_are_omitted(self, monkeypatch, caplog):
        optimizer = _optimizer()
        optimizer.load_data(_bars(CLOSES))
        engine = optimizer._engine
        original = engine.run_simulation

        def flaky(investment, nodes):
            if any(n.id.startswith("WHEN_CHANGE_PERCENT") for n in nodes):
                raise RuntimeError("boom")
            return original(investment, nodes)

        monkeypatch.setattr(engine, "run_simulation", flaky)
        with caplog.at_level(logging.ERROR, logger="stratlab.optimizer"):
            results = await optimizer.smart_optimize(1000.0)

        assert results
        assert not any("buy_dip_5" in r.strategy_ids for r in results)
        assert "Error testing Buy Dip 5" in caplog.text

    @pytest.mark.asyncio
    async def test_yields_to_event_loop(self):
        optimizer = _optimizer(single_batch_size=2)
        optimizer.load_data(_bars(CLOSES))
        ticks = 0
        done = False

        async def ticker():
            nonlocal ticks
            while not done:
                ticks += 1
                await asyncio.sleep(0)

        task = asyncio.create_task(ticker())
        await optimizer.smart_optimize(1000.0)
        done = True
        await task
        # one yield after market analysis plus one per batch of two tests
        assert ticks >= 10


# ── Multi-asset search ───────────────────────────────────────────────────


class TestMultiAssetOptimize:
    @staticmethod
    def _assets():
        return [
            AssetSeries("AAA", _bars(CLOSES), "Triple A"),
            AssetSeries("BBB", _bars([50.0 + i for i in range(len(CLOSES))]), "Triple B"),
        ]

    @pytest.mark.asyncio
    async def test_requires_assets(self):
        with pytest.raises(SimulationPreconditionError, match="No assets"):
            await _optimizer().multi_asset_optimize([], 1000.0)

    @pytest.mark.asyncio
    async def test_runs_same_phases_with_asset_labels(self):
        reports = []
        results = await _optimizer().multi_asset_optimize(self._assets(), 1000.0, reports.append)

        assert len(results) == EXPECTED_TESTS
        tests = reports[1:-1]
        assert len(tests) == EXPECTED_TESTS
        assert tests[0].current_strategy == "Buy & Hold (2 assets)"
        assert tests[0].phase == "single"
        assert all(r.current_strategy.endswith(" (2 assets)") for r in tests)
        assert reports[-1].phase == "complete"

    @pytest.mark.asyncio
    async def test_asset_results_and_win_rate(self):
        results = await _optimizer().multi_asset_optimize(self._assets(), 1000.0)

        for item in results:
            assert [a.symbol for a in item.asset_results] == ["AAA", "BBB"]
            winners = sum(1 for a in item.asset_results if a.profit_percentage > 0)
            assert item.win_rate == pytest.approx(winners / 2 * 100)
            assert all(t.type in ("buy", "sell") for t in item.result.transactions)

    @pytest.mark.asyncio
    async def test_baseline_splits_cash(self):
        results = await _optimizer().multi_asset_optimize(self._assets(), 1000.0)
        baseline = next(r for r in results if r.strategy_names == ["Buy & Hold"])

        # AAA 100 → 112, BBB 50 → 59 on 500 each
        assert baseline.result.final_value == pytest.approx(560.0 + 590.0)
        assert [a.profit_percentage for a in baseline.asset_results] == pytest.approx([12.0, 18.0])
        assert baseline.win_rate == 100.0
