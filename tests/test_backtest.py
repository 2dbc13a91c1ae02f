"""Tests for the single-asset simulation engine and the tree evaluator.

Covers triggers, conditions, actions, exit modifiers, skip records,
date schedules, depth capping, buy & hold and run statistics.
"""

import datetime
import math

import pytest

from stratlab.backtest.engine import SimulationEngine
from stratlab.backtest.stats import _max_drawdown_pct, _sharpe, calculate_stats
from stratlab.errors import SimulationPreconditionError
from stratlab.strategy.loader import parse_nodes
from stratlab.strategy.models import (
    AmountParams,
    Bar,
    NodeKind,
    Operation,
    PriceThresholdParams,
    StrategyNode,
)


# ── Helpers ──────────────────────────────────────────────────────────────


def _make_bar(date, close, volume=1000.0):
    return Bar(date=date, open=close, high=close, low=close, close=close, volume=volume)


def _daily_bars(closes, start=datetime.date(2024, 1, 1), volumes=None):
    """One bar per calendar day starting Monday 2024-01-01."""
    volumes = volumes or [1000.0] * len(closes)
    return [
        _make_bar((start + datetime.timedelta(days=i)).isoformat(), c, v)
        for i, (c, v) in enumerate(zip(closes, volumes))
    ]


def _engine(bars, symbol="TEST"):
    engine = SimulationEngine()
    engine.set_price_data(bars, symbol=symbol)
    return engine


def _node(name, params=None, children=()):
    return {"name": name, "params": params or {}, "children": list(children)}


def _buy_all_on_first_day(date="2024-01-01"):
    return _node("WHEN_DATE", {"date": date}, [_node("BUY_PERCENT", {"percent": 100})])


def _types(result):
    return [t.type for t in result.transactions]


# ── Preconditions ────────────────────────────────────────────────────────


class TestPreconditions:
    def test_no_data_loaded(self):
        with pytest.raises(SimulationPreconditionError, match="No price data"):
            SimulationEngine().run_simulation(1000.0, [])

    def test_buy_and_hold_no_data(self):
        with pytest.raises(SimulationPreconditionError):
            SimulationEngine().run_buy_and_hold(1000.0)

    def test_non_positive_investment(self):
        engine = _engine(_daily_bars([100.0, 101.0]))
        with pytest.raises(SimulationPreconditionError, match="investment must be positive"):
            engine.run_simulation(0.0, [])


# ── Triggers and actions ─────────────────────────────────────────────────


class TestTriggers:
    def test_price_below_buys_with_attribution(self):
        nodes = parse_nodes([_node("WHEN_PRICE_BELOW", {"threshold": 95},
                                   [_node("BUY", {"amount": 100})])])
        result = _engine(_daily_bars([100.0, 90.0, 80.0])).run_simulation(1000.0, nodes)

        assert _types(result) == ["buy", "buy"]
        first = result.transactions[0]
        assert first.date == "2024-01-02"
        assert first.amount == pytest.approx(100 / 90)
        assert first.reason == "Price dropped below $95"
        assert first.strategy_name == "Price Below"
        assert first.trigger_type == "trigger"
        assert first.indicator_value == "$90.00"
        units = 100 / 90 + 100 / 80
        assert result.final_value == pytest.approx(800 + units * 80)

    def test_nesting_is_logical_and(self):
        nodes = parse_nodes([_node("WHEN_PRICE_BELOW", {"threshold": 95}, [
            _node("WHEN_PRICE_ABOVE", {"threshold": 85}, [_node("BUY", {"amount": 100})]),
        ])])
        result = _engine(_daily_bars([100.0, 90.0, 80.0])).run_simulation(1000.0, nodes)

        assert _types(result) == ["buy"]
        # innermost firing ancestor supplies the reason
        assert result.transactions[0].reason == "Price rose above $85"

    def test_change_percent_down(self):
        nodes = parse_nodes([_node("WHEN_CHANGE_PERCENT", {"percent": 5, "direction": "down"},
                                   [_node("BUY", {"amount": 100})])])
        result = _engine(_daily_bars([100.0, 94.0, 93.0])).run_simulation(1000.0, nodes)

        assert _types(result) == ["buy"]
        assert result.transactions[0].indicator_value == "%-6.00"
        assert result.transactions[0].reason == "Price dropped 5% (dip opportunity)"

    def test_top_level_action_runs_every_bar(self):
        nodes = parse_nodes([_node("BUY", {"amount": 100})])
        result = _engine(_daily_bars([10.0, 10.0, 10.0])).run_simulation(1000.0, nodes)

        assert _types(result) == ["buy", "buy", "buy"]
        assert result.transactions[0].reason == "Manual buy"
        assert result.transactions[0].strategy_name is None


class TestSkipRecords:
    def test_unfunded_buy_is_recorded(self):
        nodes = parse_nodes([_node("BUY", {"amount": 100})])
        result = _engine(_daily_bars([10.0, 10.0])).run_simulation(150.0, nodes)

        assert _types(result) == ["buy", "skip_buy"]
        skip = result.transactions[1]
        assert skip.reason == "Insufficient balance: $50.00 available, $100 needed"
        assert skip.amount == 0.0
        assert result.final_value == pytest.approx(150.0)
        assert result.stats.skip_count == 1

    def test_sell_without_position(self):
        nodes = parse_nodes([_node("SELL", {"amount": 100})])
        result = _engine(_daily_bars([10.0])).run_simulation(1000.0, nodes)

        assert _types(result) == ["skip_sell"]
        assert result.transactions[0].reason == "Cannot sell: no TEST position"

    def test_sell_is_capped_at_position(self):
        nodes = parse_nodes([
            _buy_all_on_first_day(),
            _node("WHEN_DATE", {"date": "2024-01-02"}, [_node("SELL", {"amount": 1_000_000})]),
        ])
        result = _engine(_daily_bars([10.0, 20.0])).run_simulation(100.0, nodes)

        assert _types(result) == ["buy", "sell"]
        assert result.transactions[1].amount == pytest.approx(10.0)
        assert result.final_value == pytest.approx(200.0)

    def test_sell_percent(self):
        nodes = parse_nodes([
            _buy_all_on_first_day(),
            _node("WHEN_DATE", {"date": "2024-01-02"}, [_node("SELL_PERCENT", {"percent": 50})]),
        ])
        result = _engine(_daily_bars([10.0, 10.0])).run_simulation(100.0, nodes)

        assert result.transactions[1].amount == pytest.approx(5.0)
        assert result.transactions[1].value == pytest.approx(50.0)


# ── Conditions ───────────────────────────────────────────────────────────


class TestConditions:
    def test_moving_average_fires_only_on_cross(self):
        nodes = parse_nodes([_node("IF_MOVING_AVG", {"period": 3, "crossDirection": "above"},
                                   [_node("BUY", {"amount": 10})])])
        closes = [10.0, 10.0, 10.0, 10.0, 13.0, 14.0, 15.0]
        result = _engine(_daily_bars(closes)).run_simulation(1000.0, nodes)

        assert _types(result) == ["buy"]
        assert result.transactions[0].date == "2024-01-05"
        assert result.transactions[0].trigger_details == "Price crossed above SMA3 - Uptrend start"
        assert result.transactions[0].trigger_type == "condition"

    def test_rsi_below(self):
        nodes = parse_nodes([_node("IF_RSI", {"operator": "below", "value": 30, "period": 5},
                                   [_node("BUY", {"amount": 10})])])
        closes = [100.0 - i for i in range(10)]
        engine = _engine(_daily_bars(closes))
        result = engine.run_simulation(1000.0, nodes)

        # RSI(5) is defined from bar 5 and is 0 on a falling series
        assert len(result.transactions) == 5
        assert result.transactions[0].strategy_name == "RSI Strategy"
        assert "rsi_5" in engine.indicators.custom

    def test_volume_spike(self):
        volumes = [100.0] * 5 + [400.0]
        nodes = parse_nodes([_node("IF_VOLUME", {"multiplier": 2, "period": 5},
                                   [_node("BUY", {"amount": 10})])])
        result = _engine(_daily_bars([10.0] * 6, volumes=volumes)).run_simulation(1000.0, nodes)

        # avg over the last 5 bars = 160; 400 > 320
        assert _types(result) == ["buy"]
        assert result.transactions[0].trigger_details == "Volume 2.5x above average - Strong interest"

    def test_profit_condition_needs_position(self):
        nodes = parse_nodes([
            _node("WHEN_DATE", {"date": "2024-01-02"}, [_node("BUY", {"amount": 100})]),
            _node("IF_PROFIT", {"type": "profit", "percent": 10}, [_node("SELL_PERCENT", {"percent": 100})]),
        ])
        result = _engine(_daily_bars([10.0, 10.0, 10.5, 11.0])).run_simulation(100.0, nodes)

        assert _types(result) == ["buy", "sell"]
        assert result.transactions[1].date == "2024-01-04"
        assert result.transactions[1].indicator_value == "Profit: %10.0"

    def test_lazy_series_are_keyed_by_type_and_period(self):
        nodes = parse_nodes([_node("IF_MOVING_AVG", {"period": 9, "type": "ema", "crossDirection": "below"},
                                   [_node("SELL", {"amount": 1})])])
        engine = _engine(_daily_bars([10.0] * 12))
        engine.run_simulation(100.0, nodes)
        assert set(engine.indicators.custom) == {"ema_9"}


# ── Modifiers ────────────────────────────────────────────────────────────


class TestModifiers:
    def test_stop_loss(self):
        nodes = parse_nodes([_buy_all_on_first_day(), _node("STOP_LOSS", {"percent": 10})])
        result = _engine(_daily_bars([100.0, 95.0, 89.0, 120.0])).run_simulation(1000.0, nodes)

        assert _types(result) == ["buy", "sell"]
        exit_ = result.transactions[1]
        assert exit_.reason == "Stop Loss triggered - Loss reached 11.0%"
        assert exit_.trigger_type == "modifier"
        assert exit_.trigger_details == "Loss limit 10% exceeded, position closed"
        assert result.final_value == pytest.approx(890.0)

    def test_take_profit(self):
        nodes = parse_nodes([_buy_all_on_first_day(), _node("TAKE_PROFIT", {"percent": 15})])
        result = _engine(_daily_bars([100.0, 110.0, 116.0, 90.0])).run_simulation(1000.0, nodes)

        assert _types(result) == ["buy", "sell"]
        assert result.transactions[1].reason == "Take Profit triggered - Profit reached 16.0%"
        assert result.final_value == pytest.approx(1160.0)

    def test_trailing_stop_tracks_peak(self):
        nodes = parse_nodes([_buy_all_on_first_day(), _node("TRAILING_STOP", {"percent": 5})])
        result = _engine(_daily_bars([100.0, 120.0, 113.0, 130.0])).run_simulation(1000.0, nodes)

        assert _types(result) == ["buy", "sell"]
        exit_ = result.transactions[1]
        assert exit_.date == "2024-01-03"
        assert exit_.reason == "Trailing Stop triggered - 5.8% drop from peak"
        assert exit_.indicator_value == "Peak: $120.00"

    def test_modifier_under_idle_predicate_still_applies(self):
        nodes = parse_nodes([
            _buy_all_on_first_day(),
            _node("WHEN_PRICE_ABOVE", {"threshold": 10_000}, [_node("TAKE_PROFIT", {"percent": 10})]),
        ])
        result = _engine(_daily_bars([100.0, 105.0, 111.0])).run_simulation(1000.0, nodes)

        assert _types(result) == ["buy", "sell"]

    def test_flat_position_is_untouched(self):
        nodes = parse_nodes([_node("STOP_LOSS", {"percent": 1})])
        result = _engine(_daily_bars([100.0, 50.0])).run_simulation(1000.0, nodes)
        assert result.transactions == []


# ── Date schedules ───────────────────────────────────────────────────────


class TestDateSchedules:
    def _buy_dates(self, dates, params):
        bars = [_make_bar(d, 10.0) for d in dates]
        nodes = parse_nodes([_node("WHEN_DATE", params, [_node("BUY", {"amount": 1})])])
        result = _engine(bars).run_simulation(1000.0, nodes)
        return [t.date for t in result.transactions]

    def test_weekly_rolls_to_next_trading_day(self):
        dates = ["2024-01-01", "2024-01-03", "2024-01-09", "2024-01-10"]
        assert self._buy_dates(dates, {"interval": "weekly"}) == ["2024-01-01", "2024-01-09"]

    def test_weekly_on_chosen_weekday(self):
        dates = [(datetime.date(2024, 1, 1) + datetime.timedelta(days=i)).isoformat() for i in range(14)]
        assert self._buy_dates(dates, {"interval": "weekly", "dayOfWeek": "friday"}) == [
            "2024-01-05", "2024-01-12",
        ]

    def test_biweekly(self):
        mondays = [(datetime.date(2024, 1, 1) + datetime.timedelta(weeks=i)).isoformat() for i in range(5)]
        assert self._buy_dates(mondays, {"interval": "biweekly"}) == [
            mondays[0], mondays[2], mondays[4],
        ]

    def test_monthly(self):
        dates = ["2024-01-15", "2024-01-31", "2024-02-01", "2024-02-02", "2024-03-05"]
        assert self._buy_dates(dates, {"interval": "monthly", "dayOfMonth": 1}) == [
            "2024-01-15", "2024-02-01", "2024-03-05",
        ]

    def test_monthly_day_clamped_to_month_end(self):
        dates = ["2024-02-28", "2024-02-29", "2024-03-30", "2024-03-31"]
        assert self._buy_dates(dates, {"interval": "monthly", "dayOfMonth": 31}) == [
            "2024-02-29", "2024-03-31",
        ]

    def test_exact_date(self):
        dates = ["2024-01-01", "2024-01-02"]
        assert self._buy_dates(dates, {"date": "2024-01-02"}) == ["2024-01-02"]


# ── Depth cap ────────────────────────────────────────────────────────────


class TestDepthCap:
    @staticmethod
    def _chain(depth):
        node = StrategyNode("buy", NodeKind.ACTION, Operation.BUY, AmountParams(10.0))
        for i in range(depth):
            node = StrategyNode(f"t{i}", NodeKind.TRIGGER, Operation.WHEN_PRICE_ABOVE,
                                PriceThresholdParams(0.0), (node,))
        return (node,)

    def test_action_at_cap_runs(self):
        result = _engine(_daily_bars([10.0])).run_simulation(100.0, self._chain(10))
        assert _types(result) == ["buy"]

    def test_deeper_nodes_are_ignored(self):
        result = _engine(_daily_bars([10.0])).run_simulation(100.0, self._chain(11))
        assert result.transactions == []


# ── Buy & hold and results ───────────────────────────────────────────────


class TestBuyAndHold:
    def test_full_investment_on_first_bar(self):
        result = _engine(_daily_bars([100.0, 110.0, 120.0])).run_buy_and_hold(1000.0)

        assert result.final_value == pytest.approx(1200.0)
        assert result.profit_percentage == pytest.approx(20.0)
        assert result.equity_curve == pytest.approx([1000.0, 1100.0, 1200.0])
        assert len(result.transactions) == 1
        assert result.transactions[0].reason == "Initial purchase - Buy & Hold strategy"
        assert result.transactions[0].strategy_name == "Buy & Hold"

    def test_two_bar_doubling(self):
        result = _engine(_daily_bars([100.0, 198.0])).run_buy_and_hold(10_000.0)
        assert result.profit_percentage == pytest.approx(98.0)


class TestResult:
    def test_empty_strategy_keeps_cash(self):
        result = _engine(_daily_bars([100.0, 50.0])).run_simulation(500.0, [])
        assert result.final_value == 500.0
        assert result.profit_loss == 0.0
        assert result.equity_curve == [500.0, 500.0]

    def test_equity_curve_per_bar(self):
        nodes = parse_nodes([_buy_all_on_first_day()])
        result = _engine(_daily_bars([100.0, 90.0, 120.0])).run_simulation(1000.0, nodes)
        assert result.equity_curve == pytest.approx([1000.0, 900.0, 1200.0])
        assert result.stats.max_drawdown_pct == pytest.approx(10.0)
        assert len(result.price_history) == 3

    def test_deterministic(self):
        nodes = parse_nodes([_node("BUY", {"amount": 10}), _node("TRAILING_STOP", {"percent": 3})])
        bars = _daily_bars([100.0, 104.0, 99.0, 101.0, 97.0])
        a = _engine(bars).run_simulation(100.0, nodes)
        b = _engine(bars).run_simulation(100.0, nodes)
        assert a.transactions == b.transactions
        assert a.final_value == b.final_value


# ── Statistics ───────────────────────────────────────────────────────────


class TestStats:
    def test_counts_and_totals(self):
        stats = calculate_stats(
            [("buy", 100.0), ("sell", 150.0), ("skip_buy", None), ("skip_sell", 0.0)],
            [1000.0, 900.0, 1100.0],
            1000.0,
        )
        assert (stats.buy_count, stats.sell_count, stats.skip_count) == (1, 1, 2)
        assert stats.total_bought == 100.0
        assert stats.total_sold == 150.0
        assert stats.max_drawdown_pct == pytest.approx(10.0)

    def test_sharpe(self):
        assert _sharpe([0.01, 0.03]) == pytest.approx(math.sqrt(2) * math.sqrt(252))

    def test_sharpe_degenerate(self):
        assert _sharpe([]) == 0.0
        assert _sharpe([0.01]) == 0.0
        assert _sharpe([0.25, 0.25, 0.25]) == 0.0

    def test_max_drawdown_flat(self):
        assert _max_drawdown_pct([100.0, 100.0], 100.0) == 0.0
