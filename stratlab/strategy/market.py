"""Market classifier — labels a price series and recommends strategy categories.

``analyze_market`` drives the optimizer's candidate filter.
``analyze_chart`` produces a human-readable review of one simulation
result against the series it ran on.  Pure functions, no I/O.
"""

import math
from dataclasses import dataclass, field
from typing import Literal, Sequence

import numpy as np

from stratlab.strategy.models import Bar

MIN_BARS = 14

Trend = Literal["bullish", "bearish", "sideways"]
Volatility = Literal["low", "medium", "high"]


@dataclass(frozen=True)
class MarketAnalysis:
    """Regime labels for one price series."""

    trend: Trend = "sideways"
    trend_strength: float = 0.0  # 0-100
    volatility: Volatility = "medium"
    momentum: Literal["strong_up", "weak_up", "neutral", "weak_down", "strong_down"] = "neutral"
    rsi_level: Literal["oversold", "neutral", "overbought"] = "neutral"
    volume_trend: Literal["increasing", "stable", "decreasing"] = "stable"
    recommended_categories: list[str] = field(default_factory=lambda: ["dca", "protection"])
    summary: str = "Insufficient data - DCA recommended"


@dataclass(frozen=True)
class ChartAnalysis:
    trend: Trend
    trend_strength: float
    volatility: Volatility
    support: float
    resistance: float
    recommendation: str
    signals: list[str]
    summary: str


# ── Helpers ──────────────────────────────────────────────────────────────


def _percent_change(start: float, end: float) -> float:
    if start == 0:
        return 0.0
    return (end - start) / start * 100.0


def _return_std(closes: Sequence[float]) -> float:
    """Population standard deviation of day-over-day returns, in percent."""
    prices = np.asarray(closes, dtype=float)
    if prices.size < 2:
        return 0.0
    prev = prices[:-1]
    with np.errstate(divide="ignore", invalid="ignore"):
        returns = np.diff(prices) / prev * 100.0
    returns = returns[np.isfinite(returns)]
    if returns.size == 0:
        return 0.0
    return float(np.std(returns))


def _bucket_volatility(std_dev: float) -> Volatility:
    if std_dev < 2:
        return "low"
    if std_dev < 5:
        return "medium"
    return "high"


def _recent_rsi(closes: Sequence[float], period: int = 14) -> float:
    """Simple (unsmoothed) RSI over the last *period* deltas."""
    n = len(closes)
    gains = 0.0
    losses = 0.0
    for i in range(max(1, n - period), n):
        change = closes[i] - closes[i - 1]
        if change > 0:
            gains += change
        else:
            losses += abs(change)
    avg_gain = gains / period
    avg_loss = losses / period
    rs = 100.0 if avg_loss == 0 else avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def _volume_trend(volumes: Sequence[float]) -> str:
    """Compare the last 7 bars' mean volume to the ~23 bars before them."""
    recent = sum(volumes[-7:]) / 7
    older_window = volumes[-30:-7]
    divisor = min(23, len(volumes) - 7)
    if divisor <= 0 or not older_window:
        return "stable"
    older = sum(older_window) / divisor
    if recent > older * 1.3:
        return "increasing"
    if recent < older * 0.7:
        return "decreasing"
    return "stable"


# ── Public API ───────────────────────────────────────────────────────────


def analyze_market(bars: Sequence[Bar]) -> MarketAnalysis:
    """Classify trend, volatility, momentum, RSI and volume regimes.

    Series shorter than 14 bars get a neutral default that recommends
    DCA with protection.

    ``recommended_categories`` always contains ``"protection"``; the
    rest follow the regime (bullish → trend/momentum, bearish →
    value/reversal, sideways → dca/volatility/reversal, plus extras for
    high volatility and rising volume).  Order is preserved, no repeats.
    """
    if len(bars) < MIN_BARS:
        return MarketAnalysis()

    closes = [b.close for b in bars]
    volumes = [b.volume for b in bars]
    n = len(closes)

    price_change = _percent_change(closes[0], closes[-1])
    short_start = math.floor(n * 0.8)
    short_change = _percent_change(closes[short_start], closes[-1])

    if price_change > 15 and short_change > 0:
        trend, strength = "bullish", min(100.0, price_change * 2)
    elif price_change < -15 and short_change < 0:
        trend, strength = "bearish", min(100.0, abs(price_change) * 2)
    elif price_change > 5:
        trend, strength = "bullish", min(60.0, price_change * 3)
    elif price_change < -5:
        trend, strength = "bearish", min(60.0, abs(price_change) * 3)
    else:
        trend, strength = "sideways", 30.0

    volatility = _bucket_volatility(_return_std(closes))

    rsi = _recent_rsi(closes)
    if rsi < 30:
        rsi_level = "oversold"
    elif rsi > 70:
        rsi_level = "overbought"
    else:
        rsi_level = "neutral"

    if short_change > 10:
        momentum = "strong_up"
    elif short_change > 3:
        momentum = "weak_up"
    elif short_change < -10:
        momentum = "strong_down"
    elif short_change < -3:
        momentum = "weak_down"
    else:
        momentum = "neutral"

    volume_trend = _volume_trend(volumes)

    categories = ["protection"]
    summary_parts: list[str] = []

    if trend == "bullish":
        summary_parts.append("Bullish trend")
        categories += ["trend", "momentum"]
        if momentum == "strong_up":
            categories.append("scalper")
            summary_parts.append("strong momentum")
        if rsi_level == "overbought":
            summary_parts.append("RSI overbought")
    elif trend == "bearish":
        summary_parts.append("Bearish trend")
        categories += ["value", "reversal"]
        if rsi_level == "oversold":
            categories.append("momentum")
            summary_parts.append("RSI oversold")
        if momentum == "strong_down":
            summary_parts.append("strong downtrend")
    else:
        summary_parts.append("Sideways market")
        categories += ["dca", "volatility", "reversal"]
        if volatility == "low":
            summary_parts.append("low volatility")
            categories.append("trend")

    if volatility == "high":
        summary_parts.append("high volatility")
        categories += ["scalper", "volatility"]

    if volume_trend == "increasing":
        summary_parts.append("increasing volume")
        categories.append("momentum")

    return MarketAnalysis(
        trend=trend,
        trend_strength=strength,
        volatility=volatility,
        momentum=momentum,
        rsi_level=rsi_level,
        volume_trend=volume_trend,
        recommended_categories=list(dict.fromkeys(categories)),
        summary=", ".join(summary_parts) or "Normal market conditions",
    )


def analyze_chart(bars: Sequence[Bar], result) -> ChartAnalysis:
    """Review a single-asset simulation *result* against its price *bars*.

    *result* needs ``profit_percentage`` and ``transactions`` (each with
    a ``type``), i.e. a ``SimulationResult``.
    """
    if len(bars) < 2:
        return ChartAnalysis(
            trend="sideways",
            trend_strength=0.0,
            volatility="low",
            support=0.0,
            resistance=0.0,
            recommendation="Insufficient data",
            signals=[],
            summary="Not enough data for analysis.",
        )

    closes = [b.close for b in bars]
    first, last = closes[0], closes[-1]
    price_change = _percent_change(first, last)

    if price_change > 10:
        trend, strength = "bullish", min(100.0, price_change * 2)
    elif price_change < -10:
        trend, strength = "bearish", min(100.0, abs(price_change) * 2)
    else:
        trend, strength = "sideways", 50.0 - abs(price_change) * 2

    volatility = _bucket_volatility(_return_std(closes))

    ordered = sorted(closes)
    support = ordered[math.floor(len(ordered) * 0.1)]
    resistance = ordered[math.floor(len(ordered) * 0.9)]

    profit_pct = result.profit_percentage
    signals: list[str] = []
    if profit_pct > 0:
        signals.append(f"Strategy gained {profit_pct:.1f}%")
    else:
        signals.append(f"Strategy lost {abs(profit_pct):.1f}%")

    if trend == "bullish":
        signals.append(f"Uptrend: Price increased {price_change:.1f}%")
    elif trend == "bearish":
        signals.append(f"Downtrend: Price decreased {abs(price_change):.1f}%")
    else:
        signals.append("Sideways market: No clear trend")

    if volatility == "high":
        signals.append("High volatility: Large price swings")
    elif volatility == "low":
        signals.append("Low volatility: Stable price movement")

    buys = sum(1 for t in result.transactions if t.type == "buy")
    sells = sum(1 for t in result.transactions if t.type == "sell")
    signals.append(f"Total {buys} buys, {sells} sells")

    if profit_pct > 20:
        recommendation = "Excellent performance! This strategy performed very well."
    elif profit_pct > 10:
        recommendation = "Good performance. Strategy was profitable."
    elif profit_pct > 0:
        recommendation = "Positive return. Strategy achieved marginal profit."
    elif profit_pct > -10:
        recommendation = "Minor loss. Strategy parameters may need adjustment."
    else:
        recommendation = "Significant loss. This strategy is not suitable for these conditions."

    trend_text = {"bullish": "upward", "bearish": "downward"}.get(trend, "sideways")
    outcome = "profit" if profit_pct >= 0 else "loss"
    summary = (
        f"During this period, the market showed {trend_text} trend with {volatility} volatility. "
        f"Price moved from ${first:.2f} to ${last:.2f} ({price_change:.1f}%). "
        f"Strategy made {buys + sells} transactions with {profit_pct:.2f}% {outcome}. "
        f"Support: ${support:.2f}, Resistance: ${resistance:.2f}."
    )

    return ChartAnalysis(
        trend=trend,
        trend_strength=strength,
        volatility=volatility,
        support=support,
        resistance=resistance,
        recommendation=recommendation,
        signals=signals,
        summary=summary,
    )
