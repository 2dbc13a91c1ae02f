"""Backtest statistics — pure functions for run summaries."""

import math
from typing import Iterable, Optional

from stratlab.backtest.models import RunStats
from stratlab.risk.drawdown import DrawdownTracker


def calculate_stats(
    entries: Iterable[tuple[str, Optional[float]]],
    equity_curve: list[float],
    initial_value: float,
) -> RunStats:
    """Compute summary statistics for one run.

    Args:
        entries: ``(type, value)`` per transaction or event, where type is
            ``buy``, ``sell``, ``skip_buy`` or ``skip_sell``.
        equity_curve: Portfolio value per bar (or per date).
        initial_value: Starting cash, the curve's implicit first point.
    """
    buy_count = sell_count = skip_count = 0
    total_bought = total_sold = 0.0
    for kind, value in entries:
        if kind == "buy":
            buy_count += 1
            total_bought += value or 0.0
        elif kind == "sell":
            sell_count += 1
            total_sold += value or 0.0
        else:
            skip_count += 1

    return RunStats(
        buy_count=buy_count,
        sell_count=sell_count,
        skip_count=skip_count,
        total_bought=round(total_bought, 2),
        total_sold=round(total_sold, 2),
        max_drawdown_pct=round(_max_drawdown_pct(equity_curve, initial_value), 4),
        sharpe_ratio=round(_sharpe(_returns([initial_value, *equity_curve])), 4),
    )


# ── Helpers ──────────────────────────────────────────────────────────────


def _returns(curve: list[float]) -> list[float]:
    return [
        (curve[i] - curve[i - 1]) / curve[i - 1]
        for i in range(1, len(curve))
        if curve[i - 1] != 0
    ]


def _sharpe(returns: list[float]) -> float:
    """Annualised Sharpe ratio from a per-bar return series.

    Uses sample standard deviation (n − 1).  Returns 0.0 when the series
    has fewer than 2 observations or zero variance.
    """
    n = len(returns)
    if n < 2:
        return 0.0
    mean = sum(returns) / n
    variance = sum((r - mean) ** 2 for r in returns) / (n - 1)
    std = math.sqrt(variance)
    if std == 0:
        return 0.0
    return (mean / std) * math.sqrt(252)


def _max_drawdown_pct(equity_curve: list[float], initial_value: float) -> float:
    """Largest peak-to-trough decline of the equity curve, in percent."""
    if initial_value <= 0:
        return 0.0
    tracker = DrawdownTracker(initial_value)
    for equity in equity_curve:
        tracker.update(equity)
    return tracker.max_drawdown_pct
