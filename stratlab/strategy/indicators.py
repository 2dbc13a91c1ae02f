"""Technical indicators — SMA, EMA, RSI, Bollinger, MACD, ATR, volume. Pure functions, no I/O.

Every function returns a list the same length as its input.  Positions
where the indicator is not yet defined hold ``float('nan')``; they are
never filled with zero.  None of these functions raise on short input.
"""

import math
from typing import Sequence

NAN = float("nan")


def is_defined(value: float) -> bool:
    """``True`` when *value* is a real number (not the NaN sentinel)."""
    return not math.isnan(value)


def calculate_sma(values: Sequence[float], period: int) -> list[float]:
    """Simple Moving Average using a running-sum sliding window, O(n).

    The first ``period - 1`` entries are ``nan``.
    """
    n = len(values)
    sma: list[float] = [NAN] * n
    if period < 1:
        return sma

    running_sum = 0.0
    for i in range(n):
        running_sum += values[i]
        if i >= period:
            running_sum -= values[i - period]
        if i >= period - 1:
            sma[i] = running_sum / period
    return sma


def calculate_ema(values: Sequence[float], period: int) -> list[float]:
    """Calculate an Exponential Moving Average series.

    Uses the standard EMA formula:
        ``EMA_today = (value - EMA_yesterday) × k + EMA_yesterday``
    where ``k = 2 / (period + 1)``.

    The first EMA value (index ``period - 1``) is seeded with the SMA of
    the first *period* values.  Entries before the seed are ``nan``.
    """
    n = len(values)
    ema: list[float] = [NAN] * n
    if period < 1 or n < period:
        return ema

    k = 2.0 / (period + 1)
    ema[period - 1] = sum(values[:period]) / period

    for i in range(period, n):
        ema[i] = (values[i] - ema[i - 1]) * k + ema[i - 1]

    return ema


# ── RSI ──────────────────────────────────────────────────────────────────


def calculate_rsi(values: Sequence[float], period: int = 14) -> list[float]:
    """Calculate Wilder's Relative Strength Index.

    Algorithm (Wilder-smoothed):
        1. delta = value[i] - value[i-1]
        2. Separate gains (positive) and losses (|negative|).
        3. Seed average gain/loss = mean of the first *period* deltas.
        4. Subsequent: avg = (prev_avg × (period-1) + current) / period
        5. RS = avg_gain / avg_loss
        6. RSI = 100 - 100 / (1 + RS), or 100 when avg_loss is zero.

    The first *period* entries are ``nan``.
    """
    n = len(values)
    rsi: list[float] = [NAN] * n
    if period < 1 or n < period + 1:
        return rsi

    deltas = [values[i] - values[i - 1] for i in range(1, n)]
    gains = [max(d, 0.0) for d in deltas]
    losses = [abs(min(d, 0.0)) for d in deltas]

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period

    def _rsi_from_avgs(ag: float, al: float) -> float:
        if al == 0:
            return 100.0
        rs = ag / al
        return 100.0 - 100.0 / (1.0 + rs)

    rsi[period] = _rsi_from_avgs(avg_gain, avg_loss)

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        # Index in rsi is i+1 because deltas are offset by 1
        rsi[i + 1] = _rsi_from_avgs(avg_gain, avg_loss)

    return rsi


# ── Bollinger Bands ──────────────────────────────────────────────────────


def calculate_bollinger(
    values: Sequence[float],
    period: int = 20,
    std_dev: float = 2.0,
) -> tuple[list[float], list[float], list[float]]:
    """Calculate Bollinger Bands.

    Middle = SMA(values, *period*)
    Upper  = middle + *std_dev* × σ
    Lower  = middle − *std_dev* × σ

    σ is the population standard deviation of the trailing window.

    Returns ``(upper, middle, lower)``.
    """
    n = len(values)
    middle = calculate_sma(values, period)
    upper: list[float] = [NAN] * n
    lower: list[float] = [NAN] * n

    for i in range(n):
        if not is_defined(middle[i]):
            continue
        window = values[i - period + 1 : i + 1]
        avg = middle[i]
        variance = sum((x - avg) ** 2 for x in window) / period
        sigma = math.sqrt(variance)
        upper[i] = avg + std_dev * sigma
        lower[i] = avg - std_dev * sigma

    return upper, middle, lower


# ── MACD ─────────────────────────────────────────────────────────────────


def calculate_macd(
    values: Sequence[float],
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> tuple[list[float], list[float], list[float]]:
    """MACD line, signal line, and histogram.

    ``macd = EMA(fast) - EMA(slow)``.  The signal line is the EMA of the
    *defined* portion of the MACD line, mapped back onto the original
    positions.  ``histogram = macd - signal``.
    """
    n = len(values)
    fast_ema = calculate_ema(values, fast)
    slow_ema = calculate_ema(values, slow)

    macd_line: list[float] = [NAN] * n
    for i in range(n):
        if is_defined(fast_ema[i]) and is_defined(slow_ema[i]):
            macd_line[i] = fast_ema[i] - slow_ema[i]

    defined_idx = [i for i in range(n) if is_defined(macd_line[i])]
    compact_signal = calculate_ema([macd_line[i] for i in defined_idx], signal)

    signal_line: list[float] = [NAN] * n
    histogram: list[float] = [NAN] * n
    for j, i in enumerate(defined_idx):
        if is_defined(compact_signal[j]):
            signal_line[i] = compact_signal[j]
            histogram[i] = macd_line[i] - compact_signal[j]

    return macd_line, signal_line, histogram


# ── ATR / volume / change ────────────────────────────────────────────────


def calculate_atr(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    period: int = 14,
) -> list[float]:
    """Average True Range (simple moving average of TR).

    Uses the standard True Range definition:
        TR = max(high - low, |high - prev_close|, |low - prev_close|)

    The first bar has no previous close, so its TR is ``high - low``.
    """
    true_ranges: list[float] = []
    for i in range(len(closes)):
        if i == 0:
            true_ranges.append(highs[i] - lows[i])
            continue
        prev_close = closes[i - 1]
        true_ranges.append(max(
            highs[i] - lows[i],
            abs(highs[i] - prev_close),
            abs(lows[i] - prev_close),
        ))
    return calculate_sma(true_ranges, period)


def calculate_average_volume(volumes: Sequence[float], period: int = 20) -> list[float]:
    """Rolling mean volume over *period* bars."""
    return calculate_sma(volumes, period)


def calculate_price_change(values: Sequence[float]) -> list[float]:
    """Day-over-day percent change.  The first element is 0.

    A zero previous value has no defined percent change and yields ``nan``.
    """
    if not values:
        return []
    changes: list[float] = [0.0]
    for i in range(1, len(values)):
        prev = values[i - 1]
        if prev == 0:
            changes.append(NAN)
        else:
            changes.append((values[i] - prev) / prev * 100.0)
    return changes
