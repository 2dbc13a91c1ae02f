"""Per-asset precomputed indicator series.

The standard series are always computed.  Moving averages, RSI and
volume averages with periods only some strategies use are computed once
per run, for exactly the periods the strategy's nodes reference.
"""

import datetime
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from stratlab.strategy.indicators import (
    calculate_average_volume,
    calculate_ema,
    calculate_price_change,
    calculate_rsi,
    calculate_sma,
)
from stratlab.strategy.models import (
    Bar,
    MovingAverageParams,
    Operation,
    RsiParams,
    StrategyNode,
    VolumeParams,
)

DEFAULT_RSI_PERIOD = 14
DEFAULT_VOLUME_PERIOD = 20


@dataclass
class IndicatorSet:
    """Indicator arrays aligned with one asset's bars."""

    bars: Sequence[Bar]
    dates: list[datetime.date]
    sma20: list[float]
    sma50: list[float]
    ema20: list[float]
    rsi14: list[float]
    avg_volume20: list[float]
    price_change: list[float]
    custom: dict[str, list[float]] = field(default_factory=dict)

    def moving_average(self, params: MovingAverageParams) -> Optional[list[float]]:
        return self.custom.get(params.series_key)

    def rsi(self, period: int) -> Optional[list[float]]:
        if period == DEFAULT_RSI_PERIOD:
            return self.rsi14
        return self.custom.get(f"rsi_{period}")

    def average_volume(self, period: int) -> Optional[list[float]]:
        if period == DEFAULT_VOLUME_PERIOD:
            return self.avg_volume20
        return self.custom.get(f"volume_{period}")


def _walk_all(nodes: Iterable[StrategyNode]):
    for node in nodes:
        yield from node.walk()


def build_indicator_set(bars: Sequence[Bar], nodes: Iterable[StrategyNode] = ()) -> IndicatorSet:
    """Compute the standard series plus whatever *nodes* reference."""
    closes = [b.close for b in bars]
    volumes = [b.volume for b in bars]

    custom: dict[str, list[float]] = {}
    for node in _walk_all(nodes):
        params = node.params
        if node.operation is Operation.IF_MOVING_AVG and isinstance(params, MovingAverageParams):
            key = params.series_key
            if key not in custom:
                if params.ma_type == "ema":
                    custom[key] = calculate_ema(closes, params.period)
                else:
                    custom[key] = calculate_sma(closes, params.period)
        elif node.operation is Operation.IF_RSI and isinstance(params, RsiParams):
            key = f"rsi_{params.period}"
            if params.period != DEFAULT_RSI_PERIOD and key not in custom:
                custom[key] = calculate_rsi(closes, params.period)
        elif node.operation is Operation.IF_VOLUME and isinstance(params, VolumeParams):
            key = f"volume_{params.period}"
            if params.period != DEFAULT_VOLUME_PERIOD and key not in custom:
                custom[key] = calculate_average_volume(volumes, params.period)

    return IndicatorSet(
        bars=bars,
        dates=[datetime.date.fromisoformat(b.date[:10]) for b in bars],
        sma20=calculate_sma(closes, 20),
        sma50=calculate_sma(closes, 50),
        ema20=calculate_ema(closes, 20),
        rsi14=calculate_rsi(closes, DEFAULT_RSI_PERIOD),
        avg_volume20=calculate_average_volume(volumes, DEFAULT_VOLUME_PERIOD),
        price_change=calculate_price_change(closes),
        custom=custom,
    )
