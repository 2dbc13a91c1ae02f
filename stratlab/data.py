"""Price-series and strategy file loading for the CLI.

CSV files carry one bar per row with ``date,open,high,low,close,volume``
columns (header required, extra columns ignored).  Rows are sorted by
date and cleaned before they become ``Bar``s.
"""

import logging
from pathlib import Path
from typing import Sequence

import pandas as pd

from stratlab.errors import SimulationPreconditionError
from stratlab.strategy.loader import load_strategy_file
from stratlab.strategy.models import AssetSeries, Bar, StrategyNode
from stratlab.strategy.presets import get_preset, load_presets

logger = logging.getLogger("stratlab.data")

PRICE_COLUMNS = ["date", "open", "high", "low", "close", "volume"]


# ── Price series ─────────────────────────────────────────────────────────


def clean_bars(df: pd.DataFrame) -> pd.DataFrame:
    """Normalise a raw OHLCV frame.

    1. Lower-case column names; ``volume`` defaults to 0 when absent.
    2. Dates become ``YYYY-MM-DD`` strings.
    3. Rows without a positive close are dropped.
    4. Sorted ascending by date; duplicate dates keep the last row.
    """
    df = df.rename(columns=str.lower)
    missing = [c for c in ("date", "close") if c not in df.columns]
    if missing:
        raise SimulationPreconditionError(f"Price file is missing columns: {', '.join(missing)}")

    df = df.copy()
    if "volume" not in df.columns:
        df["volume"] = 0.0
    for column in ("open", "high", "low"):
        if column not in df.columns:
            df[column] = df["close"]

    df["date"] = pd.to_datetime(df["date"]).dt.strftime("%Y-%m-%d")
    for column in PRICE_COLUMNS[1:]:
        df[column] = pd.to_numeric(df[column], errors="coerce")
    df["volume"] = df["volume"].fillna(0.0)
    for column in ("open", "high", "low"):
        df[column] = df[column].fillna(df["close"])

    df = df[df["close"] > 0]
    df = df.sort_values("date").drop_duplicates("date", keep="last")
    return df.reset_index(drop=True)


def frame_to_bars(df: pd.DataFrame) -> list[Bar]:
    return [
        Bar(
            date=row.date,
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for row in df[PRICE_COLUMNS].itertuples(index=False)
    ]


def load_bars(path: str | Path) -> list[Bar]:
    """Read a CSV price series into ascending ``Bar``s.

    Raises ``SimulationPreconditionError`` if the file has no usable rows.
    """
    bars = frame_to_bars(clean_bars(pd.read_csv(path)))
    if not bars:
        raise SimulationPreconditionError(f"No price data in {path}")
    logger.debug("Loaded %d bars from %s", len(bars), path)
    return bars


def load_assets(paths: Sequence[str | Path]) -> list[AssetSeries]:
    """One ``AssetSeries`` per CSV, keyed by file stem.

    A path may be written ``SYMBOL=file.csv`` to set the symbol explicitly.
    """
    assets = []
    for entry in paths:
        text = str(entry)
        if "=" in text:
            symbol, file_path = text.split("=", 1)
        else:
            symbol, file_path = Path(text).stem.upper(), text
        assets.append(AssetSeries(symbol=symbol, bars=load_bars(file_path), name=symbol))
    return assets


# ── Strategies ───────────────────────────────────────────────────────────


def resolve_strategy(
    strategy_file: str | None,
    preset_ids: Sequence[str] = (),
    presets_path: str | None = None,
) -> tuple[StrategyNode, ...]:
    """Nodes from a JSON strategy file followed by the named presets."""
    nodes: list[StrategyNode] = []
    if strategy_file:
        nodes.extend(load_strategy_file(strategy_file))
    if preset_ids:
        catalog = load_presets(presets_path) if presets_path else None
        for preset_id in preset_ids:
            nodes.extend(get_preset(preset_id, catalog).nodes)
    return tuple(nodes)
