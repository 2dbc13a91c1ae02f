"""StratLab — application configuration.

Loads .env variables into a typed config object.
Every variable is optional; malformed numbers are rejected on load.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


DEFAULT_PRESETS_PATH = str(Path(__file__).resolve().parent / "strategy" / "presets.json")


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    log_level: str = "INFO"
    default_investment: float = 10_000.0
    single_batch_size: int = 5  # simulations between yields, single-asset search
    multi_batch_size: int = 3  # simulations between yields, multi-asset search
    max_results: int = 20
    target_profit_pct: float = 0.0
    max_tree_depth: int = 10
    presets_path: str = DEFAULT_PRESETS_PATH


def _env_number(name: str, default: str, cast):
    raw = os.environ.get(name, default)
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(
            f"Environment variable {name} must be a number, got '{raw}'"
        ) from None


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` naming the variable when a numeric variable
    cannot be parsed or a batch size / depth is not positive.
    """
    load_dotenv(dotenv_path=env_path)

    config = Config(
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        default_investment=_env_number("DEFAULT_INVESTMENT", "10000", float),
        single_batch_size=_env_number("OPTIMIZER_BATCH_SIZE", "5", int),
        multi_batch_size=_env_number("OPTIMIZER_MULTI_BATCH_SIZE", "3", int),
        max_results=_env_number("OPTIMIZER_MAX_RESULTS", "20", int),
        target_profit_pct=_env_number("OPTIMIZER_TARGET_PROFIT_PCT", "0", float),
        max_tree_depth=_env_number("MAX_TREE_DEPTH", "10", int),
        presets_path=os.environ.get("PRESETS_PATH") or DEFAULT_PRESETS_PATH,
    )

    for name, value in (
        ("OPTIMIZER_BATCH_SIZE", config.single_batch_size),
        ("OPTIMIZER_MULTI_BATCH_SIZE", config.multi_batch_size),
        ("OPTIMIZER_MAX_RESULTS", config.max_results),
        ("MAX_TREE_DEPTH", config.max_tree_depth),
    ):
        if value <= 0:
            raise ValueError(f"Environment variable {name} must be positive, got {value}")

    return config
