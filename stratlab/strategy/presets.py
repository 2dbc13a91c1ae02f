"""Preset catalog — maps preset ids to validated ``PresetStrategy`` entries.

The catalog ships as ``presets.json`` next to this module and is loaded
once; callers may point ``PRESETS_PATH`` at their own file.
"""

import json
import logging
from functools import lru_cache
from pathlib import Path

from stratlab.config import DEFAULT_PRESETS_PATH
from stratlab.errors import StrategyValidationError
from stratlab.strategy.loader import parse_preset
from stratlab.strategy.models import PresetStrategy

logger = logging.getLogger("stratlab.presets")

# Always tested by the optimizer regardless of market condition.
BASE_STRATEGY_IDS = ("dca_weekly", "buy_dip_5", "stop_loss_10")

# Used when the market filter leaves no protection presets.
FALLBACK_PROTECTION_IDS = ("stop_loss_10", "take_profit_15", "trailing_stop_5")


def load_presets(path: str | Path = DEFAULT_PRESETS_PATH) -> dict[str, PresetStrategy]:
    """Load and validate a preset catalog, keyed by id in file order.

    Raises ``StrategyValidationError`` on a malformed entry or a duplicate id.
    """
    with open(path, "r", encoding="utf-8") as f:
        raw_entries = json.load(f)

    presets: dict[str, PresetStrategy] = {}
    for raw in raw_entries:
        preset = parse_preset(raw)
        if preset.id in presets:
            raise StrategyValidationError(f"Duplicate preset id '{preset.id}' in {path}")
        presets[preset.id] = preset

    logger.debug("Loaded %d presets from %s", len(presets), path)
    return presets


@lru_cache(maxsize=None)
def _bundled_presets() -> dict[str, PresetStrategy]:
    return load_presets(DEFAULT_PRESETS_PATH)


def get_presets() -> dict[str, PresetStrategy]:
    """The bundled catalog (loaded once)."""
    return _bundled_presets()


def get_preset(preset_id: str, presets: dict[str, PresetStrategy] | None = None) -> PresetStrategy:
    """Look up a preset by id.

    Raises ``KeyError`` if the id is not in the catalog.
    """
    catalog = presets if presets is not None else get_presets()
    if preset_id not in catalog:
        raise KeyError(
            f"Unknown preset '{preset_id}'. "
            f"Available: {', '.join(catalog.keys())}"
        )
    return catalog[preset_id]
