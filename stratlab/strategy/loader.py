"""Strategy loader — turns raw node dicts (JSON) into typed ``StrategyNode`` trees.

All validation happens here, at load time.  The evaluator trusts the
typed nodes it receives and never inspects raw parameter bags.

Accepted node shape::

    {"id": "ma20_1", "type": "condition", "name": "IF_MOVING_AVG",
     "params": {"period": 20, "type": "sma", "crossDirection": "above"},
     "children": [...]}

``kind`` / ``operation`` are accepted as aliases of ``type`` / ``name``.
"""

import datetime
import json
import math
from pathlib import Path
from typing import Any, Iterable, Optional

from stratlab.errors import StrategyValidationError
from stratlab.strategy.models import (
    OPERATION_SPECS,
    STRATEGY_CATEGORIES,
    AmountParams,
    ChangePercentParams,
    DateParams,
    MovingAverageParams,
    NodeKind,
    Operation,
    PercentParams,
    PresetStrategy,
    PriceThresholdParams,
    ProfitParams,
    RsiParams,
    StrategyNode,
    VolumeParams,
)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


# ── Parameter helpers ────────────────────────────────────────────────────


def _pick(raw: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return default


def _number(node_id: str, raw: dict, *keys: str, default: Any = None,
            positive: bool = False) -> float:
    value = _pick(raw, *keys, default=default)
    if value is None:
        raise StrategyValidationError(
            f"Node '{node_id}': missing required parameter '{keys[0]}'"
        )
    if isinstance(value, bool):
        raise StrategyValidationError(
            f"Node '{node_id}': parameter '{keys[0]}' must be a number, got {value!r}"
        )
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise StrategyValidationError(
            f"Node '{node_id}': parameter '{keys[0]}' must be a number, got {value!r}"
        ) from None
    if not math.isfinite(number):
        raise StrategyValidationError(
            f"Node '{node_id}': parameter '{keys[0]}' must be finite, got {value!r}"
        )
    if positive and number <= 0:
        raise StrategyValidationError(
            f"Node '{node_id}': parameter '{keys[0]}' must be positive, got {value!r}"
        )
    return number


def _period(node_id: str, raw: dict, default: int) -> int:
    value = _number(node_id, raw, "period", default=default, positive=True)
    if value != int(value):
        raise StrategyValidationError(
            f"Node '{node_id}': parameter 'period' must be a whole number, got {value!r}"
        )
    return int(value)


def _choice(node_id: str, raw: dict, key: str, options: Iterable[str],
            default: Optional[str] = None, aliases: tuple[str, ...] = ()) -> str:
    value = _pick(raw, key, *aliases, default=default)
    options = tuple(options)
    if value is None:
        raise StrategyValidationError(
            f"Node '{node_id}': missing required parameter '{key}'"
        )
    value = str(value).lower()
    if value not in options:
        raise StrategyValidationError(
            f"Node '{node_id}': parameter '{key}' must be one of "
            f"{', '.join(options)}, got {value!r}"
        )
    return value


def _percent(node_id: str, raw: dict) -> PercentParams:
    percent = _number(node_id, raw, "percent", positive=True)
    if percent > 100:
        raise StrategyValidationError(
            f"Node '{node_id}': parameter 'percent' must not exceed 100, got {percent!r}"
        )
    return PercentParams(percent=percent)


def _date_params(node_id: str, raw: dict) -> DateParams:
    date = _pick(raw, "date")
    interval = _pick(raw, "interval")
    if date is None and interval is None:
        raise StrategyValidationError(
            f"Node '{node_id}': WHEN_DATE needs a 'date' or an 'interval'"
        )
    if date is not None:
        try:
            datetime.date.fromisoformat(str(date)[:10])
        except ValueError:
            raise StrategyValidationError(
                f"Node '{node_id}': 'date' must be YYYY-MM-DD, got {date!r}"
            ) from None
        date = str(date)[:10]
    if interval is not None:
        interval = _choice(node_id, raw, "interval", ("weekly", "biweekly", "monthly"))
    day_of_week = _choice(
        node_id, raw, "day_of_week", WEEKDAYS, default="monday", aliases=("dayOfWeek",),
    )
    day_of_month = _number(node_id, raw, "day_of_month", "dayOfMonth", default=1)
    if day_of_month != int(day_of_month) or not 1 <= day_of_month <= 31:
        raise StrategyValidationError(
            f"Node '{node_id}': 'dayOfMonth' must be a whole number 1-31, got {day_of_month!r}"
        )
    return DateParams(
        date=date,
        interval=interval,
        day_of_week=day_of_week,
        day_of_month=int(day_of_month),
    )


def parse_params(node_id: str, operation: Operation, raw: dict):
    """Build the typed parameter struct for *operation* from *raw*."""
    if operation in (Operation.WHEN_PRICE_ABOVE, Operation.WHEN_PRICE_BELOW):
        return PriceThresholdParams(threshold=_number(node_id, raw, "threshold"))

    if operation is Operation.WHEN_CHANGE_PERCENT:
        return ChangePercentParams(
            percent=_number(node_id, raw, "percent"),
            direction=_choice(node_id, raw, "direction", ("up", "down", "both"), default="up"),
        )

    if operation is Operation.WHEN_DATE:
        return _date_params(node_id, raw)

    if operation is Operation.IF_RSI:
        value = _number(node_id, raw, "value")
        if not 0 <= value <= 100:
            raise StrategyValidationError(
                f"Node '{node_id}': RSI 'value' must be within 0-100, got {value!r}"
            )
        return RsiParams(
            operator=_choice(node_id, raw, "operator", ("above", "below")),
            value=value,
            period=_period(node_id, raw, default=14),
        )

    if operation is Operation.IF_MOVING_AVG:
        return MovingAverageParams(
            cross_direction=_choice(
                node_id, raw, "cross_direction", ("above", "below"),
                aliases=("crossDirection", "position"),
            ),
            period=_period(node_id, raw, default=20),
            ma_type=_choice(node_id, raw, "type", ("sma", "ema"), default="sma",
                            aliases=("ma_type",)),
        )

    if operation is Operation.IF_VOLUME:
        return VolumeParams(
            multiplier=_number(node_id, raw, "multiplier", default=1.5, positive=True),
            period=_period(node_id, raw, default=20),
        )

    if operation is Operation.IF_PROFIT:
        return ProfitParams(
            target=_choice(node_id, raw, "type", ("profit", "loss"), aliases=("target",)),
            percent=_number(node_id, raw, "percent"),
        )

    if operation in (Operation.BUY, Operation.SELL):
        return AmountParams(amount=_number(node_id, raw, "amount", positive=True))

    return _percent(node_id, raw)


# ── Nodes ────────────────────────────────────────────────────────────────


def parse_node(raw: dict, path: str = "node") -> StrategyNode:
    """Validate one raw node (and its children) into a ``StrategyNode``.

    Raises ``StrategyValidationError`` describing the first problem found.
    """
    if not isinstance(raw, dict):
        raise StrategyValidationError(f"{path}: expected an object, got {type(raw).__name__}")

    node_id = str(_pick(raw, "id", default=path))

    op_name = _pick(raw, "name", "operation")
    try:
        operation = Operation(str(op_name).upper())
    except ValueError:
        raise StrategyValidationError(
            f"Node '{node_id}': unknown operation {op_name!r}"
        ) from None

    expected_kind, _ = OPERATION_SPECS[operation]
    kind_name = _pick(raw, "type", "kind", default=expected_kind.value)
    try:
        kind = NodeKind(str(kind_name).lower())
    except ValueError:
        raise StrategyValidationError(
            f"Node '{node_id}': unknown node kind {kind_name!r}"
        ) from None
    if kind is not expected_kind:
        raise StrategyValidationError(
            f"Node '{node_id}': {operation.value} is a {expected_kind.value}, "
            f"not a {kind.value}"
        )

    params_raw = raw.get("params") or {}
    if not isinstance(params_raw, dict):
        raise StrategyValidationError(f"Node '{node_id}': 'params' must be an object")
    params = parse_params(node_id, operation, params_raw)

    children_raw = raw.get("children") or []
    if children_raw and not kind.accepts_children:
        raise StrategyValidationError(
            f"Node '{node_id}': {kind.value} nodes cannot have children"
        )
    children = tuple(
        parse_node(child, f"{path}.children[{i}]")
        for i, child in enumerate(children_raw)
    )

    return StrategyNode(
        id=node_id,
        kind=kind,
        operation=operation,
        params=params,
        children=children,
    )


def parse_nodes(raw_nodes: Iterable[dict]) -> tuple[StrategyNode, ...]:
    """Validate a list of top-level raw nodes."""
    if isinstance(raw_nodes, dict):
        raise StrategyValidationError("Strategy must be a list of nodes, got an object")
    return tuple(parse_node(raw, f"nodes[{i}]") for i, raw in enumerate(raw_nodes))


def load_strategy_file(path: str | Path) -> tuple[StrategyNode, ...]:
    """Load a strategy from a JSON file holding a node list or ``{"nodes": [...]}``."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("nodes", data.get("blocks"))
        if data is None:
            raise StrategyValidationError(f"{path}: expected a 'nodes' list")
    return parse_nodes(data)


# ── Presets ──────────────────────────────────────────────────────────────


def parse_preset(raw: dict) -> PresetStrategy:
    """Validate one preset catalog entry."""
    preset_id = raw.get("id")
    if not preset_id:
        raise StrategyValidationError("Preset is missing an 'id'")
    category = raw.get("category")
    if category not in STRATEGY_CATEGORIES:
        raise StrategyValidationError(
            f"Preset '{preset_id}': unknown category {category!r}"
        )
    risk_level = _pick(raw, "risk_level", "riskLevel", default="medium")
    if risk_level not in ("low", "medium", "high"):
        raise StrategyValidationError(
            f"Preset '{preset_id}': unknown risk level {risk_level!r}"
        )
    nodes = parse_nodes(_pick(raw, "nodes", "blocks", default=[]))
    if not nodes:
        raise StrategyValidationError(f"Preset '{preset_id}': has no nodes")
    return PresetStrategy(
        id=preset_id,
        name=raw.get("name", preset_id),
        category=category,
        risk_level=risk_level,
        nodes=nodes,
        description=raw.get("description", ""),
        icon=raw.get("icon", ""),
        color=raw.get("color", ""),
    )
