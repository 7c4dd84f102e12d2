"""
Utilities for loading and overriding per-strategy scoring weights.

Defaults live in ``config.STRATEGY_WEIGHTS``. A JSON file may override any
field of any strategy; fields it does not mention keep their default.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

from .config import STRATEGY_WEIGHTS, STRATEGY_WEIGHTS_PATH

logger = logging.getLogger(__name__)

STRATEGIES = ('session', 'contextual', 'history')


@dataclass(frozen=True)
class StrategyWeights:
    """Weights for one strategy's additive scoring terms."""

    tag: float
    artist: float
    language: float
    liked: float
    jitter: float
    limit: int

    @classmethod
    def defaults(cls, strategy: str) -> "StrategyWeights":
        return cls(**STRATEGY_WEIGHTS[strategy])

    def with_overrides(self, overrides: dict[str, Any]) -> "StrategyWeights":
        """Apply valid overrides; reject negative or non-numeric values per field."""
        values = asdict(self)
        for key, raw in (overrides or {}).items():
            if key not in values:
                logger.warning("Ignoring unknown weight field '%s'", key)
                continue
            try:
                value = int(raw) if key == 'limit' else float(raw)
            except (TypeError, ValueError):
                logger.warning("Ignoring weight %s=%r (not a number)", key, raw)
                continue
            if value < 0 or (key == 'limit' and value < 1):
                logger.warning("Ignoring weight %s=%r (out of range)", key, raw)
                continue
            values[key] = value
        return StrategyWeights(**values)


def default_strategy_weights() -> dict[str, StrategyWeights]:
    return {name: StrategyWeights.defaults(name) for name in STRATEGIES}


def strategy_weights_from_dict(payload: dict[str, Any]) -> dict[str, StrategyWeights]:
    weights = default_strategy_weights()
    for name, overrides in (payload or {}).items():
        if name not in weights:
            logger.warning("Ignoring weights for unknown strategy '%s'", name)
            continue
        if not isinstance(overrides, dict):
            logger.warning("Ignoring weights for '%s' (expected an object)", name)
            continue
        weights[name] = weights[name].with_overrides(overrides)
    return weights


def strategy_weights_to_dict(weights: dict[str, StrategyWeights]) -> dict[str, dict[str, Any]]:
    return {name: {f.name: getattr(w, f.name) for f in fields(w)} for name, w in weights.items()}


def load_strategy_weights(path: str | Path | None = None) -> dict[str, StrategyWeights]:
    """Load weights from disk; fall back to defaults if missing or invalid."""
    weight_path = Path(path) if path else STRATEGY_WEIGHTS_PATH
    if not weight_path.exists():
        logger.debug("Strategy weights file not found at %s; using defaults", weight_path)
        return default_strategy_weights()

    try:
        payload = json.loads(weight_path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to load strategy weights from %s: %s", weight_path, exc)
        return default_strategy_weights()

    if not isinstance(payload, dict):
        logger.warning("Strategy weights at %s must be a JSON object; using defaults", weight_path)
        return default_strategy_weights()

    return strategy_weights_from_dict(payload)


def save_strategy_weights(weights: dict[str, StrategyWeights], path: str | Path | None = None) -> Path:
    """Persist weights to disk (for hand tuning)."""
    weight_path = Path(path) if path else STRATEGY_WEIGHTS_PATH
    weight_path.parent.mkdir(parents=True, exist_ok=True)
    weight_path.write_text(json.dumps(strategy_weights_to_dict(weights), indent=2))
    return weight_path
