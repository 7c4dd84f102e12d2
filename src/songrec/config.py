"""
Configuration constants for the songrec recommendation engine.

This module centralizes all magic numbers and tunable weights.
Values can be overridden via environment variables or a JSON weights file.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_seed_env(key: str) -> int | None:
    """Parse an optional integer seed; unset or invalid means OS entropy."""
    raw = os.environ.get(key)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {key}='{raw}', jitter will be unseeded")
        return None


# Storage
DB_PATH = Path(os.environ.get("SONGREC_DB", "data/songrec.db"))
STRATEGY_WEIGHTS_PATH = Path(os.environ.get("SONGREC_STRATEGY_WEIGHTS", "data/strategy_weights.json"))

# Jitter source (None = fresh entropy per recommender)
JITTER_SEED = _get_seed_env("SONGREC_SEED")

# History-derived personalization
HISTORY_TOP_K = _get_int_env("SONGREC_HISTORY_TOP_K", 10, min_val=1)
HISTORY_MAX_TAGS = 5
HISTORY_MAX_ARTISTS = 3

# Fallback / browsing list sizes
TRENDING_LIMIT = _get_int_env("SONGREC_TRENDING_LIMIT", 20, min_val=1)
RECENT_LIMIT = _get_int_env("SONGREC_RECENT_LIMIT", 9, min_val=1)

# Listening bookkeeping (store side)
MIN_LISTEN_MINUTES = _get_float_env("SONGREC_MIN_LISTEN_MINUTES", 0.1, min_val=0.0)

# Retry on transient store errors (e.g. "database is locked")
MAX_READ_RETRIES = 3
READ_RETRY_DELAY = 0.05

# History weight: minutes * 2, capped at 20 points
HISTORY_MINUTE_WEIGHT = 2.0
HISTORY_WEIGHT_CAP = 20.0

# Popularity damping: log(1 + likes) * 2 + log(1 + views) * 1
POPULARITY_LIKE_WEIGHT = 2.0
POPULARITY_VIEW_WEIGHT = 1.0

# Per-strategy weights. The three strategies were tuned independently;
# there is no shared scale between them.
STRATEGY_WEIGHTS = {
    'session': {
        'tag': 25.0,
        'artist': 30.0,
        'language': 15.0,
        'liked': 10.0,
        'jitter': 2.0,
        'limit': 15,
    },
    'contextual': {
        'tag': 15.0,
        'artist': 25.0,
        'language': 10.0,
        'liked': 8.0,
        'jitter': 3.0,
        'limit': 10,
    },
    'history': {
        'tag': 20.0,
        'artist': 25.0,
        'language': 0.0,
        'liked': 10.0,
        'jitter': 3.0,
        'limit': 30,
    },
}
