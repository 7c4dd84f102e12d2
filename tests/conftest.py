import importlib
import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from songrec.tracks import ListeningSignal, Track  # noqa: E402


def make_track(track_id, title=None, artist="Artist", language="en", tags=(), likes=0, views=0):
    return Track(
        track_id=track_id,
        title=title or f"Track {track_id}",
        artist=artist,
        language=language,
        tags=tuple(tags),
        likes=likes,
        views=views,
    )


@pytest.fixture
def abc_catalog():
    """A/B/C catalog used by the contextual scenario."""
    return [
        make_track(1, "A", artist="X", tags=["pop", "rock"], likes=10, views=100),
        make_track(2, "B", artist="Y", tags=["rock"], likes=5, views=50),
        make_track(3, "C", artist="Z", tags=["jazz"], likes=1, views=5),
    ]


@pytest.fixture
def seeded_rng():
    return np.random.default_rng(1234)


@pytest.fixture
def signals():
    def _signals(*pairs):
        return [ListeningSignal(track_id, minutes) for track_id, minutes in pairs]
    return _signals


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("SONGREC_DB", str(db_path))
    import songrec.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB and cleanly close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("SONGREC_DB", str(db_path))

    import songrec.config as config
    import songrec.database as database

    importlib.reload(config)
    importlib.reload(database)

    yield database
    database.close_pool()


@pytest.fixture
def fresh_cli(fresh_db, tmp_path):
    """CLI module bound to the temp database."""
    import songrec.cli as cli

    importlib.reload(cli)
    yield cli, fresh_db
