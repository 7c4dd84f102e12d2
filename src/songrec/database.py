import sqlite3
import json
import logging
import threading
import time
from contextlib import contextmanager
from functools import wraps
from typing import Iterable

from .config import DB_PATH, MAX_READ_RETRIES, MIN_LISTEN_MINUTES, READ_RETRY_DELAY
from .tracks import ListeningSignal, Track, UnknownTrackError, UpstreamReadFailure
from .utils import retry_with_backoff

logger = logging.getLogger(__name__)


class ConnectionPool:
    """
    Thread-safe SQLite connection pool.

    Features:
    - One connection per thread (SQLite threading requirement)
    - Periodic health checks via SELECT 1
    - Automatic cleanup of dead thread connections
    - Explicit transaction nesting tracking
    """

    def __init__(self, db_path, max_size: int = 50, health_check_interval: int = 300):
        self._db_path = db_path
        self._max_size = max_size
        self._health_check_interval = health_check_interval

        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._last_health_check: dict[int, float] = {}
        self._transaction_depth: dict[int, int] = {}
        self._last_cleanup = time.time()
        self._cleanup_interval = 60

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _health_check(self, conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def _maybe_cleanup(self):
        """Periodically close connections owned by threads that have exited."""
        now = time.time()
        if now - self._last_cleanup < self._cleanup_interval:
            return

        self._last_cleanup = now
        alive_threads = {t.ident for t in threading.enumerate()}
        dead_threads = set(self._connections.keys()) - alive_threads

        for thread_id in dead_threads:
            conn = self._connections.pop(thread_id, None)
            self._last_health_check.pop(thread_id, None)
            self._transaction_depth.pop(thread_id, None)
            if conn:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")

        if dead_threads:
            logger.debug(f"Connection pool cleanup: removed {len(dead_threads)} dead connections")

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection for the current thread, creating if necessary."""
        thread_id = threading.get_ident()
        now = time.time()

        with self._lock:
            self._maybe_cleanup()

            conn = self._connections.get(thread_id)
            if conn is not None and now - self._last_health_check.get(thread_id, 0) > self._health_check_interval:
                if self._health_check(conn):
                    self._last_health_check[thread_id] = now
                else:
                    logger.warning(f"Connection for thread {thread_id} failed health check, replacing")
                    try:
                        conn.close()
                    except sqlite3.Error as e:
                        logger.debug(f"Error closing unhealthy connection for thread {thread_id}: {e}")
                    conn = None

            if conn is None:
                if len(self._connections) >= self._max_size:
                    self._last_cleanup = 0
                    self._maybe_cleanup()
                    if len(self._connections) >= self._max_size:
                        raise RuntimeError(
                            f"Connection pool exhausted ({self._max_size} connections). "
                            f"Possible connection leak or too many threads."
                        )

                conn = self._create_connection()
                self._connections[thread_id] = conn
                self._last_health_check[thread_id] = now
                self._transaction_depth[thread_id] = 0
                logger.debug(f"Created connection for thread {thread_id} (pool size: {len(self._connections)})")

            return conn

    def get_transaction_depth(self) -> int:
        return self._transaction_depth.get(threading.get_ident(), 0)

    def increment_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = self._transaction_depth.get(thread_id, 0) + 1

    def decrement_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            depth = self._transaction_depth.get(thread_id, 1)
            self._transaction_depth[thread_id] = max(0, depth - 1)

    def close_all(self):
        """Close all connections (call on application shutdown)."""
        with self._lock:
            for thread_id, conn in list(self._connections.items()):
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")

            self._connections.clear()
            self._last_health_check.clear()
            self._transaction_depth.clear()
            logger.debug("Connection pool closed")


# Global pool instance
_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Get database connection with proper transaction handling.

    Args:
        read_only: If True, skip commit on exit

    Only the outermost context commits or rolls back; nested contexts are
    no-ops for transaction control.
    """
    pool = _get_pool()
    conn = pool.get_connection()

    is_outermost = pool.get_transaction_depth() == 0
    pool.increment_transaction_depth()

    try:
        yield conn

        if is_outermost and not read_only:
            conn.commit()

    except Exception:
        if is_outermost:
            conn.rollback()
        raise

    finally:
        pool.decrement_transaction_depth()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS songs (
                track_id INTEGER PRIMARY KEY,
                title TEXT NOT NULL,
                artist TEXT NOT NULL,
                language TEXT,
                tags TEXT,          -- JSON list
                likes INTEGER NOT NULL DEFAULT 0,
                views INTEGER NOT NULL DEFAULT 0,
                image_id TEXT
            );

            CREATE TABLE IF NOT EXISTS liked_songs (
                listener_id TEXT NOT NULL,
                track_id INTEGER NOT NULL REFERENCES songs(track_id) ON DELETE CASCADE,
                liked_at TEXT DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (listener_id, track_id)
            );

            CREATE TABLE IF NOT EXISTS history (
                listener_id TEXT NOT NULL,
                track_id INTEGER NOT NULL REFERENCES songs(track_id) ON DELETE CASCADE,
                minutes_listened REAL NOT NULL DEFAULT 0,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (listener_id, track_id)
            );

            CREATE TABLE IF NOT EXISTS users (
                listener_id TEXT PRIMARY KEY,
                last_track_id INTEGER REFERENCES songs(track_id) ON DELETE SET NULL
            );

            CREATE INDEX IF NOT EXISTS idx_history_minutes ON history(listener_id, minutes_listened DESC);
            CREATE INDEX IF NOT EXISTS idx_songs_views ON songs(views DESC);
        """)


def load_json(val):
    """Safely load a JSON list from a db field."""
    if not val:
        return []
    if isinstance(val, list):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return []


def _row_to_track(row: sqlite3.Row) -> Track:
    return Track(
        track_id=row['track_id'],
        title=row['title'],
        artist=row['artist'],
        language=row['language'] or "",
        tags=tuple(load_json(row['tags'])),
        likes=row['likes'],
        views=row['views'],
        image_id=row['image_id'],
    )


def _read(source: str):
    """
    Wrap a store read: retry transient lock errors, then surface any
    remaining sqlite failure as UpstreamReadFailure.
    """
    def decorator(func):
        retried = retry_with_backoff(
            max_retries=MAX_READ_RETRIES,
            initial_delay=READ_RETRY_DELAY,
            exceptions=(sqlite3.OperationalError,),
        )(func)

        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return retried(*args, **kwargs)
            except sqlite3.Error as e:
                raise UpstreamReadFailure(source, e) from e

        return wrapper
    return decorator


@_read("catalog")
def list_catalog() -> list[Track]:
    """All tracks, ordered by id."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("SELECT * FROM songs ORDER BY track_id").fetchall()
    return [_row_to_track(row) for row in rows]


@_read("history")
def list_history(listener_id: str) -> list[ListeningSignal]:
    """History entries for a listener, most-listened first."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT track_id, minutes_listened
            FROM history
            WHERE listener_id = ?
            ORDER BY minutes_listened DESC, rowid
        """, (listener_id,)).fetchall()
    return [ListeningSignal(row['track_id'], row['minutes_listened']) for row in rows]


@_read("liked ids")
def list_liked_ids(listener_id: str) -> set[int]:
    with get_db(read_only=True) as conn:
        rows = conn.execute(
            "SELECT track_id FROM liked_songs WHERE listener_id = ?", (listener_id,)
        ).fetchall()
    return {row['track_id'] for row in rows}


@_read("track")
def get_track(track_id: int) -> Track | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("SELECT * FROM songs WHERE track_id = ?", (track_id,)).fetchone()
    return _row_to_track(row) if row else None


@_read("last played")
def get_last_played(listener_id: str) -> Track | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("""
            SELECT s.* FROM users u
            JOIN songs s ON s.track_id = u.last_track_id
            WHERE u.listener_id = ?
        """, (listener_id,)).fetchone()
    return _row_to_track(row) if row else None


def upsert_tracks(tracks: Iterable[Track]) -> int:
    """Insert or replace catalog records. Returns the number written."""
    rows = [
        (t.track_id, t.title, t.artist, t.language, json.dumps(list(t.tags)), t.likes, t.views, t.image_id)
        for t in tracks
    ]
    if not rows:
        return 0
    with get_db() as conn:
        conn.executemany("""
            INSERT INTO songs (track_id, title, artist, language, tags, likes, views, image_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(track_id) DO UPDATE SET
                title = excluded.title,
                artist = excluded.artist,
                language = excluded.language,
                tags = excluded.tags,
                likes = excluded.likes,
                views = excluded.views,
                image_id = excluded.image_id
        """, rows)
    return len(rows)


def _require_track(conn: sqlite3.Connection, track_id: int) -> None:
    if conn.execute("SELECT 1 FROM songs WHERE track_id = ?", (track_id,)).fetchone() is None:
        raise UnknownTrackError(track_id)


def record_listening(listener_id: str, track_id: int, minutes: float) -> float:
    """
    Add listened minutes to a listener's history entry for a track.

    Durations at or below MIN_LISTEN_MINUTES are ignored. Minutes are
    rounded to 2 decimals and accumulate onto any existing entry.

    Returns:
        Minutes actually recorded (0.0 if ignored)
    """
    if minutes is None or minutes <= MIN_LISTEN_MINUTES:
        logger.debug(f"Ignoring {minutes} min for track {track_id} (below threshold)")
        return 0.0

    rounded = round(minutes, 2)
    with get_db() as conn:
        _require_track(conn, track_id)
        conn.execute("""
            INSERT INTO history (listener_id, track_id, minutes_listened)
            VALUES (?, ?, ?)
            ON CONFLICT(listener_id, track_id) DO UPDATE SET
                minutes_listened = minutes_listened + excluded.minutes_listened,
                updated_at = CURRENT_TIMESTAMP
        """, (listener_id, track_id, rounded))
    logger.debug(f"History updated: +{rounded} min for track {track_id}")
    return rounded


def toggle_like(listener_id: str, track_id: int) -> bool:
    """
    Flip a listener's like on a track and adjust the track's like counter.

    Returns:
        True if the track is now liked, False if the like was removed
    """
    with get_db() as conn:
        _require_track(conn, track_id)
        existing = conn.execute(
            "SELECT 1 FROM liked_songs WHERE listener_id = ? AND track_id = ?",
            (listener_id, track_id),
        ).fetchone()

        if existing:
            conn.execute(
                "DELETE FROM liked_songs WHERE listener_id = ? AND track_id = ?",
                (listener_id, track_id),
            )
            conn.execute(
                "UPDATE songs SET likes = MAX(likes - 1, 0) WHERE track_id = ?", (track_id,)
            )
            return False

        conn.execute(
            "INSERT INTO liked_songs (listener_id, track_id) VALUES (?, ?)",
            (listener_id, track_id),
        )
        conn.execute("UPDATE songs SET likes = likes + 1 WHERE track_id = ?", (track_id,))
        return True


def record_play(listener_id: str, track_id: int) -> None:
    """Count a view and remember the track as the listener's last played."""
    with get_db() as conn:
        _require_track(conn, track_id)
        conn.execute("UPDATE songs SET views = views + 1 WHERE track_id = ?", (track_id,))
        conn.execute("""
            INSERT INTO users (listener_id, last_track_id) VALUES (?, ?)
            ON CONFLICT(listener_id) DO UPDATE SET last_track_id = excluded.last_track_id
        """, (listener_id, track_id))


def get_stats() -> dict:
    with get_db(read_only=True) as conn:
        return {
            'tracks': conn.execute("SELECT COUNT(*) FROM songs").fetchone()[0],
            'listeners': conn.execute("SELECT COUNT(DISTINCT listener_id) FROM history").fetchone()[0],
            'history_entries': conn.execute("SELECT COUNT(*) FROM history").fetchone()[0],
            'likes': conn.execute("SELECT COUNT(*) FROM liked_songs").fetchone()[0],
        }


class SqliteStore:
    """Read-side adapter handed to SongRecommender."""

    def list_catalog(self) -> list[Track]:
        return list_catalog()

    def list_history(self, listener_id: str) -> list[ListeningSignal]:
        return list_history(listener_id)

    def list_liked_ids(self, listener_id: str) -> set[int]:
        return list_liked_ids(listener_id)
