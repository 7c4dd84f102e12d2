import argparse
import asyncio
import atexit
import json
import logging
from pathlib import Path

from tqdm import tqdm

from .config import STRATEGY_WEIGHTS_PATH
from .database import (
    SqliteStore,
    close_pool,
    get_last_played,
    get_stats,
    get_track,
    init_db,
    record_listening,
    record_play,
    toggle_like,
    upsert_tracks,
)
from .recommender import SongRecommender
from .tracks import Recommendation, SongrecError, Track

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)

IMPORT_CHUNK_SIZE = 500


def _validate_listener(listener_id: str) -> str:
    """Listener ids are opaque but must be non-blank."""
    cleaned = listener_id.strip()
    if not cleaned:
        raise ValueError("Listener id must not be empty")
    return cleaned


def _load_tracks_file(path: Path) -> list[Track]:
    """
    Read a catalog JSON file: either a list of track objects or
    ``{"tracks": [...]}``. Invalid entries are skipped with a warning.
    """
    payload = json.loads(path.read_text())
    records = payload.get('tracks', []) if isinstance(payload, dict) else payload

    tracks: list[Track] = []
    for idx, record in enumerate(records):
        try:
            tracks.append(Track.from_dict(record))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping catalog entry #{idx}: {e}")
    return tracks


def _build_recommender(args: argparse.Namespace) -> SongRecommender:
    return SongRecommender(
        store=SqliteStore(),
        seed=getattr(args, 'seed', None),
        weights_path=getattr(args, 'weights', None),
    )


def _resolve_tracks(track_ids: list[int] | None) -> list[Track]:
    tracks = []
    for track_id in track_ids or []:
        track = get_track(track_id)
        if track is None:
            logger.warning(f"Unknown track id {track_id}, ignoring")
            continue
        tracks.append(track)
    return tracks


def _output_recommendations(recs: list[Recommendation], fmt: str, title: str) -> None:
    if fmt == 'json':
        print(json.dumps([r.to_dict() for r in recs], indent=2))
        return

    if not recs:
        logger.info(f"\nNo {title.lower()} available.")
        return

    logger.info(f"\n{title}:")
    for i, rec in enumerate(recs, 1):
        heart = " ♥" if rec.liked else ""
        reasons = f"  [{'; '.join(rec.reasons)}]" if rec.reasons else ""
        logger.info(f"  {i:2}. {rec.track.title} by {rec.track.artist}{heart} ({rec.score:.1f}){reasons}")


def cmd_init_db(args: argparse.Namespace) -> None:
    init_db()
    logger.info("Database initialized")


def cmd_import(args: argparse.Namespace) -> None:
    """Import catalog tracks from JSON."""
    init_db()
    tracks = _load_tracks_file(Path(args.file))
    written = 0
    for start in tqdm(range(0, len(tracks), IMPORT_CHUNK_SIZE), desc="Tracks", unit="chunk"):
        written += upsert_tracks(tracks[start:start + IMPORT_CHUNK_SIZE])
    logger.info(f"Imported {written} tracks from {args.file}")


def cmd_listen(args: argparse.Namespace) -> None:
    listener = _validate_listener(args.listener)
    recorded = record_listening(listener, args.track_id, args.minutes)
    if recorded:
        logger.info(f"History updated: +{recorded} min for track {args.track_id}")
    else:
        logger.info(f"Ignored {args.minutes} min for track {args.track_id} (too short)")


def cmd_play(args: argparse.Namespace) -> None:
    listener = _validate_listener(args.listener)
    record_play(listener, args.track_id)
    logger.info(f"Recorded play of track {args.track_id} for {listener}")


def cmd_like(args: argparse.Namespace) -> None:
    listener = _validate_listener(args.listener)
    liked = toggle_like(listener, args.track_id)
    logger.info(f"Track {args.track_id} {'liked' if liked else 'unliked'} by {listener}")


def cmd_recommend(args: argparse.Namespace) -> None:
    """Run one of the three recommendation strategies."""
    listener = _validate_listener(args.listener)
    recommender = _build_recommender(args)
    exclude = set(args.exclude or [])

    if args.strategy == 'session':
        played = _resolve_tracks(args.played)
        # Tracks already heard this session are never suggested again
        exclude |= {track.track_id for track in played}
        recs = asyncio.run(recommender.rank_session_recommendations(played, exclude, listener_id=listener))
        title = "Session recommendations"
    elif args.strategy == 'context':
        if args.current is None:
            logger.error("--current is required for context recommendations")
            return
        current = get_track(args.current)
        if current is None:
            logger.error(f"Unknown track id {args.current}")
            return
        recs = asyncio.run(recommender.rank_contextual_recommendations(listener, current, exclude))
        title = f"More like {current.title}"
    else:
        recs = asyncio.run(recommender.rank_history_recommendations(listener))
        title = f"Picks for {listener}"

    _output_recommendations(recs, args.format, title)


def cmd_recent(args: argparse.Namespace) -> None:
    listener = _validate_listener(args.listener)
    recommender = _build_recommender(args)
    recs = asyncio.run(recommender.rank_recently_played(listener))
    _output_recommendations(recs, args.format, "Recently played")
    if args.format == 'text':
        last = get_last_played(listener)
        if last is not None:
            logger.info(f"\nLast played: {last.title} by {last.artist}")


def cmd_browse(args: argparse.Namespace) -> None:
    """List the whole catalog, most popular first."""
    listener = _validate_listener(args.listener) if args.listener else None
    recommender = _build_recommender(args)
    recs = asyncio.run(recommender.rank_catalog(listener))
    _output_recommendations(recs, args.format, "Catalog")


def cmd_stats(args: argparse.Namespace) -> None:
    """Show database statistics."""
    stats = get_stats()
    logger.info(f"\nDatabase Statistics:")
    logger.info(f"  Tracks: {stats['tracks']}")
    logger.info(f"  Listeners with history: {stats['listeners']}")
    logger.info(f"  History entries: {stats['history_entries']}")
    logger.info(f"  Likes: {stats['likes']}")


def main():
    parser = argparse.ArgumentParser(description="Song recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    import_parser = subparsers.add_parser("import", help="Import catalog tracks from JSON")
    import_parser.add_argument("file", help="Input JSON file path")
    import_parser.set_defaults(func=cmd_import)

    listen_parser = subparsers.add_parser("listen", help="Record listened minutes for a track")
    listen_parser.add_argument("listener", help="Listener id")
    listen_parser.add_argument("track_id", type=int, help="Track id")
    listen_parser.add_argument("minutes", type=float, help="Minutes listened")
    listen_parser.set_defaults(func=cmd_listen)

    play_parser = subparsers.add_parser("play", help="Count a play (views, last played)")
    play_parser.add_argument("listener", help="Listener id")
    play_parser.add_argument("track_id", type=int, help="Track id")
    play_parser.set_defaults(func=cmd_play)

    like_parser = subparsers.add_parser("like", help="Toggle a like")
    like_parser.add_argument("listener", help="Listener id")
    like_parser.add_argument("track_id", type=int, help="Track id")
    like_parser.set_defaults(func=cmd_like)

    rec_parser = subparsers.add_parser("recommend", help="Generate recommendations")
    rec_parser.add_argument("listener", help="Listener id")
    rec_parser.add_argument("--strategy", choices=['session', 'context', 'history'],
                            default='history', help="Recommendation strategy")
    rec_parser.add_argument("--played", type=int, nargs="+",
                            help="Track ids played this session (session strategy)")
    rec_parser.add_argument("--current", type=int, help="Currently playing track id (context strategy)")
    rec_parser.add_argument("--exclude", type=int, nargs="+", help="Track ids to leave out")
    rec_parser.add_argument("--seed", type=int, help="Seed the score jitter for reproducible output")
    rec_parser.add_argument("--weights", default=str(STRATEGY_WEIGHTS_PATH),
                            help="JSON file with per-strategy weight overrides")
    rec_parser.add_argument("--format", choices=['text', 'json'], default='text', help="Output format")
    rec_parser.set_defaults(func=cmd_recommend)

    recent_parser = subparsers.add_parser("recent", help="Show most-listened tracks")
    recent_parser.add_argument("listener", help="Listener id")
    recent_parser.add_argument("--format", choices=['text', 'json'], default='text', help="Output format")
    recent_parser.set_defaults(func=cmd_recent)

    browse_parser = subparsers.add_parser("browse", help="List the catalog by popularity")
    browse_parser.add_argument("listener", nargs="?", help="Listener id (marks liked tracks)")
    browse_parser.add_argument("--format", choices=['text', 'json'], default='text', help="Output format")
    browse_parser.set_defaults(func=cmd_browse)

    stats_parser = subparsers.add_parser("stats", help="Show database statistics")
    stats_parser.set_defaults(func=cmd_stats)

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        args.func(args)
    except (SongrecError, ValueError) as e:
        logger.error(str(e))
        raise SystemExit(1)


if __name__ == "__main__":
    main()
