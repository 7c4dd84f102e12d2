"""
Preference extraction.

One extractor, three signal sources: the tracks played in the current
session, a single "current" track (plus history for minute weights), or the
listener's top history tracks. Empty input yields ``NoSignal`` rather than
an empty profile.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable

from .config import HISTORY_MAX_ARTISTS, HISTORY_MAX_TAGS, HISTORY_TOP_K
from .tracks import EmptyReason, ListeningSignal, NoSignal, Track, accumulate_minutes
from .utils import normalize_key

logger = logging.getLogger(__name__)


@dataclass
class PreferenceProfile:
    """Ephemeral per-call listener preferences. Never persisted."""
    source: str = "session"
    tags: set[str] = field(default_factory=set)
    artists: set[str] = field(default_factory=set)
    languages: set[str] = field(default_factory=set)

    # track_id -> summed minutes listened
    history_minutes: dict[int, float] = field(default_factory=dict)
    liked_ids: set[int] = field(default_factory=set)

    def add_track(self, track: Track) -> None:
        self.tags.update(track_tags(track))
        artist = normalize_key(track.artist)
        if artist:
            self.artists.add(artist)
        language = normalize_key(track.language)
        if language:
            self.languages.add(language)

    def minutes_for(self, track_id: int) -> float:
        return self.history_minutes.get(track_id, 0.0)


def track_tags(track: Track) -> set[str]:
    """Normalized, de-duplicated tags of a track."""
    return {tag for tag in (normalize_key(t) for t in track.tags) if tag}


def build_session_profile(
    played: Iterable[Track],
    liked_ids: Iterable[int] | None = None,
) -> PreferenceProfile | NoSignal:
    """Preferences from the tracks actually played in this session."""
    played = list(played or [])
    if not played:
        return NoSignal(EmptyReason.NO_PLAYS, "no tracks played this session")

    profile = PreferenceProfile(source="session", liked_ids=set(liked_ids or ()))
    for track in played:
        profile.add_track(track)

    logger.debug(
        f"Session profile from {len(played)} plays: "
        f"tags={sorted(profile.tags)} artists={sorted(profile.artists)}"
    )
    return profile


def build_context_profile(
    current: Track,
    history: Iterable[ListeningSignal] | None = None,
    liked_ids: Iterable[int] | None = None,
) -> PreferenceProfile:
    """
    Preferences for "more like this track".

    Tag/artist/language sets come from the current track alone; history only
    feeds the per-candidate minute weight.
    """
    profile = PreferenceProfile(
        source="contextual",
        history_minutes=accumulate_minutes(history or ()),
        liked_ids=set(liked_ids or ()),
    )
    profile.add_track(current)
    return profile


def top_history_tracks(
    history: Iterable[ListeningSignal],
    catalog_by_id: dict[int, Track],
    k: int = HISTORY_TOP_K,
) -> list[tuple[Track, float]]:
    """
    The listener's k most-listened tracks, by summed minutes.

    Signals for tracks missing from the catalog are dropped before ranking.
    Equal totals keep first-listened order.
    """
    totals = accumulate_minutes(history or ())
    known = [
        (catalog_by_id[track_id], minutes)
        for track_id, minutes in totals.items()
        if track_id in catalog_by_id
    ]
    if len(known) < len(totals):
        logger.debug(f"Dropped {len(totals) - len(known)} history entries with no catalog record")
    known.sort(key=lambda item: -item[1])
    return known[:k]


def _most_frequent(counts: Counter, n: int) -> set[str]:
    # most_common is a stable sort, so ties keep insertion order
    return {key for key, _ in counts.most_common(n)}


def build_history_profile(
    top_tracks: list[tuple[Track, float]],
    liked_ids: Iterable[int] | None = None,
    max_tags: int = HISTORY_MAX_TAGS,
    max_artists: int = HISTORY_MAX_ARTISTS,
) -> PreferenceProfile | NoSignal:
    """
    Preferences from the listener's top history tracks.

    Keeps the ``max_tags`` most frequent tags and ``max_artists`` most
    frequent artists across those tracks. Each tag counts once per track.
    Carries no listened minutes: the history strategy excludes every
    heard track, so a minutes term would never apply.
    """
    if not top_tracks:
        return NoSignal(EmptyReason.NO_HISTORY, "listener has no usable history")

    tag_counts: Counter = Counter()
    artist_counts: Counter = Counter()
    for track, _minutes in top_tracks:
        # dict.fromkeys dedupes while keeping the track's own tag order
        for tag in dict.fromkeys(normalize_key(t) for t in track.tags):
            if tag:
                tag_counts[tag] += 1
        artist = normalize_key(track.artist)
        if artist:
            artist_counts[artist] += 1

    profile = PreferenceProfile(
        source="history",
        tags=_most_frequent(tag_counts, max_tags),
        artists=_most_frequent(artist_counts, max_artists),
        liked_ids=set(liked_ids or ()),
    )

    logger.debug(
        f"History profile from top {len(top_tracks)} tracks: "
        f"tags={sorted(profile.tags)} artists={sorted(profile.artists)}"
    )
    return profile
