import asyncio
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable

import numpy as np

from .config import (
    HISTORY_MINUTE_WEIGHT,
    HISTORY_TOP_K,
    HISTORY_WEIGHT_CAP,
    JITTER_SEED,
    POPULARITY_LIKE_WEIGHT,
    POPULARITY_VIEW_WEIGHT,
    RECENT_LIMIT,
    TRENDING_LIMIT,
)
from .profile import (
    PreferenceProfile,
    build_context_profile,
    build_history_profile,
    build_session_profile,
    top_history_tracks,
    track_tags,
)
from .strategy_weights import StrategyWeights, load_strategy_weights
from .tracks import (
    EmptyReason,
    ListeningSignal,
    NoSignal,
    Recommendation,
    Track,
    UpstreamReadFailure,
)
from .utils import normalize_key

logger = logging.getLogger(__name__)


def history_weight(minutes: float) -> float:
    """Minutes on this exact track, doubled and capped."""
    if minutes <= 0:
        return 0.0
    return min(minutes * HISTORY_MINUTE_WEIGHT, HISTORY_WEIGHT_CAP)


def popularity_score(likes: int, views: int) -> float:
    """Log-damped popularity. log(1 + x) keeps zero counts at zero."""
    return (
        math.log1p(max(likes, 0)) * POPULARITY_LIKE_WEIGHT
        + math.log1p(max(views, 0)) * POPULARITY_VIEW_WEIGHT
    )


TermFunc = Callable[
    [Track, PreferenceProfile, StrategyWeights],
    tuple[float, list[str]],
]


def _tag_term(track: Track, profile: PreferenceProfile, weights: StrategyWeights) -> tuple[float, list[str]]:
    matches = sorted(tag for tag in track_tags(track) if tag in profile.tags)
    if not matches:
        return 0.0, []
    return len(matches) * weights.tag, [f"Tag: {', '.join(matches)}"]


def _artist_term(track: Track, profile: PreferenceProfile, weights: StrategyWeights) -> tuple[float, list[str]]:
    if normalize_key(track.artist) in profile.artists:
        return weights.artist, [f"Artist: {track.artist}"]
    return 0.0, []


def _language_term(track: Track, profile: PreferenceProfile, weights: StrategyWeights) -> tuple[float, list[str]]:
    language = normalize_key(track.language)
    if language and language in profile.languages and weights.language:
        return weights.language, [f"Language: {track.language}"]
    return 0.0, []


def _history_term(track: Track, profile: PreferenceProfile, weights: StrategyWeights) -> tuple[float, list[str]]:
    minutes = profile.minutes_for(track.track_id)
    if minutes <= 0:
        return 0.0, []
    return history_weight(minutes), [f"Listened {minutes:.1f} min"]


def _popularity_term(track: Track, profile: PreferenceProfile, weights: StrategyWeights) -> tuple[float, list[str]]:
    return popularity_score(track.likes, track.views), []


def _liked_term(track: Track, profile: PreferenceProfile, weights: StrategyWeights) -> tuple[float, list[str]]:
    if track.track_id in profile.liked_ids:
        return weights.liked, ["Liked"]
    return 0.0, []


DEFAULT_TERMS: list[tuple[str, TermFunc]] = [
    ('tag', _tag_term),
    ('artist', _artist_term),
    ('language', _language_term),
    ('history', _history_term),
    ('popularity', _popularity_term),
    ('liked', _liked_term),
]


@dataclass
class ScoredCandidate:
    track: Track
    score: float
    liked: bool
    breakdown: dict[str, float] = field(default_factory=dict)
    reasons: list[str] = field(default_factory=list)

    @property
    def base_score(self) -> float:
        """Score without the jitter addend."""
        return self.score - self.breakdown.get('jitter', 0.0)

    def to_recommendation(self) -> Recommendation:
        return Recommendation(
            track=self.track,
            score=self.score,
            liked=self.liked,
            reasons=self.reasons[:3],
        )


class ScoringEngine:
    """
    Additive scoring: each term contributes independently, jitter last.

    ``score_terms`` is deterministic; ``score`` adds one uniform draw from
    the supplied generator so repeated calls don't return identical lists.
    """

    def __init__(self, terms: list[tuple[str, TermFunc]] | None = None):
        self.terms = terms if terms is not None else DEFAULT_TERMS

    def score_terms(
        self,
        track: Track,
        profile: PreferenceProfile,
        weights: StrategyWeights,
    ) -> tuple[dict[str, float], list[str]]:
        breakdown: dict[str, float] = {}
        reasons: list[str] = []
        for name, term in self.terms:
            value, term_reasons = term(track, profile, weights)
            breakdown[name] = value
            reasons.extend(term_reasons)
        return breakdown, reasons

    def score(
        self,
        track: Track,
        profile: PreferenceProfile,
        weights: StrategyWeights,
        rng: np.random.Generator,
    ) -> ScoredCandidate:
        breakdown, reasons = self.score_terms(track, profile, weights)
        breakdown['jitter'] = float(rng.uniform(0.0, weights.jitter)) if weights.jitter > 0 else 0.0
        return ScoredCandidate(
            track=track,
            score=sum(breakdown.values()),
            liked=track.track_id in profile.liked_ids,
            breakdown=breakdown,
            reasons=reasons,
        )


def filter_candidates(
    catalog: Iterable[Track],
    exclude_ids: Iterable[int] | None = None,
    current_id: int | None = None,
) -> list[Track] | NoSignal:
    """Drop excluded tracks and the current track; empty result is NoSignal."""
    excluded = set(exclude_ids or ())
    if current_id is not None:
        excluded.add(current_id)

    candidates = [track for track in catalog if track.track_id not in excluded]
    if not candidates:
        return NoSignal(EmptyReason.NO_CANDIDATES, f"{len(excluded)} ids excluded, nothing left")
    return candidates


def select_top(scored: Iterable[ScoredCandidate], n: int) -> list[ScoredCandidate]:
    """Highest scores first, one entry per track id, at most n."""
    selected: list[ScoredCandidate] = []
    seen: set[int] = set()
    for candidate in sorted(scored, key=lambda c: -c.score):
        if candidate.track.track_id in seen:
            continue
        seen.add(candidate.track.track_id)
        selected.append(candidate)
        if len(selected) >= n:
            break
    return selected


@dataclass
class Snapshot:
    """
    Everything one ranking pass reads, fetched up front.

    ``None`` marks a read that failed; see ``failures``.
    """
    catalog: list[Track] | None = field(default_factory=list)
    history: list[ListeningSignal] | None = field(default_factory=list)
    liked_ids: set[int] = field(default_factory=set)
    failures: list[UpstreamReadFailure] = field(default_factory=list)

    def catalog_by_id(self) -> dict[int, Track]:
        return {track.track_id: track for track in self.catalog or []}


class SongRecommender:
    """
    Composes extractor, filter, scorer and ranker into the three strategies.

    Stateless between calls: the caller owns what was played, liked and
    excluded, and passes it in fresh each time.
    """

    def __init__(
        self,
        store=None,
        weights: dict[str, StrategyWeights] | None = None,
        rng: np.random.Generator | None = None,
        seed: int | None = JITTER_SEED,
        weights_path: str | Path | None = None,
        scoring_engine: ScoringEngine | None = None,
    ):
        self.store = store
        self.weights = weights or load_strategy_weights(weights_path)
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        self.scoring_engine = scoring_engine or ScoringEngine()

    # ------------------------------------------------------------------
    # Upstream reads
    # ------------------------------------------------------------------

    async def load_snapshot(
        self,
        listener_id: str | None = None,
        *,
        history: bool = True,
        liked: bool = True,
    ) -> Snapshot:
        """
        Fetch catalog, history and liked ids concurrently.

        Failed reads are logged and recorded on the snapshot; they never
        propagate.
        """
        if self.store is None:
            raise ValueError("SongRecommender has no store; pass a Snapshot to the recommend_* methods")

        reads = {'catalog': self.store.list_catalog}
        if listener_id is not None and history:
            reads['history'] = lambda: self.store.list_history(listener_id)
        if listener_id is not None and liked:
            reads['liked ids'] = lambda: self.store.list_liked_ids(listener_id)

        results = await asyncio.gather(
            *(asyncio.to_thread(read) for read in reads.values()),
            return_exceptions=True,
        )

        snapshot = Snapshot()
        for source, result in zip(reads, results):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
            if isinstance(result, Exception):
                failure = result if isinstance(result, UpstreamReadFailure) else UpstreamReadFailure(source, result)
                logger.warning(f"Upstream read failed: {failure}")
                snapshot.failures.append(failure)
                result = None

            if source == 'catalog':
                snapshot.catalog = result
            elif source == 'history':
                snapshot.history = result
            else:
                snapshot.liked_ids = set(result or ())

        return snapshot

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def rank_session_recommendations(
        self,
        played: list[Track],
        exclude_ids: Iterable[int] | None = None,
        listener_id: str | None = None,
    ) -> list[Recommendation]:
        """Recommendations from what was played this session (at most 15)."""
        if not played:
            return self._resolve_empty('session', NoSignal(EmptyReason.NO_PLAYS), None)
        snapshot = await self.load_snapshot(listener_id, history=False)
        return self.recommend_session(snapshot, played, exclude_ids)

    async def rank_contextual_recommendations(
        self,
        listener_id: str,
        current: Track,
        exclude_ids: Iterable[int] | None = None,
    ) -> list[Recommendation]:
        """Tracks like ``current``, weighted by the listener's history (at most 10)."""
        snapshot = await self.load_snapshot(listener_id)
        return self.recommend_contextual(snapshot, current, exclude_ids)

    async def rank_history_recommendations(self, listener_id: str) -> list[Recommendation]:
        """Personalized picks from top history (at most 30), trending if no history."""
        snapshot = await self.load_snapshot(listener_id)
        return self.recommend_from_history(snapshot)

    async def rank_recently_played(self, listener_id: str) -> list[Recommendation]:
        snapshot = await self.load_snapshot(listener_id)
        return self.recent_tracks(snapshot)

    async def rank_catalog(self, listener_id: str | None = None) -> list[Recommendation]:
        snapshot = await self.load_snapshot(listener_id, history=False)
        return self.popular_tracks(snapshot)

    # ------------------------------------------------------------------
    # Pure strategies over a snapshot
    # ------------------------------------------------------------------

    def recommend_session(
        self,
        snapshot: Snapshot,
        played: list[Track],
        exclude_ids: Iterable[int] | None = None,
    ) -> list[Recommendation]:
        profile = build_session_profile(played, snapshot.liked_ids)
        if isinstance(profile, NoSignal):
            return self._resolve_empty('session', profile, snapshot)

        candidates = self._candidates(snapshot, exclude_ids)
        if isinstance(candidates, NoSignal):
            return self._resolve_empty('session', candidates, snapshot)

        return self._rank('session', candidates, profile)

    def recommend_contextual(
        self,
        snapshot: Snapshot,
        current: Track,
        exclude_ids: Iterable[int] | None = None,
    ) -> list[Recommendation]:
        # A failed history read only costs the minute weights
        profile = build_context_profile(current, snapshot.history or [], snapshot.liked_ids)

        candidates = self._candidates(snapshot, exclude_ids, current_id=current.track_id)
        if isinstance(candidates, NoSignal):
            return self._resolve_empty('contextual', candidates, snapshot)

        return self._rank('contextual', candidates, profile)

    def recommend_from_history(self, snapshot: Snapshot) -> list[Recommendation]:
        if snapshot.catalog is None:
            return self._resolve_empty('history', NoSignal(EmptyReason.UPSTREAM_FAILURE, "catalog"), snapshot)
        if snapshot.history is None:
            return self._resolve_empty('history', NoSignal(EmptyReason.UPSTREAM_FAILURE, "history"), snapshot)

        top_tracks = top_history_tracks(snapshot.history, snapshot.catalog_by_id(), HISTORY_TOP_K)
        profile = build_history_profile(top_tracks, snapshot.liked_ids)
        if isinstance(profile, NoSignal):
            return self._resolve_empty('history', profile, snapshot)

        history_ids = {signal.track_id for signal in snapshot.history}
        candidates = self._candidates(snapshot, history_ids)
        if isinstance(candidates, NoSignal):
            return self._resolve_empty('history', candidates, snapshot)

        return self._rank('history', candidates, profile)

    def trending(self, snapshot: Snapshot, limit: int = TRENDING_LIMIT) -> list[Recommendation]:
        """Catalog by view count, liked flags applied."""
        ranked = sorted(snapshot.catalog or [], key=lambda t: -t.views)[:limit]
        return [
            Recommendation(
                track=track,
                score=float(track.views),
                liked=track.track_id in snapshot.liked_ids,
                reasons=["Trending"],
            )
            for track in ranked
        ]

    def recent_tracks(self, snapshot: Snapshot, limit: int = RECENT_LIMIT) -> list[Recommendation]:
        """The listener's most-listened tracks."""
        top = top_history_tracks(snapshot.history or [], snapshot.catalog_by_id(), limit)
        return [
            Recommendation(
                track=track,
                score=minutes,
                liked=track.track_id in snapshot.liked_ids,
                reasons=[f"Listened {minutes:.1f} min"],
            )
            for track, minutes in top
        ]

    def popular_tracks(self, snapshot: Snapshot) -> list[Recommendation]:
        """Whole catalog, most viewed + liked first."""
        ranked = sorted(snapshot.catalog or [], key=lambda t: -(t.views + t.likes))
        return [
            Recommendation(
                track=track,
                score=float(track.views + track.likes),
                liked=track.track_id in snapshot.liked_ids,
            )
            for track in ranked
        ]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _candidates(
        self,
        snapshot: Snapshot,
        exclude_ids: Iterable[int] | None,
        current_id: int | None = None,
    ) -> list[Track] | NoSignal:
        if snapshot.catalog is None:
            return NoSignal(EmptyReason.UPSTREAM_FAILURE, "catalog")
        return filter_candidates(snapshot.catalog, exclude_ids, current_id)

    def _rank(self, strategy: str, candidates: list[Track], profile: PreferenceProfile) -> list[Recommendation]:
        weights = self.weights[strategy]
        scored = [
            self.scoring_engine.score(track, profile, weights, self.rng)
            for track in candidates
        ]
        selected = select_top(scored, weights.limit)

        logger.debug(
            f"{strategy}: scored {len(scored)} candidates, top picks: "
            + ", ".join(f"{c.track.title} ({c.score:.1f})" for c in selected[:5])
        )
        return [candidate.to_recommendation() for candidate in selected]

    def _resolve_empty(self, strategy: str, outcome: NoSignal, snapshot: Snapshot | None) -> list[Recommendation]:
        """
        The single place an empty outcome becomes a result.

        Only the history strategy has a built-in fallback: with no usable
        history it serves the trending list, as long as the catalog loaded.
        """
        fallback_reasons = (EmptyReason.NO_HISTORY, EmptyReason.UPSTREAM_FAILURE)
        if (
            strategy == 'history'
            and outcome.reason in fallback_reasons
            and snapshot is not None
            and snapshot.catalog
        ):
            logger.info(f"No usable listening history ({outcome.reason.value}); using trending songs")
            return self.trending(snapshot)

        logger.info(f"{strategy} recommendations empty: {outcome.reason.value} {outcome.detail}".rstrip())
        return []
