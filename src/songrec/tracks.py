"""Core value types shared by the store, the extractor and the recommender."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable


class SongrecError(Exception):
    """Base class for songrec errors."""


class UpstreamReadFailure(SongrecError):
    """A collaborator read (catalog, history, liked ids) failed."""

    def __init__(self, source: str, cause: BaseException | None = None):
        self.source = source
        self.cause = cause
        message = f"Failed to read {source}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class UnknownTrackError(SongrecError):
    """A write referenced a track id the catalog does not have."""

    def __init__(self, track_id: int):
        self.track_id = track_id
        super().__init__(f"Unknown track id {track_id}")


@dataclass(frozen=True)
class Track:
    """
    A catalog entry as seen by the engine.

    like/view counters are a point-in-time snapshot owned by the store;
    nothing in the engine changes them.
    """
    track_id: int
    title: str
    artist: str
    language: str = ""
    tags: tuple[str, ...] = ()
    likes: int = 0
    views: int = 0
    image_id: str | None = None

    def __post_init__(self) -> None:
        # Accept any iterable of tags but keep the dataclass hashable
        if isinstance(self.tags, str):
            object.__setattr__(self, 'tags', (self.tags,))
        elif not isinstance(self.tags, tuple):
            object.__setattr__(self, 'tags', tuple(self.tags or ()))
        object.__setattr__(self, 'likes', max(0, int(self.likes or 0)))
        object.__setattr__(self, 'views', max(0, int(self.views or 0)))

    @classmethod
    def from_dict(cls, payload: dict) -> "Track":
        return cls(
            track_id=int(payload['track_id']),
            title=payload.get('title') or "",
            artist=payload.get('artist') or "",
            language=payload.get('language') or "",
            tags=payload.get('tags') or (),
            likes=payload.get('likes') or 0,
            views=payload.get('views') or 0,
            image_id=payload.get('image_id'),
        )

    def to_dict(self) -> dict:
        return {
            'track_id': self.track_id,
            'title': self.title,
            'artist': self.artist,
            'language': self.language,
            'tags': list(self.tags),
            'likes': self.likes,
            'views': self.views,
            'image_id': self.image_id,
        }


@dataclass(frozen=True)
class ListeningSignal:
    """One history entry: minutes a listener spent on a track."""
    track_id: int
    minutes: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, 'minutes', max(0.0, float(self.minutes or 0.0)))


def accumulate_minutes(signals: Iterable[ListeningSignal]) -> dict[int, float]:
    """Sum minutes per track. Repeated signals add up, never overwrite."""
    totals: dict[int, float] = defaultdict(float)
    for signal in signals:
        totals[signal.track_id] += signal.minutes
    return dict(totals)


class EmptyReason(Enum):
    NO_PLAYS = "no_plays"
    NO_HISTORY = "no_history"
    NO_CANDIDATES = "no_candidates"
    UPSTREAM_FAILURE = "upstream_failure"


@dataclass(frozen=True)
class NoSignal:
    """
    Explicit "nothing to score" outcome.

    Returned by the extractor and the candidate filter instead of an empty
    profile or list, so the orchestrator decides the fallback in one place.
    """
    reason: EmptyReason
    detail: str = ""

    def __bool__(self) -> bool:
        return False


@dataclass
class Recommendation:
    track: Track
    score: float
    liked: bool = False
    reasons: list[str] = field(default_factory=list)

    @property
    def track_id(self) -> int:
        return self.track.track_id

    def to_dict(self) -> dict:
        payload = self.track.to_dict()
        payload.update({
            'score': round(self.score, 4),
            'liked': self.liked,
            'reasons': list(self.reasons),
        })
        return payload
