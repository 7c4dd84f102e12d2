import math

import numpy as np
import pytest

from conftest import make_track
from songrec.recommender import SongRecommender, Snapshot
from songrec.strategy_weights import default_strategy_weights
from songrec.tracks import ListeningSignal


def _recommender(seed=0):
    return SongRecommender(weights=default_strategy_weights(), rng=np.random.default_rng(seed))


def _ids(recs):
    return [r.track.track_id for r in recs]


def test_contextual_scenario_prefers_tag_overlap_and_popularity(abc_catalog):
    snapshot = Snapshot(
        catalog=abc_catalog,
        history=[ListeningSignal(1, 5.0)],
        liked_ids=set(),
    )
    current = abc_catalog[1]  # B

    recs = _recommender().recommend_contextual(snapshot, current, exclude_ids=set())

    assert _ids(recs) == [1, 3]
    assert "Tag: rock" in recs[0].reasons
    assert "Listened 5.0 min" in recs[0].reasons


def test_contextual_scenario_scores_are_attributable(abc_catalog):
    from songrec.profile import build_context_profile
    from songrec.recommender import ScoringEngine

    weights = default_strategy_weights()['contextual']
    profile = build_context_profile(abc_catalog[1], [ListeningSignal(1, 5.0)], set())
    engine = ScoringEngine()

    a_terms, _ = engine.score_terms(abc_catalog[0], profile, weights)
    c_terms, _ = engine.score_terms(abc_catalog[2], profile, weights)

    assert a_terms == pytest.approx({
        'tag': 15.0,
        'artist': 0.0,
        'language': 10.0,
        'history': 10.0,
        'popularity': math.log(11) * 2 + math.log(101),
        'liked': 0.0,
    })
    assert c_terms['tag'] == 0.0
    # Jitter is at most 3, far below the gap between A and C
    assert sum(a_terms.values()) - sum(c_terms.values()) > weights.jitter


def test_contextual_excludes_current_and_listened_ids():
    catalog = [make_track(i, tags=["x"]) for i in range(1, 8)]
    snapshot = Snapshot(catalog=catalog, history=[], liked_ids=set())

    recs = _recommender().recommend_contextual(snapshot, catalog[0], exclude_ids={2, 3})

    assert set(_ids(recs)) == {4, 5, 6, 7}


def test_contextual_output_is_capped_at_ten():
    catalog = [make_track(i, tags=["x"]) for i in range(1, 30)]
    snapshot = Snapshot(catalog=catalog)

    recs = _recommender().recommend_contextual(snapshot, catalog[0])

    assert len(recs) == 10
    assert len(set(_ids(recs))) == 10


def test_contextual_marks_liked_tracks():
    catalog = [make_track(1), make_track(2), make_track(3)]
    snapshot = Snapshot(catalog=catalog, liked_ids={3})

    recs = _recommender().recommend_contextual(snapshot, catalog[0])

    liked = {r.track.track_id: r.liked for r in recs}
    assert liked == {2: False, 3: True}


def test_session_recommendations_follow_played_tracks():
    catalog = [
        make_track(1, artist="Queen", tags=["rock"], views=10),
        make_track(2, artist="Queen", tags=["rock"], views=10),
        make_track(3, artist="Miles Davis", tags=["jazz"], views=10_000),
        make_track(4, artist="Other", tags=["rock"], views=10),
    ]
    snapshot = Snapshot(catalog=catalog, liked_ids=set())

    recs = _recommender().recommend_session(snapshot, played=[catalog[0]], exclude_ids={1})

    assert _ids(recs)[:2] == [2, 4]
    assert 1 not in _ids(recs)


def test_session_without_plays_returns_empty(abc_catalog):
    snapshot = Snapshot(catalog=abc_catalog)
    assert _recommender().recommend_session(snapshot, played=[], exclude_ids=set()) == []


def test_session_output_is_capped_at_fifteen():
    catalog = [make_track(i) for i in range(1, 40)]
    recs = _recommender().recommend_session(Snapshot(catalog=catalog), played=[catalog[0]])
    assert len(recs) == 15


def test_session_returns_empty_when_everything_is_excluded(abc_catalog):
    snapshot = Snapshot(catalog=abc_catalog)
    recs = _recommender().recommend_session(snapshot, played=abc_catalog[:1], exclude_ids={1, 2, 3})
    assert recs == []


def test_history_strategy_uses_frequent_tags_and_excludes_history():
    catalog = [
        make_track(1, artist="A", tags=["synthwave"]),
        make_track(2, artist="A", tags=["synthwave", "retro"]),
        make_track(3, artist="B", tags=["synthwave"], views=3),
        make_track(4, artist="A", tags=[], views=3),
        make_track(5, artist="C", tags=["country"], views=3),
    ]
    history = [ListeningSignal(1, 12.0), ListeningSignal(2, 4.0)]
    snapshot = Snapshot(catalog=catalog, history=history, liked_ids={5})

    recs = _recommender().recommend_from_history(snapshot)

    assert 1 not in _ids(recs) and 2 not in _ids(recs)
    assert set(_ids(recs)) == {3, 4, 5}
    assert _ids(recs)[-1] == 5
    assert recs[-1].liked is True
    # every heard track is excluded, so no pick is credited with listened minutes
    assert not any(reason.startswith("Listened") for rec in recs for reason in rec.reasons)


def test_history_strategy_without_history_falls_back_to_trending():
    catalog = [make_track(i, views=i * 10) for i in range(1, 26)]
    snapshot = Snapshot(catalog=catalog, history=[], liked_ids={25, 3})

    recs = _recommender().recommend_from_history(snapshot)

    assert _ids(recs) == list(range(25, 5, -1))
    assert [r.liked for r in recs] == [r.track.track_id == 25 for r in recs]
    assert all(r.reasons == ["Trending"] for r in recs)


def test_history_with_only_unknown_tracks_falls_back_to_trending(abc_catalog):
    snapshot = Snapshot(catalog=abc_catalog, history=[ListeningSignal(404, 30.0)])
    recs = _recommender().recommend_from_history(snapshot)
    assert _ids(recs) == [1, 2, 3]


def test_history_strategy_returns_empty_when_whole_catalog_was_heard(abc_catalog, signals):
    snapshot = Snapshot(catalog=abc_catalog, history=signals((1, 1.0), (2, 1.0), (3, 1.0)))
    assert _recommender().recommend_from_history(snapshot) == []


def test_empty_history_and_empty_session_scenario(abc_catalog):
    recommender = _recommender()
    snapshot = Snapshot(catalog=abc_catalog, history=[], liked_ids=set())

    assert recommender.recommend_session(snapshot, played=[]) == []
    assert _ids(recommender.recommend_from_history(snapshot)) == [1, 2, 3]


def test_seeded_runs_are_deterministic():
    catalog = [make_track(i, tags=["a"] if i % 2 else ["b"], views=i) for i in range(1, 40)]
    snapshot = Snapshot(catalog=catalog, history=[ListeningSignal(3, 2.0)])

    first = _recommender(seed=99).recommend_contextual(snapshot, catalog[0])
    second = _recommender(seed=99).recommend_contextual(snapshot, catalog[0])

    assert _ids(first) == _ids(second)
    assert [r.score for r in first] == [r.score for r in second]


def test_missing_catalog_yields_empty_results(abc_catalog):
    snapshot = Snapshot(catalog=None, history=[], liked_ids=set())
    recommender = _recommender()

    assert recommender.recommend_contextual(snapshot, abc_catalog[0]) == []
    assert recommender.recommend_from_history(snapshot) == []
    assert recommender.recommend_session(snapshot, played=abc_catalog[:1]) == []


def test_recent_tracks_and_popular_tracks(abc_catalog, signals):
    snapshot = Snapshot(
        catalog=abc_catalog,
        history=signals((3, 1.0), (2, 6.0), (3, 0.5)),
        liked_ids={2},
    )
    recommender = _recommender()

    recent = recommender.recent_tracks(snapshot)
    assert _ids(recent) == [2, 3]
    assert recent[0].liked is True
    assert recent[1].score == pytest.approx(1.5)

    popular = recommender.popular_tracks(snapshot)
    assert _ids(popular) == [1, 2, 3]
    assert popular[0].score == 110.0
