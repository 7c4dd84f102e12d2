import pytest

from songrec.tracks import (
    EmptyReason,
    ListeningSignal,
    NoSignal,
    Recommendation,
    Track,
    UnknownTrackError,
    UpstreamReadFailure,
    accumulate_minutes,
)


def test_accumulate_minutes_sums_repeated_signals(signals):
    totals = accumulate_minutes(signals((1, 2.0), (2, 1.5), (1, 0.5)))

    assert totals == {1: pytest.approx(2.5), 2: pytest.approx(1.5)}
    assert accumulate_minutes([]) == {}


def test_listening_signal_clamps_negative_minutes():
    assert ListeningSignal(1, -3.0).minutes == 0.0
    assert ListeningSignal(1, None).minutes == 0.0


def test_track_coerces_tags_and_clamps_counters():
    track = Track(track_id=1, title="A", artist="X", tags=["pop", "rock"], likes=-2, views=None)

    assert track.tags == ("pop", "rock")
    assert track.likes == 0
    assert track.views == 0
    # Frozen tracks stay hashable so they can key sets and dicts
    assert len({track, Track(1, "A", "X", tags=("pop", "rock"))}) == 1


def test_track_dict_conversion():
    payload = {"track_id": "7", "title": "Song", "artist": "Band", "tags": ["indie"], "likes": 3}

    track = Track.from_dict(payload)

    assert track.track_id == 7
    assert track.language == ""
    assert track.to_dict() == {
        'track_id': 7,
        'title': "Song",
        'artist': "Band",
        'language': "",
        'tags': ["indie"],
        'likes': 3,
        'views': 0,
        'image_id': None,
    }


def test_no_signal_is_falsy_and_carries_reason():
    outcome = NoSignal(EmptyReason.NO_HISTORY, "listener has no history")

    assert not outcome
    assert outcome.reason is EmptyReason.NO_HISTORY


def test_recommendation_to_dict_rounds_score():
    rec = Recommendation(Track(4, "T", "A"), score=12.345678, liked=True, reasons=["Liked"])

    payload = rec.to_dict()

    assert rec.track_id == 4
    assert payload['score'] == 12.3457
    assert payload['liked'] is True
    assert payload['reasons'] == ["Liked"]


def test_upstream_read_failure_keeps_source_and_cause():
    cause = RuntimeError("boom")
    error = UpstreamReadFailure("history", cause)

    assert error.source == "history"
    assert error.cause is cause
    assert str(error) == "Failed to read history: boom"
    assert str(UpstreamReadFailure("catalog")) == "Failed to read catalog"


def test_track_keeps_a_single_string_tag_whole():
    assert Track(1, "A", "X", tags="rock").tags == ("rock",)
    assert Track.from_dict({"track_id": 2, "title": "B", "artist": "Y", "tags": "jazz"}).tags == ("jazz",)


def test_unknown_track_error_names_the_id():
    error = UnknownTrackError(999)

    assert error.track_id == 999
    assert str(error) == "Unknown track id 999"
