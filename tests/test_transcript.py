from datetime import datetime

from lingualive.models import Speaker, TranscriptEvent
from lingualive.transcript import TranscriptAggregator


def _fixed_clock():
    return datetime(2026, 1, 13, 9, 30)


def test_folds_fragments_into_messages():
    agg = TranscriptAggregator(clock=_fixed_clock)
    agg.append(TranscriptEvent(Speaker.USER, "Hel", False))
    agg.append(TranscriptEvent(Speaker.USER, "lo", True))
    agg.append(TranscriptEvent(Speaker.AGENT, "Hi", True))

    messages = agg.messages
    assert [(m.speaker, m.text, m.is_final) for m in messages] == [
        (Speaker.USER, "Hello", True),
        (Speaker.AGENT, "Hi", True),
    ]
    assert messages[0].created_at == datetime(2026, 1, 13, 9, 30)


def test_finalized_message_is_not_reopened():
    agg = TranscriptAggregator()
    agg.append(TranscriptEvent(Speaker.USER, "Hel", False))
    agg.append(TranscriptEvent(Speaker.USER, "lo", True))
    agg.append(TranscriptEvent(Speaker.AGENT, "Hi", True))
    agg.append(TranscriptEvent(Speaker.USER, "Again", False))

    assert len(agg.messages) == 3
    assert agg.messages[0].text == "Hello"
    assert agg.messages[2].text == "Again"
    assert not agg.messages[2].is_final


def test_speaker_change_opens_new_message():
    agg = TranscriptAggregator()
    agg.append(TranscriptEvent(Speaker.USER, "Hola", False))
    agg.append(TranscriptEvent(Speaker.AGENT, "Buenas", False))
    agg.append(TranscriptEvent(Speaker.USER, " tardes", False))

    assert [m.text for m in agg.messages] == ["Hola", "Buenas", " tardes"]
    assert len({m.id for m in agg.messages}) == 3


def test_extension_keeps_id_and_timestamp():
    agg = TranscriptAggregator()
    first = agg.append(TranscriptEvent(Speaker.AGENT, "Muy", False))
    second = agg.append(TranscriptEvent(Speaker.AGENT, " bien", False))
    assert second.id == first.id
    assert second.created_at == first.created_at
    assert second.text == "Muy bien"


def test_snapshot_is_not_mutated_by_later_events():
    agg = TranscriptAggregator()
    agg.append(TranscriptEvent(Speaker.USER, "a", False))
    snapshot = agg.messages
    agg.append(TranscriptEvent(Speaker.USER, "b", False))
    assert snapshot[0].text == "a"
    assert agg.messages[0].text == "ab"


def test_finalize_closes_only_matching_speaker():
    agg = TranscriptAggregator()
    agg.append(TranscriptEvent(Speaker.USER, "hmm", False))
    assert agg.finalize(Speaker.AGENT) is None
    closed = agg.finalize()
    assert closed is not None and closed.is_final
    agg.append(TranscriptEvent(Speaker.USER, "next", False))
    assert len(agg.messages) == 2
