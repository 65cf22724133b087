from __future__ import annotations

import random
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from claude_transcripts.builder import ConversationBuilder
from claude_transcripts.merge import merge_continuations
from claude_transcripts.models import FragmentKind
from claude_transcripts.records import Record, RecordKind, TextBlock, ThinkingBlock, ToolUseBlock


T0 = datetime(2026, 1, 5, 10, 0, 0, tzinfo=timezone.utc)


def _at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def _record(kind: RecordKind, seconds: float, *blocks, usage=None) -> Record:
    content = tuple(TextBlock(b) if isinstance(b, str) else b for b in blocks)
    return Record(kind=kind, timestamp=_at(seconds), session_id="s1", content=content, usage=usage)


def _raw_pairs(records):
    return ConversationBuilder().build_pairs(records, rng=random.Random(0))


def _records_with_two_continuations():
    return [
        _record(RecordKind.USER, 0, "Start the migration"),
        _record(RecordKind.ASSISTANT, 30, "Step one", usage={"input_tokens": 10, "output_tokens": 1}),
        _record(RecordKind.USER, 3600, "continue the last task please"),
        _record(
            RecordKind.ASSISTANT,
            3620,
            ThinkingBlock("where was I"),
            ToolUseBlock(id="t1", name="Edit", input={"file_path": "m.py"}),
            usage={"input_tokens": 20, "output_tokens": 2},
        ),
        _record(RecordKind.USER, 7200, "続けて"),
        _record(RecordKind.ASSISTANT, 7210, "Migration finished", usage={"input_tokens": 30, "output_tokens": 3}),
    ]


def test_build_pairs_keeps_continuations_separate():
    pairs = _raw_pairs(_records_with_two_continuations())
    assert [p.is_continuation for p in pairs] == [False, True, True]


def test_merge_folds_every_continuation_into_target():
    merged = merge_continuations(_raw_pairs(_records_with_two_continuations()), rng=random.Random(1))

    assert len(merged) == 1
    pair = merged[0]
    assert pair.has_continuation
    assert len(pair.continuation_spans) == 2
    assert pair.assistant_time == _at(7210)
    assert pair.response_time_seconds == 7210
    assert pair.token_usage.input_tokens == 60
    assert pair.token_usage.total_tokens == 66
    assert pair.tools_used == ["Edit"]
    assert pair.thinking_char_count == len("where was I")
    assert pair.assistant_content == "Step one\n\nMigration finished"
    assert pair.assistant_preview == "Step one Migration finished"


def test_merged_timeline_has_markers_inside_window():
    pair = merge_continuations(_raw_pairs(_records_with_two_continuations()), rng=random.Random(2))[0]

    markers = [f for f in pair.raw_timeline if f.kind is FragmentKind.CONTINUATION_MARKER]
    assert len(markers) == 2
    assert markers[0].text.startswith("[Continuation at 2026-01-05 11:00:00")
    assert all(pair.user_time <= f.timestamp <= pair.assistant_time for f in pair.raw_timeline)
    timestamps = [f.timestamp for f in pair.raw_timeline]
    assert timestamps == sorted(timestamps)


def test_merge_is_idempotent():
    once = merge_continuations(_raw_pairs(_records_with_two_continuations()), rng=random.Random(3))
    twice = merge_continuations(once, rng=random.Random(3))
    assert twice == once


def test_unmergeable_continuation_is_flagged_once():
    records = [
        _record(RecordKind.USER, 0, "続行"),
        _record(RecordKind.ASSISTANT, 10, "Resuming"),
        _record(RecordKind.USER, 20, "New topic"),
        _record(RecordKind.ASSISTANT, 25, "Sure"),
    ]
    merged = merge_continuations(_raw_pairs(records))

    assert len(merged) == 2
    assert merged[0].originally_continuation
    assert not merged[0].has_continuation
    assert not merged[1].originally_continuation
    assert merge_continuations(merged) == merged


def test_merge_caps_response_time():
    records = [
        _record(RecordKind.USER, 0, "Start"),
        _record(RecordKind.ASSISTANT, 10, "ok"),
        _record(RecordKind.USER, 10 * 3600, "つづけて"),
        _record(RecordKind.ASSISTANT, 10 * 3600 + 5, "done"),
    ]
    pair = merge_continuations(_raw_pairs(records), cap=600)[0]
    assert pair.response_time_seconds == 600


def test_continuation_with_unparseable_timestamp_zeroes_response_time():
    records = _records_with_two_continuations()
    records[-1] = replace(records[-1], timestamp_invalid=True)

    merged = merge_continuations(_raw_pairs(records), rng=random.Random(0))

    assert len(merged) == 1
    assert merged[0].response_time_seconds == 0
    assert merged[0].assistant_content.endswith("Migration finished")
