from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

from claude_transcripts.builder import ConversationBuilder, reconstruct
from claude_transcripts.config import ReconstructionConfig
from claude_transcripts.heuristics import CONTINUATION_PROMPT
from claude_transcripts.records import (
    Record,
    RecordKind,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    parse_transcript_file,
    record_from_dict,
)
from claude_transcripts.merge import merge_continuations


T0 = datetime(2026, 1, 5, 10, 0, 0, tzinfo=timezone.utc)
SAMPLE = Path(__file__).parent / "sample_session.jsonl"


def _at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def _human(seconds: float, text: str, *, entry_id: str = "u", session_id: str = "s1") -> Record:
    return Record(
        kind=RecordKind.USER,
        timestamp=_at(seconds),
        session_id=session_id,
        entry_id=entry_id,
        content=(TextBlock(text),),
        raw_content_text=text,
    )


def _tool_result(seconds: float, tool_id: str, output: str = "ok") -> Record:
    return Record(
        kind=RecordKind.USER,
        timestamp=_at(seconds),
        session_id="s1",
        content=(ToolResultBlock(tool_use_id=tool_id, content=output),),
    )


def _assistant(seconds: float, *blocks, entry_id: str = "a", session_id: str = "s1", usage=None) -> Record:
    content = tuple(TextBlock(b) if isinstance(b, str) else b for b in blocks)
    return Record(
        kind=RecordKind.ASSISTANT,
        timestamp=_at(seconds),
        session_id=session_id,
        entry_id=entry_id,
        content=content,
        usage=usage,
    )


def _task(tool_id: str = "task_1") -> ToolUseBlock:
    return ToolUseBlock(id=tool_id, name="Task", input={"prompt": "do it"})


def test_single_exchange():
    pairs = reconstruct([_human(0, "Fix bug"), _assistant(10, "Fixed")])

    assert len(pairs) == 1
    pair = pairs[0]
    assert pair.response_time_seconds == 10
    assert pair.tool_count == 0
    assert pair.user_content == "Fix bug"
    assert pair.assistant_content == "Fixed"
    assert pair.user_time == T0
    assert pair.assistant_time == _at(10)
    assert not pair.has_continuation


def test_delegation_is_tracked_as_sub_agent():
    records = [
        _human(0, "Do X"),
        _assistant(5, "Delegating", _task()),
        _human(6, "sub-instructions", entry_id="cmd"),
        _assistant(30, "Task completed successfully"),
        _assistant(40, "Final answer", entry_id="final"),
    ]
    pairs = reconstruct(records)

    assert len(pairs) == 1
    pair = pairs[0]
    assert len(pair.sub_agent_commands) == 1
    entry = pair.sub_agent_commands[0]
    assert entry.is_complete
    assert entry.command.entry_id == "cmd"
    assert [t.name for t in pair.all_tool_uses] == ["Task"]
    assert pair.tool_uses == ()
    assert pair.tool_count == 0
    assert pair.assistant_content == "Final answer"
    assert pair.assistant_record.entry_id == "final"


def test_continuation_merges_into_previous_pair():
    records = [
        _human(0, "Build the exporter"),
        _assistant(30, "Working on it"),
        _human(3600, CONTINUATION_PROMPT),
        _assistant(3620, "Exporter done"),
    ]
    pairs = reconstruct(records)

    assert len(pairs) == 1
    pair = pairs[0]
    assert pair.assistant_time == _at(3620)
    assert pair.has_continuation
    assert len(pair.continuation_spans) == 1
    assert pair.continuation_spans[0].start == _at(3600)
    assert pair.continuation_spans[0].response_time_seconds == 20
    assert pair.response_time_seconds == 3620
    assert pair.assistant_content == "Working on it\n\nExporter done"
    assert not any(p.is_continuation for p in pairs)


def test_response_time_is_capped():
    pairs = reconstruct([_human(0, "Long job"), _assistant(9 * 3600, "Finally")])
    assert pairs[0].response_time_seconds == 28800


def test_tool_result_records_never_open_pairs_or_sub_agents():
    records = [
        _human(0, "Do X"),
        _assistant(5, _task("task_1")),
        _tool_result(6, "task_1", "sub-agent transcript"),
        _human(7, "real command", entry_id="cmd"),
        _assistant(20, "Task completed successfully"),
    ]
    pairs = reconstruct(records)

    assert len(pairs) == 1
    assert [e.command.entry_id for e in pairs[0].sub_agent_commands] == ["cmd"]
    assert pairs[0].all_tool_uses[0].result == "sub-agent transcript"


def test_tool_results_are_joined_to_invocations():
    records = [
        _human(0, "List files"),
        _assistant(2, ToolUseBlock(id="t1", name="Bash", input={"command": "ls"})),
        _tool_result(3, "t1", "a.py\nb.py"),
        _assistant(4, "There are two files."),
    ]
    pair = reconstruct(records)[0]

    assert pair.tool_count == 1
    assert pair.tools_used == ["Bash"]
    assert pair.tool_uses[0].result == "a.py\nb.py"
    assert not pair.tool_uses[0].is_error
    assert [r.tool_id for r in pair.tool_results] == ["t1"]
    assert pair.response_time_seconds == 4
    assert len(pair.raw_timeline) == 2


def test_pair_count_never_exceeds_initiating_humans():
    records = [
        _human(0, "one"),
        _assistant(1, "r1"),
        _human(2, "two"),
        _human(3, "three"),
        _assistant(4, "r3"),
        _assistant(5, "stray"),
    ]
    pairs = reconstruct(records)

    assert len(pairs) == 2
    assert [p.user_content for p in pairs] == ["one", "three"]
    for pair in pairs:
        assert 0 <= pair.response_time_seconds <= 28800
        assert pair.tool_count == len(pair.tool_uses)


def test_assistant_without_human_is_ignored():
    assert reconstruct([_assistant(0, "hello?")]) == []


def test_orphaned_sub_agent_stays_incomplete():
    records = [
        _human(0, "Do X"),
        _assistant(5, _task()),
        _human(6, "sub-instructions"),
        _assistant(10, "still going"),
        _human(20, "Next question"),
        _assistant(25, "Answer"),
    ]
    pairs = reconstruct(records)

    assert len(pairs) == 2
    first = pairs[0]
    assert len(first.sub_agent_commands) == 1
    assert not first.sub_agent_commands[0].is_complete
    assert first.sub_agent_commands[0].responses[0].content[0].text == "still going"
    assert pairs[1].user_content == "Next question"


def test_closing_summary_needs_two_responses():
    records = [
        _human(0, "Do X"),
        _assistant(5, _task()),
        _human(6, "sub-instructions"),
        _assistant(10, "Summary so far"),
        _assistant(15, "In summary, everything is done"),
        _assistant(20, "Wrapped up"),
    ]
    entry = reconstruct(records)[0].sub_agent_commands[0]

    assert entry.is_complete
    assert len(entry.responses) == 2
    assert entry.response is entry.responses[0]


def test_new_delegation_rearms_for_next_command():
    records = [
        _human(0, "Do X and Y"),
        _assistant(5, _task("task_1")),
        _human(6, "first sub-task", entry_id="c1"),
        _assistant(10, _task("task_2")),
        _human(11, "second sub-task", entry_id="c2"),
        _assistant(20, "I've completed both"),
    ]
    pair = reconstruct(records)[0]

    assert [e.command.entry_id for e in pair.sub_agent_commands] == ["c1", "c2"]
    assert all(e.is_complete for e in pair.sub_agent_commands)
    assert len(pair.all_tool_uses) == 2


def test_session_mismatch_discards_open_exchange():
    records = [
        _human(0, "hello", session_id="s1"),
        _assistant(1, "wrong session", session_id="s2"),
        _assistant(2, "late reply", session_id="s1"),
    ]
    assert reconstruct(records) == []


def test_missing_timestamp_uses_clock():
    fixed = _at(100)
    builder = ConversationBuilder(clock=lambda: fixed)
    human = Record(kind=RecordKind.USER, timestamp=None, content=(TextBlock("no time"),))
    pairs = builder.reconstruct([human, _assistant(130, "reply")])

    assert pairs[0].user_time == fixed
    assert pairs[0].response_time_seconds == 30


def test_records_without_kind_are_skipped():
    stray = Record(kind=None, timestamp=_at(1), content=(TextBlock("???"),))
    pairs = reconstruct([_human(0, "hi"), stray, _assistant(2, "hello")])
    assert len(pairs) == 1


def test_leading_continuation_is_flagged_not_dropped():
    pairs = reconstruct([_human(0, "続けて"), _assistant(5, "Resuming")])

    assert len(pairs) == 1
    assert pairs[0].originally_continuation
    assert pairs[0].is_continuation


def test_token_usage_accumulates_across_contributions():
    records = [
        _human(0, "go"),
        _assistant(1, "a", usage={"input_tokens": 10, "output_tokens": 2}),
        _assistant(2, "b", usage={"input_tokens": 5, "output_tokens": 1, "cache_read_input_tokens": 9}),
    ]
    usage = reconstruct(records)[0].token_usage
    assert usage.input_tokens == 15
    assert usage.output_tokens == 3
    assert usage.total_tokens == 18
    assert usage.cache_read_tokens == 9


def test_builder_instances_do_not_leak_state_between_calls():
    builder = ConversationBuilder(ReconstructionConfig(timeline_seed=3))
    # Ends while waiting for a delegated command.
    builder.reconstruct([_human(0, "Do X"), _assistant(5, _task())])

    records = [_human(0, "Next"), _assistant(10, "one"), _assistant(20, "two")]
    reused = builder.reconstruct(records)
    fresh = ConversationBuilder(ReconstructionConfig(timeline_seed=3)).reconstruct(records)

    assert reused == fresh
    assert reused[0].sub_agent_commands == ()


def test_reconstruct_sample_session():
    records, _stats = parse_transcript_file(SAMPLE)
    pairs = ConversationBuilder(ReconstructionConfig(timeline_seed=1)).reconstruct(records)

    assert len(pairs) == 2
    first, second = pairs
    assert first.user_content == "Please fix the bug in parser.py"
    assert first.response_time_seconds == 20
    assert first.tool_uses[0].result == "def parse(): return None"
    assert first.thinking_char_count == len("Let me look at the parser.")
    assert first.token_usage.total_tokens == 42

    assert second.has_continuation
    assert second.response_time_seconds == 330
    assert len(second.sub_agent_commands) == 1
    assert second.sub_agent_commands[0].is_complete
    assert second.token_usage.total_tokens == 98
    assert second.user_time < second.assistant_time


def _unparseable_assistant(text: str) -> Record:
    record = record_from_dict(
        {
            "type": "assistant",
            "uuid": "bad",
            "sessionId": "s1",
            "timestamp": "not-a-timestamp",
            "message": {"content": [{"type": "text", "text": text}]},
        }
    )
    assert record is not None and record.timestamp_invalid
    return record


def test_unparseable_timestamp_gives_zero_response_time():
    far_future = _at(400 * 24 * 3600)
    builder = ConversationBuilder(clock=lambda: far_future)
    pairs = builder.reconstruct([_human(0, "Fix bug"), _unparseable_assistant("Fixed")])

    assert len(pairs) == 1
    assert pairs[0].response_time_seconds == 0
    # Placed next to the preceding record instead of at wall-clock time.
    assert pairs[0].assistant_time == T0
    assert pairs[0].raw_timeline[0].timestamp == T0


def test_unparseable_leading_timestamp_still_zero():
    human = record_from_dict({"type": "user", "timestamp": "garbage", "message": {"content": "Fix bug"}})
    assert human is not None
    builder = ConversationBuilder(clock=lambda: T0)
    pairs = builder.reconstruct([human, _assistant(9 * 3600, "Fixed", session_id=None)])

    assert pairs[0].user_time == T0
    assert pairs[0].response_time_seconds == 0


def test_unparseable_timestamp_in_continuation_zeroes_merged_time():
    records = [
        _human(0, "Start the job"),
        _assistant(10, "ok"),
        _human(3600, CONTINUATION_PROMPT),
        _unparseable_assistant("Job finished"),
    ]
    pair = reconstruct(records)[0]

    assert pair.has_continuation
    assert pair.response_time_seconds == 0
    assert pair.assistant_time == _at(3600)


def test_out_of_order_records_sort_before_merging():
    records = [
        _human(100, "続けて"),
        _assistant(110, "Resuming"),
        _human(0, "Real task"),
        _assistant(5, "Done"),
    ]
    pairs = reconstruct(records)

    assert len(pairs) == 1
    assert pairs[0].user_content == "Real task"
    assert pairs[0].has_continuation
    assert pairs[0].response_time_seconds == 110
    assert merge_continuations(pairs) == pairs
