from __future__ import annotations

import json
import tempfile
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any

from claude_transcripts.config import ReconstructionConfig
from claude_transcripts.metrics import SessionStatistics, summarize_topics
from claude_transcripts.models import ConversationPair, SubAgentEntry, TimelineFragment, ToolUse
from claude_transcripts.records import Record
from claude_transcripts.sessions import Session, load_session


SESSION_FORMAT = "claude-transcripts.session.v1"


def _iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts is not None else None


def format_duration(seconds: float | None) -> str:
    if seconds is None or seconds < 0:
        return "-"
    secs = int(seconds)
    if secs < 60:
        return f"{secs}s"
    mins = secs // 60
    rem = secs % 60
    if mins < 60:
        return f"{mins}m {rem:02d}s"
    hours = mins // 60
    mins_rem = mins % 60
    return f"{hours}h {mins_rem:02d}m"


def _record_ref(record: Record | None) -> dict[str, Any] | None:
    if record is None:
        return None
    return {
        "entry_id": record.entry_id,
        "parent_entry_id": record.parent_entry_id,
        "timestamp": _iso(record.timestamp),
    }


def _tool_dict(tool: ToolUse) -> dict[str, Any]:
    return {
        "tool_id": tool.tool_id,
        "name": tool.name,
        "input": dict(tool.input),
        "timestamp": _iso(tool.timestamp),
        "result": tool.result,
        "is_error": tool.is_error,
    }


def _sub_agent_dict(entry: SubAgentEntry) -> dict[str, Any]:
    return {
        "command": _record_ref(entry.command),
        "response": _record_ref(entry.response),
        "responses": [_record_ref(r) for r in entry.responses],
        "is_complete": entry.is_complete,
    }


def _fragment_dict(fragment: TimelineFragment) -> dict[str, Any]:
    return {"kind": fragment.kind.value, "timestamp": _iso(fragment.timestamp), "text": fragment.text}


def pair_to_dict(pair: ConversationPair) -> dict[str, Any]:
    return {
        "user_time": _iso(pair.user_time),
        "assistant_time": _iso(pair.assistant_time),
        "response_time_seconds": pair.response_time_seconds,
        "user_content": pair.user_content,
        "assistant_content": pair.assistant_content,
        "thinking_char_count": pair.thinking_char_count,
        "thinking_content": [{"timestamp": _iso(t.timestamp), "text": t.text} for t in pair.thinking_content],
        "tool_count": pair.tool_count,
        "tool_uses": [_tool_dict(t) for t in pair.tool_uses],
        "all_tool_uses": [_tool_dict(t) for t in pair.all_tool_uses],
        "tool_results": [asdict(r) for r in pair.tool_results],
        "token_usage": asdict(pair.token_usage),
        "sub_agent_commands": [_sub_agent_dict(e) for e in pair.sub_agent_commands],
        "raw_timeline": [_fragment_dict(f) for f in pair.raw_timeline],
        "has_continuation": pair.has_continuation,
        "continuation_spans": [
            {"start": _iso(s.start), "end": _iso(s.end), "response_time_seconds": s.response_time_seconds}
            for s in pair.continuation_spans
        ],
        "originally_continuation": pair.originally_continuation,
        "user_entry_id": pair.user_entry_id,
        "user_parent_entry_id": pair.user_parent_entry_id,
        "assistant_entry_id": pair.assistant_entry_id,
        "assistant_parent_entry_id": pair.assistant_parent_entry_id,
        "is_meta": pair.is_meta,
        "is_sidechain": pair.is_sidechain,
    }


def stats_to_dict(stats: SessionStatistics) -> dict[str, Any]:
    payload = asdict(stats)
    payload["start_time"] = _iso(stats.start_time)
    payload["end_time"] = _iso(stats.end_time)
    return payload


def session_to_dict(session: Session) -> dict[str, Any]:
    return {
        "format": SESSION_FORMAT,
        "source_path": str(session.path.expanduser()),
        "session_id": session.session_id,
        "summary": summarize_topics(session.pairs),
        "parse_stats": asdict(session.parse_stats),
        "stats": stats_to_dict(session.stats),
        "pairs": [pair_to_dict(p) for p in session.pairs],
    }


def generate_json_from_transcript(
    transcript_path: str | Path,
    output_dir: str | Path,
    *,
    include_source: bool = False,
    config: ReconstructionConfig | None = None,
) -> tuple[Path, Session]:
    session = load_session(transcript_path, config=config)

    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    if include_source:
        src = Path(transcript_path)
        dst = out_dir / src.name
        if src.resolve() != dst.resolve():
            dst.write_bytes(src.read_bytes())

    out_path = out_dir / "transcript.json"
    out_path.write_text(
        json.dumps(session_to_dict(session), indent=2, ensure_ascii=False) + "\n",
        encoding="utf-8",
    )
    return out_path, session


def default_output_dir() -> Path:
    return Path(tempfile.mkdtemp(prefix="claude-transcripts-"))


def output_auto_dir(parent: str | Path, *, session_id: str | None, filename: str) -> Path:
    parent = Path(parent)
    if session_id:
        return parent / f"session_{session_id}"
    return parent / filename.replace(":", "-")
