from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Mapping, Union


logger = logging.getLogger(__name__)

_TIMESTAMP_PREFIX_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}")
_TOOL_USE_RE = re.compile(r'"type":\s*"tool_use"')

# Oversized tool output is clipped at parse time to bound memory per session.
MAX_TOOL_RESULT_CHARS = 10_000


class TranscriptParseError(RuntimeError):
    pass


class RecordKind(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: Mapping[str, Any]


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: Any
    is_error: bool = False


@dataclass(frozen=True)
class ThinkingBlock:
    thinking: str


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock, ThinkingBlock]


@dataclass(frozen=True)
class Record:
    kind: RecordKind | None
    timestamp: datetime | None
    session_id: str | None = None
    entry_id: str | None = None
    parent_entry_id: str | None = None
    is_meta: bool = False
    is_sidechain: bool = False
    is_compact_summary: bool = False
    content: tuple[ContentBlock, ...] = ()
    usage: Mapping[str, Any] | None = None
    raw_content_text: str | None = None
    cwd: str | None = None
    git_branch: str | None = None
    # Timestamp present in the source but unparseable.
    timestamp_invalid: bool = False

    @property
    def is_user(self) -> bool:
        return self.kind is RecordKind.USER

    @property
    def is_assistant(self) -> bool:
        return self.kind is RecordKind.ASSISTANT


@dataclass
class ParseStats:
    total_lines: int = 0
    parsed_records: int = 0
    skipped_lines: int = 0
    timestamp_failures: int = 0
    other_record_types: dict[str, int] = field(default_factory=dict)
    unknown_block_types: dict[str, int] = field(default_factory=dict)


def _bump(counter: dict[str, int], key: str) -> None:
    counter[key] = counter.get(key, 0) + 1


def parse_timestamp(ts: Any) -> datetime | None:
    if isinstance(ts, datetime):
        return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)
    if not isinstance(ts, str) or not _TIMESTAMP_PREFIX_RE.match(ts.strip()):
        return None
    # Support both "...Z" and "...+00:00"
    s = ts.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(s)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _clip_tool_output(content: Any) -> Any:
    if isinstance(content, str) and len(content) > MAX_TOOL_RESULT_CHARS:
        return content[:MAX_TOOL_RESULT_CHARS] + "... [truncated]"
    return content


def parse_content_blocks(raw: Any, stats: ParseStats | None = None) -> tuple[ContentBlock, ...]:
    if isinstance(raw, str):
        return (TextBlock(text=raw),) if raw else ()
    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        return ()

    blocks: list[ContentBlock] = []
    for item in raw:
        if isinstance(item, str):
            if item:
                blocks.append(TextBlock(text=item))
            continue
        if not isinstance(item, dict):
            continue
        btype = item.get("type")
        if btype == "text":
            text = item.get("text")
            if isinstance(text, str):
                blocks.append(TextBlock(text=text))
        elif btype == "tool_use":
            tool_input = item.get("input")
            blocks.append(
                ToolUseBlock(
                    id=str(item.get("id") or "unknown"),
                    name=str(item.get("name") or "unknown"),
                    input=tool_input if isinstance(tool_input, dict) else {},
                )
            )
        elif btype == "tool_result":
            blocks.append(
                ToolResultBlock(
                    tool_use_id=str(item.get("tool_use_id") or ""),
                    content=_clip_tool_output(item.get("content", item.get("text", ""))),
                    is_error=bool(item.get("is_error", False)),
                )
            )
        elif btype == "thinking":
            thinking = item.get("thinking")
            if isinstance(thinking, str):
                blocks.append(ThinkingBlock(thinking=thinking))
        elif stats is not None:
            _bump(stats.unknown_block_types, str(btype) if btype is not None else "(missing)")
    return tuple(blocks)


def record_from_dict(obj: Mapping[str, Any], stats: ParseStats | None = None) -> Record | None:
    entry_type = obj.get("type")
    if not isinstance(entry_type, str) or not entry_type:
        if stats is not None:
            stats.skipped_lines += 1
        return None

    try:
        kind = RecordKind(entry_type)
    except ValueError:
        # summary / system / file-history records carry no conversational content.
        if stats is not None:
            _bump(stats.other_record_types, entry_type)
        return None

    raw_ts = obj.get("timestamp")
    timestamp = parse_timestamp(raw_ts)
    if timestamp is None and raw_ts:
        logger.warning("Unparseable timestamp %r on entry %s", raw_ts, obj.get("uuid"))
        if stats is not None:
            stats.timestamp_failures += 1

    message = obj.get("message")
    raw_content: Any = None
    usage: Mapping[str, Any] | None = None
    if isinstance(message, dict):
        raw_content = message.get("content")
        msg_usage = message.get("usage")
        usage = msg_usage if isinstance(msg_usage, dict) else None
    top_usage = obj.get("usage")
    if isinstance(top_usage, dict):
        usage = top_usage

    git_branch = obj.get("gitBranch")
    cwd = obj.get("cwd")
    return Record(
        kind=kind,
        timestamp=timestamp,
        timestamp_invalid=timestamp is None and bool(raw_ts),
        session_id=obj.get("sessionId") or obj.get("session_id"),
        entry_id=obj.get("uuid"),
        parent_entry_id=obj.get("parentUuid"),
        is_meta=bool(obj.get("isMeta", False)),
        is_sidechain=bool(obj.get("isSidechain", False)),
        is_compact_summary=obj.get("isCompactSummary") is True,
        content=parse_content_blocks(raw_content, stats),
        usage=usage,
        raw_content_text=raw_content if isinstance(raw_content, str) else None,
        cwd=cwd if isinstance(cwd, str) else None,
        git_branch=git_branch if isinstance(git_branch, str) and git_branch else None,
    )


def parse_line(line: str, stats: ParseStats | None = None) -> Record | None:
    stripped = line.strip()
    if not stripped:
        return None
    # Cheap pre-checks before a full decode.
    if stripped[0] != "{" or stripped[-1] != "}" or '"type"' not in stripped:
        if stats is not None:
            stats.skipped_lines += 1
        return None
    try:
        obj = json.loads(stripped)
    except json.JSONDecodeError as exc:
        logger.debug("Skipping malformed JSONL line: %s", exc)
        if stats is not None:
            stats.skipped_lines += 1
        return None
    if not isinstance(obj, dict):
        if stats is not None:
            stats.skipped_lines += 1
        return None
    return record_from_dict(obj, stats)


def extract_tool_uses_fast(raw_content: Any) -> list[dict[str, Any]]:
    """Pull tool invocations out of undecoded message content.

    Used where only counting or filtering is needed; accepts either a block list or a
    JSON-encoded string of one.
    """
    if not raw_content:
        return []
    if isinstance(raw_content, list):
        return [
            {"name": item.get("name") or "unknown", "id": item.get("id"), "input": item.get("input") or {}}
            for item in raw_content
            if isinstance(item, dict) and item.get("type") == "tool_use"
        ]
    if isinstance(raw_content, str) and _TOOL_USE_RE.search(raw_content):
        try:
            parsed = json.loads(raw_content)
        except json.JSONDecodeError:
            return []
        if isinstance(parsed, list):
            return extract_tool_uses_fast(parsed)
    return []


def iter_records(path: str | Path, stats: ParseStats | None = None) -> Iterator[Record]:
    with Path(path).open("r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            if stats is not None:
                stats.total_lines += 1
            record = parse_line(line, stats)
            if record is None:
                continue
            if stats is not None:
                stats.parsed_records += 1
            yield record


def parse_transcript_file(filepath: str | Path) -> tuple[list[Record], ParseStats]:
    path = Path(filepath)
    stats = ParseStats()
    try:
        records = list(iter_records(path, stats))
    except OSError as exc:
        raise TranscriptParseError(f"cannot read transcript {path}: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise TranscriptParseError(f"transcript {path} is not valid UTF-8") from exc
    if not records:
        raise TranscriptParseError("no usable messages found in transcript file")
    return records, stats


def read_transcript_head(path: Path, *, max_records: int = 50) -> list[dict[str, Any]]:
    head: list[dict[str, Any]] = []
    try:
        with path.open("r", encoding="utf-8") as f:
            for line in f:
                if len(head) >= max_records:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    obj = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(obj, dict):
                    head.append(obj)
    except (OSError, UnicodeDecodeError):
        return []
    return head
