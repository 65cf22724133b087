from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from claude_transcripts.models import ThinkingFragment, TokenUsage, ToolResult, ToolUse
from claude_transcripts.records import (
    ContentBlock,
    Record,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)


NO_CONTENT = "(No content)"
CONTINUED_SESSION_MARKER = "This session is being continued from a previous conversation"

_THINKING_MARKERS: tuple[str | re.Pattern[str], ...] = (
    "🔧 TOOLS EXECUTION FLOW:",
    "🧠 THINKING PROCESS:",
    "[Thinking",
    re.compile(r"\[\d+\]\s+(Read|Write|Edit|Bash|Glob|Grep|Task)"),
    "File:",
    "Command:",
    "pattern:",
    "path:",
    re.compile(r"^\s*\[\d+\]\s+\w+$", re.MULTILINE),
)

_USER_REQUEST_RE = re.compile(
    r"^(The user|User|ユーザー).*[:：]|requested|asked|want|リクエスト|依頼|要求|表示方法|見直し|修正|改善",
    re.IGNORECASE,
)
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1F\x7F]")


@dataclass(frozen=True)
class ThinkingData:
    char_count: int
    fragments: list[ThinkingFragment]


def _text_of(blocks: tuple[ContentBlock, ...]) -> str:
    parts: list[str] = []
    for block in blocks:
        if isinstance(block, TextBlock):
            parts.append(block.text)
    return "".join(parts)


def tool_result_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        lines: list[str] = []
        for c in content:
            if isinstance(c, dict):
                value = c.get("text") or c.get("content")
                lines.append(value if isinstance(value, str) else json.dumps(c, ensure_ascii=False))
            else:
                lines.append(str(c))
        return "\n".join(lines)
    if isinstance(content, dict) and isinstance(content.get("text"), str):
        return content["text"]
    return json.dumps(content, ensure_ascii=False, default=str)


def block_text(block: ContentBlock) -> str:
    if isinstance(block, TextBlock):
        return block.text
    if isinstance(block, ThinkingBlock):
        return block.thinking
    if isinstance(block, ToolUseBlock):
        return f"{block.name} {json.dumps(dict(block.input), ensure_ascii=False, default=str)}"
    if isinstance(block, ToolResultBlock):
        return tool_result_text(block.content)
    raise TypeError(f"unsupported content block: {type(block).__name__}")


def _contains_thinking_markers(text: str) -> bool:
    for marker in _THINKING_MARKERS:
        if isinstance(marker, str):
            if marker in text:
                return True
        elif marker.search(text):
            return True
    return False


def _is_thinking_marker_line(line: str, found_marker: bool) -> bool:
    return (
        "🔧 TOOLS EXECUTION FLOW:" in line
        or "🧠 THINKING PROCESS:" in line
        or re.match(r"^\s*\[Thinking \d+\]", line) is not None
        or re.match(r"^\s*\[\d+\]\s+\w+", line) is not None
        or line.startswith(("File:", "Command:", "pattern:", "path:"))
        or (found_marker and line.strip().startswith("["))
    )


def _strip_thinking_dump(text: str) -> str:
    kept: list[str] = []
    for line in text.split("\n"):
        if _is_thinking_marker_line(line, False):
            break
        kept.append(line)
    return "\n".join(kept).strip() or "[See full detail for complete context]"


def _is_non_metadata_line(line: str) -> bool:
    return (
        bool(line)
        and not line.startswith(("Analysis:", "Summary:", "-"))
        and re.match(r"^\d+\.", line) is None
    )


def _continued_session_request(text: str) -> str:
    lines = text.split("\n")
    request = ""
    for i in range(len(lines) - 1, -1, -1):
        line = lines[i].strip()
        if _USER_REQUEST_RE.search(line):
            request = "\n".join(lines[i:]).strip()
            break
        if _is_non_metadata_line(line):
            request = line
    return request or "[Continued session - see full detail for context]"


def extract_user_text(record: Record) -> str:
    if not record.content:
        return NO_CONTENT
    text = _text_of(record.content)
    if CONTINUED_SESSION_MARKER in text:
        return _continued_session_request(text)
    if _contains_thinking_markers(text):
        return _strip_thinking_dump(text)
    return text.strip()


def extract_assistant_text(record: Record) -> str:
    if not record.content:
        return NO_CONTENT
    return _text_of(record.content).strip()


def extract_thinking(record: Record) -> ThinkingData:
    char_count = 0
    fragments: list[ThinkingFragment] = []
    for block in record.content:
        if isinstance(block, ThinkingBlock) and block.thinking:
            char_count += len(block.thinking)
            fragments.append(ThinkingFragment(timestamp=record.timestamp, text=block.thinking))
    return ThinkingData(char_count=char_count, fragments=fragments)


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0


def extract_token_usage(record: Record) -> TokenUsage:
    usage = record.usage
    if not usage:
        return TokenUsage()
    input_tokens = _as_int(usage.get("input_tokens"))
    output_tokens = _as_int(usage.get("output_tokens"))
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        cache_creation_tokens=_as_int(usage.get("cache_creation_input_tokens")),
        cache_read_tokens=_as_int(usage.get("cache_read_input_tokens")),
    )


def extract_tool_results(record: Record) -> list[ToolResult]:
    return [
        ToolResult(
            tool_id=block.tool_use_id,
            result=tool_result_text(block.content),
            is_error=block.is_error,
        )
        for block in record.content
        if isinstance(block, ToolResultBlock) and block.tool_use_id
    ]


def extract_tool_uses(record: Record) -> list[ToolUse]:
    return [
        ToolUse(tool_id=block.id, name=block.name, input=block.input, timestamp=record.timestamp)
        for block in record.content
        if isinstance(block, ToolUseBlock)
    ]


def has_displayable_content(record: Record) -> bool:
    for block in record.content:
        if isinstance(block, TextBlock):
            if block.text.strip():
                return True
        elif isinstance(block, ThinkingBlock):
            if block.thinking:
                return True
        elif isinstance(block, ToolUseBlock):
            return True
        elif isinstance(block, ToolResultBlock):
            continue
    return False


def is_text_only(record: Record) -> bool:
    return bool(record.content) and all(isinstance(b, TextBlock) for b in record.content)


def is_tool_result_notification(record: Record) -> bool:
    if any(isinstance(b, ToolResultBlock) for b in record.content):
        return True
    raw = record.raw_content_text
    return raw is not None and ("tool_use_id" in raw or "tool_result" in raw)


def truncate_for_display(text: str, max_len: int) -> str:
    if not text:
        return ""
    sanitized = re.sub(r"[\r\n]+", " ", text)
    sanitized = re.sub(r"\s+", " ", sanitized)
    sanitized = _CONTROL_CHARS_RE.sub("", sanitized).strip()
    if len(sanitized) > max_len:
        sanitized = sanitized[:max_len] + "..."
    return sanitized
