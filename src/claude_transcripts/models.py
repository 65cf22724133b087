from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from claude_transcripts.records import ContentBlock, Record


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            cache_creation_tokens=self.cache_creation_tokens + other.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
        )


@dataclass(frozen=True)
class ThinkingFragment:
    timestamp: datetime | None
    text: str


@dataclass(frozen=True)
class ToolResult:
    tool_id: str
    result: str
    is_error: bool = False


@dataclass(frozen=True)
class ToolUse:
    tool_id: str
    name: str
    input: Mapping[str, Any]
    timestamp: datetime | None
    result: str | None = None
    is_error: bool = False


@dataclass(frozen=True)
class SubAgentEntry:
    command: Record
    response: Record | None = None
    responses: tuple[Record, ...] = ()
    is_complete: bool = False


class FragmentKind(str, Enum):
    TEXT = "text"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    THINKING = "thinking"
    CONTINUATION_MARKER = "continuation_marker"


@dataclass(frozen=True)
class TimelineFragment:
    kind: FragmentKind
    timestamp: datetime
    text: str = ""
    block: ContentBlock | None = None


@dataclass(frozen=True)
class ContinuationSpan:
    start: datetime
    end: datetime
    response_time_seconds: float


@dataclass(frozen=True)
class ConversationPair:
    user_time: datetime
    assistant_time: datetime
    response_time_seconds: float
    user_content: str
    assistant_content: str
    user_record: Record
    assistant_record: Record
    assistant_preview: str = ""
    thinking_char_count: int = 0
    thinking_content: tuple[ThinkingFragment, ...] = ()
    tool_uses: tuple[ToolUse, ...] = ()
    all_tool_uses: tuple[ToolUse, ...] = ()
    tool_results: tuple[ToolResult, ...] = ()
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    sub_agent_commands: tuple[SubAgentEntry, ...] = ()
    raw_timeline: tuple[TimelineFragment, ...] = ()
    has_continuation: bool = False
    continuation_spans: tuple[ContinuationSpan, ...] = ()
    is_continuation: bool = False
    originally_continuation: bool = False

    @property
    def tool_count(self) -> int:
        return len(self.tool_uses)

    @property
    def session_id(self) -> str | None:
        return self.user_record.session_id

    @property
    def user_entry_id(self) -> str | None:
        return self.user_record.entry_id

    @property
    def user_parent_entry_id(self) -> str | None:
        return self.user_record.parent_entry_id

    @property
    def assistant_entry_id(self) -> str | None:
        return self.assistant_record.entry_id

    @property
    def assistant_parent_entry_id(self) -> str | None:
        return self.assistant_record.parent_entry_id

    @property
    def is_meta(self) -> bool:
        return self.user_record.is_meta

    @property
    def is_sidechain(self) -> bool:
        return self.user_record.is_sidechain

    @property
    def tools_used(self) -> list[str]:
        return [t.name for t in self.tool_uses]
