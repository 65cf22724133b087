from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Sequence

from claude_transcripts.content import truncate_for_display
from claude_transcripts.models import ConversationPair, TokenUsage
from claude_transcripts.records import Record


logger = logging.getLogger(__name__)

MAX_RESPONSE_TIME_SECONDS = 28800  # 8 hours


def response_time_seconds(
    start: datetime | None,
    end: datetime | None,
    *,
    cap: float = MAX_RESPONSE_TIME_SECONDS,
) -> float:
    if start is None or end is None:
        return 0.0
    try:
        seconds = (end - start).total_seconds()
    except TypeError:
        # Mixed naive/aware or non-datetime values.
        logger.warning("Cannot compare timestamps %r and %r; response time set to 0", start, end)
        return 0.0
    return min(max(0.0, seconds), float(cap))


def exchange_response_time(
    user: Record,
    assistant: Record,
    *,
    cap: float = MAX_RESPONSE_TIME_SECONDS,
) -> float:
    """Response time between two records; zero when either source timestamp was unparseable."""
    if user.timestamp_invalid or assistant.timestamp_invalid:
        return 0.0
    return response_time_seconds(user.timestamp, assistant.timestamp, cap=cap)


def sum_token_usage(usages: Iterable[TokenUsage]) -> TokenUsage:
    total = TokenUsage()
    for usage in usages:
        total = total + usage
    return total


@dataclass(frozen=True)
class SessionStatistics:
    total_pairs: int = 0
    total_tools: int = 0
    total_tokens: TokenUsage = field(default_factory=TokenUsage)
    avg_response_time_seconds: float = 0.0
    total_response_time_seconds: float = 0.0
    start_time: datetime | None = None
    end_time: datetime | None = None
    actual_duration_seconds: float = 0.0
    thinking_char_count: int = 0
    sub_agent_count: int = 0
    orphaned_sub_agents: int = 0
    continuation_count: int = 0
    unmergeable_continuations: int = 0


def calculate_session_statistics(pairs: Sequence[ConversationPair]) -> SessionStatistics:
    if not pairs:
        return SessionStatistics()

    response_times = [p.response_time_seconds for p in pairs]
    total_response = sum(response_times)
    start_time = pairs[0].user_time
    end_time = pairs[-1].assistant_time
    try:
        actual = max(0.0, (end_time - start_time).total_seconds())
    except TypeError:
        actual = 0.0

    sub_agents = [entry for p in pairs for entry in p.sub_agent_commands]
    return SessionStatistics(
        total_pairs=len(pairs),
        total_tools=sum(p.tool_count for p in pairs),
        total_tokens=sum_token_usage(p.token_usage for p in pairs),
        avg_response_time_seconds=total_response / len(pairs),
        total_response_time_seconds=total_response,
        start_time=start_time,
        end_time=end_time,
        actual_duration_seconds=actual,
        thinking_char_count=sum(p.thinking_char_count for p in pairs),
        sub_agent_count=len(sub_agents),
        orphaned_sub_agents=sum(1 for entry in sub_agents if not entry.is_complete),
        continuation_count=sum(len(p.continuation_spans) for p in pairs),
        unmergeable_continuations=sum(1 for p in pairs if p.originally_continuation),
    )


_ACTION_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"fix|修正|なおして", re.IGNORECASE), "Fix"),
    (re.compile(r"implement|実装|つくって", re.IGNORECASE), "Implement"),
    (re.compile(r"refactor|リファクタ", re.IGNORECASE), "Refactor"),
    (re.compile(r"debug|デバッグ", re.IGNORECASE), "Debug"),
    (re.compile(r"test|テスト", re.IGNORECASE), "Test"),
    (re.compile(r"analyze|分析|解析", re.IGNORECASE), "Analyze"),
    (re.compile(r"optimize|最適化", re.IGNORECASE), "Optimize"),
    (re.compile(r"update|更新|アップデート", re.IGNORECASE), "Update"),
    (re.compile(r"add|追加", re.IGNORECASE), "Add"),
    (re.compile(r"remove|削除", re.IGNORECASE), "Remove"),
    (re.compile(r"error|エラー", re.IGNORECASE), "Error"),
    (re.compile(r"bug|バグ", re.IGNORECASE), "Bug"),
)

_FILE_NAME_RE = re.compile(r"[\w-]+\.(?:js|ts|tsx|jsx|json|md|css|html|py|rs|go|java|cpp|c|h|hpp)\b")

_MIN_MEANINGFUL_CHARS = 10
_MAX_SUMMARY_PAIRS = 5


def summarize_topics(pairs: Sequence[ConversationPair], *, max_topics: int = 5) -> str:
    if not pairs:
        return "No conversations"

    meaningful = [p for p in pairs if len(p.user_content) >= _MIN_MEANINGFUL_CHARS][:_MAX_SUMMARY_PAIRS]
    if not meaningful:
        return truncate_for_display(pairs[0].user_content, 50)

    topics: list[str] = []
    for pair in meaningful:
        message = pair.user_content.lower()
        for name in _FILE_NAME_RE.findall(message):
            if name not in topics:
                topics.append(name)
        for pattern, label in _ACTION_PATTERNS:
            if label not in topics and pattern.search(message):
                topics.append(label)

    if topics:
        return " • ".join(topics[:max_topics])
    return truncate_for_display(meaningful[0].user_content, 60)
