"""Pattern rules for continuation markers and sub-agent completion.

Rules are plain ordered tuples so new phrasings or locales can be added without touching the
reducer's control flow. Matching is first-match-wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Sequence


CONTINUATION_PROMPT = (
    "Please continue the conversation from where we left it off without asking the user any "
    "further questions. Continue with the last task that you were asked to work on."
)

CONTINUATION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"Please continue the conversation from where we left it off", re.IGNORECASE),
    re.compile(r"without asking the user any further questions", re.IGNORECASE),
    re.compile(r"Continue with the last task that you were asked to work on", re.IGNORECASE),
    re.compile(r"continue.*conversation.*from.*where.*left", re.IGNORECASE),
    re.compile(r"continue.*last.*task", re.IGNORECASE),
    re.compile(r"つづけて"),
    re.compile(r"続けて"),
    re.compile(r"継続"),
    re.compile(r"続行"),
    re.compile(r"作業.*続"),
    re.compile(r"続き.*作業"),
)

SIMPLE_CONTINUATION_COMMANDS = frozenset({"つづけて", "続けて", "継続", "続行"})

STRONG_COMPLETION_PHRASES: tuple[str, ...] = (
    "Task completed successfully",
    "I've completed",
    "I have completed",
    "The task has been completed",
    "All requested",
    "has been successfully",
    "完了しました",
    "タスクを完了",
    "作業を完了",
)

SUMMARY_PHRASES: tuple[str, ...] = (
    "Summary",
    "In summary",
    "To summarize",
    "概要",
    "まとめ",
)


def is_continuation_text(text: str) -> bool:
    if not text:
        return False
    if CONTINUATION_PROMPT in text or text.strip() in SIMPLE_CONTINUATION_COMMANDS:
        return True
    return any(p.search(text) for p in CONTINUATION_PATTERNS)


@dataclass(frozen=True)
class CompletionSignal:
    text: str
    text_only: bool
    has_delegation: bool
    response_count: int


@dataclass(frozen=True)
class CompletionRule:
    name: str
    matches: Callable[[CompletionSignal], bool]
    # True when the rule also re-arms the wait for a new delegated command.
    rearms_delegation: bool = False


def _strong_phrase(signal: CompletionSignal) -> bool:
    return signal.text_only and any(p in signal.text for p in STRONG_COMPLETION_PHRASES)


def _closing_summary(signal: CompletionSignal) -> bool:
    return (
        signal.text_only
        and signal.response_count >= 2
        and any(p in signal.text for p in SUMMARY_PHRASES)
    )


def _new_delegation(signal: CompletionSignal) -> bool:
    return signal.has_delegation


COMPLETION_RULES: tuple[CompletionRule, ...] = (
    CompletionRule("strong_phrase", _strong_phrase),
    CompletionRule("closing_summary", _closing_summary),
    CompletionRule("new_delegation", _new_delegation, rearms_delegation=True),
)


def match_completion(
    signal: CompletionSignal,
    rules: Sequence[CompletionRule] = COMPLETION_RULES,
) -> CompletionRule | None:
    for rule in rules:
        if rule.matches(signal):
            return rule
    return None
