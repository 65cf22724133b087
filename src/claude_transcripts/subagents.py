from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from claude_transcripts.content import is_text_only
from claude_transcripts.heuristics import (
    COMPLETION_RULES,
    CompletionRule,
    CompletionSignal,
    match_completion,
)
from claude_transcripts.models import SubAgentEntry
from claude_transcripts.records import Record, TextBlock, ToolUseBlock


logger = logging.getLogger(__name__)


@dataclass
class SubAgentDraft:
    command: Record
    responses: list[Record] = field(default_factory=list)
    is_complete: bool = False

    def freeze(self) -> SubAgentEntry:
        return SubAgentEntry(
            command=self.command,
            response=self.responses[0] if self.responses else None,
            responses=tuple(self.responses),
            is_complete=self.is_complete,
        )


class SubAgentTracker:
    """Stateless rules for delegated sub-task bookkeeping.

    The open entries themselves live in the caller's assembly state, so one tracker can serve
    any number of concurrent reconstructions.
    """

    def __init__(
        self,
        delegation_tools: Iterable[str] = ("Task",),
        rules: tuple[CompletionRule, ...] = COMPLETION_RULES,
    ) -> None:
        self._delegation_tools = frozenset(delegation_tools)
        self._rules = rules

    def is_delegation(self, tool_name: str) -> bool:
        return tool_name in self._delegation_tools

    def has_delegation(self, record: Record) -> bool:
        return any(isinstance(b, ToolUseBlock) and self.is_delegation(b.name) for b in record.content)

    def active(self, drafts: list[SubAgentDraft]) -> SubAgentDraft | None:
        return next((d for d in drafts if not d.is_complete), None)

    def open_entry(self, drafts: list[SubAgentDraft], command: Record) -> SubAgentDraft:
        previous = self.active(drafts)
        if previous is not None:
            previous.is_complete = True
        draft = SubAgentDraft(command=command)
        drafts.append(draft)
        return draft

    def route_response(self, draft: SubAgentDraft, record: Record) -> CompletionRule | None:
        draft.responses.append(record)
        signal = CompletionSignal(
            text="".join(b.text for b in record.content if isinstance(b, TextBlock)),
            text_only=is_text_only(record),
            has_delegation=self.has_delegation(record),
            response_count=len(draft.responses),
        )
        rule = match_completion(signal, self._rules)
        if rule is not None:
            draft.is_complete = True
            logger.debug("Sub-agent entry closed by rule %s", rule.name)
        return rule


def freeze_entries(drafts: list[SubAgentDraft]) -> tuple[SubAgentEntry, ...]:
    orphaned = sum(1 for d in drafts if not d.is_complete)
    if orphaned:
        logger.debug("%d sub-agent entr%s left open at pair end", orphaned, "y" if orphaned == 1 else "ies")
    return tuple(d.freeze() for d in drafts)
