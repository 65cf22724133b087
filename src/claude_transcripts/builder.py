from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable

from claude_transcripts.config import ReconstructionConfig
from claude_transcripts.content import (
    extract_assistant_text,
    extract_thinking,
    extract_token_usage,
    extract_tool_results,
    extract_tool_uses,
    extract_user_text,
    has_displayable_content,
    is_tool_result_notification,
    truncate_for_display,
)
from claude_transcripts.heuristics import is_continuation_text
from claude_transcripts.merge import merge_continuations
from claude_transcripts.metrics import exchange_response_time
from claude_transcripts.models import (
    ConversationPair,
    ThinkingFragment,
    TokenUsage,
    ToolResult,
    ToolUse,
)
from claude_transcripts.records import Record
from claude_transcripts.subagents import SubAgentDraft, SubAgentTracker, freeze_entries
from claude_transcripts.timeline import build_timeline


logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    AWAITING_ASSISTANT = "awaiting_assistant"
    AWAITING_SUBAGENT_COMMAND = "awaiting_subagent_command"
    AWAITING_SUBAGENT_RESPONSE = "awaiting_subagent_response"


@dataclass
class _AssemblyState:
    rng: random.Random
    phase: Phase = Phase.IDLE
    user_record: Record | None = None
    is_continuation: bool = False
    contributions: list[Record] = field(default_factory=list)
    tool_uses: list[ToolUse] = field(default_factory=list)
    tool_results: dict[str, ToolResult] = field(default_factory=dict)
    thinking_char_count: int = 0
    thinking_content: list[ThinkingFragment] = field(default_factory=list)
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    sub_agents: list[SubAgentDraft] = field(default_factory=list)
    # Most recent valid timestamp in the stream; survives clear().
    last_timestamp: datetime | None = None

    def open(self, user_record: Record, *, continuation: bool = False) -> None:
        self.clear()
        self.user_record = user_record
        self.is_continuation = continuation
        self.phase = Phase.AWAITING_ASSISTANT

    def clear(self) -> None:
        self.phase = Phase.IDLE
        self.user_record = None
        self.is_continuation = False
        self.contributions = []
        self.tool_uses = []
        self.tool_results = {}
        self.thinking_char_count = 0
        self.thinking_content = []
        self.token_usage = TokenUsage()
        self.sub_agents = []


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConversationBuilder:
    """Fold an ordered record stream into conversation pairs.

    The builder keeps only read-only configuration. Each ``reconstruct`` call owns its own
    assembly state and random source, so one instance may serve concurrent sessions.
    """

    def __init__(
        self,
        config: ReconstructionConfig | None = None,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._config = config or ReconstructionConfig()
        self._clock = clock
        self._tracker = SubAgentTracker(self._config.delegation_tools)

    @property
    def config(self) -> ReconstructionConfig:
        return self._config

    def reconstruct(self, records: Iterable[Record]) -> list[ConversationPair]:
        rng = random.Random(self._config.timeline_seed)
        pairs = sorted(self.build_pairs(records, rng=rng), key=lambda p: p.user_time)
        return merge_continuations(
            pairs,
            cap=self._config.response_time_cap_seconds,
            jitter_seconds=self._config.jitter_seconds,
            clamp=self._config.clamp_jitter,
            rng=rng,
            preview_length=self._config.preview_length,
        )

    def build_pairs(
        self,
        records: Iterable[Record],
        *,
        rng: random.Random | None = None,
    ) -> list[ConversationPair]:
        state = _AssemblyState(rng=rng or random.Random(self._config.timeline_seed))
        pairs: list[ConversationPair] = []

        for record in records:
            if record.kind is None:
                continue
            record = self._ensure_timestamp(record, state)
            if record.is_user:
                self._on_user(record, state, pairs)
            else:
                self._on_assistant(record, state)

        self._finalize(state, pairs)
        return pairs

    def is_continuation(self, record: Record) -> bool:
        if record.is_compact_summary:
            return True
        if not record.content:
            return False
        return is_continuation_text(extract_user_text(record))

    def _ensure_timestamp(self, record: Record, state: _AssemblyState) -> Record:
        if record.timestamp is None:
            if record.timestamp_invalid and state.last_timestamp is not None:
                # Ordered next to its predecessor; response time is forced to zero at finalize.
                logger.debug("Record %s has an unparseable timestamp; using previous record's", record.entry_id)
                return replace(record, timestamp=state.last_timestamp)
            logger.debug("Record %s has no timestamp; using current time", record.entry_id)
            return replace(record, timestamp=self._clock())
        if record.timestamp.tzinfo is None:
            record = replace(record, timestamp=record.timestamp.replace(tzinfo=timezone.utc))
        state.last_timestamp = record.timestamp
        return record

    def _on_user(self, record: Record, state: _AssemblyState, pairs: list[ConversationPair]) -> None:
        if is_tool_result_notification(record):
            # Results still belong to the open exchange's invocations.
            if state.user_record is not None:
                for result in extract_tool_results(record):
                    state.tool_results[result.tool_id] = result
            return

        if self.is_continuation(record):
            self._finalize(state, pairs)
            state.open(record, continuation=True)
            return

        if state.phase is Phase.AWAITING_SUBAGENT_COMMAND:
            self._tracker.open_entry(state.sub_agents, record)
            state.phase = Phase.AWAITING_SUBAGENT_RESPONSE
            return

        self._finalize(state, pairs)
        state.open(record)

    def _on_assistant(self, record: Record, state: _AssemblyState) -> None:
        if state.phase is Phase.IDLE or state.user_record is None:
            logger.debug("Assistant record %s has no open human message; skipped", record.entry_id)
            return

        user_session = state.user_record.session_id
        if user_session and record.session_id and user_session != record.session_id:
            logger.warning(
                "Assistant record %s belongs to session %s, open message to %s; discarding open exchange",
                record.entry_id,
                record.session_id,
                user_session,
            )
            state.clear()
            return

        tools = extract_tool_uses(record)
        state.tool_uses.extend(tools)
        for result in extract_tool_results(record):
            state.tool_results[result.tool_id] = result
        thinking = extract_thinking(record)
        state.thinking_char_count += thinking.char_count
        state.thinking_content.extend(thinking.fragments)
        state.token_usage = state.token_usage + extract_token_usage(record)

        has_delegation = any(self._tracker.is_delegation(t.name) for t in tools)
        top_level = True
        if state.phase is Phase.AWAITING_SUBAGENT_RESPONSE:
            draft = self._tracker.active(state.sub_agents)
            if draft is None:
                state.phase = Phase.AWAITING_ASSISTANT
            else:
                rule = self._tracker.route_response(draft, record)
                if rule is None:
                    top_level = False
                elif rule.rearms_delegation:
                    top_level = False
                    state.phase = Phase.AWAITING_SUBAGENT_COMMAND
                else:
                    state.phase = Phase.AWAITING_ASSISTANT
        elif has_delegation:
            state.phase = Phase.AWAITING_SUBAGENT_COMMAND

        if top_level and (tools or has_displayable_content(record)):
            state.contributions.append(record)

    def _join_results(self, state: _AssemblyState) -> tuple[ToolUse, ...]:
        joined: list[ToolUse] = []
        for tool in state.tool_uses:
            result = state.tool_results.get(tool.tool_id)
            if result is None:
                joined.append(tool)
            else:
                joined.append(replace(tool, result=result.result, is_error=result.is_error))
        return tuple(joined)

    def _finalize(self, state: _AssemblyState, pairs: list[ConversationPair]) -> None:
        user_record = state.user_record
        if user_record is None:
            return
        if not state.contributions:
            logger.debug("Human record %s drew no assistant response; no pair emitted", user_record.entry_id)
            state.clear()
            return

        last = state.contributions[-1]
        all_tool_uses = self._join_results(state)
        assistant_content = extract_assistant_text(last)
        sub_agents = freeze_entries(state.sub_agents)

        pairs.append(
            ConversationPair(
                user_time=user_record.timestamp,
                assistant_time=last.timestamp,
                response_time_seconds=exchange_response_time(
                    user_record,
                    last,
                    cap=self._config.response_time_cap_seconds,
                ),
                user_content=extract_user_text(user_record),
                assistant_content=assistant_content,
                assistant_preview=truncate_for_display(assistant_content, self._config.preview_length),
                user_record=user_record,
                assistant_record=last,
                thinking_char_count=state.thinking_char_count,
                thinking_content=tuple(state.thinking_content),
                tool_uses=tuple(t for t in all_tool_uses if not self._tracker.is_delegation(t.name)),
                all_tool_uses=all_tool_uses,
                tool_results=tuple(state.tool_results.values()),
                token_usage=state.token_usage,
                sub_agent_commands=sub_agents,
                raw_timeline=build_timeline(
                    state.contributions,
                    jitter_seconds=self._config.jitter_seconds,
                    rng=state.rng,
                    clamp=self._config.clamp_jitter,
                ),
                is_continuation=state.is_continuation,
            )
        )
        state.clear()


def reconstruct(
    records: Iterable[Record],
    config: ReconstructionConfig | None = None,
) -> list[ConversationPair]:
    return ConversationBuilder(config).reconstruct(records)
