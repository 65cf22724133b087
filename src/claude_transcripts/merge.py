from __future__ import annotations

import logging
import random
from dataclasses import replace
from typing import Sequence

from claude_transcripts.content import truncate_for_display
from claude_transcripts.metrics import MAX_RESPONSE_TIME_SECONDS, exchange_response_time
from claude_transcripts.models import ContinuationSpan, ConversationPair
from claude_transcripts.timeline import DEFAULT_JITTER_SECONDS, continuation_marker, redistribute


logger = logging.getLogger(__name__)


def _merge_target_index(merged: list[ConversationPair]) -> int | None:
    for index in range(len(merged) - 1, -1, -1):
        if not merged[index].is_continuation:
            return index
    return None


def fold_continuation(
    target: ConversationPair,
    continuation: ConversationPair,
    *,
    cap: float = MAX_RESPONSE_TIME_SECONDS,
    jitter_seconds: float = DEFAULT_JITTER_SECONDS,
    clamp: bool = True,
    rng: random.Random | None = None,
    preview_length: int = 200,
) -> ConversationPair:
    """Return ``target`` extended by ``continuation``'s time range, totals and timeline."""
    assistant_time = continuation.assistant_time
    span = ContinuationSpan(
        start=continuation.user_time,
        end=continuation.assistant_time,
        response_time_seconds=continuation.response_time_seconds,
    )

    assistant_content = target.assistant_content
    if continuation.assistant_content:
        assistant_content = (
            f"{assistant_content}\n\n{continuation.assistant_content}"
            if assistant_content
            else continuation.assistant_content
        )

    timeline = (
        *target.raw_timeline,
        continuation_marker(continuation.user_time),
        *continuation.raw_timeline,
    )

    return replace(
        target,
        assistant_time=assistant_time,
        response_time_seconds=exchange_response_time(
            target.user_record, continuation.assistant_record, cap=cap
        ),
        assistant_content=assistant_content,
        assistant_preview=truncate_for_display(assistant_content, preview_length),
        assistant_record=continuation.assistant_record,
        thinking_char_count=target.thinking_char_count + continuation.thinking_char_count,
        thinking_content=target.thinking_content + continuation.thinking_content,
        tool_uses=target.tool_uses + continuation.tool_uses,
        all_tool_uses=target.all_tool_uses + continuation.all_tool_uses,
        tool_results=target.tool_results + continuation.tool_results,
        token_usage=target.token_usage + continuation.token_usage,
        sub_agent_commands=target.sub_agent_commands + continuation.sub_agent_commands,
        raw_timeline=redistribute(
            timeline,
            target.user_time,
            assistant_time,
            jitter_seconds=jitter_seconds,
            rng=rng,
            clamp=clamp,
        ),
        has_continuation=True,
        continuation_spans=target.continuation_spans + (span,),
    )


def merge_continuations(
    pairs: Sequence[ConversationPair],
    *,
    cap: float = MAX_RESPONSE_TIME_SECONDS,
    jitter_seconds: float = DEFAULT_JITTER_SECONDS,
    clamp: bool = True,
    rng: random.Random | None = None,
    preview_length: int = 200,
) -> list[ConversationPair]:
    """Fold continuation pairs into the nearest earlier pair that is not itself one.

    Output pairs are continuation-origin only when no target existed; those stay flagged
    ``originally_continuation`` and are left alone by later passes. Input order is kept; sort
    ``pairs`` by ``user_time`` first, since reordering the output afterwards can place an
    unmergeable pair behind a target.
    """
    merged: list[ConversationPair] = []
    for pair in pairs:
        if not pair.is_continuation:
            merged.append(pair)
            continue

        target_index = _merge_target_index(merged)
        if target_index is None:
            if not pair.originally_continuation:
                logger.debug("Continuation at %s has no earlier pair to merge into", pair.user_time)
                pair = replace(pair, originally_continuation=True)
            merged.append(pair)
            continue

        merged[target_index] = fold_continuation(
            merged[target_index],
            pair,
            cap=cap,
            jitter_seconds=jitter_seconds,
            clamp=clamp,
            rng=rng,
            preview_length=preview_length,
        )
    return merged
