from __future__ import annotations

import random
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Sequence

from claude_transcripts.content import block_text
from claude_transcripts.models import FragmentKind, TimelineFragment
from claude_transcripts.records import (
    ContentBlock,
    Record,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)


DEFAULT_JITTER_SECONDS = 30.0


def fragment_kind(block: ContentBlock) -> FragmentKind:
    if isinstance(block, TextBlock):
        return FragmentKind.TEXT
    if isinstance(block, ToolUseBlock):
        return FragmentKind.TOOL_USE
    if isinstance(block, ToolResultBlock):
        return FragmentKind.TOOL_RESULT
    if isinstance(block, ThinkingBlock):
        return FragmentKind.THINKING
    raise TypeError(f"unsupported content block: {type(block).__name__}")


def _interpolated_times(
    count: int,
    start: datetime,
    end: datetime,
    *,
    jitter_seconds: float,
    rng: random.Random,
    clamp: bool,
) -> list[datetime]:
    span = end - start
    times: list[datetime] = []
    for index in range(count):
        progress = index / (count - 1)
        estimated = start + span * progress
        if jitter_seconds > 0:
            estimated += timedelta(seconds=rng.uniform(-jitter_seconds, jitter_seconds))
        if clamp:
            lo, hi = (start, end) if start <= end else (end, start)
            estimated = min(max(estimated, lo), hi)
        times.append(estimated)
    return times


def _sorted(fragments: list[TimelineFragment]) -> tuple[TimelineFragment, ...]:
    return tuple(sorted(fragments, key=lambda f: f.timestamp))


def build_timeline(
    contributions: Sequence[Record],
    *,
    jitter_seconds: float = DEFAULT_JITTER_SECONDS,
    rng: random.Random | None = None,
    clamp: bool = True,
) -> tuple[TimelineFragment, ...]:
    """Order the content fragments of several assistant records on one timeline.

    A single contribution keeps its real timestamp on every fragment. With several, fragment
    positions are interpolated linearly between the first and last contribution time, plus
    up to ``jitter_seconds`` of noise so neighbouring fragments rarely collide. With ``clamp``
    the noisy value is held inside the real ``[first, last]`` window.
    """
    stamped = [c for c in contributions if c.timestamp is not None]
    items: list[tuple[ContentBlock, datetime]] = [
        (block, record.timestamp) for record in stamped for block in record.content
    ]
    if not items:
        return ()

    if len(stamped) == 1 or len(items) == 1:
        return _sorted(
            [TimelineFragment(kind=fragment_kind(b), timestamp=ts, text=block_text(b), block=b) for b, ts in items]
        )

    times = _interpolated_times(
        len(items),
        stamped[0].timestamp,
        stamped[-1].timestamp,
        jitter_seconds=jitter_seconds,
        rng=rng or random.Random(),
        clamp=clamp,
    )
    return _sorted(
        [
            TimelineFragment(kind=fragment_kind(b), timestamp=t, text=block_text(b), block=b)
            for (b, _ts), t in zip(items, times)
        ]
    )


def redistribute(
    fragments: Sequence[TimelineFragment],
    start: datetime,
    end: datetime,
    *,
    jitter_seconds: float = DEFAULT_JITTER_SECONDS,
    rng: random.Random | None = None,
    clamp: bool = True,
) -> tuple[TimelineFragment, ...]:
    if not fragments:
        return ()
    if len(fragments) == 1:
        return (replace(fragments[0], timestamp=start),)
    times = _interpolated_times(
        len(fragments),
        start,
        end,
        jitter_seconds=jitter_seconds,
        rng=rng or random.Random(),
        clamp=clamp,
    )
    return _sorted([replace(f, timestamp=t) for f, t in zip(fragments, times)])


def continuation_marker(at: datetime) -> TimelineFragment:
    label = at.strftime("%Y-%m-%d %H:%M:%S")
    return TimelineFragment(
        kind=FragmentKind.CONTINUATION_MARKER,
        timestamp=at,
        text=f"[Continuation at {label}]",
    )
