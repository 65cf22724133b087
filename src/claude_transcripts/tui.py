from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.widgets import Checkbox, Footer, Header, Input, Static, Tree

from claude_transcripts.config import ReconstructionConfig
from claude_transcripts.content import (
    NO_CONTENT,
    extract_assistant_text,
    extract_user_text,
    truncate_for_display,
)
from claude_transcripts.models import ConversationPair, FragmentKind, SubAgentEntry, TimelineFragment
from claude_transcripts.records import ToolResultBlock, ToolUseBlock, TranscriptParseError
from claude_transcripts.sessions import load_session
from claude_transcripts.transcript import format_duration


@dataclass(frozen=True)
class MessageUnit:
    timestamp: str
    kind: str
    title: str
    lines: list[str]
    search_text: str


@dataclass(frozen=True)
class PairUnits:
    index: int
    pair: ConversationPair
    prompt: MessageUnit
    units: list[MessageUnit]


_FRAGMENT_UNIT_KIND = {
    FragmentKind.TEXT: "assistant",
    FragmentKind.TOOL_USE: "tool_call",
    FragmentKind.TOOL_RESULT: "tool_result",
    FragmentKind.THINKING: "thinking",
    FragmentKind.CONTINUATION_MARKER: "continuation",
}


def _pretty_json(value: Any) -> str:
    try:
        return json.dumps(value, indent=2, ensure_ascii=False)
    except TypeError:
        return str(value)


def _first_line(text: str, fallback: str) -> str:
    stripped = text.strip()
    return stripped.splitlines()[0] if stripped else fallback


def _unit(timestamp: str, kind: str, title: str, lines: list[str]) -> MessageUnit:
    return MessageUnit(
        timestamp=timestamp,
        kind=kind,
        title=title,
        lines=lines,
        search_text="\n".join(lines).lower(),
    )


def _fragment_unit(fragment: TimelineFragment) -> MessageUnit:
    kind = _FRAGMENT_UNIT_KIND[fragment.kind]
    ts = fragment.timestamp.isoformat()
    block = fragment.block
    if isinstance(block, ToolUseBlock):
        return _unit(ts, kind, f"tool_call: {block.name}", [f"$ {block.name}", _pretty_json(dict(block.input))])
    if isinstance(block, ToolResultBlock):
        header = "tool_result (error)" if block.is_error else "tool_result"
        return _unit(ts, kind, header, [header, fragment.text])
    if kind == "thinking":
        return _unit(ts, kind, "thinking", [fragment.text])
    return _unit(ts, kind, _first_line(fragment.text, kind), [fragment.text])


def _sub_agent_unit(entry: SubAgentEntry) -> MessageUnit:
    command_text = extract_user_text(entry.command)
    status = "complete" if entry.is_complete else "incomplete"
    lines = [command_text]
    for response in entry.responses:
        text = extract_assistant_text(response)
        if text and text != NO_CONTENT:
            lines.append(text)
    ts = entry.command.timestamp.isoformat() if entry.command.timestamp else ""
    title = f"sub_agent ({status}, {len(entry.responses)} responses): {_first_line(command_text, '(command)')}"
    return _unit(ts, "sub_agent", title, lines)


def build_pair_units(pairs: Sequence[ConversationPair]) -> list[PairUnits]:
    out: list[PairUnits] = []
    for idx, pair in enumerate(pairs, start=1):
        prompt = _unit(
            pair.user_time.isoformat(),
            "user",
            _first_line(pair.user_content, "(user)"),
            [pair.user_content],
        )
        units = [prompt]
        units.extend(_fragment_unit(f) for f in pair.raw_timeline)
        units.extend(_sub_agent_unit(e) for e in pair.sub_agent_commands)
        out.append(PairUnits(index=idx, pair=pair, prompt=prompt, units=units))
    return out


def filter_units(
    units: list[MessageUnit],
    *,
    query: str,
    show_user: bool,
    show_assistant: bool,
    show_tool_calls: bool,
    show_tool_results: bool,
    show_thinking: bool,
    show_sub_agents: bool,
) -> list[MessageUnit]:
    q = (query or "").strip().lower()
    allowed = set()
    if show_user:
        allowed.add("user")
    if show_assistant:
        allowed.update({"assistant", "continuation"})
    if show_tool_calls:
        allowed.add("tool_call")
    if show_tool_results:
        allowed.add("tool_result")
    if show_thinking:
        allowed.add("thinking")
    if show_sub_agents:
        allowed.add("sub_agent")

    out: list[MessageUnit] = []
    for u in units:
        if u.kind not in allowed:
            continue
        if q and q not in u.search_text:
            continue
        out.append(u)
    return out


def pair_label(group: PairUnits) -> str:
    pair = group.pair
    flags = ""
    if pair.has_continuation:
        flags += " [+cont]"
    if pair.originally_continuation:
        flags += " [cont]"
    return (
        f"{group.index:04d}  {pair.user_time.strftime('%Y-%m-%d %H:%M:%S')}  "
        f"{format_duration(pair.response_time_seconds)}  tools={pair.tool_count}{flags}  "
        f"{truncate_for_display(pair.user_content, 80)}"
    )


class TranscriptViewerApp(App):
    BINDINGS = [
        ("q", "quit", "Quit"),
        ("/", "focus_search", "Search"),
    ]

    def __init__(
        self,
        *,
        transcript_path: Path,
        config: ReconstructionConfig | None = None,
    ) -> None:
        super().__init__()
        self._transcript_path = transcript_path
        self._config = config
        self._groups: list[PairUnits] = []

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static(f"Session: {self._transcript_path}", id="session-path")
            yield Static("", id="session-stats")
            yield Input(placeholder="Filter by text…", id="query")
            with Horizontal():
                yield Checkbox("User", value=True, id="f-user")
                yield Checkbox("Assistant", value=True, id="f-assistant")
                yield Checkbox("Tool calls", value=True, id="f-tool-call")
                yield Checkbox("Tool results", value=True, id="f-tool-result")
                yield Checkbox("Thinking", value=False, id="f-thinking")
                yield Checkbox("Sub-agents", value=True, id="f-sub-agent")
            yield Tree("Conversations", id="tree")
        yield Footer()

    async def on_mount(self) -> None:
        try:
            session = load_session(self._transcript_path, config=self._config)
        except TranscriptParseError as e:
            self.exit(message=str(e))
            return
        stats = session.stats
        self.query_one("#session-stats", Static).update(
            f"{stats.total_pairs} conversations, {stats.total_tools} tools, "
            f"{stats.total_tokens.total_tokens} tokens, {format_duration(stats.actual_duration_seconds)}"
        )
        self._groups = build_pair_units(session.pairs)
        self._refresh_tree()

    def _refresh_tree(self) -> None:
        query = self.query_one("#query", Input).value
        show_user = self.query_one("#f-user", Checkbox).value
        show_assistant = self.query_one("#f-assistant", Checkbox).value
        show_tool_calls = self.query_one("#f-tool-call", Checkbox).value
        show_tool_results = self.query_one("#f-tool-result", Checkbox).value
        show_thinking = self.query_one("#f-thinking", Checkbox).value
        show_sub_agents = self.query_one("#f-sub-agent", Checkbox).value

        tree = self.query_one("#tree", Tree)
        tree.clear()
        root = tree.root

        total_units = sum(len(g.units) for g in self._groups)
        rendered_groups = 0
        rendered_units = 0
        for group in self._groups:
            visible_units = filter_units(
                group.units,
                query=query,
                show_user=show_user,
                show_assistant=show_assistant,
                show_tool_calls=show_tool_calls,
                show_tool_results=show_tool_results,
                show_thinking=show_thinking,
                show_sub_agents=show_sub_agents,
            )
            if not visible_units:
                continue

            rendered_groups += 1
            rendered_units += len(visible_units)

            group_node = root.add(pair_label(group))
            for u in visible_units:
                node = group_node.add(f"{u.timestamp}  {u.kind}  {u.title}")
                for line in u.lines[:2000]:
                    for subline in str(line).splitlines() or [""]:
                        node.add_leaf(subline)

        root.label = (
            f"Conversations ({rendered_units}/{total_units} shown; "
            f"{rendered_groups}/{len(self._groups)} pairs)"
        )
        root.expand()

    def on_input_changed(self, _event: Input.Changed) -> None:
        self._refresh_tree()

    def on_checkbox_changed(self, _event: Checkbox.Changed) -> None:
        self._refresh_tree()

    def action_focus_search(self) -> None:
        self.query_one("#query", Input).focus()


def run_tui(
    *,
    transcript_path: Path,
    config: ReconstructionConfig | None = None,
) -> None:
    app = TranscriptViewerApp(
        transcript_path=transcript_path,
        config=config,
    )
    app.run()
