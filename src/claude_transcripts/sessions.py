from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from claude_transcripts.builder import ConversationBuilder
from claude_transcripts.config import ReconstructionConfig
from claude_transcripts.metrics import SessionStatistics, calculate_session_statistics
from claude_transcripts.models import ConversationPair
from claude_transcripts.records import ParseStats, parse_transcript_file, read_transcript_head


logger = logging.getLogger(__name__)

CLAUDE_PROJECTS_SUBDIR = "projects"

SESSION_UUID_RE = re.compile(r"([0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})")
_LONG_HEX_RE = re.compile(r"([0-9a-fA-F]{32,})")


@dataclass(frozen=True)
class SessionRow:
    path: Path
    session_id: str | None
    preview: str
    updated_at: datetime | None
    cwd: str | None
    git_branch: str | None
    project: str | None


@dataclass(frozen=True)
class ListStyleMetrics:
    column_widths: tuple[int, ...]
    show_cwd: bool


@dataclass(frozen=True)
class Session:
    path: Path
    session_id: str | None
    pairs: list[ConversationPair]
    stats: SessionStatistics
    parse_stats: ParseStats


_AGE_UNITS = ((60 * 60 * 24, "day"), (60 * 60, "hour"), (60, "minute"), (1, "second"))


def human_time_ago(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    secs = max(int((datetime.now(timezone.utc) - ts).total_seconds()), 0)
    for size, unit in _AGE_UNITS:
        if secs >= size:
            break
    n = secs // size
    return f"{n} {unit} ago" if n == 1 else f"{n} {unit}s ago"


def _elide_head(s: str, width: int) -> str:
    """Keep the tail of ``s`` (the informative end of paths and branch names)."""
    if len(s) <= width:
        return s
    return "…" + s[len(s) - width + 1 :]


def paths_match(a: str | Path, b: str | Path) -> bool:
    try:
        return Path(a).expanduser().resolve() == Path(b).expanduser().resolve()
    except OSError:
        return str(a) == str(b)


def get_claude_home(claude_home: str | Path | None = None) -> Path:
    raw = str(claude_home) if claude_home is not None else os.environ.get("CLAUDE_HOME", "~/.claude")
    return Path(raw).expanduser().resolve()


def iter_transcript_files(*, claude_home: str | Path | None = None) -> Iterator[Path]:
    projects_dir = get_claude_home(claude_home) / CLAUDE_PROJECTS_SUBDIR
    if projects_dir.exists():
        yield from projects_dir.rglob("*.jsonl")


def get_session_id_from_filename(path: Path) -> str | None:
    match = SESSION_UUID_RE.search(path.name)
    if match:
        return match.group(1)
    match = _LONG_HEX_RE.search(path.name)
    return match.group(1) if match else None


def _first_user_text(obj: dict[str, Any]) -> str | None:
    message = obj.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if isinstance(content, str):
        return content.strip() or None
    if isinstance(content, list):
        if any(isinstance(b, dict) and b.get("type") == "tool_result" for b in content):
            return None
        parts = [
            b.get("text", "").strip()
            for b in content
            if isinstance(b, dict) and b.get("type") == "text" and isinstance(b.get("text"), str)
        ]
        text = " ".join(p for p in parts if p)
        return text or None
    return None


def extract_preview_from_head(head: list[dict[str, Any]]) -> str | None:
    for obj in head:
        if obj.get("type") != "user" or obj.get("isMeta") or obj.get("isCompactSummary"):
            continue
        text = _first_user_text(obj)
        if text and not text.startswith("<command-"):
            return text
    return None


def _head_value(head: list[dict[str, Any]], key: str) -> str | None:
    for obj in head:
        value = obj.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def list_session_rows(
    *,
    claude_home: str | Path | None = None,
    limit: int = 50,
    query: str | None = None,
    filter_cwd: Path | None = None,
) -> list[SessionRow]:
    q = query.strip().lower() if query and query.strip() else None
    candidates = list(iter_transcript_files(claude_home=claude_home))
    candidates.sort(key=lambda p: p.stat().st_mtime if p.exists() else 0, reverse=True)

    rows: list[SessionRow] = []
    for path in candidates:
        if len(rows) >= limit:
            break
        try:
            mtime = path.stat().st_mtime
        except OSError:
            continue

        head = read_transcript_head(path)
        preview = extract_preview_from_head(head)
        if preview is None:
            continue
        cwd = _head_value(head, "cwd")
        git_branch = _head_value(head, "gitBranch")
        session_id = get_session_id_from_filename(path) or _head_value(head, "sessionId")

        if filter_cwd is not None and (cwd is None or not paths_match(cwd, filter_cwd)):
            continue

        if q is not None:
            haystacks = [preview, str(path), path.parent.name]
            if cwd:
                haystacks.append(cwd)
            if git_branch:
                haystacks.append(git_branch)
            if session_id:
                haystacks.append(session_id)
            if not any(q in h.lower() for h in haystacks):
                continue

        rows.append(
            SessionRow(
                path=path,
                session_id=session_id,
                preview=preview,
                updated_at=datetime.fromtimestamp(mtime, tz=timezone.utc),
                cwd=cwd,
                git_branch=git_branch,
                project=Path(cwd).name if cwd else path.parent.name,
            )
        )
    return rows


_PREVIEW_CHARS = 160


def format_updated_label(row: SessionRow) -> str:
    if row.updated_at is not None:
        return human_time_ago(row.updated_at)
    return "-"


def _list_headers(show_cwd: bool) -> list[str]:
    headers = ["Updated", "Project", "Branch"]
    if show_cwd:
        headers.append("CWD")
    return headers


def _list_cells(row: SessionRow, show_cwd: bool) -> list[str]:
    cells = [
        format_updated_label(row),
        _elide_head(row.project or "", 20) or "-",
        _elide_head(row.git_branch or "", 24) or "-",
    ]
    if show_cwd:
        cells.append(_elide_head(row.cwd or "", 24) or "-")
    return cells


def _join_columns(cells: list[str], metrics: ListStyleMetrics, tail: str) -> str:
    padded = [f"{cell:<{width}}" for cell, width in zip(cells, metrics.column_widths)]
    return "  ".join(padded + [tail])


def calculate_list_metrics(rows: list[SessionRow], *, show_cwd: bool) -> ListStyleMetrics:
    table = [_list_headers(show_cwd)] + [_list_cells(r, show_cwd) for r in rows]
    return ListStyleMetrics(
        column_widths=tuple(max(len(cell) for cell in column) for column in zip(*table)),
        show_cwd=show_cwd,
    )


def format_list_header(metrics: ListStyleMetrics) -> str:
    return _join_columns(_list_headers(metrics.show_cwd), metrics, "Conversation")


def format_list_row(row: SessionRow, *, metrics: ListStyleMetrics) -> str:
    preview = " ".join(row.preview.split())
    if len(preview) > _PREVIEW_CHARS:
        preview = preview[:_PREVIEW_CHARS] + "…"
    return _join_columns(_list_cells(row, metrics.show_cwd), metrics, preview)


def load_session(
    path: str | Path,
    *,
    config: ReconstructionConfig | None = None,
    builder: ConversationBuilder | None = None,
) -> Session:
    path = Path(path)
    records, parse_stats = parse_transcript_file(path)
    builder = builder or ConversationBuilder(config)
    pairs = builder.reconstruct(records)

    session_id = get_session_id_from_filename(path)
    if session_id is None:
        session_id = next((r.session_id for r in records if r.session_id), None)

    stats = calculate_session_statistics(pairs)
    logger.debug(
        "Loaded %s: %d records -> %d pairs (%d orphaned sub-agents, %d unmergeable continuations)",
        path,
        parse_stats.parsed_records,
        stats.total_pairs,
        stats.orphaned_sub_agents,
        stats.unmergeable_continuations,
    )
    return Session(path=path, session_id=session_id, pairs=pairs, stats=stats, parse_stats=parse_stats)
