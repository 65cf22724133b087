from __future__ import annotations

import logging
from pathlib import Path

import click
from click_default_group import DefaultGroup
import questionary

from claude_transcripts.config import AppConfig, load_config
from claude_transcripts.content import truncate_for_display
from claude_transcripts.metrics import summarize_topics
from claude_transcripts.records import TranscriptParseError
from claude_transcripts.sessions import (
    Session,
    calculate_list_metrics,
    format_list_header,
    format_list_row,
    get_session_id_from_filename,
    list_session_rows,
    load_session,
)
from claude_transcripts.transcript import (
    default_output_dir,
    format_duration,
    generate_json_from_transcript,
    output_auto_dir,
)
from claude_transcripts.tui import run_tui


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _app_config(ctx: click.Context) -> AppConfig:
    obj = ctx.find_object(AppConfig)
    return obj if obj is not None else AppConfig()


def _load(path: Path, config: AppConfig) -> Session:
    try:
        return load_session(path, config=config.reconstruction)
    except TranscriptParseError as e:
        raise click.ClickException(str(e)) from e


def _print_parse_stats(session: Session) -> None:
    ps = session.parse_stats
    click.echo(
        f"Parsed: {ps.total_lines} lines, {ps.parsed_records} records, {len(session.pairs)} conversations; "
        f"skipped: {ps.skipped_lines}"
    )
    if ps.other_record_types:
        click.echo(f"Non-conversation records: {ps.other_record_types}", err=True)
    if ps.unknown_block_types:
        click.echo(f"Unknown content blocks: {ps.unknown_block_types}", err=True)


def _print_pairs(session: Session, *, preview_length: int) -> None:
    click.echo(f"{'#':>4}  {'Time':<16}  {'Response':>8}  {'Tools':>5}  {'Tokens':>8}  Message")
    for idx, pair in enumerate(session.pairs, start=1):
        markers = ""
        if pair.has_continuation:
            markers += "[+] "
        if pair.originally_continuation:
            markers += "[cont] "
        if pair.sub_agent_commands:
            markers += f"[sub:{len(pair.sub_agent_commands)}] "
        click.echo(
            f"{idx:>4}  {pair.user_time.strftime('%m/%d %H:%M:%S'):<16}  "
            f"{format_duration(pair.response_time_seconds):>8}  {pair.tool_count:>5}  "
            f"{pair.token_usage.total_tokens:>8}  {markers}{truncate_for_display(pair.user_content, preview_length)}"
        )


def _print_stats(session: Session) -> None:
    s = session.stats
    click.echo(f"Session: {session.session_id or session.path.name}")
    click.echo(f"Summary: {summarize_topics(session.pairs)}")
    click.echo(f"Conversations: {s.total_pairs}")
    click.echo(f"Duration: {format_duration(s.actual_duration_seconds)}")
    click.echo(
        f"Response time: total {format_duration(s.total_response_time_seconds)}, "
        f"avg {format_duration(s.avg_response_time_seconds)}"
    )
    click.echo(f"Tools: {s.total_tools}")
    click.echo(
        f"Tokens: {s.total_tokens.total_tokens} (input {s.total_tokens.input_tokens}, "
        f"output {s.total_tokens.output_tokens}, cache write {s.total_tokens.cache_creation_tokens}, "
        f"cache read {s.total_tokens.cache_read_tokens})"
    )
    click.echo(f"Thinking: {s.thinking_char_count} chars")
    click.echo(f"Sub-agents: {s.sub_agent_count} ({s.orphaned_sub_agents} incomplete)")
    click.echo(f"Continuations: {s.continuation_count} merged, {s.unmergeable_continuations} standalone")


def _write_json(path: Path, output: str, *, output_auto: bool, include_source: bool, config: AppConfig) -> None:
    out_dir = Path(output).expanduser()
    if output_auto:
        out_dir = output_auto_dir(out_dir, session_id=get_session_id_from_filename(path), filename=path.stem)
    try:
        out_path, session = generate_json_from_transcript(
            path,
            out_dir,
            include_source=include_source,
            config=config.reconstruction,
        )
    except TranscriptParseError as e:
        raise click.ClickException(str(e)) from e
    _print_parse_stats(session)
    click.echo(f"JSON: {out_path}")


@click.group(cls=DefaultGroup, default="local", default_if_no_args=True)
@click.version_option(None, "-v", "--version", package_name="claude-transcripts")
@click.option(
    "--log-level",
    envvar="CLAUDE_TRANSCRIPTS_LOG_LEVEL",
    default=None,
    help="Logging level (default from config, else WARNING).",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Rebuild Claude Code session transcripts into conversation pairs.

\b
Examples:
  claude-transcripts
  claude-transcripts local --latest
  claude-transcripts show ~/.claude/projects/<project>/<session>.jsonl
  claude-transcripts json ~/.claude/projects/<project>/<session>.jsonl -o ./out
  claude-transcripts tui --latest
    """
    config = load_config(project_root=Path.cwd())
    _configure_logging(log_level or config.log_level)
    ctx.obj = config


def _pick_session(
    *,
    config: AppConfig,
    claude_home: Path | None,
    limit: int,
    cwd_only: bool,
    query: str | None,
    latest: bool,
) -> Path:
    rows = list_session_rows(
        claude_home=claude_home or config.claude_home,
        limit=limit,
        query=query,
        filter_cwd=Path.cwd() if cwd_only else None,
    )
    if not rows:
        raise click.ClickException("No Claude Code sessions found under ~/.claude/projects (or CLAUDE_HOME).")
    if latest:
        return rows[0].path

    metrics = calculate_list_metrics(rows, show_cwd=not cwd_only)
    click.echo(format_list_header(metrics))
    choices = [questionary.Choice(title=format_list_row(r, metrics=metrics), value=r.path) for r in rows]
    selected: Path | None = questionary.select(
        "Select a Claude Code session:", choices=choices, use_shortcuts=len(choices) <= 36
    ).ask()
    if selected is None:
        raise click.ClickException("No session selected.")
    return selected


@cli.command("local")
@click.option("--claude-home", type=click.Path(path_type=Path), help="Override CLAUDE_HOME.")
@click.option("--limit", type=int, default=10, show_default=True, help="How many recent sessions to show.")
@click.option("--cwd", "cwd_only", is_flag=True, help="Only sessions recorded in the current working directory.")
@click.option("--query", help="Filter sessions by substring match (preview/cwd/branch/id/path).")
@click.option("--latest", is_flag=True, help="Use the most recent session (no interactive picker).")
@click.option("-o", "--output", type=click.Path(), help="Write transcript.json here instead of printing.")
@click.option(
    "-a",
    "--output-auto",
    is_flag=True,
    help="Auto-name output subdirectory based on session id / filename (uses -o as parent).",
)
@click.option("--include-source", is_flag=True, help="Copy the source transcript into the output directory.")
@click.pass_context
def local_cmd(
    ctx: click.Context,
    claude_home: Path | None,
    limit: int,
    cwd_only: bool,
    query: str | None,
    latest: bool,
    output: str | None,
    output_auto: bool,
    include_source: bool,
) -> None:
    config = _app_config(ctx)
    path = _pick_session(
        config=config,
        claude_home=claude_home,
        limit=limit,
        cwd_only=cwd_only,
        query=query,
        latest=latest,
    )
    if output is not None:
        _write_json(path, output, output_auto=output_auto, include_source=include_source, config=config)
        return

    session = _load(path, config)
    _print_parse_stats(session)
    _print_pairs(session, preview_length=80)


@cli.command("show")
@click.argument("path", type=click.Path(path_type=Path))
@click.option("--width", type=int, default=80, show_default=True, help="Message preview width.")
@click.pass_context
def show_cmd(ctx: click.Context, path: Path, width: int) -> None:
    """List the conversation pairs of one transcript."""
    if not path.exists():
        raise click.ClickException(f"File not found: {path}")
    session = _load(path, _app_config(ctx))
    _print_parse_stats(session)
    _print_pairs(session, preview_length=width)


@cli.command("stats")
@click.argument("path", type=click.Path(path_type=Path))
@click.pass_context
def stats_cmd(ctx: click.Context, path: Path) -> None:
    """Print session statistics for one transcript."""
    if not path.exists():
        raise click.ClickException(f"File not found: {path}")
    _print_stats(_load(path, _app_config(ctx)))


@cli.command("json")
@click.argument("path", type=click.Path(path_type=Path))
@click.option("-o", "--output", type=click.Path(), help="Output directory (default: temp dir).")
@click.option(
    "-a",
    "--output-auto",
    is_flag=True,
    help="Auto-name output subdirectory based on session id / filename (uses -o as parent).",
)
@click.option("--include-source", is_flag=True, help="Copy the source transcript into the output directory.")
@click.pass_context
def json_cmd(
    ctx: click.Context,
    path: Path,
    output: str | None,
    output_auto: bool,
    include_source: bool,
) -> None:
    if not path.exists():
        raise click.ClickException(f"File not found: {path}")
    _write_json(
        path,
        output if output is not None else str(default_output_dir()),
        output_auto=output_auto,
        include_source=include_source,
        config=_app_config(ctx),
    )


@cli.command("tui")
@click.argument("path", required=False, type=click.Path(path_type=Path))
@click.option("--claude-home", type=click.Path(path_type=Path), help="Override CLAUDE_HOME (used when PATH is omitted).")
@click.option("--limit", type=int, default=50, show_default=True, help="How many recent sessions to show (when PATH is omitted).")
@click.option("--cwd", "cwd_only", is_flag=True, help="Only sessions recorded in the current working directory.")
@click.option("--query", help="Filter sessions by substring match (when PATH is omitted).")
@click.option("--latest", is_flag=True, help="Use the most recent session (no interactive picker).")
@click.pass_context
def tui_cmd(
    ctx: click.Context,
    path: Path | None,
    claude_home: Path | None,
    limit: int,
    cwd_only: bool,
    query: str | None,
    latest: bool,
) -> None:
    """Interactive conversation browser (fold/unfold + filtering)."""
    config = _app_config(ctx)
    if path is None:
        path = _pick_session(
            config=config,
            claude_home=claude_home,
            limit=limit,
            cwd_only=cwd_only,
            query=query,
            latest=latest,
        )
    if not path.exists():
        raise click.ClickException(f"File not found: {path}")
    run_tui(transcript_path=path, config=config.reconstruction)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
