from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest
from click.testing import CliRunner

from claude_transcripts.cli import cli


SAMPLE = Path(__file__).parent / "sample_session.jsonl"
SESSION_ID = "44444444-4444-4444-4444-444444444444"


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path: Path, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("CLAUDE_HOME", raising=False)
    monkeypatch.delenv("CLAUDE_TRANSCRIPTS_LOG_LEVEL", raising=False)


def _claude_home(tmp_path: Path) -> Path:
    claude_home = tmp_path / "claude_home"
    project = claude_home / "projects" / "-tmp-proj"
    project.mkdir(parents=True)
    shutil.copy(SAMPLE, project / f"{SESSION_ID}.jsonl")
    return claude_home


def test_show_lists_pairs():
    result = CliRunner().invoke(cli, ["show", str(SAMPLE)])

    assert result.exit_code == 0, result.output
    assert "Parsed: 12 lines, 10 records, 2 conversations" in result.output
    assert "Please fix the bug in parser.py" in result.output
    assert "[+]" in result.output
    assert "[sub:1]" in result.output


def test_stats_prints_summary():
    result = CliRunner().invoke(cli, ["stats", str(SAMPLE)])

    assert result.exit_code == 0, result.output
    assert "Conversations: 2" in result.output
    assert "Sub-agents: 1 (0 incomplete)" in result.output
    assert "Continuations: 1 merged, 0 standalone" in result.output


def test_json_writes_auto_named_directory(tmp_path: Path):
    claude_home = _claude_home(tmp_path)
    path = next((claude_home / "projects").rglob("*.jsonl"))
    out = tmp_path / "out"

    result = CliRunner().invoke(cli, ["json", str(path), "-o", str(out), "-a"])

    assert result.exit_code == 0, result.output
    written = out / f"session_{SESSION_ID}" / "transcript.json"
    assert written.exists()
    assert json.loads(written.read_text(encoding="utf-8"))["session_id"] == SESSION_ID


def test_missing_file_is_reported(tmp_path: Path):
    result = CliRunner().invoke(cli, ["show", str(tmp_path / "missing.jsonl")])
    assert result.exit_code != 0
    assert "File not found" in result.output


def test_unusable_transcript_is_reported(tmp_path: Path):
    path = tmp_path / "empty.jsonl"
    path.write_text('{"type": "summary", "summary": "x"}\n', encoding="utf-8")

    result = CliRunner().invoke(cli, ["stats", str(path)])
    assert result.exit_code != 0
    assert "no usable messages" in result.output


def test_local_latest_exports_json_and_cwd_filter(tmp_path: Path, monkeypatch):
    claude_home = _claude_home(tmp_path)
    other = tmp_path / "other"
    other.mkdir()
    monkeypatch.chdir(other)

    out_dir = tmp_path / "out"
    runner = CliRunner()
    result = runner.invoke(cli, ["local", "--claude-home", str(claude_home), "--latest", "-o", str(out_dir)])
    assert result.exit_code == 0, result.output
    assert (out_dir / "transcript.json").exists()

    result2 = runner.invoke(
        cli,
        ["local", "--claude-home", str(claude_home), "--latest", "--cwd", "-o", str(tmp_path / "out2")],
    )
    assert result2.exit_code != 0
    assert "No Claude Code sessions found" in result2.output


def test_default_command_is_local(tmp_path: Path):
    claude_home = _claude_home(tmp_path)
    result = CliRunner().invoke(cli, ["--claude-home", str(claude_home), "--latest"])

    assert result.exit_code == 0, result.output
    assert "Please fix the bug in parser.py" in result.output


def test_local_uses_claude_home_env(tmp_path: Path, monkeypatch):
    claude_home = _claude_home(tmp_path)
    monkeypatch.setenv("CLAUDE_HOME", str(claude_home))

    result = CliRunner().invoke(cli, ["local", "--latest"])
    assert result.exit_code == 0, result.output
    assert "2 conversations" in result.output
