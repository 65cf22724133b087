"""Configuration loader for claude-transcripts.

Config priority: project > global > defaults. Every field is optional.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError


logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".claude-transcripts"
CONFIG_FILE_NAME = "config.json"


class ReconstructionConfig(BaseModel):
    """Knobs for turning a record stream into conversation pairs."""

    response_time_cap_seconds: float = Field(default=28800, ge=0)
    jitter_seconds: float = Field(default=30.0, ge=0)
    # Hold jittered synthetic timestamps inside the real time window.
    clamp_jitter: bool = True
    delegation_tools: list[str] = Field(default_factory=lambda: ["Task"])
    preview_length: int = Field(default=200, gt=0)
    timeline_seed: int | None = None


class AppConfig(BaseModel):
    claude_home: str | None = None
    log_level: str = "WARNING"
    reconstruction: ReconstructionConfig = Field(default_factory=ReconstructionConfig)


def _load_json_file(path: Path) -> dict:
    """Load a JSON config file, returning empty dict on any error."""
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def _merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(
    project_root: str | Path | None = None,
    home: str | Path | None = None,
) -> AppConfig:
    home_dir = Path(home) if home is not None else Path.home()
    merged = _load_json_file(home_dir / CONFIG_DIR_NAME / CONFIG_FILE_NAME)
    if project_root:
        merged = _merge(merged, _load_json_file(Path(project_root) / CONFIG_DIR_NAME / CONFIG_FILE_NAME))
    try:
        return AppConfig(**merged)
    except ValidationError as exc:
        logger.warning("Invalid configuration, falling back to defaults: %s", exc)
        return AppConfig()
