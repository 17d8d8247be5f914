"""
Load and validate `aitri.config.json`.

The file is optional; an absent file yields the default path mapping and
default checkpoint / auto-advance settings.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

import jsonschema

from aitri.paths import DEFAULT_PATHS, PATH_KEYS, ProjectPaths, resolve_project_paths


CONFIG_FILE = "aitri.config.json"
DEFAULT_CHECKPOINT_MAX = 10

CONFIG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": True,
    "properties": {
        "paths": {
            "type": "object",
            "additionalProperties": False,
            "properties": {key: {"type": "string", "minLength": 1} for key in PATH_KEYS},
        },
        "checkpoint": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "enabled": {"type": "boolean"},
                "maxRetained": {"type": "integer", "minimum": 1},
            },
        },
        "autoAdvance": {"type": "boolean"},
        "commands": {
            "type": "object",
            "additionalProperties": {
                "type": "array",
                "items": {"type": "string", "minLength": 1},
                "minItems": 1,
            },
        },
    },
}


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class AitriConfig:
    loaded: bool = False
    file: str = CONFIG_FILE
    paths: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_PATHS))
    checkpoint_enabled: bool = True
    checkpoint_max: int = DEFAULT_CHECKPOINT_MAX
    auto_advance: bool = True
    commands: dict[str, list[str]] = field(default_factory=dict)


@dataclass(frozen=True)
class ProjectContext:
    """Everything a resolver or manager needs; nothing reads cwd or env directly."""

    root: Path
    config: AitriConfig
    paths: ProjectPaths
    env: dict[str, str] = field(default_factory=dict)


def normalize_path_like(value: str) -> str:
    return value.replace("\\", "/").rstrip("/").strip()


def validate_mapped_path(key: str, value: str) -> str | None:
    normalized = normalize_path_like(value)
    if not normalized or normalized == ".":
        return f'paths.{key} must not be "." or empty.'
    if normalized.startswith("/") or PurePosixPath(normalized).is_absolute() or Path(value).is_absolute():
        return f"paths.{key} must be relative, not absolute."
    if ".." in normalized.split("/"):
        return f'paths.{key} must not contain "..".'
    return None


def collect_config_issues(raw: Any) -> list[str]:
    if not isinstance(raw, dict):
        return ["Config root must be a JSON object."]
    validator = jsonschema.Draft7Validator(CONFIG_SCHEMA)
    issues: list[str] = []
    for err in sorted(validator.iter_errors(raw), key=lambda e: list(e.absolute_path)):
        where = ".".join(str(p) for p in err.absolute_path) or "<root>"
        issues.append(f"{where}: {err.message}")
    paths = raw.get("paths")
    if isinstance(paths, dict):
        for key, value in paths.items():
            if key in PATH_KEYS and isinstance(value, str) and value.strip():
                issue = validate_mapped_path(key, value)
                if issue:
                    issues.append(issue)
    return issues


def load_config(root: Path) -> AitriConfig:
    path = root / CONFIG_FILE
    if not path.exists():
        return AitriConfig()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Invalid {CONFIG_FILE}: {exc}") from exc

    issues = collect_config_issues(raw)
    if issues:
        raise ConfigError(f"Invalid {CONFIG_FILE}:\n- " + "\n- ".join(issues))

    mapped = dict(DEFAULT_PATHS)
    for key, value in (raw.get("paths") or {}).items():
        mapped[key] = normalize_path_like(value)
    checkpoint = raw.get("checkpoint") or {}
    return AitriConfig(
        loaded=True,
        file=CONFIG_FILE,
        paths=mapped,
        checkpoint_enabled=checkpoint.get("enabled", True),
        checkpoint_max=checkpoint.get("maxRetained", DEFAULT_CHECKPOINT_MAX),
        auto_advance=raw.get("autoAdvance", True),
        commands={name: list(argv) for name, argv in (raw.get("commands") or {}).items()},
    )


def apply_env_overrides(config: AitriConfig, env: dict[str, str]) -> AitriConfig:
    auto_advance = config.auto_advance
    raw_advance = env.get("AITRI_AUTO_ADVANCE")
    if raw_advance is not None and raw_advance.strip().lower() in {"0", "false", "no", "off"}:
        auto_advance = False

    checkpoint_max = config.checkpoint_max
    raw_max = env.get("AITRI_CHECKPOINT_MAX")
    if raw_max:
        try:
            value = int(raw_max)
        except ValueError as exc:
            raise ConfigError(f"AITRI_CHECKPOINT_MAX must be a positive integer, got {raw_max!r}") from exc
        if value < 1:
            raise ConfigError(f"AITRI_CHECKPOINT_MAX must be a positive integer, got {raw_max!r}")
        checkpoint_max = value

    return AitriConfig(
        loaded=config.loaded,
        file=config.file,
        paths=dict(config.paths),
        checkpoint_enabled=config.checkpoint_enabled,
        checkpoint_max=checkpoint_max,
        auto_advance=auto_advance,
        commands=dict(config.commands),
    )


def build_project_context(project_dir: str | Path, env: dict[str, str] | None = None) -> ProjectContext:
    root = Path(project_dir).resolve()
    env_map = dict(os.environ if env is None else env)
    config = apply_env_overrides(load_config(root), env_map)
    return ProjectContext(
        root=root,
        config=config,
        paths=resolve_project_paths(root, config.paths),
        env=env_map,
    )
