"""Load and validate .blockspool/config.yaml."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import yaml


STATE_DIR = ".blockspool"
CONFIG_FILE = "config.yaml"
RUN_STATE_FILE = "run-state.json"

GUIDELINES_BACKENDS = ("claude", "codex")

# Default config values
DEFAULTS: dict[str, Any] = {
    "run_state": {
        "docs_audit_interval": 3,
        "max_deferred_age_days": 7,
    },
    "guidelines": {
        "backend": "claude",
        "custom_path": None,
        "max_chars": 4000,
    },
}


class ConfigError(Exception):
    """Raised when config is invalid."""


def _deep_merge(base: dict, override: dict) -> dict:
    """Merge override into base recursively. Override wins on conflicts."""
    result = base.copy()
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _positive_int(section: dict, key: str, label: str) -> None:
    val = section.get(key)
    # bool is an int subclass; "true" is not an interval
    if isinstance(val, bool) or not isinstance(val, int) or val <= 0:
        raise ConfigError(f"'{label}.{key}' must be a positive integer, got {val!r}")


def _validate(config: dict) -> None:
    """Validate run_state and guidelines sections."""
    run_state = config.get("run_state")
    if not isinstance(run_state, dict):
        raise ConfigError("'run_state' must be a mapping")
    _positive_int(run_state, "docs_audit_interval", "run_state")
    _positive_int(run_state, "max_deferred_age_days", "run_state")

    guidelines = config.get("guidelines")
    if not isinstance(guidelines, dict):
        raise ConfigError("'guidelines' must be a mapping")
    backend = guidelines.get("backend")
    if backend not in GUIDELINES_BACKENDS:
        raise ConfigError(
            f"Unsupported guidelines backend '{backend}'. Built-in: claude, codex."
        )
    custom_path = guidelines.get("custom_path")
    if custom_path is not None and custom_path is not False and not isinstance(custom_path, str):
        raise ConfigError(
            "'guidelines.custom_path' must be a path string, false, or null"
        )
    _positive_int(guidelines, "max_chars", "guidelines")


def load_config(project_root: Path | None = None) -> dict:
    """Load config from .blockspool/config.yaml under project_root.

    Falls back to cwd if project_root is None. A missing config file is
    not an error: callers get a copy of DEFAULTS. An existing file is
    merged over DEFAULTS so callers always get a full config dict.
    """
    root = Path(project_root) if project_root else Path.cwd()
    config_path = root / STATE_DIR / CONFIG_FILE

    if not config_path.exists():
        return copy.deepcopy(DEFAULTS)

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config is not valid YAML: {config_path}: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config must be a YAML mapping, got {type(raw).__name__}")

    # Nested sections left out of raw must not alias DEFAULTS
    config = _deep_merge(copy.deepcopy(DEFAULTS), raw)
    _validate(config)
    return config


def run_state_path(project_root: Path) -> Path:
    """Return the run-state file path for a repository root."""
    return Path(project_root) / STATE_DIR / RUN_STATE_FILE
