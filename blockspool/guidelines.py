"""Project guidelines loader for agent prompts.

For Claude-based runs: searches for CLAUDE.md
For Codex-based runs: searches for AGENTS.md
Falls back to whichever exists if the preferred one is missing.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader

from blockspool.config import DEFAULTS

log = logging.getLogger(__name__)

_TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

CLAUDE_PATHS = ["CLAUDE.md"]
CODEX_PATHS = ["AGENTS.md"]

MAX_CHARS = DEFAULTS["guidelines"]["max_chars"]
TRUNCATION_MARKER = "\n\n[truncated]"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ProjectGuidelines:
    """Guidelines text read from the repo, ready for prompt embedding."""

    content: str
    source: str
    loaded_at: int = field(default_factory=_now_ms)


def _get_env() -> Environment:
    """Create a Jinja2 environment loading from blockspool/templates/."""
    return Environment(
        loader=FileSystemLoader(str(_TEMPLATES_DIR)),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def _read_guidelines_file(
    project_root: Path,
    rel: str,
    max_chars: int,
) -> ProjectGuidelines | None:
    full = Path(project_root) / rel
    try:
        if not full.is_file():
            return None
        content = full.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        log.debug("Skipping unreadable guidelines file %s: %s", full, exc)
        return None
    if len(content) > max_chars:
        content = content[:max_chars] + TRUNCATION_MARKER
    return ProjectGuidelines(content=content, source=rel)


def _search_paths(
    project_root: Path,
    paths: list[str],
    max_chars: int,
) -> ProjectGuidelines | None:
    for rel in paths:
        result = _read_guidelines_file(project_root, rel, max_chars)
        if result:
            return result
    return None


def load_guidelines(
    project_root: Path,
    backend: str = "claude",
    custom_path: str | bool | None = None,
    max_chars: int = MAX_CHARS,
) -> ProjectGuidelines | None:
    """Load the project guidelines document for *backend*.

    Args:
        project_root: Repository root to search.
        backend: ``"claude"`` prefers CLAUDE.md, ``"codex"`` prefers
            AGENTS.md. Any other value behaves like ``"claude"``.
        custom_path: ``False`` disables guidelines entirely. A string is
            read as-is relative to *project_root*, with no fallback.
        max_chars: Content past this many characters is cut and marked
            ``[truncated]``.

    Returns:
        The loaded guidelines, or None when nothing readable was found.
    """
    if custom_path is False:
        return None

    if isinstance(custom_path, str):
        return _read_guidelines_file(project_root, custom_path, max_chars)

    primary_paths = CODEX_PATHS if backend == "codex" else CLAUDE_PATHS
    fallback_paths = CLAUDE_PATHS if backend == "codex" else CODEX_PATHS

    return (
        _search_paths(project_root, primary_paths, max_chars)
        or _search_paths(project_root, fallback_paths, max_chars)
    )


def load_guidelines_from_config(
    config: dict[str, Any],
    project_root: Path,
) -> ProjectGuidelines | None:
    """Load guidelines using the ``guidelines`` section of a blockspool config."""
    cfg = config.get("guidelines", {})
    return load_guidelines(
        project_root,
        backend=cfg.get("backend", "claude"),
        custom_path=cfg.get("custom_path"),
        max_chars=cfg.get("max_chars", MAX_CHARS),
    )


def format_guidelines_for_prompt(guidelines: ProjectGuidelines) -> str:
    """Wrap guidelines in a ``<project-guidelines>`` block naming the source."""
    template = _get_env().get_template("project_guidelines.md")
    return template.render(source=guidelines.source, content=guidelines.content)
