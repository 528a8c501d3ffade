"""Persistent run state for cross-session cycle tracking.

Stored in ``.blockspool/run-state.json``. Tracks how many scout cycles
have run so periodic tasks (like a docs audit) can trigger automatically,
and keeps a backlog of proposals deferred because they fell outside the
scope of the run that found them.

The store is fail-open on read: a missing, unparsable, or wrongly shaped
file reads as the zero state. A crash in the middle of a write can leave
a truncated file, which the next read resets to the zero state. Writes
are plain overwrites and ``OSError`` from them propagates.

Single writer per repository. There is no locking; concurrent runs race
and the last writer wins.
"""

from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from blockspool.config import DEFAULTS, run_state_path

log = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000

DEFAULT_DOCS_AUDIT_INTERVAL = DEFAULTS["run_state"]["docs_audit_interval"]
# Max age for deferred proposals (7 days)
MAX_DEFERRED_AGE_MS = DEFAULTS["run_state"]["max_deferred_age_days"] * DAY_MS

# Read outcomes, see ReadResult
READ_FOUND = "found"
READ_NOT_FOUND = "not_found"
READ_INVALID = "invalid"


def _now_ms() -> int:
    """Return the current time in epoch milliseconds."""
    return int(time.time() * 1000)


def _int_field(raw: dict[str, Any], key: str) -> int:
    val = raw.get(key)
    if isinstance(val, bool):
        return 0
    if isinstance(val, int):
        return val
    if isinstance(val, float) and math.isfinite(val):
        return int(val)
    return 0


def _number_field(raw: dict[str, Any], key: str) -> int | float:
    val = raw.get(key)
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        return 0
    return val


def _str_field(raw: dict[str, Any], key: str) -> str:
    val = raw.get(key)
    return val if isinstance(val, str) else ""


def _path_list_field(raw: dict[str, Any], key: str) -> tuple[str, ...]:
    val = raw.get(key)
    if not isinstance(val, list):
        return ()
    return tuple(p for p in val if isinstance(p, str))


@dataclass(frozen=True)
class DeferredProposal:
    """A proposal recorded for a later run whose scope covers it.

    ``title`` is the uniqueness key within the backlog. ``confidence`` and
    ``impact_score`` are opaque here and round-trip unchanged.
    """

    category: str = ""
    title: str = ""
    description: str = ""
    files: tuple[str, ...] = ()
    allowed_paths: tuple[str, ...] = ()
    confidence: int | float = 0
    impact_score: int | float = 0
    original_scope: str = ""
    deferred_at: int = field(default_factory=_now_ms)

    @property
    def effective_paths(self) -> tuple[str, ...]:
        """Paths used for scope matching: ``files``, else ``allowed_paths``."""
        return self.files if self.files else self.allowed_paths

    def is_expired(self, now: int, max_age_ms: int = MAX_DEFERRED_AGE_MS) -> bool:
        return now - self.deferred_at > max_age_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "title": self.title,
            "description": self.description,
            "files": list(self.files),
            "allowed_paths": list(self.allowed_paths),
            "confidence": self.confidence,
            "impact_score": self.impact_score,
            "original_scope": self.original_scope,
            "deferredAt": self.deferred_at,
        }

    @classmethod
    def from_dict(cls, raw: Any, default_deferred_at: int = 0) -> DeferredProposal | None:
        """Build a proposal from a decoded JSON entry.

        Missing or wrongly typed fields take their empty value. A missing
        ``deferredAt`` becomes *default_deferred_at*: 0 for entries read
        back from disk (pruned as expired), the current time for new ones.
        Returns None when *raw* is not a mapping.
        """
        if not isinstance(raw, dict):
            return None
        return cls(
            category=_str_field(raw, "category"),
            title=_str_field(raw, "title"),
            description=_str_field(raw, "description"),
            files=_path_list_field(raw, "files"),
            allowed_paths=_path_list_field(raw, "allowed_paths"),
            confidence=_number_field(raw, "confidence"),
            impact_score=_number_field(raw, "impact_score"),
            original_scope=_str_field(raw, "original_scope"),
            deferred_at=(
                _int_field(raw, "deferredAt") if "deferredAt" in raw else default_deferred_at
            ),
        )


@dataclass
class RunState:
    """Cycle counters and deferred backlog for one repository."""

    total_cycles: int = 0
    last_docs_audit_cycle: int = 0
    last_run_at: int = 0
    deferred_proposals: list[DeferredProposal] = field(default_factory=list)

    @property
    def cycles_since_docs_audit(self) -> int:
        return self.total_cycles - self.last_docs_audit_cycle

    def has_deferred(self, title: str) -> bool:
        return any(dp.title == title for dp in self.deferred_proposals)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalCycles": self.total_cycles,
            "lastDocsAuditCycle": self.last_docs_audit_cycle,
            "lastRunAt": self.last_run_at,
            "deferredProposals": [dp.to_dict() for dp in self.deferred_proposals],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> RunState:
        """Materialize a full state from a decoded record.

        Each field is defaulted on its own when missing or wrongly typed;
        non-mapping entries in ``deferredProposals`` are dropped.
        """
        entries = raw.get("deferredProposals")
        proposals: list[DeferredProposal] = []
        if isinstance(entries, list):
            for entry in entries:
                dp = DeferredProposal.from_dict(entry)
                if dp is None:
                    log.debug("Dropping malformed deferred proposal entry: %r", entry)
                    continue
                proposals.append(dp)
        return cls(
            total_cycles=_int_field(raw, "totalCycles"),
            last_docs_audit_cycle=_int_field(raw, "lastDocsAuditCycle"),
            last_run_at=_int_field(raw, "lastRunAt"),
            deferred_proposals=proposals,
        )


@dataclass
class ReadResult:
    """Outcome of reading the run-state file.

    ``status`` is one of ``"found"``, ``"not_found"`` or ``"invalid"``.
    ``state`` is always usable: the zero state unless status is found.
    """

    state: RunState
    status: str
    error: str | None = None

    @property
    def found(self) -> bool:
        return self.status == READ_FOUND


def normalize_scope(scope: str) -> str:
    """Strip a trailing ``**``, then ``*``, then ``/`` from a scope glob.

    ``"pkg/**"``, ``"pkg/*"``, ``"pkg/"`` and ``"pkg"`` all give ``"pkg"``.
    """
    for suffix in ("**", "*", "/"):
        scope = scope.removesuffix(suffix)
    return scope


def proposal_in_scope(proposal: DeferredProposal, normalized_scope: str) -> bool:
    """Return True if every path the proposal touches lies under the scope.

    An empty scope matches everything, as does a proposal with no paths.
    Matching is a plain string prefix, so ``"pkg"`` covers both
    ``"pkg/a.py"`` and ``"pkg"`` itself.
    """
    paths = proposal.effective_paths
    if not normalized_scope or not paths:
        return True
    return all(p.startswith(normalized_scope) for p in paths)


class RunStateStore:
    """Read-modify-write access to ``.blockspool/run-state.json``.

    Every operation reads the file fresh and writes the full record back;
    nothing is cached between calls.

    Parameters
    ----------
    project_root:
        Repository root directory.
    config:
        Optional blockspool config dict. Supplies the docs-audit interval
        and deferred-proposal max age; DEFAULTS otherwise.
    """

    def __init__(self, project_root: Path, config: dict[str, Any] | None = None) -> None:
        self._project_root = Path(project_root)
        self._path = run_state_path(self._project_root)
        run_cfg = (config or DEFAULTS).get("run_state", {})
        self._docs_audit_interval = run_cfg.get(
            "docs_audit_interval", DEFAULT_DOCS_AUDIT_INTERVAL,
        )
        max_age_days = run_cfg.get("max_deferred_age_days")
        self._max_deferred_age_ms = (
            max_age_days * DAY_MS if max_age_days else MAX_DEFERRED_AGE_MS
        )

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Raw read / write
    # ------------------------------------------------------------------

    def load(self) -> ReadResult:
        """Read the state file, keeping track of why defaults were used."""
        try:
            if not self._path.exists():
                return ReadResult(RunState(), READ_NOT_FOUND)
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            log.warning("Run state unreadable at %s, using defaults: %s", self._path, exc)
            return ReadResult(RunState(), READ_INVALID, str(exc))

        if not isinstance(raw, dict):
            detail = f"expected a JSON object, got {type(raw).__name__}"
            log.warning("Run state malformed at %s, using defaults: %s", self._path, detail)
            return ReadResult(RunState(), READ_INVALID, detail)

        return ReadResult(RunState.from_dict(raw), READ_FOUND)

    def read(self) -> RunState:
        """Return the current state, or the zero state if none is usable."""
        return self.load().state

    def write(self, state: RunState) -> None:
        """Overwrite the state file with *state*, creating parent dirs."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(state.to_dict(), indent=2) + "\n", encoding="utf-8")

    def _prune_expired(self, state: RunState, now: int) -> int:
        """Drop expired proposals from *state* in place; return how many."""
        kept = [
            dp for dp in state.deferred_proposals
            if not dp.is_expired(now, self._max_deferred_age_ms)
        ]
        pruned = len(state.deferred_proposals) - len(kept)
        if pruned:
            log.info("Pruned %d expired deferred proposal(s)", pruned)
            state.deferred_proposals = kept
        return pruned

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def record_cycle(self, now: int | None = None) -> RunState:
        """Increment the cycle counter and return the new state."""
        if now is None:
            now = _now_ms()
        state = self.read()
        self._prune_expired(state, now)
        state.total_cycles += 1
        state.last_run_at = now
        self.write(state)
        return state

    def is_docs_audit_due(self, interval: int | None = None) -> bool:
        """Return True once *interval* cycles have passed since the last docs audit."""
        if interval is None:
            interval = self._docs_audit_interval
        return self.read().cycles_since_docs_audit >= interval

    def record_docs_audit(self, now: int | None = None) -> None:
        """Mark the docs audit as run at the current cycle count."""
        state = self.read()
        self._prune_expired(state, _now_ms() if now is None else now)
        state.last_docs_audit_cycle = state.total_cycles
        self.write(state)

    # ------------------------------------------------------------------
    # Deferred proposals
    # ------------------------------------------------------------------

    def defer_proposal(
        self,
        proposal: DeferredProposal | dict[str, Any],
        now: int | None = None,
    ) -> bool:
        """Add *proposal* to the backlog unless its title is already there.

        Expired entries are pruned first, so an expired proposal never
        blocks a fresh one with the same title. A mapping without
        ``deferredAt`` is stamped with *now*.

        Returns True if the proposal was added. The file is rewritten
        whenever the backlog changed.
        """
        if now is None:
            now = _now_ms()
        if not isinstance(proposal, DeferredProposal):
            parsed = DeferredProposal.from_dict(proposal, default_deferred_at=now)
            if parsed is None:
                raise TypeError(f"Cannot defer {type(proposal).__name__}; expected a mapping")
            proposal = parsed

        state = self.read()
        pruned = self._prune_expired(state, now)
        if state.has_deferred(proposal.title):
            log.debug("Proposal already deferred: %s", proposal.title)
            if pruned:
                self.write(state)
            return False

        state.deferred_proposals.append(proposal)
        self.write(state)
        return True

    def pop_deferred_for_scope(self, scope: str, now: int | None = None) -> list[DeferredProposal]:
        """Remove and return deferred proposals that fit *scope*.

        Expired proposals are dropped whatever their scope. Proposals
        outside the scope stay queued. The file is rewritten only when the
        backlog changed.
        """
        state = self.read()
        if now is None:
            now = _now_ms()
        normalized = normalize_scope(scope)

        expired = self._prune_expired(state, now)
        matched: list[DeferredProposal] = []
        remaining: list[DeferredProposal] = []

        for dp in state.deferred_proposals:
            if proposal_in_scope(dp, normalized):
                matched.append(dp)
            else:
                remaining.append(dp)

        if matched or expired:
            if matched:
                log.info("Picked up %d deferred proposal(s) for scope %r", len(matched), scope)
            state.deferred_proposals = remaining
            self.write(state)

        return matched

    def pending_deferred(self, now: int | None = None) -> list[DeferredProposal]:
        """Return the non-expired backlog without modifying it."""
        if now is None:
            now = _now_ms()
        return [
            dp for dp in self.read().deferred_proposals
            if not dp.is_expired(now, self._max_deferred_age_ms)
        ]


# ----------------------------------------------------------------------
# Module-level operations keyed by repository root
# ----------------------------------------------------------------------


def read_run_state(project_root: Path) -> RunState:
    """Read the current run state from disk."""
    return RunStateStore(project_root).read()


def write_run_state(project_root: Path, state: RunState) -> None:
    """Write the run state to disk."""
    RunStateStore(project_root).write(state)


def record_cycle(project_root: Path, now: int | None = None) -> RunState:
    """Increment the cycle counter and return the new state."""
    return RunStateStore(project_root).record_cycle(now)


def is_docs_audit_due(project_root: Path, interval: int = DEFAULT_DOCS_AUDIT_INTERVAL) -> bool:
    """Check if a docs audit is due (every *interval* cycles)."""
    return RunStateStore(project_root).is_docs_audit_due(interval)


def record_docs_audit(project_root: Path, now: int | None = None) -> None:
    """Record that a docs audit was run."""
    RunStateStore(project_root).record_docs_audit(now)


def defer_proposal(
    project_root: Path,
    proposal: DeferredProposal | dict[str, Any],
    now: int | None = None,
) -> bool:
    """Defer a proposal until a run's scope covers it."""
    return RunStateStore(project_root).defer_proposal(proposal, now)


def pop_deferred_for_scope(
    project_root: Path,
    scope: str,
    now: int | None = None,
) -> list[DeferredProposal]:
    """Retrieve and remove deferred proposals matching *scope*; prune stale ones."""
    return RunStateStore(project_root).pop_deferred_for_scope(scope, now)


def pending_deferred(project_root: Path, now: int | None = None) -> list[DeferredProposal]:
    """List non-expired deferred proposals without consuming them."""
    return RunStateStore(project_root).pending_deferred(now)
