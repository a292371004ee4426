from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from gauntlet.state.store import EXECUTION_STATE_FILE_NAME
from gauntlet.vcs import OBJECT_ID_PATTERN, Git, GitError

LOGGER = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class ExecutionState:
    last_run_completed_at: str
    branch: str
    commit: str
    working_tree_ref: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionState | None:
        completed = data.get("last_run_completed_at")
        branch = data.get("branch")
        commit = data.get("commit")
        if not all(isinstance(value, str) for value in (completed, branch, commit)):
            return None
        ref = data.get("working_tree_ref")
        return cls(
            last_run_completed_at=completed,
            branch=branch,
            commit=commit,
            working_tree_ref=ref if isinstance(ref, str) and ref else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_run_completed_at": self.last_run_completed_at,
            "branch": self.branch,
            "commit": self.commit,
            "working_tree_ref": self.working_tree_ref,
        }

    def completed_at(self) -> datetime | None:
        try:
            parsed = datetime.fromisoformat(self.last_run_completed_at)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed


@dataclass(slots=True)
class AutoCleanDecision:
    clean: bool
    reason: str | None = None


def execution_state_path(store_dir: Path) -> Path:
    return store_dir / EXECUTION_STATE_FILE_NAME


def read_execution_state(store_dir: Path) -> ExecutionState | None:
    path = execution_state_path(store_dir)
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        LOGGER.warning("Ignoring unreadable execution state %s: %s", path, exc)
        return None
    if not isinstance(payload, dict):
        return None
    return ExecutionState.from_dict(payload)


def write_execution_state(
    store_dir: Path, git: Git, *, exclude: list[str] | None = None
) -> ExecutionState:
    state = ExecutionState(
        last_run_completed_at=_utcnow_iso(),
        branch=git.current_branch(),
        commit=git.head_commit(),
        working_tree_ref=git.working_tree_ref(exclude or []),
    )
    path = execution_state_path(store_dir)
    store_dir.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f"{path.name}.tmp")
    rendered = json.dumps(state.to_dict(), ensure_ascii=False, indent=2)
    temp_path.write_text(rendered, encoding="utf-8")
    os.replace(temp_path, path)
    return state


def delete_execution_state(store_dir: Path) -> None:
    try:
        execution_state_path(store_dir).unlink()
    except FileNotFoundError:
        pass


def minutes_since_last_run(state: ExecutionState, now: datetime | None = None) -> float | None:
    completed = state.completed_at()
    if completed is None:
        return None
    current = now or datetime.now(UTC)
    return (current - completed).total_seconds() / 60.0


def should_auto_clean(
    state: ExecutionState | None, git: Git, base_branch: str
) -> AutoCleanDecision:
    if state is None:
        return AutoCleanDecision(clean=False)
    if state.branch != git.current_branch():
        return AutoCleanDecision(clean=True, reason="branch changed")
    try:
        merged = git.is_ancestor(state.commit, base_branch)
    except GitError:
        merged = False
    if merged and state.commit != git.head_commit():
        return AutoCleanDecision(clean=True, reason="commit merged")
    return AutoCleanDecision(clean=False)


def resolve_fix_base(state: ExecutionState | None, git: Git, base_branch: str) -> str | None:
    """Pick the reference later diffs are narrowed against, or None if stale."""
    if state is None:
        return None
    if git.is_ancestor(state.commit, base_branch):
        return None
    ref = state.working_tree_ref
    if ref and OBJECT_ID_PATTERN.match(ref) and git.object_exists(ref):
        return ref
    if git.object_exists(state.commit):
        if ref:
            LOGGER.warning(
                "Snapshot %s is gone (garbage collected?); narrowing against commit %s",
                ref,
                state.commit,
            )
        return state.commit
    return None
