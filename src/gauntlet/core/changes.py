from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from gauntlet.vcs import EMPTY_TREE, OBJECT_ID_PATTERN, Git, GitError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ChangeOptions:
    commit: str | None = None
    uncommitted: bool = False
    fix_base: str | None = None


@dataclass(slots=True)
class DiffScope:
    base: str
    target: str
    description: str


@dataclass(slots=True)
class DiffStats:
    base_ref: str
    total: int = 0
    new: int = 0
    modified: int = 0
    deleted: int = 0
    lines_added: int = 0
    lines_removed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_ref": self.base_ref,
            "total": self.total,
            "new": self.new,
            "modified": self.modified,
            "deleted": self.deleted,
            "lines_added": self.lines_added,
            "lines_removed": self.lines_removed,
        }


def _is_excluded(path: str, prefixes: Iterable[str]) -> bool:
    for prefix in prefixes:
        cleaned = prefix.rstrip("/")
        if path == cleaned or path.startswith(f"{cleaned}/"):
            return True
    return False


class ChangeSetResolver:
    """Resolves a diff scope and reports the files and lines it touches."""

    def __init__(
        self,
        git: Git,
        base_branch: str,
        *,
        exclude: Iterable[str] = (),
        ci: bool = False,
    ) -> None:
        self.git = git
        self.base_branch = base_branch
        self.exclude = [item for item in exclude if item]
        self.ci = ci
        self._snapshot: str | None = None

    def working_tree(self) -> str:
        if self._snapshot is None:
            self._snapshot = self.git.snapshot_tree(self.exclude)
        return self._snapshot

    def _head_or_empty(self) -> str:
        return self.git.head_commit() if self.git.has_head() else EMPTY_TREE

    def resolve_scope(self, options: ChangeOptions) -> DiffScope:
        if options.commit:
            commit = self.git.resolve(options.commit)
            if commit is None:
                raise GitError(f"Unknown commit: {options.commit}")
            return DiffScope(
                base=self.git.parent_or_empty_tree(commit),
                target=commit,
                description=f"commit {commit[:12]}",
            )

        if options.fix_base:
            if not OBJECT_ID_PATTERN.match(options.fix_base):
                raise GitError(f"Invalid fix base reference: {options.fix_base}")
            return DiffScope(
                base=options.fix_base,
                target=self.working_tree(),
                description=f"changes since {options.fix_base[:12]}",
            )

        if options.uncommitted:
            return DiffScope(
                base=self._head_or_empty(),
                target=self.working_tree(),
                description="uncommitted changes",
            )

        merge_base = self.git.merge_base(self.base_branch)
        if self.ci:
            if merge_base is None:
                raise GitError(f"Cannot find merge base with {self.base_branch}")
            return DiffScope(
                base=merge_base,
                target=self.git.head_commit(),
                description=f"{self.base_branch}...HEAD",
            )
        if merge_base is None:
            LOGGER.warning(
                "Base branch %s not found; falling back to uncommitted changes",
                self.base_branch,
            )
            merge_base = self._head_or_empty()
        return DiffScope(
            base=merge_base,
            target=self.working_tree(),
            description=f"{self.base_branch}...working tree",
        )

    def changed_files(self, scope: DiffScope) -> list[str]:
        output = self.git.diff(scope.base, scope.target, "--name-only")
        files = [line.strip() for line in output.splitlines() if line.strip()]
        return sorted(path for path in files if not _is_excluded(path, self.exclude))

    def diff(self, scope: DiffScope, paths: Iterable[str] = ()) -> str:
        path_list = [path for path in paths if path and path != "."]
        return self.git.diff(scope.base, scope.target, paths=path_list)

    def diff_stats(self, scope: DiffScope) -> DiffStats:
        stats = DiffStats(base_ref=scope.base)

        numstat = self.git.diff(scope.base, scope.target, "--numstat")
        for line in numstat.splitlines():
            parts = line.split("\t")
            if len(parts) < 3 or _is_excluded(parts[-1], self.exclude):
                continue
            if parts[0].isdigit():
                stats.lines_added += int(parts[0])
            if parts[1].isdigit():
                stats.lines_removed += int(parts[1])

        name_status = self.git.diff(scope.base, scope.target, "--name-status")
        for line in name_status.splitlines():
            parts = line.split("\t")
            if len(parts) < 2 or _is_excluded(parts[-1], self.exclude):
                continue
            code = parts[0][:1]
            if code == "A":
                stats.new += 1
            elif code == "D":
                stats.deleted += 1
            elif code in {"M", "R", "C", "T"}:
                stats.modified += 1
            else:
                continue
            stats.total += 1
        return stats
