from __future__ import annotations

import os
import re
import subprocess
import tempfile
from collections.abc import Iterable
from pathlib import Path

EMPTY_TREE = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"
OBJECT_ID_PATTERN = re.compile(r"^[0-9a-f]{4,64}$")


class GitError(RuntimeError):
    """Raised when a git invocation fails."""

    def __init__(self, message: str, *, args: list[str] | None = None) -> None:
        super().__init__(message)
        self.git_args = list(args or [])


class Git:
    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()

    def run(
        self,
        args: list[str],
        *,
        env: dict[str, str] | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
                env=env,
            )
        except FileNotFoundError as exc:
            raise GitError("git executable not found in PATH", args=args) from exc
        if check and proc.returncode != 0:
            raise GitError(proc.stderr.strip() or proc.stdout.strip(), args=args)
        return proc

    def is_repo(self) -> bool:
        try:
            proc = self.run(["rev-parse", "--is-inside-work-tree"], check=False)
        except GitError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def has_head(self) -> bool:
        return self.run(["rev-parse", "--verify", "--quiet", "HEAD"], check=False).returncode == 0

    def head_commit(self) -> str:
        return self.run(["rev-parse", "HEAD"]).stdout.strip()

    def current_branch(self) -> str:
        proc = self.run(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if proc.returncode != 0:
            return "HEAD"
        return proc.stdout.strip()

    def resolve(self, ref: str) -> str | None:
        proc = self.run(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip()

    def merge_base(self, left: str, right: str = "HEAD") -> str | None:
        proc = self.run(["merge-base", left, right], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def is_ancestor(self, commit: str, ref: str) -> bool:
        proc = self.run(["merge-base", "--is-ancestor", commit, ref], check=False)
        return proc.returncode == 0

    def object_exists(self, ref: str) -> bool:
        return self.run(["cat-file", "-t", ref], check=False).returncode == 0

    def parent_or_empty_tree(self, commit: str) -> str:
        return self.resolve(f"{commit}^") or EMPTY_TREE

    def snapshot_tree(self, exclude: Iterable[str] = ()) -> str:
        """Write the full working tree, untracked files included, as a tree object.

        A throwaway index is used so neither the real index nor the working
        tree is touched.
        """
        with tempfile.NamedTemporaryFile(prefix="gauntlet-index-", delete=False) as index_file:
            index_path = index_file.name
        try:
            env = os.environ.copy()
            env["GIT_INDEX_FILE"] = index_path
            try:
                Path(index_path).unlink()
            except FileNotFoundError:
                pass
            if self.has_head():
                self.run(["read-tree", "HEAD"], env=env)
            pathspec = ["--", "."]
            pathspec.extend(f":(exclude){pattern}" for pattern in exclude)
            self.run(["add", "-A", *pathspec], env=env)
            return self.run(["write-tree"], env=env).stdout.strip()
        finally:
            try:
                os.unlink(index_path)
            except OSError:
                pass

    def working_tree_ref(self, exclude: Iterable[str] = ()) -> str:
        try:
            return self.snapshot_tree(exclude)
        except GitError:
            return self.head_commit()

    def diff(self, base: str, target: str, *options: str, paths: Iterable[str] = ()) -> str:
        args = ["diff", *options, base, target]
        path_list = list(paths)
        if path_list:
            args.extend(["--", *path_list])
        return self.run(args).stdout
