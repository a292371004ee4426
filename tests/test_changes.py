import subprocess
from pathlib import Path

import pytest

from gauntlet.config import EntryPointConfig, GauntletConfig
from gauntlet.core.changes import ChangeOptions, ChangeSetResolver
from gauntlet.core.selector import expand_entry_points, filter_jobs, generate_jobs
from gauntlet.vcs import Git, GitError


def _run(cmd: list[str], cwd: Path) -> str:
    return subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True).stdout


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _write(path: Path, content: str = "x\n") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _paths(entry_points: list[EntryPointConfig], files: list[str]) -> list[str]:
    return [item.path for item in expand_entry_points(files, entry_points)]


def test_root_entry_point_matches_any_change() -> None:
    assert _paths([EntryPointConfig(path=".")], ["docs/readme.md"]) == ["."]
    assert _paths([EntryPointConfig(path=".")], []) == []


def test_wildcard_entry_point_expands_to_changed_children() -> None:
    files = ["packages/b/y.py", "packages/a/x.py", "packages/a/z.py", "packages/top.txt"]

    assert _paths([EntryPointConfig(path="packages/*")], files) == ["packages/a", "packages/b"]


def test_glob_entry_point_matches_parent_directories() -> None:
    files = ["services/billing/api/main.py", "services/billing/worker/run.py"]

    assert _paths([EntryPointConfig(path="services/*/api")], files) == ["services/billing/api"]


def test_prefix_entry_point_and_excludes() -> None:
    entry = EntryPointConfig(path="src", exclude=["src/generated", "*.lock"])

    assert _paths([entry], ["src/app.py"]) == ["src"]
    assert _paths([entry], ["srcx/app.py"]) == []
    assert _paths([entry], ["src/generated/models.py", "poetry.lock"]) == []


def _config() -> GauntletConfig:
    return GauntletConfig.from_dict(
        {
            "checks": {
                "lint": {"command": "ruff check .", "working_directory": "."},
                "test": {"command": "pytest -q"},
                "e2e": {"command": "pytest e2e", "run_in_ci": False},
                "deploy-check": {"command": "make verify", "run_locally": False},
            },
            "reviews": {"code-quality": {"prompt": "Review."}},
            "entry_points": [
                {"path": "api", "checks": ["lint", "test", "e2e"], "reviews": ["code-quality"]},
                {"path": "web", "checks": ["lint", "test", "deploy-check"]},
            ],
        }
    )


def test_generate_jobs_dedupes_shared_working_directory() -> None:
    config = _config()
    expanded = expand_entry_points(["api/app.py", "web/index.ts"], config.entry_points)

    jobs = generate_jobs(expanded, config)

    assert [job.id for job in jobs] == [
        "check:.:lint",
        "check:api:test",
        "check:api:e2e",
        "review:api:code-quality",
        "check:web:test",
    ]
    assert jobs[1].working_directory == "api"
    assert jobs[3].review is not None
    assert jobs[3].file_id == "review_api_code-quality"


def test_generate_jobs_dedupes_review_on_repeated_entry_point() -> None:
    config = GauntletConfig.from_dict(
        {
            "checks": {"test": {"command": "pytest -q"}},
            "reviews": {"code-quality": {"prompt": "Review."}},
            "entry_points": [
                {"path": "api", "checks": ["test"], "reviews": ["code-quality"]},
                {"path": "api", "reviews": ["code-quality"], "exclude": ["api/docs"]},
            ],
        }
    )
    expanded = expand_entry_points(["api/app.py"], config.entry_points)

    jobs = generate_jobs(expanded, config)

    assert len(expanded) == 2
    assert [job.id for job in jobs] == ["check:api:test", "review:api:code-quality"]


def test_generate_jobs_respects_ci_flags() -> None:
    config = _config()
    expanded = expand_entry_points(["api/app.py", "web/index.ts"], config.entry_points)

    ci_ids = [job.id for job in generate_jobs(expanded, config, ci=True)]

    assert "check:api:e2e" not in ci_ids
    assert "check:web:deploy-check" in ci_ids


def test_filter_jobs_by_gate_name() -> None:
    config = _config()
    jobs = generate_jobs(expand_entry_points(["api/app.py"], config.entry_points), config)

    assert [job.id for job in filter_jobs(jobs, "test")] == ["check:api:test"]
    assert filter_jobs(jobs, None) == jobs
    assert filter_jobs(jobs, "missing") == []


def test_resolver_uncommitted_includes_untracked_and_excludes_store(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    _write(tmp_path / "seed.txt", "changed\n")
    _write(tmp_path / "src" / "new.py")
    _write(tmp_path / "gauntlet_logs" / "check_._lint.1.log")
    resolver = ChangeSetResolver(Git(tmp_path), "origin/main", exclude=["gauntlet_logs"])

    scope = resolver.resolve_scope(ChangeOptions(uncommitted=True))

    assert scope.description == "uncommitted changes"
    assert resolver.changed_files(scope) == ["seed.txt", "src/new.py"]
    assert "+changed" in resolver.diff(scope, ["seed.txt"])
    assert "src/new.py" not in resolver.diff(scope, ["seed.txt"])
    assert _run(["git", "status", "--porcelain"], cwd=tmp_path).count("??") == 2


def test_resolver_base_branch_and_commit_modes(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    _run(["git", "branch", "base"], cwd=tmp_path)
    _write(tmp_path / "feature.py")
    _run(["git", "add", "feature.py"], cwd=tmp_path)
    _run(["git", "commit", "-m", "feature"], cwd=tmp_path)
    _write(tmp_path / "wip.py")
    git = Git(tmp_path)
    resolver = ChangeSetResolver(git, "base")

    local = resolver.resolve_scope(ChangeOptions())
    assert resolver.changed_files(local) == ["feature.py", "wip.py"]

    ci = ChangeSetResolver(git, "base", ci=True)
    assert ci.changed_files(ci.resolve_scope(ChangeOptions())) == ["feature.py"]

    commit_scope = resolver.resolve_scope(ChangeOptions(commit="HEAD"))
    assert resolver.changed_files(commit_scope) == ["feature.py"]
    assert commit_scope.target == git.head_commit()

    with pytest.raises(GitError):
        resolver.resolve_scope(ChangeOptions(commit="no-such-ref"))


def test_resolver_falls_back_when_base_branch_missing(tmp_path: Path, caplog) -> None:
    _init_git_repo(tmp_path)
    _write(tmp_path / "wip.py")
    resolver = ChangeSetResolver(Git(tmp_path), "origin/does-not-exist")

    with caplog.at_level("WARNING"):
        scope = resolver.resolve_scope(ChangeOptions())

    assert resolver.changed_files(scope) == ["wip.py"]
    assert "origin/does-not-exist" in caplog.text


def test_resolver_fix_base_limits_to_changes_since_snapshot(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    _write(tmp_path / "first.py")
    git = Git(tmp_path)
    snapshot = git.snapshot_tree()
    _write(tmp_path / "second.py")
    resolver = ChangeSetResolver(git, "origin/main")

    scope = resolver.resolve_scope(ChangeOptions(uncommitted=True, fix_base=snapshot))

    assert resolver.changed_files(scope) == ["second.py"]
    with pytest.raises(GitError):
        resolver.resolve_scope(ChangeOptions(fix_base="HEAD; rm -rf /"))


def test_diff_stats_counts_files_and_lines(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    _write(tmp_path / "doomed.txt", "bye\n")
    _run(["git", "add", "doomed.txt"], cwd=tmp_path)
    _run(["git", "commit", "-m", "doomed"], cwd=tmp_path)
    _write(tmp_path / "seed.txt", "seed\nmore\n")
    _write(tmp_path / "added.txt", "one\ntwo\n")
    (tmp_path / "doomed.txt").unlink()
    resolver = ChangeSetResolver(Git(tmp_path), "origin/main")

    stats = resolver.diff_stats(resolver.resolve_scope(ChangeOptions(uncommitted=True)))

    assert (stats.total, stats.new, stats.modified, stats.deleted) == (3, 1, 1, 1)
    assert stats.lines_added == 3
    assert stats.lines_removed == 1
    assert stats.to_dict()["base_ref"] == stats.base_ref
