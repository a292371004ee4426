import asyncio
import json
import shlex
import subprocess
import sys
from pathlib import Path

from gauntlet.adapters.base import AdapterProcessError, ReviewerAdapter
from gauntlet.config import GauntletConfig
from gauntlet.core.executor import RunExecutor, RunOptions, effective_base_branch, is_ci
from gauntlet.state.lock import acquire, release
from gauntlet.state.store import has_result_files
from gauntlet.status import exit_code_for

PYTHON = shlex.quote(sys.executable)
VERIFY_COMMAND = (
    f"{PYTHON} -c \"import pathlib, sys; "
    "sys.exit(pathlib.Path('status.txt').read_text().strip() != 'ok')\""
)


def _run(cmd: list[str], cwd: Path) -> str:
    return subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True).stdout


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


class FakeReviewer(ReviewerAdapter):
    def __init__(self, name: str, available: bool = True) -> None:
        self.name = name
        self.available = available
        self.calls = 0

    async def is_available(self) -> bool:
        return self.available

    async def invoke(self, prompt, diff, *, model=None, timeout=None) -> str:
        _ = prompt, model, timeout
        self.calls += 1
        assert "status.txt" in diff
        return '```json\n{"status": "pass", "violations": []}\n```'


def _check_config(max_retries: int = 3, entry_path: str = ".") -> GauntletConfig:
    return GauntletConfig.from_dict(
        {
            "project": {"max_retries": max_retries},
            "checks": {"verify": {"command": VERIFY_COMMAND}},
            "entry_points": [{"path": entry_path, "checks": ["verify"]}],
        }
    )


def _executor(repo: Path, config: GauntletConfig, **kwargs) -> RunExecutor:
    return RunExecutor(repo, config, environ={}, **kwargs)


def _status(repo: Path, content: str) -> None:
    (repo / "status.txt").write_text(f"{content}\n", encoding="utf-8")


def test_ci_detection_and_base_branch_precedence() -> None:
    config = GauntletConfig.default()
    ci_env = {"GITHUB_ACTIONS": "true", "GITHUB_BASE_REF": "release"}

    assert is_ci({"CI": "true"})
    assert not is_ci({"CI": "1"})
    assert effective_base_branch(RunOptions(), config, {}) == config.project.base_branch
    assert effective_base_branch(RunOptions(), config, {"GITHUB_BASE_REF": "release"}) == (
        config.project.base_branch
    )
    assert effective_base_branch(RunOptions(), config, ci_env) == "release"
    assert effective_base_branch(RunOptions(base_branch="dev"), config, ci_env) == "dev"


def test_clean_tree_reports_no_changes(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)

    outcome = asyncio.run(_executor(tmp_path, _check_config()).execute())

    assert outcome.status == "no_changes"
    assert exit_code_for(outcome.status) == 0


def test_changes_outside_entry_points_have_no_gates(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "guide.md").write_text("guide\n", encoding="utf-8")

    outcome = asyncio.run(_executor(tmp_path, _check_config(entry_path="src")).execute())

    assert outcome.status == "no_applicable_gates"


def test_passing_run_archives_logs(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    _status(tmp_path, "ok")
    store = tmp_path / "gauntlet_logs"

    outcome = asyncio.run(_executor(tmp_path, _check_config()).execute())

    assert outcome.status == "passed"
    assert outcome.run_number == 1
    assert [gate.status for gate in outcome.gate_results] == ["pass"]
    assert not has_result_files(store)
    assert (store / "previous" / "check_._verify.1.log").exists()
    assert outcome.console_log_path == str(store / "previous" / "console.1.log")
    assert "Run 1 finished: passed" in Path(outcome.console_log_path).read_text("utf-8")
    assert (store / ".execution_state").exists()
    assert not (store / ".run.lock").exists()


def test_failed_run_then_verified_fix(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    _status(tmp_path, "broken")
    store = tmp_path / "gauntlet_logs"
    executor = _executor(tmp_path, _check_config())

    first = asyncio.run(executor.execute())

    assert first.status == "failed"
    assert exit_code_for(first.status) == 1
    assert first.gate_results[0].message == "Exited with code 1"
    assert (store / "check_._verify.1.log").exists()
    assert (store / "console.1.log").exists()

    _status(tmp_path, "ok")
    second = asyncio.run(executor.execute())

    assert second.status == "passed"
    assert second.run_number == 2
    assert not has_result_files(store)
    assert (store / "previous" / "check_._verify.2.log").exists()


def test_rerun_without_new_edits_reports_no_changes(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    _status(tmp_path, "broken")
    executor = _executor(tmp_path, _check_config())

    assert asyncio.run(executor.execute()).status == "failed"
    assert asyncio.run(executor.execute()).status == "no_changes"


def test_retry_limit_boundary(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    executor = _executor(tmp_path, _check_config(max_retries=1))

    _status(tmp_path, "broken-1")
    assert asyncio.run(executor.execute()).status == "failed"

    _status(tmp_path, "broken-2")
    final = asyncio.run(executor.execute())
    assert final.status == "retry_limit_exceeded"
    assert final.run_number == 2

    _status(tmp_path, "broken-3")
    refused = asyncio.run(executor.execute())
    assert refused.status == "retry_limit_exceeded"
    assert refused.run_number == 3
    assert "gauntlet clean" in (refused.error_message or "")
    assert not (tmp_path / "gauntlet_logs" / "check_._verify.3.log").exists()


def test_lock_conflict_leaves_store_untouched(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    _status(tmp_path, "ok")
    store = tmp_path / "gauntlet_logs"
    handle = acquire(store)
    try:
        outcome = asyncio.run(_executor(tmp_path, _check_config()).execute())
    finally:
        release(handle)

    assert outcome.status == "lock_conflict"
    assert exit_code_for(outcome.status) == 1
    assert str((store / ".run.lock").resolve()) in (outcome.error_message or "")
    assert sorted(path.name for path in store.iterdir()) == []


def _review_config() -> GauntletConfig:
    return GauntletConfig.from_dict(
        {
            "reviews": {"quality": {"prompt": "Review.", "cli_preference": ["claude", "codex"]}},
            "entry_points": [{"path": ".", "reviews": ["quality"]}],
        }
    )


def test_review_run_uses_healthy_adapters(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    _status(tmp_path, "ok")
    requested: list[list[str]] = []
    reviewers = [FakeReviewer("claude", available=False), FakeReviewer("codex")]

    def factory(names):
        requested.append(list(names))
        return reviewers

    outcome = asyncio.run(_executor(tmp_path, _review_config(), adapter_factory=factory).execute())

    assert outcome.status == "passed"
    assert requested == [["claude", "codex"]]
    assert reviewers[0].calls == 0
    assert reviewers[1].calls == 1
    assert (tmp_path / "gauntlet_logs" / "previous" / "review_._quality_codex@1.1.json").exists()


def test_no_healthy_reviewer_is_infrastructure_error(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    _status(tmp_path, "ok")

    def factory(names):
        return [FakeReviewer(name, available=False) for name in names]

    outcome = asyncio.run(_executor(tmp_path, _review_config(), adapter_factory=factory).execute())

    assert outcome.status == "infrastructure_error"
    assert exit_code_for(outcome.status) == 1
    assert "no healthy adapters available" in (outcome.error_message or "")
    assert not (tmp_path / "gauntlet_logs" / ".run.lock").exists()


def test_lock_conflict_with_debug_log_leaves_store_untouched(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    _status(tmp_path, "ok")
    store = tmp_path / "gauntlet_logs"
    config = _check_config()
    config.debug_log.enabled = True
    handle = acquire(store)
    try:
        outcome = asyncio.run(_executor(tmp_path, config).execute())
    finally:
        release(handle)

    assert outcome.status == "lock_conflict"
    assert sorted(path.name for path in store.iterdir()) == []


class UnstartableReviewer(FakeReviewer):
    async def invoke(self, prompt, diff, *, model=None, timeout=None) -> str:
        _ = prompt, diff, model, timeout
        self.calls += 1
        raise AdapterProcessError("claude binary not found", adapter=self.name)


def test_reviewer_spawn_failure_is_infrastructure_error(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    _status(tmp_path, "ok")
    reviewer = UnstartableReviewer("claude")

    outcome = asyncio.run(
        _executor(tmp_path, _review_config(), adapter_factory=lambda names: [reviewer]).execute()
    )

    assert outcome.status == "infrastructure_error"
    assert exit_code_for(outcome.status) == 1
    assert "claude binary not found" in (outcome.error_message or "")
    assert reviewer.calls == 1
    assert not (tmp_path / "gauntlet_logs" / ".run.lock").exists()


def _check_and_review_config(review_path: str = ".") -> GauntletConfig:
    return GauntletConfig.from_dict(
        {
            "project": {"max_retries": 5},
            "checks": {"verify": {"command": VERIFY_COMMAND}},
            "reviews": {"quality": {"prompt": "Review.", "cli_preference": ["claude"]}},
            "entry_points": [
                {"path": ".", "checks": ["verify"]},
                {"path": review_path, "reviews": ["quality"]},
            ],
        }
    )


def test_each_invocation_gets_the_next_run_number(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    store = tmp_path / "gauntlet_logs"
    reviewer = FakeReviewer("claude")
    executor = _executor(
        tmp_path, _check_and_review_config(), adapter_factory=lambda names: [reviewer]
    )

    for run_number in (1, 2, 3):
        _status(tmp_path, f"broken-{run_number}")
        outcome = asyncio.run(executor.execute())

        assert outcome.status == "failed"
        assert outcome.run_number == run_number
        assert outcome.console_log_path == str(store / f"console.{run_number}.log")

    names = sorted(
        path.name for path in store.iterdir() if path.is_file() and not path.name.startswith(".")
    )
    expected = sorted(
        name
        for number in (1, 2, 3)
        for name in (
            f"console.{number}.log",
            f"check_._verify.{number}.log",
            f"review_._quality_claude@1.{number}.log",
            f"review_._quality_claude@1.{number}.json",
        )
    )
    assert names == expected
    assert reviewer.calls == 3


class FlaggingReviewer(FakeReviewer):
    async def invoke(self, prompt, diff, *, model=None, timeout=None) -> str:
        _ = prompt, model, timeout
        self.calls += 1
        assert "a/x.py" in diff
        payload = {
            "status": "fail",
            "violations": [
                {"file": "a/x.py", "line": 1, "issue": "unsafe eval", "priority": "high"}
            ],
        }
        return f"```json\n{json.dumps(payload)}\n```"


def test_unaddressed_review_violation_keeps_run_failing(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    (tmp_path / "a").mkdir()
    (tmp_path / "a" / "x.py").write_text("eval(input())\n", encoding="utf-8")
    _status(tmp_path, "broken")
    store = tmp_path / "gauntlet_logs"
    reviewer = FlaggingReviewer("claude")
    executor = _executor(
        tmp_path, _check_and_review_config("a"), adapter_factory=lambda names: [reviewer]
    )

    first = asyncio.run(executor.execute())
    assert first.status == "failed"
    assert {gate.job_id: gate.status for gate in first.gate_results} == {
        "check:.:verify": "fail",
        "review:a:quality": "fail",
    }

    _status(tmp_path, "ok")
    second = asyncio.run(executor.execute())

    assert second.status == "failed"
    assert {gate.job_id: gate.status for gate in second.gate_results} == {
        "check:.:verify": "pass",
        "review:a:quality": "fail",
    }
    assert reviewer.calls == 1
    carried = json.loads((store / "review_a_quality_claude@1.2.json").read_text("utf-8"))
    assert carried["violations"][0]["issue"] == "unsafe eval"
    assert not (store / "previous").exists()
