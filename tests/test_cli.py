import json
import logging
import shlex
import subprocess
import sys
from pathlib import Path

import pytest
from click.testing import CliRunner

from gauntlet import __version__
from gauntlet.cli import STDERR_HANDLER_NAME, cli
from gauntlet.config import GauntletConfig, load_config, save_config

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


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch):
    for name in ("CI", "GITHUB_ACTIONS", "GITHUB_BASE_REF", "GAUNTLET_STOP_HOOK_ACTIVE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("GAUNTLET_STOP_HOOK_ENABLED", raising=False)
    monkeypatch.setenv("GAUNTLET_CONFIG_HOME", str(tmp_path / "home"))
    yield
    logger = logging.getLogger("gauntlet")
    for handler in list(logger.handlers):
        if handler.get_name() == STDERR_HANDLER_NAME:
            logger.removeHandler(handler)


@pytest.fixture
def repo(tmp_path: Path, monkeypatch) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    _init_git_repo(path)
    monkeypatch.chdir(path)
    return path


def _write_check_config(repo: Path) -> Path:
    config = GauntletConfig.from_dict(
        {
            "project": {"base_branch": "HEAD"},
            "checks": {"verify": {"command": VERIFY_COMMAND}},
            "entry_points": [{"path": ".", "checks": ["verify"]}],
        }
    )
    config_path = repo / ".gauntlet" / "config.toml"
    save_config(config_path, config)
    return config_path


def _last_json_line(output: str) -> dict:
    return json.loads(output.strip().splitlines()[-1])


def test_version_option() -> None:
    result = CliRunner().invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_init_writes_config_and_gitignore(repo: Path) -> None:
    runner = CliRunner()
    (repo / ".gitignore").write_text("node_modules/", encoding="utf-8")

    result = runner.invoke(cli, ["init"])

    assert result.exit_code == 0, result.output
    assert "Initialized gauntlet" in result.output
    config = load_config(repo / ".gauntlet" / "config.toml")
    assert "code-quality" in config.reviews
    assert (repo / ".gitignore").read_text(encoding="utf-8") == "node_modules/\ngauntlet_logs/\n"

    again = runner.invoke(cli, ["init"])
    assert again.exit_code == 1
    assert "already exists" in again.output

    forced = runner.invoke(cli, ["init", "--force"])
    assert forced.exit_code == 0
    assert (repo / ".gitignore").read_text(encoding="utf-8").count("gauntlet_logs/") == 1


def test_commands_fail_cleanly_without_config(repo: Path) -> None:
    result = CliRunner().invoke(cli, ["list"])

    assert result.exit_code == 1
    assert "No configuration found" in result.output


def test_list_shows_gates(repo: Path) -> None:
    _write_check_config(repo)

    result = CliRunner().invoke(cli, ["list"])

    assert result.exit_code == 0
    assert "Checks:" in result.output
    assert "  verify: " in result.output
    assert "  .: verify" in result.output


def test_detect_lists_jobs(repo: Path) -> None:
    _write_check_config(repo)
    (repo / "status.txt").write_text("ok\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["detect"])

    assert result.exit_code == 0, result.output
    assert "  - status.txt" in result.output
    assert "Would run 1 gate(s):" in result.output
    assert "check:.:verify" in result.output


def test_run_commit_and_uncommitted_are_exclusive(repo: Path) -> None:
    _write_check_config(repo)

    result = CliRunner().invoke(cli, ["run", "--commit", "HEAD", "--uncommitted"])

    assert result.exit_code == 1
    assert "cannot be used together" in result.output


def test_run_fail_then_clean_then_pass(repo: Path) -> None:
    _write_check_config(repo)
    runner = CliRunner()
    (repo / "status.txt").write_text("broken\n", encoding="utf-8")

    failed = runner.invoke(cli, ["run"])

    assert failed.exit_code == 1
    assert "Status: failed" in failed.output
    assert "check:.:verify" in failed.output
    assert (repo / "gauntlet_logs" / "check_._verify.1.log").exists()

    cleaned = runner.invoke(cli, ["clean"])
    assert cleaned.exit_code == 0, cleaned.output
    assert "Archived" in cleaned.output
    assert (repo / "gauntlet_logs" / "previous" / "check_._verify.1.log").exists()

    (repo / "status.txt").write_text("ok\n", encoding="utf-8")
    passed = runner.invoke(cli, ["run", "--json"])

    assert passed.exit_code == 0, passed.output
    payload = json.loads(passed.stdout)
    assert payload["status"] == "passed"
    assert payload["gates"][0]["job_id"] == "check:.:verify"


def test_clean_refuses_while_locked(repo: Path) -> None:
    _write_check_config(repo)
    store = repo / "gauntlet_logs"
    store.mkdir()
    (store / ".run.lock").write_text("123", encoding="utf-8")

    result = CliRunner().invoke(cli, ["clean"])

    assert result.exit_code == 1
    assert "lock file" in result.output


def test_stop_hook_invalid_input_approves(repo: Path) -> None:
    _write_check_config(repo)

    result = CliRunner().invoke(cli, ["stop-hook"], input="not json")

    assert result.exit_code == 0
    payload = _last_json_line(result.output)
    assert payload["decision"] == "approve"
    assert payload["status"] == "invalid_input"


def test_stop_hook_blocks_until_fixed(repo: Path) -> None:
    _write_check_config(repo)
    runner = CliRunner()
    (repo / "status.txt").write_text("broken\n", encoding="utf-8")

    blocked = runner.invoke(cli, ["stop-hook"], input="{}")

    assert blocked.exit_code == 0
    payload = _last_json_line(blocked.output)
    assert payload["decision"] == "block"
    assert payload["status"] == "failed"
    assert "check_._verify.1.log" in payload["reason"]
    assert "Output tail:" in payload["reason"]

    (repo / "status.txt").write_text("ok\n", encoding="utf-8")
    approved = runner.invoke(cli, ["stop-hook"], input="{}")

    payload = _last_json_line(approved.output)
    assert payload["decision"] == "approve"
    assert payload["status"] == "passed"


def test_stop_hook_without_project(tmp_path: Path, monkeypatch) -> None:
    empty = tmp_path / "empty"
    empty.mkdir()
    monkeypatch.chdir(empty)

    result = CliRunner().invoke(cli, ["stop-hook"], input="")

    assert result.exit_code == 0
    assert _last_json_line(result.output)["status"] == "no_config"
