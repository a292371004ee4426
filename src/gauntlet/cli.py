from __future__ import annotations

import asyncio
import io
import json
import logging
import os
import select
import sys
from dataclasses import dataclass
from pathlib import Path

import click

from gauntlet import __version__
from gauntlet.adapters import build_adapters
from gauntlet.config import (
    CONFIG_DIR_NAME,
    CONFIG_FILE_NAME,
    ConfigError,
    GauntletConfig,
    load_config,
    save_config,
)
from gauntlet.core.changes import ChangeOptions, ChangeSetResolver
from gauntlet.core.executor import (
    RunExecutor,
    RunOptions,
    effective_base_branch,
    is_ci,
    store_exclude,
)
from gauntlet.core.selector import expand_entry_points, generate_jobs
from gauntlet.hooks.stop import StopHookResolver
from gauntlet.state.lock import LockConflictError, run_lock
from gauntlet.state.store import ARCHIVE_DIR_NAME, archive_store
from gauntlet.status import exit_code_for
from gauntlet.vcs import Git, GitError

DEFAULT_CONFIG = f"{CONFIG_DIR_NAME}/{CONFIG_FILE_NAME}"
STDIN_TIMEOUT_SECONDS = 5.0
STDERR_HANDLER_NAME = "gauntlet-cli"


@dataclass(slots=True)
class Project:
    repo_root: Path
    config_path: Path
    config: GauntletConfig


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_project(config_value: str) -> Project:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    return Project(repo_root=repo_root, config_path=config_path, config=config)


def _configure_logging(verbose: bool) -> None:
    """Route package logs to stderr; stdout stays free for JSON output."""
    logger = logging.getLogger("gauntlet")
    for handler in list(logger.handlers):
        if handler.get_name() == STDERR_HANDLER_NAME:
            logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(STDERR_HANDLER_NAME)
    handler.setLevel(logging.INFO if verbose else logging.WARNING)
    handler.setFormatter(logging.Formatter("[gauntlet] %(message)s"))
    logger.addHandler(handler)


def _read_stdin(timeout: float = STDIN_TIMEOUT_SECONDS) -> str:
    stream = click.get_text_stream("stdin")
    try:
        fileno = stream.fileno()
    except (AttributeError, OSError, io.UnsupportedOperation):
        return stream.read()
    if os.isatty(fileno):
        return ""
    ready, _, _ = select.select([fileno], [], [], timeout)
    if not ready:
        return ""
    return stream.read()


def _ensure_exclusive(commit: str | None, uncommitted: bool) -> None:
    if commit and uncommitted:
        raise click.ClickException("--commit and --uncommitted cannot be used together.")


@click.group()
@click.version_option(__version__, prog_name="gauntlet")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log progress to stderr.")
def cli(verbose: bool) -> None:
    """Gauntlet quality-gate CLI."""
    _configure_logging(verbose)


@cli.command("init")
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing config.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(force: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    if config_path.exists() and not force:
        raise click.ClickException(f"Config already exists: {config_path} (use --force).")
    config = GauntletConfig.default()
    save_config(config_path, config)

    gitignore = repo_root / ".gitignore"
    log_dir = config.project.log_dir.rstrip("/")
    existing = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
    if log_dir not in {line.strip().rstrip("/") for line in existing.splitlines()}:
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        gitignore.write_text(f"{existing}{prefix}{log_dir}/\n", encoding="utf-8")

    click.echo(f"Initialized gauntlet in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Logs: {config.project.log_dir}")


@cli.command("run")
@click.option("--gate", "-g", default=None, help="Only run the gate with this name.")
@click.option("--commit", "-c", default=None, help="Review the changes of one commit.")
@click.option("--uncommitted", "-u", is_flag=True, default=False, help="Only uncommitted work.")
@click.option("--base-branch", "-b", default=None, help="Override the base branch.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the outcome as JSON.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
@click.pass_context
def run_command(
    ctx: click.Context,
    gate: str | None,
    commit: str | None,
    uncommitted: bool,
    base_branch: str | None,
    as_json: bool,
    config_value: str,
) -> None:
    _ensure_exclusive(commit, uncommitted)
    project = _load_project(config_value)
    executor = RunExecutor(project.repo_root, project.config)
    outcome = asyncio.run(
        executor.execute(
            RunOptions(
                gate=gate, commit=commit, uncommitted=uncommitted, base_branch=base_branch
            )
        )
    )

    if as_json:
        click.echo(json.dumps(outcome.to_dict(), ensure_ascii=False, indent=2))
    else:
        for result in outcome.gate_results:
            click.echo(f"{result.status:<18} {result.job_id} {result.message or ''}".rstrip())
            for path in result.json_paths():
                click.echo(f"  Review: {path}")
            if not result.passed:
                for path in result.log_paths():
                    click.echo(f"  Log: {path}")
        click.echo(f"Status: {outcome.status} - {outcome.message}")
        if outcome.error_message:
            click.echo(f"Error: {outcome.error_message}", err=True)
        if outcome.console_log_path:
            click.echo(f"Console log: {outcome.console_log_path}")
    ctx.exit(exit_code_for(outcome.status))


@cli.command("clean")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def clean_command(config_value: str) -> None:
    project = _load_project(config_value)
    store_dir = project.config.store_dir(project.repo_root)
    try:
        with run_lock(store_dir):
            moved = archive_store(store_dir)
    except LockConflictError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Archived {len(moved)} file(s) into {store_dir / ARCHIVE_DIR_NAME}")


@cli.command("detect")
@click.option("--commit", "-c", default=None)
@click.option("--uncommitted", "-u", is_flag=True, default=False)
@click.option("--base-branch", "-b", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def detect_command(
    commit: str | None, uncommitted: bool, base_branch: str | None, config_value: str
) -> None:
    _ensure_exclusive(commit, uncommitted)
    project = _load_project(config_value)
    config = project.config
    environ = os.environ
    options = RunOptions(commit=commit, uncommitted=uncommitted, base_branch=base_branch)
    ci = is_ci(environ)
    resolver = ChangeSetResolver(
        Git(project.repo_root),
        effective_base_branch(options, config, environ),
        exclude=store_exclude(config.store_dir(project.repo_root), project.repo_root),
        ci=ci,
    )
    try:
        scope = resolver.resolve_scope(ChangeOptions(commit=commit, uncommitted=uncommitted))
        changed_files = resolver.changed_files(scope)
    except GitError as exc:
        raise click.ClickException(str(exc)) from exc

    if not changed_files:
        click.echo("No changes detected.")
        return
    click.echo(f"Found {len(changed_files)} changed file(s) ({scope.description}):")
    for path in changed_files:
        click.echo(f"  - {path}")

    jobs = generate_jobs(expand_entry_points(changed_files, config.entry_points), config, ci=ci)
    if not jobs:
        click.echo("No applicable gates for these changes.")
        return
    click.echo(f"Would run {len(jobs)} gate(s):")
    for job in jobs:
        click.echo(f"  {job.kind:<6} {job.id}")


@cli.command("list")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def list_command(config_value: str) -> None:
    config = _load_project(config_value).config
    click.echo("Checks:")
    for name, check in sorted(config.checks.items()):
        click.echo(f"  {name}: {check.command}")
    click.echo("Reviews:")
    for name, review in sorted(config.reviews.items()):
        adapters = ", ".join(review.cli_preference or config.project.cli_preference)
        click.echo(f"  {name}: {review.num_reviews} review(s) via {adapters}")
    click.echo("Entry points:")
    for entry in config.entry_points:
        gates = [*entry.checks, *entry.reviews]
        click.echo(f"  {entry.path}: {', '.join(gates) if gates else '(none)'}")


@cli.command("health")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def health_command(config_value: str) -> None:
    project = _load_project(config_value)
    config = project.config
    click.echo(f"Config: {project.config_path} (valid)")

    names: list[str] = []
    for review in config.reviews.values():
        for name in review.cli_preference or config.project.cli_preference:
            if name not in names:
                names.append(name)
    if not names:
        click.echo("No reviewer adapters configured.")
        return

    async def _check() -> list[tuple[str, str, str]]:
        adapters = build_adapters(names, project.repo_root)
        healths = await asyncio.gather(*(adapter.check_health() for adapter in adapters))
        return [
            (adapter.name, health.status, health.message or "")
            for adapter, health in zip(adapters, healths)
        ]

    for name, status, message in asyncio.run(_check()):
        click.echo(f"  {name:<8} {status:<12} {message}".rstrip())


@cli.command("stop-hook")
def stop_hook_command() -> None:
    """Answer an agent stop request with a JSON approve/block decision."""
    resolver = StopHookResolver(Path.cwd().resolve())
    response = asyncio.run(resolver.resolve(_read_stdin()))
    click.echo(json.dumps(response.to_dict(), ensure_ascii=False))
