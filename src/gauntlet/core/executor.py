from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from gauntlet.adapters.base import AdapterProcessError, ReviewerAdapter
from gauntlet.adapters.registry import build_adapters
from gauntlet.config import GauntletConfig
from gauntlet.core.changes import ChangeOptions, ChangeSetResolver
from gauntlet.core.dispatch import NoHealthyAdaptersError
from gauntlet.core.rerun import (
    PreviousState,
    classify,
    count_skipped,
    load_previous_state,
    outstanding_job_ids,
)
from gauntlet.core.retry import RetryGovernor, RetryLimitRefusedError
from gauntlet.core.runner import Runner
from gauntlet.core.selector import Job, expand_entry_points, filter_jobs, generate_jobs
from gauntlet.gates.check import CheckGateExecutor
from gauntlet.gates.review import ReviewGateExecutor
from gauntlet.state.debug_log import DebugLog
from gauntlet.state.execution import (
    delete_execution_state,
    read_execution_state,
    resolve_fix_base,
    should_auto_clean,
    write_execution_state,
)
from gauntlet.state.lock import LockConflictError, acquire, release
from gauntlet.state.sequencer import LogSequencer
from gauntlet.state.store import ARCHIVE_DIR_NAME, archive_store
from gauntlet.status import GauntletStatus, RunOutcome, status_message
from gauntlet.vcs import Git, GitError

LOGGER = logging.getLogger(__name__)
PACKAGE_LOGGER_NAME = "gauntlet"
CONSOLE_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

AdapterFactory = Callable[[Sequence[str]], list[ReviewerAdapter]]
INFRASTRUCTURE_ERRORS = (GitError, NoHealthyAdaptersError, AdapterProcessError, OSError)


@dataclass(slots=True)
class RunOptions:
    gate: str | None = None
    commit: str | None = None
    uncommitted: bool = False
    base_branch: str | None = None


def is_ci(environ: Mapping[str, str]) -> bool:
    return environ.get("CI") == "true" or environ.get("GITHUB_ACTIONS") == "true"


def effective_base_branch(
    options: RunOptions, config: GauntletConfig, environ: Mapping[str, str]
) -> str:
    if options.base_branch:
        return options.base_branch
    github_base = environ.get("GITHUB_BASE_REF")
    if github_base and is_ci(environ):
        return github_base
    return config.project.base_branch


def store_exclude(store_dir: Path, repo_root: Path) -> list[str]:
    """Store path relative to the repository, kept out of diffs and snapshots."""
    try:
        relative = store_dir.resolve().relative_to(repo_root.resolve())
    except ValueError:
        return []
    return [relative.as_posix()]


class ConsoleTranscript:
    """Mirrors the package logger into ``console.<run>.log`` for one run."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._handler: logging.FileHandler | None = None
        self._previous_level: int | None = None

    def attach(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(self.path, encoding="utf-8")
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter(CONSOLE_LOG_FORMAT))
        logger = logging.getLogger(PACKAGE_LOGGER_NAME)
        if logger.getEffectiveLevel() > logging.INFO:
            self._previous_level = logger.level
            logger.setLevel(logging.INFO)
        logger.addHandler(handler)
        self._handler = handler

    def detach(self) -> None:
        if self._handler is None:
            return
        logger = logging.getLogger(PACKAGE_LOGGER_NAME)
        logger.removeHandler(self._handler)
        self._handler.close()
        self._handler = None
        if self._previous_level is not None:
            logger.setLevel(self._previous_level)
            self._previous_level = None


class RunExecutor:
    """One gauntlet invocation: lock, detect, run, record, archive."""

    def __init__(
        self,
        repo_root: Path,
        config: GauntletConfig,
        *,
        adapter_factory: AdapterFactory | None = None,
        environ: Mapping[str, str] | None = None,
        debug_log: DebugLog | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.config = config
        self.environ = os.environ if environ is None else environ
        self.store_dir = config.store_dir(self.repo_root)
        self.debug_log = debug_log or DebugLog(
            self.store_dir,
            enabled=config.debug_log.enabled,
            max_size_mb=config.debug_log.max_size_mb,
        )
        self.adapter_factory = adapter_factory or self._default_adapters
        self.git = Git(self.repo_root)
        self._transcript: ConsoleTranscript | None = None

    def _default_adapters(self, names: Sequence[str]) -> list[ReviewerAdapter]:
        return build_adapters(names, self.repo_root, event_hook=self._record)

    def _record(self, event: dict[str, Any]) -> None:
        self.debug_log.record(event)

    def _outcome(self, status: GauntletStatus, **kwargs: Any) -> RunOutcome:
        outcome = RunOutcome(status=status, message=status_message(status), **kwargs)
        self._record({"event": "run_outcome", "status": status, "run": outcome.run_number})
        return outcome

    def _carried_review_jobs(
        self,
        changes: ChangeSetResolver,
        jobs: Sequence[Job],
        previous: PreviousState,
        gate: str | None,
        ci: bool,
    ) -> list[Job]:
        """Review jobs with unaddressed violations that the fix diff no longer reaches."""
        scheduled = {job.file_id for job in jobs}
        pending = outstanding_job_ids(previous) - scheduled
        if not pending:
            return []
        full_scope = changes.resolve_scope(ChangeOptions())
        expanded = expand_entry_points(changes.changed_files(full_scope), self.config.entry_points)
        carried = [
            job
            for job in filter_jobs(generate_jobs(expanded, self.config, ci=ci), gate)
            if job.kind == "review" and job.file_id in pending
        ]
        for job in carried:
            LOGGER.info("Re-running %s: previous violations are still outstanding", job.id)
        return carried

    async def execute(self, options: RunOptions | None = None) -> RunOutcome:
        options = options or RunOptions()
        try:
            handle = acquire(self.store_dir)
        except LockConflictError as exc:
            LOGGER.warning("%s", exc)
            return RunOutcome(
                status="lock_conflict",
                message=status_message("lock_conflict"),
                error_message=f"Lock file exists: {exc.lock_path}",
            )

        try:
            return await self._execute_locked(options)
        except RetryLimitRefusedError as exc:
            LOGGER.error("%s", exc)
            return self._outcome(
                "retry_limit_exceeded", error_message=str(exc), run_number=exc.run_number
            )
        except INFRASTRUCTURE_ERRORS as exc:
            LOGGER.error("Infrastructure failure: %s", exc)
            return self._outcome("infrastructure_error", error_message=str(exc))
        except Exception as exc:
            LOGGER.exception("Gauntlet run failed")
            return self._outcome("error", error_message=str(exc))
        finally:
            if self._transcript is not None:
                self._transcript.detach()
                self._transcript = None
            release(handle)

    async def _execute_locked(self, options: RunOptions) -> RunOutcome:
        base_branch = effective_base_branch(options, self.config, self.environ)
        ci = is_ci(self.environ)
        exclude = store_exclude(self.store_dir, self.repo_root)

        mode = classify(self.store_dir)
        is_rerun = mode == "rerun" and not options.commit
        state = read_execution_state(self.store_dir)
        if mode == "first_run":
            decision = should_auto_clean(state, self.git, base_branch)
            if decision.clean:
                LOGGER.info("Auto-cleaning logs (%s)", decision.reason)
                self._record({"event": "clean", "kind": "auto", "reason": decision.reason})
                archive_store(self.store_dir)
                delete_execution_state(self.store_dir)
                state = None

        sequencer = LogSequencer.open(self.store_dir)
        run_number = sequencer.run_number
        governor = RetryGovernor(self.config.project.max_retries)
        governor.check_attempt(run_number)

        transcript = ConsoleTranscript(sequencer.console_path())
        self._transcript = transcript
        transcript.attach()
        console_log = str(sequencer.console_path())
        LOGGER.info("Gauntlet run %d (%s)", run_number, "rerun" if is_rerun else "first run")

        change_options = ChangeOptions()
        if is_rerun:
            LOGGER.info("Existing logs detected; running in verification mode")
            change_options.uncommitted = True
            if state is not None and state.working_tree_ref:
                change_options.fix_base = state.working_tree_ref
        elif mode == "first_run" and state is not None:
            change_options.fix_base = resolve_fix_base(state, self.git, base_branch)
        if options.commit or options.uncommitted:
            change_options.commit = options.commit
            change_options.uncommitted = options.uncommitted
        if options.commit:
            change_options.fix_base = None

        changes = ChangeSetResolver(self.git, base_branch, exclude=exclude, ci=ci)
        scope = changes.resolve_scope(change_options)
        LOGGER.info("Detecting changes (%s)", scope.description)
        changed_files = changes.changed_files(scope)
        if not changed_files:
            LOGGER.info("No changes detected")
            return self._outcome(
                "no_changes", run_number=run_number, console_log_path=console_log
            )
        LOGGER.info("Found %d changed file(s)", len(changed_files))

        expanded = expand_entry_points(changed_files, self.config.entry_points)
        jobs = filter_jobs(generate_jobs(expanded, self.config, ci=ci), options.gate)
        previous = load_previous_state(self.store_dir) if is_rerun else {}
        if is_rerun:
            jobs.extend(self._carried_review_jobs(changes, jobs, previous, options.gate, ci))
        if not jobs:
            LOGGER.info("No applicable gates for these changes")
            return self._outcome(
                "no_applicable_gates", run_number=run_number, console_log_path=console_log
            )

        stats = changes.diff_stats(scope)
        self._record(
            {
                "event": "run_start",
                "run": run_number,
                "mode": "verification" if is_rerun else "full",
                "gates": len(jobs),
                "diff": stats.to_dict(),
            }
        )
        LOGGER.info("Running %d gate(s)", len(jobs))

        runner = Runner(
            check_executor=CheckGateExecutor(self.repo_root, event_hook=self._record),
            review_executor=ReviewGateExecutor(
                repo_root=self.repo_root,
                changes=changes,
                scope=scope,
                sequencer=sequencer,
                is_rerun=is_rerun,
                rerun_threshold=self.config.project.rerun_new_issue_threshold,
                allow_parallel=self.config.project.allow_parallel,
                event_hook=self._record,
            ),
            sequencer=sequencer,
            adapter_factory=self.adapter_factory,
            default_preference=self.config.project.cli_preference,
            previous_state=previous,
            allow_parallel=self.config.project.allow_parallel,
            event_hook=self._record,
        )
        result = await runner.run(jobs)

        write_execution_state(self.store_dir, self.git, exclude=exclude)
        status = governor.final_status(
            all_passed=result.all_passed,
            any_skipped=count_skipped(previous) > 0,
            run_number=run_number,
        )
        for gate in result.results:
            if not gate.passed:
                LOGGER.info("Gate %s %s: %s", gate.job_id, gate.status, gate.message or "")
        LOGGER.info("Run %d finished: %s", run_number, status)

        if status == "passed":
            transcript.detach()
            self._record({"event": "clean", "kind": "auto", "reason": "all_passed"})
            archive_store(self.store_dir)
            console_log = str(self.store_dir / ARCHIVE_DIR_NAME / sequencer.console_path().name)
        return self._outcome(
            status,
            run_number=run_number,
            console_log_path=console_log,
            gate_results=result.results,
        )
