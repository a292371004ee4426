from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from gauntlet.config import (
    ConfigError,
    GauntletConfig,
    default_config_path,
    global_config_path,
    load_config,
    load_global_stop_hook,
    resolve_stop_hook_settings,
)
from gauntlet.core.executor import RunExecutor
from gauntlet.core.rerun import load_check_failures
from gauntlet.state.debug_log import DebugLog
from gauntlet.state.execution import minutes_since_last_run, read_execution_state
from gauntlet.state.lock import is_locked
from gauntlet.state.sequencer import sanitize_job_id
from gauntlet.state.store import has_result_files
from gauntlet.status import GauntletStatus, RunOutcome, is_blocking_status, status_message

LOGGER = logging.getLogger(__name__)

STOP_HOOK_ACTIVE_ENV = "GAUNTLET_STOP_HOOK_ACTIVE"

ExecutorFactory = Callable[[Path, GauntletConfig], RunExecutor]


class InvalidHookInputError(ValueError):
    pass


@dataclass(slots=True)
class HookInput:
    session_id: str | None = None
    transcript_path: str | None = None
    cwd: str | None = None
    hook_event_name: str | None = None
    stop_hook_active: bool = False


def parse_hook_input(raw: str) -> HookInput:
    """Empty input is allowed; anything else must be a JSON object."""
    if not raw.strip():
        return HookInput()
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise InvalidHookInputError(f"Hook input is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise InvalidHookInputError("Hook input must be a JSON object")

    def _text(key: str) -> str | None:
        value = payload.get(key)
        return value if isinstance(value, str) and value else None

    return HookInput(
        session_id=_text("session_id"),
        transcript_path=_text("transcript_path"),
        cwd=_text("cwd"),
        hook_event_name=_text("hook_event_name"),
        stop_hook_active=payload.get("stop_hook_active") is True,
    )


@dataclass(slots=True)
class HookResponse:
    status: GauntletStatus
    message: str
    reason: str | None = None

    @property
    def blocking(self) -> bool:
        return is_blocking_status(self.status)

    @property
    def decision(self) -> str:
        return "block" if self.blocking else "approve"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "decision": self.decision,
            "status": self.status,
            "message": self.message,
            "stopReason": self.reason if self.blocking and self.reason else self.message,
        }
        if self.blocking and self.reason:
            payload["reason"] = self.reason
        return payload


def build_remediation(outcome: RunOutcome, store_dir: Path | None = None) -> str:
    lines = [
        "**GAUNTLET FAILED: fix the reported issues before stopping.**",
        "",
        "The stop hook re-runs the gauntlet automatically to verify your fixes.",
    ]
    if outcome.console_log_path:
        lines.append(f"Console log: `{outcome.console_log_path}`")

    check_failures = load_check_failures(store_dir) if store_dir is not None else {}
    failed = [result for result in outcome.gate_results if not result.passed]
    if failed:
        lines.extend(["", "Failed gates:"])
        for result in failed:
            lines.append(f"- {result.job_id}: {result.status} - {result.message or ''}".rstrip())
            for path in result.json_paths():
                lines.append(f"  - Review: {path}")
            for path in result.log_paths():
                lines.append(f"  - Log: {path}")
            failure = check_failures.get(sanitize_job_id(result.job_id))
            if failure is not None and failure.excerpt:
                lines.append("  - Output tail:")
                lines.extend(f"      {line}" for line in failure.excerpt[-5:])

    lines.extend(
        [
            "",
            "To address failures:",
            "1. For check failures, read the `.log` file listed for the gate.",
            "2. For review failures, read the `.json` file listed for each reviewer slot.",
            '3. In that JSON, set `"status": "fixed"` with a short `"result"` for each '
            "issue you fix.",
            '4. Set `"status": "skipped"` with a short reason in `"result"` for issues you '
            "decide not to fix.",
            "",
            "Stop conditions: the gauntlet passes, passes with warnings, or reports that "
            "the retry limit was exceeded (then run `gauntlet clean`).",
        ]
    )
    return "\n".join(lines)


class StopHookResolver:
    """Decides whether an agent may stop, running the gauntlet when needed."""

    def __init__(
        self,
        cwd: Path,
        *,
        environ: Mapping[str, str] | None = None,
        executor_factory: ExecutorFactory | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.cwd = cwd
        self.environ = os.environ if environ is None else environ
        self.executor_factory = executor_factory or self._default_executor
        self.now = now or (lambda: datetime.now(UTC))

    def _default_executor(self, repo_root: Path, config: GauntletConfig) -> RunExecutor:
        return RunExecutor(repo_root, config, environ=self.environ)

    @staticmethod
    def _respond(status: GauntletStatus, message: str | None = None, **kwargs: Any) -> HookResponse:
        response = HookResponse(status=status, message=message or status_message(status), **kwargs)
        LOGGER.info("Stop hook decision: %s (%s)", response.decision, status)
        return response

    async def resolve(self, raw_input: str) -> HookResponse:
        try:
            hook_input = parse_hook_input(raw_input)
        except InvalidHookInputError as exc:
            LOGGER.warning("%s", exc)
            return self._respond("invalid_input")

        if hook_input.stop_hook_active or self.environ.get(STOP_HOOK_ACTIVE_ENV):
            return self._respond("stop_hook_active")

        repo_root = Path(hook_input.cwd) if hook_input.cwd else self.cwd
        config_path = default_config_path(repo_root)
        if not config_path.exists():
            return self._respond("no_config")

        try:
            return await self._resolve_project(repo_root, config_path)
        except Exception as exc:
            LOGGER.exception("Stop hook failed")
            return self._respond("error", f"Stop hook error: {exc}")

    async def _resolve_project(self, repo_root: Path, config_path: Path) -> HookResponse:
        try:
            config = load_config(config_path)
        except ConfigError as exc:
            return self._respond("error", f"Stop hook error: {exc}")

        settings = resolve_stop_hook_settings(
            config.stop_hook,
            load_global_stop_hook(global_config_path(self.environ)),
            self.environ,
        )
        if not settings.enabled:
            return self._respond("stop_hook_disabled")

        store_dir = config.store_dir(repo_root)
        debug_log = DebugLog(
            store_dir, enabled=config.debug_log.enabled, max_size_mb=config.debug_log.max_size_mb
        )
        debug_log.record({"event": "command", "name": "stop-hook"})

        if is_locked(store_dir):
            debug_log.record(
                {"event": "stop_hook", "decision": "approve", "status": "lock_conflict"}
            )
            return self._respond("lock_conflict")

        if not has_result_files(store_dir):
            state = read_execution_state(store_dir)
            elapsed = minutes_since_last_run(state, self.now()) if state else None
            interval = settings.run_interval_minutes
            if elapsed is not None and elapsed < interval:
                debug_log.record(
                    {"event": "stop_hook", "decision": "approve", "status": "interval_not_elapsed"}
                )
                return self._respond(
                    "interval_not_elapsed",
                    f"Run interval ({interval} min) has not elapsed since the last run.",
                )

        outcome = await self.executor_factory(repo_root, config).execute()
        message = outcome.message
        if outcome.error_message and outcome.status in {"error", "infrastructure_error"}:
            message = f"{message} {outcome.error_message}"
        reason = None
        if is_blocking_status(outcome.status):
            reason = build_remediation(outcome, store_dir)
        response = self._respond(outcome.status, message, reason=reason)
        debug_log.record(
            {"event": "stop_hook", "decision": response.decision, "status": outcome.status}
        )
        return response
