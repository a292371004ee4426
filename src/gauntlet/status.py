from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

GauntletStatus = Literal[
    "passed",
    "passed_with_warnings",
    "no_applicable_gates",
    "no_changes",
    "failed",
    "retry_limit_exceeded",
    "lock_conflict",
    "error",
    "infrastructure_error",
    "no_config",
    "stop_hook_active",
    "stop_hook_disabled",
    "interval_not_elapsed",
    "invalid_input",
]

FAILING_EXIT_STATUSES = frozenset(
    {"failed", "retry_limit_exceeded", "lock_conflict", "error", "infrastructure_error"}
)

STATUS_MESSAGES: dict[str, str] = {
    "passed": "All gates passed.",
    "passed_with_warnings": "Passed with warnings: some issues were skipped.",
    "no_applicable_gates": "No applicable gates for these changes.",
    "no_changes": "No changes detected.",
    "failed": "Issues must be fixed before stopping.",
    "retry_limit_exceeded": (
        "Retry limit exceeded. Run `gauntlet clean` to archive logs and start over."
    ),
    "lock_conflict": "Another gauntlet run is already in progress.",
    "error": "Gauntlet hit an unexpected error; allowing stop.",
    "infrastructure_error": "Gauntlet tooling is unavailable; allowing stop.",
    "no_config": "Not a gauntlet project (no .gauntlet/config.toml found).",
    "stop_hook_active": "Stop hook is already running; allowing stop.",
    "stop_hook_disabled": "Stop hook is disabled by configuration.",
    "interval_not_elapsed": "Run interval has not elapsed since the last run.",
    "invalid_input": "Invalid stop-hook input; allowing stop.",
}


def is_blocking_status(status: str) -> bool:
    return status == "failed"


def exit_code_for(status: str) -> int:
    return 1 if status in FAILING_EXIT_STATUSES else 0


def status_message(status: str) -> str:
    return STATUS_MESSAGES.get(status, f"Unknown status: {status}")


@dataclass(slots=True)
class RunOutcome:
    status: GauntletStatus
    message: str
    error_message: str | None = None
    run_number: int | None = None
    console_log_path: str | None = None
    gate_results: list[Any] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "error_message": self.error_message,
            "run_number": self.run_number,
            "console_log_path": self.console_log_path,
            "gates": [result.to_dict() for result in self.gate_results],
        }
