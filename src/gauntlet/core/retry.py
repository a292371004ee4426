from __future__ import annotations

from dataclasses import dataclass

from gauntlet.status import GauntletStatus


class RetryLimitRefusedError(RuntimeError):
    """Raised when an attempt arrives after the retry budget is spent."""

    def __init__(self, run_number: int, allowed_runs: int) -> None:
        super().__init__(
            f"Retry limit exceeded: run {run_number} exceeds the {allowed_runs} allowed "
            "attempt(s). Run `gauntlet clean` to archive logs and start over."
        )
        self.run_number = run_number
        self.allowed_runs = allowed_runs


@dataclass(slots=True)
class RetryGovernor:
    max_retries: int = 3

    @property
    def allowed_runs(self) -> int:
        return self.max_retries + 1

    def check_attempt(self, run_number: int) -> None:
        if run_number > self.allowed_runs:
            raise RetryLimitRefusedError(run_number, self.allowed_runs)

    def is_final_attempt(self, run_number: int) -> bool:
        return run_number >= self.allowed_runs

    def final_status(
        self, *, all_passed: bool, any_skipped: bool, run_number: int
    ) -> GauntletStatus:
        if all_passed:
            return "passed_with_warnings" if any_skipped else "passed"
        if self.is_final_attempt(run_number):
            return "retry_limit_exceeded"
        return "failed"
