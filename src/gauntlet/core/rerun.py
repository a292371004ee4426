from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from gauntlet.gates.result import VIOLATION_STATUSES, Violation
from gauntlet.state.sequencer import parse_review_filename, parse_run_filename
from gauntlet.state.store import has_result_files, is_console_log, result_files

LOGGER = logging.getLogger(__name__)

RunMode = Literal["first_run", "rerun"]
CHECK_FAILURE_MARKERS = ("Result: fail", "Result: error", "Command failed:")


@dataclass(slots=True)
class SlotState:
    violations: list[Violation] = field(default_factory=list)
    pass_iteration: int | None = None
    skipped: int = 0
    adapter: str | None = None
    run_number: int | None = None

    @property
    def passed(self) -> bool:
        return self.pass_iteration is not None

    @property
    def outstanding(self) -> list[Violation]:
        return [violation for violation in self.violations if violation.status == "new"]


PreviousState = dict[str, dict[int, SlotState]]


@dataclass(slots=True)
class CheckFailure:
    job_id: str
    log_path: Path
    run_number: int
    excerpt: list[str] = field(default_factory=list)


def classify(store_dir: Path) -> RunMode:
    return "rerun" if has_result_files(store_dir) else "first_run"


def filter_violations(
    violations: list[Violation], *, source: str = ""
) -> tuple[list[Violation], int]:
    """Keep fixed items for verification and unknown/new items as outstanding."""
    kept: list[Violation] = []
    skipped = 0
    for violation in violations:
        if violation.status == "skipped":
            skipped += 1
            continue
        if violation.status not in VIOLATION_STATUSES:
            LOGGER.warning(
                "Unknown violation status %r in %s; treating it as new",
                violation.status,
                source or "previous results",
            )
            violation.status = "new"
        kept.append(violation)
    return kept, skipped


def parse_result_payload(
    payload: dict[str, Any], run_number: int, *, source: str = ""
) -> SlotState:
    status = payload.get("status")
    adapter = payload.get("adapter") if isinstance(payload.get("adapter"), str) else None
    if status == "pass":
        return SlotState(pass_iteration=run_number, adapter=adapter, run_number=run_number)
    if status == "skipped_prior_pass":
        carried = payload.get("passIteration")
        pass_iteration = carried if isinstance(carried, int) else run_number
        return SlotState(pass_iteration=pass_iteration, adapter=adapter, run_number=run_number)

    raw = payload.get("violations")
    violations: list[Violation] = []
    if isinstance(raw, list):
        violations = [Violation.from_dict(item) for item in raw if isinstance(item, dict)]
    kept, skipped = filter_violations(violations, source=source)
    if not violations:
        kept = [
            Violation(
                file="unknown",
                line=None,
                issue="Previous review failed without reporting specific violations",
                priority="high",
            )
        ]
    return SlotState(violations=kept, skipped=skipped, adapter=adapter, run_number=run_number)


def load_previous_state(store_dir: Path) -> PreviousState:
    latest: dict[tuple[str, int], tuple[int, Path]] = {}
    for path in result_files(store_dir):
        parsed = parse_review_filename(path.name)
        if parsed is None or parsed.ext != "json":
            continue
        key = (parsed.job_id, parsed.review_index)
        current = latest.get(key)
        if current is None or parsed.run_number > current[0]:
            latest[key] = (parsed.run_number, path)

    state: PreviousState = {}
    for (job_id, review_index), (run_number, path) in sorted(latest.items()):
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Skipping unreadable result file %s: %s", path, exc)
            continue
        if not isinstance(payload, dict):
            LOGGER.warning("Skipping malformed result file %s", path)
            continue
        slot = parse_result_payload(payload, run_number, source=path.name)
        state.setdefault(job_id, {})[review_index] = slot
    return state


def load_check_failures(store_dir: Path) -> dict[str, CheckFailure]:
    latest: dict[str, tuple[int, Path]] = {}
    for path in result_files(store_dir):
        if path.suffix != ".log" or is_console_log(path.name):
            continue
        if parse_review_filename(path.name) is not None:
            continue
        parsed = parse_run_filename(path.name)
        if parsed is None:
            continue
        current = latest.get(parsed.prefix)
        if current is None or parsed.run_number > current[0]:
            latest[parsed.prefix] = (parsed.run_number, path)

    failures: dict[str, CheckFailure] = {}
    for prefix, (run_number, path) in sorted(latest.items()):
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            LOGGER.warning("Skipping unreadable log %s: %s", path, exc)
            continue
        if not any(marker in content for marker in CHECK_FAILURE_MARKERS):
            continue
        excerpt = [line for line in content.splitlines() if line.strip()][-20:]
        failures[prefix] = CheckFailure(
            job_id=prefix, log_path=path, run_number=run_number, excerpt=excerpt
        )
    return failures


def count_skipped(previous: PreviousState) -> int:
    return sum(slot.skipped for slots in previous.values() for slot in slots.values())


def outstanding_job_ids(previous: PreviousState) -> set[str]:
    """Review jobs whose last iteration left violations nobody marked fixed or skipped."""
    return {
        job_id
        for job_id, slots in previous.items()
        if any(slot.outstanding for slot in slots.values())
    }
