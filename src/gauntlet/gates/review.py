from __future__ import annotations

import asyncio
import json
import re
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from gauntlet.adapters.base import AdapterExecutionError, AdapterProcessError, ReviewerAdapter
from gauntlet.config import PRIORITIES
from gauntlet.core.changes import ChangeSetResolver, DiffScope
from gauntlet.core.dispatch import SlotPlan, assign, merge_verdict, plan_slots
from gauntlet.core.rerun import SlotState
from gauntlet.core.selector import Job
from gauntlet.gates.result import GateResult, JobLog, SlotResult, Violation
from gauntlet.state.sequencer import LogSequencer

ReviewEventHook = Callable[[dict[str, Any]], None]

FENCED_JSON_PATTERN = re.compile(r"```json\s*(.*?)```", re.DOTALL)
HUNK_HEADER_PATTERN = re.compile(r"^@@ -\d+(?:,\d+)? \+(\d+)(?:,\d+)? @@")
PRIORITY_RANK = {name: rank for rank, name in enumerate(PRIORITIES)}

JSON_OUTPUT_INSTRUCTIONS = """\
Respond with a single JSON object inside a ```json fenced block, shaped like:

{
  "status": "pass" | "fail",
  "violations": [
    {
      "file": "path/relative/to/repo",
      "line": 42,
      "issue": "what is wrong",
      "fix": "how to fix it",
      "priority": "critical" | "high" | "medium" | "low",
      "status": "new"
    }
  ]
}

Use "pass" with an empty violations list when you find nothing to fix.
Only report issues on lines added or changed in the diff."""


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class ReviewVerdict:
    status: str
    violations: list[Violation] = field(default_factory=list)
    message: str = ""


def _format_violation(violation: Violation) -> str:
    line = f"- {violation.location()} [{violation.priority}] {violation.issue}"
    if violation.fix:
        line = f"{line} (suggested fix: {violation.fix})"
    return line


def build_prompt(base_prompt: str, previous: SlotState | None = None) -> str:
    sections = [base_prompt.strip()]
    if previous is not None and previous.violations:
        fixed = [item for item in previous.violations if item.status == "fixed"]
        outstanding = [item for item in previous.violations if item.status != "fixed"]
        lines = [
            "--- PREVIOUS ITERATION ---",
            "These issues were reported when this code was last reviewed.",
        ]
        if fixed:
            lines.append("Verify that these issues, marked as fixed, are actually resolved:")
            lines.extend(_format_violation(item) for item in fixed)
        if outstanding:
            lines.append("These issues were not addressed; report them again if they still apply:")
            lines.extend(_format_violation(item) for item in outstanding)
        sections.append("\n".join(lines))
    sections.append(JSON_OUTPUT_INSTRUCTIONS)
    return "\n\n".join(section for section in sections if section)


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def extract_json_payload(output: str) -> dict[str, Any] | None:
    for block in reversed(FENCED_JSON_PATTERN.findall(output)):
        payload = _loads_object(block.strip())
        if payload is not None and "status" in payload:
            return payload

    decoder = json.JSONDecoder()
    index = output.rfind("{")
    while index != -1:
        try:
            candidate, _ = decoder.raw_decode(output[index:])
        except json.JSONDecodeError:
            candidate = None
        if isinstance(candidate, dict) and "status" in candidate:
            return candidate
        index = output.rfind("{", 0, index)

    first, last = output.find("{"), output.rfind("}")
    if 0 <= first < last:
        payload = _loads_object(output[first : last + 1])
        if payload is not None and "status" in payload:
            return payload
    return None


def evaluate_output(output: str) -> ReviewVerdict:
    payload = extract_json_payload(output)
    if payload is None:
        return ReviewVerdict(status="error", message="Could not parse reviewer output as JSON")
    status = payload.get("status")
    if status not in {"pass", "fail"}:
        return ReviewVerdict(status="error", message=f"Invalid review status: {status!r}")
    raw = payload.get("violations")
    violations: list[Violation] = []
    if isinstance(raw, list):
        violations = [Violation.from_dict(item) for item in raw if isinstance(item, dict)]
    for violation in violations:
        violation.status = "new"
    if status == "pass":
        return ReviewVerdict(status="pass", violations=[], message="Passed")
    return ReviewVerdict(
        status="fail", violations=violations, message=f"Found {len(violations)} violation(s)"
    )


def added_lines(diff: str) -> dict[str, set[int]]:
    """Map each file in a unified diff to the line numbers it adds."""
    lines_by_file: dict[str, set[int]] = {}
    current: set[int] | None = None
    line_number = 0
    for line in diff.splitlines():
        if line.startswith("+++ "):
            target = line[4:].strip()
            if target == "/dev/null":
                current = None
                continue
            if target.startswith("b/"):
                target = target[2:]
            current = lines_by_file.setdefault(target, set())
            continue
        if line.startswith("--- ") or line.startswith("diff --git"):
            continue
        header = HUNK_HEADER_PATTERN.match(line)
        if header:
            line_number = int(header.group(1))
            continue
        if current is None:
            continue
        if line.startswith("+"):
            current.add(line_number)
            line_number += 1
        elif line.startswith("-") or line.startswith("\\"):
            continue
        else:
            line_number += 1
    return lines_by_file


def _normalize_violation_path(path: str, repo_root: Path | None) -> str:
    cleaned = path.replace("\\", "/")
    if repo_root is not None:
        root = f"{repo_root.as_posix().rstrip('/')}/"
        if cleaned.startswith(root):
            cleaned = cleaned[len(root) :]
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned


def filter_to_diff(
    violations: Sequence[Violation], diff: str, repo_root: Path | None = None
) -> list[Violation]:
    changed = added_lines(diff)
    kept: list[Violation] = []
    for violation in violations:
        if violation.line is None:
            kept.append(violation)
            continue
        lines = changed.get(_normalize_violation_path(violation.file, repo_root))
        if lines is not None and violation.line in lines:
            kept.append(violation)
    return kept


def apply_rerun_threshold(violations: Sequence[Violation], threshold: str) -> list[Violation]:
    limit = PRIORITY_RANK.get(threshold, len(PRIORITIES) - 1)
    return [
        violation
        for violation in violations
        if violation.status != "new"
        or PRIORITY_RANK.get(violation.priority, PRIORITY_RANK["medium"]) <= limit
    ]


class ReviewGateExecutor:
    def __init__(
        self,
        *,
        repo_root: Path,
        changes: ChangeSetResolver,
        scope: DiffScope,
        sequencer: LogSequencer,
        is_rerun: bool = False,
        rerun_threshold: str = "high",
        allow_parallel: bool = True,
        event_hook: ReviewEventHook | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.changes = changes
        self.scope = scope
        self.sequencer = sequencer
        self.is_rerun = is_rerun
        self.rerun_threshold = rerun_threshold
        self.allow_parallel = allow_parallel
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @staticmethod
    def _write_json(path: Path, payload: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    def _skip_slot(self, job: Job, plan: SlotPlan) -> SlotResult:
        pass_iteration = plan.previous.pass_iteration if plan.previous else None
        json_path = self.sequencer.review_path(job.id, plan.adapter.name, plan.review_index, "json")
        self._write_json(
            json_path,
            {
                "adapter": plan.adapter.name,
                "timestamp": _utcnow_iso(),
                "status": "skipped_prior_pass",
                "passIteration": pass_iteration,
                "rawOutput": "",
                "violations": [],
            },
        )
        self._emit(
            {
                "event": "review_slot_skipped",
                "job_id": job.id,
                "review_index": plan.review_index,
                "pass_iteration": pass_iteration,
            }
        )
        return SlotResult(
            review_index=plan.review_index,
            adapter=plan.adapter.name,
            status="skipped_prior_pass",
            message=f"Skipped: passed in run {pass_iteration}",
            json_path=str(json_path),
            pass_iteration=pass_iteration,
        )

    def _carry_slot(self, job: Job, review_index: int, previous: SlotState) -> SlotResult:
        adapter = previous.adapter or "unknown"
        violations = previous.outstanding
        log_path = self.sequencer.review_path(job.id, adapter, review_index)
        json_path = self.sequencer.review_path(job.id, adapter, review_index, "json")
        log = JobLog(log_path)
        log.write(f"Starting review: {job.name} (slot @{review_index}, no new changes)")
        self._write_json(
            json_path,
            {
                "adapter": adapter,
                "timestamp": _utcnow_iso(),
                "status": "fail",
                "rawOutput": "",
                "violations": [violation.to_dict() for violation in violations],
            },
        )
        message = f"{len(violations)} violation(s) from run {previous.run_number} not addressed"
        log.write(f"Result: fail - {message}")
        self._emit(
            {
                "event": "review_slot_carried",
                "job_id": job.id,
                "review_index": review_index,
                "violations": len(violations),
            }
        )
        return SlotResult(
            review_index=review_index,
            adapter=adapter,
            status="fail",
            message=message,
            violations=violations,
            log_path=str(log_path),
            json_path=str(json_path),
        )

    async def _run_slot(self, job: Job, plan: SlotPlan, diff: str) -> SlotResult:
        review = job.review
        assert review is not None
        adapter = plan.adapter
        log_path = self.sequencer.review_path(job.id, adapter.name, plan.review_index)
        json_path = self.sequencer.review_path(job.id, adapter.name, plan.review_index, "json")
        log = JobLog(log_path)
        log.write(
            f"Starting review: {job.name} (adapter {adapter.name}, slot @{plan.review_index})"
        )
        self._emit(
            {
                "event": "review_slot_start",
                "job_id": job.id,
                "adapter": adapter.name,
                "review_index": plan.review_index,
            }
        )

        def _error(message: str) -> SlotResult:
            log.write(f"Result: error - {message}")
            return SlotResult(
                review_index=plan.review_index,
                adapter=adapter.name,
                status="error",
                message=message,
                log_path=str(log_path),
            )

        prompt = build_prompt(review.prompt, plan.previous if self.is_rerun else None)
        model = review.model_for(adapter.name)
        try:
            output = await asyncio.wait_for(
                adapter.invoke(prompt, diff, model=model, timeout=review.timeout),
                timeout=review.timeout,
            )
        except TimeoutError:
            limit = f" after {review.timeout:.0f}s" if review.timeout else ""
            return _error(f"Timed out{limit}")
        except AdapterProcessError as exc:
            log.write(f"Result: error - {exc}")
            raise
        except AdapterExecutionError as exc:
            return _error(str(exc))

        log.write_block(output)
        verdict = evaluate_output(output)
        if verdict.status == "error":
            return _error(verdict.message)

        violations = filter_to_diff(verdict.violations, diff, self.repo_root)
        if self.is_rerun:
            violations = apply_rerun_threshold(violations, self.rerun_threshold)
        status = verdict.status
        message = verdict.message
        if status == "fail":
            dropped = len(verdict.violations) - len(violations)
            if verdict.violations and not violations:
                status = "pass"
                message = f"Passed ({dropped} issue(s) outside the changes or below threshold)"
            else:
                message = f"Found {len(violations)} violation(s)"

        self._write_json(
            json_path,
            {
                "adapter": adapter.name,
                "timestamp": _utcnow_iso(),
                "status": status,
                "rawOutput": output,
                "violations": [violation.to_dict() for violation in violations],
            },
        )
        log.write(f"Result: {status} - {message}")
        return SlotResult(
            review_index=plan.review_index,
            adapter=adapter.name,
            status=status,  # type: ignore[arg-type]
            message=message,
            violations=violations,
            log_path=str(log_path),
            json_path=str(json_path),
        )

    async def run(
        self,
        job: Job,
        healthy_adapters: Sequence[ReviewerAdapter],
        previous: Mapping[int, SlotState] | None = None,
    ) -> GateResult:
        review = job.review
        assert review is not None
        started = time.monotonic()

        diff = self.changes.diff(self.scope, [job.entry_point])
        carried = {
            index: slot
            for index, slot in (previous or {}).items()
            if self.is_rerun and slot.outstanding
        }
        if not diff.strip() and carried:
            slot_results = [
                self._carry_slot(job, index, slot) for index, slot in sorted(carried.items())
            ]
            status, message = merge_verdict(slot_results)
            return GateResult(
                job_id=job.id,
                status=status,
                duration=time.monotonic() - started,
                message=f"{message} still outstanding with no new changes",
                sub_results=slot_results,
            )
        if not diff.strip():
            log_path = self.sequencer.job_path(job.id)
            log = JobLog(log_path)
            log.write(f"Starting review: {job.name}")
            log.write("Result: pass - No changes to review")
            return GateResult(
                job_id=job.id,
                status="pass",
                duration=time.monotonic() - started,
                message="No changes to review",
                log_path=str(log_path),
            )

        assignments = assign(healthy_adapters, review.num_reviews)
        plans = plan_slots(assignments, previous if self.is_rerun else None)

        skipped = [self._skip_slot(job, plan) for plan in plans if not plan.run]
        runnable = [plan for plan in plans if plan.run]
        if review.parallel and self.allow_parallel:
            ran = list(
                await asyncio.gather(*(self._run_slot(job, plan, diff) for plan in runnable))
            )
        else:
            ran = [await self._run_slot(job, plan, diff) for plan in runnable]

        slot_results = sorted([*skipped, *ran], key=lambda slot: slot.review_index)
        status, message = merge_verdict(slot_results)
        return GateResult(
            job_id=job.id,
            status=status,
            duration=time.monotonic() - started,
            message=message,
            sub_results=slot_results,
        )
