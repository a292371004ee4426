from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from gauntlet.adapters.base import ReviewerAdapter
from gauntlet.config import ReviewGateConfig
from gauntlet.core.dispatch import NoHealthyAdaptersError
from gauntlet.core.rerun import PreviousState
from gauntlet.core.selector import Job
from gauntlet.gates.check import CheckGateExecutor
from gauntlet.gates.result import GateResult, JobLog
from gauntlet.gates.review import ReviewGateExecutor
from gauntlet.state.sequencer import LogSequencer

LOGGER = logging.getLogger(__name__)

AdapterFactory = Callable[[Sequence[str]], list[ReviewerAdapter]]
RunnerEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RunnerOutcome:
    results: list[GateResult] = field(default_factory=list)

    @property
    def all_passed(self) -> bool:
        return bool(self.results) and all(result.passed for result in self.results)


class Runner:
    """Runs one iteration's jobs: parallel ones together, the rest in order."""

    def __init__(
        self,
        *,
        check_executor: CheckGateExecutor,
        review_executor: ReviewGateExecutor,
        sequencer: LogSequencer,
        adapter_factory: AdapterFactory,
        default_preference: Sequence[str],
        previous_state: PreviousState | None = None,
        allow_parallel: bool = True,
        event_hook: RunnerEventHook | None = None,
    ) -> None:
        self.check_executor = check_executor
        self.review_executor = review_executor
        self.sequencer = sequencer
        self.adapter_factory = adapter_factory
        self.default_preference = list(default_preference)
        self.previous_state = previous_state or {}
        self.allow_parallel = allow_parallel
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    async def healthy_adapters(self, review: ReviewGateConfig) -> list[ReviewerAdapter]:
        names = review.cli_preference or self.default_preference
        adapters = self.adapter_factory(names)
        healths = await asyncio.gather(*(adapter.check_health() for adapter in adapters))
        healthy: list[ReviewerAdapter] = []
        for adapter, health in zip(adapters, healths):
            if health.healthy:
                healthy.append(adapter)
            else:
                reason = health.message or health.status
                LOGGER.info("Skipping reviewer %s: %s", adapter.name, reason)
        return healthy

    async def preflight(
        self, jobs: Sequence[Job]
    ) -> tuple[dict[str, GateResult], dict[str, list[ReviewerAdapter]]]:
        failures: dict[str, GateResult] = {}
        healthy_by_review: dict[str, list[ReviewerAdapter]] = {}
        for job in jobs:
            if job.check is not None:
                error = await self.check_executor.preflight(
                    job.check.command, job.working_directory
                )
                if error is None:
                    continue
                log_path = self.sequencer.job_path(job.id)
                log = JobLog(log_path)
                log.write(f"Preflight failed for check: {job.name}")
                log.write(f"Result: error - {error}")
                failures[job.id] = GateResult(
                    job_id=job.id, status="error", message=error, log_path=str(log_path)
                )
                LOGGER.warning("Preflight failed for %s: %s", job.id, error)
            elif job.review is not None and job.name not in healthy_by_review:
                healthy = await self.healthy_adapters(job.review)
                if not healthy:
                    tried = job.review.cli_preference or self.default_preference
                    raise NoHealthyAdaptersError(job.name, tried)
                healthy_by_review[job.name] = healthy
        return failures, healthy_by_review

    async def run(self, jobs: Sequence[Job]) -> RunnerOutcome:
        failures, healthy_by_review = await self.preflight(jobs)

        async def _execute(job: Job) -> GateResult:
            if job.id in failures:
                return failures[job.id]
            self._emit({"event": "gate_start", "job_id": job.id, "kind": job.kind})
            if job.check is not None:
                result = await self.check_executor.run(
                    job.id,
                    job.name,
                    job.check.command,
                    job.working_directory,
                    self.sequencer.job_path(job.id),
                    timeout=job.timeout,
                )
            else:
                result = await self.review_executor.run(
                    job,
                    healthy_by_review[job.name],
                    self.previous_state.get(job.file_id),
                )
            LOGGER.info("%s: %s - %s", job.id, result.status, result.message or "")
            self._emit(
                {
                    "event": "gate_result",
                    "job_id": job.id,
                    "status": result.status,
                    "duration": round(result.duration, 3),
                }
            )
            return result

        parallel_jobs = [job for job in jobs if self.allow_parallel and job.parallel]
        sequential_jobs = [job for job in jobs if job not in parallel_jobs]

        async def _sequential() -> list[GateResult]:
            results: list[GateResult] = []
            for job in sequential_jobs:
                result = await _execute(job)
                results.append(result)
                if job.fail_fast and not result.passed:
                    LOGGER.info("Stopping sequential gates after %s (fail_fast)", job.id)
                    break
            return results

        gathered = await asyncio.gather(*(_execute(job) for job in parallel_jobs), _sequential())
        by_id: dict[str, GateResult] = {}
        for item in gathered[:-1]:
            by_id[item.job_id] = item
        for item in gathered[-1]:
            by_id[item.job_id] = item
        return RunnerOutcome(results=[by_id[job.id] for job in jobs if job.id in by_id])
