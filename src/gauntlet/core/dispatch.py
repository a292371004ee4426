from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from gauntlet.adapters.base import ReviewerAdapter
from gauntlet.core.rerun import SlotState
from gauntlet.gates.result import GateStatus, SlotResult


class NoHealthyAdaptersError(RuntimeError):
    """Raised when a review gate has no reviewer adapter to dispatch to."""

    def __init__(self, review: str | None = None, tried: Sequence[str] = ()) -> None:
        message = "no healthy adapters available"
        if review:
            message = f"{message} for review '{review}'"
        if tried:
            message = f"{message} (tried: {', '.join(tried)})"
        super().__init__(message)
        self.review = review
        self.tried = list(tried)


@dataclass(frozen=True, slots=True)
class SlotAssignment:
    review_index: int
    adapter: ReviewerAdapter


@dataclass(slots=True)
class SlotPlan:
    assignment: SlotAssignment
    run: bool
    previous: SlotState | None = None

    @property
    def review_index(self) -> int:
        return self.assignment.review_index

    @property
    def adapter(self) -> ReviewerAdapter:
        return self.assignment.adapter


def assign(healthy_adapters: Sequence[ReviewerAdapter], num_reviews: int) -> list[SlotAssignment]:
    if not healthy_adapters:
        raise NoHealthyAdaptersError()
    pool_size = len(healthy_adapters)
    return [
        SlotAssignment(review_index=index, adapter=healthy_adapters[(index - 1) % pool_size])
        for index in range(1, num_reviews + 1)
    ]


def plan_slots(
    assignments: Sequence[SlotAssignment],
    previous: Mapping[int, SlotState] | None = None,
) -> list[SlotPlan]:
    """Skip slots that passed last iteration, always keeping at least one running."""
    ordered = sorted(assignments, key=lambda item: item.review_index)
    previous = previous or {}
    plans = [
        SlotPlan(assignment=item, run=True, previous=previous.get(item.review_index))
        for item in ordered
    ]
    if len(plans) <= 1:
        return plans

    for plan in plans:
        if plan.previous is not None and plan.previous.passed:
            plan.run = False
    if not any(plan.run for plan in plans):
        plans[0].run = True
    return plans


def merge_verdict(slot_results: Sequence[SlotResult]) -> tuple[GateStatus, str]:
    skipped = [slot for slot in slot_results if slot.status == "skipped_prior_pass"]
    active = [slot for slot in slot_results if slot.status != "skipped_prior_pass"]

    if any(slot.status == "error" for slot in active):
        status: GateStatus = "error"
        errored = [f"@{slot.review_index}" for slot in active if slot.status == "error"]
        message = f"Review errored in slot(s) {', '.join(errored)}"
    elif any(slot.status == "fail" for slot in active):
        status = "fail"
        count = sum(len(slot.violations) for slot in active if slot.status == "fail")
        message = f"Found {count} violation(s)"
    else:
        status = "pass"
        message = "Passed"

    if skipped:
        message = f"{message} ({len(skipped)} skipped due to prior pass)"
    return status, message
