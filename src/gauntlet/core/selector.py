from __future__ import annotations

import fnmatch
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Literal

from gauntlet.config import CheckGateConfig, EntryPointConfig, GauntletConfig, ReviewGateConfig
from gauntlet.state.sequencer import sanitize_job_id

JobKind = Literal["check", "review"]
GLOB_CHARS = set("*?[")


@dataclass(slots=True)
class ExpandedEntryPoint:
    path: str
    config: EntryPointConfig


@dataclass(slots=True)
class Job:
    id: str
    kind: JobKind
    name: str
    entry_point: str
    working_directory: str
    check: CheckGateConfig | None = None
    review: ReviewGateConfig | None = None

    @property
    def file_id(self) -> str:
        return sanitize_job_id(self.id)

    @property
    def parallel(self) -> bool:
        if self.check is not None:
            return self.check.parallel
        return self.review.parallel if self.review is not None else False

    @property
    def fail_fast(self) -> bool:
        return self.check.fail_fast if self.check is not None else False

    @property
    def timeout(self) -> float | None:
        if self.check is not None:
            return self.check.timeout
        return self.review.timeout if self.review is not None else None


def _normalize(path: str) -> str:
    cleaned = path.replace("\\", "/").strip()
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned.rstrip("/") or "."


def _is_under(path: str, directory: str) -> bool:
    return directory == "." or path == directory or path.startswith(f"{directory}/")


def _matches_exclude(path: str, patterns: Iterable[str]) -> bool:
    for pattern in patterns:
        normalized = _normalize(pattern)
        if GLOB_CHARS & set(normalized):
            if fnmatch.fnmatch(path, normalized):
                return True
        elif _is_under(path, normalized):
            return True
    return False


def _parent_dirs(path: str) -> list[str]:
    parts = path.split("/")[:-1]
    return ["/".join(parts[: index + 1]) for index in range(len(parts))]


def expand_entry_points(
    changed_files: Sequence[str], entry_points: Sequence[EntryPointConfig]
) -> list[ExpandedEntryPoint]:
    expanded: list[ExpandedEntryPoint] = []
    seen: set[tuple[str, int]] = set()

    def _add(path: str, entry: EntryPointConfig) -> None:
        key = (path, id(entry))
        if key not in seen:
            seen.add(key)
            expanded.append(ExpandedEntryPoint(path=path, config=entry))

    for entry in entry_points:
        files = [
            _normalize(path)
            for path in changed_files
            if not _matches_exclude(_normalize(path), entry.exclude)
        ]
        if not files:
            continue
        pattern = _normalize(entry.path)

        if pattern == ".":
            _add(".", entry)
        elif pattern.endswith("/*") and not GLOB_CHARS & set(pattern[:-2]):
            parent = pattern[:-2]
            children = {
                path[len(parent) + 1 :].split("/", 1)[0]
                for path in files
                if path.startswith(f"{parent}/") and "/" in path[len(parent) + 1 :]
            }
            for child in sorted(children):
                _add(f"{parent}/{child}", entry)
        elif GLOB_CHARS & set(pattern):
            matches = sorted(
                {
                    directory
                    for path in files
                    for directory in _parent_dirs(path)
                    if fnmatch.fnmatch(directory, pattern)
                }
            )
            for directory in matches:
                _add(directory, entry)
        elif any(_is_under(path, pattern) for path in files):
            _add(pattern, entry)
    return expanded


def generate_jobs(
    expanded: Sequence[ExpandedEntryPoint], config: GauntletConfig, *, ci: bool = False
) -> list[Job]:
    jobs: list[Job] = []
    seen_checks: set[tuple[str, str]] = set()
    seen_reviews: set[str] = set()
    for item in expanded:
        for check_name in item.config.checks:
            check = config.checks[check_name]
            if ci and not check.run_in_ci:
                continue
            if not ci and not check.run_locally:
                continue
            working_directory = _normalize(check.working_directory or item.path)
            key = (check_name, working_directory)
            if key in seen_checks:
                continue
            seen_checks.add(key)
            jobs.append(
                Job(
                    id=f"check:{working_directory}:{check_name}",
                    kind="check",
                    name=check_name,
                    entry_point=item.path,
                    working_directory=working_directory,
                    check=check,
                )
            )
        for review_name in item.config.reviews:
            review = config.reviews[review_name]
            if ci and not review.run_in_ci:
                continue
            if not ci and not review.run_locally:
                continue
            job_id = f"review:{item.path}:{review_name}"
            if job_id in seen_reviews:
                continue
            seen_reviews.add(job_id)
            jobs.append(
                Job(
                    id=job_id,
                    kind="review",
                    name=review_name,
                    entry_point=item.path,
                    working_directory=item.path,
                    review=review,
                )
            )
    return jobs


def filter_jobs(jobs: Sequence[Job], gate: str | None) -> list[Job]:
    if not gate:
        return list(jobs)
    return [job for job in jobs if job.name == gate]
