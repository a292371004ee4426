from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from gauntlet.adapters.registry import ADAPTER_NAMES
from gauntlet.state.store import CONSOLE_LOG_PREFIX, run_suffix, store_files

SLOT_DELIMITER = "@"
UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9._-]")
REVIEW_FILE_PATTERN = re.compile(
    r"^(?P<head>.+)@(?P<index>\d+)\.(?P<run>\d+)\.(?P<ext>log|json)$"
)
RUN_FILE_PATTERN = re.compile(r"^(?P<prefix>.+)\.(?P<run>\d+)\.(?P<ext>log|json)$")


def sanitize_job_id(job_id: str) -> str:
    return UNSAFE_ID_CHARS.sub("_", job_id)


def next_run_number(store_dir: Path) -> int:
    highest = 0
    for path in store_files(store_dir):
        suffix = run_suffix(path.name)
        if suffix is not None:
            highest = max(highest, suffix[0])
    return highest + 1


def build_path(
    store_dir: Path,
    job_id: str,
    run_number: int,
    *,
    adapter: str | None = None,
    review_index: int | None = None,
    ext: str = "log",
) -> Path:
    safe_id = sanitize_job_id(job_id)
    if adapter is None:
        return store_dir / f"{safe_id}.{run_number}.{ext}"
    if SLOT_DELIMITER in adapter:
        raise ValueError(f"adapter name may not contain {SLOT_DELIMITER!r}: {adapter}")
    index = review_index if review_index is not None else 1
    return store_dir / f"{safe_id}_{adapter}{SLOT_DELIMITER}{index}.{run_number}.{ext}"


@dataclass(frozen=True, slots=True)
class ReviewFileName:
    job_id: str
    adapter: str
    review_index: int
    run_number: int
    ext: str


@dataclass(frozen=True, slots=True)
class RunFileName:
    prefix: str
    run_number: int
    ext: str


def _split_job_and_adapter(head: str, adapter_names: Iterable[str]) -> tuple[str, str] | None:
    for adapter in sorted(adapter_names, key=len, reverse=True):
        suffix = f"_{adapter}"
        if head.endswith(suffix) and len(head) > len(suffix):
            return head[: -len(suffix)], adapter
    job_id, sep, adapter = head.rpartition("_")
    if not sep or not job_id or not adapter:
        return None
    return job_id, adapter


def parse_review_filename(
    name: str, adapter_names: Iterable[str] = ADAPTER_NAMES
) -> ReviewFileName | None:
    match = REVIEW_FILE_PATTERN.match(name)
    if match is None:
        return None
    split = _split_job_and_adapter(match.group("head"), adapter_names)
    if split is None:
        return None
    job_id, adapter = split
    return ReviewFileName(
        job_id=job_id,
        adapter=adapter,
        review_index=int(match.group("index")),
        run_number=int(match.group("run")),
        ext=match.group("ext"),
    )


def parse_run_filename(name: str) -> RunFileName | None:
    match = RUN_FILE_PATTERN.match(name)
    if match is None:
        return None
    return RunFileName(
        prefix=match.group("prefix"),
        run_number=int(match.group("run")),
        ext=match.group("ext"),
    )


class LogSequencer:
    """Hands out paths that all share one run number for the invocation."""

    def __init__(self, store_dir: Path, run_number: int) -> None:
        self.store_dir = store_dir
        self.run_number = run_number

    @classmethod
    def open(cls, store_dir: Path) -> LogSequencer:
        return cls(store_dir, next_run_number(store_dir))

    def job_path(self, job_id: str, ext: str = "log") -> Path:
        return build_path(self.store_dir, job_id, self.run_number, ext=ext)

    def review_path(self, job_id: str, adapter: str, review_index: int, ext: str = "log") -> Path:
        return build_path(
            self.store_dir,
            job_id,
            self.run_number,
            adapter=adapter,
            review_index=review_index,
            ext=ext,
        )

    def console_path(self) -> Path:
        return self.store_dir / f"{CONSOLE_LOG_PREFIX}.{self.run_number}.log"
