from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path

LOCK_FILE_NAME = ".run.lock"
EXECUTION_STATE_FILE_NAME = ".execution_state"
DEBUG_LOG_FILE_NAME = ".debug.log"
ARCHIVE_DIR_NAME = "previous"
CONSOLE_LOG_PREFIX = "console"
RESULT_EXTENSIONS = frozenset({"log", "json"})
RUN_SUFFIX_PATTERN = re.compile(r"\.(\d+)\.([A-Za-z0-9]+)$")

LOGGER = logging.getLogger(__name__)


def store_files(store_dir: Path) -> list[Path]:
    """Files directly in the store root; the archive directory is never scanned."""
    if not store_dir.is_dir():
        return []
    return sorted(path for path in store_dir.iterdir() if path.is_file())


def run_suffix(name: str) -> tuple[int, str] | None:
    match = RUN_SUFFIX_PATTERN.search(name)
    if match is None:
        return None
    return int(match.group(1)), match.group(2)


def is_console_log(name: str) -> bool:
    return name.startswith(f"{CONSOLE_LOG_PREFIX}.")


def is_result_file(path: Path) -> bool:
    name = path.name
    if name.startswith(".") or is_console_log(name):
        return False
    suffix = run_suffix(name)
    return suffix is not None and suffix[1] in RESULT_EXTENSIONS


def result_files(store_dir: Path) -> list[Path]:
    return [path for path in store_files(store_dir) if is_result_file(path)]


def has_result_files(store_dir: Path) -> bool:
    return any(is_result_file(path) for path in store_files(store_dir))


def archive_store(store_dir: Path) -> list[Path]:
    """Move current logs and results into the archive directory.

    The previous archive contents are discarded first. Hidden bookkeeping
    files (lock, execution state, debug log) stay in place.
    """
    if not store_dir.is_dir():
        return []
    archive_dir = store_dir / ARCHIVE_DIR_NAME
    if archive_dir.exists():
        shutil.rmtree(archive_dir)
    archive_dir.mkdir(parents=True)

    moved: list[Path] = []
    for path in store_files(store_dir):
        if path.name.startswith("."):
            continue
        if path.suffix not in {".log", ".json"}:
            continue
        target = archive_dir / path.name
        path.rename(target)
        moved.append(target)
    LOGGER.debug("Archived %d file(s) into %s", len(moved), archive_dir)
    return moved
