from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from gauntlet.state.store import DEBUG_LOG_FILE_NAME

LOGGER = logging.getLogger(__name__)


class DebugLog:
    """Append-only JSON-lines event log kept beside the run files."""

    def __init__(
        self, store_dir: Path, *, enabled: bool = False, max_size_mb: float = 10.0
    ) -> None:
        self.path = store_dir / DEBUG_LOG_FILE_NAME
        self.enabled = enabled
        self.max_bytes = int(max_size_mb * 1024 * 1024)

    def _rotate_if_needed(self) -> None:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return
        if size < self.max_bytes:
            return
        os.replace(self.path, self.path.with_name(f"{self.path.name}.1"))

    def record(self, event: dict[str, Any]) -> None:
        if not self.enabled:
            return
        payload = dict(event)
        payload["at"] = datetime.now(UTC).replace(microsecond=0).isoformat()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._rotate_if_needed()
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
        except OSError as exc:
            LOGGER.warning("Could not write debug log %s: %s", self.path, exc)
