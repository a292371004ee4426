from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

GateStatus = Literal["pass", "fail", "error", "skipped_prior_pass"]
ViolationStatus = Literal["new", "fixed", "skipped"]

VIOLATION_STATUSES: tuple[str, ...] = ("new", "fixed", "skipped")


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _coerce_line(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


@dataclass(slots=True)
class Violation:
    file: str
    line: int | None
    issue: str
    priority: str = "medium"
    fix: str | None = None
    status: str = "new"
    result: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Violation:
        fix = data.get("fix")
        result = data.get("result")
        return cls(
            file=str(data.get("file") or "unknown"),
            line=_coerce_line(data.get("line")),
            issue=str(data.get("issue") or "").strip(),
            priority=str(data.get("priority") or "medium").lower(),
            fix=str(fix) if fix else None,
            status=str(data.get("status") or "new"),
            result=str(result) if result else None,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "file": self.file,
            "line": self.line,
            "issue": self.issue,
            "priority": self.priority,
            "status": self.status,
        }
        if self.fix:
            payload["fix"] = self.fix
        if self.result:
            payload["result"] = self.result
        return payload

    def location(self) -> str:
        return f"{self.file}:{self.line}" if self.line is not None else self.file


@dataclass(slots=True)
class SlotResult:
    review_index: int
    adapter: str
    status: GateStatus
    message: str = ""
    violations: list[Violation] = field(default_factory=list)
    log_path: str | None = None
    json_path: str | None = None
    pass_iteration: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "review_index": self.review_index,
            "adapter": self.adapter,
            "status": self.status,
            "message": self.message,
            "violations": [violation.to_dict() for violation in self.violations],
            "log_path": self.log_path,
            "json_path": self.json_path,
            "pass_iteration": self.pass_iteration,
        }


@dataclass(slots=True)
class GateResult:
    job_id: str
    status: GateStatus
    duration: float = 0.0
    message: str | None = None
    log_path: str | None = None
    json_path: str | None = None
    sub_results: list[SlotResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.status in {"pass", "skipped_prior_pass"}

    def log_paths(self) -> list[str]:
        paths = [self.log_path] if self.log_path else []
        paths.extend(slot.log_path for slot in self.sub_results if slot.log_path)
        return paths

    def json_paths(self) -> list[str]:
        paths = [self.json_path] if self.json_path else []
        paths.extend(slot.json_path for slot in self.sub_results if slot.json_path)
        return paths

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "duration": round(self.duration, 3),
            "message": self.message,
            "log_path": self.log_path,
            "json_path": self.json_path,
            "sub_results": [slot.to_dict() for slot in self.sub_results],
        }


class JobLog:
    """Append-only text log for one job or review slot."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def write(self, message: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(f"[{_utcnow_iso()}] {message.rstrip()}\n")

    def write_block(self, text: str) -> None:
        if not text:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(text if text.endswith("\n") else f"{text}\n")
