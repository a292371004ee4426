from __future__ import annotations

import asyncio
import os
import re
import shlex
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

AdapterEventHook = Callable[[dict[str, Any]], None]
HealthStatus = Literal["healthy", "missing", "unhealthy"]

USAGE_LIMIT_PATTERN = re.compile(
    r"usage limit|rate limit|quota exceeded|too many requests|out of credits", re.IGNORECASE
)
DIFF_SEPARATOR = "\n\n--- DIFF ---\n"


class AdapterExecutionError(RuntimeError):
    """Raised when a reviewer adapter invocation fails."""

    def __init__(
        self,
        message: str,
        *,
        adapter: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.adapter = adapter
        self.exit_code = exit_code
        self.retriable = retriable


class AdapterTimeoutError(AdapterExecutionError):
    """Raised when a review exceeds its configured timeout."""


class AdapterProcessError(AdapterExecutionError):
    """Raised when the adapter process cannot be started."""


@dataclass(slots=True)
class AdapterHealth:
    status: HealthStatus
    message: str = ""

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"


def is_usage_limit(text: str) -> bool:
    return bool(USAGE_LIMIT_PATTERN.search(text))


async def command_available(executable: str, cwd: Path | None = None) -> bool:
    if not executable.strip():
        return False
    try:
        process = await asyncio.create_subprocess_exec(
            "sh",
            "-lc",
            f"command -v {shlex.quote(executable)} >/dev/null 2>&1",
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return False
    return await process.wait() == 0


class ReviewerAdapter(ABC):
    name: str = ""

    @abstractmethod
    async def is_available(self) -> bool:
        """Report whether the reviewer can be reached at all."""

    async def check_health(self) -> AdapterHealth:
        if await self.is_available():
            return AdapterHealth(status="healthy")
        return AdapterHealth(status="missing", message=f"{self.name} is not installed")

    @abstractmethod
    async def invoke(
        self,
        prompt: str,
        diff: str,
        *,
        model: str | None = None,
        timeout: float | None = None,
    ) -> str:
        """Run one review and return the reviewer's raw output."""


class CliReviewerAdapter(ReviewerAdapter):
    """Reviewer backed by a local CLI that reads the review request on stdin."""

    binary: str = ""

    def __init__(
        self,
        binary: str | None = None,
        working_directory: Path | None = None,
        event_hook: AdapterEventHook | None = None,
    ) -> None:
        if binary:
            self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @abstractmethod
    def build_command(self, model: str | None = None) -> list[str]:
        """Command line for one review."""

    @staticmethod
    def render_input(prompt: str, diff: str) -> str:
        return f"{prompt}{DIFF_SEPARATOR}{diff}"

    def parse_output(self, stdout: str) -> str:
        return stdout

    async def is_available(self) -> bool:
        return await command_available(self.binary, self.working_directory)

    def _child_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env["GAUNTLET_STOP_HOOK_ACTIVE"] = "1"
        return env

    async def invoke(
        self,
        prompt: str,
        diff: str,
        *,
        model: str | None = None,
        timeout: float | None = None,
    ) -> str:
        command = self.build_command(model)
        self._emit({"event": "adapter_start", "adapter": self.name, "command": command[:3]})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=self._child_env(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise AdapterProcessError(
                f"{self.name} binary not found: {self.binary}",
                adapter=self.name,
                retriable=False,
            ) from exc

        payload = self.render_input(prompt, diff).encode("utf-8")
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(payload), timeout=timeout)
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            self._emit({"event": "adapter_timeout", "adapter": self.name, "timeout": timeout})
            raise AdapterTimeoutError(
                f"{self.name} review timed out after {timeout:.0f}s",
                adapter=self.name,
                retriable=True,
            ) from exc

        stdout_text = stdout.decode("utf-8", errors="replace")
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        return_code = process.returncode
        self._emit({"event": "adapter_exit", "adapter": self.name, "exit_code": return_code})
        if return_code != 0:
            usage_limited = is_usage_limit(stderr_text) or is_usage_limit(stdout_text)
            detail = "usage limit reached" if usage_limited else stderr_text[-400:]
            raise AdapterExecutionError(
                f"{self.name} failed with exit code {return_code}: {detail}",
                adapter=self.name,
                exit_code=return_code,
                retriable=not usage_limited,
            )
        return self.parse_output(stdout_text)
