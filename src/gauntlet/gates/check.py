from __future__ import annotations

import asyncio
import shlex
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from gauntlet.adapters.base import command_available
from gauntlet.gates.result import GateResult, JobLog

CheckEventHook = Callable[[dict[str, Any]], None]


def command_executable(command: str) -> str | None:
    """First real program in a shell command, skipping `env` and VAR=value tokens."""
    try:
        tokens = shlex.split(command)
    except ValueError:
        return None
    for token in tokens:
        if token == "env":
            continue
        name, sep, _ = token.partition("=")
        if sep and name.isidentifier():
            continue
        return token
    return None


class CheckGateExecutor:
    def __init__(self, repo_root: Path, event_hook: CheckEventHook | None = None) -> None:
        self.repo_root = repo_root.resolve()
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _cwd(self, working_directory: str) -> Path:
        if working_directory in {"", "."}:
            return self.repo_root
        return self.repo_root / working_directory

    async def preflight(self, command: str, working_directory: str) -> str | None:
        """Return an error message when the command cannot be started."""
        executable = command_executable(command)
        if executable is None:
            return f"Could not parse command: {command}"
        cwd = self._cwd(working_directory)
        if not cwd.is_dir():
            return f"Working directory does not exist: {working_directory}"
        if "/" in executable:
            candidate = Path(executable)
            if not candidate.is_absolute():
                candidate = cwd / candidate
            if candidate.is_file() and candidate.stat().st_mode & 0o111:
                return None
            return f"Command not executable: {executable}"
        if await command_available(executable, cwd):
            return None
        return f"Command not found: {executable}"

    async def run(
        self,
        job_id: str,
        name: str,
        command: str,
        working_directory: str,
        log_path: Path,
        *,
        timeout: float | None = None,
    ) -> GateResult:
        started = time.monotonic()
        log = JobLog(log_path)
        log.write(f"Starting check: {name}")
        log.write(f"Executing command: {command}")
        log.write(f"Directory: {working_directory}")
        self._emit({"event": "check_start", "job_id": job_id, "command": command})

        def _finish(status: str, message: str) -> GateResult:
            log.write(f"Result: {status} - {message}")
            self._emit({"event": "check_exit", "job_id": job_id, "status": status})
            return GateResult(
                job_id=job_id,
                status=status,  # type: ignore[arg-type]
                duration=time.monotonic() - started,
                message=message,
                log_path=str(log_path),
            )

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=str(self._cwd(working_directory)),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            log.write(f"Command failed: {exc}")
            return _finish("error", f"Failed to start: {exc}")

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            return _finish("error", f"Timed out after {timeout:.0f}s")

        log.write_block(stdout.decode("utf-8", errors="replace"))
        if process.returncode == 0:
            return _finish("pass", "Passed")
        log.write(f"Command failed: exit code {process.returncode}")
        return _finish("fail", f"Exited with code {process.returncode}")
