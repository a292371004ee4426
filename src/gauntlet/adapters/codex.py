from __future__ import annotations

import json
from typing import Any

from gauntlet.adapters.base import CliReviewerAdapter


class CodexReviewer(CliReviewerAdapter):
    name = "codex"
    binary = "codex"

    def build_command(self, model: str | None = None) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "--sandbox",
            "read-only",
            "-c",
            'ask_for_approval="never"',
        ]
        if self.working_directory is not None:
            command.extend(["--cd", str(self.working_directory)])
        if model and model.strip():
            command.extend(["-m", model.strip()])
        command.append("-")
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict):
            text = item.get("text")
            if isinstance(text, str) and item.get("type") in {"agent_message", "message", None}:
                return text

        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for entry in content:
                if isinstance(entry, dict):
                    text = entry.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)

        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            msg_content = message.get("content")
            if isinstance(msg_content, str):
                return msg_content
        return ""

    def parse_output(self, stdout: str) -> str:
        chunks: list[str] = []
        for raw_line in stdout.splitlines():
            line = raw_line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                self._emit({"event": "codex_json_parse_fallback", "line": line[:200]})
                chunks.append(line)
                continue
            if not isinstance(event, dict):
                continue
            content = self._extract_content(event)
            if content:
                chunks.append(content)
        return "\n".join(chunks)
