from __future__ import annotations

from gauntlet.adapters.base import CliReviewerAdapter


class ClaudeReviewer(CliReviewerAdapter):
    name = "claude"
    binary = "claude"
    allowed_tools = ("Read", "Glob", "Grep")
    max_turns = 10

    def build_command(self, model: str | None = None) -> list[str]:
        command = [
            self.binary,
            "-p",
            "--output-format",
            "text",
            "--allowedTools",
            ",".join(self.allowed_tools),
            "--max-turns",
            str(self.max_turns),
        ]
        if model and model.strip():
            command.extend(["--model", model.strip()])
        return command
