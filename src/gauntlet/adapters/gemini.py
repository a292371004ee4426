from __future__ import annotations

from gauntlet.adapters.base import CliReviewerAdapter


class GeminiReviewer(CliReviewerAdapter):
    name = "gemini"
    binary = "gemini"
    allowed_tools = ("read_file", "list_directory", "glob", "search_file_content")

    def build_command(self, model: str | None = None) -> list[str]:
        command = [
            self.binary,
            "--sandbox",
            "--allowed-tools",
            ",".join(self.allowed_tools),
            "--output-format",
            "text",
        ]
        if model and model.strip():
            command.extend(["--model", model.strip()])
        return command
