from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from gauntlet.adapters.base import AdapterEventHook, ReviewerAdapter
from gauntlet.adapters.claude import ClaudeReviewer
from gauntlet.adapters.codex import CodexReviewer
from gauntlet.adapters.gemini import GeminiReviewer
from gauntlet.adapters.openai_sdk import OpenAIReviewer

LOGGER = logging.getLogger(__name__)

ADAPTER_NAMES: tuple[str, ...] = ("claude", "codex", "gemini", "openai")


def build_adapter(
    name: str,
    working_directory: Path | None = None,
    event_hook: AdapterEventHook | None = None,
) -> ReviewerAdapter:
    if name == "claude":
        return ClaudeReviewer(working_directory=working_directory, event_hook=event_hook)
    if name == "codex":
        return CodexReviewer(working_directory=working_directory, event_hook=event_hook)
    if name == "gemini":
        return GeminiReviewer(working_directory=working_directory, event_hook=event_hook)
    if name == "openai":
        return OpenAIReviewer(event_hook=event_hook)
    raise KeyError(name)


def build_adapters(
    names: Iterable[str],
    working_directory: Path | None = None,
    event_hook: AdapterEventHook | None = None,
) -> list[ReviewerAdapter]:
    adapters: list[ReviewerAdapter] = []
    for name in names:
        try:
            adapters.append(build_adapter(name, working_directory, event_hook))
        except KeyError:
            LOGGER.warning("Unknown reviewer adapter %r ignored", name)
    return adapters
