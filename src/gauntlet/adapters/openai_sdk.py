from __future__ import annotations

import asyncio
import os
from typing import Any

from openai import OpenAI, OpenAIError

from gauntlet.adapters.base import (
    AdapterEventHook,
    AdapterExecutionError,
    AdapterTimeoutError,
    ReviewerAdapter,
    is_usage_limit,
)

REVIEW_INSTRUCTIONS = (
    "You are a code reviewer. Review only the diff you are given and answer in the "
    "requested JSON format."
)


class OpenAIReviewer(ReviewerAdapter):
    """Reviewer calling the OpenAI Responses API directly."""

    name = "openai"

    def __init__(
        self,
        *,
        model: str = "gpt-5-codex",
        event_hook: AdapterEventHook | None = None,
    ) -> None:
        self.model = model
        self.event_hook = event_hook
        self._client: Any | None = None

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = OpenAI()
        return self._client

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    async def is_available(self) -> bool:
        if self._client is not None:
            return True
        return bool(os.environ.get("OPENAI_API_KEY"))

    async def invoke(
        self,
        prompt: str,
        diff: str,
        *,
        model: str | None = None,
        timeout: float | None = None,
    ) -> str:
        model_name = model.strip() if model and model.strip() else self.model
        try:
            client = self._get_client()
        except OpenAIError as exc:
            raise AdapterExecutionError(
                f"OpenAI client unavailable: {exc}", adapter=self.name, retriable=False
            ) from exc

        def _request() -> Any:
            return client.responses.create(
                model=model_name,
                input=[
                    {"role": "system", "content": REVIEW_INSTRUCTIONS},
                    {"role": "user", "content": f"{prompt}\n\n--- DIFF ---\n{diff}"},
                ],
            )

        self._emit({"event": "adapter_start", "adapter": self.name, "model": model_name})
        try:
            payload = await asyncio.wait_for(asyncio.to_thread(_request), timeout=timeout)
        except TimeoutError as exc:
            raise AdapterTimeoutError(
                f"openai review timed out after {timeout:.0f}s", adapter=self.name
            ) from exc
        except OpenAIError as exc:
            raise AdapterExecutionError(
                f"OpenAI review failed: {exc}",
                adapter=self.name,
                retriable=not is_usage_limit(str(exc)),
            ) from exc
        self._emit({"event": "adapter_exit", "adapter": self.name, "exit_code": 0})
        return self._extract_text(payload).strip()
