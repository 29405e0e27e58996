from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from openai import OpenAI, OpenAIError

from agentcrew.errors import GenerationError
from agentcrew.generators.base import TextGenerator

logger = logging.getLogger(__name__)


class OpenAIGenerator(TextGenerator):
    """Chat-completions generator driven through a worker thread."""

    name = "openai"

    def __init__(
        self,
        *,
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self._client = client
        if self._client is None:
            try:
                self._client = OpenAI()
            except OpenAIError as exc:
                logger.warning("OpenAI client unavailable: %s", exc)
                self._client = None

    @property
    def available(self) -> bool:
        return self._client is not None

    @staticmethod
    def _extract_text(payload: Any) -> str:
        choices = getattr(payload, "choices", None)
        if choices is None and isinstance(payload, dict):
            choices = payload.get("choices")
        if not choices:
            return ""
        first = choices[0]
        message = getattr(first, "message", None)
        if message is None and isinstance(first, dict):
            message = first.get("message")
        content = getattr(message, "content", None)
        if content is None and isinstance(message, dict):
            content = message.get("content")
        return content if isinstance(content, str) else ""

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        if self._client is None:
            raise GenerationError(
                "OpenAI client is not configured (missing OPENAI_API_KEY?).",
                backend=self.name,
                retriable=False,
            )
        requested_model = context.get("model")
        model_name = (
            requested_model.strip()
            if isinstance(requested_model, str) and requested_model.strip()
            else self.model
        )
        request: dict[str, Any] = {
            "model": model_name,
            "temperature": self.temperature,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        if context.get("kind") not in (None, "narration"):
            request["response_format"] = {"type": "json_object"}

        def _request() -> Any:
            return self._client.chat.completions.create(**request)

        try:
            payload = await asyncio.to_thread(_request)
        except OpenAIError as exc:
            raise GenerationError(
                f"OpenAI request failed: {exc}",
                backend=self.name,
                retriable=True,
            ) from exc

        content = self._extract_text(payload).strip()
        if content:
            yield content
