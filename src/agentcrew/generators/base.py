from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from agentcrew.errors import GenerationError

NARRATION_SYSTEM_PROMPT = (
    "You write short first-person chat messages for members of a software team. "
    "Stay in character and never mention that you are generated."
)
STRUCTURED_SYSTEM_PROMPT = (
    "You answer with a single JSON object and nothing else. "
    "Do not wrap the object in prose."
)

FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_json_object(raw: str) -> dict[str, Any]:
    """Extract the first JSON object from generator output or raise GenerationError."""
    text = FENCE_PATTERN.sub("", raw.strip()).strip()
    if not text:
        raise GenerationError("Generator returned an empty payload.", retriable=False)
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start < 0 or end <= start:
            raise GenerationError("Generator payload is not JSON.", retriable=False) from None
        try:
            parsed = json.loads(text[start : end + 1])
        except json.JSONDecodeError as exc:
            raise GenerationError(
                f"Generator payload is not JSON: {exc}", retriable=False
            ) from exc
    if not isinstance(parsed, dict):
        raise GenerationError("Generator payload is not a JSON object.", retriable=False)
    return parsed


class TextGenerator(ABC):
    name: str = "generator"

    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Stream textual chunks for a prompt."""

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any] | None = None,
    ) -> str:
        chunks: list[str] = []
        async for chunk in self.execute(system_prompt, user_prompt, dict(context or {})):
            chunks.append(chunk)
        return "".join(chunks).strip()

    async def generate_narration(
        self,
        prompt: str,
        context: dict[str, Any] | None = None,
    ) -> str:
        payload = {"kind": "narration", **(context or {})}
        text = await self.complete(NARRATION_SYSTEM_PROMPT, prompt, payload)
        if not text:
            raise GenerationError("Generator returned an empty narration.", backend=self.name)
        return text

    async def generate_structured(
        self,
        prompt: str,
        *,
        kind: str,
        context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload = {"kind": kind, **(context or {})}
        raw = await self.complete(STRUCTURED_SYSTEM_PROMPT, prompt, payload)
        return parse_json_object(raw)
