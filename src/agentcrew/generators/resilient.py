from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from agentcrew.errors import GenerationError, GenerationTimeoutError
from agentcrew.generators.base import TextGenerator

logger = logging.getLogger(__name__)

GeneratorEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


class ResilientGenerator(TextGenerator):
    """Wraps primary/fallback generators with timeout, retry, and failover."""

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary: TextGenerator,
        fallback_name: str,
        fallback: TextGenerator,
        retry_policy: RetryPolicy,
        event_hook: GeneratorEventHook | None = None,
        sleep: Callable[[float], Any] | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary = primary
        self.fallback_name = fallback_name
        self.fallback = fallback
        self.retry_policy = retry_policy
        self.event_hook = event_hook
        self._sleep = sleep or asyncio.sleep

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _collect(
        self,
        generator: TextGenerator,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        async def _consume() -> list[str]:
            chunks: list[str] = []
            async for chunk in generator.execute(system_prompt, user_prompt, context):
                chunks.append(chunk)
            return chunks

        try:
            return await asyncio.wait_for(_consume(), timeout=self.retry_policy.timeout_seconds)
        except TimeoutError as exc:
            raise GenerationTimeoutError(
                f"Generator request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def _execute_attempts(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        kind = str(context.get("kind", "narration"))
        attempts: list[tuple[str, TextGenerator]] = [(self.primary_name, self.primary)]
        if self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback))

        errors: list[str] = []
        for index, (generator_name, generator) in enumerate(attempts):
            if index > 0:
                self._emit(
                    {"event": "generator_failover_start", "generator": generator_name, "kind": kind}
                )
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "generator_retry",
                            "generator": generator_name,
                            "kind": kind,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await self._sleep(delay)
                try:
                    chunks = await self._collect(generator, system_prompt, user_prompt, context)
                    if generator_name != self.primary_name:
                        self._emit(
                            {
                                "event": "generator_fallback_success",
                                "generator": generator_name,
                                "kind": kind,
                                "attempt": attempt,
                            }
                        )
                    return chunks
                except GenerationError as exc:
                    errors.append(f"{generator_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "generator_attempt_failed",
                            "generator": generator_name,
                            "kind": kind,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    logger.warning(
                        "Generator %s attempt %d for %s failed: %s",
                        generator_name,
                        attempt,
                        kind,
                        exc,
                    )
                    if not exc.retriable:
                        break

        summary = "; ".join(errors[-6:])
        raise GenerationError(
            f"All generator attempts failed for {kind}. {summary}", retriable=False
        )

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        chunks = await self._execute_attempts(system_prompt, user_prompt, context)
        for chunk in chunks:
            yield chunk
