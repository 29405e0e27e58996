import asyncio
import json
from collections.abc import AsyncIterator
from types import SimpleNamespace
from typing import Any

import pytest
from openai import OpenAIError

from agentcrew.errors import GenerationError
from agentcrew.generators import (
    OpenAIGenerator,
    ResilientGenerator,
    RetryPolicy,
    TemplateGenerator,
    TextGenerator,
    parse_json_object,
)


class AlwaysFailGenerator(TextGenerator):
    def __init__(self, *, retriable: bool = True) -> None:
        self.retriable = retriable
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        self.calls += 1
        raise GenerationError("primary failed", retriable=self.retriable)
        yield ""  # pragma: no cover


class SlowGenerator(TextGenerator):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        await asyncio.sleep(1)
        yield "too late"


class EchoGenerator(TextGenerator):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, context
        yield "echo: "
        yield user_prompt


class FakeCompletions:
    def __init__(self, response: Any = None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.requests: list[dict[str, Any]] = []

    def create(self, **request: Any) -> Any:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response


def _fake_client(completions: FakeCompletions) -> Any:
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def test_parse_json_object_strips_fences_and_prose() -> None:
    assert parse_json_object('```json\n{"approved": true}\n```') == {"approved": True}
    assert parse_json_object('Sure! {"summary": "ok"} Hope that helps.') == {"summary": "ok"}


@pytest.mark.parametrize("raw", ["", "no braces here", "[1, 2]", "{broken"])
def test_parse_json_object_rejects_non_objects(raw: str) -> None:
    with pytest.raises(GenerationError) as exc_info:
        parse_json_object(raw)
    assert exc_info.value.retriable is False


def test_complete_joins_streamed_chunks() -> None:
    text = asyncio.run(EchoGenerator().complete("system", "hello"))

    assert text == "echo: hello"


def test_resilient_generator_retries_then_fails_over() -> None:
    primary = AlwaysFailGenerator()
    events: list[dict[str, Any]] = []
    delays: list[float] = []

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    generator = ResilientGenerator(
        primary_name="openai",
        primary=primary,
        fallback_name="template",
        fallback=EchoGenerator(),
        retry_policy=RetryPolicy(max_retries=2, backoff_seconds=0.5, timeout_seconds=5),
        event_hook=events.append,
        sleep=_sleep,
    )

    text = asyncio.run(generator.complete("system", "hello"))

    assert text == "echo: hello"
    assert primary.calls == 3
    assert delays == [0.5, 1.0]
    names = [event["event"] for event in events]
    assert names.count("generator_attempt_failed") == 3
    assert "generator_failover_start" in names
    assert names[-1] == "generator_fallback_success"


def test_non_retriable_failure_skips_straight_to_fallback() -> None:
    primary = AlwaysFailGenerator(retriable=False)
    generator = ResilientGenerator(
        primary_name="openai",
        primary=primary,
        fallback_name="template",
        fallback=EchoGenerator(),
        retry_policy=RetryPolicy(max_retries=3),
    )

    text = asyncio.run(generator.complete("system", "hi"))

    assert text == "echo: hi"
    assert primary.calls == 1


def test_timeout_counts_as_failed_attempt() -> None:
    events: list[dict[str, Any]] = []
    generator = ResilientGenerator(
        primary_name="openai",
        primary=SlowGenerator(),
        fallback_name="template",
        fallback=EchoGenerator(),
        retry_policy=RetryPolicy(max_retries=0, timeout_seconds=0.01),
        event_hook=events.append,
    )

    text = asyncio.run(generator.complete("system", "hi"))

    assert text == "echo: hi"
    failed = [event for event in events if event["event"] == "generator_attempt_failed"]
    assert "timed out" in failed[0]["error"]


def test_all_attempts_failing_raises() -> None:
    generator = ResilientGenerator(
        primary_name="openai",
        primary=AlwaysFailGenerator(),
        fallback_name="template",
        fallback=AlwaysFailGenerator(),
        retry_policy=RetryPolicy(max_retries=0),
    )

    with pytest.raises(GenerationError, match="All generator attempts failed"):
        asyncio.run(generator.complete("system", "hi"))


def test_resilient_events_carry_the_request_kind() -> None:
    events: list[dict[str, Any]] = []
    generator = ResilientGenerator(
        primary_name="openai",
        primary=AlwaysFailGenerator(),
        fallback_name="template",
        fallback=EchoGenerator(),
        retry_policy=RetryPolicy(max_retries=0),
        event_hook=events.append,
    )

    asyncio.run(generator.complete("system", "{}", {"kind": "verdict"}))
    asyncio.run(generator.complete("system", "hi"))

    kinds = [(event["event"], event["kind"]) for event in events]
    assert kinds[:3] == [
        ("generator_attempt_failed", "verdict"),
        ("generator_failover_start", "verdict"),
        ("generator_fallback_success", "verdict"),
    ]
    assert {kind for _, kind in kinds[3:]} == {"narration"}


def test_template_generator_shapes_payload_by_kind() -> None:
    generator = TemplateGenerator()

    verdict = asyncio.run(generator.generate_structured("review", kind="verdict"))
    implementation = asyncio.run(
        generator.generate_structured(
            "build", kind="implementation", context={"task_title": "User Profile Page"}
        )
    )
    narration = asyncio.run(generator.generate_narration("say", {"summary": "Shipping it."}))

    assert verdict["approved"] is True
    assert verdict["changesRequested"] is False
    assert implementation["files"][0]["path"] == "src/user_profile_page.py"
    assert implementation["summary"] == "Implemented User Profile Page"
    assert narration == "Shipping it."


def test_template_generator_without_summary_or_speaker_is_empty() -> None:
    with pytest.raises(GenerationError):
        asyncio.run(TemplateGenerator().generate_narration("say"))


def test_openai_generator_requests_json_for_structured_kinds() -> None:
    completions = FakeCompletions(
        {"choices": [{"message": {"content": json.dumps({"approved": True})}}]}
    )
    generator = OpenAIGenerator(model="gpt-test", client=_fake_client(completions))

    payload = asyncio.run(generator.generate_structured("review", kind="verdict"))

    assert payload == {"approved": True}
    request = completions.requests[0]
    assert request["model"] == "gpt-test"
    assert request["response_format"] == {"type": "json_object"}
    assert request["messages"][1] == {"role": "user", "content": "review"}


def test_openai_generator_narration_is_plain_text() -> None:
    message = SimpleNamespace(content="  On it!  ")
    completions = FakeCompletions(SimpleNamespace(choices=[SimpleNamespace(message=message)]))
    generator = OpenAIGenerator(client=_fake_client(completions))

    text = asyncio.run(generator.generate_narration("say something"))

    assert text == "On it!"
    assert "response_format" not in completions.requests[0]


def test_openai_errors_become_retriable_generation_errors() -> None:
    completions = FakeCompletions(error=OpenAIError("rate limited"))
    generator = OpenAIGenerator(client=_fake_client(completions))

    with pytest.raises(GenerationError) as exc_info:
        asyncio.run(generator.complete("system", "hi"))

    assert exc_info.value.retriable is True
    assert exc_info.value.backend == "openai"
