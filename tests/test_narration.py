import asyncio
import random
from collections.abc import AsyncIterator
from typing import Any

from agentcrew.agents import default_directory
from agentcrew.clock import InstantClock
from agentcrew.config import NarrationConfig
from agentcrew.errors import GenerationError
from agentcrew.generators import TemplateGenerator, TextGenerator
from agentcrew.narration import MemorySink, Narrator, render_activity, sanitize


class BrokenGenerator(TextGenerator):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        raise GenerationError("model offline")
        yield ""  # pragma: no cover


class PromptRecordingGenerator(TextGenerator):
    def __init__(self) -> None:
        self.prompts: list[str] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, context
        self.prompts.append(user_prompt)
        yield 'Response: "Heads down on the checkout flow."'


def _narrator(
    generator: TextGenerator | None = None,
    config: NarrationConfig | None = None,
) -> tuple[Narrator, MemorySink, InstantClock]:
    sink = MemorySink()
    clock = InstantClock(random.Random(7))
    narrator = Narrator(generator or TemplateGenerator(), default_directory(), sink, clock, config)
    return narrator, sink, clock


def test_generator_failure_falls_back_to_template_text() -> None:
    narrator, sink, _ = _narrator(BrokenGenerator())

    message = asyncio.run(
        narrator.say("developer", "task_start", {"task_title": "Checkout"}, channel="dev")
    )

    assert message.content == 'Starting work on "Checkout"! Alex Thompson is on it!'
    assert message.channel == "dev"
    assert sink.messages == [message]


def test_say_updates_runtime_context_and_recent_events() -> None:
    narrator, _, _ = _narrator()
    context = narrator.directory.get("developer").context

    asyncio.run(narrator.say("developer", "task_start", {"task_title": "Checkout"}))
    asyncio.run(
        narrator.say(
            "developer",
            "progress_update",
            {"task_title": "Checkout", "activity": "Testing", "progress": 80},
        )
    )

    assert context.work_status == "working"
    assert context.mood == "accomplished"
    assert context.current_task == "Checkout"
    assert context.recent_events[0].startswith("progress_update: 80% done")
    assert context.recent_events[1].startswith("task_start: Starting work")


def test_prompt_carries_persona_recent_events_and_history() -> None:
    generator = PromptRecordingGenerator()
    narrator, sink, _ = _narrator(generator)

    asyncio.run(narrator.say("qa", "task_start", {"task_title": "Checkout"}))
    asyncio.run(narrator.say("qa", "testing_update", {"task_title": "Checkout"}))

    prompt = generator.prompts[1]
    assert "You are Emma Rodriguez, a qa" in prompt
    assert "task_start: Heads down on the checkout flow" in prompt
    assert "Emma Rodriguez: Heads down on the checkout flow." in prompt
    assert sink.contents(agent_id="qa")[0] == "Heads down on the checkout flow."


def test_unknown_speaker_introduces_itself() -> None:
    narrator, _, _ = _narrator()

    message = asyncio.run(narrator.say("intern", "task_start"))

    assert message.content == "Hi! I'm intern and I'm ready to help with the project."


def test_channel_history_is_bounded() -> None:
    narrator, _, _ = _narrator(config=NarrationConfig(history_limit=2))

    for index in range(3):
        asyncio.run(narrator.say("manager", "kickoff", {"project_name": f"P{index}"}))

    history = narrator.history("general")
    assert [message.content.split("!")[0] for message in history] == [
        "Kicking off P1",
        "Kicking off P2",
    ]


def test_sanitize_strips_labels_numbering_and_quotes() -> None:
    assert sanitize('Response: "Ready to ship."') == "Ready to ship."
    assert sanitize("1. First things first") == "First things first"
    assert sanitize("- bullet point") == "bullet point"


def test_render_activity_formats_known_and_unknown_activities() -> None:
    committed = render_activity(
        "files_committed", {"files": ["a.py", "b.py"], "branch": "feature/x"}
    )
    unknown = render_activity("deploy", {"env": "prod"})

    assert committed == "Files Committed: Added 2 files to `feature/x`\n- `a.py`\n- `b.py`"
    assert unknown == 'GitHub Activity: deploy - {"env": "prod"}'


def test_announce_activity_uses_activity_line() -> None:
    narrator, sink, _ = _narrator()

    asyncio.run(
        narrator.announce_activity(
            "developer", "branch_created", {"branch": "feature/x", "task_title": "Cart"}
        )
    )

    assert sink.contents(topic="github_activity") == [
        'Branch Created: `feature/x` for task "Cart"'
    ]


def test_mentions_are_detected_and_answered_after_a_pause() -> None:
    narrator, sink, clock = _narrator()

    async def _run() -> list[str]:
        agents = narrator.handle_mentions(
            "@Sarah and @mike, thoughts on the nav?", user_name="Sam", channel="design"
        )
        await clock.drain()
        return [agent.agent_id for agent in agents]

    mentioned = asyncio.run(_run())

    assert sorted(mentioned) == ["designer", "manager"]
    assert len(sink.contents(topic="mention_response")) == 2
    assert all(message.channel == "design" for message in sink.messages)
    assert len(clock.sleeps) == 2
    assert all(1.5 <= seconds <= 3.5 for seconds in clock.sleeps)


def test_extract_question_removes_handles() -> None:
    directory = default_directory()

    question = Narrator.extract_question("@Emma can you retest?", directory.get("qa"))

    assert question == "can you retest?"


def test_converse_stops_at_message_cap() -> None:
    narrator, sink, _ = _narrator()

    messages = asyncio.run(
        narrator.converse("random", "standup", ["developer", "qa"], duration=1000, max_messages=4)
    )

    assert len(messages) == 4
    assert {message.agent_id for message in messages} <= {"developer", "qa"}
    assert len(sink.messages) == 4


def test_converse_stops_when_duration_elapses() -> None:
    narrator, _, _ = _narrator()

    messages = asyncio.run(narrator.converse("random", "standup", ["designer"], duration=1.0))

    assert len(messages) == 1


def test_progress_goes_to_sink() -> None:
    narrator, sink, _ = _narrator()

    narrator.publish_progress("developer", "t1", "coding", "Writing code", 30)

    assert sink.updates[0].progress == 30
    assert sink.updates[0].status == "coding"
