import asyncio

import pytest

from agentcrew.agents import default_directory
from agentcrew.clock import InstantClock
from agentcrew.generators import TemplateGenerator
from agentcrew.hosts import InMemoryHost
from agentcrew.narration import MemorySink, Narrator
from agentcrew.review import ReviewPipeline, ReviewStore
from agentcrew.router import ChatCommandRouter, ReviewRequest, StatusQuery, parse_command


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("review PR #42 in my-repo", ReviewRequest(42, "my-repo")),
        ("Could you REVIEW pr 8 on web_app please", ReviewRequest(8, "web_app")),
        ("review PR #5 inventory-service", ReviewRequest(5, "inventory-service")),
        ("review PR #6 onboarding-app", ReviewRequest(6, "onboarding-app")),
        ("review PR #9 in online-shop", ReviewRequest(9, "online-shop")),
        ("review #7", ReviewRequest(7, "ai-test-repo")),
        ("please review 15 when you can", ReviewRequest(15, "ai-test-repo")),
        ("status of PR #42", StatusQuery(42)),
        ("what's the status PR42?", StatusQuery(42)),
        ("review #5 and status of PR #6", ReviewRequest(5, "ai-test-repo")),
        ("good morning team", None),
    ],
)
def test_parse_command(message: str, expected: object) -> None:
    assert parse_command(message) == expected


def test_default_repository_is_configurable() -> None:
    assert parse_command("review #3", default_repository="shop") == ReviewRequest(3, "shop")


def _router() -> dict:
    directory = default_directory()
    host = InMemoryHost()
    sink = MemorySink()
    clock = InstantClock()
    generator = TemplateGenerator()
    narrator = Narrator(generator, directory, sink, clock)
    store = ReviewStore()
    pipeline = ReviewPipeline(directory, host, generator, narrator, store, clock)
    router = ChatCommandRouter(pipeline, store, narrator, directory, clock)
    return {
        "router": router,
        "store": store,
        "host": host,
        "sink": sink,
        "clock": clock,
        "pipeline": pipeline,
    }


def test_status_without_context_reports_unknown() -> None:
    parts = _router()

    result = asyncio.run(parts["router"].handle("status of PR #42", user_id="sam", user_name="Sam"))

    assert result.command == StatusQuery(42)
    assert len(result.messages) == 1
    assert result.messages[0].agent_id == "manager"
    assert "unknown" in result.messages[0].content
    assert "PR #42" in result.messages[0].content


def test_status_reports_stored_context_verbatim() -> None:
    parts = _router()
    context = parts["pipeline"].open_review(42, "billing-service", requested_by="Priya")
    parts["store"].set_status(context, "changes-requested")

    result = asyncio.run(parts["router"].handle("status of PR #42", user_id="sam", user_name="Sam"))

    content = result.messages[0].content
    assert "changes-requested" in content
    assert "billing-service" in content
    assert "Priya" in content


def test_chat_review_runs_qa_and_developer_then_merges() -> None:
    parts = _router()
    pull = parts["host"].open_pull_request("my-repo", files={"app.py": "x = 1\n"})

    async def _run() -> dict:
        result = await parts["router"].handle(
            f"review PR #{pull.number} in my-repo", user_id="sam", user_name="Sam"
        )
        assert result.review is not None
        await parts["clock"].drain()
        return result.to_dict()

    payload = asyncio.run(_run())

    assert payload["command"] == {
        "type": "review_request",
        "pr_number": 1,
        "repository": "my-repo",
    }
    assert payload["messages"][0]["content"].startswith("Got it, Sam!")
    context = parts["store"].get(1)
    assert context.requested_by == "Sam"
    assert "qa" in context.reviewers
    assert parts["sink"].contents(topic="reviewers_assigned") == [
        "PR #1 in my-repo will be reviewed by Emma Rodriguez, Alex Thompson."
    ]
    assert context.status == "merged"
    assert parts["host"].is_merged("my-repo", 1)


def test_mentions_schedule_replies_independently_of_commands() -> None:
    parts = _router()

    async def _run() -> list[str]:
        result = await parts["router"].handle(
            "@Emma can you check the login flow?", user_id="sam", user_name="Sam"
        )
        await parts["clock"].drain()
        return result.mentioned

    mentioned = asyncio.run(_run())

    assert mentioned == ["qa"]
    replies = parts["sink"].contents(topic="mention_response", agent_id="qa")
    assert replies == ["Thanks for reaching out, Sam! Happy to help with that."]
    assert any(1.5 <= seconds <= 3.5 for seconds in parts["clock"].sleeps)


def test_unrecognized_message_produces_nothing() -> None:
    parts = _router()

    result = asyncio.run(parts["router"].handle("lunch?", user_id="sam", user_name="Sam"))

    assert result.to_dict() == {"command": None, "messages": [], "mentioned": []}
    assert parts["sink"].messages == []
