import pytest

from agentcrew.agents import Agent, AgentDirectory, RuntimeContext, default_directory
from agentcrew.errors import NotFoundError, ValidationError


def test_default_directory_has_one_agent_per_role() -> None:
    directory = default_directory()

    assert len(directory) == 5
    assert {agent.role for agent in directory} == {
        "developer",
        "designer",
        "qa",
        "manager",
        "analyst",
    }
    assert directory.name_of("qa") == "Emma Rodriguez"
    assert directory.name_of("ghost") == "ghost"


def test_get_unknown_agent_raises_not_found() -> None:
    with pytest.raises(NotFoundError, match="agent not found: ghost"):
        default_directory().get("ghost")


def test_human_ids_cannot_be_registered() -> None:
    directory = AgentDirectory()

    with pytest.raises(ValidationError):
        directory.register(Agent.human("sam", "Sam Park"))


def test_human_author_gets_user_prefix_once() -> None:
    assert Agent.human("sam", "Sam Park").agent_id == "user-sam"
    assert Agent.human("user-sam", "Sam Park").agent_id == "user-sam"
    assert Agent.human("sam", "Sam Park").is_human


def test_first_by_role_can_exclude_an_agent() -> None:
    directory = default_directory()
    junior = directory.register(Agent("junior-dev", "Jamie Lee", "developer"))

    assert junior.is_junior
    assert directory.first_by_role("developer", exclude="junior-dev").agent_id == "developer"
    assert directory.first_by_role("developer", exclude="developer") is junior
    assert directory.first_by_role("lawyer") is None


def test_resolve_mention_matches_id_full_name_and_first_name() -> None:
    directory = default_directory()

    assert directory.resolve_mention("@qa").agent_id == "qa"
    assert directory.resolve_mention("sarah").agent_id == "designer"
    assert directory.resolve_mention("Mike Johnson").agent_id == "manager"
    assert directory.resolve_mention("@nobody") is None


def test_recent_events_keep_five_newest_first() -> None:
    context = RuntimeContext()

    for index in range(7):
        context.record_event(f"event {index}")

    assert list(context.recent_events) == [
        "event 6",
        "event 5",
        "event 4",
        "event 3",
        "event 2",
    ]


def test_triggers_update_status_mood_and_current_task() -> None:
    context = RuntimeContext()

    context.apply_trigger("task_start", task_title="Login form")
    assert context.work_status == "working"
    assert context.current_task == "Login form"

    context.apply_trigger("progress_update", progress=60)
    assert context.mood == "focused"
    context.apply_trigger("progress_update", progress=80)
    assert context.mood == "accomplished"

    context.apply_trigger("collaboration_request")
    assert context.work_status == "collaborating"

    context.apply_trigger("task_complete")
    assert context.work_status == "available"
    assert context.current_task is None


def test_directory_respects_configured_event_limit() -> None:
    directory = default_directory(recent_events_limit=2)
    context = directory.get("developer").context

    for index in range(4):
        context.record_event(str(index))

    assert context.snapshot()["recent_events"] == ["3", "2"]
