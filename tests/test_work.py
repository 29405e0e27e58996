import asyncio

import pytest

from agentcrew.agents import default_directory
from agentcrew.clock import InstantClock
from agentcrew.config import CrewConfig
from agentcrew.errors import HostError, ValidationError
from agentcrew.generators import TemplateGenerator
from agentcrew.hosts import InMemoryHost, PullRequest
from agentcrew.narration import MemorySink, Narrator
from agentcrew.tasks import ProjectPlan, Task, TaskGraph
from agentcrew.work import Implementation, TaskExecutor, WorkItem, WorkStore, branch_name


class BranchlessHost(InMemoryHost):
    async def create_branch(self, repository: str, branch: str, base: str) -> str:
        _ = repository, branch, base
        raise HostError("branch protection", reason="permission_denied", status_code=403)


class NoPullRequestHost(InMemoryHost):
    async def create_pull_request(self, repository: str, **kwargs) -> PullRequest:
        _ = repository, kwargs
        raise HostError("service down", reason="unavailable", status_code=503)


def _build(host: InMemoryHost | None = None) -> dict:
    directory = default_directory()
    graph = TaskGraph()
    store = WorkStore()
    sink = MemorySink()
    clock = InstantClock()
    generator = TemplateGenerator()
    host = host or InMemoryHost()
    narrator = Narrator(generator, directory, sink, clock)
    reviews: list[tuple[str, str, int]] = []
    executor = TaskExecutor(
        directory,
        graph,
        store,
        narrator,
        host,
        generator,
        clock,
        CrewConfig.default(),
        on_pull_request=lambda agent, task, plan, pull: reviews.append(
            (agent.agent_id, task.id, pull.number)
        ),
    )
    graph.add_project(
        ProjectPlan.from_dict(
            {
                "id": "shop",
                "repository": "shop-app",
                "tasks": [
                    {
                        "id": "feat-login-0001",
                        "title": "Login Form",
                        "type": "feature",
                        "priority": "high",
                        "assignedTo": "developer",
                    },
                    {
                        "id": "test-login",
                        "title": "Login tests",
                        "type": "test",
                        "assignedTo": "qa",
                        "dependencies": ["feat-login-0001"],
                    },
                    {
                        "id": "design-nav",
                        "title": "Navigation mockups",
                        "type": "design",
                        "assignedTo": "designer",
                    },
                ],
            }
        )
    )
    return {
        "executor": executor,
        "store": store,
        "graph": graph,
        "sink": sink,
        "host": host,
        "clock": clock,
        "reviews": reviews,
    }


def test_advance_is_monotonic() -> None:
    store = WorkStore()
    work = store.begin(WorkItem("developer", "t1", "p1"))

    store.advance(work, "coding", "Writing code", 30)

    with pytest.raises(ValidationError):
        store.advance(work, "coding", "Writing code", 20)
    with pytest.raises(ValidationError):
        store.advance(work, "planning", "Back to the drawing board", 40)
    with pytest.raises(ValidationError):
        store.advance(work, "coding", "Too far", 101)
    assert work.progress_history == [0, 30]


def test_completed_requires_leaving_planning_and_is_final() -> None:
    store = WorkStore()
    work = store.begin(WorkItem("developer", "t1", "p1"))

    with pytest.raises(ValidationError):
        store.advance(work, "completed", "Done", 100)

    store.advance(work, "coding", "Writing code", 50)
    store.advance(work, "completed", "Done", 100)

    with pytest.raises(ValidationError):
        store.advance(work, "completed", "Again", 100)


def test_block_escapes_to_planning_and_keeps_progress() -> None:
    store = WorkStore()
    work = store.begin(WorkItem("developer", "t1", "p1"))
    store.advance(work, "coding", "Writing code", 60)

    store.block(work, "service down")

    assert work.status == "planning"
    assert work.progress == 60
    assert work.blockers == ["service down"]
    assert work.current_activity == "Blocked: service down"
    assert work.blocked


def test_begin_again_counts_attempts() -> None:
    store = WorkStore()
    item = WorkItem("developer", "t1", "p1")

    store.begin(item)
    retry = store.begin(item)

    assert retry.attempt == 2
    assert retry.progress == 0
    assert store.get("developer", "t1") is retry


def test_branch_name_uses_slug_and_short_id() -> None:
    short = Task(id="abcdef123456", title="Add   Search Bar")
    long = Task(id="t-42", title="Implement the product recommendation engine")

    assert branch_name(short) == "feature/add-search-bar-abcdef12"
    assert branch_name(long) == "feature/implement-the-product-recommen-t-42"


def test_implementation_payload_defaults() -> None:
    implementation = Implementation.from_payload({"files": [{"content": "no path"}]})

    assert implementation.files == []
    assert implementation.summary == "Implementation completed"


def test_feature_task_runs_full_sequence() -> None:
    parts = _build()

    work = asyncio.run(parts["executor"].execute(WorkItem("developer", "feat-login-0001", "shop")))

    assert work.status == "completed"
    assert work.progress_history == [0, 10, 30, 60, 100]
    assert work.branch == "feature/login-form-feat-log"
    assert [(item.path, item.status) for item in work.files] == [
        ("src/login_form.py", "created")
    ]
    assert work.pr_number == 1
    assert parts["graph"].get_task("shop", "feat-login-0001").status == "done"
    assert parts["reviews"] == [("developer", "feat-login-0001", 1)]

    pull_files = asyncio.run(parts["host"].get_changed_files("shop-app", 1))
    assert [item.filename for item in pull_files] == ["src/login_form.py"]

    activity = parts["sink"].contents(topic="github_activity", agent_id="developer")
    assert any(line.startswith("Pull Request Created: [#1]") for line in activity)
    assert parts["sink"].contents(topic="task_complete")
    assert parts["clock"].sleeps == [3.0]


def test_pull_request_is_labelled_by_type_and_priority() -> None:
    parts = _build()

    asyncio.run(parts["executor"].execute(WorkItem("developer", "feat-login-0001", "shop")))

    labels = parts["host"]._repositories["shop-app"].pulls[1].pull.labels
    assert labels == ["feature", "ai-generated", "priority-high"]


def test_test_task_passes_through_testing_without_pull_request() -> None:
    parts = _build()
    parts["graph"].set_status("shop", "feat-login-0001", "done")

    work = asyncio.run(parts["executor"].execute(WorkItem("qa", "test-login", "shop")))

    assert work.progress_history == [0, 10, 30, 60, 80, 100]
    assert work.pr_number is None
    assert work.dependencies == ["Implementation from Alex Thompson"]
    assert parts["sink"].contents(topic="testing_update", agent_id="qa")
    assert parts["reviews"] == []


def test_branch_failure_is_logged_and_files_stay_planned() -> None:
    parts = _build(BranchlessHost())

    work = asyncio.run(parts["executor"].execute(WorkItem("designer", "design-nav", "shop")))

    assert work.status == "completed"
    assert work.branch is None
    assert [item.status for item in work.files] == ["planned"]
    assert work.dependencies == ["Product requirements from Mike Johnson"]
    assert parts["sink"].contents(topic="collaboration_request", agent_id="designer")


def test_pull_request_failure_is_reported_and_raised() -> None:
    parts = _build(NoPullRequestHost())

    with pytest.raises(HostError, match="service down"):
        asyncio.run(parts["executor"].execute(WorkItem("developer", "feat-login-0001", "shop")))

    work = parts["store"].get("developer", "feat-login-0001")
    assert work.status == "coding"
    assert work.progress == 60
    assert parts["sink"].contents(topic="error_report", agent_id="developer") == [
        'Error: ran into a problem on "Login Form": service down'
    ]
