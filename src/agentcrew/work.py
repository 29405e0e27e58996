from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from agentcrew.agents import Agent, AgentDirectory
from agentcrew.clock import Clock
from agentcrew.config import CrewConfig
from agentcrew.errors import GenerationError, HostError, NotFoundError, ValidationError
from agentcrew.generators import TextGenerator
from agentcrew.hosts import FileChange, PullRequest, RepositoryHost
from agentcrew.narration import Narrator
from agentcrew.tasks import ProjectPlan, Task, TaskGraph

logger = logging.getLogger(__name__)

AgentWorkStatus = Literal["planning", "coding", "testing", "reviewing", "completed"]
FileStatus = Literal["planned", "created"]

STAGE_ORDER: dict[str, int] = {
    "planning": 0,
    "coding": 1,
    "testing": 2,
    "reviewing": 3,
    "completed": 4,
}


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class WorkItem:
    agent_id: str
    task_id: str
    project_id: str

    def to_dict(self) -> dict[str, str]:
        return {"agent_id": self.agent_id, "task_id": self.task_id, "project_id": self.project_id}


@dataclass(slots=True)
class WorkFile:
    path: str
    status: FileStatus = "planned"


@dataclass(slots=True)
class AgentWork:
    agent_id: str
    task_id: str
    project_id: str
    status: AgentWorkStatus = "planning"
    current_activity: str = "Analyzing task requirements"
    progress: int = 0
    files: list[WorkFile] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)
    attempt: int = 1
    branch: str | None = None
    pr_number: int | None = None
    pr_url: str | None = None
    progress_history: list[int] = field(default_factory=lambda: [0])
    started_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    @property
    def key(self) -> tuple[str, str]:
        return (self.agent_id, self.task_id)

    @property
    def blocked(self) -> bool:
        return bool(self.blockers) and self.status == "planning"

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "task_id": self.task_id,
            "project_id": self.project_id,
            "status": self.status,
            "current_activity": self.current_activity,
            "progress": self.progress,
            "files": [{"path": item.path, "status": item.status} for item in self.files],
            "dependencies": list(self.dependencies),
            "blockers": list(self.blockers),
            "attempt": self.attempt,
            "branch": self.branch,
            "pr_number": self.pr_number,
            "pr_url": self.pr_url,
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class WorkStore:
    """Live ``(agent_id, task_id) -> AgentWork`` map for one runtime."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], AgentWork] = {}

    def begin(self, item: WorkItem) -> AgentWork:
        previous = self._records.get((item.agent_id, item.task_id))
        work = AgentWork(
            agent_id=item.agent_id,
            task_id=item.task_id,
            project_id=item.project_id,
            attempt=previous.attempt + 1 if previous else 1,
        )
        self._records[work.key] = work
        return work

    def get(self, agent_id: str, task_id: str) -> AgentWork:
        work = self._records.get((agent_id, task_id))
        if work is None:
            raise NotFoundError("work", f"{agent_id}/{task_id}")
        return work

    def find(self, agent_id: str, task_id: str) -> AgentWork | None:
        return self._records.get((agent_id, task_id))

    def all(self) -> list[AgentWork]:
        return list(self._records.values())

    def advance(
        self,
        work: AgentWork,
        status: AgentWorkStatus,
        activity: str,
        progress: int,
    ) -> AgentWork:
        if status not in STAGE_ORDER:
            raise ValidationError(f"Unknown work status: {status}")
        if work.status == "completed":
            raise ValidationError(f"Work {work.agent_id}/{work.task_id} is already completed.")
        if STAGE_ORDER[status] < STAGE_ORDER[work.status]:
            raise ValidationError(
                f"Cannot move work from {work.status} back to {status} without a blocker."
            )
        if status == "completed" and work.status == "planning":
            raise ValidationError("Work cannot complete straight from planning.")
        if not 0 <= progress <= 100:
            raise ValidationError(f"Progress out of range: {progress}")
        if progress < work.progress:
            raise ValidationError(f"Progress cannot decrease ({work.progress} -> {progress}).")
        work.status = status
        work.current_activity = activity
        work.progress = progress
        work.progress_history.append(progress)
        work.updated_at = _utc_now()
        return work

    def block(self, work: AgentWork, message: str) -> AgentWork:
        """Escape back to planning, keeping progress and recording the blocker."""
        work.blockers.append(message)
        work.status = "planning"
        work.current_activity = f"Blocked: {message}"
        work.updated_at = _utc_now()
        return work


def branch_name(task: Task) -> str:
    slug = re.sub(r"\s+", "-", task.title.lower())[:30]
    return f"feature/{slug}-{task.id[:8]}"


@dataclass(slots=True)
class Implementation:
    files: list[FileChange] = field(default_factory=list)
    summary: str = "Implementation completed"
    integration_points: list[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Implementation:
        files: list[FileChange] = []
        for item in payload.get("files") or []:
            if isinstance(item, dict) and item.get("path"):
                files.append(
                    FileChange(path=str(item["path"]), content=str(item.get("content", "")))
                )
        points = payload.get("integrationPoints") or payload.get("integration_points") or []
        return cls(
            files=files,
            summary=str(payload.get("summary") or "Implementation completed"),
            integration_points=[str(point) for point in points],
        )


ReviewTrigger = Callable[[Agent, Task, ProjectPlan, PullRequest], Any]


class TaskExecutor:
    """Runs one WorkItem through the planning-to-completed sequence."""

    def __init__(
        self,
        directory: AgentDirectory,
        graph: TaskGraph,
        store: WorkStore,
        narrator: Narrator,
        host: RepositoryHost,
        generator: TextGenerator,
        clock: Clock,
        config: CrewConfig,
        *,
        on_pull_request: ReviewTrigger | None = None,
    ) -> None:
        self.directory = directory
        self.graph = graph
        self.store = store
        self.narrator = narrator
        self.host = host
        self.generator = generator
        self.clock = clock
        self.config = config
        self.on_pull_request = on_pull_request

    def _advance(
        self,
        work: AgentWork,
        status: AgentWorkStatus,
        activity: str,
        progress: int,
    ) -> None:
        self.store.advance(work, status, activity, progress)
        self.narrator.publish_progress(work.agent_id, work.task_id, status, activity, progress)

    def check_dependencies(self, agent: Agent, task: Task, plan: ProjectPlan) -> list[str]:
        blockers: list[str] = []
        for dep_id in task.dependencies:
            try:
                dependency = plan.task(dep_id)
            except NotFoundError:
                continue
            if dependency.status != "done":
                blockers.append(self.directory.name_of(dependency.assigned_to))
        if agent.role == "designer" and task.type == "design":
            manager = self.directory.first_by_role("manager")
            blockers.append(f"Product requirements from {manager.name if manager else 'manager'}")
        elif agent.role == "qa" and task.type == "test":
            developer = self.directory.first_by_role("developer")
            blockers.append(f"Implementation from {developer.name if developer else 'developer'}")
        return blockers

    async def generate_implementation(
        self,
        agent: Agent,
        task: Task,
        plan: ProjectPlan,
    ) -> Implementation:
        team_tasks = [{"title": item.title, "assignedTo": item.assigned_to} for item in plan.tasks]
        prompt = (
            f"As {agent.name} ({agent.role}), implement the following task:\n"
            f"Title: {task.title}\nDescription: {task.description}\nType: {task.type}\n"
            f"Project context: {team_tasks}\n\n"
            "Generate the files to create or modify with their content, a brief summary, and "
            "any integration points with other team members' work. Respond in JSON:\n"
            '{"files": [{"path": "string", "content": "string"}], "summary": "string", '
            '"integrationPoints": ["string"]}'
        )
        try:
            payload = await self.generator.generate_structured(
                prompt,
                kind="implementation",
                context={"task_title": task.title, "task_type": task.type},
            )
        except GenerationError as exc:
            logger.warning("Implementation generation failed for %s: %s", task.id, exc)
            return Implementation()
        return Implementation.from_payload(payload)

    @staticmethod
    def pull_request_body(agent: Agent, task: Task, implementation: Implementation) -> str:
        changes = "\n".join(f"- `{item.path}`" for item in implementation.files) or "- none"
        points = "\n".join(f"- {point}" for point in implementation.integration_points) or "- none"
        return (
            f"## Summary\n{implementation.summary}\n\n"
            f"## Task Details\n- **Title:** {task.title}\n- **Type:** {task.type}\n"
            f"- **Priority:** {task.priority}\n- **Assigned to:** {agent.name} ({agent.role})\n\n"
            f"## Description\n{task.description or 'n/a'}\n\n"
            f"## Changes\n{changes}\n\n"
            f"## Integration Points\n{points}\n"
        )

    async def execute(self, item: WorkItem) -> AgentWork:
        agent = self.directory.get(item.agent_id)
        plan = self.graph.get_project(item.project_id)
        task = plan.task(item.task_id)
        work = self.store.begin(item)
        self.graph.set_status(plan.id, task.id, "in-progress")
        self.narrator.publish_progress(
            work.agent_id, work.task_id, work.status, work.current_activity, work.progress
        )
        logger.info("Agent %s started task %s (%s)", agent.agent_id, task.id, task.title)
        try:
            await self._run(agent, task, plan, work)
        except HostError as exc:
            await self.narrator.say(
                agent.agent_id,
                "error_report",
                {"task_title": task.title, "error": str(exc)},
            )
            raise
        return work

    async def _run(self, agent: Agent, task: Task, plan: ProjectPlan, work: AgentWork) -> None:
        await self.narrator.announce_activity(
            agent.agent_id,
            "task_started",
            {"task_title": task.title, "estimated_hours": task.estimated_hours},
        )
        await self.narrator.say(
            agent.agent_id,
            "task_start",
            {
                "task_title": task.title,
                "task_description": task.description,
                "task_type": task.type,
                "estimated_hours": task.estimated_hours,
            },
        )

        self._advance(work, "planning", "Analyzing task requirements", 10)
        work.dependencies = self.check_dependencies(agent, task, plan)
        if work.dependencies:
            await self.narrator.say(
                agent.agent_id,
                "collaboration_request",
                {
                    "task_title": task.title,
                    "reason": ", ".join(work.dependencies),
                },
            )

        self._advance(work, "coding", "Writing code", 30)
        implementation = await self.generate_implementation(agent, task, plan)
        work.files = [WorkFile(path=change.path) for change in implementation.files]

        branch = branch_name(task)
        branch_created = False
        try:
            await self.host.create_branch(plan.repository, branch, self.config.host.base_branch)
            branch_created = True
            work.branch = branch
            await self.narrator.announce_activity(
                agent.agent_id,
                "branch_created",
                {"branch": branch, "task_title": task.title, "repository": plan.repository},
            )
        except HostError as exc:
            logger.error("Error creating branch %s in %s: %s", branch, plan.repository, exc)

        self._advance(work, "coding", "Writing and committing code", 60)
        await self.narrator.say(
            agent.agent_id,
            "progress_update",
            {"task_title": task.title, "activity": "Writing and committing code", "progress": 60},
        )
        if implementation.files and branch_created:
            committed = await self.host.commit_files(
                plan.repository,
                branch,
                implementation.files,
                f"{task.type}: {task.title}",
            )
            for work_file in work.files:
                if work_file.path in committed:
                    work_file.status = "created"
            await self.narrator.announce_activity(
                agent.agent_id,
                "files_committed",
                {"files": committed, "branch": branch, "repository": plan.repository},
            )
        await self.clock.sleep(self.config.scheduler.step_pause_seconds)

        if agent.role == "qa" or task.type == "test":
            self._advance(work, "testing", "Running tests", 80)
            await self.narrator.say(
                agent.agent_id,
                "testing_update",
                {"task_title": task.title, "test_results": "All tests passing", "progress": 80},
            )

        pull: PullRequest | None = None
        if task.type in ("feature", "bug"):
            pull = await self.host.create_pull_request(
                plan.repository,
                title=task.title,
                body=self.pull_request_body(agent, task, implementation),
                head=branch,
                base=self.config.host.base_branch,
                labels=[task.type, "ai-generated", f"priority-{task.priority}"],
            )
            work.pr_number = pull.number
            work.pr_url = pull.url
            logger.info("PR #%d opened for task %s", pull.number, task.id)
            await self.narrator.announce_activity(
                agent.agent_id,
                "pr_created",
                {
                    "pr_number": pull.number,
                    "pr_url": pull.url,
                    "title": task.title,
                    "branch": branch,
                    "base": self.config.host.base_branch,
                    "repository": plan.repository,
                },
            )

        self._advance(work, "completed", "Task completed", 100)
        self.graph.set_status(plan.id, task.id, "done")
        await self.narrator.announce_activity(
            agent.agent_id,
            "task_completed",
            {"task_title": task.title, "repository": plan.repository, "branch": branch},
        )
        await self.narrator.say(
            agent.agent_id,
            "task_complete",
            {"task_title": task.title, "summary": implementation.summary},
        )
        logger.info("Task %s completed by %s", task.id, agent.agent_id)

        if pull is not None and self.on_pull_request is not None:
            self.on_pull_request(agent, task, plan, pull)
