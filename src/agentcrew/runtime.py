from __future__ import annotations

import logging
import random
from collections.abc import Callable
from typing import Any

from agentcrew.agents import Agent, AgentDirectory, default_directory
from agentcrew.clock import AsyncioClock, Clock, InstantClock
from agentcrew.config import CrewConfig, GeneratorName
from agentcrew.errors import NotFoundError, ValidationError
from agentcrew.generators import (
    OpenAIGenerator,
    ResilientGenerator,
    RetryPolicy,
    TemplateGenerator,
    TextGenerator,
)
from agentcrew.hosts import GitHubHost, InMemoryHost, PullRequest, RepositoryHost
from agentcrew.narration import LoggingSink, Narrator, NotificationSink
from agentcrew.review import ReviewPipeline, ReviewStore, ReviewTask, select_reviewers
from agentcrew.router import ChatCommandRouter
from agentcrew.scheduler import WorkScheduler
from agentcrew.tasks import ProjectPlan, Task, TaskGraph
from agentcrew.work import TaskExecutor, WorkStore

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]


def _failure(exc: Exception) -> dict[str, Any]:
    return {"success": False, "error": str(exc)}


def _build_single_generator(name: GeneratorName, config: CrewConfig) -> TextGenerator:
    if name == "openai":
        return OpenAIGenerator(model=config.generator.model)
    return TemplateGenerator()


def build_generator(
    config: CrewConfig,
    *,
    offline: bool = False,
    event_hook: EventHook | None = None,
) -> TextGenerator:
    if offline:
        return TemplateGenerator()
    policy = RetryPolicy(
        max_retries=config.generator.max_retries,
        backoff_seconds=config.generator.retry_backoff_seconds,
        timeout_seconds=config.generator.timeout_seconds,
    )
    return ResilientGenerator(
        primary_name=config.generator.primary,
        primary=_build_single_generator(config.generator.primary, config),
        fallback_name=config.generator.fallback,
        fallback=_build_single_generator(config.generator.fallback, config),
        retry_policy=policy,
        event_hook=event_hook,
    )


def build_host(config: CrewConfig, *, offline: bool = False) -> RepositoryHost:
    if offline or config.host.backend == "memory":
        return InMemoryHost(base_branch=config.host.base_branch)
    return GitHubHost.from_env(
        owner=config.host.owner,
        token_env=config.host.token_env,
        api_url=config.host.api_url,
    )


class CrewRuntime:
    """Owns every store and service for one process; API methods never raise."""

    def __init__(
        self,
        config: CrewConfig | None = None,
        *,
        directory: AgentDirectory | None = None,
        generator: TextGenerator | None = None,
        host: RepositoryHost | None = None,
        sink: NotificationSink | None = None,
        clock: Clock | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.config = config or CrewConfig.default()
        self.directory = directory or default_directory(
            recent_events_limit=self.config.narration.recent_events_limit
        )
        self.generator = generator or TemplateGenerator()
        self.host = host or InMemoryHost(base_branch=self.config.host.base_branch)
        self.sink = sink or LoggingSink()
        self.clock = clock or AsyncioClock()
        self.graph = TaskGraph()
        self.work = WorkStore()
        self.reviews = ReviewStore()
        self.narrator = Narrator(
            self.generator,
            self.directory,
            self.sink,
            self.clock,
            self.config.narration,
            default_channel=self.config.review.default_channel,
        )
        self.pipeline = ReviewPipeline(
            self.directory,
            self.host,
            self.generator,
            self.narrator,
            self.reviews,
            self.clock,
            self.config.review,
        )
        self.executor = TaskExecutor(
            self.directory,
            self.graph,
            self.work,
            self.narrator,
            self.host,
            self.generator,
            self.clock,
            self.config,
            on_pull_request=self._review_pull_request,
        )
        self.scheduler = WorkScheduler(
            self.executor,
            self.graph,
            self.work,
            self.clock,
            self.config.scheduler,
            event_hook=event_hook,
        )
        self.router = ChatCommandRouter(
            self.pipeline,
            self.reviews,
            self.narrator,
            self.directory,
            self.clock,
            self.config.review,
        )

    @classmethod
    def from_config(
        cls,
        config: CrewConfig,
        *,
        offline: bool = False,
        fast: bool = False,
        seed: int | None = None,
        sink: NotificationSink | None = None,
        event_hook: EventHook | None = None,
    ) -> CrewRuntime:
        rng = random.Random(seed)
        clock: Clock = InstantClock(rng) if fast else AsyncioClock(rng)
        return cls(
            config,
            generator=build_generator(config, offline=offline, event_hook=event_hook),
            host=build_host(config, offline=offline),
            sink=sink,
            clock=clock,
            event_hook=event_hook,
        )

    def _review_pull_request(
        self,
        author: Agent,
        task: Task,
        plan: ProjectPlan,
        pull: PullRequest,
    ) -> None:
        self.pipeline.schedule_task_review(author, task, plan.repository, pull)

    async def start_project(self, plan: ProjectPlan | dict[str, Any]) -> dict[str, Any]:
        try:
            project = plan if isinstance(plan, ProjectPlan) else ProjectPlan.from_dict(plan)
            assignments = project.tasks_by_agent()
            unknown = sorted(agent_id for agent_id in assignments if agent_id not in self.directory)
            if unknown:
                raise ValidationError(f"Tasks assigned to unknown agents: {', '.join(unknown)}")
            project = self.graph.add_project(project)
            await self._kickoff(project, assignments)
            queued = self.scheduler.schedule_project(project.id)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Could not start project")
            return _failure(exc)
        return {
            "success": True,
            "project_id": project.id,
            "queued": [item.task_id for item in queued],
            "held": self.scheduler.held(project.id)[project.id],
        }

    async def _kickoff(self, project: ProjectPlan, assignments: dict[str, list[Task]]) -> None:
        summary = "; ".join(
            f"{self.directory.name_of(agent_id)}: {len(tasks)} task(s)"
            for agent_id, tasks in assignments.items()
        )
        await self.narrator.say(
            self.pipeline.coordinator_id,
            "kickoff",
            {
                "project_name": project.name,
                "project_description": project.description,
                "assignments": summary or "no agent tasks",
            },
        )
        for agent_id, tasks in assignments.items():
            await self.narrator.say(
                agent_id,
                "work_plan",
                {
                    "project_name": project.name,
                    "task_titles": ", ".join(task.title for task in tasks),
                },
            )

    async def complete_task(self, project_id: str, task_id: str) -> dict[str, Any]:
        try:
            released = self.scheduler.complete_task(project_id, task_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Could not complete task %s", task_id)
            return _failure(exc)
        return {"success": True, "released": [item.task_id for item in released]}

    async def request_user_review(
        self,
        user_id: str,
        user_name: str,
        user_role: str,
        repository: str,
        pr_number: int,
        description: str | None = None,
        reviewers: list[str] | None = None,
        channel: str | None = None,
    ) -> dict[str, Any]:
        try:
            author = Agent.human(user_id, user_name, user_role)
            task = ReviewTask.for_pull_request(pr_number, user_name, description=description)
            if reviewers:
                if len(set(reviewers)) != len(reviewers):
                    raise ValidationError("Reviewer list contains duplicates.")
                missing = [reviewer for reviewer in reviewers if reviewer not in self.directory]
                if missing:
                    raise ValidationError(f"Unknown reviewers: {', '.join(missing)}")
                selected = [self.directory.get(reviewer) for reviewer in reviewers]
            else:
                selected = select_reviewers(self.directory, author, task)
            context = self.pipeline.open_review(
                pr_number, repository, requested_by=user_name, channel=channel
            )
            self.clock.spawn(
                self.pipeline.run_reviews(context, selected, author, task),
                name=f"user-review-pr-{pr_number}",
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Could not request review for PR #%s", pr_number)
            return _failure(exc)
        return {
            "success": True,
            "pr_number": pr_number,
            "repository": repository,
            "reviewers": [agent.agent_id for agent in selected],
        }

    async def handle_chat(
        self,
        message: str,
        *,
        user_id: str,
        user_name: str,
        channel: str | None = None,
    ) -> dict[str, Any]:
        try:
            result = await self.router.handle(
                message, user_id=user_id, user_name=user_name, channel=channel
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Chat message handling failed")
            return _failure(exc)
        return {"success": True, **result.to_dict()}

    async def converse(
        self,
        topic: str,
        participants: list[str],
        *,
        channel: str | None = None,
        duration: float = 30.0,
        max_messages: int = 8,
    ) -> dict[str, Any]:
        try:
            missing = [agent_id for agent_id in participants if agent_id not in self.directory]
            if missing:
                raise ValidationError(f"Unknown participants: {', '.join(missing)}")
            messages = await self.narrator.converse(
                channel or self.config.review.default_channel,
                topic,
                participants,
                duration,
                max_messages,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Conversation failed")
            return _failure(exc)
        return {"success": True, "messages": [message.to_dict() for message in messages]}

    def review_status(self, pr_number: int) -> dict[str, Any]:
        try:
            context = self.reviews.get(pr_number)
        except NotFoundError as exc:
            return _failure(exc)
        return {"success": True, **context.to_dict()}

    def work_status(self) -> dict[str, Any]:
        entries: list[dict[str, Any]] = []
        for work in self.work.all():
            agent = self.directory.find(work.agent_id)
            try:
                task: Task | None = self.graph.get_task(work.project_id, work.task_id)
            except NotFoundError:
                task = None
            entries.append(
                {
                    **work.to_dict(),
                    "agent_name": agent.name if agent else work.agent_id,
                    "agent_role": agent.role if agent else "unknown",
                    "task_title": task.title if task else work.task_id,
                    "task_type": task.type if task else "unknown",
                    "task_status": task.status if task else "unknown",
                }
            )
        return {"success": True, "work": entries}

    def queue_status(self) -> dict[str, Any]:
        return {"success": True, **self.scheduler.status()}

    def agent_status(self) -> dict[str, Any]:
        return {
            "success": True,
            "agents": [
                {
                    "agent_id": agent.agent_id,
                    "name": agent.name,
                    "role": agent.role,
                    **agent.context.snapshot(),
                }
                for agent in self.directory
            ],
        }

    async def wait_idle(self) -> None:
        """Wait for the work queue and every background review or narration."""
        await self.clock.drain()

    async def close(self) -> None:
        await self.host.close()
