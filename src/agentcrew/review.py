from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, Protocol

from agentcrew.agents import Agent, AgentDirectory
from agentcrew.clock import Clock
from agentcrew.config import ReviewConfig
from agentcrew.errors import CrewError, GenerationError, HostError, NotFoundError
from agentcrew.generators import TextGenerator
from agentcrew.hosts import ChangedFile, PullRequest, RepositoryHost, ReviewSubmission
from agentcrew.narration import Narrator

logger = logging.getLogger(__name__)

ReviewStatus = Literal[
    "in-progress",
    "approved",
    "changes-requested",
    "merged",
    "merge-failed",
    "failed",
]


def _utc_now() -> datetime:
    return datetime.now(UTC)


class Reviewable(Protocol):
    id: str
    title: str
    type: str
    priority: str
    description: str


@dataclass(slots=True)
class ReviewTask:
    """Stand-in task for reviews that were requested by a person."""

    id: str
    title: str
    type: str = "review"
    priority: str = "medium"
    description: str = ""

    @classmethod
    def for_pull_request(
        cls,
        pr_number: int,
        requested_by: str,
        *,
        prefix: str = "user-review",
        description: str | None = None,
    ) -> ReviewTask:
        return cls(
            id=f"{prefix}-{pr_number}",
            title=f"Review PR #{pr_number}",
            description=description or f"{requested_by} requested review for PR #{pr_number}",
        )


@dataclass(slots=True)
class Verdict:
    approved: bool
    changes_requested: bool
    body: str
    summary: str
    fallback: bool = False

    @classmethod
    def fallback_for(cls, reviewer_name: str) -> Verdict:
        return cls(
            approved=True,
            changes_requested=False,
            body=(
                f"## Review by {reviewer_name}\n\n"
                "The implementation looks good and meets the task requirements."
            ),
            summary="Approved - no issues found",
            fallback=True,
        )

    @classmethod
    def from_payload(cls, payload: Any, reviewer_name: str) -> Verdict:
        """Build a verdict from generator output, falling back on anything malformed."""
        if not isinstance(payload, dict):
            return cls.fallback_for(reviewer_name)
        approved = payload.get("approved")
        changes = payload.get("changesRequested", payload.get("changes_requested", False))
        if not isinstance(approved, bool) or not isinstance(changes, bool):
            return cls.fallback_for(reviewer_name)
        return cls(
            approved=approved and not changes,
            changes_requested=changes,
            body=str(payload.get("body") or f"Reviewed by {reviewer_name}"),
            summary=str(payload.get("summary") or "Review completed"),
        )

    @property
    def event(self) -> str:
        if self.approved:
            return "APPROVE"
        if self.changes_requested:
            return "REQUEST_CHANGES"
        return "COMMENT"

    @property
    def label(self) -> str:
        if self.approved:
            return "Approved"
        if self.changes_requested:
            return "Changes Requested"
        return "Comments Added"


@dataclass(slots=True)
class ReviewerEntry:
    reviewer_id: str
    reviewer_name: str
    approved: bool
    changes_requested: bool
    summary: str
    timestamp: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reviewer_name": self.reviewer_name,
            "approved": self.approved,
            "changes_requested": self.changes_requested,
            "summary": self.summary,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class ReviewContext:
    pr_number: int
    repository: str
    channel: str
    requested_by: str
    status: ReviewStatus = "in-progress"
    started_at: datetime = field(default_factory=_utc_now)
    reviewers: dict[str, ReviewerEntry] = field(default_factory=dict)
    merge_sha: str | None = None

    def record(self, entry: ReviewerEntry) -> bool:
        """Store a reviewer's verdict once; later writes for the same reviewer are ignored."""
        if entry.reviewer_id in self.reviewers:
            return False
        self.reviewers[entry.reviewer_id] = entry
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "pr_number": self.pr_number,
            "repository": self.repository,
            "channel": self.channel,
            "requested_by": self.requested_by,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "reviewers": {key: entry.to_dict() for key, entry in self.reviewers.items()},
            "merge_sha": self.merge_sha,
        }


class ReviewStore:
    """In-flight review contexts keyed by PR number, kept for the process lifetime."""

    def __init__(self) -> None:
        self._contexts: dict[int, ReviewContext] = {}

    def open(
        self,
        pr_number: int,
        *,
        repository: str,
        channel: str,
        requested_by: str,
    ) -> ReviewContext:
        if pr_number in self._contexts:
            logger.info("Replacing review context for PR #%d", pr_number)
        context = ReviewContext(
            pr_number=pr_number,
            repository=repository,
            channel=channel,
            requested_by=requested_by,
        )
        self._contexts[pr_number] = context
        return context

    def get(self, pr_number: int) -> ReviewContext:
        context = self._contexts.get(pr_number)
        if context is None:
            raise NotFoundError("review", f"PR #{pr_number}")
        return context

    def find(self, pr_number: int) -> ReviewContext | None:
        return self._contexts.get(pr_number)

    def all(self) -> list[ReviewContext]:
        return list(self._contexts.values())

    def set_status(self, context: ReviewContext, status: ReviewStatus) -> ReviewContext:
        # merged is final
        if context.status != "merged":
            context.status = status
        return context


def _agent_for_role(directory: AgentDirectory, role: str) -> Agent | None:
    return directory.find(role) or directory.first_by_role(role)


def select_reviewers(
    directory: AgentDirectory,
    author: Agent,
    task: Reviewable,
) -> list[Agent]:
    """Rules apply in order and add up; duplicates are left to the caller."""
    reviewers: list[Agent] = []
    if task.type in ("feature", "bug") and author.role != "qa":
        qa = _agent_for_role(directory, "qa")
        if qa:
            reviewers.append(qa)
    if task.priority == "high" and author.role != "manager":
        manager = _agent_for_role(directory, "manager")
        if manager:
            reviewers.append(manager)
    if task.type == "design" and author.role != "designer":
        designer = _agent_for_role(directory, "designer")
        if designer:
            reviewers.append(designer)
    if author.is_junior:
        senior = directory.first_by_role("developer", exclude=author.agent_id)
        if senior:
            reviewers.append(senior)
    if not reviewers and author.role != "developer":
        developer = _agent_for_role(directory, "developer")
        if developer:
            reviewers.append(developer)
    return reviewers


def select_chat_reviewers(directory: AgentDirectory) -> list[Agent]:
    return [agent for agent in (directory.find("qa"), directory.find("developer")) if agent]


class ReviewPipeline:
    def __init__(
        self,
        directory: AgentDirectory,
        host: RepositoryHost,
        generator: TextGenerator,
        narrator: Narrator,
        store: ReviewStore,
        clock: Clock,
        config: ReviewConfig | None = None,
    ) -> None:
        self.directory = directory
        self.host = host
        self.generator = generator
        self.narrator = narrator
        self.store = store
        self.clock = clock
        self.config = config or ReviewConfig()

    @property
    def coordinator_id(self) -> str:
        manager = _agent_for_role(self.directory, "manager")
        return manager.agent_id if manager else "manager"

    def open_review(
        self,
        pr_number: int,
        repository: str,
        *,
        requested_by: str,
        channel: str | None = None,
    ) -> ReviewContext:
        return self.store.open(
            pr_number,
            repository=repository,
            channel=channel or self.config.default_channel,
            requested_by=requested_by,
        )

    async def run_reviews(
        self,
        context: ReviewContext,
        reviewers: list[Agent],
        author: Agent,
        task: Reviewable,
        *,
        announce_requests: bool = False,
    ) -> list[Verdict]:
        """Run each reviewer in turn against one pull request.

        With ``announce_requests`` each reviewer posts a ``review_request`` activity
        right before starting on its own review.
        """
        names = ", ".join(reviewer.name for reviewer in reviewers) or "nobody"
        await self.narrator.say(
            self.coordinator_id,
            "reviewers_assigned",
            {"pr_number": context.pr_number, "reviewers": names, "repository": context.repository},
            channel=context.channel,
        )
        verdicts: list[Verdict] = []
        for reviewer in reviewers:
            if announce_requests:
                await self.narrator.announce_activity(
                    reviewer.agent_id,
                    "review_request",
                    {
                        "author_name": author.name,
                        "pr_number": context.pr_number,
                        "task_title": task.title,
                    },
                    channel=context.channel,
                )
            verdict = await self.perform_review(reviewer, author, task, context)
            if verdict is not None:
                verdicts.append(verdict)
        return verdicts

    async def request_review(
        self,
        pr_number: int,
        repository: str,
        *,
        author: Agent,
        task: Reviewable,
        reviewers: list[Agent],
        requested_by: str,
        channel: str | None = None,
    ) -> ReviewContext:
        context = self.open_review(
            pr_number, repository, requested_by=requested_by, channel=channel
        )
        await self.run_reviews(context, reviewers, author, task)
        return context

    def schedule_task_review(
        self,
        author: Agent,
        task: Reviewable,
        repository: str,
        pull: PullRequest,
    ) -> asyncio.Task[Any] | None:
        """Submit the post-completion review of an agent's pull request."""
        reviewers = select_reviewers(self.directory, author, task)
        if not reviewers:
            logger.info("No reviewers selected for PR #%d (%s)", pull.number, task.id)
            return None
        context = self.open_review(pull.number, repository, requested_by=author.name)

        return self.clock.spawn(
            self.run_reviews(context, reviewers, author, task, announce_requests=True),
            delay=self.config.start_delay_seconds,
            name=f"review-pr-{pull.number}",
        )

    def _review_prompt(
        self,
        reviewer: Agent,
        author: Agent,
        task: Reviewable,
        files: list[ChangedFile],
    ) -> str:
        return (
            f"You are {reviewer.name}, a {reviewer.role} reviewing a pull request.\n\n"
            f"PR Author: {author.name} ({author.role})\n"
            f"Task: {task.title}\nTask Type: {task.type}\nPriority: {task.priority}\n"
            f"Files Changed: {len(files)}\n"
            f"File Names: {', '.join(item.filename for item in files)}\n\n"
            f"Review this PR as a {reviewer.role}: code quality, task fit, bugs, "
            "performance, and security. Be constructive and decide whether to approve, "
            "request changes, or just comment.\n\n"
            "Respond in JSON:\n"
            '{"approved": boolean, "changesRequested": boolean, '
            '"body": "markdown review", "summary": "one line"}'
        )

    async def generate_verdict(
        self,
        reviewer: Agent,
        author: Agent,
        task: Reviewable,
        files: list[ChangedFile],
    ) -> Verdict:
        prompt = self._review_prompt(reviewer, author, task, files)
        try:
            payload = await self.generator.generate_structured(
                prompt, kind="verdict", context={"reviewer": reviewer.name}
            )
        except GenerationError as exc:
            logger.warning("Verdict from %s fell back to approval: %s", reviewer.agent_id, exc)
            return Verdict.fallback_for(reviewer.name)
        return Verdict.from_payload(payload, reviewer.name)

    async def perform_review(
        self,
        reviewer: Agent,
        author: Agent,
        task: Reviewable,
        context: ReviewContext,
    ) -> Verdict | None:
        pr_number = context.pr_number
        self.narrator.schedule(
            reviewer.agent_id,
            "starting_review",
            {"pr_number": pr_number, "repository": context.repository},
            channel=context.channel,
            delay=self.config.stagger_seconds,
        )
        try:
            files = await self.host.get_changed_files(context.repository, pr_number)
            verdict = await self.generate_verdict(reviewer, author, task, files)
            await self.host.submit_review(
                context.repository,
                pr_number,
                ReviewSubmission(event=verdict.event, body=verdict.body),  # type: ignore[arg-type]
                reviewer=reviewer.agent_id,
            )
        except CrewError as exc:
            logger.error("Review of PR #%d by %s failed: %s", pr_number, reviewer.agent_id, exc)
            if context.status == "in-progress":
                self.store.set_status(context, "failed")
            await self.narrator.say(
                reviewer.agent_id,
                "review_error",
                {"pr_number": pr_number, "repository": context.repository, "error": str(exc)},
                channel=context.channel,
            )
            return None

        logger.info("%s reviewed PR #%d: %s", reviewer.agent_id, pr_number, verdict.label)
        await self.narrator.say(
            reviewer.agent_id,
            "review_completed",
            {
                "pr_number": pr_number,
                "repository": context.repository,
                "verdict": verdict.label,
                "summary": verdict.summary,
            },
            channel=context.channel,
        )
        await self.narrator.announce_activity(
            reviewer.agent_id,
            "pr_reviewed",
            {
                "pr_number": pr_number,
                "repository": context.repository,
                "approved": verdict.approved,
                "summary": verdict.summary,
            },
            channel=context.channel,
        )
        entry = ReviewerEntry(
            reviewer_id=reviewer.agent_id,
            reviewer_name=reviewer.name,
            approved=verdict.approved,
            changes_requested=verdict.changes_requested,
            summary=verdict.summary,
        )
        if not context.record(entry):
            logger.warning(
                "Reviewer %s already has a verdict on PR #%d; keeping the first one",
                reviewer.agent_id,
                pr_number,
            )
        if verdict.changes_requested:
            self.store.set_status(context, "changes-requested")
        elif verdict.approved and context.status in ("in-progress", "failed"):
            self.store.set_status(context, "approved")

        if verdict.approved:
            await self.merge_check(context, reviewer)
        return verdict

    async def merge_check(
        self,
        context: ReviewContext,
        approver: Agent,
    ) -> asyncio.Task[Any] | None:
        """Schedule a merge when the PR has approvals, no change requests and is mergeable.

        Every approving reviewer runs this check, so two near-simultaneous
        approvals can both schedule a merge; the host rejects the late one.
        """
        pr_number = context.pr_number
        try:
            status = await self.host.get_status(context.repository, pr_number)
        except HostError as exc:
            logger.error("Could not fetch status of PR #%d: %s", pr_number, exc)
            return None

        if status.changes_requested > 0:
            self.store.set_status(context, "changes-requested")
            await self.narrator.say(
                self.coordinator_id,
                "changes_requested",
                {
                    "pr_number": pr_number,
                    "repository": context.repository,
                    "changes_count": status.changes_requested,
                },
                channel=context.channel,
            )
            return None
        if status.approvals == 0 or not status.mergeable:
            logger.warning(
                "PR #%d not ready to merge (approvals=%d, mergeable=%s)",
                pr_number,
                status.approvals,
                status.mergeable,
            )
            return None

        await self.narrator.say(
            self.coordinator_id,
            "preparing_merge",
            {"pr_number": pr_number, "approvals": status.approvals},
            channel=context.channel,
        )
        return self.clock.spawn(
            self._merge(context, approver),
            delay=self.config.settle_seconds,
            name=f"merge-pr-{pr_number}",
        )

    async def _merge(self, context: ReviewContext, approver: Agent) -> bool:
        pr_number = context.pr_number
        try:
            sha = await self.host.merge(
                context.repository,
                pr_number,
                method=self.config.merge_method,
                title=f"Merge PR #{pr_number}: Auto-merged by AI review system",
                message=f"Approved by {approver.name}",
            )
        except HostError as exc:
            logger.error("Error merging PR #%d: %s", pr_number, exc)
            self.store.set_status(context, "merge-failed")
            await self.narrator.say(
                self.coordinator_id,
                "merge_failed",
                {"pr_number": pr_number, "repository": context.repository, "error": str(exc)},
                channel=context.channel,
            )
            return False
        context.merge_sha = sha
        self.store.set_status(context, "merged")
        logger.info("Merged PR #%d in %s", pr_number, context.repository)
        await self.narrator.say(
            self.coordinator_id,
            "pr_merged_success",
            {
                "pr_number": pr_number,
                "repository": context.repository,
                "merged_by": approver.name,
            },
            channel=context.channel,
        )
        await self.narrator.announce_activity(
            self.coordinator_id,
            "pr_merged",
            {"pr_number": pr_number, "repository": context.repository, "merged_by": approver.name},
            channel=context.channel,
        )
        return True
