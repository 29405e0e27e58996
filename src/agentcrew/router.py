from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from agentcrew.agents import Agent, AgentDirectory
from agentcrew.clock import Clock
from agentcrew.config import ReviewConfig
from agentcrew.narration import ChatMessage, Narrator
from agentcrew.review import ReviewPipeline, ReviewStore, ReviewTask, select_chat_reviewers

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReviewRequest:
    pr_number: int
    repository: str


@dataclass(frozen=True, slots=True)
class StatusQuery:
    pr_number: int


Command = ReviewRequest | StatusQuery


@dataclass(frozen=True, slots=True)
class CommandPattern:
    name: str
    pattern: re.Pattern[str]
    build: Callable[[re.Match[str], str], Command]

    def parse(self, message: str, default_repository: str) -> Command | None:
        match = self.pattern.search(message)
        if match is None:
            return None
        return self.build(match, default_repository)


COMMAND_PATTERNS: tuple[CommandPattern, ...] = (
    CommandPattern(
        "review_in_repository",
        re.compile(r"review\s+PR\s*#?(\d+)\s+(?:(?:in|on)\s+)?([a-zA-Z0-9_-]+)", re.IGNORECASE),
        lambda match, _: ReviewRequest(int(match.group(1)), match.group(2)),
    ),
    CommandPattern(
        "review",
        re.compile(r"review\s+#?(\d+)", re.IGNORECASE),
        lambda match, default: ReviewRequest(int(match.group(1)), default),
    ),
    CommandPattern(
        "status",
        re.compile(r"status\s+(?:of\s+)?PR\s*#?(\d+)", re.IGNORECASE),
        lambda match, _: StatusQuery(int(match.group(1))),
    ),
)


def parse_command(message: str, default_repository: str = "ai-test-repo") -> Command | None:
    """Return the command of the first matching pattern, in declaration order."""
    for command_pattern in COMMAND_PATTERNS:
        command = command_pattern.parse(message, default_repository)
        if command is not None:
            return command
    return None


@dataclass(slots=True)
class RouteResult:
    command: Command | None = None
    messages: list[ChatMessage] = field(default_factory=list)
    mentioned: list[str] = field(default_factory=list)
    review: asyncio.Task[Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        command: dict[str, Any] | None = None
        if isinstance(self.command, ReviewRequest):
            command = {
                "type": "review_request",
                "pr_number": self.command.pr_number,
                "repository": self.command.repository,
            }
        elif isinstance(self.command, StatusQuery):
            command = {"type": "status_query", "pr_number": self.command.pr_number}
        return {
            "command": command,
            "messages": [message.to_dict() for message in self.messages],
            "mentioned": list(self.mentioned),
        }


class ChatCommandRouter:
    def __init__(
        self,
        pipeline: ReviewPipeline,
        store: ReviewStore,
        narrator: Narrator,
        directory: AgentDirectory,
        clock: Clock,
        config: ReviewConfig | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.store = store
        self.narrator = narrator
        self.directory = directory
        self.clock = clock
        self.config = config or ReviewConfig()

    async def handle(
        self,
        message: str,
        *,
        user_id: str,
        user_name: str,
        channel: str | None = None,
    ) -> RouteResult:
        channel = channel or self.config.default_channel
        result = RouteResult(command=parse_command(message, self.config.default_repository))
        if isinstance(result.command, ReviewRequest):
            await self._review(result, result.command, user_id, user_name, channel)
        elif isinstance(result.command, StatusQuery):
            result.messages.append(await self._status(result.command, channel))
        agents = self.narrator.handle_mentions(message, user_name=user_name, channel=channel)
        result.mentioned = [agent.agent_id for agent in agents]
        return result

    async def _review(
        self,
        result: RouteResult,
        command: ReviewRequest,
        user_id: str,
        user_name: str,
        channel: str,
    ) -> None:
        logger.info(
            "Chat review request for PR #%d in %s from %s",
            command.pr_number,
            command.repository,
            user_name,
        )
        result.messages.append(
            await self.narrator.say(
                self.pipeline.coordinator_id,
                "pr_review_acknowledgment",
                {
                    "user_name": user_name,
                    "pr_number": command.pr_number,
                    "repository": command.repository,
                },
                channel=channel,
            )
        )
        context = self.pipeline.open_review(
            command.pr_number, command.repository, requested_by=user_name, channel=channel
        )
        author = Agent.human(user_id, user_name)
        task = ReviewTask.for_pull_request(
            command.pr_number,
            user_name,
            prefix="chat-review",
            description=f"{user_name} requested review via chat for PR #{command.pr_number}",
        )
        reviewers = select_chat_reviewers(self.directory)
        result.review = self.clock.spawn(
            self.pipeline.run_reviews(context, reviewers, author, task),
            name=f"chat-review-pr-{command.pr_number}",
        )

    async def _status(self, command: StatusQuery, channel: str) -> ChatMessage:
        context = self.store.find(command.pr_number)
        if context is None:
            return await self.narrator.say(
                self.pipeline.coordinator_id,
                "pr_status_unknown",
                {"pr_number": command.pr_number, "status": "unknown"},
                channel=channel,
            )
        return await self.narrator.say(
            self.pipeline.coordinator_id,
            "pr_status_report",
            {
                "pr_number": command.pr_number,
                "status": context.status,
                "repository": context.repository,
                "requested_by": context.requested_by,
            },
            channel=channel,
        )
