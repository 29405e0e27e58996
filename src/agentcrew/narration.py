from __future__ import annotations

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from agentcrew.agents import Agent, AgentDirectory
from agentcrew.clock import Clock
from agentcrew.config import NarrationConfig
from agentcrew.errors import GenerationError
from agentcrew.generators import TextGenerator

logger = logging.getLogger(__name__)

CONTEXT_TRIGGERS = {"task_start", "progress_update", "collaboration_request", "task_complete"}

ACTIVITY_TEMPLATES: dict[str, str] = {
    "branch_created": 'Branch Created: `{branch}` for task "{task_title}"',
    "files_committed": "Files Committed: Added {file_count} files to `{branch}`\n{files_list}",
    "pr_created": (
        'Pull Request Created: [#{pr_number}]({pr_url}) - "{title}"\n'
        "Branch: `{branch}` -> `{base}`"
    ),
    "pr_reviewed": "Pull Request Reviewed: #{pr_number} in {repository}\n{verdict}\n{summary}",
    "pr_merged": (
        "Pull Request Merged: #{pr_number} in {repository}\n"
        "Successfully merged by {merged_by}"
    ),
    "review_request": (
        'Review Requested: {author_name} requested my review on PR #{pr_number} for "{task_title}"'
    ),
    "task_started": (
        'Started Working: Beginning implementation of "{task_title}"\n'
        "Estimated: {estimated_hours} hours"
    ),
    "task_completed": 'Task Completed: "{task_title}"\nStatus: Ready for review',
}

SITUATIONS: dict[str, str] = {
    "task_start": (
        'You\'re starting work on a new task: "{task_title}"\n'
        "Task description: {task_description}\nTask type: {task_type}\n"
        "Estimated effort: {estimated_hours} hours\n\n"
        "Announce that you're starting this task. Mention your approach and what you plan "
        "to do first.\n\nResponse (1-3 sentences):"
    ),
    "progress_update": (
        'You\'re {progress}% done with your current task: "{task_title}"\n'
        "Current activity: {activity}\n\n"
        "Share a natural progress update.\n\nResponse (1-3 sentences):"
    ),
    "collaboration_request": (
        'You need to collaborate with the team on your current task: "{task_title}"\n'
        "Reason for collaboration: {reason}\n\n"
        "Ask for help or coordinate with team members. Be specific about what you need."
        "\n\nResponse (1-3 sentences):"
    ),
    "task_complete": (
        'You just finished the task "{task_title}". Summary: {summary}\n\n'
        "Tell the team it is ready for review.\n\nResponse (1-2 sentences):"
    ),
    "mention_response": (
        '{mentioned_by} mentioned you or asked you something. Here\'s what they said:\n"{question}"'
        "\n\nAddress their question or comment directly and be helpful."
        "\n\nResponse (1-3 sentences):"
    ),
    "github_activity": (
        "You just completed a GitHub activity: {activity}\nDetails: {activity_line}\n\n"
        "Share this accomplishment with your team naturally.\n\nResponse (1-2 sentences):"
    ),
    "testing_update": (
        'You just finished testing for task: "{task_title}"\nTest results: {test_results}\n\n'
        "Share your testing results with the team.\n\nResponse (1-2 sentences):"
    ),
    "error_report": (
        'You encountered an issue while working on: "{task_title}"\nError: {error}\n\n'
        "Inform the team about this issue professionally and stay solution-focused."
        "\n\nResponse (1-2 sentences):"
    ),
    "kickoff": (
        "You are kicking off the project {project_name}: {project_description}\n"
        "Assignments: {assignments}\n\n"
        "Welcome the team and summarize who works on what.\n\nResponse (2-3 sentences):"
    ),
    "work_plan": (
        "Your assigned tasks for {project_name}: {task_titles}\n\n"
        "Share your plan of attack with the team.\n\nResponse (1-3 sentences):"
    ),
    "pr_review_acknowledgment": (
        "{user_name} just requested a review for PR #{pr_number} in repository {repository}."
        "\n\nAcknowledge the request and say you're assigning the right reviewers."
        "\n\nResponse (1-2 sentences):"
    ),
    "reviewers_assigned": (
        "PR #{pr_number} has been assigned to: {reviewers}.\n\n"
        "Inform the team about who will be reviewing.\n\nResponse (1-2 sentences):"
    ),
    "starting_review": (
        "You're about to review PR #{pr_number} in {repository}.\n\n"
        "Let the team know you're starting your review.\n\nResponse (1 sentence):"
    ),
    "review_completed": (
        "You just completed reviewing PR #{pr_number}.\nResult: {verdict}\nSummary: {summary}"
        "\n\nShare your review results with the team.\n\nResponse (2-3 sentences):"
    ),
    "changes_requested": (
        "PR #{pr_number} in {repository} has {changes_count} review(s) requesting changes.\n\n"
        "Tell the team the merge is on hold.\n\nResponse (1-2 sentences):"
    ),
    "preparing_merge": (
        "PR #{pr_number} has {approvals} approval(s) and can be merged.\n\n"
        "Tell the team you're preparing the merge.\n\nResponse (1 sentence):"
    ),
    "pr_merged_success": (
        "PR #{pr_number} has been successfully merged into {repository}!\n"
        "Merged by: {merged_by}\n\nCelebrate with the team!\n\nResponse (1-2 sentences):"
    ),
    "merge_failed": (
        "Merging PR #{pr_number} in {repository} failed: {error}\n\n"
        "Report the failure.\n\nResponse (1-2 sentences):"
    ),
    "review_error": (
        "Reviewing PR #{pr_number} failed: {error}\n\n"
        "Report the failure.\n\nResponse (1-2 sentences):"
    ),
    "pr_status_report": (
        "Someone asked about the status of PR #{pr_number}.\nCurrent status: {status}\n"
        "Repository: {repository}\nRequested by: {requested_by}\n\n"
        "Provide a clear status update.\n\nResponse (1-2 sentences):"
    ),
    "pr_status_unknown": (
        "Someone asked about PR #{pr_number}, but you have no review information for it.\n\n"
        "Say the status is unknown.\n\nResponse (1 sentence):"
    ),
}

FALLBACKS: dict[str, str] = {
    "task_start": 'Starting work on "{task_title}"! {name} is on it!',
    "progress_update": '{progress}% done with "{task_title}": {activity}.',
    "collaboration_request": 'Working on "{task_title}". Need to coordinate with: {reason}',
    "task_complete": 'Finished "{task_title}". {summary}',
    "mention_response": "Thanks for reaching out, {mentioned_by}! Happy to help with that.",
    "github_activity": "{activity_line}",
    "testing_update": 'Testing done for "{task_title}": {test_results}.',
    "error_report": 'Error: ran into a problem on "{task_title}": {error}',
    "kickoff": "Kicking off {project_name}! Assignments: {assignments}.",
    "work_plan": "My plan for {project_name}: {task_titles}.",
    "pr_review_acknowledgment": (
        "Got it, {user_name}! Assigning reviewers for PR #{pr_number} in {repository}."
    ),
    "reviewers_assigned": "PR #{pr_number} in {repository} will be reviewed by {reviewers}.",
    "starting_review": "Starting my review of PR #{pr_number} in {repository}.",
    "review_completed": "Reviewed PR #{pr_number}: {verdict}. {summary}",
    "changes_requested": (
        "PR #{pr_number} has {changes_count} review(s) requesting changes. Holding the merge."
    ),
    "preparing_merge": "PR #{pr_number} has {approvals} approval(s). Preparing to merge.",
    "pr_merged_success": "PR #{pr_number} has been merged into {repository} by {merged_by}!",
    "merge_failed": "Error: merging PR #{pr_number} failed: {error}",
    "review_error": "Error: reviewing PR #{pr_number} failed: {error}",
    "pr_status_report": (
        "PR #{pr_number} status: {status}. Repository: {repository}. "
        "Requested by: {requested_by}."
    ),
    "pr_status_unknown": (
        "I don't have any review information for PR #{pr_number}. Status: unknown."
    ),
}

DEFAULT_FALLBACK = "{name} here, ready to contribute to the team!"

_SANITIZERS = (
    re.compile(r"^Response:?\s*", re.IGNORECASE),
    re.compile(r"^\d+\.\s*"),
    re.compile(r"^[-•]\s*"),
)


class _Details(dict):
    def __missing__(self, key: str) -> str:
        return ""


def sanitize(text: str) -> str:
    cleaned = text.strip()
    for pattern in _SANITIZERS:
        cleaned = pattern.sub("", cleaned)
    cleaned = cleaned.strip()
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] == '"':
        cleaned = cleaned[1:-1].strip()
    return cleaned


def render_activity(activity: str, details: dict[str, Any]) -> str:
    template = ACTIVITY_TEMPLATES.get(activity)
    if template is None:
        return f"GitHub Activity: {activity} - {json.dumps(details, default=str)}"
    values = _Details(details)
    files = details.get("files") or []
    values.setdefault("file_count", len(files))
    values.setdefault("files_list", "\n".join(f"- `{path}`" for path in files))
    values.setdefault("base", "main")
    if "approved" in details:
        values["verdict"] = "Approved" if details["approved"] else "Comments added"
    return template.format_map(values)


@dataclass(slots=True)
class ChatMessage:
    agent_id: str
    agent_name: str
    channel: str
    content: str
    topic: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "channel": self.channel,
            "content": self.content,
            "topic": self.topic,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(slots=True)
class WorkUpdate:
    agent_id: str
    task_id: str
    status: str
    activity: str
    progress: int


class NotificationSink(ABC):
    """Receives progress tuples and chat messages; never acknowledges."""

    @abstractmethod
    def work_update(self, update: WorkUpdate) -> None:
        ...

    @abstractmethod
    def post_message(self, message: ChatMessage) -> None:
        ...


class MemorySink(NotificationSink):
    def __init__(self) -> None:
        self.messages: list[ChatMessage] = []
        self.updates: list[WorkUpdate] = []

    def work_update(self, update: WorkUpdate) -> None:
        self.updates.append(update)

    def post_message(self, message: ChatMessage) -> None:
        self.messages.append(message)

    def contents(self, *, topic: str | None = None, agent_id: str | None = None) -> list[str]:
        return [
            message.content
            for message in self.messages
            if (topic is None or message.topic == topic)
            and (agent_id is None or message.agent_id == agent_id)
        ]


class LoggingSink(NotificationSink):
    def work_update(self, update: WorkUpdate) -> None:
        logger.info(
            "[%s] %s %s %d%% %s",
            update.agent_id,
            update.task_id,
            update.status,
            update.progress,
            update.activity,
        )

    def post_message(self, message: ChatMessage) -> None:
        logger.info("#%s %s: %s", message.channel, message.agent_name, message.content)


class Narrator:
    """Turns orchestration events into first-person chat messages."""

    def __init__(
        self,
        generator: TextGenerator,
        directory: AgentDirectory,
        sink: NotificationSink,
        clock: Clock,
        config: NarrationConfig | None = None,
        *,
        default_channel: str = "general",
    ) -> None:
        self.generator = generator
        self.directory = directory
        self.sink = sink
        self.clock = clock
        self.config = config or NarrationConfig()
        self.default_channel = default_channel
        self._history: dict[str, deque[ChatMessage]] = {}

    def history(self, channel: str, limit: int | None = None) -> list[ChatMessage]:
        messages = list(self._history.get(channel, ()))
        return messages[-limit:] if limit else messages

    def _remember(self, message: ChatMessage) -> None:
        bucket = self._history.setdefault(
            message.channel, deque(maxlen=self.config.history_limit)
        )
        bucket.append(message)

    def fallback_text(self, agent: Agent, topic: str, details: dict[str, Any]) -> str:
        template = FALLBACKS.get(topic, DEFAULT_FALLBACK)
        values = _Details(details)
        values.setdefault("name", agent.name)
        return template.format_map(values).strip()

    def build_prompt(
        self,
        agent: Agent,
        topic: str,
        details: dict[str, Any],
        channel: str,
    ) -> str:
        context = agent.context
        recent = ", ".join(context.recent_events) or "Project just started"
        conversation = "\n".join(
            f"{message.agent_name}: {message.content}"
            for message in self.history(channel, limit=5)
        )
        situation = SITUATIONS.get(
            topic,
            "Share a natural, spontaneous update with your team.\n"
            "Topic context: {topic}\n\nResponse (1-2 sentences):",
        )
        values = _Details(details)
        values.setdefault("topic", topic)
        return (
            f"You are {agent.name}, a {agent.role} working on a software development project.\n\n"
            f"PERSONALITY & COMMUNICATION STYLE:\n{agent.personality}\n"
            f"Communication style: {agent.communication_style}\n"
            f"Your expertise: {', '.join(agent.expertise)}\n\n"
            "CURRENT CONTEXT:\n"
            f"- Your current mood: {context.mood}\n"
            f"- Your work status: {context.work_status}\n"
            f"- Current task: {details.get('task_title') or context.current_task or 'none'}\n"
            f"- Recent events: {recent}\n\n"
            f"RECENT TEAM CONVERSATION:\n{conversation or '(quiet so far)'}\n\n"
            f"CURRENT SITUATION:\n{situation.format_map(values)}"
        )

    async def say(
        self,
        agent_id: str,
        topic: str,
        details: dict[str, Any] | None = None,
        *,
        channel: str | None = None,
        delay: float = 0.0,
    ) -> ChatMessage:
        if delay > 0:
            await self.clock.sleep(delay)
        channel = channel or self.default_channel
        details = dict(details or {})
        agent = self.directory.find(agent_id)
        if agent is None:
            content = f"Hi! I'm {agent_id} and I'm ready to help with the project."
            message = ChatMessage(agent_id, agent_id, channel, content, topic)
        else:
            fallback = self.fallback_text(agent, topic, details)
            prompt = self.build_prompt(agent, topic, details, channel)
            try:
                content = sanitize(
                    await self.generator.generate_narration(
                        prompt,
                        {"speaker": agent.name, "topic": topic, "summary": fallback},
                    )
                )
            except GenerationError as exc:
                logger.warning(
                    "Narration for %s (%s) fell back to template: %s", agent_id, topic, exc
                )
                content = ""
            content = content or fallback
            self._update_context(agent, topic, details, content)
            message = ChatMessage(agent.agent_id, agent.name, channel, content, topic)
        self._remember(message)
        self.sink.post_message(message)
        logger.debug("Message %s -> #%s: %.50s", agent_id, channel, message.content)
        return message

    def schedule(
        self,
        agent_id: str,
        topic: str,
        details: dict[str, Any] | None = None,
        *,
        channel: str | None = None,
        delay: float = 0.0,
    ) -> asyncio.Task[Any]:
        """Fire-and-forget variant of ``say`` submitted through the clock."""
        return self.clock.spawn(
            self.say(agent_id, topic, details, channel=channel),
            delay=delay,
            name=f"narrate-{agent_id}-{topic}",
        )

    def _update_context(
        self,
        agent: Agent,
        topic: str,
        details: dict[str, Any],
        content: str,
    ) -> None:
        if topic in CONTEXT_TRIGGERS:
            progress = details.get("progress")
            agent.context.apply_trigger(
                topic,
                task_title=details.get("task_title"),
                progress=int(progress) if progress is not None else None,
            )
        agent.context.record_event(f"{topic}: {content[:50]}...")

    async def announce_activity(
        self,
        agent_id: str,
        activity: str,
        details: dict[str, Any],
        *,
        channel: str | None = None,
    ) -> ChatMessage:
        line = render_activity(activity, details)
        logger.info("GitHub activity %s by %s", activity, agent_id)
        payload = {**details, "activity": activity, "activity_line": line}
        return await self.say(agent_id, "github_activity", payload, channel=channel)

    def publish_progress(
        self,
        agent_id: str,
        task_id: str,
        status: str,
        activity: str,
        progress: int,
    ) -> None:
        self.sink.work_update(WorkUpdate(agent_id, task_id, status, activity, progress))

    def mentioned_agents(self, message: str) -> list[Agent]:
        mentioned: list[Agent] = []
        lowered = message.lower()
        for agent in self.directory:
            handles = {agent.agent_id, agent.name, agent.first_name}
            if any(f"@{handle.lower()}" in lowered for handle in handles):
                mentioned.append(agent)
        return mentioned

    @staticmethod
    def extract_question(message: str, agent: Agent) -> str:
        cleaned = message
        for handle in sorted({agent.agent_id, agent.name, agent.first_name}, key=len, reverse=True):
            cleaned = re.sub(re.escape(f"@{handle}"), "", cleaned, flags=re.IGNORECASE).strip()
        return cleaned or message

    def handle_mentions(
        self,
        message: str,
        *,
        user_name: str,
        channel: str | None = None,
    ) -> list[Agent]:
        agents = self.mentioned_agents(message)
        for agent in agents:
            details = {
                "mentioned_by": user_name,
                "question": self.extract_question(message, agent),
            }
            self.schedule(
                agent.agent_id,
                "mention_response",
                details,
                channel=channel,
                delay=self.clock.uniform(1.5, 3.5),
            )
        return agents

    async def converse(
        self,
        channel: str,
        topic: str,
        participants: list[str],
        duration: float = 30.0,
        max_messages: int = 8,
    ) -> list[ChatMessage]:
        if not participants:
            return []
        elapsed = 0.0
        messages: list[ChatMessage] = []
        while elapsed < duration and len(messages) < max_messages:
            speaker = self.clock.rng.choice(participants)
            delay = self.clock.uniform(0.0, 5.0)
            messages.append(
                await self.say(speaker, topic, {"topic": topic}, channel=channel, delay=delay)
            )
            pause = self.clock.uniform(
                self.config.min_message_delay_seconds, self.config.max_message_delay_seconds
            )
            await self.clock.sleep(pause)
            elapsed += delay + pause
        return messages
