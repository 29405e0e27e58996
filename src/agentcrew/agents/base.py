from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any, Literal

from agentcrew.errors import NotFoundError, ValidationError

WorkStatus = Literal["available", "working", "collaborating"]
AgentRole = Literal["developer", "designer", "qa", "manager", "analyst"]

AGENT_ROLES = {"developer", "designer", "qa", "manager", "analyst"}
RECENT_EVENTS_LIMIT = 5
HUMAN_PREFIX = "user-"


@dataclass(slots=True)
class RuntimeContext:
    work_status: WorkStatus = "available"
    mood: str = "focused"
    current_task: str | None = None
    recent_events: deque[str] = field(
        default_factory=lambda: deque(maxlen=RECENT_EVENTS_LIMIT)
    )

    def record_event(self, summary: str) -> None:
        # newest first; a full buffer drops the oldest entry
        self.recent_events.appendleft(summary)

    def apply_trigger(
        self,
        trigger: str,
        *,
        task_title: str | None = None,
        progress: int | None = None,
    ) -> None:
        if task_title:
            self.current_task = task_title
        if trigger == "task_start":
            self.work_status = "working"
            self.mood = "focused"
        elif trigger == "progress_update":
            if progress is not None and progress >= 75:
                self.mood = "accomplished"
        elif trigger == "collaboration_request":
            self.work_status = "collaborating"
        elif trigger == "task_complete":
            self.work_status = "available"
            self.current_task = None

    def snapshot(self) -> dict[str, Any]:
        return {
            "work_status": self.work_status,
            "mood": self.mood,
            "current_task": self.current_task,
            "recent_events": list(self.recent_events),
        }


@dataclass(slots=True)
class Agent:
    agent_id: str
    name: str
    role: str
    title: str = ""
    personality: str = ""
    expertise: list[str] = field(default_factory=list)
    communication_style: str = ""
    context: RuntimeContext = field(default_factory=RuntimeContext)

    @property
    def is_human(self) -> bool:
        return self.agent_id.startswith(HUMAN_PREFIX)

    @property
    def is_junior(self) -> bool:
        return "junior" in self.agent_id

    @property
    def first_name(self) -> str:
        return self.name.split(" ", maxsplit=1)[0]

    @classmethod
    def human(cls, user_id: str, name: str, role: str = "user") -> Agent:
        """Author record standing in for a person who asked for a review."""
        agent_id = user_id if user_id.startswith(HUMAN_PREFIX) else f"{HUMAN_PREFIX}{user_id}"
        return cls(agent_id=agent_id, name=name, role=role, personality="User")


class AgentDirectory:
    """Role registry with one mutable runtime context per agent."""

    def __init__(self, agents: Iterable[Agent] = ()) -> None:
        self._agents: dict[str, Agent] = {}
        for agent in agents:
            self.register(agent)

    def register(self, agent: Agent) -> Agent:
        if not agent.agent_id.strip():
            raise ValidationError("Agent id cannot be empty.")
        if agent.is_human:
            raise ValidationError(f"Human ids cannot be registered as agents: {agent.agent_id}")
        self._agents[agent.agent_id] = agent
        return agent

    def get(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFoundError("agent", agent_id)
        return agent

    def find(self, agent_id: str) -> Agent | None:
        return self._agents.get(agent_id)

    def first_by_role(self, role: str, *, exclude: str | None = None) -> Agent | None:
        for agent in self._agents.values():
            if agent.role == role and agent.agent_id != exclude:
                return agent
        return None

    def name_of(self, agent_id: str) -> str:
        agent = self._agents.get(agent_id)
        return agent.name if agent else agent_id

    def resolve_mention(self, token: str) -> Agent | None:
        needle = token.strip().lstrip("@").lower()
        if not needle:
            return None
        for agent in self._agents.values():
            candidates = {agent.agent_id.lower(), agent.name.lower(), agent.first_name.lower()}
            if needle in candidates:
                return agent
        return None

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def __iter__(self) -> Iterator[Agent]:
        return iter(list(self._agents.values()))

    def __len__(self) -> int:
        return len(self._agents)
