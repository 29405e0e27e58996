from agentcrew.agents.base import (
    AGENT_ROLES,
    HUMAN_PREFIX,
    Agent,
    AgentDirectory,
    RuntimeContext,
)
from agentcrew.agents.catalog import DEFAULT_TEAM, build_agent, default_directory

__all__ = [
    "AGENT_ROLES",
    "DEFAULT_TEAM",
    "HUMAN_PREFIX",
    "Agent",
    "AgentDirectory",
    "RuntimeContext",
    "build_agent",
    "default_directory",
]
