"""Sub-agents: typed, isolated child sessions run in bounded parallel."""

from codeloop.agents.handle import SubAgentHandle
from codeloop.agents.orchestrator import SubAgentOrchestrator
from codeloop.agents.registry import AgentTypeRegistry
from codeloop.agents.schema import AgentState, AgentType, SubAgentResult, SubAgentTask

__all__ = [
    "AgentState",
    "AgentType",
    "AgentTypeRegistry",
    "SubAgentHandle",
    "SubAgentOrchestrator",
    "SubAgentResult",
    "SubAgentTask",
]
