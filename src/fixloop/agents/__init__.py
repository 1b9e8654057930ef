"""Agent protocol + registry — decouples the engine from agent internals.

Agent is a Protocol: any object with ``async invoke(input) -> AgentResult``
can back a phase. The registry resolves agent ids to implementations; the
engine only ever sees the AgentResult contract.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Protocol

from fixloop.schemas import AgentResult
from fixloop.workflows import ConfigurationError

logger = logging.getLogger(__name__)


class Agent(Protocol):
    """Protocol for agent capabilities — one call per phase attempt."""

    async def invoke(self, input: Any) -> AgentResult:
        """Run the capability. May raise on transport/execution errors."""
        ...


class FunctionAgent:
    """Adapts a coroutine function to the Agent protocol."""

    def __init__(self, agent_id: str, fn: Callable[[Any], Awaitable[Any]]) -> None:
        self.agent_id = agent_id
        self._fn = fn

    async def invoke(self, input: Any) -> Any:
        return await self._fn(input)


class AgentRegistry:
    """Maps agent ids to implementations."""

    def __init__(self) -> None:
        self._agents: dict[str, Agent] = {}

    def register(self, agent_id: str, agent: Agent) -> None:
        if agent_id in self._agents:
            logger.info("Replacing agent %s", agent_id)
        self._agents[agent_id] = agent

    def register_function(self, agent_id: str, fn: Callable[[Any], Awaitable[Any]]) -> None:
        self.register(agent_id, FunctionAgent(agent_id, fn))

    def has(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def names(self) -> list[str]:
        return sorted(self._agents)

    async def invoke(self, agent_id: str, input: Any) -> AgentResult:
        """Invoke an agent. Raises ConfigurationError for unknown ids."""
        agent = self._agents.get(agent_id)
        if agent is None:
            raise ConfigurationError(
                f"Unknown agent: {agent_id}. Registered: {', '.join(self.names()) or 'none'}"
            )
        result = await agent.invoke(input)
        if not isinstance(result, AgentResult):
            result = AgentResult.model_validate(result)
        if not result.agent:
            result = result.model_copy(update={"agent": agent_id})
        return result
