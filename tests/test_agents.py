"""Tests for the agent registry."""

from __future__ import annotations

import pytest

from fixloop.agents import AgentRegistry
from fixloop.schemas import AgentResult
from fixloop.workflows import ConfigurationError


class EchoAgent:
    async def invoke(self, input):
        return AgentResult(agent="echo", output={"echo": input})


class TestAgentRegistry:
    @pytest.mark.asyncio
    async def test_invoke_registered(self):
        agents = AgentRegistry()
        agents.register("echo", EchoAgent())
        result = await agents.invoke("echo", {"x": 1})
        assert result.output == {"echo": {"x": 1}}

    @pytest.mark.asyncio
    async def test_unknown_agent(self):
        agents = AgentRegistry()
        with pytest.raises(ConfigurationError, match="Unknown agent"):
            await agents.invoke("dev", {})

    @pytest.mark.asyncio
    async def test_function_dict_coerced(self):
        agents = AgentRegistry()

        async def dev(input):
            return {"success": True, "output": {"all_tests_passing": True}, "cost_usd": 0.1}

        agents.register_function("dev", dev)
        result = await agents.invoke("dev", None)
        assert isinstance(result, AgentResult)
        assert result.agent == "dev"
        assert result.output["all_tests_passing"] is True

    @pytest.mark.asyncio
    async def test_agent_name_not_overwritten(self):
        agents = AgentRegistry()
        agents.register("alias", EchoAgent())
        result = await agents.invoke("alias", 1)
        assert result.agent == "echo"

    def test_names_sorted(self):
        agents = AgentRegistry()
        agents.register("qa", EchoAgent())
        agents.register("dev", EchoAgent())
        assert agents.names() == ["dev", "qa"]
        assert agents.has("qa")
        assert not agents.has("docs")
