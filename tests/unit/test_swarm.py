"""Unit tests for swarm decomposition, fan-out and synthesis."""

import asyncio
import time

import pytest
from conftest import ScriptedModel

from parley.config import SwarmConfig
from parley.errors import ModelProviderError
from parley.swarm import (
    GENERAL_PROMPT,
    AgentSwarmTool,
    SwarmOrchestrator,
    format_outcomes,
    parse_roster,
)
from parley.telemetry import TelemetrySink, read_events
from parley.tools import ToolContext
from parley.types import AgentOutcome, ModelResponse


class RoleModel:
    """Answers by role; sleeps or raises for selected roles."""

    def __init__(self, slow=(), failing=(), synthesis="synthesized"):
        self.slow = set(slow)
        self.failing = set(failing)
        self.synthesis = synthesis
        self.synthesis_prompts = []

    async def chat(self, messages, *, model=None, system_prompt=None, tools=None, max_tokens=4096, temperature=None):
        content = messages[-1]["content"]
        if content.startswith("Original objective"):
            self.synthesis_prompts.append({"content": content, "tools": tools})
            if isinstance(self.synthesis, Exception):
                raise self.synthesis
            return ModelResponse(content=self.synthesis)
        role = content.split("Your role as ", 1)[1].split(":", 1)[0]
        if role in self.slow:
            await asyncio.sleep(10)
        if role in self.failing:
            raise ModelProviderError("HTTP 500: boom", retryable=True)
        return ModelResponse(content=f"{role} findings")


def orchestrator(model, telemetry=None, **config):
    return SwarmOrchestrator(SwarmConfig(**config), model, default_model="test-model", telemetry=telemetry)


ROSTER = [
    {"role": "researcher", "systemPrompt": "Research."},
    {"role": "analyst", "systemPrompt": "Analyze."},
    {"role": "writer", "systemPrompt": "Write."},
]


class TestParseRoster:
    def test_fenced_json(self):
        content = 'Here you go:\n```json\n[{"role": "researcher", "systemPrompt": "Dig."}]\n```'
        specs = parse_roster(content, "m", 4)
        assert [(s.role, s.system_prompt, s.model) for s in specs] == [("researcher", "Dig.", "m")]

    def test_array_in_prose(self):
        content = 'Sure! [{"role": "a"}, {"role": "b", "system_prompt": "B"}] hope that helps'
        specs = parse_roster(content, "m", 4)
        assert [s.role for s in specs] == ["a", "b"]
        assert specs[1].system_prompt == "B"

    def test_entries_without_role_are_skipped(self):
        specs = parse_roster('[{"systemPrompt": "x"}, {"role": ""}, "junk", {"role": "ok"}]', "m", 4)
        assert [s.role for s in specs] == ["ok"]

    def test_capped_at_max_agents(self):
        content = "[" + ",".join(f'{{"role": "r{i}"}}' for i in range(6)) + "]"
        assert len(parse_roster(content, "m", 4)) == 4

    @pytest.mark.parametrize("content", ["no json here", "[not valid", '{"role": "x"}', ""])
    def test_unusable(self, content):
        assert parse_roster(content, "m", 4) == []


class TestDecompose:
    @pytest.mark.asyncio
    async def test_uses_model_roster(self):
        model = ScriptedModel([ModelResponse(content='[{"role": "a"}, {"role": "b"}]')])
        roster = await orchestrator(model).decompose("plan a trip")

        assert [a.role for a in roster] == ["a", "b"]
        assert "plan a trip" in model.calls[0]["messages"][0]["content"]
        assert model.calls[0]["tools"] is None

    @pytest.mark.asyncio
    async def test_unparseable_falls_back_to_general(self):
        model = ScriptedModel([ModelResponse(content="I'd rather not")])
        roster = await orchestrator(model).decompose("x")
        assert [(a.role, a.system_prompt) for a in roster] == [("general", GENERAL_PROMPT)]

    @pytest.mark.asyncio
    async def test_model_error_falls_back_to_general(self):
        model = ScriptedModel([ModelProviderError("down", retryable=True)])
        roster = await orchestrator(model).decompose("x")
        assert [a.role for a in roster] == ["general"]


class TestRun:
    @pytest.mark.asyncio
    async def test_timeout_isolated_to_one_agent(self):
        model = RoleModel(slow={"analyst"})
        swarm = orchestrator(model, agent_timeout_seconds=0.2)

        started = time.monotonic()
        answer = await swarm.run("objective", ROSTER)

        assert answer == "synthesized"
        assert time.monotonic() - started < 5
        prompt = model.synthesis_prompts[0]["content"]
        assert "## RESEARCHER\nresearcher findings" in prompt
        assert "## ANALYST (FAILED)\nAgent timed out after 0.2 seconds" in prompt
        assert "## WRITER\nwriter findings" in prompt
        assert model.synthesis_prompts[0]["tools"] is None

    @pytest.mark.asyncio
    async def test_outcomes_follow_roster_order(self):
        model = RoleModel(failing={"researcher"})
        swarm = orchestrator(model)
        outcomes = await swarm.run_agents(swarm.build_roster(ROSTER), "objective")

        assert [o.role for o in outcomes] == ["researcher", "analyst", "writer"]
        assert outcomes[0].ok is False
        assert outcomes[0].text.startswith("Error: HTTP 500")
        assert all(o.ok for o in outcomes[1:])

    @pytest.mark.asyncio
    async def test_synthesis_failure_returns_outcomes(self):
        model = RoleModel(synthesis=ModelProviderError("down", retryable=False))
        answer = await orchestrator(model).run("objective", ROSTER[:2])

        assert answer.startswith("Synthesis was unavailable. Individual agent results:")
        assert "## RESEARCHER\nresearcher findings\n\n---\n\n## ANALYST\nanalyst findings" in answer

    @pytest.mark.asyncio
    async def test_empty_synthesis_returns_outcomes(self):
        model = RoleModel(synthesis="   ")
        answer = await orchestrator(model).run("objective", ROSTER[:1])
        assert "## RESEARCHER" in answer

    def test_roster_defaults(self):
        swarm = orchestrator(RoleModel())
        roster = swarm.build_roster([{"role": "x"}, {"systemPrompt": "p", "model": "other"}])
        assert roster[0].model == "test-model"
        assert roster[1].role == "general"
        assert roster[1].model == "other"

    @pytest.mark.asyncio
    async def test_telemetry(self, tmp_path):
        sink = TelemetrySink(enabled=True, path=tmp_path / "t.jsonl")
        await orchestrator(RoleModel(failing={"writer"}), telemetry=sink).run("objective", ROSTER)

        events = read_events(sink.path)
        assert [e["type"] for e in events] == ["swarm_started", "swarm_agent_failed", "swarm_completed"]
        assert events[-1]["data"] == {"agents": 3, "failed": 1}


def test_format_outcomes():
    text = format_outcomes([AgentOutcome("a", True, "one"), AgentOutcome("b", False, "Error: x")])
    assert text == "## A\none\n\n---\n\n## B (FAILED)\nError: x"


class TestAgentSwarmTool:
    @pytest.fixture
    def ctx(self, tmp_path):
        return ToolContext(session_id="s", sender="u", channel="cli", sandboxed=False, workspace=tmp_path)

    @pytest.mark.asyncio
    async def test_runs_orchestrator(self, ctx):
        tool = AgentSwarmTool(orchestrator(RoleModel()))
        assert tool.name == "agent_swarm"
        assert await tool.execute({"objective": "do it", "agents": ROSTER}, ctx) == "synthesized"

    @pytest.mark.asyncio
    async def test_requires_objective(self, ctx):
        with pytest.raises(ValueError, match="objective"):
            await AgentSwarmTool(orchestrator(RoleModel())).execute({}, ctx)
