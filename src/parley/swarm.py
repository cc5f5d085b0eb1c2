"""Agent swarm: decompose an objective, run sub-agents concurrently, synthesize.

Each sub-agent is a single model call seeded with the shared objective and
its own role prompt, raced against a per-agent deadline. A failed or
timed-out agent becomes an error-labelled outcome that the synthesizer still
sees, so gaps are visible rather than silently dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from typing import Any

from .config import SwarmConfig
from .errors import ModelProviderError
from .llm_client import ChatModel
from .telemetry import NULL_SINK, TelemetrySink, redact_text
from .tools.registry import Tool, ToolContext
from .types import AgentOutcome, SwarmAgentSpec

logger = logging.getLogger(__name__)

GENERAL_PROMPT = "You are a helpful assistant. Complete the assigned task thoroughly."
DEFAULT_AGENT_PROMPT = "You are a helpful assistant."
SYNTHESIS_PROMPT = (
    "You are an expert synthesizer. Combine multiple agents' outputs into one excellent "
    "response. Some agents may have failed; acknowledge or compensate for any gaps."
)


def parse_roster(content: str, default_model: str, max_agents: int) -> list[SwarmAgentSpec]:
    """
    Parse a decomposition reply into agent specs.

    Accepts a JSON array wrapped in a markdown code fence or embedded in
    prose. Entries without a role are skipped. Returns an empty list when
    nothing usable is found.
    """
    fenced = re.search(r"```(?:json)?\s*(\[.*?\])\s*```", content, re.DOTALL)
    if fenced:
        content = fenced.group(1)

    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        array_match = re.search(r"\[.*\]", content, re.DOTALL)
        if not array_match:
            return []
        try:
            data = json.loads(array_match.group(0))
        except json.JSONDecodeError:
            return []

    if not isinstance(data, list):
        return []

    specs: list[SwarmAgentSpec] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        role = str(item.get("role") or "").strip()
        if not role:
            continue
        prompt = item.get("systemPrompt") or item.get("system_prompt") or DEFAULT_AGENT_PROMPT
        specs.append(SwarmAgentSpec(role=role, system_prompt=str(prompt), model=default_model))
    return specs[:max_agents]


class SwarmOrchestrator:
    """Runs a team of ephemeral sub-agents on one objective."""

    def __init__(
        self,
        config: SwarmConfig,
        llm: ChatModel,
        *,
        default_model: str,
        telemetry: TelemetrySink | None = None,
    ):
        self.config = config
        self.llm = llm
        self.default_model = default_model
        self.telemetry = telemetry or NULL_SINK

    async def run(self, objective: str, agents: list[dict[str, Any]] | None = None) -> str:
        """
        Decompose, fan out, and synthesize.

        Args:
            objective: The high-level task
            agents: Optional explicit roster ({"role", "systemPrompt", "model"});
                missing fields are filled with defaults

        Returns:
            Synthesized answer, or the labelled agent outcomes if synthesis fails
        """
        run_id = uuid.uuid4().hex[:12]
        logger.info("swarm %s starting: %.60s", run_id, objective)

        roster = self.build_roster(agents) if agents else await self.decompose(objective)
        self.telemetry.log(run_id, "swarm_started", {"agents": [a.role for a in roster]})
        logger.info("swarm %s spawned %d agents: %s", run_id, len(roster), ", ".join(a.role for a in roster))

        outcomes = await self.run_agents(roster, objective, run_id)

        try:
            answer = await self.synthesize(objective, outcomes)
        except ModelProviderError as e:
            logger.error("swarm %s synthesis failed: %s", run_id, e)
            answer = ""
        if not answer.strip():
            answer = "Synthesis was unavailable. Individual agent results:\n\n" + format_outcomes(outcomes)

        self.telemetry.log(
            run_id,
            "swarm_completed",
            {"agents": len(outcomes), "failed": sum(1 for o in outcomes if not o.ok)},
        )
        logger.info("swarm %s complete", run_id)
        return answer

    def build_roster(self, agents: list[dict[str, Any]]) -> list[SwarmAgentSpec]:
        roster = []
        for a in agents:
            roster.append(
                SwarmAgentSpec(
                    role=str(a.get("role") or "general"),
                    system_prompt=str(
                        a.get("systemPrompt") or a.get("system_prompt") or DEFAULT_AGENT_PROMPT
                    ),
                    model=str(a.get("model") or self.default_model),
                )
            )
        return roster

    async def decompose(self, objective: str) -> list[SwarmAgentSpec]:
        """Ask the model for a roster; fall back to one general agent."""
        prompt = (
            f"Decompose this task into {self.config.min_agents}-{self.config.max_agents} "
            "specialized sub-agents. For each agent, provide:\n"
            '- role: short name (e.g. "researcher", "analyst", "writer")\n'
            "- systemPrompt: instructions for that agent's specific job\n\n"
            f"Task: {objective}\n\n"
            "Respond ONLY with a JSON array like:\n"
            '[{"role": "researcher", "systemPrompt": "You are a research specialist..."},...]'
        )
        try:
            response = await self.llm.chat(
                [{"role": "user", "content": prompt}],
                max_tokens=self.config.decompose_max_tokens,
            )
            roster = parse_roster(response.content, self.default_model, self.config.max_agents)
        except ModelProviderError as e:
            logger.error("failed to decompose objective: %s", e)
            roster = []

        if not roster:
            logger.warning("decomposition unusable, falling back to a single general agent")
            roster = [SwarmAgentSpec(role="general", system_prompt=GENERAL_PROMPT, model=self.default_model)]
        return roster

    async def run_agents(
        self, roster: list[SwarmAgentSpec], objective: str, run_id: str = ""
    ) -> list[AgentOutcome]:
        """Run every agent concurrently; one outcome per agent, in roster order."""
        timeout = self.config.agent_timeout_seconds
        results: list[str | BaseException] = await asyncio.gather(
            *[asyncio.wait_for(self._run_agent(a, objective), timeout=timeout) for a in roster],
            return_exceptions=True,
        )

        outcomes: list[AgentOutcome] = []
        for agent, result in zip(roster, results):
            if isinstance(result, asyncio.TimeoutError):
                text = f"Agent timed out after {timeout:g} seconds"
            elif isinstance(result, BaseException):
                text = f"Error: {result}"
            else:
                outcomes.append(AgentOutcome(role=agent.role, ok=True, text=result))
                continue
            logger.warning("swarm agent %r failed: %s", agent.role, text)
            self.telemetry.log(
                run_id, "swarm_agent_failed", {"role": agent.role, "error": redact_text(text)}
            )
            outcomes.append(AgentOutcome(role=agent.role, ok=False, text=text))
        return outcomes

    async def _run_agent(self, agent: SwarmAgentSpec, objective: str) -> str:
        response = await self.llm.chat(
            [
                {
                    "role": "user",
                    "content": (
                        f"Main objective: {objective}\n\n"
                        f"Your role as {agent.role}: Complete your part of this task as thoroughly as possible."
                    ),
                }
            ],
            model=agent.model,
            system_prompt=agent.system_prompt,
            max_tokens=self.config.agent_max_tokens,
        )
        logger.debug("swarm agent %r complete", agent.role)
        return response.content

    async def synthesize(self, objective: str, outcomes: list[AgentOutcome]) -> str:
        """Merge every labelled outcome into one answer. No tools are offered."""
        prompt = (
            f"Original objective: {objective}\n\n"
            "The following specialized agents completed parts of this task "
            "(entries marked FAILED did not finish):\n\n"
            f"{format_outcomes(outcomes)}\n\n"
            "Synthesize these results into a single, coherent, well-organized response that "
            "fully addresses the original objective. Remove redundancy and ensure the output is polished."
        )
        response = await self.llm.chat(
            [{"role": "user", "content": prompt}],
            system_prompt=SYNTHESIS_PROMPT,
            max_tokens=self.config.synthesis_max_tokens,
        )
        return response.content


def format_outcomes(outcomes: list[AgentOutcome]) -> str:
    return "\n\n---\n\n".join(f"## {o.label}\n{o.text}" for o in outcomes)


class AgentSwarmTool(Tool):
    name = "agent_swarm"
    description = (
        "Delegate a complex task to a team of specialized AI agents working in parallel. "
        "Use for tasks that benefit from multiple perspectives: research + analysis + "
        "writing, multi-step planning, etc."
    )
    parameters = {
        "type": "object",
        "properties": {
            "objective": {
                "type": "string",
                "description": "The high-level objective for the swarm to accomplish",
            },
            "agents": {
                "type": "array",
                "description": (
                    "Optional: define custom agents. Each has role (string) and systemPrompt "
                    "(string). If not provided, the orchestrator auto-decomposes."
                ),
                "items": {
                    "type": "object",
                    "properties": {
                        "role": {"type": "string"},
                        "systemPrompt": {"type": "string"},
                    },
                },
            },
        },
        "required": ["objective"],
    }

    def __init__(self, orchestrator: SwarmOrchestrator):
        self.orchestrator = orchestrator

    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> str:
        objective = str(arguments.get("objective") or "").strip()
        if not objective:
            raise ValueError("Missing required argument: objective")
        agents = arguments.get("agents")
        if agents is not None and not isinstance(agents, list):
            raise ValueError("agents must be an array")
        return await self.orchestrator.run(objective, [a for a in agents or [] if isinstance(a, dict)] or None)
