"""Application assembly: wires every component from one configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .agent_loop import AgentLoop
from .config import ParleyConfig
from .gate import SecurityGate
from .gateway import Gateway
from .llm_client import ChatModel, LLMClient
from .ratelimit import RateLimiter
from .sandbox import SandboxExecutor
from .store import Store, offload
from .swarm import AgentSwarmTool, SwarmOrchestrator
from .telemetry import TelemetrySink, prune_telemetry_file
from .tools import ToolRegistry, build_default_registry

logger = logging.getLogger(__name__)


@dataclass
class App:
    """A fully wired core, ready to take inbound messages through ``gateway``."""

    config: ParleyConfig
    store: Store
    rate_limiter: RateLimiter
    gate: SecurityGate
    sandbox: SandboxExecutor
    llm: ChatModel
    registry: ToolRegistry
    swarm: SwarmOrchestrator
    agent: AgentLoop
    gateway: Gateway
    telemetry: TelemetrySink

    async def start(self) -> None:
        """Initialise storage, check the sandbox, and start background sweeps."""
        await offload(self.store.init)
        prune_telemetry_file(self.telemetry.path, self.config.telemetry.retention_days)

        await self.sandbox.is_ready()
        self._log_security_posture()
        if self.sandbox.sandboxed and not await self.sandbox.ensure_image():
            logger.error("sandbox image %s unavailable; sandboxed tools will fail", self.config.sandbox.image)
        self.agent.sandboxed = self.sandbox.sandboxed

        self.rate_limiter.start()
        logger.info("parley started with %d tools", len(self.registry))

    async def stop(self) -> None:
        await self.rate_limiter.stop()
        logger.info("parley stopped")

    def _log_security_posture(self) -> None:
        sandbox = self.config.sandbox
        if self.sandbox.sandboxed:
            logger.info("sandbox: docker (image %s, memory %s, cpus %s)", sandbox.image, sandbox.memory, sandbox.cpus)
        elif sandbox.runtime == "none":
            logger.warning("sandbox DISABLED (runtime=none): tool commands run directly on the host")
        elif sandbox.allow_unsandboxed:
            logger.warning("docker unavailable: tool commands will run UNSANDBOXED on the host")
        else:
            logger.error("docker unavailable and unsandboxed fallback disabled: sandboxed tools will fail")

        if self.config.security.dm_policy == "strict":
            logger.info("access policy: strict (unknown senders are refused)")
        else:
            logger.info("access policy: pairing (unknown senders receive a pairing code)")


def build_app(config: ParleyConfig, llm: ChatModel | None = None) -> App:
    """
    Construct every component from ``config``.

    Args:
        config: Loaded configuration
        llm: Optional chat model; defaults to an ``LLMClient`` over the configured providers

    Returns:
        An unstarted App; call ``await app.start()`` before handling messages
    """
    telemetry = TelemetrySink(enabled=config.telemetry.enabled, path=Path(config.telemetry.log_path))
    store = Store(config.store.path, busy_timeout_ms=config.store.busy_timeout_ms)
    rate_limiter = RateLimiter(
        max_requests=config.rate_limit.max_requests,
        window_seconds=config.rate_limit.window_seconds,
        sweep_interval=config.rate_limit.sweep_interval_seconds,
    )
    gate = SecurityGate(config.security, store)
    sandbox = SandboxExecutor(config.sandbox)
    chat_model = llm or LLMClient(config.llm)

    registry = build_default_registry(config, store, sandbox, rate_limiter, gate)
    swarm = SwarmOrchestrator(
        config.swarm, chat_model, default_model=config.llm.default_model, telemetry=telemetry
    )
    registry.register(AgentSwarmTool(swarm))

    agent = AgentLoop(
        config.agent,
        chat_model,
        registry,
        store,
        default_model=config.llm.default_model,
        sandboxed=False,
        workspace_root=config.sandbox.workspace_root,
        telemetry=telemetry,
    )
    gateway = Gateway(rate_limiter, gate, agent)

    return App(
        config=config,
        store=store,
        rate_limiter=rate_limiter,
        gate=gate,
        sandbox=sandbox,
        llm=chat_model,
        registry=registry,
        swarm=swarm,
        agent=agent,
        gateway=gateway,
        telemetry=telemetry,
    )
