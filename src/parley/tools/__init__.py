"""Tools the agent loop can invoke."""

from __future__ import annotations

from ..config import ParleyConfig
from ..gate import SecurityGate
from ..ratelimit import RateLimiter
from ..sandbox import SandboxExecutor
from ..store import Store
from .admin import AdminTool, make_admin_tools
from .builtin import (
    BashTool,
    FetchUrlTool,
    MemoryForgetTool,
    MemoryListTool,
    MemoryRecallTool,
    MemoryRememberTool,
    WebSearchTool,
)
from .registry import Tool, ToolContext, ToolRegistry
from .vault import ObsidianVault, make_vault_tools

__all__ = [
    "AdminTool",
    "BashTool",
    "FetchUrlTool",
    "MemoryForgetTool",
    "MemoryListTool",
    "MemoryRecallTool",
    "MemoryRememberTool",
    "ObsidianVault",
    "Tool",
    "ToolContext",
    "ToolRegistry",
    "WebSearchTool",
    "build_default_registry",
]


def build_default_registry(
    config: ParleyConfig,
    store: Store,
    sandbox: SandboxExecutor,
    rate_limiter: RateLimiter,
    gate: SecurityGate,
) -> ToolRegistry:
    """Registry with the built-in, vault and admin tools (the swarm tool is added by the app)."""
    registry = ToolRegistry(
        [
            WebSearchTool(config.features.brave_api_key if config.features.web_search else None),
            MemoryRememberTool(store),
            MemoryRecallTool(store),
            MemoryListTool(store),
            MemoryForgetTool(store),
            BashTool(sandbox),
            FetchUrlTool(sandbox),
        ]
    )
    if config.features.vault:
        for tool in make_vault_tools(ObsidianVault(config.features.vault_path)):
            registry.register(tool)
    for tool in make_admin_tools(config, store, rate_limiter, gate, sandbox):
        registry.register(tool)
    return registry
