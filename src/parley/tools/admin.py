"""Administrative tools, restricted to statically allowlisted identities."""

from __future__ import annotations

import logging
import platform
import sqlite3
import sys
import time
from abc import abstractmethod
from collections.abc import Callable
from functools import partial
from typing import Any

from ..config import ParleyConfig, SecurityConfig
from ..gate import SecurityGate
from ..ratelimit import RateLimiter
from ..sandbox import SandboxExecutor
from ..store import Store, offload
from .registry import Tool, ToolContext

logger = logging.getLogger(__name__)

ADMIN_REQUIRED = "Admin access required."


class AdminTool(Tool):
    """Base for tools that only configured admins may run.

    Admins are the identities listed in any channel's static allowlist.
    Pairing never grants admin rights.
    """

    def __init__(self, security: SecurityConfig):
        self.security = security

    def is_admin(self, context: ToolContext) -> bool:
        return context.identity in self.security.admin_ids()

    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> str:
        if not self.is_admin(context):
            logger.warning("non-admin %s attempted %s", context.identity, self.name)
            return ADMIN_REQUIRED
        return await self.run(arguments, context)

    @abstractmethod
    async def run(self, arguments: dict[str, Any], context: ToolContext) -> str:
        """Tool body, reached only for admins."""


class RateLimitStatsTool(AdminTool):
    name = "admin_ratelimit_stats"
    description = "View current rate limit status for all users (admin only)."

    def __init__(self, security: SecurityConfig, rate_limiter: RateLimiter):
        super().__init__(security)
        self.rate_limiter = rate_limiter

    async def run(self, arguments: dict[str, Any], context: ToolContext) -> str:
        windows = self.rate_limiter.active()
        if not windows:
            return "No active rate limits."
        lines = [
            f"- {w.key}: {w.count} requests (resets in {self.rate_limiter.seconds_until_reset(w.reset_at):.0f}s)"
            for w in sorted(windows, key=lambda w: w.key)
        ]
        return "Active rate limits:\n" + "\n".join(lines)


class RateLimitResetTool(AdminTool):
    name = "admin_ratelimit_reset"
    description = "Reset the rate limit for one identity (admin only)."
    parameters = {
        "type": "object",
        "properties": {
            "identity": {
                "type": "string",
                "description": "Identity to reset, as '<channel>:<sender>'",
            }
        },
        "required": ["identity"],
    }

    def __init__(self, security: SecurityConfig, rate_limiter: RateLimiter):
        super().__init__(security)
        self.rate_limiter = rate_limiter

    async def run(self, arguments: dict[str, Any], context: ToolContext) -> str:
        identity = str(arguments.get("identity") or "").strip()
        if not identity:
            raise ValueError("Missing required argument: identity")
        self.rate_limiter.reset(identity)
        return f"Rate limit reset for: {identity}"


class PairingApproveTool(AdminTool):
    name = "admin_pairing_approve"
    description = "Approve a pairing code and allowlist its sender (admin only)."
    parameters = {
        "type": "object",
        "properties": {"code": {"type": "string", "description": "The pairing code"}},
        "required": ["code"],
    }

    def __init__(self, security: SecurityConfig, gate: SecurityGate):
        super().__init__(security)
        self.gate = gate

    async def run(self, arguments: dict[str, Any], context: ToolContext) -> str:
        code = str(arguments.get("code") or "").strip()
        if not code:
            raise ValueError("Missing required argument: code")
        approval = await offload(self.gate.approve_pairing, code)
        if not approval.success:
            return f"Pairing code {code.upper()} is invalid, expired, or already used."
        return f"Approved {approval.channel}:{approval.sender}"


class DbStatsTool(AdminTool):
    name = "admin_db_stats"
    description = "Database statistics (admin only): size, sessions, messages, memories."

    def __init__(self, security: SecurityConfig, store: Store):
        super().__init__(security)
        self.store = store

    async def run(self, arguments: dict[str, Any], context: ToolContext) -> str:
        stats = await offload(self.store.stats)
        size_mb = stats["size_bytes"] / 1024 / 1024
        return (
            "Database statistics:\n"
            f"Size: {size_mb:.2f} MB\n"
            f"Sessions: {stats['sessions']}\n"
            f"Messages: {stats['messages']}\n"
            f"Memories: {stats['memory']}\n"
            f"Security events: {stats['security_events']}\n"
            f"Allowlisted: {stats['allowlist']}"
        )


class DbOptimizeTool(AdminTool):
    name = "admin_db_optimize"
    description = "Optimize the database (VACUUM + ANALYZE) to reclaim disk space (admin only)."

    def __init__(self, security: SecurityConfig, store: Store):
        super().__init__(security)
        self.store = store

    async def run(self, arguments: dict[str, Any], context: ToolContext) -> str:
        before = (await offload(self.store.stats))["size_bytes"]
        try:
            await offload(self.store.optimize)
        except sqlite3.Error as e:
            logger.error("database optimize failed: %s", e)
            return f"Optimization failed: {e}"
        after = (await offload(self.store.stats))["size_bytes"]
        saved = max(0, before - after) / 1024 / 1024
        return (
            f"Database optimized. Before: {before / 1024 / 1024:.2f} MB, "
            f"after: {after / 1024 / 1024:.2f} MB, reclaimed: {saved:.2f} MB"
        )


class DbCleanupTool(AdminTool):
    name = "admin_db_cleanup"
    description = "Remove old messages, old security events and spent pairing codes (admin only)."
    parameters = {
        "type": "object",
        "properties": {
            "message_retention_days": {
                "type": "number",
                "description": "Keep messages from the last N days (default 90)",
            },
            "security_retention_days": {
                "type": "number",
                "description": "Keep security events from the last N days (default 30)",
            },
        },
    }

    def __init__(self, security: SecurityConfig, store: Store):
        super().__init__(security)
        self.store = store

    async def run(self, arguments: dict[str, Any], context: ToolContext) -> str:
        cleanup = partial(
            self.store.cleanup,
            message_retention_days=int(arguments.get("message_retention_days") or 90),
            security_event_retention_days=int(arguments.get("security_retention_days") or 30),
        )
        removed = await offload(cleanup)
        return (
            "Cleanup complete: "
            f"{removed['messages']} messages, "
            f"{removed['security_events']} security events, "
            f"{removed['pairing_codes']} pairing codes removed."
        )


class SystemInfoTool(AdminTool):
    name = "admin_system_info"
    description = "System information and health status (admin only)."

    def __init__(
        self,
        config: ParleyConfig,
        sandbox: SandboxExecutor,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(config.security)
        self.config = config
        self.sandbox = sandbox
        self._clock = clock
        self._started_at = clock()

    async def run(self, arguments: dict[str, Any], context: ToolContext) -> str:
        uptime = int(self._clock() - self._started_at)
        channels = ", ".join(
            sorted(name for name, channel in self.config.security.channels.items() if channel.enabled)
        )
        provider = self.config.llm.models[0].provider if self.config.llm.models else "none"
        if self.sandbox.sandboxed:
            sandbox = f"docker ({self.config.sandbox.image})"
        elif self.config.sandbox.runtime == "none":
            sandbox = "disabled (host)"
        else:
            sandbox = "docker unavailable"
        return (
            "System information:\n"
            f"Uptime: {uptime // 3600}h {uptime % 3600 // 60}m\n"
            f"Python: {platform.python_version()} ({sys.implementation.name})\n"
            f"Platform: {platform.system()} {platform.machine()}\n"
            f"Provider: {provider}\n"
            f"Model: {self.config.llm.default_model}\n"
            f"Channels: {channels or 'none'}\n"
            f"Access policy: {self.config.security.dm_policy}\n"
            f"Sandbox: {sandbox}"
        )


def make_admin_tools(
    config: ParleyConfig,
    store: Store,
    rate_limiter: RateLimiter,
    gate: SecurityGate,
    sandbox: SandboxExecutor,
) -> list[Tool]:
    security = config.security
    return [
        RateLimitStatsTool(security, rate_limiter),
        RateLimitResetTool(security, rate_limiter),
        PairingApproveTool(security, gate),
        DbStatsTool(security, store),
        DbOptimizeTool(security, store),
        DbCleanupTool(security, store),
        SystemInfoTool(config, sandbox),
    ]
