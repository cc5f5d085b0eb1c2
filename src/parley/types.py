"""Core data types for Parley."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

VALID_ROLES = {"user", "assistant", "system", "tool"}
SECURITY_EVENT_KINDS = {"blocked", "pairing_attempt", "pairing_approved", "allowlist_hit", "rate_limit"}


@dataclass
class InboundMessage:
    """A message handed to the core by a channel adapter."""

    id: str
    sender: str
    channel: str
    text: str
    timestamp: float = field(default_factory=time.time)
    group_id: str | None = None

    @property
    def identity(self) -> str:
        """Channel-qualified identity used for rate limiting."""
        return f"{self.channel}:{self.sender}"


@dataclass
class Session:
    """A conversation thread for one sender/channel or group/channel pair."""

    id: str
    sender: str
    channel: str
    created_at: float
    last_active_at: float
    model: str
    group_id: str | None = None
    system_prompt: str | None = None


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass
class ToolResult:
    """Outcome of one tool call: exactly one of result or error is set."""

    call_id: str
    name: str
    result: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def text(self) -> str:
        if self.error is not None:
            return f"[{self.name} error]: {self.error}"
        return f"[{self.name} result]: {self.result}"

    def to_dict(self) -> dict[str, Any]:
        return {"call_id": self.call_id, "name": self.name, "result": self.result, "error": self.error}


@dataclass
class ConversationMessage:
    """A persisted message belonging to one session."""

    id: str
    session_id: str
    role: str
    content: str
    sender: str
    channel: str
    timestamp: float = field(default_factory=time.time)
    group_id: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.role not in VALID_ROLES:
            raise ValueError(f"Invalid role: {self.role}. Must be one of {VALID_ROLES}")


@dataclass
class ModelResponse:
    """A single model completion."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] | None = None


@dataclass
class PairingCode:
    """Short-lived, single-use code promoting an identity to the allowlist."""

    code: str
    sender: str
    channel: str
    expires_at: float
    used: bool = False

    def is_valid(self, now: float) -> bool:
        return not self.used and now < self.expires_at


@dataclass
class SecurityEvent:
    """Append-only audit record of a gate decision."""

    id: str
    kind: str
    sender: str
    channel: str
    detail: str
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if self.kind not in SECURITY_EVENT_KINDS:
            raise ValueError(f"Invalid security event kind: {self.kind}")


@dataclass
class MemoryEntry:
    """A long-term key/value fact about a sender."""

    sender: str
    key: str
    value: str
    created_at: float
    updated_at: float


@dataclass
class SwarmAgentSpec:
    """An ephemeral sub-agent description for one swarm run."""

    role: str
    system_prompt: str
    model: str


@dataclass
class AgentOutcome:
    """Tagged result of one swarm branch."""

    role: str
    ok: bool
    text: str

    @property
    def label(self) -> str:
        return self.role.upper() if self.ok else f"{self.role.upper()} (FAILED)"


@dataclass
class SandboxResult:
    """Result of a command executed by the sandbox executor."""

    stdout: str
    stderr: str
    exit_code: int
    duration_s: float = 0.0
    timed_out: bool = False
    sandboxed: bool = True

    def render(self) -> str:
        """Render as tool output text."""
        output = ""
        if self.stdout:
            output += self.stdout
        if self.stderr:
            output += f"\nSTDERR: {self.stderr}"
        if self.timed_out:
            output += "\nCommand timed out"
        elif self.exit_code != 0:
            output += f"\nExit code: {self.exit_code}"
        return output.strip() or "(no output)"


@dataclass
class RateDecision:
    allowed: bool
    retry_after: float | None = None


@dataclass
class RateWindow:
    key: str
    count: int
    reset_at: float


@dataclass
class GateDecision:
    allowed: bool
    reason: str | None = None
    pairing_code: str | None = None


@dataclass
class PairingApproval:
    success: bool
    sender: str | None = None
    channel: str | None = None
