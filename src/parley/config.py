"""Configuration schema for Parley.

Configuration is loaded from parley.yml in the working directory, then
overridden by PARLEY_* environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

CONFIG_FILENAME = "parley.yml"

DEFAULT_SYSTEM_PROMPT = """You are a helpful personal AI assistant. You have access to tools for:
- Web search (use for current information)
- Memory (simple key-value facts about the user)
- Bash (run commands safely in a sandboxed container)
- Agent swarms (delegate complex tasks to specialized sub-agents)

Guidelines:
- Be concise by default, this is a chat interface
- Use tools proactively when they would help
- For simple facts about the user: use memory_remember
- Always use the sandboxed bash tool for running code

Current time: {current_time}
User memories:
{memories}"""


class ModelConfig(BaseModel):
    """A single model endpoint."""

    provider: str = "openai-compatible"
    model_id: str = "gpt-4o-mini"
    base_url: str | None = None
    api_key_env: str | None = None
    api_key: str | None = None

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        valid_providers = {"openai", "openrouter", "ollama", "openai-compatible", "anthropic"}
        if v not in valid_providers:
            raise ValueError(f"Invalid provider: {v}. Must be one of {valid_providers}")
        return v

    @property
    def qualified_name(self) -> str:
        return f"{self.provider}/{self.model_id}"

    def resolve_api_key(self) -> str | None:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.getenv(self.api_key_env)
        return None

    def resolve_base_url(self) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        defaults = {
            "openai": "https://api.openai.com/v1",
            "openrouter": "https://openrouter.ai/api/v1",
            "ollama": "http://localhost:11434/v1",
            "openai-compatible": "http://localhost:8000/v1",
            "anthropic": "https://api.anthropic.com",
        }
        return defaults[self.provider]


class LLMConfig(BaseModel):
    """Model provider client configuration."""

    models: list[ModelConfig] = Field(
        default_factory=lambda: [
            ModelConfig(provider="openai", model_id="gpt-4o-mini", api_key_env="OPENAI_API_KEY")
        ]
    )
    default_model: str = "gpt-4o-mini"
    max_concurrency: int = 8
    temperature: float = 0.7
    timeout_seconds: int = 120
    retries: int = 2
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 5.0


class ChannelConfig(BaseModel):
    """Per-channel static allowlist."""

    enabled: bool = True
    allowed_ids: list[str] = Field(default_factory=list)


class SecurityConfig(BaseModel):
    """Access-control gate configuration."""

    dm_policy: str = "pairing"
    pairing_code_length: int = 8
    pairing_ttl_seconds: int = 600
    channels: dict[str, ChannelConfig] = Field(default_factory=dict)

    @field_validator("dm_policy")
    @classmethod
    def validate_dm_policy(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in {"pairing", "strict"}:
            raise ValueError("dm_policy must be 'pairing' or 'strict'")
        return v

    @field_validator("pairing_code_length")
    @classmethod
    def validate_code_length(cls, v: int) -> int:
        if not 4 <= v <= 32:
            raise ValueError("pairing_code_length must be between 4 and 32")
        return v

    def static_allowlist(self, channel: str) -> list[str]:
        channel_config = self.channels.get(channel)
        if channel_config is None:
            return []
        return channel_config.allowed_ids

    def admin_ids(self) -> set[str]:
        """Identities listed in any static allowlist, qualified by channel."""
        return {
            f"{channel}:{sender}"
            for channel, channel_config in self.channels.items()
            for sender in channel_config.allowed_ids
        }


class RateLimitConfig(BaseModel):
    """Per-identity fixed-window admission control."""

    max_requests: int = 20
    window_seconds: float = 60.0
    sweep_interval_seconds: float = 60.0


class SandboxConfig(BaseModel):
    """Docker sandbox configuration."""

    runtime: str = "docker"
    image: str = "parley-sandbox:latest"
    memory: str = "512m"
    cpus: str = "1.0"
    tmpfs_size: str = "100m"
    user: str = "1000:1000"
    network_enabled_mode: str = "bridge"
    workspace_root: str = ".parley/workspaces"
    # Development only: run commands directly on the host when Docker is missing.
    allow_unsandboxed: bool = False
    default_timeout_seconds: float = 30.0
    max_output_chars: int = 10_000

    @field_validator("runtime")
    @classmethod
    def validate_runtime(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in {"docker", "none"}:
            raise ValueError("runtime must be 'docker' or 'none'")
        return v


class AgentConfig(BaseModel):
    """Tool-calling loop configuration."""

    history_limit: int = 40
    max_context_tokens: int = 8000
    chars_per_token: int = 4
    max_iterations: int = 10
    tool_timeout_seconds: float = 120.0
    parallel_tool_calls: bool = False
    max_tokens: int = 4096
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


class SwarmConfig(BaseModel):
    """Multi-agent orchestration configuration."""

    agent_timeout_seconds: float = 60.0
    min_agents: int = 2
    max_agents: int = 4
    decompose_max_tokens: int = 1000
    agent_max_tokens: int = 2048
    synthesis_max_tokens: int = 4096


class FeaturesConfig(BaseModel):
    """Optional tool features."""

    web_search: bool = False
    brave_api_key: str | None = None
    vault: bool = True
    vault_path: str = ".parley/vault"


class StoreConfig(BaseModel):
    """SQLite persistence configuration."""

    path: str = ".parley/parley.db"
    busy_timeout_ms: int = 5000


class TelemetryConfig(BaseModel):
    """Telemetry configuration."""

    enabled: bool = True
    log_path: str = ".parley/telemetry.jsonl"
    retention_days: int = 30


class LoggingConfig(BaseModel):
    """Process logging configuration."""

    level: str = "INFO"
    file: str | None = None

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return v


class ParleyConfig(BaseModel):
    """Complete Parley configuration."""

    llm: LLMConfig = Field(default_factory=LLMConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    swarm: SwarmConfig = Field(default_factory=SwarmConfig)
    features: FeaturesConfig = Field(default_factory=FeaturesConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def load_from_file(cls, config_path: Path | str) -> ParleyConfig:
        """Load configuration from YAML file."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            data: dict[str, Any] = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load_from_dir(cls, base_dir: Path | str) -> ParleyConfig:
        """Load configuration from a directory's parley.yml."""
        config_path = Path(base_dir) / CONFIG_FILENAME

        if not config_path.exists():
            return cls()

        return cls.load_from_file(config_path)

    def apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        # Model overrides
        if model := os.getenv("PARLEY_DEFAULT_MODEL"):
            self.llm.default_model = model
        if temp := os.getenv("PARLEY_TEMPERATURE"):
            self.llm.temperature = float(temp)

        # Security overrides
        if policy := os.getenv("PARLEY_DM_POLICY"):
            self.security.dm_policy = policy.strip().lower()
        for channel in ("telegram", "whatsapp"):
            if ids := os.getenv(f"PARLEY_{channel.upper()}_ALLOWED_IDS"):
                allowed = [i.strip() for i in ids.split(",") if i.strip()]
                self.security.channels.setdefault(channel, ChannelConfig()).allowed_ids = allowed

        # Rate limit overrides
        if v := os.getenv("PARLEY_RATE_LIMIT_MAX"):
            self.rate_limit.max_requests = int(v)
        if v := os.getenv("PARLEY_RATE_LIMIT_WINDOW_SECONDS"):
            self.rate_limit.window_seconds = float(v)

        # Sandbox overrides
        if runtime := os.getenv("PARLEY_SANDBOX_RUNTIME"):
            self.sandbox.runtime = runtime.strip().lower()
        if image := os.getenv("PARLEY_SANDBOX_IMAGE"):
            self.sandbox.image = image
        if os.getenv("PARLEY_ALLOW_UNSANDBOXED") == "1":
            self.sandbox.allow_unsandboxed = True

        # Features
        if key := os.getenv("BRAVE_SEARCH_API_KEY"):
            self.features.brave_api_key = key
            self.features.web_search = True
        if path := os.getenv("PARLEY_VAULT_PATH"):
            self.features.vault_path = path

        # Store / telemetry / logging
        if path := os.getenv("PARLEY_DB_PATH"):
            self.store.path = path
        if log_path := os.getenv("PARLEY_TELEMETRY_PATH"):
            self.telemetry.log_path = log_path
        if level := os.getenv("PARLEY_LOG_LEVEL"):
            self.logging.level = level.strip().upper()
        if log_file := os.getenv("PARLEY_LOG_FILE"):
            self.logging.file = log_file


def load_config(base_dir: Path | str = ".") -> ParleyConfig:
    """
    Load configuration for a working directory.

    Args:
        base_dir: Directory that may contain parley.yml

    Returns:
        Loaded and validated configuration
    """
    config = ParleyConfig.load_from_dir(base_dir)
    config.apply_env_overrides()
    return config
