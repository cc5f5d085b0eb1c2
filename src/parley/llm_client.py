"""Model provider client with retry, backoff and default-model fallback.

Speaks the OpenAI-compatible ``/chat/completions`` API (OpenAI, OpenRouter,
Ollama, self-hosted gateways) and the Anthropic ``/v1/messages`` API over
httpx. Callers depend on the ``ChatModel`` protocol, so tests can substitute
a scripted model.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import random
from typing import Any, Protocol

import httpx

from .config import LLMConfig, ModelConfig
from .errors import ConfigError, ModelProviderError
from .types import ModelResponse, ToolCall

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
# Providers that commonly run without credentials (local servers).
KEYLESS_PROVIDERS = {"ollama", "openai-compatible"}


class ChatModel(Protocol):
    """Anything that can complete a chat turn."""

    async def chat(
        self,
        messages: list[dict[str, str]],
        *,
        model: str | None = None,
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int = 4096,
        temperature: float | None = None,
    ) -> ModelResponse: ...


class LLMClient:
    """
    Async HTTP client for chat models.

    Features:
    - Exponential backoff with jitter for transient failures
    - Terminal errors (auth, invalid request) surface immediately
    - One no-retry attempt on the default model after a non-default model fails
    - Concurrency limiting via semaphore
    """

    def __init__(self, config: LLMConfig, transport: httpx.AsyncBaseTransport | None = None):
        if not config.models:
            raise ConfigError("No AI models configured")
        self.config = config
        self.semaphore = asyncio.Semaphore(config.max_concurrency)
        self._transport = transport
        self._models: dict[str, ModelConfig] = {}
        for m in config.models:
            self._models.setdefault(m.model_id, m)
            self._models.setdefault(m.qualified_name, m)

    def resolve_model(self, name: str | None = None) -> ModelConfig:
        """Find a model by ``model_id`` or ``provider/model_id``; fall back to the first."""
        key = name or self.config.default_model
        if key in self._models:
            return self._models[key]
        first = self.config.models[0]
        logger.warning("model %r not found, using %s", key, first.qualified_name)
        return first

    async def chat(
        self,
        messages: list[dict[str, str]],
        *,
        model: str | None = None,
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int = 4096,
        temperature: float | None = None,
        retries: int | None = None,
    ) -> ModelResponse:
        """
        Complete one chat turn.

        Args:
            messages: Dicts with "role" (user/assistant/system) and "content"
            model: Model name; defaults to the configured default model
            system_prompt: System instruction (sent the provider's way)
            tools: Function schemas ({"name", "description", "parameters"})
            max_tokens: Completion budget
            temperature: Sampling temperature (default: from config)
            retries: Extra attempts for retryable failures (default: from config)

        Raises:
            ModelProviderError: After retries (and fallback) are exhausted, or
                immediately on a terminal error
        """
        cfg = self.resolve_model(model)
        retries = self.config.retries if retries is None else retries
        temperature = self.config.temperature if temperature is None else temperature

        try:
            async with self.semaphore:
                return await self._chat_with_retries(
                    cfg, messages, system_prompt, tools, max_tokens, temperature, retries
                )
        except ModelProviderError as e:
            default_cfg = self.resolve_model(self.config.default_model)
            if len(self.config.models) < 2 or cfg is default_cfg:
                raise
            logger.warning(
                "all attempts failed for %s, trying fallback model %s",
                cfg.qualified_name,
                default_cfg.qualified_name,
            )
            try:
                return await self.chat(
                    messages,
                    model=default_cfg.qualified_name,
                    system_prompt=system_prompt,
                    tools=tools,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    retries=0,
                )
            except ModelProviderError as fallback_error:
                logger.error("fallback model also failed: %s", fallback_error)
            raise e

    async def _chat_with_retries(
        self,
        cfg: ModelConfig,
        messages: list[dict[str, str]],
        system_prompt: str | None,
        tools: list[dict[str, Any]] | None,
        max_tokens: int,
        temperature: float,
        retries: int,
    ) -> ModelResponse:
        attempt = 0
        while True:
            try:
                return await self._send(cfg, messages, system_prompt, tools, max_tokens, temperature)
            except ModelProviderError as e:
                logger.error(
                    "%s error (attempt %d/%d): %s",
                    cfg.provider,
                    attempt + 1,
                    retries + 1,
                    e,
                )
                if not e.retryable or attempt >= retries:
                    raise

            delay = min(
                self.config.backoff_base_seconds * 2**attempt,
                self.config.backoff_max_seconds,
            )
            delay += random.uniform(0, 0.1 * delay)
            logger.info("retrying %s in %.1fs", cfg.qualified_name, delay)
            await asyncio.sleep(delay)
            attempt += 1

    async def _send(
        self,
        cfg: ModelConfig,
        messages: list[dict[str, str]],
        system_prompt: str | None,
        tools: list[dict[str, Any]] | None,
        max_tokens: int,
        temperature: float,
    ) -> ModelResponse:
        if os.getenv("PARLEY_DISABLE_NETWORK") == "1":
            raise ModelProviderError(
                "Network disabled (PARLEY_DISABLE_NETWORK=1)",
                retryable=False,
                model=cfg.qualified_name,
            )

        api_key = cfg.resolve_api_key()
        if not api_key and cfg.provider not in KEYLESS_PROVIDERS:
            raise ModelProviderError(
                f"Missing API key for {cfg.qualified_name} (set {cfg.api_key_env or 'api_key'})",
                retryable=False,
                model=cfg.qualified_name,
            )

        if cfg.provider == "anthropic":
            url, headers, payload = _anthropic_request(
                cfg, api_key, messages, system_prompt, tools, max_tokens, temperature
            )
        else:
            url, headers, payload = _openai_request(
                cfg, api_key, messages, system_prompt, tools, max_tokens, temperature
            )

        try:
            async with httpx.AsyncClient(
                timeout=self.config.timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(url, headers=headers, json=payload)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise ModelProviderError(
                f"Network error: {e}", retryable=True, model=cfg.qualified_name
            ) from e

        if response.status_code != 200:
            raise ModelProviderError.from_status(
                response.status_code, response.text, model=cfg.qualified_name
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ModelProviderError(
                f"Invalid JSON from provider: {e}", retryable=True, model=cfg.qualified_name
            ) from e

        if cfg.provider == "anthropic":
            return _parse_anthropic(data, cfg)
        return _parse_openai(data, cfg)


def _openai_request(
    cfg: ModelConfig,
    api_key: str | None,
    messages: list[dict[str, str]],
    system_prompt: str | None,
    tools: list[dict[str, Any]] | None,
    max_tokens: int,
    temperature: float,
) -> tuple[str, dict[str, str], dict[str, Any]]:
    chat_messages: list[dict[str, str]] = []
    if system_prompt:
        chat_messages.append({"role": "system", "content": system_prompt})
    chat_messages.extend({"role": m["role"], "content": m["content"]} for m in messages)

    payload: dict[str, Any] = {
        "model": cfg.model_id,
        "messages": chat_messages,
        "max_tokens": max_tokens,
        "temperature": temperature,
    }
    if tools:
        payload["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": t["name"],
                    "description": t["description"],
                    "parameters": t["parameters"],
                },
            }
            for t in tools
        ]

    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return f"{cfg.resolve_base_url()}/chat/completions", headers, payload


def _anthropic_request(
    cfg: ModelConfig,
    api_key: str | None,
    messages: list[dict[str, str]],
    system_prompt: str | None,
    tools: list[dict[str, Any]] | None,
    max_tokens: int,
    temperature: float,
) -> tuple[str, dict[str, str], dict[str, Any]]:
    system = system_prompt or next(
        (m["content"] for m in messages if m["role"] == "system"), None
    )
    payload: dict[str, Any] = {
        "model": cfg.model_id,
        "max_tokens": max_tokens,
        "temperature": temperature,
        "messages": [
            {"role": m["role"], "content": m["content"]} for m in messages if m["role"] != "system"
        ],
    }
    if system:
        payload["system"] = system
    if tools:
        payload["tools"] = [
            {"name": t["name"], "description": t["description"], "input_schema": t["parameters"]}
            for t in tools
        ]

    headers = {
        "Content-Type": "application/json",
        "anthropic-version": ANTHROPIC_VERSION,
        "x-api-key": api_key or "",
    }
    return f"{cfg.resolve_base_url()}/v1/messages", headers, payload


def _parse_openai(data: dict[str, Any], cfg: ModelConfig) -> ModelResponse:
    choices = data.get("choices") or []
    if not choices:
        raise ModelProviderError(
            "No completion choices returned", retryable=True, model=cfg.qualified_name
        )
    message = choices[0].get("message") or {}

    tool_calls: list[ToolCall] = []
    for i, tc in enumerate(message.get("tool_calls") or []):
        fn = tc.get("function") or {}
        raw_args = fn.get("arguments") or "{}"
        try:
            arguments = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
        except json.JSONDecodeError:
            logger.warning("malformed arguments for tool call %s: %.200s", fn.get("name"), raw_args)
            arguments = {}
        tool_calls.append(
            ToolCall(id=tc.get("id") or f"call_{i}", name=fn.get("name", ""), arguments=arguments)
        )

    usage = data.get("usage")
    return ModelResponse(
        content=message.get("content") or "",
        tool_calls=tool_calls,
        model=cfg.model_id,
        usage=(
            {"input": usage.get("prompt_tokens", 0), "output": usage.get("completion_tokens", 0)}
            if usage
            else None
        ),
    )


def _parse_anthropic(data: dict[str, Any], cfg: ModelConfig) -> ModelResponse:
    blocks = data.get("content") or []
    text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
    tool_calls = [
        ToolCall(id=b.get("id", ""), name=b.get("name", ""), arguments=b.get("input") or {})
        for b in blocks
        if b.get("type") == "tool_use"
    ]
    usage = data.get("usage")
    return ModelResponse(
        content=text,
        tool_calls=tool_calls,
        model=cfg.model_id,
        usage=(
            {"input": usage.get("input_tokens", 0), "output": usage.get("output_tokens", 0)}
            if usage
            else None
        ),
    )
