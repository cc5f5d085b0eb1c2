"""Built-in tools: sandboxed shell, URL fetch, web search, and per-sender memory."""

from __future__ import annotations

import logging
import shlex
from typing import Any

import httpx

from ..sandbox import SandboxExecutor
from ..store import Store, offload
from .registry import Tool, ToolContext

logger = logging.getLogger(__name__)

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
WEB_SEARCH_TIMEOUT_SECONDS = 10.0


def _require_str(arguments: dict[str, Any], key: str) -> str:
    value = arguments.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Missing required argument: {key}")
    return value


class BashTool(Tool):
    name = "bash"
    description = (
        "Run a bash command. Executes inside a Docker sandbox with no network access "
        "and limited filesystem. Safe to use."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "The bash command to run"},
            "timeout": {"type": "number", "description": "Timeout in seconds (default 30)"},
        },
        "required": ["command"],
    }

    def __init__(self, sandbox: SandboxExecutor):
        self.sandbox = sandbox

    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> str:
        command = _require_str(arguments, "command")
        timeout = arguments.get("timeout")
        result = await self.sandbox.run(
            command,
            context.workspace,
            timeout=float(timeout) if timeout else None,
            network="none",
        )
        return result.render()


class FetchUrlTool(Tool):
    """Fetch a URL with curl inside a sandbox that has network access."""

    name = "fetch_url"
    description = (
        "Fetch the contents of a URL (HTTP GET). Runs curl inside the sandbox with "
        "network access enabled. Output is truncated."
    )
    parameters = {
        "type": "object",
        "properties": {
            "url": {"type": "string", "description": "http(s) URL to fetch"},
        },
        "required": ["url"],
    }

    def __init__(self, sandbox: SandboxExecutor):
        self.sandbox = sandbox

    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> str:
        url = _require_str(arguments, "url").strip()
        if not url.startswith(("http://", "https://")):
            raise ValueError("Only http and https URLs are supported")
        command = f"curl -sSL --max-time 20 --max-filesize 2000000 {shlex.quote(url)}"
        result = await self.sandbox.run(command, context.workspace, network="enabled")
        return result.render()


class WebSearchTool(Tool):
    name = "web_search"
    description = (
        "Search the web for current information. Use for news, facts, prices, "
        "anything that changes."
    )
    parameters = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Search query"},
            "count": {"type": "number", "description": "Number of results (1-10, default 5)"},
        },
        "required": ["query"],
    }

    def __init__(self, api_key: str | None, transport: httpx.AsyncBaseTransport | None = None):
        self.api_key = api_key
        self._transport = transport

    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> str:
        query = _require_str(arguments, "query")
        count = max(1, min(int(arguments.get("count") or 5), 10))

        if not self.api_key:
            return "Web search is not configured. Set BRAVE_SEARCH_API_KEY."

        try:
            async with httpx.AsyncClient(
                timeout=WEB_SEARCH_TIMEOUT_SECONDS, transport=self._transport
            ) as client:
                response = await client.get(
                    BRAVE_SEARCH_URL,
                    params={"q": query, "count": count},
                    headers={
                        "Accept": "application/json",
                        "X-Subscription-Token": self.api_key,
                    },
                )
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException:
            return f"Search timed out after {WEB_SEARCH_TIMEOUT_SECONDS:g} seconds. Please try again."
        except httpx.HTTPError as e:
            logger.error("web_search failed: %s", e)
            return f"Search failed: {e}"

        results = (data.get("web") or {}).get("results") or []
        if not results:
            return "No results found."
        return "\n\n".join(
            f"{i}. **{r.get('title', '')}**\n   {r.get('url', '')}\n   {r.get('description', '')}"
            for i, r in enumerate(results[:count], 1)
        )


class MemoryRememberTool(Tool):
    name = "memory_remember"
    description = (
        "Save something to long-term memory. Use to remember facts about the user, "
        "preferences, or important context."
    )
    parameters = {
        "type": "object",
        "properties": {
            "key": {
                "type": "string",
                "description": "Short key to identify this memory (e.g. 'user_name', 'preferred_language')",
            },
            "value": {"type": "string", "description": "The information to remember"},
        },
        "required": ["key", "value"],
    }

    def __init__(self, store: Store):
        self.store = store

    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> str:
        key = _require_str(arguments, "key")
        value = _require_str(arguments, "value")
        await offload(self.store.set_memory, context.sender, key, value)
        return f"Remembered: {key} = {value}"


class MemoryRecallTool(Tool):
    name = "memory_recall"
    description = "Recall something from long-term memory."
    parameters = {
        "type": "object",
        "properties": {"key": {"type": "string", "description": "The key to look up"}},
        "required": ["key"],
    }

    def __init__(self, store: Store):
        self.store = store

    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> str:
        key = _require_str(arguments, "key")
        value = await offload(self.store.get_memory, context.sender, key)
        return f"{key}: {value}" if value is not None else f"No memory found for key: {key}"


class MemoryListTool(Tool):
    name = "memory_list"
    description = "List all stored memories for this user."

    def __init__(self, store: Store):
        self.store = store

    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> str:
        entries = await offload(self.store.list_memory, context.sender)
        if not entries:
            return "No memories stored yet."
        return "\n".join(f"- {e.key}: {e.value}" for e in entries)


class MemoryForgetTool(Tool):
    name = "memory_forget"
    description = "Delete a memory by key."
    parameters = {
        "type": "object",
        "properties": {"key": {"type": "string", "description": "The key to delete"}},
        "required": ["key"],
    }

    def __init__(self, store: Store):
        self.store = store

    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> str:
        key = _require_str(arguments, "key")
        if await offload(self.store.delete_memory, context.sender, key):
            return f"Forgot: {key}"
        return f"No memory found for key: {key}"
