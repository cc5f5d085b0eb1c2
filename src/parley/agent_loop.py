"""Conversational turn processing with bounded tool calling.

One call to ``AgentLoop.process`` is one turn:

1. Resolve (or create) the session and persist the inbound message.
2. Rebuild model context from recent history plus the rendered system prompt,
   trimmed to a token budget.
3. Call the model; while it requests tools, run each call against a per-call
   timeout and feed all results back as one synthetic user turn.
4. Persist and return the final assistant text. A turn always yields text:
   if the loop ends without any, a fixed apology is returned instead.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from .config import AgentConfig
from .errors import ModelProviderError
from .llm_client import ChatModel
from .store import Store, offload
from .telemetry import NULL_SINK, TelemetrySink, redact_text
from .tools import ToolContext, ToolRegistry
from .types import (
    ConversationMessage,
    InboundMessage,
    MemoryEntry,
    Session,
    ToolCall,
    ToolResult,
)

logger = logging.getLogger(__name__)

FALLBACK_RESPONSE = "(I ran into an issue processing your request. Please try again.)"
TOOL_PLACEHOLDER = "(using tools...)"


def estimate_tokens(text: str, chars_per_token: int = 4) -> int:
    """Rough token count from a fixed character ratio."""
    return math.ceil(len(text) / chars_per_token)


def trim_to_budget(
    messages: list[dict[str, str]],
    system_prompt: str,
    max_tokens: int,
    chars_per_token: int = 4,
) -> list[dict[str, str]]:
    """
    Drop the oldest messages until system prompt plus history fit ``max_tokens``.

    The two most recent messages are never dropped, so the final user message
    always survives even when it alone exceeds the budget.
    """
    system_tokens = estimate_tokens(system_prompt, chars_per_token)
    history_tokens = sum(estimate_tokens(m["content"], chars_per_token) for m in messages)
    if system_tokens + history_tokens <= max_tokens:
        return list(messages)

    logger.warning("history too long (%d tokens), truncating", history_tokens)
    kept = list(messages)
    while len(kept) > 2 and system_tokens + history_tokens > max_tokens:
        removed = kept.pop(0)
        history_tokens -= estimate_tokens(removed["content"], chars_per_token)
    logger.info("kept %d messages (%d tokens)", len(kept), history_tokens)
    return kept


def render_system_prompt(template: str, memories: list[MemoryEntry], now: float) -> str:
    """Substitute ``{current_time}`` and ``{memories}`` into a prompt template."""
    if memories:
        summary = "\n".join(f"  {m.key}: {m.value}" for m in memories)
    else:
        summary = "  (none yet)"
    current_time = datetime.fromtimestamp(now, tz=timezone.utc).isoformat()
    return template.replace("{current_time}", current_time).replace("{memories}", summary)


class AgentLoop:
    """Runs conversational turns against a chat model and a tool registry."""

    def __init__(
        self,
        config: AgentConfig,
        llm: ChatModel,
        registry: ToolRegistry,
        store: Store,
        *,
        default_model: str,
        sandboxed: bool,
        workspace_root: Path | str,
        telemetry: TelemetrySink | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.llm = llm
        self.registry = registry
        self.store = store
        self.default_model = default_model
        self.sandboxed = sandboxed
        self.workspace_root = Path(workspace_root)
        self.telemetry = telemetry or NULL_SINK
        self._clock = clock

    async def process(self, inbound: InboundMessage, session_id: str | None = None) -> str:
        """Process one inbound message and return the response text (never empty)."""
        session = await self._resolve_session(inbound, session_id)
        now = self._clock()
        session.last_active_at = now
        await offload(self.store.upsert_session, session)

        await offload(
            self.store.save_message,
            ConversationMessage(
                id=uuid.uuid4().hex,
                session_id=session.id,
                role="user",
                content=inbound.text,
                sender=inbound.sender,
                channel=inbound.channel,
                timestamp=inbound.timestamp,
                group_id=inbound.group_id,
            )
        )

        history = await offload(self.store.recent_messages, session.id, self.config.history_limit)
        messages = [
            {"role": m.role, "content": m.content}
            for m in history
            if m.role in ("user", "assistant")
        ]
        if not messages or messages[-1]["content"] != inbound.text:
            messages.append({"role": "user", "content": inbound.text})

        system_prompt = render_system_prompt(
            session.system_prompt or self.config.system_prompt,
            await offload(self.store.list_memory, inbound.sender),
            now,
        )
        messages = trim_to_budget(
            messages, system_prompt, self.config.max_context_tokens, self.config.chars_per_token
        )

        context = ToolContext(
            session_id=session.id,
            sender=inbound.sender,
            channel=inbound.channel,
            sandboxed=self.sandboxed,
            workspace=self.workspace_root / session.id,
        )

        run_id = uuid.uuid4().hex[:12]
        self.telemetry.log(
            run_id,
            "turn_started",
            {"session_id": session.id, "channel": inbound.channel, "history": len(messages)},
        )
        t0 = time.monotonic()

        final, calls, results = await self._run(messages, system_prompt, session.model, context, run_id)
        if not final:
            final = FALLBACK_RESPONSE

        await offload(
            self.store.save_message,
            ConversationMessage(
                id=uuid.uuid4().hex,
                session_id=session.id,
                role="assistant",
                content=final,
                sender=inbound.sender,
                channel=inbound.channel,
                timestamp=self._clock(),
                group_id=inbound.group_id,
                tool_calls=calls,
                tool_results=results,
            )
        )
        self.telemetry.log(
            run_id,
            "turn_completed",
            {
                "session_id": session.id,
                "tool_calls": len(calls),
                "fallback": final == FALLBACK_RESPONSE,
                "duration_s": round(time.monotonic() - t0, 3),
            },
        )
        return final

    async def process_scheduled(self, name: str, message: str, sender: str, channel: str) -> str:
        """Run a scheduled task's prompt as a synthetic inbound message."""
        inbound = InboundMessage(
            id=uuid.uuid4().hex,
            sender=sender,
            channel=channel,
            text=f"[Scheduled task: {name}]\n{message}",
            timestamp=self._clock(),
        )
        return await self.process(inbound)

    async def _resolve_session(self, inbound: InboundMessage, session_id: str | None) -> Session:
        session = await offload(self.store.get_session, session_id) if session_id else None
        if session is None:
            session = await offload(
                self.store.find_session, inbound.sender, inbound.channel, inbound.group_id
            )
        if session is None:
            now = self._clock()
            session = Session(
                id=uuid.uuid4().hex,
                sender=inbound.sender,
                channel=inbound.channel,
                group_id=inbound.group_id,
                created_at=now,
                last_active_at=now,
                model=self.default_model,
            )
            logger.info("new session %s for %s", session.id, inbound.identity)
        return session

    async def _run(
        self,
        messages: list[dict[str, str]],
        system_prompt: str,
        model: str,
        context: ToolContext,
        run_id: str,
    ) -> tuple[str, list[ToolCall], list[ToolResult]]:
        schemas = self.registry.schemas()
        calls: list[ToolCall] = []
        results: list[ToolResult] = []

        for iteration in range(self.config.max_iterations):
            try:
                response = await self.llm.chat(
                    messages,
                    model=model,
                    system_prompt=system_prompt,
                    tools=schemas,
                    max_tokens=self.config.max_tokens,
                )
            except ModelProviderError as e:
                logger.error("model call failed on iteration %d: %s", iteration + 1, e)
                return "", calls, results

            if not response.tool_calls:
                return response.content, calls, results

            messages.append({"role": "assistant", "content": response.content or TOOL_PLACEHOLDER})
            round_results = await self._execute_round(response.tool_calls, context, run_id)
            calls.extend(response.tool_calls)
            results.extend(round_results)
            messages.append({"role": "user", "content": "\n\n".join(r.text for r in round_results)})

        logger.warning("iteration cap (%d) reached with tool calls pending", self.config.max_iterations)
        return "", calls, results

    async def _execute_round(
        self, tool_calls: list[ToolCall], context: ToolContext, run_id: str
    ) -> list[ToolResult]:
        if self.config.parallel_tool_calls:
            return list(
                await asyncio.gather(*(self._execute_call(c, context, run_id) for c in tool_calls))
            )
        return [await self._execute_call(c, context, run_id) for c in tool_calls]

    async def _execute_call(self, call: ToolCall, context: ToolContext, run_id: str) -> ToolResult:
        tool = self.registry.get(call.name)
        if tool is None:
            logger.warning("model requested unknown tool %r", call.name)
            return ToolResult(call_id=call.id, name=call.name, error=f'Tool "{call.name}" not found.')

        logger.debug("calling tool %s with %s", call.name, call.arguments)
        timeout = self.config.tool_timeout_seconds
        t0 = time.monotonic()
        try:
            # wait_for cancels the tool on timeout and waits for its cleanup.
            output = await asyncio.wait_for(tool.execute(call.arguments, context), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("tool %s timed out after %gs", call.name, timeout)
            self.telemetry.log(run_id, "tool_timeout", {"tool": call.name, "timeout_s": timeout})
            return ToolResult(
                call_id=call.id, name=call.name, error=f"Tool timed out after {timeout:g} seconds"
            )
        except Exception as e:
            logger.error("tool %s failed: %s", call.name, e)
            self.telemetry.log(
                run_id, "tool_failed", {"tool": call.name, "error": redact_text(str(e))}
            )
            return ToolResult(call_id=call.id, name=call.name, error=str(e) or e.__class__.__name__)

        self.telemetry.log(
            run_id,
            "tool_called",
            {"tool": call.name, "duration_s": round(time.monotonic() - t0, 3)},
        )
        return ToolResult(call_id=call.id, name=call.name, result=str(output))
