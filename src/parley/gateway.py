"""Inbound message pipeline: rate limit, access gate, agent turn."""

from __future__ import annotations

import logging
import math

from .agent_loop import AgentLoop
from .gate import SecurityGate
from .ratelimit import RateLimiter
from .store import offload
from .types import InboundMessage

logger = logging.getLogger(__name__)

GENERIC_APOLOGY = "Sorry, something went wrong while handling your message. Please try again later."
NOT_ALLOWED = "Sorry, you are not authorized to use this assistant."


def rate_limited_reply(retry_after: float) -> str:
    return f"You're sending messages too quickly. Please wait {max(1, math.ceil(retry_after))} seconds and try again."


def pairing_reply(code: str) -> str:
    return (
        "You're not yet approved to chat with this assistant.\n"
        f"Your pairing code is: {code}\n"
        "Ask the owner to approve it. The code expires in 10 minutes."
    )


class Gateway:
    """Entry point for channel adapters: one inbound envelope in, response text out."""

    def __init__(self, rate_limiter: RateLimiter, gate: SecurityGate, agent: AgentLoop):
        self.rate_limiter = rate_limiter
        self.gate = gate
        self.agent = agent

    async def handle(self, inbound: InboundMessage) -> str:
        """Return the reply for ``inbound``. Always returns text.

        Store failures in the rate-limit or gate steps are treated like
        agent failures: logged, and answered with ``GENERIC_APOLOGY``.
        """
        try:
            return await self._handle(inbound)
        except Exception:
            logger.exception("unhandled error processing message %s from %s", inbound.id, inbound.identity)
            return GENERIC_APOLOGY

    async def _handle(self, inbound: InboundMessage) -> str:
        decision = self.rate_limiter.check(inbound.identity)
        if not decision.allowed:
            retry_after = decision.retry_after or 0.0
            await offload(self.gate.record_rate_limited, inbound.sender, inbound.channel, retry_after)
            return rate_limited_reply(retry_after)

        access = await offload(self.gate.check, inbound.sender, inbound.channel)
        if not access.allowed:
            if access.pairing_code:
                return pairing_reply(access.pairing_code)
            return NOT_ALLOWED

        return await self.agent.process(inbound)
