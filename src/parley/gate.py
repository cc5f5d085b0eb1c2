"""Access-control gate: static allowlists, dynamic allowlist, and pairing codes.

An identity is admitted when it is on the channel's static allowlist (or the
channel has none), or when a pairing code issued to it was approved. Unknown
identities are challenged with a pairing code under the ``pairing`` policy
and refused outright under ``strict``.
"""

from __future__ import annotations

import logging
import math
import secrets
import time
import uuid
from collections.abc import Callable

from .config import SecurityConfig
from .store import Store
from .types import GateDecision, PairingApproval, PairingCode, SecurityEvent

logger = logging.getLogger(__name__)


class SecurityGate:
    """Allow/deny/pair decisions for inbound (sender, channel) pairs."""

    def __init__(
        self,
        config: SecurityConfig,
        store: Store,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store
        self._clock = clock

    def check(self, sender: str, channel: str) -> GateDecision:
        """Decide whether a message from ``sender`` on ``channel`` may proceed."""
        static = self.config.static_allowlist(channel)
        if static and sender not in static:
            if not self.store.is_allowlisted(sender, channel):
                if self.config.dm_policy == "pairing":
                    code = self.issue_pairing_code(sender, channel)
                    self._record("blocked", sender, channel, f"Pairing code issued: {code}")
                    return GateDecision(allowed=False, reason="pairing_required", pairing_code=code)
                self._record("blocked", sender, channel, "Not in allowlist")
                return GateDecision(allowed=False, reason="not_allowed")

        self._record("allowlist_hit", sender, channel, "Access granted")
        return GateDecision(allowed=True)

    def approve_pairing(self, code: str) -> PairingApproval:
        """Consume a pairing code and allowlist its identity.

        Fails for unknown, expired, or already used codes. Concurrent
        approvals of the same code have exactly one winner, enforced by the
        store's conditional update.
        """
        code = code.strip().upper()
        now = self._clock()
        entry = self.store.get_pairing_code(code, now=now)
        if entry is None:
            return PairingApproval(success=False)
        if not self.store.consume_pairing_code(code, now=now):
            return PairingApproval(success=False)

        self.store.add_to_allowlist(entry.sender, entry.channel)
        self._record("pairing_approved", entry.sender, entry.channel, f"Code: {code}")
        logger.info("pairing approved for %s:%s", entry.channel, entry.sender)
        return PairingApproval(success=True, sender=entry.sender, channel=entry.channel)

    def issue_pairing_code(self, sender: str, channel: str) -> str:
        length = self.config.pairing_code_length
        code = secrets.token_hex(math.ceil(length / 2))[:length].upper()
        self.store.save_pairing_code(
            PairingCode(
                code=code,
                sender=sender,
                channel=channel,
                expires_at=self._clock() + self.config.pairing_ttl_seconds,
            )
        )
        return code

    def record_rate_limited(self, sender: str, channel: str, retry_after: float) -> None:
        self._record("rate_limit", sender, channel, f"Retry after {retry_after:.1f}s")

    def _record(self, kind: str, sender: str, channel: str, detail: str) -> None:
        self.store.log_security_event(
            SecurityEvent(
                id=uuid.uuid4().hex,
                kind=kind,
                sender=sender,
                channel=channel,
                detail=detail,
                timestamp=self._clock(),
            )
        )
        if kind == "blocked":
            logger.warning("blocked %s:%s (%s)", channel, sender, detail)
