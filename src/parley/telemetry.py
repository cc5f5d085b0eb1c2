"""Turn and swarm event log for Parley.

Events go to an append-only JSONL file, one object per line::

    {"timestamp": 1700000000.0, "run_id": "ab12cd34ef56", "type": "turn_started", "data": {...}}

Event payloads carry counts, durations and tool names. Free text that might
echo user content or credentials passes through ``redact_text`` first.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
TRUNCATION_MARK = "...(truncated)"

# (pattern, replacement) pairs applied in order.
_SECRET_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bsk-[A-Za-z0-9_-]{16,}\b"), "sk-REDACTED"),
    (re.compile(r"\bAKIA[0-9A-Z]{16}\b"), "AKIA_REDACTED"),
    (re.compile(r"\bghp_[A-Za-z0-9]{20,}\b"), "ghp_REDACTED"),
    # Telegram bot tokens: numeric bot id, colon, 35 character secret.
    (re.compile(r"\b\d{8,10}:[A-Za-z0-9_-]{35}\b"), "BOT_TOKEN_REDACTED"),
    (
        re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.S),
        "PRIVATE_KEY_REDACTED",
    ),
)


def redact_text(s: str, *, max_len: int = 400) -> str:
    """Mask credential-shaped substrings, then clip to ``max_len`` characters."""
    if not s:
        return ""
    for pattern, replacement in _SECRET_RULES:
        s = pattern.sub(replacement, s)
    s = s.strip()
    return s if len(s) <= max_len else s[:max_len] + TRUNCATION_MARK


@dataclass(frozen=True)
class TelemetrySink:
    """Appends events to ``path`` when ``enabled``.

    Write errors are logged at debug level and dropped; a full disk or a
    read-only directory never interrupts a turn.
    """

    enabled: bool
    path: Path

    def log(self, run_id: str, event_type: str, data: dict[str, Any]) -> None:
        if not self.enabled:
            return
        line = json.dumps(
            {"timestamp": time.time(), "run_id": run_id, "type": event_type, "data": data},
            ensure_ascii=False,
            default=str,
        )
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            logger.debug("dropping %s event for run %s: %s", event_type, run_id, e)


NULL_SINK = TelemetrySink(enabled=False, path=Path("/dev/null"))


def prune_telemetry_file(telemetry_path: Path, retention_days: int) -> None:
    """Remove the log once it has gone ``retention_days`` without a write.

    A non-positive retention keeps the file indefinitely.
    """
    if retention_days <= 0:
        return
    try:
        age = time.time() - telemetry_path.stat().st_mtime
    except FileNotFoundError:
        return
    except OSError as e:
        logger.debug("cannot stat %s: %s", telemetry_path, e)
        return
    if age > retention_days * SECONDS_PER_DAY:
        logger.info("removing telemetry log %s (idle %.0f days)", telemetry_path, age / SECONDS_PER_DAY)
        try:
            telemetry_path.unlink(missing_ok=True)
        except OSError as e:
            logger.debug("cannot remove %s: %s", telemetry_path, e)


def read_events(telemetry_path: Path) -> list[dict[str, Any]]:
    """Load every parseable event; blank and malformed lines are skipped."""
    if not telemetry_path.exists():
        return []
    events: list[dict[str, Any]] = []
    with open(telemetry_path, encoding="utf-8") as f:
        for raw in f:
            raw = raw.strip()
            if not raw:
                continue
            try:
                events.append(json.loads(raw))
            except json.JSONDecodeError:
                continue
    return events
