"""SQLite persistence for sessions, messages, memory and access control.

Each operation opens its own short-lived connection, so a store file can be
shared by threads and by several processes. Single statements are atomic;
no operation relies on a transaction spanning multiple calls.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

from .types import (
    ConversationMessage,
    MemoryEntry,
    PairingCode,
    SecurityEvent,
    Session,
    ToolCall,
    ToolResult,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    sender TEXT NOT NULL,
    channel TEXT NOT NULL,
    group_id TEXT,
    created_at REAL NOT NULL,
    last_active_at REAL NOT NULL,
    model TEXT NOT NULL,
    system_prompt TEXT
);

CREATE TABLE IF NOT EXISTS messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    session_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    tool_calls TEXT,
    tool_results TEXT,
    timestamp REAL NOT NULL,
    sender TEXT NOT NULL,
    channel TEXT NOT NULL,
    group_id TEXT,
    FOREIGN KEY (session_id) REFERENCES sessions(id)
);

CREATE TABLE IF NOT EXISTS memory (
    sender TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    PRIMARY KEY (sender, key)
);

CREATE TABLE IF NOT EXISTS security_events (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    sender TEXT NOT NULL,
    channel TEXT NOT NULL,
    detail TEXT NOT NULL,
    timestamp REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS pairing_codes (
    code TEXT PRIMARY KEY,
    sender TEXT NOT NULL,
    channel TEXT NOT NULL,
    expires_at REAL NOT NULL,
    used INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS allowlist (
    sender TEXT NOT NULL,
    channel TEXT NOT NULL,
    added_at REAL NOT NULL,
    PRIMARY KEY (sender, channel)
);

CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, seq);
CREATE INDEX IF NOT EXISTS idx_sessions_sender ON sessions(sender, channel);
CREATE INDEX IF NOT EXISTS idx_security_sender ON security_events(sender);
"""

T = TypeVar("T")


async def offload(func: Callable[..., T], *args: Any) -> T:
    """Run a blocking store call on the default executor.

    Store methods may wait up to the busy timeout on a locked database file,
    so coroutines call them through here rather than directly.
    """
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, func, *args)


class Store:
    """SQLite-backed store."""

    def __init__(self, path: Path | str, busy_timeout_ms: int = 5000):
        self.path = Path(path)
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(
            self.path,
            timeout=self.busy_timeout_ms / 1000,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
            yield conn
        finally:
            conn.close()

    def init(self) -> None:
        """Create the database file and schema if needed."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(_SCHEMA)
        logger.info("store initialized at %s", self.path)

    # ── Sessions ────────────────────────────────────────────────────────────

    def upsert_session(self, session: Session) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sessions (id, sender, channel, group_id, created_at, last_active_at, model, system_prompt)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    last_active_at = excluded.last_active_at,
                    model = excluded.model,
                    system_prompt = excluded.system_prompt
                """,
                (
                    session.id,
                    session.sender,
                    session.channel,
                    session.group_id,
                    session.created_at,
                    session.last_active_at,
                    session.model,
                    session.system_prompt,
                ),
            )

    def get_session(self, session_id: str) -> Session | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return _row_to_session(row) if row else None

    def find_session(self, sender: str, channel: str, group_id: str | None = None) -> Session | None:
        """Find the session for a direct (sender, channel) or group (group, channel) pair."""
        with self._connect() as conn:
            if group_id is None:
                row = conn.execute(
                    """
                    SELECT * FROM sessions
                    WHERE sender = ? AND channel = ? AND group_id IS NULL
                    ORDER BY last_active_at DESC LIMIT 1
                    """,
                    (sender, channel),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    SELECT * FROM sessions
                    WHERE group_id = ? AND channel = ?
                    ORDER BY last_active_at DESC LIMIT 1
                    """,
                    (group_id, channel),
                ).fetchone()
        return _row_to_session(row) if row else None

    # ── Messages ────────────────────────────────────────────────────────────

    def save_message(self, msg: ConversationMessage) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO messages (id, session_id, role, content, tool_calls, tool_results,
                                      timestamp, sender, channel, group_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    msg.id,
                    msg.session_id,
                    msg.role,
                    msg.content,
                    json.dumps([tc.to_dict() for tc in msg.tool_calls]) if msg.tool_calls else None,
                    json.dumps([tr.to_dict() for tr in msg.tool_results]) if msg.tool_results else None,
                    msg.timestamp,
                    msg.sender,
                    msg.channel,
                    msg.group_id,
                ),
            )

    def recent_messages(self, session_id: str, limit: int = 50) -> list[ConversationMessage]:
        """The newest ``limit`` messages of a session, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM (
                    SELECT * FROM messages WHERE session_id = ? ORDER BY seq DESC LIMIT ?
                ) ORDER BY seq ASC
                """,
                (session_id, limit),
            ).fetchall()
        return [_row_to_message(r) for r in rows]

    # ── Memory ──────────────────────────────────────────────────────────────

    def set_memory(self, sender: str, key: str, value: str) -> None:
        now = time.time()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO memory (sender, key, value, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(sender, key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (sender, key, value, now, now),
            )

    def get_memory(self, sender: str, key: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM memory WHERE sender = ? AND key = ?", (sender, key)
            ).fetchone()
        return row["value"] if row else None

    def list_memory(self, sender: str) -> list[MemoryEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM memory WHERE sender = ? ORDER BY key", (sender,)
            ).fetchall()
        return [
            MemoryEntry(
                sender=r["sender"],
                key=r["key"],
                value=r["value"],
                created_at=r["created_at"],
                updated_at=r["updated_at"],
            )
            for r in rows
        ]

    def delete_memory(self, sender: str, key: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM memory WHERE sender = ? AND key = ?", (sender, key))
        return cur.rowcount > 0

    # ── Access control ──────────────────────────────────────────────────────

    def log_security_event(self, event: SecurityEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_events (id, kind, sender, channel, detail, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (event.id, event.kind, event.sender, event.channel, event.detail, event.timestamp),
            )

    def security_events(self, sender: str | None = None, limit: int = 100) -> list[SecurityEvent]:
        with self._connect() as conn:
            if sender is None:
                rows = conn.execute(
                    "SELECT * FROM security_events ORDER BY timestamp DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM security_events WHERE sender = ? ORDER BY timestamp DESC LIMIT ?",
                    (sender, limit),
                ).fetchall()
        return [
            SecurityEvent(
                id=r["id"],
                kind=r["kind"],
                sender=r["sender"],
                channel=r["channel"],
                detail=r["detail"],
                timestamp=r["timestamp"],
            )
            for r in rows
        ]

    def is_allowlisted(self, sender: str, channel: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM allowlist WHERE sender = ? AND channel = ?", (sender, channel)
            ).fetchone()
        return row is not None

    def add_to_allowlist(self, sender: str, channel: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO allowlist (sender, channel, added_at) VALUES (?, ?, ?)",
                (sender, channel, time.time()),
            )

    def save_pairing_code(self, code: PairingCode) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO pairing_codes (code, sender, channel, expires_at, used)
                VALUES (?, ?, ?, ?, 0)
                """,
                (code.code, code.sender, code.channel, code.expires_at),
            )

    def get_pairing_code(self, code: str, now: float | None = None) -> PairingCode | None:
        """Return the code only if it is unused and unexpired."""
        now = time.time() if now is None else now
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pairing_codes WHERE code = ? AND used = 0 AND expires_at > ?",
                (code, now),
            ).fetchone()
        if row is None:
            return None
        return PairingCode(
            code=row["code"],
            sender=row["sender"],
            channel=row["channel"],
            expires_at=row["expires_at"],
            used=False,
        )

    def consume_pairing_code(self, code: str, now: float | None = None) -> bool:
        """Mark a code used. True for exactly one caller per valid code."""
        now = time.time() if now is None else now
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE pairing_codes SET used = 1 WHERE code = ? AND used = 0 AND expires_at > ?",
                (code, now),
            )
        return cur.rowcount > 0

    # ── Maintenance ─────────────────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        with self._connect() as conn:
            counts = {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ("sessions", "messages", "memory", "security_events", "allowlist")
            }
        counts["size_bytes"] = self.path.stat().st_size if self.path.exists() else 0
        return counts

    def optimize(self) -> None:
        """VACUUM and ANALYZE the database file."""
        with self._connect() as conn:
            conn.execute("VACUUM")
            conn.execute("ANALYZE")

    def cleanup(
        self,
        message_retention_days: int = 90,
        security_event_retention_days: int = 30,
    ) -> dict[str, int]:
        """Delete old messages, old security events, and spent pairing codes.

        Sessions are kept.
        """
        now = time.time()
        with self._connect() as conn:
            messages = conn.execute(
                "DELETE FROM messages WHERE timestamp < ?",
                (now - message_retention_days * 86400,),
            ).rowcount
            events = conn.execute(
                "DELETE FROM security_events WHERE timestamp < ?",
                (now - security_event_retention_days * 86400,),
            ).rowcount
            codes = conn.execute(
                "DELETE FROM pairing_codes WHERE used = 1 OR expires_at < ?", (now,)
            ).rowcount
        logger.info(
            "cleanup removed %d messages, %d security events, %d pairing codes",
            messages,
            events,
            codes,
        )
        return {"messages": messages, "security_events": events, "pairing_codes": codes}


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        sender=row["sender"],
        channel=row["channel"],
        group_id=row["group_id"],
        created_at=row["created_at"],
        last_active_at=row["last_active_at"],
        model=row["model"],
        system_prompt=row["system_prompt"],
    )


def _row_to_message(row: sqlite3.Row) -> ConversationMessage:
    tool_calls = [ToolCall(**tc) for tc in json.loads(row["tool_calls"])] if row["tool_calls"] else []
    tool_results = [ToolResult(**tr) for tr in json.loads(row["tool_results"])] if row["tool_results"] else []
    return ConversationMessage(
        id=row["id"],
        session_id=row["session_id"],
        role=row["role"],
        content=row["content"],
        sender=row["sender"],
        channel=row["channel"],
        timestamp=row["timestamp"],
        group_id=row["group_id"],
        tool_calls=tool_calls,
        tool_results=tool_results,
    )
