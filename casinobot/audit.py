"""Best-effort audit events stored beside the ledger."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from .db import CasinoStore, StoreUnavailableError
from .utils import clamp_int

logger = logging.getLogger("casinobot.audit")

DATA_LIMIT = 4000
DESCRIPTION_LIMIT = 1200
_LOG_TYPE_RE = re.compile(r"[^a-z0-9:_-]+")


@dataclass(frozen=True)
class AuditEvent:
    id: int
    guild_id: int
    log_type: str
    severity: str
    actor_id: Optional[str]
    target_user_id: Optional[int]
    command_name: Optional[str]
    channel_id: Optional[int]
    message_id: Optional[int]
    description: Optional[str]
    data: Optional[Dict[str, Any]]
    created_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AuditEvent":
        data: Optional[Dict[str, Any]] = None
        if row["data"]:
            try:
                data = json.loads(row["data"])
            except json.JSONDecodeError:
                data = {"raw": row["data"]}
        return cls(
            id=row["id"],
            guild_id=row["guild_id"],
            log_type=row["log_type"],
            severity=row["severity"],
            actor_id=row["actor_id"],
            target_user_id=row["target_user_id"],
            command_name=row["command_name"],
            channel_id=row["channel_id"],
            message_id=row["message_id"],
            description=row["description"],
            data=data,
            created_at=row["created_at"],
        )


def normalize_log_type(value: str) -> str:
    cleaned = _LOG_TYPE_RE.sub("_", (value or "").strip().lower())[:40]
    return cleaned or "event"


class AuditLog:
    def __init__(self, store: CasinoStore) -> None:
        self.store = store

    def record(
        self,
        guild_id: int,
        log_type: str,
        *,
        severity: str = "info",
        actor_id: Optional[object] = None,
        target_user_id: Optional[int] = None,
        command_name: Optional[str] = None,
        channel_id: Optional[int] = None,
        message_id: Optional[int] = None,
        description: Optional[str] = None,
        data: Optional[Mapping[str, Any]] = None,
    ) -> Optional[int]:
        """Insert one event. Failures are logged and reported as ``None``."""
        try:
            payload = json.dumps(dict(data), default=str, ensure_ascii=False)[:DATA_LIMIT] if data else None
            cur = self.store.execute(
                """
                INSERT INTO audit_events (
                    guild_id, log_type, severity, actor_id, target_user_id, command_name,
                    channel_id, message_id, description, data, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    guild_id,
                    normalize_log_type(log_type),
                    (severity or "info").strip().lower()[:16] or "info",
                    str(actor_id)[:30] if actor_id is not None else None,
                    target_user_id,
                    command_name[:60] if command_name else None,
                    channel_id,
                    message_id,
                    description[:DESCRIPTION_LIMIT] if description else None,
                    payload,
                    self.store.now(),
                ),
            )
        except (sqlite3.Error, StoreUnavailableError):
            logger.warning("Failed to record audit event %s for guild %s", log_type, guild_id, exc_info=True)
            return None
        return int(cur.lastrowid)

    def get(self, guild_id: int, event_id: int) -> Optional[AuditEvent]:
        row = self.store.fetchone(
            "SELECT * FROM audit_events WHERE guild_id = ? AND id = ?",
            (guild_id, int(event_id)),
        )
        return AuditEvent.from_row(row) if row else None

    def list(
        self,
        guild_id: int,
        *,
        log_type: Optional[str] = None,
        actor_id: Optional[object] = None,
        target_user_id: Optional[int] = None,
        command_name: Optional[str] = None,
        contains: Optional[str] = None,
        since: Optional[int] = None,
        until: Optional[int] = None,
        limit: int = 50,
    ) -> List[AuditEvent]:
        where = ["guild_id = ?"]
        params: List[object] = [guild_id]
        if log_type:
            where.append("log_type = ?")
            params.append(normalize_log_type(log_type))
        if actor_id is not None:
            where.append("actor_id = ?")
            params.append(str(actor_id))
        if target_user_id:
            where.append("target_user_id = ?")
            params.append(target_user_id)
        if command_name:
            where.append("command_name = ?")
            params.append(command_name)
        if contains:
            where.append("(description LIKE ? OR data LIKE ?)")
            needle = f"%{contains}%"
            params.extend([needle, needle])
        if since is not None:
            where.append("created_at >= ?")
            params.append(since)
        if until is not None:
            where.append("created_at <= ?")
            params.append(until)
        params.append(clamp_int(limit, 50, 1, 200))
        rows = self.store.fetchall(
            f"SELECT * FROM audit_events WHERE {' AND '.join(where)} ORDER BY id DESC LIMIT ?",
            params,
        )
        return [AuditEvent.from_row(row) for row in rows]


__all__ = ["AuditEvent", "AuditLog", "normalize_log_type"]
