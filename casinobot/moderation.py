"""Warns, sanction history and the bot-wide blacklist."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .db import CasinoStore

logger = logging.getLogger("casinobot.moderation")

REASON_LIMIT = 300
META_LIMIT = 1500


@dataclass(frozen=True)
class Warn:
    id: int
    guild_id: int
    user_id: int
    author_id: Optional[str]
    reason: str
    created_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Warn":
        return cls(row["id"], row["guild_id"], row["user_id"], row["author_id"], row["reason"] or "", row["created_at"])


@dataclass(frozen=True)
class Sanction:
    id: int
    guild_id: Optional[int]
    user_id: int
    type: str
    author_id: Optional[str]
    reason: str
    duration_ms: Optional[int]
    expires_at: Optional[int]
    meta: Optional[Dict[str, Any]]
    created_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Sanction":
        meta = None
        if row["meta"]:
            try:
                meta = json.loads(row["meta"])
            except json.JSONDecodeError:
                meta = {"raw": row["meta"]}
        return cls(
            id=row["id"],
            guild_id=row["guild_id"],
            user_id=row["user_id"],
            type=row["type"],
            author_id=row["author_id"],
            reason=row["reason"] or "",
            duration_ms=row["duration_ms"],
            expires_at=row["expires_at"],
            meta=meta,
            created_at=row["created_at"],
        )


@dataclass(frozen=True)
class BlacklistState:
    user_id: int
    type: str
    reason: str
    author_id: Optional[str]
    expires_at: Optional[int]
    remaining_ms: Optional[int]

    @property
    def temporary(self) -> bool:
        return self.expires_at is not None


class ModerationLedger:
    def __init__(self, store: CasinoStore) -> None:
        self.store = store

    # Sanctions ----------------------------------------------------------

    def add_sanction(
        self,
        user_id: int,
        sanction_type: str,
        *,
        guild_id: Optional[int] = None,
        author_id: object = "system",
        reason: str = "",
        duration_ms: Optional[int] = None,
        expires_at: Optional[int] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> int:
        cur = self.store.execute(
            """
            INSERT INTO sanctions (guild_id, user_id, type, author_id, reason, duration_ms, expires_at, meta, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                guild_id,
                user_id,
                str(sanction_type)[:40],
                str(author_id),
                str(reason or "")[:REASON_LIMIT],
                None if duration_ms is None else int(duration_ms),
                None if expires_at is None else int(expires_at),
                json.dumps(meta, default=str)[:META_LIMIT] if meta else None,
                self.store.now(),
            ),
        )
        return int(cur.lastrowid)

    def list_sanctions(self, user_id: int, guild_id: Optional[int] = None, limit: int = 100) -> List[Sanction]:
        limit = max(1, int(limit))
        if guild_id:
            rows = self.store.fetchall(
                "SELECT * FROM sanctions WHERE user_id = ? AND guild_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                (user_id, guild_id, limit),
            )
        else:
            rows = self.store.fetchall(
                "SELECT * FROM sanctions WHERE user_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                (user_id, limit),
            )
        return [Sanction.from_row(row) for row in rows]

    def clear_for_user(self, user_id: int, guild_id: Optional[int] = None) -> int:
        """Drop warns and sanctions of one user. Returns the number of deleted rows."""
        with self.store.transaction() as conn:
            if guild_id:
                warns = conn.execute("DELETE FROM warns WHERE guild_id = ? AND user_id = ?", (guild_id, user_id))
                sanctions = conn.execute(
                    "DELETE FROM sanctions WHERE guild_id = ? AND user_id = ?", (guild_id, user_id)
                )
            else:
                warns = conn.execute("DELETE FROM warns WHERE user_id = ?", (user_id,))
                sanctions = conn.execute("DELETE FROM sanctions WHERE user_id = ?", (user_id,))
            return warns.rowcount + sanctions.rowcount

    # Warns --------------------------------------------------------------

    def add_warn(self, guild_id: int, user_id: int, author_id: object, reason: str = "") -> int:
        with self.store.transaction():
            cur = self.store.execute(
                "INSERT INTO warns (guild_id, user_id, author_id, reason, created_at) VALUES (?, ?, ?, ?, ?)",
                (guild_id, user_id, str(author_id), str(reason or "")[:REASON_LIMIT], self.store.now()),
            )
            self.add_sanction(user_id, "warn", guild_id=guild_id, author_id=author_id, reason=reason)
        logger.info("Warn #%s added for %s/%s by %s", cur.lastrowid, guild_id, user_id, author_id)
        return int(cur.lastrowid)

    def list_warns(self, guild_id: int, user_id: int) -> List[Warn]:
        rows = self.store.fetchall(
            "SELECT * FROM warns WHERE guild_id = ? AND user_id = ? ORDER BY created_at DESC, id DESC",
            (guild_id, user_id),
        )
        return [Warn.from_row(row) for row in rows]

    def count_warns(self, guild_id: int, user_id: int) -> int:
        row = self.store.fetchone(
            "SELECT COUNT(*) AS n FROM warns WHERE guild_id = ? AND user_id = ?", (guild_id, user_id)
        )
        return int(row["n"])

    def delete_warn(self, guild_id: int, user_id: int, warn_id: int) -> bool:
        cur = self.store.execute(
            "DELETE FROM warns WHERE id = ? AND guild_id = ? AND user_id = ?", (int(warn_id), guild_id, user_id)
        )
        return cur.rowcount > 0

    def clear_warns(self, guild_id: int, user_id: int) -> int:
        return self.store.execute("DELETE FROM warns WHERE guild_id = ? AND user_id = ?", (guild_id, user_id)).rowcount

    # Blacklist ----------------------------------------------------------

    def cleanup_expired_blacklist(self) -> int:
        cur = self.store.execute(
            "DELETE FROM blacklist WHERE expires_at IS NOT NULL AND expires_at <= ?", (self.store.now(),)
        )
        return cur.rowcount

    def set_blacklist(
        self,
        user_id: int,
        *,
        reason: str = "",
        author_id: object = "system",
        duration_ms: Optional[int] = None,
    ) -> BlacklistState:
        temporary = bool(duration_ms and duration_ms > 0)
        expires_at = self.store.now() + int(duration_ms) // 1000 if temporary else None
        entry_type = "temporary" if temporary else "permanent"
        with self.store.transaction():
            self.store.execute(
                """
                INSERT INTO blacklist (user_id, type, reason, author_id, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id)
                DO UPDATE SET type = excluded.type, reason = excluded.reason, author_id = excluded.author_id,
                              created_at = excluded.created_at, expires_at = excluded.expires_at
                """,
                (user_id, entry_type, str(reason or "")[:REASON_LIMIT], str(author_id), self.store.now(), expires_at),
            )
            self.add_sanction(
                user_id,
                "tempbl" if temporary else "bl",
                author_id=author_id,
                reason=reason,
                duration_ms=duration_ms if temporary else None,
                expires_at=expires_at,
            )
        logger.info("User %s blacklisted (%s) by %s", user_id, entry_type, author_id)
        return self.is_blacklisted(user_id)

    def remove_blacklist(self, user_id: int, author_id: object = "system") -> bool:
        with self.store.transaction():
            removed = self.store.execute("DELETE FROM blacklist WHERE user_id = ?", (user_id,)).rowcount > 0
            if removed:
                self.add_sanction(user_id, "unbl", author_id=author_id, reason="Blacklist removed")
        return removed

    def is_blacklisted(self, user_id: int) -> Optional[BlacklistState]:
        self.cleanup_expired_blacklist()
        row = self.store.fetchone("SELECT * FROM blacklist WHERE user_id = ?", (user_id,))
        if row is None:
            return None
        expires_at = row["expires_at"]
        remaining = max(0, (expires_at - self.store.now()) * 1000) if expires_at is not None else None
        return BlacklistState(
            user_id=row["user_id"],
            type=row["type"],
            reason=row["reason"] or "",
            author_id=row["author_id"],
            expires_at=expires_at,
            remaining_ms=remaining,
        )

    def list_blacklist(self) -> List[sqlite3.Row]:
        self.cleanup_expired_blacklist()
        return self.store.fetchall("SELECT * FROM blacklist ORDER BY created_at DESC")


__all__ = ["BlacklistState", "ModerationLedger", "Sanction", "Warn"]
