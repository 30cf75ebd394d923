"""SQLite persistence layer shared by every casino engine."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence, Tuple

from .models import Account, CasinoProfile

logger = logging.getLogger("casinobot.db")

MAX_BALANCE = 2**63 - 1

SCHEMA: Sequence[str] = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        guild_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        coins INTEGER NOT NULL DEFAULT 0,
        xp INTEGER NOT NULL DEFAULT 0,
        updated_at INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (guild_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS economy_transactions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        guild_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        actor_id TEXT,
        source TEXT NOT NULL DEFAULT 'system',
        reason TEXT,
        command_name TEXT,
        channel_id INTEGER,
        message_id INTEGER,
        coins_before INTEGER NOT NULL DEFAULT 0,
        coins_delta INTEGER NOT NULL DEFAULT 0,
        coins_after INTEGER NOT NULL DEFAULT 0,
        xp_before INTEGER NOT NULL DEFAULT 0,
        xp_delta INTEGER NOT NULL DEFAULT 0,
        xp_after INTEGER NOT NULL DEFAULT 0,
        trace_id TEXT,
        metadata TEXT,
        created_at INTEGER NOT NULL,
        reverted_at INTEGER,
        reverted_by TEXT,
        reverted_reason TEXT,
        reverted_tx_id INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_economy_tx_user ON economy_transactions(guild_id, user_id, id DESC)",
    "CREATE INDEX IF NOT EXISTS idx_economy_tx_trace ON economy_transactions(guild_id, trace_id)",
    """
    CREATE TABLE IF NOT EXISTS casino_profiles (
        guild_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        draw_credits INTEGER NOT NULL DEFAULT 0,
        draws_done INTEGER NOT NULL DEFAULT 0,
        voice_minutes INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (guild_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS draw_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        guild_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        category TEXT NOT NULL DEFAULT 'autre',
        weight REAL NOT NULL DEFAULT 1,
        reward_type TEXT NOT NULL DEFAULT 'coins',
        reward_value TEXT,
        role_id INTEGER,
        emoji TEXT,
        enabled INTEGER NOT NULL DEFAULT 1,
        sort_order INTEGER NOT NULL DEFAULT 100,
        created_by TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_draw_items_guild ON draw_items(guild_id, enabled, sort_order, id)",
    """
    CREATE TABLE IF NOT EXISTS shop_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        guild_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        category TEXT NOT NULL DEFAULT 'autre',
        price INTEGER NOT NULL DEFAULT 0,
        reward_type TEXT NOT NULL DEFAULT 'cosmetic',
        reward_value TEXT,
        role_id INTEGER,
        emoji TEXT,
        enabled INTEGER NOT NULL DEFAULT 1,
        sort_order INTEGER NOT NULL DEFAULT 100,
        created_by TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_shop_items_guild ON shop_items(guild_id, enabled, sort_order, id)",
    """
    CREATE TABLE IF NOT EXISTS inventory (
        guild_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        source_type TEXT NOT NULL,
        source_id INTEGER NOT NULL,
        quantity INTEGER NOT NULL DEFAULT 0,
        acquired_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (guild_id, user_id, source_type, source_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS equips (
        guild_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        slot TEXT NOT NULL,
        source_type TEXT NOT NULL,
        source_id INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (guild_id, user_id, slot)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cooldowns (
        guild_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        command_name TEXT NOT NULL,
        last_used INTEGER NOT NULL,
        PRIMARY KEY (guild_id, user_id, command_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        guild_id INTEGER NOT NULL,
        log_type TEXT NOT NULL,
        severity TEXT NOT NULL DEFAULT 'info',
        actor_id TEXT,
        target_user_id INTEGER,
        command_name TEXT,
        channel_id INTEGER,
        message_id INTEGER,
        description TEXT,
        data TEXT,
        created_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_events_lookup ON audit_events(guild_id, log_type, id DESC)",
    """
    CREATE TABLE IF NOT EXISTS giveaways (
        message_id INTEGER PRIMARY KEY,
        guild_id INTEGER NOT NULL,
        channel_id INTEGER NOT NULL,
        host_id INTEGER NOT NULL,
        reward_total INTEGER NOT NULL,
        winners_count INTEGER NOT NULL DEFAULT 1,
        entry_mode TEXT NOT NULL DEFAULT 'button',
        entry_emoji TEXT NOT NULL DEFAULT '💎',
        required_role_id INTEGER,
        excluded_role_id INTEGER,
        min_account_age_ms INTEGER NOT NULL DEFAULT 0,
        min_join_age_ms INTEGER NOT NULL DEFAULT 0,
        forced_winner_ids TEXT NOT NULL DEFAULT '[]',
        entries_count INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'active',
        created_at INTEGER NOT NULL,
        end_at INTEGER NOT NULL,
        ended_at INTEGER,
        ended_by TEXT,
        last_error TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_giveaways_status_end ON giveaways(status, end_at)",
    """
    CREATE TABLE IF NOT EXISTS giveaway_entries (
        message_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        joined_at INTEGER NOT NULL,
        PRIMARY KEY (message_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS giveaway_winners (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        message_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        round INTEGER NOT NULL DEFAULT 0,
        picked_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_giveaway_winners_round ON giveaway_winners(message_id, round)",
    """
    CREATE TABLE IF NOT EXISTS giveaway_rounds (
        message_id INTEGER NOT NULL,
        round INTEGER NOT NULL,
        winners_count INTEGER NOT NULL DEFAULT 0,
        entrants_count INTEGER NOT NULL DEFAULT 0,
        drawn_at INTEGER NOT NULL,
        PRIMARY KEY (message_id, round)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS giveaway_payouts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        message_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        amount INTEGER NOT NULL,
        round INTEGER NOT NULL DEFAULT 0,
        paid_at INTEGER NOT NULL,
        UNIQUE (message_id, round, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS warns (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        guild_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        author_id TEXT,
        reason TEXT,
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sanctions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        guild_id INTEGER,
        user_id INTEGER NOT NULL,
        type TEXT NOT NULL,
        author_id TEXT,
        reason TEXT,
        duration_ms INTEGER,
        expires_at INTEGER,
        meta TEXT,
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS blacklist (
        user_id INTEGER PRIMARY KEY,
        type TEXT NOT NULL,
        reason TEXT,
        author_id TEXT,
        created_at INTEGER NOT NULL,
        expires_at INTEGER
    )
    """,
)

RESET_TABLES: Sequence[str] = (
    "accounts",
    "economy_transactions",
    "casino_profiles",
    "draw_items",
    "shop_items",
    "inventory",
    "equips",
    "cooldowns",
    "audit_events",
    "giveaways",
    "giveaway_entries",
    "giveaway_winners",
    "giveaway_rounds",
    "giveaway_payouts",
    "warns",
    "sanctions",
    "blacklist",
)


class StoreUnavailableError(RuntimeError):
    """Raised when the store is used before ``open()`` or after ``close()``."""


class ProfileCache:
    """Bounded memo of (guild, user) pairs whose profile row is known to exist.

    Only lets ``ensure_profile`` skip its insert. Entries expire after
    ``ttl_ms``, the oldest are evicted past ``max_keys`` and stale ones are
    swept at most once per ``ttl_ms``. The table stays the source of truth.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        *,
        ttl_ms: int = 600_000,
        max_keys: int = 5000,
    ) -> None:
        self._clock = clock or time.time
        self.ttl_ms = max(1000, int(ttl_ms))
        self.max_keys = max(1, int(max_keys))
        self._seen: "OrderedDict[Tuple[int, int], int]" = OrderedDict()
        self._last_sweep = 0

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def __len__(self) -> int:
        return len(self._seen)

    def known(self, guild_id: int, user_id: int) -> bool:
        key = (int(guild_id), int(user_id))
        stamp = self._seen.get(key)
        if stamp is None:
            return False
        if self._now_ms() - stamp > self.ttl_ms:
            del self._seen[key]
            return False
        self._seen.move_to_end(key)
        return True

    def add(self, guild_id: int, user_id: int) -> None:
        now = self._now_ms()
        self._sweep(now)
        key = (int(guild_id), int(user_id))
        self._seen[key] = now
        self._seen.move_to_end(key)
        while len(self._seen) > self.max_keys:
            self._seen.popitem(last=False)

    def clear(self) -> None:
        self._seen.clear()

    def _sweep(self, now: int) -> None:
        if now - self._last_sweep < self.ttl_ms:
            return
        self._last_sweep = now
        stale = [key for key, stamp in self._seen.items() if now - stamp > self.ttl_ms]
        for key in stale:
            del self._seen[key]
        if stale:
            logger.debug("Profile cache dropped %s stale entries", len(stale))


class CasinoStore:
    """Owns the sqlite connection, the schema and the transaction boundary.

    All writes go through :meth:`transaction`, which opens ``BEGIN IMMEDIATE``
    on the outermost call and lets nested calls join it. A failure anywhere
    inside rolls the whole unit back.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        default_draw_credits: int = 3,
        clock: Optional[Callable[[], float]] = None,
        profile_cache: Optional[ProfileCache] = None,
    ) -> None:
        self.db_path = db_path
        self.default_draw_credits = max(0, int(default_draw_credits))
        self._clock = clock or time.time
        self.profiles = profile_cache if profile_cache is not None else ProfileCache(self._clock)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._depth = 0
        self._reset_hooks: list = []

    # Lifecycle ----------------------------------------------------------

    def open(self) -> "CasinoStore":
        if self._conn is not None:
            return self
        if str(self.db_path) != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = self._connect_db()
        self._create_tables()
        logger.info("Casino store ready at %s", self.db_path)
        return self

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None

    def _connect_db(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    def _create_tables(self) -> None:
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreUnavailableError("casino store is not open")
        return self._conn

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    # Clock --------------------------------------------------------------

    def now(self) -> int:
        return int(self._clock())

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    # Transactions -------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._require_conn()
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield conn
                finally:
                    self._depth -= 1
                return
            conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield conn
            except BaseException:
                self._depth = 0
                conn.execute("ROLLBACK")
                # Rolled-back inserts may already be cached.
                self.profiles.clear()
                raise
            self._depth = 0
            conn.execute("COMMIT")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def execute(self, sql: str, params: Sequence[object] = ()) -> sqlite3.Cursor:
        conn = self._require_conn()
        with self._lock:
            return conn.execute(sql, tuple(params))

    def fetchone(self, sql: str, params: Sequence[object] = ()) -> Optional[sqlite3.Row]:
        return self.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: Sequence[object] = ()) -> list:
        return self.execute(sql, params).fetchall()

    # Accounts -----------------------------------------------------------

    def ensure_account(self, guild_id: int, user_id: int) -> None:
        self.execute(
            "INSERT OR IGNORE INTO accounts (guild_id, user_id, coins, xp, updated_at) VALUES (?, ?, 0, 0, ?)",
            (guild_id, user_id, self.now()),
        )

    def get_account(self, guild_id: int, user_id: int) -> Account:
        with self.transaction() as conn:
            self.ensure_account(guild_id, user_id)
            row = conn.execute(
                "SELECT guild_id, user_id, coins, xp, updated_at FROM accounts WHERE guild_id = ? AND user_id = ?",
                (guild_id, user_id),
            ).fetchone()
        return Account.from_row(row)

    def write_balance(self, guild_id: int, user_id: int, *, coins: int, xp: int) -> None:
        coins = min(MAX_BALANCE, max(0, int(coins)))
        xp = min(MAX_BALANCE, max(0, int(xp)))
        self.execute(
            "UPDATE accounts SET coins = ?, xp = ?, updated_at = ? WHERE guild_id = ? AND user_id = ?",
            (coins, xp, self.now(), guild_id, user_id),
        )

    # Casino profiles ----------------------------------------------------

    def ensure_profile(self, guild_id: int, user_id: int) -> None:
        if self.profiles.known(guild_id, user_id):
            return
        now = self.now()
        self.execute(
            """
            INSERT OR IGNORE INTO casino_profiles
                (guild_id, user_id, draw_credits, draws_done, voice_minutes, created_at, updated_at)
            VALUES (?, ?, ?, 0, 0, ?, ?)
            """,
            (guild_id, user_id, self.default_draw_credits, now, now),
        )
        self.profiles.add(guild_id, user_id)

    def get_profile(self, guild_id: int, user_id: int) -> CasinoProfile:
        with self.transaction() as conn:
            self.ensure_profile(guild_id, user_id)
            row = conn.execute(
                """
                SELECT guild_id, user_id, draw_credits, draws_done, voice_minutes
                FROM casino_profiles
                WHERE guild_id = ? AND user_id = ?
                """,
                (guild_id, user_id),
            ).fetchone()
        return CasinoProfile(
            guild_id=row["guild_id"],
            user_id=row["user_id"],
            draw_credits=row["draw_credits"],
            draws_done=row["draws_done"],
            voice_minutes=row["voice_minutes"],
        )

    def add_draw_credits(self, guild_id: int, user_id: int, delta: int) -> CasinoProfile:
        with self.transaction() as conn:
            self.ensure_profile(guild_id, user_id)
            conn.execute(
                """
                UPDATE casino_profiles
                SET draw_credits = CASE WHEN draw_credits + ? < 0 THEN 0 ELSE draw_credits + ? END,
                    updated_at = ?
                WHERE guild_id = ? AND user_id = ?
                """,
                (int(delta), int(delta), self.now(), guild_id, user_id),
            )
            return self.get_profile(guild_id, user_id)

    def take_draw_credits(self, guild_id: int, user_id: int, amount: int) -> Optional[CasinoProfile]:
        """Consume ``amount`` credits or nothing. Returns None when short."""
        with self.transaction() as conn:
            profile = self.get_profile(guild_id, user_id)
            if profile.draw_credits < amount:
                return None
            conn.execute(
                """
                UPDATE casino_profiles
                SET draw_credits = draw_credits - ?,
                    draws_done = draws_done + ?,
                    updated_at = ?
                WHERE guild_id = ? AND user_id = ?
                """,
                (amount, amount, self.now(), guild_id, user_id),
            )
            return self.get_profile(guild_id, user_id)

    def add_voice_minutes(self, guild_id: int, user_id: int, delta: int) -> CasinoProfile:
        with self.transaction() as conn:
            self.ensure_profile(guild_id, user_id)
            conn.execute(
                """
                UPDATE casino_profiles
                SET voice_minutes = CASE WHEN voice_minutes + ? < 0 THEN 0 ELSE voice_minutes + ? END,
                    updated_at = ?
                WHERE guild_id = ? AND user_id = ?
                """,
                (int(delta), int(delta), self.now(), guild_id, user_id),
            )
            return self.get_profile(guild_id, user_id)

    # Cooldowns ----------------------------------------------------------

    def get_cooldown(self, guild_id: int, user_id: int, command_name: str) -> Optional[int]:
        row = self.fetchone(
            "SELECT last_used FROM cooldowns WHERE guild_id = ? AND user_id = ? AND command_name = ?",
            (guild_id, user_id, command_name),
        )
        return int(row["last_used"]) if row else None

    def set_cooldown(self, guild_id: int, user_id: int, command_name: str, last_used_ms: int) -> None:
        self.execute(
            """
            INSERT INTO cooldowns (guild_id, user_id, command_name, last_used)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(guild_id, user_id, command_name)
            DO UPDATE SET last_used = excluded.last_used
            """,
            (guild_id, user_id, command_name, int(last_used_ms)),
        )

    def clear_cooldown(self, guild_id: int, user_id: int, command_name: str) -> bool:
        cur = self.execute(
            "DELETE FROM cooldowns WHERE guild_id = ? AND user_id = ? AND command_name = ?",
            (guild_id, user_id, command_name),
        )
        return cur.rowcount > 0

    # Reset --------------------------------------------------------------

    def on_reset(self, hook: Callable[[], None]) -> None:
        """Register a callback that drops in-process caches after a reset."""
        self._reset_hooks.append(hook)

    def reset_all_data(self) -> None:
        with self.transaction() as conn:
            for table in RESET_TABLES:
                conn.execute(f"DELETE FROM {table}")
        self.profiles.clear()
        for hook in self._reset_hooks:
            hook()
        logger.warning("All casino data has been reset.")


def open_store(db_path: Path, **kwargs) -> CasinoStore:
    """Factory used by the bootstrap and the tests."""
    return CasinoStore(db_path, **kwargs).open()


__all__ = ["CasinoStore", "MAX_BALANCE", "ProfileCache", "StoreUnavailableError", "open_store"]
