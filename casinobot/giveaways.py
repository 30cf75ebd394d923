"""Giveaway entries, winner draws and payout rounds."""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import sqlite3
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Set, Tuple

import discord

from .db import CasinoStore, StoreUnavailableError
from .ledger import Ledger, TxMeta
from .models import Giveaway, OpResult, Payout, Reason
from .settings import DAY_MS

logger = logging.getLogger("casinobot.giveaways")

MIN_DURATION_MS = 5_000
MAX_DURATION_MS = 24 * DAY_MS
MAX_REWARD = 2_000_000_000
MAX_WINNERS = 50
MAX_FORCED_WINNERS = 50
ENTRY_MODES = ("button", "reaction")
DEFAULT_ENTRY_EMOJI = "💎"
DUE_BATCH = 25

Announcer = Callable[[Giveaway, OpResult], Awaitable[None]]


def clamp_winners(requested: object, fallback: int = 1) -> int:
    try:
        value = int(requested)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        value = int(fallback or 1)
    return max(1, min(MAX_WINNERS, value))


def normalize_forced_winner_ids(raw: Iterable[object]) -> List[int]:
    result: List[int] = []
    seen: Set[int] = set()
    for value in raw or ():
        try:
            parsed = int(str(value).strip().strip("<@!>"))
        except ValueError:
            continue
        if parsed <= 0 or parsed in seen:
            continue
        seen.add(parsed)
        result.append(parsed)
        if len(result) >= MAX_FORCED_WINNERS:
            break
    return result


def split_payouts(total: int, winner_ids: Sequence[int]) -> List[Payout]:
    """Split ``total`` evenly; the first ``total % n`` winners get one extra unit."""
    if not winner_ids or total <= 0:
        return []
    base, remainder = divmod(int(total), len(winner_ids))
    return [Payout(user_id, base + (1 if index < remainder else 0)) for index, user_id in enumerate(winner_ids)]


def reservoir_sample(
    candidates: Iterable[int],
    k: int,
    exclude: Optional[Set[int]] = None,
    randbelow: Callable[[int], int] = secrets.randbelow,
) -> List[int]:
    """Uniformly pick up to ``k`` ids from a stream without loading it all."""
    if k <= 0:
        return []
    exclude = exclude or set()
    reservoir: List[int] = []
    seen = 0
    for user_id in candidates:
        if user_id in exclude:
            continue
        seen += 1
        if len(reservoir) < k:
            reservoir.append(user_id)
            continue
        j = randbelow(seen)
        if j < k:
            reservoir[j] = user_id
    return reservoir


@dataclass(frozen=True)
class EntryEligibility:
    ok: bool
    message: Optional[str] = None


def check_entry_eligibility(
    member: discord.Member,
    giveaway: Giveaway,
    now: Optional[float] = None,
) -> EntryEligibility:
    """Apply the giveaway's entry restrictions to a guild member."""
    if member.bot:
        return EntryEligibility(False, "Bots cannot enter giveaways.")
    role_ids = {role.id for role in getattr(member, "roles", [])}
    if giveaway.required_role_id and giveaway.required_role_id not in role_ids:
        return EntryEligibility(False, f"You need the <@&{giveaway.required_role_id}> role to enter.")
    if giveaway.excluded_role_id and giveaway.excluded_role_id in role_ids:
        return EntryEligibility(False, f"Members with <@&{giveaway.excluded_role_id}> cannot enter.")
    now_ms = int((now if now is not None else time.time()) * 1000)
    if giveaway.min_account_age_ms > 0:
        created = getattr(member, "created_at", None)
        if created is None or now_ms - int(created.timestamp() * 1000) < giveaway.min_account_age_ms:
            return EntryEligibility(False, "Your account is too recent for this giveaway.")
    if giveaway.min_join_age_ms > 0:
        joined = getattr(member, "joined_at", None)
        if joined is None or now_ms - int(joined.timestamp() * 1000) < giveaway.min_join_age_ms:
            return EntryEligibility(False, "You joined the server too recently for this giveaway.")
    return EntryEligibility(True)


class EndLocks:
    """In-process set of giveaways currently being ended."""

    def __init__(self) -> None:
        self._held: Set[str] = set()

    def try_acquire(self, key: str) -> bool:
        if key in self._held:
            return False
        self._held.add(key)
        return True

    def release(self, key: str) -> None:
        self._held.discard(key)

    def __contains__(self, key: object) -> bool:
        return key in self._held


@dataclass(frozen=True)
class DrawRound:
    round: int
    winners: Tuple[int, ...]
    payouts: Tuple[Payout, ...]
    entrants_count: int


class GiveawayEngine:
    def __init__(
        self,
        store: CasinoStore,
        ledger: Ledger,
        *,
        randbelow: Callable[[int], int] = secrets.randbelow,
        locks: Optional[EndLocks] = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.randbelow = randbelow
        self.locks = locks or EndLocks()

    # Creation and lookup ------------------------------------------------

    def create(
        self,
        *,
        guild_id: int,
        channel_id: int,
        message_id: int,
        host_id: int,
        reward_total: int,
        winners_count: int = 1,
        duration_ms: int,
        entry_mode: str = "button",
        entry_emoji: Optional[str] = None,
        required_role_id: Optional[int] = None,
        excluded_role_id: Optional[int] = None,
        min_account_age_ms: int = 0,
        min_join_age_ms: int = 0,
        forced_winner_ids: Sequence[object] = (),
    ) -> OpResult:
        try:
            duration_ms = int(duration_ms)
            reward_total = int(reward_total)
        except (TypeError, ValueError):
            return OpResult.failure(Reason.INVALID_INPUT)
        if not MIN_DURATION_MS <= duration_ms <= MAX_DURATION_MS:
            return OpResult.failure(Reason.INVALID_INPUT, field="duration")
        winners = clamp_winners(winners_count)
        if not 1 <= reward_total <= MAX_REWARD or reward_total < winners:
            return OpResult.failure(Reason.INVALID_AMOUNT, field="reward")
        mode = (entry_mode or "button").strip().lower()
        if mode not in ENTRY_MODES:
            return OpResult.failure(Reason.INVALID_INPUT, field="entry_mode")
        forced = normalize_forced_winner_ids(forced_winner_ids)
        now = self.store.now()
        try:
            self.store.execute(
                """
                INSERT INTO giveaways (
                    message_id, guild_id, channel_id, host_id, reward_total, winners_count,
                    entry_mode, entry_emoji, required_role_id, excluded_role_id,
                    min_account_age_ms, min_join_age_ms, forced_winner_ids, entries_count,
                    status, created_at, end_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 'active', ?, ?)
                """,
                (
                    message_id,
                    guild_id,
                    channel_id,
                    host_id,
                    reward_total,
                    winners,
                    mode,
                    (entry_emoji or DEFAULT_ENTRY_EMOJI)[:64],
                    required_role_id,
                    excluded_role_id,
                    max(0, int(min_account_age_ms or 0)),
                    max(0, int(min_join_age_ms or 0)),
                    json.dumps([str(value) for value in forced]),
                    now,
                    now + duration_ms // 1000,
                ),
            )
        except sqlite3.IntegrityError:
            logger.warning("Giveaway %s already exists", message_id)
            return OpResult.failure(Reason.INVALID_INPUT, field="message_id")
        giveaway = self.get(message_id)
        logger.info(
            "Giveaway %s started in guild %s: %s coins for %s winner(s)", message_id, guild_id, reward_total, winners
        )
        return OpResult.success(giveaway=giveaway)

    def get(self, message_id: int) -> Optional[Giveaway]:
        row = self.store.fetchone("SELECT * FROM giveaways WHERE message_id = ?", (int(message_id),))
        return Giveaway.from_row(row) if row else None

    def list_active(self, guild_id: int) -> List[Giveaway]:
        rows = self.store.fetchall(
            "SELECT * FROM giveaways WHERE guild_id = ? AND status = 'active' ORDER BY end_at ASC",
            (guild_id,),
        )
        return [Giveaway.from_row(row) for row in rows]

    def list_due(self, now: Optional[int] = None, limit: int = DUE_BATCH) -> List[Giveaway]:
        now = self.store.now() if now is None else int(now)
        rows = self.store.fetchall(
            "SELECT * FROM giveaways WHERE status = 'active' AND end_at <= ? ORDER BY end_at ASC LIMIT ?",
            (now, max(1, int(limit))),
        )
        return [Giveaway.from_row(row) for row in rows]

    def list_round(self, message_id: int, round_number: int) -> List[int]:
        rows = self.store.fetchall(
            "SELECT user_id FROM giveaway_winners WHERE message_id = ? AND round = ? ORDER BY id",
            (message_id, round_number),
        )
        return [row["user_id"] for row in rows]

    def list_winner_ids(self, message_id: int) -> Set[int]:
        rows = self.store.fetchall("SELECT DISTINCT user_id FROM giveaway_winners WHERE message_id = ?", (message_id,))
        return {row["user_id"] for row in rows}

    def latest_round(self, message_id: int) -> Optional[int]:
        """Number of the last drawn round, counting rounds that found no winner."""
        row = self.store.fetchone("SELECT MAX(round) AS r FROM giveaway_rounds WHERE message_id = ?", (message_id,))
        return None if row is None or row["r"] is None else int(row["r"])

    def payouts_for_round(self, message_id: int, round_number: int) -> List[Payout]:
        rows = self.store.fetchall(
            "SELECT user_id, amount FROM giveaway_payouts WHERE message_id = ? AND round = ? ORDER BY id",
            (message_id, round_number),
        )
        return [Payout(row["user_id"], row["amount"]) for row in rows]

    def count_entries(self, message_id: int) -> int:
        row = self.store.fetchone("SELECT COUNT(*) AS n FROM giveaway_entries WHERE message_id = ?", (message_id,))
        return int(row["n"])

    def is_entered(self, message_id: int, user_id: int) -> bool:
        row = self.store.fetchone(
            "SELECT 1 FROM giveaway_entries WHERE message_id = ? AND user_id = ?", (message_id, user_id)
        )
        return row is not None

    # Entries ------------------------------------------------------------

    def _check_open(self, giveaway: Optional[Giveaway]) -> Optional[OpResult]:
        if giveaway is None:
            return OpResult.failure(Reason.NOT_FOUND)
        if giveaway.status != "active":
            return OpResult.failure(Reason.GIVEAWAY_NOT_ACTIVE, giveaway=giveaway)
        if giveaway.end_at <= self.store.now():
            return OpResult.failure(Reason.GIVEAWAY_EXPIRED, giveaway=giveaway)
        return None

    def _bump_entries(self, message_id: int, delta: int) -> None:
        self.store.execute(
            """
            UPDATE giveaways
            SET entries_count = CASE WHEN entries_count + ? < 0 THEN 0 ELSE entries_count + ? END
            WHERE message_id = ?
            """,
            (delta, delta, message_id),
        )

    def join(self, message_id: int, user_id: int, eligibility: Optional[EntryEligibility] = None) -> OpResult:
        with self.store.transaction():
            giveaway = self.get(message_id)
            refused = self._check_open(giveaway)
            if refused is not None:
                return refused
            if eligibility is not None and not eligibility.ok:
                return OpResult.failure(Reason.NOT_ELIGIBLE, message=eligibility.message)
            cur = self.store.execute(
                "INSERT OR IGNORE INTO giveaway_entries (message_id, user_id, joined_at) VALUES (?, ?, ?)",
                (message_id, user_id, self.store.now()),
            )
            joined = cur.rowcount > 0
            if joined:
                self._bump_entries(message_id, 1)
            giveaway = self.get(message_id)
        return OpResult.success(joined=joined, giveaway=giveaway)

    def leave(self, message_id: int, user_id: int) -> OpResult:
        with self.store.transaction():
            giveaway = self.get(message_id)
            refused = self._check_open(giveaway)
            if refused is not None:
                return refused
            cur = self.store.execute(
                "DELETE FROM giveaway_entries WHERE message_id = ? AND user_id = ?", (message_id, user_id)
            )
            left = cur.rowcount > 0
            if left:
                self._bump_entries(message_id, -1)
            giveaway = self.get(message_id)
        return OpResult.success(left=left, giveaway=giveaway)

    def toggle(self, message_id: int, user_id: int, eligibility: Optional[EntryEligibility] = None) -> OpResult:
        with self.store.transaction():
            if self.is_entered(message_id, user_id):
                return self.leave(message_id, user_id)
            return self.join(message_id, user_id, eligibility)

    # Drawing ------------------------------------------------------------

    def draw_winners(
        self,
        giveaway: Giveaway,
        requested: object = None,
        exclude_prior_winners: bool = False,
    ) -> List[int]:
        count = clamp_winners(requested, giveaway.winners_count)
        excluded: Set[int] = self.list_winner_ids(giveaway.message_id) if exclude_prior_winners else set()
        selected = [user_id for user_id in giveaway.forced_winner_ids if user_id not in excluded][:count]
        remaining = count - len(selected)
        if remaining > 0:
            reserved = excluded | set(selected)
            cursor = self.store.execute(
                "SELECT user_id FROM giveaway_entries WHERE message_id = ?", (giveaway.message_id,)
            )
            picked = reservoir_sample((row["user_id"] for row in cursor), remaining, reserved, self.randbelow)
            selected.extend(picked)
        return selected

    def persist_winner_round(self, giveaway: Giveaway, winner_ids: Sequence[int]) -> DrawRound:
        with self.store.transaction():
            last = self.latest_round(giveaway.message_id)
            round_number = 0 if last is None else last + 1
            now = self.store.now()
            self.store.execute(
                """
                INSERT INTO giveaway_rounds (message_id, round, winners_count, entrants_count, drawn_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (giveaway.message_id, round_number, len(winner_ids), self.count_entries(giveaway.message_id), now),
            )
            for user_id in winner_ids:
                self.store.execute(
                    "INSERT INTO giveaway_winners (message_id, user_id, round, picked_at) VALUES (?, ?, ?, ?)",
                    (giveaway.message_id, user_id, round_number, now),
                )
            trace_id = f"gwy_{giveaway.message_id}_{round_number}"
            paid: List[Payout] = []
            for payout in split_payouts(giveaway.reward_total, winner_ids):
                cur = self.store.execute(
                    """
                    INSERT OR IGNORE INTO giveaway_payouts (message_id, user_id, amount, round, paid_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (giveaway.message_id, payout.user_id, payout.amount, round_number, now),
                )
                if cur.rowcount <= 0:
                    continue
                self.ledger.adjust_balance(
                    giveaway.guild_id,
                    payout.user_id,
                    coins_delta=payout.amount,
                    meta=TxMeta(
                        source="giveaway:payout",
                        reason=f"Giveaway {giveaway.message_id} round {round_number}",
                        actor_id="system",
                        command_name="giveaway",
                        channel_id=giveaway.channel_id,
                        message_id=giveaway.message_id,
                        trace_id=trace_id,
                        metadata={
                            "giveawayMessageId": str(giveaway.message_id),
                            "round": round_number,
                            "payout": payout.amount,
                        },
                    ),
                )
                paid.append(payout)
        return DrawRound(
            round=round_number,
            winners=tuple(winner_ids),
            payouts=tuple(paid),
            entrants_count=self.count_entries(giveaway.message_id),
        )

    def _draw_and_persist(
        self, giveaway: Giveaway, requested: object, exclude_prior_winners: bool
    ) -> DrawRound:
        with self.store.transaction():
            winners = self.draw_winners(giveaway, requested, exclude_prior_winners)
            return self.persist_winner_round(giveaway, winners)

    async def _announce(self, announce: Optional[Announcer], giveaway: Giveaway, result: OpResult) -> None:
        if announce is None:
            return
        try:
            await announce(giveaway, result)
        except Exception:  # noqa: BLE001
            logger.warning("Giveaway %s announcement failed", giveaway.message_id, exc_info=True)

    # Lifecycle ----------------------------------------------------------

    async def end(
        self,
        message_id: int,
        *,
        ended_by: Optional[str] = None,
        force: bool = False,
        announce: Optional[Announcer] = None,
    ) -> OpResult:
        try:
            giveaway = self.get(message_id)
        except StoreUnavailableError:
            return OpResult.failure(Reason.DATABASE_UNAVAILABLE)
        if giveaway is None:
            return OpResult.failure(Reason.NOT_FOUND)

        lock_key = giveaway.lock_key
        if not self.locks.try_acquire(lock_key):
            logger.info("Giveaway %s is already being ended", message_id)
            return OpResult.failure(Reason.LOCKED, giveaway=giveaway)
        # Held until the announcement is out so a forced end cannot overlap it.
        try:
            try:
                result = self._finish(giveaway, ended_by, force)
            except StoreUnavailableError:
                return OpResult.failure(Reason.DATABASE_UNAVAILABLE, giveaway=giveaway)
            if result.ok:
                await self._announce(announce, result.data["giveaway"], result)
            return result
        finally:
            self.locks.release(lock_key)

    def _finish(self, giveaway: Giveaway, ended_by: Optional[str], force: bool) -> OpResult:
        if giveaway.status != "active" and not force:
            return OpResult.failure(Reason.ALREADY_FINISHED, giveaway=giveaway)
        try:
            with self.store.transaction():
                draw = self._draw_and_persist(giveaway, giveaway.winners_count, False)
                self.store.execute(
                    """
                    UPDATE giveaways
                    SET status = 'ended', ended_at = ?, ended_by = ?, last_error = NULL
                    WHERE message_id = ?
                    """,
                    (self.store.now(), str(ended_by or "system")[:40], giveaway.message_id),
                )
        except sqlite3.Error as exc:
            logger.error("Giveaway %s draw failed: %s", giveaway.message_id, exc)
            self.store.execute(
                "UPDATE giveaways SET last_error = ? WHERE message_id = ?",
                (str(exc)[:500], giveaway.message_id),
            )
            return OpResult.failure(Reason.DRAW_FAILED, giveaway=giveaway)
        ended = self.get(giveaway.message_id)
        logger.info(
            "Giveaway %s ended by %s: round %s, %s winner(s) of %s entrant(s)",
            giveaway.message_id,
            ended.ended_by,
            draw.round,
            len(draw.winners),
            draw.entrants_count,
        )
        return OpResult.success(
            giveaway=ended,
            round=draw.round,
            winners=list(draw.winners),
            payouts=list(draw.payouts),
            entrants_count=draw.entrants_count,
        )

    async def reroll(
        self,
        message_id: int,
        *,
        requested: object = None,
        by_user: Optional[str] = None,
        announce: Optional[Announcer] = None,
    ) -> OpResult:
        try:
            giveaway = self.get(message_id)
        except StoreUnavailableError:
            return OpResult.failure(Reason.DATABASE_UNAVAILABLE)
        if giveaway is None:
            return OpResult.failure(Reason.NOT_FOUND)

        lock_key = giveaway.lock_key
        if not self.locks.try_acquire(lock_key):
            logger.info("Giveaway %s is busy, reroll refused", message_id)
            return OpResult.failure(Reason.LOCKED, giveaway=giveaway)
        try:
            return await self._reroll(giveaway, requested, by_user, announce)
        finally:
            self.locks.release(lock_key)

    async def _reroll(
        self,
        giveaway: Giveaway,
        requested: object,
        by_user: Optional[str],
        announce: Optional[Announcer],
    ) -> OpResult:
        try:
            if giveaway.status != "ended":
                return OpResult.failure(Reason.NOT_ENDED, giveaway=giveaway)
            try:
                with self.store.transaction():
                    draw = self._draw_and_persist(
                        giveaway, giveaway.winners_count if requested is None else requested, True
                    )
                    if by_user:
                        self.store.execute(
                            "UPDATE giveaways SET ended_by = ? WHERE message_id = ?",
                            (str(by_user)[:40], giveaway.message_id),
                        )
            except sqlite3.Error as exc:
                logger.error("Giveaway %s reroll failed: %s", giveaway.message_id, exc)
                return OpResult.failure(Reason.DRAW_FAILED, giveaway=giveaway)
            refreshed = self.get(giveaway.message_id)
        except StoreUnavailableError:
            return OpResult.failure(Reason.DATABASE_UNAVAILABLE)

        result = OpResult.success(
            giveaway=refreshed,
            round=draw.round,
            winners=list(draw.winners),
            payouts=list(draw.payouts),
            entrants_count=draw.entrants_count,
            reroll=True,
        )
        await self._announce(announce, refreshed, result)
        return result

    def cancel(self, message_id: int, cancelled_by: Optional[str] = None) -> OpResult:
        try:
            with self.store.transaction():
                giveaway = self.get(message_id)
                if giveaway is None:
                    return OpResult.failure(Reason.NOT_FOUND)
                if giveaway.status != "active":
                    return OpResult.failure(Reason.NOT_ACTIVE, giveaway=giveaway)
                self.store.execute(
                    "UPDATE giveaways SET status = 'cancelled', ended_at = ?, ended_by = ? WHERE message_id = ?",
                    (self.store.now(), str(cancelled_by or "system")[:40], giveaway.message_id),
                )
                cancelled = self.get(message_id)
        except StoreUnavailableError:
            return OpResult.failure(Reason.DATABASE_UNAVAILABLE)
        logger.info("Giveaway %s cancelled by %s", message_id, cancelled.ended_by)
        return OpResult.success(giveaway=cancelled)


class GiveawayScheduler:
    """Background loop that ends giveaways once their deadline passes."""

    def __init__(
        self,
        engine: GiveawayEngine,
        *,
        interval: float = 15.0,
        announce: Optional[Announcer] = None,
    ) -> None:
        self.engine = engine
        self.interval = max(0.01, float(interval))
        self.announce = announce
        self._task: Optional[asyncio.Task] = None
        self._busy = False
        self.last_tick_at: Optional[int] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="giveaway-scheduler")
        logger.info("Giveaway scheduler started (every %.0fs)", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(self.interval)

    async def tick(self) -> int:
        """End every due giveaway once. Returns how many ended."""
        if self._busy:
            return 0
        self._busy = True
        ended = 0
        try:
            self.last_tick_at = self.engine.store.now()
            try:
                due = self.engine.list_due()
            except (sqlite3.Error, StoreUnavailableError):
                logger.exception("Giveaway scheduler could not list due giveaways")
                return 0
            for giveaway in due:
                try:
                    result = await self.engine.end(
                        giveaway.message_id, ended_by="scheduler", announce=self.announce
                    )
                except Exception:  # noqa: BLE001
                    logger.exception("Giveaway scheduler failed on %s", giveaway.message_id)
                    continue
                if result.ok:
                    ended += 1
                elif result.reason != Reason.LOCKED:
                    logger.warning("Giveaway %s not ended: %s", giveaway.message_id, result.reason)
        finally:
            self._busy = False
        return ended


__all__ = [
    "DrawRound",
    "EndLocks",
    "EntryEligibility",
    "GiveawayEngine",
    "GiveawayScheduler",
    "check_entry_eligibility",
    "clamp_winners",
    "normalize_forced_winner_ids",
    "reservoir_sample",
    "split_payouts",
]
