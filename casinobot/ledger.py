"""Auditable balance mutations: adjust, transfer, reverse."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from .db import MAX_BALANCE, CasinoStore
from .models import Account, EconomyTransaction, OpResult, Reason
from .utils import clamp_int, make_trace_id

logger = logging.getLogger("casinobot.ledger")

METADATA_LIMIT = 4000
LIST_LIMIT_DEFAULT = 50
LIST_LIMIT_MAX = 300


@dataclass(frozen=True)
class TxMeta:
    """Context attached to a balance mutation.

    ``metadata`` is an opaque JSON-compatible mapping whose keys depend on the
    source tag (``transferTo`` for transfers, ``giveawayMessageId`` for
    giveaway payouts, ``originalTxId`` for reversals, and so on).
    """

    source: Optional[str] = None
    reason: Optional[str] = None
    actor_id: Optional[str] = None
    command_name: Optional[str] = None
    channel_id: Optional[int] = None
    message_id: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None
    trace_id: Optional[str] = None
    force_log: bool = False

    def resolve_source(self, fallback: str) -> str:
        if self.source:
            return self.source
        if self.command_name:
            return f"cmd:{self.command_name}"
        return fallback


@dataclass(frozen=True)
class TransactionFilters:
    user_id: Optional[int] = None
    actor_id: Optional[str] = None
    source: Optional[str] = None
    trace_id: Optional[str] = None
    include_reverted: bool = True
    min_abs_coins: int = 0
    min_abs_xp: int = 0
    since: Optional[int] = None
    until: Optional[int] = None
    limit: int = LIST_LIMIT_DEFAULT


@dataclass(frozen=True)
class BalanceChange:
    account: Account
    coins_delta: int
    xp_delta: int
    tx_id: Optional[int] = None


@dataclass
class EconomyStats:
    tx_count: int = 0
    coins_in: int = 0
    coins_out: int = 0
    xp_in: int = 0
    xp_out: int = 0
    by_source: Dict[str, int] = field(default_factory=dict)


def _dump_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    if metadata is None:
        return None
    return json.dumps(metadata, default=str, ensure_ascii=False)[:METADATA_LIMIT]


class Ledger:
    """Balance mutations that always leave a matching transaction row.

    ``adjust_balance`` clamps debits at zero and never refuses; ``transfer``
    refuses when the sender cannot cover the amount. Callers that need a
    strict debit must check the balance first or use ``transfer``.
    """

    def __init__(self, store: CasinoStore) -> None:
        self.store = store

    # Accounts -----------------------------------------------------------

    def ensure_account(self, guild_id: int, user_id: int) -> None:
        self.store.ensure_account(guild_id, user_id)

    def get_account(self, guild_id: int, user_id: int) -> Account:
        return self.store.get_account(guild_id, user_id)

    # Mutations ----------------------------------------------------------

    def adjust_balance(
        self,
        guild_id: int,
        user_id: int,
        *,
        coins_delta: int = 0,
        xp_delta: int = 0,
        meta: Optional[TxMeta] = None,
    ) -> BalanceChange:
        meta = meta or TxMeta()
        asked_coins = int(coins_delta or 0)
        asked_xp = int(xp_delta or 0)
        with self.store.transaction():
            before = self.store.get_account(guild_id, user_id)
            new_coins = min(MAX_BALANCE, max(0, before.coins + asked_coins))
            new_xp = min(MAX_BALANCE, max(0, before.xp + asked_xp))
            self.store.write_balance(guild_id, user_id, coins=new_coins, xp=new_xp)
            after = self.store.get_account(guild_id, user_id)
            actual_coins = after.coins - before.coins
            actual_xp = after.xp - before.xp
            tx_id = None
            if meta.force_log or actual_coins or actual_xp:
                tx_id = self._insert_transaction(
                    guild_id,
                    user_id,
                    before=before,
                    after=after,
                    actor_id=meta.actor_id or str(user_id),
                    source=meta.resolve_source("system"),
                    reason=meta.reason,
                    meta=meta,
                    trace_id=meta.trace_id or make_trace_id(),
                    metadata=meta.metadata,
                )
        if actual_coins != asked_coins or actual_xp != asked_xp:
            logger.debug(
                "Clamped adjustment for %s/%s: asked coins=%s xp=%s, applied coins=%s xp=%s",
                guild_id,
                user_id,
                asked_coins,
                asked_xp,
                actual_coins,
                actual_xp,
            )
        return BalanceChange(account=after, coins_delta=actual_coins, xp_delta=actual_xp, tx_id=tx_id)

    def transfer(
        self,
        guild_id: int,
        from_user: int,
        to_user: int,
        amount: int,
        meta: Optional[TxMeta] = None,
    ) -> OpResult:
        meta = meta or TxMeta()
        try:
            safe_amount = int(amount)
        except (TypeError, ValueError):
            return OpResult.failure(Reason.INVALID_AMOUNT)
        if safe_amount <= 0 or from_user == to_user:
            return OpResult.failure(Reason.INVALID_AMOUNT)

        trace_id = meta.trace_id or make_trace_id()
        source = meta.resolve_source("transfer")
        actor = meta.actor_id or str(from_user)
        with self.store.transaction():
            sender_before = self.store.get_account(guild_id, from_user)
            receiver_before = self.store.get_account(guild_id, to_user)
            if sender_before.coins < safe_amount:
                logger.info(
                    "Transfer refused for %s/%s: %s < %s", guild_id, from_user, sender_before.coins, safe_amount
                )
                return OpResult.failure(Reason.INSUFFICIENT_FUNDS, account=sender_before)
            if receiver_before.coins + safe_amount > MAX_BALANCE:
                return OpResult.failure(Reason.INVALID_AMOUNT)

            self.store.write_balance(
                guild_id, from_user, coins=sender_before.coins - safe_amount, xp=sender_before.xp
            )
            self.store.write_balance(
                guild_id, to_user, coins=receiver_before.coins + safe_amount, xp=receiver_before.xp
            )
            sender_after = self.store.get_account(guild_id, from_user)
            receiver_after = self.store.get_account(guild_id, to_user)

            debit_id = self._insert_transaction(
                guild_id,
                from_user,
                before=sender_before,
                after=sender_after,
                actor_id=actor,
                source=source,
                reason=meta.reason or f"Transfer to {to_user}",
                meta=meta,
                trace_id=trace_id,
                metadata=meta.metadata if meta.metadata is not None else {"transferTo": str(to_user)},
            )
            credit_id = self._insert_transaction(
                guild_id,
                to_user,
                before=receiver_before,
                after=receiver_after,
                actor_id=actor,
                source=source,
                reason=meta.reason or f"Transfer from {from_user}",
                meta=meta,
                trace_id=trace_id,
                metadata=meta.metadata if meta.metadata is not None else {"transferFrom": str(from_user)},
            )
        return OpResult.success(
            sender=sender_after,
            receiver=receiver_after,
            trace_id=trace_id,
            tx_ids=(debit_id, credit_id),
        )

    def reverse_transaction(
        self,
        guild_id: int,
        tx_id: int,
        meta: Optional[TxMeta] = None,
    ) -> OpResult:
        meta = meta or TxMeta()
        reverted_by = meta.actor_id or "system"
        with self.store.transaction():
            original = self.get_transaction(guild_id, tx_id)
            if original is None:
                return OpResult.failure(Reason.NOT_FOUND)
            if original.is_reverted:
                return OpResult.failure(Reason.ALREADY_REVERTED, transaction=original)
            if original.coins_delta == 0 and original.xp_delta == 0:
                return OpResult.failure(Reason.NO_EFFECT, transaction=original)

            reason = meta.reason or f"Rollback of transaction #{original.id}"
            change = self.adjust_balance(
                guild_id,
                original.user_id,
                coins_delta=-original.coins_delta,
                xp_delta=-original.xp_delta,
                meta=replace(
                    meta,
                    source=meta.source or "rollbacktx",
                    reason=reason,
                    actor_id=reverted_by,
                    trace_id=meta.trace_id or make_trace_id("rb"),
                    metadata={"originalTxId": original.id, "reason": reason},
                    force_log=True,
                ),
            )
            self.store.execute(
                """
                UPDATE economy_transactions
                SET reverted_at = ?, reverted_by = ?, reverted_reason = ?, reverted_tx_id = ?
                WHERE guild_id = ? AND id = ? AND reverted_at IS NULL
                """,
                (self.store.now(), reverted_by, reason[:300], change.tx_id, guild_id, original.id),
            )
        logger.info(
            "Reverted transaction #%s for %s/%s via #%s", original.id, guild_id, original.user_id, change.tx_id
        )
        return OpResult.success(
            original=self.get_transaction(guild_id, original.id),
            reversal_tx_id=change.tx_id,
            account=change.account,
            coins_delta=change.coins_delta,
            xp_delta=change.xp_delta,
        )

    # Queries ------------------------------------------------------------

    def get_transaction(self, guild_id: int, tx_id: int) -> Optional[EconomyTransaction]:
        try:
            safe_id = int(tx_id)
        except (TypeError, ValueError):
            return None
        if safe_id <= 0:
            return None
        row = self.store.fetchone(
            "SELECT * FROM economy_transactions WHERE guild_id = ? AND id = ? LIMIT 1",
            (guild_id, safe_id),
        )
        return EconomyTransaction.from_row(row) if row else None

    def list_transactions(
        self, guild_id: int, filters: Optional[TransactionFilters] = None
    ) -> List[EconomyTransaction]:
        filters = filters or TransactionFilters()
        where = ["guild_id = ?"]
        params: List[object] = [guild_id]
        if filters.user_id:
            where.append("user_id = ?")
            params.append(filters.user_id)
        if filters.actor_id:
            where.append("actor_id = ?")
            params.append(str(filters.actor_id))
        if filters.source:
            where.append("source = ?")
            params.append(filters.source)
        if filters.trace_id:
            where.append("trace_id = ?")
            params.append(filters.trace_id)
        if not filters.include_reverted:
            where.append("reverted_at IS NULL")
        if filters.min_abs_coins > 0:
            where.append("ABS(coins_delta) >= ?")
            params.append(filters.min_abs_coins)
        if filters.min_abs_xp > 0:
            where.append("ABS(xp_delta) >= ?")
            params.append(filters.min_abs_xp)
        if filters.since is not None:
            where.append("created_at >= ?")
            params.append(filters.since)
        if filters.until is not None:
            where.append("created_at <= ?")
            params.append(filters.until)
        params.append(clamp_int(filters.limit, LIST_LIMIT_DEFAULT, 1, LIST_LIMIT_MAX))
        rows = self.store.fetchall(
            f"SELECT * FROM economy_transactions WHERE {' AND '.join(where)} ORDER BY id DESC LIMIT ?",
            params,
        )
        return [EconomyTransaction.from_row(row) for row in rows]

    def user_stats(self, guild_id: int, user_id: int) -> EconomyStats:
        row = self.store.fetchone(
            """
            SELECT
                COUNT(*) AS tx_count,
                COALESCE(SUM(CASE WHEN coins_delta > 0 THEN coins_delta ELSE 0 END), 0) AS coins_in,
                COALESCE(SUM(CASE WHEN coins_delta < 0 THEN -coins_delta ELSE 0 END), 0) AS coins_out,
                COALESCE(SUM(CASE WHEN xp_delta > 0 THEN xp_delta ELSE 0 END), 0) AS xp_in,
                COALESCE(SUM(CASE WHEN xp_delta < 0 THEN -xp_delta ELSE 0 END), 0) AS xp_out
            FROM economy_transactions
            WHERE guild_id = ? AND user_id = ?
            """,
            (guild_id, user_id),
        )
        stats = EconomyStats(
            tx_count=row["tx_count"],
            coins_in=row["coins_in"],
            coins_out=row["coins_out"],
            xp_in=row["xp_in"],
            xp_out=row["xp_out"],
        )
        for source_row in self.store.fetchall(
            """
            SELECT source, COUNT(*) AS n FROM economy_transactions
            WHERE guild_id = ? AND user_id = ?
            GROUP BY source ORDER BY n DESC
            """,
            (guild_id, user_id),
        ):
            stats.by_source[source_row["source"]] = source_row["n"]
        return stats

    def replay_balance(self, guild_id: int, user_id: int) -> Tuple[int, int]:
        """Sum every recorded delta in order, starting from an empty account."""
        coins = 0
        xp = 0
        cursor = self.store.execute(
            "SELECT coins_delta, xp_delta FROM economy_transactions WHERE guild_id = ? AND user_id = ? ORDER BY id",
            (guild_id, user_id),
        )
        for row in cursor:
            coins += row["coins_delta"]
            xp += row["xp_delta"]
        return coins, xp

    # Internals ----------------------------------------------------------

    def _insert_transaction(
        self,
        guild_id: int,
        user_id: int,
        *,
        before: Account,
        after: Account,
        actor_id: Optional[str],
        source: str,
        reason: Optional[str],
        meta: TxMeta,
        trace_id: str,
        metadata: Optional[Dict[str, Any]],
    ) -> int:
        cur = self.store.execute(
            """
            INSERT INTO economy_transactions (
                guild_id, user_id, actor_id, source, reason, command_name, channel_id, message_id,
                coins_before, coins_delta, coins_after, xp_before, xp_delta, xp_after,
                trace_id, metadata, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                guild_id,
                user_id,
                actor_id[:30] if actor_id else None,
                source[:60],
                reason[:300] if reason else None,
                meta.command_name[:60] if meta.command_name else None,
                meta.channel_id,
                meta.message_id,
                before.coins,
                after.coins - before.coins,
                after.coins,
                before.xp,
                after.xp - before.xp,
                after.xp,
                trace_id[:80],
                _dump_metadata(metadata),
                self.store.now(),
            ),
        )
        logger.debug(
            "tx #%s %s/%s source=%s coins %+d xp %+d trace=%s",
            cur.lastrowid,
            guild_id,
            user_id,
            source,
            after.coins - before.coins,
            after.xp - before.xp,
            trace_id,
        )
        return int(cur.lastrowid)


__all__ = ["BalanceChange", "EconomyStats", "Ledger", "TransactionFilters", "TxMeta"]
