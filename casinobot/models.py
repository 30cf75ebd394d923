"""Dataclasses and shared type definitions for the casino economy."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple


class Reason:
    """Failure reasons carried by :class:`OpResult`."""

    INSUFFICIENT_FUNDS = "insufficient_funds"
    NOT_ENOUGH_CREDITS = "not_enough_credits"
    INVALID_AMOUNT = "invalid_amount"
    NOT_FOUND = "not_found"
    ALREADY_REVERTED = "already_reverted"
    NO_EFFECT = "no_effect"
    GIVEAWAY_NOT_ACTIVE = "giveaway_not_active"
    GIVEAWAY_EXPIRED = "giveaway_expired"
    NOT_ELIGIBLE = "not_eligible"
    LOCKED = "locked"
    DRAW_FAILED = "draw_failed"
    DATABASE_UNAVAILABLE = "database_unavailable"
    ALREADY_FINISHED = "already_finished"
    NOT_ENDED = "not_ended"
    NOT_ACTIVE = "not_active"
    INVALID_INPUT = "invalid_input"
    INVALID_NAME = "invalid_name"
    NOT_OWNED = "not_owned"
    ITEM_DISABLED = "item_disabled"
    COOLDOWN = "cooldown"
    RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class OpResult:
    ok: bool
    reason: Optional[str] = None
    data: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, **data: Any) -> "OpResult":
        return cls(True, None, data)

    @classmethod
    def failure(cls, reason: str, **data: Any) -> "OpResult":
        return cls(False, reason, data)

    def __bool__(self) -> bool:
        return self.ok

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


@dataclass(frozen=True)
class Account:
    guild_id: int
    user_id: int
    coins: int
    xp: int
    updated_at: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Account":
        return cls(
            guild_id=row["guild_id"],
            user_id=row["user_id"],
            coins=int(row["coins"]),
            xp=int(row["xp"]),
            updated_at=int(row["updated_at"] or 0),
        )


def _load_metadata(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        # truncated payloads are kept as-is
        return {"raw": raw}
    if isinstance(payload, dict):
        return payload
    return {"value": payload}


@dataclass(frozen=True)
class EconomyTransaction:
    id: int
    guild_id: int
    user_id: int
    actor_id: Optional[str]
    source: str
    reason: Optional[str]
    command_name: Optional[str]
    channel_id: Optional[int]
    message_id: Optional[int]
    coins_before: int
    coins_delta: int
    coins_after: int
    xp_before: int
    xp_delta: int
    xp_after: int
    trace_id: Optional[str]
    metadata: Optional[Dict[str, Any]]
    created_at: int
    reverted_at: Optional[int] = None
    reverted_by: Optional[str] = None
    reverted_reason: Optional[str] = None
    reverted_tx_id: Optional[int] = None

    @property
    def is_reverted(self) -> bool:
        return self.reverted_at is not None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "EconomyTransaction":
        return cls(
            id=row["id"],
            guild_id=row["guild_id"],
            user_id=row["user_id"],
            actor_id=row["actor_id"],
            source=row["source"],
            reason=row["reason"],
            command_name=row["command_name"],
            channel_id=row["channel_id"],
            message_id=row["message_id"],
            coins_before=row["coins_before"],
            coins_delta=row["coins_delta"],
            coins_after=row["coins_after"],
            xp_before=row["xp_before"],
            xp_delta=row["xp_delta"],
            xp_after=row["xp_after"],
            trace_id=row["trace_id"],
            metadata=_load_metadata(row["metadata"]),
            created_at=row["created_at"],
            reverted_at=row["reverted_at"],
            reverted_by=row["reverted_by"],
            reverted_reason=row["reverted_reason"],
            reverted_tx_id=row["reverted_tx_id"],
        )


@dataclass(frozen=True)
class CatalogItem:
    """A draw or shop catalog row. ``weight`` is 0 for shop items, ``price`` 0 for draws."""

    id: int
    guild_id: int
    kind: str
    name: str
    category: str
    reward_type: str
    reward_value: Optional[str]
    role_id: Optional[int] = None
    emoji: Optional[str] = None
    enabled: bool = True
    sort_order: int = 100
    weight: float = 0.0
    price: int = 0
    created_by: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row, kind: str) -> "CatalogItem":
        keys = row.keys()
        return cls(
            id=row["id"],
            guild_id=row["guild_id"],
            kind=kind,
            name=row["name"],
            category=row["category"],
            reward_type=row["reward_type"],
            reward_value=row["reward_value"],
            role_id=row["role_id"],
            emoji=row["emoji"],
            enabled=bool(row["enabled"]),
            sort_order=row["sort_order"],
            weight=float(row["weight"]) if "weight" in keys else 0.0,
            price=int(row["price"]) if "price" in keys else 0,
            created_by=row["created_by"],
        )


@dataclass(frozen=True)
class CasinoProfile:
    guild_id: int
    user_id: int
    draw_credits: int
    draws_done: int
    voice_minutes: int


@dataclass(frozen=True)
class InventoryEntry:
    source_type: str
    source_id: int
    quantity: int
    item_name: Optional[str]
    item_category: str
    role_id: Optional[int]
    emoji: Optional[str]


@dataclass(frozen=True)
class Giveaway:
    message_id: int
    guild_id: int
    channel_id: int
    host_id: int
    reward_total: int
    winners_count: int
    entry_mode: str
    entry_emoji: str
    forced_winner_ids: Tuple[int, ...]
    entries_count: int
    status: str
    created_at: int
    end_at: int
    required_role_id: Optional[int] = None
    excluded_role_id: Optional[int] = None
    min_account_age_ms: int = 0
    min_join_age_ms: int = 0
    ended_at: Optional[int] = None
    ended_by: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def lock_key(self) -> str:
        return f"{self.guild_id}:{self.message_id}"

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Giveaway":
        try:
            forced = json.loads(row["forced_winner_ids"] or "[]")
        except json.JSONDecodeError:
            forced = []
        return cls(
            message_id=row["message_id"],
            guild_id=row["guild_id"],
            channel_id=row["channel_id"],
            host_id=row["host_id"],
            reward_total=row["reward_total"],
            winners_count=row["winners_count"],
            entry_mode=row["entry_mode"],
            entry_emoji=row["entry_emoji"],
            forced_winner_ids=tuple(int(value) for value in forced if str(value).isdigit()),
            entries_count=row["entries_count"],
            status=row["status"],
            created_at=row["created_at"],
            end_at=row["end_at"],
            required_role_id=row["required_role_id"],
            excluded_role_id=row["excluded_role_id"],
            min_account_age_ms=row["min_account_age_ms"],
            min_join_age_ms=row["min_join_age_ms"],
            ended_at=row["ended_at"],
            ended_by=row["ended_by"],
            last_error=row["last_error"],
        )


@dataclass(frozen=True)
class Payout:
    user_id: int
    amount: int


__all__ = [
    "Account",
    "CasinoProfile",
    "CatalogItem",
    "EconomyTransaction",
    "Giveaway",
    "InventoryEntry",
    "OpResult",
    "Payout",
    "Reason",
]
