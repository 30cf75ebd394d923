"""Cooldown and burst throttling for economy commands."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from .db import CasinoStore, ProfileCache
from .utils import clamp_int

logger = logging.getLogger("casinobot.guards")


class CooldownGuard:
    """Persistent per-(guild, user, key) cooldowns backed by the ``cooldowns`` table."""

    def __init__(self, store: CasinoStore) -> None:
        self.store = store

    def remaining(self, guild_id: int, user_id: int, key: str, duration_ms: int) -> int:
        last_used = self.store.get_cooldown(guild_id, user_id, key)
        if last_used is None:
            return 0
        return max(0, last_used + int(duration_ms) - self.store.now_ms())

    def check_and_consume(self, guild_id: int, user_id: int, key: str, duration_ms: int) -> int:
        """Return the remaining wait in ms, or record now and return 0."""
        with self.store.transaction():
            left = self.remaining(guild_id, user_id, key, duration_ms)
            if left > 0:
                return left
            self.store.set_cooldown(guild_id, user_id, key, self.store.now_ms())
        return 0

    def reset(self, guild_id: int, user_id: int, key: str) -> bool:
        return self.store.clear_cooldown(guild_id, user_id, key)


@dataclass(frozen=True)
class BurstDecision:
    allowed: bool
    retry_after_ms: int = 0
    should_notify: bool = False


@dataclass
class _BurstEntry:
    hits: List[int] = field(default_factory=list)
    blocked_until: int = 0
    last_seen_at: int = 0
    last_notified_at: int = 0


class BurstGuard:
    """In-memory sliding-window limiter for command spam.

    Entries live only in this process; a restart forgets every block.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        *,
        notify_every_ms: int = 4000,
        gc_interval_ms: int = 60_000,
        max_keys: int = 10_000,
    ) -> None:
        self._clock = clock or time.time
        self.notify_every_ms = clamp_int(notify_every_ms, 4000, 500, 300_000)
        self.gc_interval_ms = clamp_int(gc_interval_ms, 60_000, 5000, 3_600_000)
        self.max_keys = max(1, int(max_keys))
        self._entries: "OrderedDict[Tuple[str, str], _BurstEntry]" = OrderedDict()
        self._last_gc = 0

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def __len__(self) -> int:
        return len(self._entries)

    def hit(
        self,
        bucket: str,
        key: object,
        *,
        window_ms: int = 5000,
        max_hits: int = 6,
        block_ms: int = 8000,
    ) -> BurstDecision:
        window_ms = clamp_int(window_ms, 5000, 500, 300_000)
        max_hits = clamp_int(max_hits, 6, 1, 500)
        block_ms = clamp_int(block_ms, 8000, 500, 600_000)
        now = self._now_ms()
        self._maybe_gc(now)

        entry_key = (str(bucket), str(key))
        entry = self._entries.get(entry_key)
        if entry is None:
            entry = _BurstEntry()
            self._entries[entry_key] = entry
            self._enforce_key_limit()
        else:
            self._entries.move_to_end(entry_key)
        entry.last_seen_at = now

        if entry.blocked_until > now:
            notify = now - entry.last_notified_at >= self.notify_every_ms
            if notify:
                entry.last_notified_at = now
            return BurstDecision(False, entry.blocked_until - now, notify)

        entry.hits = [stamp for stamp in entry.hits if now - stamp < window_ms]
        entry.hits.append(now)
        if len(entry.hits) > max_hits:
            entry.hits = []
            entry.blocked_until = now + block_ms
            entry.last_notified_at = now
            logger.info("Burst guard blocked %s/%s for %sms", bucket, key, block_ms)
            return BurstDecision(False, block_ms, True)
        return BurstDecision(True)

    def reset(self, bucket: Optional[str] = None) -> None:
        if bucket is None:
            self._entries.clear()
            return
        for entry_key in [k for k in self._entries if k[0] == bucket]:
            del self._entries[entry_key]

    def _enforce_key_limit(self) -> None:
        while len(self._entries) > self.max_keys:
            self._entries.popitem(last=False)

    def _maybe_gc(self, now: int) -> None:
        if now - self._last_gc < self.gc_interval_ms:
            return
        self._last_gc = now
        stale = [
            entry_key
            for entry_key, entry in self._entries.items()
            if entry.blocked_until <= now and now - entry.last_seen_at > self.gc_interval_ms * 2
        ]
        for entry_key in stale:
            del self._entries[entry_key]
        if stale:
            logger.debug("Burst guard dropped %s stale entries", len(stale))


class RuntimeState:
    """Process-wide caches shared by the engines instead of module globals."""

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self.burst = BurstGuard(clock)
        self.profiles = ProfileCache(clock)

    def clear(self) -> None:
        self.burst.reset()
        self.profiles.clear()


__all__ = ["BurstDecision", "BurstGuard", "CooldownGuard", "RuntimeState"]
