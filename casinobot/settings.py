"""Environment-driven settings for the casino engines."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .utils import bool_from_env, clamp_int, int_from_env, path_from_env

DAY_MS = 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class CasinoSettings:
    db_path: Path = Path("casinobot.sqlite3")
    catalog_path: Optional[Path] = None
    prefix: str = "+"
    guild_id: int = 0
    default_draw_credits: int = 3
    daily_cooldown_ms: int = DAY_MS
    daily_coins_min: int = 7000
    daily_coins_max: int = 18000
    daily_xp_min: int = 50
    daily_xp_max: int = 120
    draw_base_coins_enabled: bool = True
    draw_base_coins_min: int = 100
    draw_base_coins_max: int = 940
    max_pulls: int = 10
    burst_window_ms: int = 5000
    burst_max_hits: int = 6
    burst_block_ms: int = 8000
    giveaway_tick_seconds: int = 15
    max_donation: int = 250000
    min_game_bet: int = 100
    coinflip_cooldown_ms: int = 20_000
    slots_cooldown_ms: int = 30_000

    @classmethod
    def from_env(cls) -> "CasinoSettings":
        db_path = path_from_env("CASINOBOT_DB_PATH") or Path("casinobot.sqlite3")
        if not db_path.is_absolute():
            db_path = Path.cwd() / db_path
        coins_min = max(0, int_from_env("CASINOBOT_DAILY_COINS_MIN", 7000))
        xp_min = max(0, int_from_env("CASINOBOT_DAILY_XP_MIN", 50))
        base_min = max(0, int_from_env("CASINOBOT_DRAW_BASE_COINS_MIN", 100))
        return cls(
            db_path=db_path,
            catalog_path=path_from_env("CASINOBOT_CATALOG_PATH"),
            prefix=os.getenv("CASINOBOT_PREFIX", "+") or "+",
            guild_id=int_from_env("CASINOBOT_GUILD_ID", 0),
            default_draw_credits=max(0, int_from_env("CASINOBOT_DEFAULT_DRAW_CREDITS", 3)),
            daily_cooldown_ms=max(0, int_from_env("CASINOBOT_DAILY_COOLDOWN_MS", DAY_MS)),
            daily_coins_min=coins_min,
            daily_coins_max=max(coins_min, int_from_env("CASINOBOT_DAILY_COINS_MAX", 18000)),
            daily_xp_min=xp_min,
            daily_xp_max=max(xp_min, int_from_env("CASINOBOT_DAILY_XP_MAX", 120)),
            draw_base_coins_enabled=bool_from_env("CASINOBOT_DRAW_BASE_COINS", True),
            draw_base_coins_min=base_min,
            draw_base_coins_max=max(base_min, int_from_env("CASINOBOT_DRAW_BASE_COINS_MAX", 940)),
            max_pulls=clamp_int(int_from_env("CASINOBOT_MAX_PULLS", 10), 10, 1, 100),
            burst_window_ms=clamp_int(int_from_env("CASINOBOT_BURST_WINDOW_MS", 5000), 5000, 500, 300_000),
            burst_max_hits=clamp_int(int_from_env("CASINOBOT_BURST_MAX_HITS", 6), 6, 1, 500),
            burst_block_ms=clamp_int(int_from_env("CASINOBOT_BURST_BLOCK_MS", 8000), 8000, 500, 600_000),
            giveaway_tick_seconds=max(1, int_from_env("CASINOBOT_GIVEAWAY_TICK_SECONDS", 15)),
            max_donation=max(1, int_from_env("CASINOBOT_MAX_DONATION", 250000)),
            min_game_bet=max(1, int_from_env("CASINOBOT_MIN_GAME_BET", 100)),
            coinflip_cooldown_ms=max(0, int_from_env("CASINOBOT_COINFLIP_COOLDOWN_MS", 20_000)),
            slots_cooldown_ms=max(0, int_from_env("CASINOBOT_SLOTS_COOLDOWN_MS", 30_000)),
        )


__all__ = ["CasinoSettings", "DAY_MS"]
