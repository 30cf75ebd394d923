"""Utility helpers for the casino bot."""

from __future__ import annotations

import logging
import os
import secrets
import string
import time
from pathlib import Path
from typing import Iterable, List, Optional

import discord

logger = logging.getLogger("casinobot.utils")

_BASE36 = string.digits + string.ascii_lowercase
_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%s. Falling back to %s.", name, raw, default)
        return default


def bool_from_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    logger.warning("Invalid boolean for %s=%s. Falling back to %s.", name, raw, default)
    return default


def path_from_env(name: str) -> Optional[Path]:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    return Path(value).expanduser()


def parse_id_list(raw: str, *, limit: Optional[int] = None) -> List[int]:
    """Parse mentions or raw ids separated by commas, spaces or pipes.

    Order is preserved and duplicates are dropped.
    """
    ids: List[int] = []
    seen = set()
    for chunk in raw.replace(",", " ").replace(";", " ").replace("|", " ").split():
        token = chunk.strip().strip("<@!&>")
        if not token:
            continue
        try:
            value = int(token)
        except ValueError:
            logger.warning("Ignoring invalid id %s", chunk)
            continue
        if value <= 0 or value in seen:
            continue
        seen.add(value)
        ids.append(value)
        if limit is not None and len(ids) >= limit:
            break
    return ids


def clamp_int(value: object, default: int, minimum: int, maximum: int) -> int:
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if parsed < minimum:
        return minimum
    if parsed > maximum:
        return maximum
    return parsed


def to_base36(value: int) -> str:
    if value <= 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def random_token(length: int = 8) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def make_trace_id(prefix: str = "tx") -> str:
    """Correlation id shared by every row written by one logical operation."""
    return f"{prefix}_{to_base36(now_ms())}_{random_token(8)}"


def is_admin(member: discord.abc.User) -> bool:
    if isinstance(member, discord.Member):
        if member.guild_permissions.administrator:
            return True
        roles: Iterable[discord.Role] = getattr(member, "roles", [])
        return any(role.name.lower() == "admin" for role in roles)
    return False


def now_ms() -> int:
    return int(time.time() * 1000)


_DURATION_UNITS = {"s": 1000, "m": 60_000, "h": 3_600_000, "d": 86_400_000}


def parse_duration_ms(raw: str) -> Optional[int]:
    """Parse ``90s``, ``10m``, ``2h30m`` or ``1d``. A bare number means minutes."""
    text = (raw or "").strip().lower()
    if not text:
        return None
    if text.isdigit():
        return int(text) * 60_000
    total = 0
    number = ""
    for char in text:
        if char.isdigit():
            number += char
            continue
        unit = _DURATION_UNITS.get(char)
        if unit is None or not number:
            return None
        total += int(number) * unit
        number = ""
    if number:
        return None
    return total or None


def format_duration_ms(value: int) -> str:
    seconds = max(0, int(value) // 1000)
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{hours}h{minutes:02d}m"
    if minutes:
        return f"{minutes}m{seconds:02d}s"
    return f"{seconds}s"


__all__ = [
    "bool_from_env",
    "clamp_int",
    "format_duration_ms",
    "int_from_env",
    "is_admin",
    "make_trace_id",
    "now_ms",
    "parse_duration_ms",
    "parse_id_list",
    "path_from_env",
    "random_token",
    "to_base36",
]
