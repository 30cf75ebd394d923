"""casinobot package providing the economy ledger, rewards, giveaways and commands."""

from . import audit, catalog, commands, db, economy, games, giveaways, guards, ledger, models, moderation, rewards, settings, utils  # noqa: F401

__all__ = [
    "audit",
    "catalog",
    "commands",
    "db",
    "economy",
    "games",
    "giveaways",
    "guards",
    "ledger",
    "models",
    "moderation",
    "rewards",
    "settings",
    "utils",
]
