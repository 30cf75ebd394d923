"""Coin flip and slot machine wagers settled through the ledger."""

from __future__ import annotations

import logging
import random
import secrets
from dataclasses import replace
from typing import Dict, Optional, Sequence, Tuple

from .db import CasinoStore
from .guards import CooldownGuard
from .ledger import Ledger, TxMeta
from .models import OpResult, Reason
from .settings import CasinoSettings
from .utils import make_trace_id

logger = logging.getLogger("casinobot.games")

COINFLIP_KEY = "coinflip"
SLOTS_KEY = "slots"

COIN_SIDES = ("pile", "face")
SIDE_ALIASES: Dict[str, str] = {
    "pile": "pile",
    "p": "pile",
    "heads": "pile",
    "head": "pile",
    "face": "face",
    "f": "face",
    "tails": "face",
    "tail": "face",
}
COINFLIP_MULTIPLIER = 2

SLOT_SYMBOLS = ("🍒", "🍋", "🔔", "💎", "🍀", "7️⃣")
TRIPLE_MULTIPLIERS: Dict[str, int] = {"7️⃣": 10, "💎": 8, "🍀": 7}
DEFAULT_TRIPLE_MULTIPLIER = 5
PAIR_MULTIPLIER = 2


def normalize_side(raw: object) -> Optional[str]:
    return SIDE_ALIASES.get(str(raw or "").strip().lower())


def slots_multiplier(reels: Sequence[str]) -> int:
    a, b, c = reels
    if a == b == c:
        return TRIPLE_MULTIPLIERS.get(a, DEFAULT_TRIPLE_MULTIPLIER)
    if a == b or a == c or b == c:
        return PAIR_MULTIPLIER
    return 0


class WagerEngine:
    """Debit a bet and credit its payout under one trace id, in one transaction."""

    def __init__(
        self,
        store: CasinoStore,
        ledger: Ledger,
        cooldowns: CooldownGuard,
        settings: Optional[CasinoSettings] = None,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.cooldowns = cooldowns
        self.settings = settings or CasinoSettings()
        self.rng = rng or secrets.SystemRandom()

    def spin_reels(self) -> Tuple[str, str, str]:
        return (self.rng.choice(SLOT_SYMBOLS), self.rng.choice(SLOT_SYMBOLS), self.rng.choice(SLOT_SYMBOLS))

    def coinflip(
        self, guild_id: int, user_id: int, bet: object, choice: object, meta: Optional[TxMeta] = None
    ) -> OpResult:
        side = normalize_side(choice)
        if side is None:
            return OpResult.failure(Reason.INVALID_INPUT, field="side", sides=COIN_SIDES)

        def play() -> Tuple[Dict[str, object], int]:
            landed = self.rng.choice(COIN_SIDES)
            return {"choice": side, "landed": landed}, COINFLIP_MULTIPLIER if landed == side else 0

        return self._wager(guild_id, user_id, bet, COINFLIP_KEY, self.settings.coinflip_cooldown_ms, play, meta)

    def slots(self, guild_id: int, user_id: int, bet: object, meta: Optional[TxMeta] = None) -> OpResult:
        def play() -> Tuple[Dict[str, object], int]:
            reels = self.spin_reels()
            return {"reels": reels}, slots_multiplier(reels)

        return self._wager(guild_id, user_id, bet, SLOTS_KEY, self.settings.slots_cooldown_ms, play, meta)

    def _wager(self, guild_id, user_id, bet, game, cooldown_ms, play, meta) -> OpResult:
        meta = meta or TxMeta()
        try:
            bet = int(bet)
        except (TypeError, ValueError):
            return OpResult.failure(Reason.INVALID_AMOUNT, min=self.settings.min_game_bet)
        if bet < self.settings.min_game_bet:
            return OpResult.failure(Reason.INVALID_AMOUNT, min=self.settings.min_game_bet)

        trace_id = meta.trace_id or make_trace_id("game")
        meta = replace(meta, command_name=meta.command_name or game, trace_id=trace_id, force_log=True)
        with self.store.transaction():
            remaining = self.cooldowns.remaining(guild_id, user_id, game, cooldown_ms)
            if remaining > 0:
                return OpResult.failure(Reason.COOLDOWN, remaining_ms=remaining)
            account = self.ledger.get_account(guild_id, user_id)
            if account.coins < bet:
                return OpResult.failure(Reason.INSUFFICIENT_FUNDS, account=account, bet=bet)
            self.cooldowns.check_and_consume(guild_id, user_id, game, cooldown_ms)

            outcome, multiplier = play()
            payout = bet * multiplier
            debit = self.ledger.adjust_balance(
                guild_id,
                user_id,
                coins_delta=-bet,
                meta=replace(
                    meta,
                    source=f"game:{game}",
                    reason=meta.reason or f"{game} bet",
                    metadata={"game": game, "bet": bet},
                ),
            )
            account = debit.account
            payout_tx_id = None
            if payout > 0:
                credit = self.ledger.adjust_balance(
                    guild_id,
                    user_id,
                    coins_delta=payout,
                    meta=replace(
                        meta,
                        source=f"game:{game}:payout",
                        reason=f"{game} payout x{multiplier}",
                        metadata={"game": game, "bet": bet, "multiplier": multiplier},
                    ),
                )
                account = credit.account
                payout_tx_id = credit.tx_id
        logger.info("%s %s/%s bet %s, x%s, payout %s", game, guild_id, user_id, bet, multiplier, payout)
        return OpResult.success(
            game=game,
            bet=bet,
            multiplier=multiplier,
            payout=payout,
            net=payout - bet,
            account=account,
            trace_id=trace_id,
            bet_tx_id=debit.tx_id,
            payout_tx_id=payout_tx_id,
            **outcome,
        )


__all__ = [
    "COIN_SIDES",
    "SLOT_SYMBOLS",
    "WagerEngine",
    "normalize_side",
    "slots_multiplier",
]
