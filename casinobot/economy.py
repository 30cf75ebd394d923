"""Shop purchases, the daily reward and member donations."""

from __future__ import annotations

import logging
import random
from dataclasses import replace
from typing import Optional

from .catalog import CatalogRepository
from .db import CasinoStore
from .guards import CooldownGuard
from .ledger import Ledger, TxMeta
from .models import OpResult, Reason
from .rewards import RewardResolver, resolve_reward_outcome
from .settings import CasinoSettings
from .utils import make_trace_id

logger = logging.getLogger("casinobot.economy")

DAILY_KEY = "daily"
DONATION_TAX_PERCENT = 10


class EconomyService:
    def __init__(
        self,
        store: CasinoStore,
        ledger: Ledger,
        catalog: CatalogRepository,
        rewards: RewardResolver,
        cooldowns: CooldownGuard,
        settings: Optional[CasinoSettings] = None,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.catalog = catalog
        self.rewards = rewards
        self.cooldowns = cooldowns
        self.settings = settings or CasinoSettings()
        self.rng = rng or random.Random()

    def buy(self, guild_id: int, user_id: int, item_id: int, meta: Optional[TxMeta] = None) -> OpResult:
        """Debit the item's price and grant its reward. Refuses instead of clamping."""
        meta = meta or TxMeta()
        trace_id = meta.trace_id or make_trace_id()
        with self.store.transaction():
            item = self.catalog.get_shop_item(guild_id, item_id)
            if item is None:
                return OpResult.failure(Reason.NOT_FOUND)
            if not item.enabled:
                return OpResult.failure(Reason.ITEM_DISABLED, item=item)
            account = self.ledger.get_account(guild_id, user_id)
            if account.coins < item.price:
                logger.info("Purchase of #%s refused for %s/%s: %s < %s", item.id, guild_id, user_id, account.coins, item.price)
                return OpResult.failure(Reason.INSUFFICIENT_FUNDS, item=item, account=account)
            debit = self.ledger.adjust_balance(
                guild_id,
                user_id,
                coins_delta=-item.price,
                meta=replace(
                    meta,
                    source="setup:shop_buy",
                    reason=meta.reason or f"Shop purchase: {item.name}",
                    trace_id=trace_id,
                    metadata={"shopItemId": item.id, "shopItemName": item.name, "price": item.price},
                    force_log=True,
                ),
            )
            applied = self.rewards.apply_outcome(
                guild_id,
                user_id,
                item,
                resolve_reward_outcome(item),
                source_type="shop",
                meta=replace(meta, trace_id=trace_id),
            )
            account = self.ledger.get_account(guild_id, user_id)
        logger.info("User %s/%s bought #%s (%s) for %s", guild_id, user_id, item.id, item.name, item.price)
        return OpResult.success(item=item, reward=applied, account=account, debit_tx_id=debit.tx_id)

    def claim_daily(self, guild_id: int, user_id: int, meta: Optional[TxMeta] = None) -> OpResult:
        meta = meta or TxMeta()
        settings = self.settings
        with self.store.transaction():
            remaining = self.cooldowns.check_and_consume(guild_id, user_id, DAILY_KEY, settings.daily_cooldown_ms)
            if remaining > 0:
                return OpResult.failure(Reason.COOLDOWN, remaining_ms=remaining)
            coins = self.rng.randint(settings.daily_coins_min, settings.daily_coins_max)
            xp = self.rng.randint(settings.daily_xp_min, settings.daily_xp_max)
            change = self.ledger.adjust_balance(
                guild_id,
                user_id,
                coins_delta=coins,
                xp_delta=xp,
                meta=replace(meta, command_name=meta.command_name or DAILY_KEY, reason=meta.reason or "Daily reward"),
            )
        return OpResult.success(coins=change.coins_delta, xp=change.xp_delta, account=change.account, tx_id=change.tx_id)

    def give(
        self,
        guild_id: int,
        from_user: int,
        to_user: int,
        amount: int,
        meta: Optional[TxMeta] = None,
    ) -> OpResult:
        """Donate coins to another member. A tax is withheld from the received amount."""
        meta = meta or TxMeta()
        try:
            amount = int(amount)
        except (TypeError, ValueError):
            return OpResult.failure(Reason.INVALID_AMOUNT)
        if amount <= 0 or amount > self.settings.max_donation or from_user == to_user:
            return OpResult.failure(Reason.INVALID_AMOUNT, max=self.settings.max_donation)
        tax = amount * DONATION_TAX_PERCENT // 100
        received = amount - tax
        trace_id = meta.trace_id or make_trace_id()
        meta = replace(meta, command_name=meta.command_name or "give", trace_id=trace_id)
        with self.store.transaction():
            donor = self.ledger.get_account(guild_id, from_user)
            if donor.coins < amount:
                return OpResult.failure(Reason.INSUFFICIENT_FUNDS, account=donor)
            moved = self.ledger.transfer(guild_id, from_user, to_user, received, meta)
            if not moved:
                return moved
            if tax:
                self.ledger.adjust_balance(
                    guild_id,
                    from_user,
                    coins_delta=-tax,
                    meta=replace(
                        meta,
                        source="cmd:give:tax",
                        reason=f"Donation tax ({DONATION_TAX_PERCENT}%)",
                        metadata={"transferTo": str(to_user), "amount": amount},
                    ),
                )
            sender = self.ledger.get_account(guild_id, from_user)
        return OpResult.success(
            amount=amount,
            tax=tax,
            received=received,
            sender=sender,
            receiver=moved.data["receiver"],
            trace_id=trace_id,
        )


__all__ = ["DAILY_KEY", "DONATION_TAX_PERCENT", "EconomyService"]
