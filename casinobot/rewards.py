"""Weighted reward resolution for the draw system."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, TypeVar, Union

from .audit import AuditLog
from .catalog import CatalogRepository
from .db import CasinoStore
from .ledger import Ledger, TxMeta
from .models import CasinoProfile, CatalogItem, OpResult, Reason
from .settings import CasinoSettings
from .utils import make_trace_id

logger = logging.getLogger("casinobot.rewards")
_roll_logger = logging.getLogger("casinobot.rewards.rolls")

ANTICHEAT_COINS = 250_000
ANTICHEAT_XP = 5_000

T = TypeVar("T")


@dataclass(frozen=True)
class CoinsReward:
    amount: int


@dataclass(frozen=True)
class XpReward:
    amount: int


@dataclass(frozen=True)
class DrawsReward:
    amount: int


@dataclass(frozen=True)
class CosmeticReward:
    item_id: int
    role_id: Optional[int] = None
    category: str = "autre"


@dataclass(frozen=True)
class NoReward:
    pass


RewardOutcome = Union[CoinsReward, XpReward, DrawsReward, CosmeticReward, NoReward]


def _default_weight(item: object) -> float:
    return float(getattr(item, "weight", 0) or 0)


def pick_weighted(
    items: Sequence[T],
    rng: Optional[random.Random] = None,
    weight_of: Callable[[T], float] = _default_weight,
) -> Optional[T]:
    """Pick one item with probability proportional to its weight.

    Items whose weight is not strictly positive never enter the cumulative
    sum. Returns None only when no item is eligible.
    """
    rng = rng or random
    eligible = []
    for item in items:
        weight = weight_of(item)
        if weight > 0:
            eligible.append((item, weight))
    if not eligible:
        return None
    total = sum(weight for _, weight in eligible)
    value = rng.random() * total
    _roll_logger.debug("Random pick: %.6f (range: 0-%.6f)", value, total)
    for item, weight in eligible:
        value -= weight
        if value <= 0:
            _roll_logger.debug("Selected item: %s | Weight: %.6f", getattr(item, "name", item), weight)
            return item
    # floating point residue
    return eligible[-1][0]


def _parse_amount(raw: Optional[str]) -> int:
    try:
        return max(0, int(float(str(raw).strip())))
    except (TypeError, ValueError):
        return 0


def resolve_reward_outcome(item: CatalogItem) -> RewardOutcome:
    reward_type = (item.reward_type or "").strip().lower()
    if reward_type == "coins":
        return CoinsReward(_parse_amount(item.reward_value))
    if reward_type == "xp":
        return XpReward(_parse_amount(item.reward_value))
    if reward_type == "draws":
        return DrawsReward(_parse_amount(item.reward_value))
    if reward_type == "none":
        return NoReward()
    # cosmetic, role and unknown types all land in the inventory
    return CosmeticReward(item_id=item.id, role_id=item.role_id, category=item.category)


@dataclass(frozen=True)
class AppliedReward:
    item: CatalogItem
    outcome: RewardOutcome
    coins: int = 0
    xp: int = 0
    draws: int = 0
    inventory_quantity: Optional[int] = None

    @property
    def role_id(self) -> Optional[int]:
        if isinstance(self.outcome, CosmeticReward):
            return self.outcome.role_id
        return None


@dataclass
class PullReport:
    pulls: int
    trace_id: str
    rewards: List[AppliedReward] = field(default_factory=list)
    base_coins: int = 0
    total_coins: int = 0
    total_xp: int = 0
    total_draws: int = 0
    profile: Optional[CasinoProfile] = None

    @property
    def cosmetics(self) -> List[AppliedReward]:
        return [reward for reward in self.rewards if isinstance(reward.outcome, CosmeticReward)]


class RewardResolver:
    """Consumes draw credits, samples the catalog and applies the outcomes."""

    def __init__(
        self,
        store: CasinoStore,
        ledger: Ledger,
        catalog: CatalogRepository,
        settings: Optional[CasinoSettings] = None,
        *,
        rng: Optional[random.Random] = None,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.catalog = catalog
        self.settings = settings or CasinoSettings()
        self.rng = rng or random.Random()
        self.audit = audit

    def consume_draw_credits(self, guild_id: int, user_id: int, count: int = 1) -> OpResult:
        count = max(1, int(count))
        profile = self.store.take_draw_credits(guild_id, user_id, count)
        if profile is None:
            current = self.store.get_profile(guild_id, user_id)
            logger.info("Not enough credits for %s/%s: %s < %s", guild_id, user_id, current.draw_credits, count)
            return OpResult.failure(Reason.NOT_ENOUGH_CREDITS, profile=current, needed=count)
        return OpResult.success(profile=profile, consumed=count)

    def apply_outcome(
        self,
        guild_id: int,
        user_id: int,
        item: CatalogItem,
        outcome: RewardOutcome,
        *,
        source_type: str = "draw",
        meta: Optional[TxMeta] = None,
    ) -> AppliedReward:
        meta = meta or TxMeta()
        ledger_meta = TxMeta(
            source=f"{source_type}:draw_reward",
            reason=meta.reason or f"{item.name}",
            actor_id=meta.actor_id,
            command_name=meta.command_name,
            channel_id=meta.channel_id,
            message_id=meta.message_id,
            trace_id=meta.trace_id,
            metadata={"rewardType": item.reward_type, "itemId": item.id, "itemName": item.name},
        )
        if isinstance(outcome, CoinsReward):
            change = self.ledger.adjust_balance(guild_id, user_id, coins_delta=outcome.amount, meta=ledger_meta)
            return AppliedReward(item, outcome, coins=change.coins_delta)
        if isinstance(outcome, XpReward):
            change = self.ledger.adjust_balance(guild_id, user_id, xp_delta=outcome.amount, meta=ledger_meta)
            return AppliedReward(item, outcome, xp=change.xp_delta)
        if isinstance(outcome, DrawsReward):
            if outcome.amount:
                self.store.add_draw_credits(guild_id, user_id, outcome.amount)
            return AppliedReward(item, outcome, draws=outcome.amount)
        if isinstance(outcome, CosmeticReward):
            quantity = self.catalog.add_inventory_item(guild_id, user_id, source_type, item.id, 1)
            return AppliedReward(item, outcome, inventory_quantity=quantity)
        return AppliedReward(item, outcome)

    def _sample_item(self, items: Sequence[CatalogItem]) -> Optional[CatalogItem]:
        return pick_weighted(items, self.rng)

    def pull(self, guild_id: int, user_id: int, pulls: int = 1, meta: Optional[TxMeta] = None) -> OpResult:
        meta = meta or TxMeta()
        pulls = max(1, min(self.settings.max_pulls, int(pulls)))
        trace_id = meta.trace_id or make_trace_id("draw")
        meta = TxMeta(
            actor_id=meta.actor_id,
            command_name=meta.command_name or "draw",
            channel_id=meta.channel_id,
            message_id=meta.message_id,
            trace_id=trace_id,
        )
        with self.store.transaction():
            items = self.catalog.list_draw_items(guild_id, enabled_only=True)
            if not any(item.weight > 0 for item in items):
                logger.warning("Draw catalog of guild %s has no positive weight", guild_id)
                return OpResult.failure(Reason.DRAW_FAILED)

            consumed = self.consume_draw_credits(guild_id, user_id, pulls)
            if not consumed:
                return consumed

            report = PullReport(pulls=pulls, trace_id=trace_id)
            for pull_number in range(1, pulls + 1):
                item = self._sample_item(items)
                if item is None:
                    continue
                applied = self.apply_outcome(
                    guild_id, user_id, item, resolve_reward_outcome(item), source_type="draw", meta=meta
                )
                report.rewards.append(applied)
                report.total_coins += applied.coins
                report.total_xp += applied.xp
                report.total_draws += applied.draws
                if self.settings.draw_base_coins_enabled:
                    base = self.rng.randint(self.settings.draw_base_coins_min, self.settings.draw_base_coins_max)
                    change = self.ledger.adjust_balance(
                        guild_id,
                        user_id,
                        coins_delta=base,
                        meta=TxMeta(
                            source="setup:draw_base",
                            reason="Draw base coins",
                            actor_id=meta.actor_id,
                            command_name=meta.command_name,
                            channel_id=meta.channel_id,
                            message_id=meta.message_id,
                            trace_id=trace_id,
                            metadata={
                                "pullNumber": pull_number,
                                "pulls": pulls,
                                "drawItemId": item.id,
                                "drawItemName": item.name,
                                "baseCoins": base,
                            },
                        ),
                    )
                    report.base_coins += change.coins_delta
                    report.total_coins += change.coins_delta

            if not report.rewards:
                profile = self.store.add_draw_credits(guild_id, user_id, pulls)
                logger.warning("No outcome for %s pulls of %s/%s; credits refunded", pulls, guild_id, user_id)
                return OpResult.failure(Reason.DRAW_FAILED, refunded=pulls, profile=profile)

            report.profile = self.store.get_profile(guild_id, user_id)

        if self.audit is not None and (
            report.total_coins >= ANTICHEAT_COINS or report.total_xp >= ANTICHEAT_XP
        ):
            self.audit.record(
                guild_id,
                "anticheat:draw",
                severity="warn",
                actor_id=meta.actor_id,
                target_user_id=user_id,
                command_name=meta.command_name,
                channel_id=meta.channel_id,
                description=f"Unusual draw gain: {report.total_coins} coins, {report.total_xp} xp",
                data={"pulls": pulls, "totalCoins": report.total_coins, "totalXp": report.total_xp, "traceId": trace_id},
            )
        return OpResult.success(report=report)


__all__ = [
    "AppliedReward",
    "CoinsReward",
    "CosmeticReward",
    "DrawsReward",
    "NoReward",
    "PullReport",
    "RewardOutcome",
    "RewardResolver",
    "XpReward",
    "pick_weighted",
    "resolve_reward_outcome",
]
