"""discord.py command layer wiring the casino engines to prefix commands."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import discord
from discord.ext import commands

from .audit import AuditLog
from .catalog import CatalogRepository, load_catalog_file
from .db import CasinoStore, open_store
from .economy import EconomyService
from .games import WagerEngine
from .giveaways import GiveawayEngine, GiveawayScheduler, check_entry_eligibility
from .guards import CooldownGuard, RuntimeState
from .ledger import Ledger, TransactionFilters, TxMeta
from .models import Giveaway, OpResult, Reason
from .moderation import BlacklistState, ModerationLedger
from .rewards import AppliedReward, RewardResolver
from .settings import CasinoSettings
from .utils import format_duration_ms, is_admin, parse_duration_ms, parse_id_list

logger = logging.getLogger("casinobot.commands")

GIVEAWAY_BUTTON_ID = "casinobot:giveaway:toggle"

_REASON_TEXT = {
    Reason.INSUFFICIENT_FUNDS: "Insufficient balance.",
    Reason.NOT_ENOUGH_CREDITS: "You don't have enough draw credits.",
    Reason.INVALID_AMOUNT: "Invalid amount.",
    Reason.NOT_FOUND: "Nothing found with that id.",
    Reason.ALREADY_REVERTED: "That transaction was already reverted.",
    Reason.NO_EFFECT: "That transaction moved nothing.",
    Reason.GIVEAWAY_NOT_ACTIVE: "This giveaway is closed.",
    Reason.GIVEAWAY_EXPIRED: "This giveaway has already expired.",
    Reason.LOCKED: "This giveaway is being processed, try again in a moment.",
    Reason.DRAW_FAILED: "The draw failed; nothing was consumed.",
    Reason.DATABASE_UNAVAILABLE: "The database is unavailable right now.",
    Reason.ALREADY_FINISHED: "This giveaway is already finished.",
    Reason.NOT_ENDED: "This giveaway has not ended yet.",
    Reason.NOT_ACTIVE: "This giveaway is not active.",
    Reason.INVALID_INPUT: "Invalid input.",
    Reason.INVALID_NAME: "A name is required.",
    Reason.ITEM_DISABLED: "That item is not for sale right now.",
    Reason.COOLDOWN: "You are on cooldown, try again later.",
}


def describe_failure(result: OpResult) -> str:
    return _REASON_TEXT.get(result.reason or "", f"Request refused ({result.reason}).")


def _blacklist_text(state: BlacklistState) -> str:
    if state.remaining_ms is not None:
        return f"You are temporarily blacklisted. Time left: {format_duration_ms(state.remaining_ms)}."
    return "You are blacklisted from this bot."


class GiveawayEntryView(discord.ui.View):
    """Persistent join/leave button shared by every button-mode giveaway."""

    def __init__(self, manager: "CasinoManager") -> None:
        super().__init__(timeout=None)
        self.manager = manager

    @discord.ui.button(label="Join / Leave", emoji="💎", style=discord.ButtonStyle.green, custom_id=GIVEAWAY_BUTTON_ID)
    async def toggle(self, interaction: discord.Interaction, _: discord.ui.Button) -> None:
        await self.manager.handle_button_entry(interaction)


class CasinoManager:
    def __init__(
        self,
        bot: commands.Bot,
        settings: CasinoSettings,
        store: Optional[CasinoStore] = None,
    ) -> None:
        self.bot = bot
        self.settings = settings
        self.state = RuntimeState()
        self.store = store or open_store(
            settings.db_path,
            default_draw_credits=settings.default_draw_credits,
            profile_cache=self.state.profiles,
        )
        self.store.on_reset(self.state.clear)
        self.ledger = Ledger(self.store)
        self.catalog = CatalogRepository(self.store)
        self.audit = AuditLog(self.store)
        self.cooldowns = CooldownGuard(self.store)
        self.rewards = RewardResolver(self.store, self.ledger, self.catalog, settings, audit=self.audit)
        self.economy = EconomyService(self.store, self.ledger, self.catalog, self.rewards, self.cooldowns, settings)
        self.games = WagerEngine(self.store, self.ledger, self.cooldowns, settings)
        self.giveaways = GiveawayEngine(self.store, self.ledger)
        self.moderation = ModerationLedger(self.store)
        self.scheduler = GiveawayScheduler(
            self.giveaways,
            interval=settings.giveaway_tick_seconds,
            announce=self.announce_giveaway,
        )
        self.catalog_override = load_catalog_file(settings.catalog_path)

    # Lifecycle ----------------------------------------------------------

    def start(self) -> None:
        self.bot.add_view(GiveawayEntryView(self))
        self.bot.add_listener(self.on_raw_reaction_add, "on_raw_reaction_add")
        self.bot.add_listener(self.on_raw_reaction_remove, "on_raw_reaction_remove")
        self.scheduler.start()

    async def close(self) -> None:
        await self.scheduler.stop()
        self.store.close()

    # Command plumbing ---------------------------------------------------

    def _is_authorized_guild(self, guild: Optional[discord.Guild]) -> bool:
        if guild is None:
            return False
        return not self.settings.guild_id or guild.id == self.settings.guild_id

    async def _precheck(self, ctx: commands.Context, *, admin: bool = False) -> bool:
        if not self._is_authorized_guild(ctx.guild):
            return False
        decision = self.state.burst.hit(
            "commands",
            ctx.author.id,
            window_ms=self.settings.burst_window_ms,
            max_hits=self.settings.burst_max_hits,
            block_ms=self.settings.burst_block_ms,
        )
        if not decision.allowed:
            if decision.should_notify:
                await ctx.reply(
                    f"Slow down! Try again in {format_duration_ms(decision.retry_after_ms)}.",
                    mention_author=False,
                )
            return False
        blacklisted = self.moderation.is_blacklisted(ctx.author.id)
        if blacklisted is not None:
            await ctx.reply(_blacklist_text(blacklisted), mention_author=False)
            return False
        if admin and not is_admin(ctx.author):
            await ctx.reply("Only a server administrator can use this command.", mention_author=False)
            return False
        return True

    def _meta(self, ctx: commands.Context, **extra) -> TxMeta:
        return TxMeta(
            actor_id=str(ctx.author.id),
            command_name=ctx.command.name if ctx.command else None,
            channel_id=ctx.channel.id if ctx.channel else None,
            message_id=ctx.message.id if ctx.message else None,
            **extra,
        )

    def _register_command(self, command: commands.Command) -> None:
        existing = self.bot.get_command(command.name)
        if existing:
            self.bot.remove_command(existing.name)
        self.bot.add_command(command)

    def register_commands(self) -> None:
        @commands.command(name="bal", aliases=["balance"])
        async def casino_bal(ctx: commands.Context, member: Optional[discord.Member] = None) -> None:
            await self.command_balance(ctx, member)

        @commands.command(name="daily")
        async def casino_daily(ctx: commands.Context) -> None:
            await self.command_daily(ctx)

        @commands.command(name="give", aliases=["don"])
        async def casino_give(
            ctx: commands.Context,
            member: Optional[discord.Member] = None,
            amount: Optional[int] = None,
        ) -> None:
            await self.command_give(ctx, member, amount)

        @commands.command(name="coinflip", aliases=["cf", "pileface"])
        async def casino_coinflip(ctx: commands.Context, bet: str = "", side: str = "") -> None:
            await self.command_coinflip(ctx, bet, side)

        @commands.command(name="slots", aliases=["machine", "slot"])
        async def casino_slots(ctx: commands.Context, bet: str = "") -> None:
            await self.command_slots(ctx, bet)

        @commands.command(name="draw")
        async def casino_draw(ctx: commands.Context, pulls: int = 1) -> None:
            await self.command_draw(ctx, pulls)

        @commands.command(name="shop")
        async def casino_shop(ctx: commands.Context) -> None:
            await self.command_shop(ctx)

        @commands.command(name="buy")
        async def casino_buy(ctx: commands.Context, item_id: Optional[int] = None) -> None:
            await self.command_buy(ctx, item_id)

        @commands.command(name="inventory", aliases=["inv"])
        async def casino_inventory(ctx: commands.Context, member: Optional[discord.Member] = None) -> None:
            await self.command_inventory(ctx, member)

        @commands.command(name="txhistory")
        async def casino_txhistory(
            ctx: commands.Context, member: Optional[discord.Member] = None, limit: int = 10
        ) -> None:
            await self.command_txhistory(ctx, member, limit)

        @commands.command(name="rollbacktx")
        async def casino_rollbacktx(ctx: commands.Context, tx_id: Optional[int] = None, *, reason: str = "") -> None:
            await self.command_rollbacktx(ctx, tx_id, reason.strip())

        @commands.command(name="drawadd")
        async def casino_drawadd(
            ctx: commands.Context,
            weight: Optional[float] = None,
            reward_type: str = "",
            reward_value: str = "",
            category: str = "",
            *,
            name: str = "",
        ) -> None:
            await self.command_drawadd(ctx, weight, reward_type, reward_value, category, name.strip())

        @commands.command(name="drawremove")
        async def casino_drawremove(ctx: commands.Context, item_id: Optional[int] = None) -> None:
            await self.command_drawremove(ctx, item_id)

        @commands.command(name="drawlist")
        async def casino_drawlist(ctx: commands.Context) -> None:
            await self.command_drawlist(ctx)

        @commands.command(name="drawcredits")
        async def casino_drawcredits(
            ctx: commands.Context, member: Optional[discord.Member] = None, amount: Optional[int] = None
        ) -> None:
            await self.command_drawcredits(ctx, member, amount)

        @commands.command(name="setupseed")
        async def casino_setupseed(ctx: commands.Context) -> None:
            await self.command_setupseed(ctx)

        @commands.command(name="gstart")
        async def casino_gstart(
            ctx: commands.Context,
            duration: str = "",
            reward: Optional[int] = None,
            winners: int = 1,
            mode: str = "button",
            *,
            forced: str = "",
        ) -> None:
            await self.command_gstart(ctx, duration, reward, winners, mode, forced)

        @commands.command(name="gend")
        async def casino_gend(ctx: commands.Context, message_id: Optional[int] = None) -> None:
            await self.command_gend(ctx, message_id)

        @commands.command(name="greroll")
        async def casino_greroll(
            ctx: commands.Context, message_id: Optional[int] = None, count: Optional[int] = None
        ) -> None:
            await self.command_greroll(ctx, message_id, count)

        @commands.command(name="gcancel")
        async def casino_gcancel(ctx: commands.Context, message_id: Optional[int] = None) -> None:
            await self.command_gcancel(ctx, message_id)

        @commands.command(name="gjoin")
        async def casino_gjoin(ctx: commands.Context, message_id: Optional[int] = None) -> None:
            await self.command_gjoin(ctx, message_id)

        @commands.command(name="warn")
        async def casino_warn(ctx: commands.Context, member: Optional[discord.Member] = None, *, reason: str = "") -> None:
            await self.command_warn(ctx, member, reason.strip())

        @commands.command(name="blacklist", aliases=["bl"])
        async def casino_blacklist(
            ctx: commands.Context, member: Optional[discord.User] = None, duration: str = "", *, reason: str = ""
        ) -> None:
            await self.command_blacklist(ctx, member, duration, reason.strip())

        for command in (
            casino_bal,
            casino_daily,
            casino_give,
            casino_coinflip,
            casino_slots,
            casino_draw,
            casino_shop,
            casino_buy,
            casino_inventory,
            casino_txhistory,
            casino_rollbacktx,
            casino_drawadd,
            casino_drawremove,
            casino_drawlist,
            casino_drawcredits,
            casino_setupseed,
            casino_gstart,
            casino_gend,
            casino_greroll,
            casino_gcancel,
            casino_gjoin,
            casino_warn,
            casino_blacklist,
        ):
            self._register_command(command)

    # Economy commands ---------------------------------------------------

    async def command_balance(self, ctx: commands.Context, member: Optional[discord.Member]) -> None:
        if not await self._precheck(ctx):
            return
        target = member or ctx.author
        account = self.ledger.get_account(ctx.guild.id, target.id)
        profile = self.store.get_profile(ctx.guild.id, target.id)
        await ctx.reply(
            f"{target.display_name}: **{account.coins:,}** coins, {account.xp:,} xp, "
            f"{profile.draw_credits} draw credit(s).",
            mention_author=False,
        )

    async def command_daily(self, ctx: commands.Context) -> None:
        if not await self._precheck(ctx):
            return
        result = self.economy.claim_daily(ctx.guild.id, ctx.author.id, self._meta(ctx))
        if not result:
            await ctx.reply(
                f"You already collected your daily reward. Come back in {format_duration_ms(result.get('remaining_ms', 0))}.",
                mention_author=False,
            )
            return
        await ctx.reply(
            f"You collected `{result.get('coins'):,}` coins and {result.get('xp'):,} xp today!",
            mention_author=False,
        )

    async def command_give(self, ctx: commands.Context, member: Optional[discord.Member], amount: Optional[int]) -> None:
        if not await self._precheck(ctx):
            return
        limit = self.settings.max_donation
        if member is None or amount is None:
            await ctx.reply(f"Usage: `{ctx.prefix}give @user <amount<={limit:,}>`", mention_author=False)
            return
        if member.bot or member.id == ctx.author.id:
            await ctx.reply("Invalid target for a donation.", mention_author=False)
            return
        result = self.economy.give(ctx.guild.id, ctx.author.id, member.id, amount, self._meta(ctx))
        if not result:
            await ctx.reply(describe_failure(result), mention_author=False)
            return
        await ctx.reply(
            f"Donation sent to {member.mention}.\n"
            f"Amount: {result.get('amount'):,} | Tax: {result.get('tax'):,} | Received: `{result.get('received'):,}`",
            mention_author=False,
            allowed_mentions=discord.AllowedMentions(users=[member], roles=False, everyone=False),
        )

    async def _reply_wager_refusal(self, ctx: commands.Context, result: OpResult, usage: str) -> None:
        if result.reason == Reason.COOLDOWN:
            text = f"Easy there! Play again in {format_duration_ms(result.get('remaining_ms', 0))}."
        elif result.reason in (Reason.INVALID_AMOUNT, Reason.INVALID_INPUT):
            text = f"Usage: `{ctx.prefix}{usage}` (minimum bet {self.settings.min_game_bet:,})."
        else:
            text = describe_failure(result)
        await ctx.reply(text, mention_author=False)

    async def command_coinflip(self, ctx: commands.Context, bet: str, side: str) -> None:
        if not await self._precheck(ctx):
            return
        result = self.games.coinflip(ctx.guild.id, ctx.author.id, bet, side, self._meta(ctx))
        if not result:
            await self._reply_wager_refusal(ctx, result, "coinflip <bet> <pile|face>")
            return
        if result.get("payout"):
            outcome = f"You win `{result.get('payout'):,}` coins!"
        else:
            outcome = f"You lose `{result.get('bet'):,}` coins."
        await ctx.reply(
            f"🪙 The coin lands on **{result.get('landed')}** (you picked {result.get('choice')}).\n{outcome}\n"
            f"Balance: {result.get('account').coins:,}",
            mention_author=False,
        )

    async def command_slots(self, ctx: commands.Context, bet: str) -> None:
        if not await self._precheck(ctx):
            return
        result = self.games.slots(ctx.guild.id, ctx.author.id, bet, self._meta(ctx))
        if not result:
            await self._reply_wager_refusal(ctx, result, "slots <bet>")
            return
        reels = " | ".join(result.get("reels"))
        if result.get("multiplier"):
            outcome = f"Multiplier x{result.get('multiplier')}: you win `{result.get('payout'):,}` coins!"
        else:
            outcome = f"No luck, you lose `{result.get('bet'):,}` coins."
        await ctx.reply(
            f"🎰 [ {reels} ]\n{outcome}\nBalance: {result.get('account').coins:,}",
            mention_author=False,
        )

    async def command_draw(self, ctx: commands.Context, pulls: int) -> None:
        if not await self._precheck(ctx):
            return
        result = self.rewards.pull(ctx.guild.id, ctx.author.id, pulls, self._meta(ctx))
        if not result:
            if result.reason == Reason.NOT_ENOUGH_CREDITS:
                profile = result.get("profile")
                await ctx.reply(
                    f"You need {result.get('needed')} credit(s) but only have {profile.draw_credits}.",
                    mention_author=False,
                )
            else:
                await ctx.reply(describe_failure(result), mention_author=False)
            return
        report = result.get("report")
        lines = [f"**{len(report.rewards)} draw(s)**"]
        for reward in report.rewards:
            emoji = reward.item.emoji or "🎲"
            lines.append(f"{emoji} {reward.item.name}")
        lines.append(
            f"Total: +{report.total_coins:,} coins (base {report.base_coins:,}), +{report.total_xp:,} xp, "
            f"+{report.total_draws} credit(s). Credits left: {report.profile.draw_credits}"
        )
        await ctx.reply("\n".join(lines), mention_author=False)
        if isinstance(ctx.author, discord.Member):
            await self._assign_reward_roles(ctx.author, report.cosmetics)

    async def command_shop(self, ctx: commands.Context) -> None:
        if not await self._precheck(ctx):
            return
        items = self.catalog.list_shop_items(ctx.guild.id, enabled_only=True)
        if not items:
            await ctx.reply("The shop is empty.", mention_author=False)
            return
        lines = ["**Shop**"]
        for item in items:
            lines.append(f"`#{item.id}` {item.emoji or ''} {item.name} - {item.price:,} coins")
        lines.append(f"Buy with `{ctx.prefix}buy <id>`.")
        await ctx.reply("\n".join(lines), mention_author=False)

    async def command_buy(self, ctx: commands.Context, item_id: Optional[int]) -> None:
        if not await self._precheck(ctx):
            return
        if item_id is None:
            await ctx.reply(f"Usage: `{ctx.prefix}buy <id>`", mention_author=False)
            return
        result = self.economy.buy(ctx.guild.id, ctx.author.id, item_id, self._meta(ctx))
        if not result:
            await ctx.reply(describe_failure(result), mention_author=False)
            return
        item = result.get("item")
        await ctx.reply(
            f"You bought **{item.name}** for {item.price:,} coins. Balance: {result.get('account').coins:,}",
            mention_author=False,
        )
        if isinstance(ctx.author, discord.Member):
            await self._assign_reward_roles(ctx.author, [result.get("reward")])

    async def command_inventory(self, ctx: commands.Context, member: Optional[discord.Member]) -> None:
        if not await self._precheck(ctx):
            return
        target = member or ctx.author
        entries = self.catalog.list_inventory(ctx.guild.id, target.id)
        if not entries:
            await ctx.reply(f"{target.display_name} owns nothing yet.", mention_author=False)
            return
        lines = [f"**Inventory of {target.display_name}**"]
        for entry in entries[:40]:
            lines.append(f"{entry.emoji or '•'} {entry.item_name or 'Removed item'} x{entry.quantity} ({entry.item_category})")
        await ctx.reply("\n".join(lines), mention_author=False)

    async def _assign_reward_roles(self, member: discord.Member, rewards: Sequence[Optional[AppliedReward]]) -> None:
        for reward in rewards:
            if reward is None or not reward.role_id:
                continue
            role = member.guild.get_role(reward.role_id)
            if role is None or role in member.roles:
                continue
            try:
                await member.add_roles(role, reason=f"Casino reward: {reward.item.name}")
            except discord.HTTPException:
                logger.warning("Could not assign role %s to %s", reward.role_id, member.id, exc_info=True)

    # Admin commands -----------------------------------------------------

    async def command_txhistory(self, ctx: commands.Context, member: Optional[discord.Member], limit: int) -> None:
        if not await self._precheck(ctx, admin=True):
            return
        filters = TransactionFilters(user_id=member.id if member else None, limit=max(1, min(25, limit)))
        rows = self.ledger.list_transactions(ctx.guild.id, filters)
        if not rows:
            await ctx.reply("No transactions recorded.", mention_author=False)
            return
        lines = []
        for tx in rows:
            flag = " (reverted)" if tx.is_reverted else ""
            lines.append(
                f"`#{tx.id}` <@{tx.user_id}> {tx.source} coins {tx.coins_delta:+,} xp {tx.xp_delta:+,}{flag}"
            )
        await ctx.reply("\n".join(lines), mention_author=False, allowed_mentions=discord.AllowedMentions.none())

    async def command_rollbacktx(self, ctx: commands.Context, tx_id: Optional[int], reason: str) -> None:
        if not await self._precheck(ctx, admin=True):
            return
        if tx_id is None:
            await ctx.reply(f"Usage: `{ctx.prefix}rollbacktx <id> [reason]`", mention_author=False)
            return
        result = self.ledger.reverse_transaction(ctx.guild.id, tx_id, self._meta(ctx, reason=reason or None))
        if not result:
            await ctx.reply(describe_failure(result), mention_author=False)
            return
        self.audit.record(
            ctx.guild.id,
            "economy:rollback",
            actor_id=ctx.author.id,
            target_user_id=result.get("original").user_id,
            command_name="rollbacktx",
            channel_id=ctx.channel.id,
            description=f"Transaction #{tx_id} reverted via #{result.get('reversal_tx_id')}",
            data={"originalTxId": tx_id, "reversalTxId": result.get("reversal_tx_id")},
        )
        await ctx.reply(
            f"Transaction #{tx_id} reverted (coins {result.get('coins_delta'):+,}, xp {result.get('xp_delta'):+,}).",
            mention_author=False,
        )

    async def command_drawadd(
        self,
        ctx: commands.Context,
        weight: Optional[float],
        reward_type: str,
        reward_value: str,
        category: str,
        name: str,
    ) -> None:
        if not await self._precheck(ctx, admin=True):
            return
        if weight is None or not name:
            await ctx.reply(
                f"Usage: `{ctx.prefix}drawadd <weight> <coins|xp|draws|cosmetic|role|none> <value> <category> <name>`",
                mention_author=False,
            )
            return
        role_id = None
        if reward_type.lower() == "role":
            ids = parse_id_list(reward_value, limit=1)
            role_id = ids[0] if ids else None
        result = self.catalog.add_item(
            "draw",
            ctx.guild.id,
            {
                "name": name,
                "weight": weight,
                "reward_type": reward_type,
                "reward_value": reward_value,
                "category": category,
                "role_id": role_id,
            },
            created_by=str(ctx.author.id),
        )
        if not result:
            await ctx.reply(describe_failure(result), mention_author=False)
            return
        item = result.get("item")
        await ctx.reply(f"Draw item `#{item.id}` **{item.name}** added (weight {item.weight:g}).", mention_author=False)

    async def command_drawremove(self, ctx: commands.Context, item_id: Optional[int]) -> None:
        if not await self._precheck(ctx, admin=True):
            return
        if item_id is None:
            await ctx.reply(f"Usage: `{ctx.prefix}drawremove <id>`", mention_author=False)
            return
        if self.catalog.remove_item("draw", ctx.guild.id, item_id):
            await ctx.reply(f"Draw item `#{item_id}` removed.", mention_author=False)
        else:
            await ctx.reply(describe_failure(OpResult.failure(Reason.NOT_FOUND)), mention_author=False)

    async def command_drawlist(self, ctx: commands.Context) -> None:
        if not await self._precheck(ctx):
            return
        items = self.catalog.list_draw_items(ctx.guild.id)
        if not items:
            await ctx.reply("The draw catalog is empty.", mention_author=False)
            return
        total = sum(item.weight for item in items if item.enabled) or 1.0
        lines = ["**Draw catalog**"]
        for item in items:
            chance = item.weight / total * 100 if item.enabled else 0.0
            state = "" if item.enabled else " (disabled)"
            lines.append(
                f"`#{item.id}` {item.emoji or ''} {item.name} [{item.category}] {item.reward_type} "
                f"{item.reward_value or ''} - {chance:.3f}%{state}"
            )
        await ctx.reply("\n".join(lines[:60]), mention_author=False)

    async def command_drawcredits(
        self, ctx: commands.Context, member: Optional[discord.Member], amount: Optional[int]
    ) -> None:
        if not await self._precheck(ctx, admin=True):
            return
        if member is None or amount is None:
            await ctx.reply(f"Usage: `{ctx.prefix}drawcredits @user <+/-amount>`", mention_author=False)
            return
        profile = self.store.add_draw_credits(ctx.guild.id, member.id, amount)
        self.audit.record(
            ctx.guild.id,
            "casino:credits",
            actor_id=ctx.author.id,
            target_user_id=member.id,
            command_name="drawcredits",
            channel_id=ctx.channel.id,
            data={"delta": amount, "after": profile.draw_credits},
        )
        await ctx.reply(f"{member.display_name} now has {profile.draw_credits} draw credit(s).", mention_author=False)

    async def command_setupseed(self, ctx: commands.Context) -> None:
        if not await self._precheck(ctx, admin=True):
            return
        inserted = self.catalog.seed_defaults(ctx.guild.id, str(ctx.author.id), self.catalog_override)
        await ctx.reply(
            f"Catalog seeded: {inserted['shop']} shop item(s), {inserted['draw']} draw item(s).",
            mention_author=False,
        )

    # Giveaways ----------------------------------------------------------

    async def command_gstart(
        self,
        ctx: commands.Context,
        duration: str,
        reward: Optional[int],
        winners: int,
        mode: str,
        forced: str,
    ) -> None:
        if not await self._precheck(ctx, admin=True):
            return
        duration_ms = parse_duration_ms(duration)
        if duration_ms is None or reward is None:
            await ctx.reply(
                f"Usage: `{ctx.prefix}gstart <duration> <reward> [winners] [button|reaction] [forced ids]`",
                mention_author=False,
            )
            return
        mode = (mode or "button").lower()
        view = GiveawayEntryView(self) if mode == "button" else None
        message = await ctx.send(
            f"🎉 **Giveaway**: {reward:,} coins for {winners} winner(s)! Ends in {format_duration_ms(duration_ms)}.",
            view=view,
        )
        result = self.giveaways.create(
            guild_id=ctx.guild.id,
            channel_id=ctx.channel.id,
            message_id=message.id,
            host_id=ctx.author.id,
            reward_total=reward,
            winners_count=winners,
            duration_ms=duration_ms,
            entry_mode=mode,
            forced_winner_ids=parse_id_list(forced),
        )
        if not result:
            try:
                await message.delete()
            except discord.HTTPException:
                logger.warning("Could not delete refused giveaway message %s", message.id, exc_info=True)
            await ctx.reply(describe_failure(result), mention_author=False)
            return
        giveaway: Giveaway = result.get("giveaway")
        if giveaway.entry_mode == "reaction":
            try:
                await message.add_reaction(giveaway.entry_emoji)
            except discord.HTTPException:
                logger.warning("Could not add entry reaction to giveaway %s", message.id, exc_info=True)
        self.audit.record(
            ctx.guild.id,
            "giveaway:start",
            actor_id=ctx.author.id,
            command_name="gstart",
            channel_id=ctx.channel.id,
            message_id=message.id,
            data={"reward": giveaway.reward_total, "winners": giveaway.winners_count, "endAt": giveaway.end_at},
        )

    async def command_gend(self, ctx: commands.Context, message_id: Optional[int]) -> None:
        if not await self._precheck(ctx, admin=True):
            return
        if message_id is None:
            await ctx.reply(f"Usage: `{ctx.prefix}gend <message id>`", mention_author=False)
            return
        result = await self.giveaways.end(message_id, ended_by=str(ctx.author.id), announce=self.announce_giveaway)
        if not result:
            await ctx.reply(describe_failure(result), mention_author=False)

    async def command_greroll(self, ctx: commands.Context, message_id: Optional[int], count: Optional[int]) -> None:
        if not await self._precheck(ctx, admin=True):
            return
        if message_id is None:
            await ctx.reply(f"Usage: `{ctx.prefix}greroll <message id> [winners]`", mention_author=False)
            return
        result = await self.giveaways.reroll(
            message_id, requested=count, by_user=str(ctx.author.id), announce=self.announce_giveaway
        )
        if not result:
            await ctx.reply(describe_failure(result), mention_author=False)

    async def command_gcancel(self, ctx: commands.Context, message_id: Optional[int]) -> None:
        if not await self._precheck(ctx, admin=True):
            return
        if message_id is None:
            await ctx.reply(f"Usage: `{ctx.prefix}gcancel <message id>`", mention_author=False)
            return
        result = self.giveaways.cancel(message_id, cancelled_by=str(ctx.author.id))
        if not result:
            await ctx.reply(describe_failure(result), mention_author=False)
            return
        await ctx.reply(f"Giveaway `{message_id}` cancelled. Nobody was paid.", mention_author=False)

    async def command_gjoin(self, ctx: commands.Context, message_id: Optional[int]) -> None:
        if not await self._precheck(ctx):
            return
        if message_id is None or not isinstance(ctx.author, discord.Member):
            await ctx.reply(f"Usage: `{ctx.prefix}gjoin <message id>`", mention_author=False)
            return
        giveaway = self.giveaways.get(message_id)
        if giveaway is None:
            await ctx.reply(describe_failure(OpResult.failure(Reason.NOT_FOUND)), mention_author=False)
            return
        result = self.giveaways.join(message_id, ctx.author.id, check_entry_eligibility(ctx.author, giveaway))
        await ctx.reply(self._entry_text(result, joined=True), mention_author=False)

    def _entry_text(self, result: OpResult, *, joined: bool) -> str:
        if not result:
            if result.reason == Reason.NOT_ELIGIBLE:
                return result.get("message") or "You cannot enter this giveaway."
            return describe_failure(result)
        giveaway: Giveaway = result.get("giveaway")
        if joined:
            return f"You're in! ({giveaway.entries_count} entrant(s))"
        return f"You left the giveaway. ({giveaway.entries_count} entrant(s))"

    def _entry_refusal(self, user_id: int) -> Optional[str]:
        """Burst and blacklist gate for button and reaction entries. None means allowed."""
        decision = self.state.burst.hit(
            "entries",
            user_id,
            window_ms=self.settings.burst_window_ms,
            max_hits=self.settings.burst_max_hits,
            block_ms=self.settings.burst_block_ms,
        )
        if not decision.allowed:
            return f"Slow down! Try again in {format_duration_ms(decision.retry_after_ms)}."
        blacklisted = self.moderation.is_blacklisted(user_id)
        if blacklisted is not None:
            return _blacklist_text(blacklisted)
        return None

    async def handle_button_entry(self, interaction: discord.Interaction) -> None:
        message = interaction.message
        member = interaction.user
        if message is None or not isinstance(member, discord.Member):
            await interaction.response.send_message("Use this button inside the server.", ephemeral=True)
            return
        giveaway = self.giveaways.get(message.id)
        if giveaway is None:
            await interaction.response.send_message("This giveaway no longer exists.", ephemeral=True)
            return
        refusal = self._entry_refusal(member.id)
        if refusal is not None:
            await interaction.response.send_message(refusal, ephemeral=True)
            return
        result = self.giveaways.toggle(message.id, member.id, check_entry_eligibility(member, giveaway))
        await interaction.response.send_message(
            self._entry_text(result, joined=bool(result.get("joined"))), ephemeral=True
        )

    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent) -> None:
        if self.bot.user is not None and payload.user_id == self.bot.user.id:
            return
        giveaway = self.giveaways.get(payload.message_id)
        if giveaway is None or giveaway.entry_mode != "reaction" or str(payload.emoji) != giveaway.entry_emoji:
            return
        member = payload.member
        if member is None:
            return
        refusal = self._entry_refusal(member.id)
        if refusal is not None:
            logger.debug("Reaction entry gated for %s on %s: %s", member.id, payload.message_id, refusal)
            return
        result = self.giveaways.join(payload.message_id, member.id, check_entry_eligibility(member, giveaway))
        if not result:
            logger.debug("Reaction entry refused for %s on %s: %s", member.id, payload.message_id, result.reason)

    async def on_raw_reaction_remove(self, payload: discord.RawReactionActionEvent) -> None:
        giveaway = self.giveaways.get(payload.message_id)
        if giveaway is None or giveaway.entry_mode != "reaction" or str(payload.emoji) != giveaway.entry_emoji:
            return
        # Leaving is never refused; the hit still counts toward add/remove flapping.
        self.state.burst.hit(
            "entries",
            payload.user_id,
            window_ms=self.settings.burst_window_ms,
            max_hits=self.settings.burst_max_hits,
            block_ms=self.settings.burst_block_ms,
        )
        self.giveaways.leave(payload.message_id, payload.user_id)

    async def announce_giveaway(self, giveaway: Giveaway, result: OpResult) -> None:
        channel = self.bot.get_channel(giveaway.channel_id)
        if not isinstance(channel, discord.abc.Messageable):
            return
        winners: List[int] = list(result.get("winners") or [])
        marker = "🔁" if result.get("reroll") else "🎉"
        if not winners:
            await channel.send(f"{marker} Giveaway ended: no winner.")
            return
        payouts = ", ".join(f"<@{payout.user_id}> {payout.amount:,}" for payout in result.get("payouts") or [])
        await channel.send(
            f"{marker} Congratulations {', '.join(f'<@{user_id}>' for user_id in winners)}!\n"
            f"Total prize: **{giveaway.reward_total:,}** coins\n"
            f"Distribution: {payouts or 'pending'}",
            allowed_mentions=discord.AllowedMentions(users=[discord.Object(user_id) for user_id in winners]),
        )

    # Moderation ---------------------------------------------------------

    async def command_warn(self, ctx: commands.Context, member: Optional[discord.Member], reason: str) -> None:
        if not await self._precheck(ctx, admin=True):
            return
        if member is None:
            await ctx.reply(f"Usage: `{ctx.prefix}warn @user [reason]`", mention_author=False)
            return
        warn_id = self.moderation.add_warn(ctx.guild.id, member.id, ctx.author.id, reason)
        total = self.moderation.count_warns(ctx.guild.id, member.id)
        await ctx.reply(f"Warn `#{warn_id}` added for {member.mention} ({total} total).", mention_author=False)

    async def command_blacklist(
        self, ctx: commands.Context, member: Optional[discord.User], duration: str, reason: str
    ) -> None:
        if not await self._precheck(ctx, admin=True):
            return
        if member is None:
            await ctx.reply(f"Usage: `{ctx.prefix}blacklist @user [duration|off] [reason]`", mention_author=False)
            return
        if duration.lower() in ("off", "remove"):
            removed = self.moderation.remove_blacklist(member.id, ctx.author.id)
            await ctx.reply("Blacklist removed." if removed else "That user is not blacklisted.", mention_author=False)
            return
        duration_ms = parse_duration_ms(duration) if duration else None
        if duration and duration_ms is None:
            reason = f"{duration} {reason}".strip()
        state = self.moderation.set_blacklist(member.id, reason=reason, author_id=ctx.author.id, duration_ms=duration_ms)
        if state is not None and state.temporary:
            await ctx.reply(
                f"{member} blacklisted for {format_duration_ms(state.remaining_ms or 0)}.", mention_author=False
            )
        else:
            await ctx.reply(f"{member} blacklisted permanently.", mention_author=False)


def setup_casino_mode(bot: commands.Bot, settings: Optional[CasinoSettings] = None) -> CasinoManager:
    """Factory used by bot.py to bootstrap the casino."""
    manager = CasinoManager(bot=bot, settings=settings or CasinoSettings.from_env())
    manager.register_commands()
    return manager


__all__ = ["CasinoManager", "GiveawayEntryView", "describe_failure", "setup_casino_mode"]
