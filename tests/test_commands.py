import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord

from casinobot.commands import CasinoManager
from casinobot.db import open_store
from casinobot.settings import CasinoSettings

GUILD = 9000


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def make_member(user_id: int):
    member = MagicMock(spec=discord.Member)
    member.id = user_id
    member.bot = False
    member.roles = []
    member.created_at = datetime(2020, 1, 1, tzinfo=timezone.utc)
    member.joined_at = datetime(2021, 1, 1, tzinfo=timezone.utc)
    return member


class EntryGateTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        settings = CasinoSettings(db_path=Path(self._tmp.name) / "casino.sqlite3", burst_max_hits=1)
        self.store = open_store(settings.db_path, clock=FakeClock())
        self.manager = CasinoManager(SimpleNamespace(user=None), settings, store=self.store)

    def tearDown(self) -> None:
        self.store.close()
        self._tmp.cleanup()

    def _create(self, message_id: int, entry_mode: str) -> None:
        result = self.manager.giveaways.create(
            guild_id=GUILD,
            channel_id=1,
            message_id=message_id,
            host_id=9,
            reward_total=100,
            duration_ms=60_000,
            entry_mode=entry_mode,
        )
        self.assertTrue(result, result.reason)

    def _reaction(self, message_id: int, member) -> SimpleNamespace:
        return SimpleNamespace(message_id=message_id, user_id=member.id, emoji="💎", member=member)

    def _interaction(self, message_id: int, member) -> SimpleNamespace:
        return SimpleNamespace(
            message=SimpleNamespace(id=message_id),
            user=member,
            response=SimpleNamespace(send_message=AsyncMock()),
        )

    async def test_blacklisted_member_cannot_enter_by_reaction(self) -> None:
        self._create(1, "reaction")
        member = make_member(10)
        self.manager.moderation.set_blacklist(member.id, reason="abuse")
        await self.manager.on_raw_reaction_add(self._reaction(1, member))
        self.assertFalse(self.manager.giveaways.is_entered(1, member.id))

    async def test_reaction_flapping_trips_the_burst_guard(self) -> None:
        self._create(1, "reaction")
        member = make_member(11)
        await self.manager.on_raw_reaction_add(self._reaction(1, member))
        self.assertTrue(self.manager.giveaways.is_entered(1, member.id))

        await self.manager.on_raw_reaction_remove(self._reaction(1, member))
        self.assertFalse(self.manager.giveaways.is_entered(1, member.id))

        await self.manager.on_raw_reaction_add(self._reaction(1, member))
        self.assertFalse(self.manager.giveaways.is_entered(1, member.id))
        self.assertEqual(self.manager.giveaways.get(1).entries_count, 0)

    async def test_button_entry_is_gated(self) -> None:
        self._create(2, "button")
        blocked = make_member(12)
        self.manager.moderation.set_blacklist(blocked.id, duration_ms=60_000)
        interaction = self._interaction(2, blocked)
        await self.manager.handle_button_entry(interaction)
        self.assertFalse(self.manager.giveaways.is_entered(2, blocked.id))
        text = interaction.response.send_message.await_args.args[0]
        self.assertIn("blacklisted", text)
        self.assertTrue(interaction.response.send_message.await_args.kwargs["ephemeral"])

        member = make_member(13)
        await self.manager.handle_button_entry(self._interaction(2, member))
        self.assertTrue(self.manager.giveaways.is_entered(2, member.id))
        spam = self._interaction(2, member)
        await self.manager.handle_button_entry(spam)
        self.assertTrue(self.manager.giveaways.is_entered(2, member.id))
        self.assertIn("Slow down", spam.response.send_message.await_args.args[0])


if __name__ == "__main__":
    unittest.main()
