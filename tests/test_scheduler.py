import asyncio
import random
import tempfile
import unittest
from pathlib import Path

from casinobot.db import open_store
from casinobot.giveaways import GiveawayEngine, GiveawayScheduler
from casinobot.ledger import Ledger

GUILD = 7000


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class GiveawaySchedulerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.clock = FakeClock()
        self.store = open_store(Path(self._tmp.name) / "casino.sqlite3", clock=self.clock)
        self.ledger = Ledger(self.store)
        self.engine = GiveawayEngine(self.store, self.ledger, randbelow=random.Random(3).randrange)
        self.announced = []
        self.scheduler = GiveawayScheduler(self.engine, interval=0.01, announce=self._announce)

    def tearDown(self) -> None:
        self.store.close()
        self._tmp.cleanup()

    async def _announce(self, giveaway, result) -> None:
        self.announced.append((giveaway.message_id, result.get("winners")))

    def _create(self, message_id: int, duration_ms: int) -> None:
        result = self.engine.create(
            guild_id=GUILD,
            channel_id=1,
            message_id=message_id,
            host_id=9,
            reward_total=100,
            duration_ms=duration_ms,
        )
        self.assertTrue(result, result.reason)
        self.engine.join(message_id, 42)

    async def test_tick_ends_only_due_giveaways(self) -> None:
        self._create(1, 10_000)
        self._create(2, 600_000)
        self.clock.now += 11
        self.assertEqual(await self.scheduler.tick(), 1)
        self.assertEqual(self.engine.get(1).status, "ended")
        self.assertEqual(self.engine.get(2).status, "active")
        self.assertEqual(self.announced, [(1, [42])])
        self.assertEqual(self.ledger.get_account(GUILD, 42).coins, 100)
        self.assertEqual(self.engine.get(1).ended_by, "scheduler")

        self.assertEqual(await self.scheduler.tick(), 0)
        self.assertEqual(len(self.announced), 1)

    async def test_tick_is_skipped_while_busy(self) -> None:
        self._create(1, 10_000)
        self.clock.now += 11
        self.scheduler._busy = True
        self.assertEqual(await self.scheduler.tick(), 0)
        self.assertEqual(self.engine.get(1).status, "active")

    async def test_background_loop(self) -> None:
        self._create(1, 10_000)
        self.clock.now += 11
        self.scheduler.start()
        self.assertTrue(self.scheduler.running)
        for _ in range(50):
            if self.announced:
                break
            await asyncio.sleep(0.01)
        await self.scheduler.stop()
        self.assertFalse(self.scheduler.running)
        self.assertEqual(self.engine.get(1).status, "ended")
        self.assertEqual(self.scheduler.last_tick_at, int(self.clock.now))


if __name__ == "__main__":
    unittest.main()
