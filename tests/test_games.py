import tempfile
import unittest
from pathlib import Path

from casinobot.db import open_store
from casinobot.games import WagerEngine, normalize_side, slots_multiplier
from casinobot.guards import CooldownGuard
from casinobot.ledger import Ledger, TransactionFilters
from casinobot.models import Reason
from casinobot.settings import CasinoSettings

GUILD = 8000


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class ScriptedRng:
    """Returns queued picks from ``choice`` so outcomes are fixed."""

    def __init__(self) -> None:
        self.picks = []

    def choice(self, seq):
        value = self.picks.pop(0)
        assert value in seq, value
        return value


class PayTableTests(unittest.TestCase):
    def test_slots_multiplier(self) -> None:
        self.assertEqual(slots_multiplier(("7️⃣", "7️⃣", "7️⃣")), 10)
        self.assertEqual(slots_multiplier(("💎", "💎", "💎")), 8)
        self.assertEqual(slots_multiplier(("🍀", "🍀", "🍀")), 7)
        self.assertEqual(slots_multiplier(("🔔", "🔔", "🔔")), 5)
        self.assertEqual(slots_multiplier(("🍒", "🍋", "🍒")), 2)
        self.assertEqual(slots_multiplier(("🍋", "🔔", "🔔")), 2)
        self.assertEqual(slots_multiplier(("🍒", "🍋", "🔔")), 0)

    def test_normalize_side(self) -> None:
        self.assertEqual(normalize_side("Heads"), "pile")
        self.assertEqual(normalize_side("p"), "pile")
        self.assertEqual(normalize_side(" tails "), "face")
        self.assertIsNone(normalize_side("edge"))
        self.assertIsNone(normalize_side(None))


class WagerEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.clock = FakeClock()
        self.store = open_store(Path(self._tmp.name) / "casino.sqlite3", clock=self.clock)
        self.ledger = Ledger(self.store)
        self.rng = ScriptedRng()
        self.settings = CasinoSettings(min_game_bet=100, coinflip_cooldown_ms=20_000, slots_cooldown_ms=30_000)
        self.games = WagerEngine(self.store, self.ledger, CooldownGuard(self.store), self.settings, rng=self.rng)
        self.ledger.adjust_balance(GUILD, 1, coins_delta=1000)

    def tearDown(self) -> None:
        self.store.close()
        self._tmp.cleanup()

    def _coins(self, user_id: int = 1) -> int:
        return self.ledger.get_account(GUILD, user_id).coins

    def test_coinflip_win_pays_double_under_one_trace(self) -> None:
        self.rng.picks = ["pile"]
        result = self.games.coinflip(GUILD, 1, "100", "heads")
        self.assertTrue(result, result.reason)
        self.assertEqual((result.get("choice"), result.get("landed")), ("pile", "pile"))
        self.assertEqual(result.get("payout"), 200)
        self.assertEqual(result.get("net"), 100)
        self.assertEqual(self._coins(), 1100)

        rows = self.ledger.list_transactions(GUILD, TransactionFilters(trace_id=result.get("trace_id")))
        self.assertEqual(
            sorted((row.source, row.coins_delta) for row in rows),
            [("game:coinflip", -100), ("game:coinflip:payout", 200)],
        )
        self.assertTrue(result.get("trace_id").startswith("game_"))

    def test_coinflip_loss_keeps_the_bet(self) -> None:
        self.rng.picks = ["face"]
        result = self.games.coinflip(GUILD, 1, 300, "pile")
        self.assertTrue(result)
        self.assertEqual(result.get("payout"), 0)
        self.assertEqual(result.get("net"), -300)
        self.assertIsNone(result.get("payout_tx_id"))
        self.assertEqual(self._coins(), 700)

    def test_refusals_write_nothing_and_keep_the_cooldown_free(self) -> None:
        self.assertEqual(self.games.coinflip(GUILD, 1, 100, "edge").reason, Reason.INVALID_INPUT)
        self.assertEqual(self.games.coinflip(GUILD, 1, 99, "pile").reason, Reason.INVALID_AMOUNT)
        self.assertEqual(self.games.slots(GUILD, 1, "lots").reason, Reason.INVALID_AMOUNT)
        short = self.games.slots(GUILD, 1, 5000)
        self.assertEqual(short.reason, Reason.INSUFFICIENT_FUNDS)
        self.assertEqual(self._coins(), 1000)
        self.assertEqual(len(self.ledger.list_transactions(GUILD, TransactionFilters(source="game:slots"))), 0)

        self.rng.picks = ["🍒", "🍋", "🔔"]
        self.assertTrue(self.games.slots(GUILD, 1, 1000))
        self.assertEqual(self._coins(), 0)

    def test_cooldown_per_game(self) -> None:
        self.rng.picks = ["face", "🍒", "🍋", "🔔"]
        self.assertTrue(self.games.coinflip(GUILD, 1, 100, "pile"))
        again = self.games.coinflip(GUILD, 1, 100, "pile")
        self.assertEqual(again.reason, Reason.COOLDOWN)
        self.assertEqual(again.get("remaining_ms"), 20_000)
        self.assertTrue(self.games.slots(GUILD, 1, 100))

        self.clock.now += 20
        self.rng.picks = ["pile"]
        self.assertTrue(self.games.coinflip(GUILD, 1, 100, "pile"))

    def test_slots_jackpot(self) -> None:
        self.rng.picks = ["7️⃣", "7️⃣", "7️⃣"]
        result = self.games.slots(GUILD, 1, 100)
        self.assertEqual(result.get("reels"), ("7️⃣", "7️⃣", "7️⃣"))
        self.assertEqual(result.get("multiplier"), 10)
        self.assertEqual(self._coins(), 1900)


if __name__ == "__main__":
    unittest.main()
