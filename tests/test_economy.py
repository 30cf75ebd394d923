import random
import tempfile
import unittest
from pathlib import Path

from casinobot.catalog import CatalogRepository
from casinobot.db import open_store
from casinobot.economy import EconomyService
from casinobot.guards import CooldownGuard
from casinobot.ledger import Ledger, TransactionFilters, TxMeta
from casinobot.models import Reason
from casinobot.rewards import DrawsReward, RewardResolver
from casinobot.settings import CasinoSettings

GUILD = 5000


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class EconomyServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.clock = FakeClock()
        self.store = open_store(Path(self._tmp.name) / "casino.sqlite3", default_draw_credits=0, clock=self.clock)
        self.ledger = Ledger(self.store)
        self.catalog = CatalogRepository(self.store)
        self.settings = CasinoSettings(daily_cooldown_ms=60_000, max_donation=10_000)
        rewards = RewardResolver(self.store, self.ledger, self.catalog, self.settings, rng=random.Random(1))
        self.economy = EconomyService(
            self.store,
            self.ledger,
            self.catalog,
            rewards,
            CooldownGuard(self.store),
            self.settings,
            rng=random.Random(2),
        )

    def tearDown(self) -> None:
        self.store.close()
        self._tmp.cleanup()

    def _shop_item(self, **data):
        data.setdefault("name", "Draws x3")
        data.setdefault("reward_type", "draws")
        data.setdefault("reward_value", "3")
        data.setdefault("price", 1000)
        return self.catalog.add_item("shop", GUILD, data).get("item")

    def test_buy_refuses_without_funds(self) -> None:
        item = self._shop_item()
        self.ledger.adjust_balance(GUILD, 1, coins_delta=999)
        result = self.economy.buy(GUILD, 1, item.id)
        self.assertEqual(result.reason, Reason.INSUFFICIENT_FUNDS)
        self.assertEqual(self.ledger.get_account(GUILD, 1).coins, 999)
        self.assertEqual(self.store.get_profile(GUILD, 1).draw_credits, 0)

    def test_buy_unknown_or_disabled_item(self) -> None:
        self.assertEqual(self.economy.buy(GUILD, 1, 404).reason, Reason.NOT_FOUND)
        item = self._shop_item(enabled=False)
        self.assertEqual(self.economy.buy(GUILD, 1, item.id).reason, Reason.ITEM_DISABLED)

    def test_buy_debits_and_grants_reward(self) -> None:
        item = self._shop_item()
        self.ledger.adjust_balance(GUILD, 1, coins_delta=1500)
        result = self.economy.buy(GUILD, 1, item.id, TxMeta(actor_id="1", command_name="buy"))
        self.assertTrue(result)
        self.assertEqual(result.get("account").coins, 500)
        self.assertEqual(result.get("reward").outcome, DrawsReward(3))
        self.assertEqual(self.store.get_profile(GUILD, 1).draw_credits, 3)
        debit = self.ledger.get_transaction(GUILD, result.get("debit_tx_id"))
        self.assertEqual(debit.source, "setup:shop_buy")
        self.assertEqual(debit.metadata["price"], 1000)

    def test_buy_cosmetic_goes_to_inventory(self) -> None:
        item = self._shop_item(name="Hat", reward_type="cosmetic", reward_value="hat", price=0)
        self.assertTrue(self.economy.buy(GUILD, 1, item.id))
        self.assertTrue(self.catalog.has_inventory_item(GUILD, 1, "shop", item.id))
        # free purchases still leave a ledger row
        rows = self.ledger.list_transactions(GUILD, TransactionFilters(user_id=1, source="setup:shop_buy"))
        self.assertEqual(len(rows), 1)

    def test_daily_respects_cooldown(self) -> None:
        first = self.economy.claim_daily(GUILD, 1)
        self.assertTrue(first)
        self.assertTrue(7000 <= first.get("coins") <= 18000)
        self.assertTrue(50 <= first.get("xp") <= 120)
        row = self.ledger.get_transaction(GUILD, first.get("tx_id"))
        self.assertEqual(row.source, "cmd:daily")

        self.clock.now += 30
        second = self.economy.claim_daily(GUILD, 1)
        self.assertEqual(second.reason, Reason.COOLDOWN)
        self.assertEqual(second.get("remaining_ms"), 30_000)
        self.assertEqual(self.ledger.get_account(GUILD, 1).coins, first.get("coins"))

        self.clock.now += 31
        self.assertTrue(self.economy.claim_daily(GUILD, 1))

    def test_give_withholds_tax(self) -> None:
        self.ledger.adjust_balance(GUILD, 1, coins_delta=5000)
        result = self.economy.give(GUILD, 1, 2, 1000)
        self.assertTrue(result)
        self.assertEqual((result.get("tax"), result.get("received")), (100, 900))
        self.assertEqual(result.get("sender").coins, 4000)
        self.assertEqual(result.get("receiver").coins, 900)
        rows = self.ledger.list_transactions(GUILD, TransactionFilters(trace_id=result.get("trace_id")))
        self.assertEqual(len(rows), 3)
        self.assertIn("cmd:give:tax", {row.source for row in rows})

    def test_give_refusals(self) -> None:
        self.ledger.adjust_balance(GUILD, 1, coins_delta=500)
        self.assertEqual(self.economy.give(GUILD, 1, 2, 600).reason, Reason.INSUFFICIENT_FUNDS)
        self.assertEqual(self.economy.give(GUILD, 1, 2, 0).reason, Reason.INVALID_AMOUNT)
        self.assertEqual(self.economy.give(GUILD, 1, 1, 10).reason, Reason.INVALID_AMOUNT)
        self.assertEqual(self.economy.give(GUILD, 1, 2, 10_001).reason, Reason.INVALID_AMOUNT)
        self.assertEqual(self.economy.give(GUILD, 1, 2, "many").reason, Reason.INVALID_AMOUNT)
        self.assertEqual(self.ledger.get_account(GUILD, 1).coins, 500)
        self.assertEqual(self.ledger.get_account(GUILD, 2).coins, 0)


if __name__ == "__main__":
    unittest.main()
