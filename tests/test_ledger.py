import re
import tempfile
import unittest
from pathlib import Path

from casinobot.db import StoreUnavailableError, open_store
from casinobot.ledger import Ledger, TransactionFilters, TxMeta
from casinobot.models import Reason

GUILD = 1000


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class LedgerTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.clock = FakeClock()
        self.store = open_store(Path(self._tmp.name) / "casino.sqlite3", clock=self.clock)
        self.ledger = Ledger(self.store)

    def tearDown(self) -> None:
        self.store.close()
        self._tmp.cleanup()

    def _rows(self, user_id: int):
        return self.ledger.list_transactions(GUILD, TransactionFilters(user_id=user_id, limit=300))

    def test_get_account_creates_empty_account(self) -> None:
        account = self.ledger.get_account(GUILD, 1)
        self.assertEqual((account.coins, account.xp), (0, 0))
        self.ledger.ensure_account(GUILD, 1)
        self.assertEqual(self.ledger.get_account(GUILD, 1).coins, 0)

    def test_adjust_clamps_debit_and_records_actual_delta(self) -> None:
        self.ledger.adjust_balance(GUILD, 1, coins_delta=100)
        change = self.ledger.adjust_balance(GUILD, 1, coins_delta=-500, xp_delta=-3)
        self.assertEqual(change.account.coins, 0)
        self.assertEqual(change.coins_delta, -100)
        self.assertEqual(change.xp_delta, 0)
        latest = self._rows(1)[0]
        self.assertEqual(latest.coins_before, 100)
        self.assertEqual(latest.coins_delta, -100)
        self.assertEqual(latest.coins_after, 0)

    def test_zero_effect_writes_no_row_unless_forced(self) -> None:
        change = self.ledger.adjust_balance(GUILD, 2, coins_delta=-10)
        self.assertIsNone(change.tx_id)
        self.assertEqual(self._rows(2), [])
        forced = self.ledger.adjust_balance(GUILD, 2, coins_delta=-10, meta=TxMeta(force_log=True))
        self.assertIsNotNone(forced.tx_id)
        self.assertEqual(len(self._rows(2)), 1)

    def test_defaults_for_source_actor_and_trace(self) -> None:
        self.ledger.adjust_balance(GUILD, 3, coins_delta=5)
        self.ledger.adjust_balance(GUILD, 3, coins_delta=5, meta=TxMeta(command_name="daily"))
        newest, oldest = self._rows(3)
        self.assertEqual(oldest.source, "system")
        self.assertEqual(oldest.actor_id, "3")
        self.assertEqual(newest.source, "cmd:daily")
        self.assertRegex(oldest.trace_id, re.compile(r"^tx_[0-9a-z]+_[0-9a-z]{8}$"))

    def test_transfer_refuses_without_mutation(self) -> None:
        self.ledger.adjust_balance(GUILD, 10, coins_delta=50)
        result = self.ledger.transfer(GUILD, 10, 11, 80)
        self.assertFalse(result)
        self.assertEqual(result.reason, Reason.INSUFFICIENT_FUNDS)
        self.assertEqual(self.ledger.get_account(GUILD, 10).coins, 50)
        self.assertEqual(self.ledger.get_account(GUILD, 11).coins, 0)
        self.assertEqual(self._rows(11), [])

    def test_transfer_rejects_invalid_amounts(self) -> None:
        self.ledger.adjust_balance(GUILD, 10, coins_delta=50)
        for amount in (0, -5, "abc"):
            self.assertEqual(self.ledger.transfer(GUILD, 10, 11, amount).reason, Reason.INVALID_AMOUNT)
        self.assertEqual(self.ledger.transfer(GUILD, 10, 10, 5).reason, Reason.INVALID_AMOUNT)

    def test_transfer_writes_two_rows_with_shared_trace(self) -> None:
        self.ledger.adjust_balance(GUILD, 10, coins_delta=100)
        result = self.ledger.transfer(GUILD, 10, 11, 40)
        self.assertTrue(result)
        self.assertEqual(result.get("sender").coins, 60)
        self.assertEqual(result.get("receiver").coins, 40)
        debit = self._rows(10)[0]
        credit = self._rows(11)[0]
        self.assertEqual(debit.trace_id, credit.trace_id)
        self.assertEqual(debit.source, "transfer")
        self.assertEqual(debit.coins_delta, -40)
        self.assertEqual(credit.coins_delta, 40)
        self.assertEqual(debit.metadata, {"transferTo": "11"})
        self.assertEqual(credit.metadata, {"transferFrom": "10"})
        self.assertEqual(debit.reason, "Transfer to 11")

    def test_reverse_transaction_is_idempotent(self) -> None:
        change = self.ledger.adjust_balance(GUILD, 20, coins_delta=300, xp_delta=7)
        result = self.ledger.reverse_transaction(GUILD, change.tx_id, TxMeta(actor_id="99", reason="mistake"))
        self.assertTrue(result)
        self.assertEqual(result.get("account").coins, 0)
        self.assertEqual(result.get("account").xp, 0)
        original = self.ledger.get_transaction(GUILD, change.tx_id)
        self.assertTrue(original.is_reverted)
        self.assertEqual(original.reverted_by, "99")
        self.assertEqual(original.reverted_tx_id, result.get("reversal_tx_id"))
        reversal = self.ledger.get_transaction(GUILD, result.get("reversal_tx_id"))
        self.assertEqual(reversal.source, "rollbacktx")
        self.assertTrue(reversal.trace_id.startswith("rb_"))
        self.assertEqual(reversal.metadata["originalTxId"], change.tx_id)

        again = self.ledger.reverse_transaction(GUILD, change.tx_id)
        self.assertEqual(again.reason, Reason.ALREADY_REVERTED)
        self.assertEqual(self.ledger.get_account(GUILD, 20).coins, 0)

    def test_reverse_failures(self) -> None:
        self.assertEqual(self.ledger.reverse_transaction(GUILD, 12345).reason, Reason.NOT_FOUND)
        forced = self.ledger.adjust_balance(GUILD, 21, meta=TxMeta(force_log=True))
        self.assertEqual(self.ledger.reverse_transaction(GUILD, forced.tx_id).reason, Reason.NO_EFFECT)

    def test_reverse_debit_clamps_when_coins_were_spent(self) -> None:
        grant = self.ledger.adjust_balance(GUILD, 22, coins_delta=100)
        self.ledger.adjust_balance(GUILD, 22, coins_delta=-70)
        result = self.ledger.reverse_transaction(GUILD, grant.tx_id)
        self.assertTrue(result)
        self.assertEqual(result.get("coins_delta"), -30)
        self.assertEqual(self.ledger.get_account(GUILD, 22).coins, 0)

    def test_every_row_is_consistent_and_replays_to_the_balance(self) -> None:
        self.ledger.adjust_balance(GUILD, 30, coins_delta=1000, xp_delta=10)
        self.ledger.adjust_balance(GUILD, 30, coins_delta=-1500)
        self.ledger.adjust_balance(GUILD, 31, coins_delta=500)
        self.ledger.transfer(GUILD, 31, 30, 200)
        tx = self.ledger.adjust_balance(GUILD, 30, xp_delta=-4)
        self.ledger.reverse_transaction(GUILD, tx.tx_id)
        for row in self._rows(30):
            self.assertEqual(row.coins_before + row.coins_delta, row.coins_after)
            self.assertEqual(row.xp_before + row.xp_delta, row.xp_after)
        account = self.ledger.get_account(GUILD, 30)
        self.assertEqual(self.ledger.replay_balance(GUILD, 30), (account.coins, account.xp))

    def test_failed_unit_rolls_back(self) -> None:
        with self.assertRaises(RuntimeError):
            with self.store.transaction():
                self.ledger.adjust_balance(GUILD, 40, coins_delta=10)
                raise RuntimeError("boom")
        self.assertEqual(self.ledger.get_account(GUILD, 40).coins, 0)
        self.assertEqual(self._rows(40), [])

    def test_list_filters_and_limit(self) -> None:
        for amount in range(1, 6):
            self.ledger.adjust_balance(GUILD, 50, coins_delta=amount * 10, meta=TxMeta(source="grant"))
            self.clock.now += 10
        self.ledger.adjust_balance(GUILD, 50, coins_delta=1, meta=TxMeta(source="other"))
        rows = self.ledger.list_transactions(GUILD, TransactionFilters(user_id=50, source="grant", limit=2))
        self.assertEqual([row.coins_delta for row in rows], [50, 40])
        rows = self.ledger.list_transactions(GUILD, TransactionFilters(user_id=50, min_abs_coins=30, limit=0))
        self.assertEqual(len(rows), 1)
        rows = self.ledger.list_transactions(GUILD, TransactionFilters(user_id=50, min_abs_coins=30, limit=100))
        self.assertEqual(len(rows), 3)
        since = self.ledger.list_transactions(GUILD, TransactionFilters(user_id=50, since=int(self.clock.now) - 15))
        self.assertEqual(len(since), 2)

    def test_user_stats(self) -> None:
        self.ledger.adjust_balance(GUILD, 60, coins_delta=100, xp_delta=5)
        self.ledger.adjust_balance(GUILD, 60, coins_delta=-30)
        stats = self.ledger.user_stats(GUILD, 60)
        self.assertEqual(stats.tx_count, 2)
        self.assertEqual((stats.coins_in, stats.coins_out, stats.xp_in, stats.xp_out), (100, 30, 5, 0))
        self.assertEqual(stats.by_source, {"system": 2})

    def test_oversized_metadata_is_kept_raw(self) -> None:
        change = self.ledger.adjust_balance(GUILD, 70, coins_delta=1, meta=TxMeta(metadata={"blob": "x" * 5000}))
        row = self.ledger.get_transaction(GUILD, change.tx_id)
        self.assertIn("raw", row.metadata)
        self.assertEqual(len(row.metadata["raw"]), 4000)

    def test_closed_store_raises(self) -> None:
        self.store.close()
        with self.assertRaises(StoreUnavailableError):
            self.ledger.get_account(GUILD, 1)

    def test_reset_clears_everything(self) -> None:
        calls = []
        self.store.on_reset(lambda: calls.append(True))
        self.ledger.adjust_balance(GUILD, 80, coins_delta=10)
        self.store.reset_all_data()
        self.assertEqual(self._rows(80), [])
        self.assertEqual(calls, [True])


if __name__ == "__main__":
    unittest.main()
