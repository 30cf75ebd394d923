import tempfile
import unittest
from pathlib import Path

from casinobot.audit import AuditLog, normalize_log_type
from casinobot.db import open_store
from casinobot.moderation import ModerationLedger

GUILD = 6000


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class AuditLogTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.clock = FakeClock()
        self.store = open_store(Path(self._tmp.name) / "casino.sqlite3", clock=self.clock)
        self.audit = AuditLog(self.store)

    def tearDown(self) -> None:
        self.store.close()
        self._tmp.cleanup()

    def test_normalize_log_type(self) -> None:
        self.assertEqual(normalize_log_type(" Economy Rollback! "), "economy_rollback_")
        self.assertEqual(normalize_log_type(""), "event")
        self.assertEqual(len(normalize_log_type("x" * 80)), 40)

    def test_record_and_filter(self) -> None:
        first = self.audit.record(
            GUILD,
            "giveaway:start",
            actor_id=10,
            target_user_id=20,
            command_name="gstart",
            description="Giveaway started",
            data={"reward": 500},
        )
        self.clock.now += 100
        self.audit.record(GUILD, "economy:rollback", actor_id=11, description="Rolled back #4")
        self.audit.record(GUILD + 1, "giveaway:start", actor_id=10)

        event = self.audit.get(GUILD, first)
        self.assertEqual(event.actor_id, "10")
        self.assertEqual(event.data, {"reward": 500})
        self.assertEqual(event.severity, "info")

        self.assertEqual(len(self.audit.list(GUILD)), 2)
        self.assertEqual([e.id for e in self.audit.list(GUILD, log_type="giveaway:start")], [first])
        self.assertEqual(len(self.audit.list(GUILD, actor_id=11)), 1)
        self.assertEqual(len(self.audit.list(GUILD, target_user_id=20)), 1)
        self.assertEqual(len(self.audit.list(GUILD, contains="500")), 1)
        self.assertEqual(len(self.audit.list(GUILD, since=int(self.clock.now))), 1)
        self.assertEqual(len(self.audit.list(GUILD, limit=0)), 1)

    def test_record_failure_is_logged_not_raised(self) -> None:
        self.store.close()
        with self.assertLogs("casinobot.audit", level="WARNING"):
            self.assertIsNone(self.audit.record(GUILD, "event"))


class ModerationLedgerTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.clock = FakeClock()
        self.store = open_store(Path(self._tmp.name) / "casino.sqlite3", clock=self.clock)
        self.moderation = ModerationLedger(self.store)

    def tearDown(self) -> None:
        self.store.close()
        self._tmp.cleanup()

    def test_warns_are_mirrored_as_sanctions(self) -> None:
        warn_id = self.moderation.add_warn(GUILD, 1, 99, "spam " * 100)
        self.moderation.add_warn(GUILD, 1, 99, "flood")
        self.assertEqual(self.moderation.count_warns(GUILD, 1), 2)
        warns = self.moderation.list_warns(GUILD, 1)
        self.assertEqual(len(warns[-1].reason), 300)
        sanctions = self.moderation.list_sanctions(1, GUILD)
        self.assertEqual([s.type for s in sanctions], ["warn", "warn"])

        self.assertTrue(self.moderation.delete_warn(GUILD, 1, warn_id))
        self.assertFalse(self.moderation.delete_warn(GUILD, 1, warn_id))
        self.assertEqual(self.moderation.clear_warns(GUILD, 1), 1)
        self.assertEqual(len(self.moderation.list_sanctions(1, GUILD)), 2)

    def test_clear_for_user(self) -> None:
        self.moderation.add_warn(GUILD, 1, 99)
        self.moderation.add_warn(GUILD + 1, 1, 99)
        self.assertEqual(self.moderation.clear_for_user(1, GUILD), 2)
        self.assertEqual(self.moderation.count_warns(GUILD + 1, 1), 1)

    def test_permanent_blacklist(self) -> None:
        state = self.moderation.set_blacklist(5, reason="abuse", author_id=99)
        self.assertFalse(state.temporary)
        self.assertEqual(state.type, "permanent")
        self.assertIsNone(state.remaining_ms)
        self.clock.now += 10**6
        self.assertIsNotNone(self.moderation.is_blacklisted(5))

        self.assertTrue(self.moderation.remove_blacklist(5, author_id=99))
        self.assertFalse(self.moderation.remove_blacklist(5))
        self.assertIsNone(self.moderation.is_blacklisted(5))
        self.assertEqual([s.type for s in self.moderation.list_sanctions(5)], ["unbl", "bl"])

    def test_temporary_blacklist_expires(self) -> None:
        state = self.moderation.set_blacklist(6, duration_ms=60_000)
        self.assertTrue(state.temporary)
        self.assertEqual(state.remaining_ms, 60_000)
        self.clock.now += 30
        self.assertEqual(self.moderation.is_blacklisted(6).remaining_ms, 30_000)
        self.clock.now += 30
        self.assertIsNone(self.moderation.is_blacklisted(6))
        self.assertEqual(self.moderation.list_blacklist(), [])
        (sanction,) = self.moderation.list_sanctions(6)
        self.assertEqual((sanction.type, sanction.duration_ms), ("tempbl", 60_000))


if __name__ == "__main__":
    unittest.main()
