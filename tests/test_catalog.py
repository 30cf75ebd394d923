import json
import tempfile
import unittest
from pathlib import Path

from casinobot.catalog import (
    DEFAULT_DRAW_ITEMS,
    DEFAULT_SHOP_ITEMS,
    MIN_WEIGHT,
    CatalogEntry,
    CatalogRepository,
    load_catalog_file,
    slot_for_category,
)
from casinobot.db import open_store
from casinobot.models import Reason

GUILD = 3000


class CatalogRepositoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.store = open_store(self.root / "casino.sqlite3")
        self.catalog = CatalogRepository(self.store)

    def tearDown(self) -> None:
        self.store.close()
        self._tmp.cleanup()

    def test_add_requires_a_name(self) -> None:
        result = self.catalog.add_item("draw", GUILD, {"name": "   "})
        self.assertEqual(result.reason, Reason.INVALID_NAME)
        self.assertEqual(self.catalog.list_draw_items(GUILD), [])

    def test_add_cleans_fields(self) -> None:
        item = self.catalog.add_item(
            "draw",
            GUILD,
            {"name": "  Gem ", "category": "BADGE", "weight": 0, "role_id": "<@&42>"},
            created_by="55",
        ).get("item")
        self.assertEqual(item.name, "Gem")
        self.assertEqual(item.category, "badge")
        self.assertEqual(item.reward_type, "coins")
        self.assertEqual(item.weight, MIN_WEIGHT)
        self.assertEqual(item.role_id, 42)
        self.assertEqual(item.created_by, "55")

        shop = self.catalog.add_item("shop", GUILD, {"name": "Hat", "price": -10}).get("item")
        self.assertEqual(shop.reward_type, "cosmetic")
        self.assertEqual(shop.price, 0)

    def test_update_patches_only_given_fields(self) -> None:
        item = self.catalog.add_item("shop", GUILD, {"name": "Hat", "price": 500, "emoji": "🎩"}).get("item")
        result = self.catalog.update_item("shop", GUILD, item.id, {"price": 900, "enabled": False})
        updated = result.get("item")
        self.assertEqual(updated.price, 900)
        self.assertFalse(updated.enabled)
        self.assertEqual(updated.name, "Hat")
        self.assertEqual(updated.emoji, "🎩")
        self.assertEqual(self.catalog.list_shop_items(GUILD, enabled_only=True), [])
        self.assertEqual(self.catalog.update_item("shop", GUILD, 999, {}).reason, Reason.NOT_FOUND)
        self.assertEqual(self.catalog.update_item("shop", GUILD, item.id, {"name": ""}).reason, Reason.INVALID_NAME)

    def test_items_are_scoped_per_guild_and_kind(self) -> None:
        item = self.catalog.add_item("draw", GUILD, {"name": "Gem"}).get("item")
        self.assertIsNone(self.catalog.get_draw_item(GUILD + 1, item.id))
        self.assertIsNone(self.catalog.get_item("bogus", GUILD, item.id))
        self.assertIsNone(self.catalog.get_draw_item(GUILD, "abc"))

    def test_list_orders_by_sort_order(self) -> None:
        self.catalog.add_item("draw", GUILD, {"name": "Late", "sort_order": 50})
        self.catalog.add_item("draw", GUILD, {"name": "Early", "sort_order": 5})
        names = [item.name for item in self.catalog.list_draw_items(GUILD)]
        self.assertEqual(names, ["Early", "Late"])

    def test_remove_cascades_inventory_and_equips(self) -> None:
        item = self.catalog.add_item("draw", GUILD, {"name": "Blue", "category": "couleur"}).get("item")
        self.assertEqual(self.catalog.add_inventory_item(GUILD, 1, "draw", item.id), 1)
        self.assertTrue(self.catalog.set_equip(GUILD, 1, "color", "draw", item.id))
        self.assertTrue(self.catalog.remove_item("draw", GUILD, item.id))
        self.assertEqual(self.catalog.list_inventory(GUILD, 1), [])
        self.assertIsNone(self.catalog.get_equip(GUILD, 1, "color"))
        self.assertFalse(self.catalog.remove_item("draw", GUILD, item.id))

    def test_seed_defaults_only_fills_empty_tables(self) -> None:
        self.catalog.add_item("shop", GUILD, {"name": "Custom", "price": 1})
        inserted = self.catalog.seed_defaults(GUILD, "1")
        self.assertEqual(inserted, {"shop": 0, "draw": len(DEFAULT_DRAW_ITEMS)})
        self.assertEqual(len(self.catalog.list_shop_items(GUILD)), 1)
        again = self.catalog.seed_defaults(GUILD, "1")
        self.assertEqual(again, {"shop": 0, "draw": 0})
        other = self.catalog.seed_defaults(GUILD + 1)
        self.assertEqual(other["shop"], len(DEFAULT_SHOP_ITEMS))

    def test_seed_defaults_uses_override_catalog(self) -> None:
        override = {"draw": [CatalogEntry("Only", reward_type="xp", reward_value="5", weight=3)]}
        self.assertEqual(self.catalog.seed_defaults(GUILD, catalog=override)["draw"], 1)
        (item,) = self.catalog.list_draw_items(GUILD)
        self.assertEqual((item.name, item.reward_type, item.weight), ("Only", "xp", 3.0))

    def test_inventory_accumulates(self) -> None:
        item = self.catalog.add_item("shop", GUILD, {"name": "Hat", "price": 10}).get("item")
        self.catalog.add_inventory_item(GUILD, 1, "shop", item.id)
        self.assertEqual(self.catalog.add_inventory_item(GUILD, 1, "SHOP", item.id, 2), 3)
        self.assertIsNone(self.catalog.add_inventory_item(GUILD, 1, "chest", item.id))
        (entry,) = self.catalog.list_inventory(GUILD, 1)
        self.assertEqual((entry.item_name, entry.quantity), ("Hat", 3))

    def test_equip_requires_ownership(self) -> None:
        item = self.catalog.add_item("draw", GUILD, {"name": "Badge", "category": "badge"}).get("item")
        self.assertEqual(self.catalog.set_equip(GUILD, 1, "badge", "draw", item.id).reason, Reason.NOT_OWNED)
        self.assertEqual(self.catalog.set_equip(GUILD, 1, "", "draw", item.id).reason, Reason.INVALID_INPUT)
        self.catalog.add_inventory_item(GUILD, 1, "draw", item.id)
        self.assertTrue(self.catalog.set_equip(GUILD, 1, "badge", "draw", item.id))
        self.assertEqual(self.catalog.list_equips(GUILD, 1)[0]["source_id"], item.id)
        self.assertTrue(self.catalog.clear_equip(GUILD, 1, "badge"))
        self.assertFalse(self.catalog.clear_equip(GUILD, 1, "badge"))

    def test_slot_for_category(self) -> None:
        self.assertEqual(slot_for_category("Couleur"), "color")
        self.assertIsNone(slot_for_category("autre"))


class CatalogFileTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_yaml_file(self) -> None:
        path = self.root / "catalog.yaml"
        path.write_text(
            "draw:\n"
            "  - name: Gold\n"
            "    reward_type: coins\n"
            "    reward_value: '900'\n"
            "    weight: 2.5\n"
            "  - reward_type: xp\n"
            "  - just a string\n",
            encoding="utf-8",
        )
        with self.assertLogs("casinobot.catalog", level="WARNING"):
            catalog = load_catalog_file(path)
        self.assertEqual(list(catalog), ["draw"])
        (entry,) = catalog["draw"]
        self.assertEqual((entry.name, entry.reward_value, entry.weight), ("Gold", "900", 2.5))

    def test_json_file(self) -> None:
        path = self.root / "catalog.json"
        path.write_text(json.dumps({"shop": [{"name": "Hat", "price": 40}]}), encoding="utf-8")
        catalog = load_catalog_file(path)
        self.assertEqual(catalog["shop"][0].price, 40)
        self.assertEqual(catalog["shop"][0].reward_type, "cosmetic")

    def test_missing_or_invalid_files(self) -> None:
        self.assertEqual(load_catalog_file(None), {})
        with self.assertLogs("casinobot.catalog", level="WARNING"):
            self.assertEqual(load_catalog_file(self.root / "absent.json"), {})
        broken = self.root / "broken.json"
        broken.write_text("{not json", encoding="utf-8")
        with self.assertLogs("casinobot.catalog", level="WARNING"):
            self.assertEqual(load_catalog_file(broken), {})
        listing = self.root / "list.yml"
        listing.write_text("- a\n- b\n", encoding="utf-8")
        with self.assertLogs("casinobot.catalog", level="WARNING"):
            self.assertEqual(load_catalog_file(listing), {})


if __name__ == "__main__":
    unittest.main()
