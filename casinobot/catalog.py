"""Draw and shop catalogs, inventory and equipped cosmetics."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml

from .db import CasinoStore
from .models import CatalogItem, InventoryEntry, OpResult, Reason

logger = logging.getLogger("casinobot.catalog")

SOURCE_TYPES = ("shop", "draw")
REWARD_TYPES = ("coins", "xp", "draws", "cosmetic", "role", "none")
MIN_WEIGHT = 0.000001

SLOT_BY_CATEGORY: Dict[str, str] = {
    "couleur": "color",
    "decoratif": "decor",
    "badge": "badge",
}

_TABLES = {"draw": "draw_items", "shop": "shop_items"}


@dataclass(frozen=True)
class CatalogEntry:
    """One row of a default catalog (or an override file)."""

    name: str
    category: str = "autre"
    reward_type: str = "coins"
    reward_value: str = ""
    emoji: Optional[str] = None
    sort_order: int = 100
    weight: float = 1.0
    price: int = 0
    role_id: Optional[int] = None


DEFAULT_SHOP_ITEMS: Sequence[CatalogEntry] = (
    CatalogEntry("Draws x10", "autre", "draws", "10", "🎰", 10, price=30000),
    CatalogEntry("Draws x3", "autre", "draws", "3", "💰", 20, price=30000),
    CatalogEntry("XP x100", "autre", "xp", "100", "🧪", 30, price=20000),
    CatalogEntry("Draws x1", "autre", "draws", "1", "⚫", 40, price=15000),
    CatalogEntry("+snipe", "decoratif", "cosmetic", "+snipe", "🔫", 50, price=450000),
    CatalogEntry("Shadow Sovereign", "decoratif", "cosmetic", "shadow_sovereign", "🌑", 60, price=2000000),
)

DEFAULT_DRAW_ITEMS: Sequence[CatalogEntry] = (
    CatalogEntry("Blue", "couleur", "cosmetic", "blue", "🔵", 10, weight=15),
    CatalogEntry("Yellow", "couleur", "cosmetic", "yellow", "🟡", 20, weight=10),
    CatalogEntry("Purple", "couleur", "cosmetic", "purple", "🟣", 30, weight=5),
    CatalogEntry("Silver", "couleur", "cosmetic", "silver", "⚪", 40, weight=1),
    CatalogEntry("Red", "couleur", "cosmetic", "red", "🔴", 50, weight=0.55),
    CatalogEntry("Black", "couleur", "cosmetic", "black", "⚫", 60, weight=0.33),
    CatalogEntry("White", "couleur", "cosmetic", "white", "⚪", 70, weight=0.1),
    CatalogEntry("Wandering Demons", "decoratif", "cosmetic", "wandering_demons", "🧬", 110, weight=10),
    CatalogEntry("Puppeteer", "decoratif", "cosmetic", "puppeteer", "🎭", 120, weight=1),
    CatalogEntry("Sun Sabre", "decoratif", "cosmetic", "sun_sabre", "☀️", 130, weight=0.3),
    CatalogEntry("Demon Moon", "decoratif", "cosmetic", "demon_moon", "🌙", 140, weight=0.1),
    CatalogEntry("Slayer", "decoratif", "cosmetic", "slayer", "🗡️", 150, weight=4),
    CatalogEntry("Cursed Mark", "decoratif", "cosmetic", "cursed_mark", "☯️", 160, weight=0.5),
    CatalogEntry("Scarlet Ruby", "decoratif", "cosmetic", "scarlet_ruby", "🔥", 170, weight=0.15),
    CatalogEntry("Supreme Pillar", "decoratif", "cosmetic", "supreme_pillar", "❌", 180, weight=0.05),
    CatalogEntry("Broken Insignia", "badge", "cosmetic", "broken_insignia", "🛞", 210, weight=0.25),
    CatalogEntry("Black Raven", "badge", "cosmetic", "black_raven", "🦅", 220, weight=0.1),
    CatalogEntry("Crimson Cross", "badge", "cosmetic", "crimson_cross", "❌", 230, weight=0.05),
    CatalogEntry("Coins", "autre", "coins", "420", "🪙", 310, weight=20),
    CatalogEntry("Nothing", "autre", "none", "0", "🚫", 320, weight=15),
    CatalogEntry("Draws x1", "autre", "draws", "1", "💰", 330, weight=5),
    CatalogEntry("Draws x5", "autre", "draws", "5", "🎰", 340, weight=4),
    CatalogEntry("Bonus draw", "autre", "draws", "1", "⚫", 350, weight=2),
    CatalogEntry("XP x50", "autre", "xp", "50", "🧪", 360, weight=5),
    CatalogEntry("Nitro Boost", "autre", "cosmetic", "nitro_boost", "⚡", 370, weight=0.001),
    CatalogEntry("Blossom", "autre", "cosmetic", "blossom", "🌸", 380, weight=0.02),
)


def _clean_text(value: object, limit: int) -> str:
    return str(value if value is not None else "").strip()[:limit]


def _clean_category(value: object) -> str:
    return _clean_text(value, 30).lower() or "autre"


def _clean_reward_type(value: object, default: str) -> str:
    cleaned = _clean_text(value, 30).lower()
    return cleaned or default


def _clean_weight(value: object) -> float:
    try:
        parsed = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 1.0
    if parsed != parsed or parsed <= 0:
        # NaN and non-positive weights collapse to the floor
        return MIN_WEIGHT if parsed == parsed else 1.0
    return max(MIN_WEIGHT, parsed)


def _clean_int(value: object, default: int) -> int:
    try:
        return max(0, int(value))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _clean_optional_id(value: object) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        parsed = int(str(value).strip().strip("<@&>"))
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def slot_for_category(category: str) -> Optional[str]:
    return SLOT_BY_CATEGORY.get((category or "").lower())


def _entries_from_payload(raw: object, *, kind: str) -> List[CatalogEntry]:
    if not isinstance(raw, list):
        return []
    entries: List[CatalogEntry] = []
    for index, item in enumerate(raw):
        if not isinstance(item, Mapping):
            logger.warning("Skipping %s catalog entry #%s: expected an object.", kind, index)
            continue
        name = _clean_text(item.get("name"), 100)
        if not name:
            logger.warning("Skipping %s catalog entry #%s: missing name.", kind, index)
            continue
        entries.append(
            CatalogEntry(
                name=name,
                category=_clean_category(item.get("category")),
                reward_type=_clean_reward_type(item.get("reward_type"), "coins" if kind == "draw" else "cosmetic"),
                reward_value=_clean_text(item.get("reward_value"), 200),
                emoji=_clean_text(item.get("emoji"), 30) or None,
                sort_order=_clean_int(item.get("sort_order"), 100),
                weight=_clean_weight(item.get("weight", 1)),
                price=_clean_int(item.get("price"), 0),
                role_id=_clean_optional_id(item.get("role_id")),
            )
        )
    return entries


def load_catalog_file(path: Optional[Path]) -> Dict[str, List[CatalogEntry]]:
    """Load an override catalog from JSON or YAML. Missing or invalid files yield ``{}``."""
    if not path:
        return {}
    if not path.exists():
        logger.warning("Catalog file %s not found; using defaults.", path)
        return {}
    try:
        text = path.read_text(encoding="utf-8")
        if path.suffix.lower() in (".yml", ".yaml"):
            payload = yaml.safe_load(text)
        else:
            payload = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        logger.warning("Failed to parse catalog file %s: %s", path, exc)
        return {}
    if not isinstance(payload, dict):
        logger.warning("Catalog file %s must contain an object.", path)
        return {}
    catalog: Dict[str, List[CatalogEntry]] = {}
    for kind in SOURCE_TYPES:
        if kind in payload:
            catalog[kind] = _entries_from_payload(payload[kind], kind=kind)
    return catalog


class CatalogRepository:
    """Admin CRUD for the draw and shop catalogs plus per-user inventory."""

    def __init__(self, store: CasinoStore) -> None:
        self.store = store

    # Reads --------------------------------------------------------------

    def get_item(self, kind: str, guild_id: int, item_id: int) -> Optional[CatalogItem]:
        table = _TABLES.get(kind)
        try:
            safe_id = int(item_id)
        except (TypeError, ValueError):
            return None
        if table is None or safe_id <= 0:
            return None
        row = self.store.fetchone(f"SELECT * FROM {table} WHERE guild_id = ? AND id = ?", (guild_id, safe_id))
        return CatalogItem.from_row(row, kind) if row else None

    def list_items(self, kind: str, guild_id: int, *, enabled_only: bool = False) -> List[CatalogItem]:
        table = _TABLES[kind]
        if enabled_only:
            sql = f"SELECT * FROM {table} WHERE guild_id = ? AND enabled = 1 ORDER BY sort_order ASC, id ASC"
        else:
            sql = f"SELECT * FROM {table} WHERE guild_id = ? ORDER BY enabled DESC, sort_order ASC, id ASC"
        return [CatalogItem.from_row(row, kind) for row in self.store.fetchall(sql, (guild_id,))]

    def get_draw_item(self, guild_id: int, item_id: int) -> Optional[CatalogItem]:
        return self.get_item("draw", guild_id, item_id)

    def get_shop_item(self, guild_id: int, item_id: int) -> Optional[CatalogItem]:
        return self.get_item("shop", guild_id, item_id)

    def list_draw_items(self, guild_id: int, *, enabled_only: bool = False) -> List[CatalogItem]:
        return self.list_items("draw", guild_id, enabled_only=enabled_only)

    def list_shop_items(self, guild_id: int, *, enabled_only: bool = False) -> List[CatalogItem]:
        return self.list_items("shop", guild_id, enabled_only=enabled_only)

    # Writes -------------------------------------------------------------

    def add_item(self, kind: str, guild_id: int, data: Mapping[str, Any], created_by: str = "system") -> OpResult:
        table = _TABLES[kind]
        name = _clean_text(data.get("name"), 100)
        if not name:
            return OpResult.failure(Reason.INVALID_NAME)
        now = self.store.now()
        columns = [
            "guild_id", "name", "category", "reward_type", "reward_value", "role_id",
            "emoji", "enabled", "sort_order", "created_by", "created_at", "updated_at",
        ]
        values: List[object] = [
            guild_id,
            name,
            _clean_category(data.get("category")),
            _clean_reward_type(data.get("reward_type"), "coins" if kind == "draw" else "cosmetic"),
            _clean_text(data.get("reward_value"), 200) or None,
            _clean_optional_id(data.get("role_id")),
            _clean_text(data.get("emoji"), 30) or None,
            0 if data.get("enabled") is False else 1,
            _clean_int(data.get("sort_order"), 100),
            str(created_by)[:30],
            now,
            now,
        ]
        if kind == "draw":
            columns.append("weight")
            values.append(_clean_weight(data.get("weight", 1)))
        else:
            columns.append("price")
            values.append(_clean_int(data.get("price"), 0))
        placeholders = ", ".join("?" for _ in columns)
        cur = self.store.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            values,
        )
        item = self.get_item(kind, guild_id, int(cur.lastrowid))
        logger.info("Added %s item #%s (%s) in guild %s", kind, item.id, item.name, guild_id)
        return OpResult.success(item=item)

    def update_item(self, kind: str, guild_id: int, item_id: int, patch: Mapping[str, Any]) -> OpResult:
        current = self.get_item(kind, guild_id, item_id)
        if current is None:
            return OpResult.failure(Reason.NOT_FOUND)
        name = _clean_text(patch["name"], 100) if patch.get("name") is not None else current.name
        if not name:
            return OpResult.failure(Reason.INVALID_NAME)
        fields: Dict[str, object] = {
            "name": name,
            "category": _clean_category(patch["category"]) if patch.get("category") is not None else current.category,
            "reward_type": (
                _clean_reward_type(patch["reward_type"], current.reward_type)
                if patch.get("reward_type") is not None
                else current.reward_type
            ),
            "reward_value": (
                _clean_text(patch["reward_value"], 200) or None
                if patch.get("reward_value") is not None
                else current.reward_value
            ),
            "role_id": _clean_optional_id(patch["role_id"]) if "role_id" in patch else current.role_id,
            "emoji": (_clean_text(patch["emoji"], 30) or None) if "emoji" in patch else current.emoji,
            "enabled": (1 if patch["enabled"] else 0) if patch.get("enabled") is not None else int(current.enabled),
            "sort_order": (
                _clean_int(patch["sort_order"], current.sort_order)
                if patch.get("sort_order") is not None
                else current.sort_order
            ),
        }
        if kind == "draw":
            fields["weight"] = _clean_weight(patch["weight"]) if patch.get("weight") is not None else current.weight
        else:
            fields["price"] = _clean_int(patch["price"], current.price) if patch.get("price") is not None else current.price
        assignments = ", ".join(f"{column} = ?" for column in fields)
        self.store.execute(
            f"UPDATE {_TABLES[kind]} SET {assignments}, updated_at = ? WHERE guild_id = ? AND id = ?",
            [*fields.values(), self.store.now(), guild_id, current.id],
        )
        return OpResult.success(item=self.get_item(kind, guild_id, current.id))

    def remove_item(self, kind: str, guild_id: int, item_id: int) -> bool:
        item = self.get_item(kind, guild_id, item_id)
        if item is None:
            return False
        with self.store.transaction() as conn:
            conn.execute(
                "DELETE FROM equips WHERE guild_id = ? AND source_type = ? AND source_id = ?",
                (guild_id, kind, item.id),
            )
            conn.execute(
                "DELETE FROM inventory WHERE guild_id = ? AND source_type = ? AND source_id = ?",
                (guild_id, kind, item.id),
            )
            cur = conn.execute(f"DELETE FROM {_TABLES[kind]} WHERE guild_id = ? AND id = ?", (guild_id, item.id))
        logger.info("Removed %s item #%s from guild %s", kind, item.id, guild_id)
        return cur.rowcount > 0

    def seed_defaults(
        self,
        guild_id: int,
        author: str = "system",
        catalog: Optional[Mapping[str, Sequence[CatalogEntry]]] = None,
    ) -> Dict[str, int]:
        """Fill empty catalogs. Tables that already hold items are left alone."""
        catalog = catalog or {}
        inserted = {"shop": 0, "draw": 0}
        defaults = {"shop": DEFAULT_SHOP_ITEMS, "draw": DEFAULT_DRAW_ITEMS}
        with self.store.transaction():
            for kind in SOURCE_TYPES:
                existing = self.store.fetchone(
                    f"SELECT COUNT(*) AS n FROM {_TABLES[kind]} WHERE guild_id = ?", (guild_id,)
                )["n"]
                if existing:
                    continue
                for entry in catalog.get(kind) or defaults[kind]:
                    self.add_item(
                        kind,
                        guild_id,
                        {
                            "name": entry.name,
                            "category": entry.category,
                            "reward_type": entry.reward_type,
                            "reward_value": entry.reward_value,
                            "emoji": entry.emoji,
                            "sort_order": entry.sort_order,
                            "weight": entry.weight,
                            "price": entry.price,
                            "role_id": entry.role_id,
                        },
                        created_by=author,
                    )
                    inserted[kind] += 1
        return inserted

    # Inventory ----------------------------------------------------------

    def add_inventory_item(
        self, guild_id: int, user_id: int, source_type: str, source_id: int, quantity: int = 1
    ) -> Optional[int]:
        """Add ``quantity`` copies and return the new quantity, or None for bad input."""
        source_type = (source_type or "").strip().lower()
        if source_type not in SOURCE_TYPES or int(source_id) <= 0:
            return None
        quantity = max(1, int(quantity))
        now = self.store.now()
        with self.store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO inventory (guild_id, user_id, source_type, source_id, quantity, acquired_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(guild_id, user_id, source_type, source_id)
                DO UPDATE SET quantity = inventory.quantity + excluded.quantity, updated_at = excluded.updated_at
                """,
                (guild_id, user_id, source_type, int(source_id), quantity, now, now),
            )
            row = conn.execute(
                """
                SELECT quantity FROM inventory
                WHERE guild_id = ? AND user_id = ? AND source_type = ? AND source_id = ?
                """,
                (guild_id, user_id, source_type, int(source_id)),
            ).fetchone()
        return int(row["quantity"])

    def has_inventory_item(self, guild_id: int, user_id: int, source_type: str, source_id: int) -> bool:
        row = self.store.fetchone(
            """
            SELECT 1 FROM inventory
            WHERE guild_id = ? AND user_id = ? AND source_type = ? AND source_id = ? AND quantity > 0
            LIMIT 1
            """,
            (guild_id, user_id, (source_type or "").lower(), int(source_id)),
        )
        return row is not None

    def list_inventory(self, guild_id: int, user_id: int) -> List[InventoryEntry]:
        rows = self.store.fetchall(
            """
            SELECT i.source_type, i.source_id, i.quantity,
                   COALESCE(s.name, d.name) AS item_name,
                   COALESCE(s.category, d.category, 'autre') AS item_category,
                   COALESCE(s.role_id, d.role_id) AS role_id,
                   COALESCE(s.emoji, d.emoji) AS emoji
            FROM inventory i
            LEFT JOIN shop_items s
              ON i.source_type = 'shop' AND s.guild_id = i.guild_id AND s.id = i.source_id
            LEFT JOIN draw_items d
              ON i.source_type = 'draw' AND d.guild_id = i.guild_id AND d.id = i.source_id
            WHERE i.guild_id = ? AND i.user_id = ? AND i.quantity > 0
            ORDER BY item_category ASC, item_name ASC, i.source_type ASC, i.source_id ASC
            """,
            (guild_id, user_id),
        )
        return [
            InventoryEntry(
                source_type=row["source_type"],
                source_id=row["source_id"],
                quantity=row["quantity"],
                item_name=row["item_name"],
                item_category=row["item_category"],
                role_id=row["role_id"],
                emoji=row["emoji"],
            )
            for row in rows
        ]

    # Equips -------------------------------------------------------------

    def set_equip(self, guild_id: int, user_id: int, slot: str, source_type: str, source_id: int) -> OpResult:
        slot = (slot or "").strip().lower()[:32]
        source_type = (source_type or "").strip().lower()
        if not slot or source_type not in SOURCE_TYPES or int(source_id) <= 0:
            return OpResult.failure(Reason.INVALID_INPUT)
        with self.store.transaction() as conn:
            if not self.has_inventory_item(guild_id, user_id, source_type, source_id):
                return OpResult.failure(Reason.NOT_OWNED)
            conn.execute(
                """
                INSERT INTO equips (guild_id, user_id, slot, source_type, source_id, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(guild_id, user_id, slot)
                DO UPDATE SET source_type = excluded.source_type, source_id = excluded.source_id,
                              updated_at = excluded.updated_at
                """,
                (guild_id, user_id, slot, source_type, int(source_id), self.store.now()),
            )
        return OpResult.success(slot=slot, source_type=source_type, source_id=int(source_id))

    def clear_equip(self, guild_id: int, user_id: int, slot: str) -> bool:
        cur = self.store.execute(
            "DELETE FROM equips WHERE guild_id = ? AND user_id = ? AND slot = ?",
            (guild_id, user_id, (slot or "").strip().lower()[:32]),
        )
        return cur.rowcount > 0

    def get_equip(self, guild_id: int, user_id: int, slot: str) -> Optional[Dict[str, Any]]:
        row = self.store.fetchone(
            "SELECT slot, source_type, source_id FROM equips WHERE guild_id = ? AND user_id = ? AND slot = ?",
            (guild_id, user_id, (slot or "").strip().lower()[:32]),
        )
        return dict(row) if row else None

    def list_equips(self, guild_id: int, user_id: int) -> List[Dict[str, Any]]:
        rows = self.store.fetchall(
            "SELECT slot, source_type, source_id FROM equips WHERE guild_id = ? AND user_id = ? ORDER BY slot",
            (guild_id, user_id),
        )
        return [dict(row) for row in rows]


__all__ = [
    "CatalogEntry",
    "CatalogRepository",
    "DEFAULT_DRAW_ITEMS",
    "DEFAULT_SHOP_ITEMS",
    "REWARD_TYPES",
    "SLOT_BY_CATEGORY",
    "SOURCE_TYPES",
    "load_catalog_file",
    "slot_for_category",
]
