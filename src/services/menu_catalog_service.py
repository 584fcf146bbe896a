"""Menu catalog lookups used to price order line items."""

import json
import logging
from pathlib import Path
from typing import Any, Protocol, TypedDict

from supabase import Client

logger = logging.getLogger(__name__)


class MenuModifier(TypedDict):
    """Priced option a customer may add to a menu item."""

    name: str
    price_cents: int


class MenuItem(TypedDict):
    """Catalog entry as seen by order creation."""

    id: str
    vendor_id: str
    name: str
    price_cents: int
    available: bool
    modifiers: list[MenuModifier]


class MenuCatalog(Protocol):
    """Resolves menu item ids to current prices and vendors."""

    async def get_items(self, item_ids: list[str]) -> dict[str, MenuItem]:
        """Fetch the requested items; unknown ids are absent from the result."""
        ...


def _normalize(raw: dict[str, Any]) -> MenuItem:
    return MenuItem(
        id=str(raw["id"]),
        vendor_id=str(raw["vendor_id"]),
        name=raw["name"],
        price_cents=int(raw["price_cents"]),
        available=bool(raw.get("available", True)),
        modifiers=[
            MenuModifier(name=m["name"], price_cents=int(m.get("price_cents", 0)))
            for m in raw.get("modifiers") or []
        ],
    )


class StaticMenuCatalog:
    """Catalog held in memory, seeded from a list of item dicts or a JSON file."""

    def __init__(self, items: list[dict[str, Any]] | None = None) -> None:
        self._items: dict[str, MenuItem] = {}
        for raw in items or []:
            self.add(raw)

    @classmethod
    def from_file(cls, path: str | Path) -> "StaticMenuCatalog":
        """Load a catalog from a JSON array of menu items."""
        with open(path, encoding="utf-8") as f:
            items = json.load(f)
        logger.info("Loaded %d menu items from %s", len(items), path)
        return cls(items)

    def add(self, raw: dict[str, Any]) -> MenuItem:
        """Add or replace a menu item."""
        item = _normalize(raw)
        self._items[item["id"]] = item
        return item

    async def get_items(self, item_ids: list[str]) -> dict[str, MenuItem]:
        return {item_id: self._items[item_id] for item_id in item_ids if item_id in self._items}


class SupabaseMenuCatalog:
    """Catalog read from the ``menu_items`` table."""

    def __init__(self, client: Client) -> None:
        self.client = client

    async def get_items(self, item_ids: list[str]) -> dict[str, MenuItem]:
        if not item_ids:
            return {}
        response = (
            self.client.table("menu_items")
            .select("id, vendor_id, name, price_cents, available, modifiers")
            .in_("id", list(set(item_ids)))
            .execute()
        )
        return {str(row["id"]): _normalize(row) for row in response.data or []}
