"""
Menu Module
===========
Catalog records and read access for the order core.

The order core never edits menu items; it only reads prices, reward values
and availability. Catalog administration (adding items) lives here too so
that every menu record passes the same validation.
"""

import logging
import uuid
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Any, Iterable, Optional

from errors import ValidationError
from money import to_money


logger = logging.getLogger(__name__)


# Validation limits
MAX_ITEM_NAME_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 500
MAX_ITEM_PRICE = Decimal("100000.00")


class MenuCategory(Enum):
    BEVERAGES = "Beverages"
    SNACKS = "Snacks"
    DESSERTS = "Desserts"


# ============================================================================
# MENU ITEM
# ============================================================================

@dataclass(frozen=True)
class MenuItem:
    """
    Immutable menu item as seen by the order core.

    Price changes produce a new record; orders keep the price they were
    placed with.
    """
    item_id: str
    name: str
    price: Decimal
    category: MenuCategory
    reward_points: int = 0
    available: bool = True
    description: str = ""

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "MenuItem":
        """
        Build a validated item from a stored or submitted record.

        Accepts both snake_case (database rows) and camelCase (API
        payloads) keys.

        Raises:
            ValidationError: If any field is missing or out of range
        """
        if not isinstance(record, dict):
            raise ValidationError("Menu item must be an object")

        item_id = record.get("id") or record.get("item_id")
        name = (record.get("name") or "").strip()

        if not item_id:
            raise ValidationError("Menu item id is required")

        if not name or len(name) > MAX_ITEM_NAME_LENGTH:
            raise ValidationError("Menu item name is required (max 200 chars)")

        try:
            price = to_money(record.get("price"))
        except ValueError:
            raise ValidationError(f"Invalid price for {name}")

        if price < 0 or price > MAX_ITEM_PRICE:
            raise ValidationError(f"Price out of range for {name}")

        try:
            category = MenuCategory(record.get("category"))
        except ValueError:
            allowed = ", ".join(c.value for c in MenuCategory)
            raise ValidationError(f"Category must be one of: {allowed}")

        reward_points = record.get("reward_points", record.get("rewardPoints", 0))
        if isinstance(reward_points, bool) or not isinstance(reward_points, int) \
                or reward_points < 0:
            raise ValidationError(f"Reward points must be a non-negative integer for {name}")

        description = (record.get("description") or "")[:MAX_DESCRIPTION_LENGTH]

        available = record.get("available", True)
        if not isinstance(available, bool):
            raise ValidationError("available must be true or false")

        return cls(
            item_id=str(item_id),
            name=name,
            price=price,
            category=category,
            reward_points=reward_points,
            available=available,
            description=description
        )

    def with_price(self, price: Decimal) -> "MenuItem":
        """Copy of this item at a new price."""
        return replace(self, price=to_money(price))

    def to_record(self) -> Dict[str, Any]:
        """Row layout used by the store."""
        return {
            "id": self.item_id,
            "name": self.name,
            "price": str(self.price),
            "category": self.category.value,
            "reward_points": self.reward_points,
            "available": self.available,
            "description": self.description
        }

    def to_dict(self) -> Dict[str, Any]:
        """API representation."""
        return {
            "id": self.item_id,
            "name": self.name,
            "price": float(self.price),
            "category": self.category.value,
            "rewardPoints": self.reward_points,
            "available": self.available,
            "description": self.description
        }


# ============================================================================
# CATALOG (read access + administration)
# ============================================================================

class Catalog:
    """Menu access backed by the shared database handle."""

    def __init__(self, db):
        self.db = db

    async def list_available(self) -> List[MenuItem]:
        """All items currently offered, sorted by category then name."""
        items = await self.db.list_menu_items(available_only=True)
        return sorted(items, key=lambda i: (i.category.value, i.name))

    async def snapshot(self, item_ids: Iterable[str]) -> Dict[str, MenuItem]:
        """
        Read the current records for a set of item ids.

        Missing ids are simply absent from the result; the pricing engine
        decides what that means.
        """
        return await self.db.get_menu_items(set(item_ids))

    async def get_item(self, item_id: str) -> Optional[MenuItem]:
        items = await self.db.get_menu_items({item_id})
        return items.get(item_id)

    async def add_item(self, data: Dict[str, Any]) -> MenuItem:
        """
        Validate and store a new menu item.

        Raises:
            ValidationError: If the payload is not a valid item
        """
        record = dict(data)
        record["id"] = f"item_{uuid.uuid4().hex[:12]}"

        item = MenuItem.from_record(record)
        await self.db.upsert_menu_item(item)

        logger.info(f"Menu item added: {item.item_id} ({item.name})")
        return item
