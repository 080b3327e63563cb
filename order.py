"""
Order Module
============
Order entities and the status state machine.

State transitions:
    PENDING -> PREPARING -> READY
    PENDING -> CANCELLED
    PREPARING -> CANCELLED

Terminal states: READY, CANCELLED

"completed" is accepted as an alias of READY when parsing requests; the
stored value is always "ready".
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Any, Optional, Tuple

from errors import InvalidStatus
from money import to_money


# ============================================================================
# ORDER STATUS
# ============================================================================

class OrderStatus(Enum):
    """Order lifecycle states."""
    PENDING = "pending"        # Paid, waiting for the kitchen
    PREPARING = "preparing"    # Being made
    READY = "ready"            # Ready at the counter (terminal)
    CANCELLED = "cancelled"    # Cancelled (terminal)


STATUS_ALIASES = {
    "completed": OrderStatus.READY,
}

VALID_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PREPARING, OrderStatus.CANCELLED},
    OrderStatus.PREPARING: {OrderStatus.READY, OrderStatus.CANCELLED},
    OrderStatus.READY: set(),
    OrderStatus.CANCELLED: set(),
}


def parse_status(value: Any) -> OrderStatus:
    """
    Parse a status string case-insensitively.

    Raises:
        InvalidStatus: If the value names no known status
    """
    if not isinstance(value, str):
        raise InvalidStatus("Status must be a string")

    key = value.strip().lower()

    if key in STATUS_ALIASES:
        return STATUS_ALIASES[key]

    try:
        return OrderStatus(key)
    except ValueError:
        allowed = ", ".join(s.value for s in OrderStatus)
        raise InvalidStatus(f"Unknown status '{value}'. Expected one of: {allowed}")


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """Check the transition table."""
    return target in VALID_TRANSITIONS.get(current, set())


def new_order_id() -> str:
    return f"ord_{uuid.uuid4().hex[:12]}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# ORDER LINE
# ============================================================================

@dataclass(frozen=True)
class OrderLine:
    """
    One cart line as settled.

    unit_price is captured at order time and never recomputed.
    """
    menu_item_id: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_record(self) -> Dict[str, Any]:
        return {
            "menu_item_id": self.menu_item_id,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price)
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "OrderLine":
        return cls(
            menu_item_id=record["menu_item_id"],
            quantity=int(record["quantity"]),
            unit_price=to_money(record["unit_price"])
        )


# ============================================================================
# ORDER
# ============================================================================

@dataclass(frozen=True)
class Order:
    """
    Persisted order.

    Created atomically with its settlement; only ``status`` (and
    ``updated_at``) change afterwards, always through ``with_status``.
    """
    order_id: str
    account_id: str
    lines: Tuple[OrderLine, ...]
    subtotal: Decimal
    reward_points_redeemed: int
    reward_points_earned: int
    total: Decimal
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def with_status(self, status: OrderStatus) -> "Order":
        return replace(self, status=status, updated_at=utcnow())

    def to_record(self) -> Dict[str, Any]:
        """Row layout used by the store."""
        return {
            "id": self.order_id,
            "account_id": self.account_id,
            "lines": [line.to_record() for line in self.lines],
            "subtotal": str(self.subtotal),
            "reward_points_redeemed": self.reward_points_redeemed,
            "reward_points_earned": self.reward_points_earned,
            "total": str(self.total),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat()
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Order":
        """Rebuild from a store row. Legacy "completed" rows load as READY."""
        return cls(
            order_id=record["id"],
            account_id=record["account_id"],
            lines=tuple(OrderLine.from_record(r) for r in record["lines"]),
            subtotal=to_money(record["subtotal"]),
            reward_points_redeemed=int(record["reward_points_redeemed"]),
            reward_points_earned=int(record["reward_points_earned"]),
            total=to_money(record["total"]),
            status=parse_status(record["status"]),
            created_at=_parse_timestamp(record["created_at"]),
            updated_at=_parse_timestamp(record.get("updated_at") or record["created_at"])
        )

    def to_dict(self, item_names: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        API representation.

        Args:
            item_names: Current display names by menu item id, resolved at
                read time. Lines whose item no longer exists show
                "Unavailable item".
        """
        item_names = item_names or {}

        return {
            "id": self.order_id,
            "accountId": self.account_id,
            "items": [
                {
                    "menuItemId": line.menu_item_id,
                    "name": item_names.get(line.menu_item_id, "Unavailable item"),
                    "quantity": line.quantity,
                    "price": float(line.unit_price)
                }
                for line in self.lines
            ],
            "subtotal": float(self.subtotal),
            "rewardPointsRedeemed": self.reward_points_redeemed,
            "rewardPointsEarned": self.reward_points_earned,
            "total": float(self.total),
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat()
        }


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    # Postgres may emit a trailing Z
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def menu_item_ids(orders: List[Order]) -> set:
    """Every menu item id referenced by the given orders."""
    return {line.menu_item_id for order in orders for line in order.lines}
