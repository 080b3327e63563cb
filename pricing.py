"""
Pricing Engine
==============
Pure cart pricing: subtotal, redemption discount, total and points earned.

No I/O and no hidden state. Same inputs always produce the same PricedCart.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import Dict, List, Any, Mapping, Sequence, Tuple

from errors import InvalidCart, InvalidRedemption
from menu import MenuItem
from money import ZERO, to_money


# Per cart line; keeps line totals inside exact Decimal range
MAX_QUANTITY = 1000


@dataclass(frozen=True)
class LoyaltyPolicy:
    point_value: Decimal = Decimal("0.5")
    earn_rate: Decimal = Decimal("0.1")
    max_redeem_points: int = 100

    @classmethod
    def from_config(cls, loyalty_config) -> "LoyaltyPolicy":
        return cls(
            point_value=loyalty_config.point_value,
            earn_rate=loyalty_config.earn_rate,
            max_redeem_points=loyalty_config.max_redeem_points
        )


@dataclass(frozen=True)
class PricedLine:
    menu_item_id: str
    name: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "menuItemId": self.menu_item_id,
            "name": self.name,
            "quantity": self.quantity,
            "price": float(self.unit_price)
        }


@dataclass(frozen=True)
class PricedCart:
    lines: Tuple[PricedLine, ...]
    subtotal: Decimal
    redeem_points: int
    discount: Decimal
    total: Decimal
    points_earned: int


def _is_int(value: Any) -> bool:
    # bool is an int subclass; True is not a quantity
    return isinstance(value, int) and not isinstance(value, bool)


def price_cart(
    cart: Sequence[Tuple[str, int]],
    redeem_points: Any,
    catalog: Mapping[str, MenuItem],
    policy: LoyaltyPolicy = LoyaltyPolicy()
) -> PricedCart:
    """
    Price a cart against a catalog snapshot.

    Args:
        cart: (menu_item_id, quantity) pairs in cart order
        redeem_points: Reward points the customer wants to spend
        catalog: Snapshot of menu items by id
        policy: Point value, earn rate and redemption cap

    Returns:
        PricedCart with frozen unit prices

    Raises:
        InvalidCart: Empty cart, bad or oversized quantity, unknown or
            unavailable item
        InvalidRedemption: Non-integer, negative or over-cap redemption
    """
    if not cart:
        raise InvalidCart("Cart is empty")

    if not _is_int(redeem_points) or redeem_points < 0:
        raise InvalidRedemption("Reward points to redeem must be a non-negative whole number")

    if redeem_points > policy.max_redeem_points:
        raise InvalidRedemption(
            f"At most {policy.max_redeem_points} reward points can be redeemed per order"
        )

    lines: List[PricedLine] = []

    for item_id, quantity in cart:
        if not _is_int(quantity) or quantity <= 0:
            raise InvalidCart("Quantities must be positive whole numbers")

        if quantity > MAX_QUANTITY:
            raise InvalidCart(f"At most {MAX_QUANTITY} of an item can be ordered at once")

        item = catalog.get(item_id)
        if item is None:
            raise InvalidCart(f"Menu item {item_id} does not exist")

        if not item.available:
            raise InvalidCart(f"{item.name} is currently unavailable")

        lines.append(PricedLine(
            menu_item_id=item.item_id,
            name=item.name,
            quantity=quantity,
            unit_price=item.price
        ))

    subtotal = to_money(sum((line.line_total for line in lines), ZERO))
    discount = to_money(redeem_points * policy.point_value)
    total = max(ZERO, subtotal - discount)
    points_earned = int((total * policy.earn_rate).to_integral_value(rounding=ROUND_FLOOR))

    return PricedCart(
        lines=tuple(lines),
        subtotal=subtotal,
        redeem_points=redeem_points,
        discount=discount,
        total=total,
        points_earned=points_earned
    )
