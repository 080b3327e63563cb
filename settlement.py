"""
Settlement and Order Placement
==============================
Turns a priced cart into a persisted order and its wallet/points effects.

Settlement
    Checks the account, then hands the order to the store's atomic settle
    primitive, which repeats the checks against the committed balance
    while holding the account lock.

OrderService
    Request-level flow: catalog snapshot -> pricing -> settlement, plus
    order history and single-order reads.
"""

from dataclasses import dataclass
from typing import Dict, List, Any, Optional, Sequence, Tuple

import structlog
from prometheus_client import Counter, Histogram

from errors import (
    AccountNotFound,
    Forbidden,
    InsufficientFunds,
    InsufficientPoints,
    InvalidCart,
    OrderCoreError,
    OrderNotFound,
)
from menu import Catalog
from order import Order, OrderLine, new_order_id, menu_item_ids
from pricing import LoyaltyPolicy, PricedCart, price_cart
from wallet import Account


logger = structlog.get_logger(__name__)


# ============================================================================
# METRICS
# ============================================================================

orders_placed_total = Counter(
    "orders_placed_total",
    "Orders settled successfully"
)
orders_rejected_total = Counter(
    "orders_rejected_total",
    "Order placements rejected",
    ["reason"]
)
order_value = Histogram(
    "order_value",
    "Settled order totals",
    buckets=[50, 100, 200, 500, 1000, 2000, 5000]
)


# ============================================================================
# RESULTS
# ============================================================================

@dataclass(frozen=True)
class OrderReceipt:
    """What the customer sees after a successful order."""
    order: Order
    priced: PricedCart
    account: Account

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order.order_id,
            "status": self.order.status.value,
            "items": [line.to_dict() for line in self.priced.lines],
            "subtotal": float(self.priced.subtotal),
            "redeemPoints": self.priced.redeem_points,
            "discount": float(self.priced.discount),
            "pointsEarned": self.priced.points_earned,
            "total": float(self.priced.total),
            "wallet": self.account.wallet_snapshot(),
            "createdAt": self.order.created_at.isoformat()
        }


# ============================================================================
# SETTLEMENT
# ============================================================================

class Settlement:
    """Atomically persists an order and applies its balance effects."""

    def __init__(self, db):
        self.db = db

    async def settle(self, account_id: str, priced: PricedCart) -> Tuple[Order, Account]:
        """
        Settle a priced cart for an account.

        Returns:
            (persisted order, updated account)

        Raises:
            AccountNotFound: Unknown account
            InsufficientPoints: Redemption exceeds the point balance
            InsufficientFunds: Wallet balance below the order total
        """
        account = await self.db.get_account(account_id)
        if account is None:
            raise AccountNotFound()

        if priced.redeem_points > account.reward_points:
            raise InsufficientPoints(
                "You don't have enough reward points for this redemption"
            )

        if account.wallet_balance < priced.total:
            raise InsufficientFunds(
                "Insufficient wallet balance, please add funds and try again"
            )

        order = Order(
            order_id=new_order_id(),
            account_id=account_id,
            lines=tuple(
                OrderLine(
                    menu_item_id=line.menu_item_id,
                    quantity=line.quantity,
                    unit_price=line.unit_price
                )
                for line in priced.lines
            ),
            subtotal=priced.subtotal,
            reward_points_redeemed=priced.redeem_points,
            reward_points_earned=priced.points_earned,
            total=priced.total
        )

        # The store re-validates against the committed balance
        updated = await self.db.settle_order(order)

        logger.info(
            "order_settled",
            order_id=order.order_id,
            account_id=account_id,
            lines=len(order.lines),
            redeemed=order.reward_points_redeemed,
            earned=order.reward_points_earned
        )

        return order, updated


# ============================================================================
# ORDER SERVICE
# ============================================================================

class OrderService:
    """Order placement and order reads."""

    def __init__(self, db, policy: Optional[LoyaltyPolicy] = None):
        self.db = db
        self.catalog = Catalog(db)
        self.settlement = Settlement(db)
        self.policy = policy or LoyaltyPolicy()

    async def place_order(
        self,
        account_id: str,
        items: Sequence[Dict[str, Any]],
        redeem_points: Any = 0
    ) -> OrderReceipt:
        """
        Price and settle a cart.

        Args:
            account_id: Authenticated account placing the order
            items: [{"menuItemId": str, "quantity": int}, ...]
            redeem_points: Reward points to spend on this order

        Raises:
            InvalidCart, InvalidRedemption, AccountNotFound,
            InsufficientPoints, InsufficientFunds, StoreUnavailable
        """
        try:
            cart = _parse_cart(items)
            snapshot = await self.catalog.snapshot(item_id for item_id, _ in cart)
            priced = price_cart(cart, redeem_points, snapshot, self.policy)
            order, account = await self.settlement.settle(account_id, priced)

        except OrderCoreError as e:
            orders_rejected_total.labels(reason=e.kind).inc()
            logger.info("order_rejected", account_id=account_id, reason=e.kind)
            raise

        orders_placed_total.inc()
        order_value.observe(float(order.total))

        return OrderReceipt(order=order, priced=priced, account=account)

    async def history(self, requester: Account) -> List[Dict[str, Any]]:
        """
        Orders visible to the requester, most-recent-first.

        Admins see every order. Line names come from the current menu, so a
        renamed item shows its new name; prices stay as settled.
        """
        account_id = None if requester.is_admin else requester.account_id
        orders = await self.db.list_orders(account_id)

        names = await self.item_names(orders)
        return [order.to_dict(names) for order in orders]

    async def get_order(self, requester: Account, order_id: str) -> Dict[str, Any]:
        """
        One order, for its owner or an admin.

        Raises:
            OrderNotFound: Unknown order
            Forbidden: Requester is neither owner nor admin
        """
        order = await self.db.get_order(order_id)
        if order is None:
            raise OrderNotFound()

        if order.account_id != requester.account_id and not requester.is_admin:
            raise Forbidden("You can only view your own orders")

        names = await self.item_names([order])
        return order.to_dict(names)

    async def item_names(self, orders: List[Order]) -> Dict[str, str]:
        ids = menu_item_ids(orders)
        if not ids:
            return {}
        items = await self.catalog.snapshot(ids)
        return {item_id: item.name for item_id, item in items.items()}


def _parse_cart(items: Any) -> List[Tuple[str, Any]]:
    """Turn request lines into (menu_item_id, quantity) pairs."""
    if not isinstance(items, (list, tuple)):
        raise InvalidCart("Items must be a list")

    cart = []
    for entry in items:
        if not isinstance(entry, dict):
            raise InvalidCart("Each item must be an object")

        item_id = entry.get("menuItemId") or entry.get("menu_item_id")
        if not item_id or not isinstance(item_id, str):
            raise InvalidCart("Each item needs a menuItemId")

        cart.append((item_id, entry.get("quantity")))

    return cart
