"""
Order Status Controller
=======================
Validates and applies status changes to existing orders, then notifies.

Transitions are applied with a compare-and-set on the status the check was
made against. If another request moved the order first, the order is read
again and the check repeated, so two racing "advance" clicks can never skip
a state.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Any

import structlog
from prometheus_client import Counter

from errors import ConcurrentUpdate, InvalidTransition, OrderNotFound
from order import Order, can_transition, parse_status


logger = structlog.get_logger(__name__)

MAX_CAS_ATTEMPTS = 3


order_status_transitions_total = Counter(
    "order_status_transitions_total",
    "Order status transitions",
    ["from_state", "to_state"]
)


@dataclass(frozen=True)
class TransitionResult:
    order: Order
    warnings: List[str] = field(default_factory=list)

    def to_dict(self, item_names: Dict[str, str] = None) -> Dict[str, Any]:
        return {
            "order": self.order.to_dict(item_names),
            "warnings": list(self.warnings)
        }


class StatusController:
    """Status state machine over persisted orders."""

    def __init__(self, db, notifier=None):
        self.db = db
        self.notifier = notifier

    async def update_status(self, order_id: str, target: str) -> TransitionResult:
        """
        Move an order to a new status.

        Args:
            order_id: Order identifier
            target: Status name, case-insensitive ("completed" means ready)

        Returns:
            TransitionResult with the updated order and any notification
            warnings

        Raises:
            InvalidStatus: Unknown status name
            OrderNotFound: Unknown order
            InvalidTransition: Move not allowed from the current status
            ConcurrentUpdate: Every compare-and-set attempt lost a race while
                the move stayed allowed
        """
        target_status = parse_status(target)
        updated = None

        for _ in range(MAX_CAS_ATTEMPTS):
            order = await self.db.get_order(order_id)
            if order is None:
                raise OrderNotFound()

            if not can_transition(order.status, target_status):
                logger.warning(
                    "invalid_status_transition",
                    order_id=order_id,
                    from_state=order.status.value,
                    to_state=target_status.value
                )
                raise InvalidTransition(order.status.value, target_status.value)

            updated = await self.db.compare_and_set_status(
                order_id, order.status, target_status
            )
            if updated is not None:
                break

            logger.info("status_changed_concurrently", order_id=order_id)

        if updated is None:
            current = await self.db.get_order(order_id)
            if current is None:
                raise OrderNotFound()
            if not can_transition(current.status, target_status):
                raise InvalidTransition(current.status.value, target_status.value)

            logger.warning("status_update_contended", order_id=order_id, attempts=MAX_CAS_ATTEMPTS)
            raise ConcurrentUpdate()

        order_status_transitions_total.labels(
            from_state=order.status.value,
            to_state=updated.status.value
        ).inc()

        logger.info(
            "order_status_updated",
            order_id=order_id,
            from_state=order.status.value,
            to_state=updated.status.value
        )

        warnings = await self._notify(updated)
        return TransitionResult(order=updated, warnings=warnings)

    async def _notify(self, order: Order) -> List[str]:
        """Run the fan-out; its failures never undo the committed change."""
        if self.notifier is None:
            return []

        try:
            return await self.notifier.notify(
                order.account_id,
                order.status.value,
                order.order_id
            )
        except Exception as e:
            logger.error(
                "notification_failed",
                order_id=order.order_id,
                error=str(e),
                exc_info=True
            )
            return ["Status updated, but notifications could not be sent"]
