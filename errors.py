"""
Order Core Errors
=================
Typed failures raised by the order core.

Every error carries a machine-readable ``kind``, a human-readable message
safe to show a customer, and the HTTP status the server maps it to.
Messages never contain wallet amounts or credentials.
"""

from typing import Any, Dict, Optional


class OrderCoreError(Exception):
    """Base class for all structured order-core failures."""

    kind = "internal_error"
    http_status = 500
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for an error response body."""
        return {
            "success": False,
            "error": self.kind,
            "message": self.message
        }


# ============================================================================
# VALIDATION ERRORS (rejected before any store mutation)
# ============================================================================

class ValidationError(OrderCoreError):
    kind = "validation_error"
    http_status = 400
    default_message = "Invalid request"


class InvalidCart(ValidationError):
    kind = "invalid_cart"
    default_message = "Cart is invalid"


class InvalidRedemption(ValidationError):
    kind = "invalid_redemption"
    default_message = "Invalid reward point redemption"


class InvalidStatus(ValidationError):
    kind = "invalid_status"
    default_message = "Unknown order status"


class InvalidAmount(ValidationError):
    kind = "invalid_amount"
    default_message = "Amount must be a positive number"


# ============================================================================
# BUSINESS-RULE ERRORS (rejected after the authoritative re-check)
# ============================================================================

class BusinessRuleError(OrderCoreError):
    http_status = 400


class InsufficientFunds(BusinessRuleError):
    kind = "insufficient_funds"
    default_message = "Insufficient wallet balance"


class InsufficientPoints(BusinessRuleError):
    kind = "insufficient_points"
    default_message = "Insufficient reward points"


# ============================================================================
# NOT FOUND / STATE / ACCESS
# ============================================================================

class NotFoundError(OrderCoreError):
    http_status = 404


class AccountNotFound(NotFoundError):
    kind = "account_not_found"
    default_message = "Account not found"


class OrderNotFound(NotFoundError):
    kind = "order_not_found"
    default_message = "Order not found"


class InvalidTransition(OrderCoreError):
    """Requested status change is not in the transition table."""

    kind = "invalid_transition"
    http_status = 409
    default_message = "Invalid status transition"

    def __init__(self, current_status: str, target_status: str):
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Cannot move order from {current_status} to {target_status}"
        )

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["currentStatus"] = self.current_status
        return body


class Unauthenticated(OrderCoreError):
    kind = "unauthenticated"
    http_status = 401
    default_message = "Authentication required"


class Forbidden(OrderCoreError):
    kind = "forbidden"
    http_status = 403
    default_message = "Admin access required"


class StoreUnavailable(OrderCoreError):
    kind = "store_unavailable"
    http_status = 503
    default_message = "Service temporarily unavailable, please retry"


class ConcurrentUpdate(OrderCoreError):
    """The order kept changing underneath a status update; safe to retry."""

    kind = "concurrent_update"
    http_status = 409
    default_message = "The order was updated by someone else, please retry"
