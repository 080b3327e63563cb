"""
Notification Fan-out
====================
Tells interested parties that an order's status changed.

Channels:
- real-time event to the owning account's live connections
- status SMS to the account's phone, when it has one

Best effort only. Every failure is caught here, logged, and returned as a
warning string; the status change that triggered the notification stands.
"""

from typing import Dict, List, Any, Optional

import structlog
from prometheus_client import Counter


logger = structlog.get_logger(__name__)

ORDER_STATUS_EVENT = "orderStatusUpdated"


notification_failures_total = Counter(
    "notification_failures_total",
    "Notification channel failures",
    ["channel"]
)


class EventPublisher:
    """Real-time push interface: deliver one event to one account."""

    async def publish(self, account_id: str, event: Dict[str, Any]) -> int:
        raise NotImplementedError


def order_status_event(order_id: str, status: str, account_id: str) -> Dict[str, Any]:
    return {
        "event": ORDER_STATUS_EVENT,
        "orderId": order_id,
        "status": status,
        "accountId": account_id
    }


class Notifier:
    """Fans a status change out to real-time listeners and SMS."""

    def __init__(self, db, publisher: Optional[EventPublisher] = None, sms_client=None):
        self.db = db
        self.publisher = publisher
        self.sms_client = sms_client

    async def notify(self, account_id: str, status: str, order_id: str) -> List[str]:
        """
        Notify the order's owner of a new status.

        Returns:
            Warnings for channels that failed (empty if all succeeded)
        """
        warnings: List[str] = []

        phone = None
        try:
            account = await self.db.get_account(account_id)
            phone = account.phone if account else None
        except Exception as e:
            notification_failures_total.labels(channel="contact_lookup").inc()
            logger.warning(
                "notification_contact_lookup_failed",
                order_id=order_id,
                error=str(e)
            )
            warnings.append("Could not look up customer contact details")

        if self.publisher is not None:
            try:
                delivered = await self.publisher.publish(
                    account_id,
                    order_status_event(order_id, status, account_id)
                )
                logger.debug(
                    "order_status_published",
                    order_id=order_id,
                    status=status,
                    listeners=delivered
                )
            except Exception as e:
                notification_failures_total.labels(channel="realtime").inc()
                logger.warning(
                    "realtime_publish_failed",
                    order_id=order_id,
                    error=str(e)
                )
                warnings.append("Real-time update could not be delivered")

        if phone and self.sms_client is not None and self.sms_client.enabled:
            try:
                if not self.sms_client.send_order_status(phone, status, order_id):
                    notification_failures_total.labels(channel="sms").inc()
                    warnings.append("Status SMS was not queued")
            except Exception as e:
                notification_failures_total.labels(channel="sms").inc()
                logger.warning(
                    "sms_enqueue_failed",
                    order_id=order_id,
                    error=str(e)
                )
                warnings.append("Status SMS could not be sent")

        return warnings
