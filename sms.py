"""
Order Status SMS
================
Twilio text messages for order status changes.

Requests only ever append to an in-process outbox; a background worker
drains it, retrying transient Twilio failures. Each (order, status) pair is
texted at most once per process.
"""

import asyncio
import hashlib
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Any, Optional

import structlog
from prometheus_client import Counter
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client


logger = structlog.get_logger(__name__)


MAX_RETRIES = 3
RETRY_DELAY = 2.0  # seconds, multiplied by the attempt number
POLL_INTERVAL = 1.0  # seconds
STOP_TIMEOUT = 10.0  # seconds a send in progress gets to finish on shutdown
MAX_PENDING = 500
DELIVERED_MEMORY = 1000

# Twilio codes that will never succeed on retry:
# 20003 auth failure, 21211 invalid "To", 21614 not a mobile number
NON_RETRYABLE_CODES = {20003, 21211, 21614}


sms_sent_total = Counter("sms_sent_total", "SMS messages accepted by Twilio")
sms_failed_total = Counter("sms_failed_total", "SMS messages that exhausted their retries")
sms_dropped_total = Counter("sms_dropped_total", "SMS messages dropped with a full outbox")


# ============================================================================
# MESSAGE COPY
# ============================================================================

def build_status_message(status: str, order_id: str, cafe_name: str = "Café Delight") -> str:
    """Customer-facing text for an order status; unknown statuses get a generic line."""
    ref = str(order_id)[-6:]
    key = (status or "").lower()

    if key == "pending":
        return (
            f"Order #{ref} received!\n"
            f"We're getting everything ready for you at {cafe_name}."
        )
    if key == "preparing":
        return (
            f"Order #{ref} is being prepared!\n"
            f"Your delicious items are on the way."
        )
    if key in ("ready", "completed"):
        return (
            f"Order #{ref} is READY!\n"
            f"Please pick it up from the counter at {cafe_name}.\n"
            f"Thank you for visiting {cafe_name}. Hope to see you again soon!"
        )
    if key == "cancelled":
        return (
            f"Order #{ref} was cancelled.\n"
            f"If this was a mistake, feel free to reorder or contact us."
        )

    return f"Order #{ref} status updated: {str(status).upper()}"


def mask_number(number: Optional[str]) -> str:
    if not number or len(number) < 4:
        return "***"
    return f"***{number[-4:]}"


# ============================================================================
# OUTBOX
# ============================================================================

@dataclass
class OutboundSMS:
    to_number: str
    body: str
    dedup_key: str = ""
    attempts: int = 0
    last_error: Optional[str] = None
    queued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if not self.dedup_key:
            digest = hashlib.sha1(f"{self.to_number}|{self.body}".encode()).hexdigest()
            self.dedup_key = digest[:16]

    def describe(self) -> Dict[str, Any]:
        """Log-safe view; the recipient number is masked."""
        return {
            "dedup_key": self.dedup_key,
            "to": mask_number(self.to_number),
            "attempts": self.attempts,
            "queued_at": self.queued_at.isoformat(),
            "last_error": self.last_error
        }


class Outbox:
    """Pending messages plus a bounded memory of delivered keys."""

    def __init__(self, capacity: int = MAX_PENDING):
        self.capacity = capacity
        self._pending: deque = deque()
        self._delivered: "OrderedDict[str, None]" = OrderedDict()

        self.delivered = 0
        self.failed = 0
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._pending)

    def seen(self, key: str) -> bool:
        return key in self._delivered or any(m.dedup_key == key for m in self._pending)

    def add(self, sms: OutboundSMS) -> bool:
        """Append a message; False for duplicates and when full."""
        if self.seen(sms.dedup_key):
            logger.debug("sms_duplicate_ignored", dedup_key=sms.dedup_key)
            return False

        if len(self._pending) >= self.capacity:
            self.dropped += 1
            sms_dropped_total.inc()
            logger.warning("sms_outbox_full", dropped=self.dropped)
            return False

        self._pending.append(sms)
        return True

    def pop(self) -> Optional[OutboundSMS]:
        return self._pending.popleft() if self._pending else None

    def requeue(self, sms: OutboundSMS):
        """Put back a message whose send was interrupted; it goes out next."""
        self._pending.appendleft(sms)

    def record_delivered(self, key: str):
        self._delivered[key] = None
        self.delivered += 1

        while len(self._delivered) > DELIVERED_MEMORY:
            self._delivered.popitem(last=False)

    def record_failed(self):
        self.failed += 1


# ============================================================================
# CLIENT
# ============================================================================

class SMSClient:
    """
    Twilio sender with a background worker.

    Without SMS enabled in configuration (or without a sender number) the
    client has no Twilio connection and refuses every message.
    """

    def __init__(
        self,
        twilio_config,
        client: Optional[Client] = None,
        retry_delay: float = RETRY_DELAY,
        poll_interval: float = POLL_INTERVAL
    ):
        self.settings = twilio_config
        self.client: Optional[Client] = client
        self.from_number: Optional[str] = twilio_config.phone_number
        self.retry_delay = retry_delay
        self.poll_interval = poll_interval

        self.outbox = Outbox()
        self._worker: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None
        self.is_running = False

        if self.client is None and twilio_config.enabled:
            try:
                self.client = Client(twilio_config.account_sid, twilio_config.auth_token)
            except Exception as e:
                logger.error("twilio_client_init_failed", error=str(e))

        logger.info("sms_client_ready", enabled=self.enabled, sender=mask_number(self.from_number))

    @property
    def enabled(self) -> bool:
        return self.client is not None and bool(self.from_number)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        if self.is_running:
            return

        self.is_running = True
        self._wakeup = asyncio.Event()
        self._worker = asyncio.create_task(self._run())

    async def stop(self, timeout: float = STOP_TIMEOUT):
        """
        Stop the worker, then deliver whatever is still pending.

        A message already being sent gets ``timeout`` seconds to finish;
        after that the worker is cancelled and the message goes back to the
        front of the outbox for the drain.
        """
        if not self.is_running:
            return

        self.is_running = False
        self._wakeup.set()

        if self._worker and not self._worker.done():
            try:
                await asyncio.wait_for(self._worker, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("sms_worker_stop_timeout", timeout=timeout)

        logger.info("sms_outbox_draining", pending=len(self.outbox))
        while len(self.outbox):
            await self.deliver_next()

    async def _run(self):
        while self.is_running:
            while len(self.outbox):
                try:
                    await self.deliver_next()
                except Exception as e:
                    logger.error("sms_worker_error", error=str(e))

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def deliver_next(self):
        """Send the oldest pending message, if any."""
        sms = self.outbox.pop()
        if sms is None:
            return

        try:
            delivered = await self._deliver(sms)
        except asyncio.CancelledError:
            self.outbox.requeue(sms)
            raise

        if delivered:
            self.outbox.record_delivered(sms.dedup_key)
            sms_sent_total.inc()
        else:
            self.outbox.record_failed()
            sms_failed_total.inc()
            logger.error("sms_undeliverable", **sms.describe())

    async def _deliver(self, sms: OutboundSMS) -> bool:
        if not self.enabled:
            return False

        loop = asyncio.get_running_loop()

        for attempt in range(1, MAX_RETRIES + 2):
            sms.attempts = attempt

            try:
                sent = await loop.run_in_executor(
                    None,
                    lambda: self.client.messages.create(
                        body=sms.body,
                        from_=self.from_number,
                        to=sms.to_number
                    )
                )
                logger.info("sms_sent", dedup_key=sms.dedup_key, sid=sent.sid, attempt=attempt)
                return True

            except TwilioRestException as e:
                sms.last_error = f"{e.code}: {e.msg}"
                logger.warning("twilio_rejected", code=e.code, attempt=attempt)

                if e.code in NON_RETRYABLE_CODES:
                    return False

            except Exception as e:
                sms.last_error = str(e)
                logger.warning("sms_send_error", error=str(e), attempt=attempt)

            if attempt <= MAX_RETRIES:
                await asyncio.sleep(self.retry_delay * attempt)

        return False

    # ------------------------------------------------------------------
    # Public API (non-blocking)
    # ------------------------------------------------------------------

    def enqueue(self, to_number: str, body: str, dedup_key: Optional[str] = None) -> bool:
        """
        Queue a text for the background worker.

        Numbers without a leading "+" get the configured default country
        code.

        Returns:
            True if queued; False when disabled, invalid, duplicate or full
        """
        if not self.enabled or not to_number or not body:
            return False

        number = self.normalize_number(to_number)
        if not _is_e164(number):
            logger.warning("sms_invalid_number", to=mask_number(number))
            return False

        return self.outbox.add(OutboundSMS(number, body, dedup_key or ""))

    def send_order_status(self, phone: str, status: str, order_id: str) -> bool:
        """Queue the status text for an order; repeated calls are no-ops."""
        body = build_status_message(status, order_id, self.settings.cafe_name)
        return self.enqueue(phone, body, dedup_key=f"order_{order_id}_{status}")

    def normalize_number(self, phone: str) -> str:
        phone = phone.strip()
        digits = "".join(c for c in phone if c.isdigit())

        if phone.startswith("+"):
            return f"+{digits}"
        return f"{self.settings.default_country_code}{digits}"

    def get_stats(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "pending": len(self.outbox),
            "delivered": self.outbox.delivered,
            "failed": self.outbox.failed,
            "dropped": self.outbox.dropped,
            "is_running": self.is_running
        }

    def is_healthy(self) -> bool:
        """Disabled SMS counts as healthy; enabled SMS needs its worker."""
        return not self.enabled or self.is_running


def _is_e164(number: str) -> bool:
    digits = number[1:]
    return number.startswith("+") and digits.isdigit() and 10 <= len(digits) <= 15
