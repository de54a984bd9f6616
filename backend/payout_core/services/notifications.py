"""
Best-effort user notifications for payout lifecycle events.

Delivery is an external concern: events are logged and, when
``notification_webhook_url`` is configured, posted to it. A failure here is
logged and swallowed; it never blocks or rolls back a payout transition.
"""

from collections import deque
from decimal import Decimal
from typing import Any, Deque, Dict, Optional

import httpx

from ..core.config import settings
from ..core.logging import get_logger
from ..models.payout_method import CASH_PICKUP_PROVIDER_NAMES, PayoutMethodType
from ..models.payout_request import PayoutRequest
from ..utils.clock import utcnow
from ..utils.retry import retry_async, NOTIFICATION_RETRY_CONFIG

logger = get_logger(__name__)


class NotificationService:
    """Builds and sends payout notifications."""

    def __init__(self, webhook_url: Optional[str] = None, timeout: Optional[float] = None):
        self.webhook_url = webhook_url if webhook_url is not None else settings.notification_webhook_url
        self.timeout = timeout or settings.notification_timeout_seconds
        # Recent notifications, for operators and tests.
        self.sent: Deque[Dict[str, Any]] = deque(maxlen=100)

    async def payout_requested(self, payout: PayoutRequest) -> None:
        title = "Withdrawal Requested"
        message = (
            f"Your withdrawal of {_money(payout.amount, payout.currency)} "
            f"to {payout.method_label} is being processed."
        )
        provider = _cash_pickup_provider(payout.method_type)
        if provider and payout.reference:
            details = payout.pickup_details or {}
            title = f"{provider} Cash Pickup Requested"
            message = (
                f"Your cash pickup of {_money(payout.net_amount, payout.currency)} has been requested. "
                f"Reference: {payout.reference}. Collect at any {provider} location in "
                f"{details.get('city')}, {details.get('country')} once it is ready. "
                f"Recipient: {details.get('recipient_name')}."
            )
        await self.notify(payout, "payout.requested", title, message)

    async def payout_completed(self, payout: PayoutRequest) -> None:
        event_type = "payout.completed"
        title = "Withdrawal Completed"
        message = (
            f"{_money(payout.net_amount, payout.currency)} has been sent to {payout.method_label}."
        )
        provider = _cash_pickup_provider(payout.method_type)
        if provider:
            event_type = "payout.cash_ready"
            title = f"{provider} Cash Ready for Pickup"
            message = (
                f"Your cash of {_money(payout.net_amount, payout.currency)} is ready for pickup. "
                f"Reference: {payout.reference}. Bring government-issued photo ID matching the recipient name."
            )
        await self.notify(payout, event_type, title, message)

    async def payout_failed(self, payout: PayoutRequest) -> None:
        message = f"Your withdrawal to {payout.method_label} could not be completed"
        if payout.failure_reason:
            message += f": {payout.failure_reason}"
        await self.notify(payout, "payout.failed", "Withdrawal Failed", message + ".")

    async def payout_cancelled(self, payout: PayoutRequest) -> None:
        await self.notify(
            payout,
            "payout.cancelled",
            "Withdrawal Cancelled",
            f"Your withdrawal of {_money(payout.amount, payout.currency)} was cancelled.",
        )

    async def notify(self, payout: PayoutRequest, event_type: str, title: str, message: str) -> None:
        notification = {
            "user_id": str(payout.user_id),
            "type": event_type,
            "title": title,
            "message": message,
            "reference_type": "payout",
            "reference_id": str(payout.id),
            "created_at": utcnow().isoformat(),
        }
        try:
            if self.webhook_url:
                await retry_async(
                    self._post,
                    notification,
                    config=NOTIFICATION_RETRY_CONFIG,
                )
            self.sent.append(notification)
            logger.info("Payout notification sent", extra={
                "payout_id": str(payout.id),
                "notification_type": event_type,
            })
        except Exception as e:
            logger.warning("Payout notification failed", extra={
                "payout_id": str(payout.id),
                "notification_type": event_type,
                "error": str(e),
                "error_type": type(e).__name__,
            })

    async def _post(self, notification: Dict[str, Any]) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.webhook_url, json=notification)
            response.raise_for_status()


def _cash_pickup_provider(method_type: str) -> Optional[str]:
    try:
        return CASH_PICKUP_PROVIDER_NAMES.get(PayoutMethodType(method_type))
    except ValueError:
        return None


def _money(amount: Decimal, currency: str) -> str:
    return f"{Decimal(str(amount)):,.2f} {currency}"
