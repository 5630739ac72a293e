"""
Customer Notification Service

Best-effort delivery of status-change notifications. The engine only knows the
user id; the notification service resolves contact details and channels, so
messages are rendered here and handed over via an optional webhook.

Failures are logged and swallowed: a notification problem never undoes a
state transition that has already been committed.
"""
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from backoffice.config import settings


logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    """Notification templates."""
    ORDER_PLACED = "order_placed"
    ORDER_STATUS_CHANGED = "order_status_changed"
    RETURN_REQUESTED = "return_requested"
    RETURN_APPROVED = "return_approved"
    RETURN_REJECTED = "return_rejected"
    RETURN_ITEM_RECEIVED = "return_item_received"
    RETURN_INSPECTED = "return_inspected"
    RETURN_REFUND_PROCESSING = "return_refund_processing"
    RETURN_REFUNDED = "return_refunded"
    RETURN_REFUND_FAILED = "return_refund_failed"
    RETURN_CANCELLED = "return_cancelled"


TEMPLATES = {
    NotificationType.ORDER_PLACED: (
        "Your order #{order_number} has been placed. Total: {total_amount}."
    ),
    NotificationType.ORDER_STATUS_CHANGED: (
        "Your order #{order_number} is now {status}."
    ),
    NotificationType.RETURN_REQUESTED: (
        "We received your return request #{return_number} for {product_name}. "
        "Status: {status}."
    ),
    NotificationType.RETURN_APPROVED: (
        "Your return #{return_number} has been approved. "
        "Please ship the item back before {return_deadline}."
    ),
    NotificationType.RETURN_REJECTED: (
        "Your return #{return_number} was not approved. {admin_notes}"
    ),
    NotificationType.RETURN_ITEM_RECEIVED: (
        "We have received the item for return #{return_number}. It will be inspected shortly."
    ),
    NotificationType.RETURN_INSPECTED: (
        "Inspection of return #{return_number} is complete. Your refund is being prepared."
    ),
    NotificationType.RETURN_REFUND_PROCESSING: (
        "Your refund of {refund_amount} for return #{return_number} is being processed."
    ),
    NotificationType.RETURN_REFUNDED: (
        "Your refund of {refund_amount} for return #{return_number} has been completed. "
        "Reference: {refund_reference}"
    ),
    NotificationType.RETURN_REFUND_FAILED: (
        "We could not complete the refund for return #{return_number} yet. "
        "Our team is looking into it."
    ),
    NotificationType.RETURN_CANCELLED: (
        "Your return request #{return_number} has been cancelled."
    ),
}


def render(template: NotificationType, context: Dict[str, Any]) -> str:
    text = TEMPLATES.get(template, "")
    try:
        return text.format(**context)
    except KeyError as e:
        logger.warning(f"Missing template variable: {e}")
        return text


class NotificationService:
    """
    Renders and dispatches notifications.

    Without ``NOTIFICATION_WEBHOOK_URL`` notifications are only logged.
    """

    def __init__(self, webhook_url: Optional[str] = None, timeout: Optional[float] = None):
        self.webhook_url = webhook_url if webhook_url is not None else settings.NOTIFICATION_WEBHOOK_URL
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT_SECONDS

    async def notify(
        self,
        user_id: uuid.UUID,
        template: NotificationType,
        context: Dict[str, Any],
    ) -> None:
        """Send a notification. Never raises."""
        try:
            message = render(template, context)
            logger.info(f"[NOTIFICATION] {template.value} to user {user_id}: {message[:100]}")
            if self.webhook_url:
                await self._post(user_id, template, context, message)
        except Exception as e:
            logger.error(f"Notification {template.value} to user {user_id} failed: {e}")

    async def _post(
        self,
        user_id: uuid.UUID,
        template: NotificationType,
        context: Dict[str, Any],
        message: str,
    ) -> None:
        payload = {
            "notification_id": str(uuid.uuid4()),
            "user_id": str(user_id),
            "template": template.value,
            "context": {key: str(value) for key, value in context.items()},
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.webhook_url, json=payload)
            response.raise_for_status()
