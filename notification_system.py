# notification_system.py
"""
Best-effort notification dispatcher for order, payment and rental events.

Each notification is stored as an inbox record and then dispatched to every
requested channel. A failing channel is recorded in the record's
delivery status and never stops the others. `send` never raises: callers
get the stored record back, or None if storing it failed.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from db import get_db
from utils import generate_id

logger = logging.getLogger("notifications")


# =====================================
# ENUMS
# =====================================

class NotificationType(str, Enum):
    ORDER_CONFIRMATION = "order_confirmation"
    STATUS_UPDATE = "status_update"
    ASSIGNMENT_NOTIFICATION = "assignment_notification"
    SERVICE_REQUEST = "service_request"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILURE = "payment_failure"


class NotificationChannel(str, Enum):
    PUSH = "push"
    EMAIL = "email"
    SMS = "sms"


DEFAULT_CHANNELS: List[NotificationChannel] = [NotificationChannel.PUSH, NotificationChannel.EMAIL]


# =====================================
# TEMPLATES
# =====================================

NOTIFICATION_TEMPLATES = {
    "order_created": {
        "title": "New Order Created",
        "message": "Your order for {product_name} has been created. Please proceed to payment."
    },
    "status_updated": {
        "title": "Order Status Updated",
        "message": "Your order status has been updated to {status}."
    },
    "agent_assigned_customer": {
        "title": "Service Agent Assigned",
        "message": "A service agent has been assigned to your order. They will contact you soon for installation."
    },
    "agent_assigned_agent": {
        "title": "New Order Assignment",
        "message": "You have been assigned to a new {order_type} order for {product_name}."
    },
    "order_available": {
        "title": "New Order Available",
        "message": "A new {order_type} order for {product_name} is available for assignment in your area."
    },
    "installation_scheduled": {
        "title": "Installation Date Scheduled",
        "message": "Your installation has been scheduled for {installation_date}."
    },
    "payment_success": {
        "title": "Payment Successful",
        "message": "Your payment for order #{order_id} has been received successfully. We will assign a service agent soon."
    },
    "payment_failed": {
        "title": "Payment Failed",
        "message": "Your payment for order #{order_id} could not be verified. Please try again."
    },
    "rental_started": {
        "title": "Rental Started",
        "message": (
            "Your rental for {product_name} has been activated. The minimum tenure period is "
            "{tenure_months} months, ending on {period_end}."
        )
    },
}


def render_template(template_key: str, template_vars: Dict[str, Any]) -> Dict[str, str]:
    """Format a template into `{"title": ..., "message": ...}`."""
    template = NOTIFICATION_TEMPLATES.get(template_key)
    if not template:
        logger.error(f"Unknown notification template: {template_key}")
        raise ValueError(f"Unknown notification template: {template_key}")
    try:
        return {
            "title": template["title"].format(**template_vars),
            "message": template["message"].format(**template_vars),
        }
    except KeyError as e:
        logger.error(f"Missing variable {e} for notification template {template_key}")
        raise ValueError(f"Missing template variable: {e} for {template_key}") from e


# =====================================
# NOTIFICATION SYSTEM CLASS
# =====================================

class NotificationSystem:
    """
    Stores and dispatches user notifications.
    """

    def __init__(self, db):
        self.db = db
        logger.debug("NotificationSystem initialized")

    def _normalize_channels(
        self,
        channels: Optional[Sequence[Union[str, NotificationChannel]]]
    ) -> List[NotificationChannel]:
        if not channels:
            return list(DEFAULT_CHANNELS)

        normalized: List[NotificationChannel] = []
        for ch in channels:
            try:
                channel = ch if isinstance(ch, NotificationChannel) else NotificationChannel(str(ch).lower())
            except ValueError:
                logger.warning(f"Unknown notification channel specified: {ch}. Skipping.")
                continue
            if channel not in normalized:
                normalized.append(channel)
        return normalized or list(DEFAULT_CHANNELS)

    async def send(
        self,
        user_id: str,
        title: str,
        body: str,
        notification_type: Union[str, NotificationType],
        channels: Optional[Sequence[Union[str, NotificationChannel]]] = None,
        related_entity_id: Optional[str] = None,
        related_entity_kind: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Store a notification for `user_id` and dispatch it to each channel.

        Returns:
            The stored notification document, or None if it could not be stored.
        """
        try:
            normalized_channels = self._normalize_channels(channels)
            doc = {
                "notification_id": generate_id("ntf"),
                "user_id": user_id,
                "title": title,
                "message": body,
                "type": NotificationType(notification_type).value,
                "channels": [c.value for c in normalized_channels],
                "related_entity_id": related_entity_id,
                "related_entity_kind": related_entity_kind,
                "read": False,
                "created_at": datetime.now(timezone.utc),
                "delivery_status": {},
            }
            doc["_id"] = await self.db.insert_notification(doc)

            delivery_status = await self._dispatch(user_id, doc, normalized_channels)
            await self.db.update_notification(doc["notification_id"], {"delivery_status": delivery_status})
            doc["delivery_status"] = delivery_status

            logger.info(f"Notification ({doc['type']}) sent to {user_id}")
            return doc
        except Exception as e:
            logger.error(f"Failed to send notification to {user_id}: {e}", exc_info=True)
            return None

    async def _dispatch(
        self,
        user_id: str,
        doc: Dict[str, Any],
        channels: List[NotificationChannel]
    ) -> Dict[str, Any]:
        """Hand the notification to every channel and record the outcome of each."""
        status: Dict[str, Any] = {"sent_all": True, "channels": {}}
        results = await asyncio.gather(
            *(self._deliver(ch, user_id, doc) for ch in channels),
            return_exceptions=True
        )
        for ch, result in zip(channels, results):
            if isinstance(result, Exception):
                logger.error(f"Error sending notification via {ch.value} to {user_id}: {result}")
                status["sent_all"] = False
                status["channels"][ch.value] = f"failed: {result}"
            else:
                status["channels"][ch.value] = result
        return status

    async def _deliver(self, channel: NotificationChannel, user_id: str, doc: Dict[str, Any]) -> str:
        """
        Channel transports (FCM push, SMTP, SMS gateway) are external; the
        stored record is the hand-off point they consume.
        """
        logger.debug(f"Queued {channel.value} notification '{doc['title']}' for {user_id}")
        return "queued"


# =====================================
# SINGLETON INSTANCE
# =====================================

_notification_instance: Optional[NotificationSystem] = None
_notification_lock = asyncio.Lock()


async def get_notification_system() -> NotificationSystem:
    """Asynchronous singleton factory for the NotificationSystem."""
    global _notification_instance
    if _notification_instance is None:
        async with _notification_lock:
            if _notification_instance is None:
                _notification_instance = NotificationSystem(await get_db())
    return _notification_instance
