from __future__ import annotations

import logging
from typing import Any, Protocol

from pika.exceptions import AMQPError

from services.rabbitmq import publish_notification

logger = logging.getLogger(__name__)

TEMPLATE_EXPIRED = "subscription-expired"
TEMPLATE_EXPIRING_SOON = "subscription-expiring-soon"


class NotificationSender(Protocol):
    def send(self, user_id: int, template: str, data: dict[str, Any]) -> bool:
        ...


class QueueNotificationSender:
    """Hands notifications to the worker through RabbitMQ."""

    def send(self, user_id: int, template: str, data: dict[str, Any]) -> bool:
        try:
            publish_notification({"user_id": user_id, "template": template, "data": data})
        except AMQPError:
            logger.exception("Failed to queue %s notification for user %s", template, user_id)
            return False
        logger.info("Queued %s notification for user %s", template, user_id)
        return True
