from __future__ import annotations

import asyncio

from iamcore.logging import get_logger
from iamcore.service.email import EmailService

logger = get_logger(__name__)


class NotificationDispatcher:
    """Best-effort user notifications.

    ``send`` never raises: delivery problems are logged and the caller's
    already-committed state change stands.
    """

    def __init__(self, store, email: EmailService, *, timeout: float = 10.0) -> None:
        self.store = store
        self.email = email
        self.timeout = timeout

    def _deliver(self, user_id: str, title: str, message: str) -> bool:
        user = self.store.get_user(user_id)
        if not user:
            logger.info("notification_recipient_missing", user_id=user_id)
            return False
        return self.email.send_message(user.email, title, message)

    async def send(self, user_id: str, title: str, message: str, category: str = "info") -> bool:
        try:
            delivered = await asyncio.wait_for(
                asyncio.to_thread(self._deliver, user_id, title, message),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("notification_timeout", user_id=user_id, category=category)
            return False
        except Exception as exc:
            logger.warning(
                "notification_failed",
                user_id=user_id,
                category=category,
                error_type=type(exc).__name__,
            )
            return False
        logger.info(
            "notification_dispatched", user_id=user_id, category=category, delivered=delivered
        )
        return bool(delivered)
