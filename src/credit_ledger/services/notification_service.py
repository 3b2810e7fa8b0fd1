from __future__ import annotations

import logging

from ..models.notification import Notification, NotificationType
from ..notifications.queue import AsyncNotificationQueue


logger = logging.getLogger(__name__)


class NotificationService:
    """
    Builds user-facing messages for ledger events and hands them to the
    outbound queue.
    """

    def __init__(self, queue: AsyncNotificationQueue, low_balance_threshold: int = 0) -> None:
        self._queue = queue
        self._low_balance_threshold = low_balance_threshold

    async def notify_credits_granted(self, user_id: str, amount: int, source: str) -> None:
        await self._queue.enqueue(
            Notification(
                user_id=user_id,
                notification_type=NotificationType.CREDITS_GRANTED,
                text=f"You received {amount} additional credits from {source}!",
                payload={"amount": amount, "source": source},
            )
        )

    async def notify_low_balance(self, user_id: str, balance: int) -> bool:
        if balance > self._low_balance_threshold:
            return False
        await self._queue.enqueue(
            Notification(
                user_id=user_id,
                notification_type=NotificationType.LOW_BALANCE,
                text=f"Your balance is down to {balance} credits. Redeem a code or /collect to top up.",
                payload={"balance": balance},
            )
        )
        logger.debug("Queued low balance notice for user %s", user_id)
        return True
