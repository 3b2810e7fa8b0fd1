from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List

from ..models.notification import Notification


class AsyncNotificationQueue(ABC):
    """
    Abstract async outbox for user-facing messages.
    Concrete implementations hand notifications to the messaging endpoint.
    """

    @abstractmethod
    async def enqueue(self, notification: Notification) -> None:
        ...


class InMemoryNotificationQueue(AsyncNotificationQueue):
    """
    In-memory queue used for tests and as a reference implementation.
    """

    def __init__(self) -> None:
        self.messages: List[Notification] = []

    async def enqueue(self, notification: Notification) -> None:
        self.messages.append(notification)

    def drain(self, user_id: str | None = None) -> List[Notification]:
        taken = [m for m in self.messages if user_id is None or m.user_id == user_id]
        self.messages = [m for m in self.messages if m not in taken]
        return taken
