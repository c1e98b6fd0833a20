from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List


class AsyncNotificationQueue(ABC):
    """
    Outbound queue for user notifications (low balance, trial lifecycle,
    top-up receipts). Delivery is the consumer's job: Redis, SQS, an email
    worker, etc.
    """

    @abstractmethod
    async def enqueue(self, payload: Dict[str, Any]) -> None:
        ...


class InMemoryNotificationQueue(AsyncNotificationQueue):
    """
    Collects messages in a list; used in tests and local development.
    """

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []

    async def enqueue(self, payload: Dict[str, Any]) -> None:
        self.messages.append(payload)

    def of_type(self, notification_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.messages if m.get("type") == notification_type]
