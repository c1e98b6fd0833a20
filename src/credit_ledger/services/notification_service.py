from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ..db.base import BaseDBManager
from ..models.notification import (
    NotificationEvent,
    NotificationStatus,
    NotificationType,
)
from ..notifications.queue import AsyncNotificationQueue

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Records notification events and hands them to the message queue.

    Every method here is called after the ledger write it reports on has
    committed, and never raises: a failed notification is logged and the
    caller's result stands.
    """

    def __init__(
        self,
        db: BaseDBManager,
        queue: AsyncNotificationQueue,
        low_credit_threshold: int = 10,
    ) -> None:
        self._db = db
        self._queue = queue
        self._low_credit_threshold = low_credit_threshold

    async def notify_low_credits(self, user_id: str, total: int) -> None:
        if total > self._low_credit_threshold:
            return
        await self._dispatch(
            user_id,
            NotificationType.LOW_CREDITS,
            {"current_credits": total, "threshold": self._low_credit_threshold},
        )

    async def notify_topup_received(
        self, user_id: str, credits: int, pack_name: Optional[str], new_balance: int
    ) -> None:
        await self._dispatch(
            user_id,
            NotificationType.TOPUP_RECEIVED,
            {"credits": credits, "pack_name": pack_name, "new_balance": new_balance},
        )

    async def notify_trial_started(
        self, user_id: str, app_key: str, credits: int, expires_at: datetime
    ) -> None:
        await self._dispatch(
            user_id,
            NotificationType.TRIAL_STARTED,
            {"app_key": app_key, "credits": credits, "expires_at": expires_at.isoformat()},
        )

    async def notify_trial_ending(
        self, user_id: str, app_key: Optional[str], trial_end: Optional[datetime]
    ) -> None:
        await self._dispatch(
            user_id,
            NotificationType.TRIAL_ENDING,
            {
                "app_key": app_key,
                "trial_end": trial_end.isoformat() if trial_end else None,
            },
        )

    async def notify_trial_expired(
        self, user_id: str, app_key: Optional[str], expired: int, reason: str
    ) -> None:
        await self._dispatch(
            user_id,
            NotificationType.TRIAL_EXPIRED,
            {"app_key": app_key, "expired_credits": expired, "reason": reason},
        )

    async def notify_trial_converted(
        self, user_id: str, app_key: Optional[str], merged: int, lost: int
    ) -> None:
        await self._dispatch(
            user_id,
            NotificationType.TRIAL_CONVERTED,
            {"app_key": app_key, "merged": merged, "lost": lost},
        )

    async def _dispatch(
        self,
        user_id: str,
        notification_type: NotificationType,
        payload: Dict[str, Any],
    ) -> None:
        try:
            event = NotificationEvent(
                user_id=user_id,
                notification_type=notification_type,
                payload=payload,
                status=NotificationStatus.PENDING,
            )
            event = await self._db.add_notification_event(event)
            await self._queue.enqueue(
                {
                    "notification_id": event.id,
                    "type": event.notification_type,
                    "user_id": user_id,
                    "payload": event.payload,
                }
            )
        except Exception:
            logger.exception(
                "Failed to dispatch %s notification for user %s",
                notification_type.value,
                user_id,
            )
