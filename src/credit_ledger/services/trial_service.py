from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from ..models.account import UserCreditAccount
from ..models.credits import AllocateResult, MergeResult
from ..models.transaction import CreditPool, CreditTransaction, TransactionType
from .credit_service import CreditService, ledger_row
from .notification_service import NotificationService

logger = logging.getLogger(__name__)


class TrialService:
    """
    Trial credit lifecycle: grant, expire, and merge into the subscription
    pool on conversion to paid.

    Expire and merge act on the stored trial balance, not the effective
    one: the conversion invoice normally lands after the trial end, and an
    expiry sweep by definition runs once the trial has lapsed.
    """

    def __init__(
        self,
        credits: CreditService,
        notifier: Optional[NotificationService] = None,
    ) -> None:
        self._credits = credits
        self._notifier = notifier

    async def allocate_trial_credits(
        self,
        user_id: str,
        amount: int,
        app_key: str,
        trial_ends_at: datetime,
        reference_id: Optional[str] = None,
    ) -> AllocateResult:
        if amount <= 0:
            raise ValueError("amount must be positive")
        if trial_ends_at.tzinfo is None:
            # Naive timestamps are taken as UTC
            trial_ends_at = trial_ends_at.replace(tzinfo=timezone.utc)

        def apply(account: UserCreditAccount, now: datetime) -> List[CreditTransaction]:
            # One trial grant at a time: overwrite, never add
            account.trial_balance = amount
            account.trial_expires_at = trial_ends_at
            account.lifetime_earned += amount
            return [
                ledger_row(
                    user_id,
                    amount,
                    account.total(now),
                    CreditPool.TRIAL,
                    TransactionType.TRIAL_ALLOCATION,
                    f"Trial credits ({app_key})",
                    app_key=app_key,
                    reference_id=reference_id,
                )
            ]

        write = await self._credits.mutate_account(
            user_id,
            apply,
            ledger_message="Trial credits allocated",
            app_key=app_key,
            correlation_id=reference_id,
        )
        if self._notifier is not None:
            await self._notifier.notify_trial_started(user_id, app_key, amount, trial_ends_at)
        return AllocateResult(new_balance=write.total(), allocated=amount)

    async def expire_trial_credits(
        self,
        user_id: str,
        app_key: Optional[str] = None,
        reason: str = "trial ended",
    ) -> int:
        """Zero the trial pool; returns the number of credits expired."""

        def apply(account: UserCreditAccount, now: datetime) -> Optional[List[CreditTransaction]]:
            expired = account.trial_balance
            if expired == 0:
                return None
            account.trial_balance = 0
            account.trial_expires_at = None
            # An audit of a loss, not a spend: lifetime_spent stays put
            return [
                ledger_row(
                    user_id,
                    -expired,
                    account.total(now),
                    CreditPool.TRIAL,
                    TransactionType.TRIAL_EXPIRY,
                    f"Trial credits expired: {reason}",
                    app_key=app_key,
                )
            ]

        write = await self._credits.mutate_account(
            user_id,
            apply,
            create=False,
            ledger_message="Trial credits expired",
            app_key=app_key,
        )
        if not write.transactions:
            return 0

        expired = -write.transactions[0].amount
        logger.info("Expired %d trial credits for %s (%s)", expired, user_id, reason)
        if self._notifier is not None:
            await self._notifier.notify_trial_expired(user_id, app_key, expired, reason)
        return expired

    async def merge_trial_credits(self, user_id: str, app_key: Optional[str] = None) -> MergeResult:
        """
        Move the trial pool into the subscription pool, up to the cap. The
        excess is lost and recorded as its own overflow row, so credited and
        lost amounts stay separately auditable.
        """
        outcome = MergeResult()

        def apply(account: UserCreditAccount, now: datetime) -> Optional[List[CreditTransaction]]:
            trial = account.trial_balance
            if trial == 0:
                return None
            merged = min(trial, account.headroom())
            lost = trial - merged
            account.trial_balance = 0
            account.trial_expires_at = None
            account.subscription_balance += merged
            outcome.merged, outcome.lost = merged, lost

            rows: List[CreditTransaction] = []
            if merged > 0:
                rows.append(
                    ledger_row(
                        user_id,
                        merged,
                        account.total(now),
                        CreditPool.SUBSCRIPTION,
                        TransactionType.TRIAL_MERGE,
                        f"Trial credits merged on conversion ({app_key})",
                        app_key=app_key,
                    )
                )
            if lost > 0:
                rows.append(
                    ledger_row(
                        user_id,
                        -lost,
                        account.total(now),
                        CreditPool.TRIAL,
                        TransactionType.TRIAL_MERGE_OVERFLOW,
                        f"Trial credits lost on merge (cap reached) ({app_key})",
                        app_key=app_key,
                    )
                )
            return rows

        write = await self._credits.mutate_account(
            user_id,
            apply,
            create=False,
            ledger_message="Trial credits merged",
            app_key=app_key,
        )
        if not write.written:
            return MergeResult()

        if outcome.lost:
            logger.info("Trial merge for %s hit the cap; %d credits lost", user_id, outcome.lost)
        if self._notifier is not None:
            await self._notifier.notify_trial_converted(user_id, app_key, outcome.merged, outcome.lost)
        return outcome
