from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from ..catalog.costs import CreditCostCatalog
from ..db.base import BaseDBManager
from ..errors import ConcurrentUpdateError, InsufficientCredits
from ..logging.ledger_logger import LedgerLogger
from ..models.account import DEFAULT_SUBSCRIPTION_CAP, CreditBalance, UserCreditAccount
from ..models.base import utcnow
from ..models.credits import (
    AllocateResult,
    CreditCheckResult,
    DeductResult,
    DrainPlan,
    UsageHistory,
)
from ..models.transaction import CreditPool, CreditTransaction, TransactionType
from .notification_service import NotificationService

logger = logging.getLogger(__name__)

# Applies one operation to a working copy of the account. Returns None when
# there is nothing to write, otherwise the ledger rows to append (possibly
# none, for changes that are not ledger-affecting).
AccountMutator = Callable[[UserCreditAccount, datetime], Optional[List[CreditTransaction]]]


@dataclass
class AccountWrite:
    """Result of `CreditService.mutate_account`."""

    account: Optional[UserCreditAccount]
    at: datetime
    transactions: List[CreditTransaction] = field(default_factory=list)
    written: bool = False

    def total(self) -> int:
        return self.account.total(self.at) if self.account else 0


def split_deduction(cost: int, trial: int, topup: int) -> DrainPlan:
    """
    Split `cost` across pools in drain order: trial, then top-up, then
    subscription. The caller has already checked the total covers `cost`.
    """
    from_trial = min(cost, trial)
    remaining = cost - from_trial
    from_topup = min(remaining, topup)
    return DrainPlan(
        from_trial=from_trial,
        from_topup=from_topup,
        from_subscription=remaining - from_topup,
    )


def ledger_row(
    user_id: str,
    amount: int,
    balance_after: int,
    pool: CreditPool,
    transaction_type: TransactionType,
    description: str,
    app_key: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> CreditTransaction:
    return CreditTransaction(
        user_id=user_id,
        amount=amount,
        balance_after=balance_after,
        pool=pool,
        transaction_type=transaction_type,
        description=description,
        app_key=app_key,
        reference_id=reference_id,
    )


class CreditService:
    """
    Balance, deduction and allocation engine.

    Every write goes through `mutate_account`: read the row, apply the
    operation to a copy, then write it back conditionally on its version,
    together with the ledger rows, inside one store transaction. A version
    conflict reruns the whole read-compute-write, so sufficiency and
    headroom are always checked against the row that gets written.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        costs: CreditCostCatalog,
        notifier: Optional[NotificationService] = None,
        default_cap: int = DEFAULT_SUBSCRIPTION_CAP,
        max_retries: int = 5,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._costs = costs
        self._notifier = notifier
        self._default_cap = default_cap
        self._max_retries = max(1, max_retries)

    async def mutate_account(
        self,
        user_id: str,
        mutator: AccountMutator,
        create: bool = True,
        ledger_message: Optional[str] = None,
        app_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> AccountWrite:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._mutate_once(
                    user_id, mutator, create, ledger_message, app_key, correlation_id
                )
            except ConcurrentUpdateError:
                if attempt >= self._max_retries:
                    logger.warning(
                        "Giving up on account %s after %d conflicting writes", user_id, attempt
                    )
                    raise
                logger.info("Version conflict on account %s, retrying (%d)", user_id, attempt)

    async def _mutate_once(
        self,
        user_id: str,
        mutator: AccountMutator,
        create: bool,
        ledger_message: Optional[str],
        app_key: Optional[str],
        correlation_id: Optional[str],
    ) -> AccountWrite:
        async with self._db.transaction():
            now = utcnow()
            current = await self._db.get_account(user_id)
            if current is None:
                if not create:
                    return AccountWrite(account=None, at=now)
                current = await self._db.create_account(
                    UserCreditAccount(user_id=user_id, subscription_cap=self._default_cap)
                )

            working = current.model_copy(deep=True)
            rows = mutator(working, now)
            if rows is None:
                return AccountWrite(account=current, at=now)

            working.version = current.version + 1
            working.updated_at = now
            if rows:
                working.ledger_seq = current.ledger_seq + 1
                for index, row in enumerate(rows):
                    row.ledger_seq = working.ledger_seq
                    row.entry_index = index
                    row.created_at = now

            await self._db.update_account(working, expected_version=current.version)
            stored = [await self._db.add_transaction(row) for row in rows]

            if ledger_message and stored:
                await self._ledger.log_transaction(
                    user_id=user_id,
                    message=ledger_message,
                    details={
                        "entries": [
                            {"pool": t.pool, "type": t.transaction_type, "amount": t.amount}
                            for t in stored
                        ],
                        "new_balance": working.total(now),
                        "ledger_seq": working.ledger_seq,
                    },
                    app_key=app_key,
                    correlation_id=correlation_id,
                )
            return AccountWrite(account=working, at=now, transactions=stored, written=True)

    # Balance engine
    async def get_balance(self, user_id: str) -> CreditBalance:
        account = await self._db.get_account(user_id)
        if account is None:
            return CreditBalance(cap=self._default_cap)
        return account.to_balance(utcnow())

    async def get_account(self, user_id: str) -> Optional[UserCreditAccount]:
        return await self._db.get_account(user_id)

    # Deduction engine
    async def check_credits(self, user_id: str, app_key: str, operation: str) -> CreditCheckResult:
        cost = await self._costs.get_cost(app_key, operation)
        balance = await self.get_balance(user_id)
        return CreditCheckResult(sufficient=balance.total >= cost, cost=cost, balance=balance.total)

    async def deduct_credits(
        self,
        user_id: str,
        app_key: str,
        operation: str,
        reference_id: Optional[str] = None,
    ) -> DeductResult:
        cost = await self._costs.get_cost(app_key, operation)
        if cost == 0:
            balance = await self.get_balance(user_id)
            return DeductResult(new_balance=balance.total, transaction_id=None)

        description = f"{operation} ({app_key})"

        def apply(account: UserCreditAccount, now: datetime) -> List[CreditTransaction]:
            available = account.total(now)
            if available < cost:
                raise InsufficientCredits(required=cost, available=available)

            plan = split_deduction(cost, account.effective_trial_balance(now), account.topup_balance)
            account.trial_balance -= plan.from_trial
            account.topup_balance -= plan.from_topup
            account.subscription_balance -= plan.from_subscription
            account.lifetime_spent += cost

            rows: List[CreditTransaction] = []
            running = available
            for pool, amount in (
                (CreditPool.TRIAL, plan.from_trial),
                (CreditPool.TOPUP, plan.from_topup),
                (CreditPool.SUBSCRIPTION, plan.from_subscription),
            ):
                if amount <= 0:
                    continue
                running -= amount
                rows.append(
                    ledger_row(
                        user_id,
                        -amount,
                        running,
                        pool,
                        TransactionType.USAGE_DEDUCTION,
                        description,
                        app_key=app_key,
                        reference_id=reference_id,
                    )
                )
            return rows

        try:
            write = await self.mutate_account(
                user_id,
                apply,
                create=False,
                ledger_message="Credits deducted",
                app_key=app_key,
                correlation_id=reference_id,
            )
            if write.account is None:
                raise InsufficientCredits(required=cost, available=0)
        except InsufficientCredits as exc:
            await self._ledger.log_error(
                message="Insufficient credits for deduction",
                details={"operation": operation, "required": exc.required, "available": exc.available},
                user_id=user_id,
                app_key=app_key,
                correlation_id=reference_id,
            )
            raise

        # Rows are in drain order, so the last one is the last pool written.
        last = write.transactions[-1]
        new_balance = last.balance_after
        if self._notifier is not None:
            await self._notifier.notify_low_credits(user_id, new_balance)
        return DeductResult(new_balance=new_balance, transaction_id=last.id)

    # Allocation engine
    async def allocate_subscription_credits(
        self,
        user_id: str,
        amount: int,
        app_key: str,
        reference_id: Optional[str] = None,
    ) -> AllocateResult:
        if amount <= 0:
            raise ValueError("amount must be positive")

        def apply(account: UserCreditAccount, now: datetime) -> Optional[List[CreditTransaction]]:
            allocated = min(amount, account.headroom())
            if allocated == 0:
                return None
            account.subscription_balance += allocated
            account.lifetime_earned += allocated
            account.last_allocated_at = now
            return [
                ledger_row(
                    user_id,
                    allocated,
                    account.total(now),
                    CreditPool.SUBSCRIPTION,
                    TransactionType.SUBSCRIPTION_ALLOCATION,
                    f"Monthly allocation ({app_key})",
                    app_key=app_key,
                    reference_id=reference_id,
                )
            ]

        write = await self.mutate_account(
            user_id,
            apply,
            ledger_message="Subscription credits allocated",
            app_key=app_key,
            correlation_id=reference_id,
        )
        if not write.transactions:
            logger.info("Subscription pool for %s is at cap; nothing allocated", user_id)
        allocated = write.transactions[0].amount if write.transactions else 0
        return AllocateResult(new_balance=write.total(), allocated=allocated)

    async def allocate_topup_credits(
        self,
        user_id: str,
        amount: int,
        pack_name: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> AllocateResult:
        result = await self._add_to_topup_pool(
            user_id,
            amount,
            TransactionType.TOPUP_PURCHASE,
            f"{pack_name or 'Credit'} top-up",
            "Top-up credits allocated",
            reference_id,
        )
        if self._notifier is not None:
            await self._notifier.notify_topup_received(user_id, amount, pack_name, result.new_balance)
        return result

    async def allocate_retention_bonus(
        self,
        user_id: str,
        amount: int,
        reference_id: Optional[str] = None,
    ) -> AllocateResult:
        return await self._add_to_topup_pool(
            user_id,
            amount,
            TransactionType.RETENTION_BONUS,
            "Retention offer bonus credits",
            "Retention bonus allocated",
            reference_id,
        )

    async def _add_to_topup_pool(
        self,
        user_id: str,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        ledger_message: str,
        reference_id: Optional[str],
    ) -> AllocateResult:
        if amount <= 0:
            raise ValueError("amount must be positive")

        def apply(account: UserCreditAccount, now: datetime) -> List[CreditTransaction]:
            account.topup_balance += amount
            account.lifetime_earned += amount
            return [
                ledger_row(
                    user_id,
                    amount,
                    account.total(now),
                    CreditPool.TOPUP,
                    transaction_type,
                    description,
                    reference_id=reference_id,
                )
            ]

        write = await self.mutate_account(
            user_id, apply, ledger_message=ledger_message, correlation_id=reference_id
        )
        return AllocateResult(new_balance=write.total(), allocated=amount)

    # History
    async def get_usage_history(self, user_id: str, limit: int = 20, offset: int = 0) -> UsageHistory:
        if limit <= 0 or offset < 0:
            raise ValueError("limit must be positive and offset non-negative")
        transactions = await self._db.get_transactions(user_id, limit=limit, offset=offset)
        total = await self._db.count_transactions(user_id)
        return UsageHistory(transactions=transactions, total=total, limit=limit, offset=offset)
