from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, List, Optional, Sequence

from ..models.account import UserCreditAccount
from ..models.credits import CreditCostEntry
from ..models.events import ProcessedEvent
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.subscription import AppSubscription, SubscriptionStatus
from ..models.transaction import CreditTransaction


class BaseDBManager(ABC):
    """
    Store-agnostic async manager interface for the credit ledger.

    Concrete implementations (in-memory, MongoDB, ...) implement these
    methods. Writes that must land together go through `transaction()`.
    Account rows are only ever written conditionally on their `version`.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic unit of work: roll back on exception, commit on
        success. Nested use joins the enclosing transaction.
        """
        yield

    # Account operations
    @abstractmethod
    async def get_account(self, user_id: str) -> Optional[UserCreditAccount]: ...

    @abstractmethod
    async def create_account(self, account: UserCreditAccount) -> UserCreditAccount:
        """
        Insert the row if no row exists for its user; return the stored row
        either way, so concurrent creators converge on one account.
        """
        ...

    @abstractmethod
    async def update_account(
        self, account: UserCreditAccount, expected_version: int
    ) -> UserCreditAccount:
        """
        Replace the stored row only if its version still equals
        `expected_version`; raise ConcurrentUpdateError otherwise.
        """
        ...

    @abstractmethod
    async def find_accounts_with_lapsed_trials(
        self, as_of: datetime
    ) -> Iterable[UserCreditAccount]: ...

    # Transaction log (append-only)
    @abstractmethod
    async def add_transaction(self, tx: CreditTransaction) -> CreditTransaction: ...

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[CreditTransaction]: ...

    @abstractmethod
    async def get_transactions(
        self, user_id: str, limit: int, offset: int = 0
    ) -> List[CreditTransaction]:
        """Newest first: ordered by (ledger_seq, entry_index) descending."""
        ...

    @abstractmethod
    async def count_transactions(self, user_id: str) -> int: ...

    @abstractmethod
    async def get_latest_ledger_seq(self, user_id: str) -> int:
        """Highest ledger_seq among the user's transactions, 0 if none."""
        ...

    # Credit cost catalog
    @abstractmethod
    async def get_credit_cost(
        self, app_key: str, operation: str
    ) -> Optional[CreditCostEntry]: ...

    @abstractmethod
    async def upsert_credit_cost(self, entry: CreditCostEntry) -> CreditCostEntry: ...

    # Subscriptions (synced view)
    @abstractmethod
    async def upsert_app_subscription(self, sub: AppSubscription) -> AppSubscription:
        """Insert or replace the row for (user_id, app_key)."""
        ...

    @abstractmethod
    async def get_app_subscriptions(
        self,
        user_id: str,
        statuses: Optional[Sequence[SubscriptionStatus]] = None,
    ) -> List[AppSubscription]: ...

    # Webhook idempotency
    @abstractmethod
    async def get_processed_event(self, event_id: str) -> Optional[ProcessedEvent]: ...

    @abstractmethod
    async def add_processed_event(self, event: ProcessedEvent) -> bool:
        """Record the event; return False if the id was already recorded."""
        ...

    # Customer identity
    @abstractmethod
    async def get_user_id_for_customer(self, customer_id: str) -> Optional[str]: ...

    @abstractmethod
    async def link_customer(self, customer_id: str, user_id: str) -> None: ...

    # Notifications
    @abstractmethod
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent: ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...
