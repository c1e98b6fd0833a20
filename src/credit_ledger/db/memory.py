from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence

from .base import BaseDBManager
from ..errors import ConcurrentUpdateError
from ..models.account import UserCreditAccount
from ..models.credits import CreditCostEntry
from ..models.events import ProcessedEvent
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.subscription import AppSubscription, SubscriptionStatus
from ..models.transaction import CreditTransaction


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Transactions are serialised with a lock and roll back to a snapshot on
    exception, so all-or-nothing behaviour can be asserted in tests. Rows
    are copied in and out so callers never alias stored state.
    """

    def __init__(self) -> None:
        self._accounts: Dict[str, UserCreditAccount] = {}
        self._transactions: List[CreditTransaction] = []
        self._costs: Dict[tuple[str, str], CreditCostEntry] = {}
        self._subscriptions: Dict[tuple[str, str], AppSubscription] = {}
        self._events: Dict[str, ProcessedEvent] = {}
        self._customers: Dict[str, str] = {}
        self._notifications: List[NotificationEvent] = []
        self._ledger: List[LedgerEntry] = []
        self._id_counter: int = 0
        self._lock = asyncio.Lock()
        self._in_transaction: ContextVar[bool] = ContextVar(
            f"inmemory_tx_{id(self)}", default=False
        )

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "_accounts": copy.deepcopy(self._accounts),
            "_transactions": copy.deepcopy(self._transactions),
            "_costs": copy.deepcopy(self._costs),
            "_subscriptions": copy.deepcopy(self._subscriptions),
            "_events": copy.deepcopy(self._events),
            "_customers": dict(self._customers),
            "_notifications": copy.deepcopy(self._notifications),
            "_ledger": copy.deepcopy(self._ledger),
            "_id_counter": self._id_counter,
        }

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._in_transaction.get():
            yield
            return

        async with self._lock:
            token = self._in_transaction.set(True)
            snapshot = self._snapshot()
            try:
                yield
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                self._in_transaction.reset(token)

    # Account operations
    async def get_account(self, user_id: str) -> Optional[UserCreditAccount]:
        account = self._accounts.get(user_id)
        return account.model_copy(deep=True) if account else None

    async def create_account(self, account: UserCreditAccount) -> UserCreditAccount:
        stored = self._accounts.setdefault(account.user_id, account.model_copy(deep=True))
        return stored.model_copy(deep=True)

    async def update_account(
        self, account: UserCreditAccount, expected_version: int
    ) -> UserCreditAccount:
        stored = self._accounts.get(account.user_id)
        if stored is None or stored.version != expected_version:
            raise ConcurrentUpdateError(account.user_id)
        self._accounts[account.user_id] = account.model_copy(deep=True)
        return account

    async def find_accounts_with_lapsed_trials(
        self, as_of: datetime
    ) -> Iterable[UserCreditAccount]:
        return [
            a.model_copy(deep=True)
            for a in self._accounts.values()
            if a.trial_balance > 0
            and a.trial_expires_at is not None
            and a.trial_expires_at <= as_of
        ]

    # Transaction log
    async def add_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        if tx.id is None:
            tx.id = self._next_id()
        self._transactions.append(tx.model_copy(deep=True))
        return tx

    async def get_transaction(self, transaction_id: str) -> Optional[CreditTransaction]:
        for tx in self._transactions:
            if tx.id == transaction_id:
                return tx.model_copy(deep=True)
        return None

    def _user_transactions(self, user_id: str) -> List[CreditTransaction]:
        # Insertion order is the tie-break, so reverse before a stable sort
        rows = [t for t in reversed(self._transactions) if t.user_id == user_id]
        rows.sort(key=lambda t: (t.ledger_seq, t.entry_index), reverse=True)
        return rows

    async def get_transactions(
        self, user_id: str, limit: int, offset: int = 0
    ) -> List[CreditTransaction]:
        rows = self._user_transactions(user_id)[offset : offset + limit]
        return [t.model_copy(deep=True) for t in rows]

    async def count_transactions(self, user_id: str) -> int:
        return sum(1 for t in self._transactions if t.user_id == user_id)

    async def get_latest_ledger_seq(self, user_id: str) -> int:
        return max(
            (t.ledger_seq for t in self._transactions if t.user_id == user_id),
            default=0,
        )

    # Credit cost catalog
    async def get_credit_cost(
        self, app_key: str, operation: str
    ) -> Optional[CreditCostEntry]:
        entry = self._costs.get((app_key, operation))
        if entry is None or not entry.is_active:
            return None
        return entry.model_copy()

    async def upsert_credit_cost(self, entry: CreditCostEntry) -> CreditCostEntry:
        existing = self._costs.get((entry.app_key, entry.operation))
        if entry.id is None:
            entry.id = existing.id if existing else self._next_id()
        self._costs[(entry.app_key, entry.operation)] = entry.model_copy()
        return entry

    # Subscriptions
    async def upsert_app_subscription(self, sub: AppSubscription) -> AppSubscription:
        existing = self._subscriptions.get((sub.user_id, sub.app_key))
        if sub.id is None:
            sub.id = existing.id if existing else self._next_id()
        self._subscriptions[(sub.user_id, sub.app_key)] = sub.model_copy(deep=True)
        return sub

    async def get_app_subscriptions(
        self,
        user_id: str,
        statuses: Optional[Sequence[SubscriptionStatus]] = None,
    ) -> List[AppSubscription]:
        wanted = {SubscriptionStatus(s).value for s in statuses} if statuses else None
        return [
            s.model_copy(deep=True)
            for s in self._subscriptions.values()
            if s.user_id == user_id and (wanted is None or s.status in wanted)
        ]

    # Webhook idempotency
    async def get_processed_event(self, event_id: str) -> Optional[ProcessedEvent]:
        event = self._events.get(event_id)
        return event.model_copy(deep=True) if event else None

    async def add_processed_event(self, event: ProcessedEvent) -> bool:
        if event.id in self._events:
            return False
        self._events[event.id] = event.model_copy(deep=True)
        return True

    # Customer identity
    async def get_user_id_for_customer(self, customer_id: str) -> Optional[str]:
        return self._customers.get(customer_id)

    async def link_customer(self, customer_id: str, user_id: str) -> None:
        self._customers[customer_id] = user_id

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        if notification.id is None:
            notification.id = self._next_id()
        self._notifications.append(notification.model_copy(deep=True))
        return notification

    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry.model_copy(deep=True))
        return entry
