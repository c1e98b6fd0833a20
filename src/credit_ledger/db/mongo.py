from __future__ import annotations

import functools
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Type,
    TypeVar,
)
from uuid import uuid4

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorDatabase,
)
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, OperationFailure, PyMongoError

from .base import BaseDBManager
from ..errors import ConcurrentUpdateError, StoreUnavailable
from ..models.account import UserCreditAccount
from ..models.base import DBSerializableModel
from ..models.credits import CreditCostEntry
from ..models.events import ProcessedEvent
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.subscription import AppSubscription, CustomerLink, SubscriptionStatus
from ..models.transaction import CreditTransaction


TModel = TypeVar("TModel", bound=DBSerializableModel)
TResult = TypeVar("TResult")

_HISTORY_ORDER = [("ledger_seq", DESCENDING), ("entry_index", DESCENDING)]


def _store_call(
    func: Callable[..., Awaitable[TResult]]
) -> Callable[..., Awaitable[TResult]]:
    """Translate driver failures into ledger store errors."""

    @functools.wraps(func)
    async def wrapper(self: "MongoDBManager", *args: Any, **kwargs: Any) -> TResult:
        try:
            return await func(self, *args, **kwargs)
        except (ConcurrentUpdateError, DuplicateKeyError):
            raise
        except OperationFailure as exc:
            if exc.has_error_label("TransientTransactionError"):
                raise ConcurrentUpdateError(str(args[0]) if args else "unknown") from exc
            raise StoreUnavailable(str(exc)) from exc
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc

    return wrapper


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string `_id` fields and mirrored in the model's primary
    key attribute, which keeps the rest of the system agnostic of MongoDB
    specifics. Account rows use the user id as `_id`.

    With `use_transactions=True` (requires a replica set), `transaction()`
    opens a client session with a multi-document transaction and every call
    made inside it joins that session. Without it, individual document writes
    are atomic and balance/log divergence is detectable through the account
    ledger_seq (see ReconciliationService).
    """

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        use_transactions: bool = False,
    ) -> None:
        self._db = database
        self._use_transactions = use_transactions
        self._session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
            f"mongo_session_{id(self)}", default=None
        )

    @classmethod
    def from_client_uri(
        cls, uri: str, db_name: str, use_transactions: bool = False
    ) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name], use_transactions=use_transactions)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if not self._use_transactions or self._session.get() is not None:
            yield
            return

        try:
            session = await self._db.client.start_session()
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc

        token = self._session.set(session)
        try:
            async with session.start_transaction():
                yield
        except OperationFailure as exc:
            if exc.has_error_label("TransientTransactionError"):
                raise ConcurrentUpdateError("transaction") from exc
            raise StoreUnavailable(str(exc)) from exc
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc
        finally:
            self._session.reset(token)
            await session.end_session()

    async def ensure_indexes(self) -> None:
        await self._db[CreditTransaction.collection_name].create_index(
            [("user_id", ASCENDING), *_HISTORY_ORDER]
        )
        await self._db[AppSubscription.collection_name].create_index(
            [("user_id", ASCENDING), ("app_key", ASCENDING)], unique=True
        )
        await self._db[CreditCostEntry.collection_name].create_index(
            [("app_key", ASCENDING), ("operation", ASCENDING)], unique=True
        )
        await self._db[UserCreditAccount.collection_name].create_index(
            [("trial_expires_at", ASCENDING)]
        )

    # Helper utilities
    @property
    def _s(self) -> Optional[AsyncIOMotorClientSession]:
        return self._session.get()

    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        key = model.primary_key or "id"
        model_id = getattr(model, key, None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, key, model_id)
            data[key] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        key = model_cls.primary_key or "id"
        if "_id" in data and key not in data:
            data[key] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    def _decode_all(self, model_cls: Type[TModel], docs: Iterable[Mapping[str, Any]]) -> List[TModel]:
        return [m for m in (self._decode(model_cls, d) for d in docs) if m is not None]

    # Account operations
    @_store_call
    async def get_account(self, user_id: str) -> Optional[UserCreditAccount]:
        col = self._db[UserCreditAccount.collection_name]
        doc = await col.find_one({"_id": user_id}, session=self._s)
        return self._decode(UserCreditAccount, doc)

    @_store_call
    async def create_account(self, account: UserCreditAccount) -> UserCreditAccount:
        col = self._db[UserCreditAccount.collection_name]
        data = self._prepare_insert(account)
        doc = await col.find_one_and_update(
            {"_id": data["_id"]},
            {"$setOnInsert": data},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=self._s,
        )
        return self._decode(UserCreditAccount, doc) or account

    @_store_call
    async def update_account(
        self, account: UserCreditAccount, expected_version: int
    ) -> UserCreditAccount:
        col = self._db[UserCreditAccount.collection_name]
        data = self._prepare_insert(account)
        result = await col.replace_one(
            {"_id": data["_id"], "version": expected_version},
            data,
            upsert=False,
            session=self._s,
        )
        if result.matched_count == 0:
            raise ConcurrentUpdateError(account.user_id)
        return account

    @_store_call
    async def find_accounts_with_lapsed_trials(
        self, as_of: datetime
    ) -> Iterable[UserCreditAccount]:
        col = self._db[UserCreditAccount.collection_name]
        cursor = col.find(
            {"trial_balance": {"$gt": 0}, "trial_expires_at": {"$lte": as_of}},
            session=self._s,
        )
        docs = await cursor.to_list(length=None)
        return self._decode_all(UserCreditAccount, docs)

    # Transaction log
    @_store_call
    async def add_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        col = self._db[CreditTransaction.collection_name]
        data = self._prepare_insert(tx)
        await col.insert_one(data, session=self._s)
        return tx

    @_store_call
    async def get_transaction(self, transaction_id: str) -> Optional[CreditTransaction]:
        col = self._db[CreditTransaction.collection_name]
        doc = await col.find_one({"_id": transaction_id}, session=self._s)
        return self._decode(CreditTransaction, doc)

    @_store_call
    async def get_transactions(
        self, user_id: str, limit: int, offset: int = 0
    ) -> List[CreditTransaction]:
        col = self._db[CreditTransaction.collection_name]
        cursor = (
            col.find({"user_id": user_id}, session=self._s)
            .sort(_HISTORY_ORDER)
            .skip(offset)
            .limit(limit)
        )
        docs = await cursor.to_list(length=limit)
        return self._decode_all(CreditTransaction, docs)

    @_store_call
    async def count_transactions(self, user_id: str) -> int:
        col = self._db[CreditTransaction.collection_name]
        return await col.count_documents({"user_id": user_id}, session=self._s)

    @_store_call
    async def get_latest_ledger_seq(self, user_id: str) -> int:
        col = self._db[CreditTransaction.collection_name]
        doc = await col.find_one(
            {"user_id": user_id},
            sort=_HISTORY_ORDER,
            projection={"ledger_seq": 1},
            session=self._s,
        )
        return int(doc.get("ledger_seq", 0)) if doc else 0

    # Credit cost catalog
    @_store_call
    async def get_credit_cost(
        self, app_key: str, operation: str
    ) -> Optional[CreditCostEntry]:
        col = self._db[CreditCostEntry.collection_name]
        doc = await col.find_one(
            {"app_key": app_key, "operation": operation, "is_active": True},
            session=self._s,
        )
        return self._decode(CreditCostEntry, doc)

    @_store_call
    async def upsert_credit_cost(self, entry: CreditCostEntry) -> CreditCostEntry:
        col = self._db[CreditCostEntry.collection_name]
        data = entry.serialize_for_db()
        data.pop("id", None)
        doc = await col.find_one_and_update(
            {"app_key": entry.app_key, "operation": entry.operation},
            {"$set": data, "$setOnInsert": {"_id": uuid4().hex}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=self._s,
        )
        entry.id = str(doc["_id"])
        return entry

    # Subscriptions
    @_store_call
    async def upsert_app_subscription(self, sub: AppSubscription) -> AppSubscription:
        col = self._db[AppSubscription.collection_name]
        data = sub.serialize_for_db()
        data.pop("id", None)
        doc = await col.find_one_and_update(
            {"user_id": sub.user_id, "app_key": sub.app_key},
            {"$set": data, "$setOnInsert": {"_id": uuid4().hex}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=self._s,
        )
        sub.id = str(doc["_id"])
        return sub

    @_store_call
    async def get_app_subscriptions(
        self,
        user_id: str,
        statuses: Optional[Sequence[SubscriptionStatus]] = None,
    ) -> List[AppSubscription]:
        col = self._db[AppSubscription.collection_name]
        query: Dict[str, Any] = {"user_id": user_id}
        if statuses:
            query["status"] = {"$in": [SubscriptionStatus(s).value for s in statuses]}
        docs = await col.find(query, session=self._s).to_list(length=None)
        return self._decode_all(AppSubscription, docs)

    # Webhook idempotency
    @_store_call
    async def get_processed_event(self, event_id: str) -> Optional[ProcessedEvent]:
        col = self._db[ProcessedEvent.collection_name]
        doc = await col.find_one({"_id": event_id}, session=self._s)
        return self._decode(ProcessedEvent, doc)

    @_store_call
    async def add_processed_event(self, event: ProcessedEvent) -> bool:
        col = self._db[ProcessedEvent.collection_name]
        try:
            await col.insert_one(self._prepare_insert(event), session=self._s)
        except DuplicateKeyError:
            return False
        return True

    # Customer identity
    @_store_call
    async def get_user_id_for_customer(self, customer_id: str) -> Optional[str]:
        col = self._db[CustomerLink.collection_name]
        link = self._decode(CustomerLink, await col.find_one({"_id": customer_id}, session=self._s))
        return link.user_id if link else None

    @_store_call
    async def link_customer(self, customer_id: str, user_id: str) -> None:
        col = self._db[CustomerLink.collection_name]
        data = self._prepare_insert(CustomerLink(customer_id=customer_id, user_id=user_id))
        await col.replace_one({"_id": customer_id}, data, upsert=True, session=self._s)

    # Notifications
    @_store_call
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        col = self._db[NotificationEvent.collection_name]
        await col.insert_one(self._prepare_insert(notification), session=self._s)
        return notification

    # Ledger
    @_store_call
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        col = self._db[LedgerEntry.collection_name]
        await col.insert_one(self._prepare_insert(entry), session=self._s)
        return entry
