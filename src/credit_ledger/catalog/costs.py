from __future__ import annotations

from typing import Optional

from ..cache.base import AsyncCacheBackend
from ..db.base import BaseDBManager
from ..errors import UnknownOperation
from ..models.credits import CreditCostEntry


class CreditCostCatalog:
    """
    (app_key, operation) -> credit cost, backed by the store and fronted by
    an optional cache. Only hits are cached; a missing entry is looked up
    again on the next call.
    """

    def __init__(
        self,
        db: BaseDBManager,
        cache: Optional[AsyncCacheBackend] = None,
        ttl_seconds: int = 300,
    ) -> None:
        self._db = db
        self._cache = cache
        self._ttl = ttl_seconds

    @staticmethod
    def _key(app_key: str, operation: str) -> str:
        return f"credit_cost:{app_key}:{operation}"

    async def get_cost(self, app_key: str, operation: str) -> int:
        key = self._key(app_key, operation)
        if self._cache is not None:
            cached = await self._cache.get(key)
            if cached is not None:
                return int(cached)

        entry = await self._db.get_credit_cost(app_key, operation)
        if entry is None:
            raise UnknownOperation(app_key, operation)

        if self._cache is not None:
            await self._cache.set(key, entry.credit_cost, ttl_seconds=self._ttl)
        return entry.credit_cost

    async def set_cost(
        self, app_key: str, operation: str, cost: int, is_active: bool = True
    ) -> CreditCostEntry:
        entry = await self._db.upsert_credit_cost(
            CreditCostEntry(
                app_key=app_key,
                operation=operation,
                credit_cost=cost,
                is_active=is_active,
            )
        )
        if self._cache is not None:
            await self._cache.delete(self._key(app_key, operation))
        return entry
