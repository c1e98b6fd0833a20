from __future__ import annotations

import pytest

from credit_ledger.cache.memory import InMemoryAsyncCache
from credit_ledger.catalog.costs import CreditCostCatalog
from credit_ledger.catalog.plans import PlanCatalog
from credit_ledger.config import Settings
from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.errors import UnknownOperation


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class CountingDB(InMemoryDBManager):
    def __init__(self) -> None:
        super().__init__()
        self.cost_reads = 0

    async def get_credit_cost(self, app_key, operation):
        self.cost_reads += 1
        return await super().get_credit_cost(app_key, operation)


def _plans() -> PlanCatalog:
    return PlanCatalog.from_settings(
        Settings(
            STRIPE_PRICE_KEYWORDS_MONTHLY="price_kw_m",
            STRIPE_PRICE_LABS_AEO_YEARLY="price_labs_aeo_y",
        )
    )


def test_resolve_prefers_price_id():
    plans = _plans()

    by_price = plans.resolve("keywords", "price_labs_aeo_y")
    by_app = plans.resolve("labs", "price_unknown")
    fallback = plans.resolve("unknown_app", None)

    assert (by_price.source, by_price.plan.tier) == ("price_id", "aeo_consultant")
    assert (by_app.source, by_app.plan.tier) == ("app_key", "base_tracker")
    assert (fallback.source, fallback.plan) == ("default", None)


def test_plan_amounts_and_defaults():
    plans = _plans()

    assert plans.cap_contribution("labs", "price_labs_aeo_y") == 2700
    assert plans.monthly_credits("labs", "price_labs_aeo_y") == 900
    assert plans.cap_contribution("unknown_app") == 900
    assert plans.monthly_credits(None) == 300
    assert plans.trial_credits("labs") == 100
    assert plans.find_plan("labs", "aeo_consultant").monthly_price == 79


def test_topup_packs():
    plans = _plans()

    assert plans.find_topup_pack("pro").credits == 2500
    assert plans.find_topup_pack("missing") is None
    assert plans.find_topup_pack(None) is None


@pytest.mark.asyncio
async def test_cost_lookup_is_cached_until_ttl():
    db = CountingDB()
    clock = FakeClock()
    costs = CreditCostCatalog(db, cache=InMemoryAsyncCache(clock=clock), ttl_seconds=60)
    await costs.set_cost("keywords", "search", 3)

    assert await costs.get_cost("keywords", "search") == 3
    assert await costs.get_cost("keywords", "search") == 3
    assert db.cost_reads == 1

    clock.now += 61
    assert await costs.get_cost("keywords", "search") == 3
    assert db.cost_reads == 2


@pytest.mark.asyncio
async def test_cost_update_invalidates_cache():
    db = InMemoryDBManager()
    costs = CreditCostCatalog(db, cache=InMemoryAsyncCache())
    await costs.set_cost("keywords", "search", 3)
    await costs.get_cost("keywords", "search")

    await costs.set_cost("keywords", "search", 7)

    assert await costs.get_cost("keywords", "search") == 7


@pytest.mark.asyncio
async def test_inactive_or_missing_cost_is_unknown():
    db = InMemoryDBManager()
    costs = CreditCostCatalog(db)
    await costs.set_cost("keywords", "legacy", 2, is_active=False)

    with pytest.raises(UnknownOperation):
        await costs.get_cost("keywords", "legacy")
    with pytest.raises(UnknownOperation):
        await costs.get_cost("keywords", "missing")


@pytest.mark.asyncio
async def test_cache_clear():
    cache = InMemoryAsyncCache()
    await cache.set("a", 1)
    await cache.set("b", 2, ttl_seconds=30)

    await cache.clear()

    assert await cache.get("a") is None
    assert await cache.get("b") is None
