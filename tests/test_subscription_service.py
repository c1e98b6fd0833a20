from __future__ import annotations

from datetime import timedelta

import pytest

from credit_ledger.cache.memory import InMemoryAsyncCache
from credit_ledger.catalog.costs import CreditCostCatalog
from credit_ledger.catalog.plans import PlanCatalog
from credit_ledger.config import Settings
from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.errors import StoreUnavailable
from credit_ledger.gateway.memory import InMemoryPaymentGateway
from credit_ledger.logging.ledger_logger import LedgerLogger
from credit_ledger.models.account import UserCreditAccount
from credit_ledger.models.base import utcnow
from credit_ledger.models.subscription import (
    AppSubscription,
    SubscriptionSnapshot,
    SubscriptionStatus,
)
from credit_ledger.models.transaction import TransactionType
from credit_ledger.services.credit_service import CreditService
from credit_ledger.services.subscription_service import SubscriptionService


class UnreadableSubscriptionsDB(InMemoryDBManager):
    async def get_app_subscriptions(self, user_id, statuses=None):
        raise StoreUnavailable("subscriptions collection offline")


def _plans() -> PlanCatalog:
    return PlanCatalog.from_settings(
        Settings(
            STRIPE_PRICE_KEYWORDS_MONTHLY="price_kw_m",
            STRIPE_PRICE_LABS_BASE_MONTHLY="price_labs_base_m",
            STRIPE_PRICE_LABS_AEO_MONTHLY="price_labs_aeo_m",
        )
    )


def _build(tmp_path, db=None, gateway=None, coupon="coupon_bundle"):
    db = db or InMemoryDBManager()
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    credits = CreditService(db=db, ledger=ledger, costs=CreditCostCatalog(db, cache=InMemoryAsyncCache()))
    service = SubscriptionService(
        db=db,
        ledger=ledger,
        credits=credits,
        plans=_plans(),
        gateway=gateway,
        bundle_coupon_id=coupon,
    )
    return db, service


async def _subscribe(db, user_id, app_key, status="active", price_id=None, sub_id=None):
    await db.upsert_app_subscription(
        AppSubscription(
            user_id=user_id,
            app_key=app_key,
            stripe_subscription_id=sub_id or f"sub_{app_key}",
            stripe_price_id=price_id,
            status=status,
        )
    )


@pytest.mark.asyncio
async def test_cap_defaults_without_qualifying_subscriptions(tmp_path):
    db, service = _build(tmp_path)
    await _subscribe(db, "user-1", "keywords", status="canceled")

    assert await service.recalculate_subscription_cap("user-1") == 900
    assert (await db.get_account("user-1")).subscription_cap == 900


@pytest.mark.asyncio
async def test_cap_is_additive_across_apps(tmp_path):
    db, service = _build(tmp_path)
    await _subscribe(db, "user-1", "keywords", status="active")
    await _subscribe(db, "user-1", "labs", status="trialing", price_id="price_labs_aeo_m")

    cap = await service.recalculate_subscription_cap("user-1")

    assert cap == 900 + 2700
    account = await db.get_account("user-1")
    assert account.subscription_cap == 3600
    # A cap change is not a credit movement
    assert await db.count_transactions("user-1") == 0


@pytest.mark.asyncio
async def test_price_id_wins_over_app_key(tmp_path):
    _, service = _build(tmp_path)
    subs = [
        AppSubscription(
            user_id="user-1",
            app_key="keywords",
            stripe_subscription_id="sub_1",
            stripe_price_id="price_labs_aeo_m",
            status="past_due",
        )
    ]

    assert service.cap_for(subs) == 2700


@pytest.mark.asyncio
async def test_cap_drop_clamps_subscription_pool(tmp_path):
    db, service = _build(tmp_path)
    await db.create_account(
        UserCreditAccount(
            user_id="user-1", subscription_balance=2000, topup_balance=50, subscription_cap=3600
        )
    )

    assert await service.recalculate_subscription_cap("user-1") == 900

    account = await db.get_account("user-1")
    assert account.subscription_cap == 900
    assert account.subscription_balance == 900
    assert account.topup_balance == 50
    rows = await db.get_transactions("user-1", limit=10)
    assert len(rows) == 1
    assert rows[0].transaction_type == TransactionType.CAP_ADJUSTMENT
    assert rows[0].amount == -1100
    assert rows[0].balance_after == 950


@pytest.mark.asyncio
async def test_unchanged_cap_is_not_rewritten(tmp_path):
    db, service = _build(tmp_path)
    await _subscribe(db, "user-1", "keywords")
    await service.recalculate_subscription_cap("user-1")
    version = (await db.get_account("user-1")).version

    await service.recalculate_subscription_cap("user-1")

    assert (await db.get_account("user-1")).version == version


@pytest.mark.asyncio
async def test_cap_lookup_failure_keeps_previous_cap(tmp_path):
    db, service = _build(tmp_path, db=UnreadableSubscriptionsDB())
    await db.create_account(UserCreditAccount(user_id="user-1", subscription_cap=1800))

    assert await service.recalculate_subscription_cap("user-1") == 1800
    assert await service.recalculate_subscription_cap("nobody") == 900
    assert (await db.get_account("user-1")).version == 0


@pytest.mark.asyncio
async def test_sync_paused_subscription(tmp_path):
    db, service = _build(tmp_path)
    resume = utcnow() + timedelta(days=14)
    snapshot = SubscriptionSnapshot(
        id="sub_labs",
        customer_id="cus_1",
        status="active",
        app_key="labs",
        price_id="price_labs_aeo_m",
        is_paused=True,
        resume_at=resume,
    )

    first = await service.sync_app_subscription("user-1", snapshot)
    second = await service.sync_app_subscription("user-1", snapshot)

    assert first.status == SubscriptionStatus.PAUSED
    assert first.monthly_credits == 900
    assert second.paused_at == first.paused_at
    assert second.resume_at == resume
    stored = await db.get_app_subscriptions("user-1")
    assert len(stored) == 1
    # Paused subscriptions stop counting toward the cap
    assert await service.recalculate_subscription_cap("user-1") == 900


@pytest.mark.asyncio
async def test_sync_unpause_clears_paused_at(tmp_path):
    _, service = _build(tmp_path)
    snapshot = SubscriptionSnapshot(id="sub_kw", status="active", app_key="keywords", is_paused=True)
    await service.sync_app_subscription("user-1", snapshot)

    resumed = await service.sync_app_subscription(
        "user-1", snapshot.model_copy(update={"is_paused": False})
    )

    assert resumed.status == SubscriptionStatus.ACTIVE
    assert resumed.paused_at is None


@pytest.mark.asyncio
async def test_bundle_eligibility_needs_two_distinct_apps(tmp_path):
    db, service = _build(tmp_path)
    await _subscribe(db, "user-1", "keywords")
    assert (await service.get_bundle_eligibility("user-1")).eligible is False

    await _subscribe(db, "user-1", "labs", status="trialing")
    eligibility = await service.get_bundle_eligibility("user-1")

    assert eligibility.eligible is True
    assert eligibility.distinct_apps == ["keywords", "labs"]


@pytest.mark.asyncio
async def test_bundle_discount_applied_then_removed(tmp_path):
    gateway = InMemoryPaymentGateway()
    db, service = _build(tmp_path, gateway=gateway)
    for app_key in ("keywords", "labs"):
        gateway.add(
            SubscriptionSnapshot(
                id=f"sub_{app_key}", customer_id="cus_1", status="active", app_key=app_key
            )
        )
        await _subscribe(db, "user-1", app_key)

    assert await service.reconcile_bundle_discount("cus_1", "user-1") == 2
    assert gateway.subscriptions["sub_labs"].discount_coupon_ids == ["coupon_bundle"]
    assert await service.reconcile_bundle_discount("cus_1", "user-1") == 0

    await _subscribe(db, "user-1", "labs", status="canceled")
    gateway.subscriptions["sub_labs"].status = "canceled"

    assert await service.reconcile_bundle_discount("cus_1", "user-1") == 1
    assert gateway.subscriptions["sub_keywords"].discount_coupon_ids == []
    assert gateway.discount_calls[-1] == ("sub_keywords", None)


@pytest.mark.asyncio
async def test_bundle_discount_provider_failure_is_logged(tmp_path):
    gateway = InMemoryPaymentGateway()
    db, service = _build(tmp_path, gateway=gateway)
    for app_key in ("keywords", "labs"):
        gateway.add(SubscriptionSnapshot(id=f"sub_{app_key}", customer_id="cus_1", status="active"))
        await _subscribe(db, "user-1", app_key)
    gateway.failing.add("sub_keywords")

    assert await service.reconcile_bundle_discount("cus_1", "user-1") == 1
    assert gateway.discount_calls == [("sub_labs", "coupon_bundle")]


@pytest.mark.asyncio
async def test_bundle_discount_without_coupon_is_skipped(tmp_path):
    gateway = InMemoryPaymentGateway()
    db, service = _build(tmp_path, gateway=gateway, coupon="")
    await _subscribe(db, "user-1", "keywords")
    await _subscribe(db, "user-1", "labs")

    assert await service.reconcile_bundle_discount("cus_1", "user-1") == 0
    assert gateway.discount_calls == []
