from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from ..catalog.plans import PlanCatalog
from ..db.base import BaseDBManager
from ..errors import PaymentProviderError, StoreUnavailable
from ..gateway.base import PaymentGateway
from ..logging.ledger_logger import LedgerLogger
from ..models.account import UserCreditAccount
from ..models.base import utcnow
from ..models.subscription import (
    AppSubscription,
    BundleEligibility,
    SubscriptionSnapshot,
    SubscriptionStatus,
)
from ..models.transaction import CreditPool, CreditTransaction, TransactionType
from .credit_service import CreditService, ledger_row

logger = logging.getLogger(__name__)


class SubscriptionService:
    """
    Keeps the synced subscription view, the subscription cap and the bundle
    discount in line with provider-side subscription state.

    Cap recalculation is fail-soft: it is called from subscription-sync
    flows that must not abort because of it.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        credits: CreditService,
        plans: PlanCatalog,
        gateway: Optional[PaymentGateway] = None,
        bundle_coupon_id: Optional[str] = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._credits = credits
        self._plans = plans
        self._gateway = gateway
        self._bundle_coupon_id = bundle_coupon_id or None

    def cap_for(self, subscriptions: Iterable[AppSubscription]) -> int:
        """Additive across qualifying subscriptions; the platform default when none."""
        qualifying = [
            s for s in subscriptions if SubscriptionStatus(s.status).counts_toward_cap()
        ]
        if not qualifying:
            return self._plans.default_cap
        return sum(
            self._plans.cap_contribution(s.app_key, s.stripe_price_id) for s in qualifying
        )

    async def recalculate_subscription_cap(self, user_id: str) -> int:
        try:
            subs = await self._db.get_app_subscriptions(user_id, SubscriptionStatus.qualifying())
        except StoreUnavailable:
            logger.warning("Cap lookup failed for %s; keeping previous cap", user_id, exc_info=True)
            return await self._previous_cap(user_id)

        cap = self.cap_for(subs)

        def apply(account: UserCreditAccount, now: datetime) -> Optional[List[CreditTransaction]]:
            if account.subscription_cap == cap:
                return None
            account.subscription_cap = cap
            excess = account.subscription_balance - cap
            if excess <= 0:
                return []
            # The pool never holds more than the cap
            account.subscription_balance = cap
            return [
                ledger_row(
                    user_id,
                    -excess,
                    account.total(now),
                    CreditPool.SUBSCRIPTION,
                    TransactionType.CAP_ADJUSTMENT,
                    f"Subscription credits above new cap forfeited (cap {cap})",
                )
            ]

        try:
            write = await self._credits.mutate_account(
                user_id, apply, ledger_message="Subscription balance clamped to cap"
            )
            if write.written:
                await self._ledger.log_transaction(
                    user_id=user_id,
                    message="Subscription cap recalculated",
                    details={"cap": cap, "subscriptions": [s.app_key for s in subs]},
                )
        except StoreUnavailable:
            logger.warning("Cap write failed for %s; keeping previous cap", user_id, exc_info=True)
            return await self._previous_cap(user_id)
        return cap

    async def _previous_cap(self, user_id: str) -> int:
        try:
            account = await self._db.get_account(user_id)
        except StoreUnavailable:
            return self._plans.default_cap
        return account.subscription_cap if account else self._plans.default_cap

    async def sync_app_subscription(
        self,
        user_id: str,
        snapshot: SubscriptionSnapshot,
        app_key: Optional[str] = None,
    ) -> AppSubscription:
        app_key = app_key or snapshot.app_key or self._plans.default_app_key
        status = SubscriptionStatus.PAUSED if snapshot.is_paused else SubscriptionStatus(snapshot.status)

        existing = next(
            (s for s in await self._db.get_app_subscriptions(user_id) if s.app_key == app_key),
            None,
        )
        paused_at: Optional[datetime] = None
        if status == SubscriptionStatus.PAUSED:
            paused_at = existing.paused_at if existing and existing.paused_at else utcnow()

        record = AppSubscription(
            id=existing.id if existing else None,
            user_id=user_id,
            app_key=app_key,
            stripe_subscription_id=snapshot.id,
            stripe_price_id=snapshot.price_id,
            status=status,
            current_period_start=snapshot.current_period_start or snapshot.start_date,
            current_period_end=snapshot.current_period_end,
            cancel_at_period_end=snapshot.cancel_at_period_end,
            canceled_at=snapshot.canceled_at,
            paused_at=paused_at,
            resume_at=snapshot.resume_at,
            trial_end=snapshot.trial_end,
            monthly_credits=self._plans.monthly_credits(app_key, snapshot.price_id),
            amount_cents=snapshot.amount_cents,
            currency=snapshot.currency or "usd",
        )
        return await self._db.upsert_app_subscription(record)

    async def get_bundle_eligibility(self, user_id: str) -> BundleEligibility:
        subs = await self._db.get_app_subscriptions(user_id, SubscriptionStatus.qualifying())
        distinct_apps = sorted({s.app_key for s in subs})
        return BundleEligibility(eligible=len(distinct_apps) >= 2, distinct_apps=distinct_apps)

    async def reconcile_bundle_discount(self, customer_id: str, user_id: str) -> int:
        """
        Apply the bundle coupon to every active subscription when the user
        is eligible, remove it when not. Returns how many subscriptions were
        changed. Provider failures are logged per subscription.
        """
        if self._gateway is None:
            return 0
        if not self._bundle_coupon_id:
            logger.warning("Bundle discount coupon is not configured")
            return 0

        try:
            eligibility = await self.get_bundle_eligibility(user_id)
            active = await self._gateway.list_active_subscriptions(customer_id)
        except (StoreUnavailable, PaymentProviderError):
            logger.warning("Skipping bundle discount for %s", user_id, exc_info=True)
            return 0

        changed = 0
        for sub in active:
            has_coupon = self._bundle_coupon_id in sub.discount_coupon_ids
            if has_coupon == eligibility.eligible:
                continue
            coupon = self._bundle_coupon_id if eligibility.eligible else None
            try:
                await self._gateway.set_subscription_discount(sub.id, coupon)
            except PaymentProviderError:
                logger.error("Failed to update bundle discount on %s", sub.id, exc_info=True)
                continue
            changed += 1
            logger.info(
                "%s bundle discount on subscription %s",
                "Applied" if coupon else "Removed",
                sub.id,
            )
        return changed
