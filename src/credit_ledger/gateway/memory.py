from __future__ import annotations

from typing import Dict, List, Optional, Set

from .base import PaymentGateway
from ..errors import PaymentProviderError
from ..models.subscription import SubscriptionSnapshot


class InMemoryPaymentGateway(PaymentGateway):
    """
    Dict-backed gateway for tests and local development. Subscription ids
    listed in `failing` raise PaymentProviderError, to exercise fallbacks.
    """

    def __init__(self) -> None:
        self.subscriptions: Dict[str, SubscriptionSnapshot] = {}
        self.failing: Set[str] = set()
        self.discount_calls: List[tuple[str, Optional[str]]] = []

    def add(self, snapshot: SubscriptionSnapshot) -> SubscriptionSnapshot:
        self.subscriptions[snapshot.id] = snapshot
        return snapshot

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        if subscription_id in self.failing:
            raise PaymentProviderError(f"Subscription {subscription_id} unavailable")
        snapshot = self.subscriptions.get(subscription_id)
        if snapshot is None:
            raise PaymentProviderError(f"No such subscription: {subscription_id}")
        return snapshot.model_copy(deep=True)

    async def list_active_subscriptions(self, customer_id: str) -> List[SubscriptionSnapshot]:
        return [
            s.model_copy(deep=True)
            for s in self.subscriptions.values()
            if s.customer_id == customer_id and s.status == "active"
        ]

    async def set_subscription_discount(
        self, subscription_id: str, coupon_id: Optional[str]
    ) -> None:
        if subscription_id in self.failing:
            raise PaymentProviderError(f"Subscription {subscription_id} unavailable")
        snapshot = self.subscriptions.get(subscription_id)
        if snapshot is None:
            raise PaymentProviderError(f"No such subscription: {subscription_id}")
        snapshot.discount_coupon_ids = [coupon_id] if coupon_id else []
        self.discount_calls.append((subscription_id, coupon_id))
