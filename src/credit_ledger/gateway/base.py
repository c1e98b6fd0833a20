from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from ..models.subscription import SubscriptionSnapshot


class PaymentGateway(ABC):
    """
    Thin boundary to the payment provider. Implementations raise
    PaymentProviderError on any provider or transport failure.
    """

    @abstractmethod
    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        ...

    @abstractmethod
    async def list_active_subscriptions(self, customer_id: str) -> List[SubscriptionSnapshot]:
        ...

    @abstractmethod
    async def set_subscription_discount(
        self, subscription_id: str, coupon_id: Optional[str]
    ) -> None:
        """Apply `coupon_id` as the only discount, or clear discounts when None."""
        ...
