from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import stripe

from .base import PaymentGateway
from .payloads import parse_subscription
from ..errors import PaymentProviderError
from ..models.subscription import SubscriptionSnapshot

logger = logging.getLogger(__name__)


def _plain(obj: Any) -> Dict[str, Any]:
    # StripeObject renders itself as JSON
    return json.loads(str(obj))


class StripeGateway(PaymentGateway):
    """
    PaymentGateway over the `stripe` SDK. The SDK is synchronous, so every
    call runs in a worker thread.
    """

    def __init__(self, api_key: str, default_app_key: Optional[str] = None) -> None:
        if not api_key:
            raise ValueError("Stripe API key is required")
        self._api_key = api_key
        self._default_app_key = default_app_key

    async def _call(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args, api_key=self._api_key, **kwargs)
        except stripe.StripeError as exc:
            logger.error("Stripe call %s failed: %s", getattr(func, "__name__", func), exc)
            raise PaymentProviderError(str(exc)) from exc

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        sub = await self._call(stripe.Subscription.retrieve, subscription_id)
        return parse_subscription(_plain(sub), self._default_app_key)

    async def list_active_subscriptions(self, customer_id: str) -> List[SubscriptionSnapshot]:
        page = await self._call(
            stripe.Subscription.list, customer=customer_id, status="active", limit=100
        )
        return [parse_subscription(item, self._default_app_key) for item in _plain(page).get("data", [])]

    async def set_subscription_discount(
        self, subscription_id: str, coupon_id: Optional[str]
    ) -> None:
        # An empty string clears the discounts list
        discounts: Any = [{"coupon": coupon_id}] if coupon_id else ""
        await self._call(stripe.Subscription.modify, subscription_id, discounts=discounts)
