from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"

    @classmethod
    def qualifying(cls) -> tuple["SubscriptionStatus", ...]:
        """Statuses that count toward the cap and bundle eligibility."""
        return (cls.ACTIVE, cls.TRIALING, cls.PAST_DUE)

    def counts_toward_cap(self) -> bool:
        return self in self.qualifying()


class SubscriptionPlan(BaseModel):
    """
    Static plan definition: what one subscription grants per month and how
    much it contributes to the user's subscription cap.
    """

    app_key: str
    tier: str
    monthly_price: int
    monthly_credits: int
    credit_cap: int
    stripe_price_id_monthly: Optional[str] = None
    stripe_price_id_yearly: Optional[str] = None

    def matches_price(self, price_id: str) -> bool:
        return bool(price_id) and price_id in (
            self.stripe_price_id_monthly,
            self.stripe_price_id_yearly,
        )


class SubscriptionSnapshot(BaseModel):
    """
    Provider-side subscription state, as delivered in a webhook payload or
    fetched from the payment gateway.
    """

    id: str
    customer_id: Optional[str] = None
    status: str
    app_key: Optional[str] = None
    price_id: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    is_paused: bool = False
    resume_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    start_date: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    discount_coupon_ids: list[str] = Field(default_factory=list)


class AppSubscription(DBSerializableModel):
    """
    Synced view of one user's subscription to one app; at most one row per
    (user_id, app_key).
    """

    collection_name: ClassVar[str] = "app_subscriptions"

    id: Optional[str] = Field(default=None)
    user_id: str
    app_key: str
    stripe_subscription_id: str
    stripe_price_id: Optional[str] = None
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    resume_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    monthly_credits: int = 0
    amount_cents: Optional[int] = None
    currency: str = "usd"
    updated_at: datetime = Field(default_factory=utcnow)


class CustomerLink(DBSerializableModel):
    """
    Maps a payment-provider customer to a ledger user.
    """

    collection_name: ClassVar[str] = "customer_links"
    primary_key: ClassVar[Optional[str]] = "customer_id"

    customer_id: str
    user_id: str
    created_at: datetime = Field(default_factory=utcnow)


class BundleEligibility(BaseModel):
    """A user qualifies for the bundle discount with two or more distinct apps."""

    eligible: bool
    distinct_apps: list[str] = Field(default_factory=list)
