from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow

DEFAULT_SUBSCRIPTION_CAP = 900


class CreditBalance(BaseModel):
    """
    Read-side view of a credit account at a point in time.
    `trial_balance` is the effective value: zero once the trial has lapsed.
    """

    subscription_balance: int = 0
    topup_balance: int = 0
    trial_balance: int = 0
    trial_expires_at: Optional[datetime] = None
    total: int = 0
    cap: int = DEFAULT_SUBSCRIPTION_CAP
    lifetime_earned: int = 0
    lifetime_spent: int = 0


class UserCreditAccount(DBSerializableModel):
    """
    Per-user balances across the three credit pools.

    Rows are created lazily by the first write that needs one. Every write
    bumps `version` (the optimistic concurrency precondition); writes that
    also append ledger rows bump `ledger_seq`, and every row they append
    carries the new value.
    """

    collection_name: ClassVar[str] = "user_credits"
    primary_key: ClassVar[Optional[str]] = "user_id"

    user_id: str
    subscription_balance: int = Field(default=0, ge=0)
    topup_balance: int = Field(default=0, ge=0)
    trial_balance: int = Field(default=0, ge=0)
    trial_expires_at: Optional[datetime] = None
    subscription_cap: int = Field(
        default=DEFAULT_SUBSCRIPTION_CAP,
        ge=0,
        description="Ceiling for subscription_balance; recomputed from active subscriptions.",
    )
    lifetime_earned: int = Field(default=0, ge=0)
    lifetime_spent: int = Field(default=0, ge=0)
    last_allocated_at: Optional[datetime] = None
    version: int = 0
    ledger_seq: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def effective_trial_balance(self, now: datetime) -> int:
        if self.trial_expires_at is not None and self.trial_expires_at <= now:
            return 0
        return self.trial_balance

    def total(self, now: datetime) -> int:
        return self.subscription_balance + self.topup_balance + self.effective_trial_balance(now)

    def headroom(self) -> int:
        return max(0, self.subscription_cap - self.subscription_balance)

    def to_balance(self, now: datetime) -> CreditBalance:
        trial = self.effective_trial_balance(now)
        return CreditBalance(
            subscription_balance=self.subscription_balance,
            topup_balance=self.topup_balance,
            trial_balance=trial,
            trial_expires_at=self.trial_expires_at,
            total=self.subscription_balance + self.topup_balance + trial,
            cap=self.subscription_cap,
            lifetime_earned=self.lifetime_earned,
            lifetime_spent=self.lifetime_spent,
        )
