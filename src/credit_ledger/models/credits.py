from __future__ import annotations

from datetime import datetime
from typing import ClassVar, List, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow
from .transaction import CreditTransaction


class CreditCostEntry(DBSerializableModel):
    """
    Credit cost of one operation in one app.
    """

    collection_name: ClassVar[str] = "app_credit_config"

    id: Optional[str] = Field(default=None)
    app_key: str
    operation: str
    credit_cost: int = Field(ge=0)
    is_active: bool = True
    updated_at: datetime = Field(default_factory=utcnow)


class DrainPlan(BaseModel):
    """How a deduction splits across pools (trial, then top-up, then subscription)."""

    from_trial: int = 0
    from_topup: int = 0
    from_subscription: int = 0


class CreditCheckResult(BaseModel):
    sufficient: bool
    cost: int
    balance: int


class DeductResult(BaseModel):
    new_balance: int
    transaction_id: Optional[str] = None


class AllocateResult(BaseModel):
    new_balance: int
    allocated: int


class MergeResult(BaseModel):
    merged: int = 0
    lost: int = 0


class UsageHistory(BaseModel):
    transactions: List[CreditTransaction] = Field(default_factory=list)
    total: int
    limit: int
    offset: int


class ReconciliationReport(BaseModel):
    """
    Balance/log consistency for one account. `consistent` is false when the
    account's ledger_seq and the highest ledger_seq in its log disagree.
    """

    user_id: str
    consistent: bool
    account_seq: int
    ledger_seq: int
    total: int
    subscription_balance: int
    cap: int
    over_cap: bool
