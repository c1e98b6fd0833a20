from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class CreditPool(str, Enum):
    SUBSCRIPTION = "subscription"
    TOPUP = "topup"
    TRIAL = "trial"


class TransactionType(str, Enum):
    USAGE_DEDUCTION = "usage_deduction"
    SUBSCRIPTION_ALLOCATION = "subscription_allocation"
    TOPUP_PURCHASE = "topup_purchase"
    RETENTION_BONUS = "retention_bonus"
    TRIAL_ALLOCATION = "trial_allocation"
    TRIAL_EXPIRY = "trial_expiry"
    TRIAL_MERGE = "trial_merge"
    TRIAL_MERGE_OVERFLOW = "trial_merge_overflow"
    CAP_ADJUSTMENT = "cap_adjustment"


class CreditTransaction(DBSerializableModel):
    """
    Immutable ledger row. One per pool touched by a ledger-affecting
    operation; negative amounts are spends or losses.
    """

    collection_name: ClassVar[str] = "credit_transactions"

    id: Optional[str] = Field(default=None)
    user_id: str
    amount: int
    balance_after: int = Field(description="Total balance snapshot after this row was applied.")
    pool: CreditPool
    transaction_type: TransactionType
    description: Optional[str] = None
    app_key: Optional[str] = None
    reference_id: Optional[str] = Field(
        default=None,
        description="External correlation id (invoice, checkout session, request id).",
    )
    ledger_seq: int = Field(default=0, description="Account ledger_seq of the write that produced this row.")
    entry_index: int = Field(default=0, description="Position of this row within its write.")
    created_at: datetime = Field(default_factory=utcnow)
