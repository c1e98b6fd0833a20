from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class LedgerEventType(str, Enum):
    TRANSACTION = "transaction"
    ERROR = "error"
    SYSTEM = "system"
    WEBHOOK = "webhook"


class LedgerEntry(DBSerializableModel):
    """
    Structured audit entry persisted to the store and mirrored to the ledger file.
    """

    collection_name: ClassVar[str] = "credit_ledger"

    id: Optional[str] = Field(default=None)
    event_type: LedgerEventType
    user_id: Optional[str] = None
    app_key: Optional[str] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Reference id (invoice, session, event id) tying the entry to its trigger.",
    )
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
