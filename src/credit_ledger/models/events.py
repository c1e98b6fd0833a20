from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow
from .subscription import SubscriptionSnapshot


class ProcessedEvent(DBSerializableModel):
    """
    Idempotency marker: a row for an event id means its side effects were
    applied and must not be applied again.
    """

    collection_name: ClassVar[str] = "stripe_events"

    id: str
    type: str
    payload: Optional[Dict[str, Any]] = None
    processed_at: datetime = Field(default_factory=utcnow)


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


class WebhookResult(BaseModel):
    outcome: WebhookOutcome
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    message: str = ""


# Typed provider events. Each webhook payload is parsed into exactly one of
# these before dispatch; anything else becomes UnhandledEvent.


class CheckoutCompleted(BaseModel):
    kind: Literal["checkout_completed"] = "checkout_completed"
    session_id: str
    customer_id: Optional[str] = None
    checkout_type: Optional[str] = None
    app_key: Optional[str] = None
    credits: int = 0
    pack_name: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class InvoicePaid(BaseModel):
    kind: Literal["invoice_paid"] = "invoice_paid"
    invoice_id: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    billing_reason: Optional[str] = None


class InvoiceNeedsAttention(BaseModel):
    """Payment failed or needs customer action; logged only."""

    kind: Literal["invoice_attention"] = "invoice_attention"
    event_type: str
    invoice_id: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    attempt_count: int = 0


class SubscriptionChanged(BaseModel):
    kind: Literal["subscription_changed"] = "subscription_changed"
    change: Literal["updated", "deleted", "paused", "resumed", "trial_will_end"]
    subscription: SubscriptionSnapshot


class UnhandledEvent(BaseModel):
    kind: Literal["unhandled"] = "unhandled"
    event_type: str


ProviderEvent = Union[
    CheckoutCompleted,
    InvoicePaid,
    InvoiceNeedsAttention,
    SubscriptionChanged,
    UnhandledEvent,
]
