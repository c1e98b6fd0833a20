"""
Translate Stripe JSON payloads into the ledger's typed events.

Stripe objects arrive either expanded (nested dicts) or as bare id strings;
the helpers here accept both shapes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

from ..models.events import (
    CheckoutCompleted,
    InvoiceNeedsAttention,
    InvoicePaid,
    ProviderEvent,
    SubscriptionChanged,
    UnhandledEvent,
)
from ..models.subscription import SubscriptionSnapshot

SUBSCRIPTION_CHANGES = {
    "customer.subscription.updated": "updated",
    "customer.subscription.deleted": "deleted",
    "customer.subscription.paused": "paused",
    "customer.subscription.resumed": "resumed",
    "customer.subscription.trial_will_end": "trial_will_end",
}

INVOICE_ATTENTION_TYPES = ("invoice.payment_failed", "invoice.payment_action_required")


def from_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, "", 0):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def ref_id(value: Any) -> Optional[str]:
    """Id of a Stripe reference that may be a string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        return value.get("id")
    return None


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _coupon_ids(sub: Mapping[str, Any]) -> List[str]:
    ids: List[str] = []
    for discount in sub.get("discounts") or []:
        # Unexpanded discounts are bare "di_..." ids and carry no coupon
        coupon = _mapping(_mapping(discount).get("source")).get("coupon") or _mapping(discount).get("coupon")
        coupon_id = ref_id(coupon)
        if coupon_id:
            ids.append(coupon_id)
    legacy_id = ref_id(_mapping(sub.get("discount")).get("coupon"))
    if legacy_id and legacy_id not in ids:
        ids.append(legacy_id)
    return ids


def parse_subscription(sub: Mapping[str, Any], default_app_key: Optional[str] = None) -> SubscriptionSnapshot:
    items = _mapping(sub.get("items")).get("data") or []
    first_item = _mapping(items[0]) if items else {}
    price = first_item.get("price")
    pause = sub.get("pause_collection")
    metadata = _mapping(sub.get("metadata"))

    # Period bounds live on the latest invoice (when expanded) or the item
    invoice = _mapping(sub.get("latest_invoice"))
    period_start = (
        from_timestamp(invoice.get("period_start"))
        or from_timestamp(first_item.get("current_period_start"))
        or from_timestamp(sub.get("current_period_start"))
        or from_timestamp(sub.get("start_date"))
    )
    period_end = (
        from_timestamp(invoice.get("period_end"))
        or from_timestamp(first_item.get("current_period_end"))
        or from_timestamp(sub.get("current_period_end"))
    )

    return SubscriptionSnapshot(
        id=sub["id"],
        customer_id=ref_id(sub.get("customer")),
        status=sub.get("status") or "incomplete",
        app_key=metadata.get("app_key") or default_app_key,
        price_id=ref_id(price),
        amount_cents=_mapping(price).get("unit_amount"),
        currency=sub.get("currency"),
        is_paused=bool(pause),
        resume_at=from_timestamp(_mapping(pause).get("resumes_at")),
        trial_end=from_timestamp(sub.get("trial_end")),
        cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
        canceled_at=from_timestamp(sub.get("canceled_at")),
        start_date=from_timestamp(sub.get("start_date")),
        current_period_start=period_start,
        current_period_end=period_end,
        discount_coupon_ids=_coupon_ids(sub),
    )


def invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    details = _mapping(_mapping(invoice.get("parent")).get("subscription_details"))
    return ref_id(details.get("subscription")) or ref_id(invoice.get("subscription"))


def parse_event(
    event_type: str,
    payload: Mapping[str, Any],
    default_app_key: Optional[str] = None,
) -> ProviderEvent:
    """
    Turn a Stripe event body (`{"id", "type", "data": {"object": ...}}`) into
    exactly one typed event. Types the ledger does not consume become
    UnhandledEvent.
    """
    obj = _mapping(_mapping(payload.get("data")).get("object"))

    if event_type == "checkout.session.completed":
        metadata = {k: str(v) for k, v in _mapping(obj.get("metadata")).items()}
        try:
            credits = int(metadata.get("credits") or 0)
        except ValueError:
            credits = 0
        return CheckoutCompleted(
            session_id=obj.get("id", ""),
            customer_id=ref_id(obj.get("customer")),
            checkout_type=metadata.get("type"),
            app_key=metadata.get("app_key"),
            credits=credits,
            pack_name=metadata.get("pack_name"),
            metadata=metadata,
        )

    if event_type == "invoice.payment_succeeded":
        return InvoicePaid(
            invoice_id=obj.get("id", ""),
            customer_id=ref_id(obj.get("customer")),
            subscription_id=invoice_subscription_id(obj),
            billing_reason=obj.get("billing_reason"),
        )

    if event_type in INVOICE_ATTENTION_TYPES:
        return InvoiceNeedsAttention(
            event_type=event_type,
            invoice_id=obj.get("id", ""),
            customer_id=ref_id(obj.get("customer")),
            subscription_id=invoice_subscription_id(obj),
            attempt_count=int(obj.get("attempt_count") or 0),
        )

    change = SUBSCRIPTION_CHANGES.get(event_type)
    if change is not None:
        return SubscriptionChanged(
            change=change,
            subscription=parse_subscription(obj, default_app_key),
        )

    return UnhandledEvent(event_type=event_type)
