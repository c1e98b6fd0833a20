from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

import stripe

from ..catalog.plans import PlanCatalog
from ..db.base import BaseDBManager
from ..errors import InvalidSignature, PaymentProviderError, WebhookHandlerError
from ..gateway.base import PaymentGateway
from ..gateway.payloads import parse_event
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.events import (
    CheckoutCompleted,
    InvoiceNeedsAttention,
    InvoicePaid,
    ProcessedEvent,
    ProviderEvent,
    SubscriptionChanged,
    UnhandledEvent,
    WebhookOutcome,
    WebhookResult,
)
from ..models.subscription import SubscriptionSnapshot
from .credit_service import CreditService
from .notification_service import NotificationService
from .subscription_service import SubscriptionService
from .trial_service import TrialService

logger = logging.getLogger(__name__)


class WebhookService:
    """
    Payment-provider event intake.

    received -> verified -> duplicate | processing -> processed

    An event id with a processed marker is acknowledged without running any
    handler. The marker is written only after every handler side effect has
    completed; a handler failure leaves no marker, so the provider retries.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        credits: CreditService,
        trials: TrialService,
        subscriptions: SubscriptionService,
        plans: PlanCatalog,
        gateway: Optional[PaymentGateway] = None,
        notifier: Optional[NotificationService] = None,
        webhook_secret: str = "",
        tolerance_seconds: int = 300,
        trial_days: int = 7,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._credits = credits
        self._trials = trials
        self._subscriptions = subscriptions
        self._plans = plans
        self._gateway = gateway
        self._notifier = notifier
        self._secret = webhook_secret
        self._tolerance = tolerance_seconds
        self._trial_days = trial_days

    # Intake
    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Check the Stripe-Signature header and return the decoded event body."""
        if not self._secret:
            raise InvalidSignature("Webhook secret is not configured")
        if not signature or not payload:
            raise InvalidSignature("Missing signature or body")

        text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        try:
            stripe.WebhookSignature.verify_header(text, signature, self._secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignature(f"Invalid signature: {exc}") from exc

        try:
            body = json.loads(text)
        except ValueError as exc:
            raise InvalidSignature("Malformed event payload") from exc
        if not isinstance(body, dict) or not body.get("id") or not body.get("type"):
            raise InvalidSignature("Malformed event payload")
        return body

    async def handle_stripe_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        try:
            event = self.verify(payload, signature)
        except InvalidSignature as exc:
            logger.warning("Rejected webhook: %s", exc.message)
            return WebhookResult(outcome=WebhookOutcome.REJECTED, message=exc.message)
        return await self.handle_provider_event(event["id"], event["type"], event)

    async def handle_provider_event(
        self, event_id: str, event_type: str, payload: Mapping[str, Any]
    ) -> WebhookResult:
        if not event_id or not event_type:
            return WebhookResult(
                outcome=WebhookOutcome.REJECTED,
                event_id=event_id or None,
                event_type=event_type or None,
                message="Missing event id or type",
            )

        if await self._db.get_processed_event(event_id) is not None:
            logger.info("Duplicate webhook %s (%s)", event_id, event_type)
            return WebhookResult(
                outcome=WebhookOutcome.DUPLICATE, event_id=event_id, event_type=event_type
            )

        try:
            event = parse_event(event_type, payload, self._plans.default_app_key)
            await self._dispatch(event)
        except Exception as exc:
            logger.exception("Error handling webhook %s (%s)", event_type, event_id)
            raise WebhookHandlerError(event_id, event_type) from exc

        recorded = await self._db.add_processed_event(
            ProcessedEvent(id=event_id, type=event_type, payload=dict(payload))
        )
        if not recorded:
            logger.warning("Webhook %s was processed concurrently by another delivery", event_id)

        await self._ledger.log_webhook(
            event_id,
            message=f"Processed {event_type}",
            details={"kind": event.kind},
        )
        return WebhookResult(
            outcome=WebhookOutcome.PROCESSED, event_id=event_id, event_type=event_type
        )

    async def _dispatch(self, event: ProviderEvent) -> None:
        if isinstance(event, CheckoutCompleted):
            await self._on_checkout_completed(event)
        elif isinstance(event, InvoicePaid):
            await self._on_invoice_paid(event)
        elif isinstance(event, InvoiceNeedsAttention):
            await self._on_invoice_needs_attention(event)
        elif isinstance(event, SubscriptionChanged):
            await self._on_subscription_changed(event)
        elif isinstance(event, UnhandledEvent):
            logger.info("Unhandled webhook event type: %s", event.event_type)

    async def _resolve_user(self, customer_id: Optional[str]) -> Optional[str]:
        if not customer_id:
            return None
        user_id = await self._db.get_user_id_for_customer(customer_id)
        if user_id is None:
            logger.error("No ledger user for payment customer %s", customer_id)
        return user_id

    # Handlers
    async def _on_checkout_completed(self, event: CheckoutCompleted) -> None:
        if not event.customer_id:
            logger.error("No customer on checkout session %s", event.session_id)
            return

        user_id = await self._db.get_user_id_for_customer(event.customer_id)
        if user_id is None and event.metadata.get("user_id"):
            user_id = event.metadata["user_id"]
            await self._db.link_customer(event.customer_id, user_id)
        if user_id is None:
            logger.error("No ledger user for payment customer %s", event.customer_id)
            return

        app_key = event.app_key or self._plans.default_app_key

        if event.checkout_type == "topup":
            credits = event.credits
            pack = self._plans.find_topup_pack(event.metadata.get("pack_key"))
            if credits <= 0 and pack is not None:
                credits = pack.credits
            if credits > 0:
                pack_name = event.pack_name or (pack.name if pack else "Top-up")
                await self._credits.allocate_topup_credits(
                    user_id, credits, pack_name, reference_id=event.session_id
                )
                logger.info("Allocated %d top-up credits for user %s", credits, user_id)
        elif event.checkout_type == "trial":
            amount = self._plans.trial_credits(app_key)
            trial_ends_at = utcnow() + timedelta(days=self._trial_days)
            await self._trials.allocate_trial_credits(
                user_id, amount, app_key, trial_ends_at, reference_id=event.session_id
            )
            logger.info(
                "Allocated %d trial credits for %s, user %s, expires %s",
                amount,
                app_key,
                user_id,
                trial_ends_at.isoformat(),
            )
        else:
            # Subscription checkouts are synced from the subscription events
            logger.info("Checkout completed for %s subscription, user %s", app_key, user_id)

    async def _on_invoice_paid(self, event: InvoicePaid) -> None:
        if not event.subscription_id:
            return
        user_id = await self._resolve_user(event.customer_id)
        if user_id is None:
            return

        snapshot = await self._fetch_subscription(event.subscription_id)
        app_key = (snapshot.app_key if snapshot else None) or self._plans.default_app_key
        price_id = snapshot.price_id if snapshot else None

        if (
            snapshot is not None
            and event.billing_reason == "subscription_create"
            and snapshot.status == "trialing"
        ):
            # Trial setup fee, not a recurring charge
            logger.info("Skipping allocation for trial setup invoice %s, user %s", event.invoice_id, user_id)
            return

        if event.billing_reason == "subscription_cycle":
            merge = await self._trials.merge_trial_credits(user_id, app_key)
            if merge.merged:
                logger.info("Merged %d trial credits into %s for user %s", merge.merged, app_key, user_id)

        monthly = self._plans.monthly_credits(app_key, price_id)
        result = await self._credits.allocate_subscription_credits(
            user_id, monthly, app_key, reference_id=event.invoice_id
        )
        cap = await self._subscriptions.recalculate_subscription_cap(user_id)
        logger.info(
            "Allocated %d/%d subscription credits for %s, user %s (invoice %s, cap %d)",
            result.allocated,
            monthly,
            app_key,
            user_id,
            event.invoice_id,
            cap,
        )

    async def _fetch_subscription(self, subscription_id: str) -> Optional[SubscriptionSnapshot]:
        if self._gateway is None:
            return None
        try:
            return await self._gateway.retrieve_subscription(subscription_id)
        except PaymentProviderError:
            logger.warning(
                "Could not retrieve subscription %s, using defaults", subscription_id, exc_info=True
            )
            return None

    async def _on_invoice_needs_attention(self, event: InvoiceNeedsAttention) -> None:
        user_id = (
            await self._db.get_user_id_for_customer(event.customer_id) if event.customer_id else None
        )
        # Status changes arrive separately as customer.subscription.updated
        logger.warning(
            "%s for user %s, invoice %s, subscription %s, attempt %d",
            event.event_type,
            user_id or "unknown",
            event.invoice_id,
            event.subscription_id or "none",
            event.attempt_count,
        )

    async def _on_subscription_changed(self, event: SubscriptionChanged) -> None:
        sub = event.subscription
        user_id = await self._resolve_user(sub.customer_id)
        if user_id is None:
            return
        app_key = sub.app_key or self._plans.default_app_key

        if event.change == "trial_will_end":
            if self._notifier is not None:
                await self._notifier.notify_trial_ending(user_id, app_key, sub.trial_end)
            return

        await self._subscriptions.sync_app_subscription(user_id, sub, app_key)
        cap = await self._subscriptions.recalculate_subscription_cap(user_id)
        logger.info("Recalculated cap for user %s after %s: %d", user_id, event.change, cap)
        await self._subscriptions.reconcile_bundle_discount(sub.customer_id or "", user_id)

        if event.change == "updated" and sub.status != "trialing" and sub.trial_end is not None:
            if sub.status == "active":
                # Conversion credits are merged by the subscription_cycle invoice
                logger.info("Trial converted to active for %s, user %s", app_key, user_id)
            else:
                await self._trials.expire_trial_credits(
                    user_id, app_key, reason=f"Trial ended with status: {sub.status}"
                )
