"""
Wiring for the ledger services. Collaborators can be passed in (tests,
alternative backends); anything omitted is built from settings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .cache.base import AsyncCacheBackend
from .cache.memory import InMemoryAsyncCache
from .catalog.costs import CreditCostCatalog
from .catalog.plans import PlanCatalog
from .config import Settings, settings as default_settings
from .db.base import BaseDBManager
from .db.memory import InMemoryDBManager
from .db.mongo import MongoDBManager
from .gateway.base import PaymentGateway
from .gateway.stripe_gateway import StripeGateway
from .logging.ledger_logger import LedgerLogger
from .notifications.queue import AsyncNotificationQueue, InMemoryNotificationQueue
from .services.credit_service import CreditService
from .services.expiration_service import ExpirationService
from .services.notification_service import NotificationService
from .services.reconciliation_service import ReconciliationService
from .services.subscription_service import SubscriptionService
from .services.trial_service import TrialService
from .services.webhook_service import WebhookService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    db: BaseDBManager
    ledger: LedgerLogger
    costs: CreditCostCatalog
    plans: PlanCatalog
    notifications: NotificationService
    credits: CreditService
    trials: TrialService
    subscriptions: SubscriptionService
    expiration: ExpirationService
    reconciliation: ReconciliationService
    webhooks: WebhookService
    gateway: Optional[PaymentGateway] = None


def _create_db_manager(settings: Settings) -> BaseDBManager:
    if settings.MONGO_URI:
        return MongoDBManager.from_client_uri(
            settings.MONGO_URI,
            settings.MONGO_DB,
            use_transactions=settings.MONGO_USE_TRANSACTIONS,
        )
    logger.warning("CREDIT_MONGO_URI not set; using the in-memory ledger store")
    return InMemoryDBManager()


def _create_gateway(settings: Settings) -> Optional[PaymentGateway]:
    if not settings.STRIPE_SECRET_KEY:
        return None
    return StripeGateway(settings.STRIPE_SECRET_KEY, default_app_key=settings.DEFAULT_APP_KEY)


def build_services(
    settings: Optional[Settings] = None,
    *,
    db: Optional[BaseDBManager] = None,
    cache: Optional[AsyncCacheBackend] = None,
    queue: Optional[AsyncNotificationQueue] = None,
    gateway: Optional[PaymentGateway] = None,
    plans: Optional[PlanCatalog] = None,
    ledger_path: Optional[Path] = None,
) -> Services:
    settings = settings or default_settings
    db = db or _create_db_manager(settings)
    cache = cache or InMemoryAsyncCache()
    queue = queue or InMemoryNotificationQueue()
    gateway = gateway or _create_gateway(settings)
    plans = plans or PlanCatalog.from_settings(settings)

    ledger = LedgerLogger(db=db, file_path=ledger_path or Path(settings.LEDGER_LOG_PATH))
    costs = CreditCostCatalog(db, cache=cache, ttl_seconds=settings.COST_CACHE_TTL_SECONDS)
    notifications = NotificationService(
        db=db, queue=queue, low_credit_threshold=settings.LOW_CREDIT_THRESHOLD
    )
    credits = CreditService(
        db=db,
        ledger=ledger,
        costs=costs,
        notifier=notifications,
        default_cap=settings.DEFAULT_SUBSCRIPTION_CAP,
        max_retries=settings.MAX_WRITE_RETRIES,
    )
    trials = TrialService(credits, notifier=notifications)
    subscriptions = SubscriptionService(
        db=db,
        ledger=ledger,
        credits=credits,
        plans=plans,
        gateway=gateway,
        bundle_coupon_id=settings.STRIPE_COUPON_BUNDLE_DISCOUNT,
    )
    webhooks = WebhookService(
        db=db,
        ledger=ledger,
        credits=credits,
        trials=trials,
        subscriptions=subscriptions,
        plans=plans,
        gateway=gateway,
        notifier=notifications,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        tolerance_seconds=settings.STRIPE_WEBHOOK_TOLERANCE,
        trial_days=settings.TRIAL_DAYS,
    )
    return Services(
        settings=settings,
        db=db,
        ledger=ledger,
        costs=costs,
        plans=plans,
        notifications=notifications,
        credits=credits,
        trials=trials,
        subscriptions=subscriptions,
        expiration=ExpirationService(db=db, ledger=ledger, trials=trials),
        reconciliation=ReconciliationService(db=db, ledger=ledger),
        webhooks=webhooks,
        gateway=gateway,
    )
