from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Optional

from ..db.base import BaseDBManager
from ..errors import StoreUnavailable
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from .trial_service import TrialService

logger = logging.getLogger(__name__)


class ExpirationService:
    """
    Periodic cleanup of lapsed trial pools.

    Reads already report a lapsed trial as zero; this sweep makes the stored
    value and the ledger agree. Typically invoked by an external scheduler.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        trials: TrialService,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._trials = trials

    async def expire_lapsed_trials(self, as_of: Optional[datetime] = None) -> Dict[str, int]:
        """
        Expire every trial pool whose expiry is at or before `as_of`.
        Returns the expired amount per user. One account failing does not
        stop the sweep; it is picked up again on the next run.
        """
        as_of = as_of or utcnow()
        expired: Dict[str, int] = {}

        for account in await self._db.find_accounts_with_lapsed_trials(as_of):
            try:
                amount = await self._trials.expire_trial_credits(
                    account.user_id, reason="trial period ended"
                )
            except StoreUnavailable:
                logger.warning("Could not expire trial for %s; will retry next sweep", account.user_id)
                continue
            if amount:
                expired[account.user_id] = amount

        await self._ledger.log_system(
            message="Lapsed trial sweep completed",
            details={"as_of": as_of.isoformat(), "accounts": len(expired), "credits": sum(expired.values())},
        )
        return expired
