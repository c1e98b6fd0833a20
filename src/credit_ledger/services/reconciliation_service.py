from __future__ import annotations

import logging

from ..db.base import BaseDBManager
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.credits import ReconciliationReport

logger = logging.getLogger(__name__)


class ReconciliationService:
    """
    Detects balance/log divergence on stores that cannot commit the account
    row and its ledger rows atomically.

    Each ledger-affecting write bumps the account's ledger_seq and stamps the
    same value on every row it appends, so after a complete write the account
    and the newest row agree. A mismatch means one half of a write landed
    without the other.
    """

    def __init__(self, db: BaseDBManager, ledger: LedgerLogger) -> None:
        self._db = db
        self._ledger = ledger

    async def check_account(self, user_id: str) -> ReconciliationReport:
        account = await self._db.get_account(user_id)
        log_seq = await self._db.get_latest_ledger_seq(user_id)

        if account is None:
            report = ReconciliationReport(
                user_id=user_id,
                consistent=log_seq == 0,
                account_seq=0,
                ledger_seq=log_seq,
                total=0,
                subscription_balance=0,
                cap=0,
                over_cap=False,
            )
        else:
            report = ReconciliationReport(
                user_id=user_id,
                consistent=account.ledger_seq == log_seq,
                account_seq=account.ledger_seq,
                ledger_seq=log_seq,
                total=account.total(utcnow()),
                subscription_balance=account.subscription_balance,
                cap=account.subscription_cap,
                over_cap=account.subscription_balance > account.subscription_cap,
            )

        if not report.consistent:
            logger.error(
                "Ledger divergence for %s: account seq %d, log seq %d",
                user_id,
                report.account_seq,
                report.ledger_seq,
            )
            await self._ledger.log_error(
                message="Balance and transaction log diverged",
                details=report.model_dump(),
                user_id=user_id,
            )
        return report
