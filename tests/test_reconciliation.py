from __future__ import annotations

import json

import pytest

from credit_ledger.cache.memory import InMemoryAsyncCache
from credit_ledger.catalog.costs import CreditCostCatalog
from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.logging.ledger_logger import LedgerLogger
from credit_ledger.models.account import UserCreditAccount
from credit_ledger.models.transaction import CreditPool, CreditTransaction, TransactionType
from credit_ledger.services.credit_service import CreditService
from credit_ledger.services.reconciliation_service import ReconciliationService


def _build(tmp_path):
    db = InMemoryDBManager()
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    credits = CreditService(db=db, ledger=ledger, costs=CreditCostCatalog(db, cache=InMemoryAsyncCache()))
    return db, ledger, credits, ReconciliationService(db=db, ledger=ledger)


def _last_ledger_line(ledger: LedgerLogger) -> dict:
    lines = ledger.file_path.read_text(encoding="utf-8").splitlines()
    return json.loads(lines[-1])


@pytest.mark.asyncio
async def test_complete_writes_are_consistent(tmp_path):
    _, _, credits, reconciler = _build(tmp_path)
    await credits.allocate_subscription_credits("user-1", 300, "keywords")
    await credits.allocate_topup_credits("user-1", 75)

    report = await reconciler.check_account("user-1")

    assert report.consistent is True
    assert report.account_seq == report.ledger_seq == 2
    assert report.total == 375
    assert report.over_cap is False


@pytest.mark.asyncio
async def test_unknown_user_is_consistent(tmp_path):
    _, _, _, reconciler = _build(tmp_path)

    report = await reconciler.check_account("nobody")

    assert report.consistent is True
    assert report.cap == 0


@pytest.mark.asyncio
async def test_orphaned_log_row_is_reported(tmp_path):
    db, ledger, credits, reconciler = _build(tmp_path)
    await credits.allocate_topup_credits("user-1", 75)
    # A row whose account write never landed
    await db.add_transaction(
        CreditTransaction(
            user_id="user-1",
            amount=50,
            balance_after=125,
            pool=CreditPool.TOPUP,
            transaction_type=TransactionType.TOPUP_PURCHASE,
            ledger_seq=2,
        )
    )

    report = await reconciler.check_account("user-1")

    assert report.consistent is False
    assert (report.account_seq, report.ledger_seq) == (1, 2)
    entry = _last_ledger_line(ledger)
    assert entry["event_type"] == "error"
    assert entry["user_id"] == "user-1"


@pytest.mark.asyncio
async def test_account_without_log_rows_is_reported(tmp_path):
    db, _, _, reconciler = _build(tmp_path)
    await db.create_account(
        UserCreditAccount(user_id="user-1", subscription_balance=1200, subscription_cap=900, ledger_seq=3)
    )

    report = await reconciler.check_account("user-1")

    assert report.consistent is False
    assert report.ledger_seq == 0
    assert report.over_cap is True
