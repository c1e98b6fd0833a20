from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseDBManager
from ..models.ledger import LedgerEntry, LedgerEventType

logger = logging.getLogger(__name__)


class LedgerLogger:
    """
    Structured ledger logger that writes to the store and a file.

    The file is append-only, line-delimited JSON for log aggregators. Store
    entries use the `LedgerEntry` model and the configured `BaseDBManager`,
    so they commit or roll back with the operation that wrote them.
    """

    def __init__(self, db: BaseDBManager, file_path: Path) -> None:
        self._db = db
        self._file_path = Path(file_path)
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def file_path(self) -> Path:
        return self._file_path

    async def log_transaction(
        self,
        user_id: str,
        message: str,
        details: dict[str, Any],
        app_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            LedgerEventType.TRANSACTION,
            user_id=user_id,
            app_key=app_key,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        app_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            LedgerEventType.ERROR,
            user_id=user_id,
            app_key=app_key,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_webhook(
        self,
        event_id: str,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
    ) -> None:
        await self._log(
            LedgerEventType.WEBHOOK,
            user_id=user_id,
            app_key=None,
            message=message,
            details=details,
            correlation_id=event_id,
        )

    async def log_system(self, message: str, details: dict[str, Any]) -> None:
        await self._log(
            LedgerEventType.SYSTEM,
            user_id=None,
            app_key=None,
            message=message,
            details=details,
            correlation_id=None,
        )

    async def _log(
        self,
        event_type: LedgerEventType,
        user_id: Optional[str],
        app_key: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str],
    ) -> None:
        entry = LedgerEntry(
            event_type=event_type,
            user_id=user_id,
            app_key=app_key,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

        await self._db.add_ledger_entry(entry)
        # File mirror is best-effort; the store entry is authoritative.
        try:
            line = json.dumps(entry.serialize_for_db(), default=str)
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError:
            logger.warning("Could not append to ledger file %s", self._file_path, exc_info=True)
