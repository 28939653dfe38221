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
    Structured audit ledger for purchases, payments and refunds.

    Every event is persisted as a `LedgerEntry` through the configured
    `BaseDBManager` and mirrored to an append-only, line-delimited JSON file
    for log aggregators. Events are also forwarded to the stdlib logger.
    """

    def __init__(self, db: BaseDBManager, file_path: Path) -> None:
        self._db = db
        self._file_path = file_path
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_purchase(
        self,
        user_id: str,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(LedgerEventType.PURCHASE, user_id, message, details, correlation_id)

    async def log_payment(
        self,
        user_id: str,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(LedgerEventType.PAYMENT, user_id, message, details, correlation_id)

    async def log_refund(
        self,
        user_id: str,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(LedgerEventType.REFUND, user_id, message, details, correlation_id)

    async def log_account(
        self,
        user_id: str,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(LedgerEventType.ACCOUNT, user_id, message, details, correlation_id)

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(LedgerEventType.ERROR, user_id, message, details, correlation_id)

    async def _log(
        self,
        event_type: LedgerEventType,
        user_id: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str],
    ) -> None:
        entry = LedgerEntry(
            event_type=event_type,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

        level = logging.WARNING if event_type is LedgerEventType.ERROR else logging.INFO
        logger.log(
            level,
            "%s: %s",
            event_type.value,
            message,
            extra={"user_id": user_id, "correlation_id": correlation_id},
        )

        await self._db.add_ledger_entry(entry)
        # File mirroring is best-effort; the DB entry is the record of truth.
        try:
            line = json.dumps(entry.serialize_for_db(), default=str)
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError:
            logger.exception("could not mirror ledger entry to %s", self._file_path)
