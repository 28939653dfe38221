from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel


class LedgerEventType(str, Enum):
    PURCHASE = "purchase"
    PAYMENT = "payment"
    REFUND = "refund"
    ACCOUNT = "account"
    ERROR = "error"


class LedgerEntry(DBSerializableModel):
    """
    Structured audit/revenue event persisted to DB and mirrored to a file log.
    """

    collection_name: ClassVar[str] = "plot_ledger"

    id: Optional[str] = Field(default=None)
    event_type: LedgerEventType
    user_id: Optional[str] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Correlation id for tracing a logical operation across components.",
    )
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
