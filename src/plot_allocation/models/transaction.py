from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple

from pydantic import Field

from .base import DBSerializableModel


class TransactionType(str, Enum):
    PLOT_PURCHASE = "plot_purchase"
    SUBSCRIPTION_UPGRADE = "subscription_upgrade"
    CREDIT_PURCHASE = "credit_purchase"
    MODEL_UPLOAD = "model_upload"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Transaction(DBSerializableModel):
    """
    Money movement record: payment intents, credit-funded purchases,
    credit top-ups and subscription payments.
    """

    collection_name: ClassVar[str] = "plot_transactions"
    unique_fields: ClassVar[Tuple[str, ...]] = ("transaction_id",)

    id: Optional[str] = Field(default=None)
    transaction_id: str = Field(description="External payment-intent id or generated id.")
    user_id: str
    plot_id: Optional[str] = None
    amount: int = Field(ge=0, description="Amount in cents.")
    currency: str = "USD"
    type: TransactionType
    status: TransactionStatus = TransactionStatus.PENDING
    payment_processor: str = "stripe"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
