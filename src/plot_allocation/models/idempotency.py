from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar, Dict, Optional

from pydantic import Field

from .base import DBSerializableModel


class IdempotencyRecord(DBSerializableModel):
    """
    Result of a mutating request, stored under the client's idempotency key
    in the same unit of work as the mutation itself.
    """

    collection_name: ClassVar[str] = "plot_idempotency_keys"
    primary_key: ClassVar[Optional[str]] = "key"

    key: str
    user_id: str
    operation: str
    response: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
