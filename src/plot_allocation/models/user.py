from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel
from .subscription import SubscriptionTier


class UserAccount(DBSerializableModel):
    """
    Plot owner as seen by the allocation engine.

    `id` is the identifier issued by the external identity provider; the
    engine never invents one.
    """

    collection_name: ClassVar[str] = "plot_users"

    id: str
    username: str = ""
    email: str = ""
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    subscription_expires_at: Optional[datetime] = None
    free_squares_limit: int = Field(default=25, ge=0, description="Base free-square allowance.")
    free_squares_used: int = Field(default=0, ge=0)
    credits: int = Field(default=0, description="Prepaid balance in cents.")
    total_spent: int = Field(default=0, description="Cumulative paid amount in cents.")
    version: int = Field(default=0, description="Optimistic concurrency token.")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def new(cls, user_id: str, free_squares_limit: int = 25, username: str | None = None) -> "UserAccount":
        return cls(
            id=user_id,
            username=username or f"user_{user_id[-8:]}",
            free_squares_limit=free_squares_limit,
        )
