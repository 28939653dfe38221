from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple

from pydantic import BaseModel, Field

from .base import DBSerializableModel


class PaymentStatus(str, Enum):
    FREE = "free"
    PENDING = "pending"
    PAID = "paid"
    PAID_WITH_CREDITS = "paid_with_credits"
    REFUNDED = "refunded"


class Position(BaseModel):
    x: float
    z: float
    # Accepted from 3D clients, never used for allocation or pricing
    y: Optional[float] = None

    @property
    def key(self) -> str:
        """Normalised unique-index key; 5 and 5.0 (and -0.0 and 0.0) collide."""
        return f"{float(self.x) + 0.0!r}:{float(self.z) + 0.0!r}"


class PlotSize(BaseModel):
    width: int
    depth: int

    @property
    def area(self) -> int:
        return self.width * self.depth


class PlotPricing(BaseModel):
    """Pricing snapshot frozen at purchase time."""

    total_cost: int
    free_squares: int
    paid_squares: int
    price_per_square: int


class Plot(DBSerializableModel):
    collection_name: ClassVar[str] = "plots"
    unique_fields: ClassVar[Tuple[str, ...]] = ("position_key",)

    id: Optional[str] = Field(default=None)
    user_id: str
    username: str = ""
    position: Position
    position_key: str = ""
    size: PlotSize
    pricing: PlotPricing
    payment_status: PaymentStatus
    transaction_id: Optional[str] = Field(
        default=None, description="Id of the transaction that paid for this plot."
    )
    building: Dict[str, Any] = Field(default_factory=dict)
    advertising: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def model_post_init(self, __context: Any) -> None:
        if not self.position_key:
            self.position_key = self.position.key
