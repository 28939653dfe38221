from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .plot import PaymentStatus, PlotSize, Position
from .subscription import SubscriptionTier
from .transaction import TransactionStatus


class PricingRequest(BaseModel):
    size: PlotSize
    position: Position
    user_id: Optional[str] = None
    has_custom_model: bool = False
    premium_features: List[str] = Field(default_factory=list)


class PurchaseRequest(BaseModel):
    user_id: str
    position: Position
    size: PlotSize
    building: Optional[Dict[str, Any]] = None
    advertising: Optional[Dict[str, Any]] = None
    premium_features: List[str] = Field(default_factory=list)
    payment_intent_id: Optional[str] = None
    payment_method: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PurchaseResult(BaseModel):
    plot_id: str
    total_cost: int
    payment_status: PaymentStatus
    free_squares_used: int
    paid_squares: int
    transaction_id: Optional[str] = None
    message: str = ""


class PlotPaymentIntentRequest(BaseModel):
    user_id: str
    plot_size: PlotSize
    has_custom_model: bool = False
    position: Optional[Position] = None
    premium_features: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PlotPaymentIntentResponse(BaseModel):
    payment_required: bool
    total_cost: int
    free_squares: int
    paid_squares: int
    plot_cost: int = 0
    custom_model_fee: int = 0
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None


class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str
    status: str = Field(description="succeeded, failed or canceled")


class ConfirmPaymentResponse(BaseModel):
    transaction_id: str
    status: TransactionStatus
    amount: int


class ProcessPaymentRequest(BaseModel):
    user_id: str
    amount: int = Field(gt=0)
    payment_method: str = Field(description="card or crypto")
    payment_details: Dict[str, str] = Field(default_factory=dict)
    description: str = ""


class ProcessPaymentResponse(BaseModel):
    success: bool
    payment_id: str
    status: TransactionStatus
    error: Optional[str] = None


class RefundRequest(BaseModel):
    transaction_id: str
    reason: Optional[str] = None


class RefundResponse(BaseModel):
    transaction_id: str
    refund_amount: int
    status: TransactionStatus


class AvailablePlotsResponse(BaseModel):
    available_positions: List[Dict[str, float]]
    occupied_plots: List[Dict[str, Any]]
    total_available: int
    total_occupied: int


class ProfileRequest(BaseModel):
    user_id: str
    username: str
    email: str = ""


class AddCreditsRequest(BaseModel):
    amount: int = Field(gt=0)
    payment_id: str
    payment_processor: str = "stripe"


class SubscriptionIntentRequest(BaseModel):
    tier: SubscriptionTier
    duration_months: int = Field(default=1, gt=0)


class UpgradeSubscriptionRequest(BaseModel):
    tier: SubscriptionTier
    payment_intent_id: str
    duration_months: int = Field(default=1, gt=0)


class UserSummary(BaseModel):
    user_id: str
    username: str
    subscription_tier: SubscriptionTier
    credits: int
    total_spent: int
    free_squares_limit: int
    free_squares_used: int
    total_free_squares: int
    remaining_free_squares: int
