from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SubscriptionTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    STARTUP = "startup"
    BUSINESS = "business"
    CORPORATE = "corporate"
    ENTERPRISE = "enterprise"


class TierTerms(BaseModel):
    """
    Everything a subscription tier changes about plot pricing and quota.
    """

    model_config = {"frozen": True}

    bonus_squares: int = Field(ge=0, description="Free squares granted on top of the base allowance.")
    discount_rate: float = Field(ge=0, le=1, description="Fraction taken off plot, model and feature charges.")
    custom_model_fee_cents: Optional[int] = Field(
        default=None, ge=0, description="None charges the full custom model fee."
    )
    monthly_price_cents: int = Field(ge=0)


DEFAULT_TIER_TABLE: dict[SubscriptionTier, TierTerms] = {
    SubscriptionTier.FREE: TierTerms(
        bonus_squares=0, discount_rate=0.0, monthly_price_cents=0
    ),
    SubscriptionTier.BASIC: TierTerms(
        bonus_squares=50, discount_rate=0.1, custom_model_fee_cents=1000, monthly_price_cents=999
    ),
    SubscriptionTier.STARTUP: TierTerms(
        bonus_squares=75, discount_rate=0.1, custom_model_fee_cents=1500, monthly_price_cents=9900
    ),
    SubscriptionTier.BUSINESS: TierTerms(
        bonus_squares=150, discount_rate=0.2, custom_model_fee_cents=1000, monthly_price_cents=29900
    ),
    SubscriptionTier.CORPORATE: TierTerms(
        bonus_squares=375, discount_rate=0.3, custom_model_fee_cents=500, monthly_price_cents=79900
    ),
    SubscriptionTier.PREMIUM: TierTerms(
        bonus_squares=100, discount_rate=0.4, custom_model_fee_cents=0, monthly_price_cents=1999
    ),
    SubscriptionTier.ENTERPRISE: TierTerms(
        bonus_squares=975, discount_rate=0.4, custom_model_fee_cents=0, monthly_price_cents=199900
    ),
}
