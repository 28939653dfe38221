from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field

from .subscription import DEFAULT_TIER_TABLE, SubscriptionTier, TierTerms


class LocationBand(BaseModel):
    """Plots at most `max_distance` from the origin are priced with `multiplier`."""

    model_config = {"frozen": True}

    max_distance: float = Field(gt=0)
    multiplier: float = Field(gt=0)


class DemandWeights(BaseModel):
    """
    Thresholds and uplifts used to turn nearby occupancy and recent
    purchase activity into a demand multiplier.
    """

    model_config = {"frozen": True}

    radius: float = Field(default=20.0, gt=0)
    lookback_days: int = Field(default=7, gt=0)
    # occupancy = nearby plots / (radius ** 2 * occupancy_density)
    occupancy_density: float = Field(default=0.1, gt=0)
    high_occupancy: float = 0.7
    high_occupancy_uplift: float = 0.3
    medium_occupancy: float = 0.4
    medium_occupancy_uplift: float = 0.1
    high_activity: int = 5
    high_activity_uplift: float = 0.2
    medium_activity: int = 2
    medium_activity_uplift: float = 0.1
    max_multiplier: float = Field(default=2.0, ge=1)


DEFAULT_LOCATION_BANDS: List[LocationBand] = [
    LocationBand(max_distance=10, multiplier=2.0),
    LocationBand(max_distance=25, multiplier=1.5),
    LocationBand(max_distance=50, multiplier=1.0),
]

DEFAULT_FEATURE_PRICES: dict[str, int] = {
    "ai_chatbot": 2500,
    "advanced_analytics": 1500,
    "custom_branding": 3000,
    "priority_support": 2000,
    "api_access": 4000,
    "white_label": 10000,
    "multiple_mailboxes": 1000,
    "business_hours_display": 500,
    "social_media_integration": 1500,
    "lead_capture_forms": 2000,
}


class PricingConfig(BaseModel):
    """
    Single source of every pricing constant, injected into the pricing
    calculator, the demand estimator and the free-quota ledger.
    """

    model_config = {"frozen": True}

    price_per_square_cents: int = Field(default=100, gt=0)
    custom_model_fee_cents: int = Field(default=2000, ge=0)
    default_free_squares: int = Field(default=25, ge=0)
    currency: str = "USD"
    tier_table: dict[SubscriptionTier, TierTerms] = Field(
        default_factory=lambda: dict(DEFAULT_TIER_TABLE)
    )
    feature_prices: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_FEATURE_PRICES))
    location_bands: List[LocationBand] = Field(default_factory=lambda: list(DEFAULT_LOCATION_BANDS))
    outskirts_multiplier: float = Field(default=0.8, gt=0)
    demand_weights: DemandWeights = Field(default_factory=DemandWeights)

    def terms_for(self, tier: SubscriptionTier) -> TierTerms:
        try:
            return self.tier_table[tier]
        except KeyError:
            return self.tier_table[SubscriptionTier.FREE]

    def custom_model_fee_for(self, tier: SubscriptionTier) -> int:
        fee = self.terms_for(tier).custom_model_fee_cents
        return self.custom_model_fee_cents if fee is None else fee


class PriceQuote(BaseModel):
    """
    Full breakdown of what a plot costs. All amounts are integer cents.
    """

    total_squares: int
    free_squares: int
    paid_squares: int
    price_per_square: int
    base_price: int
    location_multiplier: float = 1.0
    demand_multiplier: float = 1.0
    plot_cost: int
    custom_model_fee: int = 0
    premium_features_price: int = 0
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    discount_rate: float = 0.0
    subscription_discount: int = 0
    total_cost: int
    currency: str = "USD"
    remaining_free_squares: int = Field(
        default=0, description="Free squares the user still has after this plot."
    )

    @property
    def payment_required(self) -> bool:
        return self.total_cost > 0
