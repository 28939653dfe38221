"""
Pure plot pricing.

Nothing here touches storage. Callers gather the inputs (remaining free
squares, subscription tier, location and demand multipliers) and get back a
deterministic `PriceQuote`. Free squares are clamped to the plot area here,
which is a legitimate quoting step; the free-quota ledger re-checks the
result when it is consumed.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from ..errors import InvalidDimension
from ..models.plot import PlotSize
from ..models.pricing import PriceQuote, PricingConfig
from ..models.subscription import SubscriptionTier


def round_cents(value: Decimal) -> int:
    """Round half up to a whole cent, the only rounding rule used in pricing."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _dec(value: float) -> Decimal:
    # str() keeps 0.1 as 0.1 instead of its binary expansion
    return Decimal(str(value))


def plot_area(size: PlotSize) -> int:
    if size.width <= 0 or size.depth <= 0:
        raise InvalidDimension(
            "plot width and depth must be positive",
            details={"width": size.width, "depth": size.depth},
        )
    return size.width * size.depth


def split_free_squares(total_squares: int, remaining_free_squares: int) -> tuple[int, int]:
    """Return (free, paid) for a plot of `total_squares`."""
    free = min(total_squares, max(0, remaining_free_squares))
    return free, total_squares - free


def custom_model_fee(config: PricingConfig, tier: SubscriptionTier, has_custom_model: bool) -> int:
    if not has_custom_model:
        return 0
    return config.custom_model_fee_for(tier)


def premium_features_price(config: PricingConfig, features: Iterable[str]) -> int:
    # Unknown features are free rather than an error
    return sum(config.feature_prices.get(f, 0) for f in features)


def calculate_quote(
    config: PricingConfig,
    size: PlotSize,
    *,
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE,
    remaining_free_squares: int = 0,
    has_custom_model: bool = False,
    premium_features: Optional[Iterable[str]] = None,
    location_multiplier: float = 1.0,
    demand_multiplier: float = 1.0,
) -> PriceQuote:
    total_squares = plot_area(size)
    free_squares, paid_squares = split_free_squares(total_squares, remaining_free_squares)

    base_price = paid_squares * config.price_per_square_cents
    plot_cost = round_cents(
        Decimal(base_price) * _dec(location_multiplier) * _dec(demand_multiplier)
    )

    model_fee = custom_model_fee(config, subscription_tier, has_custom_model)
    features_price = premium_features_price(config, premium_features or ())

    terms = config.terms_for(subscription_tier)
    subtotal = plot_cost + model_fee + features_price
    discount = round_cents(Decimal(subtotal) * _dec(terms.discount_rate))
    total_cost = max(0, subtotal - discount)

    return PriceQuote(
        total_squares=total_squares,
        free_squares=free_squares,
        paid_squares=paid_squares,
        price_per_square=config.price_per_square_cents,
        base_price=base_price,
        location_multiplier=location_multiplier,
        demand_multiplier=demand_multiplier,
        plot_cost=plot_cost,
        custom_model_fee=model_fee,
        premium_features_price=features_price,
        subscription_tier=subscription_tier,
        discount_rate=terms.discount_rate,
        subscription_discount=discount,
        total_cost=total_cost,
        currency=config.currency,
        remaining_free_squares=max(0, remaining_free_squares) - free_squares,
    )
