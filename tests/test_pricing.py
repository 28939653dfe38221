from __future__ import annotations

import pytest

from plot_allocation.errors import InvalidDimension
from plot_allocation.models.plot import PlotSize
from plot_allocation.models.pricing import PricingConfig
from plot_allocation.models.subscription import SubscriptionTier
from plot_allocation.services.pricing import calculate_quote, split_free_squares


def test_new_user_small_plot_is_free(config):
    quote = calculate_quote(config, PlotSize(width=5, depth=5), remaining_free_squares=25)

    assert quote.free_squares == 25
    assert quote.paid_squares == 0
    assert quote.total_cost == 0
    assert not quote.payment_required
    assert quote.remaining_free_squares == 0


def test_no_free_squares_left_charges_every_square(config):
    quote = calculate_quote(config, PlotSize(width=5, depth=5), remaining_free_squares=0)

    assert quote.free_squares == 0
    assert quote.paid_squares == 25
    assert quote.plot_cost == 2500
    assert quote.total_cost == 2500


def test_premium_discount_and_waived_model_fee(config):
    quote = calculate_quote(
        config,
        PlotSize(width=10, depth=10),
        subscription_tier=SubscriptionTier.PREMIUM,
        remaining_free_squares=0,
        has_custom_model=True,
    )

    assert quote.total_squares == 100
    assert quote.plot_cost == 10000
    assert quote.custom_model_fee == 0
    assert quote.subscription_discount == 4000
    assert quote.total_cost == 6000


def test_location_multiplier_at_origin(config):
    quote = calculate_quote(
        config,
        PlotSize(width=5, depth=5),
        remaining_free_squares=0,
        location_multiplier=2.0,
        demand_multiplier=1.0,
    )

    assert quote.base_price == 2500
    assert quote.plot_cost == 5000
    assert quote.total_cost == 5000


def test_custom_model_fee_depends_on_tier(config):
    free = calculate_quote(config, PlotSize(width=1, depth=1), has_custom_model=True)
    basic = calculate_quote(
        config,
        PlotSize(width=5, depth=5),
        subscription_tier=SubscriptionTier.BASIC,
        has_custom_model=True,
    )

    assert free.custom_model_fee == 2000
    assert free.total_cost == 100 + 2000
    # 2500 + 1000 with 10% off
    assert basic.custom_model_fee == 1000
    assert basic.subscription_discount == 350
    assert basic.total_cost == 3150


def test_amounts_round_half_up():
    config = PricingConfig(price_per_square_cents=1)

    quote = calculate_quote(config, PlotSize(width=5, depth=1), location_multiplier=0.5)
    assert quote.plot_cost == 3

    discounted = calculate_quote(
        config, PlotSize(width=5, depth=5), subscription_tier=SubscriptionTier.BASIC
    )
    assert discounted.subscription_discount == 3
    assert discounted.total_cost == 22


def test_unknown_premium_features_are_free(config):
    quote = calculate_quote(
        config,
        PlotSize(width=1, depth=1),
        remaining_free_squares=1,
        premium_features=["ai_chatbot", "not_a_feature"],
    )

    assert quote.premium_features_price == 2500
    assert quote.total_cost == 2500


@pytest.mark.parametrize("width,depth", [(0, 5), (5, 0), (-1, 3)])
def test_non_positive_dimensions_rejected(config, width, depth):
    with pytest.raises(InvalidDimension):
        calculate_quote(config, PlotSize(width=width, depth=depth))


@pytest.mark.parametrize("remaining", [-5, 0, 7, 25, 1000])
def test_free_and_paid_squares_add_up(config, remaining):
    quote = calculate_quote(config, PlotSize(width=6, depth=4), remaining_free_squares=remaining)

    assert quote.free_squares + quote.paid_squares == quote.total_squares == 24
    assert 0 <= quote.free_squares <= max(0, remaining)


def test_quotes_are_deterministic(config):
    kwargs = dict(
        subscription_tier=SubscriptionTier.BUSINESS,
        remaining_free_squares=3,
        has_custom_model=True,
        premium_features=["api_access"],
        location_multiplier=1.5,
        demand_multiplier=1.3,
    )
    first = calculate_quote(config, PlotSize(width=7, depth=3), **kwargs)
    second = calculate_quote(config, PlotSize(width=7, depth=3), **kwargs)

    assert first == second


def test_split_free_squares_ignores_negative_balance():
    assert split_free_squares(25, -3) == (0, 25)
    assert split_free_squares(10, 40) == (10, 0)
