from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from plot_allocation.cache.memory import InMemoryAsyncCache
from plot_allocation.models.plot import PaymentStatus, Plot, PlotPricing, PlotSize, Position
from plot_allocation.models.pricing import DemandWeights, PricingConfig
from plot_allocation.models.transaction import Transaction, TransactionStatus, TransactionType
from plot_allocation.services.demand import DemandEstimator, demand_uplift, location_multiplier


def _plot(x: float, z: float, user_id: str = "owner") -> Plot:
    return Plot(
        user_id=user_id,
        position=Position(x=x, z=z),
        size=PlotSize(width=1, depth=1),
        pricing=PlotPricing(total_cost=100, free_squares=0, paid_squares=1, price_per_square=100),
        payment_status=PaymentStatus.PAID,
    )


def _purchase(plot_id: str, created_at: datetime, status=TransactionStatus.COMPLETED) -> Transaction:
    return Transaction(
        transaction_id=f"pi_{plot_id}_{created_at.timestamp()}",
        user_id="owner",
        plot_id=plot_id,
        amount=100,
        type=TransactionType.PLOT_PURCHASE,
        status=status,
        created_at=created_at,
    )


@pytest.mark.parametrize(
    "x,z,expected",
    [(0, 0, 2.0), (6, 8, 2.0), (20, 0, 1.5), (30, 40, 1.0), (100, 0, 0.8)],
)
def test_location_bands(config, x, z, expected):
    assert location_multiplier(config, Position(x=x, z=z)) == expected


def test_demand_uplift_thresholds(config):
    # occupancy is nearby / 40 with the default weights
    assert demand_uplift(config, 0, 0) == 1.0
    assert demand_uplift(config, 30, 0) == 1.3
    assert demand_uplift(config, 20, 3) == 1.2
    assert demand_uplift(config, 40, 10) == 1.5


def test_demand_uplift_is_capped():
    config = PricingConfig(demand_weights=DemandWeights(max_multiplier=1.2))
    assert demand_uplift(config, 40, 10) == 1.2


@pytest.mark.asyncio
async def test_estimate_counts_nearby_plots_and_recent_purchases(db, config):
    now = datetime.utcnow()
    near = await db.insert_plot(_plot(3, 4))
    old = await db.insert_plot(_plot(-5, 0))
    far = await db.insert_plot(_plot(60, 60))
    await db.add_transaction(_purchase(near.id, now - timedelta(days=1)))
    await db.add_transaction(_purchase(old.id, now - timedelta(days=10)))
    await db.add_transaction(_purchase(far.id, now - timedelta(hours=2)))
    await db.add_transaction(
        _purchase(near.id, now - timedelta(hours=1), status=TransactionStatus.PENDING)
    )

    estimate = await DemandEstimator(db, config).estimate(Position(x=0, z=0), now=now)

    assert estimate.nearby_plots == 2
    assert estimate.recent_activity == 1
    assert estimate.location_multiplier == 2.0
    assert estimate.demand_multiplier == 1.0


@pytest.mark.asyncio
async def test_box_corners_outside_radius_are_not_nearby(db, config):
    await db.insert_plot(_plot(19, 19))

    assert await DemandEstimator(db, config).count_nearby_plots(Position(x=0, z=0)) == 0


@pytest.mark.asyncio
async def test_estimate_is_cached(db, config):
    cache = InMemoryAsyncCache()
    estimator = DemandEstimator(db, config, cache=cache, cache_ttl_seconds=60)

    first = await estimator.estimate(Position(x=1, z=1))
    await db.insert_plot(_plot(2, 2))
    second = await estimator.estimate(Position(x=1, z=1))

    assert first.nearby_plots == second.nearby_plots == 0
    assert len(cache) == 1
