from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from ..cache.base import AsyncCacheBackend
from ..db.base import BaseDBManager
from ..models.plot import Position
from ..models.pricing import PricingConfig
from ..models.transaction import TransactionStatus, TransactionType


class SpatialMultipliers(BaseModel):
    location_multiplier: float
    demand_multiplier: float
    nearby_plots: int = 0
    recent_activity: int = 0


def distance(a_x: float, a_z: float, b_x: float, b_z: float) -> float:
    return math.hypot(a_x - b_x, a_z - b_z)


def location_multiplier(config: PricingConfig, position: Position) -> float:
    """Step function of the distance from the map origin."""
    d = distance(position.x, position.z, 0.0, 0.0)
    for band in sorted(config.location_bands, key=lambda b: b.max_distance):
        if d <= band.max_distance:
            return band.multiplier
    return config.outskirts_multiplier


def demand_uplift(config: PricingConfig, nearby_plots: int, recent_activity: int) -> float:
    w = config.demand_weights
    occupancy = nearby_plots / (w.radius * w.radius * w.occupancy_density)

    multiplier = 1.0
    if occupancy > w.high_occupancy:
        multiplier += w.high_occupancy_uplift
    elif occupancy > w.medium_occupancy:
        multiplier += w.medium_occupancy_uplift

    if recent_activity > w.high_activity:
        multiplier += w.high_activity_uplift
    elif recent_activity > w.medium_activity:
        multiplier += w.medium_activity_uplift

    # Rounded so float noise (1.0 + 0.3 + 0.2) never leaks into prices
    return round(min(multiplier, w.max_multiplier), 4)


class DemandEstimator:
    """
    Spatial pricing multipliers for a position.

    Reads nearby plots and recent purchases; never writes. Results may be
    cached for a short TTL since quoting tolerates stale demand.
    """

    def __init__(
        self,
        db: BaseDBManager,
        config: PricingConfig,
        cache: Optional[AsyncCacheBackend] = None,
        cache_ttl_seconds: float = 60,
    ) -> None:
        self._db = db
        self._config = config
        self._cache = cache
        self._cache_ttl_seconds = cache_ttl_seconds

    async def estimate(self, position: Position, now: Optional[datetime] = None) -> SpatialMultipliers:
        cache_key = self._cache_key(position)
        if self._cache:
            cached = await self._cache.get(cache_key)
            if isinstance(cached, SpatialMultipliers):
                return cached

        nearby = await self.count_nearby_plots(position)
        activity = await self.count_recent_activity(position, now=now)
        result = SpatialMultipliers(
            location_multiplier=location_multiplier(self._config, position),
            demand_multiplier=demand_uplift(self._config, nearby, activity),
            nearby_plots=nearby,
            recent_activity=activity,
        )

        if self._cache:
            await self._cache.set(cache_key, result, ttl_seconds=self._cache_ttl_seconds)
        return result

    async def count_nearby_plots(self, position: Position) -> int:
        r = self._config.demand_weights.radius
        candidates = await self._db.get_plots_in_area(
            position.x - r, position.x + r, position.z - r, position.z + r
        )
        return sum(
            1
            for p in candidates
            if distance(p.position.x, p.position.z, position.x, position.z) <= r
        )

    async def count_recent_activity(self, position: Position, now: Optional[datetime] = None) -> int:
        w = self._config.demand_weights
        since = (now or datetime.utcnow()) - timedelta(days=w.lookback_days)
        purchases = await self._db.get_transactions_since(TransactionType.PLOT_PURCHASE, since)

        activity = 0
        for tx in purchases:
            if tx.status != TransactionStatus.COMPLETED or not tx.plot_id:
                continue
            plot = await self._db.get_plot(tx.plot_id)
            if plot is None:
                continue
            if distance(plot.position.x, plot.position.z, position.x, position.z) <= w.radius:
                activity += 1
        return activity

    @staticmethod
    def _cache_key(position: Position) -> str:
        return f"plot:demand:{position.key}"
