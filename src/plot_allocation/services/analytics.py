from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from ..db.base import BaseDBManager
from ..errors import NotFound, ValidationError
from ..models.pricing import PricingConfig
from ..models.transaction import Transaction, TransactionStatus, TransactionType
from .allocation_service import AllocationService
from .pricing import round_cents


TIME_RANGES = {
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}

# Upper bounds in cents; the last bucket is open ended
PRICE_BUCKETS: List[Tuple[str, Optional[int]]] = [
    ("0-50", 5000),
    ("51-100", 10000),
    ("101-200", 20000),
    ("201-500", 50000),
    ("500+", None),
]

MAX_COMPETITORS = 10


def price_bucket(amount: int) -> str:
    for label, upper in PRICE_BUCKETS:
        if upper is None or amount <= upper:
            return label
    return PRICE_BUCKETS[-1][0]


class PricingAnalyticsService:
    """
    Read-only market views over completed plot sales: recent price trends,
    the factors that drive a quote, and a recommended resale price.
    """

    def __init__(
        self, db: BaseDBManager, config: PricingConfig, allocation: AllocationService
    ) -> None:
        self._db = db
        self._config = config
        self._allocation = allocation

    async def get_pricing_trends(
        self,
        time_range: str = "month",
        area: Optional[Tuple[float, float, float, float]] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Revenue and price distribution of plot purchases in the window.

        `area` is a closed (min_x, max_x, min_z, max_z) box; sales whose plot
        lies outside it are left out.
        """
        window = TIME_RANGES.get(time_range)
        if window is None:
            raise ValidationError(
                "unknown time range", details={"time_range": time_range, "allowed": sorted(TIME_RANGES)}
            )
        since = (now or datetime.utcnow()) - window
        sales = [
            tx
            for tx in await self._db.get_transactions_since(TransactionType.PLOT_PURCHASE, since)
            if tx.status == TransactionStatus.COMPLETED
        ]
        if area is not None:
            sales = [tx for tx in sales if await self._sold_inside(tx, area)]

        revenue = sum(tx.amount for tx in sales)
        ranges = {label: 0 for label, _ in PRICE_BUCKETS}
        for tx in sales:
            ranges[price_bucket(tx.amount)] += 1

        return {
            "time_range": time_range,
            "total_transactions": len(sales),
            "total_revenue": revenue,
            "average_price": round_cents(Decimal(revenue) / len(sales)) if sales else 0,
            "price_ranges": ranges,
        }

    def get_pricing_factors(self) -> Dict[str, Any]:
        c = self._config
        w = c.demand_weights
        return {
            "base_price_per_square": c.price_per_square_cents,
            "location_bands": [b.model_dump() for b in c.location_bands],
            "outskirts_multiplier": c.outskirts_multiplier,
            "demand": {
                "radius": w.radius,
                "lookback_days": w.lookback_days,
                "high_occupancy_uplift": w.high_occupancy_uplift,
                "medium_occupancy_uplift": w.medium_occupancy_uplift,
                "high_activity_uplift": w.high_activity_uplift,
                "medium_activity_uplift": w.medium_activity_uplift,
                "max_multiplier": w.max_multiplier,
            },
            "subscription_discounts": {
                tier.value: terms.discount_rate for tier, terms in c.tier_table.items()
            },
        }

    async def get_recommended_pricing(
        self, plot_id: str, target_margin: float = 0.2
    ) -> Dict[str, Any]:
        """
        Today's market price for a plot like `plot_id`, marked up by
        `target_margin`, compared against what nearby plots sold for.
        """
        if target_margin < 0:
            raise ValidationError(
                "target margin cannot be negative", details={"target_margin": target_margin}
            )
        plot = await self._db.get_plot(plot_id)
        if plot is None:
            raise NotFound("plot not found", details={"plot_id": plot_id})

        # Priced as a new buyer would see it, without anyone's free squares
        quote = await self._allocation.calculate_plot_pricing(
            size=plot.size,
            position=plot.position,
            has_custom_model=bool(plot.building.get("custom_model")),
        )
        market = quote.total_cost
        recommended = round_cents(Decimal(market) * (1 + Decimal(str(target_margin))))

        radius = self._config.demand_weights.radius
        nearby = await self._db.get_plots_in_area(
            plot.position.x - radius,
            plot.position.x + radius,
            plot.position.z - radius,
            plot.position.z + radius,
        )
        prices = [
            p.pricing.total_cost
            for p in sorted(nearby, key=lambda p: p.created_at)
            if p.id != plot.id and p.pricing.total_cost > 0
        ][:MAX_COMPETITORS]
        average = round_cents(Decimal(sum(prices)) / len(prices)) if prices else 0

        if average and recommended:
            adjustment = round((average - recommended) / recommended * 100)
        else:
            adjustment = 0

        return {
            "plot_id": plot_id,
            "current_market_price": market,
            "recommended_price": recommended,
            "target_margin": target_margin,
            "competitor_analysis": {
                "average_price": average,
                "competitor_count": len(prices),
                "price_range": {"min": min(prices), "max": max(prices)} if prices else None,
            },
            "recommendations": {
                "price_optimal": recommended <= average * 1.1,
                "market_position": "premium" if recommended > average else "competitive",
                "suggested_adjustment": adjustment,
            },
        }

    async def _sold_inside(
        self, tx: Transaction, area: Tuple[float, float, float, float]
    ) -> bool:
        if tx.plot_id is None:
            return False
        plot = await self._db.get_plot(tx.plot_id)
        if plot is None:
            return False
        min_x, max_x, min_z, max_z = area
        return min_x <= plot.position.x <= max_x and min_z <= plot.position.z <= max_z
