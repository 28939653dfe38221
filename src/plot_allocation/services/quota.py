from __future__ import annotations

import logging

from ..errors import QuotaExceeded
from ..models.pricing import PricingConfig
from ..models.user import UserAccount


logger = logging.getLogger(__name__)


class FreeQuotaLedger:
    """
    Lifetime free-square allowance per user.

    The allowance is the user's base limit plus the bonus of their
    subscription tier. `consume` and `release` mutate the record they are
    given; the caller persists it inside its own unit of work.
    """

    def __init__(self, config: PricingConfig) -> None:
        self._config = config

    def tier_bonus(self, user: UserAccount) -> int:
        return self._config.terms_for(user.subscription_tier).bonus_squares

    def allowance(self, user: UserAccount) -> int:
        return user.free_squares_limit + self.tier_bonus(user)

    def remaining(self, user: UserAccount) -> int:
        return max(0, self.allowance(user) - user.free_squares_used)

    def consume(self, user: UserAccount, squares: int) -> UserAccount:
        if squares < 0:
            raise QuotaExceeded(
                "cannot consume a negative number of free squares",
                details={"user_id": user.id, "squares": squares},
            )
        if squares == 0:
            return user

        allowance = self.allowance(user)
        if user.free_squares_used + squares > allowance:
            logger.critical(
                "free-square consumption beyond allowance for %s: used=%d requested=%d allowance=%d",
                user.id,
                user.free_squares_used,
                squares,
                allowance,
            )
            raise QuotaExceeded(
                "free-square consumption exceeds allowance",
                details={
                    "user_id": user.id,
                    "used": user.free_squares_used,
                    "requested": squares,
                    "allowance": allowance,
                },
            )
        user.free_squares_used += squares
        return user

    def release(self, user: UserAccount, squares: int) -> UserAccount:
        """Give back free squares, used when a purchase is refunded."""
        if squares < 0 or squares > user.free_squares_used:
            logger.critical(
                "free-square release would underflow for %s: used=%d released=%d",
                user.id,
                user.free_squares_used,
                squares,
            )
            raise QuotaExceeded(
                "free-square release would drive usage below zero",
                details={"user_id": user.id, "used": user.free_squares_used, "released": squares},
            )
        user.free_squares_used -= squares
        return user
