from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from ..db.base import BaseDBManager
from ..errors import NotFound, ValidationError
from ..logging.ledger_logger import LedgerLogger
from ..models.api_models import PlotPaymentIntentResponse, UserSummary
from ..models.pricing import PricingConfig
from ..models.subscription import SubscriptionTier
from ..models.transaction import Transaction, TransactionStatus, TransactionType
from ..models.user import UserAccount
from .payment_service import PaymentService
from .quota import FreeQuotaLedger


SUBSCRIPTION_PERIOD_DAYS = 30


class AccountService:
    """
    User profiles, prepaid credits and subscription tiers.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        config: PricingConfig,
        payments: PaymentService,
        quota: Optional[FreeQuotaLedger] = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._config = config
        self._payments = payments
        self._quota = quota or FreeQuotaLedger(config)

    async def get_current_user(self, user_id: str) -> UserSummary:
        """Stored user, or the defaults a first purchase would create."""
        user = await self._db.get_user(user_id)
        if user is None:
            user = UserAccount.new(user_id, free_squares_limit=self._config.default_free_squares)
        return self._summary(user)

    async def create_or_update_profile(
        self, user_id: str, username: str, email: str = ""
    ) -> UserSummary:
        if not username.strip():
            raise ValidationError("username is required", details={"user_id": user_id})

        async with self._db.transaction():
            user = await self._db.get_user(user_id)
            if user is None:
                user = UserAccount.new(
                    user_id, free_squares_limit=self._config.default_free_squares, username=username
                )
                user.email = email
                user = await self._db.add_user(user)
                message = "User created"
            else:
                user.username = username
                user.email = email or user.email
                user = await self._db.update_user(user)
                message = "User profile updated"

        await self._ledger.log_account(
            user_id=user_id, message=message, details={"username": username}
        )
        return self._summary(user)

    async def get_profile(self, user_id: str) -> Dict[str, Any]:
        user = await self._require_user(user_id)
        plots = list(await self._db.get_plots_for_user(user_id))
        recent = await self._db.get_transactions(user_id, limit=10)
        return {
            "user": self._summary(user).model_dump(mode="json"),
            "plots_count": len(plots),
            "total_squares_owned": sum(p.size.area for p in plots),
            "recent_transactions": [t.model_dump(mode="json") for t in recent],
        }

    async def get_usage_stats(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Space used against the free allowance; None for an unknown user."""
        user = await self._db.get_user(user_id)
        if user is None:
            return None
        plots = list(await self._db.get_plots_for_user(user_id))
        return {
            "space_used": sum(p.size.area for p in plots),
            "space_limit": self._quota.allowance(user),
            "plots_count": len(plots),
            "subscription_tier": user.subscription_tier.value,
        }

    async def get_dashboard(self, user_id: str) -> Dict[str, Any]:
        user = await self._require_user(user_id)
        plots = sorted(
            await self._db.get_plots_for_user(user_id), key=lambda p: p.created_at, reverse=True
        )
        recent = await self._db.get_transactions(user_id, limit=5)
        return {
            "user": self._summary(user).model_dump(mode="json"),
            "plots": [
                {**p.model_dump(mode="json"), "total_squares": p.size.area} for p in plots
            ],
            "recent_transactions": [t.model_dump(mode="json") for t in recent],
            "stats": {
                "total_plots": len(plots),
                "total_squares_owned": sum(p.size.area for p in plots),
                "total_spent": user.total_spent,
            },
        }

    async def add_credits(
        self,
        user_id: str,
        amount: int,
        payment_id: str,
        payment_processor: str = "stripe",
        correlation_id: Optional[str] = None,
    ) -> UserSummary:
        """
        Top up the prepaid balance after an external payment.

        The payment id doubles as the transaction id, so crediting the same
        payment twice fails on the unique index.
        """
        if amount <= 0:
            raise ValidationError("amount must be positive", details={"amount": amount})

        async with self._db.transaction():
            user = await self._require_user(user_id)
            user.credits += amount
            user = await self._db.update_user(user)
            await self._db.add_transaction(
                Transaction(
                    transaction_id=payment_id,
                    user_id=user_id,
                    amount=amount,
                    currency=self._config.currency,
                    type=TransactionType.CREDIT_PURCHASE,
                    status=TransactionStatus.COMPLETED,
                    payment_processor=payment_processor,
                )
            )

        await self._ledger.log_payment(
            user_id=user_id,
            message="Credits added",
            details={"amount": amount, "payment_id": payment_id, "credits": user.credits},
            correlation_id=correlation_id,
        )
        return self._summary(user)

    async def create_subscription_payment_intent(
        self,
        user_id: str,
        tier: SubscriptionTier,
        duration_months: int = 1,
        idempotency_key: Optional[str] = None,
    ) -> PlotPaymentIntentResponse:
        amount = self._subscription_price(tier, duration_months)
        await self._require_user(user_id)
        intent = await self._payments.create_intent(
            user_id=user_id,
            amount=amount,
            tx_type=TransactionType.SUBSCRIPTION_UPGRADE,
            metadata={"tier": tier.value, "duration_months": duration_months},
            idempotency_key=idempotency_key,
        )
        return PlotPaymentIntentResponse(
            payment_required=True,
            total_cost=intent.transaction.amount,
            free_squares=0,
            paid_squares=0,
            payment_intent_id=intent.intent_id,
            client_secret=intent.client_secret,
        )

    async def upgrade_subscription(
        self,
        user_id: str,
        tier: SubscriptionTier,
        payment_intent_id: str,
        duration_months: int = 1,
        correlation_id: Optional[str] = None,
    ) -> UserSummary:
        amount = self._subscription_price(tier, duration_months)

        async with self._db.transaction():
            user = await self._require_user(user_id)
            tx = await self._payments.require_completed(
                payment_intent_id,
                user_id=user_id,
                amount=amount,
                tx_type=TransactionType.SUBSCRIPTION_UPGRADE,
            )
            if tx.metadata.get("tier") not in (None, tier.value):
                raise ValidationError(
                    "payment intent was created for another tier",
                    details={"intent_id": payment_intent_id, "tier": tx.metadata.get("tier")},
                )

            previous = user.subscription_tier
            user.subscription_tier = tier
            user.subscription_expires_at = datetime.utcnow() + timedelta(
                days=SUBSCRIPTION_PERIOD_DAYS * duration_months
            )
            user.total_spent += amount
            user = await self._db.update_user(user)

            tx.metadata = {**tx.metadata, "consumed": True}
            await self._db.update_transaction(tx)

        await self._ledger.log_account(
            user_id=user_id,
            message="Subscription upgraded",
            details={
                "from": previous.value,
                "to": tier.value,
                "amount": amount,
                "expires_at": user.subscription_expires_at.isoformat()
                if user.subscription_expires_at
                else None,
            },
            correlation_id=correlation_id,
        )
        return self._summary(user)

    async def cancel_subscription(self, user_id: str) -> UserSummary:
        """
        Drop back to the free tier. Free squares already used stay used, so a
        user past the free allowance simply has none remaining.
        """
        async with self._db.transaction():
            user = await self._require_user(user_id)
            previous = user.subscription_tier
            user.subscription_tier = SubscriptionTier.FREE
            user.subscription_expires_at = None
            user = await self._db.update_user(user)

        await self._ledger.log_account(
            user_id=user_id,
            message="Subscription cancelled",
            details={"from": previous.value},
        )
        return self._summary(user)

    async def get_transaction_history(self, user_id: str, limit: int = 20) -> Iterable[Transaction]:
        return await self._payments.history(user_id, limit=limit)

    def get_pricing_info(self) -> Dict[str, Any]:
        c = self._config
        return {
            "currency": c.currency,
            "price_per_square": c.price_per_square_cents,
            "custom_model_fee": c.custom_model_fee_cents,
            "default_free_squares": c.default_free_squares,
            "premium_features": dict(c.feature_prices),
            "location_bands": [b.model_dump() for b in c.location_bands],
            "outskirts_multiplier": c.outskirts_multiplier,
            "tiers": {
                tier.value: {
                    **terms.model_dump(),
                    "custom_model_fee_cents": c.custom_model_fee_for(tier),
                }
                for tier, terms in c.tier_table.items()
            },
        }

    def _subscription_price(self, tier: SubscriptionTier, duration_months: int) -> int:
        if duration_months <= 0:
            raise ValidationError(
                "duration must be at least one month", details={"duration_months": duration_months}
            )
        monthly = self._config.terms_for(tier).monthly_price_cents
        if tier == SubscriptionTier.FREE or monthly <= 0:
            raise ValidationError("tier cannot be purchased", details={"tier": tier.value})
        return monthly * duration_months

    async def _require_user(self, user_id: str) -> UserAccount:
        user = await self._db.get_user(user_id)
        if user is None:
            raise NotFound("user not found", details={"user_id": user_id})
        return user

    def _summary(self, user: UserAccount) -> UserSummary:
        return UserSummary(
            user_id=user.id,
            username=user.username,
            subscription_tier=user.subscription_tier,
            credits=user.credits,
            total_spent=user.total_spent,
            free_squares_limit=user.free_squares_limit,
            free_squares_used=user.free_squares_used,
            total_free_squares=self._quota.allowance(user),
            remaining_free_squares=self._quota.remaining(user),
        )
