from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from ..db.base import BaseDBManager
from ..errors import (
    ConcurrencyConflict,
    InvalidTransactionState,
    NotFound,
    PaymentRequired,
    PlotEngineError,
    PositionOccupied,
    ValidationError,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.api_models import (
    AvailablePlotsResponse,
    PlotPaymentIntentResponse,
    PurchaseResult,
    RefundResponse,
)
from ..models.idempotency import IdempotencyRecord
from ..models.plot import PaymentStatus, Plot, PlotPricing, PlotSize, Position
from ..models.pricing import PriceQuote, PricingConfig
from ..models.subscription import SubscriptionTier
from ..models.transaction import Transaction, TransactionStatus, TransactionType
from ..models.user import UserAccount
from .demand import DemandEstimator, SpatialMultipliers
from .payment_service import PaymentIntent, PaymentService
from .pricing import calculate_quote, plot_area
from .quota import FreeQuotaLedger


logger = logging.getLogger(__name__)

# Largest box get_available_positions will scan, in grid cells
MAX_SCAN_CELLS = 10_000


class AllocationService:
    """
    Prices, pays for and allocates plots.

    A purchase runs Validating -> Pricing -> PaymentPending (only when
    something is owed) -> Committing inside one unit of work, so a rejection
    at any step leaves nothing behind. Position uniqueness is enforced by the
    store's unique index; user records are compare-and-swapped and the whole
    unit is retried when another request got there first.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        config: PricingConfig,
        payments: PaymentService,
        estimator: Optional[DemandEstimator] = None,
        quota: Optional[FreeQuotaLedger] = None,
        max_commit_retries: int = 3,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._config = config
        self._payments = payments
        self._estimator = estimator or DemandEstimator(db, config)
        self._quota = quota or FreeQuotaLedger(config)
        self._max_commit_retries = max_commit_retries

    # Quoting

    async def calculate_plot_pricing(
        self,
        size: PlotSize,
        position: Position,
        user_id: Optional[str] = None,
        has_custom_model: bool = False,
        premium_features: Optional[Iterable[str]] = None,
    ) -> PriceQuote:
        """
        Read-only quote. Anonymous callers are quoted without free squares;
        unknown users are quoted as a brand-new account would be.
        """
        _validate_position(position)
        plot_area(size)
        user = await self._load_user_for_quote(user_id)
        multipliers = await self._estimator.estimate(position)
        return self._quote(user, size, has_custom_model, premium_features, multipliers)

    async def create_plot_payment_intent(
        self,
        user_id: str,
        plot_size: PlotSize,
        has_custom_model: bool = False,
        position: Optional[Position] = None,
        premium_features: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> PlotPaymentIntentResponse:
        """
        Quote the plot and open a pending payment intent for the amount owed.

        Without a position no spatial multipliers apply, so the amount only
        matches the eventual purchase for plots in the standard band.
        Replaying an idempotency key answers with the stored intent's amount,
        not a fresh quote.
        """
        _require_user_id(user_id)
        plot_area(plot_size)
        if idempotency_key:
            replayed = await self._payments.replay_intent(idempotency_key, user_id)
            if replayed is not None:
                return _intent_response(replayed)

        user = await self._load_user_for_quote(user_id)
        if position is not None:
            _validate_position(position)
            multipliers = await self._estimator.estimate(position)
        else:
            multipliers = SpatialMultipliers(location_multiplier=1.0, demand_multiplier=1.0)
        quote = self._quote(user, plot_size, has_custom_model, premium_features, multipliers)

        if not quote.payment_required:
            return PlotPaymentIntentResponse(
                payment_required=False,
                total_cost=0,
                free_squares=quote.free_squares,
                paid_squares=quote.paid_squares,
                plot_cost=quote.plot_cost,
                custom_model_fee=quote.custom_model_fee,
            )

        intent_metadata: Dict[str, Any] = dict(metadata or {})
        intent_metadata.update(
            plot_size=plot_size.model_dump(),
            free_squares=quote.free_squares,
            paid_squares=quote.paid_squares,
            plot_cost=quote.plot_cost,
            custom_model_fee=quote.custom_model_fee,
            custom_model=has_custom_model,
        )
        if position is not None:
            intent_metadata["position"] = position.model_dump(exclude_none=True)

        intent = await self._payments.create_intent(
            user_id=user_id,
            amount=quote.total_cost,
            tx_type=TransactionType.PLOT_PURCHASE,
            metadata=intent_metadata,
            idempotency_key=idempotency_key,
            correlation_id=correlation_id,
        )
        return _intent_response(intent)

    # Purchasing

    async def purchase_plot(
        self,
        user_id: str,
        position: Position,
        size: PlotSize,
        building: Optional[Dict[str, Any]] = None,
        advertising: Optional[Dict[str, Any]] = None,
        premium_features: Optional[List[str]] = None,
        payment_intent_id: Optional[str] = None,
        payment_method: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> PurchaseResult:
        """
        Allocate `position` to `user_id`, charging whatever the quote says.

        Replaying a request with the same idempotency key (client supplied,
        or derived from the payment intent) returns the original result.
        """
        if idempotency_key:
            record_key: Optional[str] = f"purchase:{idempotency_key}"
        elif payment_intent_id:
            record_key = f"purchase:payment-intent:{payment_intent_id}"
        else:
            record_key = None

        try:
            _require_user_id(user_id)
            _validate_position(position)
            plot_area(size)

            for attempt in range(1, self._max_commit_retries + 1):
                try:
                    return await self._purchase_once(
                        user_id=user_id,
                        position=position,
                        size=size,
                        building=building,
                        advertising=advertising,
                        premium_features=premium_features,
                        payment_intent_id=payment_intent_id,
                        payment_method=payment_method,
                        metadata=metadata or {},
                        record_key=record_key,
                        key_from_intent=not idempotency_key,
                        correlation_id=correlation_id,
                    )
                except ConcurrencyConflict as exc:
                    if attempt == self._max_commit_retries:
                        raise
                    logger.warning(
                        "purchase commit conflict for %s (attempt %d): %s",
                        user_id,
                        attempt,
                        exc.message,
                    )
            raise ConcurrencyConflict("purchase could not be committed")
        except PlotEngineError as exc:
            await self._ledger.log_error(
                message=f"Plot purchase rejected: {exc.message}",
                details={
                    "error": type(exc).__name__,
                    "position": position.model_dump(exclude_none=True),
                    "size": size.model_dump(),
                    **exc.details,
                },
                user_id=user_id,
                correlation_id=correlation_id,
            )
            raise

    async def _purchase_once(
        self,
        user_id: str,
        position: Position,
        size: PlotSize,
        building: Optional[Dict[str, Any]],
        advertising: Optional[Dict[str, Any]],
        premium_features: Optional[List[str]],
        payment_intent_id: Optional[str],
        payment_method: Optional[str],
        metadata: Dict[str, Any],
        record_key: Optional[str],
        key_from_intent: bool,
        correlation_id: Optional[str],
    ) -> PurchaseResult:
        async with self._db.transaction():
            # Validating
            if record_key:
                existing = await self._db.get_idempotency_record(record_key)
                if existing is not None:
                    if existing.user_id != user_id:
                        raise ValidationError(
                            "idempotency key belongs to another user", details={"key": record_key}
                        )
                    logger.info("replaying purchase %s for %s", record_key, user_id)
                    return PurchaseResult.model_validate(existing.response)

            if await self._db.get_plot_at(position) is not None:
                raise PositionOccupied(position.x, position.z)

            # Pricing
            user = await self._get_or_create_user(user_id, metadata.get("username"))
            multipliers = await self._estimator.estimate(position)
            has_custom_model = bool((building or {}).get("custom_model"))
            quote = self._quote(user, size, has_custom_model, premium_features, multipliers)

            # PaymentPending
            payment_status, tx = await self._settle_payment(
                user, quote, position, payment_intent_id, payment_method
            )

            # Committing
            plot = Plot(
                user_id=user_id,
                username=metadata.get("username") or user.username,
                position=Position(x=position.x, z=position.z),
                size=size,
                pricing=PlotPricing(
                    total_cost=quote.total_cost,
                    free_squares=quote.free_squares,
                    paid_squares=quote.paid_squares,
                    price_per_square=quote.price_per_square,
                ),
                payment_status=payment_status,
                transaction_id=tx.id if tx else None,
                building=building or {},
                advertising=advertising or {},
                metadata=metadata,
            )
            plot = await self._db.insert_plot(plot)

            self._quota.consume(user, quote.free_squares)
            user.total_spent += quote.total_cost
            await self._db.update_user(user)

            if tx is not None:
                tx.plot_id = plot.id
                await self._db.update_transaction(tx)

            result = PurchaseResult(
                plot_id=plot.id or "",
                total_cost=quote.total_cost,
                payment_status=payment_status,
                free_squares_used=quote.free_squares,
                paid_squares=quote.paid_squares,
                transaction_id=tx.id if tx else None,
                message=(
                    "Plot created successfully using free squares!"
                    if quote.total_cost == 0
                    else "Plot purchased successfully!"
                ),
            )
            # An intent only keys the replay when it is the intent that paid
            if record_key and (payment_status == PaymentStatus.PAID or not key_from_intent):
                await self._db.add_idempotency_record(
                    IdempotencyRecord(
                        key=record_key,
                        user_id=user_id,
                        operation="purchase_plot",
                        response=result.model_dump(mode="json"),
                    )
                )

        await self._ledger.log_purchase(
            user_id=user_id,
            message="Plot purchased",
            details={
                "plot_id": result.plot_id,
                "position": position.model_dump(exclude_none=True),
                "total_cost": result.total_cost,
                "payment_status": result.payment_status.value,
                "free_squares": result.free_squares_used,
                "paid_squares": result.paid_squares,
                "location_multiplier": multipliers.location_multiplier,
                "demand_multiplier": multipliers.demand_multiplier,
            },
            correlation_id=correlation_id,
        )
        return result

    async def _settle_payment(
        self,
        user: UserAccount,
        quote: PriceQuote,
        position: Position,
        payment_intent_id: Optional[str],
        payment_method: Optional[str],
    ) -> Tuple[PaymentStatus, Optional[Transaction]]:
        if not quote.payment_required:
            return PaymentStatus.FREE, None

        # Credits pay first; an intent is only needed when the balance falls short
        if user.credits >= quote.total_cost:
            user.credits -= quote.total_cost
            tx = Transaction(
                transaction_id=f"cr_{uuid4().hex}",
                user_id=user.id,
                amount=quote.total_cost,
                type=TransactionType.PLOT_PURCHASE,
                status=TransactionStatus.COMPLETED,
                payment_processor="credits",
                metadata={
                    "position": position.model_dump(exclude_none=True),
                    "free_squares": quote.free_squares,
                    "paid_squares": quote.paid_squares,
                },
            )
            tx = await self._db.add_transaction(tx)
            return PaymentStatus.PAID_WITH_CREDITS, tx

        if not payment_intent_id:
            raise PaymentRequired(quote.total_cost)

        tx = await self._payments.require_completed(
            payment_intent_id,
            user_id=user.id,
            amount=quote.total_cost,
            tx_type=TransactionType.PLOT_PURCHASE,
        )
        if payment_method:
            tx.metadata["payment_method"] = payment_method
        return PaymentStatus.PAID, tx

    # Refunds

    async def refund_transaction(
        self,
        transaction_id: str,
        reason: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> RefundResponse:
        """
        Refund a completed transaction.

        For plot purchases the plot is marked refunded and the owner's free
        squares, total spent and (for credit-funded purchases) credits are
        restored to exactly what the plot's pricing snapshot took. The plot
        keeps its position.
        """
        async with self._db.transaction():
            tx = await self._db.get_transaction(transaction_id)
            if tx is None:
                tx = await self._db.get_transaction_by_external_id(transaction_id)
            if tx is None:
                raise NotFound("transaction not found", details={"transaction_id": transaction_id})
            if tx.status != TransactionStatus.COMPLETED:
                raise InvalidTransactionState(
                    "can only refund completed transactions",
                    details={"transaction_id": transaction_id, "status": tx.status.value},
                )

            released_squares = 0
            if tx.type == TransactionType.PLOT_PURCHASE and tx.plot_id:
                released_squares = await self._reverse_plot_purchase(tx)

            tx.status = TransactionStatus.REFUNDED
            tx.metadata = {
                **tx.metadata,
                "refund_reason": reason,
                "refunded_at": datetime.utcnow().isoformat(),
            }
            tx = await self._db.update_transaction(tx)

        await self._ledger.log_refund(
            user_id=tx.user_id,
            message="Transaction refunded",
            details={
                "transaction_id": tx.id,
                "amount": tx.amount,
                "plot_id": tx.plot_id,
                "released_free_squares": released_squares,
                "reason": reason or "",
            },
            correlation_id=correlation_id,
        )
        return RefundResponse(
            transaction_id=tx.id or transaction_id,
            refund_amount=tx.amount,
            status=tx.status,
        )

    async def _reverse_plot_purchase(self, tx: Transaction) -> int:
        plot = await self._db.get_plot(tx.plot_id or "")
        if plot is None:
            return 0

        plot.payment_status = PaymentStatus.REFUNDED
        await self._db.update_plot(plot)

        user = await self._db.get_user(tx.user_id)
        if user is None:
            return 0
        if user.total_spent < tx.amount:
            raise InvalidTransactionState(
                "refund exceeds the amount the user has spent",
                details={"user_id": user.id, "total_spent": user.total_spent, "amount": tx.amount},
            )
        self._quota.release(user, plot.pricing.free_squares)
        user.total_spent -= tx.amount
        if tx.payment_processor == "credits":
            user.credits += tx.amount
        await self._db.update_user(user)
        return plot.pricing.free_squares

    # Map queries

    async def get_available_positions(
        self, min_x: int, max_x: int, min_z: int, max_z: int
    ) -> AvailablePlotsResponse:
        """Free integer grid cells in the closed box, plus what occupies the rest."""
        if min_x > max_x or min_z > max_z:
            raise ValidationError(
                "empty search box",
                details={"min_x": min_x, "max_x": max_x, "min_z": min_z, "max_z": max_z},
            )
        cells = (max_x - min_x + 1) * (max_z - min_z + 1)
        if cells > MAX_SCAN_CELLS:
            raise ValidationError(
                "search box too large", details={"cells": cells, "max_cells": MAX_SCAN_CELLS}
            )

        occupied = list(await self._db.get_plots_in_area(min_x, max_x, min_z, max_z))
        taken = {p.position_key for p in occupied}
        available = [
            {"x": float(x), "z": float(z)}
            for x in range(min_x, max_x + 1)
            for z in range(min_z, max_z + 1)
            if Position(x=x, z=z).key not in taken
        ]
        return AvailablePlotsResponse(
            available_positions=available,
            occupied_plots=[
                {
                    "plot_id": p.id,
                    "position": p.position.model_dump(exclude_none=True),
                    "size": p.size.model_dump(),
                    "owner": p.user_id,
                    "building": p.building,
                }
                for p in occupied
            ],
            total_available=len(available),
            total_occupied=len(occupied),
        )

    async def get_plot(self, plot_id: str) -> Plot:
        plot = await self._db.get_plot(plot_id)
        if plot is None:
            raise NotFound("plot not found", details={"plot_id": plot_id})
        return plot

    async def get_plots_for_user(self, user_id: str) -> Iterable[Plot]:
        return await self._db.get_plots_for_user(user_id)

    # Helpers

    def _quote(
        self,
        user: Optional[UserAccount],
        size: PlotSize,
        has_custom_model: bool,
        premium_features: Optional[Iterable[str]],
        multipliers: SpatialMultipliers,
    ) -> PriceQuote:
        return calculate_quote(
            self._config,
            size,
            subscription_tier=user.subscription_tier if user else SubscriptionTier.FREE,
            remaining_free_squares=self._quota.remaining(user) if user else 0,
            has_custom_model=has_custom_model,
            premium_features=premium_features,
            location_multiplier=multipliers.location_multiplier,
            demand_multiplier=multipliers.demand_multiplier,
        )

    async def _load_user_for_quote(self, user_id: Optional[str]) -> Optional[UserAccount]:
        if not user_id:
            return None
        user = await self._db.get_user(user_id)
        return user or UserAccount.new(user_id, free_squares_limit=self._config.default_free_squares)

    async def _get_or_create_user(self, user_id: str, username: Optional[str] = None) -> UserAccount:
        user = await self._db.get_user(user_id)
        if user is not None:
            return user
        user = UserAccount.new(
            user_id, free_squares_limit=self._config.default_free_squares, username=username
        )
        logger.info("creating user record for %s on first purchase", user_id)
        return await self._db.add_user(user)


def _require_user_id(user_id: Optional[str]) -> None:
    if not user_id or not user_id.strip():
        raise ValidationError("user_id is required")


def _validate_position(position: Position) -> None:
    coords = {"x": position.x, "z": position.z}
    if position.y is not None:
        coords["y"] = position.y
    if not all(math.isfinite(v) for v in coords.values()):
        raise ValidationError(
            "position coordinates must be finite numbers",
            details={k: str(v) for k, v in coords.items()},
        )


def _intent_response(intent: PaymentIntent) -> PlotPaymentIntentResponse:
    tx = intent.transaction
    return PlotPaymentIntentResponse(
        payment_required=True,
        total_cost=tx.amount,
        free_squares=tx.metadata.get("free_squares", 0),
        paid_squares=tx.metadata.get("paid_squares", 0),
        plot_cost=tx.metadata.get("plot_cost", 0),
        custom_model_fee=tx.metadata.get("custom_model_fee", 0),
        payment_intent_id=intent.intent_id,
        client_secret=intent.client_secret,
    )
