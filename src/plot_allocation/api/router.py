from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from ..cache.memory import InMemoryAsyncCache
from ..config import Settings, get_settings
from ..db.base import BaseDBManager
from ..db.memory import InMemoryDBManager
from ..db.mongo import MongoDBManager
from ..errors import NotFound, PlotEngineError
from ..logging.ledger_logger import LedgerLogger
from ..models.api_models import (
    AddCreditsRequest,
    AvailablePlotsResponse,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    PlotPaymentIntentRequest,
    PlotPaymentIntentResponse,
    PricingRequest,
    ProcessPaymentRequest,
    ProcessPaymentResponse,
    ProfileRequest,
    PurchaseRequest,
    PurchaseResult,
    RefundRequest,
    RefundResponse,
    SubscriptionIntentRequest,
    UpgradeSubscriptionRequest,
    UserSummary,
)
from ..models.pricing import PriceQuote
from ..models.transaction import Transaction, TransactionStatus
from ..services.account_service import AccountService
from ..services.allocation_service import AllocationService
from ..services.analytics import PricingAnalyticsService
from ..services.demand import DemandEstimator
from ..services.payment_service import PaymentService
from .middleware import correlation_id_from


logger = logging.getLogger(__name__)

router = APIRouter(prefix=get_settings().api_prefix, tags=["plots"])


@dataclass
class Services:
    db: BaseDBManager
    ledger: LedgerLogger
    payments: PaymentService
    allocation: AllocationService
    accounts: AccountService
    analytics: PricingAnalyticsService


def _create_db_manager(settings: Settings) -> BaseDBManager:
    if settings.uses_mongo:
        return MongoDBManager.from_client_uri(settings.mongo_uri, settings.mongo_db)
    return InMemoryDBManager()


def build_services(settings: Settings, db: Optional[BaseDBManager] = None) -> Services:
    db = db or _create_db_manager(settings)
    config = settings.pricing_config()
    ledger = LedgerLogger(db=db, file_path=settings.ledger_log_path)
    payments = PaymentService(db=db, ledger=ledger, currency=config.currency)
    estimator = DemandEstimator(
        db,
        config,
        cache=InMemoryAsyncCache(),
        cache_ttl_seconds=settings.demand_cache_ttl_seconds,
    )
    allocation = AllocationService(
        db=db,
        ledger=ledger,
        config=config,
        payments=payments,
        estimator=estimator,
        max_commit_retries=settings.max_commit_retries,
    )
    return Services(
        db=db,
        ledger=ledger,
        payments=payments,
        allocation=allocation,
        accounts=AccountService(db=db, ledger=ledger, config=config, payments=payments),
        analytics=PricingAnalyticsService(db=db, config=config, allocation=allocation),
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(get_settings())
    return _services


def _http_error(exc: PlotEngineError) -> HTTPException:
    if exc.http_status >= 500:
        logger.error("internal error: %s", exc.message, extra={"details": exc.details})
    return HTTPException(
        status_code=exc.http_status,
        detail={"error": type(exc).__name__, "message": exc.message, **exc.details},
    )


# Plots


@router.post("/pricing", response_model=PriceQuote)
async def calculate_pricing(
    payload: PricingRequest, services: Services = Depends(get_services)
) -> PriceQuote:
    try:
        return await services.allocation.calculate_plot_pricing(
            size=payload.size,
            position=payload.position,
            user_id=payload.user_id,
            has_custom_model=payload.has_custom_model,
            premium_features=payload.premium_features,
        )
    except PlotEngineError as exc:
        raise _http_error(exc) from exc


@router.post("/purchase", response_model=PurchaseResult, status_code=status.HTTP_201_CREATED)
async def purchase_plot(
    payload: PurchaseRequest,
    request: Request,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    services: Services = Depends(get_services),
) -> PurchaseResult:
    try:
        return await services.allocation.purchase_plot(
            user_id=payload.user_id,
            position=payload.position,
            size=payload.size,
            building=payload.building,
            advertising=payload.advertising,
            premium_features=payload.premium_features,
            payment_intent_id=payload.payment_intent_id,
            payment_method=payload.payment_method,
            metadata=payload.metadata,
            idempotency_key=idempotency_key,
            correlation_id=correlation_id_from(request),
        )
    except PlotEngineError as exc:
        raise _http_error(exc) from exc


@router.get("/available", response_model=AvailablePlotsResponse)
async def get_available_plots(
    min_x: int = Query(default=-50),
    max_x: int = Query(default=50),
    min_z: int = Query(default=-50),
    max_z: int = Query(default=50),
    services: Services = Depends(get_services),
) -> AvailablePlotsResponse:
    try:
        return await services.allocation.get_available_positions(min_x, max_x, min_z, max_z)
    except PlotEngineError as exc:
        raise _http_error(exc) from exc


# Payments


@router.post("/payments/intents", response_model=PlotPaymentIntentResponse)
async def create_payment_intent(
    payload: PlotPaymentIntentRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    services: Services = Depends(get_services),
) -> PlotPaymentIntentResponse:
    try:
        return await services.allocation.create_plot_payment_intent(
            user_id=payload.user_id,
            plot_size=payload.plot_size,
            has_custom_model=payload.has_custom_model,
            position=payload.position,
            premium_features=payload.premium_features,
            metadata=payload.metadata,
            idempotency_key=idempotency_key,
        )
    except PlotEngineError as exc:
        raise _http_error(exc) from exc


@router.post("/payments/confirm", response_model=ConfirmPaymentResponse)
async def confirm_payment(
    payload: ConfirmPaymentRequest, services: Services = Depends(get_services)
) -> ConfirmPaymentResponse:
    try:
        tx = await services.payments.confirm(payload.payment_intent_id, payload.status)
    except PlotEngineError as exc:
        raise _http_error(exc) from exc
    return ConfirmPaymentResponse(transaction_id=tx.id or "", status=tx.status, amount=tx.amount)


@router.post("/payments/process", response_model=ProcessPaymentResponse)
async def process_payment(
    payload: ProcessPaymentRequest, services: Services = Depends(get_services)
) -> ProcessPaymentResponse:
    try:
        tx = await services.payments.process_now(
            user_id=payload.user_id,
            amount=payload.amount,
            method=payload.payment_method,
            details=payload.payment_details,
            description=payload.description,
        )
    except PlotEngineError as exc:
        raise _http_error(exc) from exc
    return ProcessPaymentResponse(
        success=tx.status == TransactionStatus.COMPLETED,
        payment_id=tx.transaction_id,
        status=tx.status,
        error=tx.metadata.get("error"),
    )


@router.post("/payments/refund", response_model=RefundResponse)
async def refund_transaction(
    payload: RefundRequest, request: Request, services: Services = Depends(get_services)
) -> RefundResponse:
    try:
        return await services.allocation.refund_transaction(
            payload.transaction_id, payload.reason, correlation_id=correlation_id_from(request)
        )
    except PlotEngineError as exc:
        raise _http_error(exc) from exc


# Users


@router.get("/pricing-info")
async def get_pricing_info(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return services.accounts.get_pricing_info()


@router.post("/users/profile", response_model=UserSummary)
async def create_or_update_profile(
    payload: ProfileRequest, services: Services = Depends(get_services)
) -> UserSummary:
    try:
        return await services.accounts.create_or_update_profile(
            payload.user_id, payload.username, payload.email
        )
    except PlotEngineError as exc:
        raise _http_error(exc) from exc


@router.get("/users/{user_id}", response_model=UserSummary)
async def get_user(user_id: str, services: Services = Depends(get_services)) -> UserSummary:
    return await services.accounts.get_current_user(user_id)


@router.get("/users/{user_id}/profile")
async def get_profile(user_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        return await services.accounts.get_profile(user_id)
    except PlotEngineError as exc:
        raise _http_error(exc) from exc


@router.get("/users/{user_id}/transactions", response_model=List[Transaction])
async def get_transactions(
    user_id: str,
    limit: int = Query(default=20, gt=0, le=100),
    services: Services = Depends(get_services),
) -> List[Transaction]:
    return list(await services.accounts.get_transaction_history(user_id, limit=limit))


@router.post("/users/{user_id}/credits", response_model=UserSummary)
async def add_credits(
    user_id: str, payload: AddCreditsRequest, services: Services = Depends(get_services)
) -> UserSummary:
    try:
        return await services.accounts.add_credits(
            user_id, payload.amount, payload.payment_id, payload.payment_processor
        )
    except PlotEngineError as exc:
        raise _http_error(exc) from exc


@router.post("/users/{user_id}/subscription/intents", response_model=PlotPaymentIntentResponse)
async def create_subscription_intent(
    user_id: str,
    payload: SubscriptionIntentRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    services: Services = Depends(get_services),
) -> PlotPaymentIntentResponse:
    try:
        return await services.accounts.create_subscription_payment_intent(
            user_id, payload.tier, payload.duration_months, idempotency_key=idempotency_key
        )
    except PlotEngineError as exc:
        raise _http_error(exc) from exc


@router.post("/users/{user_id}/subscription", response_model=UserSummary)
async def upgrade_subscription(
    user_id: str, payload: UpgradeSubscriptionRequest, services: Services = Depends(get_services)
) -> UserSummary:
    try:
        return await services.accounts.upgrade_subscription(
            user_id, payload.tier, payload.payment_intent_id, payload.duration_months
        )
    except PlotEngineError as exc:
        raise _http_error(exc) from exc


@router.delete("/users/{user_id}/subscription", response_model=UserSummary)
async def cancel_subscription(
    user_id: str, services: Services = Depends(get_services)
) -> UserSummary:
    try:
        return await services.accounts.cancel_subscription(user_id)
    except PlotEngineError as exc:
        raise _http_error(exc) from exc


# Analytics


@router.get("/analytics/trends")
async def get_pricing_trends(
    time_range: str = Query(default="month"),
    min_x: Optional[float] = Query(default=None),
    max_x: Optional[float] = Query(default=None),
    min_z: Optional[float] = Query(default=None),
    max_z: Optional[float] = Query(default=None),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    bounds = (min_x, max_x, min_z, max_z)
    area = None if any(b is None for b in bounds) else bounds
    try:
        return await services.analytics.get_pricing_trends(time_range, area=area)
    except PlotEngineError as exc:
        raise _http_error(exc) from exc


@router.get("/analytics/factors")
async def get_pricing_factors(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return services.analytics.get_pricing_factors()


@router.get("/analytics/recommended/{plot_id}")
async def get_recommended_pricing(
    plot_id: str,
    target_margin: float = Query(default=0.2, ge=0),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    try:
        return await services.analytics.get_recommended_pricing(plot_id, target_margin)
    except PlotEngineError as exc:
        raise _http_error(exc) from exc


@router.get("/users/{user_id}/usage")
async def get_usage_stats(user_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    stats = await services.accounts.get_usage_stats(user_id)
    if stats is None:
        raise _http_error(NotFound("user not found", details={"user_id": user_id}))
    return stats


@router.get("/users/{user_id}/dashboard")
async def get_dashboard(user_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        return await services.accounts.get_dashboard(user_id)
    except PlotEngineError as exc:
        raise _http_error(exc) from exc
