from __future__ import annotations

import pytest

from plot_allocation.db.memory import InMemoryDBManager
from plot_allocation.logging.ledger_logger import LedgerLogger
from plot_allocation.models.pricing import PricingConfig
from plot_allocation.services.account_service import AccountService
from plot_allocation.services.allocation_service import AllocationService
from plot_allocation.services.payment_service import PaymentService


@pytest.fixture
def config() -> PricingConfig:
    return PricingConfig()


@pytest.fixture
def db() -> InMemoryDBManager:
    return InMemoryDBManager()


@pytest.fixture
def ledger(db, tmp_path) -> LedgerLogger:
    return LedgerLogger(db=db, file_path=tmp_path / "ledger.log")


@pytest.fixture
def payments(db, ledger) -> PaymentService:
    return PaymentService(db=db, ledger=ledger)


@pytest.fixture
def allocation(db, ledger, config, payments) -> AllocationService:
    return AllocationService(db=db, ledger=ledger, config=config, payments=payments)


@pytest.fixture
def accounts(db, ledger, config, payments) -> AccountService:
    return AccountService(db=db, ledger=ledger, config=config, payments=payments)
