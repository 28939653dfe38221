from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional

from ..models.idempotency import IdempotencyRecord
from ..models.ledger import LedgerEntry
from ..models.plot import Plot, Position
from ..models.transaction import Transaction, TransactionType
from ..models.user import UserAccount


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations (in-memory, MongoDB, ...) must provide:
    - an all-or-nothing unit of work through `transaction()`
    - insert-or-fail semantics on every unique field (a second plot at the
      same position raises `PositionOccupied`)
    - compare-and-swap updates on versioned records (a stale `version`
      raises `ConcurrencyConflict`; a successful update bumps it)
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic transaction context.
        Must roll back on exception and commit on success. Nested use joins
        the outer unit of work.
        """
        yield

    # User operations
    @abstractmethod
    async def add_user(self, user: UserAccount) -> UserAccount: ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    @abstractmethod
    async def update_user(self, user: UserAccount) -> UserAccount: ...

    # Plot operations
    @abstractmethod
    async def insert_plot(self, plot: Plot) -> Plot: ...

    @abstractmethod
    async def get_plot(self, plot_id: str) -> Optional[Plot]: ...

    @abstractmethod
    async def get_plot_at(self, position: Position) -> Optional[Plot]: ...

    @abstractmethod
    async def update_plot(self, plot: Plot) -> Plot: ...

    @abstractmethod
    async def get_plots_in_area(
        self, min_x: float, max_x: float, min_z: float, max_z: float
    ) -> Iterable[Plot]:
        """Plots whose position lies in the closed box, in no particular order."""
        ...

    @abstractmethod
    async def get_plots_for_user(self, user_id: str) -> Iterable[Plot]: ...

    # Transaction operations
    @abstractmethod
    async def add_transaction(self, tx: Transaction) -> Transaction: ...

    @abstractmethod
    async def get_transaction(self, tx_id: str) -> Optional[Transaction]: ...

    @abstractmethod
    async def get_transaction_by_external_id(self, transaction_id: str) -> Optional[Transaction]: ...

    @abstractmethod
    async def update_transaction(self, tx: Transaction) -> Transaction: ...

    @abstractmethod
    async def get_transactions(
        self, user_id: str, limit: Optional[int] = None
    ) -> Iterable[Transaction]:
        """Newest first."""
        ...

    @abstractmethod
    async def get_transactions_since(
        self, tx_type: TransactionType, since: datetime
    ) -> Iterable[Transaction]: ...

    # Idempotency
    @abstractmethod
    async def get_idempotency_record(self, key: str) -> Optional[IdempotencyRecord]: ...

    @abstractmethod
    async def add_idempotency_record(self, record: IdempotencyRecord) -> IdempotencyRecord: ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...
