from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional

from .base import BaseDBManager
from ..errors import ConcurrencyConflict, PositionOccupied
from ..models.idempotency import IdempotencyRecord
from ..models.ledger import LedgerEntry
from ..models.plot import Plot, Position
from ..models.transaction import Transaction, TransactionType
from ..models.user import UserAccount


_in_transaction: ContextVar[bool] = ContextVar("plot_memory_db_in_transaction", default=False)


class InMemoryDBManager(BaseDBManager):
    """
    In-memory implementation used for tests and local development.

    Units of work are serialised with a single lock and rolled back from a
    snapshot on error, which is enough to exercise the atomicity and
    uniqueness guarantees the services rely on. Records are copied on the
    way in and out so callers never hold a live reference to stored state.
    The ledger is append-only and survives rollbacks.
    """

    def __init__(self) -> None:
        self._users: Dict[str, UserAccount] = {}
        self._plots: Dict[str, Plot] = {}
        self._plots_by_position: Dict[str, str] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._tx_by_external_id: Dict[str, str] = {}
        self._idempotency: Dict[str, IdempotencyRecord] = {}
        self._ledger: List[LedgerEntry] = []
        self._id_counter: int = 0
        self._lock = asyncio.Lock()

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _in_transaction.get():
            yield
            return

        async with self._lock:
            token = _in_transaction.set(True)
            snapshot = self._snapshot()
            try:
                yield
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                _in_transaction.reset(token)

    def _snapshot(self) -> dict:
        return {
            "users": dict(self._users),
            "plots": dict(self._plots),
            "plots_by_position": dict(self._plots_by_position),
            "transactions": dict(self._transactions),
            "tx_by_external_id": dict(self._tx_by_external_id),
            "idempotency": dict(self._idempotency),
        }

    def _restore(self, snapshot: dict) -> None:
        # Stored records are never mutated in place, so shallow copies suffice
        self._users = snapshot["users"]
        self._plots = snapshot["plots"]
        self._plots_by_position = snapshot["plots_by_position"]
        self._transactions = snapshot["transactions"]
        self._tx_by_external_id = snapshot["tx_by_external_id"]
        self._idempotency = snapshot["idempotency"]

    # User operations
    async def add_user(self, user: UserAccount) -> UserAccount:
        if user.id in self._users:
            raise ConcurrencyConflict("user already exists", details={"user_id": user.id})
        user.version = 1
        self._users[user.id] = user.model_copy(deep=True)
        return user

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def update_user(self, user: UserAccount) -> UserAccount:
        stored = self._users.get(user.id)
        if stored is None or stored.version != user.version:
            raise ConcurrencyConflict("stale user record", details={"user_id": user.id})
        user.version += 1
        user.updated_at = datetime.utcnow()
        self._users[user.id] = user.model_copy(deep=True)
        return user

    # Plot operations
    async def insert_plot(self, plot: Plot) -> Plot:
        if plot.position_key in self._plots_by_position:
            raise PositionOccupied(plot.position.x, plot.position.z)
        if plot.id is None:
            plot.id = self._next_id()
        self._plots[plot.id] = plot.model_copy(deep=True)
        self._plots_by_position[plot.position_key] = plot.id
        return plot

    async def get_plot(self, plot_id: str) -> Optional[Plot]:
        plot = self._plots.get(plot_id)
        return plot.model_copy(deep=True) if plot else None

    async def get_plot_at(self, position: Position) -> Optional[Plot]:
        plot_id = self._plots_by_position.get(position.key)
        return await self.get_plot(plot_id) if plot_id else None

    async def update_plot(self, plot: Plot) -> Plot:
        if plot.id is None or plot.id not in self._plots:
            raise ValueError("Plot must exist to be updated")
        plot.updated_at = datetime.utcnow()
        self._plots[plot.id] = plot.model_copy(deep=True)
        return plot

    async def get_plots_in_area(
        self, min_x: float, max_x: float, min_z: float, max_z: float
    ) -> Iterable[Plot]:
        return [
            p.model_copy(deep=True)
            for p in self._plots.values()
            if min_x <= p.position.x <= max_x and min_z <= p.position.z <= max_z
        ]

    async def get_plots_for_user(self, user_id: str) -> Iterable[Plot]:
        return [p.model_copy(deep=True) for p in self._plots.values() if p.user_id == user_id]

    # Transaction operations
    async def add_transaction(self, tx: Transaction) -> Transaction:
        if tx.transaction_id in self._tx_by_external_id:
            raise ConcurrencyConflict(
                "duplicate transaction id", details={"transaction_id": tx.transaction_id}
            )
        if tx.id is None:
            tx.id = self._next_id()
        tx.version = 1
        self._transactions[tx.id] = tx.model_copy(deep=True)
        self._tx_by_external_id[tx.transaction_id] = tx.id
        return tx

    async def get_transaction(self, tx_id: str) -> Optional[Transaction]:
        tx = self._transactions.get(tx_id)
        return tx.model_copy(deep=True) if tx else None

    async def get_transaction_by_external_id(self, transaction_id: str) -> Optional[Transaction]:
        tx_id = self._tx_by_external_id.get(transaction_id)
        return await self.get_transaction(tx_id) if tx_id else None

    async def update_transaction(self, tx: Transaction) -> Transaction:
        stored = self._transactions.get(tx.id or "")
        if stored is None or stored.version != tx.version:
            raise ConcurrencyConflict("stale transaction record", details={"id": tx.id})
        tx.version += 1
        tx.updated_at = datetime.utcnow()
        self._transactions[tx.id] = tx.model_copy(deep=True)
        return tx

    async def get_transactions(
        self, user_id: str, limit: Optional[int] = None
    ) -> Iterable[Transaction]:
        txs = [t for t in self._transactions.values() if t.user_id == user_id]
        # Ids are monotonic, which breaks timestamp ties deterministically
        txs.sort(key=lambda t: (t.created_at, int(t.id or 0)), reverse=True)
        if limit is not None:
            txs = txs[:limit]
        return [t.model_copy(deep=True) for t in txs]

    async def get_transactions_since(
        self, tx_type: TransactionType, since: datetime
    ) -> Iterable[Transaction]:
        return [
            t.model_copy(deep=True)
            for t in self._transactions.values()
            if t.type == tx_type and t.created_at >= since
        ]

    # Idempotency
    async def get_idempotency_record(self, key: str) -> Optional[IdempotencyRecord]:
        record = self._idempotency.get(key)
        return record.model_copy(deep=True) if record else None

    async def add_idempotency_record(self, record: IdempotencyRecord) -> IdempotencyRecord:
        if record.key in self._idempotency:
            raise ConcurrencyConflict("idempotency key already used", details={"key": record.key})
        self._idempotency[record.key] = record.model_copy(deep=True)
        return record

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry)
        return entry

    @property
    def ledger_entries(self) -> List[LedgerEntry]:
        return list(self._ledger)
