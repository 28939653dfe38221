from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, Mapping, Optional, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import BaseDBManager
from ..errors import ConcurrencyConflict, PositionOccupied
from ..models.base import DBSerializableModel
from ..models.idempotency import IdempotencyRecord
from ..models.ledger import LedgerEntry
from ..models.plot import Plot, Position
from ..models.transaction import Transaction, TransactionType
from ..models.user import UserAccount


TModel = TypeVar("TModel", bound=DBSerializableModel)

_session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
    "plot_mongo_session", default=None
)


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    `transaction()` opens a client session with a multi-document
    transaction, so the deployment must be a replica set (a single-node
    replica set is enough). Every operation issued inside the context joins
    that session.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri)
        return cls(client[db_name])

    async def ensure_indexes(self) -> None:
        plots = self._db[Plot.collection_name]
        await plots.create_index("position_key", unique=True)
        await plots.create_index([("position.x", ASCENDING), ("position.z", ASCENDING)])
        await plots.create_index("user_id")
        txs = self._db[Transaction.collection_name]
        await txs.create_index("transaction_id", unique=True)
        await txs.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        await txs.create_index([("type", ASCENDING), ("created_at", ASCENDING)])

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _session.get() is not None:
            yield
            return

        try:
            async with await self._db.client.start_session() as session:
                async with session.start_transaction():
                    token = _session.set(session)
                    try:
                        yield
                    finally:
                        _session.reset(token)
        except PyMongoError as exc:
            # Write conflicts abort the whole transaction; callers retry the unit
            if exc.has_error_label("TransientTransactionError"):
                raise ConcurrencyConflict(
                    "transaction aborted by a concurrent write",
                    details={"code": getattr(exc, "code", None)},
                ) from exc
            raise

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        pk = model.primary_key or "id"
        model_id = getattr(model, pk, None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, pk, model_id)
            data[pk] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        doc_id = data.pop("_id", None)
        pk = model_cls.primary_key or "id"
        if doc_id is not None and pk not in data:
            data[pk] = str(doc_id)
        return model_cls.model_validate(data)

    async def _insert(self, model: TModel) -> TModel:
        col = self._db[model.collection_name]
        await col.insert_one(self._prepare_insert(model), session=_session.get())
        return model

    async def _find_one(self, model_cls: Type[TModel], query: Mapping[str, Any]) -> Optional[TModel]:
        col = self._db[model_cls.collection_name]
        doc = await col.find_one(query, session=_session.get())
        return self._decode(model_cls, doc)

    async def _find_many(
        self, model_cls: Type[TModel], query: Mapping[str, Any], sort=None, limit: Optional[int] = None
    ) -> list[TModel]:
        col = self._db[model_cls.collection_name]
        cursor = col.find(query, session=_session.get())
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=None)
        return [self._decode(model_cls, d) for d in docs if d is not None]  # type: ignore[misc]

    async def _compare_and_swap(self, model: TModel) -> TModel:
        """Replace the document only if nobody bumped its version since we read it."""
        expected = model.version  # type: ignore[attr-defined]
        model.version = expected + 1  # type: ignore[attr-defined]
        model.updated_at = datetime.utcnow()  # type: ignore[attr-defined]
        data = model.serialize_for_db()
        data["_id"] = data["id"]
        col = self._db[model.collection_name]
        result = await col.replace_one(
            {"_id": data["_id"], "version": expected}, data, session=_session.get()
        )
        if result.matched_count == 0:
            model.version = expected  # type: ignore[attr-defined]
            raise ConcurrencyConflict(
                f"stale {model.collection_name} record", details={"id": data["_id"]}
            )
        return model

    # User operations
    async def add_user(self, user: UserAccount) -> UserAccount:
        user.version = 1
        try:
            return await self._insert(user)
        except DuplicateKeyError as exc:
            raise ConcurrencyConflict("user already exists", details={"user_id": user.id}) from exc

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        return await self._find_one(UserAccount, {"_id": user_id})

    async def update_user(self, user: UserAccount) -> UserAccount:
        return await self._compare_and_swap(user)

    # Plot operations
    async def insert_plot(self, plot: Plot) -> Plot:
        try:
            return await self._insert(plot)
        except DuplicateKeyError as exc:
            raise PositionOccupied(plot.position.x, plot.position.z) from exc

    async def get_plot(self, plot_id: str) -> Optional[Plot]:
        return await self._find_one(Plot, {"_id": plot_id})

    async def get_plot_at(self, position: Position) -> Optional[Plot]:
        return await self._find_one(Plot, {"position_key": position.key})

    async def update_plot(self, plot: Plot) -> Plot:
        if not plot.id:
            raise ValueError("Plot must have id to be updated")
        plot.updated_at = datetime.utcnow()
        data = plot.serialize_for_db()
        data["_id"] = plot.id
        col = self._db[Plot.collection_name]
        await col.replace_one({"_id": plot.id}, data, upsert=False, session=_session.get())
        return plot

    async def get_plots_in_area(
        self, min_x: float, max_x: float, min_z: float, max_z: float
    ) -> Iterable[Plot]:
        return await self._find_many(
            Plot,
            {
                "position.x": {"$gte": min_x, "$lte": max_x},
                "position.z": {"$gte": min_z, "$lte": max_z},
            },
        )

    async def get_plots_for_user(self, user_id: str) -> Iterable[Plot]:
        return await self._find_many(Plot, {"user_id": user_id}, sort=[("created_at", DESCENDING)])

    # Transaction operations
    async def add_transaction(self, tx: Transaction) -> Transaction:
        tx.version = 1
        try:
            return await self._insert(tx)
        except DuplicateKeyError as exc:
            raise ConcurrencyConflict(
                "duplicate transaction id", details={"transaction_id": tx.transaction_id}
            ) from exc

    async def get_transaction(self, tx_id: str) -> Optional[Transaction]:
        return await self._find_one(Transaction, {"_id": tx_id})

    async def get_transaction_by_external_id(self, transaction_id: str) -> Optional[Transaction]:
        return await self._find_one(Transaction, {"transaction_id": transaction_id})

    async def update_transaction(self, tx: Transaction) -> Transaction:
        return await self._compare_and_swap(tx)

    async def get_transactions(
        self, user_id: str, limit: Optional[int] = None
    ) -> Iterable[Transaction]:
        return await self._find_many(
            Transaction, {"user_id": user_id}, sort=[("created_at", DESCENDING)], limit=limit
        )

    async def get_transactions_since(
        self, tx_type: TransactionType, since: datetime
    ) -> Iterable[Transaction]:
        return await self._find_many(
            Transaction, {"type": tx_type.value, "created_at": {"$gte": since}}
        )

    # Idempotency
    async def get_idempotency_record(self, key: str) -> Optional[IdempotencyRecord]:
        return await self._find_one(IdempotencyRecord, {"_id": key})

    async def add_idempotency_record(self, record: IdempotencyRecord) -> IdempotencyRecord:
        try:
            return await self._insert(record)
        except DuplicateKeyError as exc:
            raise ConcurrencyConflict(
                "idempotency key already used", details={"key": record.key}
            ) from exc

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        # Audit entries are written outside the caller's session so that
        # error events survive a rollback.
        col = self._db[LedgerEntry.collection_name]
        await col.insert_one(self._prepare_insert(entry))
        return entry
