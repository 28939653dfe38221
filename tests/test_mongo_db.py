from __future__ import annotations

import pytest
from pymongo.errors import OperationFailure

from plot_allocation.db.mongo import MongoDBManager
from plot_allocation.errors import ConcurrencyConflict


class _Transaction:
    def __init__(self, session: "_Session") -> None:
        self._session = session

    async def __aenter__(self) -> None:
        return None

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self._session.aborted = exc_type is not None
        return False


class _Session:
    def __init__(self) -> None:
        self.aborted = False

    async def __aenter__(self) -> "_Session":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False

    def start_transaction(self) -> _Transaction:
        return _Transaction(self)


class _Client:
    def __init__(self) -> None:
        self.sessions = []

    async def start_session(self) -> _Session:
        session = _Session()
        self.sessions.append(session)
        return session


class _Database:
    def __init__(self) -> None:
        self.client = _Client()


def _write_conflict() -> OperationFailure:
    return OperationFailure(
        "WriteConflict error: this operation conflicted with another operation",
        code=112,
        details={"errorLabels": ["TransientTransactionError"]},
    )


@pytest.mark.asyncio
async def test_write_conflict_becomes_concurrency_conflict():
    database = _Database()
    db = MongoDBManager(database)

    with pytest.raises(ConcurrencyConflict) as exc_info:
        async with db.transaction():
            raise _write_conflict()

    assert exc_info.value.details == {"code": 112}
    assert database.client.sessions[0].aborted


@pytest.mark.asyncio
async def test_other_operation_failures_propagate():
    db = MongoDBManager(_Database())

    with pytest.raises(OperationFailure):
        async with db.transaction():
            raise OperationFailure("not authorized", code=13)


@pytest.mark.asyncio
async def test_nested_unit_reuses_session():
    database = _Database()
    db = MongoDBManager(database)

    async with db.transaction():
        async with db.transaction():
            pass

    assert len(database.client.sessions) == 1
