"""
MongoDB access and units of work.

Every storage call made by the catalog, cart and order modules receives a
``UnitOfWork``. Calls made inside ``transaction()`` commit or abort
together; ``autocommit()`` hands out a unit of work whose writes apply
immediately.

Two transactional flavours exist:

- ``MongoUnitOfWork`` wraps a client session and a multi-document
  transaction (requires a replica set).
- ``JournalUnitOfWork`` is used where multi-document transactions are not
  available (single node, mongomock in tests). It records an undo action
  for every write so an abort can put each touched document back. Undo
  actions are conditional or commutative, so they are safe to replay while
  other requests keep writing.
"""

import os
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

import structlog
from pymongo import ASCENDING, DESCENDING, MongoClient

logger = structlog.get_logger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017/?replicaSet=rs0")
DATABASE_NAME = os.getenv("DATABASE_NAME", "fashion_engine")
DATABASE_TRANSACTIONS = os.getenv("DATABASE_TRANSACTIONS", "true").lower() in ("1", "true", "yes")

_client: Optional[Any] = None
_db_name: str = DATABASE_NAME
_transactions: bool = DATABASE_TRANSACTIONS


def configure(client: Any, name: str = DATABASE_NAME, transactions: bool = DATABASE_TRANSACTIONS) -> None:
    """Swap the client used by the application (pymongo or API compatible)."""
    global _client, _db_name, _transactions
    _client = client
    _db_name = name
    _transactions = transactions


def get_client() -> Any:
    global _client
    if _client is None:
        _client = MongoClient(DATABASE_URL, tz_aware=True)
    return _client


def get_db():
    return get_client()[_db_name]


class UnitOfWork:
    """Autocommit unit of work: writes apply as soon as they are issued."""

    session = None

    def __init__(self, db):
        self.db = db

    @property
    def options(self) -> Dict[str, Any]:
        """Keyword arguments to forward to every pymongo call."""
        if self.session is None:
            return {}
        return {"session": self.session}

    def on_abort(self, undo: Callable[[], Any]) -> None:
        # Nothing to roll back outside a transaction.
        pass

    def begin(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def abort(self) -> None:
        pass

    def close(self) -> None:
        pass


class MongoUnitOfWork(UnitOfWork):
    def __init__(self, client, db):
        super().__init__(db)
        self.session = client.start_session()

    def begin(self) -> None:
        self.session.start_transaction()

    def commit(self) -> None:
        self.session.commit_transaction()

    def abort(self) -> None:
        if self.session.in_transaction:
            self.session.abort_transaction()

    def close(self) -> None:
        self.session.end_session()


class JournalUnitOfWork(UnitOfWork):
    def __init__(self, db):
        super().__init__(db)
        self._undo: List[Callable[[], Any]] = []

    def on_abort(self, undo: Callable[[], Any]) -> None:
        self._undo.append(undo)

    def commit(self) -> None:
        self._undo.clear()

    def abort(self) -> None:
        """Run every recorded undo, newest first.

        A failing undo is logged and the rest still run; the error that
        caused the abort is the one the caller sees.
        """
        undo, self._undo = self._undo, []
        failed = 0
        for action in reversed(undo):
            try:
                action()
            except Exception:
                failed += 1
                logger.exception("Undo action failed")
        if undo:
            logger.info("Unit of work rolled back", undone_writes=len(undo) - failed, failed_undos=failed)


def autocommit() -> UnitOfWork:
    return UnitOfWork(get_db())


@contextmanager
def transaction() -> Iterator[UnitOfWork]:
    """Open a unit of work that commits on success and aborts on any error.

    The abort also runs when the commit itself fails, so callers never see
    half-applied writes.
    """
    if _transactions:
        uow: UnitOfWork = MongoUnitOfWork(get_client(), get_db())
    else:
        uow = JournalUnitOfWork(get_db())
    try:
        uow.begin()
        yield uow
        uow.commit()
    except BaseException:
        uow.abort()
        raise
    finally:
        uow.close()


def ensure_indexes() -> None:
    db = get_db()
    db["product"].create_index([("variants.sku", ASCENDING)], unique=True)
    db["product"].create_index([("category", ASCENDING), ("base_price", ASCENDING)])
    db["cart"].create_index([("user_id", ASCENDING)], unique=True)
    db["order"].create_index([("order_number", ASCENDING)], unique=True)
    db["order"].create_index([("user_id", ASCENDING)])
    db["order"].create_index([("status", ASCENDING)])
    db["order"].create_index([("created_at", DESCENDING)])
