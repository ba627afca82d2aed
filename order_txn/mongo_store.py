from __future__ import annotations

import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional

from bson.codec_options import CodecOptions, TypeCodec, TypeRegistry
from bson.decimal128 import Decimal128
from pymongo import MongoClient, ReadPreference
from pymongo.client_session import ClientSession
from pymongo.errors import PyMongoError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from order_txn.errors import TRANSIENT_TRANSACTION_ERROR, UNKNOWN_COMMIT_RESULT, StoreError
from order_txn.models import INVENTORY, ORDERS
from order_txn.store import (
    CommitOutcome,
    CommitStatus,
    Session,
    Transaction,
    TransactionalStore,
    TransactionOptions,
    TxnState,
    UpdateOutcome,
)

logger = logging.getLogger(__name__)

_READ_PREFERENCES = {
    "primary": ReadPreference.PRIMARY,
    "primaryPreferred": ReadPreference.PRIMARY_PREFERRED,
    "secondary": ReadPreference.SECONDARY,
    "secondaryPreferred": ReadPreference.SECONDARY_PREFERRED,
    "nearest": ReadPreference.NEAREST,
}


class DecimalCodec(TypeCodec):
    python_type = Decimal
    bson_type = Decimal128

    def transform_python(self, value: Decimal) -> Decimal128:
        return Decimal128(value)

    def transform_bson(self, value: Decimal128) -> Decimal:
        return value.to_decimal()


CODEC_OPTIONS = CodecOptions(type_registry=TypeRegistry([DecimalCodec()]))


def translate_error(exc: PyMongoError) -> StoreError:
    labels = [label for label in (TRANSIENT_TRANSACTION_ERROR, UNKNOWN_COMMIT_RESULT) if exc.has_error_label(label)]
    return StoreError(str(exc), labels, code=getattr(exc, "code", None))


@contextmanager
def _translated() -> Iterator[None]:
    try:
        yield
    except PyMongoError as exc:
        raise translate_error(exc) from exc


class MongoSession(Session):
    def __init__(self, client_session: ClientSession):
        super().__init__()
        self.client_session = client_session


def _client_session_of(session: Session) -> ClientSession:
    if not isinstance(session, MongoSession):
        raise TypeError(f"session {session!r} was not started by a MongoStore")
    return session.client_session


class MongoStore(TransactionalStore):
    """TransactionalStore over a real MongoDB replica set (pymongo)."""

    def __init__(self, client: MongoClient, database: str = "testdb"):
        super().__init__()
        self.client = client
        self.db = client.get_database(database, codec_options=CODEC_OPTIONS)

    @classmethod
    def from_uri(cls, uri: str, database: str = "testdb", **client_kwargs: Any) -> "MongoStore":
        return cls(MongoClient(uri, **client_kwargs), database)

    def close(self) -> None:
        self.client.close()

    def ensure_indexes(self) -> None:
        with _translated():
            self.db[ORDERS].create_index("request_id", unique=True, sparse=True)
            self.db[INVENTORY].create_index("sku", unique=True)

    # Sessions
    def start_session(self) -> MongoSession:
        with _translated():
            return MongoSession(self.client.start_session())

    def end_session(self, session: Session) -> None:
        client_session = _client_session_of(session)
        try:
            super().end_session(session)
        finally:
            client_session.end_session()

    # Transactions
    def begin_transaction(self, session: Session, options: TransactionOptions) -> Transaction:
        with _translated():
            _client_session_of(session).start_transaction(
                read_concern=ReadConcern(options.read_concern),
                write_concern=WriteConcern(w=options.write_concern),
                read_preference=_READ_PREFERENCES[options.read_preference],
                max_commit_time_ms=options.max_commit_time_ms,
            )
        txn = Transaction(session, options)
        session.transaction = txn
        return txn

    def commit(self, txn: Transaction) -> CommitOutcome:
        client_session = self._client_session(txn)
        try:
            client_session.commit_transaction()
        except PyMongoError as exc:
            if exc.has_error_label(UNKNOWN_COMMIT_RESULT):
                txn.state = TxnState.UNKNOWN
                return CommitOutcome(CommitStatus.AMBIGUOUS, str(exc))
            txn.state = TxnState.ABORTED
            return CommitOutcome(CommitStatus.FAILED, str(exc), transient=exc.has_error_label(TRANSIENT_TRANSACTION_ERROR))
        txn.state = TxnState.COMMITTED
        return CommitOutcome(CommitStatus.COMMITTED)

    def abort(self, txn: Transaction) -> None:
        if not txn.active:
            return
        try:
            self._client_session(txn).abort_transaction()
        except PyMongoError as exc:
            # the server discards the transaction on its own once the session ends
            logger.warning("abort_transaction failed: %s", exc)
        finally:
            txn.state = TxnState.ABORTED

    @staticmethod
    def _client_session(txn: Optional[Transaction]) -> Optional[ClientSession]:
        if txn is None:
            return None
        return _client_session_of(txn.session)

    # Reads / writes
    def insert_one(self, collection: str, document: Dict[str, Any], txn: Optional[Transaction] = None) -> Any:
        with _translated():
            result = self.db[collection].insert_one(dict(document), session=self._client_session(txn))
        return result.inserted_id

    def find_one(
        self, collection: str, predicate: Dict[str, Any], txn: Optional[Transaction] = None
    ) -> Optional[Dict[str, Any]]:
        with _translated():
            return self.db[collection].find_one(predicate, session=self._client_session(txn))

    def update_one(
        self,
        collection: str,
        predicate: Dict[str, Any],
        mutation: Dict[str, Any],
        txn: Optional[Transaction] = None,
    ) -> UpdateOutcome:
        with _translated():
            result = self.db[collection].update_one(predicate, mutation, session=self._client_session(txn))
        return UpdateOutcome(matched=result.matched_count, modified=result.modified_count)

    def insert_many(self, collection: str, documents: List[Dict[str, Any]]) -> List[Any]:
        with _translated():
            return list(self.db[collection].insert_many([dict(d) for d in documents]).inserted_ids)

    def find(self, collection: str, predicate: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        with _translated():
            return list(self.db[collection].find(predicate or {}))

    def drop(self, collection: str) -> None:
        with _translated():
            self.db.drop_collection(collection)
