"""MongoStore error translation and transaction plumbing, no server required."""
from decimal import Decimal

import pytest
from bson.decimal128 import Decimal128
from pymongo import MongoClient, ReadPreference
from pymongo.errors import ConnectionFailure, OperationFailure

from order_txn.errors import (
    TRANSIENT_TRANSACTION_ERROR,
    UNKNOWN_COMMIT_RESULT,
    FatalStoreError,
    TransientStoreError,
    classify_store_error,
)
from order_txn.mongo_store import DecimalCodec, MongoSession, MongoStore, translate_error
from order_txn.store import CommitStatus, Session, TransactionOptions, TxnState


def _labelled(*labels) -> OperationFailure:
    return OperationFailure("simulated", code=112, details={"errorLabels": list(labels)})


class FakeClientSession:
    def __init__(self, commit_error=None):
        self.commit_error = commit_error
        self.started_with = None
        self.aborted = False
        self.ended = False

    def start_transaction(self, **kwargs):
        self.started_with = kwargs

    def commit_transaction(self):
        if self.commit_error is not None:
            raise self.commit_error

    def abort_transaction(self):
        self.aborted = True

    def end_session(self):
        self.ended = True


@pytest.fixture
def mongo():
    client = MongoClient("mongodb://localhost:27017", connect=False, serverSelectionTimeoutMS=100)
    yield MongoStore(client, database="testdb")
    client.close()


def _begin(mongo, commit_error=None):
    session = MongoSession(FakeClientSession(commit_error))
    txn = mongo.begin_transaction(session, TransactionOptions(max_commit_time_ms=500))
    return session, txn


def test_translate_keeps_labels():
    error = translate_error(_labelled(TRANSIENT_TRANSACTION_ERROR))

    assert error.has_error_label(TRANSIENT_TRANSACTION_ERROR)
    assert not error.has_error_label(UNKNOWN_COMMIT_RESULT)
    assert error.code == 112
    assert isinstance(classify_store_error(error), TransientStoreError)


def test_connection_failure_is_fatal():
    error = translate_error(ConnectionFailure("connection refused"))

    assert error.labels == frozenset()
    assert isinstance(classify_store_error(error), FatalStoreError)


def test_transaction_options_passed_to_driver(mongo):
    session, txn = _begin(mongo)
    started = session.client_session.started_with

    assert started["read_concern"].level == "snapshot"
    assert started["write_concern"].document == {"w": "majority"}
    assert started["read_preference"] == ReadPreference.PRIMARY
    assert started["max_commit_time_ms"] == 500
    assert session.transaction is txn


def test_commit_ok(mongo):
    _, txn = _begin(mongo)

    assert mongo.commit(txn).status is CommitStatus.COMMITTED
    assert txn.state is TxnState.COMMITTED


def test_commit_unknown_result_is_ambiguous(mongo):
    _, txn = _begin(mongo, _labelled(UNKNOWN_COMMIT_RESULT))

    outcome = mongo.commit(txn)

    assert outcome.status is CommitStatus.AMBIGUOUS
    assert txn.state is TxnState.UNKNOWN


@pytest.mark.parametrize("labels, transient", [((TRANSIENT_TRANSACTION_ERROR,), True), ((), False)])
def test_commit_failure(mongo, labels, transient):
    _, txn = _begin(mongo, _labelled(*labels))

    outcome = mongo.commit(txn)

    assert outcome.status is CommitStatus.FAILED
    assert outcome.transient is transient


def test_end_session_aborts_open_transaction(mongo):
    session, txn = _begin(mongo)

    mongo.end_session(session)

    assert session.client_session.aborted
    assert session.client_session.ended
    assert txn.state is TxnState.ABORTED


def test_end_session_after_commit_does_not_abort(mongo):
    session, txn = _begin(mongo)
    mongo.commit(txn)

    mongo.end_session(session)

    assert session.client_session.aborted is False
    assert session.client_session.ended


def test_decimal_codec():
    codec = DecimalCodec()

    assert codec.transform_python(Decimal("5.19")) == Decimal128("5.19")
    assert codec.transform_bson(Decimal128("37.17")) == Decimal("37.17")


def test_foreign_session_rejected(mongo):
    with pytest.raises(TypeError):
        mongo.begin_transaction(Session(), TransactionOptions())
