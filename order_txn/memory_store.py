from __future__ import annotations

import copy
import logging
import operator
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from bson import ObjectId

from order_txn.errors import TRANSIENT_TRANSACTION_ERROR, StoreError
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

Key = Tuple[str, Any]

_MISSING = object()

_QUERY_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "$eq": operator.eq,
    "$ne": operator.ne,
    "$gt": operator.gt,
    "$gte": operator.ge,
    "$lt": operator.lt,
    "$lte": operator.le,
    "$in": lambda value, options: value in options,
}

_UPDATE_OPERATORS = ("$set", "$inc", "$push")


def _is_operator_doc(cond: Any) -> bool:
    return isinstance(cond, dict) and bool(cond) and all(str(k).startswith("$") for k in cond)


def matches(doc: Dict[str, Any], predicate: Dict[str, Any]) -> bool:
    for field, cond in predicate.items():
        value = doc.get(field, _MISSING)
        if not _is_operator_doc(cond):
            if value is _MISSING or value != cond:
                return False
            continue
        for op, arg in cond.items():
            fn = _QUERY_OPERATORS.get(op)
            if fn is None:
                raise ValueError(f"Unsupported query operator: {op}")
            if value is _MISSING:
                if op == "$ne":
                    continue
                return False
            try:
                if not fn(value, arg):
                    return False
            except TypeError:
                return False
    return True


def check_mutation(mutation: Dict[str, Any]) -> None:
    if not mutation:
        raise ValueError("Empty update document")
    for op in mutation:
        if op not in _UPDATE_OPERATORS:
            raise ValueError(f"Unsupported update operator: {op}")


def apply_mutation(doc: Dict[str, Any], mutation: Dict[str, Any]) -> Dict[str, Any]:
    updated = copy.deepcopy(doc)
    for op, fields in mutation.items():
        if op == "$set":
            updated.update(copy.deepcopy(fields))
        elif op == "$inc":
            for field, amount in fields.items():
                updated[field] = updated.get(field, 0) + amount
        elif op == "$push":
            for field, value in fields.items():
                updated.setdefault(field, []).append(copy.deepcopy(value))
    return updated


def _write_conflict(transient: bool = True) -> StoreError:
    labels = (TRANSIENT_TRANSACTION_ERROR,) if transient else ()
    return StoreError("WriteConflict: document was modified by another transaction", labels, code="WriteConflict")


def _own(txn: Transaction) -> "MemoryTransaction":
    if not isinstance(txn, MemoryTransaction):
        raise TypeError(f"transaction {txn!r} does not belong to a MemoryStore")
    return txn


@dataclass(slots=True)
class _CommitFault:
    status: CommitStatus
    applied: bool
    reason: str
    transient: bool


class MemoryTransaction(Transaction):
    def __init__(
        self,
        session: Session,
        options: TransactionOptions,
        view: Dict[str, Dict[Any, Dict[str, Any]]],
        snapshot_seq: int,
        started_at: float,
    ):
        super().__init__(session, options)
        self.view = view
        self.snapshot_seq = snapshot_seq
        self.started_at = started_at
        self.written: Set[Key] = set()


class MemoryStore(TransactionalStore):
    """
    Хранилище в памяти с транзакциями.

    - snapshot: транзакция читает копию данных на момент begin + свои записи
    - конфликт записи: документ уже записан другой активной транзакцией или
      изменён после snapshot -> транзакция отменяется, ошибка с меткой
      TransientTransactionError
    - коммит применяет все записи транзакции под одной блокировкой
    """

    def __init__(self, transaction_lifetime: float = 60.0, clock: Callable[[], float] = time.monotonic):
        super().__init__()
        self.transaction_lifetime = transaction_lifetime
        self._clock = clock
        self._lock = threading.RLock()
        self._data: Dict[str, Dict[Any, Dict[str, Any]]] = {}
        self._versions: Dict[Key, int] = {}
        self._owners: Dict[Key, int] = {}
        self._seq = 0
        self._faults: Dict[str, List[Exception]] = defaultdict(list)
        self._commit_faults: List[_CommitFault] = []

    # Fault injection (tests / demo)
    def fail_next(self, operation: str, error: Exception) -> None:
        self._faults[operation].append(error)

    def fail_next_commit(
        self,
        status: CommitStatus = CommitStatus.AMBIGUOUS,
        applied: bool = False,
        reason: str = "injected commit failure",
        transient: bool = False,
    ) -> None:
        self._commit_faults.append(_CommitFault(status=status, applied=applied, reason=reason, transient=transient))

    def _take_fault(self, operation: str) -> None:
        with self._lock:
            pending = self._faults.get(operation)
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error

    # Transactions
    def begin_transaction(self, session: Session, options: TransactionOptions) -> MemoryTransaction:
        if session.ended:
            raise StoreError("Cannot start a transaction on an ended session")
        if session.transaction is not None and session.transaction.active:
            raise StoreError("Transaction already in progress")
        with self._lock:
            view = copy.deepcopy(self._data)
            txn = MemoryTransaction(session, options, view, self._seq, self._clock())
        session.transaction = txn
        logger.debug("txn %s started at seq=%s", txn.id, txn.snapshot_seq)
        return txn

    def _discard(self, txn: MemoryTransaction, state: TxnState = TxnState.ABORTED) -> None:
        with self._lock:
            for key in txn.written:
                if self._owners.get(key) == txn.id:
                    del self._owners[key]
        txn.state = state
        txn.view = {}
        txn.written = set()

    def _expired(self, txn: MemoryTransaction) -> bool:
        return self._clock() - txn.started_at > self.transaction_lifetime

    def _ensure_usable(self, txn: MemoryTransaction) -> None:
        if txn.state is TxnState.ABORTED:
            raise StoreError(
                "NoSuchTransaction: transaction has been aborted",
                (TRANSIENT_TRANSACTION_ERROR,),
                code="NoSuchTransaction",
            )
        if not txn.active:
            raise StoreError(f"Transaction {txn.id} is {txn.state.value}")
        if self._expired(txn):
            self._discard(txn)
            raise StoreError(
                "NoSuchTransaction: transaction exceeded its lifetime limit",
                (TRANSIENT_TRANSACTION_ERROR,),
                code="NoSuchTransaction",
            )

    def _claim(self, txn: MemoryTransaction, key: Key) -> None:
        with self._lock:
            owner = self._owners.get(key)
            if (owner is not None and owner != txn.id) or self._versions.get(key, 0) > txn.snapshot_seq:
                self._discard(txn)
                logger.debug("txn %s write conflict on %s", txn.id, key)
                raise _write_conflict()
            self._owners[key] = txn.id
            txn.written.add(key)

    def commit(self, txn: Transaction) -> CommitOutcome:
        txn = _own(txn)
        with self._lock:
            if txn.state is TxnState.COMMITTED:
                return CommitOutcome(CommitStatus.COMMITTED)
            if not txn.active:
                return CommitOutcome(CommitStatus.FAILED, f"transaction is {txn.state.value}", transient=True)
            if self._expired(txn):
                self._discard(txn)
                return CommitOutcome(CommitStatus.FAILED, "transaction exceeded its lifetime limit", transient=True)

            fault = self._commit_faults.pop(0) if self._commit_faults else None
            if fault is not None and not fault.applied:
                self._discard(txn, TxnState.UNKNOWN if fault.status is CommitStatus.AMBIGUOUS else TxnState.ABORTED)
                return CommitOutcome(fault.status, fault.reason, fault.transient)

            for key in txn.written:
                collection, doc_id = key
                self._seq += 1
                self._data.setdefault(collection, {})[doc_id] = copy.deepcopy(txn.view[collection][doc_id])
                self._versions[key] = self._seq
                del self._owners[key]
            logger.debug("txn %s committed %d document(s), seq=%s", txn.id, len(txn.written), self._seq)
            txn.state = TxnState.COMMITTED
            txn.view = {}

        if fault is not None:
            return CommitOutcome(fault.status, fault.reason, fault.transient)
        return CommitOutcome(CommitStatus.COMMITTED)

    def abort(self, txn: Transaction) -> None:
        txn = _own(txn)
        if txn.active:
            self._discard(txn)
            logger.debug("txn %s aborted", txn.id)

    # Reads / writes
    def insert_one(self, collection: str, document: Dict[str, Any], txn: Optional[Transaction] = None) -> Any:
        self._take_fault("insert_one")
        doc = copy.deepcopy(document)
        doc.setdefault("_id", ObjectId())
        key = (collection, doc["_id"])

        if txn is None:
            with self._lock:
                docs = self._data.setdefault(collection, {})
                if doc["_id"] in docs:
                    raise StoreError(f"DuplicateKey: _id {doc['_id']!r} in {collection}", code="DuplicateKey")
                if key in self._owners:
                    raise _write_conflict(transient=False)
                self._seq += 1
                docs[doc["_id"]] = doc
                self._versions[key] = self._seq
            return doc["_id"]

        txn = _own(txn)
        self._ensure_usable(txn)
        docs = txn.view.setdefault(collection, {})
        if doc["_id"] in docs:
            self._discard(txn)
            raise StoreError(f"DuplicateKey: _id {doc['_id']!r} in {collection}", code="DuplicateKey")
        self._claim(txn, key)
        docs[doc["_id"]] = doc
        return doc["_id"]

    def insert_many(self, collection: str, documents: List[Dict[str, Any]]) -> List[Any]:
        return [self.insert_one(collection, doc) for doc in documents]

    def find_one(
        self, collection: str, predicate: Dict[str, Any], txn: Optional[Transaction] = None
    ) -> Optional[Dict[str, Any]]:
        self._take_fault("find_one")
        if txn is None:
            with self._lock:
                return self._first(self._data.get(collection, {}), predicate)
        txn = _own(txn)
        self._ensure_usable(txn)
        return self._first(txn.view.get(collection, {}), predicate)

    @staticmethod
    def _first(docs: Dict[Any, Dict[str, Any]], predicate: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for doc in docs.values():
            if matches(doc, predicate):
                return copy.deepcopy(doc)
        return None

    def find(self, collection: str, predicate: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(d) for d in self._data.get(collection, {}).values() if matches(d, predicate or {})]

    def update_one(
        self,
        collection: str,
        predicate: Dict[str, Any],
        mutation: Dict[str, Any],
        txn: Optional[Transaction] = None,
    ) -> UpdateOutcome:
        self._take_fault("update_one")
        check_mutation(mutation)

        if txn is None:
            with self._lock:
                docs = self._data.get(collection, {})
                target = next((d for d in docs.values() if matches(d, predicate)), None)
                if target is None:
                    return UpdateOutcome(matched=0, modified=0)
                key = (collection, target["_id"])
                if key in self._owners:
                    raise _write_conflict(transient=False)
                updated = apply_mutation(target, mutation)
                self._seq += 1
                docs[target["_id"]] = updated
                self._versions[key] = self._seq
            return UpdateOutcome(matched=1, modified=int(updated != target))

        txn = _own(txn)
        self._ensure_usable(txn)
        docs = txn.view.get(collection, {})
        target = next((d for d in docs.values() if matches(d, predicate)), None)
        if target is None:
            return UpdateOutcome(matched=0, modified=0)
        self._claim(txn, (collection, target["_id"]))
        updated = apply_mutation(target, mutation)
        docs[target["_id"]] = updated
        return UpdateOutcome(matched=1, modified=int(updated != target))

    def drop(self, collection: str) -> None:
        with self._lock:
            dropped = self._data.pop(collection, {})
            for doc_id in dropped:
                self._seq += 1
                self._versions[(collection, doc_id)] = self._seq
