from __future__ import annotations

import itertools
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


@dataclass(frozen=True, slots=True)
class TransactionOptions:
    read_concern: str = "snapshot"
    write_concern: str = "majority"
    read_preference: str = "primary"
    max_commit_time_ms: Optional[int] = None


class TxnState(str, Enum):
    ACTIVE = "active"
    COMMITTED = "committed"
    ABORTED = "aborted"
    UNKNOWN = "unknown"


class CommitStatus(str, Enum):
    COMMITTED = "committed"
    AMBIGUOUS = "ambiguous"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class CommitOutcome:
    status: CommitStatus
    reason: str = ""
    transient: bool = False

    @property
    def committed(self) -> bool:
        return self.status is CommitStatus.COMMITTED


@dataclass(frozen=True, slots=True)
class UpdateOutcome:
    matched: int
    modified: int


class Session:
    def __init__(self) -> None:
        self.id = next(_ids)
        self.transaction: Optional[Transaction] = None
        self.ended = False

    def __repr__(self) -> str:
        return f"<Session {self.id}{' ended' if self.ended else ''}>"


class Transaction:
    def __init__(self, session: Session, options: TransactionOptions):
        self.id = next(_ids)
        self.session = session
        self.options = options
        self.state = TxnState.ACTIVE

    @property
    def active(self) -> bool:
        return self.state is TxnState.ACTIVE


class TransactionalStore(ABC):
    """
    Интерфейс хранилища документов с транзакциями.

    Всё, что нужно сценарию оформления заказа: сессии, одна транзакция на
    сессию, чтение/запись по коллекциям внутри транзакции и коммит/откат.
    Гарантии (snapshot, majority, атомарный коммит) обеспечивает реализация.
    """

    def __init__(self) -> None:
        self.logs: List[str] = []

    def log(self, message: str) -> None:
        self.logs.append(message)
        logger.info(message)

    # Sessions
    def start_session(self) -> Session:
        return Session()

    def end_session(self, session: Session) -> None:
        txn = session.transaction
        if txn is not None and txn.active:
            self.abort(txn)
        session.ended = True

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        session = self.start_session()
        try:
            yield session
        finally:
            self.end_session(session)

    # Transactions
    @abstractmethod
    def begin_transaction(self, session: Session, options: TransactionOptions) -> Transaction: ...

    @abstractmethod
    def commit(self, txn: Transaction) -> CommitOutcome: ...

    @abstractmethod
    def abort(self, txn: Transaction) -> None: ...

    # Reads / writes
    @abstractmethod
    def insert_one(self, collection: str, document: Dict[str, Any], txn: Optional[Transaction] = None) -> Any: ...

    @abstractmethod
    def find_one(
        self, collection: str, predicate: Dict[str, Any], txn: Optional[Transaction] = None
    ) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def update_one(
        self,
        collection: str,
        predicate: Dict[str, Any],
        mutation: Dict[str, Any],
        txn: Optional[Transaction] = None,
    ) -> UpdateOutcome: ...

    # Non-transactional helpers (setup / cleanup / dumps)
    @abstractmethod
    def insert_many(self, collection: str, documents: List[Dict[str, Any]]) -> List[Any]: ...

    @abstractmethod
    def find(self, collection: str, predicate: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def drop(self, collection: str) -> None: ...
