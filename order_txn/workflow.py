from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Optional, Tuple

from order_txn.errors import (
    AmbiguousCommitOutcome,
    FatalStoreError,
    InsufficientInventory,
    PlacementError,
    StoreError,
    TransientStoreError,
    UnknownCustomer,
    classify_store_error,
)
from order_txn.models import CUSTOMERS, INVENTORY, ORDERS, CartItem, Order, Payment, order_document
from order_txn.store import CommitStatus, Transaction, TransactionalStore, TransactionOptions


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_backoff: float = 0.05
    multiplier: float = 2.0
    max_backoff: float = 1.0
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_backoff < 0 or self.max_backoff < 0 or self.multiplier < 1:
            raise ValueError("backoff must be non-negative and multiplier >= 1")

    def backoff(self, attempt: int) -> float:
        return min(self.initial_backoff * self.multiplier ** (attempt - 1), self.max_backoff)


@dataclass(frozen=True, slots=True)
class PlacementResult:
    request_id: str
    order_id: Any = None
    error: Optional[PlacementError] = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.order_id


class OrderPlacementWorkflow:
    """
    Оформление заказа одной транзакцией:
    вставить заказ -> списать склад по каждой позиции -> привязать заказ к
    клиенту -> commit. Любая ошибка до коммита откатывает транзакцию;
    сессия закрывается на любом пути выхода.
    """

    def __init__(
        self,
        store: TransactionalStore,
        options: Optional[TransactionOptions] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        self.store = store
        self.options = options or TransactionOptions()
        self.retry = retry or RetryPolicy()

    def _log(self, request_id: str, message: str) -> None:
        self.store.log(f"[request={request_id}] {message}")

    @staticmethod
    def _validate(cart: Iterable[CartItem], payment: Payment) -> Tuple[CartItem, ...]:
        items = tuple(cart)
        if not items:
            raise ValueError("cart must not be empty")
        for item in items:
            if item.sku is None or item.sku == "":
                raise ValueError("cart item sku is required")
            if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity <= 0:
                raise ValueError(f"qty must be > 0 (sku={item.sku})")
        if payment.customer_id is None:
            raise ValueError("payment customer is required")
        return items

    def place_order(
        self, cart: Iterable[CartItem], payment: Payment, request_id: Optional[str] = None
    ) -> PlacementResult:
        items = self._validate(cart, payment)
        request_id = request_id or uuid.uuid4().hex
        self._log(request_id, f"START customer={payment.customer_id} items={len(items)} total={payment.total}")

        try:
            with self.store.session_scope() as session:
                try:
                    txn = self.store.begin_transaction(session, self.options)
                except StoreError as exc:
                    error = classify_store_error(exc)
                    self._log(request_id, f"FAILED to start transaction: {error}")
                    return PlacementResult(request_id, error=error)

                try:
                    order_id = self._write(txn, items, payment, request_id)
                except (PlacementError, StoreError) as exc:
                    error = classify_store_error(exc)
                    self._log(request_id, f"FAILED: {error}; rolling back")
                    self.store.abort(txn)
                    self._log(request_id, "ABORTED")
                    return PlacementResult(request_id, error=error)

                outcome = self.store.commit(txn)
        except StoreError as exc:
            error = classify_store_error(exc)
            self._log(request_id, f"FAILED, session error: {error}")
            return PlacementResult(request_id, error=error)

        if outcome.status is CommitStatus.COMMITTED:
            self._log(request_id, f"COMMITTED order={order_id}")
            return PlacementResult(request_id, order_id=order_id)
        if outcome.status is CommitStatus.AMBIGUOUS:
            self._log(request_id, f"COMMIT UNKNOWN: {outcome.reason}")
            return PlacementResult(request_id, error=AmbiguousCommitOutcome(request_id, outcome.reason))

        self._log(request_id, f"COMMIT FAILED (transient={outcome.transient}): {outcome.reason}")
        error = TransientStoreError(outcome.reason) if outcome.transient else FatalStoreError(outcome.reason)
        return PlacementResult(request_id, error=error)

    def _write(self, txn: Transaction, items: Tuple[CartItem, ...], payment: Payment, request_id: str) -> Any:
        order_id = self.store.insert_one(ORDERS, order_document(items, payment, request_id), txn)
        self._log(request_id, f"STEP InsertOrder OK id={order_id}")

        # sequential: each check must see the previous decrements of this transaction
        for item in items:
            record = self.store.find_one(INVENTORY, {"sku": item.sku, "qty": {"$gte": item.quantity}}, txn)
            if record is None:
                raise InsufficientInventory(item.sku)
            self.store.update_one(INVENTORY, {"_id": record["_id"]}, {"$inc": {"qty": -item.quantity}}, txn)
            self._log(request_id, f"STEP Inventory OK sku={item.sku} qty={record['qty']}->{record['qty'] - item.quantity}")

        linked = self.store.update_one(CUSTOMERS, {"_id": payment.customer_id}, {"$push": {"orders": order_id}}, txn)
        if linked.matched == 0:
            raise UnknownCustomer(payment.customer_id)
        self._log(request_id, f"STEP LinkCustomer OK customer={payment.customer_id}")
        return order_id

    def find_order(self, request_id: str) -> Optional[Order]:
        doc = self.store.find_one(ORDERS, {"request_id": request_id})
        return Order.from_document(doc) if doc is not None else None

    def _resolve_ambiguous(self, request_id: str) -> Optional[Order]:
        try:
            order = self.find_order(request_id)
        except StoreError as exc:
            self._log(request_id, f"duplicate check failed: {exc}")
            raise
        if order is not None:
            self._log(request_id, f"order already committed id={order.id}, not retrying")
        else:
            self._log(request_id, "previous commit was not applied")
        return order

    def place_order_with_retry(
        self, cart: Iterable[CartItem], payment: Payment, request_id: Optional[str] = None
    ) -> PlacementResult:
        """
        place_order с ограниченным числом повторов.

        Transient -> повтор целиком с тем же request_id после паузы.
        Ambiguous -> перед повтором ищем заказ по request_id: если он уже
        записан, возвращаем его вместо второй вставки.
        Бизнес-ошибки и fatal возвращаются сразу.
        """
        items = self._validate(cart, payment)
        request_id = request_id or uuid.uuid4().hex
        result: Optional[PlacementResult] = None

        for attempt in range(1, self.retry.max_attempts + 1):
            if result is not None and isinstance(result.error, AmbiguousCommitOutcome):
                try:
                    existing = self._resolve_ambiguous(request_id)
                except StoreError:
                    return result
                if existing is not None:
                    return PlacementResult(request_id, order_id=existing.id, attempts=attempt - 1)

            result = replace(self.place_order(items, payment, request_id), attempts=attempt)
            if result.ok:
                return result
            if not (result.error.retryable or isinstance(result.error, AmbiguousCommitOutcome)):
                return result
            if attempt < self.retry.max_attempts:
                delay = self.retry.backoff(attempt)
                self._log(request_id, f"RETRY attempt={attempt + 1} in {delay:.3f}s after: {result.error}")
                self.retry.sleep(delay)

        if isinstance(result.error, AmbiguousCommitOutcome):
            try:
                existing = self._resolve_ambiguous(request_id)
            except StoreError:
                return result
            if existing is not None:
                return replace(result, order_id=existing.id, error=None)
        self._log(request_id, f"GIVING UP after {result.attempts} attempt(s): {result.error}")
        return result
