from __future__ import annotations

from typing import Any, Iterable

TRANSIENT_TRANSACTION_ERROR = "TransientTransactionError"
UNKNOWN_COMMIT_RESULT = "UnknownTransactionCommitResult"


class StoreError(Exception):
    """Ошибка хранилища с метками в стиле драйвера MongoDB."""

    def __init__(self, message: str, labels: Iterable[str] = (), code: Any = None):
        super().__init__(message)
        self.labels = frozenset(labels)
        self.code = code

    def has_error_label(self, label: str) -> bool:
        return label in self.labels


class PlacementError(Exception):
    retryable = False


class BusinessRuleError(PlacementError):
    pass


class InsufficientInventory(BusinessRuleError):
    def __init__(self, sku: Any):
        super().__init__(f"Insufficient quantity or SKU not found: {sku}")
        self.sku = sku


class UnknownCustomer(BusinessRuleError):
    def __init__(self, customer_id: Any):
        super().__init__(f"Customer {customer_id} not found")
        self.customer_id = customer_id


class TransientStoreError(PlacementError):
    retryable = True


class AmbiguousCommitOutcome(PlacementError):
    # retry only after checking whether the order was actually written
    def __init__(self, request_id: str, reason: str = ""):
        message = f"Commit outcome unknown for request {request_id}"
        super().__init__(f"{message}: {reason}" if reason else message)
        self.request_id = request_id
        self.reason = reason


class FatalStoreError(PlacementError):
    pass


def classify_store_error(exc: Exception) -> PlacementError:
    if isinstance(exc, PlacementError):
        return exc
    if isinstance(exc, StoreError) and exc.has_error_label(TRANSIENT_TRANSACTION_ERROR):
        return TransientStoreError(str(exc))
    return FatalStoreError(str(exc) or type(exc).__name__)
