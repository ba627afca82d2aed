"""Pytest fixtures for transactional order placement."""

from decimal import Decimal

import pytest

from order_txn.memory_store import MemoryStore
from order_txn.models import CUSTOMERS, INVENTORY, CartItem, Payment
from order_txn.workflow import OrderPlacementWorkflow, RetryPolicy


@pytest.fixture
def store() -> MemoryStore:
    store = MemoryStore()

    store.insert_one(CUSTOMERS, {"_id": 98765, "orders": []})
    store.insert_one(CUSTOMERS, {"_id": 11111, "orders": []})

    store.insert_many(
        INVENTORY,
        [
            {"name": "sunblock", "sku": 5432, "qty": 85},
            {"name": "beach towel", "sku": 7865, "qty": 41},
            {"name": "flip flops", "sku": 3001, "qty": 0},  # Out of stock
            {"name": "beach umbrella", "sku": 4242, "qty": 1},  # Last unit
        ],
    )

    return store


@pytest.fixture
def sleeps():
    # retry delays recorded instead of slept
    return []


@pytest.fixture
def workflow(store, sleeps) -> OrderPlacementWorkflow:
    return OrderPlacementWorkflow(store, retry=RetryPolicy(max_attempts=3, sleep=sleeps.append))


@pytest.fixture
def payment() -> Payment:
    return Payment(customer_id=98765, total=Decimal("37.17"))


@pytest.fixture
def cart():
    return [
        CartItem(sku=5432, quantity=1, unit_price=Decimal("5.19"), name="sunblock"),
        CartItem(sku=7865, quantity=2, unit_price=Decimal("15.99"), name="beach towel"),
    ]
