"""Sample data for the demo: one customer, two inventory items, one cart."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Tuple

from order_txn.errors import StoreError
from order_txn.models import COLLECTIONS, CUSTOMERS, INVENTORY, CartItem, CustomerRecord, InventoryRecord, Payment
from order_txn.store import TransactionalStore

logger = logging.getLogger(__name__)

SAMPLE_CUSTOMER = 98765


def clean_up(store: TransactionalStore) -> None:
    for name in COLLECTIONS:
        try:
            store.drop(name)
        except StoreError as exc:
            # коллекции может не быть, это не ошибка для демо
            logger.debug("drop %s ignored: %s", name, exc)


def setup(store: TransactionalStore) -> None:
    store.insert_one(CUSTOMERS, CustomerRecord(id=SAMPLE_CUSTOMER).to_document())
    store.insert_many(
        INVENTORY,
        [
            InventoryRecord(sku=5432, quantity_on_hand=85, name="sunblock").to_document(),
            InventoryRecord(sku=7865, quantity_on_hand=41, name="beach towel").to_document(),
        ],
    )


def sample_cart() -> Tuple[CartItem, ...]:
    return (
        CartItem(sku=5432, quantity=1, unit_price=Decimal("5.19"), name="sunblock"),
        CartItem(sku=7865, quantity=2, unit_price=Decimal("15.99"), name="beach towel"),
    )


def sample_payment() -> Payment:
    # total computed from the cart contents
    return Payment(customer_id=SAMPLE_CUSTOMER, total=Decimal("37.17"))


def query_data(store: TransactionalStore) -> Dict[str, List[Dict[str, Any]]]:
    return {name: store.find(name) for name in COLLECTIONS}
