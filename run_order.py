from __future__ import annotations

import argparse
import logging
from decimal import Decimal
from typing import List, Optional

from order_txn.config import Settings
from order_txn.memory_store import MemoryStore
from order_txn.models import CartItem, Payment
from order_txn.sample import SAMPLE_CUSTOMER, clean_up, query_data, sample_cart, sample_payment, setup
from order_txn.store import CommitStatus, TransactionalStore, TransactionOptions
from order_txn.workflow import OrderPlacementWorkflow, RetryPolicy


def parse_item(raw: str) -> CartItem:
    """SKU:QTY:PRICE, e.g. 5432:1:5.19"""
    try:
        sku, qty, price = raw.split(":")
        return CartItem(sku=int(sku) if sku.isdigit() else sku, quantity=int(qty), unit_price=Decimal(price))
    except (ValueError, ArithmeticError) as exc:
        raise argparse.ArgumentTypeError(f"bad item {raw!r}, expected SKU:QTY:PRICE") from exc


def build_store(args: argparse.Namespace, settings: Settings) -> TransactionalStore:
    if args.backend == "memory":
        store = MemoryStore()
        if args.fail_commit == "ambiguous":
            # commit is applied but the acknowledgement is "lost"
            store.fail_next_commit(CommitStatus.AMBIGUOUS, applied=True, reason="acknowledgement lost")
        elif args.fail_commit == "transient":
            store.fail_next_commit(CommitStatus.FAILED, reason="write conflict", transient=True)
        return store

    from order_txn.mongo_store import MongoStore

    return MongoStore.from_uri(args.uri or settings.require_uri(), settings.database)


def main(argv: Optional[List[str]] = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    p = argparse.ArgumentParser(description="Place one order in a transaction and print the collections.")
    p.add_argument("--backend", choices=("memory", "mongo"), default="memory")
    p.add_argument("--uri", type=str, default=None, help="MongoDB URI (defaults to MONGODB_URI)")
    p.add_argument("--customer", type=int, default=SAMPLE_CUSTOMER)
    p.add_argument("--item", type=parse_item, action="append", default=None, help="SKU:QTY:PRICE, repeatable")
    p.add_argument("--total", type=Decimal, default=None)
    p.add_argument("--fail-commit", choices=("ambiguous", "transient"), default=None, help="memory backend only")
    p.add_argument("--keep-data", action="store_true")
    args = p.parse_args(argv)

    settings = Settings.from_env()
    store = build_store(args, settings)

    cart = tuple(args.item) if args.item else sample_cart()
    if args.total is not None:
        total = args.total
    elif args.item:
        total = sum((i.unit_price * i.quantity for i in cart), Decimal("0.00"))
    else:
        total = sample_payment().total
    payment = Payment(customer_id=args.customer, total=total)

    workflow = OrderPlacementWorkflow(
        store,
        options=TransactionOptions(max_commit_time_ms=settings.max_commit_time_ms),
        retry=RetryPolicy(max_attempts=settings.max_attempts, initial_backoff=settings.initial_backoff),
    )

    clean_up(store)
    setup(store)
    if args.backend == "mongo":
        store.ensure_indexes()
    try:
        result = workflow.place_order_with_retry(cart, payment)

        print("\n=== RESULT ===")
        print("success:", result.ok)
        print("order:", result.order_id)
        print("error:", repr(result.error) if result.error else None)
        print("attempts:", result.attempts)
        for name, docs in query_data(store).items():
            print(f"{name}:", docs)
    finally:
        if not args.keep_data:
            clean_up(store)
        if args.backend == "mongo":
            store.close()


if __name__ == "__main__":
    main()
