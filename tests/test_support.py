"""Tests for settings, sample data helpers and the demo driver."""
import argparse
from decimal import Decimal

import pytest

import run_order
from order_txn.config import Settings
from order_txn.memory_store import MemoryStore
from order_txn.models import CUSTOMERS, INVENTORY, ORDERS
from order_txn.sample import clean_up, query_data, sample_cart, sample_payment, setup
from order_txn.workflow import OrderPlacementWorkflow

ENV_VARS = (
    "MONGODB_URI",
    "ORDER_TXN_DATABASE",
    "ORDER_TXN_MAX_ATTEMPTS",
    "ORDER_TXN_INITIAL_BACKOFF",
    "ORDER_TXN_MAX_COMMIT_TIME_MS",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        # set first so values loaded from .env files are undone on teardown
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_settings_defaults(clean_env):
    settings = Settings.from_env()

    assert settings.mongodb_uri is None
    assert settings.database == "testdb"
    assert settings.max_attempts == 3
    assert settings.max_commit_time_ms is None
    with pytest.raises(RuntimeError):
        settings.require_uri()


def test_settings_from_env(clean_env, monkeypatch):
    monkeypatch.setenv("MONGODB_URI", "mongodb://db:27017/?replicaSet=rs0")
    monkeypatch.setenv("ORDER_TXN_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("ORDER_TXN_INITIAL_BACKOFF", "0.2")
    monkeypatch.setenv("ORDER_TXN_MAX_COMMIT_TIME_MS", "1000")

    settings = Settings.from_env()

    assert settings.require_uri() == "mongodb://db:27017/?replicaSet=rs0"
    assert settings.max_attempts == 5
    assert settings.initial_backoff == 0.2
    assert settings.max_commit_time_ms == 1000


def test_settings_from_dotenv_file(clean_env):
    env_file = clean_env / "custom.env"
    env_file.write_text("ORDER_TXN_DATABASE=shop\n")

    settings = Settings.from_env(env_file)

    assert settings.database == "shop"


def test_sample_order_end_to_end():
    store = MemoryStore()
    setup(store)

    result = OrderPlacementWorkflow(store).place_order(sample_cart(), sample_payment())

    assert result.ok
    data = query_data(store)
    assert [d["qty"] for d in data[INVENTORY]] == [84, 39]
    assert data[CUSTOMERS][0]["orders"] == [result.order_id]
    assert data[ORDERS][0]["total"] == Decimal("37.17")

    clean_up(store)
    assert query_data(store) == {CUSTOMERS: [], INVENTORY: [], ORDERS: []}


def test_parse_item():
    item = run_order.parse_item("5432:1:5.19")

    assert item.sku == 5432
    assert item.quantity == 1
    assert item.unit_price == Decimal("5.19")

    with pytest.raises(argparse.ArgumentTypeError):
        run_order.parse_item("5432:1")


def test_cli_memory_backend_with_ambiguous_commit(clean_env, capsys):
    run_order.main(["--fail-commit", "ambiguous", "--keep-data"])

    out = capsys.readouterr().out
    assert "success: True" in out
    assert "attempts: 1" in out


def test_cli_insufficient_inventory(clean_env, capsys):
    run_order.main(["--item", "9999:1:1.00"])

    out = capsys.readouterr().out
    assert "success: False" in out
    assert "InsufficientInventory" in out
