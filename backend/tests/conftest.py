"""Pytest fixtures for the ledger tests (in-memory store, no MongoDB needed)."""

from decimal import Decimal

import pytest

from ledger.memory_store import InMemoryLedgerStore


@pytest.fixture
def store() -> InMemoryLedgerStore:
    store = InMemoryLedgerStore()

    store.add_tank("tank-regular", "Regular", current_level=Decimal("20"), capacity=Decimal("1000"),
                   tank_number=1, station_ref="station-1", price_per_gallon=Decimal("3.59"))
    store.add_tank("tank-premium", "Premium", current_level=Decimal("500"), capacity=Decimal("1000"),
                   tank_number=2, station_ref="station-1", price_per_gallon=Decimal("3.99"))
    store.add_tank("tank-diesel", "Diesel", current_level=Decimal("900"), capacity=Decimal("1000"),
                   tank_number=3, station_ref="station-1", price_per_gallon=Decimal("3.79"))

    store.add_account("cust-100", points_balance=100)
    store.add_account("cust-empty", points_balance=0)

    return store


def tank_level(store: InMemoryLedgerStore, tank_id: str) -> Decimal:
    for doc in store.documents("fuel_tanks"):
        if doc["tank_id"] == tank_id:
            return doc["current_level"]
    raise KeyError(tank_id)


def points_balance(store: InMemoryLedgerStore, customer_ref: str) -> int:
    for doc in store.documents("loyalty_accounts"):
        if doc["customer_ref"] == customer_ref:
            return doc["points_balance"]
    raise KeyError(customer_ref)
