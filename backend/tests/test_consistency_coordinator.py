"""
Consistency coordinator tests
Testing: atomic commit, inventory and loyalty invariants, concurrency, idempotency
"""
import asyncio
import logging
from decimal import Decimal

import pytest

from conftest import points_balance, tank_level
from ledger.consistency_coordinator import ConsistencyCoordinator, commit
from ledger.errors import (
    ConcurrencyConflictError,
    InsufficientBalanceError,
    InsufficientInventoryError,
    NotFoundError,
    ValidationError,
)
from ledger.ledger_store import VersionConflictError
from ledger.line_items import build_item
from ledger.memory_store import InMemoryLedgerSession
from ledger.models import LoyaltyEntryType, PaymentStatus, TankStatus
from ledger.transaction_composer import compose

TAX_RATE = Decimal("0.06")


def fuel_sale(quantity, fuel_type="Premium", price="3.99", tank_ref=None, **kwargs):
    item = build_item("fuel", quantity=quantity, unit_price=price, fuel_type=fuel_type, tank_ref=tank_ref)
    return compose("fuel", [item], TAX_RATE, station_ref="station-1", **kwargs)


class TestCommit:

    def test_fuel_commit_applies_all_effects(self, store):
        coordinator = ConsistencyCoordinator(store, retry_delay_ms=0)
        committed = asyncio.run(coordinator.commit(fuel_sale(10, customer_ref="cust-100", employee_ref="emp-1")))

        assert committed.transaction_id is not None
        assert committed.version == 1
        assert committed.date is not None
        assert committed.payment_status == PaymentStatus.PENDING
        assert tank_level(store, "tank-premium") == Decimal("490.00")
        assert points_balance(store, "cust-100") == 499

        stored = store.documents("transactions")
        assert [doc["transaction_id"] for doc in stored] == [committed.transaction_id]

        entries = asyncio.run(coordinator.list_loyalty_entries("cust-100"))
        assert len(entries) == 1
        assert entries[0].entry_type == LoyaltyEntryType.EARN
        assert (entries[0].points, entries[0].balance) == (399, 499)
        assert entries[0].related_transaction_ref == committed.transaction_id
        assert entries[0].staff_ref == "emp-1"

    def test_caller_status_is_persisted(self, store):
        tx = fuel_sale(2, payment_status="paid")
        committed = asyncio.run(commit(tx, store, retry_delay_ms=0))
        assert committed.payment_status == PaymentStatus.PAID

    def test_insufficient_fuel_leaves_no_trace(self, store):
        tx = fuel_sale(25, fuel_type="Regular", price="3.59", customer_ref="cust-100")

        with pytest.raises(InsufficientInventoryError) as exc:
            asyncio.run(commit(tx, store, retry_delay_ms=0))

        assert exc.value.requested == Decimal("25.00")
        assert exc.value.available == Decimal("20")
        assert exc.value.public_message == "Insufficient Regular fuel: requested 25.00, available 20"
        assert tank_level(store, "tank-regular") == Decimal("20")
        assert points_balance(store, "cust-100") == 100
        assert store.documents("transactions") == []
        assert store.documents("loyalty_entries") == []

    def test_items_on_the_same_tank_are_summed(self, store):
        items = [
            build_item("fuel", quantity=12, unit_price="3.59", fuel_type="Regular"),
            build_item("fuel", quantity=12, unit_price="3.59", fuel_type="Regular"),
        ]
        tx = compose("fuel", items, TAX_RATE, station_ref="station-1")

        with pytest.raises(InsufficientInventoryError) as exc:
            asyncio.run(commit(tx, store, retry_delay_ms=0))
        assert exc.value.requested == Decimal("24.00")
        assert tank_level(store, "tank-regular") == Decimal("20")

    def test_failed_redemption_rolls_back_fuel(self, store):
        tx = fuel_sale(10, customer_ref="cust-empty", loyalty_points_redeemed=10000)

        with pytest.raises(InsufficientBalanceError):
            asyncio.run(commit(tx, store, retry_delay_ms=0))

        assert tank_level(store, "tank-premium") == Decimal("500")
        assert points_balance(store, "cust-empty") == 0
        assert store.documents("transactions") == []

    def test_redemption_counts_points_earned_in_same_sale(self, store):
        tx = fuel_sale(10, customer_ref="cust-empty", loyalty_points_redeemed=300)
        coordinator = ConsistencyCoordinator(store, retry_delay_ms=0)
        asyncio.run(coordinator.commit(tx))

        assert points_balance(store, "cust-empty") == 99
        entries = asyncio.run(coordinator.list_loyalty_entries("cust-empty"))
        assert [(e.entry_type, e.points, e.balance) for e in entries] == [
            (LoyaltyEntryType.EARN, 399, 399),
            (LoyaltyEntryType.REDEEM, -300, 99),
        ]

    def test_unknown_customer_gets_an_account(self, store):
        coordinator = ConsistencyCoordinator(store, retry_delay_ms=0)
        asyncio.run(coordinator.commit(fuel_sale(1, customer_ref="cust-new")))

        account = asyncio.run(coordinator.get_account("cust-new"))
        assert account.points_balance == 39
        assert account.version == 1

    def test_product_sale_touches_no_tank(self, store):
        item = build_item("product", quantity=2, unit_price="3.49", name="Chips")
        tx = compose("product", [item], TAX_RATE, customer_ref="cust-100")
        asyncio.run(commit(tx, store, retry_delay_ms=0))

        assert tank_level(store, "tank-premium") == Decimal("500")
        assert points_balance(store, "cust-100") == 100 + 37  # floor(7.40 * 5)


class TestCommitRejections:

    def test_redeem_without_customer(self, store):
        with pytest.raises(ValidationError):
            asyncio.run(commit(fuel_sale(1, loyalty_points_redeemed=5), store))

    def test_already_committed(self, store):
        committed = asyncio.run(commit(fuel_sale(1), store, retry_delay_ms=0))
        with pytest.raises(ValidationError):
            asyncio.run(commit(committed, store))

    def test_tampered_totals(self, store):
        tx = fuel_sale(10).model_copy(update={"total": Decimal("30.00")})
        with pytest.raises(ValidationError) as exc:
            asyncio.run(commit(tx, store))
        rules = {v["rule"] for v in exc.value.details["violations"]}
        assert "TOTAL_EQUALS_SUBTOTAL_PLUS_TAX" in rules
        assert tank_level(store, "tank-premium") == Decimal("500")

    def test_inflated_points_are_not_credited(self, store):
        tx = fuel_sale(10, customer_ref="cust-100").model_copy(update={"loyalty_points_earned": 1_000_000})
        with pytest.raises(ValidationError) as exc:
            asyncio.run(commit(tx, store, retry_delay_ms=0))
        rules = {v["rule"] for v in exc.value.details["violations"]}
        assert rules == {"POINTS_MATCH_RATE"}
        assert points_balance(store, "cust-100") == 100
        assert tank_level(store, "tank-premium") == Decimal("500")
        assert store.documents("transactions") == []

    def test_zeroed_tax_is_rejected(self, store):
        item = build_item("product", quantity=2, unit_price="3.49", name="Chips")
        tx = compose("product", [item], TAX_RATE, customer_ref="cust-100")
        assert tx.tax == Decimal("0.42")

        untaxed = tx.model_copy(update={"tax": Decimal("0.00"), "total": tx.subtotal})
        with pytest.raises(ValidationError) as exc:
            asyncio.run(commit(untaxed, store, retry_delay_ms=0))
        rules = {v["rule"] for v in exc.value.details["violations"]}
        assert rules == {"PRICED_AT_CURRENT_RATES", "POINTS_MATCH_RATE"}
        assert store.documents("transactions") == []

    def test_priced_at_other_tax_rate(self, store):
        tx = fuel_sale(10)
        coordinator = ConsistencyCoordinator(store, retry_delay_ms=0, tax_rate=Decimal("0.08"))
        with pytest.raises(ValidationError):
            asyncio.run(coordinator.commit(tx))

        item = build_item("fuel", quantity=10, unit_price="3.99", fuel_type="Premium")
        repriced = compose("fuel", [item], Decimal("0.08"), station_ref="station-1")
        committed = asyncio.run(coordinator.commit(repriced))
        assert committed.tax == Decimal("2.96")  # 39.90 - round2(39.90 / 1.08)

    def test_custom_loyalty_rates(self, store):
        item = build_item("fuel", quantity=10, unit_price="3.99", fuel_type="Premium")
        tx = compose("fuel", [item], TAX_RATE, {"fuel": 12}, station_ref="station-1", customer_ref="cust-100")

        with pytest.raises(ValidationError):
            asyncio.run(commit(tx, store, retry_delay_ms=0))

        committed = asyncio.run(commit(tx, store, retry_delay_ms=0, loyalty_rates={"fuel": 12}))
        assert committed.loyalty_points_earned == 478  # floor(39.90 * 12)
        assert points_balance(store, "cust-100") == 100 + 478

    def test_unknown_fuel_type(self, store):
        with pytest.raises(ValidationError):
            asyncio.run(commit(fuel_sale(1, fuel_type="E85", price="2.99"), store))

    def test_pinned_tank_must_hold_the_fuel(self, store):
        with pytest.raises(ValidationError):
            asyncio.run(commit(fuel_sale(1, tank_ref="tank-diesel"), store))

    def test_pinned_tank(self, store):
        committed = asyncio.run(commit(
            fuel_sale(5, fuel_type="Diesel", price="3.79", tank_ref="tank-diesel"), store, retry_delay_ms=0
        ))
        assert committed.items[0].tank_ref == "tank-diesel"
        assert tank_level(store, "tank-diesel") == Decimal("895.00")

    def test_low_tank_is_logged(self, store, caplog):
        with caplog.at_level(logging.WARNING, logger="ledger.consistency_coordinator"):
            asyncio.run(commit(fuel_sale(5, fuel_type="Regular", price="3.59"), store, retry_delay_ms=0))
        assert "below minimum level" in caplog.text

    def test_tank_status_after_draw(self, store, caplog):
        with caplog.at_level(logging.WARNING, logger="ledger.consistency_coordinator"):
            asyncio.run(commit(fuel_sale(5, fuel_type="Regular", price="3.59"), store, retry_delay_ms=0))
            asyncio.run(commit(fuel_sale(420), store, retry_delay_ms=0))

        levels = {
            r.getMessage().split()[2]: r.levelno
            for r in caplog.records
            if r.name == "ledger.consistency_coordinator" and r.levelno >= logging.WARNING
        }
        assert levels == {"tank-regular": logging.ERROR, "tank-premium": logging.WARNING}

        tanks = {doc["tank_id"]: doc["status"] for doc in store.documents("fuel_tanks")}
        assert tanks["tank-regular"] == TankStatus.CRITICAL  # 15 < 50
        assert tanks["tank-premium"] == TankStatus.LOW  # 80 < 100
        assert tanks["tank-diesel"] == TankStatus.AVAILABLE


class TestConcurrency:

    def test_concurrent_commits_lose_no_update(self, store):
        sales = 10
        coordinator = ConsistencyCoordinator(store, max_retries=sales, retry_delay_ms=1)

        async def scenario():
            return await asyncio.gather(*[
                coordinator.commit(fuel_sale(1, customer_ref="cust-100")) for _ in range(sales)
            ])

        committed = asyncio.run(scenario())

        assert len({tx.transaction_id for tx in committed}) == sales
        assert tank_level(store, "tank-premium") == Decimal("490.00")
        assert points_balance(store, "cust-100") == 100 + sales * 39
        assert len(store.documents("transactions")) == sales

    def test_conflicts_without_retries_never_double_apply(self, store):
        coordinator = ConsistencyCoordinator(store, max_retries=1, retry_delay_ms=0)

        async def scenario():
            return await asyncio.gather(
                *[coordinator.commit(fuel_sale(10)) for _ in range(3)],
                return_exceptions=True
            )

        results = asyncio.run(scenario())
        succeeded = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]

        assert succeeded
        assert all(isinstance(e, ConcurrencyConflictError) for e in failed)
        assert tank_level(store, "tank-premium") == Decimal("500") - 10 * len(succeeded)

    def test_exhausted_retries_surface_conflict(self, store, monkeypatch):
        def always_conflict(session):
            raise VersionConflictError("fuel_tanks", "tank-premium", 1)

        monkeypatch.setattr(store, "_apply", always_conflict)

        with pytest.raises(ConcurrencyConflictError) as exc:
            asyncio.run(commit(fuel_sale(1), store, max_retries=3, retry_delay_ms=0))

        assert exc.value.attempts == 3
        assert exc.value.public_message == "Concurrent modification detected. Please retry."
        assert tank_level(store, "tank-premium") == Decimal("500")

    def test_timed_out_commit_leaves_no_effects(self, store, monkeypatch):
        original_put = InMemoryLedgerSession.put

        async def slow_put(self, *args, **kwargs):
            await asyncio.sleep(1)
            return await original_put(self, *args, **kwargs)

        monkeypatch.setattr(InMemoryLedgerSession, "put", slow_put)
        coordinator = ConsistencyCoordinator(store, retry_delay_ms=0)

        with pytest.raises(asyncio.TimeoutError):
            asyncio.run(coordinator.commit(fuel_sale(10, customer_ref="cust-100"), timeout=0.05))

        assert tank_level(store, "tank-premium") == Decimal("500")
        assert points_balance(store, "cust-100") == 100
        assert store.documents("transactions") == []


class TestIdempotency:

    def test_repeated_key_applies_once(self, store):
        coordinator = ConsistencyCoordinator(store, retry_delay_ms=0)
        tx = fuel_sale(10, customer_ref="cust-100")

        async def scenario():
            first = await coordinator.commit(tx, idempotency_key="pos-1-0001")
            second = await coordinator.commit(tx, idempotency_key="pos-1-0001")
            return first, second

        first, second = asyncio.run(scenario())

        assert first.transaction_id == second.transaction_id
        assert second.idempotency_key == "pos-1-0001"
        assert tank_level(store, "tank-premium") == Decimal("490.00")
        assert points_balance(store, "cust-100") == 499
        assert len(store.documents("transactions")) == 1
        logs = store.documents("mutation_operation_logs")
        assert [(log["operation_id"], log["transaction_id"]) for log in logs] == [
            ("pos-1-0001", first.transaction_id)
        ]

    def test_different_keys_apply_twice(self, store):
        coordinator = ConsistencyCoordinator(store, retry_delay_ms=0)
        tx = fuel_sale(10)

        async def scenario():
            await coordinator.commit(tx, idempotency_key="pos-1-0001")
            await coordinator.commit(tx, idempotency_key="pos-1-0002")

        asyncio.run(scenario())
        assert tank_level(store, "tank-premium") == Decimal("480.00")

    def test_failed_commit_does_not_burn_the_key(self, store):
        coordinator = ConsistencyCoordinator(store, retry_delay_ms=0)

        with pytest.raises(InsufficientInventoryError):
            asyncio.run(coordinator.commit(fuel_sale(600), idempotency_key="pos-1-0003"))
        assert store.documents("mutation_operation_logs") == []

        committed = asyncio.run(coordinator.commit(fuel_sale(6), idempotency_key="pos-1-0003"))
        assert committed.idempotency_key == "pos-1-0003"

    def test_blank_key_is_rejected(self, store):
        with pytest.raises(ValidationError):
            asyncio.run(commit(fuel_sale(1), store, idempotency_key="  "))


class TestDeliveriesAndRedemptions:

    def test_delivery_raises_level(self, store):
        coordinator = ConsistencyCoordinator(store, retry_delay_ms=0)
        tank = asyncio.run(coordinator.receive_fuel_delivery("tank-premium", "200", supplier="Global Fuels Inc."))

        assert tank.current_level == Decimal("700")
        assert tank.last_delivery is not None
        assert tank.supplier == "Global Fuels Inc."
        assert tank.version == 2

    def test_delivery_cannot_exceed_capacity(self, store):
        coordinator = ConsistencyCoordinator(store, retry_delay_ms=0)
        with pytest.raises(ValidationError) as exc:
            asyncio.run(coordinator.receive_fuel_delivery("tank-premium", "600"))
        assert "500 available" in exc.value.public_message
        assert tank_level(store, "tank-premium") == Decimal("500")

    def test_delivery_rejections(self, store):
        coordinator = ConsistencyCoordinator(store, retry_delay_ms=0)
        with pytest.raises(ValidationError):
            asyncio.run(coordinator.receive_fuel_delivery("tank-premium", 0))
        with pytest.raises(NotFoundError):
            asyncio.run(coordinator.receive_fuel_delivery("tank-missing", 10))

    def test_redeem_points(self, store):
        coordinator = ConsistencyCoordinator(store, retry_delay_ms=0)
        account = asyncio.run(coordinator.redeem_points("cust-100", 40, staff_ref="emp-3"))

        assert account.points_balance == 60
        entries = asyncio.run(coordinator.list_loyalty_entries("cust-100"))
        assert [(e.entry_type, e.points, e.balance, e.source) for e in entries] == [
            (LoyaltyEntryType.REDEEM, -40, 60, "redemption")
        ]

    def test_redeem_beyond_balance_keeps_balance(self, store):
        coordinator = ConsistencyCoordinator(store, retry_delay_ms=0)
        with pytest.raises(InsufficientBalanceError):
            asyncio.run(coordinator.redeem_points("cust-100", 150))
        assert points_balance(store, "cust-100") == 100
        assert store.documents("loyalty_entries") == []

    def test_redeem_unknown_account(self, store):
        coordinator = ConsistencyCoordinator(store, retry_delay_ms=0)
        with pytest.raises(NotFoundError):
            asyncio.run(coordinator.redeem_points("cust-missing", 1))
