"""
Seed script for the PetroPulse transaction ledger.

Creates:
- 3 fuel tanks: Regular, Premium, Diesel (skipped if already present)
- Sample sales committed through the ledger (60% fuel, 30% product, 10% service),
  so tank levels and loyalty balances stay consistent with the transactions
- Loyalty accounts for a small pool of customers, created on first accrual

Run: python seed.py
"""

import asyncio
from motor.motor_asyncio import AsyncIOMotorClient
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional
import random
import logging

from ledger.config import LedgerSettings
from ledger.consistency_coordinator import ConsistencyCoordinator
from ledger.ledger_store import LedgerStore, MongoLedgerStore
from ledger.line_items import build_item
from ledger.loyalty_policy import LoyaltyPolicy
from ledger.models import FuelTank, PaymentStatus, TransactionKind
from ledger.transaction_composer import compose

logger = logging.getLogger(__name__)

STATION_REF = "station-main"
SUPPLIER = "Global Fuels Inc."

FUEL_TANKS = [
    {"tank_id": "tank-1", "fuel_type": "Regular", "tank_number": 1, "price": "3.59",
     "current_level": "3500", "capacity": "5000", "minimum_level": "500"},
    {"tank_id": "tank-2", "fuel_type": "Premium", "tank_number": 2, "price": "3.99",
     "current_level": "2800", "capacity": "4000", "minimum_level": "400"},
    {"tank_id": "tank-3", "fuel_type": "Diesel", "tank_number": 3, "price": "3.79",
     "current_level": "4200", "capacity": "6000", "minimum_level": "600"},
]

PRODUCTS = [
    {"product_ref": "prod-coffee", "name": "Coffee", "price": "2.99"},
    {"product_ref": "prod-snack-bar", "name": "Snack Bar", "price": "1.49"},
    {"product_ref": "prod-water", "name": "Bottled Water", "price": "1.99"},
    {"product_ref": "prod-chips", "name": "Chips", "price": "3.49"},
    {"product_ref": "prod-candy", "name": "Candy", "price": "1.29"},
]

PAYMENT_METHODS = ["Credit Card", "Debit Card", "Cash", "Mobile Pay"]

CUSTOMERS = [f"customer-{n:03d}" for n in range(1, 11)]
EMPLOYEES = [f"employee-{n:03d}" for n in range(1, 4)]


async def seed_tanks(store: LedgerStore) -> int:
    """Insert the station's tanks; existing tanks are left untouched."""
    created = 0
    async with store.session() as session:
        for tank_data in FUEL_TANKS:
            if await session.get_tank(tank_data["tank_id"]) is not None:
                continue
            await session.save_tank(FuelTank(
                tank_id=tank_data["tank_id"],
                fuel_type=tank_data["fuel_type"],
                tank_number=tank_data["tank_number"],
                station_ref=STATION_REF,
                current_level=Decimal(tank_data["current_level"]),
                capacity=Decimal(tank_data["capacity"]),
                minimum_level=Decimal(tank_data["minimum_level"]),
                price_per_gallon=Decimal(tank_data["price"]),
                supplier=SUPPLIER,
                last_updated=datetime.utcnow()
            ))
            created += 1
    return created


def _random_date(rng: random.Random, days_back: int = 30) -> datetime:
    return datetime.utcnow() - timedelta(days=rng.randrange(days_back))


def _sample_sale(kind: TransactionKind, rng: random.Random, settings: LedgerSettings):
    """Return (items, payment_status, notes) for one random sale."""
    if kind == TransactionKind.FUEL:
        tank = rng.choice(FUEL_TANKS)
        quantity = Decimal(f"{5 + rng.random() * 15:.2f}")  # 5-20 gallons
        item = build_item(
            kind,
            quantity=quantity,
            unit_price=Decimal(tank["price"]),
            fuel_type=tank["fuel_type"],
            tank_ref=tank["tank_id"],
            quantity_places=settings.quantity_places
        )
        return [item], PaymentStatus.PAID, f"{quantity} gallons of {tank['fuel_type']} fuel"

    if kind == TransactionKind.PRODUCT:
        items = []
        for _ in range(rng.randint(1, 3)):
            product = rng.choice(PRODUCTS)
            items.append(build_item(
                kind,
                quantity=rng.randint(1, 2),
                unit_price=Decimal(product["price"]),
                name=product["name"],
                product_ref=product["product_ref"]
            ))
        return items, PaymentStatus.PAID, None

    service_price = Decimal(f"{20 + rng.random() * 80:.2f}")  # $20-$100 service
    item = build_item(kind, quantity=1, unit_price=service_price, name="Service")
    # 10% of services are still awaiting payment
    status = PaymentStatus.PENDING if rng.random() > 0.9 else PaymentStatus.PAID
    return [item], status, "Service transaction"


async def seed_ledger(
    store: LedgerStore,
    count: int = 50,
    rng: Optional[random.Random] = None,
    settings: Optional[LedgerSettings] = None
) -> Dict[str, Any]:
    """
    Seed tanks and `count` sample sales through compose() + commit().

    Returns a summary with the number of tanks created and the committed
    transactions per kind.
    """
    rng = rng or random.Random()
    settings = settings or LedgerSettings()
    coordinator = ConsistencyCoordinator(
        store,
        max_retries=settings.commit_max_retries,
        retry_delay_ms=settings.commit_retry_delay_ms,
        tax_rate=settings.tax_rate,
        loyalty_policy=LoyaltyPolicy(settings.loyalty_rates)
    )

    tanks_created = await seed_tanks(store)

    plan = (
        [TransactionKind.FUEL] * int(count * 0.6)
        + [TransactionKind.PRODUCT] * int(count * 0.3)
        + [TransactionKind.SERVICE] * int(count * 0.1)
    )

    committed = {kind.value: 0 for kind in TransactionKind}
    for kind in plan:
        items, status, notes = _sample_sale(kind, rng, settings)
        transaction = compose(
            kind,
            items,
            settings.tax_rate,
            settings.loyalty_rates,
            payment_method=rng.choice(PAYMENT_METHODS),
            payment_status=status,
            customer_ref=rng.choice(CUSTOMERS),
            employee_ref=rng.choice(EMPLOYEES),
            station_ref=STATION_REF,
            notes=notes,
            date=_random_date(rng)
        )
        await coordinator.commit(transaction)
        committed[kind.value] += 1

    logger.info(f"Seeded {sum(committed.values())} transactions: {committed}")
    return {"tanks_created": tanks_created, "transactions": committed}


async def main():
    """Seed the configured MongoDB database"""
    settings = LedgerSettings.from_env()
    client = AsyncIOMotorClient(settings.mongo_url)
    store = MongoLedgerStore(client, client[settings.db_name])

    print("🌱 Starting ledger seeding...")

    try:
        await store.create_indexes()
        print("✓ Indexes ensured")

        summary = await seed_ledger(store, settings=settings)

        print("\n" + "="*60)
        print("✨ LEDGER SEEDING COMPLETE ✨")
        print("="*60)
        print(f"\n⛽ Tanks created: {summary['tanks_created']}")
        for kind, total in summary["transactions"].items():
            print(f"🧾 {kind.capitalize()} transactions: {total}")
        print("="*60)

    except Exception as e:
        print(f"\n❌ Error during seeding: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
