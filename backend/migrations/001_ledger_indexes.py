#!/usr/bin/env python3
"""
MIGRATION SCRIPT: Ledger collections and indexes

Creates:
1. fuel_tanks, loyalty_accounts, transactions, loyalty_entries and
   mutation_operation_logs collections (transactions cannot create them)
2. Unique index on fuel_tanks (station_ref, tank_number)
3. Lookup indexes for transactions and loyalty entries

Documents are keyed by _id (tank_id, customer_ref, transaction_id,
entry_id, operation_id), so primary-key uniqueness needs no extra index.

Run: python migrations/001_ledger_indexes.py
"""

import asyncio
import os
import sys

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv

load_dotenv()

from ledger.config import LedgerSettings
from ledger.ledger_store import (
    ACCOUNTS,
    LOYALTY_ENTRIES,
    OPERATION_LOGS,
    TANKS,
    TRANSACTIONS,
    MongoLedgerStore,
)


async def run_migration():
    """Execute the ledger index migration."""

    settings = LedgerSettings.from_env()

    print(f"Connecting to: {settings.mongo_url}")
    print(f"Database: {settings.db_name}")

    client = AsyncIOMotorClient(settings.mongo_url)
    db = client[settings.db_name]
    store = MongoLedgerStore(client, db)

    try:
        # Test connection
        await client.admin.command('ping')
        print("✓ Connected to MongoDB")

        existing = await db.list_collection_names()
        for name in (TANKS, ACCOUNTS, TRANSACTIONS, LOYALTY_ENTRIES, OPERATION_LOGS):
            if name not in existing:
                await db.create_collection(name)
                print(f"✓ Created {name} collection")
            else:
                print(f"• {name} collection already exists")

        await store.create_indexes()
        print("✓ Created unique index on fuel_tanks (station_ref, tank_number)")
        print("✓ Created lookup indexes on transactions and loyalty_entries")

        print("\n✓ Migration complete")

    except Exception as e:
        print(f"\n✗ Migration failed: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    asyncio.run(run_migration())
