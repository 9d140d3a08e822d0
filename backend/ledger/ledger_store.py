"""
LEDGER STORE - STORAGE COLLABORATOR CONTRACT

The ledger core never talks to a database directly. It opens a session:

    async with store.session() as session:
        tank = await session.find_tank("Regular", station_ref)
        await session.save_tank(tank.model_copy(update={...}))

Guarantees every implementation must provide:
1. All writes made through one session become visible together, or not at all
2. Every save is a compare-and-set on the document `version`
   (version 0 means "insert, must not exist yet")
3. A lost race raises VersionConflictError (at write time or at session exit)

Implementations:
- MongoLedgerStore: motor, multi-document transaction per session
  (requires a replica set)
- InMemoryLedgerStore (memory_store.py): staged writes applied under a lock
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from decimal import Decimal
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar
import asyncio
import logging

from bson import Decimal128
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError, PyMongoError

from ledger.errors import ConcurrencyConflictError
from ledger.financial_precision import from_decimal128, to_decimal128
from ledger.models import FuelTank, LoyaltyAccount, LoyaltyEntry, Transaction

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Collections
TANKS = "fuel_tanks"
ACCOUNTS = "loyalty_accounts"
TRANSACTIONS = "transactions"
LOYALTY_ENTRIES = "loyalty_entries"
OPERATION_LOGS = "mutation_operation_logs"
SETTINGS = "global_settings"

# Primary key field per collection
KEY_FIELDS = {
    TANKS: "tank_id",
    ACCOUNTS: "customer_ref",
    TRANSACTIONS: "transaction_id",
    LOYALTY_ENTRIES: "entry_id",
    OPERATION_LOGS: "operation_id",
}


class VersionConflictError(Exception):
    """A compare-and-set lost against a concurrent writer. Internal; retried."""

    def __init__(self, collection: str, key: str, expected_version: Optional[int] = None):
        self.collection = collection
        self.key = key
        self.expected_version = expected_version
        super().__init__(
            f"Version conflict on {collection}/{key} (expected version {expected_version})"
        )


# =============================================================================
# SESSION CONTRACT
# =============================================================================

class LedgerSession(ABC):
    """
    One atomic unit of work. Documents are plain dicts holding Decimal values
    and a `version` integer; typed helpers below wrap them in models.
    """

    @abstractmethod
    async def fetch(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        """Read one document by primary key."""

    @abstractmethod
    async def find_one(self, collection: str, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Read the first document whose fields equal every value in `query`."""

    @abstractmethod
    async def find_many(
        self,
        collection: str,
        query: Dict[str, Any],
        sort_field: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Read every matching document, optionally ordered ascending by one field."""

    @abstractmethod
    async def put(self, collection: str, key: str, document: Dict[str, Any], expected_version: int) -> Dict[str, Any]:
        """
        Compare-and-set write. Stores `document` with version expected_version + 1.
        Raises VersionConflictError if the stored version differs.
        """

    # =========================================================================
    # TYPED HELPERS
    # =========================================================================

    async def _save_model(self, collection: str, model, model_type):
        key = getattr(model, KEY_FIELDS[collection])
        stored = await self.put(collection, key, model.model_dump(), model.version)
        return model_type.model_validate(stored)

    async def get_tank(self, tank_id: str) -> Optional[FuelTank]:
        doc = await self.fetch(TANKS, tank_id)
        return FuelTank.model_validate(doc) if doc else None

    async def find_tank(self, fuel_type: str, station_ref: Optional[str] = None) -> Optional[FuelTank]:
        query: Dict[str, Any] = {"fuel_type": fuel_type}
        if station_ref is not None:
            query["station_ref"] = station_ref
        doc = await self.find_one(TANKS, query)
        return FuelTank.model_validate(doc) if doc else None

    async def save_tank(self, tank: FuelTank) -> FuelTank:
        return await self._save_model(TANKS, tank, FuelTank)

    async def get_account(self, customer_ref: str) -> Optional[LoyaltyAccount]:
        doc = await self.fetch(ACCOUNTS, customer_ref)
        return LoyaltyAccount.model_validate(doc) if doc else None

    async def save_account(self, account: LoyaltyAccount) -> LoyaltyAccount:
        return await self._save_model(ACCOUNTS, account, LoyaltyAccount)

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        doc = await self.fetch(TRANSACTIONS, transaction_id)
        return Transaction.model_validate(doc) if doc else None

    async def save_transaction(self, transaction: Transaction) -> Transaction:
        return await self._save_model(TRANSACTIONS, transaction, Transaction)

    async def append_loyalty_entry(self, entry: LoyaltyEntry) -> LoyaltyEntry:
        await self.put(LOYALTY_ENTRIES, entry.entry_id, entry.model_dump(), 0)
        return entry

    async def list_loyalty_entries(self, customer_ref: str) -> List[LoyaltyEntry]:
        docs = await self.find_many(LOYALTY_ENTRIES, {"customer_ref": customer_ref}, sort_field="date")
        return [LoyaltyEntry.model_validate(doc) for doc in docs]


class LedgerStore(ABC):
    """Factory for atomic sessions plus non-transactional settings reads."""

    @abstractmethod
    def session(self) -> "AsyncIterator[LedgerSession]":
        """Async context manager yielding a LedgerSession."""

    @abstractmethod
    async def get_settings(self, key: str) -> Optional[Dict[str, Any]]:
        """Read a settings document by key from global_settings."""


# =============================================================================
# RETRY WRAPPER
# =============================================================================

async def run_atomic(
    store: LedgerStore,
    operation: Callable[[LedgerSession], Awaitable[T]],
    *,
    label: str,
    max_retries: int = 5,
    retry_delay_ms: int = 100
) -> T:
    """
    Run `operation` inside one store session, retrying on version conflicts.

    Business errors raised by the operation propagate immediately (the
    session rolls back). After `max_retries` conflicting attempts a
    ConcurrencyConflictError is raised.
    """
    attempts = max(1, max_retries)
    for attempt in range(attempts):
        try:
            async with store.session() as session:
                result = await operation(session)
            return result
        except VersionConflictError as e:
            logger.warning(f"[STORE] {label}: {e} (attempt {attempt + 1}/{attempts})")
            if attempt < attempts - 1 and retry_delay_ms > 0:
                await asyncio.sleep(retry_delay_ms * (attempt + 1) / 1000)

    logger.error(f"[STORE] {label}: giving up after {attempts} conflicting attempts")
    raise ConcurrencyConflictError(label, attempts)


# =============================================================================
# MONGODB DOCUMENT ENCODING
# =============================================================================

def encode_value(value: Any) -> Any:
    """Decimal -> Decimal128, Enum -> value, recursively."""
    if isinstance(value, Decimal):
        return to_decimal128(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    return value


def decode_value(value: Any) -> Any:
    """Decimal128 -> Decimal, recursively."""
    if isinstance(value, Decimal128):
        return from_decimal128(value)
    if isinstance(value, dict):
        return {k: decode_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_value(v) for v in value]
    return value


def decode_document(collection: str, doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    result = decode_value(doc)
    result[KEY_FIELDS.get(collection, "_id")] = str(result.pop("_id"))
    return result


# =============================================================================
# MONGODB IMPLEMENTATION
# =============================================================================

class MongoLedgerSession(LedgerSession):
    """LedgerSession bound to one motor client session inside a transaction."""

    def __init__(self, db: AsyncIOMotorDatabase, session):
        self.db = db
        self.session = session

    async def fetch(self, collection, key):
        doc = await self.db[collection].find_one({"_id": key}, session=self.session)
        return decode_document(collection, doc)

    async def find_one(self, collection, query):
        doc = await self.db[collection].find_one(
            encode_value(query),
            sort=[("_id", 1)],
            session=self.session
        )
        return decode_document(collection, doc)

    async def find_many(self, collection, query, sort_field=None):
        cursor = self.db[collection].find(encode_value(query), session=self.session)
        if sort_field:
            # _id breaks ties between documents written in the same commit
            cursor = cursor.sort([(sort_field, 1), ("_id", 1)])
        docs = await cursor.to_list(length=None)
        return [decode_document(collection, doc) for doc in docs]

    async def put(self, collection, key, document, expected_version):
        doc = encode_value(dict(document))
        doc.pop(KEY_FIELDS[collection], None)
        doc["version"] = expected_version + 1

        if expected_version == 0:
            try:
                await self.db[collection].insert_one({"_id": key, **doc}, session=self.session)
            except DuplicateKeyError as e:
                raise VersionConflictError(collection, key, expected_version) from e
        else:
            result = await self.db[collection].replace_one(
                {"_id": key, "version": expected_version},
                doc,
                session=self.session
            )
            if result.matched_count == 0:
                raise VersionConflictError(collection, key, expected_version)

        stored = decode_value(doc)
        stored[KEY_FIELDS[collection]] = key
        return stored


class MongoLedgerStore(LedgerStore):
    """
    MongoDB-backed store. Each session is a multi-document transaction, so
    the client must point at a replica set (e.g. ?replicaSet=rs0).
    """

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase):
        self.client = client
        self.db = db

    @asynccontextmanager
    async def session(self):
        try:
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    yield MongoLedgerSession(self.db, session)
        except PyMongoError as e:
            # Write conflicts between concurrent transactions are transient
            if e.has_error_label("TransientTransactionError"):
                raise VersionConflictError("transaction", "*") from e
            raise

    async def get_settings(self, key):
        doc = await self.db[SETTINGS].find_one({"key": key})
        return decode_value(doc) if doc else None

    async def create_indexes(self):
        """Create the unique and lookup indexes the ledger relies on."""
        await self.db[TANKS].create_index(
            [("station_ref", 1), ("tank_number", 1)],
            unique=True,
            name="unique_station_tank_number"
        )
        await self.db[TANKS].create_index([("fuel_type", 1)], name="idx_tank_fuel_type")
        await self.db[TRANSACTIONS].create_index(
            [("customer_ref", 1), ("date", -1)],
            name="idx_transaction_customer_date"
        )
        await self.db[TRANSACTIONS].create_index([("payment_status", 1)], name="idx_transaction_status")
        await self.db[LOYALTY_ENTRIES].create_index(
            [("customer_ref", 1), ("date", -1)],
            name="idx_loyalty_customer_date"
        )
        logger.info("[STORE] Ledger indexes ensured")

    def close(self):
        self.client.close()
