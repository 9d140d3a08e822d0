"""
IN-MEMORY LEDGER STORE

Same contract as MongoLedgerStore, for tests, dry runs and seeding previews.

Optimistic concurrency:
- reads inside a session see committed state plus the session's own writes
- writes are staged with the version they expect to replace
- at session exit every staged write is checked against the committed
  version and applied together under a lock; any mismatch raises
  VersionConflictError and nothing is applied
- an exception (including cancellation) inside the session discards the stage

Every read yields to the event loop once, so concurrent sessions interleave
the way they would against a real database.
"""

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import asyncio
import copy
import logging
import threading

from ledger.invariant_validator import validate_account_balance, validate_tank_levels
from ledger.ledger_store import (
    ACCOUNTS,
    KEY_FIELDS,
    TANKS,
    LedgerSession,
    LedgerStore,
    VersionConflictError,
)
from ledger.models import FuelTank, LoyaltyAccount

logger = logging.getLogger(__name__)


def _matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    return all(doc.get(field) == value for field, value in query.items())


class InMemoryLedgerSession(LedgerSession):

    def __init__(self, store: "InMemoryLedgerStore"):
        self._store = store
        # (collection, key) -> (expected_version, document)
        self._staged: Dict[Tuple[str, str], Tuple[int, Dict[str, Any]]] = {}

    def _visible(self, collection: str) -> Dict[str, Dict[str, Any]]:
        docs = dict(self._store._snapshot(collection))
        for (coll, key), (_, doc) in self._staged.items():
            if coll == collection:
                docs[key] = doc
        return docs

    async def fetch(self, collection, key):
        await asyncio.sleep(0)
        doc = self._visible(collection).get(key)
        return copy.deepcopy(doc) if doc is not None else None

    async def find_one(self, collection, query):
        await asyncio.sleep(0)
        docs = self._visible(collection)
        for key in sorted(docs):
            if _matches(docs[key], query):
                return copy.deepcopy(docs[key])
        return None

    async def find_many(self, collection, query, sort_field=None):
        await asyncio.sleep(0)
        docs = [copy.deepcopy(d) for _, d in sorted(self._visible(collection).items()) if _matches(d, query)]
        if sort_field:
            docs.sort(key=lambda d: d.get(sort_field))
        return docs

    async def put(self, collection, key, document, expected_version):
        staged = self._staged.get((collection, key))
        if staged is not None:
            staged_expected, staged_doc = staged
            if staged_doc.get("version") != expected_version:
                raise VersionConflictError(collection, key, expected_version)
            expected_version_for_commit = staged_expected
        else:
            expected_version_for_commit = expected_version

        doc = copy.deepcopy(dict(document))
        doc[KEY_FIELDS[collection]] = key
        doc["version"] = expected_version + 1
        self._staged[(collection, key)] = (expected_version_for_commit, doc)
        return copy.deepcopy(doc)

    def discard(self):
        self._staged.clear()


class InMemoryLedgerStore(LedgerStore):
    """Dictionary-backed store; seed it with add_tank / add_account."""

    def __init__(self, settings: Optional[Dict[str, Dict[str, Any]]] = None):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._settings: Dict[str, Dict[str, Any]] = dict(settings or {})
        self._lock = threading.Lock()

    def _snapshot(self, collection: str) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return dict(self._collections.get(collection, {}))

    @asynccontextmanager
    async def session(self):
        session = InMemoryLedgerSession(self)
        try:
            yield session
        except BaseException:
            session.discard()
            raise
        self._apply(session)

    def _apply(self, session: InMemoryLedgerSession) -> None:
        with self._lock:
            for (collection, key), (expected_version, _) in session._staged.items():
                current = self._collections.get(collection, {}).get(key)
                current_version = current.get("version", 0) if current else 0
                if current_version != expected_version:
                    session.discard()
                    raise VersionConflictError(collection, key, expected_version)
            for (collection, key), (_, doc) in session._staged.items():
                self._collections.setdefault(collection, {})[key] = doc
        session.discard()

    async def get_settings(self, key):
        settings = self._settings.get(key)
        return copy.deepcopy(settings) if settings is not None else None

    # =========================================================================
    # SEEDING (synchronous, outside any session)
    # =========================================================================

    def set_settings(self, key: str, settings: Dict[str, Any]) -> None:
        self._settings[key] = copy.deepcopy(settings)

    def add_tank(
        self,
        tank_id: str,
        fuel_type: str,
        current_level,
        capacity,
        tank_number: int = 1,
        minimum_level=Decimal('100'),
        station_ref: Optional[str] = None,
        price_per_gallon=None
    ) -> FuelTank:
        tank = FuelTank(
            tank_id=tank_id,
            fuel_type=fuel_type,
            tank_number=tank_number,
            station_ref=station_ref,
            current_level=current_level,
            capacity=capacity,
            minimum_level=minimum_level,
            price_per_gallon=price_per_gallon,
            version=1,
        )
        validate_tank_levels(tank)
        with self._lock:
            self._collections.setdefault(TANKS, {})[tank_id] = tank.model_dump()
        return tank

    def add_account(self, customer_ref: str, points_balance: int = 0) -> LoyaltyAccount:
        account = LoyaltyAccount(customer_ref=customer_ref, points_balance=points_balance, version=1)
        validate_account_balance(account)
        with self._lock:
            self._collections.setdefault(ACCOUNTS, {})[customer_ref] = account.model_dump()
        return account

    def documents(self, collection: str) -> List[Dict[str, Any]]:
        """Committed documents of one collection, for inspection."""
        return [copy.deepcopy(doc) for _, doc in sorted(self._snapshot(collection).items())]
