"""
LEDGER POLICY SERVICE

Provides the tax rate and loyalty rates used to compose transactions.
Values come from LedgerSettings (environment) and can be overridden at
runtime by a `global_settings` document:

    {"key": "ledger_policy",
     "settings": {"tax_rate": "0.07", "loyalty_rates": {"fuel": 12}}}

Usage:
    policy = LedgerPolicyService(store, settings)
    tax_rate = await policy.get_tax_rate()
    loyalty = await policy.get_loyalty_policy()
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
import logging

from ledger.config import LedgerSettings
from ledger.financial_precision import to_decimal, validate_non_negative
from ledger.ledger_store import LedgerStore
from ledger.line_items import parse_kind
from ledger.loyalty_policy import LoyaltyPolicy

logger = logging.getLogger(__name__)


class LedgerPolicyService:
    """
    Centralized policy lookup with a TTL cache over the store's settings.
    Falls back to the environment defaults when no override exists.
    """

    SETTINGS_KEY = "ledger_policy"

    def __init__(self, store: LedgerStore, settings: Optional[LedgerSettings] = None, cache_ttl_seconds: int = 60):
        self.store = store
        self.settings = settings or LedgerSettings()
        self._cache: Optional[Dict[str, Any]] = None
        self._cache_timestamp: Optional[datetime] = None
        self._cache_ttl_seconds = cache_ttl_seconds

    async def _get_overrides(self, force_refresh: bool = False) -> Dict[str, Any]:
        now = datetime.utcnow()
        if (
            not force_refresh
            and self._cache is not None
            and self._cache_timestamp is not None
            and (now - self._cache_timestamp).total_seconds() < self._cache_ttl_seconds
        ):
            return self._cache

        doc = await self.store.get_settings(self.SETTINGS_KEY)
        overrides = dict(doc.get("settings") or {}) if doc else {}
        if overrides:
            logger.debug(f"[POLICY] Loaded overrides from store: {overrides}")
        else:
            logger.debug("[POLICY] Using configured defaults (no overrides in store)")

        self._cache = overrides
        self._cache_timestamp = now
        return overrides

    def invalidate(self) -> None:
        self._cache = None
        self._cache_timestamp = None

    async def get_tax_rate(self) -> Decimal:
        overrides = await self._get_overrides()
        if "tax_rate" in overrides:
            return validate_non_negative(to_decimal(overrides["tax_rate"]), "tax_rate")
        return self.settings.tax_rate

    async def get_loyalty_policy(self) -> LoyaltyPolicy:
        overrides = await self._get_overrides()
        rates = dict(self.settings.loyalty_rates)
        for kind, rate in (overrides.get("loyalty_rates") or {}).items():
            rates[parse_kind(kind)] = rate
        return LoyaltyPolicy(rates)
