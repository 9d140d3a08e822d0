"""
Configuration and policy override tests
"""
import asyncio
from decimal import Decimal

import pytest

from ledger.config import LedgerSettings
from ledger.errors import ValidationError
from ledger.memory_store import InMemoryLedgerStore
from ledger.models import TransactionKind
from ledger.policy_service import LedgerPolicyService


class TestLedgerSettings:

    def test_defaults(self):
        settings = LedgerSettings.from_env({})
        assert settings.tax_rate == Decimal("0.06")
        assert settings.loyalty_rates[TransactionKind.FUEL] == Decimal("10")
        assert settings.quantity_places == 2
        assert settings.commit_max_retries == 5
        assert settings.commit_retry_delay_ms == 100

    def test_environment_overrides(self):
        settings = LedgerSettings.from_env({
            "LEDGER_TAX_RATE": "0.0725",
            "LOYALTY_RATE_SERVICE": "3",
            "FUEL_QUANTITY_PLACES": "3",
            "COMMIT_MAX_RETRIES": "8",
            "DB_NAME": "station_test",
        })
        assert settings.tax_rate == Decimal("0.0725")
        assert settings.loyalty_rates[TransactionKind.SERVICE] == Decimal("3")
        assert settings.loyalty_rates[TransactionKind.PRODUCT] == Decimal("5")
        assert settings.quantity_places == 3
        assert settings.commit_max_retries == 8
        assert settings.db_name == "station_test"

    def test_malformed_integer(self):
        with pytest.raises(ValidationError):
            LedgerSettings.from_env({"COMMIT_MAX_RETRIES": "many"})


class TestLedgerPolicyService:

    def test_falls_back_to_settings(self):
        policy = LedgerPolicyService(InMemoryLedgerStore(), LedgerSettings(tax_rate=Decimal("0.08")))

        assert asyncio.run(policy.get_tax_rate()) == Decimal("0.08")
        assert asyncio.run(policy.get_loyalty_policy()).rate_for("fuel") == Decimal("10")

    def test_store_overrides(self):
        store = InMemoryLedgerStore()
        store.set_settings("ledger_policy", {
            "key": "ledger_policy",
            "settings": {"tax_rate": "0.07", "loyalty_rates": {"fuel": 12}}
        })
        policy = LedgerPolicyService(store)

        assert asyncio.run(policy.get_tax_rate()) == Decimal("0.07")
        loyalty = asyncio.run(policy.get_loyalty_policy())
        assert loyalty.rate_for("fuel") == Decimal("12")
        assert loyalty.rate_for("product") == Decimal("5")

    def test_overrides_are_cached_until_invalidated(self):
        store = InMemoryLedgerStore()
        store.set_settings("ledger_policy", {"settings": {"tax_rate": "0.07"}})
        policy = LedgerPolicyService(store)
        assert asyncio.run(policy.get_tax_rate()) == Decimal("0.07")

        store.set_settings("ledger_policy", {"settings": {"tax_rate": "0.05"}})
        assert asyncio.run(policy.get_tax_rate()) == Decimal("0.07")

        policy.invalidate()
        assert asyncio.run(policy.get_tax_rate()) == Decimal("0.05")

    def test_negative_override_rejected(self):
        store = InMemoryLedgerStore()
        store.set_settings("ledger_policy", {"settings": {"tax_rate": "-0.01"}})
        with pytest.raises(ValidationError):
            asyncio.run(LedgerPolicyService(store).get_tax_rate())

    def test_override_keys_are_normalized(self):
        store = InMemoryLedgerStore()
        store.set_settings("ledger_policy", {"settings": {"loyalty_rates": {"Fuel": 12, "SERVICE": "3"}}})
        settings = LedgerSettings(loyalty_rates={
            TransactionKind.FUEL: Decimal("15"),
            TransactionKind.PRODUCT: Decimal("6"),
            TransactionKind.SERVICE: Decimal("2"),
        })
        loyalty = asyncio.run(LedgerPolicyService(store, settings).get_loyalty_policy())

        assert loyalty.rates == {
            TransactionKind.FUEL: Decimal("12"),
            TransactionKind.PRODUCT: Decimal("6"),
            TransactionKind.SERVICE: Decimal("3"),
        }

    def test_unknown_override_kind_rejected(self):
        store = InMemoryLedgerStore()
        store.set_settings("ledger_policy", {"settings": {"loyalty_rates": {"car-wash": 4}}})
        with pytest.raises(ValidationError):
            asyncio.run(LedgerPolicyService(store).get_loyalty_policy())
