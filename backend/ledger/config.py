"""
Ledger configuration, read from the environment (and a .env file if present).

Variables:
    MONGO_URL                 mongodb://localhost:27017/?replicaSet=rs0
    DB_NAME                   petropulse
    LEDGER_TAX_RATE           0.06
    LOYALTY_RATE_FUEL         10
    LOYALTY_RATE_PRODUCT      5
    LOYALTY_RATE_SERVICE      2
    FUEL_QUANTITY_PLACES      2
    COMMIT_MAX_RETRIES        5
    COMMIT_RETRY_DELAY_MS     100
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Mapping, Optional
import os

from dotenv import load_dotenv

from ledger.errors import ValidationError
from ledger.financial_precision import DEFAULT_QUANTITY_PLACES, to_decimal
from ledger.loyalty_policy import DEFAULT_LOYALTY_RATES
from ledger.models import TransactionKind

load_dotenv()

DEFAULT_TAX_RATE = Decimal('0.06')


def _int_env(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"Environment variable {name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class LedgerSettings:
    mongo_url: str = "mongodb://localhost:27017/?replicaSet=rs0"
    db_name: str = "petropulse"
    tax_rate: Decimal = DEFAULT_TAX_RATE
    loyalty_rates: Dict[TransactionKind, Decimal] = field(
        default_factory=lambda: dict(DEFAULT_LOYALTY_RATES)
    )
    quantity_places: int = DEFAULT_QUANTITY_PLACES
    commit_max_retries: int = 5
    commit_retry_delay_ms: int = 100

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "LedgerSettings":
        env = os.environ if environ is None else environ
        defaults = cls()

        loyalty_rates = dict(defaults.loyalty_rates)
        for kind in TransactionKind:
            raw = env.get(f"LOYALTY_RATE_{kind.value.upper()}")
            if raw:
                loyalty_rates[kind] = to_decimal(raw)

        tax_raw = env.get("LEDGER_TAX_RATE")
        return cls(
            mongo_url=env.get("MONGO_URL", defaults.mongo_url),
            db_name=env.get("DB_NAME", defaults.db_name),
            tax_rate=to_decimal(tax_raw) if tax_raw else defaults.tax_rate,
            loyalty_rates=loyalty_rates,
            quantity_places=_int_env(env, "FUEL_QUANTITY_PLACES", defaults.quantity_places),
            commit_max_retries=_int_env(env, "COMMIT_MAX_RETRIES", defaults.commit_max_retries),
            commit_retry_delay_ms=_int_env(env, "COMMIT_RETRY_DELAY_MS", defaults.commit_retry_delay_ms),
        )
