"""
LOYALTY ACCRUAL RULES

Points per whole currency unit, floored:
- fuel: 10
- product: 5
- service: 2

The table is pluggable: the composer only asks a LoyaltyPolicy for
`points_for(kind, total)`, so rates can change (see PolicyService) without
touching the composition algorithm.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Mapping, Optional, Union
import logging

from ledger.errors import InsufficientBalanceError, ValidationError
from ledger.financial_precision import Numeric, floor_points, safe_multiply, to_decimal
from ledger.models import LoyaltyAccount, TransactionKind

logger = logging.getLogger(__name__)


DEFAULT_LOYALTY_RATES: Dict[TransactionKind, Decimal] = {
    TransactionKind.FUEL: Decimal('10'),
    TransactionKind.PRODUCT: Decimal('5'),
    TransactionKind.SERVICE: Decimal('2'),
}


class LoyaltyPolicy:
    """Kind-specific point-earning rates."""

    def __init__(self, rates: Optional[Mapping[Union[str, TransactionKind], Numeric]] = None):
        merged = dict(DEFAULT_LOYALTY_RATES)
        for kind, rate in (rates or {}).items():
            try:
                key = TransactionKind(kind)
            except ValueError:
                raise ValidationError(f"Unknown transaction kind in loyalty rates: '{kind}'")
            value = to_decimal(rate)
            if value < Decimal('0'):
                raise ValidationError(f"Loyalty rate for '{key.value}' cannot be negative: {rate}")
            merged[key] = value
        self._rates = merged

    @property
    def rates(self) -> Dict[TransactionKind, Decimal]:
        return dict(self._rates)

    def rate_for(self, kind: TransactionKind) -> Decimal:
        return self._rates[TransactionKind(kind)]

    def points_for(self, kind: TransactionKind, total: Numeric) -> int:
        """floor(total * rate[kind])"""
        return floor_points(safe_multiply(total, self.rate_for(kind)))

    def __repr__(self):
        rates = ", ".join(f"{k.value}={v}" for k, v in self._rates.items())
        return f"LoyaltyPolicy({rates})"


def as_policy(loyalty_rates: Union[None, LoyaltyPolicy, Mapping]) -> LoyaltyPolicy:
    """Accept a policy, a plain rate mapping, or None (defaults)."""
    if isinstance(loyalty_rates, LoyaltyPolicy):
        return loyalty_rates
    return LoyaltyPolicy(loyalty_rates)


def _validate_points(points: int, field_name: str) -> int:
    if isinstance(points, bool) or not isinstance(points, int):
        raise ValidationError(f"'{field_name}' must be a whole number of points: {points!r}")
    if points < 0:
        raise ValidationError(f"'{field_name}' cannot be negative: {points}")
    return points


def credit(account: LoyaltyAccount, points: int) -> LoyaltyAccount:
    """Add earned points to an account."""
    _validate_points(points, "points")
    return account.model_copy(update={
        "points_balance": account.points_balance + points,
        "updated_at": datetime.utcnow()
    })


def redeem(account: LoyaltyAccount, points: int) -> LoyaltyAccount:
    """
    Spend points from an account.

    Raises:
        InsufficientBalanceError: points > points_balance (account unchanged)
    """
    _validate_points(points, "points")
    if points > account.points_balance:
        raise InsufficientBalanceError(
            customer_ref=account.customer_ref,
            requested=points,
            available=account.points_balance
        )
    return account.model_copy(update={
        "points_balance": account.points_balance - points,
        "updated_at": datetime.utcnow()
    })


def reverse_points(account: LoyaltyAccount, points: int) -> LoyaltyAccount:
    """Take back previously earned points, clamping the balance at zero."""
    _validate_points(points, "points")
    new_balance = max(account.points_balance - points, 0)
    if new_balance == 0 and points > account.points_balance:
        logger.info(
            f"[LOYALTY] Reversal of {points} points clamped at zero "
            f"(balance was {account.points_balance})"
        )
    return account.model_copy(update={
        "points_balance": new_balance,
        "updated_at": datetime.utcnow()
    })
