"""
LEDGER INVARIANT VALIDATOR

Enforces the closed constraints that must hold before anything is persisted:
1. transaction: >= 1 item, every item of the transaction kind, item totals exact
2. transaction: total == subtotal + tax
3. fuel: total == SUM(item.total); product/service: subtotal == round2(SUM(item.total))
4. loyalty points are non-negative integers
5. tank: 0 <= current_level <= capacity
6. account: points_balance >= 0
7. pricing: subtotal, tax, total and loyalty_points_earned match what the
   items yield under the active tax rate and loyalty rates

Violations are collected and raised together as one ValidationError.
"""

from decimal import Decimal
from typing import Dict, List
import logging

from ledger.errors import ValidationError
from ledger.financial_precision import round2, safe_add, to_decimal
from ledger.line_items import validate_line_item
from ledger.loyalty_policy import LoyaltyPolicy
from ledger.models import FuelTank, LoyaltyAccount, Transaction, TransactionKind
from ledger.transaction_composer import compute_totals

logger = logging.getLogger(__name__)


def _raise_if_violations(subject: str, violations: List[Dict[str, str]]) -> None:
    if violations:
        raise ValidationError(
            f"{subject} invariant violation(s): " + "; ".join(v["message"] for v in violations),
            details={"violations": violations}
        )


def validate_transaction_invariants(transaction: Transaction) -> bool:
    """
    Validate the arithmetic of a composed transaction.

    Only rate-independent identities are checked here; see
    validate_transaction_pricing for the rate-dependent figures.
    """
    violations = []

    if not transaction.items:
        violations.append({"rule": "ITEMS_REQUIRED", "message": "transaction has no items"})

    for index, item in enumerate(transaction.items):
        if item.kind != transaction.kind:
            violations.append({
                "rule": "ITEM_KIND_MATCHES",
                "message": f"item {index} is {item.kind.value}, transaction is {transaction.kind.value}"
            })
            continue
        try:
            validate_line_item(item)
        except ValidationError as e:
            violations.append({"rule": "ITEM_TOTAL", "message": f"item {index}: {e.message}"})

    subtotal = to_decimal(transaction.subtotal)
    tax = to_decimal(transaction.tax)
    total = to_decimal(transaction.total)

    for field_name, value in (("subtotal", subtotal), ("tax", tax), ("total", total)):
        if value < Decimal('0'):
            violations.append({"rule": "NON_NEGATIVE", "message": f"{field_name} is negative ({value})"})
        if round2(value) != value:
            violations.append({"rule": "TWO_DECIMALS", "message": f"{field_name} has more than 2 decimals ({value})"})

    if total != subtotal + tax:
        violations.append({
            "rule": "TOTAL_EQUALS_SUBTOTAL_PLUS_TAX",
            "message": f"total ({total}) != subtotal ({subtotal}) + tax ({tax})"
        })

    if transaction.items:
        items_sum = safe_add(*(item.total for item in transaction.items))
        if transaction.kind == TransactionKind.FUEL:
            if total != items_sum:
                violations.append({
                    "rule": "FUEL_TOTAL_EQUALS_ITEMS",
                    "message": f"fuel total ({total}) != sum of item totals ({items_sum})"
                })
        elif subtotal != round2(items_sum):
            violations.append({
                "rule": "SUBTOTAL_EQUALS_ITEMS",
                "message": f"subtotal ({subtotal}) != sum of item totals ({items_sum})"
            })

    if transaction.loyalty_points_earned < 0:
        violations.append({"rule": "POINTS_NON_NEGATIVE", "message": "loyalty_points_earned is negative"})
    if transaction.loyalty_points_redeemed < 0:
        violations.append({"rule": "POINTS_NON_NEGATIVE", "message": "loyalty_points_redeemed is negative"})

    _raise_if_violations("Transaction", violations)
    logger.debug(f"Invariants validated for {transaction.kind.value} transaction total={total}")
    return True


def validate_transaction_pricing(
    transaction: Transaction,
    tax_rate: Decimal,
    loyalty_policy: LoyaltyPolicy
) -> bool:
    """
    Re-derive subtotal, tax, total and earned points from the items under
    the given rates and compare them with the stored figures.

    Run after validate_transaction_invariants (items must already be valid).
    """
    subtotal, tax, total = compute_totals(transaction.kind, transaction.items, to_decimal(tax_rate))
    expected_points = loyalty_policy.points_for(transaction.kind, total)

    violations = []
    for field_name, stored, expected in (
        ("subtotal", transaction.subtotal, subtotal),
        ("tax", transaction.tax, tax),
        ("total", transaction.total, total),
    ):
        if to_decimal(stored) != expected:
            violations.append({
                "rule": "PRICED_AT_CURRENT_RATES",
                "message": f"{field_name} ({stored}) != {expected} at tax rate {tax_rate}"
            })

    if transaction.loyalty_points_earned != expected_points:
        violations.append({
            "rule": "POINTS_MATCH_RATE",
            "message": (
                f"loyalty_points_earned ({transaction.loyalty_points_earned}) != {expected_points} "
                f"at rate {loyalty_policy.rate_for(transaction.kind)}"
            )
        })

    _raise_if_violations("Transaction", violations)
    return True


def validate_tank_levels(tank: FuelTank) -> bool:
    """0 <= current_level <= capacity, minimum_level within capacity."""
    violations = []
    level = to_decimal(tank.current_level)
    capacity = to_decimal(tank.capacity)

    if capacity <= Decimal('0'):
        violations.append({"rule": "CAPACITY_POSITIVE", "message": f"capacity must be positive ({capacity})"})
    if level < Decimal('0'):
        violations.append({"rule": "LEVEL_NON_NEGATIVE", "message": f"current_level is negative ({level})"})
    if level > capacity:
        violations.append({
            "rule": "LEVEL_WITHIN_CAPACITY",
            "message": f"current_level ({level}) exceeds capacity ({capacity})"
        })
    if to_decimal(tank.minimum_level) < Decimal('0'):
        violations.append({"rule": "MINIMUM_NON_NEGATIVE", "message": "minimum_level is negative"})

    _raise_if_violations(f"Tank {tank.fuel_type} #{tank.tank_number}", violations)
    return True


def validate_account_balance(account: LoyaltyAccount) -> bool:
    """points_balance >= 0"""
    if account.points_balance < 0:
        _raise_if_violations("Loyalty account", [{
            "rule": "BALANCE_NON_NEGATIVE",
            "message": f"points_balance is negative ({account.points_balance})"
        }])
    return True
