"""
LEDGER ERROR TAXONOMY

Every rejection raised by the ledger core derives from LedgerError:

- ValidationError: malformed input, caller must correct it (never retried)
- InsufficientInventoryError / InsufficientBalanceError: business-rule
  violations, surfaced as a rejected operation (never retried)
- ConcurrencyConflictError: optimistic version check kept failing after
  the bounded retries
- NotFoundError: a referenced ledger record does not exist

`public_message` is what may be shown to an end user: it carries the same
information as the exception message minus internal identifiers.
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger rejections."""

    code = "LEDGER_ERROR"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        public_message: Optional[str] = None
    ):
        self.message = message
        self.details = details or {}
        self.public_message = public_message or message
        super().__init__(message)


class ValidationError(LedgerError):
    """Raised when input violates a ledger invariant."""

    code = "VALIDATION_ERROR"


class NotFoundError(LedgerError):
    """Raised when a referenced record is missing."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            f"{entity} {entity_id} not found",
            details={"entity": entity},
            public_message=f"{entity} not found"
        )


class InsufficientInventoryError(LedgerError):
    """Raised when a tank holds less fuel than a sale requests."""

    code = "INSUFFICIENT_INVENTORY"

    def __init__(self, tank_id: str, fuel_type: str, requested: Decimal, available: Decimal):
        self.tank_id = tank_id
        self.fuel_type = fuel_type
        self.requested = requested
        self.available = available
        super().__init__(
            f"Tank {tank_id} ({fuel_type}) holds {available}, cannot dispense {requested}",
            details={
                "fuel_type": fuel_type,
                "requested": str(requested),
                "available": str(available)
            },
            public_message=(
                f"Insufficient {fuel_type} fuel: requested {requested}, available {available}"
            )
        )


class InsufficientBalanceError(LedgerError):
    """Raised when a redemption exceeds the loyalty balance."""

    code = "INSUFFICIENT_BALANCE"

    def __init__(self, customer_ref: Optional[str], requested: int, available: int):
        self.customer_ref = customer_ref
        self.requested = requested
        self.available = available
        super().__init__(
            f"Customer {customer_ref} has {available} points, cannot redeem {requested}",
            details={"requested": requested, "available": available},
            public_message=(
                f"Insufficient loyalty balance: requested {requested}, available {available}"
            )
        )


class ConcurrencyConflictError(LedgerError):
    """Raised when an operation loses every optimistic-locking retry."""

    code = "CONCURRENCY_CONFLICT"

    def __init__(self, operation: str, attempts: int):
        self.operation = operation
        self.attempts = attempts
        super().__init__(
            f"{operation} failed after {attempts} attempts due to concurrent modification",
            details={"attempts": attempts},
            public_message="Concurrent modification detected. Please retry."
        )
