"""
Transaction Ledger & Loyalty Accounting Core
"""
from .errors import (
    LedgerError,
    ValidationError,
    NotFoundError,
    InsufficientInventoryError,
    InsufficientBalanceError,
    ConcurrencyConflictError
)

from .financial_precision import (
    to_decimal,
    round2,
    quantize_quantity,
    floor_points
)

from .models import (
    TransactionKind,
    PaymentStatus,
    LoyaltyEntryType,
    TankStatus,
    MembershipLevel,
    LineItem,
    Transaction,
    FuelTank,
    LoyaltyAccount,
    LoyaltyEntry
)

from .line_items import build_item

from .loyalty_policy import (
    LoyaltyPolicy,
    DEFAULT_LOYALTY_RATES,
    redeem
)

from .transaction_composer import compose

from .state_machine import (
    StateMachine,
    InvalidTransitionError
)

from .payment_lifecycle import (
    mark_paid,
    mark_failed,
    refund,
    PaymentLifecycleService
)

from .ledger_store import (
    LedgerStore,
    LedgerSession,
    MongoLedgerStore
)

from .memory_store import InMemoryLedgerStore

from .consistency_coordinator import (
    ConsistencyCoordinator,
    commit
)

__all__ = [
    # Errors
    'LedgerError',
    'ValidationError',
    'NotFoundError',
    'InsufficientInventoryError',
    'InsufficientBalanceError',
    'ConcurrencyConflictError',
    'InvalidTransitionError',
    # Arithmetic
    'to_decimal',
    'round2',
    'quantize_quantity',
    'floor_points',
    # Models
    'TransactionKind',
    'PaymentStatus',
    'LoyaltyEntryType',
    'TankStatus',
    'MembershipLevel',
    'LineItem',
    'Transaction',
    'FuelTank',
    'LoyaltyAccount',
    'LoyaltyEntry',
    # Composition
    'build_item',
    'compose',
    'LoyaltyPolicy',
    'DEFAULT_LOYALTY_RATES',
    'redeem',
    # Payment lifecycle
    'StateMachine',
    'mark_paid',
    'mark_failed',
    'refund',
    'PaymentLifecycleService',
    # Storage & commit
    'LedgerStore',
    'LedgerSession',
    'MongoLedgerStore',
    'InMemoryLedgerStore',
    'ConsistencyCoordinator',
    'commit',
]
