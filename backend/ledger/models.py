from pydantic import BaseModel, Field, computed_field
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
from enum import Enum


class TransactionKind(str, Enum):
    FUEL = "fuel"
    PRODUCT = "product"
    SERVICE = "service"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class LoyaltyEntryType(str, Enum):
    EARN = "earn"
    REDEEM = "redeem"
    ADJUST = "adjust"


class TankStatus(str, Enum):
    OFFLINE = "offline"  # empty
    CRITICAL = "critical"  # below half the minimum level
    LOW = "low"
    AVAILABLE = "available"


class MembershipLevel(str, Enum):
    BASIC = "basic"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


# Lowest balance for each tier, highest first
MEMBERSHIP_THRESHOLDS = [
    (5000, MembershipLevel.PLATINUM),
    (2000, MembershipLevel.GOLD),
    (1000, MembershipLevel.SILVER),
]


# ============================================
# LINE ITEM
# ============================================
class LineItem(BaseModel):
    kind: TransactionKind
    quantity: Decimal  # Must be > 0; always 1 for services
    unit_price: Decimal  # Must be >= 0
    total: Decimal  # round2(quantity * unit_price)
    fuel_type: Optional[str] = None  # Required for fuel
    name: Optional[str] = None  # name or product_ref required for products
    product_ref: Optional[str] = None
    tank_ref: Optional[str] = None  # Pins a fuel item to one tank

    class Config:
        frozen = True


# ============================================
# STATUS HISTORY
# ============================================
class StatusHistoryEntry(BaseModel):
    from_state: PaymentStatus
    to_state: PaymentStatus
    transitioned_at: datetime
    transitioned_by: Optional[str] = None

    class Config:
        frozen = True


# ============================================
# TRANSACTION
# ============================================
class Transaction(BaseModel):
    transaction_id: Optional[str] = None  # Assigned on commit
    kind: TransactionKind
    items: List[LineItem]
    date: Optional[datetime] = None  # Defaults to commit time
    subtotal: Decimal
    tax: Decimal
    total: Decimal  # subtotal + tax
    payment_method: str
    payment_status: PaymentStatus = PaymentStatus.PENDING
    loyalty_points_earned: int = 0
    loyalty_points_redeemed: int = 0
    # Weak references: ids resolved through the store, never embedded
    customer_ref: Optional[str] = None
    employee_ref: Optional[str] = None
    station_ref: Optional[str] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    version: int = 0  # 0 = never persisted
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        frozen = True

    @property
    def is_committed(self) -> bool:
        return self.transaction_id is not None


# ============================================
# FUEL TANK
# ============================================
class FuelTank(BaseModel):
    tank_id: str
    fuel_type: str
    tank_number: int
    station_ref: Optional[str] = None
    current_level: Decimal  # 0 <= current_level <= capacity
    capacity: Decimal
    minimum_level: Decimal = Decimal('100')
    price_per_gallon: Optional[Decimal] = None
    supplier: Optional[str] = None
    last_delivery: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    version: int = 0

    class Config:
        frozen = True

    @property
    def is_below_minimum(self) -> bool:
        return self.current_level < self.minimum_level

    @computed_field
    @property
    def status(self) -> TankStatus:
        if self.current_level <= 0:
            return TankStatus.OFFLINE
        if self.current_level < self.minimum_level * Decimal('0.5'):
            return TankStatus.CRITICAL
        if self.is_below_minimum:
            return TankStatus.LOW
        return TankStatus.AVAILABLE


# ============================================
# LOYALTY
# ============================================
class LoyaltyAccount(BaseModel):
    customer_ref: str
    points_balance: int = 0  # Never negative
    version: int = 0
    updated_at: Optional[datetime] = None

    class Config:
        frozen = True

    @computed_field
    @property
    def membership_level(self) -> MembershipLevel:
        """Tier follows the current balance, so spending or reversals can lower it."""
        for threshold, level in MEMBERSHIP_THRESHOLDS:
            if self.points_balance >= threshold:
                return level
        return MembershipLevel.BASIC


class LoyaltyEntry(BaseModel):
    entry_id: str
    customer_ref: str
    entry_type: LoyaltyEntryType
    points: int  # Signed change applied to the balance
    balance: int  # Balance after this entry
    source: str  # transaction, refund, redemption
    description: str
    related_transaction_ref: Optional[str] = None
    staff_ref: Optional[str] = None
    date: datetime

    class Config:
        frozen = True
