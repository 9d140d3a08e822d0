from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from decimal import Decimal

from ledger.models import TransactionKind


# ============================================
# TRANSACTION REQUESTS
# ============================================
class LineItemCreate(BaseModel):
    quantity: Decimal  # Gallons for fuel; 1 for services
    unit_price: Decimal
    fuel_type: Optional[str] = None
    name: Optional[str] = None
    product_ref: Optional[str] = None
    tank_ref: Optional[str] = None


class TransactionCreate(BaseModel):
    kind: TransactionKind
    items: List[LineItemCreate]
    payment_method: str = "Cash"
    payment_status: Optional[str] = None  # Defaults to pending
    loyalty_points_redeemed: int = 0
    customer_ref: Optional[str] = None
    station_ref: Optional[str] = None
    notes: Optional[str] = None
    date: Optional[datetime] = None
    # Idempotency: a retried request with the same operation_id is applied once
    operation_id: Optional[str] = None


# ============================================
# LOYALTY REQUESTS
# ============================================
class RedeemRequest(BaseModel):
    points: int = Field(gt=0)
    description: Optional[str] = None


# ============================================
# INVENTORY REQUESTS
# ============================================
class FuelDeliveryCreate(BaseModel):
    amount: Decimal  # Gallons delivered
    supplier: Optional[str] = None
