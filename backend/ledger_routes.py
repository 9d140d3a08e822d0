"""
LEDGER API ROUTES

Thin HTTP adapter over the ledger core:
- compose (preview) and compose + commit of sales
- payment lifecycle transitions (pay / fail / refund)
- loyalty balance, history and standalone redemption
- fuel deliveries

The authenticated actor id becomes employee_ref / staff_ref; the routes
perform no other authentication work.

Error mapping (LedgerError -> HTTP):
    ValidationError               400
    NotFoundError                 404
    InvalidTransitionError        409
    ConcurrencyConflictError      409
    InsufficientInventoryError    422
    InsufficientBalanceError      422
Response detail: {"error": <code>, "message": <public message>}
"""

from fastapi import APIRouter, HTTPException, Request, status, Depends
from typing import Any, Dict, List
import logging

from auth import get_current_actor
from api_models import TransactionCreate, RedeemRequest, FuelDeliveryCreate
from ledger.config import LedgerSettings
from ledger.consistency_coordinator import ConsistencyCoordinator
from ledger.errors import (
    LedgerError,
    ValidationError,
    NotFoundError,
    InsufficientInventoryError,
    InsufficientBalanceError,
    ConcurrencyConflictError
)
from ledger.ledger_store import LedgerStore
from ledger.line_items import build_item
from ledger.models import Transaction
from ledger.payment_lifecycle import PaymentLifecycleService
from ledger.policy_service import LedgerPolicyService
from ledger.state_machine import InvalidTransitionError
from ledger.transaction_composer import compose

logger = logging.getLogger(__name__)

ledger_router = APIRouter(prefix="/api/ledger", tags=["Ledger"])


ERROR_STATUS = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (ConcurrencyConflictError, status.HTTP_409_CONFLICT),
    (InsufficientInventoryError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InsufficientBalanceError, status.HTTP_422_UNPROCESSABLE_ENTITY),
]


def ledger_http_error(error: LedgerError) -> HTTPException:
    """Translate a ledger rejection; internal identifiers stay in the log."""
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            status_code = code
            break

    logger.info(f"[LEDGER] Rejected with {error.code}: {error.message}")
    return HTTPException(
        status_code=status_code,
        detail={"error": error.code, "message": error.public_message}
    )


# ============================================
# DEPENDENCIES
# ============================================

def get_ledger_store(request: Request) -> LedgerStore:
    return request.app.state.ledger_store


def get_ledger_settings(request: Request) -> LedgerSettings:
    return request.app.state.ledger_settings


def get_policy_service(request: Request) -> LedgerPolicyService:
    return request.app.state.policy_service


async def get_coordinator(
    store: LedgerStore = Depends(get_ledger_store),
    settings: LedgerSettings = Depends(get_ledger_settings),
    policy: LedgerPolicyService = Depends(get_policy_service)
) -> ConsistencyCoordinator:
    try:
        tax_rate = await policy.get_tax_rate()
        loyalty_policy = await policy.get_loyalty_policy()
    except LedgerError as e:
        raise ledger_http_error(e)
    return ConsistencyCoordinator(
        store,
        max_retries=settings.commit_max_retries,
        retry_delay_ms=settings.commit_retry_delay_ms,
        tax_rate=tax_rate,
        loyalty_policy=loyalty_policy
    )


def get_payment_service(
    store: LedgerStore = Depends(get_ledger_store),
    settings: LedgerSettings = Depends(get_ledger_settings)
) -> PaymentLifecycleService:
    return PaymentLifecycleService(
        store,
        max_retries=settings.commit_max_retries,
        retry_delay_ms=settings.commit_retry_delay_ms
    )


def serialize_transaction(transaction: Transaction) -> Dict[str, Any]:
    """JSON-safe dict; Decimal amounts become exact strings."""
    return transaction.model_dump(mode="json")


async def compose_from_request(
    data: TransactionCreate,
    actor_id: str,
    policy: LedgerPolicyService,
    settings: LedgerSettings
) -> Transaction:
    items = [
        build_item(
            data.kind,
            quantity=item.quantity,
            unit_price=item.unit_price,
            fuel_type=item.fuel_type,
            name=item.name,
            product_ref=item.product_ref,
            tank_ref=item.tank_ref,
            quantity_places=settings.quantity_places
        )
        for item in data.items
    ]
    return compose(
        data.kind,
        items,
        await policy.get_tax_rate(),
        await policy.get_loyalty_policy(),
        payment_method=data.payment_method,
        payment_status=data.payment_status,
        customer_ref=data.customer_ref,
        employee_ref=actor_id,
        station_ref=data.station_ref,
        loyalty_points_redeemed=data.loyalty_points_redeemed,
        notes=data.notes,
        date=data.date
    )


# ============================================
# TRANSACTION ENDPOINTS
# ============================================

@ledger_router.post("/transactions/preview")
async def preview_transaction(
    data: TransactionCreate,
    actor_id: str = Depends(get_current_actor),
    policy: LedgerPolicyService = Depends(get_policy_service),
    settings: LedgerSettings = Depends(get_ledger_settings)
):
    """Price a sale without touching inventory or loyalty balances"""
    try:
        transaction = await compose_from_request(data, actor_id, policy, settings)
    except LedgerError as e:
        raise ledger_http_error(e)
    return serialize_transaction(transaction)


@ledger_router.post("/transactions", status_code=status.HTTP_201_CREATED)
async def create_transaction(
    data: TransactionCreate,
    actor_id: str = Depends(get_current_actor),
    policy: LedgerPolicyService = Depends(get_policy_service),
    settings: LedgerSettings = Depends(get_ledger_settings),
    coordinator: ConsistencyCoordinator = Depends(get_coordinator)
):
    """
    Compose and commit a sale.
    IDEMPOTENT: a repeated operation_id returns the original transaction.
    """
    try:
        transaction = await compose_from_request(data, actor_id, policy, settings)
        committed = await coordinator.commit(transaction, idempotency_key=data.operation_id)
    except LedgerError as e:
        raise ledger_http_error(e)
    return serialize_transaction(committed)


@ledger_router.get("/transactions/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    actor_id: str = Depends(get_current_actor),
    coordinator: ConsistencyCoordinator = Depends(get_coordinator)
):
    try:
        transaction = await coordinator.get_transaction(transaction_id)
    except LedgerError as e:
        raise ledger_http_error(e)
    return serialize_transaction(transaction)


@ledger_router.post("/transactions/{transaction_id}/pay")
async def pay_transaction(
    transaction_id: str,
    actor_id: str = Depends(get_current_actor),
    payments: PaymentLifecycleService = Depends(get_payment_service)
):
    """pending -> paid"""
    try:
        transaction = await payments.mark_paid(transaction_id, actor_ref=actor_id)
    except LedgerError as e:
        raise ledger_http_error(e)
    return serialize_transaction(transaction)


@ledger_router.post("/transactions/{transaction_id}/fail")
async def fail_transaction(
    transaction_id: str,
    actor_id: str = Depends(get_current_actor),
    payments: PaymentLifecycleService = Depends(get_payment_service)
):
    """pending -> failed"""
    try:
        transaction = await payments.mark_failed(transaction_id, actor_ref=actor_id)
    except LedgerError as e:
        raise ledger_http_error(e)
    return serialize_transaction(transaction)


@ledger_router.post("/transactions/{transaction_id}/refund")
async def refund_transaction(
    transaction_id: str,
    actor_id: str = Depends(get_current_actor),
    payments: PaymentLifecycleService = Depends(get_payment_service)
):
    """paid -> refunded; earned points are reversed, fuel is not restocked"""
    try:
        transaction = await payments.refund(transaction_id, actor_ref=actor_id)
    except LedgerError as e:
        raise ledger_http_error(e)
    return serialize_transaction(transaction)


# ============================================
# LOYALTY ENDPOINTS
# ============================================

@ledger_router.get("/loyalty/{customer_ref}")
async def get_loyalty_account(
    customer_ref: str,
    actor_id: str = Depends(get_current_actor),
    coordinator: ConsistencyCoordinator = Depends(get_coordinator)
):
    account = await coordinator.get_account(customer_ref)
    return account.model_dump(mode="json")


@ledger_router.get("/loyalty/{customer_ref}/entries")
async def get_loyalty_entries(
    customer_ref: str,
    actor_id: str = Depends(get_current_actor),
    coordinator: ConsistencyCoordinator = Depends(get_coordinator)
) -> List[Dict[str, Any]]:
    """Loyalty history, oldest first"""
    entries = await coordinator.list_loyalty_entries(customer_ref)
    return [entry.model_dump(mode="json") for entry in entries]


@ledger_router.post("/loyalty/{customer_ref}/redeem")
async def redeem_loyalty_points(
    customer_ref: str,
    data: RedeemRequest,
    actor_id: str = Depends(get_current_actor),
    coordinator: ConsistencyCoordinator = Depends(get_coordinator)
):
    try:
        account = await coordinator.redeem_points(
            customer_ref,
            data.points,
            staff_ref=actor_id,
            description=data.description
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return account.model_dump(mode="json")


# ============================================
# INVENTORY ENDPOINTS
# ============================================

@ledger_router.post("/tanks/{tank_id}/deliveries")
async def receive_fuel_delivery(
    tank_id: str,
    data: FuelDeliveryCreate,
    actor_id: str = Depends(get_current_actor),
    coordinator: ConsistencyCoordinator = Depends(get_coordinator)
):
    try:
        tank = await coordinator.receive_fuel_delivery(tank_id, data.amount, supplier=data.supplier)
    except LedgerError as e:
        raise ledger_http_error(e)
    return tank.model_dump(mode="json")
