"""
CONSISTENCY COORDINATOR

Applies a composed Transaction's side effects in one atomic store session:

1. Fuel: per tank, check current_level >= requested quantity, then decrement
   (InsufficientInventoryError otherwise, never clamped)
2. Loyalty: credit loyalty_points_earned, then debit loyalty_points_redeemed
   (InsufficientBalanceError if the balance would go negative)
3. Persist the transaction (and the idempotency record, if a key was given)

Either every write of steps 1-3 lands or none does. Concurrent commits
touching the same tank or account are serialized by the store's version
check; the loser is re-run from a fresh read (bounded retries), so no
update is lost.

Usage:
    coordinator = ConsistencyCoordinator(store)
    committed = await coordinator.commit(tx, idempotency_key="pos-17-0042")
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Tuple, Union
import asyncio
import logging

from bson import ObjectId

from ledger.config import DEFAULT_TAX_RATE
from ledger.errors import InsufficientInventoryError, NotFoundError, ValidationError
from ledger.financial_precision import Numeric, safe_add, validate_non_negative, validate_positive
from ledger.idempotency import ensure_idempotent, normalize_operation_id, record_operation
from ledger.invariant_validator import validate_transaction_invariants, validate_transaction_pricing
from ledger.ledger_store import LedgerSession, LedgerStore, run_atomic
from ledger.loyalty_policy import LoyaltyPolicy, as_policy, credit, redeem
from ledger.models import (
    FuelTank,
    LineItem,
    LoyaltyAccount,
    LoyaltyEntry,
    LoyaltyEntryType,
    TankStatus,
    Transaction,
    TransactionKind,
)

logger = logging.getLogger(__name__)


class ConsistencyCoordinator:
    """Atomic commit of transactions against fuel tanks and loyalty accounts."""

    def __init__(
        self,
        store: LedgerStore,
        max_retries: int = 5,
        retry_delay_ms: int = 100,
        tax_rate: Numeric = DEFAULT_TAX_RATE,
        loyalty_policy: Optional[LoyaltyPolicy] = None
    ):
        self.store = store
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        # Rates a transaction must have been priced with to be committed
        self.tax_rate = validate_non_negative(tax_rate, "tax_rate")
        self.loyalty_policy = as_policy(loyalty_policy)

    async def _run(self, operation, label: str):
        return await run_atomic(
            self.store,
            operation,
            label=label,
            max_retries=self.max_retries,
            retry_delay_ms=self.retry_delay_ms
        )

    # =========================================================================
    # COMMIT
    # =========================================================================

    async def commit(
        self,
        transaction: Transaction,
        idempotency_key: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> Transaction:
        """
        Commit a composed transaction.

        Args:
            transaction: Unsaved Transaction from compose()
            idempotency_key: Optional caller key; a repeated key returns the
                already committed transaction without applying anything
            timeout: Seconds before the commit is abandoned (asyncio.TimeoutError);
                an abandoned commit leaves no effects

        Raises:
            ValidationError: broken arithmetic, or figures that do not match
                this coordinator's tax rate and loyalty policy
            InsufficientInventoryError, InsufficientBalanceError,
            ConcurrencyConflictError
        """
        if transaction.is_committed:
            raise ValidationError(
                f"Transaction {transaction.transaction_id} is already committed",
                public_message="Transaction is already committed"
            )
        validate_transaction_invariants(transaction)
        validate_transaction_pricing(transaction, self.tax_rate, self.loyalty_policy)
        if transaction.loyalty_points_redeemed > 0 and not transaction.customer_ref:
            raise ValidationError(
                "Redeeming loyalty points requires a customer",
                details={"field": "customer_ref"}
            )

        operation_id = normalize_operation_id(idempotency_key) if idempotency_key is not None else None

        async def operation(session: LedgerSession) -> Tuple[Transaction, List[FuelTank]]:
            if operation_id is not None:
                check = await ensure_idempotent(session, operation_id)
                if check.is_duplicate:
                    existing = await session.get_transaction(check.transaction_id)
                    if existing is None:
                        raise NotFoundError("Transaction", check.transaction_id)
                    return existing, []

            now = datetime.utcnow()
            transaction_id = str(ObjectId())

            low_tanks: List[FuelTank] = []
            if transaction.kind == TransactionKind.FUEL:
                low_tanks = await self._draw_fuel(session, transaction, now)

            await self._apply_loyalty(session, transaction, transaction_id, now)

            saved = await session.save_transaction(transaction.model_copy(update={
                "transaction_id": transaction_id,
                "date": transaction.date or now,
                "idempotency_key": operation_id,
                "created_at": now,
                "updated_at": now
            }))

            if operation_id is not None:
                await record_operation(session, operation_id, transaction_id)
            return saved, low_tanks

        pending = self._run(operation, label=f"commit {transaction.kind.value} transaction")
        if timeout is not None:
            committed, low_tanks = await asyncio.wait_for(pending, timeout)
        else:
            committed, low_tanks = await pending

        for tank in low_tanks:
            log = logger.warning if tank.status == TankStatus.LOW else logger.error
            log(
                f"[LEDGER] Tank {tank.tank_id} ({tank.fuel_type}) is {tank.status.value}, below minimum level: "
                f"{tank.current_level} < {tank.minimum_level}"
            )
        logger.info(
            f"[LEDGER] Committed {committed.kind.value} transaction {committed.transaction_id}: "
            f"total={committed.total} status={committed.payment_status.value}"
        )
        return committed

    async def _resolve_tank(self, session: LedgerSession, item: LineItem, station_ref: Optional[str]) -> FuelTank:
        if item.tank_ref:
            tank = await session.get_tank(item.tank_ref)
            if tank is not None and tank.fuel_type != item.fuel_type:
                raise ValidationError(
                    f"Tank {item.tank_ref} holds {tank.fuel_type}, not {item.fuel_type}",
                    details={"field": "tank_ref"},
                    public_message=f"Selected tank does not hold {item.fuel_type}"
                )
        else:
            tank = await session.find_tank(item.fuel_type, station_ref)

        if tank is None:
            raise ValidationError(
                f"No {item.fuel_type} tank found (tank_ref={item.tank_ref}, station={station_ref})",
                details={"field": "items"},
                public_message=f"No {item.fuel_type} tank available"
            )
        return tank

    async def _draw_fuel(self, session: LedgerSession, transaction: Transaction, now: datetime) -> List[FuelTank]:
        # tank_id -> (tank, total requested); insertion order follows the items
        draws: Dict[str, Tuple[FuelTank, Decimal]] = {}
        for item in transaction.items:
            tank = await self._resolve_tank(session, item, transaction.station_ref)
            _, requested = draws.get(tank.tank_id, (tank, Decimal('0')))
            draws[tank.tank_id] = (tank, safe_add(requested, item.quantity))

        low_tanks = []
        for tank, requested in draws.values():
            if tank.current_level < requested:
                raise InsufficientInventoryError(
                    tank_id=tank.tank_id,
                    fuel_type=tank.fuel_type,
                    requested=requested,
                    available=tank.current_level
                )
            saved = await session.save_tank(tank.model_copy(update={
                "current_level": tank.current_level - requested,
                "last_updated": now
            }))
            logger.debug(f"[LEDGER] Tank {saved.tank_id}: dispensed {requested}, level now {saved.current_level}")
            if saved.status != TankStatus.AVAILABLE:
                low_tanks.append(saved)
        return low_tanks

    async def _apply_loyalty(
        self,
        session: LedgerSession,
        transaction: Transaction,
        transaction_id: str,
        now: datetime
    ) -> None:
        earned = transaction.loyalty_points_earned
        redeemed = transaction.loyalty_points_redeemed
        if not transaction.customer_ref or (earned == 0 and redeemed == 0):
            return

        customer_ref = transaction.customer_ref
        account = await session.get_account(customer_ref) or LoyaltyAccount(customer_ref=customer_ref)

        entries = []
        if earned > 0:
            account = credit(account, earned)
            entries.append((LoyaltyEntryType.EARN, earned, account.points_balance,
                            f"Earned on {transaction.kind.value} purchase"))
        if redeemed > 0:
            account = redeem(account, redeemed)
            entries.append((LoyaltyEntryType.REDEEM, -redeemed, account.points_balance,
                            f"Redeemed on {transaction.kind.value} purchase"))

        await session.save_account(account)
        for entry_type, points, balance, description in entries:
            await session.append_loyalty_entry(LoyaltyEntry(
                entry_id=str(ObjectId()),
                customer_ref=customer_ref,
                entry_type=entry_type,
                points=points,
                balance=balance,
                source="transaction",
                description=description,
                related_transaction_ref=transaction_id,
                staff_ref=transaction.employee_ref,
                date=now
            ))

    # =========================================================================
    # INVENTORY & LOYALTY OPERATIONS
    # =========================================================================

    async def receive_fuel_delivery(
        self,
        tank_id: str,
        amount: Numeric,
        supplier: Optional[str] = None
    ) -> FuelTank:
        """
        Add delivered fuel to a tank.

        Raises:
            ValidationError: amount <= 0 or the tank would exceed capacity
            NotFoundError: unknown tank
        """
        delivered = validate_positive(amount, "amount")

        async def operation(session: LedgerSession) -> FuelTank:
            tank = await session.get_tank(tank_id)
            if tank is None:
                raise NotFoundError("Fuel tank", tank_id)

            new_level = tank.current_level + delivered
            if new_level > tank.capacity:
                raise ValidationError(
                    f"Delivery of {delivered} would overfill tank {tank_id}: "
                    f"{new_level} > capacity {tank.capacity}",
                    details={"field": "amount"},
                    public_message=(
                        f"Delivery exceeds tank capacity: {tank.capacity - tank.current_level} available"
                    )
                )

            now = datetime.utcnow()
            update = {"current_level": new_level, "last_delivery": now, "last_updated": now}
            if supplier:
                update["supplier"] = supplier
            return await session.save_tank(tank.model_copy(update=update))

        tank = await self._run(operation, label=f"fuel delivery to tank {tank_id}")
        logger.info(f"[LEDGER] Tank {tank.tank_id} received {delivered}, level now {tank.current_level}")
        return tank

    async def redeem_points(
        self,
        customer_ref: str,
        points: int,
        staff_ref: Optional[str] = None,
        description: Optional[str] = None
    ) -> LoyaltyAccount:
        """Standalone redemption outside a sale. InsufficientBalanceError leaves the account untouched."""

        async def operation(session: LedgerSession) -> LoyaltyAccount:
            account = await session.get_account(customer_ref)
            if account is None:
                raise NotFoundError("Loyalty account", customer_ref)

            saved = await session.save_account(redeem(account, points))
            await session.append_loyalty_entry(LoyaltyEntry(
                entry_id=str(ObjectId()),
                customer_ref=customer_ref,
                entry_type=LoyaltyEntryType.REDEEM,
                points=-points,
                balance=saved.points_balance,
                source="redemption",
                description=description or f"Redeemed {points} points",
                staff_ref=staff_ref,
                date=datetime.utcnow()
            ))
            return saved

        account = await self._run(operation, label=f"redeem points for {customer_ref}")
        logger.info(f"[LEDGER] Customer {customer_ref} redeemed {points} points, balance {account.points_balance}")
        return account

    # =========================================================================
    # READS
    # =========================================================================

    async def get_transaction(self, transaction_id: str) -> Transaction:
        async with self.store.session() as session:
            transaction = await session.get_transaction(transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction", transaction_id)
        return transaction

    async def get_account(self, customer_ref: str) -> LoyaltyAccount:
        """Accounts are created on first accrual; an unknown customer reads as zero points."""
        async with self.store.session() as session:
            account = await session.get_account(customer_ref)
        return account or LoyaltyAccount(customer_ref=customer_ref)

    async def list_loyalty_entries(self, customer_ref: str) -> List[LoyaltyEntry]:
        async with self.store.session() as session:
            return await session.list_loyalty_entries(customer_ref)


async def commit(
    transaction: Transaction,
    store: LedgerStore,
    idempotency_key: Optional[str] = None,
    timeout: Optional[float] = None,
    max_retries: int = 5,
    retry_delay_ms: int = 100,
    tax_rate: Numeric = DEFAULT_TAX_RATE,
    loyalty_rates: Union[None, LoyaltyPolicy, Mapping] = None
) -> Transaction:
    """Commit `transaction` against `store`. See ConsistencyCoordinator.commit."""
    coordinator = ConsistencyCoordinator(
        store,
        max_retries=max_retries,
        retry_delay_ms=retry_delay_ms,
        tax_rate=tax_rate,
        loyalty_policy=as_policy(loyalty_rates)
    )
    return await coordinator.commit(transaction, idempotency_key=idempotency_key, timeout=timeout)
