"""
PAYMENT & FULFILLMENT STATE MACHINE

Transaction payment lifecycle:

    pending -> paid -> refunded
    pending -> failed

`failed` and `refunded` are terminal.

Pure transitions (mark_paid / mark_failed / refund) only move the status.
PaymentLifecycleService persists them and applies the refund side effect:
- the customer's balance loses loyalty_points_earned (clamped at zero),
  recorded as an `adjust` loyalty entry
- a fuel tank is never restocked: dispensed fuel does not go back
  into the tank, so inventory is deliberately left as is
"""

from datetime import datetime
from typing import Callable, Optional
import logging

from bson import ObjectId

from ledger.errors import NotFoundError
from ledger.ledger_store import LedgerSession, LedgerStore, run_atomic
from ledger.loyalty_policy import reverse_points
from ledger.models import LoyaltyEntry, LoyaltyEntryType, PaymentStatus, Transaction
from ledger.state_machine import StateMachine

logger = logging.getLogger(__name__)


def create_payment_state_machine() -> StateMachine:
    """States: pending -> {paid, failed}; paid -> refunded."""
    machine = StateMachine("transaction", status_field="payment_status", history_field="status_history")
    machine.register(PaymentStatus.PENDING, PaymentStatus.PAID, description="Payment captured")
    machine.register(PaymentStatus.PENDING, PaymentStatus.FAILED, description="Payment declined")
    machine.register(PaymentStatus.PAID, PaymentStatus.REFUNDED, description="Payment refunded")
    return machine


payment_state_machine = create_payment_state_machine()


def mark_paid(transaction: Transaction, actor_ref: Optional[str] = None) -> Transaction:
    """pending -> paid, else InvalidTransitionError."""
    return payment_state_machine.transition(transaction, PaymentStatus.PAID, actor_ref)


def mark_failed(transaction: Transaction, actor_ref: Optional[str] = None) -> Transaction:
    """pending -> failed, else InvalidTransitionError."""
    return payment_state_machine.transition(transaction, PaymentStatus.FAILED, actor_ref)


def refund(transaction: Transaction, actor_ref: Optional[str] = None) -> Transaction:
    """paid -> refunded, else InvalidTransitionError. Status only; see PaymentLifecycleService.refund."""
    return payment_state_machine.transition(transaction, PaymentStatus.REFUNDED, actor_ref)


class PaymentLifecycleService:
    """Store-backed payment transitions with optimistic version checks."""

    def __init__(self, store: LedgerStore, max_retries: int = 5, retry_delay_ms: int = 100):
        self.store = store
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms

    async def _transition(
        self,
        transaction_id: str,
        label: str,
        move: Callable[[Transaction, Optional[str]], Transaction],
        actor_ref: Optional[str],
        on_applied: Optional[Callable] = None
    ) -> Transaction:
        async def operation(session: LedgerSession) -> Transaction:
            current = await session.get_transaction(transaction_id)
            if current is None:
                raise NotFoundError("Transaction", transaction_id)
            updated = await session.save_transaction(move(current, actor_ref))
            if on_applied is not None:
                await on_applied(session, updated, actor_ref)
            return updated

        result = await run_atomic(
            self.store,
            operation,
            label=f"{label} transaction {transaction_id}",
            max_retries=self.max_retries,
            retry_delay_ms=self.retry_delay_ms
        )
        logger.info(f"[LEDGER] Transaction {transaction_id} is now {result.payment_status.value}")
        return result

    async def mark_paid(self, transaction_id: str, actor_ref: Optional[str] = None) -> Transaction:
        return await self._transition(transaction_id, "mark_paid", mark_paid, actor_ref)

    async def mark_failed(self, transaction_id: str, actor_ref: Optional[str] = None) -> Transaction:
        return await self._transition(transaction_id, "mark_failed", mark_failed, actor_ref)

    async def refund(self, transaction_id: str, actor_ref: Optional[str] = None) -> Transaction:
        """paid -> refunded, reversing the earned loyalty points. Tanks are not restocked."""
        return await self._transition(
            transaction_id, "refund", refund, actor_ref, on_applied=self._reverse_loyalty
        )

    async def _reverse_loyalty(self, session: LedgerSession, transaction: Transaction, actor_ref: Optional[str]):
        if not transaction.customer_ref or transaction.loyalty_points_earned <= 0:
            return

        account = await session.get_account(transaction.customer_ref)
        if account is None:
            logger.warning(
                f"[LEDGER] Refund of {transaction.transaction_id}: no loyalty account to reverse points on"
            )
            return

        reversed_account = reverse_points(account, transaction.loyalty_points_earned)
        taken = account.points_balance - reversed_account.points_balance
        saved = await session.save_account(reversed_account)

        await session.append_loyalty_entry(LoyaltyEntry(
            entry_id=str(ObjectId()),
            customer_ref=transaction.customer_ref,
            entry_type=LoyaltyEntryType.ADJUST,
            points=-taken,
            balance=saved.points_balance,
            source="refund",
            description=f"Reversal of {transaction.loyalty_points_earned} points earned on refunded sale",
            related_transaction_ref=transaction.transaction_id,
            staff_ref=actor_ref,
            date=datetime.utcnow()
        ))
