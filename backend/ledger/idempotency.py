"""
IDEMPOTENCY HELPER

Centralizes operation_id handling for ledger writes.

A caller that may retry a commit (network timeout, client crash) sends the
same operation_id each time. The first successful commit records
operation_id -> transaction_id in mutation_operation_logs inside the same
atomic unit as its effects; later attempts find the record and get the
stored transaction back instead of applying the sale twice.

Usage (inside a store session):
    result = await ensure_idempotent(session, operation_id)
    if result.is_duplicate:
        return await session.get_transaction(result.transaction_id)
    ...
    await record_operation(session, result.operation_id, transaction_id)
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import logging

from ledger.errors import ValidationError
from ledger.ledger_store import OPERATION_LOGS, LedgerSession

logger = logging.getLogger(__name__)

MAX_OPERATION_ID_LENGTH = 128


@dataclass
class IdempotencyResult:
    """Result of idempotency check"""
    operation_id: str
    is_duplicate: bool
    transaction_id: Optional[str] = None


def normalize_operation_id(operation_id: str) -> str:
    if not isinstance(operation_id, str) or not operation_id.strip():
        raise ValidationError("operation_id must be a non-empty string", details={"field": "operation_id"})
    operation_id = operation_id.strip()
    if len(operation_id) > MAX_OPERATION_ID_LENGTH:
        raise ValidationError(
            f"operation_id longer than {MAX_OPERATION_ID_LENGTH} characters",
            details={"field": "operation_id"}
        )
    return operation_id


async def ensure_idempotent(session: LedgerSession, operation_id: str) -> IdempotencyResult:
    """
    Check whether `operation_id` was already applied.

    Returns:
        IdempotencyResult with is_duplicate and the transaction it produced
    """
    op_id = normalize_operation_id(operation_id)
    existing = await session.fetch(OPERATION_LOGS, op_id)

    if existing and existing.get("applied_flag", False):
        logger.info(
            f"[IDEMPOTENT] Duplicate operation detected: {op_id} "
            f"-> transaction {existing.get('transaction_id')}"
        )
        return IdempotencyResult(
            operation_id=op_id,
            is_duplicate=True,
            transaction_id=existing.get("transaction_id")
        )

    logger.debug(f"[IDEMPOTENT] New operation: {op_id}")
    return IdempotencyResult(operation_id=op_id, is_duplicate=False)


async def record_operation(session: LedgerSession, operation_id: str, transaction_id: str) -> None:
    """
    Record successful application. Inserting with version 0 makes a second
    concurrent writer of the same operation_id lose with a version conflict.
    """
    await session.put(
        OPERATION_LOGS,
        operation_id,
        {
            "operation_id": operation_id,
            "entity_type": "TRANSACTION",
            "transaction_id": transaction_id,
            "applied_flag": True,
            "created_at": datetime.utcnow()
        },
        0
    )
    logger.info(f"[IDEMPOTENT] Recorded operation: {operation_id} -> transaction {transaction_id}")
