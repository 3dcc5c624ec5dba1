"""
Transaction deduplication.

A gateway transaction reference may be applied to one payment per merchant
account. ``ensure_unique`` runs right before the ledger insert; the
``uq_payments_account_reference`` constraint catches whatever slips through
the window between the check and the commit.
"""
from typing import Optional

import structlog
from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payment_orchestrator.database.models import Payment
from payment_orchestrator.exceptions import DuplicateTransactionError
from payment_orchestrator.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

UNIQUE_REFERENCE_CONSTRAINT = "uq_payments_account_reference"


async def is_duplicate(db: AsyncSession, account_id: int, reference: Optional[str]) -> bool:
    """Whether any payment of the account already carries ``reference``."""
    if not reference:
        return False
    result = await db.execute(
        select(
            exists().where(
                Payment.account_id == account_id,
                Payment.transaction_reference == reference,
            )
        )
    )
    return bool(result.scalar())


async def ensure_unique(db: AsyncSession, account_id: int, reference: Optional[str]) -> None:
    """
    Raises:
        DuplicateTransactionError: If the reference was already processed
    """
    if await is_duplicate(db, account_id, reference):
        metrics.record_duplicate_transaction("check")
        logger.warning(
            "duplicate_transaction_rejected",
            account_id=account_id,
            transaction_reference=reference,
            source="check",
        )
        raise DuplicateTransactionError(account_id, reference or "")


def is_reference_violation(error: IntegrityError) -> bool:
    """
    Whether an IntegrityError came from the account/reference constraint.

    PostgreSQL reports the constraint name; SQLite only lists the columns.
    """
    message = str(error.orig)
    return UNIQUE_REFERENCE_CONSTRAINT in message or (
        "UNIQUE" in message and "payments.transaction_reference" in message
    )
