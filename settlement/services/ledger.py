from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from settlement.models import Transaction, TransactionStatus, TransactionSource
from settlement.utils.exceptions import LedgerConflict, TransactionNotFoundException
from settlement.utils.logger import logger


@dataclass
class LedgerWrite:
    """Result of a ledger write; ``created`` is False when an existing row was returned."""

    transaction: Transaction
    created: bool


async def get_transaction(transaction_id: str, session: AsyncSession) -> Transaction:
    """Get transaction by id."""
    transaction = await session.get(Transaction, transaction_id)

    if not transaction:
        raise TransactionNotFoundException()

    return transaction


async def get_paid_transaction(job_id: str, session: AsyncSession) -> Optional[Transaction]:
    """Get the single paid transaction for a job, if any."""
    result = await session.execute(
        select(Transaction).where(
            Transaction.job_id == job_id,
            Transaction.payout_status.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def list_transactions_for_job(job_id: str, session: AsyncSession) -> List[Transaction]:
    result = await session.execute(
        select(Transaction)
        .where(Transaction.job_id == job_id)
        .order_by(Transaction.created_at)
    )
    return list(result.scalars().all())


async def _claim_paid(
    job_id: str,
    amount: Decimal,
    commission: Decimal,
    gateway_reference: str,
    source: TransactionSource,
    session: AsyncSession,
) -> Transaction:
    """
    Flip or insert the paid row for a job.

    Raises:
        LedgerConflict: the job is already paid
        IntegrityError: a concurrent writer won the unique index
    """
    existing = await get_paid_transaction(job_id, session)
    if existing:
        raise LedgerConflict(job_id, existing.id)

    # An unpaid audit row for the same charge is upgraded in place.
    result = await session.execute(
        select(Transaction.id)
        .where(
            Transaction.job_id == job_id,
            Transaction.gateway_reference == gateway_reference,
            Transaction.payout_status.is_(False),
        )
        .order_by(Transaction.created_at)
        .limit(1)
    )
    candidate_id = result.scalar_one_or_none()

    if candidate_id:
        updated = await session.execute(
            update(Transaction)
            .where(Transaction.id == candidate_id, Transaction.payout_status.is_(False))
            .values(payout_status=True, status=TransactionStatus.COMPLETED)
        )
        await session.commit()
        if updated.rowcount == 1:
            return await session.get(Transaction, candidate_id, populate_existing=True)

        existing = await get_paid_transaction(job_id, session)
        if existing:
            raise LedgerConflict(job_id, existing.id)

    transaction = Transaction(
        job_id=job_id,
        amount=amount,
        commission=commission,
        gateway_reference=gateway_reference,
        payout_status=True,
        status=TransactionStatus.COMPLETED,
        source=source,
    )
    session.add(transaction)
    await session.commit()
    return transaction


async def record_paid(
    job_id: str,
    amount: Decimal,
    commission: Decimal,
    gateway_reference: str,
    source: TransactionSource,
    session: AsyncSession,
) -> LedgerWrite:
    """
    Record a paid transaction for a job, at most once.

    A second attempt for the same job returns the existing paid row
    instead of creating another one. Commits the session.

    Args:
        job_id: Unit of work being paid for
        amount: Gross amount charged
        commission: Platform fee, fixed at settlement time
        gateway_reference: Payment intent id
        source: Which path is writing
        session: AsyncSession

    Returns:
        LedgerWrite with the paid transaction
    """
    try:
        transaction = await _claim_paid(
            job_id, amount, commission, gateway_reference, source, session
        )
    except LedgerConflict as conflict:
        transaction = await session.get(Transaction, conflict.transaction_id)
        logger.info(
            "Job already paid, returning existing transaction",
            extra={"job_id": job_id, "transaction_id": conflict.transaction_id},
        )
        return LedgerWrite(transaction=transaction, created=False)
    except IntegrityError:
        await session.rollback()
        transaction = await get_paid_transaction(job_id, session)
        if transaction is None:
            raise
        logger.info(
            "Concurrent paid write lost the race, returning winner",
            extra={"job_id": job_id, "transaction_id": transaction.id},
        )
        return LedgerWrite(transaction=transaction, created=False)

    logger.info(
        "Paid transaction recorded",
        extra={
            "job_id": job_id,
            "transaction_id": transaction.id,
            "amount": str(amount),
            "reference": gateway_reference,
        },
    )
    return LedgerWrite(transaction=transaction, created=True)


async def record_unpaid(
    job_id: str,
    amount: Decimal,
    commission: Decimal,
    gateway_reference: str,
    status: TransactionStatus,
    source: TransactionSource,
    session: AsyncSession,
) -> LedgerWrite:
    """Record an auditable transaction that has no positive payment confirmation."""
    result = await session.execute(
        select(Transaction).where(
            Transaction.job_id == job_id,
            Transaction.gateway_reference == gateway_reference,
        )
    )
    existing = result.scalars().first()
    if existing:
        return LedgerWrite(transaction=existing, created=False)

    transaction = Transaction(
        job_id=job_id,
        amount=amount,
        commission=commission,
        gateway_reference=gateway_reference,
        payout_status=False,
        status=status,
        source=source,
    )
    session.add(transaction)
    await session.commit()

    logger.warning(
        "Unpaid transaction recorded for manual reconciliation",
        extra={"job_id": job_id, "transaction_id": transaction.id, "reference": gateway_reference},
    )
    return LedgerWrite(transaction=transaction, created=True)
