import asyncio
import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from settlement.config.settings import settings
from settlement.models import Transaction, TransactionStatus, TransactionSource
from settlement.schemas import ConfirmTransferRequest
from settlement.services.backend_client import SettlementBackendClient
from settlement.services.gateway import intent_id_from_secret
from settlement.services.ledger import record_paid, record_unpaid
from settlement.services.notifications import NotificationAggregator
from settlement.services.orchestrator import (
    ConfirmationOutcome,
    ConfirmationResult,
    ConfirmationSurface,
    PaymentSession,
    PaymentState,
)
from settlement.utils.clock import utcnow
from settlement.utils.exceptions import GatewayRequestError, GatewayUnavailable
from settlement.utils.money import commission_for
from settlement.utils.logger import logger


class SettlementOutcome(str, enum.Enum):
    RECONCILED = "reconciled"  # backend-authoritative record
    DEGRADED = "degraded"  # local fallback record, needs manual reconciliation
    UNPERSISTED = "unpersisted"  # nothing could be written
    CANCELLED = "cancelled"


@dataclass
class TransactionRecord:
    """Transaction as returned to the caller; ``persisted`` is False for in-memory fallbacks."""

    id: str
    job_id: str
    amount: Decimal
    commission: Decimal
    gateway_reference: str
    payout_status: bool
    status: TransactionStatus
    created_at: datetime
    persisted: bool = True

    @property
    def net_amount(self) -> Decimal:
        return self.amount - self.commission

    @property
    def settled(self) -> bool:
        return self.persisted and self.payout_status

    @classmethod
    def from_model(cls, transaction: Transaction) -> "TransactionRecord":
        return cls(
            id=transaction.id,
            job_id=transaction.job_id,
            amount=Decimal(transaction.amount),
            commission=Decimal(transaction.commission),
            gateway_reference=transaction.gateway_reference,
            payout_status=transaction.payout_status,
            status=transaction.status,
            created_at=transaction.created_at,
        )


@dataclass
class SettlementResult:
    outcome: SettlementOutcome
    confirmation: ConfirmationOutcome
    transaction: Optional[TransactionRecord] = None
    message: str = ""
    notified: bool = field(default=False)

    @property
    def payment_state(self) -> PaymentState:
        if self.outcome == SettlementOutcome.CANCELLED:
            return PaymentState.CANCELLED
        if self.transaction is not None and self.transaction.settled:
            return PaymentState.PAID
        if self.confirmation == ConfirmationOutcome.AMBIGUOUS:
            return PaymentState.PROCESSING
        return PaymentState.FAILED


class SettlementReconciler:
    """
    Records the outcome of a confirmed (or not) payment session.

    Steps run in order and each survives the failure of the previous one:
    client confirmation, backend-authoritative settlement, local ledger
    fallback, in-memory record.
    """

    def __init__(
        self,
        backend: SettlementBackendClient,
        surface: ConfirmationSurface,
        session_factory: async_sessionmaker,
        aggregator: Optional[NotificationAggregator] = None,
        commission_rate: Optional[float] = None,
        confirmation_timeout: Optional[float] = None,
    ):
        self.backend = backend
        self.surface = surface
        self.session_factory = session_factory
        self.aggregator = aggregator
        self.commission_rate = commission_rate if commission_rate is not None else settings.COMMISSION_RATE
        self.confirmation_timeout = (
            confirmation_timeout
            if confirmation_timeout is not None
            else settings.CONFIRMATION_TIMEOUT_SECONDS
        )

    async def _confirm(self, payment: PaymentSession) -> ConfirmationResult:
        try:
            return await asyncio.wait_for(self.surface.confirm(), timeout=self.confirmation_timeout)
        except asyncio.TimeoutError:
            logger.warning("Client confirmation timed out", extra={"job_id": payment.job_id})
            return ConfirmationResult(ConfirmationOutcome.AMBIGUOUS, "Confirmation timed out")
        except Exception as e:
            logger.error(f"Client confirmation raised: {e}", exc_info=True, extra={"job_id": payment.job_id})
            return ConfirmationResult(ConfirmationOutcome.AMBIGUOUS, str(e))

    async def _settle_authoritative(
        self, payment: PaymentSession, amount: Decimal, commission: Decimal
    ) -> Tuple[Optional[TransactionRecord], bool]:
        request = ConfirmTransferRequest(
            job_id=payment.job_id,
            client_secret=payment.client_secret,
            total_amount=payment.total_minor,
            payee_id=payment.payee_id,
        )
        try:
            response = await self.backend.confirm_transfer(request)
        except (GatewayUnavailable, GatewayRequestError) as e:
            logger.warning(f"Backend settlement unavailable: {e.detail}", extra={"job_id": payment.job_id})
            return None, False
        except ValidationError as e:
            logger.warning(f"Backend settlement returned an invalid body: {e}", extra={"job_id": payment.job_id})
            return None, False

        if not response.success or not response.transaction_id:
            logger.warning(
                f"Backend could not confirm transfer (status={response.status})",
                extra={"job_id": payment.job_id},
            )
            return None, False

        try:
            async with self.session_factory() as session:
                transaction = await session.get(Transaction, response.transaction_id)
        except SQLAlchemyError as e:
            logger.warning(f"Could not load backend transaction: {e}", extra={"job_id": payment.job_id})
            transaction = None

        if transaction is not None:
            return TransactionRecord.from_model(transaction), response.created

        # Backend store is not shared with this process
        record = TransactionRecord(
            id=response.transaction_id,
            job_id=payment.job_id,
            amount=amount,
            commission=commission,
            gateway_reference=response.payment_intent_id or payment.payment_intent_id,
            payout_status=True,
            status=TransactionStatus.COMPLETED,
            created_at=utcnow(),
        )
        return record, response.created

    async def _settle_locally(
        self,
        payment: PaymentSession,
        amount: Decimal,
        commission: Decimal,
        client_confirmed: bool,
    ) -> Tuple[TransactionRecord, bool]:
        reference = (
            payment.payment_intent_id
            or intent_id_from_secret(payment.client_secret)
            or f"pi_local_{uuid.uuid4().hex}"
        )

        try:
            async with self.session_factory() as session:
                if client_confirmed:
                    write = await record_paid(
                        payment.job_id,
                        amount,
                        commission,
                        reference,
                        TransactionSource.CLIENT_FALLBACK,
                        session,
                    )
                else:
                    write = await record_unpaid(
                        payment.job_id,
                        amount,
                        commission,
                        reference,
                        TransactionStatus.ERROR,
                        TransactionSource.CLIENT_FALLBACK,
                        session,
                    )
                record = TransactionRecord.from_model(write.transaction)
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                f"Local ledger write failed, returning unpersisted record: {e}",
                exc_info=True,
                extra={"job_id": payment.job_id, "outcome": SettlementOutcome.UNPERSISTED.value},
            )
            record = TransactionRecord(
                id=str(uuid.uuid4()),
                job_id=payment.job_id,
                amount=amount,
                commission=commission,
                gateway_reference=reference,
                payout_status=False,
                status=TransactionStatus.ERROR,
                created_at=utcnow(),
                persisted=False,
            )
            return record, False

        logger.warning(
            "Reconciliation degraded, transaction recorded by local fallback",
            extra={
                "job_id": payment.job_id,
                "transaction_id": record.id,
                "outcome": SettlementOutcome.DEGRADED.value,
                "reference": reference,
            },
        )
        return record, write.created

    async def _notify(self, payment: PaymentSession, record: TransactionRecord) -> bool:
        if self.aggregator is None:
            return False
        try:
            notification = await self.aggregator.notify_payment_received(
                payment.payee_id,
                record.net_amount,
                payment.job_id,
                payment.service_name,
                payment.payer_name,
            )
        except Exception as e:
            logger.error(
                f"Payment notification failed: {e}",
                exc_info=True,
                extra={"job_id": payment.job_id, "payee_id": payment.payee_id},
            )
            return False
        return notification is not None

    async def settle(self, payment: PaymentSession) -> SettlementResult:
        """
        Reconcile a payment session after the client confirmation step.

        Args:
            payment: Session returned by ``PaymentSessionOrchestrator.open_session``

        Returns:
            SettlementResult; ``transaction.persisted`` is False when nothing
            could be written and the caller must not treat it as settled.
        """
        confirmation = await self._confirm(payment)

        if confirmation.outcome == ConfirmationOutcome.CANCELLED:
            logger.info("Payment cancelled by payer", extra={"job_id": payment.job_id})
            return SettlementResult(
                outcome=SettlementOutcome.CANCELLED,
                confirmation=confirmation.outcome,
                message="Payment cancelled",
            )

        amount = payment.total
        commission = commission_for(amount, self.commission_rate)

        record, created = await self._settle_authoritative(payment, amount, commission)
        if record is not None:
            outcome = SettlementOutcome.RECONCILED
        else:
            record, created = await self._settle_locally(
                payment, amount, commission, confirmation.confirmed
            )
            outcome = SettlementOutcome.DEGRADED if record.persisted else SettlementOutcome.UNPERSISTED

        result = SettlementResult(
            outcome=outcome,
            confirmation=confirmation.outcome,
            transaction=record,
        )

        # Only the attempt that created the paid row alerts the payee.
        if record.settled and created:
            result.notified = await self._notify(payment, record)

        result.message = self._message(result)
        logger.info(
            "Settlement finished",
            extra={
                "job_id": payment.job_id,
                "transaction_id": record.id,
                "outcome": outcome.value,
            },
        )
        return result

    @staticmethod
    def _message(result: SettlementResult) -> str:
        state = result.payment_state
        if state == PaymentState.PAID:
            return "Payment successful"
        if result.outcome == SettlementOutcome.UNPERSISTED:
            return "Payment could not be recorded, please contact support"
        if state == PaymentState.PROCESSING:
            return "Payment still processing"
        return "Payment failed, please try again"
