import json
from typing import Optional
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from settlement.config.settings import settings
from settlement.models import WebhookEvent, TransactionSource
from settlement.schemas import AccountObject, GatewayEvent, PaymentIntentObject
from settlement.services.ledger import record_paid
from settlement.services.notifications import NotificationAggregator
from settlement.services.registry import apply_account_update
from settlement.utils.clock import from_timestamp, utcnow
from settlement.utils.locking import KeyedLock
from settlement.utils.money import commission_for, from_minor_units
from settlement.utils.signature import verify_webhook_signature
from settlement.utils.logger import logger

ACCOUNT_UPDATED = "account.updated"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"


async def get_webhook_event(event_id: str, session: AsyncSession) -> Optional[WebhookEvent]:
    result = await session.execute(
        select(WebhookEvent).where(WebhookEvent.event_id == event_id)
    )
    return result.scalar_one_or_none()


async def claim_webhook_event(event: GatewayEvent, session: AsyncSession) -> WebhookEvent:
    """
    Store a received event, or return the row of an earlier delivery.

    The unique ``event_id`` decides between concurrent deliveries.
    """
    existing = await get_webhook_event(event.id, session)
    if existing:
        return existing

    record = WebhookEvent(
        event_id=event.id,
        event_type=event.type,
        object_id=event.object_id,
        object_type=event.object_type,
        payload=event.model_dump(mode="json"),
        processed=False,
    )
    session.add(record)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.info("Duplicate webhook delivery", extra={"event_id": event.id})
        return await get_webhook_event(event.id, session)
    return record


class WebhookProcessor:
    """
    Applies verified gateway events to the registry and the ledger.

    Every handler is idempotent, so a redelivered event that failed
    half-way is simply processed again.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        aggregator: Optional[NotificationAggregator] = None,
        lock: Optional[KeyedLock] = None,
        commission_rate: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.aggregator = aggregator
        self.lock = lock if lock is not None else KeyedLock()
        self.commission_rate = commission_rate if commission_rate is not None else settings.COMMISSION_RATE

    async def process(self, event: GatewayEvent) -> bool:
        """
        Process one event.

        Returns:
            True if the event was handled by this call, False for replays
            and failures. Never raises.
        """
        log_extra = {"event_id": event.id, "event_type": event.type, "object_id": event.object_id}

        async with self.lock.hold(event.object_id or event.id):
            async with self.session_factory() as session:
                try:
                    record = await claim_webhook_event(event, session)
                except SQLAlchemyError as e:
                    # Handlers are idempotent, carry on without the event log
                    logger.error(f"Could not store webhook event: {e}", exc_info=True, extra=log_extra)
                    await session.rollback()
                    record = None

                if record is not None and record.processed:
                    logger.info("Webhook event already processed", extra=log_extra)
                    return False

                try:
                    await self._dispatch(event, session)
                except Exception as e:
                    logger.error(f"Webhook handler failed: {e}", exc_info=True, extra=log_extra)
                    await session.rollback()
                    return False

                if record is not None:
                    try:
                        record.processed = True
                        record.processed_at = utcnow()
                        await session.commit()
                    except SQLAlchemyError as e:
                        logger.error(f"Could not mark webhook event processed: {e}", exc_info=True, extra=log_extra)
                        await session.rollback()

        logger.info("Webhook processed", extra=log_extra)
        return True

    async def _dispatch(self, event: GatewayEvent, session: AsyncSession) -> None:
        if event.type == ACCOUNT_UPDATED:
            await self._handle_account_updated(event, session)
        elif event.type == PAYMENT_INTENT_SUCCEEDED:
            await self._handle_payment_succeeded(event, session)
        else:
            logger.info("Unhandled webhook event type", extra={"event_id": event.id, "event_type": event.type})

    async def _handle_account_updated(self, event: GatewayEvent, session: AsyncSession) -> None:
        account = AccountObject.model_validate(event.data.object)
        if not account.payee_id:
            logger.warning("Account event without payeeId metadata", extra={"event_id": event.id, "reference": account.id})
            return

        event_at = from_timestamp(event.created) if event.created else None
        await apply_account_update(
            account.payee_id,
            account.id,
            account.fully_enabled,
            event_at,
            session,
        )

    async def _handle_payment_succeeded(self, event: GatewayEvent, session: AsyncSession) -> None:
        intent = PaymentIntentObject.model_validate(event.data.object)
        if not intent.job_id:
            logger.warning("Payment intent without jobId metadata", extra={"event_id": event.id, "reference": intent.id})
            return

        amount = from_minor_units(intent.amount)
        write = await record_paid(
            intent.job_id,
            amount,
            commission_for(amount, self.commission_rate),
            intent.id,
            TransactionSource.WEBHOOK,
            session,
        )

        if write.created and intent.payee_id:
            await self._notify(intent, write.transaction.net_amount)

    async def _notify(self, intent: PaymentIntentObject, net_amount) -> None:
        if self.aggregator is None:
            return
        try:
            await self.aggregator.notify_payment_received(
                intent.payee_id,
                net_amount,
                intent.job_id,
                intent.metadata.get("serviceName") or "Service",
                intent.metadata.get("payerName") or "Client",
            )
        except Exception as e:
            logger.error(
                f"Payment notification failed: {e}",
                exc_info=True,
                extra={"job_id": intent.job_id, "payee_id": intent.payee_id},
            )


def parse_event(body: bytes) -> Optional[GatewayEvent]:
    """Decode a signed body; None when it is not a gateway event."""
    try:
        return GatewayEvent.model_validate(json.loads(body))
    except (ValueError, ValidationError) as e:
        logger.warning(f"Malformed webhook payload: {e}")
        return None


async def handle_webhook(
    body: bytes,
    signature: Optional[str],
    processor: WebhookProcessor,
) -> bool:
    """
    Verify and process a raw webhook delivery.

    Raises:
        SignatureInvalid
    """
    verify_webhook_signature(body, signature)

    event = parse_event(body)
    if event is None:
        return False
    return await processor.process(event)
