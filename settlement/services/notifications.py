from datetime import datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from settlement.config.settings import settings
from settlement.models import Notification, NotificationPreference, PAYMENT_RECEIVED
from settlement.schemas import (
    IndividualPaymentData,
    GroupedPaymentData,
    PaymentLine,
    notification_data_adapter,
)
from settlement.utils.clock import utcnow
from settlement.utils.money import quantize, format_amount
from settlement.utils.logger import logger


class LocalDelivery:
    """Immediate in-app delivery when the payee is the active session's user."""

    def __init__(
        self,
        active_user_id: Optional[str] = None,
        sink: Optional[Callable[[Notification], Awaitable[None]]] = None,
    ):
        self.active_user_id = active_user_id
        self.sink = sink

    def is_active(self, user_id: str) -> bool:
        return self.active_user_id is not None and self.active_user_id == user_id

    async def deliver(self, notification: Notification) -> None:
        if self.sink is not None:
            await self.sink(notification)
        else:
            logger.info(f"Local notification: {notification.title}: {notification.message}")


async def payment_alerts_enabled(user_id: str, session: AsyncSession) -> bool:
    """A missing preferences row means alerts are on."""
    result = await session.execute(
        select(NotificationPreference).where(NotificationPreference.user_id == user_id)
    )
    preferences = result.scalar_one_or_none()
    return preferences is None or preferences.status_updates is not False


class NotificationAggregator:
    """
    Emits "payment received" alerts, folding payments that land within the
    aggregation window into one grouped alert.

    Read-then-write is not atomic; a race can leave two groups but never
    drops a payment from every group.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        window_minutes: Optional[int] = None,
        currency_symbol: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
        delivery: Optional[LocalDelivery] = None,
    ):
        self.session_factory = session_factory
        self.window = timedelta(
            minutes=window_minutes if window_minutes is not None else settings.AGGREGATION_WINDOW_MINUTES
        )
        self.currency_symbol = currency_symbol or settings.CURRENCY_SYMBOL
        self.clock = clock
        self.delivery = delivery

    async def _recent_unread(self, user_id: str, now: datetime, session: AsyncSession) -> List[Notification]:
        result = await session.execute(
            select(Notification)
            .where(
                Notification.user_id == user_id,
                Notification.category == PAYMENT_RECEIVED,
                Notification.read.is_(False),
                Notification.created_at > now - self.window,
            )
            .order_by(Notification.created_at)
        )
        return list(result.scalars().all())

    def _fold(self, candidates: List[Notification]) -> List[PaymentLine]:
        """Collect the payments of every candidate, marking each folded one read."""
        lines = []
        for notification in candidates:
            try:
                payload = notification_data_adapter.validate_python(notification.data)
            except ValidationError:
                logger.warning(
                    f"Unreadable payment notification {notification.id} left untouched",
                    extra={"payee_id": notification.user_id},
                )
                continue

            if isinstance(payload, IndividualPaymentData):
                lines.append(payload.as_line())
            else:
                lines.extend(payload.payments)
            notification.read = True
        return lines

    async def notify_payment_received(
        self,
        payee_id: str,
        net_amount: Decimal,
        job_id: str,
        service_name: str,
        payer_name: str,
    ) -> Optional[Notification]:
        """
        Notify a payee of a settled payment.

        Args:
            payee_id: Recipient
            net_amount: Amount after commission
            job_id: Job paid for
            service_name: Service label for the message
            payer_name: Payer label for the message

        Returns:
            The new notification, or None when the payee disabled alerts
        """
        now = self.clock()
        line = PaymentLine(
            job_id=job_id,
            amount=quantize(net_amount),
            service_name=service_name,
            payer_name=payer_name,
        )

        async with self.session_factory() as session:
            if not await payment_alerts_enabled(payee_id, session):
                logger.info("Payment alerts disabled, skipping", extra={"payee_id": payee_id, "job_id": job_id})
                return None

            folded = self._fold(await self._recent_unread(payee_id, now, session))

            if not folded:
                data = IndividualPaymentData(
                    job_id=line.job_id,
                    amount=line.amount,
                    service_name=line.service_name,
                    payer_name=line.payer_name,
                )
                title = "Payment received"
                message = (
                    f"You received {format_amount(line.amount, self.currency_symbol)} "
                    f"for {service_name} from {payer_name}"
                )
            else:
                payments = folded + [line]
                total = quantize(sum((payment.amount for payment in payments), Decimal("0")))
                data = GroupedPaymentData(
                    job_ids=[payment.job_id for payment in payments],
                    total_amount=total,
                    payment_count=len(payments),
                    payments=payments,
                )
                title = f"{len(payments)} payments received"
                message = (
                    f"You received {len(payments)} payments totaling "
                    f"{format_amount(total, self.currency_symbol)}"
                )

            notification = Notification(
                user_id=payee_id,
                category=PAYMENT_RECEIVED,
                title=title,
                message=message,
                data=data.model_dump(mode="json"),
                read=False,
                created_at=now,
            )
            session.add(notification)
            await session.commit()

        logger.info(
            f"Payment notification sent ({data.type})",
            extra={"payee_id": payee_id, "job_id": job_id, "amount": str(line.amount)},
        )

        if self.delivery is not None and self.delivery.is_active(payee_id):
            try:
                await self.delivery.deliver(notification)
            except Exception as e:
                logger.error(f"Local notification delivery failed: {e}", exc_info=True)

        return notification
