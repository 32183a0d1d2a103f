from datetime import datetime, timedelta
from decimal import Decimal
from sqlalchemy import func, select
from settlement.models import Notification, NotificationPreference, PAYMENT_RECEIVED
from settlement.schemas import GroupedPaymentData, IndividualPaymentData, notification_data_adapter
from settlement.services.notifications import LocalDelivery, NotificationAggregator


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_aggregator(session_factory, clock, delivery=None):
    return NotificationAggregator(session_factory, window_minutes=60, clock=clock, delivery=delivery)


async def all_notifications(session_factory, user_id="payee-1"):
    async with session_factory() as session:
        result = await session.execute(
            select(Notification).where(Notification.user_id == user_id).order_by(Notification.created_at)
        )
        return list(result.scalars().all())


async def test_first_payment_is_individual(session_factory):
    aggregator = make_aggregator(session_factory, FakeClock(datetime(2026, 3, 1, 9, 0)))

    notification = await aggregator.notify_payment_received(
        "payee-1", Decimal("90.00"), "job-1", "Plumbing", "Ada"
    )

    payload = notification_data_adapter.validate_python(notification.data)
    assert isinstance(payload, IndividualPaymentData)
    assert payload.amount == Decimal("90.00")
    assert notification.message == "You received €90.00 for Plumbing from Ada"
    assert notification.read is False


async def test_disabled_preferences_write_nothing(session_factory):
    async with session_factory() as session:
        session.add(NotificationPreference(user_id="payee-1", status_updates=False))
        await session.commit()
    aggregator = make_aggregator(session_factory, FakeClock(datetime(2026, 3, 1, 9, 0)))

    result = await aggregator.notify_payment_received("payee-1", Decimal("90.00"), "job-1", "Plumbing", "Ada")

    assert result is None
    async with session_factory() as session:
        count = await session.scalar(select(func.count()).select_from(Notification))
    assert count == 0


async def test_three_payments_in_window_leave_one_grouped_unread(session_factory):
    clock = FakeClock(datetime(2026, 3, 1, 9, 0))
    aggregator = make_aggregator(session_factory, clock)

    await aggregator.notify_payment_received("payee-1", Decimal("90.00"), "job-1", "Plumbing", "Ada")
    clock.advance(minutes=4)
    await aggregator.notify_payment_received("payee-1", Decimal("45.50"), "job-2", "Painting", "Bob")
    clock.advance(minutes=5)
    latest = await aggregator.notify_payment_received("payee-1", Decimal("10.25"), "job-3", "Cleaning", "Cy")

    rows = await all_notifications(session_factory)
    unread = [row for row in rows if not row.read]
    assert len(rows) == 3
    assert [row.id for row in unread] == [latest.id]

    payload = notification_data_adapter.validate_python(latest.data)
    assert isinstance(payload, GroupedPaymentData)
    assert payload.total_amount == Decimal("145.75")
    assert payload.payment_count == 3
    assert [line.job_id for line in payload.payments] == ["job-1", "job-2", "job-3"]
    assert payload.job_ids == ["job-1", "job-2", "job-3"]
    assert latest.message == "You received 3 payments totaling €145.75"


async def test_payment_outside_window_is_individual(session_factory):
    clock = FakeClock(datetime(2026, 3, 1, 9, 0))
    aggregator = make_aggregator(session_factory, clock)

    first = await aggregator.notify_payment_received("payee-1", Decimal("90.00"), "job-1", "Plumbing", "Ada")
    clock.advance(minutes=90)
    second = await aggregator.notify_payment_received("payee-1", Decimal("20.00"), "job-2", "Painting", "Bob")

    payload = notification_data_adapter.validate_python(second.data)
    assert isinstance(payload, IndividualPaymentData)
    rows = {row.id: row for row in await all_notifications(session_factory)}
    assert rows[first.id].read is False
    assert rows[second.id].read is False


async def test_read_notifications_are_not_folded(session_factory):
    clock = FakeClock(datetime(2026, 3, 1, 9, 0))
    aggregator = make_aggregator(session_factory, clock)
    first = await aggregator.notify_payment_received("payee-1", Decimal("90.00"), "job-1", "Plumbing", "Ada")
    async with session_factory() as session:
        row = await session.get(Notification, first.id)
        row.read = True
        await session.commit()

    clock.advance(minutes=1)
    second = await aggregator.notify_payment_received("payee-1", Decimal("20.00"), "job-2", "Painting", "Bob")

    assert notification_data_adapter.validate_python(second.data).type == "individual"


async def test_other_payees_are_not_folded(session_factory):
    clock = FakeClock(datetime(2026, 3, 1, 9, 0))
    aggregator = make_aggregator(session_factory, clock)
    await aggregator.notify_payment_received("payee-2", Decimal("90.00"), "job-1", "Plumbing", "Ada")

    clock.advance(minutes=1)
    notification = await aggregator.notify_payment_received("payee-1", Decimal("20.00"), "job-2", "Painting", "Bob")

    assert notification.data["type"] == "individual"


async def test_unreadable_candidate_is_left_alone(session_factory):
    clock = FakeClock(datetime(2026, 3, 1, 9, 0))
    async with session_factory() as session:
        session.add(Notification(
            user_id="payee-1",
            category=PAYMENT_RECEIVED,
            message="legacy",
            data={"type": "legacy"},
            created_at=clock.now - timedelta(minutes=1),
        ))
        await session.commit()
    aggregator = make_aggregator(session_factory, clock)

    notification = await aggregator.notify_payment_received("payee-1", Decimal("5.00"), "job-1", "Plumbing", "Ada")

    assert notification.data["type"] == "individual"
    legacy = [row for row in await all_notifications(session_factory) if row.message == "legacy"]
    assert legacy[0].read is False


async def test_local_delivery_only_for_active_payee(session_factory):
    delivered = []

    async def sink(notification):
        delivered.append(notification.user_id)

    clock = FakeClock(datetime(2026, 3, 1, 9, 0))
    aggregator = make_aggregator(session_factory, clock, LocalDelivery(active_user_id="payee-1", sink=sink))

    await aggregator.notify_payment_received("payee-1", Decimal("5.00"), "job-1", "Plumbing", "Ada")
    await aggregator.notify_payment_received("payee-2", Decimal("5.00"), "job-2", "Plumbing", "Ada")

    assert delivered == ["payee-1"]


async def test_delivery_failure_does_not_lose_notification(session_factory):
    async def sink(notification):
        raise RuntimeError("socket closed")

    clock = FakeClock(datetime(2026, 3, 1, 9, 0))
    aggregator = make_aggregator(session_factory, clock, LocalDelivery(active_user_id="payee-1", sink=sink))

    notification = await aggregator.notify_payment_received("payee-1", Decimal("5.00"), "job-1", "Plumbing", "Ada")

    assert notification is not None
    assert len(await all_notifications(session_factory)) == 1
