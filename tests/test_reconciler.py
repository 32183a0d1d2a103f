from decimal import Decimal
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from settlement.models import Notification, TransactionStatus, TransactionSource
from settlement.services.ledger import list_transactions_for_job
from settlement.services.notifications import NotificationAggregator
from settlement.services.orchestrator import (
    ConfirmationOutcome,
    GatewayConfirmationSurface,
    PaymentSession,
    PaymentState,
    SimulatedConfirmationSurface,
)
from settlement.services.reconciler import SettlementOutcome, SettlementReconciler
from settlement.schemas import ConfirmTransferRequest


async def open_payment(gateway, surface, job_id="job-1", total_minor=10000) -> PaymentSession:
    intent = await gateway.create_payment_intent(
        total_minor,
        {"jobId": job_id, "payeeId": "payee-1"},
        f"intent-{job_id}-{total_minor}",
    )
    await surface.initialize(intent["client_secret"], None)
    return PaymentSession(
        job_id=job_id,
        payer_id="payer-1",
        payee_id="payee-1",
        amount=Decimal("90.91"),
        total_minor=total_minor,
        client_secret=intent["client_secret"],
        payment_intent_id=intent["id"],
        use_connect_account=False,
        payee_account_id=None,
        simulated=False,
        service_name="Plumbing",
        payer_name="Ada",
    )


async def count_notifications(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(Notification))


@pytest.fixture
def aggregator(session_factory):
    return NotificationAggregator(session_factory)


async def test_authoritative_settlement(backend, gateway, session_factory, aggregator):
    surface = GatewayConfirmationSurface(gateway, "pm_card_visa")
    payment = await open_payment(gateway, surface)
    reconciler = SettlementReconciler(backend, surface, session_factory, aggregator=aggregator)

    result = await reconciler.settle(payment)

    assert result.outcome == SettlementOutcome.RECONCILED
    assert result.payment_state == PaymentState.PAID
    assert result.transaction.persisted and result.transaction.payout_status
    assert result.transaction.commission == Decimal("10.00")
    assert result.transaction.net_amount == Decimal("90.00")
    assert result.notified is True
    assert await count_notifications(session_factory) == 1

    async with session_factory() as session:
        rows = await list_transactions_for_job("job-1", session)
    assert [row.source for row in rows] == [TransactionSource.BACKEND]


async def test_backend_timeout_falls_back_and_retry_does_not_duplicate(
    backend, fake_backend, gateway, session_factory, aggregator
):
    surface = GatewayConfirmationSurface(gateway, "pm_card_visa")
    payment = await open_payment(gateway, surface)
    fake_backend.confirm_timeouts = 1
    reconciler = SettlementReconciler(backend, surface, session_factory, aggregator=aggregator)

    result = await reconciler.settle(payment)

    assert result.outcome == SettlementOutcome.DEGRADED
    assert result.transaction.status == TransactionStatus.COMPLETED
    assert result.transaction.payout_status is True
    assert result.payment_state == PaymentState.PAID

    retry = await backend.confirm_transfer(ConfirmTransferRequest(
        job_id="job-1",
        client_secret=payment.client_secret,
        total_amount=payment.total_minor,
        payee_id="payee-1",
    ))

    assert retry.success is True
    assert retry.created is False
    assert retry.transaction_id == result.transaction.id
    async with session_factory() as session:
        rows = await list_transactions_for_job("job-1", session)
    assert len(rows) == 1
    assert rows[0].source == TransactionSource.CLIENT_FALLBACK
    assert await count_notifications(session_factory) == 1


async def test_unregistered_payee_fallback_reflects_client_confirmation(
    backend, fake_backend, gateway, session_factory
):
    surface = SimulatedConfirmationSurface(ConfirmationOutcome.SUCCEEDED)
    payment = await open_payment(gateway, surface)
    fake_backend.down = True

    result = await SettlementReconciler(backend, surface, session_factory).settle(payment)

    assert result.outcome == SettlementOutcome.DEGRADED
    assert result.transaction.payout_status is True
    assert result.transaction.amount == Decimal("100.00")
    assert result.transaction.commission == Decimal("10.00")
    assert result.transaction.net_amount == Decimal("90.00")


async def test_declined_payment_is_recorded_unpaid(backend, fake_backend, gateway, session_factory, aggregator):
    surface = SimulatedConfirmationSurface(ConfirmationOutcome.FAILED)
    payment = await open_payment(gateway, surface)
    fake_backend.down = True

    result = await SettlementReconciler(backend, surface, session_factory, aggregator=aggregator).settle(payment)

    assert result.outcome == SettlementOutcome.DEGRADED
    assert result.transaction.persisted is True
    assert result.transaction.payout_status is False
    assert result.transaction.status == TransactionStatus.ERROR
    assert result.payment_state == PaymentState.FAILED
    assert "try again" in result.message
    assert await count_notifications(session_factory) == 0


async def test_cancellation_writes_nothing(backend, gateway, session_factory):
    surface = SimulatedConfirmationSurface(ConfirmationOutcome.CANCELLED)
    payment = await open_payment(gateway, surface)

    result = await SettlementReconciler(backend, surface, session_factory).settle(payment)

    assert result.outcome == SettlementOutcome.CANCELLED
    assert result.transaction is None
    assert result.payment_state == PaymentState.CANCELLED
    async with session_factory() as session:
        assert await list_transactions_for_job("job-1", session) == []


async def test_ambiguous_confirmation_stays_processing(backend, gateway, session_factory):
    surface = SimulatedConfirmationSurface(delay=5)
    payment = await open_payment(gateway, surface)
    reconciler = SettlementReconciler(backend, surface, session_factory, confirmation_timeout=0.05)

    result = await reconciler.settle(payment)

    # Backend reports the intent unpaid, so only an audit row is written
    assert result.confirmation == ConfirmationOutcome.AMBIGUOUS
    assert result.outcome == SettlementOutcome.DEGRADED
    assert result.transaction.payout_status is False
    assert result.payment_state == PaymentState.PROCESSING
    assert result.message == "Payment still processing"


async def test_unpersisted_record_when_store_is_unreachable(backend, fake_backend, gateway, tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/missing/dir/ledger.db")
    broken_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    surface = SimulatedConfirmationSurface(ConfirmationOutcome.SUCCEEDED)
    payment = await open_payment(gateway, surface)
    fake_backend.down = True

    result = await SettlementReconciler(backend, surface, broken_factory).settle(payment)
    await engine.dispose()

    assert result.outcome == SettlementOutcome.UNPERSISTED
    assert result.transaction.persisted is False
    assert result.transaction.payout_status is False
    assert result.transaction.status == TransactionStatus.ERROR
    assert result.transaction.settled is False
    assert result.payment_state != PaymentState.PAID
    assert "contact support" in result.message


async def test_notification_failure_does_not_unwind_settlement(backend, gateway, session_factory):
    class BrokenAggregator:
        async def notify_payment_received(self, *args):
            raise RuntimeError("notification store down")

    surface = GatewayConfirmationSurface(gateway, "pm_card_visa")
    payment = await open_payment(gateway, surface)

    result = await SettlementReconciler(
        backend, surface, session_factory, aggregator=BrokenAggregator()
    ).settle(payment)

    assert result.payment_state == PaymentState.PAID
    assert result.notified is False


async def test_second_settlement_converges_without_second_alert(backend, gateway, session_factory, aggregator):
    surface = GatewayConfirmationSurface(gateway, "pm_card_visa")
    payment = await open_payment(gateway, surface)
    reconciler = SettlementReconciler(backend, surface, session_factory, aggregator=aggregator)

    first = await reconciler.settle(payment)
    second = await reconciler.settle(payment)

    assert second.transaction.id == first.transaction.id
    assert second.notified is False
    assert await count_notifications(session_factory) == 1
