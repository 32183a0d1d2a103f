from sqlalchemy.ext.asyncio import AsyncSession
from settlement.config.settings import settings
from settlement.models import TransactionSource
from settlement.schemas import (
    CreatePaymentIntentRequest,
    CreatePaymentIntentResponse,
    ConfirmTransferRequest,
    ConfirmTransferResponse,
)
from settlement.services.gateway import GatewayClient, intent_id_from_secret
from settlement.services.ledger import record_paid
from settlement.services.registry import get_sub_account
from settlement.utils.exceptions import GatewayRequestError, SimulationNotAllowed
from settlement.utils.money import commission_for, from_minor_units, to_minor_units
from settlement.utils.logger import logger


def intent_metadata(payload: CreatePaymentIntentRequest, simulated: bool) -> dict:
    return {
        "jobId": payload.job_id,
        "payeeId": payload.payee_id,
        "payerId": payload.payer_id,
        "serviceName": payload.service_name or "Service",
        "payerName": payload.payer_name or "Client",
        "isSimulated": "true" if simulated else "false",
    }


async def create_payment_intent(
    payload: CreatePaymentIntentRequest,
    gateway: GatewayClient,
    session: AsyncSession,
) -> CreatePaymentIntentResponse:
    """
    Create the gateway payment intent for a job.

    Payees with a real connected account get a destination charge carrying
    the platform fee; simulated or unregistered payees get a plain intent
    on the platform account.

    Args:
        payload: CreatePaymentIntentRequest, total in minor units
        gateway: GatewayClient
        session: AsyncSession

    Returns:
        CreatePaymentIntentResponse

    Raises:
        SimulationNotAllowed
        GatewayUnavailable
        GatewayRequestError
    """
    sub_account = await get_sub_account(payload.payee_id, session)
    account_id = sub_account.gateway_account_id if sub_account else None
    simulated = payload.is_simulated_account or bool(sub_account and sub_account.is_simulated)

    if simulated and not settings.simulated_accounts_allowed:
        raise SimulationNotAllowed()

    idempotency_key = f"intent-{payload.job_id}-{payload.total_amount}"
    metadata = intent_metadata(payload, simulated)

    if account_id and not simulated:
        fee = to_minor_units(
            commission_for(from_minor_units(payload.total_amount), settings.COMMISSION_RATE)
        )
        intent = await gateway.create_payment_intent(
            payload.total_amount,
            metadata,
            idempotency_key,
            application_fee_amount=fee,
            destination=account_id,
        )
        use_connect_account = True
    else:
        intent = await gateway.create_payment_intent(
            payload.total_amount,
            metadata,
            idempotency_key,
        )
        use_connect_account = False

    logger.info(
        "Payment intent created",
        extra={
            "job_id": payload.job_id,
            "payee_id": payload.payee_id,
            "payer_id": payload.payer_id,
            "amount": payload.total_amount,
            "reference": intent.get("id"),
            "outcome": "connect" if use_connect_account else "platform",
        },
    )

    return CreatePaymentIntentResponse(
        client_secret=intent.get("client_secret"),
        payment_intent_id=intent.get("id"),
        use_connect_account=use_connect_account,
        payee_account_id=account_id if use_connect_account else None,
    )


async def confirm_transfer(
    payload: ConfirmTransferRequest,
    gateway: GatewayClient,
    session: AsyncSession,
) -> ConfirmTransferResponse:
    """
    Record the paid transaction for a job once the gateway reports success.

    Safe to call repeatedly: later calls return the existing transaction
    with ``created`` False.

    Raises:
        GatewayUnavailable
        GatewayRequestError
    """
    intent_id = intent_id_from_secret(payload.client_secret)
    if intent_id is None:
        raise GatewayRequestError("Malformed client secret")

    intent = await gateway.retrieve_payment_intent(intent_id)
    intent_status = intent.get("status")

    if intent_status != "succeeded":
        logger.info(
            f"Payment not yet succeeded (status={intent_status})",
            extra={"job_id": payload.job_id, "reference": intent_id},
        )
        return ConfirmTransferResponse(
            success=False,
            status=intent_status,
            payment_intent_id=intent_id,
            message=f"Payment not completed yet, current status: {intent_status}",
        )

    # The gateway's amount wins over the client's claim.
    charged = intent.get("amount") or payload.total_amount
    if charged != payload.total_amount:
        logger.warning(
            "Amount mismatch on confirm-transfer",
            extra={"job_id": payload.job_id, "amount": charged, "reference": intent_id},
        )

    amount = from_minor_units(charged)
    write = await record_paid(
        payload.job_id,
        amount,
        commission_for(amount, settings.COMMISSION_RATE),
        intent_id,
        TransactionSource.BACKEND,
        session,
    )

    return ConfirmTransferResponse(
        success=True,
        status=intent_status,
        transaction_id=write.transaction.id,
        payment_intent_id=intent_id,
        created=write.created,
        message="Transfer confirmed",
    )
