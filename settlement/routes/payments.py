from fastapi import APIRouter, Depends, Request
from fastapi.security import HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from settlement.config.database import get_db
from settlement.config.settings import settings
from settlement.middleware.auth import get_authenticated_user
from settlement.services.gateway import GatewayClient, get_gateway
from settlement.services.ledger import get_paid_transaction
from settlement.services.payments import create_payment_intent, confirm_transfer
from settlement.schemas import (
    CreatePaymentIntentRequest,
    CreatePaymentIntentResponse,
    ConfirmTransferRequest,
    ConfirmTransferResponse,
    TransactionResponse,
)
from settlement.utils.exceptions import TransactionNotFoundException
from slowapi import Limiter
from slowapi.util import get_remote_address

# Security scheme
security = HTTPBearer(auto_error=False)

router = APIRouter(prefix="/payments", tags=["payments"])
limiter = Limiter(key_func=get_remote_address)


@router.post(
    "/create-payment-intent",
    response_model=CreatePaymentIntentResponse,
    response_model_by_alias=True,
    dependencies=[Depends(security)],
)
@limiter.limit(settings.PAYMENT_INTENT_RATE_LIMIT)
async def create_intent(
    request: Request,
    payload: CreatePaymentIntentRequest,
    session: AsyncSession = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
):
    """
    Create a payment intent for a job.

    Args:
        payload: Job, parties and total in minor units (commission included)

    Returns:
        CreatePaymentIntentResponse with the client secret
    """
    await get_authenticated_user(request)
    return await create_payment_intent(payload, gateway, session)


@router.post(
    "/confirm-transfer",
    response_model=ConfirmTransferResponse,
    response_model_by_alias=True,
    dependencies=[Depends(security)],
)
async def confirm(
    request: Request,
    payload: ConfirmTransferRequest,
    session: AsyncSession = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
):
    """
    Record the transaction for a succeeded payment intent.

    Returns ``success: false`` with the intent status while the payment is
    not complete. Repeated calls for the same job never create a second
    paid transaction.
    """
    await get_authenticated_user(request)
    return await confirm_transfer(payload, gateway, session)


@router.get(
    "/jobs/{job_id}/transaction",
    response_model=TransactionResponse,
    dependencies=[Depends(security)],
)
async def job_transaction(
    request: Request,
    job_id: str,
    session: AsyncSession = Depends(get_db),
):
    """Get the paid transaction of a job."""
    await get_authenticated_user(request)

    transaction = await get_paid_transaction(job_id, session)
    if not transaction:
        raise TransactionNotFoundException()
    return transaction
