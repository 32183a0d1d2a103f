from fastapi import APIRouter, Depends, Request
from fastapi.security import HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from settlement.config.database import get_db
from settlement.middleware.auth import get_authenticated_user
from settlement.services.gateway import GatewayClient, get_gateway
from settlement.services.registry import (
    create_sub_account,
    create_simulated_sub_account,
    generate_onboarding_link,
    get_status,
    simulate_onboarding_complete,
)
from settlement.schemas import (
    CreateAccountRequest,
    CreateAccountResponse,
    OnboardingLinkRequest,
    OnboardingLinkResponse,
    SubAccountStatus,
)

# Security scheme
security = HTTPBearer(auto_error=False)

router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.post(
    "/create-account",
    response_model=CreateAccountResponse,
    response_model_by_alias=True,
    dependencies=[Depends(security)],
)
async def create_account(
    request: Request,
    payload: CreateAccountRequest,
    session: AsyncSession = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
):
    """
    Create the payee's gateway sub-account.

    The account starts disabled until onboarding completes.
    """
    await get_authenticated_user(request)

    account_id = await create_sub_account(
        payload.payee_id,
        payload.email,
        payload.name,
        gateway,
        session,
    )
    return CreateAccountResponse(success=True, account_id=account_id)


@router.post(
    "/onboarding-link",
    response_model=OnboardingLinkResponse,
    dependencies=[Depends(security)],
)
async def onboarding_link(
    request: Request,
    payload: OnboardingLinkRequest,
    gateway: GatewayClient = Depends(get_gateway),
):
    await get_authenticated_user(request)

    url = await generate_onboarding_link(payload.account_id, gateway)
    return OnboardingLinkResponse(success=True, url=url)


@router.get(
    "/{payee_id}/status",
    response_model=SubAccountStatus,
    response_model_by_alias=True,
    dependencies=[Depends(security)],
)
async def account_status(
    request: Request,
    payee_id: str,
    session: AsyncSession = Depends(get_db),
):
    """Stored sub-account state. Does not call the gateway."""
    await get_authenticated_user(request)
    return await get_status(payee_id, session)


@router.post(
    "/{payee_id}/simulate",
    response_model=SubAccountStatus,
    response_model_by_alias=True,
    dependencies=[Depends(security)],
)
async def simulate_account(
    request: Request,
    payee_id: str,
    session: AsyncSession = Depends(get_db),
):
    """
    Create and enable a simulated sub-account (non-production only).

    Raises 403 in production.
    """
    await get_authenticated_user(request)

    await create_simulated_sub_account(payee_id, session)
    await simulate_onboarding_complete(payee_id, session)
    return await get_status(payee_id, session)
