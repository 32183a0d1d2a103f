from datetime import datetime
from typing import Optional
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from settlement.config.settings import settings
from settlement.models import SubAccount
from settlement.schemas import SubAccountStatus
from settlement.services.gateway import GatewayClient
from settlement.utils.exceptions import (
    GatewayUnavailable,
    SimulationNotAllowed,
    SubAccountNotFound,
)
from settlement.utils.logger import logger


async def get_sub_account(payee_id: str, session: AsyncSession) -> Optional[SubAccount]:
    result = await session.execute(
        select(SubAccount).where(SubAccount.payee_id == payee_id)
    )
    return result.scalar_one_or_none()


async def register_payee(payee_id: str, session: AsyncSession) -> SubAccount:
    """Create the empty registry row for a payee, or return the existing one."""
    sub_account = await get_sub_account(payee_id, session)
    if sub_account:
        return sub_account

    sub_account = SubAccount(payee_id=payee_id, enabled=False)
    session.add(sub_account)
    try:
        await session.commit()
    except IntegrityError:
        # Registered concurrently
        await session.rollback()
        return await get_sub_account(payee_id, session)
    return sub_account


async def _store_account_id(payee_id: str, account_id: str, session: AsyncSession) -> SubAccount:
    sub_account = await register_payee(payee_id, session)
    sub_account.gateway_account_id = account_id
    sub_account.enabled = False
    await session.commit()
    return sub_account


async def create_sub_account(
    payee_id: str,
    email: str,
    display_name: Optional[str],
    gateway: GatewayClient,
    session: AsyncSession,
) -> str:
    """
    Create a gateway sub-account for a payee and persist its id.

    The account starts disabled; only an ``account.updated`` webhook can
    enable it.

    Args:
        payee_id: Platform user id
        email: Payee email
        display_name: Name shown on the gateway business profile
        gateway: GatewayClient
        session: AsyncSession

    Returns:
        The gateway account id

    Raises:
        GatewayUnavailable
        GatewayRequestError
    """
    try:
        account = await gateway.create_account(payee_id, email, display_name)
    except GatewayUnavailable:
        logger.warning("Sub-account creation failed, gateway unavailable", extra={"payee_id": payee_id})
        raise

    account_id = account["id"]
    await _store_account_id(payee_id, account_id, session)

    logger.info("Sub-account created", extra={"payee_id": payee_id, "reference": account_id})
    return account_id


async def create_simulated_sub_account(payee_id: str, session: AsyncSession) -> str:
    """
    Non-production fallback for ``create_sub_account``.

    Writes the same record shape with a prefixed account id so downstream
    code never branches on environment.

    Raises:
        SimulationNotAllowed
    """
    if not settings.simulated_accounts_allowed:
        raise SimulationNotAllowed()

    account_id = f"{settings.SIMULATED_ACCOUNT_PREFIX}{payee_id}"
    await _store_account_id(payee_id, account_id, session)

    logger.warning("Simulated sub-account stored", extra={"payee_id": payee_id, "reference": account_id})
    return account_id


async def simulate_onboarding_complete(payee_id: str, session: AsyncSession) -> SubAccount:
    """Enable a simulated account, standing in for the webhook in development."""
    if not settings.simulated_accounts_allowed:
        raise SimulationNotAllowed()

    sub_account = await get_sub_account(payee_id, session)
    if not sub_account or not sub_account.is_simulated:
        raise SubAccountNotFound()

    sub_account.enabled = True
    await session.commit()
    return sub_account


async def generate_onboarding_link(account_id: str, gateway: GatewayClient) -> str:
    """Request a one-time onboarding URL. No local state changes."""
    link = await gateway.create_account_link(account_id)
    return link["url"]


async def get_status(payee_id: str, session: AsyncSession) -> SubAccountStatus:
    """Read-only projection of the stored registry row."""
    sub_account = await get_sub_account(payee_id, session)

    if not sub_account or not sub_account.gateway_account_id:
        return SubAccountStatus(has_account=False)

    return SubAccountStatus(
        has_account=True,
        account_id=sub_account.gateway_account_id,
        enabled=sub_account.enabled,
        needs_onboarding=not sub_account.enabled,
        simulated=sub_account.is_simulated,
    )


async def apply_account_update(
    payee_id: str,
    account_id: str,
    enabled: bool,
    event_at: Optional[datetime],
    session: AsyncSession,
) -> bool:
    """
    Apply an ``account.updated`` status to the registry.

    Returns:
        True if the enabled state or account id changed. A newer event that
        repeats the stored value only advances the watermark; an event older
        than the watermark changes nothing.
    """
    sub_account = await register_payee(payee_id, session)

    if (
        event_at is not None
        and sub_account.status_updated_at is not None
        and event_at < sub_account.status_updated_at
    ):
        logger.info(
            "Stale account event ignored",
            extra={"payee_id": payee_id, "reference": account_id},
        )
        return False

    if sub_account.enabled == enabled and sub_account.gateway_account_id == account_id:
        # Keep the watermark moving so older reordered events stay stale.
        if event_at is not None and (
            sub_account.status_updated_at is None or event_at > sub_account.status_updated_at
        ):
            sub_account.status_updated_at = event_at
            await session.commit()
        return False

    sub_account.gateway_account_id = account_id
    sub_account.enabled = enabled
    if event_at is not None:
        sub_account.status_updated_at = event_at
    await session.commit()

    logger.info(
        "Sub-account status updated",
        extra={"payee_id": payee_id, "reference": account_id, "outcome": "enabled" if enabled else "disabled"},
    )
    return True
