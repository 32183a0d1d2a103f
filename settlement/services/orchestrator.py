import asyncio
import enum
import inspect
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, List, Optional, Protocol, TYPE_CHECKING
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from settlement.config.settings import settings
from settlement.schemas import CreatePaymentIntentRequest
from settlement.services.backend_client import SettlementBackendClient
from settlement.services.gateway import GatewayClient, intent_id_from_secret
from settlement.services.registry import get_sub_account
from settlement.utils.exceptions import (
    GatewayRequestError,
    GatewayUnavailable,
    IntentCreationFailed,
)
from settlement.utils.money import Number, from_minor_units, quantize, total_with_commission
from settlement.utils.logger import logger

if TYPE_CHECKING:
    from settlement.services.reconciler import SettlementReconciler, SettlementResult


# ============== Client-side confirmation ==============

class ConfirmationOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    AMBIGUOUS = "ambiguous"


@dataclass
class ConfirmationResult:
    outcome: ConfirmationOutcome
    error: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.outcome == ConfirmationOutcome.SUCCEEDED


@dataclass
class RoutingMetadata:
    """Routes funds to the payee's connected account instead of the platform account."""

    connected_account_id: str
    payer_id: str


class ConfirmationSurface(Protocol):
    async def initialize(self, client_secret: str, routing: Optional[RoutingMetadata]) -> None:
        ...

    async def confirm(self) -> ConfirmationResult:
        ...


# Intent statuses that do not settle the question either way.
PENDING_INTENT_STATUSES = {"processing", "requires_action", "requires_capture"}


class GatewayConfirmationSurface:
    """Confirms the intent through the gateway API with a known payment method."""

    def __init__(self, gateway: GatewayClient, payment_method: str):
        self.gateway = gateway
        self.payment_method = payment_method
        self.client_secret = None
        self.routing = None

    async def initialize(self, client_secret: str, routing: Optional[RoutingMetadata]) -> None:
        self.client_secret = client_secret
        self.routing = routing

    async def confirm(self) -> ConfirmationResult:
        intent_id = intent_id_from_secret(self.client_secret)
        if intent_id is None:
            return ConfirmationResult(ConfirmationOutcome.FAILED, "Payment session is not initialized")

        try:
            intent = await self.gateway.confirm_payment_intent(intent_id, self.payment_method)
        except GatewayUnavailable as e:
            return ConfirmationResult(ConfirmationOutcome.AMBIGUOUS, e.detail)
        except GatewayRequestError as e:
            return ConfirmationResult(ConfirmationOutcome.FAILED, e.detail)

        status = intent.get("status")
        if status == "succeeded":
            return ConfirmationResult(ConfirmationOutcome.SUCCEEDED)
        if status == "canceled":
            return ConfirmationResult(ConfirmationOutcome.CANCELLED, "Payment cancelled")
        if status in PENDING_INTENT_STATUSES:
            return ConfirmationResult(ConfirmationOutcome.AMBIGUOUS, f"Payment {status}")
        return ConfirmationResult(ConfirmationOutcome.FAILED, f"Payment {status}")


class SimulatedConfirmationSurface:
    """Scripted payment sheet for development builds."""

    def __init__(self, outcome: ConfirmationOutcome = ConfirmationOutcome.SUCCEEDED, delay: float = 0.0):
        self.outcome = outcome
        self.delay = delay
        self.client_secret = None
        self.routing = None

    async def initialize(self, client_secret: str, routing: Optional[RoutingMetadata]) -> None:
        self.client_secret = client_secret
        self.routing = routing

    async def confirm(self) -> ConfirmationResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        logger.info(f"Simulated confirmation: {self.outcome.value}")
        if self.outcome == ConfirmationOutcome.FAILED:
            return ConfirmationResult(self.outcome, "Simulated card decline")
        return ConfirmationResult(self.outcome)


# ============== Payment session ==============

@dataclass
class PaymentSession:
    job_id: str
    payer_id: str
    payee_id: str
    amount: Decimal  # before commission
    total_minor: int  # charged, commission included
    client_secret: str
    payment_intent_id: Optional[str]
    use_connect_account: bool
    payee_account_id: Optional[str]
    simulated: bool
    service_name: str = "Service"
    payer_name: str = "Client"

    @property
    def total(self) -> Decimal:
        return from_minor_units(self.total_minor)


class PaymentSessionOrchestrator:
    """Opens a payment session against the payee's sub-account."""

    def __init__(
        self,
        backend: SettlementBackendClient,
        surface: ConfirmationSurface,
        session_factory: async_sessionmaker,
        commission_rate: Optional[float] = None,
    ):
        self.backend = backend
        self.surface = surface
        self.session_factory = session_factory
        self.commission_rate = commission_rate if commission_rate is not None else settings.COMMISSION_RATE

    async def _payee_is_simulated(self, payee_id: str) -> bool:
        try:
            async with self.session_factory() as session:
                sub_account = await get_sub_account(payee_id, session)
        except SQLAlchemyError as e:
            logger.warning(f"Registry lookup failed, assuming real account: {e}", extra={"payee_id": payee_id})
            return False
        return bool(sub_account and sub_account.is_simulated)

    async def open_session(
        self,
        job_id: str,
        amount: Number,
        payer_id: str,
        payee_id: str,
        service_name: str = "Service",
        payer_name: str = "Client",
    ) -> PaymentSession:
        """
        Create a backend payment intent and bind the confirmation surface to it.

        Args:
            job_id: Job being paid for
            amount: Price before commission, decimal currency units
            payer_id: Paying user
            payee_id: Service provider receiving the funds
            service_name: Carried in intent metadata for the payee alert
            payer_name: Carried in intent metadata for the payee alert

        Returns:
            PaymentSession

        Raises:
            IntentCreationFailed
        """
        total_minor = total_with_commission(amount, self.commission_rate)
        simulated = await self._payee_is_simulated(payee_id)

        logger.info(
            "Opening payment session",
            extra={"job_id": job_id, "payee_id": payee_id, "amount": total_minor},
        )

        request = CreatePaymentIntentRequest(
            job_id=job_id,
            total_amount=total_minor,
            payer_id=payer_id,
            payee_id=payee_id,
            is_simulated_account=simulated,
            service_name=service_name,
            payer_name=payer_name,
        )
        try:
            response = await self.backend.create_payment_intent(request)
        except (GatewayUnavailable, GatewayRequestError) as e:
            logger.error(f"Payment intent request failed: {e.detail}", extra={"job_id": job_id})
            raise IntentCreationFailed()
        except ValidationError:
            logger.error("Backend returned a malformed payment intent", extra={"job_id": job_id}, exc_info=True)
            raise IntentCreationFailed()

        if not response.client_secret:
            logger.error("Backend returned no client secret", extra={"job_id": job_id})
            raise IntentCreationFailed()

        routing = None
        if response.use_connect_account and response.payee_account_id:
            routing = RoutingMetadata(
                connected_account_id=response.payee_account_id,
                payer_id=payer_id,
            )
        await self.surface.initialize(response.client_secret, routing)

        return PaymentSession(
            job_id=job_id,
            payer_id=payer_id,
            payee_id=payee_id,
            amount=quantize(amount),
            total_minor=total_minor,
            client_secret=response.client_secret,
            payment_intent_id=response.payment_intent_id or intent_id_from_secret(response.client_secret),
            use_connect_account=routing is not None,
            payee_account_id=response.payee_account_id,
            simulated=simulated,
            service_name=service_name,
            payer_name=payer_name,
        )


# ============== Optimistic payment state ==============

class PaymentState(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PROCESSING = "processing"


TERMINAL_STATES = {PaymentState.PAID, PaymentState.FAILED, PaymentState.CANCELLED}

StateCallback = Callable[[PaymentState, Optional["SettlementResult"]], Any]


class PaymentFlow:
    """
    One payment attempt as seen by the UI.

    Starts ``pending`` and moves to a terminal state only when settlement
    says so; a timeout leaves it ``processing`` rather than assuming success.
    """

    def __init__(
        self,
        orchestrator: PaymentSessionOrchestrator,
        reconciler: "SettlementReconciler",
        intent_timeout: Optional[float] = None,
        settlement_timeout: Optional[float] = None,
    ):
        self.orchestrator = orchestrator
        self.reconciler = reconciler
        self.intent_timeout = intent_timeout if intent_timeout is not None else settings.HTTP_TIMEOUT_SECONDS
        self.settlement_timeout = (
            settlement_timeout
            if settlement_timeout is not None
            else settings.CONFIRMATION_TIMEOUT_SECONDS + settings.SETTLEMENT_TIMEOUT_SECONDS
        )
        self.state = PaymentState.PENDING
        self.message: Optional[str] = None
        self.result: Optional["SettlementResult"] = None
        self._callbacks: List[StateCallback] = []

    def on_change(self, callback: StateCallback) -> None:
        self._callbacks.append(callback)

    async def _transition(self, state: PaymentState, message: str) -> None:
        if self.state in TERMINAL_STATES:
            return
        self.state = state
        self.message = message
        for callback in self._callbacks:
            outcome = callback(state, self.result)
            if inspect.isawaitable(outcome):
                await outcome

    async def pay(
        self,
        job_id: str,
        amount: Number,
        payer_id: str,
        payee_id: str,
        service_name: str = "Service",
        payer_name: str = "Client",
    ) -> PaymentState:
        try:
            session = await asyncio.wait_for(
                self.orchestrator.open_session(
                    job_id, amount, payer_id, payee_id, service_name, payer_name
                ),
                timeout=self.intent_timeout,
            )
        except (IntentCreationFailed, asyncio.TimeoutError):
            await self._transition(PaymentState.FAILED, "Could not start the payment, please try again")
            return self.state

        try:
            self.result = await asyncio.wait_for(
                self.reconciler.settle(session), timeout=self.settlement_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Settlement timed out, payment still processing", extra={"job_id": job_id})
            await self._transition(PaymentState.PROCESSING, "Payment still processing")
            return self.state

        await self._transition(self.result.payment_state, self.result.message)
        return self.state

    async def resolve(self, result: "SettlementResult") -> PaymentState:
        """Apply a later settlement result to an attempt left ``processing``."""
        self.result = result
        await self._transition(result.payment_state, result.message)
        return self.state
