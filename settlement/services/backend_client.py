import httpx
from typing import Optional
from settlement.config.settings import settings
from settlement.schemas import (
    CreatePaymentIntentRequest,
    CreatePaymentIntentResponse,
    ConfirmTransferRequest,
    ConfirmTransferResponse,
)
from settlement.services.gateway import send

SERVICE_NAME = "Settlement backend"


class SettlementBackendClient:
    """Client for the platform backend endpoints, as called from the mobile client."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: Optional[str] = None,
        access_token: Optional[str] = None,
    ):
        self.http_client = http_client
        self.base_url = (base_url or settings.BACKEND_BASE_URL).rstrip("/")
        self.access_token = access_token

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _post(self, path: str, body: dict, timeout: Optional[float] = None) -> dict:
        kwargs = {"json": body, "headers": self._headers()}
        if timeout is not None:
            kwargs["timeout"] = timeout
        return await send(
            self.http_client,
            "POST",
            f"{self.base_url}{path}",
            service=SERVICE_NAME,
            **kwargs,
        )

    async def create_payment_intent(
        self, payload: CreatePaymentIntentRequest
    ) -> CreatePaymentIntentResponse:
        body = await self._post(
            "/payments/create-payment-intent",
            payload.model_dump(by_alias=True),
        )
        return CreatePaymentIntentResponse.model_validate(body)

    async def confirm_transfer(self, payload: ConfirmTransferRequest) -> ConfirmTransferResponse:
        body = await self._post(
            "/payments/confirm-transfer",
            payload.model_dump(by_alias=True),
            timeout=settings.SETTLEMENT_TIMEOUT_SECONDS,
        )
        return ConfirmTransferResponse.model_validate(body)
