import httpx
from fastapi import Request
from typing import Any, Dict, Iterator, Optional, Tuple
from settlement.config.settings import settings
from settlement.utils.exceptions import GatewayUnavailable, GatewayRequestError
from settlement.utils.logger import logger


def encode_form(params: Dict[str, Any], prefix: str = "") -> Iterator[Tuple[str, str]]:
    """Flatten nested dicts into Stripe's ``a[b][c]=v`` form encoding."""
    for key, value in params.items():
        if value is None:
            continue
        name = f"{prefix}[{key}]" if prefix else key
        if isinstance(value, dict):
            yield from encode_form(value, name)
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                if isinstance(item, dict):
                    yield from encode_form(item, f"{name}[{index}]")
                else:
                    yield f"{name}[{index}]", str(item)
        elif isinstance(value, bool):
            yield name, "true" if value else "false"
        else:
            yield name, str(value)


def raise_for_gateway(response: httpx.Response, service: str = "Payment gateway") -> None:
    """Map an HTTP error response onto the settlement error taxonomy."""
    if response.status_code >= 500:
        raise GatewayUnavailable(f"{service} error {response.status_code}")
    if response.status_code >= 400:
        code = None
        message = response.text
        try:
            body = response.json()
            error = body.get("error") if isinstance(body, dict) else None
            if isinstance(error, dict):
                code = error.get("code")
                message = error.get("message") or message
            elif isinstance(error, str):
                message = error
        except ValueError:
            pass
        raise GatewayRequestError(f"{service} rejected request: {message}", code=code)


async def send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    service: str = "Payment gateway",
    **kwargs,
) -> dict:
    """Send a request and return its JSON body; transport failures become GatewayUnavailable."""
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise GatewayUnavailable(f"{service} timed out: {e}")
    except httpx.TransportError as e:
        raise GatewayUnavailable(f"{service} unreachable: {e}")

    raise_for_gateway(response, service)

    try:
        return response.json()
    except ValueError:
        raise GatewayUnavailable(f"{service} returned a non-JSON body")


class GatewayClient:
    """
    Thin client over the Stripe REST API.

    Constructed once per process with an injected ``httpx.AsyncClient`` so
    tests can swap the transport.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        api_version: Optional[str] = None,
    ):
        self.http_client = http_client
        self.secret_key = secret_key if secret_key is not None else settings.STRIPE_SECRET_KEY
        self.base_url = (base_url or settings.STRIPE_BASE_URL).rstrip("/")
        self.api_version = api_version or settings.STRIPE_API_VERSION

    def _headers(self, idempotency_key: Optional[str] = None) -> dict:
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Stripe-Version": self.api_version,
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _post(self, path: str, params: dict, idempotency_key: Optional[str] = None) -> dict:
        return await send(
            self.http_client,
            "POST",
            f"{self.base_url}{path}",
            data=dict(encode_form(params)),
            headers=self._headers(idempotency_key),
        )

    async def _get(self, path: str) -> dict:
        return await send(
            self.http_client,
            "GET",
            f"{self.base_url}{path}",
            headers=self._headers(),
        )

    async def create_account(self, payee_id: str, email: str, display_name: Optional[str]) -> dict:
        """
        Create an Express connected account for a payee.

        Args:
            payee_id: Platform user id, stored in account metadata
            email: Payee email
            display_name: Business profile name; defaults to the email local part

        Returns:
            The gateway account object
        """
        params = {
            "type": "express",
            "country": settings.ACCOUNT_COUNTRY,
            "email": email,
            "business_type": "individual",
            "capabilities": {
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
            "business_profile": {"name": display_name or email.split("@")[0]},
            "metadata": {"payeeId": payee_id},
        }
        return await self._post("/v1/accounts", params, idempotency_key=f"account-{payee_id}")

    async def create_account_link(self, account_id: str) -> dict:
        params = {
            "account": account_id,
            "refresh_url": settings.ONBOARDING_REFRESH_URL,
            "return_url": settings.ONBOARDING_RETURN_URL,
            "type": "account_onboarding",
        }
        return await self._post("/v1/account_links", params)

    async def create_payment_intent(
        self,
        amount: int,
        metadata: dict,
        idempotency_key: str,
        currency: Optional[str] = None,
        application_fee_amount: Optional[int] = None,
        destination: Optional[str] = None,
    ) -> dict:
        """
        Create a payment intent, optionally routed to a connected account.

        Args:
            amount: Total in minor units
            metadata: Job and party references carried to webhooks
            idempotency_key: Gateway idempotency key
            currency: ISO currency, defaults to settings
            application_fee_amount: Platform commission in minor units
            destination: Connected account receiving the funds
        """
        params = {
            "amount": amount,
            "currency": currency or settings.CURRENCY,
            "payment_method_types": ["card"],
            "metadata": metadata,
        }
        if destination:
            params["application_fee_amount"] = application_fee_amount
            params["transfer_data"] = {"destination": destination}
        return await self._post("/v1/payment_intents", params, idempotency_key=idempotency_key)

    async def retrieve_payment_intent(self, intent_id: str) -> dict:
        return await self._get(f"/v1/payment_intents/{intent_id}")

    async def confirm_payment_intent(self, intent_id: str, payment_method: str) -> dict:
        return await self._post(
            f"/v1/payment_intents/{intent_id}/confirm",
            {"payment_method": payment_method},
            idempotency_key=f"confirm-{intent_id}",
        )


def intent_id_from_secret(client_secret: Optional[str]) -> Optional[str]:
    """``pi_123_secret_abc`` -> ``pi_123``; None when the secret carries no id."""
    if not client_secret or "_secret_" not in client_secret:
        return None
    intent_id = client_secret.split("_secret_")[0]
    return intent_id or None


def get_gateway(request: Request) -> GatewayClient:
    """FastAPI dependency returning the process-wide gateway client."""
    return request.app.state.gateway


def build_http_client() -> httpx.AsyncClient:
    logger.info("Creating gateway HTTP client")
    return httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)
