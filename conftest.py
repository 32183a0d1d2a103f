import json
import os
import tempfile
import time
from urllib.parse import parse_qs

# Settings are read at import time, so the environment comes first.
_TEST_DIR = tempfile.mkdtemp(prefix="settlement-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DIR}/app.db")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-secret-key-do-not-use-in-production")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_1234567890abcdef")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ENVIRONMENT", "test")

import httpx
import jwt
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from settlement.config.database import Base
from settlement.config.settings import settings
from settlement.schemas import CreatePaymentIntentRequest, ConfirmTransferRequest
from settlement.services.backend_client import SettlementBackendClient
from settlement.services.gateway import GatewayClient
from settlement.services.payments import create_payment_intent, confirm_transfer
from settlement.utils.exceptions import SettlementException
from settlement.utils.signature import compute_signature


class FakeStripe:
    """In-memory stand-in for the Stripe REST API behind an httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.intents = {}
        self.account_count = 0
        self.fail_status = None
        self.down = False
        self.confirm_status = "succeeded"

    def _error(self, status_code: int, message: str, code: str = None) -> httpx.Response:
        return httpx.Response(status_code, json={"error": {"message": message, "code": code}})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)
        if self.fail_status:
            return self._error(self.fail_status, "Simulated failure", "simulated")

        form = {key: values[0] for key, values in parse_qs(request.content.decode()).items()}
        path = request.url.path

        if request.method == "POST" and path == "/v1/accounts":
            self.account_count += 1
            return httpx.Response(200, json={"id": f"acct_test_{self.account_count}", "object": "account"})

        if request.method == "POST" and path == "/v1/account_links":
            return httpx.Response(
                200,
                json={"object": "account_link", "url": f"https://connect.stripe.test/setup/{form['account']}"},
            )

        if request.method == "POST" and path == "/v1/payment_intents":
            intent_id = f"pi_test_{len(self.intents) + 1}"
            intent = {
                "id": intent_id,
                "object": "payment_intent",
                "amount": int(form["amount"]),
                "currency": form["currency"],
                "status": "requires_payment_method",
                "client_secret": f"{intent_id}_secret_abc",
                "form": form,
            }
            self.intents[intent_id] = intent
            return httpx.Response(200, json=intent)

        parts = path.strip("/").split("/")
        if len(parts) >= 3 and parts[1] == "payment_intents":
            intent = self.intents.get(parts[2])
            if intent is None:
                return self._error(404, "No such payment_intent", "resource_missing")
            if request.method == "POST" and parts[-1] == "confirm":
                intent["status"] = self.confirm_status
            return httpx.Response(200, json=intent)

        return self._error(404, f"Unrecognized request URL {path}")

    def requests_to(self, path: str):
        return [request for request in self.requests if request.url.path == path]


class FakeBackend:
    """
    The platform backend as seen by the client library.

    Runs the real payment services against the test database; ``down`` and
    ``confirm_timeouts`` simulate an unreachable backend.
    """

    def __init__(self, session_factory, gateway: GatewayClient):
        self.session_factory = session_factory
        self.gateway = gateway
        self.down = False
        self.confirm_timeouts = 0
        self.confirm_calls = 0

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("backend unreachable", request=request)

        body = json.loads(request.content)
        try:
            async with self.session_factory() as session:
                if request.url.path.endswith("/create-payment-intent"):
                    response = await create_payment_intent(
                        CreatePaymentIntentRequest.model_validate(body), self.gateway, session
                    )
                else:
                    self.confirm_calls += 1
                    if self.confirm_timeouts > 0:
                        self.confirm_timeouts -= 1
                        raise httpx.ReadTimeout("backend timed out", request=request)
                    response = await confirm_transfer(
                        ConfirmTransferRequest.model_validate(body), self.gateway, session
                    )
        except SettlementException as e:
            return httpx.Response(e.status_code, json={"detail": e.detail})

        return httpx.Response(200, json=response.model_dump(mode="json", by_alias=True))


def make_token(user_id: str = "user-1", secret: str = None, expires_in: int = 3600) -> str:
    payload = {
        "sub": user_id,
        "aud": settings.JWT_AUDIENCE,
        "role": "authenticated",
        "exp": int(time.time()) + expires_in,
    }
    return jwt.encode(payload, secret or settings.SUPABASE_JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def sign_payload(payload: bytes, timestamp: int = None, secret: str = None) -> str:
    timestamp = timestamp if timestamp is not None else int(time.time())
    signature = compute_signature(payload, timestamp, secret or settings.STRIPE_WEBHOOK_SECRET)
    return f"t={timestamp},v1={signature}"


def gateway_event(event_id: str, event_type: str, obj: dict, created: int = None) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created if created is not None else int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }


@pytest.fixture
async def session_factory(tmp_path):
    """File-backed SQLite so concurrent sessions get their own connections."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path}/test.db",
        echo=False,
        future=True,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def fake_stripe():
    return FakeStripe()


@pytest.fixture
async def gateway(fake_stripe):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_stripe.handler))
    yield GatewayClient(http_client, base_url="https://api.stripe.test")
    await http_client.aclose()


@pytest.fixture
def fake_backend(session_factory, gateway):
    return FakeBackend(session_factory, gateway)


@pytest.fixture
async def backend(fake_backend):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_backend.handler))
    yield SettlementBackendClient(http_client, base_url="https://backend.test", access_token=make_token())
    await http_client.aclose()


@pytest.fixture
def client(fake_stripe):
    """
    TestClient on the real app, with the gateway swapped for the fake.

    Runs against the app's own database; tests use unique ids.
    """
    from fastapi.testclient import TestClient
    from settlement.main import app
    from settlement.routes.payments import limiter

    limiter.reset()
    with TestClient(app) as test_client:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_stripe.handler))
        app.state.gateway = GatewayClient(http_client, base_url="https://api.stripe.test")
        yield test_client


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {make_token()}"}
