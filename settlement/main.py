from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from settlement.config.settings import settings
from settlement.config.database import engine, Base, async_session
from settlement.routes import accounts, payments, webhooks
from settlement.routes.payments import limiter
from settlement.services.gateway import GatewayClient, build_http_client
from settlement.services.notifications import NotificationAggregator
from settlement.services.webhooks import WebhookProcessor
from settlement.utils.exceptions import SettlementException
from settlement.utils.logger import logger
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan management.
    - Startup: Create database tables, gateway client and webhook processor
    - Shutdown: Close HTTP client and database connection
    """
    # Startup
    logger.info("Creating database tables...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    http_client = build_http_client()
    app.state.gateway = GatewayClient(http_client)
    app.state.webhook_processor = WebhookProcessor(
        async_session,
        aggregator=NotificationAggregator(async_session),
    )

    yield

    # Shutdown
    logger.info("Closing gateway client and database connection...")
    await http_client.aclose()
    await engine.dispose()


app = FastAPI(
    title="Settlement Service",
    description="Marketplace payment settlement with Stripe Connect sub-accounts",
    version="1.0.0",
    lifespan=lifespan,
    swagger_ui_parameters={
        "persistAuthorization": True,
    },
)

# Add rate limiter to app state
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
@app.exception_handler(SettlementException)
async def settlement_exception_handler(request, exc: SettlementException):
    """Handle settlement-specific exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc: RequestValidationError):
    """Handle validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc: Exception):
    """Handle unexpected errors."""
    logger.error(f"Unexpected error: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


app.include_router(webhooks.router)
app.include_router(payments.router)
app.include_router(accounts.router)


@app.get("/health", tags=["health"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "settlement-service",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
    }


@app.get("/", tags=["root"])
async def root():
    """Root endpoint."""
    return {
        "message": "Welcome to Settlement Service API",
        "docs": "/docs",
        "openapi": "/openapi.json",
    }
