from fastapi import APIRouter, Request, status
from settlement.schemas import WebhookAck
from settlement.services.webhooks import WebhookProcessor, handle_webhook
from settlement.utils.exceptions import SignatureInvalid
from settlement.utils.logger import logger

router = APIRouter(tags=["webhooks"])


def get_webhook_processor(request: Request) -> WebhookProcessor:
    return request.app.state.webhook_processor


@router.post("/webhook", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def gateway_webhook(request: Request):
    """
    Handle payment gateway webhook events.

    - Verify the ``Stripe-Signature`` header, 400 on failure
    - ``account.updated`` refreshes the payee's sub-account status
    - ``payment_intent.succeeded`` records the paid transaction once
    - Any other signed event is acknowledged

    Processing failures are logged and still acknowledged; replays are no-ops.
    """
    body = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        await handle_webhook(body, signature, get_webhook_processor(request))
    except SignatureInvalid as e:
        logger.warning(
            f"Webhook signature rejected: {e.detail}",
            extra={"security_event": True},
        )
        raise

    return WebhookAck(received=True)
