"""Gateway-facing webhook endpoint.

Returns 200 for processed, ignored and duplicate deliveries so the gateway
stops retrying. Anything that should be redelivered (a lookup or database
failure) surfaces as a 5xx.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from donation_engine.api.deps import get_webhook_receiver
from donation_engine.core.exceptions import (
    GatewayError,
    WebhookConfigurationError,
    WebhookVerificationFailed,
)
from donation_engine.core.rate_limit import client_ip
from donation_engine.metrics.cloudwatch import emit_business_event
from donation_engine.schemas.webhooks import WebhookAck
from donation_engine.services.webhook_receiver import WebhookReceiver

logger = structlog.get_logger(__name__)

router = APIRouter()

SUPPORTED_PROVIDERS = {"helcim"}


@router.post("/{provider}", response_model=WebhookAck, response_model_exclude_none=True)
async def receive_webhook(
    provider: str,
    request: Request,
    receiver: WebhookReceiver = Depends(get_webhook_receiver),
):
    """Verify, deduplicate and apply one gateway event."""
    if provider not in SUPPORTED_PROVIDERS:
        raise HTTPException(status_code=404, detail="Unknown webhook provider")

    body = await request.body()
    try:
        ack = await receiver.handle(request.headers, body, provider)
    except WebhookConfigurationError:
        logger.error("webhook_verifier_token_missing", provider=provider)
        raise HTTPException(status_code=503, detail="Webhook endpoint is not configured")
    except WebhookVerificationFailed as exc:
        logger.warning(
            "webhook_rejected",
            provider=provider,
            reason=exc.reason,
            source_ip=client_ip(request),
            event_id=request.headers.get("webhook-id"),
        )
        await emit_business_event("webhook_rejected")
        raise HTTPException(status_code=exc.status_code, detail=exc.reason)
    except GatewayError as exc:
        logger.error("webhook_lookup_failed", provider=provider, error_type=type(exc).__name__)
        raise HTTPException(status_code=500, detail="Event could not be processed")

    logger.info("webhook_acknowledged", provider=provider, status=ack.status, reason=ack.reason)
    return ack
