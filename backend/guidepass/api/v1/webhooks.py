"""Payment provider webhook endpoint."""

import json

import structlog
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ValidationError

from guidepass.api.v1.deps import get_billing_service
from guidepass.auth import WebhookAuthorized
from guidepass.models.billing import ReconcileStatus
from guidepass.services.provider_events import purchase_event_from_payload

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class WebhookResponse(BaseModel):
    """Webhook processing response."""

    received: bool
    processed: bool
    status: str | None = None


@router.post("/purchases", response_model=WebhookResponse, dependencies=[WebhookAuthorized])
async def purchase_webhook(request: Request) -> WebhookResponse:
    """
    Apply a purchase lifecycle event.

    Replays return 200 with processed=false. Failures while applying return
    500 so the provider redelivers the event.
    """
    service = get_billing_service(request)
    body = await request.body()

    try:
        payload = json.loads(body)
        event = purchase_event_from_payload(payload)
    except (ValueError, ValidationError) as e:
        logger.warning("purchase_webhook_invalid", error=str(e))
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    if event is None:
        logger.info("purchase_webhook_unhandled_type", event_type=payload["event"].get("type"))
        return WebhookResponse(received=True, processed=False, status="unhandled")

    structlog.contextvars.bind_contextvars(
        account_id=event.account_id,
        event_id=event.event_id,
        transaction_id=event.transaction_id,
    )
    try:
        outcome = await service.handle_purchase_event(event)
    except Exception as e:
        logger.error(
            "purchase_webhook_failed",
            event_type=event.type.value,
            error=str(e),
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return WebhookResponse(
        received=True,
        processed=outcome.status != ReconcileStatus.DUPLICATE,
        status=outcome.status.value,
    )
