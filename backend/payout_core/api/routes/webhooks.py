"""
Webhook route for rail outcome notifications.
"""

import json

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import ValidationError

from ..deps import CorrelationID, WebhookServiceDep, WebhookSignature
from ...core.logging import get_logger
from ...models.webhook_event import WebhookProcessingResult
from ...schemas.webhooks import RailWebhookRequest, WebhookResponse

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

RESULT_MESSAGES = {
    WebhookProcessingResult.applied: "Webhook processed successfully",
    WebhookProcessingResult.duplicate: "Duplicate event ignored",
    WebhookProcessingResult.already_resolved: "Payout already resolved",
    WebhookProcessingResult.unmatched: "Unknown rail operation",
}


@router.post("/rail", response_model=WebhookResponse)
async def receive_rail_webhook(
    request: Request,
    signature_data: WebhookSignature,
    correlation_id: CorrelationID,
    webhook_service: WebhookServiceDep
) -> WebhookResponse:
    """
    Receive a rail outcome callback.

    The signature is checked over the raw body before it is parsed. Every
    verified event is acknowledged with 200, including duplicates and
    unknown operations, so the rail stops redelivering; only a processing
    error returns 5xx and invites a retry.
    """
    body = await request.body()
    try:
        raw_payload = json.loads(body)
        event = RailWebhookRequest.model_validate(raw_payload)
    except (ValueError, ValidationError) as e:
        logger.warning("Malformed rail webhook", extra={
            "correlation_id": correlation_id,
            "error": str(e)
        })
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Malformed webhook payload"
        )

    logger.info("Rail webhook received", extra={
        "correlation_id": correlation_id,
        "event_id": event.event_id,
        "rail_operation_id": event.operation_id,
        "outcome": event.outcome.value,
        "signature_type": signature_data.get("type")
    })

    outcome = await webhook_service.process_event(event, raw_payload, correlation_id)

    return WebhookResponse(
        success=True,
        result=outcome.result,
        message=RESULT_MESSAGES[outcome.result],
        payout_id=str(outcome.payout_id) if outcome.payout_id else None,
        correlation_id=correlation_id
    )
