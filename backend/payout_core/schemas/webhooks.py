"""
Webhook schemas for rail outcome notifications.
"""

from datetime import datetime
from typing import Optional, Dict, Any

from pydantic import BaseModel, Field

from ..models.webhook_event import RailOutcome, WebhookProcessingResult
from ..utils.clock import utcnow


class RailWebhookRequest(BaseModel):
    """Incoming rail callback."""

    event_id: str = Field(..., min_length=1, max_length=128, description="Rail-assigned unique event id")
    operation_id: str = Field(..., min_length=1, max_length=128, description="Rail operation id")
    outcome: RailOutcome = Field(..., description="succeeded, failed or reversed")
    reason: Optional[str] = Field(None, max_length=1000, description="Failure or reversal reason")
    occurred_at: Optional[datetime] = Field(None, description="When the rail observed the outcome")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Additional rail data")


class WebhookResponse(BaseModel):
    """Webhook acknowledgment. Always 200 for a verified payload so the rail
    stops redelivering; ``result`` says what happened."""

    success: bool = Field(..., description="Whether the event was accepted")
    result: WebhookProcessingResult = Field(..., description="Processing result")
    message: str = Field(..., description="Response message")
    payout_id: Optional[str] = Field(None, description="Affected payout request")
    correlation_id: Optional[str] = Field(None, description="Request correlation ID")
    processed_at: datetime = Field(default_factory=utcnow, description="Processing timestamp")
