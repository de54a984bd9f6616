from .payout_method import PayoutMethod, PayoutMethodType
from .payout_request import PayoutRequest, PayoutStatus
from .payout_attempt import PayoutAttempt, AttemptStatus
from .webhook_event import WebhookEvent, RailOutcome, WebhookProcessingResult

__all__ = [
    "PayoutMethod",
    "PayoutMethodType",
    "PayoutRequest",
    "PayoutStatus",
    "PayoutAttempt",
    "AttemptStatus",
    "WebhookEvent",
    "RailOutcome",
    "WebhookProcessingResult",
]
