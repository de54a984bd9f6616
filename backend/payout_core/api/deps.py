"""
FastAPI dependencies for identity, correlation ids, webhook verification and services.
"""

from typing import Optional, Dict, Any, Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, status, Request, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.errors import create_auth_required_error, create_token_invalid_error
from ..core.logging import get_logger
from ..core.security import (
    TokenVerificationError,
    generate_correlation_id,
    verify_access_token,
    verify_webhook_signature_hmac,
    verify_webhook_timestamp,
)
from ..db.session import get_db
from ..services.dispatcher import RailDispatcher
from ..services.notifications import NotificationService
from ..services.payout_method_service import PayoutMethodService
from ..services.payout_service import PayoutService
from ..services.rails.registry import RailRegistry
from ..services.webhook_service import WebhookService

logger = get_logger(__name__)

security_scheme = HTTPBearer(
    scheme_name="JWT",
    description="Identity token; the subject is the user id",
    auto_error=False
)


async def get_correlation_id(
    request: Request,
    x_correlation_id: Optional[str] = Header(None, alias="X-Correlation-ID")
) -> str:
    """
    Get or generate correlation ID for request tracing.
    """
    if x_correlation_id:
        return x_correlation_id

    if hasattr(request.state, "correlation_id"):
        return request.state.correlation_id

    correlation_id = generate_correlation_id()
    request.state.correlation_id = correlation_id
    return correlation_id


async def get_current_user_id(
    correlation_id: Annotated[str, Depends(get_correlation_id)],
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
) -> UUID:
    """
    User id from the bearer identity token. Sessions are owned by the
    identity provider; this core only trusts the token's subject.
    """
    if not credentials:
        raise create_auth_required_error(correlation_id)

    try:
        claims = verify_access_token(credentials.credentials)
    except TokenVerificationError as e:
        logger.warning("Identity token rejected", extra={
            "correlation_id": correlation_id,
            "error": str(e)
        })
        raise create_token_invalid_error(correlation_id)

    return UUID(str(claims["sub"]))


async def verify_webhook_signature(
    request: Request,
    x_signature: str = Header(..., alias="X-Signature"),
    x_timestamp: Optional[str] = Header(None, alias="X-Timestamp")
) -> Dict[str, Any]:
    """
    Verify the rail's HMAC-SHA256 signature over the raw body and, when
    sent, the replay window of ``X-Timestamp``.
    """
    body = await request.body()
    correlation_id = getattr(request.state, "correlation_id", None)

    logger.info("Verifying webhook signature", extra={
        "body_length": len(body),
        "correlation_id": correlation_id
    })

    if x_timestamp and not verify_webhook_timestamp(x_timestamp, settings.webhook_timeout_seconds):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook timestamp is invalid or too old"
        )

    if not verify_webhook_signature_hmac(body, x_signature, settings.webhook_secret):
        logger.warning("Webhook signature verification failed", extra={
            "correlation_id": correlation_id
        })
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature"
        )

    return {"type": "hmac_sha256", "verified": True, "timestamp": x_timestamp}


def get_rail_registry(request: Request) -> RailRegistry:
    return request.app.state.rail_registry


def get_notifier(request: Request) -> NotificationService:
    notifier = getattr(request.app.state, "notifier", None)
    if notifier is None:
        notifier = NotificationService()
        request.app.state.notifier = notifier
    return notifier


async def get_payout_service(
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notifier)
) -> PayoutService:
    return PayoutService(db, notifier)


async def get_payout_method_service(
    db: AsyncSession = Depends(get_db)
) -> PayoutMethodService:
    return PayoutMethodService(db)


async def get_dispatcher(
    db: AsyncSession = Depends(get_db),
    registry: RailRegistry = Depends(get_rail_registry),
    notifier: NotificationService = Depends(get_notifier)
) -> RailDispatcher:
    return RailDispatcher(db, registry, notifier)


async def get_webhook_service(
    db: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notifier)
) -> WebhookService:
    return WebhookService(db, notifier)


# Type aliases for dependencies
CurrentUserId = Annotated[UUID, Depends(get_current_user_id)]
CorrelationID = Annotated[str, Depends(get_correlation_id)]
WebhookSignature = Annotated[Dict[str, Any], Depends(verify_webhook_signature)]
RailRegistryDep = Annotated[RailRegistry, Depends(get_rail_registry)]
NotifierDep = Annotated[NotificationService, Depends(get_notifier)]
PayoutServiceDep = Annotated[PayoutService, Depends(get_payout_service)]
PayoutMethodServiceDep = Annotated[PayoutMethodService, Depends(get_payout_method_service)]
DispatcherDep = Annotated[RailDispatcher, Depends(get_dispatcher)]
WebhookServiceDep = Annotated[WebhookService, Depends(get_webhook_service)]
