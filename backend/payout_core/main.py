from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict
from .core.config import settings
from .core.logging import configure_logging, logger, set_correlation_id, get_correlation_id
from .db.session import SessionLocal
from .api.routes import payout_methods, payouts, webhooks
from .schemas.webhooks import RailWebhookRequest
from .services.notifications import NotificationService
from .services.rails.mock import MockRail
from .services.rails.registry import build_rail_registry
from .services.reconciliation import ReconciliationLoop
from .services.webhook_service import WebhookService


async def ingest_mock_webhook(webhook_data: Dict[str, Any]) -> None:
    """Feed mock rail callbacks through the same ingestor as real webhooks."""
    async with SessionLocal() as session:
        service = WebhookService(session, app.state.notifier)
        await service.process_event(RailWebhookRequest.model_validate(webhook_data), webhook_data)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging()
    logger.info("Starting Payout Processing Core", rail_mode=settings.rail_mode)

    app.state.session_factory = SessionLocal
    app.state.notifier = NotificationService()
    app.state.rail_registry = build_rail_registry(settings)

    for adapter in app.state.rail_registry.adapters():
        if isinstance(adapter, MockRail):
            adapter.add_webhook_callback(ingest_mock_webhook)
            logger.info("Webhook callback registered with mock rail")

    reconciliation = None
    if settings.reconciliation_enabled:
        reconciliation = ReconciliationLoop(SessionLocal, app.state.rail_registry, app.state.notifier)
        reconciliation.start()

    yield

    # Shutdown
    logger.info("Shutting down Payout Processing Core")
    if reconciliation is not None:
        await reconciliation.stop()
    await app.state.rail_registry.aclose()

app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    """Add correlation ID to every request and log request/response"""

    correlation_id = request.headers.get("x-correlation-id") or str(uuid.uuid4())
    set_correlation_id(correlation_id)
    request.state.correlation_id = correlation_id

    start_time = time.time()
    logger.info(
        "request_started",
        method=request.method,
        url=str(request.url.path),
        remote_addr=request.client.host if request.client else None
    )

    try:
        response = await call_next(request)

        process_time = time.time() - start_time
        logger.info(
            "request_completed",
            method=request.method,
            url=str(request.url.path),
            status_code=response.status_code,
            process_time=round(process_time, 4)
        )

        response.headers["x-correlation-id"] = correlation_id
        return response

    except Exception as e:
        process_time = time.time() - start_time
        logger.error(
            "request_failed",
            method=request.method,
            url=str(request.url.path),
            error=str(e),
            error_type=type(e).__name__,
            process_time=round(process_time, 4)
        )
        raise

app.include_router(payouts.router)
app.include_router(payout_methods.router)
app.include_router(webhooks.router)

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    logger.info("health_check_requested")
    return {"status": "healthy", "rail_mode": settings.rail_mode, "correlation_id": get_correlation_id()}
