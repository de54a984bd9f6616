"""
Payout request routes: create, read, cancel, dispatch and fee estimates.
"""

from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import (
    CorrelationID,
    CurrentUserId,
    DispatcherDep,
    NotifierDep,
    PayoutServiceDep,
    RailRegistryDep,
)
from ...core.errors import PayoutError, http_error_from_payout_error
from ...core.logging import clear_payout_context, get_logger
from ...models.payout_request import PayoutStatus
from ...schemas.payouts import (
    DispatchRead,
    FeeEstimate,
    PayoutAttemptRead,
    PayoutCreate,
    PayoutList,
    PayoutRead,
    PayoutStats,
)
from ...services.dispatcher import RailDispatcher
from ...services.fees import estimate_fee, net_amount_for
from ...services.notifications import NotificationService
from ...services.rails.registry import RailRegistry

logger = get_logger(__name__)

router = APIRouter(prefix="/payouts", tags=["payouts"])


async def dispatch_in_background(
    session_factory: Callable[[], AsyncSession],
    registry: RailRegistry,
    notifier: NotificationService,
    payout_id: UUID,
    correlation_id: Optional[str] = None,
) -> None:
    """Dispatch with a fresh session once the create response is sent.
    A failure here is recovered by the reconciliation pending sweep."""
    async with session_factory() as session:
        try:
            await RailDispatcher(session, registry, notifier).dispatch(payout_id, correlation_id)
        except Exception as e:
            logger.error("Background dispatch failed", extra={
                "correlation_id": correlation_id,
                "payout_id": str(payout_id),
                "error": str(e),
                "error_type": type(e).__name__
            })
        finally:
            clear_payout_context()


@router.post("/", response_model=PayoutRead, status_code=status.HTTP_201_CREATED)
async def create_payout(
    request: Request,
    payout_data: PayoutCreate,
    background_tasks: BackgroundTasks,
    user_id: CurrentUserId,
    correlation_id: CorrelationID,
    payout_service: PayoutServiceDep,
    registry: RailRegistryDep,
    notifier: NotifierDep,
) -> PayoutRead:
    """
    Create a payout request with its fee frozen. The rail submission is
    scheduled in the background; poll the payout for its status.
    """
    try:
        payout = await payout_service.create_payout_request(
            user_id=user_id,
            payout_method_id=payout_data.payout_method_id,
            amount=payout_data.amount,
            currency=payout_data.currency,
            note=payout_data.note,
            delivery_speed=payout_data.delivery_speed,
            correlation_id=correlation_id
        )
    except PayoutError as e:
        raise http_error_from_payout_error(e, correlation_id)

    background_tasks.add_task(
        dispatch_in_background,
        request.app.state.session_factory,
        registry,
        notifier,
        payout.id,
        correlation_id
    )
    return PayoutRead.model_validate(payout)


@router.get("/", response_model=PayoutList)
async def list_payouts(
    user_id: CurrentUserId,
    payout_service: PayoutServiceDep,
    status_filter: Optional[PayoutStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1, description="Page number (1-based)"),
    page_size: int = Query(20, ge=1, le=100, description="Number of items per page")
) -> PayoutList:
    """Payouts for the authenticated user, newest first."""
    return await payout_service.list_payout_requests(
        user_id, status=status_filter, page=page, page_size=page_size
    )


@router.get("/stats", response_model=PayoutStats)
async def payout_stats(
    user_id: CurrentUserId,
    payout_service: PayoutServiceDep,
    currency: Optional[str] = Query(None, min_length=3, max_length=3)
) -> PayoutStats:
    return await payout_service.get_payout_stats(user_id, currency)


@router.get("/fees/estimate", response_model=FeeEstimate)
async def fee_estimate(
    user_id: CurrentUserId,
    amount: Decimal = Query(..., description="Gross payout amount"),
    method_type: str = Query(..., description="Payout method type")
) -> FeeEstimate:
    """Same resolver as creation, so the estimate matches the frozen fee."""
    fee = estimate_fee(amount, method_type)
    net = net_amount_for(amount, fee) if amount > 0 else Decimal("0.00")
    return FeeEstimate(amount=amount, method_type=method_type, fee=fee, net_amount=net)


@router.get("/{payout_id}", response_model=PayoutRead)
async def get_payout(
    payout_id: UUID,
    user_id: CurrentUserId,
    correlation_id: CorrelationID,
    payout_service: PayoutServiceDep
) -> PayoutRead:
    try:
        payout = await payout_service.get_payout_request(user_id, payout_id)
    except PayoutError as e:
        raise http_error_from_payout_error(e, correlation_id)
    return PayoutRead.model_validate(payout)


@router.post("/{payout_id}/cancel", response_model=PayoutRead)
async def cancel_payout(
    payout_id: UUID,
    user_id: CurrentUserId,
    correlation_id: CorrelationID,
    payout_service: PayoutServiceDep
) -> PayoutRead:
    """Cancel a payout that has not been submitted to the rail."""
    try:
        payout = await payout_service.cancel_payout_request(user_id, payout_id, correlation_id)
    except PayoutError as e:
        raise http_error_from_payout_error(e, correlation_id)
    return PayoutRead.model_validate(payout)


@router.post("/{payout_id}/dispatch", response_model=DispatchRead)
async def dispatch_payout(
    payout_id: UUID,
    user_id: CurrentUserId,
    correlation_id: CorrelationID,
    payout_service: PayoutServiceDep,
    dispatcher: DispatcherDep
) -> DispatchRead:
    """
    Idempotent dispatch trigger. When a ledger record already exists it is
    returned and the rail is not called again.
    """
    try:
        await payout_service.get_payout_request(user_id, payout_id)
        outcome = await dispatcher.dispatch(payout_id, correlation_id)
    except PayoutError as e:
        raise http_error_from_payout_error(e, correlation_id)

    return DispatchRead(
        payout=PayoutRead.model_validate(outcome.payout),
        attempt=PayoutAttemptRead.model_validate(outcome.attempt) if outcome.attempt else None,
        submitted=outcome.submitted,
        rail_result=outcome.rail_result
    )
