"""
Payout method registry routes.
"""

from uuid import UUID

from fastapi import APIRouter, Body, Response, status

from ..deps import CorrelationID, CurrentUserId, PayoutMethodServiceDep
from ...core.errors import PayoutError, http_error_from_payout_error
from ...schemas.payout_methods import PayoutMethodCreate, PayoutMethodList, PayoutMethodRead

router = APIRouter(prefix="/payout-methods", tags=["payout-methods"])


@router.get("/", response_model=PayoutMethodList)
async def list_payout_methods(
    user_id: CurrentUserId,
    method_service: PayoutMethodServiceDep
) -> PayoutMethodList:
    """Active methods, default first."""
    methods = await method_service.list_methods(user_id)
    return PayoutMethodList(items=[PayoutMethodRead.model_validate(m) for m in methods])


@router.post("/", response_model=PayoutMethodRead, status_code=status.HTTP_201_CREATED)
async def add_payout_method(
    user_id: CurrentUserId,
    correlation_id: CorrelationID,
    method_service: PayoutMethodServiceDep,
    method_data: PayoutMethodCreate = Body(...)
) -> PayoutMethodRead:
    try:
        method = await method_service.add_method(user_id, method_data, correlation_id)
    except PayoutError as e:
        raise http_error_from_payout_error(e, correlation_id)
    return PayoutMethodRead.model_validate(method)


@router.delete("/{method_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_payout_method(
    method_id: UUID,
    user_id: CurrentUserId,
    correlation_id: CorrelationID,
    method_service: PayoutMethodServiceDep
) -> Response:
    try:
        await method_service.remove_method(user_id, method_id, correlation_id)
    except PayoutError as e:
        raise http_error_from_payout_error(e, correlation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{method_id}/default", response_model=PayoutMethodRead)
async def set_default_payout_method(
    method_id: UUID,
    user_id: CurrentUserId,
    correlation_id: CorrelationID,
    method_service: PayoutMethodServiceDep
) -> PayoutMethodRead:
    try:
        method = await method_service.set_default(user_id, method_id)
    except PayoutError as e:
        raise http_error_from_payout_error(e, correlation_id)
    return PayoutMethodRead.model_validate(method)
