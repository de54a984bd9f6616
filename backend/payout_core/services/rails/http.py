"""
HTTP rail adapter.

Talks to a rail's REST API with httpx. Transport errors and retryable status
codes are retried with backoff; every retry carries the same
``Idempotency-Key`` header so the rail executes the payout at most once.
"""

from typing import Any, Dict, Optional

import httpx

from ...core.logging import get_logger
from ...utils.retry import retry_async, RetryError, RAIL_TRANSPORT_RETRY_CONFIG
from .base import (
    RailAdapter,
    RailRejectedError,
    RailStatus,
    RailStatusResult,
    RailSubmission,
    RailSubmitResult,
    RailUnavailableError,
)

logger = get_logger(__name__)

_STATUS_MAP = {
    "succeeded": RailStatus.succeeded,
    "success": RailStatus.succeeded,
    "paid": RailStatus.succeeded,
    "completed": RailStatus.succeeded,
    "failed": RailStatus.failed,
    "rejected": RailStatus.failed,
    "returned": RailStatus.reversed,
    "reversed": RailStatus.reversed,
    "pending": RailStatus.pending,
    "processing": RailStatus.pending,
    "accepted": RailStatus.pending,
}


def map_rail_status(value: Optional[str]) -> RailStatus:
    """Unknown status strings are treated as not yet definitive."""
    return _STATUS_MAP.get((value or "").lower(), RailStatus.pending)


class HttpRail(RailAdapter):
    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def submit(self, submission: RailSubmission) -> RailSubmitResult:
        body = {
            "payout_id": submission.payout_id,
            "amount": str(submission.amount),
            "currency": submission.currency,
            "method_type": submission.method_type,
            "reference": submission.reference,
            "destination": submission.destination,
        }
        headers = {"Idempotency-Key": submission.idempotency_key}

        try:
            response = await retry_async(
                self._request,
                "POST",
                "/payouts",
                json=body,
                headers=headers,
                config=RAIL_TRANSPORT_RETRY_CONFIG,
                label=f"{self.name}.submit",
            )
        except RetryError as e:
            raise RailUnavailableError(f"{self.name} rail unreachable: {e.last_exception}") from e
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            if 400 <= code < 500 and code not in (408, 409, 429):
                payload = _json_or_empty(e.response)
                reason = payload.get("message") or payload.get("error") or f"Rejected by {self.name} rail"
                raise RailRejectedError(reason, code=payload.get("code")) from e
            raise RailUnavailableError(f"{self.name} rail returned {code}") from e
        except httpx.HTTPError as e:
            raise RailUnavailableError(f"{self.name} rail transport error: {e}") from e

        payload = _json_or_empty(response)
        operation_id = payload.get("operation_id") or payload.get("id")
        if not operation_id:
            # Accepted without an id: outcome unknown until the status lookup by key.
            raise RailUnavailableError(f"{self.name} rail response carried no operation id")

        logger.info("Rail submission accepted", extra={
            "rail": self.name,
            "payout_id": submission.payout_id,
            "rail_operation_id": operation_id,
        })
        return RailSubmitResult(operation_id=str(operation_id), status=payload.get("status", "accepted"))

    async def get_status(
        self,
        operation_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> RailStatusResult:
        if operation_id:
            path, params = f"/payouts/{operation_id}", None
        elif idempotency_key:
            path, params = "/payouts", {"idempotency_key": idempotency_key}
        else:
            raise ValueError("operation_id or idempotency_key is required")

        try:
            response = await retry_async(
                self._request,
                "GET",
                path,
                params=params,
                config=RAIL_TRANSPORT_RETRY_CONFIG,
                label=f"{self.name}.get_status",
            )
        except RetryError as e:
            raise RailUnavailableError(f"{self.name} rail unreachable: {e.last_exception}") from e
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return RailStatusResult(status=RailStatus.not_found, operation_id=operation_id)
            raise RailUnavailableError(f"{self.name} rail returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise RailUnavailableError(f"{self.name} rail transport error: {e}") from e

        payload = _json_or_empty(response)
        return RailStatusResult(
            status=map_rail_status(payload.get("status")),
            operation_id=payload.get("operation_id") or payload.get("id") or operation_id,
            reason=payload.get("reason") or payload.get("failure_reason"),
            raw=payload,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        response = await self._client.request(method, path, **kwargs)
        response.raise_for_status()
        return response


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
