"""
Mock payment rail for local development and tests.

Simulates a third-party rail: submissions are idempotent by key, outcomes can
be scripted per call, and settled operations can be pushed to registered
webhook callbacks after a delay.
"""

import asyncio
import random
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from ...core.logging import get_logger
from ...utils.clock import utcnow
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

WebhookCallback = Callable[[Dict[str, Any]], Awaitable[Any]]


class MockRailBehavior(str, Enum):
    """How the mock answers a submission."""
    ACCEPT = "accept"
    REJECT = "reject"
    UNAVAILABLE = "unavailable"
    # Nothing recorded at the rail, and the caller never hears back.
    HANG = "hang"
    # Recorded at the rail, but the response is lost.
    ACCEPT_THEN_HANG = "accept_then_hang"


@dataclass
class MockOperation:
    operation_id: str
    idempotency_key: str
    submission: RailSubmission
    status: RailStatus = RailStatus.pending
    reason: Optional[str] = None
    created_at: Optional[datetime] = None


class MockRail(RailAdapter):
    """In-memory rail. One instance may serve several rail families."""

    def __init__(
        self,
        name: str = "mock",
        auto_settle: bool = False,
        settle_delay_range: tuple[float, float] = (2.0, 10.0),
        hang_seconds: float = 3600.0,
    ):
        self.name = name
        self.auto_settle = auto_settle
        self.settle_delay_range = settle_delay_range
        self.hang_seconds = hang_seconds
        self.default_behavior = MockRailBehavior.ACCEPT
        self.reject_reason = "Destination account rejected the transfer"
        self._scripted: Deque[MockRailBehavior] = deque()
        self._operations: Dict[str, MockOperation] = {}
        self._by_key: Dict[str, str] = {}
        self._webhook_callbacks: List[WebhookCallback] = []
        self._status_overrides: Deque[RailStatus] = deque()
        self._status_failures = 0
        self._operation_ids: Deque[str] = deque()
        self._settle_tasks: set[asyncio.Task] = set()
        self.submit_calls = 0
        self.status_calls = 0

    def add_webhook_callback(self, callback: WebhookCallback) -> None:
        """Add a coroutine to be called with each webhook payload."""
        self._webhook_callbacks.append(callback)

    def script(self, *behaviors: MockRailBehavior) -> None:
        """Queue behaviors for the next submissions, in order."""
        self._scripted.extend(behaviors)

    def script_status(self, *statuses: RailStatus) -> None:
        """Queue answers for the next status queries, overriding recorded state."""
        self._status_overrides.extend(statuses)

    def script_operation_ids(self, *operation_ids: str) -> None:
        """Use these ids, in order, for the next recorded operations."""
        self._operation_ids.extend(operation_ids)

    def fail_next_status_queries(self, count: int) -> None:
        self._status_failures = count

    def operation_count(self) -> int:
        return len(self._operations)

    def get_operation(self, operation_id: str) -> Optional[MockOperation]:
        return self._operations.get(operation_id)

    async def submit(self, submission: RailSubmission) -> RailSubmitResult:
        self.submit_calls += 1

        existing_id = self._by_key.get(submission.idempotency_key)
        if existing_id:
            logger.info("Mock rail: replayed idempotency key", extra={
                "payout_id": submission.payout_id,
                "rail_operation_id": existing_id,
            })
            return RailSubmitResult(operation_id=existing_id, status="accepted")

        behavior = self._scripted.popleft() if self._scripted else self.default_behavior

        logger.info("Mock rail: submission received", extra={
            "rail": self.name,
            "payout_id": submission.payout_id,
            "amount": str(submission.amount),
            "currency": submission.currency,
            "behavior": behavior.value,
        })

        if behavior == MockRailBehavior.REJECT:
            raise RailRejectedError(self.reject_reason, code="destination_rejected")

        if behavior == MockRailBehavior.UNAVAILABLE:
            raise RailUnavailableError("Mock rail temporarily unavailable")

        if behavior == MockRailBehavior.HANG:
            await asyncio.sleep(self.hang_seconds)
            raise RailUnavailableError("Mock rail did not answer")

        operation = self._record(submission)

        if behavior == MockRailBehavior.ACCEPT_THEN_HANG:
            await asyncio.sleep(self.hang_seconds)
            raise RailUnavailableError("Mock rail response lost")

        if self.auto_settle:
            delay = random.uniform(*self.settle_delay_range)
            task = asyncio.create_task(
                self._settle_later(operation.operation_id, RailStatus.succeeded, delay)
            )
            self._settle_tasks.add(task)
            task.add_done_callback(self._settle_tasks.discard)

        return RailSubmitResult(operation_id=operation.operation_id, status="accepted")

    async def get_status(
        self,
        operation_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> RailStatusResult:
        self.status_calls += 1

        if self._status_failures > 0:
            self._status_failures -= 1
            raise RailUnavailableError("Mock rail status endpoint unavailable")

        if operation_id is None and idempotency_key is not None:
            operation_id = self._by_key.get(idempotency_key)

        if self._status_overrides:
            status = self._status_overrides.popleft()
            return RailStatusResult(status=status, operation_id=operation_id)

        operation = self._operations.get(operation_id) if operation_id else None
        if operation is None:
            return RailStatusResult(status=RailStatus.not_found, operation_id=operation_id)

        return RailStatusResult(
            status=operation.status,
            operation_id=operation.operation_id,
            reason=operation.reason,
        )

    async def settle(
        self,
        operation_id: str,
        status: RailStatus = RailStatus.succeeded,
        reason: Optional[str] = None,
        send_webhook: bool = True,
    ) -> Dict[str, Any]:
        """Record a final outcome for an operation and optionally push the webhook."""
        operation = self._operations[operation_id]
        operation.status = status
        operation.reason = reason

        webhook_data = {
            "event_id": f"evt_{uuid.uuid4().hex[:20]}",
            "operation_id": operation_id,
            "outcome": status.value,
            "reason": reason,
            "occurred_at": utcnow().isoformat(),
        }

        if send_webhook:
            await self._send_webhook(webhook_data)

        return webhook_data

    async def aclose(self) -> None:
        for task in list(self._settle_tasks):
            task.cancel()

    def _record(self, submission: RailSubmission) -> MockOperation:
        if self._operation_ids:
            operation_id = self._operation_ids.popleft()
        else:
            operation_id = f"mock_op_{uuid.uuid4().hex[:16]}"
        operation = MockOperation(
            operation_id=operation_id,
            idempotency_key=submission.idempotency_key,
            submission=submission,
            created_at=utcnow(),
        )
        self._operations[operation_id] = operation
        self._by_key[submission.idempotency_key] = operation_id
        return operation

    async def _settle_later(self, operation_id: str, status: RailStatus, delay_seconds: float) -> None:
        await asyncio.sleep(delay_seconds)
        await self.settle(operation_id, status)

    async def _send_webhook(self, webhook_data: Dict[str, Any]) -> None:
        logger.info("Mock rail: sending webhook", extra={
            "rail_operation_id": webhook_data["operation_id"],
            "outcome": webhook_data["outcome"],
            "event_id": webhook_data["event_id"],
        })
        for callback in self._webhook_callbacks:
            try:
                await callback(webhook_data)
            except Exception as e:
                logger.error("Mock rail: webhook callback failed", extra={
                    "rail_operation_id": webhook_data["operation_id"],
                    "error": str(e),
                    "callback": getattr(callback, "__name__", repr(callback)),
                })
