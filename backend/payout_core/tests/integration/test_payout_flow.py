"""
Integration tests for the complete payout lifecycle: creation, dispatch,
webhook settlement and reconciliation, against the mock rail and a real
database session.
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from ...core.config import settings
from ...core.errors import CancellationRejectedError
from ...models.payout_attempt import AttemptStatus
from ...models.payout_request import PayoutStatus
from ...models.webhook_event import WebhookProcessingResult
from ...schemas.webhooks import RailWebhookRequest
from ...services.dispatcher import RailDispatcher
from ...services.payout_service import PayoutService
from ...services.rails.base import RailStatus
from ...services.rails.mock import MockRailBehavior
from ...services.reconciliation import ReconciliationService
from ...services.webhook_service import WebhookService


@pytest.fixture
def ingested(session_factory, mock_rail, notifier):
    """Wire mock rail webhooks into the ingestor; returns the processing outcomes."""
    outcomes = []

    async def ingest(webhook_data):
        async with session_factory() as session:
            service = WebhookService(session, notifier)
            outcomes.append(await service.process_event(
                RailWebhookRequest.model_validate(webhook_data), webhook_data
            ))

    mock_rail.add_webhook_callback(ingest)
    return outcomes


class TestPayoutFlow:

    @pytest.mark.asyncio
    async def test_create_dispatch_settle(
        self, db_session, rail_registry, mock_rail, notifier, user_id, international_method, ingested
    ):
        payouts = PayoutService(db_session, notifier)
        dispatcher = RailDispatcher(db_session, rail_registry, notifier)

        payout = await payouts.create_payout_request(user_id, international_method.id, Decimal("100.00"), "EUR")
        payout_id = payout.id
        assert payout.fee == Decimal("2.00")
        assert payout.net_amount == Decimal("98.00")
        assert payout.status == PayoutStatus.pending

        mock_rail.script_operation_ids("op_1")
        first = await dispatcher.dispatch(payout.id)
        assert first.attempt.rail_operation_id == "op_1"
        assert first.payout.status == PayoutStatus.processing

        second = await dispatcher.dispatch(payout.id)
        assert second.attempt.rail_operation_id == "op_1"
        assert second.submitted is False
        assert mock_rail.submit_calls == 1

        webhook = await mock_rail.settle("op_1", RailStatus.succeeded)
        assert ingested[-1].result == WebhookProcessingResult.applied

        completed = await payouts.get_by_id(payout.id)
        assert completed.status == PayoutStatus.completed
        assert completed.completed_at is not None
        snapshot = (completed.version, completed.completed_at, completed.updated_at)

        replay = await WebhookService(db_session, notifier).process_event(
            RailWebhookRequest.model_validate(webhook), webhook
        )
        assert replay.result == WebhookProcessingResult.duplicate
        unchanged = await payouts.get_by_id(payout_id)
        assert (unchanged.version, unchanged.completed_at, unchanged.updated_at) == snapshot
        assert [n["type"] for n in notifier.sent] == ["payout.requested", "payout.completed"]

    @pytest.mark.asyncio
    async def test_silent_rail_resolved_as_not_found(
        self, db_session, rail_registry, mock_rail, notifier, user_id, bank_method
    ):
        payouts = PayoutService(db_session, notifier)
        payout = await payouts.create_payout_request(user_id, bank_method.id, Decimal("250.00"))
        mock_rail.script(MockRailBehavior.HANG)

        outcome = await RailDispatcher(db_session, rail_registry, notifier, submit_timeout=0.05).dispatch(payout.id)
        assert outcome.rail_result == "ambiguous"

        later = outcome.attempt.submitted_at + timedelta(seconds=3 * settings.ambiguity_timeout_seconds)
        summary = await ReconciliationService(db_session, rail_registry, notifier).run_once(now=later)

        assert summary["applied"] == 1
        failed = await payouts.get_by_id(payout.id)
        assert failed.status == PayoutStatus.failed
        assert failed.failure_reason == "not found at rail"
        assert mock_rail.submit_calls == 1

    @pytest.mark.asyncio
    async def test_cancel_after_dispatch_rejected(
        self, db_session, rail_registry, mock_rail, notifier, user_id, bank_method
    ):
        payouts = PayoutService(db_session, notifier)
        payout = await payouts.create_payout_request(user_id, bank_method.id, Decimal("40.00"))
        mock_rail.script(MockRailBehavior.UNAVAILABLE)
        await RailDispatcher(db_session, rail_registry, notifier).dispatch(payout.id)

        with pytest.raises(CancellationRejectedError) as exc_info:
            await payouts.cancel_payout_request(user_id, payout.id)

        assert "already dispatched" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_lost_response_then_early_webhook(
        self, db_session, rail_registry, mock_rail, notifier, user_id, cash_pickup_method, ingested
    ):
        payouts = PayoutService(db_session, notifier)
        payout = await payouts.create_payout_request(user_id, cash_pickup_method.id, Decimal("500.00"))
        mock_rail.script(MockRailBehavior.ACCEPT_THEN_HANG)
        mock_rail.script_operation_ids("op_cash")

        outcome = await RailDispatcher(db_session, rail_registry, notifier, submit_timeout=0.05).dispatch(payout.id)
        assert outcome.rail_result == "ambiguous"
        attempt_id = outcome.attempt.id
        check_at = outcome.attempt.next_check_at

        # The rail settles before anyone learned the operation id.
        await mock_rail.settle("op_cash", RailStatus.succeeded)
        assert ingested[-1].result == WebhookProcessingResult.unmatched

        summary = await ReconciliationService(db_session, rail_registry, notifier).run_once(now=check_at)

        assert summary["applied"] == 1
        settled = await payouts.get_by_id(payout.id)
        assert settled.status == PayoutStatus.completed
        assert settled.reference is not None
        attempt = await payouts.ledger.get_attempt(attempt_id)
        assert attempt.rail_operation_id == "op_cash"
        assert attempt.status == AttemptStatus.succeeded
        assert notifier.sent[-1]["type"] == "payout.cash_ready"

    @pytest.mark.asyncio
    async def test_rejection_is_terminal(
        self, db_session, rail_registry, mock_rail, notifier, user_id, crypto_method
    ):
        payouts = PayoutService(db_session, notifier)
        payout = await payouts.create_payout_request(user_id, crypto_method.id, Decimal("75.00"), "USD")
        mock_rail.script(MockRailBehavior.REJECT)

        outcome = await RailDispatcher(db_session, rail_registry, notifier).dispatch(payout.id)
        assert outcome.payout.status == PayoutStatus.failed

        again = await RailDispatcher(db_session, rail_registry, notifier).dispatch(payout.id)
        assert again.rail_result == "existing"
        assert mock_rail.submit_calls == 1

        stats = await payouts.get_payout_stats(user_id, "USD")
        assert stats.counts["failed"] == 1
        assert stats.pending_payouts == Decimal("0.00")
