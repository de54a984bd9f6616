"""
Unit tests for the reconciliation pass and its background loop.
"""

import asyncio
import pytest
from datetime import timedelta

from sqlalchemy import update

from ...core.config import settings
from ...models.payout_attempt import AttemptStatus, PayoutAttempt
from ...models.payout_request import PayoutStatus
from ...models.webhook_event import WebhookProcessingResult
from ...schemas.webhooks import RailWebhookRequest
from ...services.dispatcher import RailDispatcher
from ...services.rails.base import RailStatus
from ...services.rails.mock import MockRailBehavior
from ...services.reconciliation import ReconciliationLoop, ReconciliationService
from ...services.webhook_service import WebhookService
from ...utils.clock import utcnow


@pytest.fixture
def reconciler(db_session, rail_registry, notifier) -> ReconciliationService:
    return ReconciliationService(db_session, rail_registry, notifier)


@pytest.fixture
def dispatch(db_session, rail_registry, notifier, mock_rail, user_id, bank_method, make_payout):
    """Create and dispatch a payout with the given rail behavior."""

    async def _dispatch(behavior=MockRailBehavior.ACCEPT):
        payout = await make_payout(user_id, bank_method)
        mock_rail.script(behavior)
        dispatcher = RailDispatcher(db_session, rail_registry, notifier, submit_timeout=0.05)
        return await dispatcher.dispatch(payout.id)

    return _dispatch


def after_ambiguity(attempt, extra_seconds=1):
    return attempt.submitted_at + timedelta(seconds=settings.ambiguity_timeout_seconds + extra_seconds)


class TestReconcileAttempts:

    @pytest.mark.asyncio
    async def test_never_received_fails_payout(self, reconciler, dispatch, notifier):
        outcome = await dispatch(MockRailBehavior.UNAVAILABLE)

        summary = await reconciler.run_once(now=after_ambiguity(outcome.attempt))

        assert summary["checked"] == 1
        assert summary["applied"] == 1
        payout = await reconciler.payouts.get_by_id(outcome.payout.id)
        assert payout.status == PayoutStatus.failed
        assert payout.failure_reason == "not found at rail"
        attempt = await reconciler.ledger.get_attempt(outcome.attempt.id)
        assert attempt.status == AttemptStatus.not_found
        assert notifier.sent[-1]["type"] == "payout.failed"

    @pytest.mark.asyncio
    async def test_not_due_yet_is_skipped(self, reconciler, dispatch, mock_rail):
        outcome = await dispatch(MockRailBehavior.UNAVAILABLE)

        summary = await reconciler.run_once(now=outcome.attempt.submitted_at + timedelta(seconds=10))

        assert summary["checked"] == 0
        assert mock_rail.status_calls == 0

    @pytest.mark.asyncio
    async def test_pending_answer_reschedules_with_backoff(self, reconciler, dispatch):
        outcome = await dispatch(MockRailBehavior.ACCEPT)
        now = after_ambiguity(outcome.attempt)

        summary = await reconciler.run_once(now=now)

        assert summary["rescheduled"] == 1
        attempt = await reconciler.ledger.get_attempt(outcome.attempt.id)
        assert attempt.status == AttemptStatus.in_flight
        assert attempt.check_count == 1
        assert attempt.last_rail_status == "pending"
        assert attempt.next_check_at == now + timedelta(seconds=settings.ambiguity_timeout_seconds * 2)
        payout = await reconciler.payouts.get_by_id(outcome.payout.id)
        assert payout.status == PayoutStatus.processing

    @pytest.mark.asyncio
    async def test_status_query_failure_reschedules(self, reconciler, dispatch, mock_rail):
        outcome = await dispatch(MockRailBehavior.ACCEPT)
        mock_rail.fail_next_status_queries(1)
        now = after_ambiguity(outcome.attempt)

        summary = await reconciler.run_once(now=now)

        assert summary["rescheduled"] == 1
        assert summary["errors"] == 0
        attempt = await reconciler.ledger.get_attempt(outcome.attempt.id)
        assert attempt.check_count == 1
        assert attempt.status == AttemptStatus.in_flight

    @pytest.mark.asyncio
    async def test_definitive_answer_applied(self, reconciler, dispatch, mock_rail):
        outcome = await dispatch(MockRailBehavior.ACCEPT)
        await mock_rail.settle(outcome.attempt.rail_operation_id, RailStatus.succeeded, send_webhook=False)

        summary = await reconciler.run_once(now=after_ambiguity(outcome.attempt))

        assert summary["applied"] == 1
        payout = await reconciler.payouts.get_by_id(outcome.payout.id)
        assert payout.status == PayoutStatus.completed

    @pytest.mark.asyncio
    async def test_lost_response_recovered_by_key(self, reconciler, dispatch, mock_rail):
        outcome = await dispatch(MockRailBehavior.ACCEPT_THEN_HANG)
        assert outcome.attempt.rail_operation_id is None
        first_check = after_ambiguity(outcome.attempt)

        await reconciler.run_once(now=first_check)

        attempt = await reconciler.ledger.get_attempt(outcome.attempt.id)
        assert attempt.rail_operation_id is not None
        assert mock_rail.get_operation(attempt.rail_operation_id) is not None
        assert attempt.status == AttemptStatus.in_flight

        await mock_rail.settle(attempt.rail_operation_id, RailStatus.succeeded, send_webhook=False)
        summary = await reconciler.run_once(now=attempt.next_check_at + timedelta(seconds=1))

        assert summary["applied"] == 1
        payout = await reconciler.payouts.get_by_id(outcome.payout.id)
        assert payout.status == PayoutStatus.completed
        assert mock_rail.submit_calls == 1

    @pytest.mark.asyncio
    async def test_escalation_then_late_webhook(self, reconciler, dispatch, db_session, notifier):
        outcome = await dispatch(MockRailBehavior.ACCEPT)
        now = outcome.attempt.submitted_at + timedelta(seconds=settings.max_ambiguous_seconds + 1)

        summary = await reconciler.run_once(now=now)

        assert summary["escalated"] == 1
        attempt = await reconciler.ledger.get_attempt(outcome.attempt.id)
        assert attempt.status == AttemptStatus.escalated
        payout = await reconciler.payouts.get_by_id(outcome.payout.id)
        assert payout.status == PayoutStatus.processing
        assert payout.escalated_at == now
        assert payout.version == 3

        again = await reconciler.run_once(now=now + timedelta(days=1))
        assert again["checked"] == 0

        result = await WebhookService(db_session, notifier).process_event(RailWebhookRequest(
            event_id="evt_late", operation_id=attempt.rail_operation_id, outcome="succeeded"
        ))
        assert result.result == WebhookProcessingResult.applied
        payout = await reconciler.payouts.get_by_id(outcome.payout.id)
        assert payout.status == PayoutStatus.completed

    @pytest.mark.asyncio
    async def test_definitive_answer_past_ceiling_applied(self, reconciler, dispatch, mock_rail):
        outcome = await dispatch(MockRailBehavior.ACCEPT)
        mock_rail.script_status(RailStatus.succeeded)
        now = outcome.attempt.submitted_at + timedelta(seconds=settings.max_ambiguous_seconds + 1)

        summary = await reconciler.run_once(now=now)

        assert summary["applied"] == 1
        assert summary["escalated"] == 0
        assert mock_rail.status_calls == 1
        payout = await reconciler.payouts.get_by_id(outcome.payout.id)
        assert payout.status == PayoutStatus.completed
        assert payout.escalated_at is None

    @pytest.mark.asyncio
    async def test_status_failure_past_ceiling_escalates(self, reconciler, dispatch, mock_rail):
        outcome = await dispatch(MockRailBehavior.ACCEPT)
        mock_rail.fail_next_status_queries(1)
        now = outcome.attempt.submitted_at + timedelta(seconds=settings.max_ambiguous_seconds + 1)

        summary = await reconciler.run_once(now=now)

        assert summary["escalated"] == 1
        assert summary["rescheduled"] == 0
        attempt = await reconciler.ledger.get_attempt(outcome.attempt.id)
        assert attempt.status == AttemptStatus.escalated

    @pytest.mark.asyncio
    async def test_escalation_lost_to_webhook_is_already_resolved(self, reconciler, dispatch, db_session, notifier):
        outcome = await dispatch(MockRailBehavior.ACCEPT)
        attempt = await reconciler.ledger.get_attempt(outcome.attempt.id)
        await WebhookService(db_session, notifier).process_event(RailWebhookRequest(
            event_id="evt_before_escalation", operation_id=attempt.rail_operation_id, outcome="succeeded"
        ))
        now = attempt.submitted_at + timedelta(seconds=settings.max_ambiguous_seconds + 1)

        bucket = await reconciler.reconcile_attempt(attempt, now)

        assert bucket == "already_resolved"
        payout = await reconciler.payouts.get_by_id(outcome.payout.id)
        assert payout.status == PayoutStatus.completed
        assert payout.escalated_at is None

    @pytest.mark.asyncio
    async def test_race_with_webhook_is_already_resolved(self, reconciler, dispatch, mock_rail, db_session, notifier):
        outcome = await dispatch(MockRailBehavior.ACCEPT)
        attempt = await reconciler.ledger.get_attempt(outcome.attempt.id)
        await mock_rail.settle(attempt.rail_operation_id, RailStatus.succeeded, send_webhook=False)
        await WebhookService(db_session, notifier).process_event(RailWebhookRequest(
            event_id="evt_first", operation_id=attempt.rail_operation_id, outcome="succeeded"
        ))

        bucket = await reconciler.reconcile_attempt(attempt, after_ambiguity(attempt))

        assert bucket == "already_resolved"
        payout = await reconciler.payouts.get_by_id(outcome.payout.id)
        assert payout.status == PayoutStatus.completed
        assert payout.version == 3

    @pytest.mark.asyncio
    async def test_unknown_rail_counted_as_error(self, reconciler, dispatch, db_session):
        outcome = await dispatch(MockRailBehavior.ACCEPT)
        attempt_id = outcome.attempt.id
        now = after_ambiguity(outcome.attempt)
        await db_session.execute(
            update(PayoutAttempt).where(PayoutAttempt.id == attempt_id).values(rail="retired")
        )
        await db_session.commit()

        summary = await reconciler.run_once(now=now)

        assert summary["errors"] == 1
        attempt = await reconciler.ledger.get_attempt(attempt_id)
        assert attempt.status == AttemptStatus.in_flight
        assert attempt.check_count == 0


class TestPendingSweep:

    @pytest.mark.asyncio
    async def test_stranded_pending_payout_dispatched(self, reconciler, user_id, bank_method, make_payout, mock_rail):
        payout = await make_payout(user_id, bank_method)
        now = payout.created_at + timedelta(seconds=settings.pending_dispatch_grace_seconds + 1)

        summary = await reconciler.run_once(now=now)

        assert summary["dispatched"] == 1
        assert mock_rail.submit_calls == 1
        current = await reconciler.payouts.get_by_id(payout.id)
        assert current.status == PayoutStatus.processing
        assert (await reconciler.ledger.get_latest_attempt(payout.id)) is not None

    @pytest.mark.asyncio
    async def test_fresh_pending_payout_left_alone(self, reconciler, user_id, bank_method, make_payout, mock_rail):
        payout = await make_payout(user_id, bank_method)

        summary = await reconciler.run_once(now=payout.created_at + timedelta(seconds=5))

        assert summary["dispatched"] == 0
        assert mock_rail.submit_calls == 0


class TestReconciliationLoop:

    @pytest.mark.asyncio
    async def test_run_once_uses_fresh_session(self, session_factory, rail_registry, notifier, dispatch):
        await dispatch(MockRailBehavior.ACCEPT)
        loop = ReconciliationLoop(session_factory, rail_registry, notifier, interval_seconds=60)

        summary = await loop.run_once()

        assert summary["checked"] == 0
        assert summary["errors"] == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self, session_factory, rail_registry, notifier):
        loop = ReconciliationLoop(session_factory, rail_registry, notifier, interval_seconds=0.01)

        loop.start()
        assert loop.running
        await asyncio.sleep(0.05)
        await loop.stop()

        assert not loop.running
        await loop.stop()
