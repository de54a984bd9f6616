"""
Security tests for rail webhook signature and timestamp verification.
"""

import pytest
from datetime import datetime, timedelta, timezone
import hmac
import hashlib

from ...core.security import (
    compute_webhook_signature,
    verify_webhook_signature_hmac,
    verify_webhook_timestamp,
)


def unix(delta: timedelta = timedelta()) -> str:
    return str(int((datetime.now(timezone.utc) + delta).timestamp()))


class TestWebhookSecurity:
    """Rail callbacks are only trusted when signed with the shared secret."""

    def test_verify_webhook_signature_hmac_valid(self):
        payload = b'{"event_id": "evt_1", "operation_id": "op_1", "outcome": "succeeded"}'
        secret = "test-webhook-secret"

        signature = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()

        assert verify_webhook_signature_hmac(payload, f"sha256={signature}", secret)
        assert verify_webhook_signature_hmac(payload, signature, secret)

    def test_verify_webhook_signature_hmac_invalid(self):
        payload = b'{"event_id": "evt_1"}'

        assert not verify_webhook_signature_hmac(payload, "sha256=invalid_signature", "test-webhook-secret")

    def test_signature_bound_to_body(self):
        secret = "test-webhook-secret"
        signature = compute_webhook_signature(b'{"outcome": "failed"}', secret)

        assert not verify_webhook_signature_hmac(b'{"outcome": "succeeded"}', signature, secret)

    def test_signature_bound_to_secret(self):
        payload = b'{"event_id": "evt_1"}'
        signature = compute_webhook_signature(payload, "secret-a")

        assert not verify_webhook_signature_hmac(payload, signature, "secret-b")

    def test_unsupported_algorithm_rejected(self):
        payload = b'{"event_id": "evt_1"}'
        secret = "test-webhook-secret"
        sha1 = hmac.new(secret.encode(), payload, hashlib.sha1).hexdigest()

        assert not verify_webhook_signature_hmac(payload, f"sha1={sha1}", secret)

    def test_compute_signature_format(self):
        signature = compute_webhook_signature(b"{}", "s")
        algorithm, digest = signature.split("=", 1)
        assert algorithm == "sha256"
        assert len(digest) == 64

    def test_verify_webhook_timestamp_valid(self):
        assert verify_webhook_timestamp(unix())

    def test_verify_webhook_timestamp_iso_format(self):
        assert verify_webhook_timestamp(datetime.now(timezone.utc).isoformat())
        assert verify_webhook_timestamp(datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"))

    def test_verify_webhook_timestamp_too_old(self):
        assert not verify_webhook_timestamp(unix(-timedelta(minutes=10)), max_age_seconds=300)

    def test_verify_webhook_timestamp_future(self):
        assert not verify_webhook_timestamp(unix(timedelta(minutes=1)))

    def test_small_clock_skew_tolerated(self):
        assert verify_webhook_timestamp(unix(timedelta(seconds=10)))

    @pytest.mark.parametrize("value", ["invalid-timestamp", "", "12:00"])
    def test_verify_webhook_timestamp_invalid_format(self, value):
        assert not verify_webhook_timestamp(value)
