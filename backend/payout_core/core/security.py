"""
Security utilities for bearer identity tokens and rail webhook verification.
"""

import hashlib
import hmac
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from jose import JWTError, jwt

from .config import settings
import logging

logger = logging.getLogger(__name__)

ACCESS_TOKEN_DEFAULT_EXPIRE_MINUTES = 30


class SecurityError(Exception):
    """Base security exception"""
    pass


class TokenVerificationError(SecurityError):
    """Identity token could not be verified"""
    pass


class WebhookVerificationError(SecurityError):
    """Webhook signature verification error"""
    pass


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """
    Issue an identity token for ``user_id``. The identity provider owns
    token issuance in production; this is used by tooling and tests.
    """
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_DEFAULT_EXPIRE_MINUTES)
    )
    claims = {"sub": str(user_id), "exp": expire, "type": "access"}
    return jwt.encode(claims, settings.secret_key, algorithm=settings.access_token_algorithm)


def verify_access_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate an identity token. Returns the claims, which are
    guaranteed to carry a ``sub`` that parses as a UUID.
    """
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.access_token_algorithm]
        )
    except JWTError as e:
        raise TokenVerificationError(f"Token verification failed: {e}") from e

    subject = payload.get("sub")
    if not subject:
        raise TokenVerificationError("Token has no subject")
    try:
        uuid.UUID(str(subject))
    except ValueError as e:
        raise TokenVerificationError("Token subject is not a user id") from e

    return payload


def compute_webhook_signature(payload: bytes, secret: str, algorithm: str = "sha256") -> str:
    """Signature header value for a webhook body, in ``<algo>=<hexdigest>`` form."""
    digest = hmac.new(secret.encode(), payload, getattr(hashlib, algorithm)).hexdigest()
    return f"{algorithm}={digest}"


def verify_webhook_signature_hmac(
    payload: bytes,
    signature: str,
    secret: str,
    algorithm: str = "sha256"
) -> bool:
    """
    Verify webhook signature using HMAC.
    Supports sha256 and sha1 algorithms.
    """
    try:
        if "=" in signature:
            algo, sig = signature.split("=", 1)
            if algo != algorithm:
                raise WebhookVerificationError(f"Unsupported algorithm: {algo}")
        else:
            sig = signature

        expected_signature = hmac.new(
            secret.encode(),
            payload,
            getattr(hashlib, algorithm)
        ).hexdigest()

        return hmac.compare_digest(sig, expected_signature)

    except (WebhookVerificationError, AttributeError, TypeError) as e:
        logger.warning("HMAC signature verification failed", extra={"error": str(e)})
        return False


def verify_webhook_timestamp(timestamp: str, max_age_seconds: int = 300) -> bool:
    """
    Verify webhook timestamp to prevent replay attacks.
    Returns True if timestamp is valid and not too old.
    """
    try:
        if timestamp.isdigit():
            webhook_time = int(timestamp)
        else:
            parsed = datetime.fromisoformat(timestamp.replace('Z', '+00:00'))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            webhook_time = parsed.timestamp()

        current_time = datetime.now(timezone.utc).timestamp()
        age = current_time - webhook_time

        # Small allowance for clock skew between the rail and us.
        if age < -30:
            logger.warning("Webhook timestamp is in the future", extra={"timestamp": timestamp})
            return False

        if age > max_age_seconds:
            logger.warning("Webhook timestamp is too old", extra={
                "timestamp": timestamp,
                "age_seconds": age,
                "max_age_seconds": max_age_seconds
            })
            return False

        return True

    except (ValueError, TypeError) as e:
        logger.warning("Invalid webhook timestamp format", extra={
            "timestamp": timestamp,
            "error": str(e)
        })
        return False


def generate_correlation_id() -> str:
    """
    Generate a unique correlation ID for request tracing.
    """
    return str(uuid.uuid4())


def sanitize_log_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Remove sensitive data from logs. Destination identifiers (IBAN, account
    numbers, crypto addresses) are masked to their last four characters.
    """
    sensitive_keys = {
        'password', 'secret', 'token', 'key', 'authorization',
        'access_token', 'refresh_token', 'signature'
    }
    masked_keys = {'iban', 'account_number', 'routing_number', 'crypto_address', 'card_id'}

    sanitized = {}
    for key, value in data.items():
        lowered = key.lower()
        if any(sensitive in lowered for sensitive in sensitive_keys):
            sanitized[key] = "[REDACTED]"
        elif lowered in masked_keys and isinstance(value, str):
            sanitized[key] = f"****{value[-4:]}" if len(value) > 4 else "****"
        elif isinstance(value, dict):
            sanitized[key] = sanitize_log_data(value)
        else:
            sanitized[key] = value

    return sanitized
