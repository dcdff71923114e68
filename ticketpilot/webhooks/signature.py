"""Webhook signature verification."""

import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class SignatureInvalid(Exception):
    """Webhook signature missing, malformed or wrong."""

    pass


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """Check a linear-signature header against the raw body.

    Args:
        body: Raw request body, exactly as received
        signature: Header value (hex digest)
        secret: Shared webhook secret

    Raises:
        SignatureInvalid: If the secret is not configured, the header is missing,
            or the digest does not match
    """
    if not secret:
        logger.error("Webhook secret is not configured; rejecting request")
        raise SignatureInvalid("webhook secret not configured")
    if not signature:
        raise SignatureInvalid("missing signature")

    expected = compute_signature(body, secret)
    provided = signature.strip().lower().encode("utf-8", "replace")
    if not hmac.compare_digest(expected.encode("ascii"), provided):
        raise SignatureInvalid("signature mismatch")
