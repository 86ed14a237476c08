"""Webhook signature verification: constant-time HMAC-SHA256.

Security contract:
- Digest is computed over the exact raw request bytes, never a re-serialized body
- Comparison uses hmac.compare_digest() (constant-time, no timing attacks)
- Missing secret -> verification always fails (fail-closed)
- Never raises: any error during digest computation is a failed verification
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)


def compute_signature(raw_body: bytes, shared_secret: str) -> str:
    """Return the base64-encoded HMAC-SHA256 of *raw_body*."""
    digest = hmac.new(shared_secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify(raw_body: bytes, provided_signature: str | None, shared_secret: str) -> bool:
    """Verify a Shopify-style webhook signature.

    Args:
        raw_body: Raw request body bytes
        provided_signature: Value of the Hmac-Sha256 header
        shared_secret: App shared secret

    Returns:
        True only if the signature matches the body under the secret
    """
    if not shared_secret:
        logger.warning("Webhook shared secret not set, rejecting webhook")
        return False
    if not provided_signature:
        return False

    try:
        expected = compute_signature(raw_body, shared_secret).encode("ascii")
        return hmac.compare_digest(expected, provided_signature.strip().encode("utf-8"))
    except Exception:
        logger.warning("Webhook signature verification error", exc_info=True)
        return False
