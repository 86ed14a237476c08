"""Webhook error taxonomy.

Mapping to sender-facing behavior:
- AuthenticationError  -> 401, never retried
- MalformedPayloadError -> 400, never retried
- TransientStoreError  -> retry scheduled, acknowledged
- PermanentHandlerError -> acknowledged with the error in the body

Unknown topics are not errors: the router returns a skipped outcome.
"""

from __future__ import annotations


class WebhookError(Exception):
    """Base class for webhook pipeline errors."""

    status_code = 500


class AuthenticationError(WebhookError):
    """Signature missing or invalid."""

    status_code = 401


class MalformedPayloadError(WebhookError):
    """Body is not a JSON object."""

    status_code = 400


class StoreError(WebhookError):
    """A durable store operation failed."""


class TransientStoreError(StoreError):
    """Store write failed in a way a later attempt can fix."""


class PermanentHandlerError(WebhookError):
    """Business-rule violation that a retry cannot fix."""

    status_code = 200
