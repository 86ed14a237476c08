"""Ingestion controller: sequences one webhook delivery end to end.

    RECEIVED -> AUTHENTICATED -> ROUTED -> HANDLED -> LOGGED -> RESPONDED

1. Take the raw body bytes (signature depends on byte-exact content)
2. Verify signature; failure -> 401, logged as a security rejection
3. Parse JSON; failure -> 400 (permanent client error)
4. Extract metadata, build the InboundDelivery
5. Route and invoke the handler
6. Write the audit record (always)
7. Retryable failure -> exactly one RetryEntry
8. Respond 200 for every handled delivery

Retryable failures are acknowledged with 200 so Shopify does not redeliver
on top of our own retry queue; the internal queue is the only retry path.
This module is framework-free; routes.py adapts it to FastAPI.
"""

from __future__ import annotations

import enum
import json
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from quote_webhooks.webhooks.audit import AuditLogger
from quote_webhooks.webhooks.errors import AuthenticationError, MalformedPayloadError
from quote_webhooks.webhooks.idempotency import DeliveryDeduplicator
from quote_webhooks.webhooks.metadata import extract
from quote_webhooks.webhooks.models import HandlerOutcome, InboundDelivery, RetryEntry
from quote_webhooks.webhooks.retry import RetryScheduler
from quote_webhooks.webhooks.router import TopicRouter
from quote_webhooks.webhooks.verification import verify

logger = logging.getLogger(__name__)


class DeliveryState(str, enum.Enum):
    RECEIVED = "received"
    AUTHENTICATED = "authenticated"
    ROUTED = "routed"
    HANDLED = "handled"
    LOGGED = "logged"
    RESPONDED = "responded"


@dataclass
class IngestionResult:
    """What the HTTP layer needs to respond, plus the trail for tests/logs."""

    status_code: int
    body: dict[str, Any]
    state: DeliveryState
    delivery: InboundDelivery | None = None
    outcome: HandlerOutcome | None = None
    retry_pending: bool = False
    retry_entry: RetryEntry | None = field(default=None, repr=False)


def parse_payload(raw_body: bytes) -> dict[str, Any]:
    """Decode a webhook body. Raises MalformedPayloadError."""
    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedPayloadError("Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise MalformedPayloadError("Invalid JSON payload")
    return payload


def _response_body(outcome: HandlerOutcome) -> dict[str, Any]:
    if outcome.success:
        return {"success": True, "processed": outcome.processed}
    if outcome.retryable:
        return {"success": False, "retry_scheduled": True, "error": outcome.error}
    return {"success": False, "error": outcome.error}


class IngestionController:
    """Verify, route, audit and (if needed) reschedule one delivery."""

    def __init__(
        self,
        router: TopicRouter,
        audit: AuditLogger,
        scheduler: RetryScheduler,
        shared_secret: str,
        *,
        dedup: DeliveryDeduplicator | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._router = router
        self._audit = audit
        self._scheduler = scheduler
        self._secret = shared_secret
        self._dedup = dedup
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ── Inbound HTTP path ─────────────────────────────────────────────────

    def authenticate(self, raw_body: bytes, signature: str) -> None:
        if not verify(raw_body, signature, self._secret):
            raise AuthenticationError("Invalid signature")

    def process(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        *,
        defer_retry: bool = False,
    ) -> IngestionResult:
        """Run one inbound request through the pipeline.

        With ``defer_retry`` the retry entry is not written here; the caller
        passes the result to complete_retry() after responding.
        """
        received_at = self._clock()
        metadata = extract(headers)

        try:
            self.authenticate(raw_body, metadata.signature)
        except AuthenticationError as exc:
            logger.warning(
                "SECURITY_REJECT invalid webhook signature shop=%s topic=%s id=%s",
                metadata.shop_domain or "unknown",
                metadata.topic,
                metadata.delivery_id,
            )
            return IngestionResult(
                status_code=exc.status_code,
                body={"error": str(exc)},
                state=DeliveryState.AUTHENTICATED,
            )

        try:
            payload = parse_payload(raw_body)
        except MalformedPayloadError as exc:
            logger.warning(
                "Malformed webhook body shop=%s topic=%s id=%s",
                metadata.shop_domain or "unknown",
                metadata.topic,
                metadata.delivery_id,
            )
            return IngestionResult(
                status_code=exc.status_code,
                body={"error": str(exc)},
                state=DeliveryState.AUTHENTICATED,
            )

        delivery = InboundDelivery(
            topic=metadata.topic,
            shop_domain=metadata.shop_domain,
            delivery_id=metadata.delivery_id,
            received_at=received_at,
            triggered_at=metadata.triggered_at,
            raw_body=raw_body,
            signature=metadata.signature,
            payload=payload,
            attempt=0,
        )
        return self.handle(delivery, defer_retry=defer_retry)

    # ── Shared path (inbound + replay) ────────────────────────────────────

    def _invoke(self, delivery: InboundDelivery) -> HandlerOutcome:
        if self._dedup is not None and self._dedup.already_processed(
            delivery.shop_domain, delivery.delivery_id
        ):
            return HandlerOutcome.skipped("Duplicate delivery")

        handler = self._router.route(delivery.topic)
        try:
            return handler(delivery)
        except Exception as exc:
            # Handlers classify their own errors; this only catches bugs
            logger.exception("Handler raised for %s/%s", delivery.topic, delivery.delivery_id)
            return HandlerOutcome.retry(f"{type(exc).__name__}: {exc}")

    def handle(self, delivery: InboundDelivery, *, defer_retry: bool = False) -> IngestionResult:
        """Route, audit and reschedule an authenticated delivery."""
        start = time.perf_counter()
        outcome = self._invoke(delivery)
        duration_ms = (time.perf_counter() - start) * 1000

        self._audit.record(delivery, outcome, duration_ms)

        if outcome.success and outcome.processed and self._dedup is not None:
            self._dedup.mark_processed(delivery.shop_domain, delivery.delivery_id)

        result = IngestionResult(
            status_code=200,
            body=_response_body(outcome),
            state=DeliveryState.LOGGED,
            delivery=delivery,
            outcome=outcome,
            retry_pending=outcome.retryable and not outcome.success,
        )
        if result.retry_pending and not defer_retry:
            self.complete_retry(result)
        return result

    def complete_retry(self, result: IngestionResult) -> RetryEntry | None:
        """Persist the retry a handled delivery asked for. Never raises."""
        if not result.retry_pending or result.delivery is None or result.outcome is None:
            return None
        result.retry_pending = False
        result.retry_entry = self._scheduler.schedule_retry(result.delivery, result.outcome)
        return result.retry_entry

    def replay(self, entry: RetryEntry) -> IngestionResult:
        """Re-run a dequeued RetryEntry through routing, audit and retry.

        The entry came from our own queue, so the signature is not checked
        again; the delivery carries the entry's (already incremented) attempt.
        """
        try:
            payload = parse_payload(entry.raw_body)
        except MalformedPayloadError as exc:
            logger.error("Queued webhook %s has an unreadable body", entry.delivery_id)
            return IngestionResult(
                status_code=exc.status_code,
                body={"error": str(exc)},
                state=DeliveryState.AUTHENTICATED,
            )

        now = self._clock()
        delivery = InboundDelivery(
            topic=entry.topic,
            shop_domain=entry.shop_domain,
            delivery_id=entry.delivery_id,
            received_at=now,
            triggered_at=entry.triggered_at or now.isoformat(),
            raw_body=entry.raw_body,
            signature="",
            payload=payload,
            attempt=entry.attempt,
        )
        return self.handle(delivery)
