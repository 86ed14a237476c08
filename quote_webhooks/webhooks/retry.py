"""Retry scheduler: exponential backoff with jitter for failed deliveries.

delay = min(base * 2^attempt, max) + uniform(0, jitter)

A retryable outcome produces exactly one row in ``webhook_queue``; an
external drain worker replays it through IngestionController.replay().
No attempt ceiling is enforced here. Persistence is best-effort: failures
are logged and never raised into the response path.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from quote_webhooks.store import Store
from quote_webhooks.webhooks.models import HandlerOutcome, InboundDelivery, RetryEntry

logger = logging.getLogger(__name__)

RETRY_QUEUE_TABLE = "webhook_queue"

DEFAULT_BASE_DELAY_S = 5.0
DEFAULT_MAX_DELAY_S = 3600.0
DEFAULT_JITTER_S = 1.0


def backoff_delay(
    attempt: int,
    base_delay: float = DEFAULT_BASE_DELAY_S,
    max_delay: float = DEFAULT_MAX_DELAY_S,
) -> float:
    """Capped exponential delay for *attempt*, without jitter."""
    # Cap the exponent first so huge attempt counts don't overflow
    exponent = min(max(attempt, 0), 64)
    return min(base_delay * (2**exponent), max_delay)


def compute_delay(
    attempt: int,
    base_delay: float = DEFAULT_BASE_DELAY_S,
    max_delay: float = DEFAULT_MAX_DELAY_S,
    jitter: float = DEFAULT_JITTER_S,
    rand: Callable[[float, float], float] = random.uniform,
) -> float:
    """Backoff delay in seconds, plus up to *jitter* seconds of randomness."""
    return backoff_delay(attempt, base_delay, max_delay) + rand(0.0, jitter)


class RetryScheduler:
    """Persists a future re-delivery for retryable outcomes."""

    def __init__(
        self,
        store: Store,
        *,
        base_delay: float = DEFAULT_BASE_DELAY_S,
        max_delay: float = DEFAULT_MAX_DELAY_S,
        jitter: float = DEFAULT_JITTER_S,
        clock: Callable[[], datetime] | None = None,
    ):
        self._store = store
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def build_entry(self, delivery: InboundDelivery) -> RetryEntry:
        delay = compute_delay(delivery.attempt, self.base_delay, self.max_delay, self.jitter)
        return RetryEntry(
            delivery_id=delivery.delivery_id,
            shop_domain=delivery.shop_domain,
            topic=delivery.topic,
            raw_body=delivery.raw_body,
            attempt=delivery.attempt + 1,
            scheduled_at=self._clock() + timedelta(seconds=delay),
            triggered_at=delivery.triggered_at,
        )

    def schedule_retry(self, delivery: InboundDelivery, outcome: HandlerOutcome) -> RetryEntry | None:
        """Enqueue one re-delivery if *outcome* is retryable.

        Returns the entry that was persisted, or None when nothing was
        scheduled (not retryable, or the write failed).
        """
        if outcome.success or not outcome.retryable:
            return None

        entry = self.build_entry(delivery)
        try:
            self._store.insert(RETRY_QUEUE_TABLE, entry.to_row())
        except Exception:
            logger.error(
                "Failed to queue retry for %s/%s (attempt %d)",
                delivery.shop_domain,
                delivery.delivery_id,
                entry.attempt,
                exc_info=True,
            )
            return None

        logger.info(
            "Retry %d queued for %s/%s at %s (%s)",
            entry.attempt,
            delivery.topic,
            delivery.delivery_id,
            entry.scheduled_at.isoformat(),
            outcome.error,
        )
        return entry
