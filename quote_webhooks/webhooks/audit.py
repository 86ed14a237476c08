"""Audit logger: one append-only ``webhook_logs`` row per processing attempt.

Auditing is best-effort: a failed write is logged to the process log and
swallowed, so it can never turn a handled delivery into a failed request.
Records are never read back into the hot path; the status endpoint only
aggregates them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from quote_webhooks.store import Store
from quote_webhooks.webhooks.models import AuditRecord, HandlerOutcome, InboundDelivery

logger = logging.getLogger(__name__)

AUDIT_TABLE = "webhook_logs"


class AuditLogger:
    """Writes AuditRecords and summarizes recent ones."""

    def __init__(self, store: Store, clock: Callable[[], datetime] | None = None):
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def record(
        self,
        delivery: InboundDelivery,
        outcome: HandlerOutcome,
        duration_ms: float = 0.0,
    ) -> AuditRecord:
        """Append the outcome of one attempt. Never raises."""
        record = AuditRecord(
            delivery_id=delivery.delivery_id,
            shop_domain=delivery.shop_domain,
            topic=delivery.topic,
            attempt=delivery.attempt,
            outcome=outcome.label,
            retryable=outcome.retryable,
            error=outcome.error if not outcome.success else None,
            duration_ms=duration_ms,
            recorded_at=self._clock(),
        )

        logger.info(
            "WEBHOOK_AUDIT shop=%s topic=%s id=%s attempt=%d status=%s retryable=%s ms=%.1f",
            record.shop_domain,
            record.topic,
            record.delivery_id,
            record.attempt,
            record.outcome,
            record.retryable,
            record.duration_ms,
        )

        try:
            self._store.insert(AUDIT_TABLE, record.to_row())
        except Exception:
            logger.error(
                "Failed to write audit record for %s/%s",
                record.shop_domain,
                record.delivery_id,
                exc_info=True,
            )
        return record

    def summary(self, shop_domain: str | None = None, window_hours: int = 24) -> dict[str, Any]:
        """Processed vs failed deliveries over the trailing window.

        Store errors propagate; the status endpoint reports them.
        """
        since = self._clock() - timedelta(hours=window_hours)
        filters = {"shop_domain": shop_domain} if shop_domain else None
        counts = self._store.count_by(
            AUDIT_TABLE,
            "result",
            since_column="processed_at",
            since=since,
            filters=filters,
        )
        failed = counts.get("error", 0)
        processed = counts.get("success", 0) + counts.get("skipped", 0)
        return {
            "status": "healthy",
            "webhooks_processed": processed,
            "webhooks_failed": failed,
            "webhooks_total": processed + failed,
            "shop": shop_domain or "all",
            "window_hours": window_hours,
        }
