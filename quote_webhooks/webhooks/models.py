"""Webhook data model: topics, deliveries, outcomes, audit and retry rows."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class TopicId(str, enum.Enum):
    """Supported Shopify webhook topics."""

    APP_UNINSTALLED = "app/uninstalled"
    APP_SCOPES_UPDATE = "app/scopes_update"
    PRODUCTS_CREATE = "products/create"
    PRODUCTS_UPDATE = "products/update"
    PRODUCTS_DELETE = "products/delete"
    ORDERS_CREATE = "orders/create"
    ORDERS_UPDATED = "orders/updated"
    ORDERS_CANCELLED = "orders/cancelled"
    CUSTOMERS_CREATE = "customers/create"
    CUSTOMERS_UPDATE = "customers/update"
    CUSTOMERS_DELETE = "customers/delete"
    SHOP_UPDATE = "shop/update"
    BULK_OPERATIONS_FINISH = "bulk_operations/finish"

    # Sentinel for absent, malformed or unsupported topics
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, value: str | None) -> TopicId:
        """Map a raw topic string to a TopicId, UNRECOGNIZED if unknown."""
        if not value:
            return cls.UNRECOGNIZED
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNRECOGNIZED


@dataclass(frozen=True)
class InboundDelivery:
    """One webhook request (or its replay). Immutable once built.

    ``topic`` keeps the raw header value so routing gaps are audited under
    the name the sender used. ``delivery_id`` is the idempotency key.
    """

    topic: str
    shop_domain: str
    delivery_id: str
    received_at: datetime
    triggered_at: str
    raw_body: bytes
    signature: str
    payload: dict[str, Any] = field(default_factory=dict)
    attempt: int = 0

    @property
    def topic_id(self) -> TopicId:
        return TopicId.parse(self.topic)


@dataclass(frozen=True)
class HandlerOutcome:
    """Result of invoking a topic handler.

    - success=False, retryable=True  -> re-queue
    - success=False, retryable=False -> terminal, never retried
    - success=True,  processed=False -> acknowledged, intentionally skipped
    """

    success: bool
    processed: bool
    retryable: bool = False
    error: str | None = None
    data: dict[str, Any] | None = None

    @classmethod
    def ok(cls, data: dict[str, Any] | None = None) -> HandlerOutcome:
        return cls(success=True, processed=True, data=data)

    @classmethod
    def skipped(cls, reason: str | None = None) -> HandlerOutcome:
        return cls(success=True, processed=False, error=reason)

    @classmethod
    def retry(cls, error: str) -> HandlerOutcome:
        return cls(success=False, processed=False, retryable=True, error=error)

    @classmethod
    def failed(cls, error: str) -> HandlerOutcome:
        return cls(success=False, processed=False, retryable=False, error=error)

    @property
    def label(self) -> str:
        """Audit label: success, skipped or error."""
        if not self.success:
            return "error"
        return "success" if self.processed else "skipped"


@dataclass(frozen=True)
class AuditRecord:
    """One row per processing attempt. Append-only."""

    delivery_id: str
    shop_domain: str
    topic: str
    attempt: int
    outcome: str  # success | skipped | error
    retryable: bool
    error: str | None
    duration_ms: float
    recorded_at: datetime

    def to_row(self) -> dict[str, Any]:
        return {
            "webhook_id": self.delivery_id,
            "shop_domain": self.shop_domain,
            "topic": self.topic,
            "attempt": self.attempt,
            "result": self.outcome,
            "retryable": self.retryable,
            "error_message": self.error,
            "duration_ms": round(self.duration_ms, 3),
            "processed_at": self.recorded_at,
        }


@dataclass(frozen=True)
class RetryEntry:
    """A persisted future re-delivery.

    ``attempt`` is the attempt number the re-delivery will carry; the
    scheduler has already incremented it.
    """

    delivery_id: str
    shop_domain: str
    topic: str
    raw_body: bytes
    attempt: int
    scheduled_at: datetime
    triggered_at: str = ""

    def to_row(self) -> dict[str, Any]:
        return {
            "webhook_id": self.delivery_id,
            "shop_domain": self.shop_domain,
            "topic": self.topic,
            "raw_body": self.raw_body,
            "attempt": self.attempt,
            "scheduled_at": self.scheduled_at,
            "triggered_at": self.triggered_at,
        }

    @staticmethod
    def from_row(row: dict[str, Any]) -> RetryEntry:
        raw = row["raw_body"]
        if isinstance(raw, memoryview):
            raw = raw.tobytes()
        elif isinstance(raw, str):
            raw = raw.encode("utf-8")
        return RetryEntry(
            delivery_id=row["webhook_id"],
            shop_domain=row["shop_domain"],
            topic=row["topic"],
            raw_body=raw,
            attempt=int(row["attempt"]),
            scheduled_at=row["scheduled_at"],
            triggered_at=row.get("triggered_at") or "",
        )
