"""Delivery dedup cache: Redis-backed short-circuit for repeat deliveries.

Handlers are idempotent on their own; this cache only saves repeating the
store writes when Shopify redelivers something that already succeeded.

Contract:
- A delivery id is marked only after a successful attempt, so retries of
  failed deliveries always run
- Key pattern: webhook:done:{shop_domain}:{webhook_id}, 24h TTL
- Generated ``manual-`` ids are never cached (they are unique per request)
- If Redis is down, falls back to processing (fail-open for availability)
"""

from __future__ import annotations

import logging

import redis

logger = logging.getLogger(__name__)

_DEDUP_TTL_SECONDS = 86400  # 24 hours

_KEY_PREFIX = "webhook:done"


def _key(shop_domain: str, delivery_id: str) -> str:
    return f"{_KEY_PREFIX}:{shop_domain}:{delivery_id}"


def _cacheable(delivery_id: str) -> bool:
    return bool(delivery_id) and not delivery_id.startswith("manual-")


class DeliveryDeduplicator:
    """Remembers delivery ids that were processed successfully."""

    def __init__(self, client: redis.Redis, ttl_seconds: int = _DEDUP_TTL_SECONDS):
        self._redis = client
        self._ttl = ttl_seconds

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int = _DEDUP_TTL_SECONDS) -> DeliveryDeduplicator:
        return cls(redis.from_url(redis_url, decode_responses=True), ttl_seconds)

    def already_processed(self, shop_domain: str, delivery_id: str) -> bool:
        """True if this delivery already succeeded. False when unsure."""
        if not _cacheable(delivery_id):
            return False
        try:
            if self._redis.exists(_key(shop_domain, delivery_id)):
                logger.info("Duplicate webhook acknowledged: %s/%s", shop_domain, delivery_id)
                return True
            return False
        except Exception:
            logger.warning(
                "Redis unavailable for webhook dedup, processing %s/%s",
                shop_domain,
                delivery_id,
                exc_info=True,
            )
            return False

    def mark_processed(self, shop_domain: str, delivery_id: str) -> None:
        """Record a successful delivery. Never raises."""
        if not _cacheable(delivery_id):
            return
        try:
            self._redis.set(_key(shop_domain, delivery_id), "1", ex=self._ttl)
        except Exception:
            logger.warning("Failed to mark webhook as processed: %s/%s", shop_domain, delivery_id)
