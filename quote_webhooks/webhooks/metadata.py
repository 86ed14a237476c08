"""Webhook metadata extraction from request headers.

Shopify sends ``X-Shopify-Topic``, ``X-Shopify-Shop-Domain``,
``X-Shopify-Webhook-Id``, ``X-Shopify-Triggered-At`` and
``X-Shopify-Hmac-Sha256``. The bare names (``Topic``, ``Shop-Domain``, ...)
are accepted too, for replays and local testing.

Defaults are applied here so nothing downstream branches on missing metadata.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone

from quote_webhooks.webhooks.models import TopicId

_PREFIX = "x-shopify-"

TOPIC_HEADER = "topic"
SHOP_HEADER = "shop-domain"
WEBHOOK_ID_HEADER = "webhook-id"
TRIGGERED_AT_HEADER = "triggered-at"
HMAC_HEADER = "hmac-sha256"


@dataclass(frozen=True)
class WebhookMetadata:
    topic: str
    shop_domain: str
    delivery_id: str
    triggered_at: str
    signature: str


def _header(headers: dict[str, str], name: str) -> str:
    value = headers.get(_PREFIX + name) or headers.get(name) or ""
    return value.strip()


def extract(headers: Mapping[str, str]) -> WebhookMetadata:
    """Pull routing and identity fields out of *headers*. Never raises."""
    lowered = {str(k).lower(): str(v) for k, v in headers.items()}

    topic = _header(lowered, TOPIC_HEADER).lower() or TopicId.UNRECOGNIZED.value
    delivery_id = _header(lowered, WEBHOOK_ID_HEADER) or f"manual-{int(time.time() * 1000)}"
    triggered_at = (
        _header(lowered, TRIGGERED_AT_HEADER)
        or datetime.now(timezone.utc).isoformat()
    )

    return WebhookMetadata(
        topic=topic,
        shop_domain=_header(lowered, SHOP_HEADER).lower(),
        delivery_id=delivery_id,
        triggered_at=triggered_at,
        signature=_header(lowered, HMAC_HEADER),
    )
