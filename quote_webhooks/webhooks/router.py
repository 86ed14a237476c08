"""Topic router: maps a topic string to its handler.

The table is built once at startup and is read-only afterwards, so it can be
shared by concurrent requests. Topics that are not in the table resolve to
a default handler that acknowledges without processing.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from types import MappingProxyType

from quote_webhooks.webhooks.handlers import HandlerFn
from quote_webhooks.webhooks.models import HandlerOutcome, InboundDelivery, TopicId

logger = logging.getLogger(__name__)


def unhandled_topic(delivery: InboundDelivery) -> HandlerOutcome:
    """Acknowledge an event nobody handles. A routing gap, not an error."""
    logger.info(
        "ROUTING_GAP no handler for topic=%s shop=%s id=%s, acknowledged",
        delivery.topic,
        delivery.shop_domain,
        delivery.delivery_id,
    )
    return HandlerOutcome.skipped("No handler for topic")


class TopicRouter:
    """Immutable topic -> handler table."""

    def __init__(self, table: Mapping[TopicId, HandlerFn], default: HandlerFn = unhandled_topic):
        if TopicId.UNRECOGNIZED in table:
            raise ValueError("The unrecognized sentinel cannot be routed")
        self._table = MappingProxyType(dict(table))
        self._default = default

    @property
    def topics(self) -> frozenset[TopicId]:
        return frozenset(self._table)

    def route(self, topic: str | TopicId) -> HandlerFn:
        """Return the handler for *topic*, or the default handler."""
        topic_id = topic if isinstance(topic, TopicId) else TopicId.parse(topic)
        return self._table.get(topic_id, self._default)

    def dispatch(self, delivery: InboundDelivery) -> HandlerOutcome:
        return self.route(delivery.topic)(delivery)


def build_router(table: Mapping[TopicId, HandlerFn]) -> TopicRouter:
    """Build the router, warning about supported topics left unrouted."""
    missing = sorted(
        t.value for t in TopicId if t is not TopicId.UNRECOGNIZED and t not in table
    )
    if missing:
        logger.warning("Topics without a handler (will be skipped): %s", ", ".join(missing))
    return TopicRouter(table)
