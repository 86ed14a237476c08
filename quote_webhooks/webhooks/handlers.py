"""Topic handlers: idempotent side effects for each Shopify topic family.

Each handler takes an InboundDelivery and returns a HandlerOutcome.

Contract:
- Re-processing the same delivery converges to the same stored state:
  writes are upserts/updates keyed by stable ids, and timestamps come from
  the payload or the delivery's triggered_at, never the wall clock
- Product and customer deletes are soft deletes (status flag + timestamp)
- Store failures become retryable outcomes; payloads missing their entity
  key, or with nested fields of the wrong shape, become permanent failures
- Handlers never retry internally and never raise
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

from quote_webhooks.store import Store
from quote_webhooks.webhooks.errors import PermanentHandlerError, StoreError
from quote_webhooks.webhooks.models import HandlerOutcome, InboundDelivery, TopicId

logger = logging.getLogger(__name__)

HandlerFn = Callable[[InboundDelivery], HandlerOutcome]

# Uninstalled shops keep their data this long before the cleanup job runs
DATA_RETENTION_WINDOW = timedelta(hours=48)

_QUOTE_ATTRIBUTE_NAMES = ("quote_id", "_quote_id", "quoteId")


def _classified(fn: Callable[[Any, InboundDelivery], HandlerOutcome]):
    """Turn handler exceptions into outcomes."""

    @functools.wraps(fn)
    def wrapper(self: Any, delivery: InboundDelivery) -> HandlerOutcome:
        try:
            return fn(self, delivery)
        except PermanentHandlerError as exc:
            logger.warning(
                "Permanent failure in %s for %s/%s: %s",
                fn.__name__, delivery.shop_domain, delivery.delivery_id, exc,
            )
            return HandlerOutcome.failed(str(exc))
        except StoreError as exc:
            logger.warning(
                "Store error in %s for %s/%s: %s",
                fn.__name__, delivery.shop_domain, delivery.delivery_id, exc,
            )
            return HandlerOutcome.retry(str(exc))
        except (TypeError, AttributeError, KeyError, ValueError) as exc:
            # Payload shape errors; the same body fails the same way next time
            logger.warning(
                "Malformed payload in %s for %s/%s: %s: %s",
                fn.__name__, delivery.shop_domain, delivery.delivery_id,
                type(exc).__name__, exc,
            )
            return HandlerOutcome.failed(f"{type(exc).__name__}: {exc}")
        except Exception as exc:
            logger.exception(
                "Unexpected error in %s for %s/%s",
                fn.__name__, delivery.shop_domain, delivery.delivery_id,
            )
            return HandlerOutcome.retry(f"{type(exc).__name__}: {exc}")

    return wrapper


def _external_id(payload: Mapping[str, Any]) -> str:
    value = payload.get("id")
    if value is None or value == "":
        raise PermanentHandlerError("Payload has no id")
    return str(value)


def _nested(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    """Return the object at *key*, or {} when absent. Other shapes are permanent."""
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise PermanentHandlerError(f"Payload field {key!r} is not an object")
    return value


def _require_shop(delivery: InboundDelivery) -> str:
    if not delivery.shop_domain:
        raise PermanentHandlerError("Missing shop domain")
    return delivery.shop_domain


def _parse_timestamp(value: Any, default: datetime) -> datetime:
    if not isinstance(value, str) or not value:
        return default
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return default
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def find_quote_id(payload: Mapping[str, Any]) -> str | None:
    """Return the quote back-reference stored on an order, if any.

    Checkout attaches it as a note attribute, either Shopify's list form
    ``[{"name": "quote_id", "value": "..."}]`` or a plain mapping.
    """
    attributes = payload.get("note_attributes")
    if isinstance(attributes, Mapping):
        for name in _QUOTE_ATTRIBUTE_NAMES:
            if attributes.get(name):
                return str(attributes[name])
        return None
    if isinstance(attributes, list):
        for attr in attributes:
            if not isinstance(attr, Mapping):
                continue
            if attr.get("name") in _QUOTE_ATTRIBUTE_NAMES and attr.get("value"):
                return str(attr["value"])
    return None


class ShopifyHandlers:
    """One handler per topic family, bound to a store."""

    def __init__(self, store: Store):
        self._store = store

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @_classified
    def app_uninstalled(self, delivery: InboundDelivery) -> HandlerOutcome:
        shop = _require_shop(delivery)
        self._store.update(
            "shops",
            "shop_domain",
            shop,
            {
                "status": "uninstalled",
                "uninstalled_at": delivery.triggered_at,
                "updated_at": delivery.triggered_at,
            },
        )
        logger.info("App uninstalled from shop: %s", shop)
        self._schedule_data_cleanup(delivery)
        return HandlerOutcome.ok({"shop": shop})

    def _schedule_data_cleanup(self, delivery: InboundDelivery) -> None:
        """Leave a note for the retention job. Fire-and-forget."""
        requested = _parse_timestamp(delivery.triggered_at, delivery.received_at)
        due_at = requested + DATA_RETENTION_WINDOW
        try:
            self._store.upsert(
                "shop_cleanup_requests",
                "shop_domain",
                delivery.shop_domain,
                {
                    "requested_at": delivery.triggered_at,
                    "due_at": due_at,
                    "reason": "app/uninstalled",
                },
            )
            logger.info("Scheduled data cleanup for %s at %s", delivery.shop_domain, due_at.isoformat())
        except Exception:
            logger.warning(
                "Failed to schedule data cleanup for %s", delivery.shop_domain, exc_info=True,
            )

    @_classified
    def app_scopes_update(self, delivery: InboundDelivery) -> HandlerOutcome:
        shop = _require_shop(delivery)
        payload = delivery.payload
        scopes = payload.get("current")
        if scopes is None:
            scopes = _nested(payload, "current_app_installation").get("access_scopes")
        self._store.update(
            "shops",
            "shop_domain",
            shop,
            {
                "access_scopes": scopes or [],
                "updated_at": payload.get("updated_at") or delivery.triggered_at,
            },
        )
        logger.info("Scopes updated for shop %s: %s", shop, scopes)
        return HandlerOutcome.ok()

    # ── Catalog ───────────────────────────────────────────────────────────

    @_classified
    def product_upsert(self, delivery: InboundDelivery) -> HandlerOutcome:
        payload = delivery.payload
        product_id = _external_id(payload)
        self._store.upsert(
            "products",
            "shopify_id",
            product_id,
            {
                "shop_domain": delivery.shop_domain,
                "title": payload.get("title"),
                "handle": payload.get("handle"),
                "product_type": payload.get("product_type"),
                "vendor": payload.get("vendor"),
                "status": payload.get("status"),
                "variants": payload.get("variants"),
                "images": payload.get("images"),
                "tags": payload.get("tags"),
                "body_html": payload.get("body_html"),
                "created_at": payload.get("created_at"),
                "updated_at": payload.get("updated_at"),
                "synced_at": delivery.triggered_at,
            },
        )
        logger.debug("Product %s synced for %s", product_id, delivery.shop_domain)
        return HandlerOutcome.ok({"product_id": product_id})

    @_classified
    def product_delete(self, delivery: InboundDelivery) -> HandlerOutcome:
        product_id = _external_id(delivery.payload)
        self._store.update(
            "products",
            "shopify_id",
            product_id,
            {"status": "deleted", "deleted_at": delivery.triggered_at},
        )
        return HandlerOutcome.ok({"product_id": product_id})

    # ── Orders ────────────────────────────────────────────────────────────

    @_classified
    def order(self, delivery: InboundDelivery) -> HandlerOutcome:
        """Convert the referenced quote, then store the order for analytics.

        The two writes are independent: either may fail without undoing the
        other. Any failure makes the whole delivery retryable, and both
        writes are safe to repeat.
        """
        payload = delivery.payload
        order_id = _external_id(payload)
        order_number = payload.get("order_number")
        # Validate shape before either write so a bad body writes nothing
        customer = _nested(payload, "customer")
        errors: list[str] = []

        quote_id = find_quote_id(payload)
        if quote_id:
            try:
                touched = self._store.update(
                    "quotes",
                    "id",
                    quote_id,
                    {
                        "status": "converted",
                        "converted_at": payload.get("created_at") or delivery.triggered_at,
                        "shopify_order_id": order_id,
                        "shopify_order_number": order_number,
                    },
                )
                if touched == 0:
                    logger.warning("Quote %s referenced by order %s not found", quote_id, order_id)
                else:
                    logger.info("Quote %s converted to order #%s", quote_id, order_number)
            except StoreError as exc:
                logger.warning("Failed to update quote %s: %s", quote_id, exc)
                errors.append(f"quote {quote_id}: {exc}")

        try:
            self._store.upsert(
                "orders",
                "shopify_id",
                order_id,
                {
                    "shop_domain": delivery.shop_domain,
                    "order_number": order_number,
                    "customer_id": str(customer["id"]) if customer.get("id") else None,
                    "quote_id": quote_id,
                    "total_price": payload.get("total_price"),
                    "currency": payload.get("currency"),
                    "financial_status": payload.get("financial_status"),
                    "fulfillment_status": payload.get("fulfillment_status"),
                    "cancelled_at": payload.get("cancelled_at"),
                    "created_at": payload.get("created_at"),
                    "updated_at": payload.get("updated_at"),
                },
            )
        except StoreError as exc:
            logger.warning("Failed to store order %s: %s", order_id, exc)
            errors.append(f"order {order_id}: {exc}")

        if errors:
            return HandlerOutcome.retry("; ".join(errors))
        return HandlerOutcome.ok({"order_id": order_id, "quote_id": quote_id})

    # ── Customers ─────────────────────────────────────────────────────────

    def _upsert_customer(self, delivery: InboundDelivery, fields: dict[str, Any]) -> HandlerOutcome:
        customer_id = _external_id(delivery.payload)
        self._store.upsert(
            "customers",
            "shopify_id",
            customer_id,
            {"shop_domain": delivery.shop_domain, **fields},
        )
        return HandlerOutcome.ok({"customer_id": customer_id})

    @_classified
    def customer_upsert(self, delivery: InboundDelivery) -> HandlerOutcome:
        payload = delivery.payload
        return self._upsert_customer(
            delivery,
            {
                "email": payload.get("email"),
                "first_name": payload.get("first_name"),
                "last_name": payload.get("last_name"),
                "phone": payload.get("phone"),
                "accepts_marketing": payload.get("accepts_marketing"),
                "tags": payload.get("tags"),
                "addresses": payload.get("addresses"),
                "created_at": payload.get("created_at"),
                "updated_at": payload.get("updated_at"),
                "synced_at": delivery.triggered_at,
            },
        )

    @_classified
    def customer_delete(self, delivery: InboundDelivery) -> HandlerOutcome:
        # Delete payloads carry only the id; leave the other columns alone
        return self._upsert_customer(
            delivery,
            {"status": "deleted", "deleted_at": delivery.triggered_at},
        )

    # ── Shop ──────────────────────────────────────────────────────────────

    @_classified
    def shop_update(self, delivery: InboundDelivery) -> HandlerOutcome:
        shop = _require_shop(delivery)
        payload = delivery.payload
        self._store.update(
            "shops",
            "shop_domain",
            shop,
            {
                "name": payload.get("name"),
                "email": payload.get("email"),
                "domain": payload.get("domain"),
                "plan_name": payload.get("plan_name"),
                "timezone": payload.get("iana_timezone"),
                "currency": payload.get("currency"),
                "money_format": payload.get("money_format"),
                "updated_at": payload.get("updated_at") or delivery.triggered_at,
            },
        )
        return HandlerOutcome.ok()

    # ── Bulk operations ───────────────────────────────────────────────────

    @_classified
    def bulk_operation_finish(self, delivery: InboundDelivery) -> HandlerOutcome:
        logger.info(
            "Bulk operation %s finished for %s (status=%s)",
            delivery.payload.get("admin_graphql_api_id"),
            delivery.shop_domain,
            delivery.payload.get("status"),
        )
        return HandlerOutcome.ok()

    # ── Routing table ─────────────────────────────────────────────────────

    def table(self) -> dict[TopicId, HandlerFn]:
        """Topic -> handler for every concrete topic."""
        return {
            TopicId.APP_UNINSTALLED: self.app_uninstalled,
            TopicId.APP_SCOPES_UPDATE: self.app_scopes_update,
            TopicId.PRODUCTS_CREATE: self.product_upsert,
            TopicId.PRODUCTS_UPDATE: self.product_upsert,
            TopicId.PRODUCTS_DELETE: self.product_delete,
            TopicId.ORDERS_CREATE: self.order,
            TopicId.ORDERS_UPDATED: self.order,
            TopicId.ORDERS_CANCELLED: self.order,
            TopicId.CUSTOMERS_CREATE: self.customer_upsert,
            TopicId.CUSTOMERS_UPDATE: self.customer_upsert,
            TopicId.CUSTOMERS_DELETE: self.customer_delete,
            TopicId.SHOP_UPDATE: self.shop_update,
            TopicId.BULK_OPERATIONS_FINISH: self.bulk_operation_finish,
        }
