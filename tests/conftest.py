"""Shared fixtures for the webhook pipeline test suite."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any

import pytest

from quote_webhooks.webhooks.errors import TransientStoreError
from quote_webhooks.webhooks.models import InboundDelivery

SECRET = "shopify-test-secret"
FIXED_NOW = datetime(2024, 2, 4, 12, 0, 0, tzinfo=timezone.utc)


class RecordingStore:
    """In-memory stand-in for the Postgres store.

    Keyed tables hold one row per key (upsert/update); appended tables hold
    insert() rows in order. ``fail`` makes chosen (op, table) pairs raise.
    """

    def __init__(self):
        self.rows: dict[str, dict[Any, dict[str, Any]]] = {}
        self.appended: dict[str, list[dict[str, Any]]] = {}
        self.calls: list[tuple[str, str, Any]] = []
        self.fail: set[tuple[str, str]] = set()

    def _maybe_fail(self, op: str, table: str) -> None:
        if (op, table) in self.fail or (op, "*") in self.fail:
            raise TransientStoreError(f"{op} on {table} failed: connection reset")

    def seed(self, table: str, key: Any, **fields: Any) -> None:
        self.rows.setdefault(table, {})[key] = dict(fields)

    def upsert(self, table, key_field, key_value, fields):
        self.calls.append(("upsert", table, key_value))
        self._maybe_fail("upsert", table)
        row = self.rows.setdefault(table, {}).setdefault(key_value, {key_field: key_value})
        row.update(fields)

    def update(self, table, key_field, key_value, fields):
        self.calls.append(("update", table, key_value))
        self._maybe_fail("update", table)
        row = self.rows.get(table, {}).get(key_value)
        if row is None:
            return 0
        row.update(fields)
        return 1

    def insert(self, table, fields):
        self.calls.append(("insert", table, None))
        self._maybe_fail("insert", table)
        self.appended.setdefault(table, []).append(dict(fields))

    def count_by(self, table, column, *, since_column, since, filters=None):
        self._maybe_fail("count_by", table)
        counts: dict[str, int] = {}
        for row in self.appended.get(table, []):
            if row[since_column] < since:
                continue
            if any(row.get(k) != v for k, v in (filters or {}).items()):
                continue
            counts[row[column]] = counts.get(row[column], 0) + 1
        return counts

    def calls_for(self, table: str) -> list[tuple[str, str, Any]]:
        return [c for c in self.calls if c[1] == table]


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def secret() -> str:
    return SECRET


def sign(body: bytes, secret: str = SECRET) -> str:
    """Compute a valid Shopify signature."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


@pytest.fixture
def make_delivery():
    """Factory for InboundDelivery objects."""

    def _make(
        topic: str = "products/create",
        payload: dict[str, Any] | None = None,
        *,
        shop: str = "acme.myshopify.com",
        delivery_id: str = "wh_1",
        attempt: int = 0,
        triggered_at: str = "2024-02-04T11:59:58+00:00",
    ) -> InboundDelivery:
        payload = payload if payload is not None else {"id": 42, "title": "Widget"}
        body = json.dumps(payload).encode()
        return InboundDelivery(
            topic=topic,
            shop_domain=shop,
            delivery_id=delivery_id,
            received_at=FIXED_NOW,
            triggered_at=triggered_at,
            raw_body=body,
            signature=sign(body),
            payload=payload,
            attempt=attempt,
        )

    return _make


@pytest.fixture
def webhook_headers():
    """Factory for signed Shopify request headers."""

    def _make(
        body: bytes,
        topic: str = "products/create",
        overrides: dict[str, str] | None = None,
    ) -> dict[str, str]:
        headers = {
            "X-Shopify-Hmac-Sha256": sign(body),
            "X-Shopify-Topic": topic,
            "X-Shopify-Shop-Domain": "acme.myshopify.com",
            "X-Shopify-Webhook-Id": "wh_1",
            "X-Shopify-Triggered-At": "2024-02-04T11:59:58+00:00",
            "Content-Type": "application/json",
        }
        headers.update(overrides or {})
        return headers

    return _make


@pytest.fixture
def sign_body():
    """The signing helper, for tests that build their own bodies."""
    return sign
