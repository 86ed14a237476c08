"""Tests for the Redis delivery dedup cache."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import redis

from quote_webhooks.webhooks.idempotency import DeliveryDeduplicator

SHOP = "acme.myshopify.com"


@pytest.fixture
def client():
    mock = MagicMock()
    mock.exists.return_value = 0
    return mock


@pytest.fixture
def dedup(client):
    return DeliveryDeduplicator(client, ttl_seconds=60)


class TestAlreadyProcessed:
    def test_new_delivery(self, dedup, client):
        assert dedup.already_processed(SHOP, "wh_1") is False
        client.exists.assert_called_once_with(f"webhook:done:{SHOP}:wh_1")

    def test_seen_delivery(self, dedup, client):
        client.exists.return_value = 1
        assert dedup.already_processed(SHOP, "wh_1") is True

    def test_redis_down_fails_open(self, dedup, client):
        client.exists.side_effect = redis.ConnectionError("refused")
        assert dedup.already_processed(SHOP, "wh_1") is False

    def test_manual_ids_never_looked_up(self, dedup, client):
        assert dedup.already_processed(SHOP, "manual-1707048000000") is False
        client.exists.assert_not_called()

    def test_keys_are_per_shop(self, dedup, client):
        dedup.already_processed("a.myshopify.com", "wh_1")
        dedup.already_processed("b.myshopify.com", "wh_1")
        keys = [c[0][0] for c in client.exists.call_args_list]
        assert keys[0] != keys[1]


class TestMarkProcessed:
    def test_sets_key_with_ttl(self, dedup, client):
        dedup.mark_processed(SHOP, "wh_1")
        client.set.assert_called_once_with(f"webhook:done:{SHOP}:wh_1", "1", ex=60)

    def test_manual_ids_not_cached(self, dedup, client):
        dedup.mark_processed(SHOP, "manual-1")
        client.set.assert_not_called()

    def test_redis_down_swallowed(self, dedup, client):
        client.set.side_effect = redis.ConnectionError("refused")
        dedup.mark_processed(SHOP, "wh_1")


def test_from_url():
    with patch("redis.from_url") as mock_from_url:
        dedup = DeliveryDeduplicator.from_url("redis://localhost:6379/0", 120)
    mock_from_url.assert_called_once_with("redis://localhost:6379/0", decode_responses=True)
    assert dedup._ttl == 120
