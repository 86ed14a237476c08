"""HTTP-level fixtures for the webhook routes.

- Builds the FastAPI `app` around the in-memory store from tests/conftest.py
- Table creation and Redis are off; nothing touches the network
- Wraps it in a TestClient that reports server errors as 500s
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from quote_webhooks.app import create_app
from quote_webhooks.config import Settings


@pytest.fixture
def settings(secret):
    return Settings(
        shopify_api_secret=secret,
        database_url="postgresql://unused/unused",
        redis_url="",
        init_tables_on_startup=False,
    )


@pytest.fixture
def app(settings, store):
    return create_app(settings=settings, store=store)


@pytest.fixture
def client(app):
    """Unauthenticated TestClient (Shopify's perspective)."""
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def unconfigured_client(store):
    """App started without a shared secret."""
    app = create_app(
        settings=Settings(shopify_api_secret="", init_tables_on_startup=False, redis_url=""),
        store=store,
    )
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
