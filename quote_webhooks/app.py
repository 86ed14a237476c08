"""FastAPI application factory for the webhook service.

Wires the pipeline once at startup: store -> handlers -> router ->
audit/retry -> controller -> routes. Run with:

    uvicorn quote_webhooks.app:create_app --factory
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from quote_webhooks import __version__
from quote_webhooks.config import Settings, get_settings
from quote_webhooks.store import PostgresStore, Store
from quote_webhooks.webhooks.audit import AuditLogger
from quote_webhooks.webhooks.handlers import ShopifyHandlers
from quote_webhooks.webhooks.idempotency import DeliveryDeduplicator
from quote_webhooks.webhooks.ingestion import IngestionController
from quote_webhooks.webhooks.retry import RetryScheduler
from quote_webhooks.webhooks.router import build_router
from quote_webhooks.webhooks.routes import register_webhook_routes

logger = logging.getLogger(__name__)


def build_controller(
    settings: Settings,
    store: Store,
    dedup: DeliveryDeduplicator | None = None,
) -> tuple[IngestionController, AuditLogger]:
    """Assemble the pipeline around *store*."""
    router = build_router(ShopifyHandlers(store).table())
    audit = AuditLogger(store)
    scheduler = RetryScheduler(
        store,
        base_delay=settings.retry_base_delay_s,
        max_delay=settings.retry_max_delay_s,
        jitter=settings.retry_jitter_s,
    )
    controller = IngestionController(
        router,
        audit,
        scheduler,
        settings.shopify_api_secret,
        dedup=dedup,
    )
    return controller, audit


def create_app(
    settings: Settings | None = None,
    store: Store | None = None,
    dedup: DeliveryDeduplicator | None = None,
) -> FastAPI:
    """Create the webhook app. Tests pass their own store and settings."""
    settings = settings or get_settings()
    logging.getLogger("quote_webhooks").setLevel(settings.log_level.upper())

    if not settings.shopify_api_secret:
        logger.warning("QUOTE_WEBHOOKS_SHOPIFY_API_SECRET not set; all webhooks will be rejected")

    if store is None:
        store = PostgresStore(settings.database_url)
    if dedup is None and settings.redis_url:
        dedup = DeliveryDeduplicator.from_url(settings.redis_url, settings.dedup_ttl_s)

    controller, audit = build_controller(settings, store, dedup)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.init_tables_on_startup and isinstance(store, PostgresStore):
            store.init_tables()
        logger.info("Webhook service v%s started", __version__)
        yield
        logger.info("Webhook service stopped")

    app = FastAPI(title="Quote webhooks", version=__version__, lifespan=lifespan)
    app.state.controller = controller

    register_webhook_routes(
        app,
        controller,
        audit,
        status_window_hours=settings.status_window_hours,
    )

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": __version__}

    return app
