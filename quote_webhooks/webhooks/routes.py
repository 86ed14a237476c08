"""Webhook HTTP routes: FastAPI adapter around the IngestionController.

Each request:
1. Reads the raw body (needed for HMAC verification)
2. Runs the controller in the threadpool (handlers block on Postgres)
3. Responds with the controller's status and body
4. Persists any retry entry after the response (background task)

Response codes:
- 200 for every authenticated, parseable delivery (processed, skipped,
  failed-and-requeued, or permanently failed with the error in the body)
- 401 for signature failures, 400 for malformed bodies
- 500 only if the controller itself raises (Shopify will redeliver)
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool

from quote_webhooks.webhooks.audit import AuditLogger
from quote_webhooks.webhooks.ingestion import DeliveryState, IngestionController

logger = logging.getLogger(__name__)


def build_webhook_router(
    controller: IngestionController,
    audit: AuditLogger,
    *,
    status_window_hours: int = 24,
) -> APIRouter:
    """Routes bound to an already-built controller."""
    router = APIRouter(prefix="/webhooks/shopify", tags=["webhooks"])

    async def _ingest(request: Request, topic: str | None = None) -> JSONResponse:
        body = await request.body()
        headers = dict(request.headers)
        # Subpath topic only fills in a missing header
        if topic and not (headers.get("x-shopify-topic") or headers.get("topic")):
            headers["x-shopify-topic"] = topic
        try:
            result = await run_in_threadpool(controller.process, body, headers, defer_retry=True)
        except Exception:
            logger.exception("Webhook processing error")
            return JSONResponse({"error": "Webhook processing failed"}, status_code=500)

        background = None
        if result.retry_pending:
            background = BackgroundTask(controller.complete_retry, result)
        result.state = DeliveryState.RESPONDED
        return JSONResponse(result.body, status_code=result.status_code, background=background)

    @router.post("")
    async def shopify_webhook(request: Request):
        """Receive Shopify webhooks (signature-verified)."""
        return await _ingest(request)

    @router.get("/status")
    async def webhook_status(shop: str | None = None):
        """Processed vs failed deliveries over the trailing window."""
        try:
            summary = await run_in_threadpool(
                audit.summary, shop or None, status_window_hours
            )
        except Exception as exc:
            logger.warning("Webhook status query failed", exc_info=True)
            return JSONResponse({"error": str(exc)}, status_code=500)
        return summary

    @router.post("/{topic:path}")
    async def shopify_webhook_with_topic(request: Request, topic: str):
        """Receive Shopify webhooks with topic subpath (header still wins)."""
        return await _ingest(request, topic)

    return router


def register_webhook_routes(
    app: FastAPI,
    controller: IngestionController,
    audit: AuditLogger,
    *,
    status_window_hours: int = 24,
) -> None:
    """Mount the webhook routes on *app*."""
    app.include_router(
        build_webhook_router(controller, audit, status_window_hours=status_window_hours)
    )
    logger.info("Webhook routes registered: /webhooks/shopify{,/status}")
