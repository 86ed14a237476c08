"""Shopify webhook ingestion for the quote app.

Receives platform events, verifies their signatures, applies idempotent
side effects to the store, and schedules retries for transient failures.
"""

__version__ = "0.1.0"
