"""Shopify webhook pipeline.

Inbound deliveries are signature-verified, routed by topic to idempotent
handlers, audited, and rescheduled with backoff when a handler fails
transiently.
"""
