"""Postgres-backed durable store used by webhook handlers.

The handlers only see a narrow contract:

    upsert(table, key_field, key_value, fields)
    update(table, key_field, key_value, fields)
    insert(table, fields)

Each call is atomic for a single row; nothing is transactional across calls.
Any psycopg failure surfaces as TransientStoreError so handlers can classify
it as retryable without importing the driver.

Entity tables (shops, products, orders, customers, quotes) belong to the rest
of the quote app; upserts rely on a unique index on their key column. Only
the pipeline's own tables are created here.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from quote_webhooks.webhooks.errors import TransientStoreError

logger = logging.getLogger(__name__)


def _adapt(value: Any) -> Any:
    """Wrap containers so they land in JSONB columns."""
    if isinstance(value, (dict, list)):
        return Jsonb(value)
    return value


@runtime_checkable
class Store(Protocol):
    """Write contract the handlers, audit logger and retry scheduler rely on."""

    def upsert(self, table: str, key_field: str, key_value: Any, fields: dict[str, Any]) -> None: ...

    def update(self, table: str, key_field: str, key_value: Any, fields: dict[str, Any]) -> int: ...

    def insert(self, table: str, fields: dict[str, Any]) -> None: ...

    def count_by(
        self,
        table: str,
        column: str,
        *,
        since_column: str,
        since: datetime,
        filters: dict[str, Any] | None = None,
    ) -> dict[str, int]: ...


class PostgresStore:
    """Single-row upsert/update/insert over a Postgres DSN."""

    def __init__(self, dsn: str):
        self._dsn = dsn

    def _get_conn(self) -> psycopg.Connection:
        return psycopg.connect(self._dsn, autocommit=True, row_factory=dict_row)

    def _execute(self, query: sql.Composable, params: list[Any]) -> int:
        try:
            with self._get_conn() as conn:
                cur = conn.execute(query, params)
                return cur.rowcount
        except psycopg.Error as exc:
            raise TransientStoreError(str(exc) or type(exc).__name__) from exc

    # ── Write contract ────────────────────────────────────────────────────

    def upsert(
        self,
        table: str,
        key_field: str,
        key_value: Any,
        fields: dict[str, Any],
    ) -> None:
        """Insert a row, or update only the supplied columns if the key exists."""
        columns = {key_field: key_value}
        columns.update({k: v for k, v in fields.items() if k != key_field})

        names = list(columns)
        updates = [n for n in names if n != key_field]
        if updates:
            conflict = sql.SQL("DO UPDATE SET {}").format(
                sql.SQL(", ").join(
                    sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(n))
                    for n in updates
                )
            )
        else:
            conflict = sql.SQL("DO NOTHING")

        query = sql.SQL(
            "INSERT INTO {table} ({cols}) VALUES ({vals}) ON CONFLICT ({key}) {conflict}"
        ).format(
            table=sql.Identifier(table),
            cols=sql.SQL(", ").join(sql.Identifier(n) for n in names),
            vals=sql.SQL(", ").join(sql.Placeholder() for _ in names),
            key=sql.Identifier(key_field),
            conflict=conflict,
        )
        self._execute(query, [_adapt(columns[n]) for n in names])

    def update(
        self,
        table: str,
        key_field: str,
        key_value: Any,
        fields: dict[str, Any],
    ) -> int:
        """Update the supplied columns of the row(s) matching the key.

        Returns the number of rows touched (0 when the entity is unknown).
        """
        if not fields:
            return 0
        names = list(fields)
        query = sql.SQL("UPDATE {table} SET {sets} WHERE {key} = %s").format(
            table=sql.Identifier(table),
            sets=sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(n)) for n in names
            ),
            key=sql.Identifier(key_field),
        )
        return self._execute(query, [_adapt(fields[n]) for n in names] + [key_value])

    def insert(self, table: str, fields: dict[str, Any]) -> None:
        """Append a row."""
        names = list(fields)
        query = sql.SQL("INSERT INTO {table} ({cols}) VALUES ({vals})").format(
            table=sql.Identifier(table),
            cols=sql.SQL(", ").join(sql.Identifier(n) for n in names),
            vals=sql.SQL(", ").join(sql.Placeholder() for _ in names),
        )
        self._execute(query, [_adapt(fields[n]) for n in names])

    # ── Read side (status endpoint) ───────────────────────────────────────

    def count_by(
        self,
        table: str,
        column: str,
        *,
        since_column: str,
        since: datetime,
        filters: dict[str, Any] | None = None,
    ) -> dict[str, int]:
        """Count rows newer than *since*, grouped by *column*."""
        filters = filters or {}
        where = [sql.SQL("{} >= %s").format(sql.Identifier(since_column))]
        params: list[Any] = [since]
        for name, value in filters.items():
            where.append(sql.SQL("{} = %s").format(sql.Identifier(name)))
            params.append(value)

        query = sql.SQL(
            "SELECT {col} AS value, COUNT(*) AS n FROM {table} WHERE {where} GROUP BY {col}"
        ).format(
            col=sql.Identifier(column),
            table=sql.Identifier(table),
            where=sql.SQL(" AND ").join(where),
        )
        try:
            with self._get_conn() as conn:
                rows = conn.execute(query, params).fetchall()
        except psycopg.Error as exc:
            raise TransientStoreError(str(exc) or type(exc).__name__) from exc
        return {str(r["value"]): int(r["n"]) for r in rows}

    # ── Schema ────────────────────────────────────────────────────────────

    def init_tables(self) -> None:
        """Create the pipeline's own tables if they don't exist.  Idempotent."""
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS webhook_logs (
                    id            BIGSERIAL PRIMARY KEY,
                    webhook_id    TEXT NOT NULL,
                    shop_domain   TEXT NOT NULL DEFAULT '',
                    topic         TEXT NOT NULL,
                    attempt       INT NOT NULL DEFAULT 0,
                    result        TEXT NOT NULL,
                    retryable     BOOLEAN NOT NULL DEFAULT FALSE,
                    error_message TEXT,
                    duration_ms   REAL,
                    processed_at  TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_webhook_logs_shop_time
                    ON webhook_logs (shop_domain, processed_at)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS webhook_queue (
                    id            BIGSERIAL PRIMARY KEY,
                    webhook_id    TEXT NOT NULL,
                    shop_domain   TEXT NOT NULL DEFAULT '',
                    topic         TEXT NOT NULL,
                    raw_body      BYTEA NOT NULL,
                    attempt       INT NOT NULL,
                    scheduled_at  TIMESTAMPTZ NOT NULL,
                    triggered_at  TEXT NOT NULL DEFAULT '',
                    created_at    TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_webhook_queue_scheduled
                    ON webhook_queue (scheduled_at)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS shop_cleanup_requests (
                    shop_domain   TEXT PRIMARY KEY,
                    requested_at  TEXT NOT NULL,
                    due_at        TIMESTAMPTZ NOT NULL,
                    reason        TEXT
                )
            """)
        logger.info("Webhook tables initialized")
