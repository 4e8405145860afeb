from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

from psycopg2 import sql
from psycopg2.extras import Json, RealDictCursor

from ach_relay.db.client import get_conn
from ach_relay.domain.enums import BankAccountStatus, RecordKind
from ach_relay.domain.models import PaymentEvent, PaymentRecord
from ach_relay.domain.statuses import EventOutcome
from ach_relay.domain.tables import RecordTable

from .base import RecordStore


class PgRecordStore(RecordStore):
    """PostgreSQL-backed store using raw psycopg2.

    Payment tables belong to the main application; only the shared columns
    described by each ``RecordTable`` adapter are read or written.
    """

    @staticmethod
    def _select(table: RecordTable) -> sql.Composed:
        return sql.SQL("SELECT {columns} FROM {table}").format(
            columns=sql.SQL(", ").join(sql.Identifier(column) for column in table.columns()),
            table=sql.Identifier(table.table),
        )

    def find_latest(
        self,
        table: RecordTable,
        criteria: Mapping[str, Any],
        *,
        claimable_reference: str | None = None,
        match_any: bool = False,
    ) -> Optional[PaymentRecord]:
        active = [(column, value) for column, value in criteria.items() if value is not None]
        if not active:
            return None
        joiner = sql.SQL(" OR ") if match_any else sql.SQL(" AND ")
        conditions = sql.SQL("({})").format(
            joiner.join(sql.SQL("{} = %s").format(sql.Identifier(column)) for column, _ in active)
        )
        params: list[Any] = [value for _, value in active]
        if claimable_reference is not None:
            reference = sql.Identifier(table.reference_column)
            conditions = sql.SQL("{} AND ({ref} = %s OR {ref} IS NULL OR {ref} = '')").format(
                conditions, ref=reference
            )
            params.append(claimable_reference)
        query = sql.SQL("{select} WHERE {conditions} ORDER BY created_at DESC NULLS LAST, {pk} DESC LIMIT 1").format(
            select=self._select(table),
            conditions=conditions,
            pk=sql.Identifier(table.primary_key),
        )
        with get_conn() as conn:
            if conn is None:
                return None
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                row = cur.fetchone()
                return table.to_record(row) if row else None

    def find_records(self, table: RecordTable, column: str, values: Sequence[Any]) -> list[PaymentRecord]:
        if not values:
            return []
        query = sql.SQL("{select} WHERE {column}::text = ANY(%s) ORDER BY {pk}").format(
            select=self._select(table),
            column=sql.Identifier(column),
            pk=sql.Identifier(table.primary_key),
        )
        with get_conn() as conn:
            if conn is None:
                return []
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, ([str(value) for value in values],))
                return [table.to_record(row) for row in cur.fetchall() or []]

    def update_record(self, table: RecordTable, record: PaymentRecord, changes: Mapping[str, Any]) -> bool:
        if not changes:
            return False
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(column)) for column in changes
        )
        query = sql.SQL(
            """
            UPDATE {table}
               SET {assignments}, updated_at = NOW()
             WHERE {pk} = %s
               AND {ref}::text IS NOT DISTINCT FROM %s
               AND {status}::text IS NOT DISTINCT FROM %s
            """
        ).format(
            table=sql.Identifier(table.table),
            assignments=assignments,
            pk=sql.Identifier(table.primary_key),
            ref=sql.Identifier(table.reference_column),
            status=sql.Identifier(table.status_column),
        )
        expected_status = None if record.raw_status is None else str(record.raw_status)
        params = [*changes.values(), record.id, record.reference, expected_status]
        with get_conn() as conn:
            if conn is None:
                return False
            with conn.cursor() as cur:
                cur.execute(query, params)
                return cur.rowcount > 0

    def update_customer_bank_status(self, setup_intent_id: str, status: BankAccountStatus) -> int:
        with get_conn() as conn:
            if conn is None:
                return 0
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE customers
                       SET bank_account_status = %s
                     WHERE setup_intent_id = %s
                    """,
                    (status.value, setup_intent_id),
                )
                return cur.rowcount

    def save_customer_bank_account(
        self,
        user_id: str,
        *,
        customer_id_stripe: str,
        payment_method_id: str,
        setup_intent_id: str,
        bank_name: str,
        routing_number: str,
        last4: str,
    ) -> int:
        with get_conn() as conn:
            if conn is None:
                return 0
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE customers
                       SET customer_id_stripe = %s,
                           payment_method_id = %s,
                           setup_intent_id = %s,
                           bank_account_status = %s,
                           ach_info = %s,
                           bank_name = %s,
                           routing = %s,
                           account_number = %s
                     WHERE customer_id = %s
                    """,
                    (
                        customer_id_stripe,
                        payment_method_id,
                        setup_intent_id,
                        BankAccountStatus.VERIFIED.value,
                        payment_method_id,
                        bank_name,
                        routing_number,
                        f"****{last4}",
                        user_id,
                    ),
                )
                return cur.rowcount

    def claim_event(self, event: PaymentEvent, *, claim_timeout_seconds: int) -> bool:
        with get_conn() as conn:
            if conn is None:
                return True
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO stripe_webhook_event (
                        event_id, event_type, event_created, status, attempts, received_at
                    ) VALUES (%s, %s, %s, 'processing', 1, NOW())
                    ON CONFLICT (event_id) DO UPDATE
                        SET status = 'processing',
                            attempts = stripe_webhook_event.attempts + 1,
                            error_message = NULL,
                            received_at = NOW()
                      WHERE stripe_webhook_event.status = 'failed'
                         OR (stripe_webhook_event.status = 'processing'
                             AND stripe_webhook_event.received_at < NOW() - make_interval(secs => %s))
                    RETURNING event_id
                    """,
                    (event.id, event.type, event.created, claim_timeout_seconds),
                )
                return cur.fetchone() is not None

    def finish_event(
        self,
        event_id: str,
        outcome: EventOutcome,
        *,
        table: RecordKind | None = None,
        record_ids: Sequence[str] = (),
        error: str | None = None,
    ) -> None:
        with get_conn() as conn:
            if conn is None:
                return
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE stripe_webhook_event
                       SET status = %s,
                           target_table = %s,
                           target_ids = %s,
                           error_message = %s,
                           processed_at = NOW()
                     WHERE event_id = %s
                    """,
                    (
                        outcome.value,
                        table.value if table else None,
                        [str(item) for item in record_ids],
                        error,
                        event_id,
                    ),
                )

    def last_applied_at(self, kind: RecordKind, record_id: str) -> datetime | None:
        with get_conn() as conn:
            if conn is None:
                return None
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT MAX(event_created)
                      FROM stripe_webhook_event
                     WHERE status = 'processed'
                       AND target_table = %s
                       AND %s = ANY(target_ids)
                    """,
                    (kind.value, str(record_id)),
                )
                row = cur.fetchone()
                return row[0] if row else None

    def purge_events(self, before: datetime) -> int:
        with get_conn() as conn:
            if conn is None:
                return 0
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM stripe_webhook_event WHERE received_at < %s",
                    (before,),
                )
                return cur.rowcount

    def log_provider_event(
        self,
        *,
        provider: str,
        operation: str,
        direction: str,
        request_url: str | None = None,
        token: str | None = None,
        response_status: int | None = None,
        error_message: str | None = None,
        latency_ms: int | None = None,
        request_body: dict[str, Any] | None = None,
        response_body: dict[str, Any] | None = None,
    ) -> None:
        with get_conn() as conn:
            if conn is None:
                return
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO provider_event_log (
                        provider, direction, operation, request_url, token,
                        request_body, response_status, response_body,
                        error_message, latency_ms, created_at
                    ) VALUES (
                        %s, %s, %s, %s, %s,
                        %s, %s, %s,
                        %s, %s, NOW()
                    )
                    """,
                    (
                        provider,
                        direction,
                        operation,
                        request_url,
                        token,
                        Json(request_body or {}),
                        response_status,
                        Json(response_body or {}),
                        error_message,
                        latency_ms,
                    ),
                )

    def metrics(self) -> dict[str, Any]:
        metrics: dict[str, Any] = {"backend": "postgres", "connected": False, "ledger": {}, "last_24h": 0}
        with get_conn() as conn:
            if conn is None:
                return metrics
            metrics["connected"] = True
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT status, COUNT(*)
                      FROM stripe_webhook_event
                     GROUP BY status
                    """,
                )
                metrics["ledger"] = {str(status): int(count) for status, count in cur.fetchall() or []}
                cur.execute(
                    """
                    SELECT COUNT(*)
                      FROM stripe_webhook_event
                     WHERE received_at >= NOW() - INTERVAL '1 day'
                    """,
                )
                row = cur.fetchone()
                metrics["last_24h"] = int(row[0] or 0) if row else 0
        return metrics
