from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Sequence

from ach_relay.domain.enums import BankAccountStatus, RecordKind
from ach_relay.domain.models import PaymentEvent, PaymentRecord, ProcessedEvent
from ach_relay.domain.statuses import EventOutcome
from ach_relay.domain.tables import TABLES, RecordTable

from .base import RecordStore

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _same(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is right
    return str(left) == str(right)


class InMemoryRecordStore(RecordStore):
    """Simple in-memory record store, used when no database is configured."""

    def __init__(self) -> None:
        self.rows: Dict[RecordKind, Dict[Any, Dict[str, Any]]] = {kind: {} for kind in RecordKind}
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.events: Dict[str, ProcessedEvent] = {}
        self.provider_events: list[dict[str, Any]] = []
        self._order: Dict[tuple[RecordKind, Any], int] = {}
        self._seq = 0
        self._lock = threading.RLock()

    # Seeding helpers
    def add_record(self, kind: RecordKind, **row: Any) -> Dict[str, Any]:
        table = TABLES[kind]
        with self._lock:
            self._seq += 1
            row.setdefault(table.primary_key, self._seq)
            row.setdefault(table.reference_column, None)
            row.setdefault(table.snapshot_column, None)
            row.setdefault(table.status_column, None)
            row.setdefault("created_at", _now())
            row.setdefault("updated_at", row["created_at"])
            pk = row[table.primary_key]
            self.rows[kind][pk] = row
            self._order[(kind, pk)] = self._seq
            return row

    def get_row(self, kind: RecordKind, pk: Any) -> Optional[Dict[str, Any]]:
        return self.rows[kind].get(pk)

    def add_customer(self, customer_id: str, **row: Any) -> Dict[str, Any]:
        row["customer_id"] = customer_id
        row.setdefault("bank_account_status", None)
        self.customers[str(customer_id)] = row
        return row

    def _sort_key(self, kind: RecordKind, table: RecordTable, row: Mapping[str, Any]) -> tuple[datetime, int]:
        created = row.get("created_at") or _EPOCH
        return created, self._order.get((kind, row[table.primary_key]), 0)

    # Payment records
    def find_latest(
        self,
        table: RecordTable,
        criteria: Mapping[str, Any],
        *,
        claimable_reference: str | None = None,
        match_any: bool = False,
    ) -> PaymentRecord | None:
        active = {column: value for column, value in criteria.items() if value is not None}
        if not active:
            return None
        with self._lock:
            candidates = []
            for row in self.rows[table.kind].values():
                checks = [_same(row.get(column), value) for column, value in active.items()]
                if not (any(checks) if match_any else all(checks)):
                    continue
                if claimable_reference is not None:
                    current = row.get(table.reference_column)
                    if current not in (None, "") and not _same(current, claimable_reference):
                        continue
                candidates.append(row)
            if not candidates:
                return None
            latest = max(candidates, key=lambda item: self._sort_key(table.kind, table, item))
            return table.to_record(latest)

    def find_records(self, table: RecordTable, column: str, values: Sequence[Any]) -> list[PaymentRecord]:
        wanted = {str(value) for value in values}
        with self._lock:
            return [
                table.to_record(row)
                for row in self.rows[table.kind].values()
                if row.get(column) is not None and str(row.get(column)) in wanted
            ]

    def update_record(self, table: RecordTable, record: PaymentRecord, changes: Mapping[str, Any]) -> bool:
        with self._lock:
            row = self.rows[table.kind].get(record.id)
            if row is None:
                return False
            if not _same(row.get(table.reference_column), record.reference):
                return False
            if row.get(table.status_column) != record.raw_status:
                return False
            row.update(changes)
            row["updated_at"] = _now()
            return True

    # Customers
    def update_customer_bank_status(self, setup_intent_id: str, status: BankAccountStatus) -> int:
        updated = 0
        with self._lock:
            for row in self.customers.values():
                if _same(row.get("setup_intent_id"), setup_intent_id):
                    row["bank_account_status"] = status.value
                    updated += 1
        return updated

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
        with self._lock:
            row = self.customers.get(str(user_id))
            if row is None:
                return 0
            row.update(
                {
                    "customer_id_stripe": customer_id_stripe,
                    "payment_method_id": payment_method_id,
                    "setup_intent_id": setup_intent_id,
                    "bank_account_status": BankAccountStatus.VERIFIED.value,
                    "ach_info": payment_method_id,
                    "bank_name": bank_name,
                    "routing": routing_number,
                    "account_number": f"****{last4}",
                }
            )
            return 1

    # Event ledger
    def claim_event(self, event: PaymentEvent, *, claim_timeout_seconds: int) -> bool:
        now = _now()
        with self._lock:
            existing = self.events.get(event.id)
            if existing is None:
                self.events[event.id] = ProcessedEvent(
                    event_id=event.id,
                    event_type=event.type,
                    status=EventOutcome.PROCESSING,
                    event_created=event.created,
                    received_at=now,
                )
                return True
            expired = (
                existing.status is EventOutcome.PROCESSING
                and existing.received_at is not None
                and existing.received_at < now - timedelta(seconds=claim_timeout_seconds)
            )
            if existing.status is EventOutcome.FAILED or expired:
                existing.status = EventOutcome.PROCESSING
                existing.attempts += 1
                existing.received_at = now
                existing.error_message = None
                return True
            return False

    def finish_event(
        self,
        event_id: str,
        outcome: EventOutcome,
        *,
        table: RecordKind | None = None,
        record_ids: Sequence[str] = (),
        error: str | None = None,
    ) -> None:
        with self._lock:
            entry = self.events.get(event_id)
            if entry is None:
                return
            entry.status = outcome
            entry.target_table = table.value if table else None
            entry.target_ids = [str(item) for item in record_ids]
            entry.error_message = error
            entry.processed_at = _now()

    def last_applied_at(self, kind: RecordKind, record_id: str) -> datetime | None:
        with self._lock:
            stamps = [
                entry.event_created
                for entry in self.events.values()
                if entry.status is EventOutcome.PROCESSED
                and entry.event_created is not None
                and entry.target_table == kind.value
                and str(record_id) in entry.target_ids
            ]
        return max(stamps) if stamps else None

    def purge_events(self, before: datetime) -> int:
        with self._lock:
            expired = [
                event_id
                for event_id, entry in self.events.items()
                if entry.received_at is not None and entry.received_at < before
            ]
            for event_id in expired:
                del self.events[event_id]
        return len(expired)

    def log_provider_event(self, **fields: Any) -> None:
        with self._lock:
            self.provider_events.append(dict(fields))

    def metrics(self) -> dict[str, Any]:
        counts: dict[str, int] = {}
        with self._lock:
            for entry in self.events.values():
                counts[entry.status.value] = counts.get(entry.status.value, 0) + 1
        return {"backend": "memory", "connected": False, "ledger": counts}
