from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Mapping, Sequence

from ach_relay.domain.enums import BankAccountStatus, RecordKind
from ach_relay.domain.models import PaymentEvent, PaymentRecord
from ach_relay.domain.statuses import EventOutcome
from ach_relay.domain.tables import RecordTable


class RecordStore(ABC):
    """Storage used by the webhook reconciler and the ACH endpoints."""

    @abstractmethod
    def find_latest(
        self,
        table: RecordTable,
        criteria: Mapping[str, Any],
        *,
        claimable_reference: str | None = None,
        match_any: bool = False,
    ) -> PaymentRecord | None:
        """Return the most recently created row matching ``criteria``.

        Criteria are combined with AND (OR when ``match_any``). When
        ``claimable_reference`` is given the row's reference column must be
        empty or equal to it.
        """

    @abstractmethod
    def find_records(self, table: RecordTable, column: str, values: Sequence[Any]) -> list[PaymentRecord]:
        """Return all rows whose ``column`` is one of ``values``."""

    @abstractmethod
    def update_record(self, table: RecordTable, record: PaymentRecord, changes: Mapping[str, Any]) -> bool:
        """Write ``changes`` if the row still has the reference and status read at lookup.

        Returns False when another writer changed the row in between.
        """

    @abstractmethod
    def update_customer_bank_status(self, setup_intent_id: str, status: BankAccountStatus) -> int:
        """Set ``bank_account_status`` on customers with the setup intent; returns rows updated."""

    @abstractmethod
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
        """Store a verified bank account on the application customer."""

    @abstractmethod
    def claim_event(self, event: PaymentEvent, *, claim_timeout_seconds: int) -> bool:
        """Register ``event`` as in progress.

        Returns False when the event was already handled, or is being handled
        by another worker whose claim has not timed out. Events whose previous
        attempt failed are claimed again.
        """

    @abstractmethod
    def finish_event(
        self,
        event_id: str,
        outcome: EventOutcome,
        *,
        table: RecordKind | None = None,
        record_ids: Sequence[str] = (),
        error: str | None = None,
    ) -> None:
        """Record the final outcome of a claimed event."""

    @abstractmethod
    def last_applied_at(self, kind: RecordKind, record_id: str) -> datetime | None:
        """Creation time of the newest processed event that updated the record."""

    @abstractmethod
    def purge_events(self, before: datetime) -> int:
        """Delete ledger entries received before ``before``; returns rows deleted."""

    @abstractmethod
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
        """Persist one outbound processor call."""

    @abstractmethod
    def metrics(self) -> dict[str, Any]:
        """Counters for the health endpoint."""
