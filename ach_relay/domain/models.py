from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from .enums import RecordKind
from .statuses import EventOutcome, PaymentStatus


@dataclass(frozen=True)
class PaymentEvent:
    """Verified Stripe event envelope."""

    id: str
    type: str
    object: Mapping[str, Any]
    created: datetime | None = None
    livemode: bool = False


@dataclass
class PaymentRecord:
    """One row of a payment table, seen through its table adapter.

    ``reference`` and ``raw_status`` hold the values read at lookup time and
    are used as the compare-and-swap guard when the row is updated.
    """

    kind: RecordKind
    id: Any
    reference: str | None
    raw_status: Any
    status: PaymentStatus | None
    snapshot: str | None = None
    created_at: datetime | None = None


@dataclass
class ProcessedEvent:
    """Entry of the processed webhook event ledger."""

    event_id: str
    event_type: str
    status: EventOutcome
    event_created: datetime | None = None
    target_table: str | None = None
    target_ids: list[str] = field(default_factory=list)
    attempts: int = 1
    error_message: str | None = None
    received_at: datetime | None = None
    processed_at: datetime | None = None


@dataclass
class ReconcileResult:
    """What the reconciler did with one event (for logs and the ledger)."""

    event_id: str
    event_type: str
    outcome: EventOutcome
    table: RecordKind | None = None
    record_ids: tuple[str, ...] = ()
    status: PaymentStatus | str | None = None
    detail: str | None = None
