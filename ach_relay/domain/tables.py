from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from .enums import RecordKind
from .models import PaymentRecord
from .statuses import PaymentStatus


@dataclass(frozen=True)
class RecordTable:
    """Adapter describing how one payment table stores the shared fields.

    The five payment tables keep the processor reference, the raw processor
    snapshot and the status under different column names, and the commission
    table stores its status as text. Reconciliation code only talks to this
    adapter, never to column names directly.
    """

    kind: RecordKind
    primary_key: str
    reference_column: str
    snapshot_column: str
    status_column: str = "payment_status"
    textual_status: bool = False
    settlement_column: str | None = None

    @property
    def table(self) -> str:
        return self.kind.value

    def encode_status(self, status: PaymentStatus) -> int | str:
        if self.textual_status:
            return status.label
        return int(status)

    def decode_status(self, raw: Any) -> PaymentStatus | None:
        if raw is None or raw == "":
            return None
        if self.textual_status:
            text = str(raw)
            if text.isdigit():
                # rows written by older code stored the numeric code as text
                raw = int(text)
            else:
                return PaymentStatus.from_label(text)
        try:
            return PaymentStatus(int(raw))
        except (TypeError, ValueError):
            return None

    def to_record(self, row: Mapping[str, Any]) -> PaymentRecord:
        reference = row.get(self.reference_column)
        raw_status = row.get(self.status_column)
        return PaymentRecord(
            kind=self.kind,
            id=row[self.primary_key],
            reference=str(reference) if reference is not None else None,
            raw_status=raw_status,
            status=self.decode_status(raw_status),
            snapshot=row.get(self.snapshot_column),
            created_at=row.get("created_at"),
        )

    def changes(
        self,
        *,
        status: PaymentStatus,
        snapshot: str,
        reference: str | None = None,
        settlement: str | None = None,
    ) -> dict[str, Any]:
        """Column values to write for a status transition."""

        values: dict[str, Any] = {
            self.snapshot_column: snapshot,
            self.status_column: self.encode_status(status),
        }
        if reference is not None:
            values[self.reference_column] = reference
        if settlement and self.settlement_column:
            values[self.settlement_column] = settlement
        return values

    def columns(self) -> tuple[str, ...]:
        return (
            self.primary_key,
            self.reference_column,
            self.snapshot_column,
            self.status_column,
            "created_at",
        )


INVOICE = RecordTable(
    kind=RecordKind.INVOICE,
    primary_key="id",
    reference_column="charge_id",
    snapshot_column="charge_json",
)
RULE_PAYMENT = RecordTable(
    kind=RecordKind.RULE_PAYMENT,
    primary_key="rule_payment_id",
    reference_column="charge_id",
    snapshot_column="charge_json",
)
REQUEST_PAYMENT = RecordTable(
    kind=RecordKind.REQUEST_PAYMENT,
    primary_key="id",
    reference_column="txt_id",
    snapshot_column="all_responce",
)
ADDITIONAL_CHARGE = RecordTable(
    kind=RecordKind.ADDITIONAL_CHARGE,
    primary_key="id",
    reference_column="txt_id",
    snapshot_column="all_responce",
)
COMMISSION = RecordTable(
    kind=RecordKind.COMMISSION,
    primary_key="id",
    reference_column="stripe_pay_id",
    snapshot_column="json_data",
    textual_status=True,
    settlement_column="trans_id",
)

TABLES: dict[RecordKind, RecordTable] = {
    table.kind: table
    for table in (INVOICE, RULE_PAYMENT, REQUEST_PAYMENT, ADDITIONAL_CHARGE, COMMISSION)
}

# Order in which reference columns are searched when metadata carries no route
REVERSE_LOOKUP_ORDER: tuple[RecordTable, ...] = (
    INVOICE,
    RULE_PAYMENT,
    REQUEST_PAYMENT,
    ADDITIONAL_CHARGE,
    COMMISSION,
)
