from __future__ import annotations

from enum import Enum, IntEnum


class PaymentStatus(IntEnum):
    """Status code stored in the ``payment_status`` column of payment tables."""

    PENDING = 1
    SUCCEEDED = 2
    FAILED = 3

    @property
    def label(self) -> str:
        """Textual form used by tables that store statuses as strings."""

        mapping = {
            PaymentStatus.PENDING: "processing",
            PaymentStatus.SUCCEEDED: "succeeded",
            PaymentStatus.FAILED: "failed",
        }
        return mapping[self]

    @classmethod
    def from_label(cls, value: str) -> "PaymentStatus | None":
        for member in cls:
            if member.label == value:
                return member
        return None


class EventOutcome(str, Enum):
    """Result of handling a webhook event; also the ledger status."""

    PROCESSING = "processing"
    PROCESSED = "processed"
    IGNORED = "ignored"
    UNMATCHED = "unmatched"
    REJECTED = "rejected"
    STALE = "stale"
    DUPLICATE = "duplicate"
    FAILED = "failed"
