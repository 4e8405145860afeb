from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    """Stripe event types handled by the webhook."""

    SETUP_INTENT_SUCCEEDED = "setup_intent.succeeded"
    SETUP_INTENT_FAILED = "setup_intent.setup_failed"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_PROCESSING = "payment_intent.processing"
    PAYMENT_INTENT_REQUIRES_ACTION = "payment_intent.requires_action"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    CHARGE_PENDING = "charge.pending"
    CHARGE_SUCCEEDED = "charge.succeeded"
    CHARGE_FAILED = "charge.failed"


class OrderType(str, Enum):
    """Values of the ``order_type`` metadata key set by the application."""

    REQUEST_PAYMENT = "request_payment"
    ADDITIONAL_CHARGE = "additional_charge"
    COMMISSION_PAYMENT = "commission_payment"


class RecordKind(str, Enum):
    """Payment tables the reconciler may update (value is the table name)."""

    INVOICE = "invoice_payment"
    RULE_PAYMENT = "rule_payment"
    REQUEST_PAYMENT = "request_payment"
    ADDITIONAL_CHARGE = "additional_price"
    COMMISSION = "payment_cronside"


class BankAccountStatus(str, Enum):
    VERIFIED = "verified"
    FAILED = "failed"
