from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from ach_relay.config import Settings, settings
from ach_relay.domain.enums import BankAccountStatus, EventType
from ach_relay.domain.models import PaymentEvent, PaymentRecord, ReconcileResult
from ach_relay.domain.routing import (
    AdditionalChargeRoute,
    CommissionRoute,
    OrderRoute,
    RequestPaymentRoute,
    RoutingError,
    decode_routing,
)
from ach_relay.domain.statuses import EventOutcome, PaymentStatus
from ach_relay.domain.tables import (
    ADDITIONAL_CHARGE,
    COMMISSION,
    INVOICE,
    REQUEST_PAYMENT,
    REVERSE_LOOKUP_ORDER,
    RULE_PAYMENT,
    RecordTable,
)
from ach_relay.providers.stripe_ach import ProcessorError
from ach_relay.repositories.base import RecordStore
from ach_relay.utils.objects import get_field, object_id

Lookup = Callable[[], "PaymentRecord | None"]
ChargeLookup = Callable[[str], Any]

SETUP_INTENT_TARGETS = {
    EventType.SETUP_INTENT_SUCCEEDED: BankAccountStatus.VERIFIED,
    EventType.SETUP_INTENT_FAILED: BankAccountStatus.FAILED,
}

PAYMENT_INTENT_TARGETS = {
    EventType.PAYMENT_INTENT_SUCCEEDED: PaymentStatus.SUCCEEDED,
    EventType.PAYMENT_INTENT_PROCESSING: PaymentStatus.PENDING,
    # for ACH, requires_action means the payment waits on the customer
    EventType.PAYMENT_INTENT_REQUIRES_ACTION: PaymentStatus.PENDING,
    EventType.PAYMENT_INTENT_FAILED: PaymentStatus.FAILED,
}

CHARGE_TARGETS = {
    EventType.CHARGE_PENDING: PaymentStatus.PENDING,
    EventType.CHARGE_SUCCEEDED: PaymentStatus.SUCCEEDED,
    EventType.CHARGE_FAILED: PaymentStatus.FAILED,
}


class ConcurrentUpdateError(RuntimeError):
    """A record kept changing between lookup and update."""


class WebhookReconciler:
    """Apply verified Stripe events to the application's payment tables.

    Each event updates rows of at most one table. Events are claimed in the
    ledger first so redeliveries are skipped, and every row update is a
    compare-and-swap on the values read during lookup.
    """

    def __init__(
        self,
        store: RecordStore,
        cfg: Settings = settings,
        charge_lookup: ChargeLookup | None = None,
    ):
        self.store = store
        self.settings = cfg
        self.charge_lookup = charge_lookup
        self.logger = logging.getLogger(__name__)
        self._last_purge: float | None = None

    def handle(self, event: PaymentEvent) -> ReconcileResult:
        """Reconcile ``event`` once; redeliveries of a handled event are skipped."""

        self._maybe_purge()
        claimed = self.store.claim_event(event, claim_timeout_seconds=self.settings.event_claim_timeout_seconds)
        if not claimed:
            self.logger.info(
                "webhook event already handled",
                extra={"event_id": event.id, "event_type": event.type, "outcome": EventOutcome.DUPLICATE},
            )
            return ReconcileResult(event.id, event.type, EventOutcome.DUPLICATE)

        try:
            result = self.reconcile(event)
        except RoutingError as exc:
            self.logger.error(
                "webhook routing metadata rejected",
                extra={
                    "event_id": event.id,
                    "event_type": event.type,
                    "metadata": dict(get_field(event.object, "metadata", {}) or {}),
                    "error": str(exc),
                },
            )
            result = ReconcileResult(event.id, event.type, EventOutcome.REJECTED, detail=str(exc))
        except Exception as exc:
            self.store.finish_event(event.id, EventOutcome.FAILED, error=str(exc))
            raise

        self.store.finish_event(
            event.id,
            result.outcome,
            table=result.table,
            record_ids=result.record_ids,
            error=result.detail,
        )
        self.logger.info(
            "webhook event reconciled",
            extra={
                "event_id": event.id,
                "event_type": event.type,
                "outcome": result.outcome,
                "table": result.table,
                "record_ids": list(result.record_ids),
                "status": result.status,
            },
        )
        return result

    def reconcile(self, event: PaymentEvent) -> ReconcileResult:
        """Dispatch on the event type without touching the ledger."""

        try:
            event_type = EventType(event.type)
        except ValueError:
            self.logger.info("Unhandled Stripe event type: %s", event.type, extra={"event_id": event.id})
            return ReconcileResult(event.id, event.type, EventOutcome.IGNORED)

        if event_type in SETUP_INTENT_TARGETS:
            return self._handle_setup_intent(event, SETUP_INTENT_TARGETS[event_type])
        if event_type in PAYMENT_INTENT_TARGETS:
            return self._handle_payment_intent(event, PAYMENT_INTENT_TARGETS[event_type])
        return self._handle_charge(event, CHARGE_TARGETS[event_type])

    def purge_expired(self) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=self.settings.event_ledger_retention_days)
        purged = self.store.purge_events(cutoff)
        if purged:
            self.logger.info("webhook ledger purged", extra={"purged": purged})
        return purged

    def _maybe_purge(self) -> None:
        now = time.monotonic()
        if self._last_purge is not None and now - self._last_purge < self.settings.event_ledger_purge_interval_seconds:
            return
        self._last_purge = now
        try:
            self.purge_expired()
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("webhook ledger purge failed", extra={"error": str(exc)})

    # Setup intents
    def _handle_setup_intent(self, event: PaymentEvent, status: BankAccountStatus) -> ReconcileResult:
        setup_intent = event.object
        setup_intent_id = str(get_field(setup_intent, "id", ""))
        if not setup_intent_id:
            raise RoutingError("setup intent without id")
        log = self.logger.error if status is BankAccountStatus.FAILED else self.logger.info
        log(
            "SetupIntent %s",
            status.value,
            extra={
                "event_id": event.id,
                "setup_intent": setup_intent_id,
                "customer": get_field(setup_intent, "customer"),
                "error": get_field(setup_intent, "last_setup_error"),
            },
        )
        updated = self.store.update_customer_bank_status(setup_intent_id, status)
        outcome = EventOutcome.PROCESSED if updated else EventOutcome.UNMATCHED
        return ReconcileResult(event.id, event.type, outcome, status=status)

    # Payment intents
    def _handle_payment_intent(self, event: PaymentEvent, target: PaymentStatus) -> ReconcileResult:
        intent = event.object
        intent_id = str(get_field(intent, "id", ""))
        if not intent_id:
            raise RoutingError("payment intent without id")
        metadata = get_field(intent, "metadata", {}) or {}
        log = self.logger.error if target is PaymentStatus.FAILED else self.logger.info
        log(
            "PaymentIntent %s",
            event.type.split(".", 1)[-1],
            extra={
                "event_id": event.id,
                "payment_intent": intent_id,
                "amount": get_field(intent, "amount"),
                "metadata": dict(metadata),
                "error": get_field(intent, "last_payment_error"),
            },
        )
        route = decode_routing(metadata)
        snapshot = json.dumps(intent)

        def apply(table: RecordTable, lookup: Lookup, settlement: str | None = None) -> ReconcileResult:
            return self._apply_latest(event, table, lookup, target, snapshot, intent_id, settlement)

        if isinstance(route, RequestPaymentRoute):
            return apply(
                REQUEST_PAYMENT,
                lambda: self.store.find_latest(
                    REQUEST_PAYMENT, {"customer_id": route.user_id}, claimable_reference=intent_id
                ),
            )

        if isinstance(route, AdditionalChargeRoute):
            criteria = {"cart_id": route.cart_id} if route.cart_id else {"customer_id": route.user_id}
            return apply(
                ADDITIONAL_CHARGE,
                lambda: self.store.find_latest(ADDITIONAL_CHARGE, criteria, claimable_reference=intent_id),
            )

        if isinstance(route, CommissionRoute):
            if route.has_period:
                criteria: dict[str, Any] = {
                    "admin_user_id": route.admin_id,
                    "st_month": route.month,
                    "st_year": route.year,
                }
            else:
                criteria = {COMMISSION.reference_column: intent_id}
            return apply(
                COMMISSION,
                lambda: self.store.find_latest(COMMISSION, criteria),
                self._settlement_reference(intent),
            )

        if isinstance(route, OrderRoute):
            if route.is_batch:
                return self._apply_batch(event, route, target, snapshot, intent_id)
            order_id = route.ids[0]
            result = apply(INVOICE, lambda: self.store.find_latest(INVOICE, {"invoice_id": order_id}))
            if result.outcome is not EventOutcome.UNMATCHED:
                return result
            return apply(RULE_PAYMENT, lambda: self.store.find_latest(RULE_PAYMENT, {"rule_payment_id": order_id}))

        # no routing hints: reverse lookup of the reference in every table
        for table in REVERSE_LOOKUP_ORDER:
            result = apply(
                table,
                lambda table=table: self.store.find_latest(table, {table.reference_column: intent_id}),
            )
            if result.outcome is not EventOutcome.UNMATCHED:
                return result
        self.logger.info(
            "no payment record matched",
            extra={"event_id": event.id, "payment_intent": intent_id, "outcome": EventOutcome.UNMATCHED},
        )
        return ReconcileResult(event.id, event.type, EventOutcome.UNMATCHED, status=target)

    def _apply_batch(
        self,
        event: PaymentEvent,
        route: OrderRoute,
        target: PaymentStatus,
        snapshot: str,
        intent_id: str,
    ) -> ReconcileResult:
        updated: list[str] = []
        stale: list[str] = []
        for rule_payment_id in route.ids:
            result = self._apply_latest(
                event,
                RULE_PAYMENT,
                lambda rid=rule_payment_id: self._first(
                    self.store.find_records(RULE_PAYMENT, RULE_PAYMENT.primary_key, [rid])
                ),
                target,
                snapshot,
                intent_id,
                quiet=True,
            )
            if result.outcome is EventOutcome.PROCESSED:
                updated.extend(result.record_ids)
            elif result.outcome is EventOutcome.STALE:
                stale.extend(result.record_ids)
        missing = [rid for rid in route.ids if rid not in updated and rid not in stale]
        self.logger.info(
            "Rule payments updated via PaymentIntent",
            extra={
                "event_id": event.id,
                "payment_intent": intent_id,
                "order_ids": list(route.ids),
                "record_ids": updated,
                "status": int(target),
                "error": f"missing {missing}" if missing else None,
            },
        )
        if updated:
            outcome = EventOutcome.PROCESSED
        elif stale:
            outcome = EventOutcome.STALE
        else:
            outcome = EventOutcome.UNMATCHED
        return ReconcileResult(
            event.id,
            event.type,
            outcome,
            table=RULE_PAYMENT.kind if updated or stale else None,
            record_ids=tuple(updated or stale),
            status=target,
        )

    # Legacy charges
    def _handle_charge(self, event: PaymentEvent, target: PaymentStatus) -> ReconcileResult:
        charge = event.object
        charge_id = get_field(charge, "id")
        criteria = {
            INVOICE.reference_column: charge_id,
            "subscription_id": get_field(charge, "subscription"),
        }
        result = self._apply_latest(
            event,
            INVOICE,
            lambda: self.store.find_latest(INVOICE, criteria, match_any=True),
            target,
            json.dumps(charge),
            None,
        )
        if result.outcome is EventOutcome.UNMATCHED:
            self.logger.info(
                "no invoice matched charge",
                extra={"event_id": event.id, "charge": charge_id, "outcome": EventOutcome.UNMATCHED},
            )
        return result

    # Shared update path
    def _apply_latest(
        self,
        event: PaymentEvent,
        table: RecordTable,
        lookup: Lookup,
        target: PaymentStatus,
        snapshot: str,
        reference: str | None,
        settlement: str | None = None,
        quiet: bool = False,
    ) -> ReconcileResult:
        retries = max(1, self.settings.reconcile_cas_retries)
        for attempt in range(1, retries + 1):
            record = lookup()
            if record is None:
                return ReconcileResult(event.id, event.type, EventOutcome.UNMATCHED, status=target)
            record_ids = (str(record.id),)
            if self._is_stale(event, table, record):
                self.logger.warning(
                    "stale event skipped",
                    extra={
                        "event_id": event.id,
                        "event_type": event.type,
                        "table": table.kind,
                        "record_ids": list(record_ids),
                        "outcome": EventOutcome.STALE,
                    },
                )
                return ReconcileResult(event.id, event.type, EventOutcome.STALE, table.kind, record_ids, target)
            changes = table.changes(status=target, snapshot=snapshot, reference=reference, settlement=settlement)
            if self.store.update_record(table, record, changes):
                if not quiet:
                    self.logger.info(
                        "%s updated via %s",
                        table.table,
                        event.type.split(".", 1)[0],
                        extra={
                            "event_id": event.id,
                            "payment_intent": reference,
                            "table": table.kind,
                            "record_ids": list(record_ids),
                            "status": table.encode_status(target),
                        },
                    )
                return ReconcileResult(event.id, event.type, EventOutcome.PROCESSED, table.kind, record_ids, target)
            self.logger.warning(
                "payment record changed during update; retrying",
                extra={"event_id": event.id, "table": table.kind, "record_ids": list(record_ids), "attempt": attempt},
            )
        raise ConcurrentUpdateError(f"{table.table} record kept changing while applying event {event.id}")

    def _is_stale(self, event: PaymentEvent, table: RecordTable, record: PaymentRecord) -> bool:
        if not self.settings.enforce_event_ordering or event.created is None:
            return False
        last_applied = self.store.last_applied_at(table.kind, str(record.id))
        return last_applied is not None and event.created < last_applied

    def _settlement_reference(self, intent: Mapping[str, Any]) -> str | None:
        """Balance transaction of the intent's charge, if it can be found."""

        charges = get_field(get_field(intent, "charges"), "data") or []
        if charges:
            settlement = object_id(get_field(charges[0], "balance_transaction"))
            if settlement:
                return settlement
        latest_charge = get_field(intent, "latest_charge")
        if latest_charge is None:
            return None
        if isinstance(latest_charge, str):
            if self.charge_lookup is None:
                return None
            try:
                latest_charge = self.charge_lookup(latest_charge)
            except ProcessorError as exc:
                self.logger.warning(
                    "balance transaction lookup failed",
                    extra={"charge": latest_charge, "error": exc.message},
                )
                return None
        return object_id(get_field(latest_charge, "balance_transaction"))

    @staticmethod
    def _first(records: list[PaymentRecord]) -> PaymentRecord | None:
        return records[0] if records else None
