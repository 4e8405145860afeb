from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from ach_relay.config import settings
from ach_relay.domain.enums import RecordKind
from ach_relay.domain.statuses import EventOutcome
from ach_relay.main import app
from ach_relay.repositories.memory_store import InMemoryRecordStore
from ach_relay.routes import webhooks
from ach_relay.services.reconciler import WebhookReconciler
from conftest import WEBHOOK_SECRET, event_body, sign


@pytest.fixture
def store(monkeypatch: pytest.MonkeyPatch) -> InMemoryRecordStore:
    store = InMemoryRecordStore()
    monkeypatch.setattr(settings, "stripe_webhook_secret", WEBHOOK_SECRET)
    monkeypatch.setattr(webhooks, "_store", store)
    monkeypatch.setattr(webhooks, "_reconciler", WebhookReconciler(store, settings))
    return store


def _post(client: TestClient, body: str | bytes, header: str | None) -> httpx.Response:
    headers = {"Content-Type": "application/json"}
    if header is not None:
        headers["Stripe-Signature"] = header
    return client.post("/api/stripe/webhook", content=body, headers=headers)


def test_signed_event_is_applied(store: InMemoryRecordStore) -> None:
    row = store.add_record(RecordKind.REQUEST_PAYMENT, customer_id=42, payment_status=1)
    body = event_body(
        "payment_intent.succeeded",
        {"id": "pi_1", "metadata": {"order_type": "request_payment", "user_id": "42"}},
    )
    client = TestClient(app)

    response = _post(client, body, sign(body))

    assert response.status_code == 200
    assert response.json() == {"status": "Webhook handled", "outcome": "processed"}
    assert row["payment_status"] == 2


def test_redelivery_is_acknowledged(store: InMemoryRecordStore) -> None:
    store.add_record(RecordKind.REQUEST_PAYMENT, customer_id=42, payment_status=1)
    body = event_body(
        "payment_intent.succeeded",
        {"id": "pi_1", "metadata": {"order_type": "request_payment", "user_id": "42"}},
    )
    client = TestClient(app)

    _post(client, body, sign(body))
    response = _post(client, body, sign(body))

    assert response.status_code == 200
    assert response.json()["outcome"] == "duplicate"


def test_unknown_type_and_bad_metadata_return_200(store: InMemoryRecordStore) -> None:
    client = TestClient(app)
    ignored = event_body("customer.created", {"id": "cus_1"}, event_id="evt_a")
    rejected = event_body("payment_intent.succeeded", {"id": "pi_1", "metadata": {"order_type": "nope"}}, event_id="evt_b")

    assert _post(client, ignored, sign(ignored)).json()["outcome"] == "ignored"
    response = _post(client, rejected, sign(rejected))
    assert response.status_code == 200
    assert response.json()["outcome"] == "rejected"
    assert store.events["evt_b"].status is EventOutcome.REJECTED


def test_tampered_body_is_rejected(store: InMemoryRecordStore) -> None:
    row = store.add_record(RecordKind.INVOICE, charge_id="pi_1", payment_status=1)
    body = event_body("payment_intent.succeeded", {"id": "pi_1", "amount": 100})
    header = sign(body)
    client = TestClient(app)

    response = _post(client, body.replace("100", "999"), header)

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"
    assert row["payment_status"] == 1
    assert store.events == {}


def test_tampered_byte_breaking_utf8_is_invalid_signature(store: InMemoryRecordStore) -> None:
    row = store.add_record(RecordKind.INVOICE, charge_id="pi_1", payment_status=1)
    body = event_body("payment_intent.succeeded", {"id": "pi_1", "amount": 100})
    header = sign(body)
    raw = bytearray(body.encode())
    raw[10] = 0xFF

    response = _post(TestClient(app), bytes(raw), header)

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"
    assert row["payment_status"] == 1
    assert store.events == {}


def test_missing_signature_is_rejected(store: InMemoryRecordStore) -> None:
    body = event_body("payment_intent.succeeded", {"id": "pi_1"})
    response = _post(TestClient(app), body, None)
    assert response.status_code == 400


def test_signed_non_event_is_invalid_payload(store: InMemoryRecordStore) -> None:
    body = '["not", "an", "event"]'
    response = _post(TestClient(app), body, sign(body))
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid payload"


def test_missing_secret_is_server_error(store: InMemoryRecordStore, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "stripe_webhook_secret", "")
    body = event_body("payment_intent.succeeded", {"id": "pi_1"})
    response = _post(TestClient(app), body, sign(body))
    assert response.status_code == 500


def test_processing_error_is_server_error(store: InMemoryRecordStore, monkeypatch: pytest.MonkeyPatch) -> None:
    store.add_record(RecordKind.REQUEST_PAYMENT, customer_id=42, payment_status=1)

    def broken(*args: object, **kwargs: object) -> bool:
        raise RuntimeError("database went away")

    monkeypatch.setattr(store, "update_record", broken)
    body = event_body(
        "payment_intent.succeeded",
        {"id": "pi_1", "metadata": {"order_type": "request_payment", "user_id": "42"}},
    )
    response = _post(TestClient(app), body, sign(body))

    assert response.status_code == 500
    assert response.json()["detail"] == "Webhook processing error"
    assert store.events["evt_1"].status is EventOutcome.FAILED
