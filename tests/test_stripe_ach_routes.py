from __future__ import annotations

from typing import Any

import pytest
import stripe  # type: ignore[import-untyped]
from fastapi.testclient import TestClient

from ach_relay.config import settings
from ach_relay.main import app
from ach_relay.repositories.memory_store import InMemoryRecordStore
from ach_relay.routes import stripe_ach

AUTH = {"Authorization": f"Bearer {settings.api_bearer_token}"}


@pytest.fixture
def store(monkeypatch: pytest.MonkeyPatch) -> InMemoryRecordStore:
    store = InMemoryRecordStore()
    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_123")
    monkeypatch.setattr(stripe_ach, "_store", store)
    return store


@pytest.fixture
def calls(monkeypatch: pytest.MonkeyPatch) -> dict[str, Any]:
    """Replace the SDK calls used by the endpoints and record their arguments."""

    recorded: dict[str, Any] = {}

    def fake(name: str, result: Any):
        def _inner(*args: Any, **kwargs: Any) -> Any:
            recorded[name] = {"args": args, "kwargs": kwargs}
            return result

        return _inner

    monkeypatch.setattr(stripe.Customer, "create", fake("customer.create", {"id": "cus_new"}))
    monkeypatch.setattr(
        stripe.Customer,
        "create_source",
        fake("customer.create_source", {"id": "src_1", "status": "new"}),
    )
    monkeypatch.setattr(
        stripe.SetupIntent,
        "create",
        fake("setup_intent.create", {"id": "seti_1", "client_secret": "seti_1_secret"}),
    )
    monkeypatch.setattr(
        stripe.PaymentIntent,
        "create",
        fake("payment_intent.create", {"id": "pi_1", "status": "processing", "client_secret": "pi_secret", "amount": 2500}),
    )
    monkeypatch.setattr(
        stripe.PaymentIntent,
        "retrieve",
        fake("payment_intent.retrieve", {"id": "pi_1", "status": "succeeded", "amount": 2500}),
    )
    monkeypatch.setattr(stripe.Price, "create", fake("price.create", {"id": "price_1"}))
    monkeypatch.setattr(
        stripe.Subscription,
        "create",
        fake(
            "subscription.create",
            {"id": "sub_1", "status": "incomplete", "latest_invoice": {"payment_intent": {"client_secret": "sub_secret"}}},
        ),
    )
    monkeypatch.setattr(
        stripe.Subscription,
        "cancel",
        fake("subscription.cancel", {"id": "sub_1", "status": "canceled"}),
    )
    monkeypatch.setattr(
        stripe.Token,
        "create",
        fake("token.create", {"id": "btok_1", "bank_account": {"id": "ba_1", "status": "new"}}),
    )
    return recorded


def _setup_intent(monkeypatch: pytest.MonkeyPatch, payload: dict[str, Any]) -> None:
    monkeypatch.setattr(stripe.SetupIntent, "retrieve", lambda *args, **kwargs: payload)
    monkeypatch.setattr(
        stripe.PaymentMethod,
        "retrieve",
        lambda *args, **kwargs: {
            "id": "pm_1",
            "us_bank_account": {
                "bank_name": "STRIPE TEST BANK",
                "last4": "6789",
                "routing_number": "110000000",
                "account_type": "checking",
                "account_holder_type": "individual",
            },
        },
    )


def test_bearer_token_required(store: InMemoryRecordStore) -> None:
    client = TestClient(app)
    response = client.post("/api/stripe/create-setup-intent", json={})
    assert response.status_code == 401
    response = client.post("/api/stripe/create-setup-intent", json={}, headers={"Authorization": "Bearer wrong"})
    assert response.status_code == 401


def test_create_setup_intent_creates_customer(store: InMemoryRecordStore, calls: dict[str, Any]) -> None:
    client = TestClient(app)
    response = client.post(
        "/api/stripe/create-setup-intent",
        json={"email": "jane@example.com", "name": "Jane"},
        headers=AUTH,
    )

    assert response.status_code == 200
    body = response.json()
    assert body == {
        "success": True,
        "client_secret": "seti_1_secret",
        "setup_intent_id": "seti_1",
        "customer_id": "cus_new",
    }
    customer_kwargs = calls["customer.create"]["kwargs"]
    assert customer_kwargs["description"] == "Simple Statement Customer"
    assert customer_kwargs["metadata"] == {"source": "signup_ach"}
    setup_kwargs = calls["setup_intent.create"]["kwargs"]
    assert setup_kwargs["customer"] == "cus_new"
    assert setup_kwargs["payment_method_types"] == ["us_bank_account"]
    options = setup_kwargs["payment_method_options"]["us_bank_account"]
    assert options["financial_connections"]["permissions"] == ["payment_method", "balances"]
    assert options["verification_method"] == "automatic"


def test_create_setup_intent_reuses_customer(store: InMemoryRecordStore, calls: dict[str, Any]) -> None:
    client = TestClient(app)
    response = client.post("/api/stripe/create-setup-intent", json={"customer_id_stripe": "cus_old"}, headers=AUTH)
    assert response.status_code == 200
    assert response.json()["customer_id"] == "cus_old"
    assert "customer.create" not in calls


def test_confirm_setup_intent_saves_bank_account(store: InMemoryRecordStore, monkeypatch: pytest.MonkeyPatch) -> None:
    customer = store.add_customer("42")
    _setup_intent(monkeypatch, {"id": "seti_1", "status": "succeeded", "payment_method": "pm_1"})
    client = TestClient(app)

    response = client.post(
        "/api/stripe/confirm-setup-intent",
        json={"setup_intent_id": "seti_1", "customer_id": "cus_1", "user_id": "42"},
        headers=AUTH,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["payment_method_id"] == "pm_1"
    assert body["bank_name"] == "STRIPE TEST BANK"
    assert body["last4"] == "6789"
    assert body["message"] == "Bank account connected successfully"
    assert customer["bank_account_status"] == "verified"
    assert customer["setup_intent_id"] == "seti_1"
    assert customer["customer_id_stripe"] == "cus_1"
    assert customer["account_number"] == "****6789"
    assert customer["routing"] == "110000000"


def test_confirm_setup_intent_requires_action(store: InMemoryRecordStore, monkeypatch: pytest.MonkeyPatch) -> None:
    _setup_intent(
        monkeypatch,
        {"id": "seti_1", "status": "requires_action", "next_action": {"type": "verify_with_microdeposits"}},
    )
    client = TestClient(app)

    response = client.post(
        "/api/stripe/confirm-setup-intent",
        json={"setup_intent_id": "seti_1", "customer_id": "cus_1"},
        headers=AUTH,
    )

    assert response.status_code == 202
    body = response.json()
    assert body["success"] is False
    assert body["status"] == "requires_action"
    assert body["next_action"] == {"type": "verify_with_microdeposits"}


def test_confirm_setup_intent_not_ready(store: InMemoryRecordStore, monkeypatch: pytest.MonkeyPatch) -> None:
    _setup_intent(monkeypatch, {"id": "seti_1", "status": "processing"})
    client = TestClient(app)

    response = client.post(
        "/api/stripe/confirm-setup-intent",
        json={"setup_intent_id": "seti_1", "customer_id": "cus_1"},
        headers=AUTH,
    )

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "SetupIntent not confirmed", "status": "processing"}


def test_create_payment_intent_carries_routing_metadata(store: InMemoryRecordStore, calls: dict[str, Any]) -> None:
    client = TestClient(app)
    metadata = {"order_type": "request_payment", "user_id": "42"}

    response = client.post(
        "/api/stripe/create-payment-intent",
        json={"customer_id": "cus_1", "amount": 2500, "payment_method_id": "pm_1", "confirm": True, "metadata": metadata},
        headers=AUTH,
    )

    assert response.status_code == 200
    assert response.json()["payment_intent_id"] == "pi_1"
    kwargs = calls["payment_intent.create"]["kwargs"]
    assert kwargs["metadata"] == metadata
    assert kwargs["currency"] == "usd"
    assert kwargs["payment_method_types"] == ["us_bank_account"]
    assert kwargs["payment_method"] == "pm_1"
    assert kwargs["confirm"] is True


def test_get_payment_intent(store: InMemoryRecordStore, calls: dict[str, Any]) -> None:
    response = TestClient(app).get("/api/stripe/payment-intents/pi_1", headers=AUTH)
    assert response.status_code == 200
    assert response.json()["status"] == "succeeded"
    assert calls["payment_intent.retrieve"]["args"] == ("pi_1",)


def test_subscription_lifecycle(store: InMemoryRecordStore, calls: dict[str, Any]) -> None:
    client = TestClient(app)

    created = client.post(
        "/api/stripe/create-subscription",
        json={"customer_id": "cus_1", "amount": 4900, "interval": "month", "product_name": "Pro plan"},
        headers=AUTH,
    )
    assert created.status_code == 200
    assert created.json() == {
        "success": True,
        "subscription_id": "sub_1",
        "status": "incomplete",
        "price_id": "price_1",
        "client_secret": "sub_secret",
    }
    price_kwargs = calls["price.create"]["kwargs"]
    assert price_kwargs["recurring"] == {"interval": "month", "interval_count": 1}
    assert price_kwargs["product_data"] == {"name": "Pro plan"}
    assert calls["subscription.create"]["kwargs"]["payment_behavior"] == "default_incomplete"

    cancelled = client.post("/api/stripe/cancel-subscription", json={"subscription_id": "sub_1"}, headers=AUTH)
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "canceled"


def test_bank_token_attached_and_logged_masked(
    store: InMemoryRecordStore, calls: dict[str, Any], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(settings, "log_provider_events", True)
    client = TestClient(app)

    response = client.post(
        "/api/stripe/create-bank-token",
        json={
            "account_holder_name": "Jane Doe",
            "routing_number": "110000000",
            "account_number": "000123456789",
            "customer_id": "cus_1",
        },
        headers=AUTH,
    )

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "token_id": "btok_1",
        "bank_account_id": "ba_1",
        "source_id": "src_1",
        "status": "new",
    }
    assert calls["customer.create_source"]["kwargs"] == {"source": "btok_1"}
    token_log = next(entry for entry in store.provider_events if entry["operation"] == "CREATE_BANK_TOKEN")
    assert token_log["request_body"]["bank_account"]["account_number"] == "****6789"


def test_processor_error_is_reported(store: InMemoryRecordStore, monkeypatch: pytest.MonkeyPatch) -> None:
    def declined(*args: Any, **kwargs: Any) -> Any:
        raise stripe.InvalidRequestError("No such customer: 'cus_missing'", "customer", http_status=400)

    monkeypatch.setattr(stripe.PaymentIntent, "create", declined)
    response = TestClient(app).post(
        "/api/stripe/create-payment-intent",
        json={"customer_id": "cus_missing", "amount": 100},
        headers=AUTH,
    )

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "No such customer: 'cus_missing'"}


def test_missing_secret_key_is_reported(store: InMemoryRecordStore, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "stripe_secret_key", "")
    response = TestClient(app).get("/api/stripe/subscriptions/sub_1", headers=AUTH)
    assert response.status_code == 400
    assert response.json()["error"] == "Stripe secret key not configured"


def test_invalid_request_body(store: InMemoryRecordStore) -> None:
    response = TestClient(app).post(
        "/api/stripe/create-payment-intent",
        json={"customer_id": "cus_1", "amount": 0},
        headers=AUTH,
    )
    assert response.status_code == 422
